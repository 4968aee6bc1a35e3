"""Encrypted secrets store and in-memory secret handling."""
from .resolver import REDACTED, RedactingFilter, SecretResolver, Secrets

__all__ = ["REDACTED", "RedactingFilter", "SecretResolver", "Secrets"]
