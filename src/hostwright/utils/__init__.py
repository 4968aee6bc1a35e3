"""Utility modules for logging, retries and the audit trail."""
from .connection import CommandResult, with_retry
from .logging_config import (
    setup_logging,
    timed,
    timed_section,
    perf_logger,
    PerfStats,
    global_stats,
)
from .audit_log import AuditTrail, ChangeRecord, get_recent_changes, setup_audit_logging

__all__ = [
    "CommandResult",
    "with_retry",
    "setup_logging",
    "timed",
    "timed_section",
    "perf_logger",
    "PerfStats",
    "global_stats",
    "AuditTrail",
    "ChangeRecord",
    "get_recent_changes",
    "setup_audit_logging",
]
