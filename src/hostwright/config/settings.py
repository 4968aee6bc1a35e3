"""Runtime settings.

Environment variables (override the settings file):
- HOSTWRIGHT_CONFIG: Settings file (default: ~/.config/hostwright/config.yaml)
- HOSTWRIGHT_DEFAULT_TIMEOUT: Per-command timeout in seconds (default: 300)
- HOSTWRIGHT_AUDIT: Set to "0" to disable the audit log
- HOSTWRIGHT_AUDIT_DIR: Audit log directory (default: ~/.hostwright)
- HOSTWRIGHT_OPENSSL: openssl binary used for the secrets store
- HOSTWRIGHT_FORCE_HANDLERS: Set to "1" to run notified handlers after a failure
"""
import os
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

import yaml

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 300
DEFAULT_CONFIG_PATH = Path.home() / ".config" / "hostwright" / "config.yaml"
PASSPHRASE_ENV = "HOSTWRIGHT_SECRETS_PASSPHRASE"


@dataclass
class Settings:
    """Process-wide settings for a hostwright run."""
    default_timeout: float = DEFAULT_TIMEOUT
    audit: bool = True
    audit_dir: Optional[str] = None
    openssl: str = "openssl"
    force_handlers: bool = False
    log_level: Optional[str] = None
    log_file: Optional[str] = None

    @classmethod
    def from_env(cls, base: Optional["Settings"] = None) -> "Settings":
        """Load settings from environment variables, on top of base."""
        settings = base or cls()

        timeout = os.environ.get("HOSTWRIGHT_DEFAULT_TIMEOUT")
        if timeout:
            try:
                settings.default_timeout = float(timeout)
            except ValueError:
                logger.warning(f"Ignoring invalid HOSTWRIGHT_DEFAULT_TIMEOUT: {timeout}")

        if "HOSTWRIGHT_AUDIT" in os.environ:
            settings.audit = os.environ["HOSTWRIGHT_AUDIT"] != "0"
        if os.environ.get("HOSTWRIGHT_AUDIT_DIR"):
            settings.audit_dir = os.environ["HOSTWRIGHT_AUDIT_DIR"]
        if os.environ.get("HOSTWRIGHT_OPENSSL"):
            settings.openssl = os.environ["HOSTWRIGHT_OPENSSL"]
        if "HOSTWRIGHT_FORCE_HANDLERS" in os.environ:
            settings.force_handlers = os.environ["HOSTWRIGHT_FORCE_HANDLERS"] == "1"
        return settings

    @classmethod
    def from_file(cls, path: Path) -> "Settings":
        """Load settings from a YAML file; a missing file yields defaults."""
        if not path.exists():
            logger.debug(f"Settings file not found: {path}")
            return cls()

        with open(path) as f:
            data = yaml.safe_load(f) or {}

        if not isinstance(data, dict):
            logger.warning(f"Ignoring settings file {path}: not a mapping")
            return cls()

        logging_section = data.get("logging", {}) or {}
        return cls(
            default_timeout=float(data.get("default_timeout", DEFAULT_TIMEOUT)),
            audit=bool(data.get("audit", True)),
            audit_dir=data.get("audit_dir"),
            openssl=data.get("openssl", "openssl"),
            force_handlers=bool(data.get("force_handlers", False)),
            log_level=logging_section.get("level"),
            log_file=logging_section.get("file"),
        )

    @classmethod
    def load(cls, path: Optional[Path] = None) -> "Settings":
        """Settings file first, then environment overrides."""
        if path is None:
            path = Path(os.environ.get("HOSTWRIGHT_CONFIG", str(DEFAULT_CONFIG_PATH)))
        return cls.from_env(cls.from_file(path))
