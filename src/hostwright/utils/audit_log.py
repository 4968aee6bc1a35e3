"""Audit logging for host changes.

Every changed or failed task produces one JSON line:
- Timestamped entries for all host modifications
- Redacted task parameters (no secret plaintext)
- Separate audit log file, not propagated to the console
"""
import json
import logging
import os
from datetime import datetime, timezone
from dataclasses import dataclass, asdict
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Callable, Optional

# Create dedicated audit logger
audit_logger = logging.getLogger("hostwright.audit")

DEFAULT_AUDIT_DIR = "~/.hostwright"


def setup_audit_logging(log_dir: Optional[str] = None) -> Path:
    """Configure audit logging to file.

    Args:
        log_dir: Directory for audit logs. Defaults to ~/.hostwright/

    Returns:
        Path of the audit log file
    """
    log_dir = os.path.expanduser(log_dir or DEFAULT_AUDIT_DIR)
    Path(log_dir).mkdir(parents=True, exist_ok=True)

    audit_file = Path(log_dir) / "audit.log"

    audit_logger.setLevel(logging.INFO)
    for handler in list(audit_logger.handlers):
        audit_logger.removeHandler(handler)
        handler.close()

    handler = RotatingFileHandler(
        audit_file,
        maxBytes=10 * 1024 * 1024,  # 10MB
        backupCount=10,
        encoding="utf-8",
    )
    # JSON lines for machine-readability
    handler.setFormatter(logging.Formatter("%(message)s"))
    audit_logger.addHandler(handler)
    audit_logger.propagate = False

    return audit_file


@dataclass
class ChangeRecord:
    """Record of a single task outcome that touched (or tried to touch) the host."""
    timestamp: str
    host: str
    task: str
    module: str
    status: str  # changed, failed
    check_mode: bool
    parameters: dict
    message: str = ""
    error: Optional[str] = None

    def to_json(self) -> str:
        """Convert to JSON string."""
        return json.dumps(asdict(self), indent=None, default=str)

    @classmethod
    def from_json(cls, json_str: str) -> "ChangeRecord":
        """Parse from JSON string."""
        data = json.loads(json_str)
        return cls(**data)


class AuditTrail:
    """Write change records for one host, passing text through a redactor."""

    def __init__(self, host: str, redact: Optional[Callable[[str], str]] = None):
        self.host = host
        self._redact = redact or (lambda text: text)

    def _scrub(self, value: Any) -> Any:
        if isinstance(value, str):
            return self._redact(value)
        if isinstance(value, dict):
            return {k: self._scrub(v) for k, v in value.items()}
        if isinstance(value, (list, tuple)):
            return [self._scrub(v) for v in value]
        return value

    def log_change(
        self,
        task: str,
        module: str,
        status: str,
        parameters: dict,
        message: str = "",
        error: Optional[str] = None,
        check_mode: bool = False,
    ) -> ChangeRecord:
        """Log a task outcome.

        Returns:
            The ChangeRecord that was logged
        """
        record = ChangeRecord(
            timestamp=datetime.now(timezone.utc).isoformat(),
            host=self.host,
            task=self._redact(task),
            module=module,
            status=status,
            check_mode=check_mode,
            parameters=self._scrub(parameters),
            message=self._redact(message)[:1000],  # Truncate long output
            error=self._redact(error) if error else None,
        )

        audit_logger.info(record.to_json())

        return record


def get_recent_changes(
    log_file: Optional[str] = None,
    host: Optional[str] = None,
    task: Optional[str] = None,
    limit: int = 100,
) -> list[ChangeRecord]:
    """Read recent changes from audit log.

    Args:
        log_file: Path to audit log. Defaults to ~/.hostwright/audit.log
        host: Filter by host
        task: Filter by task name
        limit: Maximum number of records to return

    Returns:
        List of ChangeRecords, most recent first
    """
    if log_file is None:
        log_file = os.path.join(os.path.expanduser(DEFAULT_AUDIT_DIR), "audit.log")

    if not os.path.exists(log_file):
        return []

    records = []
    with open(log_file, "r", encoding="utf-8") as f:
        for line in f:
            line = line.strip()
            if not line:
                continue
            try:
                record = ChangeRecord.from_json(line)
            except (json.JSONDecodeError, TypeError):
                continue  # Skip malformed lines

            if host and record.host != host:
                continue
            if task and record.task != task:
                continue

            records.append(record)

    return list(reversed(records[-limit:]))
