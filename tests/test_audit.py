"""Tests for the audit trail and performance logging."""
import json
import logging

import pytest

from hostwright.utils import (
    AuditTrail,
    ChangeRecord,
    PerfStats,
    get_recent_changes,
    setup_audit_logging,
    timed,
)
from hostwright.utils.audit_log import audit_logger


@pytest.fixture
def audit_file(tmp_path):
    path = setup_audit_logging(str(tmp_path))
    yield path
    for handler in list(audit_logger.handlers):
        audit_logger.removeHandler(handler)
        handler.close()


class TestAuditTrail:
    """Tests for AuditTrail."""

    def test_writes_json_lines(self, audit_file):
        """Each change is one JSON object per line."""
        trail = AuditTrail("voice")

        trail.log_change("Install git", "package", "changed", {"diff": ["+ git"]}, message="installed git")

        record = json.loads(audit_file.read_text().splitlines()[0])
        assert record["host"] == "voice"
        assert record["task"] == "Install git"
        assert record["parameters"] == {"diff": ["+ git"]}
        assert record["check_mode"] is False

    def test_redacts_everything(self, audit_file):
        """Secret text never reaches the audit log."""
        trail = AuditTrail("voice", redact=lambda text: text.replace("hunter2", "***"))

        trail.log_change(
            "login hunter2", "command", "failed", {"diff": ["+ ts3 hunter2"]},
            message="hunter2", error="rejected hunter2",
        )

        assert "hunter2" not in audit_file.read_text()

    def test_recent_changes_filters(self, audit_file):
        """History is newest first and filterable by host and task."""
        AuditTrail("a").log_change("one", "file", "changed", {})
        AuditTrail("b").log_change("two", "file", "changed", {})
        AuditTrail("a").log_change("three", "file", "failed", {}, error="boom")

        assert [r.task for r in get_recent_changes(str(audit_file))] == ["three", "two", "one"]
        assert [r.task for r in get_recent_changes(str(audit_file), host="a")] == ["three", "one"]
        assert [r.task for r in get_recent_changes(str(audit_file), task="two")] == ["two"]
        assert len(get_recent_changes(str(audit_file), limit=1)) == 1

    def test_malformed_lines_skipped(self, tmp_path):
        """Garbage in the log is ignored."""
        path = tmp_path / "audit.log"
        record = ChangeRecord("2026-10-17T00:00:00", "h", "t", "file", "changed", False, {})
        path.write_text("not json\n" + record.to_json() + "\n")

        assert [r.task for r in get_recent_changes(str(path))] == ["t"]

    def test_missing_log(self, tmp_path):
        """No log yet means no history."""
        assert get_recent_changes(str(tmp_path / "audit.log")) == []


class TestPerfLogging:
    """Tests for timing helpers."""

    def test_timed_records_and_logs(self, caplog):
        """timed logs the host name taken from self."""
        class Prober:
            host_name = "voice"

            @timed("probe")
            def probe(self):
                return 42

        with caplog.at_level(logging.INFO, logger="hostwright.perf"):
            assert Prober().probe() == 42

        assert any("probe" in r.getMessage() and "voice" in r.getMessage() for r in caplog.records)

    def test_timed_reraises(self):
        """Failures are logged and re-raised."""
        @timed("apply")
        def boom():
            raise RuntimeError("x")

        with pytest.raises(RuntimeError):
            boom()

    def test_perf_stats(self):
        """PerfStats aggregates per operation."""
        stats = PerfStats()
        stats.record("probe", 10)
        stats.record("probe", 30)

        assert stats.count("probe") == 2
        assert "probe" in stats.summary()
