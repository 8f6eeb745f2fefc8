"""Tests for the audit logger."""

import json
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from audit.audit_logger import AuditAction, AuditLogger, AuditSeverity, CSV_COLUMNS


class TestLogAction:
    """Test recording audit entries."""

    def test_newest_first(self, audit_logger: AuditLogger) -> None:
        """Test entries are returned newest first."""
        audit_logger.log_action("u1", "admin", AuditAction.ADMIN_LOGIN, "session")
        audit_logger.log_action("u1", "admin", AuditAction.ADMIN_LOGOUT, "session")

        logs = audit_logger.get_logs()

        assert [e.action for e in logs] == [AuditAction.ADMIN_LOGOUT, AuditAction.ADMIN_LOGIN]
        assert logs[0].severity == AuditSeverity.MEDIUM

    def test_entries_are_bounded(self) -> None:
        """Test the oldest entries are dropped."""
        audit = AuditLogger(max_entries=3)
        for n in range(5):
            audit.log_action(f"u{n}", "admin", AuditAction.USER_UPDATED, "user")

        logs = audit.get_logs(limit=None)

        assert len(logs) == 3
        assert [e.user_id for e in logs] == ["u4", "u3", "u2"]

    def test_accepts_string_values(self, audit_logger: AuditLogger) -> None:
        """Test action and severity given as strings."""
        entry = audit_logger.log_action("u1", "admin", "data.exported", "invoices", severity="low")

        assert entry.action == AuditAction.DATA_EXPORTED
        assert entry.severity == AuditSeverity.LOW

    def test_unknown_action_is_rejected(self, audit_logger: AuditLogger) -> None:
        """Test unknown actions raise."""
        with pytest.raises(ValueError):
            audit_logger.log_action("u1", "admin", "user.exploded", "user")

    def test_entry_serialization(self, audit_logger: AuditLogger) -> None:
        """Test converting an entry to JSON."""
        entry = audit_logger.log_action(
            "u1", "admin", AuditAction.USER_CREATED, "user", resource_id="u2", changes={"role": "viewer"}
        )

        data = json.loads(entry.to_json())

        assert data["action"] == "user.created"
        assert data["resource_id"] == "u2"
        assert data["changes"] == {"role": "viewer"}
        assert data["severity"] == "medium"


class TestQueries:
    """Test filtering and security views."""

    def test_filters(self, audit_logger: AuditLogger) -> None:
        """Test filtering entries."""
        audit_logger.log_user_action("u1", "admin", AuditAction.USER_CREATED)
        audit_logger.log_user_action("u2", "manager", AuditAction.USER_DELETED, severity=AuditSeverity.HIGH)
        audit_logger.log_data_operation("u1", "admin", "import", "customers", 10)

        assert len(audit_logger.get_logs(user_id="u1")) == 2
        assert len(audit_logger.get_logs(action=AuditAction.USER_DELETED)) == 1
        assert len(audit_logger.get_logs(resource="customers")) == 1
        assert len(audit_logger.get_logs(severity=AuditSeverity.HIGH)) == 1
        assert len(audit_logger.get_logs(limit=1)) == 1

    def test_since_filter(self, audit_logger: AuditLogger) -> None:
        """Test filtering by time."""
        audit_logger.log_action("u1", "admin", AuditAction.ADMIN_LOGIN, "session")

        future = datetime.now(timezone.utc) + timedelta(minutes=1)

        assert audit_logger.get_logs(since=future) == []

    def test_security_events(self, audit_logger: AuditLogger) -> None:
        """Test the security event view."""
        audit_logger.log_security_event(
            "u1", "viewer", AuditAction.SECURITY_ACCESS_DENIED, AuditSeverity.LOW, {"path": "/admin"}
        )
        audit_logger.log_data_operation("u2", "admin", "rollback", "customers", 3)
        audit_logger.log_action("u3", "admin", AuditAction.ADMIN_LOGIN, "session")

        events = audit_logger.get_security_events("hour")

        assert [e.user_id for e in events] == ["u2", "u1"]
        assert events[1].resource == "security"
        assert events[1].metadata == {"path": "/admin"}

    def test_security_events_unknown_range(self, audit_logger: AuditLogger) -> None:
        """Test an unknown security time range."""
        with pytest.raises(ValueError, match="Unknown time range"):
            audit_logger.get_security_events("year")


class TestDataOperations:
    """Test data operation logging."""

    def test_rollback_is_high_severity(self, audit_logger: AuditLogger) -> None:
        """Test rollbacks are logged with high severity."""
        entry = audit_logger.log_data_operation(
            "u1", "admin", "rollback", "customers", 4, resource_id="tx-1"
        )

        assert entry.action == AuditAction.DATA_ROLLED_BACK
        assert entry.severity == AuditSeverity.HIGH
        assert entry.changes == {"record_count": 4}
        assert entry.resource_id == "tx-1"

    def test_import_is_medium_severity(self, audit_logger: AuditLogger) -> None:
        """Test imports are logged with medium severity."""
        entry = audit_logger.log_data_operation("u1", "admin", "import", "customers", 4)
        assert entry.severity == AuditSeverity.MEDIUM

    def test_unknown_operation(self, audit_logger: AuditLogger) -> None:
        """Test unknown data operations raise."""
        with pytest.raises(ValueError, match="Unknown data operation"):
            audit_logger.log_data_operation("u1", "admin", "merge", "customers", 1)


class TestExport:
    """Test JSON and CSV export."""

    def test_json_export(self, audit_logger: AuditLogger) -> None:
        """Test exporting entries as JSON."""
        audit_logger.log_user_action("u1", "admin", AuditAction.USER_CREATED)
        audit_logger.log_user_action("u2", "admin", AuditAction.USER_CREATED)

        exported = json.loads(audit_logger.export_logs("json", user_id="u2"))

        assert len(exported) == 1
        assert exported[0]["user_id"] == "u2"

    def test_csv_export(self, audit_logger: AuditLogger) -> None:
        """Test exporting entries as CSV."""
        audit_logger.log_data_operation("u1", "admin", "import", "customers", 2, resource_id="tx-1")

        lines = audit_logger.export_logs("csv").split("\n")

        assert lines[0] == ",".join(CSV_COLUMNS)
        assert len(lines) == 2
        assert lines[1].endswith(",u1,admin,data.imported,customers,tx-1,medium")

    def test_csv_export_empty(self, audit_logger: AuditLogger) -> None:
        """Test CSV export with no entries."""
        assert audit_logger.export_logs("csv") == "No logs found"

    def test_unsupported_format(self, audit_logger: AuditLogger) -> None:
        """Test an unsupported export format."""
        with pytest.raises(ValueError, match="Unsupported export format"):
            audit_logger.export_logs("xml")


class TestPersistence:
    """Test JSON-lines file persistence."""

    def test_entries_are_appended_to_file(self, tmp_path: Path) -> None:
        """Test entries are persisted as JSON lines."""
        path = tmp_path / "audit.jsonl"
        audit = AuditLogger(max_entries=10, file_path=path)

        audit.log_action("u1", "admin", AuditAction.ADMIN_LOGIN, "session")
        audit.log_action("u1", "admin", AuditAction.ADMIN_LOGOUT, "session")
        audit.close()

        lines = path.read_text(encoding="utf-8").splitlines()
        assert [json.loads(line)["action"] for line in lines] == ["admin.login", "admin.logout"]

    def test_close_is_idempotent(self, tmp_path: Path) -> None:
        """Test closing twice is harmless."""
        audit = AuditLogger(max_entries=10, file_path=tmp_path / "audit.jsonl")
        audit.close()
        audit.close()
