"""
Audit logging for administrative and data operations.

This module contains:
- Audit action and severity enums
- AuditEntry records
- AuditLogger, a bounded in-memory log with optional JSON-lines persistence
"""

import csv
import io
import json
import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Optional, TextIO
from uuid import uuid4

from core.config import get_settings

logger = logging.getLogger(__name__)


class AuditAction(str, Enum):
    """Types of auditable actions."""

    USER_CREATED = "user.created"
    USER_UPDATED = "user.updated"
    USER_DELETED = "user.deleted"
    USER_ROLE_CHANGED = "user.role_changed"
    GROUP_ASSIGNED = "group.assigned"
    GROUP_REMOVED = "group.removed"
    PERMISSION_GRANTED = "permission.granted"
    PERMISSION_REVOKED = "permission.revoked"
    DATA_IMPORTED = "data.imported"
    DATA_EXPORTED = "data.exported"
    DATA_ROLLED_BACK = "data.rolled_back"
    SECURITY_ACCESS_DENIED = "security.access_denied"
    SECURITY_THREAT_DETECTED = "security.threat_detected"
    ADMIN_LOGIN = "admin.login"
    ADMIN_LOGOUT = "admin.logout"
    ADMIN_ESCALATION = "admin.escalation"


class AuditSeverity(str, Enum):
    """Audit entry severity."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


DATA_OPERATION_ACTIONS = {
    "import": AuditAction.DATA_IMPORTED,
    "export": AuditAction.DATA_EXPORTED,
    "rollback": AuditAction.DATA_ROLLED_BACK,
}

SECURITY_WINDOWS = {
    "hour": timedelta(hours=1),
    "day": timedelta(days=1),
    "week": timedelta(days=7),
}

CSV_COLUMNS = ["timestamp", "user_id", "user_role", "action", "resource", "resource_id", "severity"]


@dataclass
class AuditEntry:
    """A single audit log entry."""

    user_id: str
    user_role: str
    action: AuditAction
    resource: str
    severity: AuditSeverity
    resource_id: Optional[str] = None
    changes: dict[str, Any] = field(default_factory=dict)
    metadata: dict[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=lambda: str(uuid4()))
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "id": self.id,
            "timestamp": self.timestamp.isoformat(),
            "user_id": self.user_id,
            "user_role": self.user_role,
            "action": self.action.value,
            "resource": self.resource,
            "resource_id": self.resource_id,
            "changes": self.changes,
            "metadata": self.metadata,
            "severity": self.severity.value,
        }

    def to_json(self) -> str:
        """Convert to JSON string."""
        return json.dumps(self.to_dict(), default=str)


class AuditLogger:
    """
    Bounded audit log, newest entries first.

    Features:
    - In-memory storage capped at max_entries (oldest entries dropped)
    - Optional append-only file persistence (one JSON document per line)
    - Filtering, security event view and JSON/CSV export
    """

    def __init__(
        self,
        max_entries: Optional[int] = None,
        file_path: Optional[Path] = None,
    ):
        """
        Initialize the audit logger.

        Args:
            max_entries: Entries kept in memory. Defaults to settings.
            file_path: Optional path for file persistence.
        """
        self.max_entries = max_entries or get_settings().audit_max_entries
        self._entries: list[AuditEntry] = []
        self._lock = threading.Lock()
        self._file_handle: Optional[TextIO] = None

        if file_path:
            self._file_handle = open(file_path, "a", encoding="utf-8")

    def log_action(
        self,
        user_id: str,
        user_role: str,
        action: AuditAction,
        resource: str,
        severity: AuditSeverity = AuditSeverity.MEDIUM,
        resource_id: Optional[str] = None,
        changes: Optional[dict[str, Any]] = None,
        metadata: Optional[dict[str, Any]] = None,
    ) -> AuditEntry:
        """
        Log an action.

        Returns:
            The created audit entry.
        """
        entry = AuditEntry(
            user_id=user_id,
            user_role=user_role,
            action=AuditAction(action),
            resource=resource,
            severity=AuditSeverity(severity),
            resource_id=resource_id,
            changes=changes or {},
            metadata=metadata or {},
        )

        with self._lock:
            self._entries.insert(0, entry)
            if len(self._entries) > self.max_entries:
                del self._entries[self.max_entries:]

            if self._file_handle:
                self._file_handle.write(entry.to_json() + "\n")
                self._file_handle.flush()

        logger.info(f"Audit: {entry.action.value} {entry.resource} by {user_id} ({entry.severity.value})")

        return entry

    def get_logs(
        self,
        user_id: Optional[str] = None,
        action: Optional[AuditAction] = None,
        resource: Optional[str] = None,
        severity: Optional[AuditSeverity] = None,
        since: Optional[datetime] = None,
        limit: Optional[int] = 100,
    ) -> list[AuditEntry]:
        """
        Get audit entries, newest first, with optional filtering.

        Args:
            user_id: Filter by acting user.
            action: Filter by action type.
            resource: Filter by resource name.
            severity: Filter by severity.
            since: Only entries at or after this time.
            limit: Maximum entries returned (None for all).
        """
        with self._lock:
            entries = list(self._entries)

        if user_id:
            entries = [e for e in entries if e.user_id == user_id]
        if action:
            entries = [e for e in entries if e.action == action]
        if resource:
            entries = [e for e in entries if e.resource == resource]
        if severity:
            entries = [e for e in entries if e.severity == severity]
        if since:
            entries = [e for e in entries if e.timestamp >= since]

        if limit is None:
            return entries
        return entries[:limit]

    def get_security_events(self, time_range: str = "day") -> list[AuditEntry]:
        """Get security actions and high/critical entries within an hour, day or week."""
        window = SECURITY_WINDOWS.get(time_range)
        if window is None:
            raise ValueError(f"Unknown time range: {time_range}")

        since = datetime.now(timezone.utc) - window
        return [
            e
            for e in self.get_logs(since=since, limit=500)
            if e.action.value.startswith("security.")
            or e.severity in (AuditSeverity.HIGH, AuditSeverity.CRITICAL)
        ]

    def export_logs(self, fmt: str = "json", **filters: Any) -> str:
        """Export filtered entries as a JSON array or CSV text."""
        entries = self.get_logs(**filters)

        if fmt == "json":
            return json.dumps([e.to_dict() for e in entries], indent=2, default=str)
        if fmt != "csv":
            raise ValueError(f"Unsupported export format: {fmt}")

        if not entries:
            return "No logs found"

        buffer = io.StringIO()
        writer = csv.writer(buffer, lineterminator="\n")
        writer.writerow(CSV_COLUMNS)
        for e in entries:
            writer.writerow(
                [
                    e.timestamp.isoformat(),
                    e.user_id,
                    e.user_role,
                    e.action.value,
                    e.resource,
                    e.resource_id or "",
                    e.severity.value,
                ]
            )
        return buffer.getvalue().rstrip("\n")

    def log_user_action(
        self,
        user_id: str,
        user_role: str,
        action: AuditAction,
        **details: Any,
    ) -> AuditEntry:
        """Log an action on a user account."""
        details.setdefault("resource", "user")
        details.setdefault("severity", AuditSeverity.MEDIUM)
        return self.log_action(user_id, user_role, action, **details)

    def log_security_event(
        self,
        user_id: str,
        user_role: str,
        action: AuditAction,
        severity: AuditSeverity,
        metadata: Optional[dict[str, Any]] = None,
    ) -> AuditEntry:
        """Log a security event."""
        return self.log_action(
            user_id,
            user_role,
            action,
            resource="security",
            severity=severity,
            metadata=metadata,
        )

    def log_data_operation(
        self,
        user_id: str,
        user_role: str,
        operation: str,
        resource_type: str,
        count: int,
        resource_id: Optional[str] = None,
    ) -> AuditEntry:
        """Log an import, export or rollback of records."""
        action = DATA_OPERATION_ACTIONS.get(operation)
        if action is None:
            raise ValueError(f"Unknown data operation: {operation}")

        return self.log_action(
            user_id,
            user_role,
            action,
            resource=resource_type,
            severity=AuditSeverity.HIGH if operation == "rollback" else AuditSeverity.MEDIUM,
            resource_id=resource_id,
            changes={"record_count": count},
        )

    def close(self) -> None:
        """Close file handle if open."""
        with self._lock:
            if self._file_handle:
                self._file_handle.close()
                self._file_handle = None
