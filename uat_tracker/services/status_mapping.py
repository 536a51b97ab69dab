"""
Status label adapter and storage-row DTO boundary.

The UI speaks a small vocabulary ("Pending", "In Progress", ...). Internally
the task lifecycle uses the canonical TaskStatus enumeration. This module is
the single place where either untyped client values or untyped storage rows
become a canonical status.

Leniency: ``to_internal()`` maps unknown or empty input to READY instead of
failing. Legacy clients and partially typed payloads keep working; callers
that must not guess use ``parse_status_strict()``.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass
from datetime import date, datetime
from typing import Any, Mapping

from uat_tracker.utils.helpers import as_utc, parse_date, parse_timestamp


class TaskStatus(str, enum.Enum):
    DRAFT = "DRAFT"
    READY = "READY"
    IN_PROGRESS = "IN_PROGRESS"
    BLOCKED = "BLOCKED"
    FAILED = "FAILED"
    PASSED = "PASSED"
    DEPLOYED = "DEPLOYED"


LENIENT_DEFAULT = TaskStatus.READY

STATUS_LABELS = {
    TaskStatus.DRAFT: "Pending",
    TaskStatus.READY: "Pending",
    TaskStatus.IN_PROGRESS: "In Progress",
    TaskStatus.BLOCKED: "Blocked",
    TaskStatus.FAILED: "Failed",
    TaskStatus.PASSED: "Passed",
    TaskStatus.DEPLOYED: "Deployed",
}

# Label → canonical. "Pending" resolves to READY, never DRAFT.
_LABEL_TO_STATUS = {
    "pending": TaskStatus.READY,
    "in progress": TaskStatus.IN_PROGRESS,
    "blocked": TaskStatus.BLOCKED,
    "failed": TaskStatus.FAILED,
    "passed": TaskStatus.PASSED,
    "deployed": TaskStatus.DEPLOYED,
}

def _normalise(value: str) -> str:
    return value.strip().upper().replace("-", "_").replace(" ", "_")


def parse_status_strict(value: Any) -> TaskStatus | None:
    """Return the canonical status for a label or canonical name, else None."""
    if isinstance(value, TaskStatus):
        return value
    if not isinstance(value, str) or not value.strip():
        return None
    canonical = _normalise(value)
    if canonical in TaskStatus.__members__:
        return TaskStatus[canonical]
    return _LABEL_TO_STATUS.get(value.strip().lower())


def to_internal(value: Any) -> TaskStatus:
    """External → internal. Unknown input falls back to READY."""
    return parse_status_strict(value) or LENIENT_DEFAULT


def to_label(status: Any) -> str:
    """Internal → user-facing label. Unknown values pass through unchanged."""
    parsed = parse_status_strict(status)
    if parsed is None:
        return str(status)
    return STATUS_LABELS[parsed]


# ── Storage row → typed snapshot ─────────────────────────────────────────────


@dataclass(frozen=True)
class TaskSnapshot:
    """Typed view of one task row as it crosses from storage into core logic."""

    id: int
    title: str
    status: TaskStatus
    country_code: str
    task_group_id: str | None
    assignee_id: int | None
    due_date: date | None
    signed_off_at: datetime | None
    updated_at: datetime | None

    @property
    def is_locked(self) -> bool:
        return self.signed_off_at is not None

    @property
    def status_label(self) -> str:
        return STATUS_LABELS[self.status]


def _as_datetime(value):
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return as_utc(value)
    return parse_timestamp(value)


def task_from_row(row: Mapping[str, Any]) -> TaskSnapshot:
    """Convert an untyped storage row (e.g. ``Result.mappings()``) into a TaskSnapshot.

    Stored statuses outside the enumeration get the same READY fallback as
    client input.
    """
    return TaskSnapshot(
        id=int(row["id"]),
        title=row.get("title") or "",
        status=to_internal(row.get("status")),
        country_code=row.get("country_code") or "",
        task_group_id=row.get("task_group_id"),
        assignee_id=row.get("assignee_id"),
        due_date=parse_date(row.get("due_date")),
        signed_off_at=_as_datetime(row.get("signed_off_at")),
        updated_at=_as_datetime(row.get("updated_at")),
    )
