"""
Task Lifecycle Guards

Pure and near-pure building blocks shared by every mutating task operation:

  - Transition table validation  (TASK_TRANSITIONS in models.task)
  - Concurrency guard            (expected_updated_at vs stored updated_at)
  - Sign-off lock predicate
  - DRAFT gate for stakeholder actions
  - Step aggregation rule        (step outcomes → derived task status)

Order of checks inside an operation:
    load fresh row → check_freshness → ensure_unlocked → ensure_not_draft
    → validate_transition → write → touch

Usage:
    from uat_tracker.services import task_lifecycle as lc

    task = lc.load_task_for_write(task_id)
    lc.check_freshness(task.updated_at, expected_updated_at)
    lc.ensure_unlocked(task)
    lc.validate_transition(task.status, "READY")
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

from uat_tracker.core.exceptions import (
    LockedError,
    MalformedExpectation,
    NotFoundError,
    NotReadyError,
    StaleWrite,
    StatusReconciliationError,
    TransitionRejected,
)
from uat_tracker.models import db
from uat_tracker.models.task import (
    STATUS_DEPLOYED,
    STATUS_DRAFT,
    STATUS_FAILED,
    STATUS_IN_PROGRESS,
    STATUS_PASSED,
    STATUS_READY,
    TASK_TRANSITIONS,
    Task,
)
from uat_tracker.utils.helpers import as_utc, parse_timestamp

_ONE_TICK = timedelta(microseconds=1)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ═══════════════════════════════════════════════════════════════════════════
# Transition table
# ═══════════════════════════════════════════════════════════════════════════


def validate_transition(from_status: str, to_status: str) -> None:
    """Raise TransitionRejected unless ``from_status -> to_status`` is legal.

    A self-transition is always legal (no-op). Unknown states are rejected
    like any other missing edge.
    """
    if from_status == to_status and from_status in TASK_TRANSITIONS:
        return
    if to_status in TASK_TRANSITIONS.get(from_status, []):
        return
    raise TransitionRejected(from_status, to_status)


def is_transition_allowed(from_status: str, to_status: str) -> bool:
    try:
        validate_transition(from_status, to_status)
    except TransitionRejected:
        return False
    return True


def get_available_transitions(status: str) -> list[str]:
    """Return the statuses reachable in one move from ``status``."""
    return list(TASK_TRANSITIONS.get(status, []))


# ═══════════════════════════════════════════════════════════════════════════
# Concurrency guard
# ═══════════════════════════════════════════════════════════════════════════


def check_freshness(stored: datetime | None, expected) -> None:
    """Reject writes made against an outdated snapshot of the task.

    - ``expected`` None → no check requested.
    - not parseable as a timestamp (including "") → MalformedExpectation.
    - parseable but different from ``stored`` → StaleWrite.

    Comparison is exact at microsecond precision; naive values are UTC.
    """
    if expected is None:
        return
    try:
        expected_ts = parse_timestamp(expected)
    except (TypeError, ValueError):
        raise MalformedExpectation(expected) from None

    if stored is None or as_utc(stored) != expected_ts:
        raise StaleWrite()


def touch(task: Task, actor_id: int | None) -> datetime:
    """Advance the task's concurrency token and record who changed it.

    The new value is strictly greater than the previous one, so an
    expectation consumed by this write can never match again.
    """
    now = _utcnow()
    previous = as_utc(task.updated_at)
    if previous is not None and now <= previous:
        now = previous + _ONE_TICK
    task.updated_at = now
    task.updated_by_id = actor_id
    return now


# ═══════════════════════════════════════════════════════════════════════════
# Lock predicate and DRAFT gate
# ═══════════════════════════════════════════════════════════════════════════


def is_locked(task: Task) -> bool:
    return task.signed_off_at is not None


def ensure_unlocked(task: Task) -> None:
    if is_locked(task):
        raise LockedError(task.id)


def ensure_not_draft(task: Task, action: str) -> None:
    """Stakeholders may only view a DRAFT task."""
    if task.status == STATUS_DRAFT:
        raise NotReadyError(action)


def load_task_for_write(task_id: int) -> Task:
    """Re-read the task row from the database right before a write.

    ``populate_existing`` discards any identity-map copy so the lock and
    freshness checks always see the committed state; ``with_for_update``
    takes a row lock on backends that support it.
    """
    task = db.session.get(Task, task_id, populate_existing=True, with_for_update=True)
    if task is None:
        raise NotFoundError(resource="Task", resource_id=task_id)
    return task


# ═══════════════════════════════════════════════════════════════════════════
# Step aggregation
# ═══════════════════════════════════════════════════════════════════════════


def derive_status(current: str, outcomes: list[bool | None]) -> str | None:
    """Derive the task status implied by the full set of step outcomes.

    1. every step True          → PASSED (DEPLOYED never regresses)
    2. any step False           → FAILED
    3. some True, current READY → IN_PROGRESS
    4. otherwise                → None (no automatic change)

    Returns None when the derived status equals ``current``.
    """
    if current == STATUS_DEPLOYED or not outcomes:
        return None

    if all(o is True for o in outcomes):
        target = STATUS_PASSED
    elif any(o is False for o in outcomes):
        target = STATUS_FAILED
    elif any(o is True for o in outcomes) and current == STATUS_READY:
        target = STATUS_IN_PROGRESS
    else:
        return None

    return None if target == current else target


def reconcile_status(current: str, target: str) -> str:
    """Confirm a derived status is reachable; raise StatusReconciliationError if not."""
    try:
        validate_transition(current, target)
    except TransitionRejected:
        raise StatusReconciliationError(current, target) from None
    return target
