"""
Group propagation engine.

An admin edit on one task can be replicated to its siblings (same
``task_group_id``, other countries). Only GROUP_FIELDS travel; status,
assignee and steps are always per-country.

Each sibling is its own transaction. A sibling that fails to write is rolled
back alone and reported in ``failed``; the source and earlier siblings stay
committed. Signed-off siblings are never modified.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError

from uat_tracker.models import db
from uat_tracker.models.history import ACTION_GROUP_PROPAGATED
from uat_tracker.models.task import GROUP_FIELDS, Task
from uat_tracker.services import task_history
from uat_tracker.services.task_lifecycle import is_locked, touch

logger = logging.getLogger(__name__)

SKIP_SIGNED_OFF = "SIGNED_OFF"
SKIP_NOT_FOUND = "NOT_FOUND"
FAIL_WRITE = "WRITE_FAILED"


@dataclass
class GroupSummary:
    total: int
    operation_id: str
    updated: int = 1
    skipped: list = field(default_factory=list)
    failed: list = field(default_factory=list)

    @property
    def skipped_signed_off(self) -> int:
        return sum(1 for s in self.skipped if s["reason"] == SKIP_SIGNED_OFF)

    def to_dict(self) -> dict:
        return {
            "operation_id": self.operation_id,
            "total": self.total,
            "updated": self.updated,
            "skipped_signed_off": self.skipped_signed_off,
            "skipped": list(self.skipped),
            "failed": list(self.failed),
        }


def group_delta(field_delta: dict) -> dict:
    """Restrict an edit to the fields that replicate across a group."""
    return {k: field_delta[k] for k in GROUP_FIELDS if k in field_delta}


def find_siblings(task: Task) -> list[Task]:
    """Other tasks in ``task``'s group, ordered by country."""
    if not task.task_group_id:
        return []
    return db.session.execute(
        select(Task)
        .where(Task.task_group_id == task.task_group_id, Task.id != task.id)
        .order_by(Task.country_code, Task.id)
    ).scalars().all()


def _apply_delta(sibling: Task, delta: dict, actor_id, operation_id: str, source_id: int) -> None:
    before = {k: getattr(sibling, k) for k in delta}
    for key, value in delta.items():
        setattr(sibling, key, value)
    touch(sibling, actor_id)
    task_history.record(
        sibling.id, actor_id, ACTION_GROUP_PROPAGATED,
        f"Fields updated from task {source_id}: {', '.join(sorted(delta))}",
        before=before,
        after=dict(delta),
        metadata={"operation_id": operation_id, "source_task_id": source_id},
    )


def propagate(source_task: Task, field_delta: dict, siblings: list[Task], actor_id) -> GroupSummary:
    """Replicate the group subset of ``field_delta`` onto every unlocked sibling.

    The source task must already be committed. ``total`` counts the source;
    ``updated`` includes it.
    """
    delta = group_delta(field_delta)
    source_id = source_task.id
    sibling_ids = [s.id for s in siblings]
    summary = GroupSummary(total=len(sibling_ids) + 1, operation_id=uuid.uuid4().hex)
    if not delta:
        return summary

    for sibling_id in sibling_ids:
        sibling = db.session.get(Task, sibling_id, populate_existing=True)
        if sibling is None:
            summary.skipped.append({"task_id": sibling_id, "country_code": None, "reason": SKIP_NOT_FOUND})
            continue
        if is_locked(sibling):
            summary.skipped.append({
                "task_id": sibling.id,
                "country_code": sibling.country_code,
                "reason": SKIP_SIGNED_OFF,
            })
            continue

        country = sibling.country_code
        try:
            _apply_delta(sibling, delta, actor_id, summary.operation_id, source_id)
            db.session.commit()
            summary.updated += 1
        except SQLAlchemyError as exc:
            db.session.rollback()
            logger.error(
                "Group propagation failed for task=%s: %s", sibling_id, exc,
                exc_info=True,
                extra={"task_id": sibling_id, "operation_id": summary.operation_id},
            )
            summary.failed.append({
                "task_id": sibling_id,
                "country_code": country,
                "reason": FAIL_WRITE,
            })

    logger.info(
        "Group propagation from task=%s: updated=%d skipped=%d failed=%d",
        source_id, summary.updated, len(summary.skipped), len(summary.failed),
        extra={
            "task_id": source_id,
            "actor_id": actor_id,
            "operation_id": summary.operation_id,
            "event_type": ACTION_GROUP_PROPAGATED,
        },
    )
    return summary


def group_preview(task: Task) -> dict:
    """Counts shown in the 'apply to all markets' confirmation dialog."""
    if not task.task_group_id:
        return {
            "enabled": False,
            "reason": "Task is not part of a multi-market group",
            "total": 1,
            "updatable": 1,
            "signed_off_locked": 0,
            "countries": [task.country_code],
        }
    members = db.session.execute(
        select(Task)
        .where(Task.task_group_id == task.task_group_id)
        .order_by(Task.country_code, Task.id)
    ).scalars().all()
    locked = sum(1 for t in members if is_locked(t))
    return {
        "enabled": True,
        "task_group_id": task.task_group_id,
        "total": len(members),
        "updatable": len(members) - locked,
        "signed_off_locked": locked,
        "countries": [t.country_code for t in members],
    }
