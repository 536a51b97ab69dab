"""
Task Service — core task operations.

Every mutating operation follows the same pipeline:

    load fresh row → access → freshness → lock → DRAFT gate
    → transition validation → write → aggregation → history → commit

and returns an ``OperationResult``. Notifications are never sent from here:
each result carries an ``events`` list the caller hands to the dispatcher
once the commit has succeeded.

Any exception raised inside an operation rolls the session back before it
propagates, so a rejected mutation leaves no partial state behind.
"""

from __future__ import annotations

import functools
import logging
import uuid
from datetime import date, datetime, timezone

from flask import current_app
from sqlalchemy import and_, exists, func, select

from uat_tracker.core.exceptions import (
    CooldownActive,
    NotFoundError,
    SignOffRejected,
    StatusReconciliationError,
    ValidationError,
)
from uat_tracker.models import db
from uat_tracker.models.auth import User
from uat_tracker.models.history import (
    ACTION_COMMENT_ADDED,
    ACTION_CREATED,
    ACTION_DELETED,
    ACTION_DEPLOYED,
    ACTION_METADATA_UPDATED,
    ACTION_REMINDER_SENT,
    ACTION_SIGNED_OFF,
    ACTION_STATUS_CHANGED,
    ACTION_STEP_ADDED,
    ACTION_STEP_DELETED,
    ACTION_STEP_UPDATED,
    ACTION_STEPS_IMPORTED,
)
from uat_tracker.models.task import (
    EDITABLE_FIELDS,
    STATUS_DEPLOYED,
    STATUS_DRAFT,
    STATUS_PASSED,
    Comment,
    CommentRead,
    Task,
    TaskStep,
)
from uat_tracker.services import group_propagation, task_history
from uat_tracker.services import task_lifecycle as lc
from uat_tracker.services.access import Actor, ensure_admin, ensure_can_access
from uat_tracker.services.cooldown import AdminActionCooldown, get_cooldown_store
from uat_tracker.services.events import (
    EVENT_DEPLOYED,
    EVENT_FAILED_STEP,
    EVENT_REMINDER,
    EVENT_SIGNED_OFF,
    EVENT_TASK_ASSIGNED,
    OperationResult,
    TaskEvent,
)
from uat_tracker.services.status_mapping import parse_status_strict, to_internal, to_label

logger = logging.getLogger(__name__)

UNSET = object()

_STEP_DEFINITION_FIELDS = ("description", "expected_result", "test_data")


def _rollback_on_error(fn):
    @functools.wraps(fn)
    def wrapper(*args, **kwargs):
        try:
            return fn(*args, **kwargs)
        except Exception:
            db.session.rollback()
            raise
    return wrapper


def _status_value(status) -> str:
    return getattr(status, "value", status)


def _event(kind: str, task: Task, text: str, facts=(), recipient: User | None = None) -> TaskEvent:
    return TaskEvent(
        kind=kind,
        task_id=task.id,
        country_code=task.country_code,
        title=task.title,
        text=text,
        facts=tuple(facts),
        recipient_email=recipient.email if recipient else None,
        recipient_name=recipient.display_name if recipient else None,
    )


def _assigned_event(task: Task, assignee: User) -> TaskEvent:
    return _event(
        EVENT_TASK_ASSIGNED, task,
        f"A UAT task has been assigned to {assignee.display_name}.",
        facts=[
            ("Country", task.country_code),
            ("Module", task.module_name or "-"),
            ("Due date", task.due_date.isoformat() if task.due_date else "-"),
        ],
        recipient=assignee,
    )


def _get_step(task: Task, step_id: int) -> TaskStep:
    step = db.session.get(TaskStep, step_id, populate_existing=True)
    if step is None or step.task_id != task.id:
        raise NotFoundError(resource="TaskStep", resource_id=step_id)
    return step


def _resequence(task: Task) -> None:
    for idx, step in enumerate(sorted(task.steps, key=lambda s: (s.order, s.id or 0)), start=1):
        step.order = idx


def _resolve_assignee(user_id, country_code: str) -> User | None:
    if user_id is None:
        return None
    user = db.session.get(User, user_id)
    if user is None or not user.is_active:
        raise ValidationError("Assignee not found", details={"assignee_id": user_id})
    if user.country_code and user.country_code != country_code:
        raise ValidationError(
            f"Assignee belongs to {user.country_code}, task is for {country_code}",
            details={"assignee_id": user_id},
        )
    return user


def _write_status(task: Task, target: str, actor_id, source: str) -> dict:
    before = task.status
    lc.validate_transition(before, target)
    task.status = target
    task_history.record(
        task.id, actor_id, ACTION_STATUS_CHANGED,
        f"Status changed from {to_label(before)} to {to_label(target)}",
        before={"status": before},
        after={"status": target},
        metadata={"source": source},
    )
    logger.info(
        "Task %s status %s -> %s (%s)", task.id, before, target, source,
        extra={"task_id": task.id, "actor_id": actor_id, "event_type": ACTION_STATUS_CHANGED},
    )
    return {"from": before, "to": target}


# ═══════════════════════════════════════════════════════════════════════════
# Status
# ═══════════════════════════════════════════════════════════════════════════


@_rollback_on_error
def change_status(task_id: int, requested_status, actor: Actor, expected_updated_at=None) -> OperationResult:
    """Move a task to ``requested_status``.

    Already in the target status → ``unchanged=True`` with no write and no
    history entry. Leaving DRAFT is an admin decision; deployment goes
    through ``mark_deployed`` so it cannot skip sign-off.
    """
    task = lc.load_task_for_write(task_id)
    ensure_can_access(actor, task)
    lc.check_freshness(task.updated_at, expected_updated_at)
    lc.ensure_unlocked(task)
    if not actor.is_admin:
        lc.ensure_not_draft(task, "change status")

    target = _status_value(to_internal(requested_status))
    if target == task.status:
        db.session.rollback()
        return OperationResult(task=task, unchanged=True)

    if target == STATUS_DEPLOYED:
        raise ValidationError("Tasks are deployed through the deploy action after sign-off")

    lc.validate_transition(task.status, target)
    lc.touch(task, actor.id)
    _write_status(task, target, actor.id, source="MANUAL")
    db.session.commit()
    return OperationResult(task=task)


# ═══════════════════════════════════════════════════════════════════════════
# Steps
# ═══════════════════════════════════════════════════════════════════════════


@_rollback_on_error
def record_step_outcome(
    task_id: int,
    step_id: int,
    actor: Actor,
    is_passed=UNSET,
    actual_result=UNSET,
    attachments=UNSET,
    expected_updated_at=None,
) -> OperationResult:
    """Record a tester's result for one step and re-derive the task status.

    When the derived status is not reachable through the transition table
    the outcome is still stored, the status is left alone and the conflict is
    returned under ``reconciliation``.
    """
    task = lc.load_task_for_write(task_id)
    ensure_can_access(actor, task)
    lc.check_freshness(task.updated_at, expected_updated_at)
    lc.ensure_unlocked(task)
    lc.ensure_not_draft(task, "record step outcome")
    step = _get_step(task, step_id)

    before = {"is_passed": step.is_passed, "actual_result": step.actual_result}
    changed = False
    if is_passed is not UNSET and step.is_passed is not is_passed:
        step.is_passed = is_passed
        step.completed_at = datetime.now(timezone.utc) if is_passed is not None else None
        changed = True
    if actual_result is not UNSET and step.actual_result != actual_result:
        step.actual_result = actual_result
        changed = True
    if attachments is not UNSET and list(step.attachments or []) != list(attachments or []):
        step.attachments = list(attachments or [])
        changed = True

    if not changed:
        db.session.rollback()
        return OperationResult(task=task, unchanged=True, extra={"step": step.to_dict()})

    lc.touch(task, actor.id)
    task_history.record(
        task.id, actor.id, ACTION_STEP_UPDATED,
        f"Step {step.order} result recorded",
        before=before,
        after={"is_passed": step.is_passed, "actual_result": step.actual_result},
        metadata={"step_id": step.id, "order": step.order, "kind": "outcome"},
    )

    extra = {}
    target = lc.derive_status(task.status, [s.is_passed for s in task.steps])
    if target is not None:
        try:
            lc.reconcile_status(task.status, target)
            extra["status_change"] = _write_status(task, target, actor.id, source="STEP_AGGREGATION")
        except StatusReconciliationError as exc:
            extra["reconciliation"] = exc.to_dict()
            logger.warning(
                "Step aggregation skipped for task %s: %s", task.id, exc,
                extra={"task_id": task.id, "actor_id": actor.id, "event_type": "STATUS_RECONCILIATION"},
            )

    events = []
    if is_passed is False and before["is_passed"] is not False:
        events.append(_event(
            EVENT_FAILED_STEP, task,
            f"Step {step.order} failed: {step.description}",
            facts=[
                ("Country", task.country_code),
                ("Step", str(step.order)),
                ("Actual result", step.actual_result or "-"),
            ],
        ))

    db.session.commit()
    extra["step"] = step.to_dict()
    return OperationResult(task=task, events=events, extra=extra)


@_rollback_on_error
def update_step_definition(
    task_id: int,
    step_id: int,
    actor: Actor,
    description=UNSET,
    expected_result=UNSET,
    test_data=UNSET,
    expected_updated_at=None,
) -> OperationResult:
    """Admin edit of a step's instructions. Never touches outcomes or status."""
    ensure_admin(actor, "step edits")
    task = lc.load_task_for_write(task_id)
    lc.check_freshness(task.updated_at, expected_updated_at)
    lc.ensure_unlocked(task)
    step = _get_step(task, step_id)

    requested = {"description": description, "expected_result": expected_result, "test_data": test_data}
    changes = {
        k: v for k, v in requested.items()
        if v is not UNSET and getattr(step, k) != v
    }
    if not changes:
        db.session.rollback()
        return OperationResult(task=task, unchanged=True, extra={"step": step.to_dict()})

    before = {k: getattr(step, k) for k in changes}
    for key, value in changes.items():
        setattr(step, key, value)
    lc.touch(task, actor.id)
    task_history.record(
        task.id, actor.id, ACTION_STEP_UPDATED,
        f"Step {step.order} definition updated",
        before=before, after=changes,
        metadata={"step_id": step.id, "order": step.order, "kind": "definition"},
    )
    db.session.commit()
    return OperationResult(task=task, extra={"step": step.to_dict()})


@_rollback_on_error
def add_step(
    task_id: int,
    actor: Actor,
    description: str,
    expected_result: str,
    test_data: str | None = None,
    expected_updated_at=None,
) -> OperationResult:
    ensure_admin(actor, "step changes")
    task = lc.load_task_for_write(task_id)
    lc.check_freshness(task.updated_at, expected_updated_at)
    lc.ensure_unlocked(task)

    next_order = max((s.order for s in task.steps), default=0) + 1
    step = TaskStep(
        order=next_order,
        description=description,
        expected_result=expected_result,
        test_data=test_data,
        attachments=[],
    )
    task.steps.append(step)
    lc.touch(task, actor.id)
    db.session.flush()
    task_history.record(
        task.id, actor.id, ACTION_STEP_ADDED,
        f"Step {next_order} added",
        after={"description": description, "expected_result": expected_result},
        metadata={"step_id": step.id, "order": next_order},
    )
    db.session.commit()
    return OperationResult(task=task, extra={"step": step.to_dict()})


@_rollback_on_error
def import_steps(task_id: int, actor: Actor, steps, expected_updated_at=None) -> OperationResult:
    """Replace every step of the task with ``steps``, numbered 1..n.

    ``steps`` items are StepCreateInput objects (or anything exposing the same
    attributes).
    """
    ensure_admin(actor, "step import")
    if not steps:
        raise ValidationError("At least one step is required", details={"steps": "empty"})
    task = lc.load_task_for_write(task_id)
    lc.check_freshness(task.updated_at, expected_updated_at)
    lc.ensure_unlocked(task)

    before_count = len(task.steps)
    task.steps.clear()
    db.session.flush()
    for idx, item in enumerate(steps, start=1):
        task.steps.append(TaskStep(
            order=idx,
            description=item.description,
            expected_result=item.expected_result,
            test_data=item.test_data,
            actual_result=getattr(item, "actual_result", None),
            attachments=[],
        ))
    lc.touch(task, actor.id)
    task_history.record(
        task.id, actor.id, ACTION_STEPS_IMPORTED,
        f"Imported {len(steps)} steps (replaced {before_count})",
        before={"step_count": before_count},
        after={"step_count": len(steps)},
        metadata={"source": "IMPORT_WIZARD"},
    )
    db.session.commit()
    logger.info(
        "Imported %d steps into task %s", len(steps), task.id,
        extra={"task_id": task.id, "actor_id": actor.id, "event_type": ACTION_STEPS_IMPORTED},
    )
    return OperationResult(task=task)


@_rollback_on_error
def delete_step(task_id: int, step_id: int, actor: Actor, expected_updated_at=None) -> OperationResult:
    """Remove a step and close the gap so orders stay 1..n."""
    ensure_admin(actor, "step deletion")
    task = lc.load_task_for_write(task_id)
    lc.check_freshness(task.updated_at, expected_updated_at)
    lc.ensure_unlocked(task)
    step = _get_step(task, step_id)

    removed = {"step_id": step.id, "order": step.order, "description": step.description}
    task.steps.remove(step)
    _resequence(task)
    lc.touch(task, actor.id)
    task_history.record(
        task.id, actor.id, ACTION_STEP_DELETED,
        f"Step {removed['order']} deleted",
        before=removed,
        after={"step_count": len(task.steps)},
        metadata={"step_id": removed["step_id"]},
    )
    db.session.commit()
    return OperationResult(task=task)


# ═══════════════════════════════════════════════════════════════════════════
# Metadata
# ═══════════════════════════════════════════════════════════════════════════


@_rollback_on_error
def apply_metadata_edit(
    task_id: int,
    field_delta: dict,
    actor: Actor,
    expected_updated_at=None,
    propagate_to_group: bool = False,
) -> OperationResult:
    """Partial admin edit. The source task commits first; sibling propagation
    of the group fields follows when requested, one transaction per sibling.
    """
    ensure_admin(actor, "task edits")
    task = lc.load_task_for_write(task_id)
    lc.check_freshness(task.updated_at, expected_updated_at)
    lc.ensure_unlocked(task)

    delta = {k: v for k, v in field_delta.items() if k in EDITABLE_FIELDS}
    changes = {k: v for k, v in delta.items() if getattr(task, k) != v}

    events = []
    if "assignee_id" in changes:
        assignee = _resolve_assignee(changes["assignee_id"], task.country_code)
        if assignee is not None:
            events.append(_assigned_event(task, assignee))

    if changes:
        before = {k: getattr(task, k) for k in changes}
        for key, value in changes.items():
            setattr(task, key, value)
        lc.touch(task, actor.id)
        task_history.record(
            task.id, actor.id, ACTION_METADATA_UPDATED,
            f"Updated {', '.join(sorted(changes))}",
            before=before, after=changes,
        )
        db.session.commit()
    else:
        db.session.rollback()

    extra = {}
    if propagate_to_group and task.task_group_id and group_propagation.group_delta(delta):
        siblings = group_propagation.find_siblings(task)
        summary = group_propagation.propagate(task, delta, siblings, actor.id)
        extra["group_summary"] = summary.to_dict()

    unchanged = not changes and "group_summary" not in extra
    return OperationResult(task=task, unchanged=unchanged, events=events, extra=extra)


# ═══════════════════════════════════════════════════════════════════════════
# Comments
# ═══════════════════════════════════════════════════════════════════════════


@_rollback_on_error
def add_comment(
    task_id: int,
    actor: Actor,
    body: str,
    step_order: int | None = None,
    expected_updated_at=None,
) -> OperationResult:
    task = lc.load_task_for_write(task_id)
    ensure_can_access(actor, task)
    lc.check_freshness(task.updated_at, expected_updated_at)
    lc.ensure_unlocked(task)
    if not actor.is_admin:
        lc.ensure_not_draft(task, "comment")
    if step_order is not None and step_order > len(task.steps):
        raise ValidationError(
            f"Task has no step {step_order}", details={"step_order": step_order},
        )

    comment = Comment(task_id=task.id, author_id=actor.id, body=body, step_order=step_order)
    db.session.add(comment)
    db.session.flush()
    db.session.add(CommentRead(comment_id=comment.id, user_id=actor.id))
    task_history.record(
        task.id, actor.id, ACTION_COMMENT_ADDED,
        "Comment added" if step_order is None else f"Comment added on step {step_order}",
        metadata={"comment_id": comment.id, "step_order": step_order},
    )
    db.session.commit()
    return OperationResult(task=task, extra={"comment": comment.to_dict()})


@_rollback_on_error
def mark_comments_read(task_id: int, actor: Actor) -> int:
    """Mark every comment on the task as read by ``actor``. Returns how many were new."""
    task = get_task(task_id, actor)
    already = set(db.session.execute(
        select(CommentRead.comment_id)
        .join(Comment, Comment.id == CommentRead.comment_id)
        .where(Comment.task_id == task.id, CommentRead.user_id == actor.id)
    ).scalars())
    marked = 0
    for comment in task.comments:
        if comment.id not in already:
            db.session.add(CommentRead(comment_id=comment.id, user_id=actor.id))
            marked += 1
    db.session.commit()
    return marked


def unread_comment_count(actor: Actor) -> int:
    """Comments by other users on tasks visible to ``actor`` that it has not read."""
    read_exists = exists().where(and_(
        CommentRead.comment_id == Comment.id,
        CommentRead.user_id == actor.id,
    ))
    query = (
        select(func.count(Comment.id))
        .join(Task, Task.id == Comment.task_id)
        .where(~read_exists)
        .where((Comment.author_id.is_(None)) | (Comment.author_id != actor.id))
    )
    if not actor.is_admin:
        query = query.where(Task.assignee_id == actor.id, Task.country_code == actor.country_code)
    return db.session.execute(query).scalar() or 0


# ═══════════════════════════════════════════════════════════════════════════
# Sign-off and deployment
# ═══════════════════════════════════════════════════════════════════════════


@_rollback_on_error
def sign_off(task_id: int, actor: Actor, expected_updated_at=None, signature_data=None) -> OperationResult:
    """Freeze a PASSED task whose steps all have a result."""
    task = lc.load_task_for_write(task_id)
    ensure_can_access(actor, task)
    lc.check_freshness(task.updated_at, expected_updated_at)
    lc.ensure_unlocked(task)
    lc.ensure_not_draft(task, "sign off")

    if task.status != STATUS_PASSED:
        raise SignOffRejected(
            f"Only PASSED tasks can be signed off (current: {task.status})",
            details={"status": task.status},
        )
    pending = [s.order for s in task.steps if s.is_passed is None]
    if pending:
        raise SignOffRejected(
            "Every step needs a result before sign-off",
            details={"pending_steps": pending},
        )

    now = lc.touch(task, actor.id)
    task.signed_off_at = now
    task.signed_off_by_id = actor.id
    task.signature_data = signature_data
    task_history.record(
        task.id, actor.id, ACTION_SIGNED_OFF, "Task signed off",
        after={"signed_off_at": now.isoformat(), "signed_off_by_id": actor.id},
        metadata={"has_signature": bool(signature_data)},
    )
    db.session.commit()
    logger.info(
        "Task %s signed off", task.id,
        extra={"task_id": task.id, "actor_id": actor.id, "event_type": ACTION_SIGNED_OFF},
    )
    signer = db.session.get(User, actor.id)
    event = _event(
        EVENT_SIGNED_OFF, task,
        f"Task signed off by {signer.display_name if signer else actor.id}.",
        facts=[("Country", task.country_code), ("Steps", str(len(task.steps)))],
    )
    return OperationResult(task=task, events=[event])


@_rollback_on_error
def mark_deployed(
    task_id: int,
    actor: Actor,
    release_version: str | None = None,
    expected_updated_at=None,
) -> OperationResult:
    """PASSED → DEPLOYED on a signed-off task. The lock stays in place."""
    ensure_admin(actor, "deployment")
    task = lc.load_task_for_write(task_id)
    lc.check_freshness(task.updated_at, expected_updated_at)
    if not lc.is_locked(task):
        raise SignOffRejected("Task must be signed off before it can be deployed")
    if task.status == STATUS_DEPLOYED:
        db.session.rollback()
        return OperationResult(task=task, unchanged=True)

    now = lc.touch(task, actor.id)
    task.deployed_at = now
    task.release_version = release_version
    _write_status(task, STATUS_DEPLOYED, actor.id, source="DEPLOYMENT")
    task_history.record(
        task.id, actor.id, ACTION_DEPLOYED,
        f"Deployed{f' in {release_version}' if release_version else ''}",
        after={"deployed_at": now.isoformat(), "release_version": release_version},
    )
    db.session.commit()
    event = _event(
        EVENT_DEPLOYED, task, "Task has been deployed to production.",
        facts=[("Country", task.country_code), ("Release", release_version or "-")],
    )
    return OperationResult(task=task, events=[event])


# ═══════════════════════════════════════════════════════════════════════════
# Create / delete / remind
# ═══════════════════════════════════════════════════════════════════════════


@_rollback_on_error
def create_tasks(actor: Actor, data) -> OperationResult:
    """Create one DRAFT task per selected country.

    ``data`` is a TaskCreateInput. Several countries share a fresh
    ``task_group_id``. Template steps with a ``country_filter`` are only
    copied to that country.
    """
    ensure_admin(actor, "task creation")
    group_id = str(uuid.uuid4()) if len(data.country_codes) > 1 else None

    assignees = {}
    for country in data.country_codes:
        assignees[country] = _resolve_assignee(data.assignees.get(country), country)

    created = []
    events = []
    now = datetime.now(timezone.utc)
    for country in data.country_codes:
        task = Task(
            title=data.title,
            description=data.description,
            status=STATUS_DRAFT,
            priority=data.priority,
            country_code=country,
            module_name=data.module_name,
            due_date=data.due_date,
            jira_ticket=data.jira_ticket,
            cr_number=data.cr_number,
            developer=data.developer,
            task_group_id=group_id,
            assignee_id=assignees[country].id if assignees[country] else None,
            created_at=now,
            updated_at=now,
            updated_by_id=actor.id,
        )
        order = 0
        for tpl in data.steps:
            if tpl.country_filter and tpl.country_filter != country:
                continue
            order += 1
            task.steps.append(TaskStep(
                order=order,
                description=tpl.description,
                expected_result=tpl.expected_result,
                test_data=tpl.test_data,
                actual_result=tpl.actual_result,
                attachments=[],
            ))
        db.session.add(task)
        db.session.flush()
        task_history.record(
            task.id, actor.id, ACTION_CREATED,
            f"Task created for {country}",
            after={"status": STATUS_DRAFT, "step_count": order},
            metadata={"task_group_id": group_id},
        )
        created.append(task)
        if assignees[country] is not None:
            events.append(_assigned_event(task, assignees[country]))

    db.session.commit()
    logger.info(
        "Created %d task(s) for %s", len(created), ",".join(data.country_codes),
        extra={"actor_id": actor.id, "event_type": ACTION_CREATED},
    )
    return OperationResult(
        task=None,
        events=events,
        extra={"task_group_id": group_id, "tasks": [t.to_dict() for t in created]},
    )


@_rollback_on_error
def delete_task(task_id: int, actor: Actor) -> OperationResult:
    """Delete a task. The DELETED history entry is written first and survives."""
    ensure_admin(actor, "task deletion")
    task = lc.load_task_for_write(task_id)
    lc.ensure_unlocked(task)
    task_history.record(
        task.id, actor.id, ACTION_DELETED, f"Task '{task.title}' deleted",
        before={
            "title": task.title,
            "country_code": task.country_code,
            "status": task.status,
            "task_group_id": task.task_group_id,
        },
    )
    db.session.delete(task)
    db.session.commit()
    logger.info(
        "Task %s deleted", task_id,
        extra={"task_id": task_id, "actor_id": actor.id, "event_type": ACTION_DELETED},
    )
    return OperationResult(task=None, extra={"deleted_id": task_id})


@_rollback_on_error
def send_reminder(
    task_id: int,
    actor: Actor,
    cooldown: AdminActionCooldown | None = None,
    cooldown_seconds: float | None = None,
    today: date | None = None,
) -> OperationResult:
    """Nudge the assignee. At most one reminder per task per cooldown window."""
    ensure_admin(actor, "reminders")
    task = lc.load_task_for_write(task_id)
    lc.ensure_unlocked(task)
    if task.assignee is None:
        raise ValidationError("Task has no assignee to remind")

    cooldown = cooldown or AdminActionCooldown(get_cooldown_store())
    if cooldown_seconds is None:
        cooldown_seconds = current_app.config.get("ADMIN_ACTION_COOLDOWN_SECONDS", 60)
    key = f"reminder:{task.id}"
    if not cooldown.try_acquire(key, cooldown_seconds):
        raise CooldownActive(key, cooldown.retry_after(key, cooldown_seconds))

    today = today or datetime.now(timezone.utc).date()
    days_left = (task.due_date - today).days if task.due_date else None
    facts = [("Status", to_label(task.status)), ("Country", task.country_code)]
    if task.due_date:
        facts.append(("Due date", task.due_date.isoformat()))
        facts.append(("Days left", str(days_left)))

    task_history.record(
        task.id, actor.id, ACTION_REMINDER_SENT,
        f"Reminder sent to {task.assignee.display_name}",
        metadata={"assignee_id": task.assignee_id, "days_left": days_left},
    )
    db.session.commit()
    event = _event(
        EVENT_REMINDER, task,
        "This UAT task is still waiting for your test results.",
        facts=facts,
        recipient=task.assignee,
    )
    return OperationResult(task=task, events=[event], extra={"days_left": days_left})


def notify_assigned(task_id: int, actor: Actor) -> OperationResult:
    """Resend the assignment notice to the current assignee. Writes nothing."""
    ensure_admin(actor, "assignment notices")
    task = db.session.get(Task, task_id)
    if task is None:
        raise NotFoundError(resource="Task", resource_id=task_id)
    if task.assignee is None or not task.assignee.email:
        raise ValidationError("Task has no assignee email to notify", details={"assignee_id": task.assignee_id})
    logger.info(
        "Assignment notice requested for task %s", task.id,
        extra={"task_id": task.id, "actor_id": actor.id, "event_type": EVENT_TASK_ASSIGNED},
    )
    return OperationResult(task=task, events=[_assigned_event(task, task.assignee)])


# ═══════════════════════════════════════════════════════════════════════════
# Reads
# ═══════════════════════════════════════════════════════════════════════════


def get_task(task_id: int, actor: Actor) -> Task:
    task = db.session.get(Task, task_id)
    if task is None:
        raise NotFoundError(resource="Task", resource_id=task_id)
    ensure_can_access(actor, task)
    return task


def list_tasks(actor: Actor, status=None, country=None, group=None) -> list[Task]:
    """Tasks visible to ``actor``. An unknown ``status`` filter is rejected."""
    query = select(Task)
    if status:
        parsed = parse_status_strict(status)
        if parsed is None:
            raise ValidationError(f"Unknown status filter: {status}", details={"status": status})
        query = query.where(Task.status == parsed.value)
    if country:
        query = query.where(Task.country_code == country.upper())
    if group:
        query = query.where(Task.task_group_id == group)
    if not actor.is_admin:
        query = query.where(Task.assignee_id == actor.id, Task.country_code == actor.country_code)
    query = query.order_by(Task.due_date.is_(None), Task.due_date, Task.id)
    return db.session.execute(query).scalars().all()


def get_history(task_id: int, actor: Actor, limit: int | None = None) -> list[dict]:
    get_task(task_id, actor)
    if limit is None:
        limit = current_app.config.get("HISTORY_PAGE_SIZE", task_history.DEFAULT_HISTORY_LIMIT)
    return task_history.list_history(task_id, limit=limit)


def get_group_preview(task_id: int, actor: Actor) -> dict:
    ensure_admin(actor, "group preview")
    task = get_task(task_id, actor)
    return group_propagation.group_preview(task)
