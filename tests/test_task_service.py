"""
Task service operation tests.

Covers every operation in ``uat_tracker/services/task_service.py``:
idempotent status changes, stale writes, the sign-off lock, step
aggregation, step re-sequencing, comments, sign-off/deploy, task creation,
reminders and read access, plus the end-to-end SG scenario.
"""

from datetime import date

import pytest

from uat_tracker.core.exceptions import (
    CooldownActive,
    ForbiddenError,
    LockedError,
    MalformedExpectation,
    NotFoundError,
    NotReadyError,
    SignOffRejected,
    StaleWrite,
    TransitionRejected,
    ValidationError,
)
from uat_tracker.models import db
from uat_tracker.models.history import TaskHistory
from uat_tracker.models.task import Comment, Task, TaskStep
from uat_tracker.services import task_service
from uat_tracker.services.cooldown import AdminActionCooldown, MemoryCooldownStore
from uat_tracker.services.task_inputs import StepCreateInput, TaskCreateInput
from uat_tracker.utils.helpers import isoformat_utc


def _fresh(task_id) -> Task:
    db.session.expire_all()
    return db.session.get(Task, task_id)


def _token(task_id) -> str:
    return isoformat_utc(_fresh(task_id).updated_at)


def _history(task_id, action=None):
    q = db.session.query(TaskHistory).filter_by(task_id=task_id)
    if action:
        q = q.filter_by(action=action)
    return q.order_by(TaskHistory.id).all()


def _step_ids(task_id):
    return [s.id for s in _fresh(task_id).steps]


# ═════════════════════════════════════════════════════════════════════════════
# change_status
# ═════════════════════════════════════════════════════════════════════════════


class TestChangeStatus:
    def test_moves_and_records_history(self, make_task, admin):
        task = make_task()
        result = task_service.change_status(task.id, "BLOCKED", admin, expected_updated_at=_token(task.id))
        assert not result.unchanged
        assert result.task.status == "BLOCKED"
        entries = _history(task.id, "STATUS_CHANGED")
        assert len(entries) == 1
        assert entries[0].before == {"status": "READY"}
        assert entries[0].after == {"status": "BLOCKED"}

    def test_accepts_ui_label(self, make_task, admin):
        task = make_task()
        assert task_service.change_status(task.id, "In Progress", admin).task.status == "IN_PROGRESS"

    def test_idempotent_second_call(self, make_task, admin):
        task = make_task()
        task_service.change_status(task.id, "BLOCKED", admin, expected_updated_at=_token(task.id))
        token = _token(task.id)
        result = task_service.change_status(task.id, "BLOCKED", admin, expected_updated_at=token)
        assert result.unchanged is True
        assert len(_history(task.id, "STATUS_CHANGED")) == 1
        assert _token(task.id) == token

    def test_stale_expectation(self, make_task, admin):
        task = make_task()
        with pytest.raises(StaleWrite):
            task_service.change_status(
                task.id, "BLOCKED", admin, expected_updated_at="2001-01-01T00:00:00Z",
            )
        assert _fresh(task.id).status == "READY"

    def test_consumed_expectation_is_stale(self, make_task, admin):
        task = make_task()
        token = _token(task.id)
        task_service.change_status(task.id, "BLOCKED", admin, expected_updated_at=token)
        with pytest.raises(StaleWrite):
            task_service.change_status(task.id, "READY", admin, expected_updated_at=token)

    def test_malformed_expectation(self, make_task, admin):
        task = make_task()
        with pytest.raises(MalformedExpectation):
            task_service.change_status(task.id, "BLOCKED", admin, expected_updated_at="not-a-date")

    def test_blank_expectation_is_malformed(self, make_task, admin):
        task = make_task()
        with pytest.raises(MalformedExpectation):
            task_service.change_status(task.id, "IN_PROGRESS", admin, expected_updated_at="")
        assert _fresh(task.id).status == "READY"
        assert _history(task.id) == []

    def test_freshness_checked_before_transition(self, make_task, admin):
        task = make_task(status="DRAFT")
        with pytest.raises(StaleWrite):
            task_service.change_status(
                task.id, "PASSED", admin, expected_updated_at="2001-01-01T00:00:00Z",
            )

    def test_illegal_transition(self, make_task, admin):
        task = make_task(status="DRAFT")
        with pytest.raises(TransitionRejected):
            task_service.change_status(task.id, "PASSED", admin)
        assert _history(task.id) == []

    def test_deploy_not_allowed_through_status_change(self, make_task, admin):
        task = make_task(status="PASSED", steps=[True])
        with pytest.raises(ValidationError):
            task_service.change_status(task.id, "DEPLOYED", admin)

    def test_stakeholder_cannot_release_draft(self, make_task, stakeholder):
        task = make_task(status="DRAFT", assignee_id=stakeholder.id)
        with pytest.raises(NotReadyError):
            task_service.change_status(task.id, "READY", stakeholder)

    def test_stakeholder_outside_market_forbidden(self, make_task, stakeholder, other_stakeholder):
        task = make_task(assignee_id=stakeholder.id)
        with pytest.raises(ForbiddenError):
            task_service.change_status(task.id, "BLOCKED", other_stakeholder)

    def test_stakeholder_needs_assignment(self, make_task, stakeholder):
        task = make_task()
        with pytest.raises(ForbiddenError):
            task_service.change_status(task.id, "BLOCKED", stakeholder)

    def test_missing_task(self, admin):
        with pytest.raises(NotFoundError):
            task_service.change_status(404, "READY", admin)


# ═════════════════════════════════════════════════════════════════════════════
# Step outcomes and aggregation
# ═════════════════════════════════════════════════════════════════════════════


class TestRecordStepOutcome:
    def test_last_pass_drives_passed(self, make_task, stakeholder):
        task = make_task(status="IN_PROGRESS", steps=[True, None], assignee_id=stakeholder.id)
        last = _step_ids(task.id)[1]
        result = task_service.record_step_outcome(task.id, last, stakeholder, is_passed=True)
        assert result.task.status == "PASSED"
        assert result.extra["status_change"] == {"from": "IN_PROGRESS", "to": "PASSED"}
        assert result.extra["step"]["completed_at"] is not None

    def test_failure_drives_failed_and_emits_event(self, make_task, stakeholder):
        task = make_task(status="IN_PROGRESS", steps=[True, None], assignee_id=stakeholder.id)
        second = _step_ids(task.id)[1]
        result = task_service.record_step_outcome(
            task.id, second, stakeholder, is_passed=False, actual_result="Posting blocked",
        )
        assert result.task.status == "FAILED"
        assert [e.kind for e in result.events] == ["FAILED_STEP"]
        assert ("Actual result", "Posting blocked") in result.events[0].facts

    def test_first_pass_moves_ready_to_in_progress(self, make_task, stakeholder):
        task = make_task(status="READY", steps=[None, None, None], assignee_id=stakeholder.id)
        first = _step_ids(task.id)[0]
        result = task_service.record_step_outcome(task.id, first, stakeholder, is_passed=True)
        assert result.task.status == "IN_PROGRESS"

    def test_illegal_derived_status_is_reported_not_applied(self, make_task, stakeholder):
        task = make_task(status="BLOCKED", steps=[None], assignee_id=stakeholder.id)
        step_id = _step_ids(task.id)[0]
        result = task_service.record_step_outcome(task.id, step_id, stakeholder, is_passed=True)
        assert result.task.status == "BLOCKED"
        assert result.extra["reconciliation"]["wanted"] == "PASSED"
        assert _fresh(task.id).steps[0].is_passed is True

    def test_actual_result_only_keeps_outcome(self, make_task, stakeholder):
        task = make_task(status="IN_PROGRESS", steps=[True], assignee_id=stakeholder.id)
        step_id = _step_ids(task.id)[0]
        result = task_service.record_step_outcome(task.id, step_id, stakeholder, actual_result="OK")
        assert result.extra["step"]["is_passed"] is True
        assert result.extra["step"]["actual_result"] == "OK"

    def test_reset_outcome_clears_completed_at(self, make_task, stakeholder):
        task = make_task(status="FAILED", steps=[False], assignee_id=stakeholder.id)
        step_id = _step_ids(task.id)[0]
        result = task_service.record_step_outcome(task.id, step_id, stakeholder, is_passed=None)
        assert result.extra["step"]["is_passed"] is None
        assert result.extra["step"]["completed_at"] is None
        assert result.task.status == "FAILED"

    def test_same_outcome_is_unchanged(self, make_task, stakeholder):
        task = make_task(status="IN_PROGRESS", steps=[True, None], assignee_id=stakeholder.id)
        first = _step_ids(task.id)[0]
        token = _token(task.id)
        result = task_service.record_step_outcome(task.id, first, stakeholder, is_passed=True)
        assert result.unchanged is True
        assert _token(task.id) == token

    def test_draft_rejected(self, make_task, admin):
        task = make_task(status="DRAFT")
        with pytest.raises(NotReadyError):
            task_service.record_step_outcome(task.id, _step_ids(task.id)[0], admin, is_passed=True)

    def test_step_of_other_task(self, make_task, admin):
        task = make_task()
        other = make_task()
        with pytest.raises(NotFoundError):
            task_service.record_step_outcome(task.id, _step_ids(other.id)[0], admin, is_passed=True)

    def test_stale_write(self, make_task, stakeholder):
        task = make_task(assignee_id=stakeholder.id)
        with pytest.raises(StaleWrite):
            task_service.record_step_outcome(
                task.id, _step_ids(task.id)[0], stakeholder,
                is_passed=True, expected_updated_at="2001-01-01T00:00:00.000001Z",
            )


# ═════════════════════════════════════════════════════════════════════════════
# Step definitions
# ═════════════════════════════════════════════════════════════════════════════


class TestStepDefinitions:
    def test_update_definition_does_not_aggregate(self, make_task, admin):
        task = make_task(status="READY", steps=[True])
        step_id = _step_ids(task.id)[0]
        result = task_service.update_step_definition(
            task.id, step_id, admin, description="Open FB60", expected_result="Screen opens",
        )
        assert result.task.status == "READY"
        assert result.extra["step"]["description"] == "Open FB60"

    def test_stakeholder_cannot_edit_definition(self, make_task, stakeholder):
        task = make_task(assignee_id=stakeholder.id)
        with pytest.raises(ForbiddenError):
            task_service.update_step_definition(task.id, _step_ids(task.id)[0], stakeholder, description="x")

    def test_add_step_appends(self, make_task, admin):
        task = make_task(steps=[None, None])
        result = task_service.add_step(task.id, admin, "Check GL", "Balanced")
        assert result.extra["step"]["order"] == 3
        assert [s.order for s in _fresh(task.id).steps] == [1, 2, 3]

    def test_delete_step_resequences(self, make_task, admin):
        task = make_task(steps=[None, None, None])
        ids = _step_ids(task.id)
        task_service.delete_step(task.id, ids[1], admin)
        steps = _fresh(task.id).steps
        assert [s.order for s in steps] == [1, 2]
        assert [s.description for s in steps] == ["Step 1", "Step 3"]
        assert db.session.get(TaskStep, ids[1]) is None
        assert _history(task.id, "STEP_DELETED")[0].before["order"] == 2

    def test_delete_step_locked(self, make_task, admin):
        from datetime import datetime, timezone

        task = make_task(steps=[True], status="PASSED", signed_off_at=datetime.now(timezone.utc))
        with pytest.raises(LockedError):
            task_service.delete_step(task.id, _step_ids(task.id)[0], admin)

    def test_import_replaces_steps(self, make_task, admin):
        task = make_task(steps=[True, False])
        steps = [
            StepCreateInput(description="Log in", expected_result="Home page"),
            StepCreateInput(description="Run MIRO", expected_result="Invoice parked", test_data="PO 4500001"),
            StepCreateInput(description="Post", expected_result="Doc number"),
        ]
        task_service.import_steps(task.id, admin, steps)
        fresh = _fresh(task.id)
        assert [(s.order, s.description, s.is_passed) for s in fresh.steps] == [
            (1, "Log in", None), (2, "Run MIRO", None), (3, "Post", None),
        ]
        entry = _history(task.id, "STEPS_IMPORTED")[0]
        assert entry.before == {"step_count": 2}
        assert entry.after == {"step_count": 3}
        assert entry.meta == {"source": "IMPORT_WIZARD"}

    def test_import_requires_steps(self, make_task, admin):
        task = make_task()
        with pytest.raises(ValidationError):
            task_service.import_steps(task.id, admin, [])


# ═════════════════════════════════════════════════════════════════════════════
# Metadata edit
# ═════════════════════════════════════════════════════════════════════════════


class TestMetadataEdit:
    def test_partial_update(self, make_task, admin):
        task = make_task(jira_ticket="EO-1")
        result = task_service.apply_metadata_edit(task.id, {"title": "New", "cr_number": "CR-9"}, admin)
        fresh = _fresh(task.id)
        assert (fresh.title, fresh.cr_number, fresh.jira_ticket) == ("New", "CR-9", "EO-1")
        assert result.extra == {}
        entry = _history(task.id, "METADATA_UPDATED")[0]
        assert entry.before == {"title": "Verify invoice posting", "cr_number": None}

    def test_no_real_change_is_unchanged(self, make_task, admin):
        task = make_task()
        result = task_service.apply_metadata_edit(task.id, {"title": "Verify invoice posting"}, admin)
        assert result.unchanged is True
        assert _history(task.id) == []

    def test_unknown_fields_ignored(self, make_task, admin):
        task = make_task()
        task_service.apply_metadata_edit(task.id, {"status": "PASSED", "title": "T"}, admin)
        assert _fresh(task.id).status == "READY"

    def test_assignee_change_emits_event(self, make_task, admin, stakeholder):
        task = make_task()
        result = task_service.apply_metadata_edit(task.id, {"assignee_id": stakeholder.id}, admin)
        assert [e.kind for e in result.events] == ["TASK_ASSIGNED"]
        assert result.events[0].recipient_email == "sg.tester@example.com"

    def test_assignee_from_other_market_rejected(self, make_task, admin, other_stakeholder):
        task = make_task()
        with pytest.raises(ValidationError):
            task_service.apply_metadata_edit(task.id, {"assignee_id": other_stakeholder.id}, admin)

    def test_stakeholder_forbidden(self, make_task, stakeholder):
        task = make_task(assignee_id=stakeholder.id)
        with pytest.raises(ForbiddenError):
            task_service.apply_metadata_edit(task.id, {"title": "x"}, stakeholder)


# ═════════════════════════════════════════════════════════════════════════════
# Lock
# ═════════════════════════════════════════════════════════════════════════════


class TestSignOffLock:
    @pytest.fixture()
    def signed(self, make_task, stakeholder):
        task = make_task(status="PASSED", steps=[True, True], assignee_id=stakeholder.id)
        task_service.sign_off(task.id, stakeholder, expected_updated_at=_token(task.id))
        return task.id

    def test_sign_off_sets_lock(self, signed, stakeholder):
        fresh = _fresh(signed)
        assert fresh.is_locked
        assert fresh.signed_off_by_id == stakeholder.id
        assert isoformat_utc(fresh.signed_off_at) == isoformat_utc(fresh.updated_at)

    def test_step_outcome_locked(self, signed, stakeholder):
        with pytest.raises(LockedError):
            task_service.record_step_outcome(
                signed, _step_ids(signed)[0], stakeholder,
                is_passed=False, expected_updated_at=_token(signed),
            )

    def test_metadata_locked(self, signed, admin):
        with pytest.raises(LockedError):
            task_service.apply_metadata_edit(signed, {"title": "x"}, admin, expected_updated_at=_token(signed))

    def test_status_locked(self, signed, admin):
        with pytest.raises(LockedError):
            task_service.change_status(signed, "FAILED", admin, expected_updated_at=_token(signed))

    def test_comment_locked(self, signed, stakeholder):
        with pytest.raises(LockedError):
            task_service.add_comment(signed, stakeholder, "late remark")

    def test_second_sign_off_locked(self, signed, stakeholder):
        with pytest.raises(LockedError):
            task_service.sign_off(signed, stakeholder)

    def test_delete_locked(self, signed, admin):
        with pytest.raises(LockedError):
            task_service.delete_task(signed, admin)

    def test_sign_off_emits_event_and_history(self, make_task, stakeholder):
        task = make_task(status="PASSED", steps=[True], assignee_id=stakeholder.id)
        result = task_service.sign_off(task.id, stakeholder, signature_data="data:image/png;base64,AA==")
        assert [e.kind for e in result.events] == ["SIGNED_OFF"]
        assert "Sam Tester" in result.events[0].text
        assert _history(task.id, "SIGNED_OFF")[0].meta == {"has_signature": True}


class TestSignOffPreconditions:
    def test_requires_passed(self, make_task, stakeholder):
        task = make_task(status="FAILED", steps=[False], assignee_id=stakeholder.id)
        with pytest.raises(SignOffRejected) as exc:
            task_service.sign_off(task.id, stakeholder)
        assert exc.value.http_status == 422

    def test_requires_every_step_resolved(self, make_task, stakeholder):
        task = make_task(status="PASSED", steps=[True, None], assignee_id=stakeholder.id)
        with pytest.raises(SignOffRejected) as exc:
            task_service.sign_off(task.id, stakeholder)
        assert exc.value.details == {"pending_steps": [2]}
        assert not _fresh(task.id).is_locked


class TestDeploy:
    def test_requires_sign_off(self, make_task, admin):
        task = make_task(status="PASSED", steps=[True])
        with pytest.raises(SignOffRejected):
            task_service.mark_deployed(task.id, admin)

    def test_deploy_keeps_lock(self, make_task, admin, stakeholder):
        task = make_task(status="PASSED", steps=[True], assignee_id=stakeholder.id)
        task_service.sign_off(task.id, stakeholder)
        result = task_service.mark_deployed(task.id, admin, release_version="2026.04")
        fresh = _fresh(task.id)
        assert fresh.status == "DEPLOYED"
        assert fresh.release_version == "2026.04"
        assert fresh.is_locked
        assert [e.kind for e in result.events] == ["DEPLOYED"]
        assert task_service.mark_deployed(task.id, admin).unchanged is True
        with pytest.raises(LockedError):
            task_service.change_status(task.id, "PASSED", admin)

    def test_admin_only(self, make_task, stakeholder):
        task = make_task(assignee_id=stakeholder.id)
        with pytest.raises(ForbiddenError):
            task_service.mark_deployed(task.id, stakeholder)


# ═════════════════════════════════════════════════════════════════════════════
# Comments
# ═════════════════════════════════════════════════════════════════════════════


class TestComments:
    def test_stakeholder_blocked_on_draft(self, make_task, stakeholder):
        task = make_task(status="DRAFT", assignee_id=stakeholder.id)
        with pytest.raises(NotReadyError):
            task_service.add_comment(task.id, stakeholder, "Can't start yet?")

    def test_admin_may_comment_on_draft(self, make_task, admin):
        task = make_task(status="DRAFT")
        result = task_service.add_comment(task.id, admin, "Internal note")
        assert result.extra["comment"]["body"] == "Internal note"

    def test_step_order_must_exist(self, make_task, admin):
        task = make_task(steps=[None])
        with pytest.raises(ValidationError):
            task_service.add_comment(task.id, admin, "x", step_order=2)

    def test_comment_does_not_move_token(self, make_task, stakeholder):
        task = make_task(assignee_id=stakeholder.id)
        token = _token(task.id)
        task_service.add_comment(task.id, stakeholder, "Looks good", expected_updated_at=token)
        assert _token(task.id) == token
        assert _history(task.id, "COMMENT_ADDED")[0].meta["step_order"] is None

    def test_unread_counts_and_mark_read(self, make_task, admin, stakeholder):
        task = make_task(assignee_id=stakeholder.id)
        task_service.add_comment(task.id, admin, "Please retest step 1")
        task_service.add_comment(task.id, admin, "And step 2")
        assert task_service.unread_comment_count(stakeholder) == 2
        assert task_service.unread_comment_count(admin) == 0
        assert task_service.mark_comments_read(task.id, stakeholder) == 2
        assert task_service.unread_comment_count(stakeholder) == 0
        assert task_service.mark_comments_read(task.id, stakeholder) == 0

    def test_unread_scoped_to_visible_tasks(self, make_task, admin, stakeholder):
        other = make_task(country_code="MY")
        task_service.add_comment(other.id, admin, "Not for SG")
        assert task_service.unread_comment_count(stakeholder) == 0
        assert db.session.query(Comment).count() == 1


# ═════════════════════════════════════════════════════════════════════════════
# Create / delete / remind / read
# ═════════════════════════════════════════════════════════════════════════════


def _create_input(**overrides):
    data = {
        "title": "Vendor master change",
        "country_codes": ("SG", "MY"),
        "module_name": "MM",
        "due_date": date(2026, 5, 1),
        "steps": (
            StepCreateInput(description="Open XK02", expected_result="Vendor shown"),
            StepCreateInput(description="Check SG tax code", expected_result="SR", country_filter="SG"),
        ),
    }
    data.update(overrides)
    return TaskCreateInput(**data)


class TestCreateTasks:
    def test_one_draft_task_per_country_sharing_group(self, admin, stakeholder):
        result = task_service.create_tasks(admin, _create_input(assignees={"SG": stakeholder.id}))
        tasks = result.extra["tasks"]
        assert [t["country_code"] for t in tasks] == ["SG", "MY"]
        assert {t["status"] for t in tasks} == {"DRAFT"}
        assert tasks[0]["task_group_id"] == tasks[1]["task_group_id"] == result.extra["task_group_id"]
        assert len(tasks[0]["steps"]) == 2
        assert len(tasks[1]["steps"]) == 1
        assert [e.kind for e in result.events] == ["TASK_ASSIGNED"]
        assert _history(tasks[0]["id"], "CREATED")[0].meta == {"task_group_id": result.extra["task_group_id"]}

    def test_single_country_has_no_group(self, admin):
        result = task_service.create_tasks(admin, _create_input(country_codes=("SG",)))
        assert result.extra["task_group_id"] is None
        assert result.extra["tasks"][0]["task_group_id"] is None

    def test_unknown_assignee_rejected(self, admin):
        with pytest.raises(ValidationError):
            task_service.create_tasks(admin, _create_input(assignees={"SG": 999}))
        assert db.session.query(Task).count() == 0

    def test_stakeholder_forbidden(self, stakeholder):
        with pytest.raises(ForbiddenError):
            task_service.create_tasks(stakeholder, _create_input())


class TestDeleteTask:
    def test_history_written_before_delete(self, make_task, admin):
        task = make_task(steps=[None, None])
        task_id = task.id
        task_service.delete_task(task_id, admin)
        assert _fresh(task_id) is None
        assert db.session.query(TaskStep).count() == 0
        assert [h.action for h in _history(task_id)] == ["DELETED"]


class TestReminder:
    def test_cooldown_blocks_repeat(self, make_task, admin, stakeholder, clock):
        task = make_task(assignee_id=stakeholder.id, due_date=date(2026, 5, 10))
        cooldown = AdminActionCooldown(MemoryCooldownStore(clock), clock)
        result = task_service.send_reminder(
            task.id, admin, cooldown=cooldown, cooldown_seconds=60, today=date(2026, 5, 7),
        )
        assert result.extra["days_left"] == 3
        assert result.events[0].kind == "REMINDER"
        assert result.events[0].recipient_email == "sg.tester@example.com"

        clock.advance(10)
        with pytest.raises(CooldownActive) as exc:
            task_service.send_reminder(task.id, admin, cooldown=cooldown, cooldown_seconds=60)
        assert exc.value.retry_after == 50
        assert len(_history(task.id, "REMINDER_SENT")) == 1

        clock.advance(50)
        task_service.send_reminder(task.id, admin, cooldown=cooldown, cooldown_seconds=60)
        assert len(_history(task.id, "REMINDER_SENT")) == 2

    def test_default_cooldown_from_config(self, make_task, admin, stakeholder):
        task = make_task(assignee_id=stakeholder.id)
        task_service.send_reminder(task.id, admin)
        with pytest.raises(CooldownActive):
            task_service.send_reminder(task.id, admin)

    def test_requires_assignee(self, make_task, admin):
        task = make_task()
        with pytest.raises(ValidationError):
            task_service.send_reminder(task.id, admin)


class TestNotifyAssigned:
    def test_returns_assignment_event_without_writing(self, make_task, admin, stakeholder):
        task = make_task(assignee_id=stakeholder.id, due_date=date(2026, 5, 10))
        token = _token(task.id)
        result = task_service.notify_assigned(task.id, admin)
        event = result.events[0]
        assert event.kind == "TASK_ASSIGNED"
        assert event.recipient_email == "sg.tester@example.com"
        assert ("Due date", "2026-05-10") in event.facts
        assert _token(task.id) == token
        assert _history(task.id) == []

    def test_missing_task(self, admin):
        with pytest.raises(NotFoundError):
            task_service.notify_assigned(999, admin)

    def test_requires_assignee(self, make_task, admin):
        task = make_task()
        with pytest.raises(ValidationError):
            task_service.notify_assigned(task.id, admin)

    def test_admin_only(self, make_task, stakeholder):
        task = make_task(assignee_id=stakeholder.id)
        with pytest.raises(ForbiddenError):
            task_service.notify_assigned(task.id, stakeholder)


class TestReads:
    def test_stakeholder_sees_only_own_market_assignments(self, make_task, admin, stakeholder):
        mine = make_task(assignee_id=stakeholder.id)
        make_task()
        make_task(country_code="MY", assignee_id=stakeholder.id)
        assert [t.id for t in task_service.list_tasks(stakeholder)] == [mine.id]
        assert len(task_service.list_tasks(admin)) == 3

    def test_status_filter_is_strict(self, make_task, admin):
        make_task(status="FAILED")
        make_task(status="READY")
        assert len(task_service.list_tasks(admin, status="Failed")) == 1
        assert len(task_service.list_tasks(admin, status="Pending")) == 1
        with pytest.raises(ValidationError):
            task_service.list_tasks(admin, status="Done")

    def test_get_task_access(self, make_task, stakeholder, other_stakeholder):
        task = make_task(status="DRAFT", assignee_id=stakeholder.id)
        assert task_service.get_task(task.id, stakeholder).id == task.id
        with pytest.raises(ForbiddenError):
            task_service.get_task(task.id, other_stakeholder)

    def test_history_newest_first(self, make_task, admin):
        task = make_task()
        task_service.change_status(task.id, "BLOCKED", admin)
        task_service.change_status(task.id, "READY", admin)
        items = task_service.get_history(task.id, admin)
        assert [i["after"]["status"] for i in items] == ["READY", "BLOCKED"]


# ═════════════════════════════════════════════════════════════════════════════
# End-to-end
# ═════════════════════════════════════════════════════════════════════════════


class TestEndToEndSG:
    def test_draft_to_signed_off(self, admin, stakeholder):
        created = task_service.create_tasks(admin, TaskCreateInput(
            title="AP invoice approval",
            country_codes=("SG",),
            assignees={"SG": stakeholder.id},
            steps=(StepCreateInput(description="Approve invoice", expected_result="Approved"),),
        ))
        task_id = created.extra["tasks"][0]["id"]
        step_id = _step_ids(task_id)[0]
        assert _fresh(task_id).status == "DRAFT"

        with pytest.raises(NotReadyError):
            task_service.add_comment(task_id, stakeholder, "Ready to test?")

        task_service.change_status(task_id, "READY", admin, expected_updated_at=_token(task_id))
        task_service.add_comment(task_id, stakeholder, "Starting now", expected_updated_at=_token(task_id))

        result = task_service.record_step_outcome(
            task_id, step_id, stakeholder, is_passed=True, expected_updated_at=_token(task_id),
        )
        assert result.task.status == "PASSED"

        task_service.sign_off(task_id, stakeholder, expected_updated_at=_token(task_id))
        assert _fresh(task_id).is_locked

        with pytest.raises(LockedError):
            task_service.record_step_outcome(
                task_id, step_id, stakeholder, is_passed=False, expected_updated_at=_token(task_id),
            )

        actions = [h.action for h in _history(task_id)]
        assert actions == [
            "CREATED", "STATUS_CHANGED", "COMMENT_ADDED",
            "STEP_UPDATED", "STATUS_CHANGED", "SIGNED_OFF",
        ]
