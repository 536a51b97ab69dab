"""
Task blueprint — REST surface for the UAT task lifecycle.

Endpoints (prefix /api/v1):
    GET    /tasks                               list (filters: status, country, group)
    POST   /tasks                               create one task per country
    GET    /tasks/<id>                          detail incl. steps and comments
    PATCH  /tasks/<id>                          metadata edit (propagateToGroup)
    DELETE /tasks/<id>                          delete
    POST   /tasks/<id>/status                   change status
    GET    /tasks/<id>/group-preview            sibling counts for the edit dialog
    GET    /tasks/<id>/history                  activity, newest first
    POST   /tasks/<id>/steps                    add step
    POST   /tasks/<id>/steps/import             replace all steps
    PATCH  /tasks/<id>/steps/<step_id>          outcome or (admin) definition edit
    DELETE /tasks/<id>/steps/<step_id>          delete step
    POST   /tasks/<id>/comments                 add comment
    POST   /tasks/<id>/comments/read            mark comments read
    GET    /comments/unread-count               unread comments for the caller
    POST   /tasks/<id>/signoff                  sign off (locks the task)
    POST   /tasks/<id>/deploy                   mark deployed
    POST   /tasks/<id>/reminder                 remind the assignee
    POST   /tasks/<id>/notify-assigned          resend the assignment notice
    GET    /activities                          activity feed with read flags
    POST   /activities/mark-read                {activityId} or {all: true}
    GET    /inbox                               unread comments grouped by task
    POST   /inbox/mark-read                     {taskId} or {all: true}

Services commit; this layer parses input, maps exceptions to error bodies and
hands each result's events to the notification dispatcher after the commit.
"""

import logging

from flask import Blueprint, current_app, g, jsonify, request
from sqlalchemy.exc import SQLAlchemyError

from uat_tracker import limiter
from uat_tracker.core.exceptions import (
    CooldownActive,
    ForbiddenError,
    NotFoundError,
    TaskLifecycleError,
    ValidationError,
)
from uat_tracker.models import db
from uat_tracker.services import activity_service, task_inputs, task_service
from uat_tracker.services.notification_dispatcher import dispatcher
from uat_tracker.services.status_mapping import to_label
from uat_tracker.services.task_lifecycle import get_available_transitions
from uat_tracker.utils.errors import E, api_error

logger = logging.getLogger(__name__)

task_bp = Blueprint("task_bp", __name__, url_prefix="/api/v1/tasks")
comment_bp = Blueprint("comment_bp", __name__, url_prefix="/api/v1/comments")
activity_bp = Blueprint("activity_bp", __name__, url_prefix="/api/v1/activities")
inbox_bp = Blueprint("inbox_bp", __name__, url_prefix="/api/v1/inbox")


def _write_limit():
    return current_app.config.get("TASK_WRITE_RATE_LIMIT", "60/minute")


# ═════════════════════════════════════════════════════════════════════════
# Identity guard + error handlers
# ═════════════════════════════════════════════════════════════════════════


def _require_actor():
    if getattr(g, "actor", None) is None:
        return api_error(E.AUTH_REQUIRED, "Authentication required")
    return None


def _handle_lifecycle(error: TaskLifecycleError):
    resp, status = api_error(error.code, str(error), status=error.http_status, details=error.details)
    if isinstance(error, CooldownActive):
        resp.headers["Retry-After"] = str(max(1, int(round(error.retry_after))))
    return resp, status


def _handle_not_found(error: NotFoundError):
    return api_error(E.NOT_FOUND, str(error))


def _handle_validation(error: ValidationError):
    return api_error(E.VALIDATION_FAILED, str(error), details=error.details)


def _handle_forbidden(error: ForbiddenError):
    return api_error(E.FORBIDDEN, str(error))


def _handle_database(error: SQLAlchemyError):
    db.session.rollback()
    logger.exception("Database error in endpoint=%s", request.endpoint)
    return api_error(E.DATABASE, "Database error")


for _bp in (task_bp, comment_bp, activity_bp, inbox_bp):
    _bp.before_request(_require_actor)
    _bp.register_error_handler(TaskLifecycleError, _handle_lifecycle)
    _bp.register_error_handler(NotFoundError, _handle_not_found)
    _bp.register_error_handler(ValidationError, _handle_validation)
    _bp.register_error_handler(ForbiddenError, _handle_forbidden)
    _bp.register_error_handler(SQLAlchemyError, _handle_database)


# ── Helpers ──────────────────────────────────────────────────────────────


def _payload() -> dict:
    data = request.get_json(silent=True)
    return data if isinstance(data, dict) else {}


def _invalid(errors: dict):
    return api_error(E.VALIDATION_INVALID, "Invalid request", details=errors)


def _task_json(task, include_comments=False) -> dict:
    body = task.to_dict(include_steps=True, include_comments=include_comments)
    body["status_label"] = to_label(task.status)
    body["available_transitions"] = [] if task.is_locked else get_available_transitions(task.status)
    return body


def _respond(result, status=200):
    """Serialise an OperationResult, then deliver its events."""
    body = result.to_dict()
    if result.task is not None:
        body["task"] = _task_json(result.task)
    if result.events:
        dispatcher.dispatch(result.events)
    return jsonify(body), status


def _expected_from_request():
    # a blank value is passed through so the guard rejects it
    for key in ("expected_updated_at", "expectedUpdatedAt"):
        if key in request.args:
            return request.args[key]
    payload = _payload()
    return payload.get("expected_updated_at", payload.get("expectedUpdatedAt"))


# ═════════════════════════════════════════════════════════════════════════
# Tasks
# ═════════════════════════════════════════════════════════════════════════


@task_bp.route("", methods=["GET"])
def list_tasks():
    tasks = task_service.list_tasks(
        g.actor,
        status=request.args.get("status"),
        country=request.args.get("country"),
        group=request.args.get("group"),
    )
    return jsonify({"items": [_task_json(t) for t in tasks], "total": len(tasks)})


@task_bp.route("", methods=["POST"])
@limiter.limit(_write_limit)
def create_tasks():
    data, errors = task_inputs.parse_task_create(_payload())
    if errors:
        return _invalid(errors)
    return _respond(task_service.create_tasks(g.actor, data), status=201)


@task_bp.route("/<int:task_id>", methods=["GET"])
def get_task(task_id):
    task = task_service.get_task(task_id, g.actor)
    return jsonify(_task_json(task, include_comments=True))


@task_bp.route("/<int:task_id>", methods=["PATCH"])
@limiter.limit(_write_limit)
def update_task(task_id):
    data, errors = task_inputs.parse_metadata_edit(_payload())
    if errors:
        return _invalid(errors)
    result = task_service.apply_metadata_edit(
        task_id, data.delta, g.actor,
        expected_updated_at=data.expected_updated_at,
        propagate_to_group=data.propagate_to_group,
    )
    return _respond(result)


@task_bp.route("/<int:task_id>", methods=["DELETE"])
@limiter.limit(_write_limit)
def delete_task(task_id):
    return _respond(task_service.delete_task(task_id, g.actor))


@task_bp.route("/<int:task_id>/status", methods=["POST"])
@limiter.limit(_write_limit)
def change_status(task_id):
    data, errors = task_inputs.parse_status_change(_payload())
    if errors:
        return _invalid(errors)
    result = task_service.change_status(
        task_id, data.status, g.actor, expected_updated_at=data.expected_updated_at,
    )
    return _respond(result)


@task_bp.route("/<int:task_id>/group-preview", methods=["GET"])
def group_preview(task_id):
    return jsonify(task_service.get_group_preview(task_id, g.actor))


@task_bp.route("/<int:task_id>/history", methods=["GET"])
def history(task_id):
    limit = request.args.get("limit", type=int)
    if limit is not None and limit < 1:
        return _invalid({"limit": "must be ≥ 1"})
    items = task_service.get_history(task_id, g.actor, limit=limit)
    return jsonify({"items": items})


# ═════════════════════════════════════════════════════════════════════════
# Steps
# ═════════════════════════════════════════════════════════════════════════

_DEFINITION_KEYS = {"description", "expected_result", "expectedResult", "test_data", "testData"}
_OUTCOME_KEYS = {"is_passed", "isPassed", "actual_result", "actualResult", "attachments"}


@task_bp.route("/<int:task_id>/steps", methods=["POST"])
@limiter.limit(_write_limit)
def add_step(task_id):
    data, errors = task_inputs.parse_step_create(_payload())
    if errors:
        return _invalid(errors)
    result = task_service.add_step(
        task_id, g.actor,
        description=data.description,
        expected_result=data.expected_result,
        test_data=data.test_data,
        expected_updated_at=data.expected_updated_at,
    )
    return _respond(result, status=201)


@task_bp.route("/<int:task_id>/steps/import", methods=["POST"])
@limiter.limit(_write_limit)
def import_steps(task_id):
    data, errors = task_inputs.parse_step_import(_payload())
    if errors:
        return _invalid(errors)
    result = task_service.import_steps(
        task_id, g.actor, list(data.steps), expected_updated_at=data.expected_updated_at,
    )
    return _respond(result)


@task_bp.route("/<int:task_id>/steps/<int:step_id>", methods=["PATCH"])
@limiter.limit(_write_limit)
def update_step(task_id, step_id):
    payload = _payload()
    keys = set(payload)
    if keys & _DEFINITION_KEYS and keys & _OUTCOME_KEYS:
        return _invalid({"fields": "Send step definition and step result in separate requests"})

    if keys & _DEFINITION_KEYS:
        if not g.actor.is_admin:
            return api_error(E.FORBIDDEN, "Only admins may edit step definitions")
        data, errors = task_inputs.parse_step_definition(payload)
        if errors:
            return _invalid(errors)
        result = task_service.update_step_definition(
            task_id, step_id, g.actor,
            expected_updated_at=data.expected_updated_at,
            **data.changes,
        )
        return _respond(result)

    data, errors = task_inputs.parse_step_outcome(payload)
    if errors:
        return _invalid(errors)
    kwargs = {}
    if "is_passed" in data.fields:
        kwargs["is_passed"] = data.is_passed
    if "actual_result" in data.fields:
        kwargs["actual_result"] = data.actual_result
    if "attachments" in data.fields:
        kwargs["attachments"] = list(data.attachments)
    result = task_service.record_step_outcome(
        task_id, step_id, g.actor, expected_updated_at=data.expected_updated_at, **kwargs,
    )
    return _respond(result)


@task_bp.route("/<int:task_id>/steps/<int:step_id>", methods=["DELETE"])
@limiter.limit(_write_limit)
def delete_step(task_id, step_id):
    result = task_service.delete_step(
        task_id, step_id, g.actor, expected_updated_at=_expected_from_request(),
    )
    return _respond(result)


# ═════════════════════════════════════════════════════════════════════════
# Comments
# ═════════════════════════════════════════════════════════════════════════


@task_bp.route("/<int:task_id>/comments", methods=["POST"])
@limiter.limit(_write_limit)
def add_comment(task_id):
    data, errors = task_inputs.parse_comment(_payload())
    if errors:
        return _invalid(errors)
    result = task_service.add_comment(
        task_id, g.actor, data.body,
        step_order=data.step_order,
        expected_updated_at=data.expected_updated_at,
    )
    return _respond(result, status=201)


@task_bp.route("/<int:task_id>/comments/read", methods=["POST"])
def mark_comments_read(task_id):
    marked = task_service.mark_comments_read(task_id, g.actor)
    return jsonify({"marked": marked})


@comment_bp.route("/unread-count", methods=["GET"])
def unread_count():
    return jsonify({"count": task_service.unread_comment_count(g.actor)})


# ═════════════════════════════════════════════════════════════════════════
# Sign-off / deploy / reminder
# ═════════════════════════════════════════════════════════════════════════


@task_bp.route("/<int:task_id>/signoff", methods=["POST"])
@limiter.limit(_write_limit)
def sign_off(task_id):
    data, errors = task_inputs.parse_sign_off(_payload())
    if errors:
        return _invalid(errors)
    result = task_service.sign_off(
        task_id, g.actor,
        expected_updated_at=data.expected_updated_at,
        signature_data=data.signature_data,
    )
    return _respond(result)


@task_bp.route("/<int:task_id>/deploy", methods=["POST"])
@limiter.limit(_write_limit)
def deploy(task_id):
    data, errors = task_inputs.parse_deploy(_payload())
    if errors:
        return _invalid(errors)
    result = task_service.mark_deployed(
        task_id, g.actor,
        release_version=data.release_version,
        expected_updated_at=data.expected_updated_at,
    )
    return _respond(result)


@task_bp.route("/<int:task_id>/reminder", methods=["POST"])
@limiter.limit(_write_limit)
def send_reminder(task_id):
    return _respond(task_service.send_reminder(task_id, g.actor))


@task_bp.route("/<int:task_id>/notify-assigned", methods=["POST"])
@limiter.limit(_write_limit)
def notify_assigned(task_id):
    result = task_service.notify_assigned(task_id, g.actor)
    deliveries = dispatcher.dispatch(result.events)
    if any(d["email"] == "failed" for d in deliveries):
        return api_error(E.NOTIFICATION_FAILED, "Failed to send assignment email", details={"deliveries": deliveries})
    return jsonify({"ok": True, "deliveries": deliveries})


# ═════════════════════════════════════════════════════════════════════════
# Activity feed / inbox
# ═════════════════════════════════════════════════════════════════════════


@activity_bp.route("", methods=["GET"])
def list_activity():
    return jsonify({"items": activity_service.list_activity(g.actor)})


@activity_bp.route("/mark-read", methods=["POST"])
def mark_activity_read():
    data, errors = task_inputs.parse_mark_read(_payload(), "activity_id", "activityId")
    if errors:
        return _invalid(errors)
    marked = activity_service.mark_activity_read(g.actor, history_id=data.target_id, mark_all=data.mark_all)
    return jsonify({"ok": True, "marked": marked})


@inbox_bp.route("", methods=["GET"])
def list_inbox():
    return jsonify({"items": activity_service.list_inbox(g.actor)})


@inbox_bp.route("/mark-read", methods=["POST"])
def mark_inbox_read():
    data, errors = task_inputs.parse_mark_read(_payload(), "task_id", "taskId")
    if errors:
        return _invalid(errors)
    marked = activity_service.mark_inbox_read(g.actor, task_id=data.target_id, mark_all=data.mark_all)
    return jsonify({"ok": True, "marked": marked})
