"""
Platform-wide exception hierarchy.

Services raise these; the tasks blueprint registers one handler per family
and turns them into ``{"error", "code", "details"}`` responses with a stable
machine-readable code.

Usage:
    from uat_tracker.core.exceptions import NotFoundError, StaleWrite

    raise NotFoundError(resource="Task", resource_id=42)
    raise StaleWrite()

Lifecycle taxonomy (all abort the operation before any write):
    StaleWrite            409  client snapshot is outdated, refetch and retry
    MalformedExpectation  400  expected_updated_at could not be parsed
    LockedError           409  task is signed off
    TransitionRejected    409  status move is not in the transition table
    NotReadyError         409  stakeholder action on a DRAFT task
    SignOffRejected       422  sign-off preconditions not met
    CooldownActive        429  admin action repeated inside its cooldown

Internal only (never reach the caller):
    StatusReconciliationError  step aggregation wanted an illegal move
    AuditWriteFailure          history append failed, logged and swallowed
"""


class NotFoundError(Exception):
    """Raised when a requested resource does not exist.

    Args:
        resource: Human-readable model/entity name (e.g. "Task", "TaskStep").
        resource_id: The PK that was looked up. Included in logs and message.
    """

    code = "NOT_FOUND"
    http_status = 404

    def __init__(self, resource: str, resource_id: int | str | None = None) -> None:
        self.resource = resource
        self.resource_id = resource_id
        msg = f"{resource}"
        if resource_id is not None:
            msg += f" id={resource_id}"
        msg += " not found"
        super().__init__(msg)


class ValidationError(Exception):
    """Raised when input fails business-rule validation in the service layer.

    Maps to HTTP 422.

    Args:
        message: Human-readable explanation of what failed.
        details: Optional field-level breakdown. Keys are field names.
    """

    code = "VALIDATION_FAILED"
    http_status = 422

    def __init__(self, message: str, details: dict | None = None) -> None:
        self.details = details or {}
        super().__init__(message)


class ForbiddenError(Exception):
    """Raised when the actor's role or market does not allow the operation."""

    code = "FORBIDDEN"
    http_status = 403

    def __init__(self, message: str = "Forbidden") -> None:
        super().__init__(message)


# ── Task lifecycle ───────────────────────────────────────────────────────────


class TaskLifecycleError(Exception):
    """Base class for rejected task mutations. Carries ``code`` and ``http_status``."""

    code = "TASK_REJECTED"
    http_status = 409

    def __init__(self, message: str, details: dict | None = None) -> None:
        self.details = details or {}
        super().__init__(message)


class StaleWrite(TaskLifecycleError):
    """The client's expected_updated_at no longer matches the stored row."""

    code = "STALE_WRITE"
    http_status = 409

    def __init__(self, message: str = "Task was updated by another user. Refresh and try again.") -> None:
        super().__init__(message)


class MalformedExpectation(TaskLifecycleError):
    """expected_updated_at was sent but is not a valid timestamp."""

    code = "MALFORMED_EXPECTATION"
    http_status = 400

    def __init__(self, value=None) -> None:
        super().__init__("Invalid expectedUpdatedAt", details={"expected_updated_at": repr(value)})


class LockedError(TaskLifecycleError):
    """Mutation attempted against a signed-off task."""

    code = "TASK_LOCKED_SIGNED_OFF"
    http_status = 409

    def __init__(self, task_id=None) -> None:
        self.task_id = task_id
        super().__init__("Task is signed off and locked", details={"task_id": task_id})


class TransitionRejected(TaskLifecycleError):
    """Requested status move is not in the transition table."""

    code = "INVALID_TRANSITION"
    http_status = 409

    def __init__(self, from_status: str, to_status: str) -> None:
        self.from_status = from_status
        self.to_status = to_status
        super().__init__(
            f"Invalid status transition from {from_status} to {to_status}",
            details={"from": from_status, "to": to_status},
        )


class NotReadyError(TaskLifecycleError):
    """Stakeholder action attempted while the task is still DRAFT."""

    code = "TASK_NOT_READY"
    http_status = 409

    def __init__(self, action: str) -> None:
        self.action = action
        super().__init__(
            f"Task is still in DRAFT; an admin must mark it READY before '{action}'",
            details={"action": action},
        )


class SignOffRejected(TaskLifecycleError):
    """Sign-off requested before the task is PASSED with every step resolved."""

    code = "SIGNOFF_NOT_ALLOWED"
    http_status = 422


class CooldownActive(TaskLifecycleError):
    """Admin action repeated before its cooldown elapsed."""

    code = "ADMIN_COOLDOWN"
    http_status = 429

    def __init__(self, key: str, retry_after: float) -> None:
        self.key = key
        self.retry_after = retry_after
        super().__init__(
            "Please wait before repeating this action",
            details={"retry_after_seconds": round(retry_after, 1)},
        )


# ── Internal ─────────────────────────────────────────────────────────────────


class StatusReconciliationError(Exception):
    """Step aggregation derived a status the transition table does not allow."""

    def __init__(self, current: str, wanted: str) -> None:
        self.current = current
        self.wanted = wanted
        super().__init__(
            f"Step results imply {wanted} but {current} -> {wanted} is not a legal transition"
        )

    def to_dict(self) -> dict:
        return {"from": self.current, "wanted": self.wanted, "reason": str(self)}


class AuditWriteFailure(Exception):
    """History append failed. Logged by the recorder, never raised to callers."""

    def __init__(self, task_id, action: str, cause: Exception) -> None:
        self.task_id = task_id
        self.action = action
        self.cause = cause
        super().__init__(f"task history write failed task={task_id} action={action}: {cause}")
