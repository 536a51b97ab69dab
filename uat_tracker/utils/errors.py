"""Standardised API error responses.

Usage
-----
    from uat_tracker.utils.errors import api_error, E

    return api_error(E.NOT_FOUND, "Task not found")
    return api_error(E.VALIDATION_INVALID, "Invalid payload", details=errors)
"""

from __future__ import annotations

from flask import jsonify


# ── Error code constants ──────────────────────────────────────────────
class E:
    """Machine-readable error code constants.

    Lifecycle codes mirror the ``code`` attribute of the exceptions in
    ``uat_tracker.core.exceptions`` so handlers can pass them straight through.
    """

    # Validation – HTTP 400
    VALIDATION_REQUIRED = "ERR_VALIDATION_REQUIRED"
    VALIDATION_INVALID = "ERR_VALIDATION_INVALID"

    # Auth – HTTP 401 / 403
    AUTH_REQUIRED = "AUTH_REQUIRED"
    FORBIDDEN = "FORBIDDEN"

    # Not-found – HTTP 404
    NOT_FOUND = "NOT_FOUND"

    # Task lifecycle
    STALE_WRITE = "STALE_WRITE"
    MALFORMED_EXPECTATION = "MALFORMED_EXPECTATION"
    TASK_LOCKED = "TASK_LOCKED_SIGNED_OFF"
    INVALID_TRANSITION = "INVALID_TRANSITION"
    TASK_NOT_READY = "TASK_NOT_READY"
    SIGNOFF_NOT_ALLOWED = "SIGNOFF_NOT_ALLOWED"
    ADMIN_COOLDOWN = "ADMIN_COOLDOWN"
    VALIDATION_FAILED = "VALIDATION_FAILED"

    # Server – HTTP 500 / 502
    DATABASE = "ERR_DATABASE"
    INTERNAL = "ERR_INTERNAL"
    NOTIFICATION_FAILED = "ERR_NOTIFICATION_FAILED"


# ── Default HTTP status mapping ───────────────────────────────────────
_DEFAULT_STATUS: dict[str, int] = {
    E.VALIDATION_REQUIRED: 400,
    E.VALIDATION_INVALID: 400,
    E.AUTH_REQUIRED: 401,
    E.FORBIDDEN: 403,
    E.NOT_FOUND: 404,
    E.STALE_WRITE: 409,
    E.MALFORMED_EXPECTATION: 400,
    E.TASK_LOCKED: 409,
    E.INVALID_TRANSITION: 409,
    E.TASK_NOT_READY: 409,
    E.SIGNOFF_NOT_ALLOWED: 422,
    E.ADMIN_COOLDOWN: 429,
    E.VALIDATION_FAILED: 422,
    E.DATABASE: 500,
    E.INTERNAL: 500,
    E.NOTIFICATION_FAILED: 502,
}


def api_error(
    code: str,
    message: str,
    *,
    status: int | None = None,
    details: dict | None = None,
):
    """Return a standard JSON error response.

    Parameters
    ----------
    code : str
        Machine-readable error code (use ``E.*`` constants).
    message : str
        Human-readable explanation for developers / UI.
    status : int, optional
        HTTP status override.  Falls back to ``_DEFAULT_STATUS[code]``,
        then to ``400``.
    details : dict, optional
        Extra structured payload (field errors, transition endpoints, etc.).

    Returns
    -------
    tuple[Response, int]
        ``(jsonify(body), http_status)`` – drop-in for Flask views.
    """

    http_status = status or _DEFAULT_STATUS.get(code, 400)

    body: dict = {
        "error": message,
        "code": code,
    }
    if details:
        body["details"] = details

    return jsonify(body), http_status
