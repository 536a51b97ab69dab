"""
Identity middleware — resolves the calling actor and sets ``g.actor``.

Authentication happens upstream (SSO / magic link). By the time a request
reaches the API it carries either:
  1. ``Authorization: Bearer <jwt>`` (HS256, claims ``sub``, ``role``, ``country``)
  2. ``X-User-Id`` / ``X-User-Role`` / ``X-User-Country`` headers, accepted only
     when API_AUTH_ENABLED is false (local development and tests).

Repeated invalid tokens from one address are blocked for a while through
LoginFailureTracker, which shares its state with other instances via Redis.
"""

import logging

import jwt as pyjwt
from flask import current_app, g, request

from uat_tracker.models.auth import ROLE_STAKEHOLDER, USER_ROLES
from uat_tracker.services.access import Actor
from uat_tracker.services.cooldown import LoginFailureTracker, get_cooldown_store
from uat_tracker.utils.errors import E, api_error

logger = logging.getLogger(__name__)

ALGORITHM = "HS256"

IDENTITY_SKIP_PREFIXES = (
    "/api/v1/health",
)


def _secret():
    return current_app.config.get("JWT_SECRET_KEY") or current_app.config["SECRET_KEY"]


def encode_actor_token(actor: Actor) -> str:
    """Issue a token for ``actor``. Used by tests and local tooling."""
    payload = {"sub": str(actor.id), "role": actor.role}
    if actor.country_code:
        payload["country"] = actor.country_code
    return pyjwt.encode(payload, _secret(), algorithm=ALGORITHM)


def _actor_from_claims(claims: dict) -> Actor | None:
    try:
        user_id = int(claims.get("sub"))
    except (TypeError, ValueError):
        return None
    role = str(claims.get("role") or ROLE_STAKEHOLDER).upper()
    if role not in USER_ROLES:
        return None
    country = claims.get("country")
    return Actor(id=user_id, role=role, country_code=country.upper() if country else None)


def _actor_from_headers() -> Actor | None:
    raw_id = request.headers.get("X-User-Id")
    if not raw_id:
        return None
    return _actor_from_claims({
        "sub": raw_id,
        "role": request.headers.get("X-User-Role"),
        "country": request.headers.get("X-User-Country"),
    })


def _login_tracker() -> LoginFailureTracker:
    return LoginFailureTracker(
        get_cooldown_store(),
        max_attempts=current_app.config.get("LOGIN_MAX_ATTEMPTS", 3),
        block_seconds=current_app.config.get("LOGIN_BLOCK_SECONDS", 60),
    )


def init_identity_middleware(app):
    """Register the identity resolver as a before_request hook."""

    @app.before_request
    def _resolve_actor():
        g.actor = None

        path = request.path
        if not path.startswith("/api/v1/"):
            return None
        for prefix in IDENTITY_SKIP_PREFIXES:
            if path.startswith(prefix):
                return None

        auth_header = request.headers.get("Authorization", "")
        if auth_header.startswith("Bearer "):
            tracker = _login_tracker()
            key = request.remote_addr or "unknown"
            blocked = tracker.remaining_block_seconds(key)
            if blocked > 0:
                return api_error(
                    E.AUTH_REQUIRED, "Too many invalid tokens. Try again later.",
                    status=429, details={"retry_after_seconds": round(blocked, 1)},
                )
            try:
                claims = pyjwt.decode(auth_header[7:], _secret(), algorithms=[ALGORITHM])
            except pyjwt.InvalidTokenError as exc:
                tracker.record_failure(key)
                logger.warning("Rejected bearer token from %s: %s", key, exc)
                return None
            g.actor = _actor_from_claims(claims)
            if g.actor is not None:
                tracker.clear(key)
            return None

        if not current_app.config.get("API_AUTH_ENABLED", True):
            g.actor = _actor_from_headers()
        return None
