"""
Actor and task access rules.

Admins may do everything. A stakeholder may only see and act on tasks that
are assigned to them AND belong to their own country.
"""

from __future__ import annotations

from dataclasses import dataclass

from uat_tracker.core.exceptions import ForbiddenError
from uat_tracker.models.auth import ROLE_ADMIN, ROLE_STAKEHOLDER


@dataclass(frozen=True)
class Actor:
    """The already-authenticated caller of an operation."""

    id: int
    role: str = ROLE_STAKEHOLDER
    country_code: str | None = None

    @property
    def is_admin(self) -> bool:
        return self.role == ROLE_ADMIN


def can_access(actor: Actor, task) -> bool:
    if actor.is_admin:
        return True
    return (
        task.assignee_id is not None
        and task.assignee_id == actor.id
        and task.country_code == actor.country_code
    )


def ensure_can_access(actor: Actor, task) -> None:
    if not can_access(actor, task):
        raise ForbiddenError("You do not have access to this task")


def ensure_admin(actor: Actor, action: str = "this action") -> None:
    if not actor.is_admin:
        raise ForbiddenError(f"Only admins may perform {action}")
