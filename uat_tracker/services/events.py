"""
Post-commit task events.

Core operations never call email or Teams directly. They return a list of
TaskEvent objects alongside their result; the blueprint hands that list to
NotificationDispatcher after the database commit has succeeded.
"""

from __future__ import annotations

from dataclasses import dataclass, field

EVENT_TASK_ASSIGNED = "TASK_ASSIGNED"
EVENT_REMINDER = "REMINDER"
EVENT_SIGNED_OFF = "SIGNED_OFF"
EVENT_FAILED_STEP = "FAILED_STEP"
EVENT_DEPLOYED = "DEPLOYED"

EVENT_KINDS = {
    EVENT_TASK_ASSIGNED,
    EVENT_REMINDER,
    EVENT_SIGNED_OFF,
    EVENT_FAILED_STEP,
    EVENT_DEPLOYED,
}


@dataclass(frozen=True)
class TaskEvent:
    kind: str
    task_id: int
    country_code: str | None
    title: str
    text: str
    facts: tuple = ()
    recipient_email: str | None = None
    recipient_name: str | None = None

    def to_dict(self) -> dict:
        return {
            "kind": self.kind,
            "task_id": self.task_id,
            "country_code": self.country_code,
            "title": self.title,
            "text": self.text,
            "facts": [{"name": n, "value": v} for n, v in self.facts],
            "recipient_email": self.recipient_email,
        }


@dataclass
class OperationResult:
    """Outcome of one core operation plus its post-commit outbox."""

    task: object | None
    unchanged: bool = False
    events: list[TaskEvent] = field(default_factory=list)
    extra: dict = field(default_factory=dict)

    def to_dict(self) -> dict:
        body = {"unchanged": self.unchanged}
        if self.task is not None:
            body["task"] = self.task.to_dict()
        body.update(self.extra)
        return body
