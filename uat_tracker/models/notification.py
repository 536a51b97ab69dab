"""
UAT Tracker
Per-country notification configuration.

Models:
    - NotificationConfig: Teams webhook target and per-event switches for one market.
"""

from datetime import datetime, timezone

from uat_tracker.models import db

# Event kind → flag column that enables it.
EVENT_FLAG_FIELDS = {
    "TASK_ASSIGNED": "notify_task_assigned",
    "REMINDER": "notify_reminder",
    "SIGNED_OFF": "notify_signed_off",
    "FAILED_STEP": "notify_failed_step",
}


class NotificationConfig(db.Model):
    """Teams webhook routing for one country."""

    __tablename__ = "notification_configs"

    id = db.Column(db.Integer, primary_key=True)
    country_code = db.Column(db.String(8), nullable=False, unique=True, index=True)
    teams_webhook_url = db.Column(db.String(500), nullable=True)
    is_active = db.Column(db.Boolean, nullable=False, default=True)

    notify_task_assigned = db.Column(db.Boolean, nullable=False, default=True)
    notify_reminder = db.Column(db.Boolean, nullable=False, default=True)
    notify_signed_off = db.Column(db.Boolean, nullable=False, default=True)
    notify_failed_step = db.Column(db.Boolean, nullable=False, default=True)

    created_at = db.Column(
        db.DateTime(timezone=True), nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )

    def accepts(self, event_kind: str) -> bool:
        """Return True if this config should deliver ``event_kind`` to Teams."""
        if not self.is_active or not self.teams_webhook_url:
            return False
        field = EVENT_FLAG_FIELDS.get(event_kind)
        if field is None:
            return False
        return bool(getattr(self, field))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "country_code": self.country_code,
            "teams_webhook_url": self.teams_webhook_url,
            "is_active": self.is_active,
            "notify_task_assigned": self.notify_task_assigned,
            "notify_reminder": self.notify_reminder,
            "notify_signed_off": self.notify_signed_off,
            "notify_failed_step": self.notify_failed_step,
        }
