"""
UAT Tracker
Task history model.

Models:
    - TaskHistory: immutable, append-only trail of every task mutation.
    - TaskHistoryRead: per-user read marker for the activity feed.

``task_id`` is a plain indexed column rather than a cascading FK so that the
final DELETED entry written by the delete path outlives the task row.
"""

import json
from datetime import datetime, timezone

from uat_tracker.models import db
from uat_tracker.utils.helpers import isoformat_utc

# ── Constants ────────────────────────────────────────────────────────────────

ACTION_CREATED = "CREATED"
ACTION_STATUS_CHANGED = "STATUS_CHANGED"
ACTION_STEP_ADDED = "STEP_ADDED"
ACTION_STEP_UPDATED = "STEP_UPDATED"
ACTION_STEP_DELETED = "STEP_DELETED"
ACTION_STEPS_IMPORTED = "STEPS_IMPORTED"
ACTION_COMMENT_ADDED = "COMMENT_ADDED"
ACTION_METADATA_UPDATED = "METADATA_UPDATED"
ACTION_GROUP_PROPAGATED = "GROUP_PROPAGATED"
ACTION_SIGNED_OFF = "SIGNED_OFF"
ACTION_DEPLOYED = "DEPLOYED"
ACTION_REMINDER_SENT = "REMINDER_SENT"
ACTION_DELETED = "DELETED"

TASK_HISTORY_ACTIONS = {
    ACTION_CREATED,
    ACTION_STATUS_CHANGED,
    ACTION_STEP_ADDED,
    ACTION_STEP_UPDATED,
    ACTION_STEP_DELETED,
    ACTION_STEPS_IMPORTED,
    ACTION_COMMENT_ADDED,
    ACTION_METADATA_UPDATED,
    ACTION_GROUP_PROPAGATED,
    ACTION_SIGNED_OFF,
    ACTION_DEPLOYED,
    ACTION_REMINDER_SENT,
    ACTION_DELETED,
}


def _load(raw):
    if raw is None:
        return None
    try:
        return json.loads(raw)
    except (json.JSONDecodeError, TypeError):
        return None


class TaskHistory(db.Model):
    """
    One row per meaningfully distinct task mutation.

    ``before_json`` / ``after_json`` carry optional snapshots;
    ``metadata_json`` carries structured context such as the ``operation_id``
    shared by every entry written during one group propagation.
    """

    __tablename__ = "task_history"
    __table_args__ = (
        db.Index("ix_task_history_task_created", "task_id", "created_at"),
    )

    id = db.Column(db.Integer, primary_key=True)
    task_id = db.Column(db.Integer, nullable=False, index=True)
    actor_id = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True, index=True,
    )
    action = db.Column(db.String(40), nullable=False, index=True)
    message = db.Column(db.Text, nullable=False)
    before_json = db.Column(db.Text, nullable=True)
    after_json = db.Column(db.Text, nullable=True)
    metadata_json = db.Column(db.Text, nullable=True)
    created_at = db.Column(
        db.DateTime(timezone=True), nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )

    actor = db.relationship("User")

    @property
    def before(self):
        return _load(self.before_json)

    @property
    def after(self):
        return _load(self.after_json)

    @property
    def meta(self):
        return _load(self.metadata_json)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "task_id": self.task_id,
            "action": self.action,
            "message": self.message,
            "actor": self.actor.to_ref() if self.actor else None,
            "before": self.before,
            "after": self.after,
            "metadata": self.meta,
            "created_at": isoformat_utc(self.created_at),
        }

    def __repr__(self):
        return f"<TaskHistory {self.id}: {self.action} on task {self.task_id}>"


class TaskHistoryRead(db.Model):
    """Marks one activity-feed entry as read by one user."""

    __tablename__ = "task_history_reads"
    __table_args__ = (
        db.UniqueConstraint("history_id", "user_id", name="uq_history_read_user"),
    )

    id = db.Column(db.Integer, primary_key=True)
    history_id = db.Column(
        db.Integer, db.ForeignKey("task_history.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    user_id = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    read_at = db.Column(
        db.DateTime(timezone=True), nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )
