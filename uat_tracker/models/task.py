"""
UAT Tracker
Task domain models.

Models:
    - Task:         one unit of UAT work scoped to a country
    - TaskStep:     ordered test instruction within a task (1-based, contiguous)
    - Comment:      free-text remark on a task, optionally scoped to a step
    - CommentRead:  per-user read marker for a comment

Architecture ref:
    Task ──1:N──▶ TaskStep
    Task ──1:N──▶ Comment ──1:N──▶ CommentRead
    Task ──N:1──▶ task_group_id   (sibling tasks for other countries)

A task with ``signed_off_at`` set is locked: only reads and history queries
are allowed. DEPLOYED is terminal and does not unlock the task.
"""

from datetime import datetime, timezone

from uat_tracker.models import db
from uat_tracker.utils.helpers import isoformat_utc


# ── Constants ────────────────────────────────────────────────────────────────

STATUS_DRAFT = "DRAFT"
STATUS_READY = "READY"
STATUS_IN_PROGRESS = "IN_PROGRESS"
STATUS_BLOCKED = "BLOCKED"
STATUS_FAILED = "FAILED"
STATUS_PASSED = "PASSED"
STATUS_DEPLOYED = "DEPLOYED"

TASK_STATUSES = (
    STATUS_DRAFT,
    STATUS_READY,
    STATUS_IN_PROGRESS,
    STATUS_BLOCKED,
    STATUS_FAILED,
    STATUS_PASSED,
    STATUS_DEPLOYED,
)

INITIAL_STATUS = STATUS_DRAFT

TASK_PRIORITIES = ("LOW", "MEDIUM", "HIGH", "CRITICAL")

# ── 7-status lifecycle transition table ──────────────────────────────────────
TASK_TRANSITIONS = {
    STATUS_DRAFT:       [STATUS_READY],
    STATUS_READY:       [STATUS_IN_PROGRESS, STATUS_BLOCKED, STATUS_FAILED, STATUS_PASSED],
    STATUS_IN_PROGRESS: [STATUS_READY, STATUS_BLOCKED, STATUS_FAILED, STATUS_PASSED],
    STATUS_BLOCKED:     [STATUS_READY, STATUS_IN_PROGRESS, STATUS_FAILED],
    STATUS_FAILED:      [STATUS_READY, STATUS_IN_PROGRESS, STATUS_BLOCKED, STATUS_PASSED],
    STATUS_PASSED:      [STATUS_IN_PROGRESS, STATUS_BLOCKED, STATUS_FAILED, STATUS_DEPLOYED],
    STATUS_DEPLOYED:    [],
}

# Fields replicated to unlocked siblings sharing a task_group_id.
GROUP_FIELDS = (
    "title",
    "description",
    "jira_ticket",
    "cr_number",
    "developer",
    "due_date",
)

# Fields an admin may edit on a single task (superset of GROUP_FIELDS).
EDITABLE_FIELDS = GROUP_FIELDS + ("priority", "module_name", "assignee_id")


# ═════════════════════════════════════════════════════════════════════════════
# TASK
# ═════════════════════════════════════════════════════════════════════════════

class Task(db.Model):
    """
    One UAT work item for one country.

    ``updated_at`` doubles as the optimistic-concurrency token: clients echo
    it back as ``expected_updated_at`` and the write is rejected when it no
    longer matches.
    """

    __tablename__ = "tasks"
    __table_args__ = (
        db.Index("ix_tasks_country_status", "country_code", "status"),
    )

    id = db.Column(db.Integer, primary_key=True)
    title = db.Column(db.String(300), nullable=False)
    description = db.Column(db.Text, default="")
    status = db.Column(
        db.String(20), nullable=False, default=INITIAL_STATUS, index=True,
        comment="DRAFT | READY | IN_PROGRESS | BLOCKED | FAILED | PASSED | DEPLOYED",
    )
    priority = db.Column(db.String(10), nullable=False, default="MEDIUM")
    country_code = db.Column(db.String(8), nullable=False, index=True)
    module_name = db.Column(db.String(120), nullable=False, default="")
    due_date = db.Column(db.Date, nullable=True)

    jira_ticket = db.Column(db.String(40), nullable=True, comment="EO-123 or bare number")
    cr_number = db.Column(db.String(40), nullable=True, comment="SAP change request number")
    developer = db.Column(db.String(120), nullable=True)

    task_group_id = db.Column(
        db.String(36), nullable=True, index=True,
        comment="Shared by sibling tasks created for several countries from one change",
    )

    assignee_id = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True, index=True,
    )

    # Sign-off lock
    signed_off_at = db.Column(db.DateTime(timezone=True), nullable=True)
    signed_off_by_id = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True,
    )
    signature_data = db.Column(db.Text, nullable=True, comment="Optional base64 signature image")

    # Deployment
    deployed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    release_version = db.Column(db.String(60), nullable=True)

    created_at = db.Column(
        db.DateTime(timezone=True), nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )
    updated_at = db.Column(
        db.DateTime(timezone=True), nullable=False,
        default=lambda: datetime.now(timezone.utc),
        comment="Optimistic-concurrency token, advanced on every write",
    )
    updated_by_id = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True,
    )

    # Relationships
    steps = db.relationship(
        "TaskStep", backref="task", lazy="select",
        cascade="all, delete-orphan", order_by="TaskStep.order",
    )
    comments = db.relationship(
        "Comment", backref="task", lazy="select",
        cascade="all, delete-orphan", order_by="Comment.created_at",
    )
    assignee = db.relationship("User", foreign_keys=[assignee_id])
    signed_off_by = db.relationship("User", foreign_keys=[signed_off_by_id])
    updated_by = db.relationship("User", foreign_keys=[updated_by_id])

    @property
    def is_locked(self) -> bool:
        return self.signed_off_at is not None

    def to_dict(self, include_steps=True, include_comments=False):
        result = {
            "id": self.id,
            "title": self.title,
            "description": self.description or "",
            "status": self.status,
            "priority": self.priority,
            "country_code": self.country_code,
            "module_name": self.module_name,
            "due_date": self.due_date.isoformat() if self.due_date else None,
            "jira_ticket": self.jira_ticket,
            "cr_number": self.cr_number,
            "developer": self.developer,
            "task_group_id": self.task_group_id,
            "assignee_id": self.assignee_id,
            "assignee": self.assignee.to_ref() if self.assignee else None,
            "signed_off_at": isoformat_utc(self.signed_off_at),
            "signed_off_by": self.signed_off_by.to_ref() if self.signed_off_by else None,
            "is_locked": self.is_locked,
            "deployed_at": isoformat_utc(self.deployed_at),
            "release_version": self.release_version,
            "created_at": isoformat_utc(self.created_at),
            "updated_at": isoformat_utc(self.updated_at),
            "updated_by": self.updated_by.to_ref() if self.updated_by else None,
        }
        if include_steps:
            result["steps"] = [s.to_dict() for s in self.steps]
        if include_comments:
            result["comments"] = [c.to_dict() for c in self.comments]
        return result

    def __repr__(self):
        return f"<Task {self.id}: {self.title[:40]} [{self.country_code}/{self.status}]>"


# ═════════════════════════════════════════════════════════════════════════════
# TASK STEP
# ═════════════════════════════════════════════════════════════════════════════

class TaskStep(db.Model):
    """
    One ordered test instruction within a task.

    ``is_passed`` is tri-state: None (not executed), True, False.
    ``order`` stays contiguous from 1; deletion re-sequences the remainder.
    """

    __tablename__ = "task_steps"
    __table_args__ = (
        db.Index("ix_task_steps_task_order", "task_id", "order"),
    )

    id = db.Column(db.Integer, primary_key=True)
    task_id = db.Column(
        db.Integer, db.ForeignKey("tasks.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    order = db.Column(db.Integer, nullable=False, comment="1-based, contiguous within a task")
    description = db.Column(db.Text, nullable=False)
    expected_result = db.Column(db.Text, nullable=False)
    test_data = db.Column(db.Text, nullable=True)
    actual_result = db.Column(db.Text, nullable=True)
    is_passed = db.Column(db.Boolean, nullable=True, comment="NULL = not executed")
    attachments = db.Column(db.JSON, default=list)
    completed_at = db.Column(db.DateTime(timezone=True), nullable=True)

    created_at = db.Column(
        db.DateTime(timezone=True), nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )
    updated_at = db.Column(
        db.DateTime(timezone=True), nullable=False,
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    def to_dict(self):
        return {
            "id": self.id,
            "task_id": self.task_id,
            "order": self.order,
            "description": self.description,
            "expected_result": self.expected_result,
            "test_data": self.test_data,
            "actual_result": self.actual_result,
            "is_passed": self.is_passed,
            "attachments": list(self.attachments or []),
            "completed_at": isoformat_utc(self.completed_at),
        }

    def __repr__(self):
        return f"<TaskStep {self.id}: task={self.task_id} #{self.order}>"


# ═════════════════════════════════════════════════════════════════════════════
# COMMENTS
# ═════════════════════════════════════════════════════════════════════════════

class Comment(db.Model):
    """Remark on a task. Authorship is immutable; there is no edit path."""

    __tablename__ = "task_comments"

    id = db.Column(db.Integer, primary_key=True)
    task_id = db.Column(
        db.Integer, db.ForeignKey("tasks.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    author_id = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True, index=True,
    )
    body = db.Column(db.Text, nullable=False)
    step_order = db.Column(db.Integer, nullable=True, comment="Step the comment refers to, if any")
    created_at = db.Column(
        db.DateTime(timezone=True), nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )

    author = db.relationship("User")
    reads = db.relationship(
        "CommentRead", backref="comment", lazy="select", cascade="all, delete-orphan",
    )

    def to_dict(self):
        return {
            "id": self.id,
            "task_id": self.task_id,
            "author": self.author.to_ref() if self.author else None,
            "body": self.body,
            "step_order": self.step_order,
            "created_at": isoformat_utc(self.created_at),
        }


class CommentRead(db.Model):
    """Marks a comment as read by one user."""

    __tablename__ = "task_comment_reads"
    __table_args__ = (
        db.UniqueConstraint("comment_id", "user_id", name="uq_comment_read_user"),
    )

    id = db.Column(db.Integer, primary_key=True)
    comment_id = db.Column(
        db.Integer, db.ForeignKey("task_comments.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    user_id = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    read_at = db.Column(
        db.DateTime(timezone=True), nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )
