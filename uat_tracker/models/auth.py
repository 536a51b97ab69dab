"""
UAT Tracker
Identity model.

Models:
    - User: admin or country stakeholder referenced by tasks.

Authentication itself is handled upstream; these rows only exist so tasks can
reference assignees, signers and last modifiers.
"""

from datetime import datetime, timezone

from uat_tracker.models import db

# ── Constants ────────────────────────────────────────────────────────────────

ROLE_ADMIN = "ADMIN"
ROLE_STAKEHOLDER = "STAKEHOLDER"

USER_ROLES = {ROLE_ADMIN, ROLE_STAKEHOLDER}


class User(db.Model):
    """Portal user. Stakeholders are scoped to one country."""

    __tablename__ = "users"

    id = db.Column(db.Integer, primary_key=True)
    email = db.Column(db.String(255), nullable=False, unique=True, index=True)
    name = db.Column(db.String(200), nullable=True)
    role = db.Column(
        db.String(20), nullable=False, default=ROLE_STAKEHOLDER,
        comment="ADMIN | STAKEHOLDER",
    )
    country_code = db.Column(
        db.String(8), nullable=True, index=True,
        comment="Stakeholder market, e.g. SG, MY. NULL for admins.",
    )
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    created_at = db.Column(
        db.DateTime(timezone=True), nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )

    @property
    def display_name(self) -> str:
        return self.name or self.email

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "email": self.email,
            "name": self.name,
            "role": self.role,
            "country_code": self.country_code,
            "is_active": self.is_active,
        }

    def to_ref(self) -> dict:
        """Compact reference embedded in task payloads."""
        return {"id": self.id, "name": self.name, "email": self.email}

    def __repr__(self):
        return f"<User {self.id}: {self.email} ({self.role})>"
