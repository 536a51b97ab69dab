"""
Shared pytest fixtures for the UAT Tracker test suite.

Provides:
    - app: Flask application (session-scoped)
    - _setup_db: Database table creation/teardown (session-scoped)
    - session: Per-test DB cleanup w/ rollback + recreate (autouse)
    - client: Flask test client (function-scoped)
    - admin / stakeholder / other_stakeholder: User rows + matching Actors
    - make_task: factory for tasks with steps
    - clock: FakeClock for cooldown tests
    - auth_headers: builds X-User-* identity headers
"""

import pytest

from uat_tracker import create_app
from uat_tracker.models import db as _db
from uat_tracker.models.auth import ROLE_ADMIN, ROLE_STAKEHOLDER, User
from uat_tracker.models.task import STATUS_READY, Task, TaskStep
from uat_tracker.services.access import Actor
from uat_tracker.services.cooldown import MemoryCooldownStore, reset_cooldown_store


class FakeClock:
    """Manually advanced clock (seconds)."""

    def __init__(self, start: float = 1_000_000.0):
        self.t = start

    def now(self) -> float:
        return self.t

    def advance(self, seconds: float) -> None:
        self.t += seconds


# ── App & DB fixtures ────────────────────────────────────────────────────


@pytest.fixture(scope="session")
def app():
    """Create the Flask application once per test session."""
    application = create_app("testing")
    return application


@pytest.fixture(scope="session")
def _setup_db(app):
    """Create all tables at session start, drop at end."""
    with app.app_context():
        _db.create_all()
    yield
    with app.app_context():
        _db.drop_all()


@pytest.fixture(autouse=True)
def session(app, _setup_db):
    """Per-test: open app context, rollback after test, recreate tables."""
    with app.app_context():
        reset_cooldown_store(MemoryCooldownStore())
        yield
        reset_cooldown_store(None)
        _db.session.rollback()
        _db.drop_all()
        _db.create_all()


@pytest.fixture()
def client(app):
    """Flask test client."""
    return app.test_client()


@pytest.fixture()
def clock():
    return FakeClock()


# ── Users ────────────────────────────────────────────────────────────────


def _user(email, role, country=None, name=None) -> User:
    u = User(email=email, name=name or email.split("@")[0], role=role, country_code=country)
    _db.session.add(u)
    _db.session.commit()
    return u


def actor_for(user: User) -> Actor:
    return Actor(id=user.id, role=user.role, country_code=user.country_code)


@pytest.fixture()
def admin():
    user = _user("admin@example.com", ROLE_ADMIN, name="Ada Admin")
    return actor_for(user)


@pytest.fixture()
def stakeholder():
    user = _user("sg.tester@example.com", ROLE_STAKEHOLDER, country="SG", name="Sam Tester")
    return actor_for(user)


@pytest.fixture()
def other_stakeholder():
    user = _user("my.tester@example.com", ROLE_STAKEHOLDER, country="MY", name="Mia Tester")
    return actor_for(user)


# ── Tasks ────────────────────────────────────────────────────────────────


@pytest.fixture()
def make_task():
    """Return a factory: make_task(steps=[None, True], status=READY, **fields)."""

    def _make(steps=(None,), status=STATUS_READY, country_code="SG", **fields):
        fields.setdefault("title", "Verify invoice posting")
        fields.setdefault("module_name", "FI")
        task = Task(status=status, country_code=country_code, **fields)
        for idx, outcome in enumerate(steps, start=1):
            task.steps.append(TaskStep(
                order=idx,
                description=f"Step {idx}",
                expected_result=f"Result {idx}",
                is_passed=outcome,
                attachments=[],
            ))
        _db.session.add(task)
        _db.session.commit()
        return task

    return _make


@pytest.fixture()
def auth_headers():
    """Return headers_for(actor): X-User-* identity headers (API_AUTH_ENABLED is off in testing)."""

    def headers_for(actor: Actor) -> dict:
        h = {"X-User-Id": str(actor.id), "X-User-Role": actor.role}
        if actor.country_code:
            h["X-User-Country"] = actor.country_code
        return h

    return headers_for
