"""
Shared pytest fixtures for the Service Log Engine test suite.

Provides:
    - app: Flask application (session-scoped)
    - _setup_db: Database table creation/teardown (session-scoped)
    - session: Per-test DB cleanup w/ rollback + recreate (autouse)
    - client: Flask test client (function-scoped)
    - org / peer / other_peer / supervisor: ORM-created organization and users
    - peer_actor / other_peer_actor / supervisor_actor: ActorContext values
    - make_plan: factory that creates a plan through plan_store and optionally
      drives it through lifecycle actions
    - auth_headers: bearer-token headers for an ActorContext
"""

import pytest

from servicelog import create_app
from servicelog.core.actor import PEER, SUPERVISOR, ActorContext
from servicelog.models import db as _db
from servicelog.models.organization import Organization, User
from servicelog.services import jwt_service, plan_lifecycle, plan_store


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
        yield
        _db.session.rollback()
        _db.drop_all()
        _db.create_all()


@pytest.fixture()
def client(app):
    """Flask test client."""
    return app.test_client()


# ── ORM helpers ──────────────────────────────────────────────────────────


def make_org(slug: str = "harbor", **kwargs) -> Organization:
    org = Organization(name=slug.title(), slug=slug, **kwargs)
    _db.session.add(org)
    _db.session.commit()
    return org


def make_user(org: Organization, email: str, full_name: str | None = None) -> User:
    user = User(organization_id=org.id, email=email, full_name=full_name)
    _db.session.add(user)
    _db.session.commit()
    return user


@pytest.fixture()
def org():
    return make_org("harbor")


@pytest.fixture()
def peer(org):
    return make_user(org, "pat@harbor.test", "Pat Peer")


@pytest.fixture()
def other_peer(org):
    return make_user(org, "sam@harbor.test", "Sam Second")


@pytest.fixture()
def supervisor(org):
    return make_user(org, "sue@harbor.test", "Sue Supervisor")


@pytest.fixture()
def peer_actor(org, peer):
    return ActorContext(actor_id=peer.id, organization_id=org.id, role=PEER)


@pytest.fixture()
def other_peer_actor(org, other_peer):
    return ActorContext(actor_id=other_peer.id, organization_id=org.id, role=PEER)


@pytest.fixture()
def supervisor_actor(org, supervisor):
    return ActorContext(actor_id=supervisor.id, organization_id=org.id, role=SUPERVISOR)


def plan_data(**overrides) -> dict:
    data = {
        "service_type": "individual",
        "planned_date": "2025-03-01",
        "planned_duration_minutes": 60,
        "setting": "outpatient",
    }
    data.update(overrides)
    return data


COMPLETION = {
    "actual_duration_minutes": 45,
    "attendance_count": 3,
    "delivered_as_planned": True,
}


@pytest.fixture()
def make_plan(org, peer_actor, supervisor_actor):
    """Create a plan owned by ``peer_actor`` and walk it to ``status``.

    make_plan()                      → draft
    make_plan(status="approved")     → planned → approved
    """

    def _make(status: str = "draft", actor=None, **overrides):
        owner = actor or peer_actor
        initial = "planned" if status != "draft" else "draft"
        plan = plan_store.create_plan(org.id, owner, plan_data(status=initial, **overrides))
        if status in ("approved", "verified"):
            plan = plan_lifecycle.approve_plan(org.id, plan.id, supervisor_actor)
        if status in ("completed", "verified"):
            plan = plan_lifecycle.complete_plan(org.id, plan.id, owner, **COMPLETION)
        if status == "verified":
            plan = plan_lifecycle.verify_plan(org.id, plan.id, supervisor_actor)
        return plan

    return _make


@pytest.fixture()
def auth_headers(app):
    """Return a builder for Authorization headers from an ActorContext."""

    def _headers(actor: ActorContext, **kwargs) -> dict:
        token = jwt_service.generate_access_token(
            actor.actor_id, actor.organization_id, actor.role, **kwargs,
        )
        return {"Authorization": f"Bearer {token}"}

    return _headers
