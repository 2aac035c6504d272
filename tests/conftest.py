"""
Shared pytest fixtures for the Team Project Manager test suite.

Provides:
    - app: Flask application (session-scoped)
    - _setup_db: Database table creation/teardown (session-scoped)
    - session: Per-test DB cleanup w/ rollback + recreate (autouse);
      seeds the default permission catalogue
    - client: Flask test client (function-scoped)
    - make_user / make_project / make_stage / make_task: entity factories
    - admin / manager / employee: ready-made users
    - auth_headers: Bearer headers from a real access token
    - actor: AuthUser for calling services directly
"""

import pytest

from teamproject import create_app
from teamproject.core.identity import AuthUser
from teamproject.models import db as _db
from teamproject.models.auth import User
from teamproject.models.project import Project, Stage, Task
from teamproject.services.jwt_service import generate_access_token
from teamproject.services.permission_service import (
    invalidate_all_cache,
    permission_resolver,
    seed_default_permissions,
)


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
        # Tables are recreated per test; the permission cache must not
        # outlive them.
        invalidate_all_cache()
        seed_default_permissions()
        yield
        invalidate_all_cache()
        _db.session.rollback()
        _db.drop_all()
        _db.create_all()


@pytest.fixture()
def client(app):
    """Flask test client."""
    return app.test_client()


# ── Factories ────────────────────────────────────────────────────────────


@pytest.fixture()
def make_user():
    counter = {"n": 0}

    def _make(name=None, role="EMPLOYEE", email=None, is_active=True):
        counter["n"] += 1
        n = counter["n"]
        user = User(
            name=name or f"User {n}",
            email=email or f"user{n}.{role.lower()}@acme-corp.com",
            role=role,
            is_active=is_active,
        )
        _db.session.add(user)
        _db.session.commit()
        return user
    return _make


@pytest.fixture()
def make_project():
    def _make(manager=None, title="Refonte du site", created_by=None, status="IN_PROGRESS"):
        project = Project(
            title=title,
            description="Projet de test",
            status=status,
            manager_id=manager.id if manager else None,
            created_by_id=(created_by or manager).id if (created_by or manager) else None,
        )
        _db.session.add(project)
        _db.session.commit()
        return project
    return _make


@pytest.fixture()
def make_stage():
    def _make(project, order, name=None, status="PENDING", created_by=None):
        stage = Stage(
            project_id=project.id,
            name=name or f"Étape {order}",
            order=order,
            status=status,
            created_by_id=created_by.id if created_by else None,
        )
        _db.session.add(stage)
        _db.session.commit()
        return stage
    return _make


@pytest.fixture()
def make_task():
    def _make(project, stage=None, title="Maquettes", status="TODO", assignees=(), due_date=None):
        task = Task(
            project_id=project.id,
            stage_id=stage.id if stage else None,
            title=title,
            status=status,
            due_date=due_date,
        )
        task.assignees = list(assignees)
        _db.session.add(task)
        _db.session.commit()
        return task
    return _make


# ── Ready-made users ─────────────────────────────────────────────────────


@pytest.fixture()
def admin(make_user):
    return make_user(name="Alice Admin", role="ADMIN", email="alice.admin@acme-corp.com")


@pytest.fixture()
def manager(make_user):
    return make_user(name="Marc Manager", role="MANAGER", email="marc.manager@acme-corp.com")


@pytest.fixture()
def employee(make_user):
    return make_user(name="Emma Employee", role="EMPLOYEE", email="emma.employee@acme-corp.com")


# ── Auth helpers ─────────────────────────────────────────────────────────


@pytest.fixture()
def auth_headers():
    def _headers(user):
        return {"Authorization": f"Bearer {generate_access_token(user)}"}
    return _headers


@pytest.fixture()
def actor():
    """AuthUser for a User row, as the JWT middleware would build it."""
    def _actor(user):
        auth = AuthUser.from_user(user)
        return AuthUser.from_user(user, permission_resolver.permissions_for(auth.app_role))
    return _actor
