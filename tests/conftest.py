"""
Shared pytest fixtures for the Record Studio test suite.

Provides:
    - app: Flask application (session-scoped)
    - _setup_db: Database table creation/teardown (session-scoped)
    - session: Per-test DB cleanup w/ rollback + recreate (autouse)
    - client: Flask test client (function-scoped)
    - admin: Superuser id
    - editor: Plain user id with no grants
    - grant: Helper that grants permission keys to a user
"""

import pytest

from app import create_app
from app.models import db as _db
from app.models.auth import User, UserPermission


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


# ── Identity fixtures ────────────────────────────────────────────────────


def _make_user(username, is_superuser=False):
    user = User(username=username, is_superuser=is_superuser)
    _db.session.add(user)
    _db.session.commit()
    return user.id


@pytest.fixture()
def admin():
    """Superuser id; passes every permission check."""
    return _make_user("admin", is_superuser=True)


@pytest.fixture()
def editor():
    """Plain user id with no grants."""
    return _make_user("editor")


@pytest.fixture()
def grant():
    """Grant permission keys: ``grant(user_id, "model:<id>:edit", ...)``."""

    def _grant(user_id, *keys):
        for key in keys:
            _db.session.add(UserPermission(user_id=user_id, permission_key=key))
        _db.session.commit()

    return _grant
