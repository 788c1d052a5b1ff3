"""
Shared pytest fixtures for the Workflow Template Engine test suite.

Provides:
    - app: Flask application (session-scoped)
    - _setup_db: Database table creation/teardown (session-scoped)
    - session: Per-test DB cleanup w/ rollback + recreate (autouse)
    - client: Flask test client (function-scoped)
    - template / phase / step: Pre-created hierarchy nodes
"""

import pytest

from template_engine import create_app
from template_engine.models import db as _db
from template_engine.services import template_service


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


# ── Convenience fixtures ─────────────────────────────────────────────────


@pytest.fixture()
def template():
    """An empty template."""
    return template_service.create_template({"template_name": "Test Template"})


@pytest.fixture()
def phase(template):
    """First phase of ``template``."""
    return template_service.create_phase(template.id, {"phase_name": "Phase 1"})


@pytest.fixture()
def step(phase):
    """First step of ``phase``."""
    return template_service.create_step(phase.id, {"step_name": "Step 1"})
