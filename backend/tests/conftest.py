import os, tempfile, uuid

_DB_DIR = tempfile.mkdtemp(prefix="mailpilot-tests-")
os.environ["DATABASE_URL"] = f"sqlite:///{_DB_DIR}/test.db"
os.environ["LLM_PROVIDER"] = "off"
os.environ.pop("SUPPORT_API_KEY", None)
os.environ.pop("ALLOW_UNAUTH_LOCAL", None)

import pytest

from backend.app.db.database import SessionLocal, init_db
from backend.app.models.automation_model import AutomationRule
from backend.tests.helpers import build_engine

init_db()


@pytest.fixture
def db():
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def tenant():
    return f"t-{uuid.uuid4().hex[:10]}"


@pytest.fixture
def add_rule(db, tenant):
    def _add(classification, requires_approval=False, is_active=True, **kwargs):
        rule = AutomationRule(
            tenant_id=tenant,
            name=kwargs.pop('name', f"{classification} rule"),
            classification=classification,
            requires_approval=requires_approval,
            is_active=is_active,
            **kwargs,
        )
        db.add(rule)
        db.commit()
        db.refresh(rule)
        return rule
    return _add


@pytest.fixture
def make_engine():
    return build_engine


@pytest.fixture
def use_engine():
    from backend.app.main import app
    from backend.app.services.decision_engine import get_engine

    def _use(engine):
        app.dependency_overrides[get_engine] = lambda: engine
        return engine
    yield _use
    app.dependency_overrides.pop(get_engine, None)


@pytest.fixture
def fresh_queue(monkeypatch):
    from backend.app.services import queue_worker
    from backend.app.services.priority_queue import EmailPriorityQueue
    q = EmailPriorityQueue()
    monkeypatch.setattr(queue_worker, '_queue', q)
    return q
