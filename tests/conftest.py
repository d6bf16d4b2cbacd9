import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

import automations.main
from automations import config
from automations.api import routes
from automations.db import repository
from automations.db.database import Base, get_db
from automations.db import tables  # noqa: F401 - registers table models
from automations.main import app
from automations.worker.executor import ActionExecutor
from automations.worker.outbox import OutboxDispatcher
from automations.worker.senders import SendError
from automations.worker.tagging import TaggingError
from automations.worker.tick import StepScheduler


class RecordingTagger:
    def __init__(self, fail_labels=()):
        self.calls = []
        self.fail_labels = set(fail_labels)

    def tag(self, tenant_id, entity_id, label):
        if label in self.fail_labels:
            raise TaggingError("entity service down")
        self.calls.append((tenant_id, entity_id, label))
        return True


class RecordingSender:
    def __init__(self, fail=False):
        self.fail = fail
        self.sent = []

    def send(self, message):
        if self.fail:
            raise SendError("provider rejected message")
        self.sent.append((message.id, message.to))
        return f"prov-{len(self.sent)}"


class GraphFactory:
    """Builds graphs straight into the store, bypassing authoring validation."""

    def __init__(self, db):
        self.db = db

    @staticmethod
    def trigger(node_id, event="lead.stage_changed", **filters):
        return {"id": node_id, "kind": "trigger", "config": {"event": event, "filters": filters}}

    @staticmethod
    def tag(node_id, label):
        return {"id": node_id, "kind": "action", "config": {"action": "tag_entity", "label": label}}

    @staticmethod
    def email(node_id, to, subject="Hello", body="Lead $entityId moved"):
        return {
            "id": node_id,
            "kind": "action",
            "config": {
                "action": "send_message",
                "channel": "email",
                "to": to,
                "subject": subject,
                "body": body,
            },
        }

    @staticmethod
    def sms(node_id, to, body="Lead $entityId moved"):
        return {
            "id": node_id,
            "kind": "action",
            "config": {"action": "send_message", "channel": "sms", "to": to, "body": body},
        }

    def create(self, graph_id, nodes, edges, tenant_id="w1", status="active"):
        return repository.create_graph(
            self.db,
            graph_id,
            tenant_id,
            graph_id,
            status,
            nodes,
            [{"from_node_id": a, "to_node_id": b} for a, b in edges],
        )


@pytest.fixture()
def session_factory(tmp_path):
    """Fresh SQLite database per test."""
    db_path = tmp_path / "test.db"
    engine = create_engine(
        f"sqlite:///{db_path}", connect_args={"check_same_thread": False}
    )
    Base.metadata.create_all(bind=engine)
    yield sessionmaker(bind=engine)
    engine.dispose()


@pytest.fixture()
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture()
def graphs(db):
    return GraphFactory(db)


@pytest.fixture()
def tagger():
    return RecordingTagger()


@pytest.fixture()
def senders():
    return {"email": RecordingSender(), "sms": RecordingSender()}


@pytest.fixture()
def runner(tagger):
    return StepScheduler("test-worker", ActionExecutor(tagger), batch_size=25, lease_seconds=60)


@pytest.fixture()
def dispatcher(senders):
    return OutboxDispatcher("test-worker", senders, batch_size=25, lease_seconds=60)


@pytest.fixture()
def client(session_factory, tagger, senders, monkeypatch):
    """Provide a TestClient bound to the per-test database, with no background loop."""
    monkeypatch.setattr(config, "EMBEDDED_WORKER", False)
    monkeypatch.setattr(automations.main, "init_db", lambda: None)

    def override_get_db():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[routes.get_tagger] = lambda: tagger
    app.dependency_overrides[routes.get_senders] = lambda: senders
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()
