import pytest

from automations.core import ingress
from automations.core.events import lead_stage_changed
from automations.core.ingress import EventQueueDrainer, enqueue_event
from automations.db.tables import WorkflowEvent, WorkflowRun


@pytest.fixture()
def lead_graph(graphs):
    return graphs.create(
        "g1",
        nodes=[graphs.trigger("T"), graphs.tag("A", "hot")],
        edges=[("T", "A")],
    )


def test_enqueue_is_idempotent(db):
    event = lead_stage_changed("w1", "lead1", to_stage_id="won", occurred_at="t1")

    first, created = enqueue_event(db, event)
    again, created_again = enqueue_event(db, event)

    assert created is True
    assert created_again is False
    assert first.id == again.id
    assert db.query(WorkflowEvent).count() == 1
    assert first.status == "queued"


def test_drain_matches_queued_events(db, lead_graph):
    enqueue_event(db, lead_stage_changed("w1", "lead1", to_stage_id="won"))
    enqueue_event(db, lead_stage_changed("w1", "lead2", to_stage_id="won"))

    report = EventQueueDrainer("w", lease_seconds=60).drain(db)
    assert report.processed == 2
    assert report.released == 0
    assert db.query(WorkflowRun).count() == 2

    db.expire_all()
    rows = db.query(WorkflowEvent).all()
    assert {r.status for r in rows} == {"processed"}
    assert {r.triggered for r in rows} == {1}
    assert all(r.processed_at for r in rows)

    assert EventQueueDrainer("w").drain(db).processed == 0


def test_unmatched_event_is_still_processed(db):
    enqueue_event(db, lead_stage_changed("w1", "lead1", to_stage_id="won"))

    assert EventQueueDrainer("w").drain(db).processed == 1
    db.expire_all()
    row = db.query(WorkflowEvent).one()
    assert row.status == "processed"
    assert row.triggered == 0


def test_failed_match_releases_event_for_retry(db, lead_graph, monkeypatch):
    enqueue_event(db, lead_stage_changed("w1", "lead1", to_stage_id="won"))

    def broken(db, event):
        raise RuntimeError("store hiccup")

    monkeypatch.setattr(ingress, "match_event", broken)
    report = EventQueueDrainer("w", max_attempts=3).drain(db)
    assert report.released == 1
    assert report.processed == 0

    db.expire_all()
    row = db.query(WorkflowEvent).one()
    assert row.status == "queued"
    assert row.attempts == 1
    assert row.error == "store hiccup"
    assert row.locked_by is None

    monkeypatch.undo()
    assert EventQueueDrainer("w").drain(db).processed == 1
    assert db.query(WorkflowRun).count() == 1


def test_event_gives_up_after_max_attempts(db, monkeypatch):
    enqueue_event(db, lead_stage_changed("w1", "lead1", to_stage_id="won"))

    def broken(db, event):
        raise RuntimeError("store hiccup")

    monkeypatch.setattr(ingress, "match_event", broken)
    drainer = EventQueueDrainer("w", max_attempts=2)
    drainer.drain(db)
    drainer.drain(db)

    db.expire_all()
    row = db.query(WorkflowEvent).one()
    assert row.status == "failed"
    assert row.attempts == 2
    assert drainer.drain(db).released == 0


def test_unreadable_payload_is_closed_out(db):
    row, _ = enqueue_event(db, lead_stage_changed("w1", "lead1", to_stage_id="won"))
    row.payload = '{"tenant_id": "w1"}'
    db.commit()

    assert EventQueueDrainer("w").drain(db).processed == 1
    db.expire_all()
    row = db.query(WorkflowEvent).one()
    assert row.status == "processed"
    assert row.error == "invalid_payload"
