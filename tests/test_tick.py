import threading

from sqlalchemy.exc import OperationalError

from automations.core.events import lead_stage_changed
from automations.core.ingress import ingest_event
from automations.db import repository
from automations.db.tables import RunStep, WorkflowNode, WorkflowRun
from automations.worker.executor import ActionExecutor
from automations.worker.tick import StepScheduler


def _statuses(db, run_id):
    db.expire_all()
    return {s.node_id: s.status for s in repository.get_run_steps(db, run_id)}


def _start(db, **attrs):
    event = lead_stage_changed("w1", "lead1", **attrs)
    ingest_event(db, event)
    return db.query(WorkflowRun).order_by(WorkflowRun.started_at.desc()).first()


def test_stage_change_scenario(db, graphs, runner, dispatcher, tagger, senders):
    graphs.create(
        "g1",
        nodes=[
            graphs.trigger("T", toStageId="won"),
            graphs.tag("A", "hot"),
            graphs.email("B", "owner@example.com"),
        ],
        edges=[("T", "A"), ("A", "B")],
    )
    event = lead_stage_changed("w1", "lead1", to_stage_id="won")

    assert ingest_event(db, event) == 1
    run = db.query(WorkflowRun).one()
    assert _statuses(db, run.id) == {"A": "queued"}

    first = runner.tick(db)
    assert first.processed == 1
    assert first.succeeded == 1
    assert tagger.calls == [("w1", "lead1", "hot")]
    assert _statuses(db, run.id) == {"A": "success", "B": "queued"}

    second = runner.tick(db)
    assert second.processed == 1
    assert _statuses(db, run.id) == {"A": "success", "B": "success"}

    messages = repository.get_run_messages(db, run.id)
    assert len(messages) == 1
    assert messages[0].channel == "email"
    assert messages[0].to == "owner@example.com"
    assert messages[0].status == "queued"

    step_b = next(s for s in repository.get_run_steps(db, run.id) if s.node_id == "B")
    assert repository.loads(step_b.output) == {"enqueued": True, "channel": "email"}
    assert repository.get_run(db, run.id).status == "success"

    sent = dispatcher.tick(db)
    assert sent.sent == 1
    db.expire_all()
    message = repository.get_run_messages(db, run.id)[0]
    assert message.status == "sent"
    assert message.provider_message_id == "prov-1"
    assert message.sent_at is not None
    assert len(senders["email"].sent) == 1

    assert ingest_event(db, event) == 0
    assert db.query(WorkflowRun).count() == 1


def test_message_payload_is_rendered_from_run_context(db, graphs, runner):
    graphs.create(
        "g1",
        nodes=[
            graphs.trigger("T"),
            graphs.email("B", "owner@example.com", subject="Moved to ${toStageId}", body="Lead $entityId, $unknown"),
        ],
        edges=[("T", "B")],
    )
    run = _start(db, to_stage_id="won")
    runner.tick(db)

    payload = repository.loads(repository.get_run_messages(db, run.id)[0].payload)
    assert payload["subject"] == "Moved to won"
    assert payload["body"] == "Lead lead1, $unknown"
    assert payload["context"]["entityId"] == "lead1"
    assert payload["context"]["toStageId"] == "won"


def test_failed_step_does_not_stop_sibling_branch(db, graphs, runner, tagger):
    graphs.create(
        "g1",
        nodes=[
            graphs.trigger("T"),
            {"id": "A", "kind": "action", "config": {"action": "explode"}},
            graphs.tag("B", "never"),
            graphs.tag("C", "vip"),
        ],
        edges=[("T", "A"), ("A", "B"), ("T", "C")],
    )
    run = _start(db, to_stage_id="won")

    report = runner.tick(db)
    assert report.processed == 2
    assert report.failed == 1
    assert report.succeeded == 1
    assert _statuses(db, run.id) == {"A": "failed", "C": "success"}

    step_a = next(s for s in repository.get_run_steps(db, run.id) if s.node_id == "A")
    assert step_a.error == "invalid_action_config"

    assert runner.tick(db).processed == 0
    assert "B" not in _statuses(db, run.id)
    assert ("w1", "lead1", "vip") in tagger.calls
    assert repository.get_run(db, run.id).status == "failed"


def test_action_exception_is_recorded_on_the_step(db, graphs):
    runner = StepScheduler("w", ActionExecutor(_FailingTagger()), lease_seconds=60)
    graphs.create(
        "g1",
        nodes=[graphs.trigger("T"), graphs.tag("A", "boom"), graphs.tag("B", "after")],
        edges=[("T", "A"), ("A", "B")],
    )
    run = _start(db, to_stage_id="won")

    report = runner.tick(db)
    assert report.failed == 1
    step = repository.get_run_steps(db, run.id)[0]
    assert step.status == "failed"
    assert step.error == "entity service down"
    assert step.finished_at is not None
    assert _statuses(db, run.id) == {"A": "failed"}


class _FailingTagger:
    def tag(self, tenant_id, entity_id, label):
        raise RuntimeError("entity service down")


def test_non_action_node_is_skipped_and_passes_through(db, graphs, runner, tagger):
    graphs.create(
        "g1",
        nodes=[graphs.trigger("T"), graphs.trigger("X", event="noop"), graphs.tag("B", "hot")],
        edges=[("T", "X"), ("X", "B")],
    )
    run = _start(db, to_stage_id="won")

    report = runner.tick(db)
    assert report.skipped == 1
    step_x = repository.get_run_steps(db, run.id)[0]
    assert step_x.status == "skipped"
    assert repository.loads(step_x.output) == {"reason": "non_action_node"}

    runner.tick(db)
    assert _statuses(db, run.id) == {"X": "skipped", "B": "success"}
    assert tagger.calls == [("w1", "lead1", "hot")]


def test_step_for_deleted_node_fails(db, graphs, runner):
    graphs.create(
        "g1",
        nodes=[graphs.trigger("T"), graphs.tag("A", "hot")],
        edges=[("T", "A")],
    )
    run = _start(db, to_stage_id="won")
    db.query(WorkflowNode).filter(WorkflowNode.id == "A").delete()
    db.commit()

    report = runner.tick(db)
    assert report.failed == 1
    step = repository.get_run_steps(db, run.id)[0]
    assert step.status == "failed"
    assert step.error == "missing_run_or_node"


def test_join_node_executes_once(db, graphs, runner, tagger):
    graphs.create(
        "g1",
        nodes=[
            graphs.trigger("T"),
            graphs.tag("A", "a"),
            graphs.tag("C", "c"),
            graphs.tag("D", "joined"),
        ],
        edges=[("T", "A"), ("T", "C"), ("A", "D"), ("C", "D")],
    )
    run = _start(db, to_stage_id="won")

    assert runner.tick(db).processed == 2
    assert runner.tick(db).processed == 1
    assert runner.tick(db).processed == 0

    assert [c for c in tagger.calls if c[2] == "joined"] == [("w1", "lead1", "joined")]
    assert db.query(RunStep).filter(RunStep.run_id == run.id, RunStep.node_id == "D").count() == 1


def test_cycle_stops_instead_of_looping(db, graphs, runner, tagger):
    graphs.create(
        "g1",
        nodes=[graphs.trigger("T"), graphs.tag("A", "a"), graphs.tag("B", "b")],
        edges=[("T", "A"), ("A", "B"), ("B", "A")],
    )
    run = _start(db, to_stage_id="won")

    assert runner.tick(db).processed == 1
    assert runner.tick(db).processed == 1
    assert runner.tick(db).processed == 0
    assert [label for _, _, label in tagger.calls] == ["a", "b"]
    assert repository.get_run(db, run.id).status == "success"


def test_batch_size_bounds_each_tick(db, graphs, tagger):
    runner = StepScheduler("w", ActionExecutor(tagger), batch_size=2, lease_seconds=60)
    graphs.create(
        "g1",
        nodes=[graphs.trigger("T")] + [graphs.tag(f"A{i}", f"l{i}") for i in range(5)],
        edges=[("T", f"A{i}") for i in range(5)],
    )
    _start(db, to_stage_id="won")

    assert [runner.tick(db).processed for _ in range(4)] == [2, 2, 1, 0]


def test_overlapping_ticks_never_share_a_step(session_factory, graphs, db, tagger):
    graphs.create(
        "g1",
        nodes=[graphs.trigger("T")] + [graphs.tag(f"A{i}", f"l{i}") for i in range(4)],
        edges=[("T", f"A{i}") for i in range(4)],
    )
    _start(db, to_stage_id="won")

    first, second = session_factory(), session_factory()
    try:
        held = repository.claim_steps(first, 2, "slow-worker", 60)
        held_ids = {s.id for s in held}

        other = StepScheduler("fast", ActionExecutor(tagger), batch_size=10, lease_seconds=60)
        report = other.tick(second)
        assert report.processed == 2
        assert held_ids.isdisjoint(report.step_ids)

        assert other.tick(second).processed == 0
    finally:
        first.close()
        second.close()


def test_expired_lease_is_reclaimed(db, graphs, runner, tagger):
    graphs.create(
        "g1",
        nodes=[graphs.trigger("T"), graphs.tag("A", "hot")],
        edges=[("T", "A")],
    )
    run = _start(db, to_stage_id="won")

    # A worker that claimed the step and died: its lease is already expired.
    crashed = repository.claim_steps(db, 10, "crashed-worker", -1)
    assert len(crashed) == 1
    step_id = crashed[0].id

    report = runner.tick(db)
    assert report.step_ids == [step_id]
    assert _statuses(db, run.id) == {"A": "success"}

    # The crashed worker coming back cannot overwrite the result.
    assert repository.finish_step(db, step_id, "crashed-worker", "failed", error="late") is False
    db.rollback()
    assert _statuses(db, run.id) == {"A": "success"}


def test_live_lease_is_not_reclaimed(db, graphs, runner):
    graphs.create(
        "g1",
        nodes=[graphs.trigger("T"), graphs.tag("A", "hot")],
        edges=[("T", "A")],
    )
    _start(db, to_stage_id="won")

    assert len(repository.claim_steps(db, 10, "busy-worker", 300)) == 1
    assert runner.tick(db).processed == 0


def test_future_steps_are_not_claimed(db, graphs, runner):
    graphs.create(
        "g1",
        nodes=[graphs.trigger("T"), graphs.tag("A", "hot")],
        edges=[("T", "A")],
    )
    run = _start(db, to_stage_id="won")
    db.query(RunStep).filter(RunStep.run_id == run.id).update(
        {"scheduled_for": repository.now_iso(3600)}
    )
    db.commit()

    assert runner.tick(db).processed == 0


def test_unreadable_node_config_fails_only_that_step(db, graphs, runner, tagger):
    graphs.create(
        "g1",
        nodes=[graphs.trigger("T"), graphs.tag("A", "broken"), graphs.tag("C", "hot")],
        edges=[("T", "A"), ("T", "C")],
    )
    run = _start(db, to_stage_id="won")
    db.query(WorkflowNode).filter(WorkflowNode.id == "A").update({"config": "{not json"})
    db.commit()

    report = runner.tick(db)

    assert report.processed == 2
    assert report.failed == 1
    assert _statuses(db, run.id) == {"A": "failed", "C": "success"}
    assert tagger.calls == [("w1", "lead1", "hot")]
    step_a = next(s for s in repository.get_run_steps(db, run.id) if s.node_id == "A")
    assert step_a.error == "invalid_action_config"


def test_concurrent_ticks_claim_each_step_once(session_factory, graphs, db, tagger):
    graphs.create(
        "g1",
        nodes=[graphs.trigger("T")] + [graphs.tag(f"A{i}", f"l{i}") for i in range(40)],
        edges=[("T", f"A{i}") for i in range(40)],
    )
    _start(db, to_stage_id="won")

    workers = 4
    barrier = threading.Barrier(workers)
    claimed = [[] for _ in range(workers)]

    def work(index):
        runner = StepScheduler(f"w{index}", ActionExecutor(tagger), batch_size=5, lease_seconds=60)
        session = session_factory()
        try:
            barrier.wait()
            for _ in range(20):
                try:
                    claimed[index].extend(runner.tick(session).step_ids)
                except OperationalError:
                    # SQLite refused the write lock; retry on the next pass.
                    session.rollback()
        finally:
            session.close()

    threads = [threading.Thread(target=work, args=(i,)) for i in range(workers)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    all_ids = [step_id for ids in claimed for step_id in ids]
    assert len(all_ids) == len(set(all_ids))
    labels = [label for _, _, label in tagger.calls]
    assert len(labels) == len(set(labels))


def test_run_stays_open_while_a_step_is_pending(db, graphs, runner):
    graphs.create(
        "g1",
        nodes=[graphs.trigger("T"), graphs.tag("A", "a"), graphs.tag("B", "b")],
        edges=[("T", "A"), ("A", "B")],
    )
    run = _start(db, to_stage_id="won")

    assert repository.finalize_run(db, run.id) is None
    runner.tick(db)
    assert repository.get_run(db, run.id).status == "running"
    runner.tick(db)
    assert repository.get_run(db, run.id).status == "success"
