import json
import uuid
from datetime import datetime, timedelta, timezone

from sqlalchemy import and_, case, insert, or_, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from automations.core.events import DomainEvent
from automations.core.models import (
    EventState,
    GraphStatus,
    MessageState,
    NodeKind,
    RunState,
    StepState,
    TERMINAL_STEP_STATES,
)
from automations.db.tables import (
    OutboxMessage,
    RunStep,
    WorkflowEdge,
    WorkflowEvent,
    WorkflowGraph,
    WorkflowNode,
    WorkflowRun,
)


def now_iso(delta_seconds: float = 0) -> str:
    moment = datetime.now(timezone.utc) + timedelta(seconds=delta_seconds)
    return moment.isoformat(timespec="microseconds")


def new_id() -> str:
    return str(uuid.uuid4())


def dumps(value) -> str:
    return json.dumps(value, default=str)


def loads(text: str | None):
    return json.loads(text) if text else None


def insert_ignore(db: Session, model, rows: list[dict], conflict_columns: list[str]) -> int:
    """Insert rows, silently skipping any that collide on ``conflict_columns``.

    Returns the number of rows actually inserted.
    """
    if not rows:
        return 0

    dialect = db.get_bind().dialect.name
    if dialect == "sqlite":
        stmt = sqlite_insert(model).values(rows)
    elif dialect == "postgresql":
        stmt = pg_insert(model).values(rows)
    else:
        inserted = 0
        for row in rows:
            try:
                with db.begin_nested():
                    db.execute(insert(model).values(**row))
                inserted += 1
            except IntegrityError:
                continue
        return inserted

    stmt = stmt.on_conflict_do_nothing(index_elements=conflict_columns)
    return db.execute(stmt).rowcount


# ── Graph definitions (authoring side, commits) ────────────────────────────


def create_graph(
    db: Session,
    graph_id: str,
    tenant_id: str,
    name: str,
    status: str,
    nodes: list[dict],
    edges: list[dict],
) -> WorkflowGraph:
    graph = WorkflowGraph(
        id=graph_id,
        tenant_id=tenant_id,
        name=name,
        status=status,
        created_at=now_iso(),
    )
    db.add(graph)
    db.flush()

    for node in nodes:
        db.add(
            WorkflowNode(
                id=node["id"],
                graph_id=graph_id,
                kind=node["kind"],
                name=node.get("name", ""),
                config=dumps(node.get("config", {})),
            )
        )
    db.flush()

    for edge in edges:
        db.add(
            WorkflowEdge(
                id=edge.get("id") or new_id(),
                graph_id=graph_id,
                from_node_id=edge["from_node_id"],
                to_node_id=edge["to_node_id"],
            )
        )

    db.commit()
    db.refresh(graph)
    return graph


def get_graph(db: Session, graph_id: str) -> WorkflowGraph | None:
    return db.query(WorkflowGraph).filter(WorkflowGraph.id == graph_id).first()


def list_graphs(db: Session, tenant_id: str | None = None) -> list[WorkflowGraph]:
    query = db.query(WorkflowGraph)
    if tenant_id:
        query = query.filter(WorkflowGraph.tenant_id == tenant_id)
    return query.order_by(WorkflowGraph.created_at).all()


def get_graph_nodes(db: Session, graph_id: str) -> list[WorkflowNode]:
    return db.query(WorkflowNode).filter(WorkflowNode.graph_id == graph_id).all()


def get_graph_edges(db: Session, graph_id: str) -> list[WorkflowEdge]:
    return db.query(WorkflowEdge).filter(WorkflowEdge.graph_id == graph_id).all()


def set_graph_status(db: Session, graph_id: str, status: str) -> WorkflowGraph | None:
    graph = get_graph(db, graph_id)
    if graph:
        graph.status = status
        db.commit()
        db.refresh(graph)
    return graph


# ── Engine reads ────────────────────────────────────────────────────────────


def get_active_trigger_nodes(db: Session, tenant_id: str) -> list[WorkflowNode]:
    return list(
        db.execute(
            select(WorkflowNode)
            .join(WorkflowGraph, WorkflowGraph.id == WorkflowNode.graph_id)
            .where(
                WorkflowGraph.tenant_id == tenant_id,
                WorkflowGraph.status == GraphStatus.ACTIVE,
                WorkflowNode.kind == NodeKind.TRIGGER,
            )
            .order_by(WorkflowGraph.created_at, WorkflowNode.id)
        ).scalars()
    )


def get_successor_map(db: Session, node_ids: list[str]) -> dict[str, list[str]]:
    """Map each node id to the destinations of its outgoing edges.

    Edges whose endpoints belong to different graphs are ignored.
    """
    if not node_ids:
        return {}
    source = WorkflowNode.__table__.alias("source")
    target = WorkflowNode.__table__.alias("target")
    rows = db.execute(
        select(WorkflowEdge.from_node_id, WorkflowEdge.to_node_id)
        .join(source, source.c.id == WorkflowEdge.from_node_id)
        .join(target, target.c.id == WorkflowEdge.to_node_id)
        .where(
            WorkflowEdge.from_node_id.in_(node_ids),
            source.c.graph_id == WorkflowEdge.graph_id,
            target.c.graph_id == WorkflowEdge.graph_id,
        )
        .order_by(WorkflowEdge.from_node_id, WorkflowEdge.id)
    ).all()

    successors: dict[str, list[str]] = {}
    for from_node_id, to_node_id in rows:
        successors.setdefault(from_node_id, []).append(to_node_id)
    return successors


def get_nodes(db: Session, node_ids: list[str]) -> dict[str, WorkflowNode]:
    if not node_ids:
        return {}
    nodes = db.execute(
        select(WorkflowNode).where(WorkflowNode.id.in_(set(node_ids)))
    ).scalars()
    return {node.id: node for node in nodes}


def get_runs(db: Session, run_ids: list[str]) -> dict[str, WorkflowRun]:
    if not run_ids:
        return {}
    runs = db.execute(select(WorkflowRun).where(WorkflowRun.id.in_(set(run_ids)))).scalars()
    return {run.id: run for run in runs}


def get_run(db: Session, run_id: str) -> WorkflowRun | None:
    return db.query(WorkflowRun).filter(WorkflowRun.id == run_id).first()


def list_runs(db: Session, graph_id: str) -> list[WorkflowRun]:
    return (
        db.query(WorkflowRun)
        .filter(WorkflowRun.graph_id == graph_id)
        .order_by(WorkflowRun.started_at)
        .all()
    )


def get_run_steps(db: Session, run_id: str) -> list[RunStep]:
    return (
        db.query(RunStep)
        .filter(RunStep.run_id == run_id)
        .order_by(RunStep.scheduled_for, RunStep.id)
        .all()
    )


def get_run_messages(db: Session, run_id: str) -> list[OutboxMessage]:
    return (
        db.query(OutboxMessage)
        .filter(OutboxMessage.run_id == run_id)
        .order_by(OutboxMessage.created_at)
        .all()
    )


# ── Engine writes (callers own the transaction) ─────────────────────────────


def start_run(
    db: Session,
    graph_id: str,
    tenant_id: str,
    trigger_node_id: str,
    event_key: str,
    context: dict,
) -> tuple[WorkflowRun, bool]:
    """Create the Run for (trigger node, event) unless it already exists.

    Returns the Run and whether this call created it.
    """
    run_id = new_id()
    insert_ignore(
        db,
        WorkflowRun,
        [
            {
                "id": run_id,
                "graph_id": graph_id,
                "tenant_id": tenant_id,
                "trigger_node_id": trigger_node_id,
                "event_key": event_key,
                "status": RunState.RUNNING.value,
                "context": dumps(context),
                "started_at": now_iso(),
            }
        ],
        ["trigger_node_id", "event_key"],
    )
    run = db.execute(
        select(WorkflowRun).where(
            WorkflowRun.trigger_node_id == trigger_node_id,
            WorkflowRun.event_key == event_key,
        )
    ).scalar_one()
    return run, run.id == run_id


def enqueue_steps(db: Session, run_id: str, node_ids: list[str]) -> int:
    """Queue one Step per node; nodes already visited by the run are skipped."""
    scheduled_for = now_iso()
    rows = [
        {
            "id": new_id(),
            "run_id": run_id,
            "node_id": node_id,
            "status": StepState.QUEUED.value,
            "scheduled_for": scheduled_for,
        }
        for node_id in dict.fromkeys(node_ids)
    ]
    return insert_ignore(db, RunStep, rows, ["run_id", "node_id"])


def _claim(
    db: Session,
    model,
    order_by,
    eligible,
    batch_size: int,
    lease: str,
    lease_seconds: float,
    extra_values: dict | None = None,
) -> list:
    """Move up to ``batch_size`` eligible rows to ``processing`` under ``lease``.

    Rows whose lease has expired are eligible again. The conditional UPDATE is
    the compare-and-set: a row claimed by another invocation between the
    candidate SELECT and the UPDATE no longer matches and is left alone.
    """
    now = now_iso()
    reclaimable = and_(model.status == "processing", model.lease_expires_at < now)
    condition = or_(eligible(now), reclaimable)

    candidate_ids = list(
        db.execute(
            select(model.id)
            .where(condition)
            .order_by(*order_by)
            .limit(batch_size)
            .with_for_update(skip_locked=True)
        ).scalars()
    )
    if not candidate_ids:
        db.commit()
        return []

    db.execute(
        update(model)
        .where(model.id.in_(candidate_ids), condition)
        .values(
            status="processing",
            locked_by=lease,
            lease_expires_at=now_iso(lease_seconds),
            **(extra_values or {}),
        )
        .execution_options(synchronize_session=False)
    )
    db.commit()

    return list(
        db.execute(
            select(model)
            .where(model.locked_by == lease, model.status == "processing")
            .order_by(*order_by)
        ).scalars()
    )


def claim_steps(db: Session, batch_size: int, lease: str, lease_seconds: float) -> list[RunStep]:
    return _claim(
        db,
        RunStep,
        (RunStep.scheduled_for, RunStep.id),
        lambda now: and_(RunStep.status == StepState.QUEUED, RunStep.scheduled_for <= now),
        batch_size,
        lease,
        lease_seconds,
        extra_values={"started_at": now_iso()},
    )


def finish_step(
    db: Session,
    step_id: str,
    lease: str,
    status: str,
    output: dict | None = None,
    error: str | None = None,
) -> bool:
    """Move a claimed Step to a terminal state. False if the lease was lost."""
    result = db.execute(
        update(RunStep)
        .where(
            RunStep.id == step_id,
            RunStep.locked_by == lease,
            RunStep.status == StepState.PROCESSING,
        )
        .values(
            status=status,
            output=dumps(output) if output is not None else None,
            error=error,
            finished_at=now_iso(),
            lease_expires_at=None,
        )
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


def finalize_run(db: Session, run_id: str) -> str | None:
    """Close the Run once none of its Steps are pending. Returns the new status."""
    statuses = list(db.execute(select(RunStep.status).where(RunStep.run_id == run_id)).scalars())
    if not statuses or any(StepState(s) not in TERMINAL_STEP_STATES for s in statuses):
        return None

    status = RunState.FAILED if StepState.FAILED in statuses else RunState.SUCCESS
    db.execute(
        update(WorkflowRun)
        .where(WorkflowRun.id == run_id)
        .values(status=status.value, finished_at=now_iso())
        .execution_options(synchronize_session=False)
    )
    return status.value


def create_outbox_message(
    db: Session,
    tenant_id: str,
    run_id: str,
    step_id: str,
    channel: str,
    to: str,
    payload: dict,
) -> bool:
    """Queue a message for a Step. False if the Step already queued one."""
    inserted = insert_ignore(
        db,
        OutboxMessage,
        [
            {
                "id": new_id(),
                "tenant_id": tenant_id,
                "run_id": run_id,
                "step_id": step_id,
                "channel": channel,
                "to": to,
                "payload": dumps(payload),
                "status": MessageState.QUEUED.value,
                "created_at": now_iso(),
            }
        ],
        ["step_id"],
    )
    return inserted == 1


def claim_messages(
    db: Session, batch_size: int, lease: str, lease_seconds: float
) -> list[OutboxMessage]:
    return _claim(
        db,
        OutboxMessage,
        (OutboxMessage.created_at, OutboxMessage.id),
        lambda now: OutboxMessage.status == MessageState.QUEUED,
        batch_size,
        lease,
        lease_seconds,
    )


def finish_message(
    db: Session,
    message_id: str,
    lease: str,
    status: str,
    provider_message_id: str | None = None,
    error: str | None = None,
) -> bool:
    values = {"status": status, "error": error, "lease_expires_at": None}
    if status == MessageState.SENT:
        values["sent_at"] = now_iso()
        values["provider_message_id"] = provider_message_id
    result = db.execute(
        update(OutboxMessage)
        .where(
            OutboxMessage.id == message_id,
            OutboxMessage.locked_by == lease,
            OutboxMessage.status == MessageState.PROCESSING,
        )
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


# ── Event queue ─────────────────────────────────────────────────────────────


def enqueue_event(db: Session, event: DomainEvent) -> tuple[WorkflowEvent, bool]:
    event_id = new_id()
    insert_ignore(
        db,
        WorkflowEvent,
        [
            {
                "id": event_id,
                "tenant_id": event.tenant_id,
                "event_kind": event.event_kind,
                "entity_id": event.entity_id,
                "payload": dumps(event.model_dump()),
                "event_key": event.event_key,
                "status": EventState.QUEUED.value,
                "attempts": 0,
                "created_at": now_iso(),
            }
        ],
        ["tenant_id", "event_key"],
    )
    row = db.execute(
        select(WorkflowEvent).where(
            WorkflowEvent.tenant_id == event.tenant_id,
            WorkflowEvent.event_key == event.event_key,
        )
    ).scalar_one()
    return row, row.id == event_id


def claim_events(
    db: Session, batch_size: int, lease: str, lease_seconds: float
) -> list[WorkflowEvent]:
    return _claim(
        db,
        WorkflowEvent,
        (WorkflowEvent.created_at, WorkflowEvent.id),
        lambda now: WorkflowEvent.status == EventState.QUEUED,
        batch_size,
        lease,
        lease_seconds,
    )


def finish_event(
    db: Session, event_id: str, lease: str, triggered: int, error: str | None = None
) -> bool:
    result = db.execute(
        update(WorkflowEvent)
        .where(
            WorkflowEvent.id == event_id,
            WorkflowEvent.locked_by == lease,
            WorkflowEvent.status == EventState.PROCESSING,
        )
        .values(
            status=EventState.PROCESSED.value,
            triggered=triggered,
            processed_at=now_iso(),
            lease_expires_at=None,
            error=error,
        )
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


def release_event(
    db: Session, event_id: str, lease: str, error: str, max_attempts: int
) -> bool:
    """Hand a failed event back to the queue, or give up after ``max_attempts``."""
    attempts = WorkflowEvent.attempts + 1
    result = db.execute(
        update(WorkflowEvent)
        .where(
            WorkflowEvent.id == event_id,
            WorkflowEvent.locked_by == lease,
            WorkflowEvent.status == EventState.PROCESSING,
        )
        .values(
            attempts=attempts,
            status=case(
                (attempts >= max_attempts, EventState.FAILED.value),
                else_=EventState.QUEUED.value,
            ),
            locked_by=None,
            lease_expires_at=None,
            error=error,
        )
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1
