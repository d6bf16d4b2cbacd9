from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from automations import config
from automations.api.auth import verify_api_key
from automations.api.schemas import (
    EdgeDefinition,
    EnqueuedResponse,
    EventIn,
    EventTickResponse,
    GraphCreate,
    GraphResponse,
    GraphStatusUpdate,
    LeadStageChangedIn,
    NodeDefinition,
    OutboxMessageResponse,
    OutboxTickResponse,
    RunnerTickResponse,
    RunResponse,
    StepResponse,
    TriggeredResponse,
)
from automations.core.dag import validate_graph
from automations.core.events import DomainEvent, lead_stage_changed
from automations.core.ingress import EventQueueDrainer, enqueue_event, ingest_event
from automations.db import repository
from automations.db.database import get_db
from automations.worker.executor import ActionExecutor
from automations.worker.outbox import OutboxDispatcher
from automations.worker.senders import build_senders
from automations.worker.tagging import build_tagger
from automations.worker.tick import StepScheduler

router = APIRouter(dependencies=[Depends(verify_api_key)])


def get_tagger():
    return build_tagger()


def get_senders():
    return build_senders()


def _graph_response(db: Session, graph) -> GraphResponse:
    return GraphResponse(
        id=graph.id,
        tenant_id=graph.tenant_id,
        name=graph.name,
        status=graph.status,
        created_at=graph.created_at,
        nodes=[
            NodeDefinition(
                id=n.id, kind=n.kind, name=n.name, config=repository.loads(n.config) or {}
            )
            for n in repository.get_graph_nodes(db, graph.id)
        ],
        edges=[
            EdgeDefinition(id=e.id, from_node_id=e.from_node_id, to_node_id=e.to_node_id)
            for e in repository.get_graph_edges(db, graph.id)
        ],
    )


def _run_response(run) -> RunResponse:
    return RunResponse(
        id=run.id,
        graph_id=run.graph_id,
        tenant_id=run.tenant_id,
        trigger_node_id=run.trigger_node_id,
        status=run.status,
        context=repository.loads(run.context) or {},
        started_at=run.started_at,
        finished_at=run.finished_at,
    )


def _require_run(db: Session, run_id: str):
    run = repository.get_run(db, run_id)
    if not run:
        raise HTTPException(status_code=404, detail=f"Run '{run_id}' not found")
    return run


# ── Graph authoring ─────────────────────────────────────────────────────────


@router.post("/graphs", response_model=GraphResponse)
def register_graph(graph: GraphCreate, db: Session = Depends(get_db)):
    if repository.get_graph(db, graph.id):
        raise HTTPException(
            status_code=409, detail=f"Graph '{graph.id}' already exists"
        )

    definition = graph.model_dump()
    errors = validate_graph(definition)
    if errors:
        raise HTTPException(status_code=400, detail={"errors": errors})

    taken = repository.get_nodes(db, [node["id"] for node in definition["nodes"]])
    if taken:
        raise HTTPException(
            status_code=409,
            detail=f"Node ids already in use: {', '.join(sorted(taken))}",
        )

    try:
        created = repository.create_graph(
            db,
            graph.id,
            graph.tenant_id,
            graph.name,
            graph.status,
            definition["nodes"],
            definition["edges"],
        )
    except IntegrityError:
        db.rollback()
        raise HTTPException(
            status_code=409, detail=f"Graph '{graph.id}' conflicts with an existing graph"
        )
    return _graph_response(db, created)


@router.get("/graphs", response_model=list[GraphResponse])
def list_graphs(
    tenant_id: str | None = Query(None, alias="tenantId"), db: Session = Depends(get_db)
):
    return [_graph_response(db, g) for g in repository.list_graphs(db, tenant_id)]


@router.get("/graphs/{graph_id}", response_model=GraphResponse)
def get_graph(graph_id: str, db: Session = Depends(get_db)):
    graph = repository.get_graph(db, graph_id)
    if not graph:
        raise HTTPException(status_code=404, detail=f"Graph '{graph_id}' not found")
    return _graph_response(db, graph)


@router.post("/graphs/{graph_id}/status", response_model=GraphResponse)
def set_graph_status(graph_id: str, body: GraphStatusUpdate, db: Session = Depends(get_db)):
    graph = repository.set_graph_status(db, graph_id, body.status)
    if not graph:
        raise HTTPException(status_code=404, detail=f"Graph '{graph_id}' not found")
    return _graph_response(db, graph)


# ── Event ingress ───────────────────────────────────────────────────────────


@router.post("/events", response_model=TriggeredResponse)
def ingest(body: EventIn, db: Session = Depends(get_db)):
    event = DomainEvent(**body.model_dump())
    return TriggeredResponse(triggered=ingest_event(db, event))


@router.post("/triggers/lead-stage-changed", response_model=TriggeredResponse)
def ingest_lead_stage_changed(body: LeadStageChangedIn, db: Session = Depends(get_db)):
    event = lead_stage_changed(**body.model_dump())
    return TriggeredResponse(triggered=ingest_event(db, event))


@router.post("/events/enqueue", response_model=EnqueuedResponse)
def enqueue(body: EventIn, db: Session = Depends(get_db)):
    row, created = enqueue_event(db, DomainEvent(**body.model_dump()))
    return EnqueuedResponse(queued=created, event_id=row.id)


@router.post("/events/tick", response_model=EventTickResponse)
def events_tick(db: Session = Depends(get_db)):
    report = EventQueueDrainer(config.WORKER_ID).drain(db)
    return EventTickResponse(processed=report.processed, released=report.released)


# ── Tick invocations ────────────────────────────────────────────────────────


@router.post("/runner/tick", response_model=RunnerTickResponse)
def runner_tick(db: Session = Depends(get_db), tagger=Depends(get_tagger)):
    runner = StepScheduler(config.WORKER_ID, ActionExecutor(tagger))
    report = runner.tick(db)
    return RunnerTickResponse(
        processed=report.processed,
        succeeded=report.succeeded,
        skipped=report.skipped,
        failed=report.failed,
    )


@router.post("/outbox/tick", response_model=OutboxTickResponse)
def outbox_tick(db: Session = Depends(get_db), senders=Depends(get_senders)):
    report = OutboxDispatcher(config.WORKER_ID, senders).tick(db)
    return OutboxTickResponse(processed=report.processed, sent=report.sent, failed=report.failed)


# ── Audit trail ─────────────────────────────────────────────────────────────


@router.get("/graphs/{graph_id}/runs", response_model=list[RunResponse])
def list_graph_runs(graph_id: str, db: Session = Depends(get_db)):
    if not repository.get_graph(db, graph_id):
        raise HTTPException(status_code=404, detail=f"Graph '{graph_id}' not found")
    return [_run_response(r) for r in repository.list_runs(db, graph_id)]


@router.get("/runs/{run_id}", response_model=RunResponse)
def get_run(run_id: str, db: Session = Depends(get_db)):
    return _run_response(_require_run(db, run_id))


@router.get("/runs/{run_id}/steps", response_model=list[StepResponse])
def get_run_steps(run_id: str, db: Session = Depends(get_db)):
    _require_run(db, run_id)
    return [
        StepResponse(
            id=s.id,
            run_id=s.run_id,
            node_id=s.node_id,
            status=s.status,
            scheduled_for=s.scheduled_for,
            started_at=s.started_at,
            finished_at=s.finished_at,
            output=repository.loads(s.output),
            error=s.error,
        )
        for s in repository.get_run_steps(db, run_id)
    ]


@router.get("/runs/{run_id}/outbox", response_model=list[OutboxMessageResponse])
def get_run_outbox(run_id: str, db: Session = Depends(get_db)):
    _require_run(db, run_id)
    return [
        OutboxMessageResponse(
            id=m.id,
            run_id=m.run_id,
            step_id=m.step_id,
            channel=m.channel,
            to=m.to,
            payload=repository.loads(m.payload) or {},
            status=m.status,
            sent_at=m.sent_at,
            provider_message_id=m.provider_message_id,
            error=m.error,
        )
        for m in repository.get_run_messages(db, run_id)
    ]
