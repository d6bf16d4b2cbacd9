from sqlalchemy import Column, String, Integer, Text, ForeignKey, Index, UniqueConstraint
from automations.db.database import Base


class WorkflowGraph(Base):
    __tablename__ = "workflow_graphs"

    id = Column(String, primary_key=True)
    tenant_id = Column(String, nullable=False, index=True)
    name = Column(String, nullable=False, default="")
    status = Column(String, nullable=False, default="draft")
    created_at = Column(String, nullable=False)


class WorkflowNode(Base):
    __tablename__ = "workflow_nodes"

    id = Column(String, primary_key=True)
    graph_id = Column(String, ForeignKey("workflow_graphs.id"), nullable=False, index=True)
    kind = Column(String, nullable=False)
    name = Column(String, nullable=False, default="")
    config = Column(Text, nullable=False, default="{}")


class WorkflowEdge(Base):
    __tablename__ = "workflow_edges"

    id = Column(String, primary_key=True)
    graph_id = Column(String, ForeignKey("workflow_graphs.id"), nullable=False, index=True)
    from_node_id = Column(String, ForeignKey("workflow_nodes.id"), nullable=False)
    to_node_id = Column(String, ForeignKey("workflow_nodes.id"), nullable=False)


class WorkflowRun(Base):
    __tablename__ = "workflow_runs"
    __table_args__ = (
        UniqueConstraint("trigger_node_id", "event_key", name="uq_run_trigger_event"),
    )

    id = Column(String, primary_key=True)
    graph_id = Column(String, ForeignKey("workflow_graphs.id"), nullable=False)
    tenant_id = Column(String, nullable=False)
    trigger_node_id = Column(String, nullable=False)
    event_key = Column(String, nullable=False)
    status = Column(String, nullable=False, default="running")
    context = Column(Text, nullable=False, default="{}")
    started_at = Column(String, nullable=False)
    finished_at = Column(String, nullable=True)


class RunStep(Base):
    __tablename__ = "workflow_run_steps"
    __table_args__ = (
        UniqueConstraint("run_id", "node_id", name="uq_step_run_node"),
        Index("ix_steps_claim", "status", "scheduled_for"),
    )

    id = Column(String, primary_key=True)
    run_id = Column(String, ForeignKey("workflow_runs.id"), nullable=False)
    node_id = Column(String, nullable=False)
    status = Column(String, nullable=False, default="queued")
    scheduled_for = Column(String, nullable=False)
    locked_by = Column(String, nullable=True)
    lease_expires_at = Column(String, nullable=True)
    started_at = Column(String, nullable=True)
    finished_at = Column(String, nullable=True)
    output = Column(Text, nullable=True)
    error = Column(Text, nullable=True)


class OutboxMessage(Base):
    __tablename__ = "workflow_message_outbox"
    __table_args__ = (
        Index("ix_outbox_claim", "status", "created_at"),
    )

    id = Column(String, primary_key=True)
    tenant_id = Column(String, nullable=False)
    run_id = Column(String, ForeignKey("workflow_runs.id"), nullable=False)
    step_id = Column(String, ForeignKey("workflow_run_steps.id"), nullable=False, unique=True)
    channel = Column(String, nullable=False)
    to = Column(String, nullable=False)
    payload = Column(Text, nullable=False, default="{}")
    status = Column(String, nullable=False, default="queued")
    locked_by = Column(String, nullable=True)
    lease_expires_at = Column(String, nullable=True)
    created_at = Column(String, nullable=False)
    sent_at = Column(String, nullable=True)
    provider_message_id = Column(String, nullable=True)
    error = Column(Text, nullable=True)


class WorkflowEvent(Base):
    __tablename__ = "workflow_events"
    __table_args__ = (
        UniqueConstraint("tenant_id", "event_key", name="uq_event_tenant_key"),
        Index("ix_events_claim", "status", "created_at"),
    )

    id = Column(String, primary_key=True)
    tenant_id = Column(String, nullable=False)
    event_kind = Column(String, nullable=False)
    entity_id = Column(String, nullable=False)
    payload = Column(Text, nullable=False, default="{}")
    event_key = Column(String, nullable=False)
    status = Column(String, nullable=False, default="queued")
    locked_by = Column(String, nullable=True)
    lease_expires_at = Column(String, nullable=True)
    attempts = Column(Integer, nullable=False, default=0)
    triggered = Column(Integer, nullable=True)
    error = Column(Text, nullable=True)
    created_at = Column(String, nullable=False)
    processed_at = Column(String, nullable=True)
