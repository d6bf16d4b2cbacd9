from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# --- Request models ---

class NodeDefinition(CamelModel):
    id: str
    kind: str
    name: str = ""
    config: dict[str, Any] = Field(default_factory=dict)


class EdgeDefinition(CamelModel):
    id: str | None = None
    from_node_id: str
    to_node_id: str


class GraphCreate(CamelModel):
    id: str
    tenant_id: str
    name: str = ""
    status: Literal["draft", "active", "paused"] = "draft"
    nodes: list[NodeDefinition]
    edges: list[EdgeDefinition] = Field(default_factory=list)


class GraphStatusUpdate(CamelModel):
    status: Literal["draft", "active", "paused"]


class EventIn(CamelModel):
    tenant_id: str = Field(min_length=1)
    entity_id: str = Field(min_length=1)
    event_kind: str = Field(min_length=1)
    attributes: dict[str, Any] = Field(default_factory=dict)
    event_id: str | None = None


class LeadStageChangedIn(CamelModel):
    tenant_id: str = Field(min_length=1)
    entity_id: str = Field(min_length=1)
    to_stage_id: str = Field(min_length=1)
    from_stage_id: str | None = None
    pipeline_id: str | None = None
    occurred_at: str | None = None
    event_id: str | None = None


# --- Response models ---

class GraphResponse(CamelModel):
    id: str
    tenant_id: str
    name: str
    status: str
    created_at: str
    nodes: list[NodeDefinition]
    edges: list[EdgeDefinition]


class TriggeredResponse(CamelModel):
    triggered: int


class EnqueuedResponse(CamelModel):
    queued: bool
    event_id: str


class EventTickResponse(CamelModel):
    processed: int
    released: int


class RunnerTickResponse(CamelModel):
    processed: int
    succeeded: int
    skipped: int
    failed: int


class OutboxTickResponse(CamelModel):
    processed: int
    sent: int
    failed: int


class RunResponse(CamelModel):
    id: str
    graph_id: str
    tenant_id: str
    trigger_node_id: str
    status: str
    context: dict[str, Any]
    started_at: str
    finished_at: str | None = None


class StepResponse(CamelModel):
    id: str
    run_id: str
    node_id: str
    status: str
    scheduled_for: str
    started_at: str | None = None
    finished_at: str | None = None
    output: dict[str, Any] | None = None
    error: str | None = None


class OutboxMessageResponse(CamelModel):
    id: str
    run_id: str
    step_id: str
    channel: str
    to: str
    payload: dict[str, Any]
    status: str
    sent_at: str | None = None
    provider_message_id: str | None = None
    error: str | None = None
