import hashlib
import json
from typing import Any

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError

from automations.core.models import LEAD_STAGE_CHANGED


class DomainEvent(BaseModel):
    """Something that happened to an entity of a tenant, e.g. a lead moving stage."""

    model_config = ConfigDict(frozen=True)

    tenant_id: str = Field(min_length=1)
    entity_id: str = Field(min_length=1)
    event_kind: str = Field(min_length=1)
    attributes: dict[str, Any] = Field(default_factory=dict)
    event_id: str | None = None

    @property
    def event_key(self) -> str:
        """Stable identity used to de-duplicate repeated deliveries.

        A caller-supplied ``event_id`` wins. Otherwise the key is a digest of
        the event's content, so re-sending an identical payload maps to the
        same key while a genuinely new change (different attributes) does not.
        """
        if self.event_id:
            return f"id:{self.event_id}"
        canonical = json.dumps(
            {
                "tenantId": self.tenant_id,
                "entityId": self.entity_id,
                "eventKind": self.event_kind,
                "attributes": self.attributes,
            },
            sort_keys=True,
            separators=(",", ":"),
            default=str,
        )
        return "sha256:" + hashlib.sha256(canonical.encode("utf-8")).hexdigest()

    def context(self) -> dict[str, Any]:
        """Snapshot handed to every Step of a Run started by this event."""
        return {
            **self.attributes,
            "tenantId": self.tenant_id,
            "entityId": self.entity_id,
            "eventKind": self.event_kind,
        }


def lead_stage_changed(
    tenant_id: str,
    entity_id: str,
    to_stage_id: str,
    from_stage_id: str | None = None,
    pipeline_id: str | None = None,
    occurred_at: str | None = None,
    event_id: str | None = None,
) -> DomainEvent:
    attributes = {
        "toStageId": to_stage_id,
        "fromStageId": from_stage_id,
        "pipelineId": pipeline_id,
        "occurredAt": occurred_at,
    }
    return DomainEvent(
        tenant_id=tenant_id,
        entity_id=entity_id,
        event_kind=LEAD_STAGE_CHANGED,
        attributes={k: v for k, v in attributes.items() if v is not None},
        event_id=event_id,
    )


class TriggerConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    event: str = Field(min_length=1, validation_alias=AliasChoices("event", "trigger"))
    filters: dict[str, str] = Field(default_factory=dict)

    def matches(self, event: DomainEvent) -> bool:
        if event.event_kind != self.event:
            return False
        for key, expected in self.filters.items():
            actual = event.attributes.get(key)
            if actual is None or str(actual) != expected:
                return False
        return True


def parse_trigger_config(raw: Any) -> TriggerConfig | None:
    """Return the trigger config, or None when it cannot be understood."""
    if not isinstance(raw, dict):
        return None
    try:
        return TriggerConfig.model_validate(raw)
    except ValidationError:
        return None
