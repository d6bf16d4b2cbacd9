"""Closed vocabulary of actions an ``action`` node may perform.

Node configuration arrives as loosely typed JSON from the authoring side. It
is validated once, when nodes are loaded for execution, into one of the
variants below. Anything that does not validate becomes ``UnknownAction`` and
the Step fails with ``invalid_action_config``.
"""

from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError


class SendMessage(BaseModel):
    model_config = ConfigDict(frozen=True)

    action: Literal["send_message"] = "send_message"
    channel: Literal["email", "sms"]
    to: str = Field(min_length=1)
    subject: str = ""
    body: str = ""


class TagEntity(BaseModel):
    model_config = ConfigDict(frozen=True)

    action: Literal["tag_entity"] = "tag_entity"
    label: str = Field(min_length=1)


class UnknownAction(BaseModel):
    model_config = ConfigDict(frozen=True)

    action: str | None = None
    reason: str


ActionConfig = Annotated[Union[SendMessage, TagEntity], Field(discriminator="action")]

_action_adapter = TypeAdapter(ActionConfig)

# Action names used by older graph definitions.
_ALIASES = {
    "action.send_email": {"action": "send_message", "channel": "email"},
    "action.send_sms": {"action": "send_message", "channel": "sms"},
    "lead.add_label": {"action": "tag_entity"},
}


def parse_action_config(raw: Any) -> SendMessage | TagEntity | UnknownAction:
    if not isinstance(raw, dict):
        return UnknownAction(reason="config must be an object")

    data = dict(raw)
    name = data.get("action")
    if isinstance(name, str) and name in _ALIASES:
        data.update(_ALIASES[name])

    try:
        return _action_adapter.validate_python(data)
    except ValidationError as e:
        first = e.errors()[0]
        location = ".".join(str(part) for part in first["loc"])
        return UnknownAction(
            action=name if isinstance(name, str) else None,
            reason=f"{location}: {first['msg']}" if location else first["msg"],
        )
