from string import Template

from sqlalchemy.orm import Session

from automations.core.actions import SendMessage, TagEntity
from automations.db import repository
from automations.db.tables import WorkflowRun
from automations.worker.tagging import Tagger


class ActionError(Exception):
    pass


def render(text: str, context: dict) -> str:
    """Fill ``$name`` / ``${name}`` placeholders from the run context."""
    values = {k: "" if v is None else str(v) for k, v in context.items()}
    return Template(text).safe_substitute(values)


class ActionExecutor:
    def __init__(self, tagger: Tagger):
        self.tagger = tagger

    def execute(self, db: Session, step_id: str, run: WorkflowRun, action) -> dict:
        """Perform ``action`` for Step ``step_id`` and return the Step output.

        Database writes join the caller's transaction.
        """
        context = repository.loads(run.context) or {}

        if isinstance(action, SendMessage):
            return self._send_message(db, step_id, run, action, context)
        if isinstance(action, TagEntity):
            return self._tag_entity(run, action, context)
        raise ActionError(f"unsupported action: {action!r}")

    def _send_message(self, db, step_id, run, action: SendMessage, context: dict) -> dict:
        to = render(action.to, context).strip()
        if not to:
            raise ActionError("message recipient rendered empty")

        payload = {"body": render(action.body, context), "context": context}
        if action.channel == "email":
            payload["subject"] = render(action.subject, context)

        repository.create_outbox_message(
            db,
            tenant_id=run.tenant_id,
            run_id=run.id,
            step_id=step_id,
            channel=action.channel,
            to=to,
            payload=payload,
        )
        return {"enqueued": True, "channel": action.channel}

    def _tag_entity(self, run, action: TagEntity, context: dict) -> dict:
        entity_id = context.get("entityId")
        if not entity_id:
            raise ActionError("run context has no entityId")
        applied = self.tagger.tag(run.tenant_id, str(entity_id), action.label)
        return {"applied": applied, "label": action.label}
