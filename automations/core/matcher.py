import logging

from sqlalchemy.orm import Session

from automations.core.events import DomainEvent, parse_trigger_config
from automations.db import repository

logger = logging.getLogger(__name__)


def match_event(db: Session, event: DomainEvent) -> int:
    """Start a Run for every active trigger node the event matches.

    Returns the number of Runs newly started. Matching nothing is the normal
    case, not an error. A trigger without outgoing edges starts nothing.
    Re-matching an event already seen for a trigger reuses its Run and only
    tops up missing initial Steps. The caller owns the transaction.
    """
    matched = []
    for node in repository.get_active_trigger_nodes(db, event.tenant_id):
        try:
            trigger = parse_trigger_config(repository.loads(node.config))
        except ValueError:
            trigger = None
        if trigger is None:
            logger.warning("Trigger node %s has an unreadable config; ignoring", node.id)
            continue
        if trigger.matches(event):
            matched.append(node)

    if not matched:
        return 0

    successors = repository.get_successor_map(db, [node.id for node in matched])
    context = event.context()
    started = 0
    for node in matched:
        next_nodes = successors.get(node.id)
        if not next_nodes:
            continue

        run, created = repository.start_run(
            db, node.graph_id, event.tenant_id, node.id, event.event_key, context
        )
        repository.enqueue_steps(db, run.id, next_nodes)
        if created:
            started += 1
            logger.info(
                "Started run %s of graph %s for %s on %s",
                run.id, node.graph_id, event.event_kind, event.entity_id,
            )
    return started
