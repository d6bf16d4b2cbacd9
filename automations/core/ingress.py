import logging
import uuid
from dataclasses import dataclass

from pydantic import ValidationError
from sqlalchemy.orm import Session

from automations import config
from automations.core.events import DomainEvent
from automations.core.matcher import match_event
from automations.db import repository
from automations.db.tables import WorkflowEvent

logger = logging.getLogger(__name__)


def ingest_event(db: Session, event: DomainEvent) -> int:
    """Match an event synchronously. Safe to call repeatedly for the same event."""
    try:
        triggered = match_event(db, event)
        db.commit()
    except Exception:
        db.rollback()
        raise
    return triggered


def enqueue_event(db: Session, event: DomainEvent) -> tuple[WorkflowEvent, bool]:
    """Durably record an event for later matching by ``EventQueueDrainer``."""
    try:
        row, created = repository.enqueue_event(db, event)
        db.commit()
    except Exception:
        db.rollback()
        raise
    if created:
        logger.info("Queued %s for %s/%s", event.event_kind, event.tenant_id, event.entity_id)
    return row, created


@dataclass
class DrainReport:
    processed: int = 0
    released: int = 0


class EventQueueDrainer:
    def __init__(
        self,
        worker_id: str,
        batch_size: int = config.EVENT_BATCH_SIZE,
        lease_seconds: float = config.LEASE_SECONDS,
        max_attempts: int = config.EVENT_MAX_ATTEMPTS,
    ):
        self.worker_id = worker_id
        self.batch_size = batch_size
        self.lease_seconds = lease_seconds
        self.max_attempts = max_attempts

    def drain(self, db: Session) -> DrainReport:
        report = DrainReport()
        lease = f"events-{self.worker_id}-{uuid.uuid4().hex}"

        rows = repository.claim_events(db, self.batch_size, lease, self.lease_seconds)
        if not rows:
            return report
        logger.info("Claimed %d queued events (lease %s)", len(rows), lease)

        for row in rows:
            event_id = row.id
            try:
                event = DomainEvent.model_validate(repository.loads(row.payload))
            except ValidationError as e:
                # Unreadable payloads are closed out so they do not block the queue.
                logger.warning("Event %s has an invalid payload: %s", event_id, e)
                repository.finish_event(db, event_id, lease, 0, error="invalid_payload")
                db.commit()
                report.processed += 1
                continue

            try:
                triggered = match_event(db, event)
                if not repository.finish_event(db, event_id, lease, triggered):
                    db.rollback()
                    logger.warning("Lease %s lost on event %s; result discarded", lease, event_id)
                    continue
                db.commit()
                report.processed += 1
            except Exception as e:
                db.rollback()
                logger.warning("Matching event %s failed, releasing: %s", event_id, e)
                repository.release_event(db, event_id, lease, str(e) or type(e).__name__, self.max_attempts)
                db.commit()
                report.released += 1

        return report
