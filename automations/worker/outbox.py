import logging
import uuid
from dataclasses import dataclass, field

from sqlalchemy.orm import Session

from automations import config
from automations.core.models import MessageState
from automations.db import repository
from automations.worker.senders import ChannelSender

logger = logging.getLogger(__name__)


@dataclass
class DispatchReport:
    processed: int = 0
    sent: int = 0
    failed: int = 0
    message_ids: list[str] = field(default_factory=list)


class OutboxDispatcher:
    """Claims queued outbound messages and hands them to channel senders."""

    def __init__(
        self,
        worker_id: str,
        senders: dict[str, ChannelSender],
        batch_size: int = config.OUTBOX_BATCH_SIZE,
        lease_seconds: float = config.LEASE_SECONDS,
    ):
        self.worker_id = worker_id
        self.senders = senders
        self.batch_size = batch_size
        self.lease_seconds = lease_seconds

    def tick(self, db: Session) -> DispatchReport:
        report = DispatchReport()
        lease = f"outbox-{self.worker_id}-{uuid.uuid4().hex}"

        messages = repository.claim_messages(db, self.batch_size, lease, self.lease_seconds)
        if not messages:
            return report
        logger.info("Claimed %d outbox messages (lease %s)", len(messages), lease)

        for message in messages:
            message_id = message.id
            status, provider_id, error = self._deliver(message)

            if not repository.finish_message(db, message_id, lease, status, provider_id, error):
                db.rollback()
                logger.warning("Lease %s lost on message %s; result discarded", lease, message_id)
                continue
            db.commit()

            report.processed += 1
            report.message_ids.append(message_id)
            if status == MessageState.SENT:
                report.sent += 1
            else:
                report.failed += 1

        return report

    def _deliver(self, message):
        sender = self.senders.get(message.channel)
        if sender is None:
            logger.error("No sender for channel %r (message %s)", message.channel, message.id)
            return MessageState.FAILED, None, f"no_sender_for_channel:{message.channel}"
        try:
            provider_id = sender.send(message)
        except Exception as e:
            logger.warning("Delivery of message %s via %s failed: %s", message.id, message.channel, e)
            return MessageState.FAILED, None, str(e) or type(e).__name__
        return MessageState.SENT, provider_id, None
