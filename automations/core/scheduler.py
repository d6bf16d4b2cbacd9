import asyncio
import logging

from automations import config
from automations.core.ingress import EventQueueDrainer
from automations.db.database import SessionLocal
from automations.worker.executor import ActionExecutor
from automations.worker.outbox import OutboxDispatcher
from automations.worker.senders import build_senders
from automations.worker.tagging import build_tagger
from automations.worker.tick import StepScheduler

logger = logging.getLogger(__name__)


class Scheduler:
    """Long-running poller: each iteration drains events, runs steps, sends messages."""

    def __init__(
        self,
        worker_id: str,
        session_factory=SessionLocal,
        interval: float = config.POLL_INTERVAL,
        tagger=None,
        senders=None,
    ):
        self.worker_id = worker_id
        self.session_factory = session_factory
        self.interval = interval
        self.drainer = EventQueueDrainer(worker_id)
        self.runner = StepScheduler(worker_id, ActionExecutor(tagger or build_tagger()))
        self.dispatcher = OutboxDispatcher(worker_id, senders or build_senders())

    async def start(self):
        logger.info(
            "Scheduler started (worker: %s, interval: %ss)",
            self.worker_id,
            self.interval,
        )
        while True:
            try:
                await asyncio.to_thread(self.run_once)
            except Exception as e:
                logger.error("Scheduler tick error: %s", e)
            await asyncio.sleep(self.interval)

    def run_once(self) -> dict:
        db = self.session_factory()
        try:
            events = self.drainer.drain(db)
            steps = self.runner.tick(db)
            messages = self.dispatcher.tick(db)
        finally:
            db.close()

        if events.processed or steps.processed or messages.processed:
            logger.info(
                "Iteration done: events=%d steps=%d messages=%d",
                events.processed, steps.processed, messages.processed,
            )
        return {
            "events": events.processed,
            "steps": steps.processed,
            "messages": messages.processed,
        }
