import json
import logging
import uuid
from typing import Protocol

import httpx

from automations import config
from automations.db.tables import OutboxMessage

logger = logging.getLogger(__name__)


class SendError(Exception):
    pass


class ChannelSender(Protocol):
    def send(self, message: OutboxMessage) -> str:
        """Deliver the message. Returns the provider's message id."""
        ...


class LogSender:
    """Development stand-in that only logs the message."""

    def __init__(self, channel: str):
        self.channel = channel

    def send(self, message: OutboxMessage) -> str:
        logger.info("[%s] would send message %s to %s", self.channel, message.id, message.to)
        return f"log-{uuid.uuid4().hex}"


class WebhookSender:
    """Posts the message to a provider webhook, e.g. an email or SMS gateway."""

    def __init__(self, url: str, timeout: float = 10.0):
        self.url = url
        self.timeout = timeout

    def send(self, message: OutboxMessage) -> str:
        body = {
            "id": message.id,
            "channel": message.channel,
            "to": message.to,
            "payload": json.loads(message.payload or "{}"),
        }
        try:
            resp = httpx.post(
                self.url,
                json=body,
                headers={"Idempotency-Key": message.id},
                timeout=self.timeout,
            )
        except httpx.HTTPError as e:
            raise SendError(f"provider unreachable: {e}") from e

        if resp.status_code >= 300:
            raise SendError(f"provider rejected message ({resp.status_code}): {resp.text}")

        try:
            data = resp.json()
        except ValueError:
            data = None
        provider_id = data.get("id") if isinstance(data, dict) else None
        return str(provider_id) if provider_id else message.id


def build_senders() -> dict[str, ChannelSender]:
    urls = {"email": config.EMAIL_WEBHOOK_URL, "sms": config.SMS_WEBHOOK_URL}
    return {
        channel: WebhookSender(url, timeout=config.HTTP_TIMEOUT) if url else LogSender(channel)
        for channel, url in urls.items()
    }
