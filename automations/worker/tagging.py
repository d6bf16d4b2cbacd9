import logging
from typing import Protocol

import httpx

from automations import config

logger = logging.getLogger(__name__)


class TaggingError(Exception):
    pass


class Tagger(Protocol):
    def tag(self, tenant_id: str, entity_id: str, label: str) -> bool:
        """Apply ``label`` to the entity. Returns whether the label was applied."""
        ...


class LogTagger:
    """Stand-in used when no entity service is configured."""

    def tag(self, tenant_id: str, entity_id: str, label: str) -> bool:
        logger.info("No entity service configured; not tagging %s/%s with %r", tenant_id, entity_id, label)
        return False


class HttpTagger:
    def __init__(self, base_url: str, timeout: float = 10.0):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout

    def tag(self, tenant_id: str, entity_id: str, label: str) -> bool:
        url = f"{self.base_url}/tenants/{tenant_id}/entities/{entity_id}/tags"
        try:
            resp = httpx.post(url, json={"label": label}, timeout=self.timeout)
        except httpx.HTTPError as e:
            raise TaggingError(f"entity service unreachable: {e}") from e
        if resp.status_code >= 300:
            raise TaggingError(f"entity service returned {resp.status_code}: {resp.text}")
        return True


def build_tagger() -> Tagger:
    if config.ENTITY_SERVICE_URL:
        return HttpTagger(config.ENTITY_SERVICE_URL, timeout=config.HTTP_TIMEOUT)
    return LogTagger()
