from typing import Optional

import httpx

from fanout.config import settings
from fanout.logging_config import get_logger


logger = get_logger(__name__)


class Notifier:
    """
    Fire-and-forget delivery of batch outcomes. Delivery errors are logged and
    never reach the orchestrator.
    """

    def __init__(self, webhook_url: Optional[str] = None, timeout: float = 5.0):
        url = webhook_url if webhook_url is not None else settings.notification_webhook_url
        self.webhook_url = str(url) if url else None
        self.timeout = timeout

    async def notify(self, event: str, payload: dict) -> bool:
        if not self.webhook_url:
            return False
        logger.info("Sending notification event=%s", event)
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(self.webhook_url, json={"event": event, **payload})
            if response.status_code >= 400:
                logger.warning("Notification rejected event=%s status=%s", event, response.status_code)
                return False
        except Exception as exc:  # noqa: BLE001
            logger.warning("Failed to send notification event=%s error=%s", event, exc)
            return False
        return True
