"""Relay of inbound messages to the downstream webhook."""

import asyncio
from typing import Any, Optional

import httpx

from wa_gateway.logging_config import get_logger
from wa_gateway.services.scheduler import SleepFunc

logger = get_logger("webhook_service")

MAX_ATTEMPTS = 3
RETRY_STEP_SECONDS = 0.5


class WebhookRelay:
    def __init__(
        self,
        url: Optional[str],
        timeout: float = 15.0,
        sleep_func: SleepFunc = asyncio.sleep,
        max_attempts: int = MAX_ATTEMPTS,
    ):
        self.url = url
        self.timeout = timeout
        self.max_attempts = max_attempts
        self._sleep = sleep_func
        self._background: set[asyncio.Task] = set()

    @property
    def configured(self) -> bool:
        return bool(self.url)

    async def post(self, payload: dict[str, Any]) -> bool:
        """POST ``payload`` with retries. Returns True once a 2xx is received."""
        if not self.configured:
            logger.debug("Webhook URL not configured; dropping inbound event")
            return False

        last_error: Optional[str] = None
        for attempt in range(1, self.max_attempts + 1):
            try:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    response = await client.post(self.url, json=payload)
                if response.is_success:
                    return True
                last_error = f"HTTP {response.status_code}"
            except httpx.HTTPError as e:
                last_error = str(e) or e.__class__.__name__
            logger.warning(
                f"Webhook attempt {attempt} failed",
                extra={"context": {"error": last_error, "message_id": payload.get("messageId")}},
            )
            if attempt < self.max_attempts:
                await self._sleep(RETRY_STEP_SECONDS * attempt)

        logger.error(
            "Webhook delivery failed; event dropped",
            extra={"context": {"error": last_error, "session_id": payload.get("sessionId")}},
        )
        return False

    def dispatch(self, payload: dict[str, Any]) -> None:
        """Relay in the background so transport event handling never waits on HTTP."""
        task = asyncio.create_task(self.post(payload))
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def drain(self) -> None:
        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)
