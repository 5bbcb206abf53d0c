"""Operator alerts delivered to a Telegram chat."""

import asyncio
from typing import Optional

import httpx

from wa_gateway.logging_config import get_logger

logger = get_logger("alert_service")

TELEGRAM_SEND_URL = "https://api.telegram.org/bot{token}/sendMessage"
LEVEL_EMOJI = {"INFO": "ℹ️", "WARNING": "⚠️", "ERROR": "❌", "CRITICAL": "🔥"}


def format_alert(level: str, message: str, context: Optional[dict] = None) -> str:
    text = f"{LEVEL_EMOJI.get(level, '📢')} *{level}*\n\n{message}"
    if context:
        context_str = "\n".join(f"  {k}: {v}" for k, v in context.items())
        text += f"\n\n```\n{context_str}\n```"
    return text


class AlertService:
    def __init__(self, bot_token: Optional[str], chat_id: Optional[str], timeout: float = 10.0):
        self.bot_token = bot_token
        self.chat_id = chat_id
        self.timeout = timeout
        self._background: set[asyncio.Task] = set()

    @property
    def configured(self) -> bool:
        return bool(self.bot_token and self.chat_id)

    async def send(self, level: str, message: str, context: Optional[dict] = None) -> bool:
        """Send alert to Telegram.

        Args:
            level: INFO, WARNING, ERROR, CRITICAL
            message: Alert message
            context: Optional context dict

        Returns:
            True if sent successfully
        """
        if not self.configured:
            logger.warning(f"Alert not configured: {level} - {message}", extra={"context": context or {}})
            return False

        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(
                    TELEGRAM_SEND_URL.format(token=self.bot_token),
                    json={
                        "chat_id": self.chat_id,
                        "text": format_alert(level, message, context),
                        "parse_mode": "Markdown",
                    },
                )
                return response.status_code == 200
        except Exception as e:
            logger.error(f"Failed to send alert: {e}")
            return False

    def notify(self, level: str, message: str, context: Optional[dict] = None) -> None:
        """Fire-and-forget variant for callers on the send path."""
        task = asyncio.create_task(self.send(level, message, context))
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def drain(self) -> None:
        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)
