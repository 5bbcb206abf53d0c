from unittest.mock import AsyncMock, MagicMock, Mock, patch

import httpx
import pytest

from wa_gateway.services.webhook_service import WebhookRelay

PAYLOAD = {"sessionId": "acct1", "from": "1555@s.whatsapp.net", "messageId": "ABC", "text": "hola"}


def _client(mock_client_class, **post_kwargs):
    mock_client = MagicMock()
    mock_client.post = AsyncMock(**post_kwargs)
    mock_client_class.return_value.__aenter__.return_value = mock_client
    return mock_client


class TestWebhookRelay:
    @pytest.mark.asyncio
    async def test_not_configured(self):
        relay = WebhookRelay(None)
        assert await relay.post(PAYLOAD) is False

    @pytest.mark.asyncio
    @patch("wa_gateway.services.webhook_service.httpx.AsyncClient")
    async def test_posts_json(self, mock_client_class):
        mock_client = _client(mock_client_class, return_value=Mock(is_success=True, status_code=200))
        relay = WebhookRelay("http://hooks.local/in", sleep_func=AsyncMock())

        assert await relay.post(PAYLOAD) is True

        mock_client.post.assert_awaited_once_with("http://hooks.local/in", json=PAYLOAD)

    @pytest.mark.asyncio
    @patch("wa_gateway.services.webhook_service.httpx.AsyncClient")
    async def test_retries_with_linear_wait(self, mock_client_class):
        mock_client = _client(
            mock_client_class,
            side_effect=[
                Mock(is_success=False, status_code=502),
                httpx.ConnectError("refused"),
                Mock(is_success=True, status_code=200),
            ],
        )
        sleep = AsyncMock()
        relay = WebhookRelay("http://hooks.local/in", sleep_func=sleep)

        assert await relay.post(PAYLOAD) is True

        assert mock_client.post.await_count == 3
        assert [c.args[0] for c in sleep.await_args_list] == [0.5, 1.0]

    @pytest.mark.asyncio
    @patch("wa_gateway.services.webhook_service.httpx.AsyncClient")
    async def test_gives_up_after_three_attempts(self, mock_client_class):
        mock_client = _client(mock_client_class, return_value=Mock(is_success=False, status_code=500))
        sleep = AsyncMock()
        relay = WebhookRelay("http://hooks.local/in", sleep_func=sleep)

        assert await relay.post(PAYLOAD) is False

        assert mock_client.post.await_count == 3
        assert sleep.await_count == 2

    @pytest.mark.asyncio
    @patch("wa_gateway.services.webhook_service.httpx.AsyncClient")
    async def test_dispatch_runs_in_background(self, mock_client_class):
        mock_client = _client(mock_client_class, return_value=Mock(is_success=True, status_code=200))
        relay = WebhookRelay("http://hooks.local/in", sleep_func=AsyncMock())

        relay.dispatch(PAYLOAD)
        await relay.drain()

        mock_client.post.assert_awaited_once()
