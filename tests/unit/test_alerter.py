"""Tests for marketpulse/alerter.py."""

import pytest
from unittest.mock import AsyncMock, MagicMock, patch
import httpx

from marketpulse.alerter import (
    TELEGRAM_API_BASE,
    USER_AGENT,
    ActionDispatcher,
    _escape_markdown,
    build_webhook_payload,
    format_anomaly_message,
    format_trigger_message,
    send_anomaly_notifications,
    send_telegram_alert,
    send_webhook,
)
from marketpulse.models import (
    AnomalyEvent,
    AnomalyType,
    NotifyAction,
    OrderAction,
    Outcome,
    Severity,
    WebhookAction,
)
from tests.factories import NOW


def make_response(status_code: int, text: str = "") -> MagicMock:
    response = MagicMock()
    response.status_code = status_code
    response.text = text
    return response


@pytest.fixture
def anomaly():
    return AnomalyEvent(
        id=f"volume-spike-M1-{NOW}",
        market_id="M1",
        type=AnomalyType.VOLUME_SPIKE,
        severity=Severity.HIGH,
        score=62.0,
        message="Last 5m volume: 3,000 USDC vs avg 1,000 USDC (3.0x, z=0.00)",
        timestamp=NOW,
        label="Volume spike",
    )


@pytest.fixture
def mock_http_client():
    """Patch httpx.AsyncClient in the alerter and yield the client used inside `async with`."""
    with patch("marketpulse.alerter.httpx.AsyncClient") as mock_client_class:
        mock_client = AsyncMock()
        mock_client_class.return_value.__aenter__.return_value = mock_client
        yield mock_client


class TestEscapeMarkdown:
    """Tests for _escape_markdown function."""

    def test_escape_underscore(self):
        assert _escape_markdown("hello_world") == "hello\\_world"

    def test_escape_brackets(self):
        assert _escape_markdown("[link](url)") == "\\[link\\]\\(url\\)"

    def test_no_escape_needed(self):
        assert _escape_markdown("plain text") == "plain text"


class TestFormatMessages:
    """Tests for message formatting."""

    def test_anomaly_message(self, anomaly):
        message = format_anomaly_message(anomaly, "Will it rain?")

        assert "Volume spike" in message
        assert "Will it rain?" in message
        assert "high" in message
        assert "score 62" in message
        assert "2023-11-14 22:15:00 UTC" in message

    def test_anomaly_message_falls_back_to_market_id(self, anomaly):
        assert "M1" in format_anomaly_message(anomaly)

    def test_trigger_message(self, price_alert):
        message = format_trigger_message(price_alert, "M1", "Crossed 70%", NOW)

        assert "Alert Triggered" in message
        assert "Price above 70%" in message
        assert "M1" in message

    def test_trigger_message_global(self, price_alert):
        assert "Global" in format_trigger_message(price_alert, None, "hi", NOW)


class TestSendTelegramAlert:
    """Tests for send_telegram_alert function."""

    @pytest.mark.asyncio
    async def test_send_alert_success(self, mock_http_client, mock_telegram_success_response):
        """Test successful message sending."""
        mock_http_client.post.return_value = mock_telegram_success_response

        result = await send_telegram_alert("token", "chat", "hello")

        assert result is True
        mock_http_client.post.assert_called_once()

    @pytest.mark.asyncio
    async def test_send_alert_api_error(self, mock_http_client, mock_telegram_error_response):
        """Test handling of Telegram API errors."""
        mock_http_client.post.return_value = mock_telegram_error_response

        assert await send_telegram_alert("token", "chat", "hello") is False

    @pytest.mark.asyncio
    async def test_send_alert_rate_limited(self, mock_http_client):
        mock_http_client.post.return_value = make_response(429)
        assert await send_telegram_alert("token", "chat", "hello") is False

    @pytest.mark.asyncio
    async def test_send_alert_timeout(self, mock_http_client):
        """Test handling of timeout errors."""
        mock_http_client.post.side_effect = httpx.TimeoutException("Timeout")
        assert await send_telegram_alert("token", "chat", "hello") is False

    @pytest.mark.asyncio
    async def test_send_alert_correct_url(self, mock_http_client, mock_telegram_success_response):
        """Test that correct URL and payload are used."""
        mock_http_client.post.return_value = mock_telegram_success_response

        await send_telegram_alert("my_token", "my_chat", "hello")

        call_args = mock_http_client.post.call_args
        assert call_args[0][0] == f"{TELEGRAM_API_BASE}/botmy_token/sendMessage"
        assert call_args[1]["json"] == {"chat_id": "my_chat", "text": "hello", "parse_mode": "Markdown"}


class TestSendAnomalyNotifications:
    """Tests for send_anomaly_notifications."""

    @pytest.mark.asyncio
    async def test_counts_successes(self, anomaly):
        with patch("marketpulse.alerter.send_telegram_alert", new=AsyncMock(side_effect=[True, False])):
            sent = await send_anomaly_notifications([anomaly, anomaly], "token", "chat")
        assert sent == 1

    @pytest.mark.asyncio
    async def test_empty(self):
        assert await send_anomaly_notifications([], "token", "chat") == 0


class TestBuildWebhookPayload:
    def test_payload(self, price_alert):
        payload = build_webhook_payload(price_alert, "M1", "Crossed 70%", NOW)

        assert payload["alert"] == "Price above 70%"
        assert payload["alertId"] == "alert-price"
        assert payload["marketId"] == "M1"
        assert payload["timestamp"] == "2023-11-14T22:15:00+00:00"
        assert payload["conditions"] == [{"type": "price", "operator": "gt", "value": 0.7}]


class TestSendWebhook:
    """Tests for send_webhook."""

    @pytest.mark.asyncio
    async def test_success_first_attempt(self, mock_http_client):
        mock_http_client.post.return_value = make_response(200)

        result = await send_webhook("https://example.com/hook", {"a": 1})

        assert result.success is True
        assert result.attempts == 1
        headers = mock_http_client.post.call_args[1]["headers"]
        assert headers["User-Agent"] == USER_AGENT

    @pytest.mark.asyncio
    async def test_client_error_not_retried(self, mock_http_client):
        mock_http_client.post.return_value = make_response(404, "not found")

        with patch("marketpulse.alerter.asyncio.sleep", new=AsyncMock()) as mock_sleep:
            result = await send_webhook("https://example.com/hook", {})

        assert result.success is False
        assert result.status_code == 404
        assert result.attempts == 1
        mock_sleep.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_server_error_retried_with_backoff(self, mock_http_client):
        mock_http_client.post.side_effect = [make_response(500), make_response(503), make_response(200)]

        with patch("marketpulse.alerter.asyncio.sleep", new=AsyncMock()) as mock_sleep:
            result = await send_webhook("https://example.com/hook", {}, max_retries=3, retry_delay=1.0)

        assert result.success is True
        assert result.attempts == 3
        assert [c.args[0] for c in mock_sleep.await_args_list] == [1.0, 2.0]

    @pytest.mark.asyncio
    async def test_gives_up_after_max_retries(self, mock_http_client):
        mock_http_client.post.side_effect = httpx.ConnectError("refused")

        with patch("marketpulse.alerter.asyncio.sleep", new=AsyncMock()):
            result = await send_webhook("https://example.com/hook", {}, max_retries=2)

        assert result.success is False
        assert result.attempts == 2
        assert "refused" in result.error
        assert mock_http_client.post.await_count == 2


class TestActionDispatcher:
    """Tests for ActionDispatcher.dispatch."""

    @pytest.mark.asyncio
    async def test_log_notify(self, price_alert, caplog):
        dispatcher = ActionDispatcher()

        with caplog.at_level("INFO"):
            result = await dispatcher.dispatch(NotifyAction(message="Crossed 70%"), price_alert, "M1", NOW)

        assert result.success is True
        assert "Crossed 70%" in caplog.text

    @pytest.mark.asyncio
    async def test_telegram_notify(self, price_alert):
        dispatcher = ActionDispatcher(telegram_bot_token="token", telegram_chat_id="chat")

        with patch("marketpulse.alerter.send_telegram_alert", new=AsyncMock(return_value=True)) as mock_send:
            result = await dispatcher.dispatch(
                NotifyAction(message="hi", channels=("telegram",)), price_alert, "M1", NOW
            )

        assert result.success is True
        assert mock_send.await_args.args[:2] == ("token", "chat")

    @pytest.mark.asyncio
    async def test_telegram_not_configured(self, price_alert):
        result = await ActionDispatcher().dispatch(
            NotifyAction(channels=("telegram",)), price_alert, "M1", NOW
        )

        assert result.success is False
        assert result.error == "telegram not configured"

    @pytest.mark.asyncio
    async def test_notify_callback(self, price_alert):
        callback = MagicMock()
        dispatcher = ActionDispatcher(notify_callback=callback)

        await dispatcher.dispatch(NotifyAction(message="hi"), price_alert, "M1", NOW)

        callback.assert_called_once_with(price_alert, "M1", "hi")

    @pytest.mark.asyncio
    async def test_async_notify_callback(self, price_alert):
        callback = AsyncMock()
        dispatcher = ActionDispatcher(notify_callback=callback)

        await dispatcher.dispatch(NotifyAction(message="hi"), price_alert, "M1", NOW)

        callback.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_order_without_service(self, price_alert):
        action = OrderAction(market_id="M1", outcome=Outcome.YES, amount=10)

        result = await ActionDispatcher().dispatch(action, price_alert, "M1", NOW)

        assert result.success is False
        assert "no order service" in result.error

    @pytest.mark.asyncio
    async def test_order_placed(self, price_alert):
        placer = AsyncMock(return_value={"orderId": "o1"})
        action = OrderAction(market_id="M1", outcome=Outcome.YES, amount=10)

        result = await ActionDispatcher(order_placer=placer).dispatch(action, price_alert, "M1", NOW)

        assert result.success is True
        placer.assert_awaited_once_with(action, price_alert, "M1")

    @pytest.mark.asyncio
    async def test_order_failure_reported(self, price_alert):
        placer = AsyncMock(side_effect=RuntimeError("insufficient balance"))
        action = OrderAction(market_id="M1", outcome=Outcome.YES, amount=10)

        result = await ActionDispatcher(order_placer=placer).dispatch(action, price_alert, "M1", NOW)

        assert result.success is False
        assert result.error == "insufficient balance"

    @pytest.mark.asyncio
    async def test_webhook(self, price_alert, mock_http_client):
        mock_http_client.post.return_value = make_response(204)
        action = WebhookAction(url="https://example.com/hook", message="fired")

        result = await ActionDispatcher().dispatch(action, price_alert, "M1", NOW)

        assert result.success is True
        assert mock_http_client.post.call_args[1]["json"]["message"] == "fired"
