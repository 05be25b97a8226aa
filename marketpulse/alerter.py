"""Outbound actions for MarketPulse: Telegram messages, webhooks and orders."""

import asyncio
import inspect
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable

import httpx

from . import __version__
from .models import (
    ActionResult,
    Alert,
    AlertAction,
    AnomalyEvent,
    ConditionResult,
    NotifyAction,
    OrderAction,
    Severity,
    WebhookAction,
)

logger = logging.getLogger("marketpulse.alerter")

TELEGRAM_API_BASE = "https://api.telegram.org"
DEFAULT_TIMEOUT = 10.0
USER_AGENT = f"MarketPulse/{__version__}"

SEVERITY_EMOJI = {
    Severity.LOW: "ℹ️",
    Severity.MEDIUM: "⚠️",
    Severity.HIGH: "\U0001F6A8",
    Severity.EXTREME: "\U0001F525",
}

# (action, alert, market_id) -> order receipt; raise to report failure
OrderPlacer = Callable[[OrderAction, Alert, str | None], Awaitable[Any]]
# (alert, market_id, message) -> None
NotifyCallback = Callable[[Alert, str | None, str], Any]


def _format_time(timestamp_ms: int) -> str:
    return datetime.fromtimestamp(timestamp_ms / 1000, tz=timezone.utc).strftime("%Y-%m-%d %H:%M:%S")


def _escape_markdown(text: str) -> str:
    """Escape special Markdown characters."""
    special_chars = ["_", "*", "[", "]", "(", ")", "~", "`", ">", "#", "+", "-", "=", "|", "{", "}", ".", "!"]
    for char in special_chars:
        text = text.replace(char, f"\\{char}")
    return text


def format_anomaly_message(anomaly: AnomalyEvent, question: str | None = None) -> str:
    """Format an anomaly as a Telegram Markdown message."""
    emoji = SEVERITY_EMOJI.get(anomaly.severity, "")
    market = question or anomaly.market_id

    return (
        f"{emoji} *{_escape_markdown(anomaly.label or anomaly.type.value)}*\n\n"
        f"*Market*: {_escape_markdown(market)}\n"
        f"*Severity*: {anomaly.severity.label} (score {anomaly.score:.0f})\n"
        f"*Details*: {_escape_markdown(anomaly.message)}\n"
        f"*Time*: {_format_time(anomaly.timestamp)} UTC"
    )


def format_trigger_message(
    alert: Alert,
    market_id: str | None,
    message: str,
    now: int,
    conditions: list[ConditionResult] | None = None,
) -> str:
    """Format a fired alert as a Telegram Markdown message."""
    lines = [
        f"\U0001F514 *Alert Triggered*\n",
        f"*Alert*: {_escape_markdown(alert.name)}",
        f"*Market*: {_escape_markdown(market_id or 'Global')}",
        f"*Message*: {_escape_markdown(message)}",
    ]
    for result in conditions or []:
        lines.append(f"• {_escape_markdown(result.description)}")
    lines.append(f"*Time*: {_format_time(now)} UTC")
    return "\n".join(lines)


async def send_telegram_alert(
    bot_token: str,
    chat_id: str,
    message: str,
    timeout: float = DEFAULT_TIMEOUT,
) -> bool:
    """Send a message via Telegram Bot API."""
    url = f"{TELEGRAM_API_BASE}/bot{bot_token}/sendMessage"

    payload = {
        "chat_id": chat_id,
        "text": message,
        "parse_mode": "Markdown",
    }

    try:
        async with httpx.AsyncClient() as client:
            response = await client.post(url, json=payload, timeout=timeout)

            if response.status_code == 200:
                result = response.json()
                if result.get("ok"):
                    logger.info("Telegram message sent successfully")
                    return True
                logger.error(f"Telegram API error: {result.get('description')}")
                return False

            if response.status_code == 429:
                logger.warning("Telegram rate limited, message not sent")
                return False

            logger.error(f"Telegram HTTP error: {response.status_code}")
            return False

    except httpx.TimeoutException:
        logger.error("Telegram API timeout")
        return False
    except httpx.RequestError as e:
        logger.error(f"Telegram request error: {e}")
        return False


async def send_anomaly_notifications(
    anomalies: list[AnomalyEvent],
    bot_token: str,
    chat_id: str,
    questions: dict[str, str] | None = None,
) -> int:
    """Send anomalies via Telegram, return count of successfully sent."""
    questions = questions or {}
    sent_count = 0

    for anomaly in anomalies:
        message = format_anomaly_message(anomaly, questions.get(anomaly.market_id))
        if await send_telegram_alert(bot_token, chat_id, message):
            sent_count += 1
        else:
            logger.warning(f"Failed to send anomaly {anomaly.id}")

    if anomalies:
        logger.info(f"Sent {sent_count}/{len(anomalies)} anomaly notifications via Telegram")
    return sent_count


@dataclass
class WebhookResult:
    success: bool
    status_code: int | None = None
    error: str | None = None
    attempts: int = 0


def build_webhook_payload(alert: Alert, market_id: str | None, message: str, now: int) -> dict:
    """JSON body posted to webhook actions."""
    return {
        "alert": alert.name,
        "alertId": alert.id,
        "timestamp": datetime.fromtimestamp(now / 1000, tz=timezone.utc).isoformat(),
        "marketId": market_id,
        "message": message,
        "conditions": [
            {"type": c.type.value, "operator": c.operator.value, "value": c.value}
            for c in alert.conditions
        ],
    }


async def send_webhook(
    url: str,
    payload: dict,
    max_retries: int = 3,
    retry_delay: float = 1.0,
    timeout: float = DEFAULT_TIMEOUT,
) -> WebhookResult:
    """
    POST a JSON payload with retries.

    4xx responses are final. 5xx responses, timeouts and transport errors
    are retried with exponential backoff (retry_delay * 2 ** (attempt - 1)).
    """
    last_error = "Unknown error"
    last_status = None
    headers = {"User-Agent": USER_AGENT}

    for attempt in range(1, max_retries + 1):
        try:
            async with httpx.AsyncClient() as client:
                response = await client.post(url, json=payload, headers=headers, timeout=timeout)

            last_status = response.status_code
            if 200 <= response.status_code < 300:
                logger.info(f"Webhook delivered to {url} (attempt {attempt})")
                return WebhookResult(success=True, status_code=response.status_code, attempts=attempt)

            if 400 <= response.status_code < 500:
                logger.error(f"Webhook rejected by {url}: HTTP {response.status_code}")
                return WebhookResult(
                    success=False,
                    status_code=response.status_code,
                    error=f"Client error: {response.status_code} {response.text}",
                    attempts=attempt,
                )

            last_error = f"HTTP {response.status_code}"

        except httpx.TimeoutException:
            last_error = "Request timeout"
        except httpx.RequestError as e:
            last_error = f"Request error: {e}"

        logger.warning(f"Webhook attempt {attempt}/{max_retries} to {url} failed: {last_error}")
        if attempt < max_retries:
            await asyncio.sleep(retry_delay * 2 ** (attempt - 1))

    return WebhookResult(success=False, status_code=last_status, error=last_error, attempts=max_retries)


class ActionDispatcher:
    """
    Executes alert actions through injected collaborators.

    Telegram credentials, the order service and the notify callback are all
    optional; an action whose collaborator is missing fails with an error
    rather than raising.
    """

    def __init__(
        self,
        telegram_bot_token: str | None = None,
        telegram_chat_id: str | None = None,
        order_placer: OrderPlacer | None = None,
        notify_callback: NotifyCallback | None = None,
        webhook_max_retries: int = 3,
        webhook_retry_delay: float = 1.0,
        webhook_timeout: float = DEFAULT_TIMEOUT,
    ):
        self.telegram_bot_token = telegram_bot_token
        self.telegram_chat_id = telegram_chat_id
        self.order_placer = order_placer
        self.notify_callback = notify_callback
        self.webhook_max_retries = webhook_max_retries
        self.webhook_retry_delay = webhook_retry_delay
        self.webhook_timeout = webhook_timeout

    @property
    def telegram_enabled(self) -> bool:
        return bool(self.telegram_bot_token and self.telegram_chat_id)

    async def dispatch(
        self,
        action: AlertAction,
        alert: Alert,
        market_id: str | None,
        now: int,
        conditions: list[ConditionResult] | None = None,
    ) -> ActionResult:
        """Run one action; failures come back as an unsuccessful ActionResult."""
        try:
            match action:
                case NotifyAction():
                    return await self._notify(action, alert, market_id, now, conditions)
                case OrderAction():
                    return await self._order(action, alert, market_id)
                case WebhookAction():
                    return await self._webhook(action, alert, market_id, now)
        except Exception as e:
            logger.error(f"Action {action.type} for alert {alert.id} failed: {e}")
            return ActionResult(action_type=action.type, success=False, error=str(e))

        raise TypeError(f"Unsupported action: {action!r}")

    async def _notify(
        self,
        action: NotifyAction,
        alert: Alert,
        market_id: str | None,
        now: int,
        conditions: list[ConditionResult] | None,
    ) -> ActionResult:
        errors = []

        for channel in action.channels:
            if channel == "log":
                logger.info(f"[ALERT] {alert.name} ({market_id or 'global'}): {action.message}")
            elif channel == "telegram":
                if not self.telegram_enabled:
                    errors.append("telegram not configured")
                    continue
                message = format_trigger_message(alert, market_id, action.message, now, conditions)
                if not await send_telegram_alert(self.telegram_bot_token, self.telegram_chat_id, message):
                    errors.append("telegram delivery failed")
            else:
                errors.append(f"unknown channel {channel!r}")

        if self.notify_callback is not None:
            result = self.notify_callback(alert, market_id, action.message)
            if inspect.isawaitable(result):
                await result

        if errors:
            return ActionResult(action_type=action.type, success=False, error="; ".join(errors))
        return ActionResult(action_type=action.type, success=True)

    async def _order(self, action: OrderAction, alert: Alert, market_id: str | None) -> ActionResult:
        if self.order_placer is None:
            logger.warning(f"Order action for alert {alert.id} skipped: no order service configured")
            return ActionResult(action_type=action.type, success=False, error="no order service configured")

        receipt = await self.order_placer(action, alert, market_id)
        logger.info(
            f"Order placed for alert {alert.id}: {action.side} {action.amount} "
            f"{action.outcome.value} on {action.market_id} ({receipt})"
        )
        return ActionResult(action_type=action.type, success=True)

    async def _webhook(
        self, action: WebhookAction, alert: Alert, market_id: str | None, now: int
    ) -> ActionResult:
        payload = build_webhook_payload(alert, market_id, action.message, now)
        result = await send_webhook(
            action.url,
            payload,
            max_retries=self.webhook_max_retries,
            retry_delay=self.webhook_retry_delay,
            timeout=self.webhook_timeout,
        )
        if not result.success:
            logger.error(f"Webhook delivery failed for alert {alert.id}: {result.error}")
        return ActionResult(action_type=action.type, success=result.success, error=result.error)
