"""Shared fixtures for MarketPulse tests."""

import pytest
from unittest.mock import AsyncMock, MagicMock

from marketpulse.alerter import ActionDispatcher
from marketpulse.config import Configuration, DetectionConfig
from marketpulse.models import ActionResult, Alert, AlertCondition, ConditionType, NotifyAction, Operator
from tests.factories import NOW, WINDOW, make_trade


@pytest.fixture
def detection_config():
    """Default detection tunables."""
    return DetectionConfig()


@pytest.fixture
def valid_config():
    """A valid Configuration object."""
    return Configuration(
        detection_interval=30,
        alert_tick_seconds=5.0,
        telegram_bot_token="123456:ABC-DEF",
        telegram_chat_id="-1001234567890",
    )


@pytest.fixture
def baseline_trades():
    """One 1,000 USDC trade in each of the six 5-minute windows before NOW - WINDOW."""
    return [
        make_trade(size=1000.0, timestamp=NOW - WINDOW - (i + 1) * WINDOW + 1000, wallet=f"0xbase{i}")
        for i in range(6)
    ]


@pytest.fixture
def price_alert():
    """Alert on M1 firing a single notify when price > 0.7."""
    return Alert(
        id="alert-price",
        name="Price above 70%",
        market_id="M1",
        conditions=[AlertCondition(type=ConditionType.PRICE, operator=Operator.GT, value=0.7)],
        actions=[NotifyAction(message="Crossed 70%")],
    )


@pytest.fixture
def mock_dispatcher():
    """An ActionDispatcher whose dispatch always succeeds."""
    dispatcher = MagicMock(spec=ActionDispatcher)

    async def dispatch(action, alert, market_id, now, conditions=None):
        return ActionResult(action_type=action.type, success=True)

    dispatcher.dispatch = AsyncMock(side_effect=dispatch)
    return dispatcher


@pytest.fixture
def mock_telegram_success_response():
    """Mock successful Telegram API response."""
    response = MagicMock()
    response.status_code = 200
    response.json.return_value = {
        "ok": True,
        "result": {"message_id": 123},
    }
    return response


@pytest.fixture
def mock_telegram_error_response():
    """Mock Telegram API error response."""
    response = MagicMock()
    response.status_code = 200
    response.json.return_value = {
        "ok": False,
        "description": "Bad Request: chat not found",
    }
    return response


@pytest.fixture
def valid_config_yaml():
    """Valid YAML configuration content."""
    return """
detection_interval: 15
alert_tick_seconds: 2

telegram:
  bot_token: "123456:ABC-DEF"
  chat_id: "-1001234567890"

detection:
  windows:
    short: 600000
  thresholds:
    volume_zscore: [2.5, 3.5, 4.5]
  minimums:
    samples: 5
"""


@pytest.fixture
def config_with_env_vars_yaml():
    """YAML configuration with environment variable references."""
    return """
detection_interval: 30

telegram:
  bot_token: "${TELEGRAM_BOT_TOKEN}"
  chat_id: "${TELEGRAM_CHAT_ID}"
"""
