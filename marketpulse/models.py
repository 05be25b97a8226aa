"""Data models for MarketPulse."""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum, IntEnum
from typing import Any

# Epoch-ms value for 2000-01-01; anything below it is taken to be in seconds
EPOCH_MS_CUTOFF = 946684800000


class AlertValidationError(Exception):
    """Raised when an alert definition is malformed."""

    pass


class MetricUnavailableError(Exception):
    """Raised when a live metric has not been loaded for a market yet."""

    def __init__(self, market_id: str, metric: str, reason: str = "no data"):
        self.market_id = market_id
        self.metric = metric
        self.reason = reason
        super().__init__(f"{metric} unavailable for {market_id}: {reason}")


def normalize_timestamp(value: Any) -> int | None:
    """
    Normalize a feed timestamp to integer epoch milliseconds.

    Accepts seconds or milliseconds (numbers or numeric strings), ISO-8601
    strings and datetimes. Values below EPOCH_MS_CUTOFF are seconds.
    Returns None when the value cannot be interpreted.
    """
    if value is None or isinstance(value, bool):
        return None

    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return int(value.timestamp() * 1000)

    if isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        try:
            value = float(text)
        except ValueError:
            try:
                parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
            except ValueError:
                return None
            return normalize_timestamp(parsed)

    try:
        number = float(value)
    except (TypeError, ValueError):
        return None

    if number != number or number in (float("inf"), float("-inf")) or number < 0:
        return None

    if number < EPOCH_MS_CUTOFF:
        number *= 1000
    return int(round(number))


class Outcome(str, Enum):
    YES = "YES"
    NO = "NO"

    @classmethod
    def parse(cls, value: Any) -> "Outcome | None":
        if isinstance(value, Outcome):
            return value
        if not isinstance(value, str):
            return None
        text = value.strip().upper()
        if text in ("YES", "Y", "BUY"):
            return cls.YES
        if text in ("NO", "N", "SELL"):
            return cls.NO
        return None


@dataclass(frozen=True)
class Trade:
    """One executed fill, immutable once ingested."""

    market_id: str
    outcome: Outcome
    price: float  # 0..1
    size: float  # notional, USDC
    timestamp: int  # epoch ms
    wallet_address: str | None = None
    transaction_hash: str | None = None

    @property
    def yes_price(self) -> float:
        """Trade price expressed as the YES probability."""
        return self.price if self.outcome is Outcome.YES else 1.0 - self.price


@dataclass
class MarketMetadata:
    """Slow-changing descriptive data for a market."""

    id: str
    question: str = ""
    category: str = ""
    volume: float | None = None
    liquidity: float | None = None
    event_id: str | None = None
    end_date: int | None = None  # epoch ms


@dataclass(frozen=True)
class OrderBookLevel:
    price: float
    size: float


@dataclass
class OrderBookSnapshot:
    """Order book for one market at one point in time."""

    market_id: str
    timestamp: int  # epoch ms
    bids: list[OrderBookLevel] = field(default_factory=list)  # best first
    asks: list[OrderBookLevel] = field(default_factory=list)  # best first

    @property
    def best_bid(self) -> float | None:
        return self.bids[0].price if self.bids else None

    @property
    def best_ask(self) -> float | None:
        return self.asks[0].price if self.asks else None

    @property
    def mid_price(self) -> float | None:
        if self.best_bid is None or self.best_ask is None:
            return None
        return (self.best_bid + self.best_ask) / 2

    @property
    def spread_percent(self) -> float | None:
        """Bid-ask spread as a percentage of the mid price."""
        mid = self.mid_price
        if not mid:
            return None
        return (self.best_ask - self.best_bid) / mid * 100

    @property
    def total_depth(self) -> float:
        return sum(level.size for level in self.bids) + sum(level.size for level in self.asks)


@dataclass
class DetectionWindow:
    """Inputs for one evaluation tick; built fresh every tick."""

    now: int
    window_ms: int = 5 * 60 * 1000
    trades_by_market: dict[str, list[Trade]] = field(default_factory=dict)
    metadata_by_market: dict[str, MarketMetadata] = field(default_factory=dict)
    order_books_by_market: dict[str, list[OrderBookSnapshot]] = field(default_factory=dict)


class AnomalyType(str, Enum):
    VOLUME_SPIKE = "volume-spike"
    PRICE_SPIKE = "price-spike"
    VOLATILITY_SPIKE = "volatility-spike"
    FLOW_IMBALANCE = "flow-imbalance"
    DEPTH_SHIFT = "depth-shift"
    SPREAD_WIDENING = "spread-widening"
    PARTICIPANT_SPIKE = "participant-spike"
    WHALE_TRADE = "whale-trade"
    CROSS_MARKET_MISPRICING = "cross-market-mispricing"
    BREAKOUT = "breakout"
    SPREAD_TIGHTENING = "spread-tightening"
    SLIPPAGE_CHANGE = "slippage-change"
    WALLET_CONCENTRATION = "wallet-concentration"
    NEW_WALLET_IMPACT = "new-wallet-impact"
    PRE_EXPIRY = "pre-expiry"
    LINKED_EVENT = "linked-event"


class Severity(IntEnum):
    """Anomaly severity with a strict total order: EXTREME > HIGH > MEDIUM > LOW."""

    LOW = 1
    MEDIUM = 2
    HIGH = 3
    EXTREME = 4

    @property
    def label(self) -> str:
        return self.name.lower()

    @classmethod
    def parse(cls, value: "str | int | Severity") -> "Severity":
        if isinstance(value, Severity):
            return value
        if isinstance(value, int):
            return cls(value)
        try:
            return cls[str(value).strip().upper()]
        except KeyError:
            raise ValueError(f"Unknown severity: {value!r}") from None


@dataclass
class AnomalyEvent:
    """A single detector finding for one market."""

    id: str
    market_id: str
    type: AnomalyType
    severity: Severity
    score: float  # 0..100
    message: str
    timestamp: int  # epoch ms
    label: str = ""
    context: dict[str, Any] = field(default_factory=dict)
    meta: dict[str, Any] = field(default_factory=dict)


@dataclass
class MarketHeatScore:
    """Composite unusual-activity score for one market."""

    market_id: str
    score: float  # 0..100
    band: str
    components: dict[str, float] = field(default_factory=dict)
    last_updated: int = 0


@dataclass
class AnomalyDetectionResult:
    anomalies: list[AnomalyEvent] = field(default_factory=list)
    heat_scores: list[MarketHeatScore] = field(default_factory=list)


class ConditionType(str, Enum):
    PRICE = "price"
    VOLUME = "volume"
    DEPTH = "depth"
    SPREAD = "spread"
    FLOW = "flow"


class Operator(str, Enum):
    LT = "lt"
    GT = "gt"
    LTE = "lte"
    GTE = "gte"
    EQ = "eq"


@dataclass(frozen=True)
class AlertCondition:
    type: ConditionType
    operator: Operator
    value: float


@dataclass(frozen=True)
class NotifyAction:
    message: str = "Alert triggered"
    channels: tuple[str, ...] = ("log",)

    type = "notify"


@dataclass(frozen=True)
class OrderAction:
    market_id: str
    outcome: Outcome
    amount: float
    side: str = "buy"  # "buy" or "sell"

    type = "order"


@dataclass(frozen=True)
class WebhookAction:
    url: str
    message: str = "Alert triggered"

    type = "webhook"


AlertAction = NotifyAction | OrderAction | WebhookAction


@dataclass
class Alert:
    """A user-defined rule: all conditions must hold for the actions to fire."""

    id: str
    name: str
    conditions: list[AlertCondition] = field(default_factory=list)
    actions: list[AlertAction] = field(default_factory=list)
    market_id: str | None = None  # None = global, evaluated against every market
    is_active: bool = True
    cooldown_period_minutes: float | None = None
    last_triggered: int | None = None  # epoch ms


@dataclass
class ConditionResult:
    condition: AlertCondition
    current_value: float | None
    passed: bool
    description: str = ""


@dataclass
class AlertTestResult:
    would_trigger: bool
    conditions: list[ConditionResult] = field(default_factory=list)


@dataclass
class ActionResult:
    action_type: str
    success: bool
    error: str | None = None


@dataclass
class TriggerRecord:
    """One firing of an alert against one market."""

    alert_id: str
    alert_name: str
    market_id: str | None
    triggered_at: int  # epoch ms
    conditions: list[ConditionResult] = field(default_factory=list)
    results: list[ActionResult] = field(default_factory=list)

    @property
    def all_succeeded(self) -> bool:
        return all(result.success for result in self.results)


def _parse_condition(data: dict) -> AlertCondition:
    try:
        condition_type = ConditionType(data.get("type"))
        operator = Operator(data.get("operator"))
        value = float(data.get("value"))
    except (TypeError, ValueError) as e:
        raise AlertValidationError(f"Invalid condition {data!r}: {e}") from None
    return AlertCondition(type=condition_type, operator=operator, value=value)


def _parse_action(data: dict) -> AlertAction:
    action_type = data.get("type")
    config = data.get("config") or {}

    if action_type == "notify":
        channels = config.get("channels") or ["log"]
        return NotifyAction(
            message=config.get("message") or "Alert triggered",
            channels=tuple(str(c) for c in channels),
        )

    if action_type == "order":
        params = config.get("orderParams") or {}
        outcome = Outcome.parse(params.get("outcome"))
        if outcome is None or not params.get("marketId"):
            raise AlertValidationError(f"Invalid order parameters: {params!r}")
        try:
            amount = float(params.get("amount"))
        except (TypeError, ValueError):
            raise AlertValidationError(f"Invalid order amount: {params.get('amount')!r}") from None
        return OrderAction(
            market_id=str(params["marketId"]),
            outcome=outcome,
            amount=amount,
            side=str(params.get("type", "buy")).lower(),
        )

    if action_type == "webhook":
        url = config.get("webhookUrl")
        if not url:
            raise AlertValidationError("Webhook action requires webhookUrl")
        return WebhookAction(url=str(url), message=config.get("message") or "Alert triggered")

    raise AlertValidationError(f"Unknown action type: {action_type!r}")


def alert_from_dict(data: dict) -> Alert:
    """Build an Alert from the alert store's JSON shape (camelCase keys)."""
    if not data.get("id"):
        raise AlertValidationError("Alert is missing an id")

    cooldown = data.get("cooldownPeriodMinutes")
    if cooldown is not None:
        try:
            cooldown = float(cooldown)
        except (TypeError, ValueError):
            raise AlertValidationError(f"Invalid cooldownPeriodMinutes: {cooldown!r}") from None

    return Alert(
        id=str(data["id"]),
        name=str(data.get("name", "")),
        market_id=data.get("marketId") or None,
        conditions=[_parse_condition(c) for c in data.get("conditions", [])],
        actions=[_parse_action(a) for a in data.get("actions", [])],
        is_active=bool(data.get("isActive", True)),
        cooldown_period_minutes=cooldown,
        last_triggered=normalize_timestamp(data.get("lastTriggered")),
    )


def _action_to_dict(action: AlertAction) -> dict:
    match action:
        case NotifyAction():
            return {
                "type": "notify",
                "config": {"message": action.message, "channels": list(action.channels)},
            }
        case OrderAction():
            return {
                "type": "order",
                "config": {
                    "orderParams": {
                        "marketId": action.market_id,
                        "outcome": action.outcome.value,
                        "amount": action.amount,
                        "type": action.side,
                    }
                },
            }
        case WebhookAction():
            return {"type": "webhook", "config": {"webhookUrl": action.url, "message": action.message}}
    raise TypeError(f"Unsupported action: {action!r}")


def alert_to_dict(alert: Alert) -> dict:
    """Serialize an Alert back to the alert store's JSON shape."""
    return {
        "id": alert.id,
        "name": alert.name,
        "marketId": alert.market_id,
        "conditions": [
            {"type": c.type.value, "operator": c.operator.value, "value": c.value}
            for c in alert.conditions
        ],
        "actions": [_action_to_dict(a) for a in alert.actions],
        "isActive": alert.is_active,
        "cooldownPeriodMinutes": alert.cooldown_period_minutes,
        "lastTriggered": alert.last_triggered,
    }
