"""Pre-built alert templates for common trading scenarios."""

import uuid
from dataclasses import dataclass, field

from .models import (
    Alert,
    AlertAction,
    AlertCondition,
    ConditionType,
    NotifyAction,
    Operator,
)

CATEGORIES = ("price", "volume", "liquidity", "flow", "spread")


@dataclass(frozen=True)
class AlertTemplate:
    id: str
    name: str
    description: str
    category: str
    conditions: tuple[AlertCondition, ...]
    actions: tuple[AlertAction, ...] = field(default_factory=tuple)
    default_cooldown_minutes: float | None = None


def _cond(condition_type: ConditionType, operator: Operator, value: float) -> AlertCondition:
    return AlertCondition(type=condition_type, operator=operator, value=value)


def _notify(message: str) -> tuple[AlertAction, ...]:
    return (NotifyAction(message=message),)


# Prices are YES probabilities on the 0..1 scale
ALERT_TEMPLATES: tuple[AlertTemplate, ...] = (
    AlertTemplate(
        id="price-breakout-up",
        name="Price Breakout Up",
        description="Price breaks above 70%",
        category="price",
        conditions=(_cond(ConditionType.PRICE, Operator.GT, 0.70),),
        actions=_notify("Price breakout detected! Price above 70%"),
        default_cooldown_minutes=15,
    ),
    AlertTemplate(
        id="price-breakout-down",
        name="Price Breakout Down",
        description="Price breaks below 30%",
        category="price",
        conditions=(_cond(ConditionType.PRICE, Operator.LT, 0.30),),
        actions=_notify("Price breakdown detected! Price below 30%"),
        default_cooldown_minutes=15,
    ),
    AlertTemplate(
        id="price-extreme",
        name="Price Extreme",
        description="Price reaches 80% or more",
        category="price",
        conditions=(_cond(ConditionType.PRICE, Operator.GTE, 0.80),),
        actions=_notify("Extreme price level reached"),
        default_cooldown_minutes=30,
    ),
    AlertTemplate(
        id="volume-spike",
        name="Volume Spike",
        description="24h volume above $10K",
        category="volume",
        conditions=(_cond(ConditionType.VOLUME, Operator.GT, 10_000),),
        actions=_notify("Volume spike detected! High trading activity."),
        default_cooldown_minutes=60,
    ),
    AlertTemplate(
        id="volume-surge",
        name="Volume Surge",
        description="24h volume above $50K",
        category="volume",
        conditions=(_cond(ConditionType.VOLUME, Operator.GT, 50_000),),
        actions=_notify("Major volume surge! Market moving significantly."),
        default_cooldown_minutes=60,
    ),
    AlertTemplate(
        id="low-liquidity",
        name="Low Liquidity Warning",
        description="Order book depth below 1,000",
        category="liquidity",
        conditions=(_cond(ConditionType.DEPTH, Operator.LT, 1_000),),
        actions=_notify("Low liquidity detected! High slippage risk."),
        default_cooldown_minutes=30,
    ),
    AlertTemplate(
        id="high-liquidity",
        name="High Liquidity Opportunity",
        description="Order book depth above 5,000",
        category="liquidity",
        conditions=(_cond(ConditionType.DEPTH, Operator.GT, 5_000),),
        actions=_notify("High liquidity available! Good trading conditions."),
        default_cooldown_minutes=30,
    ),
    AlertTemplate(
        id="one-sided-flow",
        name="One-Sided Flow",
        description="YES flow exceeds 60% of recent volume",
        category="flow",
        conditions=(_cond(ConditionType.FLOW, Operator.GT, 60),),
        actions=_notify("One-sided flow detected! Buyers dominating."),
        default_cooldown_minutes=30,
    ),
    AlertTemplate(
        id="wide-spread",
        name="Wide Spread Warning",
        description="Spread wider than 5% of mid",
        category="spread",
        conditions=(_cond(ConditionType.SPREAD, Operator.GT, 5),),
        actions=_notify("Wide spread detected! High trading costs."),
        default_cooldown_minutes=30,
    ),
    AlertTemplate(
        id="tight-spread",
        name="Tight Spread Opportunity",
        description="Spread tighter than 2% of mid",
        category="spread",
        conditions=(_cond(ConditionType.SPREAD, Operator.LT, 2),),
        actions=_notify("Tight spread detected! Good trading conditions."),
        default_cooldown_minutes=30,
    ),
    AlertTemplate(
        id="price-volume-breakout",
        name="Price & Volume Breakout",
        description="Price above 65% and 24h volume above $5K",
        category="price",
        conditions=(
            _cond(ConditionType.PRICE, Operator.GT, 0.65),
            _cond(ConditionType.VOLUME, Operator.GT, 5_000),
        ),
        actions=_notify("Strong breakout signal! Price and volume both elevated."),
        default_cooldown_minutes=30,
    ),
    AlertTemplate(
        id="perfect-storm",
        name="Perfect Storm (Multi-Signal)",
        description="Price, volume, depth and spread all favourable",
        category="price",
        conditions=(
            _cond(ConditionType.PRICE, Operator.GT, 0.50),
            _cond(ConditionType.VOLUME, Operator.GT, 10_000),
            _cond(ConditionType.DEPTH, Operator.GT, 3_000),
            _cond(ConditionType.SPREAD, Operator.LT, 3),
        ),
        actions=_notify("Perfect trading conditions! All metrics aligned."),
        default_cooldown_minutes=60,
    ),
)


def get_templates_by_category(category: str) -> list[AlertTemplate]:
    return [t for t in ALERT_TEMPLATES if t.category == category]


def get_template_by_id(template_id: str) -> AlertTemplate | None:
    for template in ALERT_TEMPLATES:
        if template.id == template_id:
            return template
    return None


def template_to_alert(
    template: AlertTemplate,
    market_id: str | None = None,
    name: str | None = None,
    alert_id: str | None = None,
) -> Alert:
    """Create an active alert from a template; a fresh id is generated unless given."""
    return Alert(
        id=alert_id or f"{template.id}-{uuid.uuid4().hex[:8]}",
        name=name or template.name,
        market_id=market_id,
        conditions=list(template.conditions),
        actions=list(template.actions),
        is_active=True,
        cooldown_period_minutes=template.default_cooldown_minutes,
    )
