"""Alert condition evaluation and alert definition validation."""

import logging
import math
from typing import Callable

from .models import (
    Alert,
    AlertCondition,
    AlertTestResult,
    AlertValidationError,
    ConditionResult,
    ConditionType,
    MetricUnavailableError,
    NotifyAction,
    Operator,
    OrderAction,
    WebhookAction,
)

logger = logging.getLogger("marketpulse.evaluator")

# (market_id, condition_type) -> value; raises MetricUnavailableError when not loaded
MetricLookup = Callable[[str | None, ConditionType], float]

MAX_CONDITIONS = 10
MAX_ACTIONS = 5
MAX_NAME_LENGTH = 100

OPERATOR_SYMBOLS = {
    Operator.GT: ">",
    Operator.LT: "<",
    Operator.GTE: "≥",
    Operator.LTE: "≤",
    Operator.EQ: "=",
}

CONDITION_LABELS = {
    ConditionType.PRICE: "Price",
    ConditionType.VOLUME: "Volume (24h)",
    ConditionType.DEPTH: "Depth",
    ConditionType.SPREAD: "Spread",
    ConditionType.FLOW: "Flow",
}


def compare(value: float, operator: Operator, threshold: float) -> bool:
    """Apply a comparison operator; eq is an exact compare."""
    match operator:
        case Operator.GT:
            return value > threshold
        case Operator.LT:
            return value < threshold
        case Operator.GTE:
            return value >= threshold
        case Operator.LTE:
            return value <= threshold
        case Operator.EQ:
            return value == threshold
    raise ValueError(f"Unknown operator: {operator!r}")


def describe_condition(condition: AlertCondition, current_value: float | None = None) -> str:
    """Render a condition, e.g. 'Price: 0.72 > 0.70'."""
    label = CONDITION_LABELS[condition.type]
    symbol = OPERATOR_SYMBOLS[condition.operator]
    if current_value is None:
        return f"{label} {symbol} {condition.value:.2f}"
    return f"{label}: {current_value:.2f} {symbol} {condition.value:.2f}"


def evaluate_condition(condition: AlertCondition, current_value: float | None) -> ConditionResult:
    """
    Evaluate one condition against an observed value.

    A missing or non-finite value never passes. Unknown operators raise
    ValueError since they indicate a programming error.
    """
    if condition.operator not in OPERATOR_SYMBOLS:
        raise ValueError(f"Unknown operator: {condition.operator!r}")
    if condition.type not in CONDITION_LABELS:
        raise ValueError(f"Unknown condition type: {condition.type!r}")

    if current_value is None or not math.isfinite(current_value):
        return ConditionResult(
            condition=condition,
            current_value=current_value,
            passed=False,
            description=f"{describe_condition(condition)} (no data)",
        )

    return ConditionResult(
        condition=condition,
        current_value=current_value,
        passed=compare(current_value, condition.operator, condition.value),
        description=describe_condition(condition, current_value),
    )


def evaluate_conditions(
    alert: Alert, market_id: str | None, lookup: MetricLookup
) -> list[ConditionResult]:
    """
    Evaluate every condition of an alert for one market.

    All conditions are evaluated so callers can show the full picture;
    a metric that is not loaded yet yields a not-passed result.
    """
    results = []
    for condition in alert.conditions:
        try:
            value = lookup(market_id, condition.type)
        except MetricUnavailableError as e:
            results.append(
                ConditionResult(
                    condition=condition,
                    current_value=None,
                    passed=False,
                    description=f"{describe_condition(condition)} ({e.reason})",
                )
            )
            continue
        results.append(evaluate_condition(condition, value))
    return results


def conditions_met(results: list[ConditionResult]) -> bool:
    """AND over all results; an empty condition set never triggers."""
    return bool(results) and all(r.passed for r in results)


def dry_run(alert: Alert, lookup: MetricLookup, market_id: str | None = None) -> AlertTestResult:
    """Evaluate an alert without firing actions or touching its state."""
    results = evaluate_conditions(alert, market_id or alert.market_id, lookup)
    return AlertTestResult(would_trigger=conditions_met(results), conditions=results)


def validate_alert(alert: Alert) -> None:
    """Raise AlertValidationError describing every problem with an alert definition."""
    errors = []

    if not alert.id:
        errors.append("id: must not be empty")
    if not alert.name or not alert.name.strip():
        errors.append("name: must not be empty")
    elif len(alert.name) > MAX_NAME_LENGTH:
        errors.append(f"name: must be at most {MAX_NAME_LENGTH} characters")

    if not alert.conditions:
        errors.append("conditions: at least one condition is required")
    elif len(alert.conditions) > MAX_CONDITIONS:
        errors.append(f"conditions: at most {MAX_CONDITIONS} allowed")

    for i, condition in enumerate(alert.conditions):
        if not math.isfinite(condition.value):
            errors.append(f"conditions[{i}].value: must be a finite number")
        elif condition.value < 0 and condition.type is not ConditionType.FLOW:
            errors.append(f"conditions[{i}].value: must be >= 0")

    if not alert.actions:
        errors.append("actions: at least one action is required")
    elif len(alert.actions) > MAX_ACTIONS:
        errors.append(f"actions: at most {MAX_ACTIONS} allowed")

    for i, action in enumerate(alert.actions):
        match action:
            case NotifyAction():
                pass
            case OrderAction():
                if not action.amount > 0:
                    errors.append(f"actions[{i}].amount: must be positive")
                if action.side not in ("buy", "sell"):
                    errors.append(f"actions[{i}].side: must be buy or sell")
            case WebhookAction():
                if not action.url.startswith(("http://", "https://")):
                    errors.append(f"actions[{i}].url: must be an http(s) URL")
            case _:
                errors.append(f"actions[{i}]: unsupported action {action!r}")

    if alert.cooldown_period_minutes is not None and alert.cooldown_period_minutes < 0:
        errors.append("cooldown_period_minutes: must be >= 0")

    if errors:
        raise AlertValidationError(f"Invalid alert {alert.id!r}: " + "; ".join(errors))
