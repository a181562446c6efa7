"""Condition matchers: one function per alert condition kind."""
import logging
import operator
from dataclasses import dataclass, field
from typing import Optional

from models.enums import Comparison, ConditionType, Severity

logger = logging.getLogger("telemon.alerts.conditions")

OPERATOR_MAP = {
    Comparison.GT: operator.gt,
    Comparison.GTE: operator.ge,
    Comparison.LT: operator.lt,
    Comparison.LTE: operator.le,
    Comparison.EQ: operator.eq,
}

OPERATOR_SYMBOLS = {
    Comparison.GT: ">",
    Comparison.GTE: ">=",
    Comparison.LT: "<",
    Comparison.LTE: "<=",
    Comparison.EQ: "==",
}

ERROR_CONDITIONS = frozenset({ConditionType.ERROR_RATE, ConditionType.ERROR_COUNT, ConditionType.CUSTOM})
METRIC_CONDITIONS = frozenset({ConditionType.PERFORMANCE_THRESHOLD, ConditionType.UPTIME, ConditionType.CUSTOM})

DEFAULT_UPTIME_METRIC = "uptime"


@dataclass
class Evaluation:
    matched: bool
    value: Optional[float] = None
    detail: dict = field(default_factory=dict)


@dataclass
class EvaluationContext:
    """What a matcher may look at: history in ``db`` up to ``now``, plus the
    event or metric batch being processed (both None for re-checks)."""
    db: object
    now: float
    event: object = None
    samples: Optional[list] = None
    custom_matchers: dict = field(default_factory=dict)


def compare_values(actual, threshold, comparison):
    if actual is None:
        return False
    func = OPERATOR_MAP.get(Comparison(comparison))
    if func is None:
        return False
    return func(actual, threshold)


def _window_start(condition, ctx):
    return ctx.now - condition.window_seconds


def match_error_count(condition, ctx):
    severity = condition.metadata.get("severity")
    if severity and ctx.event is not None and ctx.event.severity != Severity(severity):
        return Evaluation(False, None, {"skipped": "severity mismatch"})

    count = ctx.db.count_errors(_window_start(condition, ctx), ctx.now, severity)
    return Evaluation(
        compare_values(count, condition.threshold, condition.comparison),
        count,
        {"count": count, "severity": severity},
    )


def match_error_rate(condition, ctx):
    severity = condition.metadata.get("severity")
    count = ctx.db.count_errors(_window_start(condition, ctx), ctx.now, severity)
    if condition.metadata.get("rate_unit") == "minute":
        rate = count / condition.time_window_minutes if condition.time_window_minutes else float(count)
    else:
        rate = float(count)
    return Evaluation(
        compare_values(rate, condition.threshold, condition.comparison),
        rate,
        {"count": count, "rate": rate},
    )


def _match_metric_average(condition, ctx, metric_name):
    if ctx.samples is not None:
        relevant = [s for s in ctx.samples if metric_name is None or s.name == metric_name]
        if not relevant:
            return Evaluation(False, None, {"skipped": "no relevant samples"})

    if metric_name is None:
        values = [s.value for s in ctx.samples or []]
    else:
        values = ctx.db.get_metric_values(metric_name, _window_start(condition, ctx), ctx.now)
    if not values:
        return Evaluation(False, None, {"samples": 0})

    average = sum(values) / len(values)
    return Evaluation(
        compare_values(average, condition.threshold, condition.comparison),
        average,
        {"metric_name": metric_name, "samples": len(values), "average": average},
    )


def match_performance_threshold(condition, ctx):
    return _match_metric_average(condition, ctx, condition.metadata.get("metric_name"))


def match_uptime(condition, ctx):
    return _match_metric_average(
        condition, ctx, condition.metadata.get("metric_name", DEFAULT_UPTIME_METRIC),
    )


def match_custom(condition, ctx):
    name = condition.metadata.get("matcher")
    matcher = ctx.custom_matchers.get(name)
    if matcher is None:
        logger.warning(f"No custom matcher registered under {name!r}")
        return Evaluation(False, None, {"skipped": "unknown matcher"})
    result = matcher(condition, ctx)
    if isinstance(result, Evaluation):
        return result
    return Evaluation(bool(result), None, {"matcher": name})


MATCHERS = {
    ConditionType.ERROR_COUNT: match_error_count,
    ConditionType.ERROR_RATE: match_error_rate,
    ConditionType.PERFORMANCE_THRESHOLD: match_performance_threshold,
    ConditionType.UPTIME: match_uptime,
    ConditionType.CUSTOM: match_custom,
}


def evaluate_condition(condition, ctx):
    return MATCHERS[ConditionType(condition.type)](condition, ctx)


def describe_condition(condition):
    """Short human form, e.g. ``error_rate > 10 over 5m``."""
    symbol = OPERATOR_SYMBOLS.get(Comparison(condition.comparison), "?")
    window = condition.time_window_minutes
    window_text = f"{window:g}m"
    subject = condition.metadata.get("metric_name") or condition.type.value
    return f"{subject} {symbol} {condition.threshold:g} over {window_text}"
