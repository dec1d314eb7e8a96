"""Routing condition evaluator.

This module decides whether a RoutingConditions tree matches a VisitorContext.
Evaluation is pure: no I/O, and a condition that cannot be evaluated counts as
not matching instead of raising.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Mapping, Optional

import pytz

from app.models.routing import (
    ConditionItem,
    ConditionOperator,
    ConditionType,
    DayOfWeek,
    LogicalOperator,
    RoutingConditions,
    VisitorContext,
)

logger = logging.getLogger(__name__)

DEFAULT_TIMEZONE = "UTC"

# Visitor context attribute read by each generic condition type
CONTEXT_FIELDS = {
    ConditionType.COUNTRY: "country",
    ConditionType.REGION: "region",
    ConditionType.CITY: "city",
    ConditionType.DEVICE: "device",
    ConditionType.OS: "os",
    ConditionType.BROWSER: "browser",
    ConditionType.LANGUAGE: "language",
    ConditionType.REFERER: "referer",
    ConditionType.UTM_SOURCE: "utm_source",
    ConditionType.UTM_MEDIUM: "utm_medium",
    ConditionType.UTM_CAMPAIGN: "utm_campaign",
    ConditionType.UTM_TERM: "utm_term",
    ConditionType.UTM_CONTENT: "utm_content",
}

NEGATED_OPERATORS = (ConditionOperator.NOT_EQUALS, ConditionOperator.NOT_IN)


def resolve_timezone(override: Optional[str], context: Optional[VisitorContext]) -> str:
    """
    Timezone name used for clock based conditions.

    A condition level override wins over the visitor's timezone, which wins
    over UTC.
    """
    if override:
        return override
    if context is not None and context.timezone:
        return context.timezone
    return DEFAULT_TIMEZONE


def _to_minutes(clock: str) -> int:
    """Minutes since midnight for an ``H:MM``/``HH:MM`` string."""
    hours, minutes = clock.split(":")
    return int(hours) * 60 + int(minutes)


def _normalize(value: Any) -> str:
    if value is None:
        return ""
    if not isinstance(value, str):
        raise TypeError(f"expected a string condition value, got {type(value).__name__}")
    return value.strip().lower()


def _local_time(context: VisitorContext, tz_name: str) -> datetime:
    """Visitor's current instant expressed in ``tz_name``."""
    now = context.current_time or datetime.now(timezone.utc)
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    # UnknownTimeZoneError propagates; the condition then evaluates to False
    return now.astimezone(pytz.timezone(tz_name))


def _time_range_field(time_range: Any, name: str) -> Optional[str]:
    if isinstance(time_range, Mapping):
        return time_range.get(name)
    return getattr(time_range, name, None)


class RoutingEvaluator:
    """
    Evaluates routing conditions against a visitor context.

    Stateless; one instance can be shared by every request.
    """

    def evaluate(self, conditions: Optional[RoutingConditions], context: VisitorContext) -> bool:
        """
        Evaluate a condition tree.

        An empty tree never matches. With AND every condition must match,
        otherwise any single match is enough. All conditions are evaluated
        so that each failing one gets logged.
        """
        items = getattr(conditions, "conditions", None)
        if not items:
            return False

        results = [self.evaluate_condition(condition, context) for condition in items]

        if conditions.operator == LogicalOperator.AND:
            return all(results)
        return any(results)

    def evaluate_condition(self, condition: ConditionItem, context: VisitorContext) -> bool:
        """Evaluate one condition; any error makes it not match."""
        condition_type = getattr(condition, "type", None)
        try:
            condition_type = ConditionType(condition_type)
            operator = ConditionOperator(condition.operator)

            if condition_type == ConditionType.TIME:
                return self._evaluate_time(operator, condition.value, context)
            if condition_type == ConditionType.DAY_OF_WEEK:
                return self._evaluate_day_of_week(operator, condition.value, context)

            value = getattr(context, CONTEXT_FIELDS[condition_type])
            if value is not None:
                if condition_type == ConditionType.COUNTRY:
                    value = value.upper()
                elif condition_type == ConditionType.DEVICE:
                    value = value.lower()
            return self._compare(value, operator, condition.value)
        except Exception as e:
            logger.warning(f"Error evaluating condition {condition_type}: {e}")
            return False

    def _compare(self, actual: Optional[str], operator: ConditionOperator, expected: Any) -> bool:
        if actual is None:
            return operator in NEGATED_OPERATORS

        actual = _normalize(actual)

        if operator in (ConditionOperator.IN, ConditionOperator.NOT_IN):
            candidates = list(expected) if isinstance(expected, (list, tuple)) else [expected]
            # an empty list never matches, in either direction
            if not candidates:
                return False
            is_member = any(_normalize(candidate) == actual for candidate in candidates)
            return is_member if operator == ConditionOperator.IN else not is_member

        if operator == ConditionOperator.EQUALS:
            return actual == _normalize(expected)
        if operator == ConditionOperator.NOT_EQUALS:
            return actual != _normalize(expected)
        if operator == ConditionOperator.CONTAINS:
            return _normalize(expected) in actual
        if operator == ConditionOperator.NOT_CONTAINS:
            return _normalize(expected) not in actual
        if operator == ConditionOperator.STARTS_WITH:
            return actual.startswith(_normalize(expected))
        if operator == ConditionOperator.ENDS_WITH:
            return actual.endswith(_normalize(expected))
        return False

    def _evaluate_time(self, operator: ConditionOperator, time_range: Any, context: VisitorContext) -> bool:
        start = _time_range_field(time_range, "start")
        end = _time_range_field(time_range, "end")
        if not start:
            logger.warning("Time condition has no start time")
            return False
        if operator == ConditionOperator.BETWEEN and not end:
            logger.warning("BETWEEN operator requires both start and end time")
            return False

        tz_name = resolve_timezone(_time_range_field(time_range, "timezone"), context)
        current = _to_minutes(_local_time(context, tz_name).strftime("%H:%M"))
        start_minutes = _to_minutes(start)

        if operator == ConditionOperator.BETWEEN:
            end_minutes = _to_minutes(end)
            if start_minutes <= end_minutes:
                return start_minutes <= current <= end_minutes
            # overnight window, e.g. 22:00-06:00
            return current >= start_minutes or current <= end_minutes
        if operator == ConditionOperator.BEFORE:
            return current < start_minutes
        if operator == ConditionOperator.AFTER:
            return current > start_minutes
        return False

    def _evaluate_day_of_week(self, operator: ConditionOperator, value: Any, context: VisitorContext) -> bool:
        # day conditions carry no timezone of their own
        tz_name = resolve_timezone(None, context)
        current_day = DayOfWeek(_local_time(context, tz_name).isoweekday() % 7)

        raw_days = value if isinstance(value, (list, tuple)) else [value]
        days = [int(day) for day in raw_days]

        if operator in (ConditionOperator.IN, ConditionOperator.EQUALS):
            return current_day in days
        if operator in (ConditionOperator.NOT_IN, ConditionOperator.NOT_EQUALS):
            return current_day not in days
        return False

    def build_visitor_context(self, **signals: Any) -> VisitorContext:
        """
        Assemble a visitor context from request signals.

        Signals that are not context fields are ignored; the current instant
        is always now, and a missing timezone means UTC.
        """
        fields = {
            name: signals.get(name)
            for name in (
                "country", "region", "city", "device", "os", "browser", "language",
                "referer", "utm_source", "utm_medium", "utm_campaign", "utm_term",
                "utm_content",
            )
        }
        return VisitorContext(
            **fields,
            current_time=datetime.now(timezone.utc),
            timezone=signals.get("timezone") or DEFAULT_TIMEZONE,
        )
