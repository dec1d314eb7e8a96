"""Tests for the routing condition models."""

import pytest
from pydantic import ValidationError

from app.core.config import settings
from app.models.routing import (
    ConditionItem,
    ConditionOperator,
    ConditionType,
    LogicalOperator,
    RoutingConditions,
    RoutingRuleCreate,
    SmartRoutingSettingsUpdate,
    TimeRange,
)
from tests.utils import country_is, make_conditions


class TestConditionItem:
    """Validation of single conditions."""

    def test_generic_string_value(self):
        item = ConditionItem(type="country", operator="equals", value="US")
        assert item.type == ConditionType.COUNTRY
        assert item.operator == ConditionOperator.EQUALS
        assert item.value == "US"

    def test_list_value_is_stored_as_tuple(self):
        item = ConditionItem(type="country", operator="in", value=["US", "CA"])
        assert item.value == ("US", "CA")

    def test_unknown_type_rejected(self):
        with pytest.raises(ValidationError):
            ConditionItem(type="planet", operator="equals", value="Mars")

    def test_unknown_operator_rejected(self):
        with pytest.raises(ValidationError):
            ConditionItem(type="country", operator="matches", value="US")

    @pytest.mark.parametrize("value", [[], ""])
    def test_in_requires_non_empty_value(self, value):
        with pytest.raises(ValidationError, match="IN/NOT_IN operators require a non-empty array or string value"):
            ConditionItem(type="country", operator="in", value=value)

    def test_non_string_scalar_rejected(self):
        with pytest.raises(ValidationError, match="Invalid condition value"):
            ConditionItem(type="country", operator="equals", value=42)

    def test_time_value_becomes_time_range(self):
        item = ConditionItem(
            type="time",
            operator="between",
            value={"start": "09:00", "end": "18:00", "timezone": "Asia/Taipei"},
        )
        assert item.value == TimeRange(start="09:00", end="18:00", timezone="Asia/Taipei")

    @pytest.mark.parametrize("value", [
        "09:00",
        {"start": "9am"},
        {"start": "24:00"},
        {"start": "09:00", "end": "18:60"},
        {"end": "18:00"},
    ])
    def test_time_value_rejected(self, value):
        with pytest.raises(ValidationError, match="Time value must be an object"):
            ConditionItem(type="time", operator="between", value=value)

    def test_time_value_with_unknown_timezone_rejected(self):
        with pytest.raises(ValidationError, match="valid IANA timezone"):
            ConditionItem(type="time", operator="after", value={"start": "09:00", "timezone": "Mars/Olympus"})

    def test_single_digit_hour_accepted(self):
        item = ConditionItem(type="time", operator="after", value={"start": "9:30"})
        assert item.value.start == "9:30"

    @pytest.mark.parametrize("value", [0, 6, "3", [1, "2", 5]])
    def test_day_of_week_values(self, value):
        item = ConditionItem(type="day_of_week", operator="in", value=value)
        assert item.value is not None

    @pytest.mark.parametrize("value", [7, -1, "monday", [], [1, 9], True])
    def test_day_of_week_rejected(self, value):
        with pytest.raises(ValidationError, match="Day of week value must be a number 0-6"):
            ConditionItem(type="day_of_week", operator="in", value=value)

    def test_condition_is_immutable(self):
        item = ConditionItem(type="country", operator="equals", value="US")
        with pytest.raises(ValidationError):
            item.value = "CA"


class TestRoutingConditions:
    """Validation and storage of condition trees."""

    def test_parses_client_document(self):
        conditions = RoutingConditions.model_validate(
            make_conditions(country_is("US"), {"type": "device", "operator": "equals", "value": "mobile"}, operator="OR")
        )
        assert conditions.operator == LogicalOperator.OR
        assert len(conditions.conditions) == 2

    def test_empty_condition_list_rejected(self):
        with pytest.raises(ValidationError):
            RoutingConditions.model_validate({"operator": "AND", "conditions": []})

    def test_too_many_conditions_rejected(self):
        items = [country_is("US")] * (settings.ROUTING_MAX_CONDITIONS + 1)
        with pytest.raises(ValidationError):
            RoutingConditions.model_validate(make_conditions(*items))

    def test_lowercase_logical_operator_rejected(self):
        with pytest.raises(ValidationError):
            RoutingConditions.model_validate(make_conditions(country_is("US"), operator="and"))

    def test_to_storage_is_plain_json(self):
        conditions = RoutingConditions.model_validate(make_conditions(
            {"type": "time", "operator": "between", "value": {"start": "22:00", "end": "06:00"}},
            {"type": "country", "operator": "in", "value": ["US", "CA"]},
        ))

        assert conditions.to_storage() == {
            "operator": "AND",
            "conditions": [
                {"type": "time", "operator": "between", "value": {"start": "22:00", "end": "06:00"}},
                {"type": "country", "operator": "in", "value": ["US", "CA"]},
            ],
        }

    def test_from_storage_valid_document(self):
        stored = make_conditions(country_is("US"))
        conditions = RoutingConditions.from_storage(stored)
        assert conditions.conditions[0].value == "US"

    def test_from_storage_keeps_malformed_items(self):
        """Invalid stored items are kept unvalidated next to the valid ones."""
        stored = make_conditions(
            country_is("US"),
            {"type": "planet", "operator": "equals", "value": "Mars"},
            operator="OR",
        )

        conditions = RoutingConditions.from_storage(stored)

        assert len(conditions.conditions) == 2
        assert conditions.conditions[0].type == ConditionType.COUNTRY
        assert conditions.conditions[1].type == "planet"

    @pytest.mark.parametrize("stored", [None, "not json", {"operator": "AND"}, 42])
    def test_from_storage_garbage_yields_empty_tree(self, stored):
        conditions = RoutingConditions.from_storage(stored)
        assert not conditions.conditions


class TestRuleSchemas:
    """Destination checks on rule and settings payloads."""

    def test_rule_create_accepts_public_url(self):
        rule = RoutingRuleCreate(
            name="US visitors",
            target_url="https://example.com/us",
            conditions=make_conditions(country_is("US")),
        )
        assert rule.priority == 0
        assert rule.is_active is True

    @pytest.mark.parametrize("target_url", [
        "http://localhost/admin",
        "http://127.0.0.1:8080/",
        "http://169.254.169.254/latest/meta-data",
        "http://10.0.0.5/",
        "http://metadata.google.internal/",
    ])
    def test_rule_create_rejects_internal_destinations(self, target_url):
        with pytest.raises(ValidationError, match="Internal network addresses are not allowed"):
            RoutingRuleCreate(
                name="internal",
                target_url=target_url,
                conditions=make_conditions(country_is("US")),
            )

    @pytest.mark.parametrize("target_url", ["ftp://example.com/file", "example.com", ""])
    def test_rule_create_rejects_non_http_urls(self, target_url):
        with pytest.raises(ValidationError, match="Target URL must be a valid URL"):
            RoutingRuleCreate(
                name="bad",
                target_url=target_url,
                conditions=make_conditions(country_is("US")),
            )

    def test_priority_bounds(self):
        with pytest.raises(ValidationError):
            RoutingRuleCreate(
                name="too high",
                target_url="https://example.com",
                priority=10001,
                conditions=make_conditions(country_is("US")),
            )

    def test_settings_default_url_may_be_cleared(self):
        update = SmartRoutingSettingsUpdate(default_url=None)
        assert update.model_dump(exclude_unset=True) == {"default_url": None}

    def test_settings_default_url_must_be_public(self):
        with pytest.raises(ValidationError):
            SmartRoutingSettingsUpdate(default_url="http://192.168.1.1/")
