"""Built-in routing rule templates.

Templates are built once at import and exposed through a read-only mapping.
"""
from types import MappingProxyType
from typing import Mapping

from pydantic import BaseModel, ConfigDict

from app.models.routing import (
    ConditionItem,
    ConditionOperator,
    ConditionType,
    LogicalOperator,
    RoutingConditions,
    TimeRange,
)


class RoutingTemplate(BaseModel):
    """Named, ready-made condition set."""

    model_config = ConfigDict(frozen=True)

    name: str
    description: str
    conditions: RoutingConditions


def _conditions(operator: LogicalOperator, *items: ConditionItem) -> RoutingConditions:
    return RoutingConditions(operator=operator, conditions=items)


ROUTING_TEMPLATES: Mapping[str, RoutingTemplate] = MappingProxyType({
    "APP_DOWNLOAD_IOS": RoutingTemplate(
        name="iOS App Download",
        description="Redirect iOS users to App Store",
        conditions=_conditions(
            LogicalOperator.AND,
            ConditionItem(type=ConditionType.OS, operator=ConditionOperator.EQUALS, value="iOS"),
        ),
    ),
    "APP_DOWNLOAD_ANDROID": RoutingTemplate(
        name="Android App Download",
        description="Redirect Android users to Google Play",
        conditions=_conditions(
            LogicalOperator.AND,
            ConditionItem(type=ConditionType.OS, operator=ConditionOperator.EQUALS, value="Android"),
        ),
    ),
    "MULTILANG_TW": RoutingTemplate(
        name="Traditional Chinese Users",
        description="Redirect users preferring Traditional Chinese",
        conditions=_conditions(
            LogicalOperator.OR,
            ConditionItem(type=ConditionType.LANGUAGE, operator=ConditionOperator.CONTAINS, value="zh-TW"),
            ConditionItem(type=ConditionType.LANGUAGE, operator=ConditionOperator.CONTAINS, value="zh-Hant"),
            ConditionItem(type=ConditionType.COUNTRY, operator=ConditionOperator.EQUALS, value="TW"),
        ),
    ),
    "MULTILANG_CN": RoutingTemplate(
        name="Simplified Chinese Users",
        description="Redirect users preferring Simplified Chinese",
        conditions=_conditions(
            LogicalOperator.OR,
            ConditionItem(type=ConditionType.LANGUAGE, operator=ConditionOperator.CONTAINS, value="zh-CN"),
            ConditionItem(type=ConditionType.LANGUAGE, operator=ConditionOperator.CONTAINS, value="zh-Hans"),
            ConditionItem(type=ConditionType.COUNTRY, operator=ConditionOperator.EQUALS, value="CN"),
        ),
    ),
    "BUSINESS_HOURS": RoutingTemplate(
        name="Business Hours",
        description="Redirect during business hours (9:00-18:00)",
        conditions=_conditions(
            LogicalOperator.AND,
            ConditionItem(
                type=ConditionType.TIME,
                operator=ConditionOperator.BETWEEN,
                value=TimeRange(start="09:00", end="18:00"),
            ),
            ConditionItem(
                type=ConditionType.DAY_OF_WEEK,
                operator=ConditionOperator.IN,
                value=["1", "2", "3", "4", "5"],
            ),
        ),
    ),
    "MOBILE_ONLY": RoutingTemplate(
        name="Mobile Users",
        description="Redirect mobile device users",
        conditions=_conditions(
            LogicalOperator.AND,
            ConditionItem(type=ConditionType.DEVICE, operator=ConditionOperator.EQUALS, value="mobile"),
        ),
    ),
    "DESKTOP_ONLY": RoutingTemplate(
        name="Desktop Users",
        description="Redirect desktop users",
        conditions=_conditions(
            LogicalOperator.AND,
            ConditionItem(type=ConditionType.DEVICE, operator=ConditionOperator.EQUALS, value="desktop"),
        ),
    ),
})
