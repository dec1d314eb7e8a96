"""
Data models for the smart routing service.

This module imports and exports all SQLModel models used in the application.
"""

# First import SQLModel itself to ensure metadata is initialized
from sqlmodel import SQLModel

# Import non-table models to avoid circular import issues
from app.models.url import (
    ShortURLBase,
    ShortURLCreate,
    CachedShortURL,
)
from app.models.routing import (
    ConditionType,
    ConditionOperator,
    LogicalOperator,
    DeviceType,
    DayOfWeek,
    TimeRange,
    ConditionItem,
    RoutingConditions,
    VisitorContext,
    RoutingRuleBase,
    RoutingRuleSnapshot,
    RoutingRuleCreate,
    RoutingRuleUpdate,
    RoutingRuleRead,
    CreateFromTemplate,
    SmartRoutingSettingsUpdate,
    SmartRoutingSettingsRead,
    RuleMatchStats,
    RoutingRuleList,
    RoutingTemplateRead,
)
from app.models.user import UserRole, RequestMeta

# Then import table models in correct order (parent before child)
from app.models.url import ShortURL
from app.models.routing import RoutingRule
from app.models.audit import AuditLog, AuditAction, AuditEntityType

__all__ = [
    "SQLModel",

    # Short URL models
    "ShortURL",
    "ShortURLBase",
    "ShortURLCreate",
    "CachedShortURL",

    # Routing models
    "RoutingRule",
    "RoutingRuleBase",
    "RoutingRuleSnapshot",
    "RoutingRuleCreate",
    "RoutingRuleUpdate",
    "RoutingRuleRead",
    "CreateFromTemplate",
    "SmartRoutingSettingsUpdate",
    "SmartRoutingSettingsRead",
    "RuleMatchStats",
    "RoutingRuleList",
    "RoutingTemplateRead",
    "ConditionType",
    "ConditionOperator",
    "LogicalOperator",
    "DeviceType",
    "DayOfWeek",
    "TimeRange",
    "ConditionItem",
    "RoutingConditions",
    "VisitorContext",

    # Requester
    "UserRole",
    "RequestMeta",

    # Audit
    "AuditLog",
    "AuditAction",
    "AuditEntityType",
]
