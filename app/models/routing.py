"""Smart routing data models.

This module defines the routing condition language (condition kinds,
operators, time ranges and condition trees), the visitor context the
conditions are evaluated against, and the RoutingRule table with its
request/response schemas.

Condition models validate on construction and are immutable afterwards.
"""
import json
import re
from datetime import datetime, timezone
from enum import Enum, IntEnum
from typing import Any, Dict, List, Mapping, Optional, Tuple

import pytz
from pydantic import BaseModel, ConfigDict, Field as PydanticField, ValidationError, ValidationInfo, field_validator
from sqlalchemy import JSON, Column, ForeignKey, Index, Integer
from sqlmodel import Field, SQLModel

from app.core.config import settings
from app.core.url_safety import is_safe_url

# HH:mm, 00:00 to 23:59 (single digit hour accepted)
TIME_FORMAT_REGEX = re.compile(r"^([0-1]?[0-9]|2[0-3]):[0-5][0-9]$")

UNSAFE_URL_MESSAGE = "Target URL must be a public URL. Internal network addresses are not allowed."


class ConditionType(str, Enum):
    """Visitor attribute a condition inspects."""

    # Geographic
    COUNTRY = "country"
    REGION = "region"
    CITY = "city"
    # Device & Browser
    DEVICE = "device"
    OS = "os"
    BROWSER = "browser"
    # User preferences
    LANGUAGE = "language"
    # Traffic source
    REFERER = "referer"
    # Time-based
    TIME = "time"
    DAY_OF_WEEK = "day_of_week"
    # UTM parameters
    UTM_SOURCE = "utm_source"
    UTM_MEDIUM = "utm_medium"
    UTM_CAMPAIGN = "utm_campaign"
    UTM_TERM = "utm_term"
    UTM_CONTENT = "utm_content"


class ConditionOperator(str, Enum):
    EQUALS = "equals"
    NOT_EQUALS = "not_equals"
    CONTAINS = "contains"
    NOT_CONTAINS = "not_contains"
    IN = "in"
    NOT_IN = "not_in"
    STARTS_WITH = "starts_with"
    ENDS_WITH = "ends_with"
    # Time-specific operators
    BETWEEN = "between"
    BEFORE = "before"
    AFTER = "after"


class LogicalOperator(str, Enum):
    AND = "AND"
    OR = "OR"


class DeviceType(str, Enum):
    MOBILE = "mobile"
    TABLET = "tablet"
    DESKTOP = "desktop"


class DayOfWeek(IntEnum):
    SUNDAY = 0
    MONDAY = 1
    TUESDAY = 2
    WEDNESDAY = 3
    THURSDAY = 4
    FRIDAY = 5
    SATURDAY = 6


def is_valid_timezone(name: Any) -> bool:
    """True when ``name`` is an IANA timezone known to the tz database."""
    return isinstance(name, str) and name in pytz.all_timezones_set


def _parse_day(value: Any) -> Optional[int]:
    """Day number 0-6 from an int or numeric string, else None."""
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        day = value
    elif isinstance(value, str) and value.strip().isdigit():
        day = int(value.strip())
    else:
        return None
    return day if 0 <= day <= 6 else None


class TimeRange(BaseModel):
    """Clock window for ``time`` conditions, optionally pinned to a timezone."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    start: str
    end: Optional[str] = None
    timezone: Optional[str] = None

    @field_validator("start", "end")
    @classmethod
    def validate_clock(cls, v: Optional[str], info: ValidationInfo) -> Optional[str]:
        if v is not None and not TIME_FORMAT_REGEX.match(v):
            raise ValueError(f"{info.field_name.capitalize()} time must be in HH:mm format (00:00-23:59)")
        return v

    @field_validator("timezone")
    @classmethod
    def validate_timezone(cls, v: Optional[str]) -> Optional[str]:
        if v is not None and not is_valid_timezone(v):
            raise ValueError(
                "Timezone must be a valid IANA timezone (e.g., Asia/Taipei, America/New_York, UTC)"
            )
        return v


class ConditionItem(BaseModel):
    """
    A single predicate over one visitor attribute.

    ``value`` grammar depends on ``type`` and ``operator``:

    - time: a TimeRange (start required, end and timezone optional)
    - day_of_week: a day number 0-6 (Sunday=0), as int or numeric string,
      or a non-empty list of those
    - in / not_in: a non-empty list of strings or a non-empty string
    - anything else: a string or a list of strings

    Lists are stored as tuples so a constructed condition cannot change.
    """

    model_config = ConfigDict(frozen=True)

    type: ConditionType
    operator: ConditionOperator
    value: Any

    @field_validator("value", mode="before")
    @classmethod
    def validate_value(cls, v: Any, info: ValidationInfo) -> Any:
        condition_type = info.data.get("type")
        operator = info.data.get("operator")
        if condition_type is None or operator is None:
            # type/operator already failed; their errors are reported instead
            return v

        if condition_type == ConditionType.TIME:
            if isinstance(v, TimeRange):
                return v
            if not isinstance(v, Mapping):
                raise ValueError("Time value must be an object with start (and optionally end) in HH:mm format")
            try:
                return TimeRange.model_validate(dict(v))
            except ValidationError as e:
                raise ValueError(
                    "Time value must be an object with start (and optionally end) in HH:mm format: "
                    + "; ".join(err["msg"] for err in e.errors())
                ) from None

        if condition_type == ConditionType.DAY_OF_WEEK:
            days = v if isinstance(v, (list, tuple)) else [v]
            if not days or any(_parse_day(day) is None for day in days):
                raise ValueError("Day of week value must be a number 0-6 or array of numbers 0-6")
            return tuple(v) if isinstance(v, (list, tuple)) else v

        if operator in (ConditionOperator.IN, ConditionOperator.NOT_IN):
            if isinstance(v, (list, tuple)):
                if not v or not all(isinstance(item, str) for item in v):
                    raise ValueError("IN/NOT_IN operators require a non-empty array or string value")
                return tuple(v)
            if isinstance(v, str) and v:
                return v
            raise ValueError("IN/NOT_IN operators require a non-empty array or string value")

        if isinstance(v, (list, tuple)):
            if not all(isinstance(item, str) for item in v):
                raise ValueError("Invalid condition value")
            return tuple(v)
        if isinstance(v, str):
            return v
        raise ValueError("Invalid condition value")


class RoutingConditions(BaseModel):
    """Conjunction (AND) or disjunction (OR) of condition items."""

    model_config = ConfigDict(frozen=True)

    operator: LogicalOperator
    conditions: Tuple[ConditionItem, ...] = PydanticField(
        min_length=1, max_length=settings.ROUTING_MAX_CONDITIONS
    )

    @classmethod
    def from_storage(cls, raw: Any) -> "RoutingConditions":
        """
        Load conditions persisted as JSON.

        Valid documents are fully validated. Documents that fail validation
        (rows written outside the API) are loaded without validation so the
        evaluator can still judge each condition on its own; malformed
        conditions then evaluate to False instead of disabling the rule.
        """
        if isinstance(raw, RoutingConditions):
            return raw
        if isinstance(raw, (str, bytes)):
            try:
                raw = json.loads(raw)
            except ValueError:
                raw = None

        try:
            return cls.model_validate(raw)
        except ValidationError:
            pass

        if not isinstance(raw, Mapping):
            return cls.model_construct(operator=LogicalOperator.AND, conditions=())

        items = []
        for item in raw.get("conditions") or ():
            if not isinstance(item, Mapping):
                items.append(ConditionItem.model_construct(type=None, operator=None, value=item))
                continue
            try:
                items.append(ConditionItem.model_validate(item))
            except ValidationError:
                items.append(ConditionItem.model_construct(
                    type=item.get("type"),
                    operator=item.get("operator"),
                    value=item.get("value"),
                ))
        return cls.model_construct(operator=raw.get("operator"), conditions=tuple(items))

    def to_storage(self) -> Dict[str, Any]:
        """JSON-ready document for the ``conditions`` column."""
        return self.model_dump(mode="json", exclude_none=True)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class VisitorContext(BaseModel):
    """
    Per-request snapshot of the signals conditions are evaluated against.

    Built fresh for every redirect and never persisted.
    """

    model_config = ConfigDict(frozen=True)

    # Geographic
    country: Optional[str] = None
    region: Optional[str] = None
    city: Optional[str] = None
    # Device & Browser
    device: Optional[str] = None
    os: Optional[str] = None
    browser: Optional[str] = None
    # User preferences
    language: Optional[str] = None
    # Traffic source
    referer: Optional[str] = None
    # Current time
    current_time: datetime = PydanticField(default_factory=_utcnow)
    timezone: Optional[str] = "UTC"
    # UTM parameters
    utm_source: Optional[str] = None
    utm_medium: Optional[str] = None
    utm_campaign: Optional[str] = None
    utm_term: Optional[str] = None
    utm_content: Optional[str] = None


def validate_target_url(v: Optional[str]) -> Optional[str]:
    """Shared check for rule destinations and default URLs."""
    if v is None:
        return v
    v = str(v).strip()
    if not v or len(v) > 2048:
        raise ValueError("Target URL must be a valid URL")
    if not re.match(r"^https?://[^\s/?#]+", v, re.IGNORECASE):
        raise ValueError("Target URL must be a valid URL")
    if not is_safe_url(v):
        raise ValueError(UNSAFE_URL_MESSAGE)
    return v


class RoutingRuleBase(SQLModel):
    """Base model for routing rule data."""

    name: str = Field(min_length=1, max_length=100)
    target_url: str = Field(max_length=2048, description="Destination when conditions match")
    priority: int = Field(default=0, ge=0, le=10000, description="Higher is evaluated first")
    is_active: bool = Field(default=True)


class RoutingRule(RoutingRuleBase, table=True):
    """
    Routing rule owned by a short link.

    ``conditions`` holds the JSON form of RoutingConditions; ``match_count``
    is maintained by the batched match counter and is eventually consistent.
    """

    __tablename__ = "routing_rules"

    id: Optional[int] = Field(default=None, primary_key=True)
    url_id: int = Field(
        sa_column=Column(Integer, ForeignKey("short_urls.id", ondelete="CASCADE"), nullable=False, index=True)
    )
    conditions: Dict[str, Any] = Field(sa_column=Column(JSON, nullable=False))
    match_count: int = Field(default=0)
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    __table_args__ = (
        Index("ix_routing_rules_url_priority_active", "url_id", "priority", "is_active"),
    )

    @property
    def routing_conditions(self) -> RoutingConditions:
        return RoutingConditions.from_storage(self.conditions)


class RoutingRuleSnapshot(BaseModel):
    """
    Detached copy of an active rule, as cached under ``routing:{url_id}``.

    Conditions are kept in their stored JSON form and parsed leniently at
    evaluation time.
    """

    model_config = ConfigDict(from_attributes=True)

    id: int
    url_id: int
    name: str
    target_url: str
    priority: int = 0
    is_active: bool = True
    conditions: Any = None
    match_count: int = 0
    created_at: Optional[datetime] = None

    @property
    def routing_conditions(self) -> RoutingConditions:
        return RoutingConditions.from_storage(self.conditions)


class RoutingRuleCreate(BaseModel):
    """Schema for creating a routing rule."""

    name: str = PydanticField(min_length=1, max_length=100)
    target_url: str
    priority: int = PydanticField(default=0, ge=0, le=10000)
    is_active: bool = True
    conditions: RoutingConditions

    _check_target_url = field_validator("target_url")(validate_target_url)


class RoutingRuleUpdate(BaseModel):
    """Schema for updating a routing rule; only provided fields change."""

    name: Optional[str] = PydanticField(default=None, min_length=1, max_length=100)
    target_url: Optional[str] = None
    priority: Optional[int] = PydanticField(default=None, ge=0, le=10000)
    is_active: Optional[bool] = None
    conditions: Optional[RoutingConditions] = None

    _check_target_url = field_validator("target_url")(validate_target_url)


class RoutingRuleRead(BaseModel):
    """Schema for reading a routing rule."""

    model_config = ConfigDict(from_attributes=True)

    id: int
    url_id: int
    name: str
    target_url: str
    priority: int
    is_active: bool
    conditions: Any
    match_count: int
    created_at: datetime
    updated_at: datetime


class CreateFromTemplate(BaseModel):
    """Schema for creating a rule from a named template."""

    template_key: str = PydanticField(min_length=1)
    target_url: str
    name: Optional[str] = PydanticField(default=None, min_length=1, max_length=100)
    priority: Optional[int] = PydanticField(default=None, ge=0, le=10000)

    _check_target_url = field_validator("target_url")(validate_target_url)


class SmartRoutingSettingsUpdate(BaseModel):
    """Schema for toggling smart routing and setting the fallback URL."""

    is_smart_routing: Optional[bool] = None
    default_url: Optional[str] = None

    _check_default_url = field_validator("default_url")(validate_target_url)


class RuleMatchStats(BaseModel):
    """Share of a link's routed traffic taken by one rule."""

    rule_id: int
    name: str
    match_count: int
    match_percentage: float


class RoutingRuleList(BaseModel):
    """Rules of a link with match statistics."""

    rules: List[RoutingRuleRead]
    total_matches: int
    stats: List[RuleMatchStats]


class RoutingTemplateRead(BaseModel):
    """Template as listed to clients."""

    key: str
    name: str
    description: str
    conditions: RoutingConditions


class SmartRoutingSettingsRead(BaseModel):
    """Smart routing settings of a link."""

    url_id: int
    is_smart_routing: bool
    default_url: Optional[str] = None
