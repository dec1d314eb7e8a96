"""Audit trail model for management actions on links and routing rules."""
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

from sqlalchemy import JSON, Column
from sqlmodel import Field, SQLModel


class AuditAction(str, Enum):
    ROUTING_RULE_CREATED = "ROUTING_RULE_CREATED"
    ROUTING_RULE_UPDATED = "ROUTING_RULE_UPDATED"
    ROUTING_RULE_DELETED = "ROUTING_RULE_DELETED"
    URL_UPDATED = "URL_UPDATED"


class AuditEntityType(str, Enum):
    ROUTING_RULE = "routing_rule"
    URL = "url"


class AuditLog(SQLModel, table=True):
    """One recorded management action."""

    __tablename__ = "audit_logs"

    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: int = Field(index=True)
    action: str = Field(max_length=64, index=True)
    entity_type: str = Field(max_length=32)
    entity_id: Optional[int] = Field(default=None)
    old_value: Optional[Dict[str, Any]] = Field(default=None, sa_column=Column(JSON, nullable=True))
    new_value: Optional[Dict[str, Any]] = Field(default=None, sa_column=Column(JSON, nullable=True))
    ip_address: Optional[str] = Field(default=None, max_length=64)
    user_agent: Optional[str] = Field(default=None, max_length=512)
    created_at: datetime = Field(default_factory=datetime.utcnow)
