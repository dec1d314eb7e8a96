"""Requester identity passed to management operations."""

from enum import Enum
from typing import Optional

from pydantic import BaseModel


class UserRole(str, Enum):
    ADMIN = "ADMIN"
    USER = "USER"


class RequestMeta(BaseModel):
    """Request details recorded in the audit trail."""
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
