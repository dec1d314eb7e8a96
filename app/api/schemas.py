"""API request and response schemas.

This module contains Pydantic models for API request validation
and response serialization that are specific to the HTTP layer. Routing rule
payloads themselves live in ``app.models.routing``.
"""

from typing import List, Optional

from pydantic import BaseModel

from app.models.routing import RoutingTemplateRead
from app.models.user import UserRole


class ErrorResponse(BaseModel):
    """Response schema for errors."""
    detail: str
    error_code: Optional[str] = None


class Requester(BaseModel):
    """Caller of a management endpoint."""
    user_id: int
    role: UserRole = UserRole.USER


class RoutingTemplateListResponse(BaseModel):
    """Response schema for the template catalogue."""
    templates: List[RoutingTemplateRead]
