"""Repository layer for the smart routing service.

This module provides repository classes that abstract database operations
and implement the Repository pattern for clean separation of concerns.
"""

from app.repositories.base import (
    BaseRepository,
    RepositoryError,
    DuplicateEntityError
)
from app.repositories.url_repository import URLRepository
from app.repositories.routing_repository import RoutingRuleRepository
from app.repositories.audit_repository import AuditLogRepository

__all__ = [
    # Base classes and exceptions
    "BaseRepository",
    "RepositoryError",
    "DuplicateEntityError",

    # Concrete repositories
    "URLRepository",
    "RoutingRuleRepository",
    "AuditLogRepository",
]
