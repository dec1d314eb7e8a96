"""Audit trail service.

Records who changed which routing rule or link setting, with before/after
values. Entries join the caller's transaction and are committed with it.
"""

import logging
from typing import Any, Dict, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.audit import AuditAction, AuditEntityType, AuditLog
from app.models.user import RequestMeta
from app.repositories.audit_repository import AuditLogRepository
from app.repositories.base import RepositoryError

logger = logging.getLogger(__name__)

# Field names whose values never reach the audit table
SENSITIVE_FIELDS = frozenset({
    "password",
    "secret",
    "key",
    "token",
    "apikey",
    "api_key",
    "refresh_token",
    "access_token",
    "credential",
    "private_key",
    "secret_key",
    "auth_token",
    "bearer_token",
    "encryption_key",
})


def sanitize_value(value: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    """Copy of ``value`` with sensitive fields redacted (case-insensitive)."""
    if not value:
        return None
    return {
        field: "[REDACTED]" if field.lower() in SENSITIVE_FIELDS else field_value
        for field, field_value in value.items()
    }


class AuditLogService:
    """Writes audit entries through the AuditLogRepository."""

    def __init__(self, audit_repository: AuditLogRepository):
        self.audit_repository = audit_repository

    async def record(
        self,
        db: AsyncSession,
        user_id: int,
        action: AuditAction,
        entity_type: AuditEntityType,
        entity_id: Optional[int] = None,
        old_value: Optional[Dict[str, Any]] = None,
        new_value: Optional[Dict[str, Any]] = None,
        meta: Optional[RequestMeta] = None,
    ) -> Optional[AuditLog]:
        """
        Add an audit entry to the current transaction.

        The insert runs in a savepoint. A failed write is rolled back to it,
        logged and reported as None, leaving the caller's transaction usable;
        auditing never fails the management operation that triggered it.
        """
        meta = meta or RequestMeta()
        entry = {
            "user_id": user_id,
            "action": action.value,
            "entity_type": entity_type.value,
            "entity_id": entity_id,
            "old_value": sanitize_value(old_value),
            "new_value": sanitize_value(new_value),
            "ip_address": meta.ip_address,
            "user_agent": meta.user_agent[:512] if meta.user_agent else None,
        }
        try:
            async with db.begin_nested():
                return await self.audit_repository.create(db, entry)
        except (RepositoryError, SQLAlchemyError) as e:
            logger.error(f"Failed to create audit log for {action.value} on {entity_type.value} {entity_id}: {e}")
            return None
