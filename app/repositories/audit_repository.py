"""Audit log repository."""

from typing import List

from sqlalchemy.ext.asyncio import AsyncSession

from app.models.audit import AuditLog
from app.repositories.base import BaseRepository


class AuditLogRepository(BaseRepository[AuditLog]):
    """Repository for AuditLog entries."""

    def __init__(self):
        super().__init__(AuditLog)

    async def list_for_entity(self, db: AsyncSession, entity_type: str, entity_id: int) -> List[AuditLog]:
        """Entries recorded for one entity, oldest first."""
        return await self.list_where(
            db,
            self.model_type.entity_type == entity_type,
            self.model_type.entity_id == entity_id,
            order_by=[self.model_type.created_at.asc(), self.model_type.id.asc()],
        )
