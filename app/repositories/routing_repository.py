"""Routing rule repository.

This module provides the RoutingRuleRepository class for database operations related to
RoutingRule models, including the evaluation-order query used by redirects and the
batched match counter update.
"""

from typing import Dict, List, Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.exc import SQLAlchemyError

from app.models.routing import RoutingRule
from app.repositories.base import BaseRepository, RepositoryError


class RoutingRuleRepository(BaseRepository[RoutingRule]):
    """
    Repository for RoutingRule model database operations.

    Rules are always listed in evaluation order: priority descending, then
    oldest first, then by id so equal timestamps stay deterministic.
    """

    def __init__(self):
        super().__init__(RoutingRule)

    def _evaluation_order(self):
        return [
            self.model_type.priority.desc(),
            self.model_type.created_at.asc(),
            self.model_type.id.asc(),
        ]

    async def count_for_url(self, db: AsyncSession, url_id: int) -> int:
        """Number of rules (active or not) attached to a link."""
        return await self.count(db, url_id=url_id)

    async def get_for_url(self, db: AsyncSession, rule_id: int, url_id: int) -> Optional[RoutingRule]:
        """
        Find a rule by id, only if it belongs to ``url_id``.

        Raises:
            RepositoryError: On database errors
        """
        try:
            query = select(self.model_type).where(
                self.model_type.id == rule_id,
                self.model_type.url_id == url_id,
            )
            result = await db.execute(query)
            return result.scalar_one_or_none()
        except SQLAlchemyError as e:
            raise RepositoryError(f"Error retrieving routing rule {rule_id}: {e}") from e

    async def list_for_url(self, db: AsyncSession, url_id: int) -> List[RoutingRule]:
        """All rules of a link in evaluation order."""
        return await self.list_where(
            db,
            self.model_type.url_id == url_id,
            order_by=self._evaluation_order(),
        )

    async def list_active_for_url(self, db: AsyncSession, url_id: int) -> List[RoutingRule]:
        """Active rules of a link in evaluation order."""
        return await self.list_where(
            db,
            self.model_type.url_id == url_id,
            self.model_type.is_active.is_(True),
            order_by=self._evaluation_order(),
        )

    async def increment_match_counts(self, db: AsyncSession, increments: Dict[int, int]) -> int:
        """
        Add pending match counts, one UPDATE per rule.

        The caller provides the transaction so that either every increment
        in a batch lands or none does. Rules deleted in the meantime are
        skipped silently.

        Returns:
            Number of rows updated

        Raises:
            RepositoryError: On database errors
        """
        updated = 0
        try:
            for rule_id, amount in increments.items():
                stmt = (
                    update(self.model_type)
                    .where(self.model_type.id == rule_id)
                    .values(match_count=self.model_type.match_count + amount)
                    .execution_options(synchronize_session=False)
                )
                result = await db.execute(stmt)
                updated += result.rowcount or 0
            return updated
        except SQLAlchemyError as e:
            raise RepositoryError(f"Error incrementing match counts: {e}") from e
