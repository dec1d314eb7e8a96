"""URL Repository for the smart routing service.

This module provides the URLRepository class for database operations related to ShortURL models:
slug lookups for redirects, owner-scoped lookups for rule management and the smart
routing flag.
"""

from typing import Any, Dict, Optional, Union

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from app.models.url import ShortURL, ShortURLCreate
from app.models.user import UserRole
from app.repositories.base import BaseRepository, RepositoryError, DuplicateEntityError


class URLRepository(BaseRepository[ShortURL]):
    """
    Repository for ShortURL model database operations.
    """

    def __init__(self):
        """Initialize the repository with the ShortURL model type."""
        super().__init__(ShortURL)

    async def create_short_url(
        self,
        db: AsyncSession,
        data: Union[ShortURLCreate, Dict[str, Any]]
    ) -> ShortURL:
        """
        Create a new short link.

        Raises:
            DuplicateEntityError: If the slug already exists
            RepositoryError: On other database errors
        """
        slug = data.slug if isinstance(data, ShortURLCreate) else data.get("slug")
        if slug and await self.exists(db, slug=slug):
            raise DuplicateEntityError(self.model_type, "slug", slug)

        try:
            return await self.create(db, data)
        except RepositoryError as e:
            if isinstance(e.__cause__, IntegrityError):
                raise DuplicateEntityError(self.model_type, "slug", slug) from e
            raise

    async def get_by_slug(self, db: AsyncSession, slug: str) -> Optional[ShortURL]:
        """
        Find a link by its slug.

        Args:
            db: Database session
            slug: The unique slug to look up

        Returns:
            The ShortURL if found, None otherwise

        Raises:
            RepositoryError: On database errors
        """
        try:
            query = select(self.model_type).where(self.model_type.slug == slug)
            result = await db.execute(query)
            return result.scalar_one_or_none()
        except SQLAlchemyError as e:
            raise RepositoryError(f"Error retrieving URL by slug: {e}") from e

    async def get_owned(
        self,
        db: AsyncSession,
        url_id: int,
        user_id: int,
        role: UserRole = UserRole.USER,
    ) -> Optional[ShortURL]:
        """
        Find a link the requester may manage.

        Administrators may manage any link; everyone else only their own.
        A link owned by someone else is reported as missing.

        Raises:
            RepositoryError: On database errors
        """
        if role == UserRole.ADMIN:
            return await self.get_by_id(db, url_id)

        try:
            query = select(self.model_type).where(
                self.model_type.id == url_id,
                self.model_type.user_id == user_id,
            )
            result = await db.execute(query)
            return result.scalar_one_or_none()
        except SQLAlchemyError as e:
            raise RepositoryError(f"Error retrieving URL {url_id} for user {user_id}: {e}") from e

    async def set_smart_routing(self, db: AsyncSession, url_id: int, enabled: bool) -> None:
        """
        Set the smart routing flag without loading the link.

        Raises:
            RepositoryError: On database errors
        """
        try:
            stmt = (
                update(self.model_type)
                .where(self.model_type.id == url_id)
                .values(is_smart_routing=enabled)
                .execution_options(synchronize_session="fetch")
            )
            await db.execute(stmt)
        except SQLAlchemyError as e:
            raise RepositoryError(f"Error updating smart routing flag: {e}") from e
