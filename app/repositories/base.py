"""Base repository implementation for the smart routing service.

This module provides a generic BaseRepository class that follows the Repository pattern
for database operations, serving as a foundation for the link, routing rule and
audit repositories.
"""

from typing import Any, Dict, Generic, List, Optional, Type, TypeVar, Union
import logging

from pydantic import BaseModel
from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlmodel import SQLModel

# Type variable for model types
T = TypeVar("T", bound=SQLModel)

logger = logging.getLogger(__name__)


class RepositoryError(Exception):
    """Base exception for repository errors."""
    pass


class DuplicateEntityError(RepositoryError):
    """Exception raised when a unique constraint is violated."""

    def __init__(self, model_type: Type[SQLModel], field_name: str, value: Any):
        self.model_type = model_type
        self.field_name = field_name
        self.value = value
        model_name = getattr(model_type, "__name__", "Entity")
        super().__init__(f"{model_name} with {field_name}={value} already exists")


def _as_dict(data: Union[BaseModel, Dict[str, Any]]) -> Dict[str, Any]:
    if isinstance(data, BaseModel):
        return data.model_dump(exclude_unset=True)
    return dict(data)


class BaseRepository(Generic[T]):
    """
    Base repository implementing common CRUD operations for SQLModel entities.

    Repositories flush but never commit; the caller owns the transaction.
    Driver errors surface as RepositoryError.

    Type parameters:
        T: The SQLModel type this repository manages
    """

    def __init__(self, model_type: Type[T]):
        """
        Initialize the repository with a specific model type.

        Args:
            model_type: The SQLModel class this repository will work with
        """
        self.model_type = model_type

    async def get_by_id(self, db: AsyncSession, id: Any) -> Optional[T]:
        """
        Get an entity by its ID.

        Args:
            db: Database session
            id: Entity ID

        Returns:
            The entity if found, None otherwise
        """
        try:
            return await db.get(self.model_type, id)
        except SQLAlchemyError as e:
            logger.error(f"Error retrieving {self.model_type.__name__} with id {id}: {e}")
            raise RepositoryError(f"Database error retrieving entity: {e}") from e

    async def create(self, db: AsyncSession, data: Union[BaseModel, Dict[str, Any]]) -> T:
        """
        Create a new entity.

        Args:
            db: Database session
            data: Entity data (either as a Pydantic model or dictionary)

        Returns:
            The created entity, flushed so its ID is populated

        Raises:
            RepositoryError: On database errors
        """
        try:
            entity = self.model_type(**_as_dict(data))
            db.add(entity)
            await db.flush()  # Flush to generate ID but don't commit yet
            await db.refresh(entity)
            return entity
        except IntegrityError as e:
            logger.error(f"Integrity error creating {self.model_type.__name__}: {e}")
            raise RepositoryError(f"Constraint violation creating entity: {e}") from e
        except SQLAlchemyError as e:
            logger.error(f"Error creating {self.model_type.__name__}: {e}")
            raise RepositoryError(f"Database error creating entity: {e}") from e

    async def update(self, db: AsyncSession, entity: T, data: Union[BaseModel, Dict[str, Any]]) -> T:
        """
        Apply field changes to a loaded entity.

        Args:
            db: Database session
            entity: The entity to modify
            data: Changed fields (either as a Pydantic model or dictionary)

        Returns:
            The refreshed entity

        Raises:
            RepositoryError: On database errors
        """
        try:
            for key, value in _as_dict(data).items():
                setattr(entity, key, value)
            await db.flush()
            await db.refresh(entity)
            return entity
        except SQLAlchemyError as e:
            logger.error(f"Error updating {self.model_type.__name__} with id {getattr(entity, 'id', None)}: {e}")
            raise RepositoryError(f"Database error updating entity: {e}") from e

    async def delete(self, db: AsyncSession, entity: T) -> None:
        """
        Delete a loaded entity.

        Raises:
            RepositoryError: On database errors
        """
        try:
            await db.delete(entity)
            await db.flush()
        except SQLAlchemyError as e:
            logger.error(f"Error deleting {self.model_type.__name__} with id {getattr(entity, 'id', None)}: {e}")
            raise RepositoryError(f"Database error deleting entity: {e}") from e

    async def count(self, db: AsyncSession, **filters) -> int:
        """
        Count entities, optionally restricted by field=value filters.

        Raises:
            RepositoryError: On database errors
        """
        try:
            conditions = [getattr(self.model_type, field) == value for field, value in filters.items()]
            query = select(func.count()).select_from(self.model_type)
            if conditions:
                query = query.where(*conditions)
            result = await db.execute(query)
            return result.scalar_one()
        except SQLAlchemyError as e:
            logger.error(f"Error counting {self.model_type.__name__} records: {e}")
            raise RepositoryError(f"Database error counting entities: {e}") from e

    async def exists(self, db: AsyncSession, **filters) -> bool:
        """
        Check if an entity exists with the given filters.

        Raises:
            ValueError: If no filters are given
            RepositoryError: On database errors
        """
        if not filters:
            raise ValueError("No conditions provided for exists check")
        return await self.count(db, **filters) > 0

    async def list_where(self, db: AsyncSession, *conditions, order_by: Optional[List[Any]] = None) -> List[T]:
        """
        List entities matching SQLAlchemy conditions.

        Raises:
            RepositoryError: On database errors
        """
        try:
            query = select(self.model_type).where(*conditions)
            if order_by:
                query = query.order_by(*order_by)
            result = await db.execute(query)
            return list(result.scalars().all())
        except SQLAlchemyError as e:
            logger.error(f"Error retrieving {self.model_type.__name__} list: {e}")
            raise RepositoryError(f"Database error retrieving entities: {e}") from e
