"""Session management for database operations.

This module provides the FastAPI session dependency, a transaction
decorator for service methods and a transaction context manager used by
background jobs such as the match-count flush.
"""

from typing import AsyncGenerator, Callable, Optional, TypeVar
import logging
import inspect
from contextlib import asynccontextmanager
from functools import wraps

from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.exc import SQLAlchemyError

from app.db.base import get_session

logger = logging.getLogger(__name__)

T = TypeVar("T")


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """FastAPI dependency for database sessions.

    Yields:
        AsyncSession: A SQLAlchemy async session object.
    """
    async with get_session() as session:
        try:
            yield session
        except SQLAlchemyError:
            logger.exception("Database error occurred")
            await session.rollback()
            raise
        except Exception:
            await session.rollback()
            raise


def db_transaction(db_param_name: str = "db") -> Callable:
    """Decorator committing the wrapped coroutine's session on success.

    The session is looked up by parameter name (positionally or as a
    keyword). On any exception the session is rolled back and the
    exception re-raised.

    Args:
        db_param_name: Name of the AsyncSession parameter, 'db' by convention

    Example:
        ```python
        @db_transaction()
        async def rename_rule(self, db: AsyncSession, rule_id: int, name: str):
            ...
        ```
    """
    def decorator(func: Callable[..., T]) -> Callable[..., T]:
        parameters = list(inspect.signature(func).parameters)
        if db_param_name not in parameters:
            raise ValueError(
                f"Function '{func.__name__}' has no '{db_param_name}' parameter to manage"
            )
        db_param_pos = parameters.index(db_param_name)

        @wraps(func)
        async def wrapper(*args, **kwargs):
            db: Optional[AsyncSession] = kwargs.get(db_param_name)
            if db is None and len(args) > db_param_pos:
                db = args[db_param_pos]
            if db is None:
                raise ValueError(
                    f"Database session not found in arguments for '{func.__name__}'"
                )

            try:
                result = await func(*args, **kwargs)
                await db.commit()
                return result
            except Exception as e:
                await db.rollback()
                logger.warning(f"Transaction rolled back in '{func.__name__}': {e}")
                raise

        return wrapper
    return decorator


class SessionManager:
    """Session manager providing transactional sessions outside request scope."""

    @staticmethod
    @asynccontextmanager
    async def transaction_context() -> AsyncGenerator[AsyncSession, None]:
        """Context manager for a session that commits on success.

        Rolls back and re-raises on error.

        Yields:
            AsyncSession: SQLAlchemy async session
        """
        async with get_session() as session:
            try:
                yield session
                await session.commit()
            except Exception as e:
                await session.rollback()
                logger.error(f"Transaction failed: {e}")
                raise
