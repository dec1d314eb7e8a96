"""Database module for the smart routing service."""
from app.db.base import engine, get_engine, get_session, create_tables, DatabaseHealthCheck
from app.db.session import get_db, db_transaction, SessionManager

__all__ = [
    "engine",
    "get_engine",
    "get_session",
    "create_tables",
    "DatabaseHealthCheck",
    "get_db",
    "db_transaction",
    "SessionManager",
]
