"""Core module for the smart routing service."""

from app.core.config import settings

__all__ = ["settings"]
