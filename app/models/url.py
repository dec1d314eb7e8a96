"""Short link data models.

This module defines the ShortURL model, the link that owns routing rules.
"""
from datetime import datetime
from typing import Optional

from sqlalchemy import Index
from sqlmodel import Field, SQLModel


class ShortURLBase(SQLModel):
    """Base model for short link data."""

    original_url: str = Field(
        description="The original (long) URL to redirect to"
    )
    slug: str = Field(
        description="Unique slug used in the short URL path",
        unique=True,
        max_length=64,
    )
    user_id: int = Field(
        index=True,
        description="Owner of the link"
    )
    expires_at: Optional[datetime] = Field(
        default=None,
        description="When this short URL expires (null means no expiration)"
    )
    is_smart_routing: bool = Field(
        default=False,
        description="Whether redirects are resolved through routing rules"
    )
    default_url: Optional[str] = Field(
        default=None,
        description="Destination used when smart routing finds no matching rule"
    )


class ShortURL(ShortURLBase, table=True):
    """
    Short link stored in the database.

    Routing rules reference this table and are removed together with it
    (ON DELETE CASCADE on ``routing_rules.url_id``).
    """

    __tablename__ = "short_urls"

    id: Optional[int] = Field(default=None, primary_key=True)
    created_at: datetime = Field(
        default_factory=datetime.utcnow,
        description="Timestamp when this short URL was created"
    )
    click_count: int = Field(default=0)

    __table_args__ = (
        Index("ix_short_urls_slug_expiry", "slug", "expires_at"),
    )

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        """Check if the short URL has expired."""
        if self.expires_at is None:
            return False
        return self.expires_at < (now or datetime.utcnow())


class ShortURLCreate(ShortURLBase):
    """Schema for creating a new short URL."""
    pass


class CachedShortURL(SQLModel):
    """Slug resolution entry stored in the ``url:slug:{slug}`` cache key."""
    id: int
    slug: str
    original_url: str
    user_id: int
    expires_at: Optional[datetime] = None
    is_smart_routing: bool = False
    default_url: Optional[str] = None

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        if self.expires_at is None:
            return False
        return self.expires_at < (now or datetime.utcnow())
