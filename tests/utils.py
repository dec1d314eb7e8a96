"""Test utilities for smart routing tests."""

import random
import string
from datetime import datetime
from typing import Any, Dict, Optional

from app.models.routing import RoutingRule
from app.models.url import ShortURL


def random_string(length: int = 10) -> str:
    """Generate a random alphanumeric string."""
    return ''.join(random.choice(string.ascii_letters + string.digits) for _ in range(length))


def random_url() -> str:
    """Generate a random URL for testing."""
    domain = f"{random_string(8).lower()}.com"
    path = random_string(12)
    return f"https://{domain}/{path}"


def make_conditions(*items: Dict[str, Any], operator: str = "AND") -> Dict[str, Any]:
    """Conditions document as clients send it."""
    return {"operator": operator, "conditions": list(items)}


def country_is(code: str) -> Dict[str, Any]:
    return {"type": "country", "operator": "equals", "value": code}


async def create_test_url(
    db,
    user_id: int = 1,
    original_url: Optional[str] = None,
    slug: Optional[str] = None,
    expires_at: Optional[datetime] = None,
    is_smart_routing: bool = False,
    default_url: Optional[str] = None,
) -> ShortURL:
    """Create and commit a test ShortURL."""
    url = ShortURL(
        original_url=original_url or random_url(),
        slug=slug or random_string(6),
        user_id=user_id,
        expires_at=expires_at,
        is_smart_routing=is_smart_routing,
        default_url=default_url,
    )
    db.add(url)
    await db.commit()
    await db.refresh(url)
    return url


async def create_test_rule(
    db,
    url_id: int,
    name: Optional[str] = None,
    target_url: Optional[str] = None,
    priority: int = 0,
    is_active: bool = True,
    conditions: Optional[Dict[str, Any]] = None,
    match_count: int = 0,
    created_at: Optional[datetime] = None,
) -> RoutingRule:
    """Create and commit a rule directly, bypassing the service."""
    rule = RoutingRule(
        url_id=url_id,
        name=name or f"rule-{random_string(4)}",
        target_url=target_url or random_url(),
        priority=priority,
        is_active=is_active,
        conditions=conditions or make_conditions(country_is("US")),
        match_count=match_count,
    )
    if created_at is not None:
        rule.created_at = created_at
    db.add(rule)
    await db.commit()
    await db.refresh(rule)
    return rule
