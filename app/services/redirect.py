"""Redirect resolution service.

This module contains the RedirectService class which turns a slug and a
visitor into a destination URL, consulting smart routing rules when the link
has them enabled.
"""

import logging
from datetime import datetime
from enum import Enum
from typing import Optional

from fastapi import Request
from pydantic import BaseModel, ValidationError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.cache import CacheService, url_slug_cache_key
from app.core.config import settings
from app.models.routing import VisitorContext, is_valid_timezone
from app.models.url import CachedShortURL
from app.repositories.url_repository import URLRepository
from app.services.exceptions import URLExpiredError, URLNotFoundError
from app.services.routing import RoutingService
from app.services.routing_evaluator import RoutingEvaluator
from app.services.user_agent import classify

logger = logging.getLogger(__name__)

UTM_PARAMS = ("utm_source", "utm_medium", "utm_campaign", "utm_term", "utm_content")


class FallbackReason(str, Enum):
    SMART_ROUTING_DISABLED = "SMART_ROUTING_DISABLED"
    NO_RULES_MATCHED = "NO_RULES_MATCHED"
    EVALUATION_ERROR = "EVALUATION_ERROR"


class RedirectResult(BaseModel):
    """Where a visitor is sent, and why."""

    target_url: str
    url_id: int
    rule_id: Optional[int] = None
    matched: bool = False
    fallback_reason: Optional[FallbackReason] = None


def _first_language(accept_language: Optional[str]) -> Optional[str]:
    """Primary tag of an Accept-Language header, e.g. 'zh-TW' for 'zh-TW,zh;q=0.9'."""
    if not accept_language:
        return None
    first = accept_language.split(",")[0].split(";")[0].strip()
    return first or None


class RedirectService:
    """
    Resolves slugs to destinations.

    Routing failures never fail a redirect: the visitor is sent to the
    link's fallback destination instead.
    """

    def __init__(
        self,
        url_repository: URLRepository,
        routing_service: RoutingService,
        cache: CacheService,
        evaluator: Optional[RoutingEvaluator] = None,
        cache_ttl: int = settings.URL_CACHE_TTL,
    ):
        self.url_repository = url_repository
        self.routing_service = routing_service
        self.cache = cache
        self.evaluator = evaluator or RoutingEvaluator()
        self.cache_ttl = cache_ttl

    async def get_link(self, db: AsyncSession, slug: str) -> CachedShortURL:
        """
        Look a slug up, through the slug cache.

        Raises:
            URLNotFoundError: Unknown slug
            URLExpiredError: The link has expired
        """
        key = url_slug_cache_key(slug)
        link = None

        cached = await self.cache.get(key)
        if cached is not None:
            try:
                link = CachedShortURL.model_validate(cached)
            except ValidationError as e:
                logger.warning(f"Ignoring malformed slug cache entry {key}: {e}")

        if link is None:
            url = await self.url_repository.get_by_slug(db, slug)
            if url is None:
                raise URLNotFoundError(f"URL with slug {slug} not found")
            link = CachedShortURL.model_validate(url.model_dump())
            await self.cache.set(key, link.model_dump(mode="json"), self.cache_ttl)

        if link.is_expired(datetime.utcnow()):
            raise URLExpiredError(f"URL with slug {slug} has expired")
        return link

    async def resolve(self, db: AsyncSession, slug: str, context: VisitorContext) -> RedirectResult:
        """
        Destination for a visitor following ``slug``.

        Raises:
            URLNotFoundError: Unknown slug
            URLExpiredError: The link has expired
        """
        link = await self.get_link(db, slug)
        fallback_url = link.default_url or link.original_url

        if not link.is_smart_routing:
            return RedirectResult(
                target_url=link.original_url,
                url_id=link.id,
                fallback_reason=FallbackReason.SMART_ROUTING_DISABLED,
            )

        try:
            result = await self.routing_service.evaluate_rules(db, link.id, context)
        except Exception as e:
            logger.error(f"Error evaluating smart routing for URL {link.id}: {e}", exc_info=True)
            return RedirectResult(
                target_url=fallback_url,
                url_id=link.id,
                fallback_reason=FallbackReason.EVALUATION_ERROR,
            )

        if result.rule is None or not result.target_url:
            return RedirectResult(
                target_url=fallback_url,
                url_id=link.id,
                fallback_reason=FallbackReason.NO_RULES_MATCHED,
            )

        self.routing_service.increment_match_count(result.rule.id)
        logger.debug(f"Smart Routing matched rule: {result.rule.id} for URL {link.id}")
        return RedirectResult(
            target_url=result.target_url,
            url_id=link.id,
            rule_id=result.rule.id,
            matched=True,
        )

    def build_context_from_request(self, request: Request) -> VisitorContext:
        """Visitor context from request headers and UTM query parameters."""
        headers = request.headers
        agent = classify(headers.get("user-agent"))

        timezone = headers.get("x-timezone")
        if timezone and not is_valid_timezone(timezone):
            logger.debug(f"Ignoring unknown timezone hint {timezone!r}")
            timezone = None

        utm = {name: request.query_params.get(name) for name in UTM_PARAMS}

        return self.evaluator.build_visitor_context(
            country=headers.get("cf-ipcountry") or headers.get("x-country-code"),
            region=headers.get("x-region"),
            city=headers.get("x-city"),
            device=agent.device,
            os=agent.os,
            browser=agent.browser,
            language=_first_language(headers.get("accept-language")),
            referer=headers.get("referer"),
            timezone=timezone,
            **utm,
        )
