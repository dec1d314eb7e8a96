"""API dependencies for FastAPI.

This module provides dependency injection functions for FastAPI endpoints
to access the requester, repositories and service instances.

The cache, event emitter and match counter are process-wide; everything else
is cheap and built per request.
"""

from typing import Optional

from fastapi import Depends, Header, HTTPException, Request, status

from app.api.schemas import Requester
from app.core.cache import CacheService
from app.models.user import RequestMeta, UserRole
from app.repositories.audit_repository import AuditLogRepository
from app.repositories.routing_repository import RoutingRuleRepository
from app.repositories.url_repository import URLRepository
from app.services.audit import AuditLogService
from app.services.events import DomainEventEmitter
from app.services.match_counter import MatchCountBatcher
from app.services.redirect import RedirectService
from app.services.routing import RoutingService
from app.services.routing_evaluator import RoutingEvaluator

cache_service = CacheService()
event_emitter = DomainEventEmitter()
match_counter = MatchCountBatcher(RoutingRuleRepository())
routing_evaluator = RoutingEvaluator()


def get_cache_service() -> CacheService:
    return cache_service


def get_event_emitter() -> DomainEventEmitter:
    return event_emitter


def get_match_counter() -> MatchCountBatcher:
    return match_counter


async def get_url_repository():
    """Get an instance of the URL repository."""
    return URLRepository()


async def get_routing_rule_repository():
    """Get an instance of the routing rule repository."""
    return RoutingRuleRepository()


async def get_audit_service() -> AuditLogService:
    """Get an instance of the audit log service."""
    return AuditLogService(AuditLogRepository())


async def get_routing_service(
    url_repo: URLRepository = Depends(get_url_repository),
    rule_repo: RoutingRuleRepository = Depends(get_routing_rule_repository),
    audit_service: AuditLogService = Depends(get_audit_service),
    cache: CacheService = Depends(get_cache_service),
    emitter: DomainEventEmitter = Depends(get_event_emitter),
    counter: MatchCountBatcher = Depends(get_match_counter),
) -> RoutingService:
    """Get an instance of the routing service."""
    return RoutingService(
        url_repository=url_repo,
        rule_repository=rule_repo,
        audit_service=audit_service,
        event_emitter=emitter,
        cache=cache,
        match_counter=counter,
        evaluator=routing_evaluator,
    )


async def get_redirect_service(
    url_repo: URLRepository = Depends(get_url_repository),
    routing_service: RoutingService = Depends(get_routing_service),
    cache: CacheService = Depends(get_cache_service),
) -> RedirectService:
    """Get an instance of the redirect service."""
    return RedirectService(
        url_repository=url_repo,
        routing_service=routing_service,
        cache=cache,
        evaluator=routing_evaluator,
    )


async def get_requester(
    x_user_id: Optional[int] = Header(None),
    x_user_role: UserRole = Header(UserRole.USER),
) -> Requester:
    """
    Identify the caller from the X-User-Id / X-User-Role headers.

    These are set by the authenticating gateway in front of the service.
    """
    if x_user_id is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing X-User-Id header",
        )
    return Requester(user_id=x_user_id, role=x_user_role)


def get_request_meta(request: Request) -> RequestMeta:
    """Client details recorded in the audit trail."""
    return RequestMeta(
        ip_address=request.client.host if request.client else None,
        user_agent=request.headers.get("user-agent"),
    )
