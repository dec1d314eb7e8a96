"""Service layer for the smart routing service.

This package contains service classes implementing the business logic of the application.
Services orchestrate interactions between repositories and provide domain-specific operations.
"""

from app.services.audit import AuditLogService
from app.services.events import DomainEventEmitter
from app.services.match_counter import MatchCountBatcher
from app.services.routing_evaluator import RoutingEvaluator
from app.services.routing import RoutingService, RuleEvaluationResult
from app.services.redirect import RedirectService, RedirectResult, FallbackReason

__all__ = [
    "AuditLogService",
    "DomainEventEmitter",
    "MatchCountBatcher",
    "RoutingEvaluator",
    "RoutingService",
    "RuleEvaluationResult",
    "RedirectService",
    "RedirectResult",
    "FallbackReason",
]
