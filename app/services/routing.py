"""Smart routing service.

This module contains the RoutingService class which implements business logic
for managing routing rules of a short link and for picking the rule that
applies to a visitor at redirect time.
"""

import logging
import math
from datetime import datetime
from typing import Any, Dict, List, NamedTuple, Optional, Tuple

from pydantic import ValidationError
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.cache import CacheService, routing_cache_key, url_slug_cache_key
from app.core.config import settings
from app.core.url_safety import is_safe_url
from app.db.session import db_transaction
from app.models.audit import AuditAction, AuditEntityType
from app.models.routing import (
    CreateFromTemplate,
    RoutingRule,
    RoutingRuleCreate,
    RoutingRuleList,
    RoutingRuleRead,
    RoutingRuleSnapshot,
    RoutingRuleUpdate,
    RoutingTemplateRead,
    RuleMatchStats,
    SmartRoutingSettingsRead,
    SmartRoutingSettingsUpdate,
    VisitorContext,
)
from app.models.url import ShortURL
from app.models.user import RequestMeta, UserRole
from app.repositories.base import RepositoryError
from app.repositories.routing_repository import RoutingRuleRepository
from app.repositories.url_repository import URLRepository
from app.services.audit import AuditLogService
from app.services.events import RULE_CREATED, RULE_DELETED, RULE_UPDATED, DomainEventEmitter
from app.services.exceptions import (
    RoutingRuleLimitExceededError,
    RoutingRuleNotFoundError,
    RoutingTemplateNotFoundError,
    TransientStoreError,
    UnsafeDestinationError,
    URLNotFoundError,
)
from app.services.match_counter import MatchCountBatcher
from app.services.routing_evaluator import RoutingEvaluator
from app.services.routing_templates import ROUTING_TEMPLATES

logger = logging.getLogger(__name__)


def _ensure_safe_destination(target_url: Optional[str]) -> None:
    if target_url is not None and not is_safe_url(target_url):
        raise UnsafeDestinationError("Target URL points to a private or internal address")


class RuleEvaluationResult(NamedTuple):
    """Rule chosen for a visitor; both fields are None when nothing matched."""

    rule: Optional[RoutingRuleSnapshot]
    target_url: Optional[str]


def _match_percentage(match_count: int, total: int) -> float:
    # one decimal, halves rounded up
    if total <= 0:
        return 0
    return math.floor(match_count / total * 1000 + 0.5) / 10


def _event_payload(rule: RoutingRule, url_id: int, user_id: int) -> Dict[str, Any]:
    return {
        "rule_id": rule.id,
        "url_id": url_id,
        "name": rule.name,
        "target_url": rule.target_url,
        "priority": rule.priority,
        "user_id": user_id,
    }


class RoutingService:
    """
    Service for smart routing business logic.

    Management operations commit their own transaction and only then
    invalidate the cached rule set and slug entry of the link and publish
    a domain event, so readers never refill the cache with uncommitted rows.
    """

    def __init__(
        self,
        url_repository: URLRepository,
        rule_repository: RoutingRuleRepository,
        audit_service: AuditLogService,
        event_emitter: DomainEventEmitter,
        cache: CacheService,
        match_counter: MatchCountBatcher,
        evaluator: Optional[RoutingEvaluator] = None,
        max_rules_per_url: int = settings.ROUTING_MAX_RULES_PER_URL,
        cache_ttl: int = settings.ROUTING_CACHE_TTL,
    ):
        """
        Initialize the routing service.

        Args:
            url_repository: Repository for short link data access
            rule_repository: Repository for routing rule data access
            audit_service: Writer for the audit trail
            event_emitter: Publisher for routing.* domain events
            cache: JSON cache holding active rule sets
            match_counter: Write-behind counter for rule matches
            evaluator: Condition evaluator
            max_rules_per_url: Upper bound on rules attached to one link
            cache_ttl: Seconds a cached rule set stays valid
        """
        self.url_repository = url_repository
        self.rule_repository = rule_repository
        self.audit_service = audit_service
        self.event_emitter = event_emitter
        self.cache = cache
        self.match_counter = match_counter
        self.evaluator = evaluator or RoutingEvaluator()
        self.max_rules_per_url = max_rules_per_url
        self.cache_ttl = cache_ttl

    async def _get_owned_url(
        self, db: AsyncSession, url_id: int, requester_id: int, role: UserRole
    ) -> ShortURL:
        url = await self.url_repository.get_owned(db, url_id, requester_id, role)
        if url is None:
            raise URLNotFoundError(f"URL {url_id} not found")
        return url

    async def _get_rule(self, db: AsyncSession, url_id: int, rule_id: int) -> RoutingRule:
        rule = await self.rule_repository.get_for_url(db, rule_id, url_id)
        if rule is None:
            raise RoutingRuleNotFoundError(f"Routing rule {rule_id} not found")
        return rule

    async def _clear_routing_cache(self, url: ShortURL) -> None:
        """Drop the cached rule set and the slug entry used by redirects."""
        await self.cache.delete(routing_cache_key(url.id), url_slug_cache_key(url.slug))

    # Create

    @db_transaction()
    async def _insert_rule(
        self,
        db: AsyncSession,
        url_id: int,
        requester_id: int,
        role: UserRole,
        data: RoutingRuleCreate,
        meta: Optional[RequestMeta],
    ) -> Tuple[ShortURL, RoutingRule]:
        url = await self._get_owned_url(db, url_id, requester_id, role)

        existing = await self.rule_repository.count_for_url(db, url.id)
        if existing >= self.max_rules_per_url:
            raise RoutingRuleLimitExceededError(
                f"Maximum of {self.max_rules_per_url} routing rules per URL allowed"
            )

        if not url.is_smart_routing:
            await self.url_repository.set_smart_routing(db, url.id, True)

        conditions = data.conditions.to_storage()
        rule = await self.rule_repository.create(db, {
            "url_id": url.id,
            "name": data.name,
            "target_url": data.target_url,
            "priority": data.priority,
            "is_active": data.is_active,
            "conditions": conditions,
        })

        await self.audit_service.record(
            db,
            user_id=requester_id,
            action=AuditAction.ROUTING_RULE_CREATED,
            entity_type=AuditEntityType.ROUTING_RULE,
            entity_id=rule.id,
            new_value={
                "url_id": url.id,
                "name": rule.name,
                "target_url": rule.target_url,
                "priority": rule.priority,
                "conditions": conditions,
            },
            meta=meta,
        )
        return url, rule

    async def create(
        self,
        db: AsyncSession,
        url_id: int,
        requester_id: int,
        role: UserRole,
        data: RoutingRuleCreate,
        meta: Optional[RequestMeta] = None,
    ) -> RoutingRuleRead:
        """
        Create a routing rule on a link.

        The first rule of a link switches smart routing on.

        Raises:
            URLNotFoundError: Link missing or not owned by the requester
            UnsafeDestinationError: Target URL resolves to a private or internal address
            RoutingRuleLimitExceededError: Link already has the maximum number of rules
            TransientStoreError: The database failed
        """
        _ensure_safe_destination(data.target_url)
        try:
            url, rule = await self._insert_rule(db, url_id, requester_id, role, data, meta)
        except (RepositoryError, SQLAlchemyError) as e:
            logger.error(f"Error creating routing rule for URL {url_id}: {e}")
            raise TransientStoreError(f"Could not create routing rule: {e}") from e

        await self._clear_routing_cache(url)
        self.event_emitter.emit(RULE_CREATED, _event_payload(rule, url.id, requester_id))
        logger.info(f"Created routing rule {rule.id} for URL {url.id}")
        return RoutingRuleRead.model_validate(rule)

    async def create_from_template(
        self,
        db: AsyncSession,
        url_id: int,
        requester_id: int,
        role: UserRole,
        data: CreateFromTemplate,
        meta: Optional[RequestMeta] = None,
    ) -> RoutingRuleRead:
        """
        Create a rule whose conditions come from a built-in template.

        Raises:
            RoutingTemplateNotFoundError: Unknown template key
            plus everything ``create`` raises
        """
        template = ROUTING_TEMPLATES.get(data.template_key)
        if template is None:
            raise RoutingTemplateNotFoundError(f"Routing template {data.template_key} not found")

        rule_data = RoutingRuleCreate(
            name=data.name or template.name,
            target_url=data.target_url,
            priority=data.priority if data.priority is not None else 0,
            is_active=True,
            conditions=template.conditions,
        )
        return await self.create(db, url_id, requester_id, role, rule_data, meta)

    # Read

    async def find_all(
        self, db: AsyncSession, url_id: int, requester_id: int, role: UserRole
    ) -> RoutingRuleList:
        """
        List a link's rules in evaluation order with match statistics.

        Raises:
            URLNotFoundError: Link missing or not owned by the requester
        """
        url = await self._get_owned_url(db, url_id, requester_id, role)
        rules = await self.rule_repository.list_for_url(db, url.id)

        total_matches = sum(rule.match_count for rule in rules)
        stats = [
            RuleMatchStats(
                rule_id=rule.id,
                name=rule.name,
                match_count=rule.match_count,
                match_percentage=_match_percentage(rule.match_count, total_matches),
            )
            for rule in rules
        ]

        return RoutingRuleList(
            rules=[RoutingRuleRead.model_validate(rule) for rule in rules],
            total_matches=total_matches,
            stats=stats,
        )

    async def find_one(
        self, db: AsyncSession, url_id: int, rule_id: int, requester_id: int, role: UserRole
    ) -> RoutingRuleRead:
        """
        Raises:
            URLNotFoundError: Link missing or not owned by the requester
            RoutingRuleNotFoundError: No such rule on this link
        """
        url = await self._get_owned_url(db, url_id, requester_id, role)
        rule = await self._get_rule(db, url.id, rule_id)
        return RoutingRuleRead.model_validate(rule)

    # Update

    @db_transaction()
    async def _apply_update(
        self,
        db: AsyncSession,
        url_id: int,
        rule_id: int,
        requester_id: int,
        role: UserRole,
        data: RoutingRuleUpdate,
        meta: Optional[RequestMeta],
    ) -> Tuple[ShortURL, RoutingRule]:
        url = await self._get_owned_url(db, url_id, requester_id, role)
        rule = await self._get_rule(db, url.id, rule_id)

        old_value = {
            "name": rule.name,
            "target_url": rule.target_url,
            "priority": rule.priority,
            "is_active": rule.is_active,
        }
        changes = data.model_dump(mode="json", exclude_unset=True, exclude_none=True)

        rule = await self.rule_repository.update(db, rule, {**changes, "updated_at": datetime.utcnow()})

        await self.audit_service.record(
            db,
            user_id=requester_id,
            action=AuditAction.ROUTING_RULE_UPDATED,
            entity_type=AuditEntityType.ROUTING_RULE,
            entity_id=rule.id,
            old_value=old_value,
            new_value=changes,
            meta=meta,
        )
        return url, rule

    async def update(
        self,
        db: AsyncSession,
        url_id: int,
        rule_id: int,
        requester_id: int,
        role: UserRole,
        data: RoutingRuleUpdate,
        meta: Optional[RequestMeta] = None,
    ) -> RoutingRuleRead:
        """
        Change the provided fields of a rule.

        Raises:
            URLNotFoundError: Link missing or not owned by the requester
            RoutingRuleNotFoundError: No such rule on this link
            TransientStoreError: The database failed
        """
        _ensure_safe_destination(data.target_url)
        try:
            url, rule = await self._apply_update(db, url_id, rule_id, requester_id, role, data, meta)
        except (RepositoryError, SQLAlchemyError) as e:
            logger.error(f"Error updating routing rule {rule_id}: {e}")
            raise TransientStoreError(f"Could not update routing rule: {e}") from e

        await self._clear_routing_cache(url)
        self.event_emitter.emit(RULE_UPDATED, _event_payload(rule, url.id, requester_id))
        logger.info(f"Updated routing rule {rule.id} for URL {url.id}")
        return RoutingRuleRead.model_validate(rule)

    # Delete

    @db_transaction()
    async def _remove_rule(
        self,
        db: AsyncSession,
        url_id: int,
        rule_id: int,
        requester_id: int,
        role: UserRole,
        meta: Optional[RequestMeta],
    ) -> Tuple[ShortURL, Dict[str, Any]]:
        url = await self._get_owned_url(db, url_id, requester_id, role)
        rule = await self._get_rule(db, url.id, rule_id)
        payload = _event_payload(rule, url.id, requester_id)

        await self.rule_repository.delete(db, rule)

        if await self.rule_repository.count_for_url(db, url.id) == 0:
            await self.url_repository.set_smart_routing(db, url.id, False)

        await self.audit_service.record(
            db,
            user_id=requester_id,
            action=AuditAction.ROUTING_RULE_DELETED,
            entity_type=AuditEntityType.ROUTING_RULE,
            entity_id=rule_id,
            old_value={
                "url_id": url.id,
                "name": payload["name"],
                "target_url": payload["target_url"],
                "priority": payload["priority"],
            },
            meta=meta,
        )
        return url, payload

    async def delete(
        self,
        db: AsyncSession,
        url_id: int,
        rule_id: int,
        requester_id: int,
        role: UserRole,
        meta: Optional[RequestMeta] = None,
    ) -> None:
        """
        Delete a rule. Removing the last rule switches smart routing off.

        Raises:
            URLNotFoundError: Link missing or not owned by the requester
            RoutingRuleNotFoundError: No such rule on this link
            TransientStoreError: The database failed
        """
        try:
            url, payload = await self._remove_rule(db, url_id, rule_id, requester_id, role, meta)
        except (RepositoryError, SQLAlchemyError) as e:
            logger.error(f"Error deleting routing rule {rule_id}: {e}")
            raise TransientStoreError(f"Could not delete routing rule: {e}") from e

        await self._clear_routing_cache(url)
        self.event_emitter.emit(RULE_DELETED, payload)
        logger.info(f"Deleted routing rule {rule_id} from URL {url.id}")

    # Settings

    @db_transaction()
    async def _apply_settings(
        self,
        db: AsyncSession,
        url_id: int,
        requester_id: int,
        role: UserRole,
        data: SmartRoutingSettingsUpdate,
        meta: Optional[RequestMeta],
    ) -> ShortURL:
        url = await self._get_owned_url(db, url_id, requester_id, role)

        old_value = {"is_smart_routing": url.is_smart_routing, "default_url": url.default_url}
        changes = data.model_dump(exclude_unset=True)
        # default_url may be cleared with null, the flag may not
        if changes.get("is_smart_routing") is None:
            changes.pop("is_smart_routing", None)

        url = await self.url_repository.update(db, url, changes)

        await self.audit_service.record(
            db,
            user_id=requester_id,
            action=AuditAction.URL_UPDATED,
            entity_type=AuditEntityType.URL,
            entity_id=url.id,
            old_value=old_value,
            new_value=changes,
            meta=meta,
        )
        return url

    async def update_settings(
        self,
        db: AsyncSession,
        url_id: int,
        requester_id: int,
        role: UserRole,
        data: SmartRoutingSettingsUpdate,
        meta: Optional[RequestMeta] = None,
    ) -> SmartRoutingSettingsRead:
        """
        Toggle smart routing and set or clear the fallback URL of a link.

        Raises:
            URLNotFoundError: Link missing or not owned by the requester
            TransientStoreError: The database failed
        """
        _ensure_safe_destination(data.default_url)
        try:
            url = await self._apply_settings(db, url_id, requester_id, role, data, meta)
        except (RepositoryError, SQLAlchemyError) as e:
            logger.error(f"Error updating smart routing settings of URL {url_id}: {e}")
            raise TransientStoreError(f"Could not update smart routing settings: {e}") from e

        await self._clear_routing_cache(url)
        return SmartRoutingSettingsRead(
            url_id=url.id,
            is_smart_routing=url.is_smart_routing,
            default_url=url.default_url,
        )

    def get_templates(self) -> List[RoutingTemplateRead]:
        """Built-in templates with their keys."""
        return [
            RoutingTemplateRead(
                key=key,
                name=template.name,
                description=template.description,
                conditions=template.conditions,
            )
            for key, template in ROUTING_TEMPLATES.items()
        ]

    # Redirect time

    def _decode_cached_rules(self, url_id: int, cached: Any) -> Optional[List[RoutingRuleSnapshot]]:
        if cached is None:
            return None
        if not isinstance(cached, list):
            logger.warning(f"Ignoring malformed routing cache entry for URL {url_id}")
            return None
        try:
            return [RoutingRuleSnapshot.model_validate(item) for item in cached]
        except ValidationError as e:
            logger.warning(f"Ignoring malformed routing cache entry for URL {url_id}: {e}")
            return None

    async def _load_active_rules(self, db: AsyncSession, url_id: int) -> List[RoutingRuleSnapshot]:
        key = routing_cache_key(url_id)
        rules = self._decode_cached_rules(url_id, await self.cache.get(key))
        if rules is not None:
            return rules

        db_rules = await self.rule_repository.list_active_for_url(db, url_id)
        rules = [RoutingRuleSnapshot.model_validate(rule) for rule in db_rules]
        # an empty result is not cached
        if rules:
            await self.cache.set(key, [rule.model_dump(mode="json") for rule in rules], self.cache_ttl)
        return rules

    async def evaluate_rules(
        self, db: AsyncSession, url_id: int, context: VisitorContext
    ) -> RuleEvaluationResult:
        """
        Pick the first active rule, in priority order, that matches the visitor.

        A matching rule whose destination is not a public URL is skipped and
        the search continues with the next rule.

        Raises:
            RepositoryError: On database errors while loading rules
        """
        rules = await self._load_active_rules(db, url_id)

        for rule in rules:
            if not rule.is_active:
                continue
            if not self.evaluator.evaluate(rule.routing_conditions, context):
                continue
            if not is_safe_url(rule.target_url):
                logger.warning(
                    f"SECURITY: Unsafe target_url detected for routing rule {rule.id}, skipping. "
                    f"URL: {rule.target_url[:50]}..."
                )
                continue
            return RuleEvaluationResult(rule=rule, target_url=rule.target_url)

        return RuleEvaluationResult(rule=None, target_url=None)

    def increment_match_count(self, rule_id: int) -> None:
        """Count a match for ``rule_id``; written to the database in batches."""
        self.match_counter.increment(rule_id)
