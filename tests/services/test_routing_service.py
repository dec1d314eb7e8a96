"""Tests for the routing service."""

import json
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import select, text

from app.core.cache import routing_cache_key, url_slug_cache_key
from app.models.audit import AuditAction, AuditEntityType, AuditLog
from app.models.routing import (
    CreateFromTemplate,
    RoutingRuleCreate,
    RoutingRuleUpdate,
    SmartRoutingSettingsUpdate,
    VisitorContext,
)
from app.models.url import ShortURL
from app.models.user import RequestMeta, UserRole
from app.repositories.audit_repository import AuditLogRepository
from app.repositories.routing_repository import RoutingRuleRepository
from app.repositories.url_repository import URLRepository
from app.services.audit import AuditLogService
from app.services.events import RULE_CREATED, RULE_DELETED, RULE_UPDATED
from app.services.exceptions import (
    RoutingRuleLimitExceededError,
    RoutingRuleNotFoundError,
    RoutingTemplateNotFoundError,
    UnsafeDestinationError,
    URLNotFoundError,
)
from app.services.routing import RoutingService
from tests.utils import country_is, create_test_rule, create_test_url, make_conditions

OWNER = 1


def rule_payload(name="US visitors", target_url="https://example.com/us", priority=0, **conditions_kwargs):
    return RoutingRuleCreate(
        name=name,
        target_url=target_url,
        priority=priority,
        conditions=make_conditions(country_is("US"), **conditions_kwargs),
    )


async def smart_routing_flag(db, url_id):
    result = await db.execute(select(ShortURL.is_smart_routing).where(ShortURL.id == url_id))
    return result.scalar_one()


async def audit_actions(db):
    result = await db.execute(select(AuditLog.action).order_by(AuditLog.id))
    return list(result.scalars().all())


@pytest.fixture
def recorded_events(event_emitter):
    events = []
    for name in (RULE_CREATED, RULE_UPDATED, RULE_DELETED):
        event_emitter.subscribe(name, lambda payload, name=name: events.append((name, payload)))
    return events


@pytest.mark.service
class TestRoutingRuleManagement:
    """Create, read, update and delete with their side effects."""

    @pytest.mark.asyncio
    async def test_create_enables_smart_routing(self, test_db, routing_service):
        url = await create_test_url(test_db, user_id=OWNER)

        rule = await routing_service.create(test_db, url.id, OWNER, UserRole.USER, rule_payload())

        assert rule.id is not None
        assert rule.url_id == url.id
        assert rule.match_count == 0
        assert rule.conditions == {
            "operator": "AND",
            "conditions": [{"type": "country", "operator": "equals", "value": "US"}],
        }
        assert await smart_routing_flag(test_db, url.id) is True

    @pytest.mark.asyncio
    async def test_create_for_foreign_url_is_not_found(self, test_db, routing_service):
        url = await create_test_url(test_db, user_id=OWNER)

        with pytest.raises(URLNotFoundError):
            await routing_service.create(test_db, url.id, 2, UserRole.USER, rule_payload())

    @pytest.mark.asyncio
    async def test_admin_manages_any_url(self, test_db, routing_service):
        url = await create_test_url(test_db, user_id=OWNER)

        rule = await routing_service.create(test_db, url.id, 99, UserRole.ADMIN, rule_payload())

        assert rule.url_id == url.id

    @pytest.mark.asyncio
    async def test_create_respects_rule_limit(self, test_db, cache, event_emitter, match_counter):
        service = RoutingService(
            url_repository=URLRepository(),
            rule_repository=RoutingRuleRepository(),
            audit_service=AuditLogService(AuditLogRepository()),
            event_emitter=event_emitter,
            cache=cache,
            match_counter=match_counter,
            max_rules_per_url=2,
        )
        url = await create_test_url(test_db, user_id=OWNER)
        # the rollback after the limit error expires loaded instances
        url_id = url.id
        await service.create(test_db, url_id, OWNER, UserRole.USER, rule_payload(name="one"))
        await service.create(test_db, url_id, OWNER, UserRole.USER, rule_payload(name="two"))

        with pytest.raises(RoutingRuleLimitExceededError) as exc_info:
            await service.create(test_db, url_id, OWNER, UserRole.USER, rule_payload(name="three"))

        assert exc_info.value.error_code == "RULE_LIMIT_EXCEEDED"
        assert await service.rule_repository.count_for_url(test_db, url_id) == 2

    @pytest.mark.asyncio
    async def test_create_writes_audit_entry(self, test_db, routing_service):
        url = await create_test_url(test_db, user_id=OWNER)
        meta = RequestMeta(ip_address="203.0.113.9", user_agent="pytest")

        rule = await routing_service.create(test_db, url.id, OWNER, UserRole.USER, rule_payload(), meta)

        entries = await AuditLogRepository().list_for_entity(test_db, AuditEntityType.ROUTING_RULE.value, rule.id)
        assert len(entries) == 1
        entry = entries[0]
        assert entry.action == AuditAction.ROUTING_RULE_CREATED.value
        assert entry.user_id == OWNER
        assert entry.ip_address == "203.0.113.9"
        assert entry.new_value["target_url"] == "https://example.com/us"

    @pytest.mark.asyncio
    async def test_audit_write_failure_keeps_rule(self, test_db, routing_service):
        url = await create_test_url(test_db, user_id=OWNER)
        url_id = url.id
        await test_db.execute(text("DROP TABLE audit_logs"))
        await test_db.commit()

        rule = await routing_service.create(test_db, url_id, OWNER, UserRole.USER, rule_payload())

        assert rule.id is not None
        assert await routing_service.rule_repository.count_for_url(test_db, url_id) == 1
        assert await smart_routing_flag(test_db, url_id) is True

    @pytest.mark.asyncio
    async def test_create_invalidates_cache_and_emits_event(
        self, test_db, routing_service, mock_redis, event_emitter, recorded_events
    ):
        url = await create_test_url(test_db, user_id=OWNER, slug="promo")
        mock_redis.data[routing_cache_key(url.id)] = "[]"
        mock_redis.data[url_slug_cache_key("promo")] = "{}"

        rule = await routing_service.create(test_db, url.id, OWNER, UserRole.USER, rule_payload())
        await event_emitter.drain()

        assert routing_cache_key(url.id) not in mock_redis.data
        assert url_slug_cache_key("promo") not in mock_redis.data
        assert recorded_events == [(RULE_CREATED, {
            "rule_id": rule.id,
            "url_id": url.id,
            "name": "US visitors",
            "target_url": "https://example.com/us",
            "priority": 0,
            "user_id": OWNER,
        })]

    @pytest.mark.asyncio
    async def test_find_all_with_stats(self, test_db, routing_service):
        url = await create_test_url(test_db, user_id=OWNER)
        high = await create_test_rule(test_db, url.id, name="high", priority=10, match_count=1)
        low = await create_test_rule(test_db, url.id, name="low", priority=1, match_count=2)

        result = await routing_service.find_all(test_db, url.id, OWNER, UserRole.USER)

        assert [rule.id for rule in result.rules] == [high.id, low.id]
        assert result.total_matches == 3
        assert [(s.rule_id, s.match_percentage) for s in result.stats] == [(high.id, 33.3), (low.id, 66.7)]

    @pytest.mark.asyncio
    async def test_find_all_without_matches(self, test_db, routing_service):
        url = await create_test_url(test_db, user_id=OWNER)
        await create_test_rule(test_db, url.id)

        result = await routing_service.find_all(test_db, url.id, OWNER, UserRole.USER)

        assert result.total_matches == 0
        assert result.stats[0].match_percentage == 0

    @pytest.mark.asyncio
    async def test_find_one_checks_rule_belongs_to_url(self, test_db, routing_service):
        url = await create_test_url(test_db, user_id=OWNER)
        other = await create_test_url(test_db, user_id=OWNER)
        rule = await create_test_rule(test_db, other.id)

        with pytest.raises(RoutingRuleNotFoundError):
            await routing_service.find_one(test_db, url.id, rule.id, OWNER, UserRole.USER)

    @pytest.mark.asyncio
    async def test_update_changes_only_given_fields(
        self, test_db, routing_service, event_emitter, recorded_events
    ):
        url = await create_test_url(test_db, user_id=OWNER)
        created = await routing_service.create(test_db, url.id, OWNER, UserRole.USER, rule_payload(priority=5))

        updated = await routing_service.update(
            test_db, url.id, created.id, OWNER, UserRole.USER,
            RoutingRuleUpdate(name="Renamed", is_active=False),
        )
        await event_emitter.drain()

        assert updated.name == "Renamed"
        assert updated.is_active is False
        assert updated.priority == 5
        assert updated.target_url == "https://example.com/us"
        assert updated.updated_at >= created.updated_at
        assert [name for name, _ in recorded_events] == [RULE_CREATED, RULE_UPDATED]
        assert await audit_actions(test_db) == [
            AuditAction.ROUTING_RULE_CREATED.value,
            AuditAction.ROUTING_RULE_UPDATED.value,
        ]

    @pytest.mark.asyncio
    async def test_update_replaces_conditions(self, test_db, routing_service):
        url = await create_test_url(test_db, user_id=OWNER)
        created = await routing_service.create(test_db, url.id, OWNER, UserRole.USER, rule_payload())

        updated = await routing_service.update(
            test_db, url.id, created.id, OWNER, UserRole.USER,
            RoutingRuleUpdate(conditions=make_conditions(country_is("CA"), operator="OR")),
        )

        assert updated.conditions == {
            "operator": "OR",
            "conditions": [{"type": "country", "operator": "equals", "value": "CA"}],
        }

    @pytest.mark.asyncio
    async def test_update_missing_rule(self, test_db, routing_service):
        url = await create_test_url(test_db, user_id=OWNER)

        with pytest.raises(RoutingRuleNotFoundError):
            await routing_service.update(test_db, url.id, 404, OWNER, UserRole.USER, RoutingRuleUpdate(name="x"))

    @pytest.mark.asyncio
    async def test_delete_last_rule_disables_smart_routing(
        self, test_db, routing_service, event_emitter, recorded_events
    ):
        url = await create_test_url(test_db, user_id=OWNER)
        first = await routing_service.create(test_db, url.id, OWNER, UserRole.USER, rule_payload(name="a"))
        second = await routing_service.create(test_db, url.id, OWNER, UserRole.USER, rule_payload(name="b"))

        await routing_service.delete(test_db, url.id, first.id, OWNER, UserRole.USER)
        assert await smart_routing_flag(test_db, url.id) is True

        await routing_service.delete(test_db, url.id, second.id, OWNER, UserRole.USER)
        await event_emitter.drain()

        assert await smart_routing_flag(test_db, url.id) is False
        assert [name for name, _ in recorded_events].count(RULE_DELETED) == 2
        assert recorded_events[-1][1]["rule_id"] == second.id

    @pytest.mark.asyncio
    async def test_delete_missing_rule(self, test_db, routing_service):
        url = await create_test_url(test_db, user_id=OWNER)

        with pytest.raises(RoutingRuleNotFoundError):
            await routing_service.delete(test_db, url.id, 404, OWNER, UserRole.USER)

    @pytest.mark.asyncio
    async def test_unvalidated_private_destination_rejected(self, test_db, routing_service):
        url = await create_test_url(test_db, user_id=OWNER)
        payload = RoutingRuleCreate.model_construct(
            name="internal",
            target_url="http://10.0.0.5/admin",
            priority=0,
            is_active=True,
            conditions=make_conditions(country_is("US")),
        )

        with pytest.raises(UnsafeDestinationError):
            await routing_service.create(test_db, url.id, OWNER, UserRole.USER, payload)

        assert await smart_routing_flag(test_db, url.id) is False


@pytest.mark.service
class TestTemplatesAndSettings:

    def test_get_templates(self, routing_service):
        templates = {template.key: template for template in routing_service.get_templates()}

        assert set(templates) == {
            "APP_DOWNLOAD_IOS", "APP_DOWNLOAD_ANDROID", "MULTILANG_TW", "MULTILANG_CN",
            "BUSINESS_HOURS", "MOBILE_ONLY", "DESKTOP_ONLY",
        }
        assert templates["APP_DOWNLOAD_IOS"].name == "iOS App Download"

    @pytest.mark.asyncio
    async def test_create_from_template(self, test_db, routing_service):
        url = await create_test_url(test_db, user_id=OWNER)

        rule = await routing_service.create_from_template(
            test_db, url.id, OWNER, UserRole.USER,
            CreateFromTemplate(template_key="BUSINESS_HOURS", target_url="https://example.com/open", priority=3),
        )

        assert rule.name == "Business Hours"
        assert rule.priority == 3
        assert rule.conditions == {
            "operator": "AND",
            "conditions": [
                {"type": "time", "operator": "between", "value": {"start": "09:00", "end": "18:00"}},
                {"type": "day_of_week", "operator": "in", "value": ["1", "2", "3", "4", "5"]},
            ],
        }

    @pytest.mark.asyncio
    async def test_create_from_template_custom_name(self, test_db, routing_service):
        url = await create_test_url(test_db, user_id=OWNER)

        rule = await routing_service.create_from_template(
            test_db, url.id, OWNER, UserRole.USER,
            CreateFromTemplate(template_key="MOBILE_ONLY", target_url="https://m.example.com", name="Phones"),
        )

        assert rule.name == "Phones"
        assert rule.priority == 0

    @pytest.mark.asyncio
    async def test_unknown_template(self, test_db, routing_service):
        url = await create_test_url(test_db, user_id=OWNER)

        with pytest.raises(RoutingTemplateNotFoundError):
            await routing_service.create_from_template(
                test_db, url.id, OWNER, UserRole.USER,
                CreateFromTemplate(template_key="NOPE", target_url="https://example.com"),
            )

    @pytest.mark.asyncio
    async def test_update_settings(self, test_db, routing_service, mock_redis):
        url = await create_test_url(test_db, user_id=OWNER, slug="settings")
        mock_redis.data[url_slug_cache_key("settings")] = "{}"

        result = await routing_service.update_settings(
            test_db, url.id, OWNER, UserRole.USER,
            SmartRoutingSettingsUpdate(is_smart_routing=True, default_url="https://example.com/fallback"),
        )

        assert result.is_smart_routing is True
        assert result.default_url == "https://example.com/fallback"
        assert url_slug_cache_key("settings") not in mock_redis.data
        assert await audit_actions(test_db) == [AuditAction.URL_UPDATED.value]

    @pytest.mark.asyncio
    async def test_update_settings_clears_default_url(self, test_db, routing_service):
        url = await create_test_url(test_db, user_id=OWNER, is_smart_routing=True, default_url="https://example.com/old")

        result = await routing_service.update_settings(
            test_db, url.id, OWNER, UserRole.USER, SmartRoutingSettingsUpdate(default_url=None),
        )

        assert result.default_url is None
        assert result.is_smart_routing is True


@pytest.mark.service
class TestEvaluateRules:
    """Rule selection at redirect time."""

    @pytest.mark.asyncio
    async def test_highest_priority_match_wins(self, test_db, routing_service):
        url = await create_test_url(test_db, is_smart_routing=True)
        await create_test_rule(test_db, url.id, name="low", priority=1, target_url="https://example.com/low")
        await create_test_rule(test_db, url.id, name="high", priority=9, target_url="https://example.com/high")

        result = await routing_service.evaluate_rules(test_db, url.id, VisitorContext(country="US"))

        assert result.rule.name == "high"
        assert result.target_url == "https://example.com/high"

    @pytest.mark.asyncio
    async def test_tie_goes_to_oldest_rule(self, test_db, routing_service):
        url = await create_test_url(test_db, is_smart_routing=True)
        base = datetime(2024, 1, 1)
        await create_test_rule(test_db, url.id, name="newer", priority=5, created_at=base + timedelta(hours=1))
        await create_test_rule(test_db, url.id, name="older", priority=5, created_at=base)

        result = await routing_service.evaluate_rules(test_db, url.id, VisitorContext(country="US"))

        assert result.rule.name == "older"

    @pytest.mark.asyncio
    async def test_no_match(self, test_db, routing_service):
        url = await create_test_url(test_db, is_smart_routing=True)
        await create_test_rule(test_db, url.id)

        result = await routing_service.evaluate_rules(test_db, url.id, VisitorContext(country="FR"))

        assert result.rule is None
        assert result.target_url is None

    @pytest.mark.asyncio
    async def test_inactive_rules_ignored(self, test_db, routing_service):
        url = await create_test_url(test_db, is_smart_routing=True)
        await create_test_rule(test_db, url.id, name="off", priority=9, is_active=False)
        await create_test_rule(test_db, url.id, name="on", priority=1)

        result = await routing_service.evaluate_rules(test_db, url.id, VisitorContext(country="US"))

        assert result.rule.name == "on"

    @pytest.mark.asyncio
    async def test_unsafe_destination_skipped(self, test_db, routing_service):
        url = await create_test_url(test_db, is_smart_routing=True)
        await create_test_rule(test_db, url.id, name="internal", priority=9, target_url="http://169.254.169.254/")
        await create_test_rule(test_db, url.id, name="public", priority=1, target_url="https://example.com/ok")

        result = await routing_service.evaluate_rules(test_db, url.id, VisitorContext(country="US"))

        assert result.rule.name == "public"

    @pytest.mark.asyncio
    async def test_time_rule_in_condition_timezone(self, test_db, routing_service):
        url = await create_test_url(test_db, is_smart_routing=True)
        await create_test_rule(test_db, url.id, name="taipei office", conditions=make_conditions(
            {"type": "time", "operator": "between", "value": {"start": "09:00", "end": "18:00", "timezone": "Asia/Taipei"}},
        ))
        # 02:00 UTC is 10:00 in Taipei
        visitor = VisitorContext(current_time=datetime(2024, 1, 10, 2, 0, tzinfo=timezone.utc))

        result = await routing_service.evaluate_rules(test_db, url.id, visitor)

        assert result.rule.name == "taipei office"

    @pytest.mark.asyncio
    async def test_rule_set_is_cached(self, test_db, routing_service, mock_redis):
        url = await create_test_url(test_db, is_smart_routing=True)
        rule = await create_test_rule(test_db, url.id)

        await routing_service.evaluate_rules(test_db, url.id, VisitorContext(country="US"))

        cached = json.loads(mock_redis.data[routing_cache_key(url.id)])
        assert [entry["id"] for entry in cached] == [rule.id]
        assert mock_redis.expiry[routing_cache_key(url.id)] == routing_service.cache_ttl

    @pytest.mark.asyncio
    async def test_cached_rule_set_is_used(self, test_db, routing_service, mock_redis):
        url = await create_test_url(test_db, is_smart_routing=True)
        mock_redis.data[routing_cache_key(url.id)] = json.dumps([{
            "id": 77,
            "url_id": url.id,
            "name": "from cache",
            "target_url": "https://example.com/cached",
            "priority": 0,
            "is_active": True,
            "conditions": make_conditions(country_is("US")),
        }])

        result = await routing_service.evaluate_rules(test_db, url.id, VisitorContext(country="US"))

        assert result.rule.id == 77
        assert result.target_url == "https://example.com/cached"

    @pytest.mark.asyncio
    async def test_malformed_cache_entry_falls_back_to_database(self, test_db, routing_service, mock_redis):
        url = await create_test_url(test_db, is_smart_routing=True)
        await create_test_rule(test_db, url.id, name="db rule")
        mock_redis.data[routing_cache_key(url.id)] = json.dumps({"not": "a list"})

        result = await routing_service.evaluate_rules(test_db, url.id, VisitorContext(country="US"))

        assert result.rule.name == "db rule"

    @pytest.mark.asyncio
    async def test_empty_rule_set_not_cached(self, test_db, routing_service, mock_redis):
        url = await create_test_url(test_db, is_smart_routing=True)

        await routing_service.evaluate_rules(test_db, url.id, VisitorContext(country="US"))

        assert routing_cache_key(url.id) not in mock_redis.data

    def test_increment_match_count_is_buffered(self, routing_service, match_counter):
        routing_service.increment_match_count(5)
        routing_service.increment_match_count(5)

        assert dict(match_counter.pending) == {5: 2}
