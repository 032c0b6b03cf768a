"""
Integration tests for price rule administration.
"""
from decimal import Decimal

import pytest

from ridefare.errors import NotFoundError, ValidationError
from ridefare.schemas.rules import RuleCreate, RulePatch, RuleStatus
from ridefare.services.catalog import RuleCatalog
from ridefare.services.rules import RuleService


@pytest.fixture
def catalog(session_factory, cache):
    return RuleCatalog(session_factory, cache, ttl_seconds=3600)


@pytest.fixture
def rules(catalog, session_factory):
    return RuleService(catalog, session_factory)


def discount_payload(**overrides):
    data = {
        "rule_id": "SUMMER10",
        "rule_name": "Summer sale",
        "category": "discount",
        "rule_type": "percentage",
        "discount_percent": "10",
        "max_discount": "5",
        "time_slots": [{"start_hour": 7, "end_hour": 10}],
    }
    data.update(overrides)
    return RuleCreate.model_validate(data)


class TestCreate:
    async def test_create_starts_as_draft(self, rules):
        rule = await rules.create_rule(discount_payload(), created_by="admin-1")
        assert rule.status == RuleStatus.draft
        assert rule.version == 1
        assert rule.discount_percent == Decimal("10")
        assert rule.time_slots[0].start_hour == 7

    async def test_generated_rule_id(self, rules):
        rule = await rules.create_rule(discount_payload(rule_id=None))
        assert rule.rule_id.startswith("rule_")

    async def test_duplicate_rule_id(self, rules):
        await rules.create_rule(discount_payload())
        with pytest.raises(ValidationError) as exc:
            await rules.create_rule(discount_payload())
        assert exc.value.code == "DUPLICATE_RULE"

    async def test_invariant_violation_rejected(self, rules):
        with pytest.raises(ValidationError) as exc:
            await rules.create_rule(discount_payload(requires_code=True))
        assert exc.value.code == "INVALID_RULE"
        assert "requires_code set without promo_code" in exc.value.details["errors"]

    async def test_inverted_time_slot_rejected_on_write(self, rules):
        with pytest.raises(ValidationError):
            await rules.create_rule(discount_payload(time_slots=[{"start_hour": 22, "end_hour": 2}]))

    async def test_overlapping_tiers_rejected(self, rules):
        payload = discount_payload(
            rule_type="tiered",
            tiered_rules=[{"lower": "0", "upper": "10", "rate": "5"}, {"lower": "5", "rate": "10"}],
        )
        with pytest.raises(ValidationError):
            await rules.create_rule(payload)


class TestLifecycle:
    async def test_approve_makes_rule_visible_to_catalog(self, rules, catalog):
        await rules.create_rule(discount_payload())
        assert (await catalog.snapshot()).rules["SUMMER10"].status == RuleStatus.draft
        approved = await rules.approve("SUMMER10", "admin-1", "ok for June")
        assert approved.status == RuleStatus.active
        assert approved.approved_by == "admin-1"
        assert approved.version == 2
        assert (await catalog.snapshot()).rules["SUMMER10"].status == RuleStatus.active

    async def test_pause_resume(self, rules):
        await rules.create_rule(discount_payload())
        await rules.approve("SUMMER10", "admin-1")
        assert (await rules.pause("SUMMER10")).status == RuleStatus.paused
        assert (await rules.resume("SUMMER10")).status == RuleStatus.active

    async def test_resume_requires_paused(self, rules):
        await rules.create_rule(discount_payload())
        with pytest.raises(ValidationError):
            await rules.resume("SUMMER10")

    async def test_expired_rule_cannot_be_approved(self, rules):
        await rules.create_rule(discount_payload())
        await rules.approve("SUMMER10", "admin-1")
        await rules.expire("SUMMER10")
        with pytest.raises(ValidationError) as exc:
            await rules.approve("SUMMER10", "admin-1")
        assert exc.value.code == "INVALID_TRANSITION"

    async def test_delete_hides_rule(self, rules):
        await rules.create_rule(discount_payload())
        await rules.delete("SUMMER10")
        with pytest.raises(NotFoundError):
            await rules.get_rule("SUMMER10")
        assert await rules.list_rules() == []


class TestPatch:
    async def test_patch_bumps_version_and_invalidates(self, rules, catalog):
        await rules.create_rule(discount_payload())
        await catalog.snapshot()
        patched = await rules.patch_rule("SUMMER10", RulePatch(priority=5, tags=["summer"]))
        assert (patched.priority, patched.tags, patched.version) == (5, ("summer",), 2)
        assert patched.discount_percent == Decimal("10")
        assert (await catalog.snapshot()).rules["SUMMER10"].priority == 5

    async def test_empty_patch_is_a_read(self, rules):
        await rules.create_rule(discount_payload())
        assert (await rules.patch_rule("SUMMER10", RulePatch())).version == 1

    async def test_patch_that_breaks_invariant_is_rejected(self, rules):
        await rules.create_rule(discount_payload(minimum_fare="2"))
        with pytest.raises(ValidationError):
            await rules.patch_rule("SUMMER10", RulePatch(maximum_fare=Decimal("1")))
        assert (await rules.get_rule("SUMMER10")).maximum_fare is None


class TestQueries:
    async def test_list_filters(self, rules):
        await rules.create_rule(discount_payload())
        await rules.create_rule(discount_payload(rule_id="BASE", category="base_pricing", rule_type="fixed_amount"))
        await rules.approve("BASE", "admin-1")
        assert [r.rule_id for r in await rules.list_rules(status=RuleStatus.active)] == ["BASE"]
        assert [r.rule_id for r in await rules.list_rules(category="discount")] == ["SUMMER10"]
        assert len(await rules.list_rules(limit=1)) == 1

    async def test_expire_due(self, rules, seed_rules):
        await seed_rules(
            {"rule_id": "ended", "ended_at": 1_000},
            {"rule_id": "used-up", "max_usage_total": 3, "usage_count": 3},
            {"rule_id": "fine", "ended_at": 10_000_000},
        )
        assert await rules.expire_due(at_ms=5_000) == 2
        assert (await rules.get_rule("ended")).status == RuleStatus.expired
        assert (await rules.get_rule("used-up")).status == RuleStatus.expired
        assert (await rules.get_rule("fine")).status == RuleStatus.active
