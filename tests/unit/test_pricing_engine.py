"""
Unit tests for the pure quote pipeline over a catalog snapshot.
"""
from decimal import Decimal

import pytest

from ridefare.services.catalog import CatalogSnapshot
from ridefare.services.pricing import price_snapshot

MINUTE_MS = 60_000
MONDAY_10AM_MS = 1717408800000


@pytest.fixture
def s1_snapshot(make_rule, s1_rules):
    return CatalogSnapshot.build([make_rule(**r) for r in s1_rules])


class TestPriceSnapshot:
    def test_base_surge_and_discount(self, s1_snapshot, make_context):
        result = price_snapshot(s1_snapshot, make_context(platform_fee=Decimal("2.00")))
        b = result.breakdown
        assert (b.original_amount, b.surged_amount, b.total_discount) == (
            Decimal("23.00"), Decimal("34.50"), Decimal("6.90"),
        )
        assert b.payment_amount == Decimal("29.60")
        assert result.plan.rule_ids == ["base-std", "surge-peak", "disc-20"]

    def test_pricing_is_deterministic(self, s1_snapshot, make_context):
        ctx = make_context()
        first = price_snapshot(s1_snapshot, ctx).breakdown
        second = price_snapshot(s1_snapshot, ctx).breakdown
        assert first == second

    def test_code_supersedes_auto_discount(self, make_rule, make_context):
        snapshot = CatalogSnapshot.build([
            make_rule("base", base_rate=Decimal("50")),
            make_rule("AUTO10", category="discount", rule_type="percentage",
                      discount_percent=Decimal("10"), auto_apply=True, priority=1),
            make_rule("SAVE5", category="discount", rule_type="fixed_amount",
                      discount_amount=Decimal("5"), requires_code=True, promo_code="SAVE5", priority=50),
        ])
        result = price_snapshot(snapshot, make_context(promo_codes=["save5"]))
        assert result.breakdown.applied_rule_ids == ["base", "SAVE5"]
        assert result.breakdown.total_discount == Decimal("5.00")
        assert {d.rule_id: d.reason for d in result.combination.dropped} == {"AUTO10": "SupersededByCode:SAVE5"}

    def test_code_rule_skipped_without_code(self, make_rule, make_context):
        snapshot = CatalogSnapshot.build([
            make_rule("base", base_rate=Decimal("50")),
            make_rule("SAVE5", category="discount", rule_type="fixed_amount",
                      discount_amount=Decimal("5"), requires_code=True, promo_code="SAVE5"),
        ])
        result = price_snapshot(snapshot, make_context())
        assert result.breakdown.total_discount == Decimal("0.00")
        assert [r.reason for r in result.eligibility.rejected] == ["CodeRequired"]

    def test_unmatched_code_is_a_warning(self, s1_snapshot, make_context):
        result = price_snapshot(s1_snapshot, make_context(promo_codes=["GHOST"]))
        assert result.promo.unmatched == ["GHOST"]
        assert "UnmatchedCode:GHOST" in result.breakdown.warnings

    @pytest.mark.parametrize(
        "offset_min, applies",
        [(-61, False), (-60, True), (120, True), (121, False)],
    )
    def test_time_slot_surge(self, make_rule, make_context, offset_min, applies):
        snapshot = CatalogSnapshot.build([
            make_rule("base", base_rate=Decimal("10")),
            make_rule("morning", category="surge_pricing", rule_type="multiplier",
                      surge_multiplier=Decimal("2"), time_slots=[{"start_hour": 9, "end_hour": 12}]),
        ])
        ctx = make_context(now_ms=MONDAY_10AM_MS + offset_min * MINUTE_MS)
        breakdown = price_snapshot(snapshot, ctx).breakdown
        assert ("morning" in breakdown.applied_rule_ids) is applies
        assert breakdown.surged_amount == (Decimal("20.00") if applies else Decimal("10.00"))

    def test_min_order_amount_uses_estimated_base(self, make_rule, make_context):
        snapshot = CatalogSnapshot.build([
            make_rule("base", base_rate=Decimal("20")),
            make_rule("big-ride", category="discount", rule_type="fixed_amount",
                      discount_amount=Decimal("3"), min_order_amount=Decimal("25")),
        ])
        result = price_snapshot(snapshot, make_context())
        assert result.context.original_amount == Decimal("20")
        assert [(r.rule_id, r.reason) for r in result.eligibility.rejected] == [("big-ride", "MinOrderAmount")]

    def test_excluded_rule_is_not_considered(self, s1_snapshot, make_context):
        result = price_snapshot(s1_snapshot, make_context(), exclude_rule_ids=["disc-20"])
        assert result.breakdown.applied_rule_ids == ["base-std", "surge-peak"]
        assert result.excluded_rule_ids == {"disc-20"}

    def test_per_user_cap_from_usage_map(self, make_rule, make_context):
        snapshot = CatalogSnapshot.build([
            make_rule("base", base_rate=Decimal("10")),
            make_rule("first-ride", category="discount", rule_type="fixed_amount",
                      discount_amount=Decimal("2"), max_usage_per_user=1),
        ])
        fresh = price_snapshot(snapshot, make_context())
        used = price_snapshot(snapshot, make_context(), user_usage={"first-ride": 1})
        assert fresh.breakdown.total_discount == Decimal("2.00")
        assert used.breakdown.total_discount == Decimal("0.00")

    def test_empty_catalog_prices_zero(self, make_context):
        breakdown = price_snapshot(CatalogSnapshot.build([]), make_context()).breakdown
        assert breakdown.payment_amount == Decimal("0.00")
        assert "NoBasePricing" in breakdown.warnings
