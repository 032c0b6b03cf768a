"""
Unit tests for fare calculation: base fares, surges, discounts and rounding.
"""
from decimal import Decimal

import pytest

from ridefare.schemas.rules import TierBand
from ridefare.services.calculator import calculate_fare, evaluate_base, q2, tiered_sum
from ridefare.services.combiner import ApplicationPlan


@pytest.fixture
def s1_plan(make_rule):
    base = make_rule(
        "base-std",
        base_rate=Decimal("3.00"),
        per_km_rate=Decimal("1.50"),
        per_minute_rate=Decimal("0.25"),
        minimum_fare=Decimal("5.00"),
        maximum_fare=Decimal("200.00"),
    )
    surge = make_rule(
        "surge-peak", category="surge_pricing", rule_type="multiplier", surge_multiplier=Decimal("1.5")
    )
    discount = make_rule(
        "disc-20",
        category="discount",
        rule_type="percentage",
        discount_percent=Decimal("20"),
        max_discount=Decimal("10"),
    )
    return ApplicationPlan(base=base, surges=(surge,), discounts=(discount,))


class TestBaseFare:
    def test_distance_and_time_components(self, make_rule, make_context):
        rule = make_rule(
            "b", base_rate=Decimal("3"), per_km_rate=Decimal("1.5"), per_minute_rate=Decimal("0.25")
        )
        fare = evaluate_base(rule, make_context())
        assert fare.base == Decimal("3")
        assert fare.distance == Decimal("15")
        assert fare.time == Decimal("5")
        assert fare.total == Decimal("23")

    def test_minimum_fare_folds_into_base(self, make_rule, make_context):
        rule = make_rule("b", base_rate=Decimal("3"), minimum_fare=Decimal("5"))
        fare = evaluate_base(rule, make_context(estimated_distance_km=Decimal("0"), estimated_duration_min=Decimal("0")))
        assert fare.total == Decimal("5")
        assert fare.base == Decimal("5")

    def test_maximum_fare_clamps(self, make_rule, make_context):
        rule = make_rule("b", per_km_rate=Decimal("10"), maximum_fare=Decimal("50"))
        fare = evaluate_base(rule, make_context())
        assert fare.total == Decimal("50")
        # components still add up to the clamped amount
        assert fare.base + fare.distance + fare.time == Decimal("50")

    def test_fixed_rate_ignores_distance_and_time(self, make_rule, make_context):
        rule = make_rule("b", pricing_model="fixed_rate", base_rate=Decimal("12"), per_km_rate=Decimal("9"))
        assert evaluate_base(rule, make_context()).total == Decimal("12")

    def test_tiered_distance(self, make_rule, make_context):
        rule = make_rule(
            "b",
            rule_type="tiered",
            base_rate=Decimal("1"),
            tiered_rules=[
                {"lower": "0", "upper": "5", "rate": "2.00"},
                {"lower": "5", "rate": "1.00"},
            ],
        )
        fare = evaluate_base(rule, make_context(estimated_distance_km=Decimal("8")))
        # 1 + 5 * 2 + 3 * 1
        assert fare.total == Decimal("14")

    def test_tiered_time_based_uses_duration(self, make_rule, make_context):
        rule = make_rule(
            "b",
            rule_type="tiered",
            pricing_model="time_based",
            tiered_rules=[{"lower": "0", "rate": "0.50"}],
        )
        fare = evaluate_base(rule, make_context(estimated_duration_min=Decimal("30")))
        assert fare.time == Decimal("15")
        assert fare.distance == Decimal("0")

    def test_flat_amount_band_counts_once_entered(self):
        bands = (
            TierBand(lower=Decimal("0"), upper=Decimal("10"), rate=Decimal("1")),
            TierBand(lower=Decimal("10"), amount=Decimal("7")),
        )
        assert tiered_sum(bands, Decimal("10")) == Decimal("10")
        assert tiered_sum(bands, Decimal("12")) == Decimal("17")

    def test_no_base_rule_is_zero(self, make_context):
        assert evaluate_base(None, make_context()).total == Decimal("0")


class TestCalculateFare:
    def test_base_surge_and_percentage_discount(self, s1_plan, make_context):
        breakdown = calculate_fare(s1_plan, make_context(platform_fee=Decimal("2.00")))
        assert breakdown.original_amount == Decimal("23.00")
        assert breakdown.surged_amount == Decimal("34.50")
        assert breakdown.total_discount == Decimal("6.90")
        assert breakdown.discounted_amount == Decimal("27.60")
        assert breakdown.payment_amount == Decimal("29.60")
        assert breakdown.surge_fare == Decimal("11.50")
        assert breakdown.applied_rule_ids == ["base-std", "surge-peak", "disc-20"]

    def test_percentage_capped_by_max_discount(self, make_rule, make_context):
        base = make_rule("b", base_rate=Decimal("100"))
        disc = make_rule(
            "d", category="discount", rule_type="percentage",
            discount_percent=Decimal("50"), max_discount=Decimal("10"),
        )
        breakdown = calculate_fare(ApplicationPlan(base=base, discounts=(disc,)), make_context())
        assert breakdown.total_discount == Decimal("10.00")
        assert breakdown.discounted_amount == Decimal("90.00")

    def test_apply_on_original_uses_unsurged_amount(self, make_rule, make_context):
        base = make_rule("b", base_rate=Decimal("20"))
        surge = make_rule("s", category="surge_pricing", rule_type="multiplier", surge_multiplier=Decimal("2"))
        disc = make_rule(
            "d", category="discount", rule_type="percentage",
            discount_percent=Decimal("10"), apply_on_original=True,
        )
        breakdown = calculate_fare(
            ApplicationPlan(base=base, surges=(surge,), discounts=(disc,)), make_context()
        )
        assert breakdown.surged_amount == Decimal("40.00")
        assert breakdown.total_discount == Decimal("2.00")

    def test_fixed_discount_never_goes_negative(self, make_rule, make_context):
        base = make_rule("b", base_rate=Decimal("8"))
        disc = make_rule("d", category="discount", rule_type="fixed_amount", discount_amount=Decimal("50"))
        breakdown = calculate_fare(
            ApplicationPlan(base=base, discounts=(disc,)), make_context(platform_fee=Decimal("1.50"))
        )
        assert breakdown.total_discount == Decimal("8.00")
        assert breakdown.discounted_amount == Decimal("0.00")
        assert breakdown.payment_amount == Decimal("1.50")

    def test_discounts_apply_to_running_amount(self, make_rule, make_context):
        base = make_rule("b", base_rate=Decimal("10"))
        first = make_rule("d1", category="discount", rule_type="fixed_amount", discount_amount=Decimal("7"), priority=1)
        second = make_rule("d2", category="discount", rule_type="fixed_amount", discount_amount=Decimal("7"), priority=2)
        breakdown = calculate_fare(ApplicationPlan(base=base, discounts=(first, second)), make_context())
        amounts = [a.amount for a in breakdown.applied_rules if a.rule_id.startswith("d")]
        assert amounts == [Decimal("7.00"), Decimal("3.00")]
        assert breakdown.discounted_amount == Decimal("0.00")

    def test_tiered_discount_picks_band_of_surged_amount(self, make_rule, make_context):
        base = make_rule("b", base_rate=Decimal("30"))
        disc = make_rule(
            "d",
            category="discount",
            rule_type="tiered",
            tiered_rules=[
                {"lower": "0", "upper": "20", "amount": "2"},
                {"lower": "20", "rate": "10"},
            ],
        )
        breakdown = calculate_fare(ApplicationPlan(base=base, discounts=(disc,)), make_context())
        assert breakdown.total_discount == Decimal("3.00")

    def test_tiered_discount_without_band_warns(self, make_rule, make_context):
        base = make_rule("b", base_rate=Decimal("5"))
        disc = make_rule(
            "d", category="discount", rule_type="tiered",
            tiered_rules=[{"lower": "10", "upper": "20", "amount": "2"}],
        )
        breakdown = calculate_fare(ApplicationPlan(base=base, discounts=(disc,)), make_context())
        assert "NoMatchingTier:d" in breakdown.warnings
        assert breakdown.total_discount == Decimal("0.00")

    def test_unsupported_discount_type_warns(self, make_rule, make_context):
        base = make_rule("b", base_rate=Decimal("5"))
        disc = make_rule("d", category="promotion", rule_type="custom")
        breakdown = calculate_fare(ApplicationPlan(base=base, discounts=(disc,)), make_context())
        assert "UnsupportedRuleType:d" in breakdown.warnings
        assert "d" not in breakdown.applied_rule_ids

    def test_surge_respects_maximum_fare(self, make_rule, make_context):
        base = make_rule("b", base_rate=Decimal("23"))
        surge = make_rule(
            "s", category="surge_pricing", rule_type="multiplier",
            surge_multiplier=Decimal("2"), maximum_fare=Decimal("30"),
        )
        breakdown = calculate_fare(ApplicationPlan(base=base, surges=(surge,)), make_context())
        assert breakdown.surged_amount == Decimal("30.00")

    def test_factors_multiply_into_surge(self, make_rule, make_context):
        base = make_rule("b", base_rate=Decimal("10"))
        surge = make_rule(
            "s", category="surge_pricing", rule_type="multiplier",
            surge_multiplier=Decimal("1.5"), weather_factor=Decimal("2"),
        )
        breakdown = calculate_fare(ApplicationPlan(base=base, surges=(surge,)), make_context())
        assert breakdown.surged_amount == Decimal("30.00")

    def test_half_even_reporting(self):
        assert q2(Decimal("2.345")) == Decimal("2.34")
        assert q2(Decimal("2.355")) == Decimal("2.36")

    def test_breakdown_invariants(self, s1_plan, make_context):
        b = calculate_fare(s1_plan, make_context(platform_fee=Decimal("0.75")))
        assert b.discounted_amount == b.surged_amount - b.total_discount
        assert b.payment_amount == max(Decimal("0"), b.discounted_amount + b.platform_fee)
        assert b.base_fare + b.distance_fare + b.time_fare == b.original_amount
