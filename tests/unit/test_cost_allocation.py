"""
Unit Tests - Cost Allocation
"""
from datetime import date

import pytest

from profitlens.ingestion.schemas import Order, OrderLineItem
from profitlens.transformation.cost_allocation import CostAllocationEngine, prorate_fixed_cost
from profitlens.utils.dates import DateRange, date_to_ms, parse_iso_date
from profitlens.utils.money import round_money

DAY = "2024-01-15"


def _at(day: str, hour: int = 12) -> int:
    return date_to_ms(parse_iso_date(day)) + hour * 3_600_000


def _order(order_id="o1", total=100.0, subtotal=None, discounts=0.0, day=DAY, hour=12, quantity=0):
    return Order(
        id=order_id,
        created_at=_at(day, hour),
        total_price=total,
        subtotal_price=total if subtotal is None else subtotal,
        total_discounts=discounts,
        total_quantity=quantity,
    )


def _item(order_id="o1", variant_id="v1", quantity=1, price=100.0, discount=0.0, item_id=None):
    return OrderLineItem(
        id=item_id or f"{order_id}-{variant_id}",
        order_id=order_id,
        variant_id=variant_id,
        quantity=quantity,
        unit_price=price,
        line_discount=discount,
    )


def _rule(rule_id, type_, calculation="fixed", value=0, **extra):
    return {"_id": rule_id, "type": type_, "calculation": calculation, "value": value, **extra}


class TestOrderAllocation:
    """Tests for single-order allocation"""

    def test_override_only_cogs_scenario(self):
        """Override COGS covers its revenue; the 5% product rule adds nothing"""
        engine = CostAllocationEngine(
            [_rule("r1", "product", "percentage", 5)],
            [{"_id": "c1", "variantId": "v1", "cogsPerUnit": 20}],
        )
        order = _order(total=100, subtotal=100, discounts=10)
        items = [_item(quantity=2, price=55, discount=10)]

        breakdown = engine.allocate_order(order, items)

        assert breakdown.costs.cogs == 40
        assert order.gross_sales - breakdown.costs.cogs == 70
        assert breakdown.profit == 60
        assert breakdown.profit_margin == pytest.approx(60)

    def test_uncovered_line_still_charged_by_rule(self):
        """Only covered revenue is excluded from the percentage fallback"""
        engine = CostAllocationEngine(
            [_rule("r1", "product", "percentage", 10)],
            [{"_id": "c1", "variantId": "v1", "cogsPerUnit": 5}],
        )
        order = _order(total=100)
        items = [
            _item(variant_id="v1", quantity=1, price=60),
            _item(variant_id="v2", quantity=1, price=40),
        ]

        breakdown = engine.allocate_order(order, items)

        assert breakdown.costs.cogs == pytest.approx(5 + 4)

    def test_payment_coverage_and_fixed_fee(self):
        """Override payment fees exclude covered revenue; the fixed fee is charged once"""
        engine = CostAllocationEngine(
            [_rule("r1", "payment", "percentage", 3, config={"fixedFee": 0.3})],
            [{"_id": "c1", "variantId": "v1", "paymentFeePercent": 2}],
        )
        order = _order(total=100)
        items = [
            _item(variant_id="v1", quantity=1, price=60),
            _item(variant_id="v2", quantity=1, price=40),
        ]

        breakdown = engine.allocate_order(order, items)

        assert breakdown.costs.transaction_fees == pytest.approx(1.2 + 1.2 + 0.3)

    def test_override_shipping_handling_and_fixed_per_item(self):
        """Per-unit override amounts are charged without coverage"""
        engine = CostAllocationEngine(
            [_rule("r1", "shipping", "percentage", 10)],
            [{
                "_id": "c1", "variantId": "v1", "shippingPerUnit": 2, "handlingPerUnit": 1,
                "paymentFixedPerItem": 0.25,
            }],
        )

        breakdown = engine.allocate_order(_order(total=100), [_item(quantity=4, price=25)])

        assert breakdown.costs.shipping == pytest.approx(8 + 10)
        assert breakdown.costs.handling == 4
        assert breakdown.costs.transaction_fees == 1

    def test_fixed_and_per_unit_rules(self):
        """per_order charges once, per_item and per_unit charge per unit"""
        engine = CostAllocationEngine([
            _rule("r1", "handling", "fixed", 2, frequency="per_order"),
            _rule("r2", "handling", "fixed", 0.5, frequency="per_item"),
            _rule("r3", "shipping", "per_unit", 1),
            _rule("r4", "operational", "fixed", 3),
        ])

        breakdown = engine.allocate_order(_order(total=90), [_item(quantity=3, price=30)])

        assert breakdown.costs.handling == pytest.approx(2 + 1.5)
        assert breakdown.costs.shipping == 3
        assert breakdown.costs.operational == 3

    def test_units_from_order_without_line_items(self):
        """Orders without line items fall back to their total quantity"""
        engine = CostAllocationEngine([_rule("r1", "shipping", "per_unit", 2)])

        breakdown = engine.allocate_order(_order(total=50, quantity=4))

        assert breakdown.units == 4
        assert breakdown.costs.shipping == 8

    def test_rules_of_same_type_stack(self):
        """Multiple rules of one type add up"""
        engine = CostAllocationEngine([
            _rule("r1", "marketing", "percentage", 5),
            _rule("r2", "marketing", "percentage", 3),
        ])

        breakdown = engine.allocate_order(_order(total=100))

        assert breakdown.costs.marketing == pytest.approx(8)

    def test_unknown_type_routed_to_other(self):
        """Unknown rule types land in the other bucket"""
        engine = CostAllocationEngine([_rule("r1", "rent", "percentage", 10)])

        breakdown = engine.allocate_order(_order(total=100))

        assert breakdown.costs.other == 10
        assert breakdown.costs.custom == 10

    def test_calendar_costs_not_charged_per_order(self):
        """Monthly fixed costs belong to dates, not orders"""
        engine = CostAllocationEngine([_rule("r1", "operational", "fixed", 310, frequency="monthly")])

        breakdown = engine.allocate_order(_order(total=100))

        assert breakdown.total_cost == 0

    def test_rule_outside_window_ignored(self):
        """A rule is active only when the order falls inside its window"""
        engine = CostAllocationEngine([
            _rule("r1", "tax", "percentage", 10, effectiveFrom=_at("2024-02-01", 0)),
            _rule("r2", "tax", "percentage", 5, effectiveTo=_at("2024-01-01", 0)),
            _rule("r3", "tax", "percentage", 1, isActive=False),
        ])

        breakdown = engine.allocate_order(_order(total=100))

        assert breakdown.costs.tax == 0

    def test_malformed_rule_ignored(self):
        """Malformed rules are inactive; valid ones still apply"""
        engine = CostAllocationEngine([
            _rule("bad", "tax", "percentage", -10),
            _rule("good", "tax", "percentage", 10),
        ])

        breakdown = engine.allocate_order(_order(total=100))

        assert breakdown.costs.tax == 10
        assert engine.validation.rejected_ids == ["bad"]

    def test_latest_override_wins(self):
        """The override with the latest effective_from in effect is used"""
        engine = CostAllocationEngine([], [
            {"_id": "c1", "variantId": "v1", "cogsPerUnit": 10, "effectiveFrom": _at("2024-01-01", 0)},
            {"_id": "c2", "variantId": "v1", "cogsPerUnit": 15, "effectiveFrom": _at("2024-01-10", 0)},
        ])

        early = engine.allocate_order(_order(day="2024-01-05"), [_item(quantity=1)])
        late = engine.allocate_order(_order(day="2024-01-20"), [_item(quantity=1)])

        assert early.costs.cogs == 10
        assert late.costs.cogs == 15

    def test_zero_revenue_margin_is_zero(self):
        """A zero-revenue order has a 0 margin, not NaN"""
        engine = CostAllocationEngine([_rule("r1", "handling", "fixed", 2)])

        breakdown = engine.allocate_order(_order(total=0))

        assert breakdown.profit == -2
        assert breakdown.profit_margin == 0


class TestDateAllocation:
    """Tests for date-level allocation"""

    def test_coverage_scoped_to_date(self):
        """An override on one order does not shield another order's revenue"""
        engine = CostAllocationEngine(
            [_rule("r1", "product", "percentage", 5)],
            [{"_id": "c1", "variantId": "v1", "cogsPerUnit": 20}],
        )
        orders = [_order("o1", total=100), _order("o2", total=50)]
        items = {
            "o1": [_item("o1", "v1", quantity=2, price=50)],
            "o2": [_item("o2", "v2", quantity=1, price=50)],
        }

        allocation = engine.allocate_date(DAY, orders, items)

        assert allocation.costs.cogs == pytest.approx(40 + 2.5)
        assert allocation.orders == 2
        assert allocation.units == 3
        assert allocation.revenue == 150
        assert allocation.covered_cogs_revenue == 100

    def test_monthly_cost_prorated_exactly(self):
        """310 per month over January is 10.00 per day, 310.00 in total"""
        engine = CostAllocationEngine([_rule("r1", "operational", "fixed", 310, frequency="monthly")])
        january = DateRange("2024-01-01", "2024-01-31")

        daily = [engine.allocate_date(day, []).costs.operational for day in january.days()]

        assert {round_money(amount) for amount in daily} == {10.0}
        assert round_money(sum(daily)) == 310.0

    def test_daily_cost_charged_each_date(self):
        """Daily costs are charged on every date, with or without orders"""
        engine = CostAllocationEngine([_rule("r1", "operational", "fixed", 7, frequency="daily")])

        allocation = engine.allocate_date(DAY, [])

        assert allocation.costs.operational == 7
        assert allocation.fixed_costs == {"r1": 7}

    def test_one_time_cost_on_earliest_activity_date(self):
        """A one-time cost lands once, on the first active date"""
        engine = CostAllocationEngine([
            _rule("r1", "marketing", "fixed", 500, frequency="one_time", effectiveFrom=_at("2024-01-01", 0)),
        ])
        activity = ["2024-01-03", "2024-01-05"]

        charged = {
            day: engine.allocate_date(day, [], activity_dates=activity).costs.marketing
            for day in ("2024-01-01", "2024-01-03", "2024-01-05")
        }

        assert charged == {"2024-01-01": 0, "2024-01-03": 500, "2024-01-05": 0}

    def test_one_time_cost_respects_window(self):
        """The first active date must fall inside the rule window"""
        engine = CostAllocationEngine([
            _rule("r1", "marketing", "fixed", 500, frequency="one_time", effectiveFrom=_at("2024-01-04", 0)),
        ])
        activity = ["2024-01-03", "2024-01-05"]

        assert engine.allocate_date("2024-01-03", [], activity_dates=activity).costs.marketing == 0
        assert engine.allocate_date("2024-01-05", [], activity_dates=activity).costs.marketing == 500

    def test_one_time_cost_anchored_at_creation_without_start(self):
        """Without effective_from the rule's creation time is its start"""
        engine = CostAllocationEngine([
            _rule("r1", "marketing", "fixed", 500, frequency="one_time", _creationTime=_at("2024-01-04", 8)),
        ])
        activity = ["2024-01-03", "2024-01-05"]

        assert engine.one_time_date(engine.rules[0], activity) == date(2024, 1, 5)
        assert engine.allocate_date("2024-01-05", [], activity_dates=activity).costs.marketing == 500

    def test_one_time_cost_without_any_start_never_charged(self):
        """A one-time rule with no start cannot be placed on a date"""
        engine = CostAllocationEngine([_rule("r1", "marketing", "fixed", 500, frequency="one_time")])
        activity = ["2024-01-03", "2024-01-05"]

        charged = [
            engine.allocate_date(day, [], activity_dates=activity).costs.marketing for day in activity
        ]

        assert charged == [0, 0]

    def test_store_offset_shifts_rule_days(self):
        """A rule starting late on a UTC day starts the next local day in UTC+5:30"""
        rule = _rule("r1", "operational", "fixed", 7, frequency="daily", effectiveFrom=_at(DAY, 20))
        utc = CostAllocationEngine([rule])
        local = CostAllocationEngine([rule], timezone_offset_minutes=330)

        assert utc.allocate_date(DAY, []).costs.operational == 7
        assert local.allocate_date(DAY, []).costs.operational == 0
        assert local.allocate_date("2024-01-16", []).costs.operational == 7

    def test_per_order_rules_follow_order_time(self):
        """A rule starting mid-day applies only to orders placed after it starts"""
        engine = CostAllocationEngine([
            _rule("r1", "handling", "fixed", 1, frequency="per_order", effectiveFrom=_at(DAY, 12)),
        ])
        orders = [_order("o1", hour=9), _order("o2", hour=15)]

        allocation = engine.allocate_date(DAY, orders)

        assert allocation.costs.handling == 1


class TestProration:
    """Tests for calendar pro-rating"""

    def test_leap_year_aware(self):
        """Yearly and February costs use actual calendar lengths"""
        assert prorate_fixed_cost(366, "yearly", date(2024, 6, 1)) == 1
        assert prorate_fixed_cost(365, "yearly", date(2023, 6, 1)) == 1
        assert prorate_fixed_cost(290, "monthly", date(2024, 2, 10)) == 10
        assert prorate_fixed_cost(280, "monthly", date(2023, 2, 10)) == 10

    def test_quarter_lengths(self):
        """Quarterly costs use the exact days of the quarter"""
        assert prorate_fixed_cost(91, "quarterly", date(2024, 2, 1)) == 1
        assert prorate_fixed_cost(92, "quarterly", date(2024, 11, 30)) == 1

    def test_weekly_and_order_frequencies(self):
        """Weekly is value/7; order-driven frequencies are not pro-rated"""
        assert prorate_fixed_cost(70, "weekly", date(2024, 1, 1)) == 10
        assert prorate_fixed_cost(70, "per_order", date(2024, 1, 1)) == 0
        assert prorate_fixed_cost(70, "one_time", date(2024, 1, 1)) == 0


class TestTimeBoundAllocation:
    """Tests for range-level time-bound allocation"""

    def test_linear_overlap(self):
        """Value is spread linearly over the overlap of window and range"""
        engine = CostAllocationEngine()
        rule = _rule(
            "r1", "marketing", "fixed", 310, frequency="one_time",
            effectiveFrom=_at("2024-01-01", 0), effectiveTo=_at("2024-02-01", 0),
        )

        amount = engine.allocate_time_bound(rule, DateRange("2024-01-01", "2024-01-10"))

        assert amount == pytest.approx(100)

    def test_no_overlap_is_zero(self):
        """A range outside the window gets nothing"""
        engine = CostAllocationEngine()
        rule = _rule(
            "r1", "marketing", "fixed", 310,
            effectiveFrom=_at("2024-01-01", 0), effectiveTo=_at("2024-02-01", 0),
        )

        assert engine.allocate_time_bound(rule, {"startDate": "2024-03-01", "endDate": "2024-03-31"}) == 0

    def test_open_window_sums_prorated_days(self):
        """Open-ended calendar rules sum their per-day amounts"""
        engine = CostAllocationEngine()
        rule = _rule("r1", "operational", "fixed", 310, frequency="monthly")

        amount = engine.allocate_time_bound(rule, DateRange("2024-01-01", "2024-01-10"))

        assert amount == pytest.approx(100)

    def test_open_one_time_charged_when_start_in_range(self):
        """An open one-time cost is charged in the range containing its start"""
        engine = CostAllocationEngine()
        rule = _rule("r1", "marketing", "fixed", 500, frequency="one_time", effectiveFrom=_at("2024-01-05"))

        assert engine.allocate_time_bound(rule, DateRange("2024-01-01", "2024-01-10")) == 500
        assert engine.allocate_time_bound(rule, DateRange("2024-01-11", "2024-01-20")) == 0

    def test_malformed_rule_is_zero(self):
        """Malformed rules contribute nothing instead of raising"""
        engine = CostAllocationEngine()
        rule = _rule("r1", "marketing", "fixed", -5, frequency="monthly")

        assert engine.allocate_time_bound(rule, DateRange("2024-01-01", "2024-01-10")) == 0

    def test_range_report_lists_calendar_rules(self):
        """The report covers calendar fixed rules only"""
        engine = CostAllocationEngine([
            _rule("r1", "operational", "fixed", 310, frequency="monthly", name="Software"),
            _rule("r2", "product", "percentage", 5),
        ])

        report = engine.range_cost_report(DateRange("2024-01-01", "2024-01-31"))

        assert [(cost.rule_id, cost.bucket, cost.amount) for cost in report] == [("r1", "operational", 310.0)]
