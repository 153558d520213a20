"""
Cost Allocation Engine

Applies variant-level cost overrides before org-level cost rules and tracks
"revenue coverage" so the same revenue is never charged under both tiers.

Three modes:
- Single order: per-order and per-unit costs only.
- Date: order-proportional costs plus calendar pro-rated fixed costs, with
  coverage scoped to the date.
- Time-bound: a rule's value spread linearly over the part of its
  effective window that overlaps a reporting range.
"""

import math
from dataclasses import asdict, dataclass, field
from datetime import date
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence

import structlog

from profitlens.exceptions import MalformedCostConfigError
from profitlens.ingestion.schemas import (
    CALENDAR_FREQUENCIES,
    CostRule,
    Order,
    OrderLineItem,
    VariantCostComponent,
)
from profitlens.quality.validators import CostConfigValidator, ValidationResult
from profitlens.utils.dates import (
    DateRange,
    day_bounds_ms,
    days_in_month,
    days_in_quarter,
    days_in_year,
    ms_to_date_string,
    parse_iso_date,
)
from profitlens.utils.money import round_money, safe_divide

logger = structlog.get_logger(__name__)

TYPE_TO_BUCKET = {
    "product": "cogs",
    "shipping": "shipping",
    "handling": "handling",
    "payment": "transaction_fees",
    "marketing": "marketing",
    "operational": "operational",
    "tax": "tax",
}


@dataclass
class CostBuckets:
    """Allocated cost per bucket"""
    cogs: float = 0.0
    shipping: float = 0.0
    handling: float = 0.0
    transaction_fees: float = 0.0
    marketing: float = 0.0
    operational: float = 0.0
    tax: float = 0.0
    other: float = 0.0

    def add(self, bucket: str, amount: float) -> None:
        if not amount or not math.isfinite(amount):
            return
        setattr(self, bucket, getattr(self, bucket) + amount)

    @property
    def total(self) -> float:
        return sum(asdict(self).values())

    @property
    def custom(self) -> float:
        """Buckets reported as custom costs at the daily-metric level"""
        return self.marketing + self.operational + self.other

    def rounded(self, precision: int = 2) -> Dict[str, float]:
        return {name: round_money(amount, precision) for name, amount in asdict(self).items()}


@dataclass
class OrderCostBreakdown:
    """Single-order allocation result"""
    order_id: str
    revenue: float
    merchandise_revenue: float
    units: int
    costs: CostBuckets = field(default_factory=CostBuckets)
    covered_cogs_revenue: float = 0.0
    covered_payment_revenue: float = 0.0

    @property
    def total_cost(self) -> float:
        return self.costs.total

    @property
    def profit(self) -> float:
        return self.revenue - self.total_cost

    @property
    def profit_margin(self) -> float:
        if self.revenue <= 0:
            return 0.0
        return safe_divide(self.profit, self.revenue) * 100

    def to_dict(self, precision: int = 2) -> Dict[str, Any]:
        return {
            "order_id": self.order_id,
            "revenue": round_money(self.revenue, precision),
            "units": self.units,
            "costs": self.costs.rounded(precision),
            "total_cost": round_money(self.total_cost, precision),
            "profit": round_money(self.profit, precision),
            "profit_margin": round_money(self.profit_margin, precision),
        }


@dataclass
class DateCostAllocation:
    """Date-mode allocation result"""
    date: str
    orders: int = 0
    units: int = 0
    revenue: float = 0.0
    merchandise_revenue: float = 0.0
    costs: CostBuckets = field(default_factory=CostBuckets)
    covered_cogs_revenue: float = 0.0
    covered_payment_revenue: float = 0.0
    fixed_costs: Dict[str, float] = field(default_factory=dict)


@dataclass
class TimeBoundCost:
    """A rule's share of a reporting range"""
    rule_id: str
    name: Optional[str]
    type: Optional[str]
    frequency: Optional[str]
    bucket: str
    amount: float


@dataclass
class _CoverageBase:
    """Per-rule bases accumulated over the orders a rule is active for"""
    revenue: float = 0.0
    uncovered_cogs: float = 0.0
    uncovered_payment: float = 0.0
    orders: int = 0
    units: int = 0


def bucket_for(rule: CostRule) -> str:
    return TYPE_TO_BUCKET.get(rule.type or "", "other")


def _contains(effective_from: Optional[float], effective_to: Optional[float], at_ms: float) -> bool:
    if effective_from is not None and at_ms < effective_from:
        return False
    if effective_to is not None and at_ms > effective_to:
        return False
    return True


def _overlaps(effective_from: Optional[float], effective_to: Optional[float], start_ms: float, end_ms: float) -> bool:
    if effective_from is not None and effective_from > end_ms:
        return False
    if effective_to is not None and effective_to < start_ms:
        return False
    return True


def prorate_fixed_cost(value: float, frequency: Optional[str], day: date) -> float:
    """
    Share of a calendar-frequency fixed cost charged to one day.

    one_time and order-driven frequencies are not pro-rated and return 0.

    >>> round(prorate_fixed_cost(310, "monthly", date(2024, 1, 15)), 2)
    10.0
    """
    if frequency == "daily":
        return value
    if frequency == "weekly":
        return value / 7
    if frequency == "monthly":
        return value / days_in_month(day)
    if frequency == "quarterly":
        return value / days_in_quarter(day)
    if frequency == "yearly":
        return value / days_in_year(day)
    return 0.0


def line_revenue(order: Order, items: Sequence[OrderLineItem]) -> float:
    """Merchandise revenue of an order: net line revenue, or subtotal without lines"""
    if not items:
        return max(0.0, order.subtotal_price)
    return sum(item.revenue for item in items)


def order_units(order: Order, items: Sequence[OrderLineItem]) -> int:
    if items:
        return sum(max(0, item.quantity) for item in items)
    return max(0, order.total_quantity)


class CostAllocationEngine:
    """
    Two-tier cost allocation.

    Example:
        engine = CostAllocationEngine(cost_rules, variant_components)
        breakdown = engine.allocate_order(order, line_items)
        allocation = engine.allocate_date("2024-01-05", orders, items_by_order)
    """

    def __init__(
        self,
        cost_rules: Iterable[Any] = (),
        variant_components: Iterable[Any] = (),
        validator: Optional[CostConfigValidator] = None,
        timezone_offset_minutes: int = 0,
    ):
        self.validator = validator or CostConfigValidator()
        self.timezone_offset_minutes = timezone_offset_minutes or 0
        config = self.validator.validate(cost_rules, variant_components)
        self.validation: Optional[ValidationResult] = config.result
        self.rules: List[CostRule] = [rule for rule in config.rules if rule.is_active]

        self._components: Dict[str, List[VariantCostComponent]] = {}
        for component in config.components:
            if component.is_active:
                self._components.setdefault(component.variant_id, []).append(component)

        for rule in self.one_time_rules():
            if self.rule_start_ms(rule) is None:
                logger.warning("One-time cost without a start is never charged", rule_id=rule.id)

    # -------------------------------------------------------------------------
    # Rule and override resolution
    # -------------------------------------------------------------------------

    def resolve_component(self, variant_id: Optional[str], at_ms: float) -> Optional[VariantCostComponent]:
        """Most recent applicable override for a variant at a point in time"""
        if not variant_id:
            return None
        best: Optional[VariantCostComponent] = None
        for component in self._components.get(variant_id, []):
            if not _contains(component.effective_from, component.effective_to, at_ms):
                continue
            starts = component.effective_from if component.effective_from is not None else -math.inf
            best_starts = (
                best.effective_from if best is not None and best.effective_from is not None else -math.inf
            )
            if best is None or starts > best_starts:
                best = component
        return best

    def rules_active_at(self, at_ms: float) -> List[CostRule]:
        return [rule for rule in self.rules if _contains(rule.effective_from, rule.effective_to, at_ms)]

    def rules_active_on(self, day: date) -> List[CostRule]:
        start_ms, end_ms = day_bounds_ms(day, self.timezone_offset_minutes)
        return [
            rule for rule in self.rules
            if _overlaps(rule.effective_from, rule.effective_to, start_ms, end_ms)
        ]

    # -------------------------------------------------------------------------
    # Tier 1: variant overrides
    # -------------------------------------------------------------------------

    def _apply_overrides(
        self,
        order: Order,
        items: Sequence[OrderLineItem],
        costs: CostBuckets,
    ) -> Dict[str, float]:
        covered = {"cogs": 0.0, "payment": 0.0}
        for item in items:
            component = self.resolve_component(item.variant_id, order.created_at)
            if component is None:
                continue
            quantity = max(0, item.quantity)
            revenue = item.revenue
            if component.cogs_per_unit > 0:
                costs.add("cogs", component.cogs_per_unit * quantity)
                covered["cogs"] += revenue
            if component.shipping_per_unit > 0:
                costs.add("shipping", component.shipping_per_unit * quantity)
            if component.handling_per_unit > 0:
                costs.add("handling", component.handling_per_unit * quantity)
            if component.payment_fee_percent > 0:
                costs.add("transaction_fees", component.payment_fee_percent / 100 * revenue)
                covered["payment"] += revenue
            if component.payment_fixed_per_item > 0:
                costs.add("transaction_fees", component.payment_fixed_per_item * quantity)
        return covered

    # -------------------------------------------------------------------------
    # Tier 2: org-level rules
    # -------------------------------------------------------------------------

    @staticmethod
    def _apply_rule(rule: CostRule, base: _CoverageBase, costs: CostBuckets) -> None:
        """
        Charge an order-proportional rule against accumulated bases.

        A product percentage applies to merchandise (line) revenue not covered
        by a COGS override, rather than to gross sales minus covered revenue.
        Gross sales add order discounts back, so an order whose lines are all
        covered would still leave a base; line revenue leaves none.
        """
        bucket = bucket_for(rule)
        if rule.calculation == "percentage":
            if rule.type == "product":
                amount_base = base.uncovered_cogs
            elif rule.type == "payment":
                amount_base = base.uncovered_payment
                costs.add(bucket, rule.fixed_fee * base.orders)
            else:
                amount_base = base.revenue
            costs.add(bucket, max(0.0, amount_base) * rule.value / 100)
        elif rule.calculation == "per_unit":
            costs.add(bucket, rule.value * base.units)
        elif rule.calculation == "fixed":
            frequency = rule.frequency or "per_order"
            if frequency == "per_order":
                costs.add(bucket, rule.value * base.orders)
            elif frequency in ("per_item", "per_unit"):
                costs.add(bucket, rule.value * base.units)

    def _order_base(
        self,
        order: Order,
        items: Sequence[OrderLineItem],
        costs: CostBuckets,
    ) -> _CoverageBase:
        covered = self._apply_overrides(order, items, costs)
        merchandise = line_revenue(order, items)
        revenue = order.total_price
        return _CoverageBase(
            revenue=revenue,
            uncovered_cogs=max(0.0, merchandise - covered["cogs"]),
            uncovered_payment=max(0.0, revenue - covered["payment"]),
            orders=1,
            units=order_units(order, items),
        )

    def allocate_order(self, order: Order, line_items: Sequence[OrderLineItem] = ()) -> OrderCostBreakdown:
        """
        Allocate costs to a single order.

        Calendar-frequency fixed costs are not charged in this mode; they
        belong to dates, not orders.
        """
        costs = CostBuckets()
        base = self._order_base(order, line_items, costs)
        for rule in self.rules_active_at(order.created_at):
            self._apply_rule(rule, base, costs)

        merchandise = line_revenue(order, line_items)
        return OrderCostBreakdown(
            order_id=order.id,
            revenue=order.total_price,
            merchandise_revenue=merchandise,
            units=base.units,
            costs=costs,
            covered_cogs_revenue=merchandise - base.uncovered_cogs,
            covered_payment_revenue=order.total_price - base.uncovered_payment,
        )

    def allocate_date(
        self,
        day: Any,
        orders: Sequence[Order],
        line_items_by_order: Optional[Mapping[str, Sequence[OrderLineItem]]] = None,
        activity_dates: Optional[Iterable[str]] = None,
    ) -> DateCostAllocation:
        """
        Allocate costs for every order of one calendar date.

        Coverage is summed over the date, so an override covering one line
        never suppresses a rule for a different, uncovered line. Calendar
        fixed costs are pro-rated onto the date; a one_time rule lands on the
        first of ``activity_dates`` inside its window (see ``one_time_date``).

        Args:
            day: ISO date string or date
            orders: Non-cancelled orders placed on the date
            line_items_by_order: order id -> line items
            activity_dates: Dates with orders or ad spend, from the earliest
                one_time rule start up to the processed range
        """
        day = parse_iso_date(day)
        items_by_order = line_items_by_order or {}
        result = DateCostAllocation(date=day.isoformat())
        rule_bases: Dict[str, _CoverageBase] = {}

        for order in orders:
            items = items_by_order.get(order.id, ())
            base = self._order_base(order, items, result.costs)
            result.orders += 1
            result.units += base.units
            result.revenue += base.revenue
            merchandise = line_revenue(order, items)
            result.merchandise_revenue += merchandise
            result.covered_cogs_revenue += merchandise - base.uncovered_cogs
            result.covered_payment_revenue += base.revenue - base.uncovered_payment

            for rule in self.rules_active_at(order.created_at):
                totals = rule_bases.setdefault(rule.id, _CoverageBase())
                totals.revenue += base.revenue
                totals.uncovered_cogs += base.uncovered_cogs
                totals.uncovered_payment += base.uncovered_payment
                totals.orders += base.orders
                totals.units += base.units

        rules_by_id = {rule.id: rule for rule in self.rules}
        for rule_id, totals in rule_bases.items():
            self._apply_rule(rules_by_id[rule_id], totals, result.costs)

        for rule in self.rules_active_on(day):
            amount = self._calendar_amount(rule, day, activity_dates)
            if amount:
                result.costs.add(bucket_for(rule), amount)
                result.fixed_costs[rule.id] = amount
        return result

    def one_time_rules(self) -> List[CostRule]:
        """Active one_time fixed rules"""
        return [
            rule for rule in self.rules
            if rule.calculation == "fixed" and rule.frequency == "one_time"
        ]

    @staticmethod
    def rule_start_ms(rule: CostRule) -> Optional[float]:
        """When a rule starts: its effective_from, else when it was created"""
        return rule.effective_from if rule.effective_from is not None else rule.created_at

    def rule_start_date(self, rule: CostRule) -> Optional[date]:
        """Store-local date on which a rule starts"""
        starts = self.rule_start_ms(rule)
        if starts is None:
            return None
        day = ms_to_date_string(starts, self.timezone_offset_minutes)
        return parse_iso_date(day) if day else None

    def one_time_date(self, rule: CostRule, activity_dates: Iterable[str]) -> Optional[date]:
        """
        Date a one_time cost lands on: the first activity date on or after the
        rule starts and inside its window.

        The anchor depends only on the rule and on when activity happened, so
        any batch of dates that includes it charges the cost exactly once. A
        rule with neither ``effective_from`` nor a creation time has no anchor
        and is never charged.
        """
        starts = self.rule_start_date(rule)
        if starts is None:
            return None
        candidates = []
        for value in activity_dates:
            candidate = parse_iso_date(value)
            if candidate < starts:
                continue
            start_ms, end_ms = day_bounds_ms(candidate, self.timezone_offset_minutes)
            if _overlaps(rule.effective_from, rule.effective_to, start_ms, end_ms):
                candidates.append(candidate)
        return min(candidates) if candidates else None

    def _calendar_amount(self, rule: CostRule, day: date, activity_dates: Optional[Iterable[str]]) -> float:
        if rule.calculation != "fixed" or rule.frequency not in CALENDAR_FREQUENCIES:
            return 0.0
        if rule.frequency != "one_time":
            return prorate_fixed_cost(rule.value, rule.frequency, day)
        if self.one_time_date(rule, activity_dates or ()) == day:
            return rule.value
        return 0.0


    # -------------------------------------------------------------------------
    # Time-bound mode
    # -------------------------------------------------------------------------

    def allocate_time_bound(self, rule: Any, date_range: Any) -> float:
        """
        Portion of a rule's value attributable to a reporting range.

        With both window bounds set the value is spread linearly over the
        window in milliseconds. Open-ended windows have no length, so the
        calendar pro-rated daily amounts over the overlapping days are
        summed instead. The range is read in the engine's store offset.
        """
        date_range = DateRange.coerce(date_range).with_offset(self.timezone_offset_minutes)
        try:
            rule = self.validator.require_valid_rule(rule)
        except MalformedCostConfigError as e:
            logger.warning("Malformed cost rule ignored in time-bound mode", error=str(e))
            return 0.0
        if not rule.is_active:
            return 0.0

        range_start = date_range.start_ms
        range_end = date_range.end_ms + 1

        if rule.effective_from is not None and rule.effective_to is not None:
            window = rule.effective_to - rule.effective_from
            if window <= 0:
                return 0.0
            overlap = min(rule.effective_to, range_end) - max(rule.effective_from, range_start)
            if overlap <= 0:
                return 0.0
            return rule.value * overlap / window

        if rule.frequency == "one_time":
            starts = self.rule_start_ms(rule)
            if starts is not None and range_start <= starts < range_end:
                return rule.value
            return 0.0

        total = 0.0
        for day in date_range.days():
            start_ms, end_ms = day_bounds_ms(day, self.timezone_offset_minutes)
            if _overlaps(rule.effective_from, rule.effective_to, start_ms, end_ms):
                total += prorate_fixed_cost(rule.value, rule.frequency, day)
        return total

    def range_cost_report(self, date_range: Any, precision: int = 2) -> List[TimeBoundCost]:
        """Time-bound share of every calendar-frequency fixed rule"""
        date_range = DateRange.coerce(date_range)
        report = []
        for rule in self.rules:
            if rule.calculation != "fixed" or rule.frequency not in CALENDAR_FREQUENCIES:
                continue
            amount = self.allocate_time_bound(rule, date_range)
            report.append(TimeBoundCost(
                rule_id=rule.id,
                name=rule.name,
                type=rule.type,
                frequency=rule.frequency,
                bucket=bucket_for(rule),
                amount=round_money(amount, precision),
            ))
        return report

