"""
Daily Metrics

Accumulates per-date facts into additive totals, then derives every ratio
once, from the final sums. The same derivation is reused by the weekly and
monthly rollup, so period margins are always recomputed from summed totals.
"""

from collections import defaultdict
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence

import structlog
from pydantic import BaseModel, Field

from profitlens.ingestion.schemas import Order, Transaction
from profitlens.transformation.cleaners import DateBucket
from profitlens.transformation.cost_allocation import DateCostAllocation
from profitlens.utils.money import round_money, safe_divide

logger = structlog.get_logger(__name__)

MONEY_FIELDS = (
    "revenue",
    "gross_sales",
    "discounts",
    "refunds",
    "taxes_collected",
    "cogs",
    "shipping_costs",
    "handling_fees",
    "transaction_fees",
    "custom_costs",
    "taxes_paid",
    "ad_spend",
    "ad_conversion_value",
)

COUNT_FIELDS = (
    "orders",
    "cancelled_orders",
    "units_sold",
    "impressions",
    "clicks",
    "conversions",
    "reach",
    "video_views",
    "video_3s_views",
    "sessions",
    "visitors",
    "prepaid_orders",
    "cod_orders",
    "other_payment_orders",
)

ADDITIVE_FIELDS = MONEY_FIELDS + COUNT_FIELDS

COD_GATEWAY_MARKERS = ("cod", "cash_on_delivery", "cash on delivery")
PAYMENT_COUNT_FIELDS = {
    "prepaid": "prepaid_orders",
    "cod": "cod_orders",
    "other": "other_payment_orders",
}


class MetricValues(BaseModel):
    """Additive totals plus the ratios derived from them"""

    # Additive: money
    revenue: float = 0
    gross_sales: float = 0
    discounts: float = 0
    refunds: float = 0
    taxes_collected: float = 0
    cogs: float = 0
    shipping_costs: float = 0
    handling_fees: float = 0
    transaction_fees: float = 0
    custom_costs: float = 0
    taxes_paid: float = 0
    ad_spend: float = 0
    ad_conversion_value: float = 0

    # Additive: counts
    orders: int = 0
    cancelled_orders: int = 0
    units_sold: int = 0
    impressions: int = 0
    clicks: int = 0
    conversions: int = 0
    reach: int = 0
    video_views: int = 0
    video_3s_views: int = 0
    sessions: int = 0
    visitors: int = 0
    prepaid_orders: int = 0
    cod_orders: int = 0
    other_payment_orders: int = 0

    # Additive: keyed and set-valued
    platform_spend: Dict[str, float] = Field(default_factory=dict)
    platform_conversion_value: Dict[str, float] = Field(default_factory=dict)
    customer_ids: List[str] = Field(default_factory=list)
    new_customer_ids: List[str] = Field(default_factory=list)

    # Derived
    total_costs: float = 0
    gross_profit: float = 0
    net_profit: float = 0
    gross_profit_margin: float = 0
    net_profit_margin: float = 0
    contribution_margin: float = 0
    contribution_margin_percentage: float = 0
    discount_rate: float = 0
    avg_order_value: float = 0
    avg_order_cost: float = 0
    avg_order_profit: float = 0
    ad_spend_per_order: float = 0
    profit_per_unit: float = 0
    unique_customers: int = 0
    new_customers: int = 0
    returning_customers: int = 0
    repeat_customer_rate: float = 0
    customer_acquisition_cost: float = 0
    blended_roas: float = 0
    poas: float = 0
    platform_roas: Dict[str, float] = Field(default_factory=dict)
    blended_ctr: float = 0
    blended_cpc: float = 0
    blended_cpm: float = 0
    conversion_rate: float = 0
    cogs_percentage_of_revenue: float = 0

    def additive(self) -> Dict[str, Any]:
        """The accumulated part of the record, suitable for re-summing"""
        values: Dict[str, Any] = {name: getattr(self, name) for name in ADDITIVE_FIELDS}
        values["platform_spend"] = dict(self.platform_spend)
        values["platform_conversion_value"] = dict(self.platform_conversion_value)
        values["customer_ids"] = list(self.customer_ids)
        values["new_customer_ids"] = list(self.new_customer_ids)
        return values


class DailyMetric(MetricValues):
    """One record per (organization, date)"""
    organization_id: str
    date: str
    updated_at: Optional[datetime] = None


class AggregateMetric(MetricValues):
    """One record per (organization, period type, period key)"""
    organization_id: str
    period_type: str
    period_key: str
    start_date: str
    end_date: str
    days_included: int = 0
    dates: List[str] = Field(default_factory=list)
    has_full_coverage: bool = False
    updated_at: Optional[datetime] = None


def derive_metrics(totals: Mapping[str, Any], precision: int = 2) -> Dict[str, Any]:
    """
    Compute every ratio from final additive totals, then round.

    Money and ratio fields are rounded half-up to ``precision``; counts stay
    integral. Every zero denominator yields 0.
    """
    values = {name: totals.get(name, 0) or 0 for name in ADDITIVE_FIELDS}
    revenue = values["revenue"]
    gross_sales = values["gross_sales"]
    orders = values["orders"]
    ad_spend = values["ad_spend"]

    customer_ids = sorted(set(totals.get("customer_ids") or ()))
    new_customer_ids = sorted(set(totals.get("new_customer_ids") or ()) & set(customer_ids))
    platform_spend = dict(totals.get("platform_spend") or {})
    platform_value = dict(totals.get("platform_conversion_value") or {})

    total_costs = (
        values["cogs"]
        + values["handling_fees"]
        + ad_spend
        + values["shipping_costs"]
        + values["custom_costs"]
        + values["transaction_fees"]
        + values["taxes_paid"]
    )
    gross_profit = gross_sales - values["cogs"]
    net_profit = revenue - total_costs
    contribution_margin = revenue - (
        values["cogs"] + ad_spend + values["shipping_costs"] + values["transaction_fees"]
    )
    unique_customers = len(customer_ids)
    new_customers = len(new_customer_ids)
    returning_customers = unique_customers - new_customers

    platform_roas = {}
    for platform, spend in platform_spend.items():
        attributed = platform_value.get(platform, 0) or revenue
        platform_roas[platform] = safe_divide(attributed, spend)

    derived = {
        "total_costs": total_costs,
        "gross_profit": gross_profit,
        "net_profit": net_profit,
        "gross_profit_margin": safe_divide(gross_profit, gross_sales) * 100,
        "net_profit_margin": safe_divide(net_profit, revenue) * 100,
        "contribution_margin": contribution_margin,
        "contribution_margin_percentage": safe_divide(contribution_margin, revenue) * 100,
        "discount_rate": safe_divide(values["discounts"], gross_sales) * 100,
        "avg_order_value": safe_divide(revenue, orders),
        "avg_order_cost": safe_divide(total_costs, orders),
        "avg_order_profit": safe_divide(net_profit, orders),
        "ad_spend_per_order": safe_divide(ad_spend, orders),
        "profit_per_unit": safe_divide(net_profit, values["units_sold"]),
        "repeat_customer_rate": safe_divide(returning_customers, unique_customers) * 100,
        "customer_acquisition_cost": safe_divide(ad_spend, new_customers),
        "blended_roas": safe_divide(revenue, ad_spend),
        "poas": safe_divide(net_profit, ad_spend),
        "blended_ctr": safe_divide(values["clicks"], values["impressions"]) * 100,
        "blended_cpc": safe_divide(ad_spend, values["clicks"]),
        "blended_cpm": safe_divide(ad_spend, values["impressions"]) * 1000,
        "conversion_rate": safe_divide(orders, values["sessions"]) * 100,
        "cogs_percentage_of_revenue": safe_divide(values["cogs"], revenue) * 100,
    }

    result: Dict[str, Any] = {}
    for name in MONEY_FIELDS:
        result[name] = round_money(values[name], precision)
    for name in COUNT_FIELDS:
        result[name] = int(values[name])
    for name, amount in derived.items():
        result[name] = round_money(amount, precision)
    result.update({
        "unique_customers": unique_customers,
        "new_customers": new_customers,
        "returning_customers": returning_customers,
        "customer_ids": customer_ids,
        "new_customer_ids": new_customer_ids,
        "platform_spend": {k: round_money(v, precision) for k, v in sorted(platform_spend.items())},
        "platform_conversion_value": {
            k: round_money(v, precision) for k, v in sorted(platform_value.items())
        },
        "platform_roas": {k: round_money(v, precision) for k, v in sorted(platform_roas.items())},
    })
    return result


def payment_method(transactions: Sequence[Transaction]) -> str:
    """prepaid, cod or other, from the gateways of an order's transactions"""
    if not transactions:
        return "other"
    for transaction in transactions:
        gateway = transaction.gateway or ""
        if any(marker in gateway for marker in COD_GATEWAY_MARKERS):
            return "cod"
    return "prepaid"


def gateway_fees(transactions: Iterable[Transaction], order_ids: Optional[Iterable[str]] = None) -> float:
    """Fees reported by the payment gateway, optionally limited to some orders"""
    wanted = None if order_ids is None else set(order_ids)
    return sum(
        max(0.0, transaction.fee)
        for transaction in transactions
        if wanted is None or transaction.order_id in wanted
    )


class MetricsAccumulator:
    """
    Additive-only accumulation for one (organization, date).

    No ratio is computed until ``finalize``.
    """

    def __init__(self, organization_id: str, date: str):
        self.organization_id = organization_id
        self.date = date
        self.totals: Dict[str, float] = defaultdict(float)
        self.platform_spend: Dict[str, float] = defaultdict(float)
        self.platform_conversion_value: Dict[str, float] = defaultdict(float)
        self.customer_ids: set = set()
        self.new_customer_ids: set = set()

    def add(self, name: str, amount: float) -> None:
        self.totals[name] += amount

    def add_orders(
        self,
        orders: Iterable[Order],
        first_order_dates: Mapping[str, str],
        transactions_by_order: Optional[Mapping[str, Sequence[Transaction]]] = None,
    ) -> None:
        transactions_by_order = transactions_by_order or {}
        for order in orders:
            self.add("gross_sales", order.gross_sales)
            self.add("discounts", order.total_discounts)
            self.add("taxes_collected", order.total_tax)
            method = payment_method(transactions_by_order.get(order.id, ()))
            self.add(PAYMENT_COUNT_FIELDS[method], 1)
            if order.customer_id:
                self.customer_ids.add(order.customer_id)
                if first_order_dates.get(order.customer_id) == self.date:
                    self.new_customer_ids.add(order.customer_id)

    def add_allocation(self, allocation: DateCostAllocation, reported_fees: float = 0.0) -> None:
        """
        Allocated costs of the date.

        Fees reported on transactions replace the configured payment costs
        when there are any; otherwise the allocation's fees stand.
        """
        costs = allocation.costs
        self.add("revenue", allocation.revenue)
        self.add("orders", allocation.orders)
        self.add("units_sold", allocation.units)
        self.add("cogs", costs.cogs)
        self.add("shipping_costs", costs.shipping)
        self.add("handling_fees", costs.handling)
        self.add("transaction_fees", reported_fees if reported_fees > 0 else costs.transaction_fees)
        self.add("custom_costs", costs.custom)
        self.add("taxes_paid", costs.tax)

    def add_bucket(self, bucket: DateBucket) -> None:
        """Refunds, cancellations, ad insights and traffic of the date"""
        self.add("cancelled_orders", len(bucket.cancelled_orders))
        for refund in bucket.refunds:
            self.add("refunds", refund.amount)

        for insight in bucket.ad_insights:
            platform = insight.platform or "unknown"
            self.add("ad_spend", insight.spend)
            self.add("ad_conversion_value", insight.conversion_value)
            self.add("impressions", insight.impressions)
            self.add("clicks", insight.clicks)
            self.add("conversions", insight.conversions)
            self.add("reach", insight.reach)
            self.add("video_views", insight.video_views)
            self.add("video_3s_views", insight.video_3s_views)
            self.platform_spend[platform] += insight.spend
            self.platform_conversion_value[platform] += insight.conversion_value

        if bucket.shop_analytics:
            self.add("sessions", sum(row.sessions for row in bucket.shop_analytics))
            self.add("visitors", sum(row.visitors for row in bucket.shop_analytics))
        else:
            self.add("sessions", len(bucket.sessions))

    def finalize(self, precision: int = 2) -> DailyMetric:
        totals: Dict[str, Any] = dict(self.totals)
        totals["platform_spend"] = dict(self.platform_spend)
        totals["platform_conversion_value"] = dict(self.platform_conversion_value)
        totals["customer_ids"] = self.customer_ids
        totals["new_customer_ids"] = self.new_customer_ids
        return DailyMetric(
            organization_id=self.organization_id,
            date=self.date,
            updated_at=datetime.now(timezone.utc),
            **derive_metrics(totals, precision),
        )


def build_daily_metric(
    organization_id: str,
    bucket: DateBucket,
    allocation: DateCostAllocation,
    first_order_dates: Mapping[str, str],
    precision: int = 2,
) -> DailyMetric:
    """Accumulate one date's facts and derive its metrics"""
    transactions_by_order: Dict[str, List[Transaction]] = {}
    for transaction in bucket.transactions:
        transactions_by_order.setdefault(transaction.order_id, []).append(transaction)

    reported_fees = gateway_fees(bucket.transactions, (order.id for order in bucket.orders))

    accumulator = MetricsAccumulator(organization_id, bucket.date)
    accumulator.add_orders(bucket.orders, first_order_dates, transactions_by_order)
    accumulator.add_allocation(allocation, reported_fees)
    accumulator.add_bucket(bucket)
    return accumulator.finalize(precision)
