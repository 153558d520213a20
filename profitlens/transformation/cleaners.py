"""
Source Partitioning

Splits a loader result into per-date buckets and normalises each bucket
into entity models. Partitioning only reads the fields needed to place a
record on a calendar date; full parsing happens per date, so one malformed
record fails only the date it belongs to.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Tuple

import structlog

from profitlens.ingestion.chunked_loader import AnalyticsSourceData
from profitlens.ingestion.identity import field_value, record_id
from profitlens.ingestion.schemas import (
    AdInsight,
    Customer,
    Order,
    OrderLineItem,
    Refund,
    SessionRecord,
    ShopAnalyticsRecord,
    Transaction,
)
from profitlens.utils.dates import ms_to_date_string, parse_iso_date
from profitlens.utils.money import safe_number

logger = structlog.get_logger(__name__)

RawRecord = Dict[str, Any]


@dataclass
class PartitionStats:
    """Statistics from partitioning"""
    total_orders: int = 0
    orders_without_date: int = 0
    refunds_without_date: int = 0
    insights_filtered: int = 0
    dates: int = 0


@dataclass
class RawDateBucket:
    """Raw records placed on one calendar date"""
    date: str
    orders: List[RawRecord] = field(default_factory=list)
    line_items: List[RawRecord] = field(default_factory=list)
    transactions: List[RawRecord] = field(default_factory=list)
    refunds: List[RawRecord] = field(default_factory=list)
    ad_insights: List[RawRecord] = field(default_factory=list)
    sessions: List[RawRecord] = field(default_factory=list)
    shop_analytics: List[RawRecord] = field(default_factory=list)


@dataclass
class DateBucket:
    """Normalised records for one calendar date"""
    date: str
    orders: List[Order] = field(default_factory=list)
    cancelled_orders: List[Order] = field(default_factory=list)
    line_items_by_order: Dict[str, List[OrderLineItem]] = field(default_factory=dict)
    transactions: List[Transaction] = field(default_factory=list)
    refunds: List[Refund] = field(default_factory=list)
    ad_insights: List[AdInsight] = field(default_factory=list)
    sessions: List[SessionRecord] = field(default_factory=list)
    shop_analytics: List[ShopAnalyticsRecord] = field(default_factory=list)

    @property
    def has_activity(self) -> bool:
        """Orders placed or ad spend recorded on the date"""
        return bool(self.orders) or any(insight.spend > 0 for insight in self.ad_insights)


def _order_timestamp(order: RawRecord) -> Any:
    return field_value(order, "createdAt", "shopifyCreatedAt", "created_at")


def _order_key(row: RawRecord) -> Optional[str]:
    value = field_value(row, "orderId", "order_id")
    return None if value is None else str(value)


def _valid_date(value: Any) -> Optional[str]:
    try:
        return parse_iso_date(value).isoformat()
    except ValueError:
        return None


class SourcePartitioner:
    """
    Places loaded records on calendar dates.

    Example:
        partitioner = SourcePartitioner(timezone_offset_minutes=330)
        raw_buckets, stats = partitioner.partition(source)
        bucket = partitioner.normalize(raw_buckets["2024-01-05"])
    """

    def __init__(
        self,
        timezone_offset_minutes: int = 0,
        account_level_insights_only: bool = True,
    ):
        self.timezone_offset_minutes = timezone_offset_minutes
        self.account_level_insights_only = account_level_insights_only

    def _date_of(self, ms: Any) -> Optional[str]:
        if ms is None:
            return None
        number = safe_number(ms)
        if number <= 0:
            return None
        return ms_to_date_string(number, self.timezone_offset_minutes)

    def _bucket(self, buckets: Dict[str, RawDateBucket], day: str) -> RawDateBucket:
        if day not in buckets:
            buckets[day] = RawDateBucket(date=day)
        return buckets[day]

    def filter_insights(self, insights: Iterable[RawRecord]) -> List[RawRecord]:
        """Keep account-level rows so campaign rows do not double count spend"""
        rows = list(insights)
        if not self.account_level_insights_only:
            return rows
        kept = []
        for row in rows:
            entity_type = field_value(row, "entityType", "entity_type")
            if entity_type is None or str(entity_type).lower() == "account":
                kept.append(row)
        return kept

    def partition(self, source: AnalyticsSourceData) -> Tuple[Dict[str, RawDateBucket], PartitionStats]:
        """Group raw records by calendar date"""
        stats = PartitionStats(total_orders=len(source.orders))
        buckets: Dict[str, RawDateBucket] = {}
        order_dates: Dict[str, str] = {}

        for order in source.orders:
            day = self._date_of(_order_timestamp(order))
            if day is None:
                stats.orders_without_date += 1
                continue
            self._bucket(buckets, day).orders.append(order)
            key = record_id(order)
            if key is not None:
                order_dates[key] = day

        for dataset in ("line_items", "transactions"):
            for row in source.dataset(dataset):
                day = order_dates.get(_order_key(row) or "")
                if day is not None:
                    getattr(self._bucket(buckets, day), dataset).append(row)

        for refund in source.refunds:
            day = self._date_of(field_value(refund, "processedAt", "processed_at"))
            if day is None:
                day = order_dates.get(_order_key(refund) or "")
            if day is None:
                stats.refunds_without_date += 1
                continue
            self._bucket(buckets, day).refunds.append(refund)

        insights = self.filter_insights(source.ad_insights)
        stats.insights_filtered = len(source.ad_insights) - len(insights)
        for insight in insights:
            day = _valid_date(insight.get("date"))
            if day is not None:
                self._bucket(buckets, day).ad_insights.append(insight)

        for session in source.sessions:
            day = self._date_of(field_value(session, "startTime", "start_time"))
            if day is not None:
                self._bucket(buckets, day).sessions.append(session)

        for row in source.shop_analytics:
            day = _valid_date(row.get("date"))
            if day is not None:
                self._bucket(buckets, day).shop_analytics.append(row)

        stats.dates = len(buckets)
        logger.debug(
            "Source data partitioned",
            dates=stats.dates,
            orders=stats.total_orders,
            orders_without_date=stats.orders_without_date,
            insights_filtered=stats.insights_filtered,
        )
        return dict(sorted(buckets.items())), stats

    def normalize(self, bucket: RawDateBucket) -> DateBucket:
        """
        Parse a raw bucket into entity models.

        Raises:
            pydantic.ValidationError: a record on this date is malformed
        """
        result = DateBucket(date=bucket.date)
        for raw in bucket.orders:
            order = Order.model_validate(raw)
            if order.is_cancelled:
                result.cancelled_orders.append(order)
            else:
                result.orders.append(order)

        for raw in bucket.line_items:
            item = OrderLineItem.model_validate(raw)
            result.line_items_by_order.setdefault(item.order_id, []).append(item)

        result.transactions = [Transaction.model_validate(raw) for raw in bucket.transactions]
        result.refunds = [Refund.model_validate(raw) for raw in bucket.refunds]
        result.ad_insights = [AdInsight.model_validate(raw) for raw in bucket.ad_insights]
        result.sessions = [SessionRecord.model_validate(raw) for raw in bucket.sessions]
        result.shop_analytics = [ShopAnalyticsRecord.model_validate(raw) for raw in bucket.shop_analytics]
        return result

    def first_order_dates(self, source: AnalyticsSourceData) -> Dict[str, str]:
        """
        Date of each customer's first order.

        Uses ``Customer.first_order_at`` when known; otherwise the earliest
        order for that customer in the loaded data, unless the customer record
        counts more orders than were loaded (the first one predates the range).
        """
        earliest: Dict[str, float] = {}
        loaded_counts: Dict[str, int] = {}
        for order in source.orders:
            customer_id = field_value(order, "customerId", "customer_id")
            created_at = safe_number(_order_timestamp(order))
            if customer_id is None or created_at <= 0:
                continue
            key = str(customer_id)
            loaded_counts[key] = loaded_counts.get(key, 0) + 1
            if key not in earliest or created_at < earliest[key]:
                earliest[key] = created_at

        first_dates: Dict[str, str] = {}
        for key, ms in earliest.items():
            day = self._date_of(ms)
            if day is not None:
                first_dates[key] = day
        for raw in source.customers:
            try:
                customer = Customer.model_validate(raw)
            except ValueError:
                logger.warning("Malformed customer record ignored", record_id=record_id(raw))
                continue
            if customer.first_order_at is not None:
                day = self._date_of(customer.first_order_at)
                if day is not None:
                    first_dates[customer.id] = day
            elif customer.orders_count > loaded_counts.get(customer.id, 0):
                # Prior orders exist outside the loaded range
                first_dates.pop(customer.id, None)
        return first_dates
