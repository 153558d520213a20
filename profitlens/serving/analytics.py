"""
Range Analytics

Read-only analytics for an arbitrary date range: an overview derived from
summed daily totals, an optional per-order breakdown, a daily/weekly/monthly
period table and the time-bound share of calendar fixed costs. Results may
be cached; caching never changes what is returned.
"""

import hashlib
import json
from dataclasses import asdict, dataclass, field
from typing import TYPE_CHECKING, Any, Dict, List, Literal, Optional, Sequence

import structlog
from pydantic import BaseModel, Field
from redis.exceptions import RedisError

from profitlens.config import get_settings
from profitlens.config.settings import Settings
from profitlens.ingestion.chunked_loader import ChunkedDatasetLoader
from profitlens.ingestion.sources import PagedTableReader
from profitlens.serving.cache import CacheManager
from profitlens.transformation.cost_allocation import CostAllocationEngine
from profitlens.transformation.metrics import ADDITIVE_FIELDS, DailyMetric, derive_metrics, gateway_fees
from profitlens.transformation.rollup import MetricsRollup
from profitlens.transformation.transformers import (
    DailyComputation,
    build_partitioner,
    compute_daily_metrics,
    load_one_time_history,
    resolve_offset,
)
from profitlens.utils.dates import PERIOD_MONTH, PERIOD_WEEK, DateRange
from profitlens.utils.money import percentage_change

if TYPE_CHECKING:
    from profitlens.database.repository import MetricStore

logger = structlog.get_logger(__name__)

ANALYTICS_CACHE_NAMESPACE = "analytics"

GRANULARITY_PERIODS = {
    "daily": None,
    "weekly": PERIOD_WEEK,
    "monthly": PERIOD_MONTH,
}

COMPARISON_FIELDS = (
    "revenue",
    "orders",
    "total_costs",
    "net_profit",
    "net_profit_margin",
    "ad_spend",
    "blended_roas",
    "avg_order_value",
)


class AnalyticsFilters(BaseModel):
    """Caller options for a range analytics request"""
    granularity: Literal["daily", "weekly", "monthly"] = "daily"
    max_orders: Optional[int] = Field(default=None, ge=1)
    include_order_breakdown: bool = True
    timezone_offset_minutes: Optional[int] = None


@dataclass
class RangeAnalytics:
    """Result of ``compute_range_analytics``"""
    overview: Dict[str, Any]
    per_order_breakdown: List[Dict[str, Any]] = field(default_factory=list)
    period_table: List[Dict[str, Any]] = field(default_factory=list)
    time_bound_costs: List[Dict[str, Any]] = field(default_factory=list)
    meta: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def summarize(daily: Sequence[DailyMetric], precision: int = 2) -> Dict[str, Any]:
    """Overview for a set of days: additive totals summed, ratios re-derived"""
    totals: Dict[str, Any] = {
        name: sum(getattr(metric, name) for metric in daily) for name in ADDITIVE_FIELDS
    }
    totals.update(MetricsRollup.combine_keyed(daily))
    return derive_metrics(totals, precision)


def cache_key(organization_id: str, date_range: DateRange, filters: AnalyticsFilters) -> str:
    digest = hashlib.sha256(
        json.dumps(filters.model_dump(), sort_keys=True).encode()
    ).hexdigest()[:16]
    return f"{organization_id}:{date_range.start_date}:{date_range.end_date}:{digest}"


class RangeAnalyticsService:
    """
    Computes analytics for an organization and date range.

    Example:
        service = RangeAnalyticsService(reader, store=store)
        result = await service.compute_range_analytics(
            "org_1", {"startDate": "2024-01-01", "endDate": "2024-01-31"},
            AnalyticsFilters(granularity="weekly"),
        )
    """

    def __init__(
        self,
        reader: PagedTableReader,
        store: Optional["MetricStore"] = None,
        cache: Optional[CacheManager] = None,
        settings: Optional[Settings] = None,
        loader: Optional[ChunkedDatasetLoader] = None,
    ):
        self.settings = settings or get_settings()
        self.store = store
        self.cache = cache if self.settings.analytics.cache_enabled else None
        self.loader = loader or ChunkedDatasetLoader(reader, settings=self.settings.loader)
        self.precision = self.settings.analytics.money_precision
        self.rollup = MetricsRollup(precision=self.precision)

    async def compute_range_analytics(
        self,
        organization_id: str,
        date_range: Any,
        filters: Optional[AnalyticsFilters] = None,
    ) -> RangeAnalytics:
        """
        Overview, per-order breakdown and period table for a date range.

        An empty range yields a zeroed overview, not an error.

        Raises:
            InvalidDateRangeError: malformed or inverted range
            LoaderFatalError: the store could not be read
        """
        date_range = DateRange.coerce(date_range)
        filters = filters or AnalyticsFilters()
        key = cache_key(organization_id, date_range, filters)

        cached = await self._cache_get(key)
        if cached is not None:
            logger.debug("Range analytics served from cache", organization_id=organization_id, key=key)
            return RangeAnalytics(**cached)

        offset = resolve_offset(self.settings, filters.timezone_offset_minutes)
        date_range = date_range.with_offset(offset)
        source = await self.loader.load(organization_id, date_range, max_orders=filters.max_orders)
        engine = CostAllocationEngine(source.cost_rules, source.variant_costs, timezone_offset_minutes=offset)
        history = await load_one_time_history(
            self.loader, organization_id, engine, date_range, build_partitioner(self.settings, offset),
        )
        computation = compute_daily_metrics(
            organization_id,
            source,
            date_range.date_strings(),
            self.settings,
            offset,
            engine=engine,
            history_activity_dates=history,
        )
        daily = [computation.metrics[day] for day in sorted(computation.metrics)]

        result = RangeAnalytics(
            overview=summarize(daily, self.precision),
            per_order_breakdown=(
                self._order_breakdown(computation) if filters.include_order_breakdown else []
            ),
            period_table=self._period_table(organization_id, filters.granularity, daily),
            time_bound_costs=[
                asdict(cost)
                for cost in computation.engine.range_cost_report(date_range, self.precision)
            ],
            meta={
                "organization_id": organization_id,
                "date_range": date_range.to_wire(),
                "granularity": filters.granularity,
                "days": date_range.day_count,
                "days_with_activity": sum(
                    1 for bucket in computation.buckets.values() if bucket.has_activity
                ),
                "skipped_dates": sorted(computation.failures),
                "loader": source.meta,
            },
        )

        comparison = await self._previous_period(organization_id, date_range, result.overview)
        if comparison is not None:
            result.meta["previous_period"] = comparison

        logger.info(
            "Range analytics computed",
            organization_id=organization_id,
            start_date=date_range.start_date,
            end_date=date_range.end_date,
            orders=result.overview["orders"],
            skipped_dates=len(computation.failures),
        )
        await self._cache_set(key, result.to_dict())
        return result

    def _order_breakdown(self, computation: DailyComputation) -> List[Dict[str, Any]]:
        """Per-order costs; gateway-reported fees replace configured payment costs"""
        breakdown = []
        for day in sorted(computation.buckets):
            bucket = computation.buckets[day]
            for order in sorted(bucket.orders, key=lambda o: (o.created_at, o.id)):
                allocation = computation.engine.allocate_order(
                    order, bucket.line_items_by_order.get(order.id, ()),
                )
                fees = gateway_fees(bucket.transactions, [order.id])
                if fees > 0:
                    allocation.costs.transaction_fees = fees
                row = allocation.to_dict(self.precision)
                row["date"] = day
                breakdown.append(row)
        return breakdown

    def _period_table(
        self, organization_id: str, granularity: str, daily: Sequence[DailyMetric],
    ) -> List[Dict[str, Any]]:
        period_type = GRANULARITY_PERIODS[granularity]
        if period_type is None:
            return [metric.model_dump(mode="json") for metric in daily]
        return [
            aggregate.model_dump(mode="json")
            for aggregate in self.rollup.rollup(organization_id, period_type, daily)
        ]

    async def _previous_period(
        self, organization_id: str, date_range: DateRange, overview: Dict[str, Any],
    ) -> Optional[Dict[str, Any]]:
        """Change against the stored daily metrics of the preceding period"""
        if self.store is None:
            return None
        previous_range = date_range.previous_period()
        stored = await self.store.get_daily_metrics(
            organization_id, previous_range.start_date, previous_range.end_date,
        )
        previous = summarize(stored, self.precision)
        return {
            "date_range": previous_range.to_wire(),
            "days_included": len(stored),
            "changes": {
                name: percentage_change(overview[name], previous[name])
                for name in COMPARISON_FIELDS
            },
        }

    async def _cache_get(self, key: str) -> Optional[Dict[str, Any]]:
        if self.cache is None:
            return None
        try:
            return await self.cache.get(key)
        except RedisError as e:
            logger.warning("Range analytics cache read failed", key=key, error=str(e))
            return None

    async def _cache_set(self, key: str, value: Dict[str, Any]) -> None:
        if self.cache is None:
            return
        try:
            await self.cache.set(key, value, ttl=self.settings.analytics.cache_ttl_seconds)
        except RedisError as e:
            logger.warning("Range analytics cache write failed", key=key, error=str(e))
