"""
Daily Metrics Transformer

Orchestrates load -> partition -> allocate -> accumulate -> upsert -> rollup.
Loader failures abort the run before anything is written; a failure while
computing one date only skips that date.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING, Dict, Iterable, List, Mapping, Optional

import structlog

from profitlens.config import get_settings
from profitlens.config.settings import Settings
from profitlens.exceptions import InvalidDateRangeError, PerDateComputationError
from profitlens.ingestion.chunked_loader import AnalyticsSourceData, ChunkedDatasetLoader
from profitlens.ingestion.sources import AD_INSIGHTS, ORDERS, PagedTableReader
from profitlens.transformation.cleaners import DateBucket, RawDateBucket, SourcePartitioner
from profitlens.transformation.cost_allocation import CostAllocationEngine
from profitlens.transformation.metrics import DailyMetric, build_daily_metric
from profitlens.transformation.rollup import MetricsRollup, affected_periods
from profitlens.utils.dates import DateRange, covering_range, parse_iso_date, period_bounds

if TYPE_CHECKING:
    from profitlens.database.repository import MetricStore

logger = structlog.get_logger(__name__)


@dataclass
class DailyComputation:
    """Per-date metrics for one loaded source, plus what could not be computed"""
    metrics: Dict[str, DailyMetric] = field(default_factory=dict)
    buckets: Dict[str, DateBucket] = field(default_factory=dict)
    failures: Dict[str, PerDateComputationError] = field(default_factory=dict)
    engine: Optional[CostAllocationEngine] = None


@dataclass
class RebuildResult:
    """Summary of a daily-metrics rebuild"""
    organization_id: str
    processed: int = 0
    updated: int = 0
    skipped: int = 0
    skipped_dates: List[str] = field(default_factory=list)
    periods_rolled_up: int = 0
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    completed_at: Optional[datetime] = None

    @property
    def duration_seconds(self) -> float:
        if self.completed_at is None:
            return 0.0
        return (self.completed_at - self.started_at).total_seconds()


def resolve_offset(settings: Settings, timezone_offset_minutes: Optional[int] = None) -> int:
    """Requested store offset, else the configured one"""
    if timezone_offset_minutes is None:
        return settings.analytics.timezone_offset_minutes
    return timezone_offset_minutes


def build_partitioner(settings: Settings, timezone_offset_minutes: int) -> SourcePartitioner:
    return SourcePartitioner(
        timezone_offset_minutes=timezone_offset_minutes,
        account_level_insights_only=settings.analytics.account_level_insights_only,
    )


def active_dates(partitioner: SourcePartitioner, raw_buckets: Mapping[str, RawDateBucket]) -> List[str]:
    """Dates with orders or ad spend; a date whose records do not parse counts as inactive"""
    dates = []
    for day, raw in raw_buckets.items():
        try:
            bucket = partitioner.normalize(raw)
        except ValueError as e:
            logger.debug("Activity check skipped unreadable date", date=day, error=str(e))
            continue
        if bucket.has_activity:
            dates.append(day)
    return dates


async def load_one_time_history(
    loader: ChunkedDatasetLoader,
    organization_id: str,
    engine: CostAllocationEngine,
    date_range: DateRange,
    partitioner: SourcePartitioner,
) -> List[str]:
    """
    Activity dates between the earliest one_time rule start and ``date_range``.

    A one_time cost whose rule started before the range may already have
    landed on an earlier date; these dates let the engine tell.
    """
    starts = [engine.rule_start_date(rule) for rule in engine.one_time_rules()]
    earlier = [day for day in starts if day is not None and day < date_range.start]
    if not earlier:
        return []

    history = DateRange(
        min(earlier).isoformat(),
        (date_range.start - timedelta(days=1)).isoformat(),
        date_range.offset_minutes,
    )
    logger.debug(
        "Loading activity before range for one-time costs",
        organization_id=organization_id,
        start_date=history.start_date,
        end_date=history.end_date,
    )
    source = await loader.load(organization_id, history, datasets=(ORDERS, AD_INSIGHTS))
    raw_buckets, _ = partitioner.partition(source)
    return active_dates(partitioner, raw_buckets)


def compute_daily_metrics(
    organization_id: str,
    source: AnalyticsSourceData,
    dates: Iterable[str],
    settings: Optional[Settings] = None,
    timezone_offset_minutes: Optional[int] = None,
    engine: Optional[CostAllocationEngine] = None,
    history_activity_dates: Iterable[str] = (),
) -> DailyComputation:
    """
    Compute one DailyMetric per requested date from a loaded source.

    Dates without any records get a zeroed metric. A date whose records
    fail to parse or allocate is reported in ``failures`` instead.
    ``history_activity_dates`` are active dates before the loaded range,
    used to place one_time costs.
    """
    settings = settings or get_settings()
    analytics = settings.analytics
    offset = resolve_offset(settings, timezone_offset_minutes)
    partitioner = build_partitioner(settings, offset)
    if engine is None:
        engine = CostAllocationEngine(source.cost_rules, source.variant_costs, timezone_offset_minutes=offset)
    raw_buckets, _ = partitioner.partition(source)
    first_order_dates = partitioner.first_order_dates(source)
    result = DailyComputation(engine=engine)

    requested = sorted(set(dates))
    for day in requested:
        raw = raw_buckets.get(day)
        if raw is None:
            result.buckets[day] = DateBucket(date=day)
            continue
        try:
            result.buckets[day] = partitioner.normalize(raw)
        except Exception as e:
            result.failures[day] = PerDateComputationError(day, str(e))

    activity_dates = sorted(set(history_activity_dates) | set(active_dates(partitioner, raw_buckets)))

    for day, bucket in result.buckets.items():
        try:
            allocation = engine.allocate_date(
                day, bucket.orders, bucket.line_items_by_order, activity_dates,
            )
            result.metrics[day] = build_daily_metric(
                organization_id, bucket, allocation, first_order_dates, analytics.money_precision,
            )
        except Exception as e:
            result.failures[day] = PerDateComputationError(day, str(e))

    for day, failure in sorted(result.failures.items()):
        result.buckets.pop(day, None)
        logger.warning(
            "Date skipped",
            organization_id=organization_id,
            date=day,
            error=str(failure),
        )
    return result


def _same_metric(left: DailyMetric, right: DailyMetric) -> bool:
    exclude = {"updated_at"}
    return left.model_dump(exclude=exclude) == right.model_dump(exclude=exclude)


class DailyMetricsTransformer:
    """
    Rebuilds daily metrics and their weekly/monthly rollups.

    Example:
        transformer = DailyMetricsTransformer(reader, store)
        result = await transformer.rebuild_daily_metrics("org_1", ["2024-01-05"])
    """

    def __init__(
        self,
        reader: PagedTableReader,
        store: "MetricStore",
        settings: Optional[Settings] = None,
        loader: Optional[ChunkedDatasetLoader] = None,
    ):
        self.settings = settings or get_settings()
        self.store = store
        self.loader = loader or ChunkedDatasetLoader(reader, settings=self.settings.loader)
        self.rollup = MetricsRollup(precision=self.settings.analytics.money_precision)

    async def rebuild_daily_metrics(self, organization_id: str, dates: Iterable[str]) -> RebuildResult:
        """
        Recompute and upsert the daily metrics for the given dates.

        Idempotent: records whose content is unchanged are not rewritten and
        rollups always start from the stored day-level records.

        Raises:
            LoaderFatalError: loading failed; nothing was written
        """
        result = RebuildResult(organization_id=organization_id)

        valid_dates = set()
        for value in dates:
            try:
                valid_dates.add(parse_iso_date(value).isoformat())
            except InvalidDateRangeError:
                result.skipped += 1
                result.skipped_dates.append(str(value))
                logger.warning("Invalid date skipped", organization_id=organization_id, date=value)

        if not valid_dates:
            result.completed_at = datetime.now(timezone.utc)
            return result

        date_range = covering_range([parse_iso_date(day) for day in valid_dates])
        logger.info(
            "Rebuilding daily metrics",
            organization_id=organization_id,
            dates=len(valid_dates),
            start_date=date_range.start_date,
            end_date=date_range.end_date,
        )
        offset = resolve_offset(self.settings)
        date_range = date_range.with_offset(offset)
        source = await self.loader.load(organization_id, date_range)
        engine = CostAllocationEngine(source.cost_rules, source.variant_costs, timezone_offset_minutes=offset)
        history = await load_one_time_history(
            self.loader, organization_id, engine, date_range, build_partitioner(self.settings, offset),
        )
        computation = compute_daily_metrics(
            organization_id, source, valid_dates, self.settings, offset,
            engine=engine, history_activity_dates=history,
        )

        existing = {
            metric.date: metric
            for metric in await self.store.get_daily_metrics(
                organization_id, date_range.start_date, date_range.end_date,
            )
        }

        written_dates = []
        for day in sorted(valid_dates):
            if day in computation.failures:
                result.skipped += 1
                result.skipped_dates.append(day)
                continue
            metric = computation.metrics[day]
            result.processed += 1
            written_dates.append(day)
            if day in existing and _same_metric(existing[day], metric):
                continue
            await self.store.upsert_daily_metric(metric)
            result.updated += 1

        result.periods_rolled_up = await self.rollup_periods(organization_id, written_dates)
        result.completed_at = datetime.now(timezone.utc)
        logger.info(
            "Daily metrics rebuilt",
            organization_id=organization_id,
            processed=result.processed,
            updated=result.updated,
            skipped=result.skipped,
            periods_rolled_up=result.periods_rolled_up,
            duration_seconds=result.duration_seconds,
        )
        return result

    async def rollup_periods(self, organization_id: str, dates: Iterable[str]) -> int:
        """Re-roll every ISO week and month containing the given dates"""
        count = 0
        for period_type, keys in affected_periods(dates).items():
            for key in keys:
                start, end = period_bounds(period_type, key)
                daily = await self.store.get_daily_metrics(organization_id, start.isoformat(), end.isoformat())
                aggregate = self.rollup.rollup_period(organization_id, period_type, key, daily)
                await self.store.upsert_aggregate_metric(aggregate)
                count += 1
                logger.debug(
                    "Rollup written",
                    organization_id=organization_id,
                    period_type=period_type,
                    period_key=key,
                    days_included=aggregate.days_included,
                )
        return count

