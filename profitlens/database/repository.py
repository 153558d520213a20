"""
Metric Stores

Insert-or-patch persistence for daily and aggregate metrics. The engine
only depends on the ``MetricStore`` protocol; ``SqlMetricStore`` backs it
with SQLAlchemy and ``InMemoryMetricStore`` with plain dicts.
"""

from datetime import date, datetime, timezone
from typing import Any, Dict, List, Optional, Protocol, Tuple

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from profitlens.database.models import AggregateMetricRecord, DailyMetricRecord
from profitlens.transformation.metrics import AggregateMetric, DailyMetric
from profitlens.utils.dates import parse_iso_date

logger = structlog.get_logger(__name__)

_DAILY_KEYS = {"organization_id", "date", "updated_at"}
_AGGREGATE_KEYS = {
    "organization_id", "period_type", "period_key", "start_date", "end_date",
    "days_included", "updated_at",
}


class MetricStore(Protocol):
    """Upsert capability for engine-owned records"""

    async def upsert_daily_metric(self, metric: DailyMetric) -> bool:
        """Insert or patch; True when a new record was created"""
        ...

    async def upsert_aggregate_metric(self, metric: AggregateMetric) -> bool:
        ...

    async def get_daily_metrics(self, organization_id: str, start_date: Any, end_date: Any) -> List[DailyMetric]:
        ...

    async def get_aggregate_metric(
        self, organization_id: str, period_type: str, period_key: str,
    ) -> Optional[AggregateMetric]:
        ...


def _daily_payload(metric: DailyMetric) -> Dict[str, Any]:
    return metric.model_dump(mode="json", exclude=_DAILY_KEYS)


def _aggregate_payload(metric: AggregateMetric) -> Dict[str, Any]:
    return metric.model_dump(mode="json", exclude=_AGGREGATE_KEYS)


class SqlMetricStore:
    """
    SQLAlchemy-backed metric store.

    Example:
        store = SqlMetricStore(get_session_factory())
        created = await store.upsert_daily_metric(metric)
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def upsert_daily_metric(self, metric: DailyMetric) -> bool:
        day = parse_iso_date(metric.date)
        async with self._session_factory() as session:
            async with session.begin():
                existing = await session.scalar(
                    select(DailyMetricRecord).where(
                        DailyMetricRecord.organization_id == metric.organization_id,
                        DailyMetricRecord.metric_date == day,
                    )
                )
                if existing is None:
                    session.add(DailyMetricRecord(
                        organization_id=metric.organization_id,
                        metric_date=day,
                        metrics=_daily_payload(metric),
                    ))
                else:
                    existing.metrics = _daily_payload(metric)
                    existing.updated_at = datetime.now(timezone.utc)

        logger.debug(
            "Daily metric upserted",
            organization_id=metric.organization_id,
            date=metric.date,
            created=existing is None,
        )
        return existing is None

    async def upsert_aggregate_metric(self, metric: AggregateMetric) -> bool:
        async with self._session_factory() as session:
            async with session.begin():
                existing = await session.scalar(
                    select(AggregateMetricRecord).where(
                        AggregateMetricRecord.organization_id == metric.organization_id,
                        AggregateMetricRecord.period_type == metric.period_type,
                        AggregateMetricRecord.period_key == metric.period_key,
                    )
                )
                if existing is None:
                    session.add(AggregateMetricRecord(
                        organization_id=metric.organization_id,
                        period_type=metric.period_type,
                        period_key=metric.period_key,
                        start_date=parse_iso_date(metric.start_date),
                        end_date=parse_iso_date(metric.end_date),
                        days_included=metric.days_included,
                        metrics=_aggregate_payload(metric),
                    ))
                else:
                    existing.days_included = metric.days_included
                    existing.metrics = _aggregate_payload(metric)
                    existing.updated_at = datetime.now(timezone.utc)

        logger.debug(
            "Aggregate metric upserted",
            organization_id=metric.organization_id,
            period_type=metric.period_type,
            period_key=metric.period_key,
            created=existing is None,
        )
        return existing is None

    async def get_daily_metrics(self, organization_id: str, start_date: Any, end_date: Any) -> List[DailyMetric]:
        start = parse_iso_date(start_date)
        end = parse_iso_date(end_date)
        async with self._session_factory() as session:
            rows = await session.scalars(
                select(DailyMetricRecord)
                .where(
                    DailyMetricRecord.organization_id == organization_id,
                    DailyMetricRecord.metric_date >= start,
                    DailyMetricRecord.metric_date <= end,
                )
                .order_by(DailyMetricRecord.metric_date)
            )
            return [
                DailyMetric(
                    organization_id=row.organization_id,
                    date=row.metric_date.isoformat(),
                    updated_at=row.updated_at,
                    **row.metrics,
                )
                for row in rows
            ]

    async def get_aggregate_metric(
        self, organization_id: str, period_type: str, period_key: str,
    ) -> Optional[AggregateMetric]:
        async with self._session_factory() as session:
            row = await session.scalar(
                select(AggregateMetricRecord).where(
                    AggregateMetricRecord.organization_id == organization_id,
                    AggregateMetricRecord.period_type == period_type,
                    AggregateMetricRecord.period_key == period_key,
                )
            )
            if row is None:
                return None
            return AggregateMetric(
                organization_id=row.organization_id,
                period_type=row.period_type,
                period_key=row.period_key,
                start_date=row.start_date.isoformat(),
                end_date=row.end_date.isoformat(),
                days_included=row.days_included,
                updated_at=row.updated_at,
                **row.metrics,
            )


class InMemoryMetricStore:
    """Dict-backed store with the same insert-or-patch contract"""

    def __init__(self):
        self.daily: Dict[Tuple[str, str], DailyMetric] = {}
        self.aggregates: Dict[Tuple[str, str, str], AggregateMetric] = {}

    async def upsert_daily_metric(self, metric: DailyMetric) -> bool:
        key = (metric.organization_id, parse_iso_date(metric.date).isoformat())
        created = key not in self.daily
        self.daily[key] = metric.model_copy(deep=True)
        return created

    async def upsert_aggregate_metric(self, metric: AggregateMetric) -> bool:
        key = (metric.organization_id, metric.period_type, metric.period_key)
        created = key not in self.aggregates
        self.aggregates[key] = metric.model_copy(deep=True)
        return created

    async def get_daily_metrics(self, organization_id: str, start_date: Any, end_date: Any) -> List[DailyMetric]:
        start: date = parse_iso_date(start_date)
        end: date = parse_iso_date(end_date)
        return [
            metric.model_copy(deep=True)
            for (org, day), metric in sorted(self.daily.items())
            if org == organization_id and start <= date.fromisoformat(day) <= end
        ]

    async def get_aggregate_metric(
        self, organization_id: str, period_type: str, period_key: str,
    ) -> Optional[AggregateMetric]:
        metric = self.aggregates.get((organization_id, period_type, period_key))
        return None if metric is None else metric.model_copy(deep=True)
