"""
Weekly and Monthly Rollup

Re-sums additive daily fields per ISO week or calendar month with polars and
recomputes every ratio from the summed totals. A rollup always starts from
the day-level records, so re-running it for the same key overwrites rather
than double-adds.
"""

from datetime import datetime, timezone
from typing import Dict, Iterable, List, Sequence

import polars as pl
import structlog

from profitlens.transformation.metrics import (
    ADDITIVE_FIELDS,
    COUNT_FIELDS,
    MONEY_FIELDS,
    AggregateMetric,
    DailyMetric,
    derive_metrics,
)
from profitlens.utils.dates import (
    PERIOD_MONTH,
    PERIOD_WEEK,
    parse_iso_date,
    period_bounds,
    period_key,
)

logger = structlog.get_logger(__name__)

PERIOD_TYPES = (PERIOD_WEEK, PERIOD_MONTH)

_SCHEMA = {
    "date": pl.Utf8,
    "period_key": pl.Utf8,
    **{name: pl.Float64 for name in MONEY_FIELDS},
    **{name: pl.Int64 for name in COUNT_FIELDS},
}


def affected_periods(dates: Iterable[str]) -> Dict[str, List[str]]:
    """period type -> sorted period keys touched by the given dates"""
    periods: Dict[str, set] = {period_type: set() for period_type in PERIOD_TYPES}
    for value in dates:
        day = parse_iso_date(value)
        for period_type in PERIOD_TYPES:
            periods[period_type].add(period_key(day, period_type))
    return {period_type: sorted(keys) for period_type, keys in periods.items()}


class MetricsRollup:
    """
    Rolls daily metrics into period aggregates.

    Example:
        rollup = MetricsRollup()
        weeks = rollup.rollup("org_1", "week", daily_metrics)
    """

    def __init__(self, precision: int = 2):
        self.precision = precision

    def _frame(self, period_type: str, daily: Sequence[DailyMetric]) -> pl.DataFrame:
        rows = []
        for metric in daily:
            row = {name: float(getattr(metric, name)) for name in MONEY_FIELDS}
            row.update({name: int(getattr(metric, name)) for name in COUNT_FIELDS})
            row["date"] = metric.date
            row["period_key"] = period_key(parse_iso_date(metric.date), period_type)
            rows.append(row)
        return pl.DataFrame(rows, schema=_SCHEMA)

    def rollup(
        self,
        organization_id: str,
        period_type: str,
        daily: Sequence[DailyMetric],
    ) -> List[AggregateMetric]:
        """
        Aggregate daily records into one record per period key.

        Args:
            organization_id: Tenant the records belong to
            period_type: "week" (ISO-8601) or "month"
            daily: Day-level records; each date should appear once
        """
        if period_type not in PERIOD_TYPES:
            raise ValueError(f"Unsupported period type: {period_type}")
        if not daily:
            return []

        by_date = {metric.date: metric for metric in daily}
        frame = self._frame(period_type, list(by_date.values()))
        grouped = (
            frame.group_by("period_key")
            .agg(
                [pl.col(name).sum() for name in ADDITIVE_FIELDS]
                + [pl.col("date").sort().alias("dates")]
            )
            .sort("period_key")
        )

        aggregates = []
        now = datetime.now(timezone.utc)
        for row in grouped.iter_rows(named=True):
            key = row["period_key"]
            dates = list(row["dates"])
            totals = {name: row[name] for name in ADDITIVE_FIELDS}
            totals.update(self.combine_keyed([by_date[day] for day in dates]))

            start, end = period_bounds(period_type, key)
            aggregates.append(AggregateMetric(
                organization_id=organization_id,
                period_type=period_type,
                period_key=key,
                start_date=start.isoformat(),
                end_date=end.isoformat(),
                days_included=len(dates),
                dates=dates,
                has_full_coverage=len(dates) == (end - start).days + 1,
                updated_at=now,
                **derive_metrics(totals, self.precision),
            ))

        logger.debug(
            "Rollup computed",
            organization_id=organization_id,
            period_type=period_type,
            periods=len(aggregates),
        )
        return aggregates

    @staticmethod
    def combine_keyed(daily: Sequence[DailyMetric]) -> Dict[str, object]:
        """Union customer sets and sum per-platform maps"""
        platform_spend: Dict[str, float] = {}
        platform_value: Dict[str, float] = {}
        customer_ids: set = set()
        new_customer_ids: set = set()
        for metric in daily:
            for platform, amount in metric.platform_spend.items():
                platform_spend[platform] = platform_spend.get(platform, 0.0) + amount
            for platform, amount in metric.platform_conversion_value.items():
                platform_value[platform] = platform_value.get(platform, 0.0) + amount
            customer_ids.update(metric.customer_ids)
            new_customer_ids.update(metric.new_customer_ids)
        return {
            "platform_spend": platform_spend,
            "platform_conversion_value": platform_value,
            "customer_ids": customer_ids,
            "new_customer_ids": new_customer_ids,
        }

    def rollup_period(
        self,
        organization_id: str,
        period_type: str,
        key: str,
        daily: Sequence[DailyMetric],
    ) -> AggregateMetric:
        """Aggregate for a single period; empty periods yield a zeroed record"""
        start, end = period_bounds(period_type, key)
        in_period = [
            metric for metric in daily
            if start <= parse_iso_date(metric.date) <= end
        ]
        aggregates = self.rollup(organization_id, period_type, in_period)
        if aggregates:
            return aggregates[0]
        return AggregateMetric(
            organization_id=organization_id,
            period_type=period_type,
            period_key=key,
            start_date=start.isoformat(),
            end_date=end.isoformat(),
            updated_at=datetime.now(timezone.utc),
            **derive_metrics({}, self.precision),
        )
