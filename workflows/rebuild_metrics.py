"""
Prefect Workflow Orchestration - Daily Metrics Rebuild

Recomputes daily metrics for a trailing window and re-rolls the affected
ISO weeks and months:
- Task retries for transient store failures
- Per-date failures reported, not fatal
- Idempotent writes
"""

import json
from datetime import date, timedelta
from pathlib import Path
from typing import List, Optional

from prefect import flow, get_run_logger, task
from redis.exceptions import RedisError
from structlog.contextvars import bound_contextvars

from profitlens.config import get_settings
from profitlens.config.logging import configure_logging
from profitlens.database.connection import close_database, get_session_factory, init_database
from profitlens.database.repository import SqlMetricStore
from profitlens.ingestion.sources import InMemoryTableReader
from profitlens.serving.analytics import ANALYTICS_CACHE_NAMESPACE
from profitlens.serving.cache import CacheManager, close_redis, init_redis
from profitlens.transformation.transformers import DailyMetricsTransformer
from profitlens.utils.dates import parse_iso_date


# =============================================================================
# TASKS
# =============================================================================

@task(
    name="resolve_dates",
    description="Dates covered by a trailing rebuild window",
)
def resolve_dates(days_back: int = 7, end_date: Optional[str] = None) -> List[str]:
    """ISO dates from end_date - days_back + 1 through end_date"""
    if days_back < 1:
        raise ValueError("days_back must be at least 1")
    end = parse_iso_date(end_date) if end_date else date.today() - timedelta(days=1)
    return [(end - timedelta(days=offset)).isoformat() for offset in range(days_back - 1, -1, -1)]


@task(
    name="load_table_export",
    description="Read a JSON export of the source tables",
)
def load_table_export(tables_path: str) -> dict:
    """dataset key -> raw records"""
    with Path(tables_path).open(encoding="utf-8") as handle:
        tables = json.load(handle)
    if not isinstance(tables, dict):
        raise ValueError(f"Table export must be a JSON object: {tables_path}")
    return tables


@task(
    name="rebuild_daily_metrics",
    description="Recompute, upsert and roll up daily metrics",
    retries=3,
    retry_delay_seconds=60,
)
async def rebuild_daily_metrics(
    organization_id: str,
    dates: List[str],
    tables: dict,
    max_reads_per_request: Optional[int] = None,
) -> dict:
    """Run the transformer against the SQL metric store"""
    logger = get_run_logger()

    reader = InMemoryTableReader(tables, max_reads_per_request=max_reads_per_request)
    store = SqlMetricStore(get_session_factory())
    transformer = DailyMetricsTransformer(reader, store)
    with bound_contextvars(organization_id=organization_id, flow="rebuild_daily_metrics"):
        result = await transformer.rebuild_daily_metrics(organization_id, dates)

    logger.info(
        f"Rebuild complete for {organization_id}: {result.processed} processed, "
        f"{result.updated} updated, {result.skipped} skipped"
    )

    return {
        "organization_id": result.organization_id,
        "processed": result.processed,
        "updated": result.updated,
        "skipped": result.skipped,
        "skipped_dates": result.skipped_dates,
        "periods_rolled_up": result.periods_rolled_up,
        "duration_seconds": result.duration_seconds,
    }


@task(
    name="invalidate_analytics_cache",
    description="Drop cached range analytics of a rebuilt organization",
)
async def invalidate_analytics_cache(organization_id: str) -> int:
    """Number of cached results removed; 0 when caching is off or Redis is down"""
    logger = get_run_logger()

    if not get_settings().analytics.cache_enabled:
        return 0

    try:
        await init_redis()
        removed = await CacheManager(ANALYTICS_CACHE_NAMESPACE).invalidate_organization(organization_id)
    except RedisError as e:
        logger.warning(f"Analytics cache not invalidated for {organization_id}: {e}")
        return 0
    finally:
        await close_redis()

    logger.info(f"Invalidated {removed} cached analytics results for {organization_id}")
    return removed


# =============================================================================
# FLOWS
# =============================================================================

@flow(
    name="rebuild_daily_metrics",
    description="Rebuild daily metrics and weekly/monthly rollups",
)
async def rebuild_daily_metrics_flow(
    organization_id: str,
    days_back: int = 7,
    end_date: Optional[str] = None,
    tables_path: Optional[str] = None,
    max_reads_per_request: Optional[int] = None,
) -> dict:
    """
    Daily metrics rebuild.

    Steps:
    1. Resolve the trailing date window
    2. Load the source table export
    3. Recompute and upsert daily metrics, then re-roll periods
    4. Invalidate cached range analytics when anything changed
    """
    logger = get_run_logger()
    settings = get_settings()
    configure_logging()

    if not tables_path:
        raise ValueError("tables_path is required")

    dates = resolve_dates(days_back, end_date)
    logger.info(f"Rebuilding {organization_id} for {dates[0]}..{dates[-1]}")

    tables = load_table_export(tables_path)

    await init_database(create_tables=not settings.is_production)
    try:
        summary = await rebuild_daily_metrics(
            organization_id, dates, tables, max_reads_per_request=max_reads_per_request,
        )
    except Exception as e:
        logger.error(f"Rebuild failed for {organization_id}: {e}")
        raise
    finally:
        await close_database()

    if summary["updated"]:
        summary["cache_keys_invalidated"] = await invalidate_analytics_cache(organization_id)

    if summary["skipped_dates"]:
        logger.warning(f"Skipped dates: {', '.join(summary['skipped_dates'])}")

    return {
        "start_date": dates[0],
        "end_date": dates[-1],
        "status": "success",
        **summary,
    }


# =============================================================================
# DEPLOYMENT CONFIGURATION
# =============================================================================

if __name__ == "__main__":
    import argparse
    import asyncio

    parser = argparse.ArgumentParser(description="Rebuild daily metrics")
    parser.add_argument("organization_id")
    parser.add_argument("tables_path")
    parser.add_argument("--days-back", type=int, default=7)
    parser.add_argument("--end-date")
    args = parser.parse_args()

    asyncio.run(rebuild_daily_metrics_flow(
        args.organization_id,
        days_back=args.days_back,
        end_date=args.end_date,
        tables_path=args.tables_path,
    ))
