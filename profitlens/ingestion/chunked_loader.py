"""
Chunked Dataset Loader

Streams the records needed for range analytics out of a quota-constrained
store. Two tracks:

- Primary (order-keyed): orders by creation time, each page carrying the
  child rows (line items, transactions, refunds, ...) of its orders.
- Supplemental: ad insights, cost rules, sessions and shop analytics, each
  paged independently by its own cursor.

On a read-quota error the page size for that dataset is halved (never below
its floor) and the same cursor is retried. Pages are merged into run-scoped
``RecordIndex`` instances so overlapping pages never produce duplicates.
"""

import asyncio
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Set

import structlog

from profitlens.config import get_settings
from profitlens.config.settings import LoaderSettings
from profitlens.exceptions import LoaderFatalError, is_quota_exceeded
from profitlens.ingestion.identity import RecordIndex, field_value, record_id
from profitlens.ingestion.rate_limiter import TokenBucket
from profitlens.ingestion.sources import (
    ALL_DATASETS,
    FULFILLMENTS,
    LINE_ITEMS,
    ORDER_CHILD_DATASETS,
    ORDERS,
    REFUNDS,
    SECONDARY_DATASETS,
    SUPPLEMENTAL_DATASETS,
    TRANSACTIONS,
    Page,
    PagedTableReader,
)
from profitlens.utils.dates import DateRange

logger = structlog.get_logger(__name__)

_ORDER_KEYED = (LINE_ITEMS, TRANSACTIONS, REFUNDS, FULFILLMENTS)


@dataclass
class AnalyticsSourceData:
    """Merged result of one loader run; every dataset is a list, possibly empty"""
    orders: List[Dict[str, Any]] = field(default_factory=list)
    line_items: List[Dict[str, Any]] = field(default_factory=list)
    transactions: List[Dict[str, Any]] = field(default_factory=list)
    refunds: List[Dict[str, Any]] = field(default_factory=list)
    fulfillments: List[Dict[str, Any]] = field(default_factory=list)
    customers: List[Dict[str, Any]] = field(default_factory=list)
    products: List[Dict[str, Any]] = field(default_factory=list)
    variants: List[Dict[str, Any]] = field(default_factory=list)
    variant_costs: List[Dict[str, Any]] = field(default_factory=list)
    ad_insights: List[Dict[str, Any]] = field(default_factory=list)
    cost_rules: List[Dict[str, Any]] = field(default_factory=list)
    sessions: List[Dict[str, Any]] = field(default_factory=list)
    shop_analytics: List[Dict[str, Any]] = field(default_factory=list)
    meta: Dict[str, Any] = field(default_factory=dict)

    def dataset(self, key: str) -> List[Dict[str, Any]]:
        if key not in ALL_DATASETS:
            raise KeyError(key)
        return getattr(self, key)


@dataclass
class _TrackState:
    """Per-dataset pagination state"""
    dataset: str
    page_size: int
    min_page_size: int
    initial_page_size: int = 0
    pages_fetched: int = 0
    reductions: int = 0

    def __post_init__(self) -> None:
        self.page_size = max(self.page_size, self.min_page_size)
        self.initial_page_size = self.page_size


class ChunkedDatasetLoader:
    """
    Adaptive, quota-aware loader.

    Example:
        loader = ChunkedDatasetLoader(reader)
        data = await loader.load("org_1", DateRange("2024-01-01", "2024-01-31"))
    """

    def __init__(
        self,
        reader: PagedTableReader,
        settings: Optional[LoaderSettings] = None,
        rate_limiter: Optional[TokenBucket] = None,
        page_sizes: Optional[Dict[str, int]] = None,
        min_page_sizes: Optional[Dict[str, int]] = None,
    ):
        self.reader = reader
        self.settings = settings or get_settings().loader
        if rate_limiter is None and self.settings.rate_limit_per_second:
            rate_limiter = TokenBucket(
                rate=self.settings.rate_limit_per_second,
                capacity=self.settings.rate_limit_burst,
            )
        self.rate_limiter = rate_limiter
        self._page_sizes = page_sizes or {}
        self._min_page_sizes = min_page_sizes or {}

    def _initial_state(self, dataset: str) -> _TrackState:
        if dataset == ORDERS:
            default_size = self.settings.order_page_size
            default_floor = self.settings.order_min_page_size
        elif dataset in SECONDARY_DATASETS:
            default_size = self.settings.secondary_page_size
            default_floor = self.settings.supplemental_min_page_size
        else:
            default_size = self.settings.supplemental_page_size
            default_floor = self.settings.supplemental_min_page_size
        return _TrackState(
            dataset=dataset,
            page_size=self._page_sizes.get(dataset, default_size),
            min_page_size=self._min_page_sizes.get(dataset, default_floor),
        )

    @staticmethod
    def _resolve_datasets(datasets: Optional[Iterable[str]]) -> Set[str]:
        if datasets is None:
            return set(ALL_DATASETS)
        requested = set(datasets)
        unknown = requested - set(ALL_DATASETS)
        if unknown:
            raise ValueError(f"Unknown datasets: {sorted(unknown)}")
        return requested

    async def load(
        self,
        organization_id: str,
        date_range: Any,
        datasets: Optional[Iterable[str]] = None,
        max_orders: Optional[int] = None,
        timezone_offset_minutes: Optional[int] = None,
    ) -> AnalyticsSourceData:
        """
        Load every requested dataset for an organization and date range.

        Args:
            organization_id: Tenant whose records are read
            date_range: DateRange or ``{"startDate", "endDate"}`` mapping
            datasets: Optional allow-list of dataset keys
            max_orders: Optional cap on the number of orders loaded
            timezone_offset_minutes: Store offset the dates are local to; the
                fetch window covers local midnight to local midnight

        Raises:
            InvalidDateRangeError: before any fetch, for a bad range
            LoaderFatalError: non-quota store error, or quota error at the floor
        """
        date_range = DateRange.coerce(date_range)
        if timezone_offset_minutes is not None:
            date_range = date_range.with_offset(timezone_offset_minutes)
        requested = self._resolve_datasets(datasets)
        if max_orders is not None and max_orders < 1:
            raise ValueError("max_orders must be at least 1")

        indexes = {key: RecordIndex(key) for key in ALL_DATASETS}
        states: Dict[str, _TrackState] = {}
        primary_meta: Dict[str, Any] = {"truncated_orders": False}

        jobs = []
        if ORDERS in requested or requested & set(ORDER_CHILD_DATASETS):
            states[ORDERS] = self._initial_state(ORDERS)
            jobs.append(self._load_primary(
                organization_id, date_range, states[ORDERS], indexes, max_orders, primary_meta,
            ))
        for dataset in SUPPLEMENTAL_DATASETS:
            if dataset in requested:
                states[dataset] = self._initial_state(dataset)
                jobs.append(self._load_supplemental(
                    organization_id, date_range, states[dataset], indexes[dataset],
                ))

        logger.info(
            "Loading analytics source data",
            organization_id=organization_id,
            start_date=date_range.start_date,
            end_date=date_range.end_date,
            datasets=sorted(requested),
            max_orders=max_orders,
        )
        await self._run_concurrently(jobs)

        result = AnalyticsSourceData()
        for key in ALL_DATASETS:
            if key in requested:
                setattr(result, key, indexes[key].values())

        result.meta = {
            "organization_id": organization_id,
            "date_range": date_range.to_wire(),
            "timezone_offset_minutes": date_range.offset_minutes,
            "datasets": sorted(requested),
            "max_orders": max_orders,
            "processed_order_count": len(indexes[ORDERS]),
            "truncated_orders": primary_meta["truncated_orders"],
            "page_sizes": {key: state.page_size for key, state in states.items()},
            "page_size_reductions": {
                key: state.page_size for key, state in states.items() if state.reductions
            },
            "pages_fetched": {key: state.pages_fetched for key, state in states.items()},
            "duplicates_dropped": {
                key: index.duplicates for key, index in indexes.items() if index.duplicates
            },
        }
        logger.info(
            "Analytics source data loaded",
            organization_id=organization_id,
            orders=len(result.orders),
            truncated_orders=result.meta["truncated_orders"],
            page_size_reductions=result.meta["page_size_reductions"],
        )
        return result

    @staticmethod
    async def _run_concurrently(jobs: List[Any]) -> None:
        """Run dataset tracks side by side; the first failure cancels the rest"""
        tasks = [asyncio.ensure_future(job) for job in jobs]
        try:
            await asyncio.gather(*tasks)
        except BaseException:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise

    async def _fetch_with_backoff(
        self,
        organization_id: str,
        date_range: DateRange,
        state: _TrackState,
        cursor: Optional[str],
        page_size: int,
    ) -> Page:
        size = page_size
        while True:
            if self.rate_limiter is not None:
                await self.rate_limiter.acquire()
            try:
                page = await self.reader.fetch_page(
                    organization_id, date_range, state.dataset, cursor, size,
                )
            except Exception as e:
                if not is_quota_exceeded(e):
                    logger.error(
                        "Loader fatal store error",
                        dataset=state.dataset,
                        cursor=cursor,
                        error=str(e),
                        error_type=type(e).__name__,
                    )
                    raise LoaderFatalError(
                        f"Failed to fetch {state.dataset}: {e}", dataset=state.dataset,
                    ) from e
                if size <= state.min_page_size:
                    logger.error(
                        "Read quota exceeded at minimum page size",
                        dataset=state.dataset,
                        page_size=size,
                        cursor=cursor,
                    )
                    raise LoaderFatalError(
                        f"Read quota still exceeded for {state.dataset} at page size {size}",
                        dataset=state.dataset,
                    ) from e
                reduced = max(state.min_page_size, size // 2)
                logger.warning(
                    "Read quota exceeded, reducing page size",
                    dataset=state.dataset,
                    from_size=size,
                    to_size=reduced,
                    cursor=cursor,
                )
                state.page_size = reduced
                state.reductions += 1
                size = reduced
                continue

            state.pages_fetched += 1
            logger.debug(
                "Page fetched",
                dataset=state.dataset,
                page_size=size,
                records=len(page.records),
                is_done=page.is_done,
            )
            return page

    @staticmethod
    def _next_cursor(state: _TrackState, cursor: Optional[str], page: Page) -> Optional[str]:
        """Cursor for the next request, or None when the dataset is exhausted"""
        if page.is_done or not page.cursor:
            return None
        if page.cursor == cursor:
            raise LoaderFatalError(
                f"Cursor for {state.dataset} did not advance", dataset=state.dataset,
            )
        return page.cursor

    async def _load_primary(
        self,
        organization_id: str,
        date_range: DateRange,
        state: _TrackState,
        indexes: Dict[str, RecordIndex],
        max_orders: Optional[int],
        primary_meta: Dict[str, Any],
    ) -> None:
        orders = indexes[ORDERS]
        cursor: Optional[str] = None
        while True:
            request_size = state.page_size
            if max_orders is not None:
                remaining = max_orders - len(orders)
                request_size = max(state.min_page_size, min(state.page_size, remaining))

            page = await self._fetch_with_backoff(organization_id, date_range, state, cursor, request_size)

            kept_ids = set()
            overflow = False
            for order in page.records:
                if max_orders is not None and len(orders) >= max_orders:
                    overflow = True
                    break
                orders.add(order)
                kept_ids.add(record_id(order))

            for child in ORDER_CHILD_DATASETS:
                rows = page.related.get(child, [])
                if overflow and child in _ORDER_KEYED:
                    rows = [
                        row for row in rows
                        if str(field_value(row, "orderId", "order_id")) in kept_ids
                    ]
                indexes[child].extend(rows)

            next_cursor = self._next_cursor(state, cursor, page)
            if max_orders is not None and len(orders) >= max_orders:
                primary_meta["truncated_orders"] = overflow or next_cursor is not None
                if primary_meta["truncated_orders"]:
                    logger.info(
                        "Order limit reached, truncating",
                        max_orders=max_orders,
                        processed_order_count=len(orders),
                    )
                break
            if next_cursor is None:
                break
            cursor = next_cursor

        logger.debug("Dataset done", dataset=ORDERS, records=len(orders), pages=state.pages_fetched)

    async def _load_supplemental(
        self,
        organization_id: str,
        date_range: DateRange,
        state: _TrackState,
        index: RecordIndex,
    ) -> None:
        cursor: Optional[str] = None
        while True:
            page = await self._fetch_with_backoff(organization_id, date_range, state, cursor, state.page_size)
            index.extend(page.records)
            next_cursor = self._next_cursor(state, cursor, page)
            if next_cursor is None:
                break
            cursor = next_cursor

        logger.debug("Dataset done", dataset=state.dataset, records=len(index), pages=state.pages_fetched)
