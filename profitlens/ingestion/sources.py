"""
Paged table reader contract

The loader only needs ``fetch_page``; ``InMemoryTableReader`` is a reference
implementation over plain dict tables with an optional per-request read
ceiling, mirroring the quota behaviour of the transactional store.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Mapping, Optional, Protocol, Set, runtime_checkable

import structlog

from profitlens.exceptions import QuotaExceededError
from profitlens.ingestion.identity import field_value, record_id
from profitlens.utils.dates import DateRange, parse_iso_date
from profitlens.utils.money import safe_number

logger = structlog.get_logger(__name__)


# Primary (order-keyed) track
ORDERS = "orders"
LINE_ITEMS = "line_items"
TRANSACTIONS = "transactions"
REFUNDS = "refunds"
FULFILLMENTS = "fulfillments"
CUSTOMERS = "customers"
PRODUCTS = "products"
VARIANTS = "variants"
VARIANT_COSTS = "variant_costs"

ORDER_CHILD_DATASETS = (
    LINE_ITEMS,
    TRANSACTIONS,
    REFUNDS,
    FULFILLMENTS,
    CUSTOMERS,
    PRODUCTS,
    VARIANTS,
    VARIANT_COSTS,
)

# Supplemental track, each paged by its own cursor
AD_INSIGHTS = "ad_insights"
COST_RULES = "cost_rules"
SESSIONS = "sessions"
SHOP_ANALYTICS = "shop_analytics"

SUPPLEMENTAL_DATASETS = (AD_INSIGHTS, COST_RULES, SESSIONS, SHOP_ANALYTICS)
SECONDARY_DATASETS = frozenset({SESSIONS, SHOP_ANALYTICS})

ALL_DATASETS = (ORDERS,) + ORDER_CHILD_DATASETS + SUPPLEMENTAL_DATASETS


@dataclass
class Page:
    """One bounded fetch; ``related`` carries child rows of a primary-track page"""
    records: List[Dict[str, Any]] = field(default_factory=list)
    cursor: Optional[str] = None
    is_done: bool = True
    related: Dict[str, List[Dict[str, Any]]] = field(default_factory=dict)

    @property
    def read_count(self) -> int:
        return len(self.records) + sum(len(rows) for rows in self.related.values())


@runtime_checkable
class PagedTableReader(Protocol):
    """Store capability consumed by the loader"""

    async def fetch_page(
        self,
        organization_id: str,
        date_range: DateRange,
        dataset_key: str,
        cursor: Optional[str],
        page_size: int,
    ) -> Page:
        ...


def _timestamp(record: Mapping[str, Any], *keys: str) -> float:
    return safe_number(field_value(record, *keys))


def _in_day_range(value: Any, date_range: DateRange) -> bool:
    try:
        day = parse_iso_date(value)
    except ValueError:
        return False
    return date_range.start <= day <= date_range.end


def _window_overlaps(record: Mapping[str, Any], date_range: DateRange) -> bool:
    starts = field_value(record, "effectiveFrom", "effective_from")
    ends = field_value(record, "effectiveTo", "effective_to")
    if starts is not None and safe_number(starts) > date_range.end_ms:
        return False
    if ends is not None and safe_number(ends) < date_range.start_ms:
        return False
    return True


class InMemoryTableReader:
    """
    Paged reader over in-memory tables.

    Args:
        tables: dataset key -> list of raw records (camelCase or snake_case)
        max_reads_per_request: Read ceiling per fetch (page rows plus related
            rows); exceeding it raises ``QuotaExceededError``
    """

    def __init__(
        self,
        tables: Optional[Mapping[str, Iterable[Mapping[str, Any]]]] = None,
        max_reads_per_request: Optional[int] = None,
    ):
        self.tables: Dict[str, List[Dict[str, Any]]] = {
            key: [dict(row) for row in rows] for key, rows in (tables or {}).items()
        }
        self.max_reads_per_request = max_reads_per_request
        self.calls: List[Dict[str, Any]] = []

    def _rows(self, dataset_key: str, organization_id: str) -> List[Dict[str, Any]]:
        rows = self.tables.get(dataset_key, [])
        return [
            row for row in rows
            if field_value(row, "organizationId", "organization_id") in (None, organization_id)
        ]

    def _select(self, organization_id: str, date_range: DateRange, dataset_key: str) -> List[Dict[str, Any]]:
        rows = self._rows(dataset_key, organization_id)
        if dataset_key == ORDERS:
            rows = [
                row for row in rows
                if date_range.start_ms
                <= _timestamp(row, "createdAt", "shopifyCreatedAt", "created_at")
                <= date_range.end_ms
            ]
            rows.sort(key=lambda row: (
                _timestamp(row, "createdAt", "shopifyCreatedAt", "created_at"),
                record_id(row) or "",
            ))
        elif dataset_key in (AD_INSIGHTS, SHOP_ANALYTICS):
            rows = [row for row in rows if _in_day_range(row.get("date"), date_range)]
            rows.sort(key=lambda row: (str(row.get("date")), record_id(row) or ""))
        elif dataset_key == SESSIONS:
            rows = [
                row for row in rows
                if date_range.start_ms <= _timestamp(row, "startTime", "start_time") <= date_range.end_ms
            ]
            rows.sort(key=lambda row: (_timestamp(row, "startTime", "start_time"), record_id(row) or ""))
        elif dataset_key == COST_RULES:
            rows = [
                row for row in rows
                if field_value(row, "isActive", "is_active") is not False and _window_overlaps(row, date_range)
            ]
        return rows

    def _related(self, organization_id: str, orders: List[Dict[str, Any]]) -> Dict[str, List[Dict[str, Any]]]:
        order_ids = {record_id(order) for order in orders}
        customer_ids = {
            str(field_value(order, "customerId", "customer_id"))
            for order in orders
            if field_value(order, "customerId", "customer_id") is not None
        }

        def by_order(dataset_key: str) -> List[Dict[str, Any]]:
            return [
                row for row in self._rows(dataset_key, organization_id)
                if str(field_value(row, "orderId", "order_id")) in order_ids
            ]

        line_items = by_order(LINE_ITEMS)
        variant_ids: Set[str] = {
            str(field_value(item, "variantId", "variant_id"))
            for item in line_items
            if field_value(item, "variantId", "variant_id") is not None
        }
        product_ids: Set[str] = {
            str(field_value(item, "productId", "product_id"))
            for item in line_items
            if field_value(item, "productId", "product_id") is not None
        }

        return {
            LINE_ITEMS: line_items,
            TRANSACTIONS: by_order(TRANSACTIONS),
            REFUNDS: by_order(REFUNDS),
            FULFILLMENTS: by_order(FULFILLMENTS),
            CUSTOMERS: [row for row in self._rows(CUSTOMERS, organization_id) if record_id(row) in customer_ids],
            PRODUCTS: [row for row in self._rows(PRODUCTS, organization_id) if record_id(row) in product_ids],
            VARIANTS: [row for row in self._rows(VARIANTS, organization_id) if record_id(row) in variant_ids],
            VARIANT_COSTS: [
                row for row in self._rows(VARIANT_COSTS, organization_id)
                if str(field_value(row, "variantId", "variant_id")) in variant_ids
            ],
        }

    async def fetch_page(
        self,
        organization_id: str,
        date_range: DateRange,
        dataset_key: str,
        cursor: Optional[str],
        page_size: int,
    ) -> Page:
        self.calls.append({"dataset": dataset_key, "cursor": cursor, "page_size": page_size})
        rows = self._select(organization_id, date_range, dataset_key)
        offset = int(cursor) if cursor else 0
        records = rows[offset:offset + page_size]
        related = self._related(organization_id, records) if dataset_key == ORDERS else {}
        page_end = offset + len(records)
        is_done = page_end >= len(rows)
        page = Page(
            records=records,
            cursor=None if is_done else str(page_end),
            is_done=is_done,
            related=related,
        )

        if self.max_reads_per_request is not None and page.read_count > self.max_reads_per_request:
            raise QuotaExceededError(
                f"Too many reads in a single request ({page.read_count} > {self.max_reads_per_request})",
                dataset=dataset_key,
                page_size=page_size,
            )
        return page
