"""
Test Suite Configuration
"""
from typing import Any, Dict, List

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from profitlens.config import Settings
from profitlens.config.settings import AnalyticsSettings
from profitlens.database.models import Base
from profitlens.ingestion.sources import InMemoryTableReader
from profitlens.utils.dates import date_to_ms, parse_iso_date

ORG_ID = "org_1"


def at(day: str, hour: int = 12) -> int:
    """Epoch milliseconds for an hour of a UTC calendar day"""
    return date_to_ms(parse_iso_date(day)) + hour * 3_600_000


@pytest.fixture
def test_settings() -> Settings:
    """Create test settings"""
    return Settings(
        APP_ENV="testing",
        analytics=AnalyticsSettings(cache_enabled=False),
    )


@pytest.fixture
async def session_factory():
    """In-memory SQLite metric store schema"""
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        echo=False,
        poolclass=StaticPool,
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield async_sessionmaker(bind=engine, class_=AsyncSession, expire_on_commit=False)

    await engine.dispose()


@pytest.fixture
def source_tables() -> Dict[str, List[Dict[str, Any]]]:
    """
    Two days of store data for org_1.

    2024-01-15: o1 (override-covered line), o2 (COD, uncovered line), ad spend
    2024-01-16: o3, a voided order o4 and a refund of o1
    """
    return {
        "orders": [
            {
                "_id": "o1", "organizationId": ORG_ID, "createdAt": at("2024-01-15", 10),
                "totalPrice": 100, "subtotalPrice": 100, "totalDiscounts": 10,
                "customerId": "c1", "financialStatus": "paid",
            },
            {
                "_id": "o2", "organizationId": ORG_ID, "createdAt": at("2024-01-15", 14),
                "totalPrice": 50, "subtotalPrice": 50, "totalDiscounts": 0,
                "customerId": "c2", "financialStatus": "pending",
            },
            {
                "_id": "o3", "organizationId": ORG_ID, "createdAt": at("2024-01-16", 9),
                "totalPrice": 80, "subtotalPrice": 80, "totalDiscounts": 0,
                "customerId": "c1", "financialStatus": "paid",
            },
            {
                "_id": "o4", "organizationId": ORG_ID, "createdAt": at("2024-01-16", 11),
                "totalPrice": 30, "subtotalPrice": 30, "totalDiscounts": 0,
                "customerId": "c3", "financialStatus": "voided",
            },
        ],
        "line_items": [
            {"_id": "li1", "orderId": "o1", "variantId": "v1", "quantity": 2, "price": 55, "totalDiscount": 10},
            {"_id": "li2", "orderId": "o2", "variantId": "v2", "quantity": 1, "price": 50},
            {"_id": "li3", "orderId": "o3", "variantId": "v2", "quantity": 2, "price": 40},
            {"_id": "li4", "orderId": "o4", "variantId": "v2", "quantity": 1, "price": 30},
        ],
        "transactions": [
            {"_id": "t1", "orderId": "o1", "amount": 100, "gateway": "stripe"},
            {"_id": "t2", "orderId": "o2", "amount": 50, "gateway": "Cash on Delivery"},
            {"_id": "t3", "orderId": "o3", "amount": 80, "gateway": "stripe"},
        ],
        "refunds": [
            {"_id": "rf1", "orderId": "o1", "amount": 10, "processedAt": at("2024-01-16", 15)},
        ],
        "customers": [
            {"_id": "c1", "organizationId": ORG_ID, "ordersCount": 2},
            {"_id": "c2", "organizationId": ORG_ID, "ordersCount": 5},
            {"_id": "c3", "organizationId": ORG_ID, "ordersCount": 1},
        ],
        "variant_costs": [
            {"_id": "vc1", "organizationId": ORG_ID, "variantId": "v1", "cogsPerUnit": 20},
        ],
        "cost_rules": [
            {
                "_id": "r1", "organizationId": ORG_ID, "name": "Product cost",
                "type": "product", "calculation": "percentage", "value": 5,
            },
            {
                "_id": "r2", "organizationId": ORG_ID, "name": "Software",
                "type": "operational", "calculation": "fixed", "frequency": "monthly", "value": 310,
            },
        ],
        "ad_insights": [
            {
                "_id": "a1", "organizationId": ORG_ID, "date": "2024-01-15", "platform": "meta",
                "entityType": "account", "spend": 20, "impressions": 1000, "clicks": 50,
                "conversions": 2, "conversionValue": 120,
            },
            {
                "_id": "a2", "organizationId": ORG_ID, "date": "2024-01-15", "platform": "meta",
                "entityType": "campaign", "spend": 20, "impressions": 1000, "clicks": 50,
            },
        ],
        "shop_analytics": [
            {"_id": "s1", "organizationId": ORG_ID, "date": "2024-01-15", "sessions": 100, "visitors": 80},
        ],
    }


@pytest.fixture
def reader(source_tables) -> InMemoryTableReader:
    """Reader over the sample tables with no read ceiling"""
    return InMemoryTableReader(source_tables)
