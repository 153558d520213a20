"""
Unit Tests - Data Transformation
"""
import math

import pytest

from profitlens.config import Settings
from profitlens.config.settings import AnalyticsSettings
from profitlens.database.repository import InMemoryMetricStore
from profitlens.exceptions import LoaderFatalError
from profitlens.ingestion.chunked_loader import AnalyticsSourceData, ChunkedDatasetLoader
from profitlens.ingestion.schemas import Transaction
from profitlens.ingestion.sources import InMemoryTableReader
from profitlens.transformation import transformers
from profitlens.transformation.cleaners import SourcePartitioner
from profitlens.transformation.metrics import (
    COUNT_FIELDS,
    MONEY_FIELDS,
    DailyMetric,
    derive_metrics,
    payment_method,
)
from profitlens.transformation.rollup import MetricsRollup, affected_periods
from profitlens.transformation.transformers import DailyMetricsTransformer, compute_daily_metrics
from profitlens.utils.dates import DateRange, date_to_ms, parse_iso_date

ORG_ID = "org_1"


def _at(day: str, hour: int = 12, minute: int = 0) -> int:
    return date_to_ms(parse_iso_date(day)) + hour * 3_600_000 + minute * 60_000


def _daily(day: str, **totals) -> DailyMetric:
    return DailyMetric(organization_id=ORG_ID, date=day, **derive_metrics(totals))


async def _load(reader, settings, start="2024-01-15", end="2024-01-16") -> AnalyticsSourceData:
    loader = ChunkedDatasetLoader(reader, settings=settings.loader)
    return await loader.load(ORG_ID, DateRange(start, end))


class TestSourcePartitioner:
    """Tests for SourcePartitioner"""

    def test_orders_bucketed_with_store_offset(self):
        """A late-evening UTC order moves to the next day for a UTC+1 store"""
        source = AnalyticsSourceData(orders=[{"_id": "o1", "createdAt": _at("2024-01-15", 23, 30)}])

        utc, _ = SourcePartitioner().partition(source)
        shifted, _ = SourcePartitioner(timezone_offset_minutes=60).partition(source)

        assert list(utc) == ["2024-01-15"]
        assert list(shifted) == ["2024-01-16"]

    def test_children_follow_their_order(self):
        """Line items and transactions land on their order's date"""
        source = AnalyticsSourceData(
            orders=[{"_id": "o1", "createdAt": _at("2024-01-15")}],
            line_items=[{"_id": "li1", "orderId": "o1"}],
            transactions=[{"_id": "t1", "orderId": "o1", "processedAt": _at("2024-01-17")}],
        )

        buckets, _ = SourcePartitioner().partition(source)

        assert len(buckets["2024-01-15"].line_items) == 1
        assert len(buckets["2024-01-15"].transactions) == 1

    def test_refund_date_falls_back_to_order(self):
        """Refunds without a processed time use their order's date"""
        source = AnalyticsSourceData(
            orders=[{"_id": "o1", "createdAt": _at("2024-01-15")}],
            refunds=[
                {"_id": "rf1", "orderId": "o1"},
                {"_id": "rf2", "orderId": "o1", "processedAt": _at("2024-01-18")},
                {"_id": "rf3", "orderId": "gone"},
            ],
        )

        buckets, stats = SourcePartitioner().partition(source)

        assert [r["_id"] for r in buckets["2024-01-15"].refunds] == ["rf1"]
        assert [r["_id"] for r in buckets["2024-01-18"].refunds] == ["rf2"]
        assert stats.refunds_without_date == 1

    def test_campaign_insights_filtered(self):
        """Only account-level insight rows are kept by default"""
        rows = [
            {"_id": "a", "entityType": "account"},
            {"_id": "b", "entityType": "campaign"},
            {"_id": "c"},
        ]

        assert [r["_id"] for r in SourcePartitioner().filter_insights(rows)] == ["a", "c"]
        assert len(SourcePartitioner(account_level_insights_only=False).filter_insights(rows)) == 3

    def test_cancelled_orders_separated(self):
        """Cancelled orders are kept apart from revenue orders"""
        source = AnalyticsSourceData(orders=[
            {"_id": "o1", "createdAt": _at("2024-01-15")},
            {"_id": "o2", "createdAt": _at("2024-01-15"), "cancelledAt": _at("2024-01-15", 13)},
        ])
        partitioner = SourcePartitioner()
        buckets, _ = partitioner.partition(source)

        bucket = partitioner.normalize(buckets["2024-01-15"])

        assert [o.id for o in bucket.orders] == ["o1"]
        assert [o.id for o in bucket.cancelled_orders] == ["o2"]

    def test_first_order_dates(self):
        """Known first-order times win; customers with older orders are not new"""
        source = AnalyticsSourceData(
            orders=[
                {"_id": "o1", "createdAt": _at("2024-01-15"), "customerId": "c1"},
                {"_id": "o2", "createdAt": _at("2024-01-16"), "customerId": "c1"},
                {"_id": "o3", "createdAt": _at("2024-01-16"), "customerId": "c2"},
                {"_id": "o4", "createdAt": _at("2024-01-16"), "customerId": "c3"},
            ],
            customers=[
                {"_id": "c2", "ordersCount": 4},
                {"_id": "c3", "firstOrderAt": _at("2023-12-01")},
            ],
        )

        first = SourcePartitioner().first_order_dates(source)

        assert first == {"c1": "2024-01-15", "c3": "2023-12-01"}


class TestDeriveMetrics:
    """Tests for derived metric formulas"""

    def test_zero_denominators_yield_zero(self):
        """No orders, revenue, spend or units: every ratio is 0"""
        values = derive_metrics({"cogs": 5, "ad_spend": 0})

        for name, value in values.items():
            if isinstance(value, float):
                assert math.isfinite(value), name
        for name in (
            "net_profit_margin", "gross_profit_margin", "avg_order_value", "avg_order_cost",
            "profit_per_unit", "blended_roas", "poas", "customer_acquisition_cost",
            "blended_ctr", "conversion_rate", "repeat_customer_rate", "discount_rate",
        ):
            assert values[name] == 0, name

    def test_formulas(self):
        """Totals, profits and margins follow the documented definitions"""
        values = derive_metrics({
            "revenue": 200, "gross_sales": 220, "discounts": 20, "orders": 4, "units_sold": 8,
            "cogs": 60, "shipping_costs": 10, "handling_fees": 5, "transaction_fees": 6,
            "custom_costs": 4, "taxes_paid": 5, "ad_spend": 40, "clicks": 20, "impressions": 4000,
            "sessions": 80,
            "customer_ids": ["a", "b", "c"], "new_customer_ids": ["a"],
        })

        assert values["total_costs"] == 130
        assert values["net_profit"] == 70
        assert values["gross_profit"] == 160
        assert values["net_profit_margin"] == 35
        assert values["contribution_margin"] == 84
        assert values["discount_rate"] == 9.09
        assert values["avg_order_value"] == 50
        assert values["customer_acquisition_cost"] == 40
        assert values["returning_customers"] == 2
        assert values["repeat_customer_rate"] == 66.67
        assert values["blended_roas"] == 5
        assert values["blended_cpc"] == 2
        assert values["blended_cpm"] == 10
        assert values["conversion_rate"] == 5

    def test_counts_stay_integral(self):
        """Count fields are ints, money fields are rounded floats"""
        values = derive_metrics({"orders": 3, "revenue": 10.005})

        assert all(isinstance(values[name], int) for name in COUNT_FIELDS)
        assert all(isinstance(values[name], float) for name in MONEY_FIELDS)
        assert values["revenue"] == 10.01

    def test_platform_roas_falls_back_to_revenue(self):
        """Platforms without conversion value use total revenue"""
        values = derive_metrics({
            "revenue": 300,
            "platform_spend": {"meta": 50, "google": 100},
            "platform_conversion_value": {"meta": 200},
        })

        assert values["platform_roas"] == {"google": 3.0, "meta": 4.0}

    def test_payment_method(self):
        """COD gateways are detected case-insensitively"""
        cod = Transaction.model_validate({"_id": "t", "orderId": "o", "gateway": "Cash_On_Delivery"})
        card = Transaction.model_validate({"_id": "t", "orderId": "o", "gateway": "stripe"})

        assert payment_method([cod]) == "cod"
        assert payment_method([card]) == "prepaid"
        assert payment_method([]) == "other"


class TestComputeDailyMetrics:
    """Tests for per-date metric computation"""

    async def test_sample_days(self, reader, test_settings):
        """Allocation, ads, customers and traffic combine into one record per date"""
        source = await _load(reader, test_settings)

        result = compute_daily_metrics(ORG_ID, source, ["2024-01-15", "2024-01-16"], test_settings)
        first = result.metrics["2024-01-15"]
        second = result.metrics["2024-01-16"]

        assert first.revenue == 150
        assert first.gross_sales == 160
        assert first.cogs == 42.5
        assert first.custom_costs == 10
        assert first.ad_spend == 20
        assert first.total_costs == 72.5
        assert first.net_profit == 77.5
        assert first.net_profit_margin == 51.67
        assert (first.prepaid_orders, first.cod_orders) == (1, 1)
        assert (first.new_customers, first.returning_customers) == (1, 1)
        assert first.customer_acquisition_cost == 20
        assert first.platform_roas == {"meta": 6.0}
        assert first.sessions == 100
        assert first.conversion_rate == 2

        assert second.orders == 1
        assert second.cancelled_orders == 1
        assert second.revenue == 80
        assert second.refunds == 10
        assert second.cogs == 4
        assert second.new_customers == 0

    async def test_empty_date_is_zeroed(self, reader, test_settings):
        """A date with no records gets a zeroed metric"""
        source = await _load(reader, test_settings)

        result = compute_daily_metrics(ORG_ID, source, ["2024-01-20"], test_settings)

        assert result.metrics["2024-01-20"].revenue == 0
        assert result.metrics["2024-01-20"].orders == 0
        assert result.failures == {}

    def test_gateway_fees_replace_payment_rules(self, test_settings):
        """Fees reported on transactions win over the configured payment rule"""
        source = AnalyticsSourceData(
            orders=[
                {"_id": "o1", "createdAt": _at("2024-01-15"), "totalPrice": 100, "subtotalPrice": 100},
                {"_id": "o2", "createdAt": _at("2024-01-15"), "totalPrice": 40, "financialStatus": "voided"},
            ],
            transactions=[
                {"_id": "t1", "orderId": "o1", "amount": 100, "fee": 2.9, "gateway": "stripe"},
                {"_id": "t2", "orderId": "o2", "amount": 40, "fee": 1.5, "gateway": "stripe"},
            ],
            cost_rules=[{"_id": "r1", "type": "payment", "calculation": "percentage", "value": 3}],
        )

        result = compute_daily_metrics(ORG_ID, source, ["2024-01-15"], test_settings)

        assert result.metrics["2024-01-15"].transaction_fees == 2.9

    def test_payment_rules_without_gateway_fees(self, test_settings):
        """Without reported fees the payment rule is charged"""
        source = AnalyticsSourceData(
            orders=[{"_id": "o1", "createdAt": _at("2024-01-15"), "totalPrice": 100, "subtotalPrice": 100}],
            transactions=[{"_id": "t1", "orderId": "o1", "amount": 100, "gateway": "stripe"}],
            cost_rules=[{"_id": "r1", "type": "payment", "calculation": "percentage", "value": 3}],
        )

        result = compute_daily_metrics(ORG_ID, source, ["2024-01-15"], test_settings)

        assert result.metrics["2024-01-15"].transaction_fees == 3


class TestMetricsRollup:
    """Tests for MetricsRollup"""

    def test_weekly_rollup_recomputes_ratios(self):
        """Week totals are sums; margins come from the summed totals"""
        daily = [
            _daily("2024-01-15", revenue=100, cogs=20, orders=2),
            _daily("2024-01-16", revenue=300, cogs=50, orders=3),
            _daily("2024-01-22", revenue=50, orders=1),
        ]

        weeks = MetricsRollup().rollup(ORG_ID, "week", daily)

        assert [week.period_key for week in weeks] == ["2024-W03", "2024-W04"]
        week = weeks[0]
        assert week.revenue == sum(day.revenue for day in daily[:2])
        assert week.net_profit == 330
        assert week.net_profit_margin == round(week.net_profit / week.revenue * 100, 2)
        assert week.avg_order_value == 80
        assert week.days_included == 2
        assert week.dates == ["2024-01-15", "2024-01-16"]
        assert week.has_full_coverage is False

    def test_customers_unioned_across_days(self):
        """A customer active on several days is counted once"""
        daily = [
            _daily("2024-01-15", customer_ids=["c1", "c2"], new_customer_ids=["c1"]),
            _daily("2024-01-16", customer_ids=["c1"]),
        ]

        month = MetricsRollup().rollup(ORG_ID, "month", daily)[0]

        assert month.unique_customers == 2
        assert month.new_customers == 1
        assert month.period_key == "2024-01"
        assert (month.start_date, month.end_date) == ("2024-01-01", "2024-01-31")

    def test_platform_maps_summed(self):
        """Per-platform spend adds across days"""
        daily = [
            _daily("2024-01-15", ad_spend=10, platform_spend={"meta": 10}),
            _daily("2024-01-16", ad_spend=15, platform_spend={"meta": 5, "google": 10}),
        ]

        week = MetricsRollup().rollup(ORG_ID, "week", daily)[0]

        assert week.platform_spend == {"google": 10.0, "meta": 15.0}
        assert week.ad_spend == 25

    def test_full_week_coverage(self):
        """Seven contributing days cover an ISO week"""
        daily = [_daily(f"2024-01-{day:02d}", revenue=1) for day in range(15, 22)]

        week = MetricsRollup().rollup(ORG_ID, "week", daily)[0]

        assert week.has_full_coverage is True
        assert week.revenue == 7

    def test_empty_period_is_zeroed(self):
        """A period with no daily records rolls up to zeros"""
        aggregate = MetricsRollup().rollup_period(ORG_ID, "week", "2024-W10", [])

        assert aggregate.days_included == 0
        assert aggregate.revenue == 0
        assert aggregate.start_date == "2024-03-04"

    def test_unknown_period_type(self):
        """Only week and month are supported"""
        with pytest.raises(ValueError):
            MetricsRollup().rollup(ORG_ID, "quarter", [_daily("2024-01-15")])

    def test_affected_periods_across_year_boundary(self):
        """ISO weeks may belong to the next year"""
        periods = affected_periods(["2024-12-30", "2024-12-31"])

        assert periods == {"week": ["2025-W01"], "month": ["2024-12"]}


class TestDailyMetricsTransformer:
    """Tests for DailyMetricsTransformer"""

    async def test_rebuild_writes_and_rolls_up(self, reader, test_settings):
        """Each date is upserted and every touched week and month re-rolled"""
        store = InMemoryMetricStore()
        transformer = DailyMetricsTransformer(reader, store, settings=test_settings)

        result = await transformer.rebuild_daily_metrics(ORG_ID, ["2024-01-15", "2024-01-16"])

        assert (result.processed, result.updated, result.skipped) == (2, 2, 0)
        assert result.periods_rolled_up == 2
        week = await store.get_aggregate_metric(ORG_ID, "week", "2024-W03")
        assert week.revenue == 230
        assert week.days_included == 2

    async def test_rebuild_is_idempotent(self, reader, test_settings):
        """Re-running writes nothing new and never double-adds rollups"""
        store = InMemoryMetricStore()
        transformer = DailyMetricsTransformer(reader, store, settings=test_settings)
        dates = ["2024-01-15", "2024-01-16"]

        await transformer.rebuild_daily_metrics(ORG_ID, dates)
        again = await transformer.rebuild_daily_metrics(ORG_ID, dates)

        assert (again.processed, again.updated) == (2, 0)
        month = await store.get_aggregate_metric(ORG_ID, "month", "2024-01")
        assert month.revenue == 230

    async def test_changed_source_patches_one_date(self, source_tables, test_settings):
        """Only dates whose metrics changed are rewritten"""
        store = InMemoryMetricStore()
        dates = ["2024-01-15", "2024-01-16"]
        await DailyMetricsTransformer(InMemoryTableReader(source_tables), store, settings=test_settings) \
            .rebuild_daily_metrics(ORG_ID, dates)

        source_tables["orders"][2]["totalPrice"] = 90
        result = await DailyMetricsTransformer(InMemoryTableReader(source_tables), store, settings=test_settings) \
            .rebuild_daily_metrics(ORG_ID, dates)

        assert result.updated == 1
        stored = await store.get_daily_metrics(ORG_ID, "2024-01-16", "2024-01-16")
        assert stored[0].revenue == 90

    async def test_invalid_dates_skipped(self, reader, test_settings):
        """Malformed date strings are counted as skipped"""
        store = InMemoryMetricStore()
        transformer = DailyMetricsTransformer(reader, store, settings=test_settings)

        result = await transformer.rebuild_daily_metrics(ORG_ID, ["2024-01-15", "2024-13-01", "yesterday"])

        assert result.processed == 1
        assert result.skipped == 2
        assert result.skipped_dates == ["2024-13-01", "yesterday"]

    async def test_failing_date_skipped_others_continue(self, reader, test_settings, monkeypatch):
        """One date failing does not abort the rebuild"""
        original = transformers.build_daily_metric

        def flaky(organization_id, bucket, *args, **kwargs):
            if bucket.date == "2024-01-16":
                raise ValueError("malformed record")
            return original(organization_id, bucket, *args, **kwargs)

        monkeypatch.setattr(transformers, "build_daily_metric", flaky)
        store = InMemoryMetricStore()
        transformer = DailyMetricsTransformer(reader, store, settings=test_settings)

        result = await transformer.rebuild_daily_metrics(ORG_ID, ["2024-01-15", "2024-01-16"])

        assert result.processed == 1
        assert result.skipped_dates == ["2024-01-16"]
        assert len(await store.get_daily_metrics(ORG_ID, "2024-01-01", "2024-01-31")) == 1

    async def test_loader_failure_writes_nothing(self, source_tables, test_settings):
        """A fatal loader error aborts the rebuild before any write"""
        store = InMemoryMetricStore()
        reader = InMemoryTableReader(source_tables, max_reads_per_request=0)
        transformer = DailyMetricsTransformer(reader, store, settings=test_settings)

        with pytest.raises(LoaderFatalError):
            await transformer.rebuild_daily_metrics(ORG_ID, ["2024-01-15"])

        assert store.daily == {}
        assert store.aggregates == {}

    async def test_store_offset_applied_to_fetch_window(self):
        """Orders after local midnight but before UTC midnight count for the local date"""
        settings = Settings(
            APP_ENV="testing",
            analytics=AnalyticsSettings(cache_enabled=False, timezone_offset_minutes=330),
        )
        reader = InMemoryTableReader({"orders": [
            {"_id": "late", "createdAt": _at("2024-01-14", 20), "totalPrice": 30, "subtotalPrice": 30},
            {"_id": "noon", "createdAt": _at("2024-01-15", 12), "totalPrice": 50, "subtotalPrice": 50},
            {"_id": "next", "createdAt": _at("2024-01-15", 20), "totalPrice": 70, "subtotalPrice": 70},
        ]})
        store = InMemoryMetricStore()

        await DailyMetricsTransformer(reader, store, settings=settings).rebuild_daily_metrics(ORG_ID, ["2024-01-15"])

        stored = await store.get_daily_metrics(ORG_ID, "2024-01-15", "2024-01-15")
        assert stored[0].orders == 2
        assert stored[0].revenue == 80

    async def test_one_time_cost_charged_once_across_batches(self, test_settings):
        """Overlapping rebuild batches never charge a one-time cost twice"""
        reader = InMemoryTableReader({
            "orders": [
                {"_id": f"o{day}", "createdAt": _at(f"2024-01-0{day}"), "totalPrice": 100, "subtotalPrice": 100}
                for day in (1, 2, 3)
            ],
            "cost_rules": [{
                "_id": "setup", "type": "operational", "calculation": "fixed",
                "frequency": "one_time", "value": 500, "effectiveFrom": _at("2024-01-01", 0),
            }],
        })
        store = InMemoryMetricStore()
        transformer = DailyMetricsTransformer(reader, store, settings=test_settings)

        await transformer.rebuild_daily_metrics(ORG_ID, ["2024-01-01", "2024-01-02"])
        await transformer.rebuild_daily_metrics(ORG_ID, ["2024-01-02", "2024-01-03"])

        daily = await store.get_daily_metrics(ORG_ID, "2024-01-01", "2024-01-03")
        assert [(metric.date, metric.custom_costs) for metric in daily] == [
            ("2024-01-01", 500), ("2024-01-02", 0), ("2024-01-03", 0),
        ]
        month = await store.get_aggregate_metric(ORG_ID, "month", "2024-01")
        assert month.custom_costs == 500

    async def test_one_time_cost_lands_on_first_active_date(self, test_settings):
        """A rebuild starting after a quiet rule start still charges the first active date"""
        reader = InMemoryTableReader({
            "orders": [
                {"_id": "o5", "createdAt": _at("2024-01-05"), "totalPrice": 100, "subtotalPrice": 100},
            ],
            "cost_rules": [{
                "_id": "setup", "type": "operational", "calculation": "fixed",
                "frequency": "one_time", "value": 500, "effectiveFrom": _at("2024-01-01", 0),
            }],
        })
        store = InMemoryMetricStore()
        transformer = DailyMetricsTransformer(reader, store, settings=test_settings)

        await transformer.rebuild_daily_metrics(ORG_ID, ["2024-01-04", "2024-01-05"])

        daily = await store.get_daily_metrics(ORG_ID, "2024-01-04", "2024-01-05")
        assert [metric.custom_costs for metric in daily] == [0, 500]
