"""
Data Transformation Module
"""
from .cleaners import DateBucket, SourcePartitioner
from .cost_allocation import CostAllocationEngine, OrderCostBreakdown, DateCostAllocation, prorate_fixed_cost
from .metrics import AggregateMetric, DailyMetric, MetricsAccumulator, derive_metrics
from .rollup import MetricsRollup
from .transformers import DailyMetricsTransformer, RebuildResult, compute_daily_metrics

__all__ = [
    "DateBucket",
    "SourcePartitioner",
    "CostAllocationEngine",
    "OrderCostBreakdown",
    "DateCostAllocation",
    "prorate_fixed_cost",
    "AggregateMetric",
    "DailyMetric",
    "MetricsAccumulator",
    "derive_metrics",
    "MetricsRollup",
    "DailyMetricsTransformer",
    "RebuildResult",
    "compute_daily_metrics",
]
