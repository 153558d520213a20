"""
Data Ingestion Module
"""
from .chunked_loader import AnalyticsSourceData, ChunkedDatasetLoader
from .identity import RecordIndex
from .rate_limiter import TokenBucket
from .sources import InMemoryTableReader, Page, PagedTableReader

__all__ = [
    "AnalyticsSourceData",
    "ChunkedDatasetLoader",
    "RecordIndex",
    "TokenBucket",
    "InMemoryTableReader",
    "Page",
    "PagedTableReader",
]
