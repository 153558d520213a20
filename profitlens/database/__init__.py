"""
Database Module
"""
from .connection import init_database, close_database, get_db, get_session_factory
from .models import Base, DailyMetricRecord, AggregateMetricRecord
from .repository import MetricStore, SqlMetricStore, InMemoryMetricStore

__all__ = [
    "init_database",
    "close_database",
    "get_db",
    "get_session_factory",
    "Base",
    "DailyMetricRecord",
    "AggregateMetricRecord",
    "MetricStore",
    "SqlMetricStore",
    "InMemoryMetricStore",
]
