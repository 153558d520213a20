"""
Database Models

Engine-owned metric tables. Key columns are scalar and indexed; the metric
payload lives in a JSON column so new derived fields need no migration.
"""

from datetime import date, datetime
from typing import Any, Dict

from sqlalchemy import (
    JSON,
    Date,
    DateTime,
    Index,
    Integer,
    String,
    UniqueConstraint,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

MetricsJSON = JSON().with_variant(JSONB(), "postgresql")


class Base(DeclarativeBase):
    """Base class for all database models"""
    pass


class DailyMetricRecord(Base):
    """One row per (organization, date)"""

    __tablename__ = "daily_metrics"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    organization_id: Mapped[str] = mapped_column(String(64), nullable=False)
    metric_date: Mapped[date] = mapped_column("date", Date, nullable=False)
    metrics: Mapped[Dict[str, Any]] = mapped_column(MetricsJSON, nullable=False, default=dict)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    __table_args__ = (
        UniqueConstraint("organization_id", "date", name="uq_daily_metrics_org_date"),
        Index("ix_daily_metrics_org_date", "organization_id", "date"),
    )


class AggregateMetricRecord(Base):
    """One row per (organization, period type, period key)"""

    __tablename__ = "aggregate_metrics"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    organization_id: Mapped[str] = mapped_column(String(64), nullable=False)
    period_type: Mapped[str] = mapped_column(String(10), nullable=False)  # week | month
    period_key: Mapped[str] = mapped_column(String(10), nullable=False)  # 2024-W01 | 2024-01
    start_date: Mapped[date] = mapped_column(Date, nullable=False)
    end_date: Mapped[date] = mapped_column(Date, nullable=False)
    days_included: Mapped[int] = mapped_column(Integer, default=0)
    metrics: Mapped[Dict[str, Any]] = mapped_column(MetricsJSON, nullable=False, default=dict)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    __table_args__ = (
        UniqueConstraint(
            "organization_id", "period_type", "period_key", name="uq_aggregate_metrics_key"
        ),
        Index("ix_aggregate_metrics_org_type", "organization_id", "period_type"),
    )
