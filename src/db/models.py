"""SQLAlchemy ORM models for the experimentation engine.

Every table is tenant-scoped: queries always filter on ``tenant_id``.
"""

from datetime import datetime

from sqlalchemy import (
    BigInteger,
    Boolean,
    DateTime,
    Float,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    pass


class ABTestDB(Base):
    __tablename__ = "ab_tests"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String, index=True)
    name: Mapped[str] = mapped_column(String)
    test_type: Mapped[str] = mapped_column(String, default="landing_page")
    status: Mapped[str] = mapped_column(String, default="draft", index=True)
    goal_event: Mapped[str] = mapped_column(String, default="purchase")
    optimization_metric: Mapped[str] = mapped_column(String, default="conversion_rate")
    confidence_level: Mapped[float] = mapped_column(Float, default=0.95)
    allocation_mode: Mapped[str] = mapped_column(String, default="hash")
    exclusion_group_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    allow_overlap: Mapped[bool] = mapped_column(Boolean, default=False)
    config_version: Mapped[int] = mapped_column(Integer, default=0)
    guardrails: Mapped[list] = mapped_column(JSONB, default=list)
    max_duration_days: Mapped[int | None] = mapped_column(Integer, nullable=True)
    scheduled_start_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    scheduled_end_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    minimum_detectable_effect: Mapped[float | None] = mapped_column(Float, nullable=True)
    decision_state: Mapped[str] = mapped_column(String, default="running")
    winner_variant_id: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    ended_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class ABVariantDB(Base):
    __tablename__ = "ab_variants"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String, index=True)
    test_id: Mapped[str] = mapped_column(String, index=True)
    name: Mapped[str] = mapped_column(String)
    allocation: Mapped[float] = mapped_column(Float)
    is_control: Mapped[bool] = mapped_column(Boolean, default=False)
    position: Mapped[int] = mapped_column(Integer, default=0)
    shipping_suffix: Mapped[str | None] = mapped_column(String, nullable=True)
    shipping_price_cents: Mapped[int | None] = mapped_column(BigInteger, nullable=True)


class ExclusionGroupDB(Base):
    __tablename__ = "ab_exclusion_groups"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String, index=True)
    name: Mapped[str] = mapped_column(String, default="")
    test_ids: Mapped[list] = mapped_column(JSONB, default=list)


class ConfigVersionDB(Base):
    """Allocation snapshot written on every activation or allocation change."""

    __tablename__ = "ab_test_config_versions"

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    tenant_id: Mapped[str] = mapped_column(String, index=True)
    test_id: Mapped[str] = mapped_column(String, index=True)
    version: Mapped[int] = mapped_column(Integer)
    allocations: Mapped[dict] = mapped_column(JSONB, default=dict)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    __table_args__ = (
        UniqueConstraint("tenant_id", "test_id", "version", name="uq_test_config_version"),
    )


class AssignmentDB(Base):
    """Sticky visitor → variant assignment. Written once, never updated."""

    __tablename__ = "ab_assignments"

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    tenant_id: Mapped[str] = mapped_column(String)
    test_id: Mapped[str] = mapped_column(String)
    visitor_id: Mapped[str] = mapped_column(String)
    variant_id: Mapped[str] = mapped_column(String)
    config_version: Mapped[int] = mapped_column(Integer, default=0)
    device_type: Mapped[str | None] = mapped_column(String, nullable=True)
    traffic_source: Mapped[str | None] = mapped_column(String, nullable=True)
    covariate: Mapped[float | None] = mapped_column(Float, nullable=True)
    assigned_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    __table_args__ = (
        UniqueConstraint("tenant_id", "test_id", "visitor_id", name="uq_assignment_visitor"),
        Index("ix_assignment_visitor", "tenant_id", "visitor_id"),
    )


class EventDB(Base):
    """Append-only experiment event. ``id`` doubles as the aggregation watermark."""

    __tablename__ = "ab_events"

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    tenant_id: Mapped[str] = mapped_column(String)
    test_id: Mapped[str] = mapped_column(String)
    variant_id: Mapped[str] = mapped_column(String)
    visitor_id: Mapped[str] = mapped_column(String)
    event_type: Mapped[str] = mapped_column(String)
    value_cents: Mapped[int] = mapped_column(BigInteger, default=0)
    cost_cents: Mapped[int] = mapped_column(BigInteger, default=0)
    order_id: Mapped[str | None] = mapped_column(String, nullable=True)
    dedup_key: Mapped[str] = mapped_column(String)
    metric: Mapped[str | None] = mapped_column(String, nullable=True)
    shipping_suffix: Mapped[str | None] = mapped_column(String, nullable=True)
    occurred_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    __table_args__ = (
        UniqueConstraint(
            "tenant_id", "test_id", "event_type", "dedup_key", name="uq_event_dedup"
        ),
        Index("ix_event_watermark", "tenant_id", "test_id", "id"),
    )


class VisitorMetricsDB(Base):
    """Per-visitor rollup maintained by the aggregator."""

    __tablename__ = "ab_visitor_metrics"

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    tenant_id: Mapped[str] = mapped_column(String)
    test_id: Mapped[str] = mapped_column(String)
    visitor_id: Mapped[str] = mapped_column(String)
    variant_id: Mapped[str] = mapped_column(String)
    exposed: Mapped[bool] = mapped_column(Boolean, default=False)
    converted: Mapped[bool] = mapped_column(Boolean, default=False)
    revenue_cents: Mapped[int] = mapped_column(BigInteger, default=0)
    cost_cents: Mapped[int] = mapped_column(BigInteger, default=0)
    orders: Mapped[int] = mapped_column(Integer, default=0)
    guardrail_hits: Mapped[list] = mapped_column(JSONB, default=list)
    first_exposed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    __table_args__ = (
        UniqueConstraint("tenant_id", "test_id", "visitor_id", name="uq_visitor_metrics"),
    )


class MetricSnapshotDB(Base):
    __tablename__ = "ab_metric_snapshots"

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    tenant_id: Mapped[str] = mapped_column(String)
    test_id: Mapped[str] = mapped_column(String)
    variant_id: Mapped[str] = mapped_column(String)
    visitors: Mapped[int] = mapped_column(BigInteger, default=0)
    conversions: Mapped[int] = mapped_column(BigInteger, default=0)
    orders: Mapped[int] = mapped_column(BigInteger, default=0)
    revenue_cents: Mapped[int] = mapped_column(BigInteger, default=0)
    revenue_sum_squares: Mapped[float] = mapped_column(Float, default=0.0)
    revenue_variance: Mapped[float] = mapped_column(Float, default=0.0)
    guardrail_counts: Mapped[dict] = mapped_column(JSONB, default=dict)
    computed_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    __table_args__ = (
        Index("ix_metric_snapshot_latest", "tenant_id", "test_id", "variant_id", "id"),
    )


class ResultSnapshotDB(Base):
    __tablename__ = "ab_result_snapshots"

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    tenant_id: Mapped[str] = mapped_column(String)
    test_id: Mapped[str] = mapped_column(String)
    srm_detected: Mapped[bool] = mapped_column(Boolean, default=False)
    decision_state: Mapped[str] = mapped_column(String, default="running")
    payload: Mapped[dict] = mapped_column(JSONB, default=dict)
    generated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    __table_args__ = (Index("ix_result_snapshot_latest", "tenant_id", "test_id", "id"),)


class AggregationCheckpointDB(Base):
    """Last event id folded into the aggregates of a test."""

    __tablename__ = "ab_aggregation_checkpoints"

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    tenant_id: Mapped[str] = mapped_column(String)
    test_id: Mapped[str] = mapped_column(String)
    last_processed_event_id: Mapped[int] = mapped_column(BigInteger, default=0)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    __table_args__ = (
        UniqueConstraint("tenant_id", "test_id", name="uq_aggregation_checkpoint"),
    )


class ShippingMismatchDB(Base):
    __tablename__ = "ab_shipping_mismatches"

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    tenant_id: Mapped[str] = mapped_column(String)
    test_id: Mapped[str] = mapped_column(String)
    order_id: Mapped[str] = mapped_column(String)
    visitor_id: Mapped[str] = mapped_column(String)
    variant_id: Mapped[str] = mapped_column(String)
    expected_suffix: Mapped[str | None] = mapped_column(String, nullable=True)
    observed_suffix: Mapped[str | None] = mapped_column(String, nullable=True)
    detected_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    __table_args__ = (
        UniqueConstraint("tenant_id", "test_id", "order_id", name="uq_shipping_mismatch"),
    )


class QualityAlertDB(Base):
    __tablename__ = "ab_alerts"

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    alert_id: Mapped[str] = mapped_column(String, unique=True, index=True)
    tenant_id: Mapped[str] = mapped_column(String)
    test_id: Mapped[str] = mapped_column(String, index=True)
    alert_type: Mapped[str] = mapped_column(String)
    severity: Mapped[str] = mapped_column(String)
    message: Mapped[str] = mapped_column(Text, default="")
    details: Mapped[dict] = mapped_column(JSONB, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
