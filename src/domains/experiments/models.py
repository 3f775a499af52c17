"""Domain models for the experimentation engine."""

from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class ABTestStatus(StrEnum):
    DRAFT = "draft"
    SCHEDULED = "scheduled"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    ARCHIVED = "archived"


class ABTestType(StrEnum):
    LANDING_PAGE = "landing_page"
    SHIPPING = "shipping"
    EMAIL = "email"


class OptimizationMetric(StrEnum):
    CONVERSION_RATE = "conversion_rate"
    REVENUE_PER_VISITOR = "revenue_per_visitor"
    NET_REVENUE_PER_VISITOR = "net_revenue_per_visitor"


class AllocationMode(StrEnum):
    HASH = "hash"
    THOMPSON = "thompson"


class EventType(StrEnum):
    EXPOSURE = "exposure"
    CONVERSION = "conversion"
    REVENUE = "revenue"
    GUARDRAIL = "guardrail"


class DecisionState(StrEnum):
    RUNNING = "running"
    HELD = "held"  # SRM blocks any winner
    WINNER_DECLARED = "winner_declared"
    INCONCLUSIVE = "inconclusive"
    PAUSED = "paused"
    COMPLETED = "completed"


class AlertType(StrEnum):
    SRM = "srm"
    NOVELTY = "novelty"
    DRIFT = "drift"
    GUARDRAIL_BREACH = "guardrail_breach"
    SHIPPING_MISMATCH = "shipping_mismatch"


class GuardrailDirection(StrEnum):
    LOWER_IS_BETTER = "lower_is_better"
    HIGHER_IS_BETTER = "higher_is_better"


# ---------------------------------------------------------------------------
# Test configuration (supplied by the admin layer)
# ---------------------------------------------------------------------------


class VariantDefinition(BaseModel):
    id: str
    name: str
    allocation: float
    is_control: bool = False
    position: int = 0
    shipping_suffix: str | None = None
    shipping_price_cents: int | None = None


class GuardrailDefinition(BaseModel):
    metric: str  # e.g. "page_error", "checkout_abandon"
    max_degradation: float = 0.1  # relative, 0.1 = 10% worse than control
    direction: GuardrailDirection = GuardrailDirection.LOWER_IS_BETTER


class ABTestDefinition(BaseModel):
    id: str
    name: str
    test_type: ABTestType = ABTestType.LANDING_PAGE
    goal_event: str = "purchase"
    optimization_metric: OptimizationMetric = OptimizationMetric.CONVERSION_RATE
    confidence_level: float = Field(default=0.95, gt=0.5, lt=1.0)
    allocation_mode: AllocationMode = AllocationMode.HASH
    exclusion_group_id: str | None = None
    allow_overlap: bool = False
    max_duration_days: int | None = None
    minimum_detectable_effect: float | None = None
    # Scheduler starts a `scheduled` test at this time and completes it at the end time
    scheduled_start_at: datetime | None = None
    scheduled_end_at: datetime | None = None
    guardrails: list[GuardrailDefinition] = Field(default_factory=list)
    variants: list[VariantDefinition]


class ABTestResponse(BaseModel):
    id: str
    tenant_id: str
    name: str
    test_type: str
    status: ABTestStatus
    optimization_metric: str
    confidence_level: float
    allocation_mode: str
    exclusion_group_id: str | None = None
    config_version: int = 0
    decision_state: str = DecisionState.RUNNING
    winner_variant_id: str | None = None
    variants: list[VariantDefinition] = Field(default_factory=list)
    guardrails: list[GuardrailDefinition] = Field(default_factory=list)
    scheduled_start_at: datetime | None = None
    scheduled_end_at: datetime | None = None
    created_at: datetime | None = None
    started_at: datetime | None = None
    ended_at: datetime | None = None


class AllocationUpdate(BaseModel):
    allocations: dict[str, float]


class WinnerRequest(BaseModel):
    variant_id: str


# ---------------------------------------------------------------------------
# Assignment and ingestion boundary
# ---------------------------------------------------------------------------


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class VisitorContext(BaseModel):
    """Context captured once, at first exposure, and stored on the assignment."""

    device_type: str | None = None
    traffic_source: str | None = None
    covariate: float | None = None  # pre-experiment value for CUPED


class AssignmentDecision(_CamelModel):
    variant_id: str | None
    excluded: bool = False
    fallback: bool = False
    config_version: int | None = None
    channel_ref: dict[str, str] = Field(default_factory=dict)


class EventRequest(_CamelModel):
    test_id: str
    visitor_id: str
    event_type: EventType
    order_id: str | None = None
    value_cents: int | None = None
    cost_cents: int | None = None
    metric: str | None = None
    shipping_suffix: str | None = None
    payload: dict[str, Any] | None = None  # raw order webhook body
    occurred_at: datetime | None = None


class IngestResult(_CamelModel):
    accepted: bool
    reason: str | None = None


# ---------------------------------------------------------------------------
# Tagged event kinds
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Exposure:
    visitor_id: str
    occurred_at: datetime | None = None


@dataclass(frozen=True)
class Conversion:
    visitor_id: str
    order_id: str | None = None
    occurred_at: datetime | None = None


@dataclass(frozen=True)
class Revenue:
    visitor_id: str
    order_id: str
    cents: int
    cost_cents: int = 0
    shipping_suffix: str | None = None
    occurred_at: datetime | None = None


@dataclass(frozen=True)
class GuardrailHit:
    visitor_id: str
    metric: str
    occurred_at: datetime | None = None


ExperimentEvent = Exposure | Conversion | Revenue | GuardrailHit


@dataclass(frozen=True)
class RecordedEvent:
    """An event as read back from storage, ready for aggregation."""

    event_id: int
    variant_id: str
    event: ExperimentEvent


# ---------------------------------------------------------------------------
# Aggregates
# ---------------------------------------------------------------------------


@dataclass
class VisitorRollup:
    visitor_id: str
    variant_id: str
    exposed: bool = False
    converted: bool = False
    revenue_cents: int = 0
    cost_cents: int = 0
    orders: int = 0
    guardrail_hits: set[str] = field(default_factory=set)
    first_exposed_at: datetime | None = None
    # Context from the assignment row, used by CUPED and drift checks
    covariate: float | None = None
    device_type: str | None = None
    traffic_source: str | None = None
    assigned_at: datetime | None = None

    @property
    def net_revenue_cents(self) -> int:
        return self.revenue_cents - self.cost_cents


@dataclass
class VariantTotals:
    variant_id: str
    visitors: int = 0
    conversions: int = 0
    orders: int = 0
    revenue_cents: int = 0
    revenue_sum_squares: float = 0.0
    guardrail_counts: dict[str, int] = field(default_factory=dict)

    @property
    def conversion_rate(self) -> float:
        return self.conversions / self.visitors if self.visitors else 0.0

    @property
    def revenue_per_visitor(self) -> float:
        return self.revenue_cents / self.visitors if self.visitors else 0.0

    @property
    def revenue_variance(self) -> float:
        """Sample variance of per-visitor revenue, zero for non-converters."""
        n = self.visitors
        if n < 2:
            return 0.0
        variance = (self.revenue_sum_squares - self.revenue_cents**2 / n) / (n - 1)
        return max(variance, 0.0)


@dataclass(frozen=True)
class MismatchRecord:
    order_id: str
    visitor_id: str
    variant_id: str
    expected_suffix: str | None
    observed_suffix: str | None


# ---------------------------------------------------------------------------
# Statistical results
# ---------------------------------------------------------------------------


class SignificanceResult(BaseModel):
    method: str  # "two_proportion_z" or "welch_t"
    statistic: float = 0.0
    p_value: float = 1.0
    is_significant: bool = False
    improvement: float = 0.0  # relative lift over control, percent
    difference: float = 0.0  # absolute, variant minus control
    confidence_level: float = 0.95
    confidence_interval: tuple[float, float] = (0.0, 0.0)
    degrees_of_freedom: float | None = None


class CupedResult(BaseModel):
    applied: bool
    theta: float = 0.0
    correlation: float = 0.0
    original_variance: float = 0.0
    adjusted_variance: float = 0.0
    variance_reduction: float = 0.0  # percent
    result: SignificanceResult | None = None


class BootstrapResult(BaseModel):
    estimate: float
    lower: float
    upper: float
    standard_error: float
    samples: int
    confidence_level: float = 0.95


class SequentialBoundary(BaseModel):
    method: str = "obrien_fleming"
    information_fraction: float
    planned_sample_size: int
    boundary_z: float
    nominal_alpha: float
    crossed: bool


class GuardrailStatus(BaseModel):
    metric: str
    variant_id: str
    control_rate: float
    variant_rate: float
    threshold: float
    p_value: float = 1.0
    breached: bool = False
    direction: GuardrailDirection = GuardrailDirection.LOWER_IS_BETTER


class SrmResult(BaseModel):
    chi_square: float = 0.0
    p_value: float = 1.0
    detected: bool = False
    skipped: bool = False  # no fixed split to test against, e.g. bandit allocation
    observed: dict[str, int] = Field(default_factory=dict)
    expected: dict[str, float] = Field(default_factory=dict)
    contributions: dict[str, float] = Field(default_factory=dict)


class NoveltyCheck(BaseModel):
    variant_id: str
    early_effect: float
    late_effect: float
    detected: bool


class NoveltyResult(BaseModel):
    detected: bool = False
    sufficient_data: bool = False
    checks: list[NoveltyCheck] = Field(default_factory=list)
    message: str = ""


class LearningEffectCheck(BaseModel):
    variant_id: str
    first_half_lift: float
    second_half_lift: float
    growth_rate: float
    current_lift: float
    projected_lift: float
    detected: bool


class LearningEffectResult(BaseModel):
    """Lift that grows over the test's days, the opposite of a novelty effect."""

    detected: bool = False
    sufficient_data: bool = False
    days: int = 0
    checks: list[LearningEffectCheck] = Field(default_factory=list)
    message: str = ""


class DriftWindow(BaseModel):
    dimension: str
    window: int
    chi_square: float
    p_value: float
    significant: bool


class DriftResult(BaseModel):
    detected: bool = False
    sufficient_data: bool = False
    windows: list[DriftWindow] = Field(default_factory=list)
    message: str = ""


class MismatchSummary(BaseModel):
    total_orders: int = 0
    mismatched_orders: int = 0
    mismatch_rate: float = 0.0
    warning: bool = False


# ---------------------------------------------------------------------------
# Lifetime value
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class CustomerOrders:
    """A converting visitor's orders, in time order, for LTV cohorts."""

    visitor_id: str
    variant_id: str
    orders: tuple[tuple[datetime, int], ...]  # (placed_at, cents)

    @property
    def first_order_at(self) -> datetime:
        return self.orders[0][0]


class LtvPeriodStats(BaseModel):
    days: int
    ltv_cents: float = 0.0
    orders_per_customer: float = 0.0
    repurchase_rate: float = 0.0
    average_order_value_cents: float = 0.0
    confidence_interval: tuple[float, float] = (0.0, 0.0)


class LtvCohort(BaseModel):
    variant_id: str
    is_control: bool = False
    cohort_size: int = 0
    periods: list[LtvPeriodStats] = Field(default_factory=list)


class LtvPeriodComparison(BaseModel):
    days: int
    lift: float = 0.0  # percent
    difference: BootstrapResult | None = None
    p_value: float = 1.0
    significant: bool = False


class LtvComparison(BaseModel):
    variant_id: str
    periods: list[LtvPeriodComparison] = Field(default_factory=list)
    long_term_different: bool = False
    message: str = ""


class LtvReport(BaseModel):
    test_id: str
    control_variant_id: str
    available_periods: list[int] = Field(default_factory=list)
    cohorts: list[LtvCohort] = Field(default_factory=list)
    comparisons: list[LtvComparison] = Field(default_factory=list)


class QualityAlert(BaseModel):
    alert_type: AlertType
    severity: str  # "warning" or "critical"
    message: str
    details: dict = Field(default_factory=dict)


class Decision(BaseModel):
    state: DecisionState
    winner_variant_id: str | None = None
    reason: str = ""


class VariantResult(BaseModel):
    variant_id: str
    name: str
    is_control: bool
    visitors: int = 0
    conversions: int = 0
    orders: int = 0
    conversion_rate: float = 0.0
    revenue_cents: int = 0
    revenue_per_visitor: float = 0.0
    net_revenue_per_visitor: float = 0.0
    revenue_variance: float = 0.0
    z_score: float = 0.0
    p_value: float = 1.0
    confidence_interval: tuple[float, float] = (0.0, 0.0)
    improvement: float = 0.0
    is_significant: bool = False
    holm_significant: bool = False
    bh_significant: bool = False
    is_winner: bool = False
    srm_contribution: float = 0.0
    conversion: SignificanceResult | None = None
    revenue: SignificanceResult | None = None
    cuped: CupedResult | None = None
    bootstrap: BootstrapResult | None = None
    sequential: SequentialBoundary | None = None
    guardrails: list[GuardrailStatus] = Field(default_factory=list)


class ResultSnapshot(BaseModel):
    test_id: str
    tenant_id: str
    status: ABTestStatus
    optimization_metric: OptimizationMetric
    confidence_level: float
    config_version: int = 0
    control_variant_id: str | None = None
    variants: list[VariantResult] = Field(default_factory=list)
    srm: SrmResult = Field(default_factory=SrmResult)
    novelty: NoveltyResult = Field(default_factory=NoveltyResult)
    learning_effect: LearningEffectResult = Field(default_factory=LearningEffectResult)
    drift: DriftResult = Field(default_factory=DriftResult)
    shipping_mismatch: MismatchSummary | None = None
    guardrail_breached: bool = False
    decision: Decision = Field(default_factory=lambda: Decision(state=DecisionState.RUNNING))
    alerts: list[QualityAlert] = Field(default_factory=list)
    watermark: int = 0
    generated_at: datetime | None = None
