"""Experimentation engine thresholds with sensible defaults."""

import os
from dataclasses import dataclass, field


@dataclass
class AllocationSettings:
    bucket_count: int = 10_000
    allocation_epsilon: float = 0.001


@dataclass
class StatisticsSettings:
    min_sample_size: int = 100
    bootstrap_samples: int = 2_000
    bootstrap_seed: int | None = 7
    cuped_min_correlation: float = 0.1
    sequential_testing: bool = True
    power: float = 0.8
    default_mde: float = 0.1  # relative lift used to plan sample size


@dataclass
class QualitySettings:
    srm_alpha: float = 0.001
    novelty_early_fraction: float = 0.2
    novelty_decay_ratio: float = 0.5
    novelty_min_visitors: int = 100
    novelty_min_effect: float = 1.0  # percent relative lift
    drift_alpha: float = 0.01
    drift_windows: int = 4
    drift_min_visitors: int = 200
    drift_dimensions: tuple[str, ...] = ("device_type", "traffic_source")
    mismatch_warning_rate: float = 0.05
    learning_min_days: int = 7
    learning_growth_threshold: float = 0.2  # relative growth of daily lift, second half vs first


@dataclass
class GuardrailSettings:
    alpha: float = 0.05
    min_visitors: int = 100


@dataclass
class DecisionSettings:
    default_max_duration_days: int = 30
    auto_complete_on_winner: bool = True
    alert_suppression_seconds: int = 3600


@dataclass
class LtvSettings:
    periods: tuple[int, ...] = (30, 60, 90)
    min_cohort_size: int = 30
    bootstrap_samples: int = 2_000
    long_term_lift_gap: float = 10.0  # percentage points between first and last period


@dataclass
class ExperimentConfig:
    allocation: AllocationSettings = field(default_factory=AllocationSettings)
    statistics: StatisticsSettings = field(default_factory=StatisticsSettings)
    quality: QualitySettings = field(default_factory=QualitySettings)
    guardrails: GuardrailSettings = field(default_factory=GuardrailSettings)
    decision: DecisionSettings = field(default_factory=DecisionSettings)
    ltv: LtvSettings = field(default_factory=LtvSettings)

    @classmethod
    def from_env(cls) -> "ExperimentConfig":
        """Load config with env var overrides. Env vars use EXPERIMENT_ prefix."""
        config = cls()

        if v := os.getenv("EXPERIMENT_MIN_SAMPLE_SIZE"):
            config.statistics.min_sample_size = int(v)
        if v := os.getenv("EXPERIMENT_BOOTSTRAP_SAMPLES"):
            config.statistics.bootstrap_samples = int(v)
        if v := os.getenv("EXPERIMENT_SEQUENTIAL_TESTING"):
            config.statistics.sequential_testing = v.lower() in ("1", "true", "yes")
        if v := os.getenv("EXPERIMENT_CUPED_MIN_CORRELATION"):
            config.statistics.cuped_min_correlation = float(v)

        if v := os.getenv("EXPERIMENT_SRM_ALPHA"):
            config.quality.srm_alpha = float(v)
        if v := os.getenv("EXPERIMENT_DRIFT_ALPHA"):
            config.quality.drift_alpha = float(v)
        if v := os.getenv("EXPERIMENT_MISMATCH_WARNING_RATE"):
            config.quality.mismatch_warning_rate = float(v)

        if v := os.getenv("EXPERIMENT_LEARNING_MIN_DAYS"):
            config.quality.learning_min_days = int(v)

        if v := os.getenv("EXPERIMENT_GUARDRAIL_ALPHA"):
            config.guardrails.alpha = float(v)

        if v := os.getenv("EXPERIMENT_MAX_DURATION_DAYS"):
            config.decision.default_max_duration_days = int(v)
        if v := os.getenv("EXPERIMENT_AUTO_COMPLETE"):
            config.decision.auto_complete_on_winner = v.lower() in ("1", "true", "yes")

        if v := os.getenv("EXPERIMENT_LTV_MIN_COHORT_SIZE"):
            config.ltv.min_cohort_size = int(v)

        return config


default_config = ExperimentConfig()
