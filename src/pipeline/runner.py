"""One pipeline pass for one test: aggregate, analyse, check, decide, snapshot.

A pass runs in a single transaction under a time budget. Anything that goes
wrong before the commit rolls the whole pass back, so the aggregation
watermark only moves together with the snapshot it produced.
"""

import asyncio
from datetime import UTC, datetime

import redis.asyncio as aioredis
import structlog
from redis.exceptions import LockError, RedisError
from sqlalchemy import and_, func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from src.config import settings
from src.db.models import (
    ABTestDB,
    QualityAlertDB,
    ResultSnapshotDB,
    ShippingMismatchDB,
    VisitorMetricsDB,
)
from src.domains.experiments.activation import apply_transition
from src.domains.experiments.aggregation import aggregate_test, load_visitor_rollups
from src.domains.experiments.alerts import build_quality_alerts, create_alert, publish_alert
from src.domains.experiments.analysis import evaluate_pass
from src.domains.experiments.config import ExperimentConfig, default_config
from src.domains.experiments.errors import AggregationFailure
from src.domains.experiments.hashing import control_of
from src.domains.experiments.models import (
    ABTestStatus,
    ABTestType,
    Decision,
    DecisionState,
    GuardrailDefinition,
    MismatchSummary,
    OptimizationMetric,
    ResultSnapshot,
)
from src.domains.experiments.quality import summarize_mismatches
from src.domains.experiments.repository import get_test, load_variants

logger = structlog.get_logger()


def lock_name(tenant_id: str, test_id: str) -> str:
    return f"ab:pipeline:{tenant_id}:{test_id}"


async def _mismatch_summary(
    session: AsyncSession,
    tenant_id: str,
    test_id: str,
    total_orders: int,
    warning_rate: float,
) -> MismatchSummary:
    """Mismatched orders from exposed visitors over the aggregated order count."""
    mismatched = await session.execute(
        select(func.count())
        .select_from(ShippingMismatchDB)
        .join(
            VisitorMetricsDB,
            and_(
                VisitorMetricsDB.tenant_id == ShippingMismatchDB.tenant_id,
                VisitorMetricsDB.test_id == ShippingMismatchDB.test_id,
                VisitorMetricsDB.visitor_id == ShippingMismatchDB.visitor_id,
            ),
        )
        .where(
            ShippingMismatchDB.tenant_id == tenant_id,
            ShippingMismatchDB.test_id == test_id,
            VisitorMetricsDB.exposed.is_(True),
        )
    )
    return summarize_mismatches(total_orders, mismatched.scalar_one(), warning_rate)


def _apply_decision(test: ABTestDB, decision: Decision, config: ExperimentConfig) -> None:
    """Reflect the pass's decision on the test row (status and decision state)."""
    if decision.state == DecisionState.PAUSED:
        apply_transition(test, ABTestStatus.PAUSED)
        test.decision_state = DecisionState.PAUSED
        logger.warning("test_auto_paused", tenant_id=test.tenant_id, test_id=test.id)
        return

    if decision.state == DecisionState.WINNER_DECLARED:
        if test.winner_variant_id not in (None, decision.winner_variant_id):
            # A manually declared winner stands
            logger.info(
                "winner_already_declared",
                tenant_id=test.tenant_id,
                test_id=test.id,
                declared=test.winner_variant_id,
                computed=decision.winner_variant_id,
            )
        else:
            test.winner_variant_id = decision.winner_variant_id
        test.decision_state = DecisionState.WINNER_DECLARED
        if config.decision.auto_complete_on_winner:
            apply_transition(test, ABTestStatus.COMPLETED)
        logger.info(
            "winner_declared",
            tenant_id=test.tenant_id,
            test_id=test.id,
            variant_id=test.winner_variant_id,
        )
        return

    if decision.state == DecisionState.INCONCLUSIVE:
        test.decision_state = DecisionState.INCONCLUSIVE
        apply_transition(test, ABTestStatus.COMPLETED)
        logger.info("test_inconclusive", tenant_id=test.tenant_id, test_id=test.id)
        return

    test.decision_state = decision.state


async def execute_pass(
    session: AsyncSession,
    tenant_id: str,
    test_id: str,
    config: ExperimentConfig = default_config,
    batch_size: int | None = None,
) -> tuple[ResultSnapshot, list[QualityAlertDB]] | None:
    """All pipeline stages for one test inside the caller's transaction.

    Storage stages run on the event loop; the statistics and quality checks
    run in a worker thread. Returns the snapshot and the alert rows staged by
    this pass, or None when the test is not running. Does not commit.
    """
    test = await get_test(session, tenant_id, test_id)
    if test.status != ABTestStatus.RUNNING:
        logger.info("pipeline_skipped", tenant_id=tenant_id, test_id=test_id, status=test.status)
        return None

    variants = await load_variants(session, tenant_id, test_id)
    control = control_of(variants)
    metric = OptimizationMetric(test.optimization_metric)

    outcome = await aggregate_test(
        session,
        tenant_id,
        test_id,
        variants,
        batch_size=batch_size or settings.aggregation_batch_size,
    )
    totals = outcome.totals
    rollups = await load_visitor_rollups(session, tenant_id, test_id)

    evaluation = await asyncio.to_thread(
        evaluate_pass,
        variants,
        totals,
        rollups,
        metric,
        confidence_level=test.confidence_level,
        mde=test.minimum_detectable_effect,
        allocation_mode=test.allocation_mode,
        guardrails=[GuardrailDefinition(**g) for g in test.guardrails or []],
        started_at=test.started_at,
        max_duration_days=test.max_duration_days,
        config=config,
    )
    srm = evaluation.srm
    if srm.detected:
        logger.warning(
            "srm_detected",
            tenant_id=tenant_id,
            test_id=test_id,
            chi_square=srm.chi_square,
            p_value=srm.p_value,
        )
    if evaluation.guardrail_breached:
        logger.warning(
            "guardrail_breached",
            tenant_id=tenant_id,
            test_id=test_id,
            metrics=sorted({g.metric for g in evaluation.guardrails if g.breached}),
        )

    mismatch = None
    if test.test_type == ABTestType.SHIPPING:
        mismatch = await _mismatch_summary(
            session,
            tenant_id,
            test_id,
            sum(t.orders for t in totals.values()),
            config.quality.mismatch_warning_rate,
        )

    decision = evaluation.decision
    _apply_decision(test, decision, config)
    results = [
        r.model_copy(update={"is_winner": r.variant_id == test.winner_variant_id})
        for r in evaluation.results
    ]

    alerts = build_quality_alerts(
        srm, evaluation.novelty, evaluation.drift, evaluation.guardrails, mismatch
    )
    staged: list[QualityAlertDB] = []
    for alert in alerts:
        row = await create_alert(
            session, tenant_id, test_id, alert, config.decision.alert_suppression_seconds
        )
        if row is not None:
            staged.append(row)

    snapshot = ResultSnapshot(
        test_id=test_id,
        tenant_id=tenant_id,
        status=ABTestStatus(test.status),
        optimization_metric=metric,
        confidence_level=test.confidence_level,
        config_version=test.config_version or 0,
        control_variant_id=control.id,
        variants=results,
        srm=srm,
        novelty=evaluation.novelty,
        learning_effect=evaluation.learning_effect,
        drift=evaluation.drift,
        shipping_mismatch=mismatch,
        guardrail_breached=evaluation.guardrail_breached,
        decision=decision,
        alerts=alerts,
        watermark=outcome.watermark,
        generated_at=datetime.now(UTC),
    )
    session.add(
        ResultSnapshotDB(
            tenant_id=tenant_id,
            test_id=test_id,
            srm_detected=srm.detected,
            decision_state=decision.state,
            payload=snapshot.model_dump(mode="json"),
        )
    )
    return snapshot, staged


async def run_test_pipeline(
    session_factory: async_sessionmaker,
    tenant_id: str,
    test_id: str,
    redis: aioredis.Redis | None = None,
    producer=None,
    config: ExperimentConfig = default_config,
    timeout: float | None = None,
) -> ResultSnapshot | None:
    """Single-flight, time-boxed pipeline pass for one test.

    Returns None when another worker holds the test's lock or the test is not
    running.

    Raises:
        AggregationFailure: the pass timed out or failed and was rolled back.
    """
    timeout = timeout or settings.pipeline_timeout_seconds
    lock = None
    if redis is not None:
        lock = redis.lock(
            lock_name(tenant_id, test_id),
            timeout=settings.pipeline_lock_ttl_seconds,
            blocking=False,
        )
        try:
            acquired = await lock.acquire()
        except RedisError:
            logger.warning("pipeline_lock_unavailable", tenant_id=tenant_id, test_id=test_id)
            return None
        if not acquired:
            logger.info("pipeline_already_running", tenant_id=tenant_id, test_id=test_id)
            return None

    try:
        async with session_factory() as session:
            try:
                outcome = await asyncio.wait_for(
                    execute_pass(session, tenant_id, test_id, config), timeout
                )
                await session.commit()
            except Exception as exc:
                await session.rollback()
                reason = "timeout" if isinstance(exc, TimeoutError) else type(exc).__name__
                logger.exception(
                    "pipeline_aborted", tenant_id=tenant_id, test_id=test_id, reason=reason
                )
                raise AggregationFailure(tenant_id, test_id, reason) from exc

            if outcome is None:
                return None

            snapshot, staged = outcome
            logger.info(
                "pipeline_completed",
                tenant_id=tenant_id,
                test_id=test_id,
                decision=snapshot.decision.state,
                watermark=snapshot.watermark,
            )
            for alert in staged:
                await publish_alert(alert, producer, settings.kafka_alert_topic)
            return snapshot
    finally:
        if lock is not None:
            try:
                await lock.release()
            except (LockError, RedisError):
                logger.warning(
                    "pipeline_lock_release_failed", tenant_id=tenant_id, test_id=test_id
                )

