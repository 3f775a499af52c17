"""Tests for the per-test pipeline runner and the periodic scheduler."""

import asyncio
import time
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from redis.exceptions import LockError

from src.domains.experiments.aggregation import AggregationOutcome
from src.domains.experiments.analysis import evaluate_pass
from src.domains.experiments.config import ExperimentConfig
from src.domains.experiments.errors import AggregationFailure
from src.domains.experiments.models import (
    ABTestStatus,
    Decision,
    DecisionState,
    OptimizationMetric,
    ResultSnapshot,
    VariantTotals,
)
from src.pipeline.runner import (
    _apply_decision,
    _mismatch_summary,
    execute_pass,
    lock_name,
    run_test_pipeline,
)
from src.pipeline.scheduler import PipelineScheduler
from tests.conftest import make_result, session_returning


def _snapshot() -> ResultSnapshot:
    return ResultSnapshot(
        test_id="hero-banner",
        tenant_id="tenant-1",
        status=ABTestStatus.RUNNING,
        optimization_metric=OptimizationMetric.CONVERSION_RATE,
        confidence_level=0.95,
        watermark=120,
    )


def _factory(session):
    """async_sessionmaker stand-in yielding ``session``."""
    context = MagicMock()
    context.__aenter__ = AsyncMock(return_value=session)
    context.__aexit__ = AsyncMock(return_value=False)
    return MagicMock(return_value=context)


def _redis(acquired=True):
    lock = AsyncMock()
    lock.acquire = AsyncMock(return_value=acquired)
    lock.release = AsyncMock()
    redis = MagicMock()
    redis.lock = MagicMock(return_value=lock)
    return redis, lock


class TestRunTestPipeline:
    @pytest.mark.asyncio
    async def test_commits_and_publishes(self, mock_db_session):
        staged = [MagicMock(alert_id="a-1")]
        redis, lock = _redis()
        with (
            patch(
                "src.pipeline.runner.execute_pass",
                AsyncMock(return_value=(_snapshot(), staged)),
            ),
            patch("src.pipeline.runner.publish_alert", AsyncMock()) as publish,
        ):
            snapshot = await run_test_pipeline(
                _factory(mock_db_session), "tenant-1", "hero-banner", redis=redis
            )

        assert snapshot.watermark == 120
        mock_db_session.commit.assert_awaited_once()
        publish.assert_awaited_once()
        redis.lock.assert_called_once()
        assert redis.lock.call_args.args[0] == lock_name("tenant-1", "hero-banner")
        lock.release.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_skips_when_lock_held(self, mock_db_session):
        redis, lock = _redis(acquired=False)
        factory = _factory(mock_db_session)
        with patch("src.pipeline.runner.execute_pass", AsyncMock()) as execute:
            assert await run_test_pipeline(factory, "tenant-1", "hero-banner", redis=redis) is None
        execute.assert_not_awaited()
        factory.assert_not_called()
        lock.release.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_failure_rolls_back(self, mock_db_session):
        redis, lock = _redis()
        with (
            patch(
                "src.pipeline.runner.execute_pass",
                AsyncMock(side_effect=ValueError("bad data")),
            ),
            patch("src.pipeline.runner.publish_alert", AsyncMock()) as publish,
        ):
            with pytest.raises(AggregationFailure) as exc_info:
                await run_test_pipeline(
                    _factory(mock_db_session), "tenant-1", "hero-banner", redis=redis
                )

        assert exc_info.value.reason == "ValueError"
        mock_db_session.rollback.assert_awaited_once()
        mock_db_session.commit.assert_not_awaited()
        publish.assert_not_awaited()
        lock.release.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_timeout_aborts(self, mock_db_session):
        async def slow(*args, **kwargs):
            await asyncio.sleep(5)

        with patch("src.pipeline.runner.execute_pass", slow):
            with pytest.raises(AggregationFailure) as exc_info:
                await run_test_pipeline(
                    _factory(mock_db_session), "tenant-1", "hero-banner", timeout=0.01
                )
        assert exc_info.value.reason == "timeout"
        mock_db_session.rollback.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_not_running(self, mock_db_session):
        with patch("src.pipeline.runner.execute_pass", AsyncMock(return_value=None)):
            assert (
                await run_test_pipeline(_factory(mock_db_session), "tenant-1", "hero-banner")
                is None
            )

    @pytest.mark.asyncio
    async def test_lock_release_error_swallowed(self, mock_db_session):
        redis, lock = _redis()
        lock.release.side_effect = LockError("expired")
        with patch(
            "src.pipeline.runner.execute_pass", AsyncMock(return_value=(_snapshot(), []))
        ):
            snapshot = await run_test_pipeline(
                _factory(mock_db_session), "tenant-1", "hero-banner", redis=redis
            )
        assert snapshot is not None


def _running_test(winner=None):
    test = MagicMock()
    test.id = "hero-banner"
    test.tenant_id = "tenant-1"
    test.status = ABTestStatus.RUNNING
    test.started_at = None
    test.winner_variant_id = winner
    test.decision_state = DecisionState.RUNNING
    return test


class TestApplyDecision:
    def test_guardrail_pause(self):
        test = _running_test()
        _apply_decision(test, Decision(state=DecisionState.PAUSED), ExperimentConfig())
        assert test.status == ABTestStatus.PAUSED
        assert test.decision_state == DecisionState.PAUSED

    def test_winner_completes_test(self):
        test = _running_test()
        decision = Decision(state=DecisionState.WINNER_DECLARED, winner_variant_id="b")
        _apply_decision(test, decision, ExperimentConfig())
        assert test.winner_variant_id == "b"
        assert test.status == ABTestStatus.COMPLETED

    def test_winner_without_auto_complete(self):
        test = _running_test()
        config = ExperimentConfig()
        config.decision.auto_complete_on_winner = False
        decision = Decision(state=DecisionState.WINNER_DECLARED, winner_variant_id="b")
        _apply_decision(test, decision, config)
        assert test.status == ABTestStatus.RUNNING
        assert test.decision_state == DecisionState.WINNER_DECLARED

    def test_manual_winner_stands(self):
        test = _running_test(winner="c")
        decision = Decision(state=DecisionState.WINNER_DECLARED, winner_variant_id="b")
        _apply_decision(test, decision, ExperimentConfig())
        assert test.winner_variant_id == "c"

    def test_inconclusive_completes(self):
        test = _running_test()
        _apply_decision(test, Decision(state=DecisionState.INCONCLUSIVE), ExperimentConfig())
        assert test.status == ABTestStatus.COMPLETED
        assert test.decision_state == DecisionState.INCONCLUSIVE

    def test_held_keeps_running(self):
        test = _running_test()
        _apply_decision(test, Decision(state=DecisionState.HELD), ExperimentConfig())
        assert test.status == ABTestStatus.RUNNING
        assert test.decision_state == DecisionState.HELD


class TestPipelineScheduler:
    @pytest.mark.asyncio
    async def test_tick_counts_successes(self, mock_db_session):
        scheduler = PipelineScheduler(_factory(mock_db_session), concurrency=2)
        running = [("tenant-1", "a"), ("tenant-1", "b"), ("tenant-2", "c")]

        async def fake_run(factory, tenant_id, test_id, **kwargs):
            if test_id == "b":
                raise AggregationFailure(tenant_id, test_id, "timeout")
            return _snapshot()

        with (
            patch(
                "src.pipeline.scheduler.list_running_tests", AsyncMock(return_value=running)
            ),
            patch("src.pipeline.scheduler.run_test_pipeline", fake_run),
        ):
            assert await scheduler.tick() == 2

    @pytest.mark.asyncio
    async def test_tick_without_tests(self, mock_db_session):
        scheduler = PipelineScheduler(_factory(mock_db_session))
        with patch("src.pipeline.scheduler.list_running_tests", AsyncMock(return_value=[])):
            assert await scheduler.tick() == 0

    def test_stop(self, mock_db_session):
        scheduler = PipelineScheduler(_factory(mock_db_session))
        scheduler._running = True
        scheduler.stop()
        assert not scheduler._running

    @pytest.mark.asyncio
    async def test_tick_applies_scheduled_transitions_first(self, mock_db_session):
        scheduler = PipelineScheduler(_factory(mock_db_session))
        calls = []

        async def started(session, **kwargs):
            calls.append("start")
            return ["spring-sale"]

        async def listed(session):
            calls.append("list")
            return [("tenant-1", "spring-sale")]

        with (
            patch("src.pipeline.scheduler.start_due_tests", started),
            patch(
                "src.pipeline.scheduler.complete_due_tests", AsyncMock(return_value=["old"])
            ) as completed,
            patch("src.pipeline.scheduler.list_running_tests", listed),
            patch("src.pipeline.scheduler.run_test_pipeline", AsyncMock(return_value=None)),
        ):
            assert await scheduler.tick() == 1

        assert calls == ["start", "list"]
        completed.assert_awaited_once()


def _stored_test(allocation_mode="hash", winner=None, test_type="landing_page"):
    test = MagicMock()
    test.id = "hero-banner"
    test.tenant_id = "tenant-1"
    test.status = ABTestStatus.RUNNING
    test.test_type = test_type
    test.optimization_metric = OptimizationMetric.CONVERSION_RATE
    test.allocation_mode = allocation_mode
    test.confidence_level = 0.95
    test.minimum_detectable_effect = None
    test.max_duration_days = None
    test.guardrails = []
    test.started_at = None
    test.winner_variant_id = winner
    test.config_version = 1
    return test


def _skewed_totals(treatment_orders=0) -> AggregationOutcome:
    """Bandit-shaped traffic: 90% of 4000 visitors went to the treatment."""
    return AggregationOutcome(
        watermark=42,
        totals={
            "control": VariantTotals(variant_id="control", visitors=400, conversions=20),
            "treatment": VariantTotals(
                variant_id="treatment",
                visitors=3600,
                conversions=360,
                orders=treatment_orders,
            ),
        },
    )


def _fast_config() -> ExperimentConfig:
    config = ExperimentConfig()
    config.statistics.sequential_testing = False
    config.statistics.bootstrap_samples = 50
    return config


def _pass_patches(test, variants, outcome=None):
    return (
        patch("src.pipeline.runner.get_test", AsyncMock(return_value=test)),
        patch("src.pipeline.runner.load_variants", AsyncMock(return_value=variants)),
        patch(
            "src.pipeline.runner.aggregate_test",
            AsyncMock(return_value=outcome or _skewed_totals()),
        ),
        patch("src.pipeline.runner.load_visitor_rollups", AsyncMock(return_value=[])),
        patch("src.pipeline.runner.create_alert", AsyncMock(return_value=None)),
    )


class TestExecutePass:
    @pytest.mark.asyncio
    async def test_thompson_split_is_not_a_sample_ratio_mismatch(
        self, mock_db_session, two_variants
    ):
        test = _stored_test(allocation_mode="thompson")
        p1, p2, p3, p4, p5 = _pass_patches(test, two_variants)
        with p1, p2, p3, p4, p5:
            snapshot, _ = await execute_pass(
                mock_db_session, "tenant-1", "hero-banner", _fast_config()
            )

        assert snapshot.srm.skipped
        assert not snapshot.srm.detected
        assert snapshot.decision.state == DecisionState.WINNER_DECLARED
        assert snapshot.decision.winner_variant_id == "treatment"
        assert test.status == ABTestStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_hash_split_with_same_traffic_is_held(self, mock_db_session, two_variants):
        test = _stored_test(allocation_mode="hash")
        p1, p2, p3, p4, p5 = _pass_patches(test, two_variants)
        with p1, p2, p3, p4, p5:
            snapshot, _ = await execute_pass(
                mock_db_session, "tenant-1", "hero-banner", _fast_config()
            )

        assert snapshot.srm.detected
        assert snapshot.decision.state == DecisionState.HELD
        assert test.status == ABTestStatus.RUNNING

    @pytest.mark.asyncio
    async def test_manual_winner_is_flagged_in_snapshot(self, mock_db_session, two_variants):
        test = _stored_test(allocation_mode="thompson", winner="control")
        p1, p2, p3, p4, p5 = _pass_patches(test, two_variants)
        with p1, p2, p3, p4, p5:
            snapshot, _ = await execute_pass(
                mock_db_session, "tenant-1", "hero-banner", _fast_config()
            )

        assert snapshot.decision.winner_variant_id == "treatment"
        flagged = {r.variant_id for r in snapshot.variants if r.is_winner}
        assert flagged == {"control"}

    @pytest.mark.asyncio
    async def test_analysis_runs_off_the_event_loop(self, mock_db_session, two_variants):
        def slow_evaluate(*args, **kwargs):
            time.sleep(0.3)
            return evaluate_pass(*args, **kwargs)

        ticks = 0

        async def ticker():
            nonlocal ticks
            while True:
                await asyncio.sleep(0.01)
                ticks += 1

        test = _stored_test(allocation_mode="thompson")
        p1, p2, p3, p4, p5 = _pass_patches(test, two_variants)
        with p1, p2, p3, p4, p5, patch("src.pipeline.runner.evaluate_pass", slow_evaluate):
            task = asyncio.create_task(ticker())
            await execute_pass(mock_db_session, "tenant-1", "hero-banner", _fast_config())
            task.cancel()

        assert ticks >= 10

    @pytest.mark.asyncio
    async def test_timeout_interrupts_long_analysis(self, mock_db_session, two_variants):
        def slow_evaluate(*args, **kwargs):
            time.sleep(0.5)
            return evaluate_pass(*args, **kwargs)

        test = _stored_test(allocation_mode="thompson")
        p1, p2, p3, p4, p5 = _pass_patches(test, two_variants)
        started = time.perf_counter()
        with p1, p2, p3, p4, p5, patch("src.pipeline.runner.evaluate_pass", slow_evaluate):
            with pytest.raises(AggregationFailure) as exc_info:
                await run_test_pipeline(
                    _factory(mock_db_session),
                    "tenant-1",
                    "hero-banner",
                    config=_fast_config(),
                    timeout=0.05,
                )

        assert exc_info.value.reason == "timeout"
        assert time.perf_counter() - started < 0.4
        mock_db_session.rollback.assert_awaited_once()
        mock_db_session.commit.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_shipping_mismatch_rate_uses_aggregated_orders(self, shipping_variants):
        test = _stored_test(test_type="shipping")
        outcome = AggregationOutcome(
            watermark=7,
            totals={
                "ship_a": VariantTotals(variant_id="ship_a", visitors=500, orders=80),
                "ship_b": VariantTotals(variant_id="ship_b", visitors=500, orders=120),
            },
        )
        session = session_returning(make_result(scalar=12))
        p1, p2, p3, p4, p5 = _pass_patches(test, shipping_variants, outcome)
        with p1, p2, p3, p4, p5:
            snapshot, _ = await execute_pass(session, "tenant-1", "hero-banner", _fast_config())

        assert snapshot.shipping_mismatch.total_orders == 200
        assert snapshot.shipping_mismatch.mismatched_orders == 12
        assert snapshot.shipping_mismatch.mismatch_rate == pytest.approx(0.06)


class TestMismatchSummary:
    @pytest.mark.asyncio
    async def test_counts_only_exposed_visitors(self):
        session = session_returning(make_result(scalar=3))
        summary = await _mismatch_summary(session, "tenant-1", "ship-test", 100, 0.05)

        statement = str(session.execute.await_args.args[0])
        assert "ab_visitor_metrics" in statement
        assert "exposed" in statement
        assert summary.mismatch_rate == pytest.approx(0.03)
        assert not summary.warning

    @pytest.mark.asyncio
    async def test_no_orders_means_no_rate(self):
        session = session_returning(make_result(scalar=0))
        summary = await _mismatch_summary(session, "tenant-1", "ship-test", 0, 0.05)
        assert summary.mismatch_rate == 0.0
