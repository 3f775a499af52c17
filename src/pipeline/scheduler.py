"""Periodic driver for the per-test pipeline."""

import asyncio

import structlog
from sqlalchemy.ext.asyncio import async_sessionmaker

from src.domains.experiments.activation import complete_due_tests, start_due_tests
from src.domains.experiments.config import ExperimentConfig, default_config
from src.domains.experiments.errors import AggregationFailure
from src.domains.experiments.repository import list_running_tests

from .runner import run_test_pipeline

logger = structlog.get_logger()


class PipelineScheduler:
    """Runs every running test's pipeline once per interval.

    Tests are independent, so they run concurrently up to ``concurrency``;
    within a test the pass is sequential. A failed test is logged and picked
    up again on the next tick.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker,
        redis=None,
        producer=None,
        interval_seconds: float = 300,
        concurrency: int = 4,
        config: ExperimentConfig = default_config,
    ):
        self.session_factory = session_factory
        self.redis = redis
        self.producer = producer
        self.interval_seconds = interval_seconds
        self.concurrency = concurrency
        self.config = config
        self._running = False

    async def _run_one(self, semaphore: asyncio.Semaphore, tenant_id: str, test_id: str) -> bool:
        async with semaphore:
            try:
                await run_test_pipeline(
                    self.session_factory,
                    tenant_id,
                    test_id,
                    redis=self.redis,
                    producer=self.producer,
                    config=self.config,
                )
                return True
            except AggregationFailure:
                # Already logged by the runner; retried next tick
                return False

    async def activate_due(self) -> None:
        """Start scheduled tests and complete tests past their end time."""
        async with self.session_factory() as session:
            started = await start_due_tests(session, config=self.config)
            completed = await complete_due_tests(session, config=self.config)
        if started or completed:
            logger.info("scheduled_transitions_applied", started=started, completed=completed)

    async def tick(self) -> int:
        """One sweep over running tests. Returns how many passes succeeded.

        Scheduled starts and ends are applied first, so a test started this
        tick gets its first pass in the same sweep.
        """
        await self.activate_due()
        async with self.session_factory() as session:
            tests = await list_running_tests(session)
        if not tests:
            return 0

        semaphore = asyncio.Semaphore(self.concurrency)
        outcomes = await asyncio.gather(
            *(self._run_one(semaphore, tenant_id, test_id) for tenant_id, test_id in tests)
        )
        succeeded = sum(1 for ok in outcomes if ok)
        logger.info(
            "pipeline_tick_completed",
            tests=len(tests),
            succeeded=succeeded,
            failed=len(tests) - succeeded,
        )
        return succeeded

    async def start(self) -> None:
        self._running = True
        logger.info("pipeline_scheduler_started", interval_seconds=self.interval_seconds)
        while self._running:
            try:
                await self.tick()
            except Exception:
                logger.exception("pipeline_tick_failed")
            await asyncio.sleep(self.interval_seconds)

    def stop(self) -> None:
        self._running = False
        logger.info("pipeline_scheduler_stopped")
