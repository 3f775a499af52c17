"""Winner selection and the per-pass decision state machine."""

from collections.abc import Sequence
from datetime import UTC, datetime, timedelta

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from src.db.models import ABTestDB

from .errors import ConfigError
from .models import Decision, DecisionState, SrmResult, VariantResult
from .repository import get_test, load_variants

logger = structlog.get_logger()


def select_winner(results: Sequence[VariantResult]) -> VariantResult | None:
    """Highest positive significant improvement among non-control variants.

    Ties go to the lower p-value, then the lower variant id.
    """
    eligible = [r for r in results if not r.is_control and r.is_significant and r.improvement > 0]
    if not eligible:
        return None
    return min(eligible, key=lambda r: (-r.improvement, r.p_value, r.variant_id))


def _winner_ready(
    result: VariantResult,
    control: VariantResult | None,
    min_sample_size: int,
    sequential_testing: bool,
) -> bool:
    if result.visitors < min_sample_size:
        return False
    if control is not None and control.visitors < min_sample_size:
        return False
    if sequential_testing and result.sequential is not None and not result.sequential.crossed:
        return False
    return True


def decide(
    results: Sequence[VariantResult],
    srm: SrmResult,
    guardrail_breached: bool,
    started_at: datetime | None,
    max_duration_days: int,
    min_sample_size: int = 100,
    sequential_testing: bool = True,
    now: datetime | None = None,
) -> Decision:
    """Map one pass of results to a decision state.

    Precedence: guardrail breach pauses, SRM holds, a ready winner is
    declared, an expired test is inconclusive, anything else keeps running.
    """
    if guardrail_breached:
        return Decision(state=DecisionState.PAUSED, reason="guardrail breached")
    if srm.detected:
        return Decision(
            state=DecisionState.HELD,
            reason=f"sample ratio mismatch (p={srm.p_value:.2e})",
        )

    control = next((r for r in results if r.is_control), None)
    ready = [
        r for r in results if _winner_ready(r, control, min_sample_size, sequential_testing)
    ]
    winner = select_winner(ready)
    if winner is not None:
        return Decision(
            state=DecisionState.WINNER_DECLARED,
            winner_variant_id=winner.variant_id,
            reason=f"{winner.variant_id} improves on control by {winner.improvement:.2f}%",
        )

    now = now or datetime.now(UTC)
    if started_at is not None and now - started_at >= timedelta(days=max_duration_days):
        return Decision(
            state=DecisionState.INCONCLUSIVE,
            reason=f"no significant winner after {max_duration_days} days",
        )
    return Decision(state=DecisionState.RUNNING)


async def declare_winner(
    session: AsyncSession, tenant_id: str, test_id: str, variant_id: str
) -> ABTestDB:
    """Record a winner. Idempotent for the same variant.

    Declaring never touches live traffic; rolling the winner out belongs to
    the admin surface.

    Raises:
        ABTestNotFoundError: unknown test.
        ConfigError: unknown variant, or a different winner already declared.
    """
    test = await get_test(session, tenant_id, test_id)
    variants = await load_variants(session, tenant_id, test_id)
    if variant_id not in {v.id for v in variants}:
        raise ConfigError(f"variant {variant_id} does not belong to test {test_id}")

    if test.winner_variant_id == variant_id:
        return test
    if test.winner_variant_id is not None:
        raise ConfigError(
            f"test {test_id} already declared {test.winner_variant_id} as winner"
        )

    test.winner_variant_id = variant_id
    test.decision_state = DecisionState.WINNER_DECLARED
    await session.flush()

    logger.info(
        "winner_declared",
        tenant_id=tenant_id,
        test_id=test_id,
        variant_id=variant_id,
    )
    return test
