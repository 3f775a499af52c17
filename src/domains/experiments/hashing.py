"""Deterministic visitor bucketing and allocation walking.

Nothing here touches storage: the same (test, visitor) pair maps to the same
bucket in every process, which is what makes assignment sticky even before the
assignment row exists.
"""

import hashlib
import math
from collections.abc import Sequence

from .config import default_config
from .errors import ConfigError
from .models import VariantDefinition

BUCKET_COUNT = default_config.allocation.bucket_count


def bucket_for(test_id: str, visitor_id: str, bucket_count: int = BUCKET_COUNT) -> int:
    """Map a visitor to a bucket in ``[0, bucket_count)`` for a test."""
    key = f"{test_id}:{visitor_id}".encode("utf-8")
    digest = hashlib.sha256(key).hexdigest()
    return int(digest[:8], 16) % bucket_count


def ordered_variants(variants: Sequence[VariantDefinition]) -> list[VariantDefinition]:
    """Fixed walk order: position first, id as tie-break."""
    return sorted(variants, key=lambda v: (v.position, v.id))


def select_variant(
    bucket: int,
    variants: Sequence[VariantDefinition],
    bucket_count: int = BUCKET_COUNT,
) -> VariantDefinition:
    """Return the first variant whose cumulative boundary exceeds ``bucket``.

    Boundaries are rounded from the cumulative allocation, so per-variant
    rounding errors do not accumulate. Buckets left over by rounding go to the
    last variant that has traffic; a zero-allocation variant never serves.
    """
    walk = ordered_variants(variants)
    if not walk:
        raise ConfigError("cannot select a variant from an empty list")

    cumulative = 0.0
    for variant in walk:
        if variant.allocation <= 0:
            continue
        cumulative += variant.allocation
        if bucket < round(cumulative * bucket_count):
            return variant

    serving = [v for v in walk if v.allocation > 0]
    return serving[-1] if serving else walk[-1]


def assign_bucket(test_id: str, visitor_id: str, variants: Sequence[VariantDefinition]) -> str:
    """Hash path end to end: visitor → bucket → variant id."""
    return select_variant(bucket_for(test_id, visitor_id), variants).id


def validate_allocations(
    variants: Sequence[VariantDefinition],
    epsilon: float = default_config.allocation.allocation_epsilon,
) -> None:
    """Reject configurations that cannot be started.

    Raises:
        ConfigError: fewer than two variants, an allocation outside [0, 1],
            allocations not summing to 1.0 within ``epsilon``, or anything
            other than exactly one control.
    """
    if len(variants) < 2:
        raise ConfigError("a test needs at least two variants")

    ids = [v.id for v in variants]
    if len(set(ids)) != len(ids):
        raise ConfigError("variant ids must be unique within a test")

    for v in variants:
        if not 0.0 <= v.allocation <= 1.0 or math.isnan(v.allocation):
            raise ConfigError(f"variant {v.id} allocation {v.allocation} outside [0, 1]")

    total = sum(v.allocation for v in variants)
    if abs(total - 1.0) > epsilon:
        raise ConfigError(f"allocations sum to {total:.4f}, expected 1.0 ± {epsilon}")

    controls = [v.id for v in variants if v.is_control]
    if len(controls) != 1:
        raise ConfigError(f"expected exactly one control variant, found {len(controls)}")


def control_of(variants: Sequence[VariantDefinition]) -> VariantDefinition:
    for v in variants:
        if v.is_control:
            return v
    raise ConfigError("test has no control variant")
