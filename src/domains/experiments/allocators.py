"""Pluggable allocators behind the assignment interface.

``HashAllocator`` is the deterministic default. ``ThompsonSamplingAllocator``
serves bandit-mode tests: each variant's conversion rate gets a
Beta(1 + conversions, 1 + visitors - conversions) posterior from the latest
metric snapshot, one draw per variant, highest draw wins. The sampler is seeded
from the visitor's hash so a retried request makes the same choice; stickiness
itself still comes from the assignment row.
"""

from abc import ABC, abstractmethod
from collections.abc import Mapping, Sequence

import numpy as np

from .hashing import assign_bucket, bucket_for, ordered_variants
from .models import AllocationMode, VariantDefinition, VariantTotals


class Allocator(ABC):
    """Chooses a variant id for a visitor that has no assignment yet."""

    @abstractmethod
    def choose(
        self,
        test_id: str,
        visitor_id: str,
        variants: Sequence[VariantDefinition],
        totals: Mapping[str, VariantTotals] | None = None,
    ) -> str:
        """Return the id of the variant to serve."""


class HashAllocator(Allocator):
    def choose(
        self,
        test_id: str,
        visitor_id: str,
        variants: Sequence[VariantDefinition],
        totals: Mapping[str, VariantTotals] | None = None,
    ) -> str:
        return assign_bucket(test_id, visitor_id, variants)


class ThompsonSamplingAllocator(Allocator):
    def __init__(self, prior_alpha: float = 1.0, prior_beta: float = 1.0) -> None:
        self._prior_alpha = prior_alpha
        self._prior_beta = prior_beta

    def choose(
        self,
        test_id: str,
        visitor_id: str,
        variants: Sequence[VariantDefinition],
        totals: Mapping[str, VariantTotals] | None = None,
    ) -> str:
        totals = totals or {}
        rng = np.random.default_rng(bucket_for(test_id, visitor_id, 2**32))

        best_id = None
        best_draw = -1.0
        # Only variants with traffic allocated are eligible arms
        for variant in ordered_variants(variants):
            if variant.allocation <= 0:
                continue
            stats = totals.get(variant.id)
            conversions = stats.conversions if stats else 0
            failures = max((stats.visitors if stats else 0) - conversions, 0)
            draw = float(rng.beta(self._prior_alpha + conversions, self._prior_beta + failures))
            if draw > best_draw:
                best_id, best_draw = variant.id, draw

        return best_id if best_id is not None else ordered_variants(variants)[0].id


def get_allocator(mode: str) -> Allocator:
    if mode == AllocationMode.THOMPSON:
        return ThompsonSamplingAllocator()
    return HashAllocator()
