"""Tests for sequential boundaries and multiple-comparison corrections."""

import math

import pytest

from src.domains.experiments.multiple_testing import benjamini_hochberg, holm_bonferroni
from src.domains.experiments.sequential import (
    alpha_spent,
    evaluate_boundary,
    information_fraction,
    obrien_fleming_boundary,
)


class TestInformationFraction:
    def test_fraction(self):
        assert information_fraction(250, 1000) == 0.25
        assert information_fraction(2000, 1000) == 1.0

    def test_no_plan_is_final_look(self):
        assert information_fraction(10, 0) == 1.0


class TestObrienFleming:
    def test_final_look_is_classical(self):
        assert obrien_fleming_boundary(1.0, 0.05) == pytest.approx(1.959964, abs=1e-5)

    def test_early_looks_are_stricter(self):
        assert obrien_fleming_boundary(0.25) == pytest.approx(2 * 1.959964, abs=1e-4)
        assert obrien_fleming_boundary(0.25) > obrien_fleming_boundary(0.5)

    def test_zero_information(self):
        assert math.isinf(obrien_fleming_boundary(0.0))
        assert alpha_spent(0.0) == 0.0

    def test_alpha_spent_monotone(self):
        spent = [alpha_spent(t) for t in (0.1, 0.25, 0.5, 0.75, 1.0)]
        assert spent == sorted(spent)
        assert spent[-1] == pytest.approx(0.05)


class TestEvaluateBoundary:
    def test_early_look_not_crossed(self):
        boundary = evaluate_boundary(statistic=2.5, sample_size=250, planned_sample_size=1000)
        assert boundary.information_fraction == 0.25
        assert not boundary.crossed

    def test_final_look_crossed(self):
        boundary = evaluate_boundary(statistic=2.5, sample_size=1000, planned_sample_size=1000)
        assert boundary.crossed
        assert boundary.method == "obrien_fleming"

    def test_negative_statistic_counts(self):
        assert evaluate_boundary(-3.0, 1000, 1000).crossed

    def test_no_sample(self):
        boundary = evaluate_boundary(10.0, 0, 1000)
        assert not boundary.crossed
        assert boundary.boundary_z == 0.0


class TestHolmBonferroni:
    def test_step_down(self):
        result = holm_bonferroni({"a": 0.01, "b": 0.02, "c": 0.04}, alpha=0.05)
        # 0.01 <= 0.05/3, 0.02 <= 0.05/2, 0.04 <= 0.05/1
        assert result == {"a": True, "b": True, "c": True}

    def test_stops_at_first_failure(self):
        result = holm_bonferroni({"a": 0.01, "b": 0.03, "c": 0.04}, alpha=0.05)
        assert result == {"a": True, "b": False, "c": False}

    def test_single_comparison_is_uncorrected(self):
        assert holm_bonferroni({"a": 0.049}) == {"a": True}

    def test_empty(self):
        assert holm_bonferroni({}) == {}


class TestBenjaminiHochberg:
    def test_step_up_rescues_earlier_failures(self):
        # 0.02 > 1/3 * 0.05 on its own, but rank 3 passes: 0.04 <= 0.05
        result = benjamini_hochberg({"a": 0.02, "b": 0.03, "c": 0.04}, fdr=0.05)
        assert result == {"a": True, "b": True, "c": True}

    def test_largest_passing_rank_sets_cutoff(self):
        result = benjamini_hochberg({"a": 0.001, "b": 0.03, "c": 0.2}, fdr=0.05)
        # ranks: 0.001 <= 0.0167, 0.03 <= 0.0333, 0.2 > 0.05
        assert result == {"a": True, "b": True, "c": False}

    def test_less_conservative_than_holm(self):
        p_values = {"a": 0.01, "b": 0.03, "c": 0.04}
        assert holm_bonferroni(p_values, alpha=0.05) == {"a": True, "b": False, "c": False}
        assert benjamini_hochberg(p_values, fdr=0.05) == {"a": True, "b": True, "c": True}

    def test_nothing_passes(self):
        assert benjamini_hochberg({"a": 0.2, "b": 0.5}) == {"a": False, "b": False}

    def test_empty(self):
        assert benjamini_hochberg({}) == {}
