"""Family-wise error control across the treatment-vs-control comparisons."""

from collections.abc import Mapping


def holm_bonferroni(p_values: Mapping[str, float], alpha: float = 0.05) -> dict[str, bool]:
    """Holm's step-down procedure.

    Sort p-values ascending and reject while ``p_(i) <= alpha / (m - i)``;
    the first failure stops the walk. Ties are ordered by key so the result is
    stable.
    """
    m = len(p_values)
    rejected = {key: False for key in p_values}
    ordered = sorted(p_values.items(), key=lambda item: (item[1], item[0]))
    for i, (key, p) in enumerate(ordered):
        if p > alpha / (m - i):
            break
        rejected[key] = True
    return rejected


def benjamini_hochberg(p_values: Mapping[str, float], fdr: float = 0.05) -> dict[str, bool]:
    """Benjamini-Hochberg step-up procedure, controlling the false discovery rate.

    Find the largest rank ``k`` with ``p_(k) <= k / m * fdr`` and reject the
    ``k`` smallest p-values, including any that failed their own threshold.
    """
    m = len(p_values)
    rejected = {key: False for key in p_values}
    ordered = sorted(p_values.items(), key=lambda item: (item[1], item[0]))
    cutoff = 0
    for rank, (_, p) in enumerate(ordered, start=1):
        if p <= rank / m * fdr:
            cutoff = rank
    for key, _ in ordered[:cutoff]:
        rejected[key] = True
    return rejected
