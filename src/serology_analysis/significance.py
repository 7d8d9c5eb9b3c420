from __future__ import annotations

from dataclasses import dataclass
from typing import Literal

import numpy as np
from scipy import stats
from scipy.stats.contingency import expected_freq

Distribution = Literal["nonparametric", "normal"]

_SMALL_EXPECTED = 5.0
_PERMUTATIONS = 9999
_PERMUTATION_SEED = 20210101


@dataclass(frozen=True)
class StatResult:
    test: str
    statistic: float
    p_value: float


def _nan_result(test: str) -> StatResult:
    return StatResult(test=test, statistic=float("nan"), p_value=float("nan"))


def compare_continuous(groups: list[np.ndarray], *, distribution: Distribution) -> StatResult:
    groups = [np.asarray(g, dtype="float64") for g in groups]
    groups = [g[~np.isnan(g)] for g in groups]
    two = len(groups) == 2

    if distribution == "normal":
        test = "Welch t-test" if two else "One-way ANOVA"
        if any(g.size < 2 for g in groups):
            return _nan_result(test)
        if two:
            res = stats.ttest_ind(groups[0], groups[1], equal_var=False)
        else:
            res = stats.f_oneway(*groups)
        return StatResult(test=test, statistic=float(res.statistic), p_value=float(res.pvalue))

    test = "Mann-Whitney U" if two else "Kruskal-Wallis"
    if any(g.size == 0 for g in groups):
        return _nan_result(test)
    try:
        if two:
            res = stats.mannwhitneyu(groups[0], groups[1], alternative="two-sided")
        else:
            res = stats.kruskal(*groups)
    except ValueError:
        # scipy refuses when every observation is identical.
        return _nan_result(test)
    return StatResult(test=test, statistic=float(res.statistic), p_value=float(res.pvalue))


def _permutation_chi2(table: np.ndarray) -> StatResult:
    """Pearson chi-square with a permutation p-value; both margins stay fixed."""
    n_levels = table.shape[0]
    samples = [np.repeat(np.arange(n_levels), table[:, j]) for j in range(table.shape[1])]

    def statistic(*groups: np.ndarray, axis: int = -1) -> np.ndarray:
        counts = np.stack(
            [np.stack([(g == level).sum(axis=axis) for level in range(n_levels)], axis=-1) for g in groups],
            axis=-1,
        )
        total = counts.sum(axis=(-2, -1), keepdims=True)
        expected = counts.sum(axis=-1, keepdims=True) * counts.sum(axis=-2, keepdims=True) / total
        return ((counts - expected) ** 2 / expected).sum(axis=(-2, -1))

    res = stats.permutation_test(
        samples,
        statistic,
        permutation_type="independent",
        vectorized=True,
        n_resamples=_PERMUTATIONS,
        alternative="greater",
        random_state=np.random.default_rng(_PERMUTATION_SEED),
    )
    return StatResult(test="Permutation chi-square", statistic=float(res.statistic), p_value=float(res.pvalue))


def compare_categorical(table: np.ndarray) -> StatResult:
    """Independence test on a levels x strata count table."""
    table = np.asarray(table, dtype="int64")
    table = table[table.sum(axis=1) > 0]
    if table.ndim != 2 or table.shape[0] < 2:
        return _nan_result("Chi-square")
    table = table[:, table.sum(axis=0) > 0]
    if table.shape[1] < 2:
        return _nan_result("Chi-square")

    small = bool((expected_freq(table) < _SMALL_EXPECTED).any())
    if table.shape == (2, 2) and small:
        odds_ratio, p = stats.fisher_exact(table, alternative="two-sided")
        return StatResult(test="Fisher exact", statistic=float(odds_ratio), p_value=float(p))

    if small:
        return _permutation_chi2(table)

    chi2, p, _, _ = stats.chi2_contingency(table, correction=True)
    return StatResult(test="Chi-square", statistic=float(chi2), p_value=float(p))


def mcnemar_exact(before: np.ndarray, after: np.ndarray) -> tuple[dict[str, int], StatResult]:
    """Exact McNemar test on paired 0/1 outcomes."""
    before = np.asarray(before).astype(int)
    after = np.asarray(after).astype(int)
    counts = {
        "both": int(((before == 1) & (after == 1)).sum()),
        "before_only": int(((before == 1) & (after == 0)).sum()),
        "after_only": int(((before == 0) & (after == 1)).sum()),
        "neither": int(((before == 0) & (after == 0)).sum()),
    }
    b = counts["before_only"]
    c = counts["after_only"]
    if b + c == 0:
        return counts, StatResult(test="McNemar exact", statistic=0.0, p_value=1.0)
    p = float(stats.binomtest(min(b, c), b + c, 0.5).pvalue)
    return counts, StatResult(test="McNemar exact", statistic=float(min(b, c)), p_value=p)
