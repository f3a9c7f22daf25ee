"""
Nested-model F-tests and local false discovery rates.

`f_pvalue` compares a full design against a nested null design for every
feature at once; `edge_lfdr` turns a vector of p-values into local false
discovery rates. The surrogate-variable estimator combines the two to
weight features, and `f_test` is the user-facing significance test.

Usage:
------
    >>> from svapy import f_test
    >>> pvalues = f_test(expression, mod, mod0)
    >>> significant = pvalues < 0.05
"""

from typing import Any, Tuple
import numpy as np
import pandas as pd
from scipy import stats

from .checks import as_data_matrix, as_design, check_sample_axis, sample_names_of
from .exceptions import NestingViolationError, SingularDesignError
from .linalg import EPS, check_full_rank, hat_matrix, lm_rss

__all__ = [
    'DEFAULT_LFDR_LAMBDA',
    'DEFAULT_LFDR_ADJ',
    'check_nested',
    'f_statistic',
    'f_pvalue',
    'f_test',
    'edge_lfdr',
]

DEFAULT_LFDR_LAMBDA = 0.8
DEFAULT_LFDR_ADJ = 1.5

# Number of grid points for the kernel density estimate
_DENSITY_GRID = 512


# =============================================================================
# Nested F-test
# =============================================================================

def check_nested(mod: np.ndarray, mod0: np.ndarray, tol: float = 1e-8) -> None:
    """
    Verify that ``mod0`` is nested in ``mod``.

    The null design must have strictly fewer columns than the full design
    and every one of its columns must lie in the full design's span.

    Raises
    ------
    NestingViolationError
    """
    p1, p0 = mod.shape[1], mod0.shape[1]
    if p0 >= p1:
        raise NestingViolationError(
            f"`mod0` has {p0} columns but `mod` has {p1}; "
            "the null model must be strictly smaller than the full model."
        )
    if p0 == 0:
        return

    H = hat_matrix(mod, "mod")
    outside = mod0 - H @ mod0
    scale = max(np.linalg.norm(mod0), EPS)
    rel = np.linalg.norm(outside) / scale
    if rel > tol:
        raise NestingViolationError(
            f"Columns of `mod0` are not in the column span of `mod` "
            f"(relative residual {rel:.2e}); the F-test requires nested models."
        )


def f_statistic(
    dat: np.ndarray,
    mod: np.ndarray,
    mod0: np.ndarray,
    check_nesting: bool = True
) -> Tuple[np.ndarray, int, int]:
    """
    Per-feature F-statistics for ``mod`` against the nested ``mod0``.

    Parameters
    ----------
    dat : ndarray, shape (n_features, n_samples)
    mod : ndarray, shape (n_samples, p1)
    mod0 : ndarray, shape (n_samples, p0)
    check_nesting : bool, default=True
        Verify nesting before fitting. Internal callers that build nested
        designs by construction switch it off.

    Returns
    -------
    tuple
        (fstats, df1, df2) with df1 = p1 - p0 and df2 = n - p1.
    """
    n = dat.shape[1]
    check_sample_axis(n, mod.shape[0], "mod")
    check_sample_axis(n, mod0.shape[0], "mod0")
    check_full_rank(mod, "mod")
    check_full_rank(mod0, "mod0")
    if check_nesting:
        check_nested(mod, mod0)

    df1 = mod.shape[1] - mod0.shape[1]
    df2 = n - mod.shape[1]
    if df1 <= 0:
        raise NestingViolationError("`mod` must have more columns than `mod0`")
    if df2 <= 0:
        raise SingularDesignError(
            f"`mod` has {mod.shape[1]} columns for {n} samples; "
            "no residual degrees of freedom are left for the F-test."
        )

    rss1 = lm_rss(dat, mod, "mod")
    rss0 = lm_rss(dat, mod0, "mod0")

    with np.errstate(divide='ignore', invalid='ignore'):
        fstats = ((rss0 - rss1) / df1) / (rss1 / df2)
    # Rounding can make rss0 - rss1 slightly negative
    fstats = np.where(fstats < 0, 0.0, fstats)
    return fstats, df1, df2


def f_pvalue(
    dat: np.ndarray,
    mod: np.ndarray,
    mod0: np.ndarray,
    check_nesting: bool = True
) -> np.ndarray:
    """
    Per-feature p-values of the nested-model F-test.

    Features with zero residual under both models (0/0) get p = 1.

    Returns
    -------
    ndarray, shape (n_features,)
    """
    fstats, df1, df2 = f_statistic(dat, mod, mod0, check_nesting=check_nesting)
    pvalues = stats.f.sf(fstats, df1, df2)
    return np.where(np.isnan(pvalues), 1.0, pvalues)


def f_test(X: Any, mod: Any, mod0: Any) -> Any:
    """
    F-test p-values comparing a full design against a nested null design.

    Parameters
    ----------
    X : ndarray or DataFrame, shape (n_features, n_samples)
        Raw or corrected measurement matrix.
    mod : ndarray or DataFrame, shape (n_samples, p1)
        Full design (primary variables + adjustment variables).
    mod0 : ndarray or DataFrame, shape (n_samples, p0)
        Null design (adjustment variables only), nested in ``mod``.

    Returns
    -------
    ndarray or Series, shape (n_features,)
        One p-value per feature; a Series indexed by feature when ``X`` is
        a DataFrame. Multiple-testing correction is left to the caller.

    Raises
    ------
    DimensionMismatchError
        If the designs disagree with ``X`` on the number of samples.
    NestingViolationError
        If ``mod0`` is not nested in ``mod``. Checked before any
        per-feature fit.
    """
    dat = as_data_matrix(X, "X")
    names = sample_names_of(X)
    mod_arr = as_design(mod, dat.shape[1], "mod", names)
    mod0_arr = as_design(mod0, dat.shape[1], "mod0", names)

    pvalues = f_pvalue(dat, mod_arr, mod0_arr, check_nesting=True)

    if isinstance(X, pd.DataFrame):
        return pd.Series(pvalues, index=X.index, name="pvalue")
    return pvalues


# =============================================================================
# Local false discovery rate
# =============================================================================

def _bandwidth_nrd0(x: np.ndarray) -> float:
    """Silverman's rule-of-thumb bandwidth."""
    sd = np.std(x, ddof=1)
    q75, q25 = np.percentile(x, [75, 25])
    lo = min(sd, (q75 - q25) / 1.34)
    if lo <= 0:
        lo = sd
    return 0.9 * lo * x.size ** (-0.2)


def edge_lfdr(
    p: np.ndarray,
    lambda_: float = DEFAULT_LFDR_LAMBDA,
    adj: float = DEFAULT_LFDR_ADJ,
    eps: float = 1e-8,
    trunc: bool = True,
    monotone: bool = True
) -> np.ndarray:
    """
    Local false discovery rate for each p-value.

    P-values are probit transformed, their density is estimated with a
    Gaussian kernel and compared against the standard normal density
    expected under the null:

        lfdr(x) = pi0 * phi(x) / f(x),   pi0 = min(1, mean(p >= lambda) / (1 - lambda))

    Parameters
    ----------
    p : array-like
        P-values in [0, 1].
    lambda_ : float, default=0.8
        Tail cutoff for the null-proportion estimate.
    adj : float, default=1.5
        Multiplier applied to the rule-of-thumb kernel bandwidth.
    eps : float, default=1e-8
        P-values are clipped to [eps, 1 - eps] before the probit transform.
    trunc : bool, default=True
        Cap the result at 1.
    monotone : bool, default=True
        Force lfdr to be non-decreasing in p.

    Returns
    -------
    ndarray
        Local false discovery rates, same length as ``p``.
    """
    p = np.asarray(p, dtype=np.float64).ravel()
    n = p.size
    if n == 0:
        return p.copy()

    pi0 = min(np.mean(p >= lambda_) / (1.0 - lambda_), 1.0)

    x = stats.norm.ppf(np.clip(p, eps, 1.0 - eps))
    sd = np.std(x, ddof=1) if n > 1 else 0.0

    if n < 2 or sd < EPS:
        # Degenerate spread: no density to compare against
        lfdr = np.full(n, pi0)
    else:
        bw = _bandwidth_nrd0(x) * adj
        kde = stats.gaussian_kde(x, bw_method=bw / sd)
        grid = np.linspace(x.min() - 3 * bw, x.max() + 3 * bw, _DENSITY_GRID)
        density = np.interp(x, grid, kde(grid))
        lfdr = pi0 * stats.norm.pdf(x) / np.maximum(density, EPS)

    if trunc:
        lfdr = np.minimum(lfdr, 1.0)

    if monotone:
        order = np.argsort(p, kind='mergesort')
        out = np.empty_like(lfdr)
        out[order] = np.maximum.accumulate(lfdr[order])
        lfdr = out

    return lfdr
