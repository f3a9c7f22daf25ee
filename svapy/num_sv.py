"""
Estimate the number of surrogate variables.

Two strategies are provided, both working on the residual matrix
R = X (I - H) left after projecting out the full design:

- ``"be"`` (permutation): compares each residual singular value's share of
  variance with the same share in row-permuted residuals
  (Buja & Eyuboglu). Robust, costs one SVD per permutation round.
- ``"leek"`` (asymptotic): compares each share of variance with the
  Marchenko-Pastur bulk edge expected for pure noise of the same shape.
  One SVD, cheaper but less robust to structured noise.

Usage:
------
    >>> from svapy import estimate_surrogate_count
    >>>
    >>> k = estimate_surrogate_count(expression, mod, method="be", n_perm=50, seed=1)
    >>> k_fast = estimate_surrogate_count(expression, mod, method="leek")
"""

from typing import Any, Optional
import numpy as np
from scipy import linalg

from .checks import as_data_matrix, as_design, sample_names_of
from .linalg import EPS, check_full_rank, hat_matrix
from .rng import DEFAULT_SEED, SeedLike, permute_within_rows, spawn_generators
from .stats import check_nested

__all__ = [
    'DEFAULT_N_PERM',
    'DEFAULT_SV_SIG',
    'permutation_sv_count',
    'asymptotic_sv_count',
    'estimate_surrogate_count',
    'resolve_method',
]

DEFAULT_N_PERM = 20
DEFAULT_SV_SIG = 0.05

_METHOD_ALIASES = {
    "be": "be",
    "permutation": "be",
    "leek": "leek",
    "asymptotic": "leek",
}


def resolve_method(method: str) -> str:
    """
    Map a counting method name or alias to ``"be"`` or ``"leek"``.

    ``"permutation"`` is an alias of ``"be"`` and ``"asymptotic"`` of
    ``"leek"``. Raises ``ValueError`` for any other name.
    """
    resolved = _METHOD_ALIASES.get(method)
    if resolved is None:
        raise ValueError(
            f"Unknown method: {method!r}. Use one of {sorted(_METHOD_ALIASES)}"
        )
    return resolved


def _residuals_and_df(dat: np.ndarray, mod: np.ndarray):
    """Residual matrix, hat matrix, residual rank and residual sample dof."""
    m, n = dat.shape
    H = hat_matrix(mod, "mod")
    res = dat - dat @ H
    n_resid = n - mod.shape[1]
    ndf = min(m, n_resid)
    return res, H, ndf, n_resid


def _variance_shares(res: np.ndarray, ndf: int) -> np.ndarray:
    """Share of total variance carried by each of the first ``ndf`` singular values."""
    d2 = linalg.svdvals(res)[:ndf] ** 2
    total = d2.sum()
    if total <= EPS:
        return np.zeros(ndf)
    return d2 / total


# =============================================================================
# Permutation method
# =============================================================================

def permutation_sv_count(
    dat: np.ndarray,
    mod: np.ndarray,
    n_perm: int = DEFAULT_N_PERM,
    seed: SeedLike = DEFAULT_SEED,
    sv_sig: float = DEFAULT_SV_SIG,
    verbose: bool = False
) -> int:
    """
    Count surrogate variables with the permutation (randomization) test.

    For every permutation round each row of the residual matrix is
    shuffled independently, re-projected onto the residual space and its
    singular-value shares recorded. Rank j is significant when the fraction
    of permuted shares >= the observed share is at most ``sv_sig``. The
    per-rank p-values are made non-decreasing, so counting stops at the
    first non-significant rank.

    Parameters
    ----------
    dat : ndarray, shape (n_features, n_samples)
        Measurement matrix.
    mod : ndarray, shape (n_samples, p)
        Full-rank full design.
    n_perm : int, default=20
        Number of permutation rounds.
    seed : int, SeedSequence or None, default=0
        Seed for the permutation rounds. Identical seeds give identical
        counts.
    sv_sig : float, default=0.05
        Significance threshold per rank (0.05 = observed share must exceed
        the 95th percentile of the null).
    verbose : bool, default=False
        Print progress information.

    Returns
    -------
    int
        Estimated number of surrogate variables.
    """
    if n_perm <= 0:
        raise ValueError("n_perm must be positive")
    if not 0.0 < sv_sig < 1.0:
        raise ValueError("sv_sig must be in (0, 1)")

    res, H, ndf, _ = _residuals_and_df(dat, mod)
    if ndf <= 0:
        return 0

    dstat = _variance_shares(res, ndf)
    if not dstat.any():
        return 0

    if verbose:
        print(f"  Permutation test: {n_perm} rounds, {ndf} candidate ranks")

    dstat0 = np.zeros((n_perm, ndf), dtype=np.float64)
    for i, rng in enumerate(spawn_generators(seed, n_perm)):
        res0 = permute_within_rows(res, rng)
        res0 = res0 - res0 @ H
        dstat0[i] = _variance_shares(res0, ndf)

        if verbose and (i + 1) % 10 == 0:
            print(f"    {i + 1}/{n_perm} rounds done")

    psv = np.mean(dstat0 >= dstat[None, :], axis=0)
    psv = np.maximum.accumulate(psv)
    return int(np.sum(psv <= sv_sig))


# =============================================================================
# Asymptotic method
# =============================================================================

def asymptotic_sv_count(dat: np.ndarray, mod: np.ndarray, verbose: bool = False) -> int:
    """
    Count surrogate variables against a random-matrix threshold.

    Pure noise with variance s2 in an m x r residual matrix (r = n - p) has
    squared singular values below s2 (sqrt(m) + sqrt(r))^2. Starting from
    k = 0, the noise variance is estimated from the shares not yet selected,

        s2_share = sum(share[k:]) / ((m - k)(r - k)),

    and k is updated to the number of leading shares above
    s2_share (sqrt(m) + sqrt(r))^2 until it stops changing.

    Returns
    -------
    int
        Estimated number of surrogate variables.
    """
    res, _, ndf, n_resid = _residuals_and_df(dat, mod)
    m = dat.shape[0]
    if ndf <= 1:
        return 0

    shares = _variance_shares(res, ndf)
    if not shares.any():
        return 0

    edge = (np.sqrt(m) + np.sqrt(n_resid)) ** 2
    k = 0
    for _ in range(ndf):
        noise_share = shares[k:].sum() / ((m - k) * (n_resid - k))
        above = shares > noise_share * edge
        # Leading run of ranks above the threshold
        k_new = int(np.argmin(above)) if not above.all() else ndf
        k_new = min(k_new, ndf - 1)

        if verbose:
            print(f"  Asymptotic threshold {noise_share * edge:.3e}: {k_new} factor(s)")
        if k_new == k:
            break
        k = k_new

    return k


# =============================================================================
# Call contract
# =============================================================================

def estimate_surrogate_count(
    X: Any,
    mod: Any,
    mod0: Optional[Any] = None,
    method: str = "be",
    n_perm: int = DEFAULT_N_PERM,
    seed: SeedLike = DEFAULT_SEED,
    sv_sig: float = DEFAULT_SV_SIG,
    verbose: bool = False
) -> int:
    """
    Estimate how many surrogate variables the data carries.

    Parameters
    ----------
    X : ndarray or DataFrame, shape (n_features, n_samples)
        Measurement matrix.
    mod : ndarray or DataFrame, shape (n_samples, p)
        Full design (primary + adjustment variables).
    mod0 : ndarray or DataFrame, optional
        Null design. Neither method uses it, but when given it is checked
        for nesting so that the count can be passed straight to `sva`.
    method : {"be", "permutation", "leek", "asymptotic"}, default="be"
        Counting strategy.
    n_perm : int, default=20
        Permutation rounds (``"be"`` only).
    seed : int, SeedSequence or None, default=0
        Permutation seed (``"be"`` only).
    sv_sig : float, default=0.05
        Per-rank significance threshold (``"be"`` only).
    verbose : bool, default=False
        Print progress information.

    Returns
    -------
    int
        Number of surrogate variables (>= 0).

    Examples
    --------
    >>> k = estimate_surrogate_count(X, mod, mod0, method="be", n_perm=100, seed=42)
    """
    resolved = resolve_method(method)

    dat = as_data_matrix(X, "X")
    names = sample_names_of(X)
    mod_arr = as_design(mod, dat.shape[1], "mod", names)
    check_full_rank(mod_arr, "mod")
    if mod0 is not None:
        mod0_arr = as_design(mod0, dat.shape[1], "mod0", names)
        check_full_rank(mod0_arr, "mod0")
        check_nested(mod_arr, mod0_arr)

    if verbose:
        print(f"Surrogate count ({resolved}): {dat.shape[0]} features × {dat.shape[1]} samples")

    if resolved == "be":
        return permutation_sv_count(
            dat, mod_arr, n_perm=n_perm, seed=seed, sv_sig=sv_sig, verbose=verbose
        )
    return asymptotic_sv_count(dat, mod_arr, verbose=verbose)
