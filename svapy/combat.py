"""
Empirical-Bayes batch adjustment (ComBat).

Known batch effects are modeled as a per-batch, per-feature location
shift (gamma) and scale (delta^2) of the standardized data. Raw estimates
are shrunk toward batch-wide priors before removal, so small batches do
not amplify noise:

1. Fit ``X ~ [batch indicators, covariates]`` and standardize every
   feature to zero grand mean and unit pooled variance.
2. Estimate gamma and delta^2 per batch and feature.
3. Fit a normal prior on gamma and an inverse-gamma prior on delta^2 per
   batch (method of moments) and compute shrunken estimates, either by
   the parametric fixed-point iteration (`it_sol`) or by the
   non-parametric likelihood-weighted average (`int_eprior`).
4. Remove the shrunken effects and undo the standardization.

Usage:
------
    >>> from svapy import batch_adjust
    >>>
    >>> corrected = batch_adjust(expression, batch, design=mod)
    >>> corrected = batch_adjust(expression, batch, par_prior=False)     # non-parametric
    >>> corrected = batch_adjust(expression, batch, ref_batch="run1")    # keep run1 as is
    >>> corrected = batch_adjust(expression, batch, population_average=True)
"""

from typing import Any, Optional, Tuple
import time
import warnings

import numpy as np

from .checks import (
    as_data_matrix,
    as_design,
    as_labels,
    check_batch,
    sample_names_of,
    wrap_like,
)
from .exceptions import NonConvergenceWarning
from .linalg import EPS, check_full_rank, lm_coef
from .sva import psva

__all__ = [
    'DEFAULT_EB_CONV',
    'DEFAULT_EB_MAX_ITER',
    'aprior',
    'bprior',
    'postmean',
    'postvar',
    'EBState',
    'it_sol',
    'int_eprior',
    'combat',
    'batch_adjust',
]

DEFAULT_EB_CONV = 1e-4
DEFAULT_EB_MAX_ITER = 100

# Rows of the leave-one-out likelihood matrix evaluated at once
DEFAULT_EPRIOR_BLOCK = 256


# =============================================================================
# Prior helpers
# =============================================================================

def aprior(delta_hat: np.ndarray) -> float:
    """Inverse-gamma shape from the mean and variance of the raw scales."""
    m = np.mean(delta_hat)
    s2 = max(np.var(delta_hat, ddof=1), EPS)
    return (2 * s2 + m ** 2) / s2


def bprior(delta_hat: np.ndarray) -> float:
    """Inverse-gamma scale from the mean and variance of the raw scales."""
    m = np.mean(delta_hat)
    s2 = max(np.var(delta_hat, ddof=1), EPS)
    return (m * s2 + m ** 3) / s2


def postmean(g_hat, g_bar, n, d_star, t2):
    """Posterior mean of gamma under a N(g_bar, t2) prior."""
    return (t2 * n * g_hat + d_star * g_bar) / (t2 * n + d_star)


def postvar(sum2, n, a, b):
    """Posterior mean of delta^2 under an inverse-gamma(a, b) prior."""
    return (0.5 * sum2 + b) / (n / 2.0 + a - 1.0)


# =============================================================================
# Parametric shrinkage
# =============================================================================

class EBState:
    """
    State of the alternating gamma/delta^2 update for one batch.

    Attributes
    ----------
    gamma, delta : ndarray, shape (n_features,)
        Current shrunken location and scale estimates.
    iteration : int
        Completed rounds.
    change : float
        Largest relative change of the last round.
    converged : bool
        Whether ``change`` dropped below the tolerance.
    """

    __slots__ = ('gamma', 'delta', 'iteration', 'change', 'converged')

    def __init__(self, gamma: np.ndarray, delta: np.ndarray):
        self.gamma = gamma
        self.delta = delta
        self.iteration = 0
        self.change = np.inf
        self.converged = False

    def update(self, gamma: np.ndarray, delta: np.ndarray, conv: float) -> None:
        rel_g = np.abs(gamma - self.gamma) / (np.abs(self.gamma) + EPS)
        rel_d = np.abs(delta - self.delta) / (np.abs(self.delta) + EPS)
        self.change = float(max(rel_g.max(initial=0.0), rel_d.max(initial=0.0)))
        self.gamma = gamma
        self.delta = delta
        self.iteration += 1
        self.converged = self.change < conv

    def __repr__(self) -> str:
        return (
            f"EBState(n_features={self.gamma.size}, iteration={self.iteration}, "
            f"change={self.change:.3e}, converged={self.converged})"
        )


def it_sol(
    sdat: np.ndarray,
    g_hat: np.ndarray,
    d_hat: np.ndarray,
    g_bar: float,
    t2: float,
    a: float,
    b: float,
    conv: float = DEFAULT_EB_CONV,
    max_iter: int = DEFAULT_EB_MAX_ITER
) -> EBState:
    """
    Parametric empirical-Bayes estimates for one batch.

    Alternates the posterior mean of gamma (given the current delta^2) and
    the posterior mean of delta^2 (given the new gamma) until the largest
    relative change falls below ``conv``.

    Parameters
    ----------
    sdat : ndarray, shape (n_features, n_batch_samples)
        Standardized data of the batch.
    g_hat, d_hat : ndarray, shape (n_features,)
        Raw location and scale estimates.
    g_bar, t2 : float
        Normal prior mean and variance of gamma.
    a, b : float
        Inverse-gamma prior shape and scale of delta^2.
    conv : float, default=1e-4
        Relative-change tolerance.
    max_iter : int, default=100
        Round cap. Reaching it issues a `NonConvergenceWarning` and keeps
        the last iterate.

    Returns
    -------
    EBState
    """
    n = sdat.shape[1]
    state = EBState(g_hat.copy(), d_hat.copy())

    while state.iteration < max_iter:
        g_new = postmean(g_hat, g_bar, n, state.delta, t2)
        sum2 = ((sdat - g_new[:, None]) ** 2).sum(axis=1)
        d_new = postvar(sum2, n, a, b)
        state.update(g_new, d_new, conv)
        if state.converged:
            break

    if not state.converged:
        warnings.warn(
            f"Empirical-Bayes update stopped after {state.iteration} rounds "
            f"(last relative change {state.change:.2e} >= {conv:.1e}); "
            "returning the last iterate.",
            NonConvergenceWarning
        )
    return state


# =============================================================================
# Non-parametric shrinkage
# =============================================================================

def int_eprior(
    sdat: np.ndarray,
    g_hat: np.ndarray,
    d_hat: np.ndarray,
    block_size: int = DEFAULT_EPRIOR_BLOCK
) -> Tuple[np.ndarray, np.ndarray]:
    """
    Non-parametric empirical-Bayes estimates for one batch.

    Each feature's shrunken gamma and delta^2 are averages of the other
    features' raw estimates, weighted by the normal likelihood of this
    feature's data under those estimates. Cost is quadratic in the number
    of features; rows are processed in blocks of ``block_size`` and the
    likelihoods are normalized in log space.

    Returns
    -------
    tuple
        (g_star, d_star), each of shape (n_features,).
    """
    m, n = sdat.shape
    if m < 2:
        raise ValueError("Non-parametric shrinkage needs at least 2 features")

    s1 = sdat.sum(axis=1)
    s2 = np.einsum('ij,ij->i', sdat, sdat)
    log_norm = -0.5 * n * np.log(2.0 * np.pi * d_hat)

    g_star = np.empty(m, dtype=np.float64)
    d_star = np.empty(m, dtype=np.float64)

    for start in range(0, m, block_size):
        stop = min(start + block_size, m)
        rows = np.arange(start, stop)

        # sum_j (x_ij - g_k)^2 for every feature i in the block and every k
        sum2 = s2[rows, None] - 2.0 * s1[rows, None] * g_hat[None, :] + n * g_hat[None, :] ** 2
        np.maximum(sum2, 0.0, out=sum2)
        loglh = log_norm[None, :] - sum2 / (2.0 * d_hat[None, :])
        loglh[np.arange(stop - start), rows] = -np.inf

        loglh -= loglh.max(axis=1, keepdims=True)
        weights = np.exp(loglh)
        total = weights.sum(axis=1)

        g_star[rows] = (weights @ g_hat) / total
        d_star[rows] = (weights @ d_hat) / total

    return g_star, d_star


# =============================================================================
# ComBat
# =============================================================================

def _zero_variance_rows(dat: np.ndarray, indices) -> np.ndarray:
    """Features that are constant within at least one batch."""
    mask = np.zeros(dat.shape[0], dtype=bool)
    for idx in indices:
        mask |= np.var(dat[:, idx], axis=1, ddof=1) <= EPS
    return mask


def combat(
    dat: Any,
    batch: Any,
    mod: Optional[Any] = None,
    par_prior: bool = True,
    mean_only: bool = False,
    ref_batch: Optional[Any] = None,
    conv: float = DEFAULT_EB_CONV,
    max_iter: int = DEFAULT_EB_MAX_ITER,
    verbose: bool = False
) -> np.ndarray:
    """
    Adjust a features × samples matrix for known batches.

    Parameters
    ----------
    dat : ndarray or DataFrame, shape (n_features, n_samples)
        Measurement matrix.
    batch : array-like or Series, shape (n_samples,)
        Batch label per sample. Every batch needs at least 2 samples.
    mod : ndarray or DataFrame, shape (n_samples, p), optional
        Covariates to protect (batch excluded). Constant columns are
        dropped since the batch indicators already span the intercept.
    par_prior : bool, default=True
        Parametric priors (`it_sol`) if True, else the non-parametric
        average (`int_eprior`).
    mean_only : bool, default=False
        Adjust only the location; scales are fixed at 1.
    ref_batch : optional
        Batch label used as the reference: its samples are left unchanged
        and the other batches are moved toward it.
    conv : float, default=1e-4
        Relative-change tolerance of the parametric update.
    max_iter : int, default=100
        Round cap of the parametric update.
    verbose : bool, default=False
        Print progress information.

    Returns
    -------
    ndarray, shape (n_features, n_samples)
        Corrected data. Features constant within any batch are returned
        unchanged.

    Raises
    ------
    DimensionMismatchError
        If ``batch`` or ``mod`` disagree with ``dat`` on the sample axis.
    DegenerateBatchError
        If a batch has fewer than 2 samples.
    SingularDesignError
        If the covariates are confounded with batch.
    """
    start_time = time.time()

    values = as_data_matrix(dat, "dat")
    names = sample_names_of(dat)
    m, n = values.shape
    labels = as_labels(batch, n, "batch", names)
    levels, indices = check_batch(labels, min_size=2)
    n_batch = len(levels)

    if n_batch < 2:
        warnings.warn("Only one batch present; nothing to adjust.", UserWarning)
        return values.copy()

    ref = None
    if ref_batch is not None:
        if ref_batch not in levels:
            raise ValueError(f"ref_batch {ref_batch!r} is not one of the batch levels {levels}")
        ref = levels.index(ref_batch)

    if verbose:
        print("ComBat batch adjustment")
        print(f"  Data: {m} features × {n} samples, {n_batch} batches")
        print(f"  Mode: {'parametric' if par_prior else 'non-parametric'}"
              f"{', mean only' if mean_only else ''}"
              f"{f', reference batch {ref_batch!r}' if ref is not None else ''}")

    # Design: one indicator per batch, then covariates without the intercept
    batchmod = np.zeros((n, n_batch), dtype=np.float64)
    for j, idx in enumerate(indices):
        batchmod[idx, j] = 1.0
    if ref is not None:
        batchmod[:, ref] = 1.0

    if mod is None:
        covars = np.zeros((n, 0), dtype=np.float64)
    else:
        mod_arr = as_design(mod, n, "mod", names)
        # Constant columns duplicate the batch indicators
        covars = mod_arr[:, np.ptp(mod_arr, axis=0) > 0]
    design = np.hstack([batchmod, covars])
    check_full_rank(design, "batch + mod")

    # Standardize
    B = lm_coef(values, design, "batch + mod")
    resid = values - B @ design.T
    n_per_batch = np.array([len(idx) for idx in indices], dtype=np.float64)
    if ref is not None:
        grand_mean = B[:, ref]
        var_pooled = np.mean(resid[:, indices[ref]] ** 2, axis=1)
    else:
        grand_mean = B[:, :n_batch] @ (n_per_batch / n)
        var_pooled = np.mean(resid ** 2, axis=1)
    del resid

    passthrough = _zero_variance_rows(values, indices) | (var_pooled <= EPS)
    keep = ~passthrough
    if passthrough.any():
        warnings.warn(
            f"{int(passthrough.sum())} feature(s) have zero variance within a batch "
            "and are returned unadjusted.",
            UserWarning
        )
    if keep.sum() < 2:
        raise ValueError(
            "Fewer than 2 features vary within every batch; batch priors cannot be estimated."
        )

    dat_k = values[keep]
    stand_mean = grand_mean[keep, None] + B[keep, n_batch:] @ covars.T
    sd = np.sqrt(var_pooled[keep])
    s_data = (dat_k - stand_mean) / sd[:, None]

    # Raw batch effects and priors
    mk = dat_k.shape[0]
    gamma_hat = np.zeros((n_batch, mk))
    delta_hat = np.ones((n_batch, mk))
    for i, idx in enumerate(indices):
        gamma_hat[i] = s_data[:, idx].mean(axis=1)
        if not mean_only:
            delta_hat[i] = s_data[:, idx].var(axis=1, ddof=1)

    gamma_bar = gamma_hat.mean(axis=1)
    t2 = gamma_hat.var(axis=1, ddof=1)

    if verbose:
        print("  Estimating shrunken batch effects...")

    # Batches are independent of each other here
    gamma_star = np.zeros_like(gamma_hat)
    delta_star = np.ones_like(delta_hat)
    for i, idx in enumerate(indices):
        if par_prior:
            if mean_only:
                gamma_star[i] = postmean(gamma_hat[i], gamma_bar[i], 1, 1, t2[i])
            else:
                state = it_sol(
                    s_data[:, idx], gamma_hat[i], delta_hat[i], gamma_bar[i], t2[i],
                    aprior(delta_hat[i]), bprior(delta_hat[i]),
                    conv=conv, max_iter=max_iter
                )
                gamma_star[i] = state.gamma
                delta_star[i] = state.delta
                if verbose:
                    print(f"    Batch {levels[i]!r}: {state.iteration} rounds")
        else:
            g, d = int_eprior(s_data[:, idx], gamma_hat[i], delta_hat[i])
            gamma_star[i] = g
            if not mean_only:
                delta_star[i] = d

    if ref is not None:
        gamma_star[ref] = 0.0
        delta_star[ref] = 1.0

    # Remove and undo the standardization
    adjusted = np.empty_like(s_data)
    for i, idx in enumerate(indices):
        adjusted[:, idx] = (
            (s_data[:, idx] - gamma_star[i][:, None]) / np.sqrt(delta_star[i])[:, None]
        )
    adjusted = adjusted * sd[:, None] + stand_mean
    if ref is not None:
        adjusted[:, indices[ref]] = dat_k[:, indices[ref]]

    corrected = values.copy()
    corrected[keep] = adjusted

    if verbose:
        print(f"  Completed in {time.time() - start_time:.2f}s")
    return corrected


def batch_adjust(
    X: Any,
    batch: Any,
    design: Optional[Any] = None,
    par_prior: bool = True,
    mean_only: bool = False,
    ref_batch: Optional[Any] = None,
    population_average: bool = False,
    conv: float = DEFAULT_EB_CONV,
    max_iter: int = DEFAULT_EB_MAX_ITER,
    verbose: bool = False,
    **sva_kwargs
) -> Any:
    """
    Remove known batch effects from a measurement matrix.

    Parameters
    ----------
    X : ndarray or DataFrame, shape (n_features, n_samples)
        Measurement matrix.
    batch : array-like or Series, shape (n_samples,)
        Batch label per sample.
    design : ndarray or DataFrame, shape (n_samples, p), optional
        Primary covariates to protect (batch excluded).
    par_prior, mean_only, ref_batch, conv, max_iter
        See `combat`.
    population_average : bool, default=False
        Population-average adjustment: estimate surrogate variables from
        ``X ~ batch`` and remove only the batch coefficients of the
        augmented fit, keeping other batch-correlated heterogeneity. Takes
        no ``design``.
    verbose : bool, default=False
        Print progress information.
    **sva_kwargs
        Passed to `psva` (e.g. ``n_sv``, ``method``, ``seed``) when
        ``population_average`` is True.

    Returns
    -------
    ndarray or DataFrame
        Corrected matrix, same shape (and labels) as ``X``.

    Examples
    --------
    >>> corrected = batch_adjust(expression, meta["run"], design=mod)
    >>> corrected = batch_adjust(expression, meta["run"], population_average=True, n_sv=2)
    """
    if population_average:
        if design is not None:
            raise ValueError("population_average adjustment does not take a design")
        return psva(X, batch, verbose=verbose, **sva_kwargs)

    if sva_kwargs:
        raise TypeError(
            f"Unexpected arguments without population_average: {sorted(sva_kwargs)}"
        )

    corrected = combat(
        X, batch, mod=design,
        par_prior=par_prior, mean_only=mean_only, ref_batch=ref_batch,
        conv=conv, max_iter=max_iter, verbose=verbose
    )
    return wrap_like(corrected, X)
