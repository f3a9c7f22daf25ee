"""
Surrogate variable analysis.

Estimates latent sources of variation ("surrogate variables") from a
features × samples matrix, protecting the signal of the primary
variable(s). The estimator is an iteratively reweighted SVD:

1. Start from the top-k sample-space singular vectors of the residuals
   left after fitting the full design.
2. Weight each feature by the probability that it is driven by the
   current surrogates but not by the primary variable.
3. Recompute the top-k singular vectors of the weighted, row-centered
   data, and repeat until the factor subspace stops moving or the round
   budget runs out.

Usage:
------
    >>> from svapy import sva, estimate_surrogates
    >>>
    >>> result = sva(expression, mod, mod0)         # count + estimate
    >>> sv = result['sv']                            # samples × k
    >>> result['n_sv'], result['converged']
    >>>
    >>> sv = estimate_surrogates(expression, mod, mod0, n_sv=2)

Population-average adjustment:
------------------------------
    >>> from svapy import psva
    >>> cleaned = psva(expression, batch)
"""

from typing import Any, Dict, Optional, Tuple
import time
import warnings

import numpy as np
import pandas as pd
from scipy import linalg

from .adjust import batch_design
from .checks import (
    as_data_matrix,
    as_design,
    as_labels,
    sample_names_of,
    wrap_like,
)
from .exceptions import NonConvergenceWarning, SingularDesignError
from .linalg import EPS, check_full_rank, has_intercept, lm_coef, lm_residuals
from .num_sv import (
    DEFAULT_N_PERM,
    DEFAULT_SV_SIG,
    asymptotic_sv_count,
    permutation_sv_count,
    resolve_method,
)
from .rng import DEFAULT_SEED, SeedLike
from .stats import (
    DEFAULT_LFDR_ADJ,
    DEFAULT_LFDR_LAMBDA,
    check_nested,
    edge_lfdr,
    f_pvalue,
)

__all__ = [
    'DEFAULT_IRW_ITER',
    'DEFAULT_IRW_TOL',
    'IRWState',
    'subspace_change',
    'feature_weights',
    'irwsva_build',
    'sva',
    'estimate_surrogates',
    'svaseq',
    'psva',
]

DEFAULT_IRW_ITER = 10
DEFAULT_IRW_TOL = 1e-3

# Singular values below this fraction of the largest mark a collapsed factor
_DEGENERATE_RTOL = 1e-10


# =============================================================================
# Fixed-point state
# =============================================================================

def subspace_change(a: np.ndarray, b: np.ndarray) -> float:
    """
    Sine of the largest principal angle between two column spaces.

    Both inputs must have orthonormal columns. Returns 0 for identical
    subspaces and 1 when some direction of one is orthogonal to the other.
    """
    if a.shape[1] == 0:
        return 0.0
    cosines = np.linalg.svd(a.T @ b, compute_uv=False)
    cos_min = min(float(cosines.min()), 1.0)
    return float(np.sqrt(max(0.0, 1.0 - cos_min ** 2)))


class IRWState:
    """
    State of the iteratively reweighted SVD.

    Attributes
    ----------
    sv : ndarray, shape (n_samples, k)
        Current factor estimate (orthonormal columns).
    d : ndarray, shape (k,)
        Singular values belonging to ``sv``.
    weights : ndarray or None
        Feature weights used to produce ``sv``.
    iteration : int
        Completed reweighting rounds.
    delta : float
        Subspace change of the last round.
    converged : bool
        Whether ``delta`` dropped below the tolerance.
    """

    __slots__ = ('sv', 'd', 'weights', 'iteration', 'delta', 'converged')

    def __init__(self, sv: np.ndarray, d: np.ndarray):
        self.sv = sv
        self.d = d
        self.weights = None
        self.iteration = 0
        self.delta = np.inf
        self.converged = False

    def update(self, sv: np.ndarray, d: np.ndarray, weights: np.ndarray, tol: float) -> None:
        """Advance one round and re-evaluate the convergence criterion."""
        self.delta = subspace_change(self.sv, sv)
        self.sv = sv
        self.d = d
        self.weights = weights
        self.iteration += 1
        self.converged = self.delta < tol

    def __repr__(self) -> str:
        return (
            f"IRWState(k={self.sv.shape[1]}, iteration={self.iteration}, "
            f"delta={self.delta:.3e}, converged={self.converged})"
        )


def _top_sample_vectors(mat: np.ndarray, k: int) -> Tuple[np.ndarray, np.ndarray]:
    """Top-k right singular vectors (sample space) of a features × samples matrix."""
    _, s, vt = linalg.svd(mat, full_matrices=False)
    return vt[:k].T.copy(), s[:k].copy()


# =============================================================================
# Feature weighting
# =============================================================================

def feature_weights(
    dat: np.ndarray,
    sv: np.ndarray,
    mod: np.ndarray,
    mod0: np.ndarray,
    lfdr_lambda: float = DEFAULT_LFDR_LAMBDA,
    lfdr_adj: float = DEFAULT_LFDR_ADJ
) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
    """
    Weight features by how surrogate-driven and primary-free they are.

    Two nested F-tests are turned into posterior probabilities through
    ``1 - lfdr``:

    - ``pprob_b``: association with the primary variable(s) given the
      current surrogates ([mod, sv] vs [mod0, sv]).
    - ``pprob_gam``: association with the surrogates ([mod0, sv] vs mod0).

    The weight is ``pprob_gam * (1 - pprob_b)``, which keeps features that
    the surrogates explain and suppresses those carrying primary signal.

    Parameters
    ----------
    dat : ndarray, shape (n_features, n_samples)
    sv : ndarray, shape (n_samples, k)
    mod : ndarray, shape (n_samples, p1)
    mod0 : ndarray, shape (n_samples, p0)

    Returns
    -------
    tuple
        (weights, pprob_gam, pprob_b), each of shape (n_features,).
    """
    mod_b = np.hstack([mod, sv])
    mod0_b = np.hstack([mod0, sv])

    p_b = f_pvalue(dat, mod_b, mod0_b, check_nesting=False)
    pprob_b = 1.0 - edge_lfdr(p_b, lambda_=lfdr_lambda, adj=lfdr_adj)

    p_gam = f_pvalue(dat, mod0_b, mod0, check_nesting=False)
    pprob_gam = 1.0 - edge_lfdr(p_gam, lambda_=lfdr_lambda, adj=lfdr_adj)

    weights = pprob_gam * (1.0 - pprob_b)
    return weights, pprob_gam, pprob_b


# =============================================================================
# Iteratively reweighted SVA
# =============================================================================

def irwsva_build(
    dat: np.ndarray,
    mod: np.ndarray,
    mod0: np.ndarray,
    n_sv: int,
    max_iter: int = DEFAULT_IRW_ITER,
    tol: float = DEFAULT_IRW_TOL,
    lfdr_lambda: float = DEFAULT_LFDR_LAMBDA,
    lfdr_adj: float = DEFAULT_LFDR_ADJ,
    verbose: bool = False
) -> Dict[str, Any]:
    """
    Iteratively reweighted estimation of ``n_sv`` surrogate variables.

    Inputs are assumed validated (see `sva`). Hitting ``max_iter`` without
    the factor subspace settling below ``tol`` is not an error: the last
    iterate is returned with ``converged=False`` and a
    `NonConvergenceWarning`.

    Parameters
    ----------
    dat : ndarray, shape (n_features, n_samples)
    mod : ndarray, shape (n_samples, p1)
        Full design including the intercept.
    mod0 : ndarray, shape (n_samples, p0)
        Null design nested in ``mod``.
    n_sv : int
        Number of surrogate variables (> 0).
    max_iter : int, default=10
        Maximum reweighting rounds.
    tol : float, default=1e-3
        Convergence tolerance on `subspace_change`.

    Returns
    -------
    dict
        - **sv** : ndarray (n_samples, n_sv') - mean-centered surrogate variables
        - **n_sv** : int - number of columns kept (degenerate factors dropped)
        - **pprob_gam**, **pprob_b**, **weights** : ndarray (n_features,)
        - **n_iter** : int - rounds performed
        - **converged** : bool
        - **delta** : float - subspace change of the last round
    """
    m = dat.shape[0]

    resid = lm_residuals(dat, mod, "mod")
    sv, d = _top_sample_vectors(resid, n_sv)
    del resid
    state = IRWState(sv, d)

    pprob_gam = np.zeros(m)
    pprob_b = np.zeros(m)

    if verbose:
        print(f"  Iteratively reweighted SVA: {n_sv} factor(s), up to {max_iter} rounds")

    for _ in range(max_iter):
        weights, pprob_gam, pprob_b = feature_weights(
            dat, state.sv, mod, mod0, lfdr_lambda=lfdr_lambda, lfdr_adj=lfdr_adj
        )
        if weights.max() <= EPS:
            warnings.warn(
                "All feature weights vanished; keeping the previous surrogate estimate.",
                NonConvergenceWarning
            )
            break

        dats = dat * weights[:, None]
        dats -= dats.mean(axis=1, keepdims=True)
        sv_new, d_new = _top_sample_vectors(dats, n_sv)
        del dats

        state.update(sv_new, d_new, weights, tol)
        if verbose:
            print(f"  Iteration {state.iteration}/{max_iter}: subspace change {state.delta:.2e}")
        if state.converged:
            break

    if not state.converged and state.iteration >= max_iter:
        warnings.warn(
            f"Surrogate estimation stopped after {state.iteration} rounds without "
            f"stabilizing (last subspace change {state.delta:.2e} >= tol {tol:.1e}); "
            "returning the last iterate.",
            NonConvergenceWarning
        )

    sv = state.sv
    d = state.d
    keep = d > _DEGENERATE_RTOL * max(float(d[0]), EPS)
    if not keep.all():
        warnings.warn(
            f"{int((~keep).sum())} surrogate variable(s) collapsed to zero variance "
            f"and were dropped; returning {int(keep.sum())}.",
            UserWarning
        )
        sv = sv[:, keep]

    sv = sv - sv.mean(axis=0, keepdims=True)

    return {
        'sv': sv,
        'n_sv': sv.shape[1],
        'pprob_gam': pprob_gam,
        'pprob_b': pprob_b,
        'weights': state.weights if state.weights is not None else np.ones(m),
        'n_iter': state.iteration,
        'converged': state.converged,
        'delta': state.delta,
    }


def _validate_models(dat, mod, mod0, names):
    """Convert and validate the full/null designs for `sva`."""
    n = dat.shape[1]
    mod_arr = as_design(mod, n, "mod", names)
    check_full_rank(mod_arr, "mod")
    if not has_intercept(mod_arr):
        raise ValueError("`mod` must include an intercept (a constant column in its span)")

    if mod0 is None:
        mod0_arr = np.ones((n, 1), dtype=np.float64)
    else:
        mod0_arr = as_design(mod0, n, "mod0", names)
        check_full_rank(mod0_arr, "mod0")
    check_nested(mod_arr, mod0_arr)
    return mod_arr, mod0_arr


def _sv_frame(sv: np.ndarray, X: Any) -> Any:
    """Label surrogate variables by sample when the data is labeled."""
    if isinstance(X, pd.DataFrame):
        columns = [f"SV{i + 1}" for i in range(sv.shape[1])]
        return pd.DataFrame(sv, index=X.columns, columns=columns)
    return sv


def sva(
    X: Any,
    mod: Any,
    mod0: Optional[Any] = None,
    n_sv: Optional[int] = None,
    method: str = "be",
    n_perm: int = DEFAULT_N_PERM,
    seed: SeedLike = DEFAULT_SEED,
    sv_sig: float = DEFAULT_SV_SIG,
    max_iter: int = DEFAULT_IRW_ITER,
    tol: float = DEFAULT_IRW_TOL,
    lfdr_lambda: float = DEFAULT_LFDR_LAMBDA,
    lfdr_adj: float = DEFAULT_LFDR_ADJ,
    verbose: bool = False
) -> Dict[str, Any]:
    """
    Estimate surrogate variables for a measurement matrix.

    Parameters
    ----------
    X : ndarray or DataFrame, shape (n_features, n_samples)
        Measurement matrix, features in rows.
    mod : ndarray or DataFrame, shape (n_samples, p1)
        Full design: intercept, primary variable(s), adjustment variables.
    mod0 : ndarray or DataFrame, shape (n_samples, p0), optional
        Null design (adjustment variables only). Defaults to the intercept.
    n_sv : int, optional
        Number of surrogate variables. Estimated with ``method`` if None.
    method : {"be", "permutation", "leek", "asymptotic"}, default="be"
        Counting strategy used when ``n_sv`` is None.
    n_perm : int, default=20
        Permutation rounds for the ``"be"`` count.
    seed : int, SeedSequence or None, default=0
        Seed for the ``"be"`` count.
    sv_sig : float, default=0.05
        Per-rank significance threshold for the ``"be"`` count.
    max_iter : int, default=10
        Maximum reweighting rounds.
    tol : float, default=1e-3
        Subspace-change tolerance that ends the reweighting early.
    lfdr_lambda, lfdr_adj : float
        Local-FDR settings used for the feature weights.
    verbose : bool, default=False
        Print progress information.

    Returns
    -------
    dict
        - **sv** : ndarray or DataFrame (n_samples, n_sv) - surrogate
          variables, columns ``SV1..SVk`` when ``X`` is labeled
        - **n_sv** : int - number of surrogate variables
        - **pprob_gam** : ndarray (n_features,) - P(feature driven by surrogates)
        - **pprob_b** : ndarray (n_features,) - P(feature driven by primary variable)
        - **n_iter** : int - reweighting rounds performed
        - **converged** : bool - False when the round cap was hit
        - **time** : float - execution time in seconds
        - **params** : dict - parameters used

    Raises
    ------
    DimensionMismatchError
        If the designs disagree with ``X`` on the number of samples.
    SingularDesignError
        If a design is rank deficient, or ``mod`` or ``n_sv`` leaves no residual
        degrees of freedom.
    NestingViolationError
        If ``mod0`` is not nested in ``mod``.

    Examples
    --------
    >>> result = sva(expression, mod, mod0, method="leek")
    >>> cleaned = remove_surrogates(expression, mod, result['sv'])
    """
    start_time = time.time()

    dat = as_data_matrix(X, "X")
    names = sample_names_of(X)
    m, n = dat.shape
    mod_arr, mod0_arr = _validate_models(dat, mod, mod0, names)

    if verbose:
        print("Surrogate Variable Analysis")
        print(f"  Data: {m} features × {n} samples")
        print(f"  Designs: mod {mod_arr.shape[1]} columns, mod0 {mod0_arr.shape[1]} columns")

    if mod_arr.shape[1] >= n:
        raise SingularDesignError(
            f"`mod` has {mod_arr.shape[1]} columns for {n} samples; "
            "no residual degrees of freedom are left."
        )

    if n_sv is None:
        resolved = resolve_method(method)
        if resolved == "be":
            n_sv = permutation_sv_count(
                dat, mod_arr, n_perm=n_perm, seed=seed, sv_sig=sv_sig, verbose=verbose
            )
        else:
            n_sv = asymptotic_sv_count(dat, mod_arr, verbose=verbose)
        # The weighting F-tests need one residual degree of freedom
        limit = n - mod_arr.shape[1] - 1
        if n_sv > limit:
            warnings.warn(
                f"Estimated {n_sv} surrogate variables; clipped to {limit} to keep "
                "a residual degree of freedom.",
                UserWarning
            )
            n_sv = limit
        if verbose:
            print(f"  Estimated number of surrogate variables: {n_sv}")

    n_sv = int(n_sv)
    if n_sv < 0:
        raise ValueError(f"n_sv must be non-negative, got {n_sv}")
    if n_sv > 0 and (mod_arr.shape[1] + n_sv >= n or n_sv > m):
        raise SingularDesignError(
            f"n_sv={n_sv} with {mod_arr.shape[1]} design columns exceeds the residual "
            f"degrees of freedom ({n} samples, {m} features)."
        )

    if n_sv == 0:
        fit = {
            'sv': np.zeros((n, 0), dtype=np.float64),
            'n_sv': 0,
            'pprob_gam': np.zeros(m),
            'pprob_b': np.zeros(m),
            'n_iter': 0,
            'converged': True,
        }
    else:
        fit = irwsva_build(
            dat, mod_arr, mod0_arr, n_sv,
            max_iter=max_iter, tol=tol,
            lfdr_lambda=lfdr_lambda, lfdr_adj=lfdr_adj,
            verbose=verbose
        )

    total_time = time.time() - start_time
    if verbose:
        print(f"  Completed in {total_time:.2f}s")

    return {
        'sv': _sv_frame(fit['sv'], X),
        'n_sv': fit['n_sv'],
        'pprob_gam': fit['pprob_gam'],
        'pprob_b': fit['pprob_b'],
        'n_iter': fit['n_iter'],
        'converged': fit['converged'],
        'time': total_time,
        'params': {
            'method': method,
            'n_perm': n_perm,
            'seed': seed,
            'sv_sig': sv_sig,
            'max_iter': max_iter,
            'tol': tol,
        },
    }


def estimate_surrogates(
    X: Any,
    mod: Any,
    mod0: Optional[Any] = None,
    n_sv: Optional[int] = None,
    **kwargs
) -> Any:
    """
    Surrogate variable matrix (samples × k) for ``X``.

    Shortcut for ``sva(X, mod, mod0, n_sv, **kwargs)['sv']``. With
    ``n_sv=0`` the result has zero columns.
    """
    return sva(X, mod, mod0, n_sv=n_sv, **kwargs)['sv']


def svaseq(
    counts: Any,
    mod: Any,
    mod0: Optional[Any] = None,
    n_sv: Optional[int] = None,
    constant: float = 1.0,
    **kwargs
) -> Dict[str, Any]:
    """
    Surrogate variable analysis for count data.

    Counts are transformed with ``log(counts + constant)`` before `sva`.

    Parameters
    ----------
    counts : ndarray or DataFrame, shape (n_features, n_samples)
        Non-negative counts.
    constant : float, default=1.0
        Pseudo-count added before the log transform.
    **kwargs
        Passed to `sva`.
    """
    values = as_data_matrix(counts, "counts")
    if np.any(values < 0):
        raise ValueError("`counts` must be non-negative")
    if constant <= 0:
        raise ValueError("constant must be positive")

    logged = wrap_like(np.log(values + constant), counts)
    return sva(logged, mod, mod0, n_sv=n_sv, **kwargs)


def psva(
    X: Any,
    batch: Any,
    n_sv: Optional[int] = None,
    **kwargs
) -> Any:
    """
    Population-average batch adjustment.

    Surrogate variables are estimated for ``X ~ batch``; the data is then
    fit against ``[batch design, sv]`` and only the batch coefficients'
    contribution is removed. Variation captured by the surrogates (other
    biological heterogeneity) is kept.

    Parameters
    ----------
    X : ndarray or DataFrame, shape (n_features, n_samples)
    batch : array-like or Series, shape (n_samples,)
        Batch label per sample.
    n_sv : int, optional
        Number of surrogate variables; estimated when None.
    **kwargs
        Passed to `sva`.

    Returns
    -------
    ndarray or DataFrame
        Corrected matrix, same shape as ``X``.

    Raises
    ------
    DegenerateBatchError
        If any batch has fewer than two samples.
    """
    dat = as_data_matrix(X, "X")
    labels = as_labels(batch, dat.shape[1], "batch", sample_names_of(X))
    bmod, levels = batch_design(labels, min_size=2)

    if len(levels) < 2:
        warnings.warn("Only one batch present; nothing to adjust.", UserWarning)
        return wrap_like(dat.copy(), X)

    fit = sva(dat, bmod, None, n_sv=n_sv, **kwargs)
    sv = fit['sv']

    augmented = np.hstack([bmod, sv])
    B = lm_coef(dat, augmented, "batch + sv")
    n_batch_cols = len(levels) - 1
    corrected = dat - B[:, 1:1 + n_batch_cols] @ bmod[:, 1:].T
    return wrap_like(corrected, X)
