"""
Least-squares building blocks.

Every SVAPy component fits and strips covariates through the functions
here. Coefficients come from the normal equations

    B = (D'D)^{-1} D' Y'

solved through a Cholesky factorization of D'D, so the projection matrix
T = (D'D)^{-1} D' is computed once per design and applied to all features
at the same time.

Orientation: Y is (n_features, n_samples), D is (n_samples, p) and B is
(n_features, p).
"""

import numpy as np
from scipy import linalg

from .exceptions import SingularDesignError

__all__ = [
    'EPS',
    'check_full_rank',
    'has_intercept',
    'compute_projection_matrix',
    'hat_matrix',
    'lm_coef',
    'lm_residuals',
    'lm_rss',
]

# Numerical zero used across the package
EPS = 1e-12


def check_full_rank(design: np.ndarray, name: str = "design") -> int:
    """
    Verify that ``design`` has full column rank.

    Returns
    -------
    int
        The rank (= number of columns).

    Raises
    ------
    SingularDesignError
        If the design has more columns than rows or collinear columns.
    """
    n, p = design.shape
    if p == 0:
        return 0
    if p > n:
        raise SingularDesignError(
            f"`{name}` has {p} columns but only {n} samples; "
            "it cannot be full column rank."
        )
    rank = int(np.linalg.matrix_rank(design))
    if rank < p:
        raise SingularDesignError(
            f"`{name}` is rank deficient: rank {rank} < {p} columns. "
            "Check for collinear or confounded covariates."
        )
    return rank


def compute_projection_matrix(design: np.ndarray, name: str = "design") -> np.ndarray:
    """
    Compute T = (D'D)^{-1} D'.

    Parameters
    ----------
    design : ndarray, shape (n_samples, p)
        Full-rank design matrix.
    name : str
        Name used in error messages.

    Returns
    -------
    ndarray, shape (p, n_samples)
    """
    design = np.asarray(design, dtype=np.float64)
    check_full_rank(design, name)
    p = design.shape[1]

    DtD = design.T @ design
    try:
        L = linalg.cholesky(DtD, lower=True)
        DtD_inv = linalg.cho_solve((L, True), np.eye(p, dtype=np.float64))
    except linalg.LinAlgError as exc:
        raise SingularDesignError(
            f"`{name}`: D'D is not positive definite and cannot be inverted."
        ) from exc

    return DtD_inv @ design.T


def hat_matrix(design: np.ndarray, name: str = "design") -> np.ndarray:
    """Projection onto the column space of ``design``, shape (n, n)."""
    design = np.asarray(design, dtype=np.float64)
    if design.shape[1] == 0:
        return np.zeros((design.shape[0], design.shape[0]))
    return design @ compute_projection_matrix(design, name)


def has_intercept(design: np.ndarray, tol: float = 1e-8) -> bool:
    """True when the constant vector lies in the column span of ``design``."""
    design = np.asarray(design, dtype=np.float64)
    n = design.shape[0]
    if design.shape[1] == 0:
        return False
    ones = np.ones(n)
    coef, *_ = np.linalg.lstsq(design, ones, rcond=None)
    return np.linalg.norm(ones - design @ coef) <= tol * np.sqrt(n)


def lm_coef(Y: np.ndarray, design: np.ndarray, name: str = "design") -> np.ndarray:
    """
    Ordinary least-squares coefficients for every feature.

    Parameters
    ----------
    Y : ndarray, shape (n_features, n_samples)
        Response matrix.
    design : ndarray, shape (n_samples, p)
        Design matrix.

    Returns
    -------
    ndarray, shape (n_features, p)
    """
    T = compute_projection_matrix(design, name)
    return Y @ T.T


def lm_residuals(Y: np.ndarray, design: np.ndarray, name: str = "design") -> np.ndarray:
    """Residuals Y - B D' of the per-feature fit on ``design``."""
    design = np.asarray(design, dtype=np.float64)
    if design.shape[1] == 0:
        return np.array(Y, dtype=np.float64, copy=True)
    B = lm_coef(Y, design, name)
    return Y - B @ design.T


def lm_rss(Y: np.ndarray, design: np.ndarray, name: str = "design") -> np.ndarray:
    """Per-feature residual sums of squares, shape (n_features,)."""
    resid = lm_residuals(Y, design, name)
    return np.einsum('ij,ij->i', resid, resid)
