"""
Remove fitted covariate effects from a measurement matrix.

Every correction in SVAPy ends the same way: fit the data against an
(augmented) design and subtract the contribution of a subset of its
columns, keeping the rest. This module holds that step and the two
common ways of using it:

- `remove_surrogates`: protect a design while removing surrogate variables.
- `remove_batch_effect`: protect a design while removing known batch
  labels (sum-to-zero contrasts) and continuous nuisance covariates.

Usage:
------
    >>> from svapy import estimate_surrogates, remove_surrogates, remove_effect
    >>>
    >>> sv = estimate_surrogates(expression, mod, mod0)
    >>> cleaned = remove_surrogates(expression, mod, sv)
    >>>
    >>> # Generic: strip columns 2 and 3 of an arbitrary design
    >>> cleaned = remove_effect(expression, design, [2, 3])
"""

from typing import Any, List, Optional, Tuple
import numpy as np
import pandas as pd

from .checks import (
    as_data_matrix,
    as_design,
    as_labels,
    check_batch,
    sample_names_of,
    wrap_like,
)
from .linalg import lm_coef

__all__ = [
    'batch_design',
    'sum_to_zero_contrasts',
    'remove_effect',
    'remove_surrogates',
    'remove_batch_effect',
]


# =============================================================================
# Batch encodings
# =============================================================================

def batch_design(labels: np.ndarray, min_size: int = 1) -> Tuple[np.ndarray, List]:
    """
    Treatment-coded design for batch labels.

    Column 0 is the intercept, followed by one indicator per non-reference
    level (the first level is the reference).

    Returns
    -------
    tuple
        (design of shape (n_samples, n_levels), levels)
    """
    levels, indices = check_batch(labels, min_size=min_size)
    design = np.zeros((len(labels), len(levels)), dtype=np.float64)
    design[:, 0] = 1.0
    for j, idx in enumerate(indices[1:], start=1):
        design[idx, j] = 1.0
    return design, levels


def sum_to_zero_contrasts(labels: np.ndarray) -> np.ndarray:
    """
    Sum-to-zero coding of batch labels, shape (n_samples, n_levels - 1).

    Level i < L-1 gets a 1 in column i; the last level gets -1 in every
    column. The batch effects therefore average to zero over levels.
    """
    levels, indices = check_batch(labels, min_size=1)
    n_levels = len(levels)
    contrasts = np.zeros((len(labels), max(n_levels - 1, 0)), dtype=np.float64)
    for j, idx in enumerate(indices[:-1]):
        contrasts[idx, j] = 1.0
    if n_levels > 1:
        contrasts[indices[-1], :] = -1.0
    return contrasts


# =============================================================================
# Generic coefficient removal
# =============================================================================

def _resolve_columns(columns: Any, design: Any, n_cols: int) -> np.ndarray:
    """Turn a column selection into integer indices into the design."""
    all_idx = np.arange(n_cols)
    if columns is None:
        return all_idx
    if isinstance(columns, slice):
        return all_idx[columns]
    if isinstance(columns, (str, int, np.integer)):
        columns = [columns]

    columns = list(columns)
    if len(columns) == 0:
        return np.array([], dtype=np.intp)

    if all(isinstance(c, (bool, np.bool_)) for c in columns):
        if len(columns) != n_cols:
            raise ValueError(
                f"Boolean column mask has length {len(columns)}, design has {n_cols} columns"
            )
        return np.flatnonzero(columns)

    if all(isinstance(c, str) for c in columns):
        if not isinstance(design, pd.DataFrame):
            raise TypeError("Column names can only be used with a DataFrame design")
        idx = design.columns.get_indexer(columns)
        if (idx < 0).any():
            missing = [c for c, i in zip(columns, idx) if i < 0]
            raise KeyError(f"Columns not found in design: {missing}")
        return idx

    try:
        return all_idx[np.asarray(columns, dtype=np.intp)]
    except IndexError:
        raise IndexError(
            f"Column index out of range for a design with {n_cols} columns: {columns}"
        ) from None


def remove_effect(X: Any, design: Any, columns: Any = None) -> Any:
    """
    Subtract the fitted contribution of selected design columns.

    Fits ``X ~ design`` by least squares for every feature and returns

        X - B[:, columns] @ design[:, columns].T

    Removing every column leaves nothing the design can explain, so
    applying the same call again changes nothing.

    Parameters
    ----------
    X : ndarray or DataFrame, shape (n_features, n_samples)
        Measurement matrix.
    design : ndarray or DataFrame, shape (n_samples, p)
        Full-rank design.
    columns : int, str, sequence, boolean mask, slice or None
        Columns whose effect is removed. ``None`` removes all columns.
        Names require a DataFrame design.

    Returns
    -------
    ndarray or DataFrame
        Corrected matrix, same shape (and labels) as ``X``.

    Raises
    ------
    DimensionMismatchError
        If ``design`` rows differ from the number of samples.
    SingularDesignError
        If ``design`` is not full column rank.
    """
    dat = as_data_matrix(X, "X")
    D = as_design(design, dat.shape[1], "design", sample_names_of(X))
    idx = _resolve_columns(columns, design, D.shape[1])

    if idx.size == 0:
        return wrap_like(dat.copy(), X)

    B = lm_coef(dat, D, "design")
    corrected = dat - B[:, idx] @ D[:, idx].T
    return wrap_like(corrected, X)


def remove_surrogates(X: Any, mod: Any, sv: Any) -> Any:
    """
    Remove surrogate-variable effects while protecting ``mod``.

    Fits ``X ~ [mod, sv]`` and subtracts only the surrogate columns'
    contribution. With zero surrogate columns the input is returned
    unchanged.

    Parameters
    ----------
    X : ndarray or DataFrame, shape (n_features, n_samples)
    mod : ndarray or DataFrame, shape (n_samples, p)
        Design whose effects are kept.
    sv : ndarray or DataFrame, shape (n_samples, k)
        Surrogate variables, e.g. from `estimate_surrogates`.

    Raises
    ------
    SingularDesignError
        If ``[mod, sv]`` is rank deficient.
    """
    dat = as_data_matrix(X, "X")
    names = sample_names_of(X)
    mod_arr = as_design(mod, dat.shape[1], "mod", names)
    sv_arr = as_design(sv, dat.shape[1], "sv", names)

    k = sv_arr.shape[1]
    if k == 0:
        return wrap_like(dat.copy(), X)

    augmented = np.hstack([mod_arr, sv_arr])
    B = lm_coef(dat, augmented, "mod + sv")
    p = mod_arr.shape[1]
    corrected = dat - B[:, p:] @ sv_arr.T
    return wrap_like(corrected, X)


def remove_batch_effect(
    X: Any,
    batch: Optional[Any] = None,
    covariates: Optional[Any] = None,
    design: Optional[Any] = None
) -> Any:
    """
    Remove known batch effects and nuisance covariates by linear regression.

    Batch labels are coded as sum-to-zero contrasts so the corrected data
    stays centered on the average over batches. ``design`` holds the
    treatment effects to protect (default: intercept only).

    Parameters
    ----------
    X : ndarray or DataFrame, shape (n_features, n_samples)
    batch : array-like or Series, optional
        Batch label per sample.
    covariates : ndarray or DataFrame, shape (n_samples, c), optional
        Continuous nuisance covariates to remove.
    design : ndarray or DataFrame, shape (n_samples, p), optional
        Effects to protect.

    Returns
    -------
    ndarray or DataFrame
        Corrected matrix, same shape as ``X``.

    Examples
    --------
    >>> cleaned = remove_batch_effect(expression, batch=meta["run"], design=mod)
    """
    dat = as_data_matrix(X, "X")
    n = dat.shape[1]
    names = sample_names_of(X)

    nuisance = []
    if batch is not None:
        labels = as_labels(batch, n, "batch", names)
        nuisance.append(sum_to_zero_contrasts(labels))
    if covariates is not None:
        nuisance.append(as_design(covariates, n, "covariates", names))

    if not nuisance or sum(block.shape[1] for block in nuisance) == 0:
        return wrap_like(dat.copy(), X)

    if design is None:
        design_arr = np.ones((n, 1), dtype=np.float64)
    else:
        design_arr = as_design(design, n, "design", names)

    X_nuisance = np.hstack(nuisance)
    augmented = np.hstack([design_arr, X_nuisance])
    B = lm_coef(dat, augmented, "design + batch")
    corrected = dat - B[:, design_arr.shape[1]:] @ X_nuisance.T
    return wrap_like(corrected, X)
