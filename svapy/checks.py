"""
Input validation and conversion shared by all SVAPy modules.

Measurement matrices are features × samples, designs are samples ×
covariates and batch labels have one entry per sample. Everything here
runs before any numerical work so that malformed input fails fast with a
message naming the offending argument.
"""

from typing import Any, List, Optional, Sequence, Tuple
import numpy as np
import pandas as pd

from .exceptions import DimensionMismatchError, DegenerateBatchError

__all__ = [
    'as_data_matrix',
    'as_design',
    'as_labels',
    'sample_names_of',
    'check_finite',
    'check_sample_axis',
    'check_batch',
    'wrap_like',
]


def check_finite(values: np.ndarray, name: str) -> None:
    """Reject NaN/inf; missing values are not supported."""
    if not np.all(np.isfinite(values)):
        n_bad = int(np.sum(~np.isfinite(values)))
        raise ValueError(
            f"`{name}` contains {n_bad} missing or non-finite value(s). "
            "Remove or impute them before calling SVAPy."
        )


def sample_names_of(dat: Any) -> Optional[List]:
    """Column labels of a DataFrame measurement matrix, else None."""
    if isinstance(dat, pd.DataFrame):
        return list(dat.columns)
    return None


def as_data_matrix(dat: Any, name: str = "dat") -> np.ndarray:
    """
    Convert a features × samples matrix to a float64 array.

    Parameters
    ----------
    dat : ndarray or DataFrame, shape (n_features, n_samples)
        Measurement matrix.
    name : str
        Argument name used in error messages.

    Returns
    -------
    ndarray, shape (n_features, n_samples)
    """
    if isinstance(dat, pd.DataFrame):
        values = dat.to_numpy(dtype=np.float64)
    else:
        values = np.asarray(dat, dtype=np.float64)

    if values.ndim != 2:
        raise ValueError(f"`{name}` must be a 2D features × samples matrix, got {values.ndim}D")
    if values.shape[1] < 2:
        raise ValueError(f"`{name}` must have at least 2 samples, got {values.shape[1]}")
    check_finite(values, name)
    return values


def _align_to_samples(obj, sample_names: Optional[Sequence], name: str):
    """Reorder a labeled design/label vector to the matrix's sample order."""
    if sample_names is None or isinstance(obj.index, pd.RangeIndex):
        return obj

    index = list(obj.index)
    if index == list(sample_names):
        return obj
    if set(index) != set(sample_names) or len(index) != len(sample_names):
        missing = [s for s in sample_names if s not in set(index)][:5]
        raise DimensionMismatchError(
            f"Sample labels of `{name}` do not match the data columns "
            f"(e.g. missing: {missing})."
        )
    return obj.loc[list(sample_names)]


def as_design(
    design: Any,
    n_samples: int,
    name: str = "mod",
    sample_names: Optional[Sequence] = None
) -> np.ndarray:
    """
    Convert a design matrix to a float64 samples × covariates array.

    A 1D input is treated as a single column. Labeled designs are aligned to
    ``sample_names`` when given.

    Raises
    ------
    DimensionMismatchError
        If the number of rows differs from ``n_samples``.
    """
    if isinstance(design, (pd.DataFrame, pd.Series)):
        design = _align_to_samples(design, sample_names, name)
        values = design.to_numpy(dtype=np.float64)
    else:
        values = np.asarray(design, dtype=np.float64)

    if values.ndim == 1:
        values = values[:, None]
    if values.ndim != 2:
        raise ValueError(f"`{name}` must be a 2D samples × covariates matrix")

    check_sample_axis(n_samples, values.shape[0], name)
    check_finite(values, name)
    return values


def as_labels(
    labels: Any,
    n_samples: int,
    name: str = "batch",
    sample_names: Optional[Sequence] = None
) -> np.ndarray:
    """Convert batch labels to a 1D object array with one entry per sample."""
    if isinstance(labels, pd.Series):
        labels = _align_to_samples(labels, sample_names, name)
        values = labels.to_numpy()
    else:
        values = np.asarray(labels)

    if values.ndim != 1:
        raise ValueError(f"`{name}` must be one-dimensional, got shape {values.shape}")
    check_sample_axis(n_samples, values.shape[0], name)
    if pd.isna(values).any():
        raise ValueError(f"`{name}` contains missing labels")
    return values


def check_sample_axis(n_samples: int, n_other: int, name: str) -> None:
    """Raise DimensionMismatchError unless ``n_other == n_samples``."""
    if n_other != n_samples:
        raise DimensionMismatchError(
            f"`{name}` has {n_other} samples but the data matrix has {n_samples} "
            "columns (samples)."
        )


def check_batch(
    labels: np.ndarray,
    min_size: int = 2
) -> Tuple[List, List[np.ndarray]]:
    """
    Resolve batch levels and the sample indices belonging to each.

    Levels are ordered like a categorical (sorted where sortable); the first
    level is the reference level for any design built from them.

    Parameters
    ----------
    labels : ndarray, shape (n_samples,)
        Batch label per sample.
    min_size : int, default=2
        Minimum number of samples per batch.

    Returns
    -------
    tuple
        (levels, indices) where ``indices[i]`` holds the column indices of
        batch ``levels[i]``.

    Raises
    ------
    DegenerateBatchError
        If any batch has fewer than ``min_size`` samples.
    """
    categorical = pd.Categorical(labels)
    levels = list(categorical.categories)
    codes = categorical.codes
    indices = [np.flatnonzero(codes == i) for i in range(len(levels))]

    small = [lvl for lvl, idx in zip(levels, indices) if len(idx) < min_size]
    if small:
        raise DegenerateBatchError(
            f"Batch(es) {small} have fewer than {min_size} samples; "
            "per-batch variance cannot be estimated."
        )
    return levels, indices


def wrap_like(values: np.ndarray, template: Any) -> Any:
    """Return ``values`` as a DataFrame labeled like ``template`` when it is one."""
    if isinstance(template, pd.DataFrame):
        return pd.DataFrame(values, index=template.index, columns=template.columns)
    return values
