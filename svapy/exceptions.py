"""
Exceptions and warnings raised by SVAPy.

Every error derives from `SVAError` and also from `ValueError`, so callers
that only guard against bad input values keep working.
"""

__all__ = [
    'SVAError',
    'DimensionMismatchError',
    'SingularDesignError',
    'NestingViolationError',
    'DegenerateBatchError',
    'NonConvergenceWarning',
]


class SVAError(Exception):
    """Base class for exceptions in SVAPy."""
    pass


class DimensionMismatchError(SVAError, ValueError):
    """Raised when a matrix, design or label vector disagrees on the sample axis."""
    pass


class SingularDesignError(SVAError, ValueError):
    """Raised when a design matrix (or an augmented design) is not full column rank."""
    pass


class NestingViolationError(SVAError, ValueError):
    """Raised when the null design does not lie inside the full design's span."""
    pass


class DegenerateBatchError(SVAError, ValueError):
    """Raised when a batch has fewer than two samples."""
    pass


class NonConvergenceWarning(RuntimeWarning):
    """Issued when an iterative estimator stops at its iteration cap."""
    pass
