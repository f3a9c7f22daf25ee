"""
SVAPy: Surrogate Variable Analysis in Python

Estimates and removes unmeasured sources of systematic variation
("surrogate variables") and known batch effects from high-dimensional
measurement matrices (features × samples), while protecting the signal
of the primary variable(s).

Quick Start:
------------
    >>> import numpy as np
    >>> import pandas as pd
    >>> from svapy import sva, remove_surrogates, f_test
    >>>
    >>> # expression: genes × samples DataFrame
    >>> # mod: intercept + primary variable; mod0: intercept only
    >>> result = sva(expression, mod, mod0)
    >>> sv = result['sv']                        # samples × k
    >>>
    >>> # Test the primary variable while adjusting for the surrogates
    >>> pvalues = f_test(expression, np.hstack([mod, sv]), np.hstack([mod0, sv]))
    >>>
    >>> # Or strip the surrogates and keep the primary signal
    >>> cleaned = remove_surrogates(expression, mod, sv)

Known batches:
--------------
    >>> from svapy import batch_adjust
    >>>
    >>> corrected = batch_adjust(expression, batch, design=mod)          # ComBat
    >>> corrected = batch_adjust(expression, batch, par_prior=False)     # non-parametric priors
    >>> corrected = batch_adjust(expression, batch, population_average=True)
"""

__version__ = "0.1.0"

# High-level API (most users need only these)
from .sva import (
    sva,
    estimate_surrogates,
    svaseq,
    psva,
    DEFAULT_IRW_ITER,
    DEFAULT_IRW_TOL,
)
from .num_sv import (
    estimate_surrogate_count,
    DEFAULT_N_PERM,
    DEFAULT_SV_SIG,
)
from .combat import (
    batch_adjust,
    combat,
    DEFAULT_EB_CONV,
    DEFAULT_EB_MAX_ITER,
)
from .adjust import (
    remove_effect,
    remove_surrogates,
    remove_batch_effect,
)
from .stats import (
    f_test,
    f_pvalue,
    edge_lfdr,
    DEFAULT_LFDR_LAMBDA,
    DEFAULT_LFDR_ADJ,
)

# Lower-level building blocks (for advanced users)
from .linalg import (
    compute_projection_matrix,
    lm_coef,
    lm_residuals,
    EPS,
)
from .num_sv import permutation_sv_count, asymptotic_sv_count, resolve_method
from .sva import irwsva_build, IRWState
from .combat import it_sol, int_eprior, EBState

# RNG (for reproducibility testing)
from .rng import DEFAULT_SEED, generate_permutation_table

# Errors
from .exceptions import (
    SVAError,
    DimensionMismatchError,
    SingularDesignError,
    NestingViolationError,
    DegenerateBatchError,
    NonConvergenceWarning,
)

__all__ = [
    # Main API
    "sva",
    "estimate_surrogates",
    "svaseq",
    "psva",
    "estimate_surrogate_count",
    "batch_adjust",
    "combat",
    "remove_effect",
    "remove_surrogates",
    "remove_batch_effect",
    "f_test",
    "f_pvalue",
    "edge_lfdr",

    # Building blocks
    "compute_projection_matrix",
    "lm_coef",
    "lm_residuals",
    "permutation_sv_count",
    "asymptotic_sv_count",
    "resolve_method",
    "irwsva_build",
    "IRWState",
    "it_sol",
    "int_eprior",
    "EBState",
    "generate_permutation_table",

    # Constants
    "DEFAULT_IRW_ITER",
    "DEFAULT_IRW_TOL",
    "DEFAULT_N_PERM",
    "DEFAULT_SV_SIG",
    "DEFAULT_EB_CONV",
    "DEFAULT_EB_MAX_ITER",
    "DEFAULT_LFDR_LAMBDA",
    "DEFAULT_LFDR_ADJ",
    "DEFAULT_SEED",
    "EPS",

    # Errors
    "SVAError",
    "DimensionMismatchError",
    "SingularDesignError",
    "NestingViolationError",
    "DegenerateBatchError",
    "NonConvergenceWarning",
]
