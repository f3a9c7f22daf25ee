#!/usr/bin/env python3
"""
Tests for surrogate variable estimation and removal.

Run with: python -m pytest tests/test_sva.py -v
Or directly: python tests/test_sva.py
"""

import numpy as np
import pandas as pd
import pytest

from svapy import (
    estimate_surrogates,
    psva,
    remove_surrogates,
    sva,
    svaseq,
)
from svapy.exceptions import (
    DegenerateBatchError,
    DimensionMismatchError,
    NestingViolationError,
    NonConvergenceWarning,
    SingularDesignError,
)
from svapy.linalg import lm_coef
from svapy.sva import IRWState, feature_weights, subspace_change


def make_sva_data(m=100, n=20, k=2, n_signal=20, seed=0):
    """Primary binary signal in the first features plus ``k`` latent factors."""
    rng = np.random.default_rng(seed)
    group = np.tile([0.0, 1.0], n // 2)
    mod = np.column_stack([np.ones(n), group])
    mod0 = np.ones((n, 1))
    factors = rng.standard_normal((n, k))
    factors -= mod @ np.linalg.lstsq(mod, factors, rcond=None)[0]
    loadings = rng.standard_normal((m, k))
    X = 5.0 + loadings @ factors.T + 0.1 * rng.standard_normal((m, n))
    X[:n_signal] += 2.0 * group[None, :]
    return X, mod, mod0, factors


def _r_squared(target, basis):
    """Share of ``target``'s variance explained by ``[1, basis]``."""
    D = np.column_stack([np.ones(len(target)), basis])
    fitted = D @ np.linalg.lstsq(D, target, rcond=None)[0]
    resid = target - fitted
    centered = target - target.mean()
    return 1.0 - resid @ resid / (centered @ centered)


def test_sva_recovers_factors():
    """Estimated surrogates span the planted latent factors."""
    print("Testing surrogate recovery...")

    X, mod, mod0, factors = make_sva_data()
    result = sva(X, mod, mod0, n_sv=2)

    sv = result['sv']
    assert sv.shape == (X.shape[1], 2)
    assert result['n_sv'] == 2
    assert np.allclose(sv.mean(axis=0), 0.0, atol=1e-10), "surrogates not centered"
    print("  ✓ shape and centering")

    assert np.allclose(sv.T @ sv, np.eye(2), atol=1e-6), "surrogates not orthonormal"
    print("  ✓ orthonormal columns")

    for j in range(factors.shape[1]):
        r2 = _r_squared(factors[:, j], sv)
        assert r2 > 0.9, f"factor {j} poorly recovered (R² = {r2:.3f})"
    print("  ✓ latent factors recovered (R² > 0.9)")

    assert result['pprob_b'].shape == (X.shape[0],)
    assert result['pprob_b'][:20].mean() > result['pprob_b'][20:].mean()
    print("  ✓ primary-signal features flagged by pprob_b")


def test_sva_estimates_count():
    """Without n_sv the count comes from the chosen method."""
    print("\nTesting counted estimation...")

    X, mod, mod0, _ = make_sva_data()
    r1 = sva(X, mod, mod0, method="be", n_perm=10, seed=2)
    r2 = sva(X, mod, mod0, method="be", n_perm=10, seed=2)
    assert r1['n_sv'] >= 1
    assert r1['n_sv'] == r2['n_sv']
    assert np.allclose(r1['sv'], r2['sv'])
    assert np.allclose(r1['sv'].T @ r1['sv'], np.eye(r1['n_sv']), atol=1e-6)
    print(f"  ✓ deterministic with seed (n_sv = {r1['n_sv']})")

    r3 = sva(X, mod, mod0, method="leek")
    assert r3['sv'].shape[1] == r3['n_sv']
    print(f"  ✓ asymptotic count (n_sv = {r3['n_sv']})")


def test_zero_surrogates():
    """n_sv = 0 gives an empty factor matrix and removal is a no-op."""
    print("\nTesting n_sv = 0...")

    X, mod, mod0, _ = make_sva_data()
    sv = estimate_surrogates(X, mod, mod0, n_sv=0)
    assert sv.shape == (X.shape[1], 0)
    assert np.array_equal(remove_surrogates(X, mod, sv), X)
    print("  ✓ empty surrogates, unchanged data")


def test_labeled_surrogates():
    """DataFrame input yields SV1..SVk columns indexed by sample."""
    print("\nTesting labeled output...")

    X, mod, mod0, _ = make_sva_data()
    samples = [f"s{i}" for i in range(X.shape[1])]
    df = pd.DataFrame(X, index=[f"g{i}" for i in range(X.shape[0])], columns=samples)

    sv = estimate_surrogates(df, mod, mod0, n_sv=2)
    assert isinstance(sv, pd.DataFrame)
    assert list(sv.index) == samples
    assert list(sv.columns) == ["SV1", "SV2"]

    cleaned = remove_surrogates(df, mod, sv)
    assert isinstance(cleaned, pd.DataFrame)
    assert cleaned.index.equals(df.index) and cleaned.columns.equals(df.columns)
    print("  ✓ labels preserved")


def test_remove_surrogates_protects_primary():
    """Removal keeps the primary coefficients of the augmented fit."""
    print("\nTesting surrogate removal...")

    X, mod, mod0, _ = make_sva_data()
    sv = estimate_surrogates(X, mod, mod0, n_sv=2)
    cleaned = remove_surrogates(X, mod, sv)

    augmented = np.hstack([mod, sv])
    B_aug = lm_coef(X, augmented)
    assert np.allclose(lm_coef(cleaned, mod), B_aug[:, :2], atol=1e-8)
    print("  ✓ primary coefficients preserved")

    assert np.allclose(lm_coef(cleaned, augmented)[:, 2:], 0.0, atol=1e-8)
    print("  ✓ no surrogate contribution left")


def test_sva_errors():
    """Invalid designs are rejected with specific errors."""
    print("\nTesting errors...")

    X, mod, mod0, _ = make_sva_data()
    n = X.shape[1]

    with pytest.raises(DimensionMismatchError):
        sva(X, mod[:-1], mod0, n_sv=1)
    with pytest.raises(NestingViolationError):
        sva(X, mod, np.random.default_rng(0).standard_normal((n, 1)), n_sv=1)
    with pytest.raises(ValueError, match="intercept"):
        sva(X, mod[:, 1:], None, n_sv=1)
    with pytest.raises(SingularDesignError, match="degrees of freedom"):
        sva(X, mod, mod0, n_sv=n - 2)
    with pytest.raises(SingularDesignError):
        sva(X, np.column_stack([mod, mod[:, 1]]), mod0, n_sv=1)
    print("  ✓ DimensionMismatch, Nesting, SingularDesign errors")

    X6 = X[:, :6]
    saturated = np.column_stack([np.ones(6), np.eye(6)[:, 1:]])
    with pytest.raises(SingularDesignError, match="degrees of freedom"):
        sva(X6, saturated, None)
    with pytest.raises(SingularDesignError, match="degrees of freedom"):
        sva(X6, saturated, None, method="leek")
    print("  ✓ saturated design rejected before counting")

    with pytest.raises(ValueError, match="Unknown method"):
        sva(X, mod, mod0, method="magic")
    print("  ✓ unknown counting method")


def test_non_convergence():
    """Hitting the round cap warns and flags the result."""
    print("\nTesting non-convergence...")

    X, mod, mod0, _ = make_sva_data()
    with pytest.warns(NonConvergenceWarning):
        result = sva(X, mod, mod0, n_sv=2, max_iter=1, tol=0.0)
    assert result['converged'] is False
    assert result['n_iter'] == 1
    assert result['sv'].shape == (X.shape[1], 2)
    print("  ✓ NonConvergenceWarning with last iterate")


def test_irw_state():
    """Subspace change is basis invariant."""
    print("\nTesting IRW state...")

    rng = np.random.default_rng(0)
    q, _ = np.linalg.qr(rng.standard_normal((10, 2)))
    rot = np.array([[0.0, 1.0], [-1.0, 0.0]])
    assert subspace_change(q, q @ rot) < 1e-6

    other, _ = np.linalg.qr(rng.standard_normal((10, 2)))
    state = IRWState(q, np.ones(2))
    state.update(other, np.ones(2), np.ones(5), tol=1e-3)
    assert state.iteration == 1
    assert 0.0 < state.delta <= 1.0
    assert not state.converged
    print("  ✓ subspace_change and IRWState")


def test_feature_weights():
    """Surrogate-only features get high weight, primary-only features near zero."""
    print("\nTesting feature weights...")

    rng = np.random.default_rng(5)
    n = 20
    group = np.tile([0.0, 1.0], n // 2)
    mod = np.column_stack([np.ones(n), group])
    mod0 = np.ones((n, 1))
    factor = rng.standard_normal(n)
    factor -= mod @ np.linalg.lstsq(mod, factor, rcond=None)[0]
    sv = (factor / np.linalg.norm(factor))[:, None]

    X = 5.0 + 0.1 * rng.standard_normal((100, n))
    X[:30] += 2.0 * group[None, :]
    loadings = rng.uniform(2.0, 4.0, size=30) * rng.choice([-1.0, 1.0], size=30)
    X[30:60] += loadings[:, None] * sv[:, 0][None, :]

    weights, pprob_gam, pprob_b = feature_weights(X, sv, mod, mod0)
    assert weights.shape == pprob_gam.shape == pprob_b.shape == (100,)
    assert np.all((weights >= 0.0) & (weights <= 1.0))
    assert np.allclose(weights, pprob_gam * (1.0 - pprob_b))
    print("  ✓ weights in [0, 1] and equal pprob_gam * (1 - pprob_b)")

    assert pprob_b[:30].mean() > 0.9
    assert weights[:30].mean() < 0.1
    print(f"  ✓ primary-only features suppressed (mean weight {weights[:30].mean():.3f})")

    assert pprob_gam[30:60].mean() > 0.9
    assert weights[30:60].mean() > 0.7
    print(f"  ✓ surrogate-only features kept (mean weight {weights[30:60].mean():.3f})")


def test_svaseq():
    """Counts are log transformed before estimation."""
    print("\nTesting svaseq...")

    X, mod, mod0, _ = make_sva_data()
    rng = np.random.default_rng(9)
    counts = rng.poisson(np.exp(X - 2.0))
    result = svaseq(counts, mod, mod0, n_sv=1)
    assert result['sv'].shape == (X.shape[1], 1)
    print("  ✓ svaseq on counts")

    with pytest.raises(ValueError, match="non-negative"):
        svaseq(-np.ones_like(X), mod, mod0, n_sv=1)
    print("  ✓ negative counts rejected")


def test_psva():
    """Population-average adjustment removes only the batch coefficients."""
    print("\nTesting psva...")

    X, _, _, _ = make_sva_data()
    n = X.shape[1]
    batch = np.repeat(["a", "b"], n // 2)
    shifted = X.copy()
    shifted[:, batch == "b"] += 1.5

    cleaned = psva(shifted, batch, n_sv=2)
    assert cleaned.shape == X.shape

    bmod = np.column_stack([np.ones(n), (batch == "b").astype(float)])
    sv = estimate_surrogates(shifted, bmod, None, n_sv=2)
    augmented = np.hstack([bmod, sv])
    assert np.allclose(lm_coef(cleaned, augmented)[:, 1], 0.0, atol=1e-8)
    print("  ✓ batch coefficient removed")

    B_before = lm_coef(shifted, augmented)
    B_after = lm_coef(cleaned, augmented)
    assert np.allclose(B_after[:, 2:], B_before[:, 2:], atol=1e-8)
    print("  ✓ surrogate contribution retained")

    with pytest.warns(UserWarning, match="one batch"):
        same = psva(X, np.zeros(n))
    assert np.array_equal(same, X)
    print("  ✓ single batch is a no-op")

    singleton = batch.copy()
    singleton[0] = "c"
    with pytest.raises(DegenerateBatchError, match="fewer than 2"):
        psva(shifted, singleton, n_sv=1)
    print("  ✓ one-sample batch rejected")


def main():
    """Run all tests."""
    print("=" * 50)
    print("SVAPy Surrogate Variable Tests")
    print("=" * 50)

    test_sva_recovers_factors()
    test_sva_estimates_count()
    test_zero_surrogates()
    test_labeled_surrogates()
    test_remove_surrogates_protects_primary()
    test_sva_errors()
    test_non_convergence()
    test_irw_state()
    test_feature_weights()
    test_svaseq()
    test_psva()

    print("\n" + "=" * 50)
    print("All tests passed! ✓")
    print("=" * 50)


if __name__ == "__main__":
    main()
