#!/usr/bin/env python3
"""
Tests for surrogate-variable counting and seeded permutations.

Run with: python -m pytest tests/test_num_sv.py -v
Or directly: python tests/test_num_sv.py
"""

import numpy as np
import pytest

from svapy import estimate_surrogate_count, generate_permutation_table
from svapy.exceptions import NestingViolationError
from svapy.num_sv import resolve_method
from svapy.rng import make_seed_sequence, permute_within_rows, spawn_generators


def make_latent_data(m=100, n=20, k=2, noise=0.1, seed=0):
    """Intercept + binary design with ``k`` latent factors orthogonal to it."""
    rng = np.random.default_rng(seed)
    group = np.tile([0.0, 1.0], n // 2)
    mod = np.column_stack([np.ones(n), group])
    factors = rng.standard_normal((n, k))
    factors -= mod @ np.linalg.lstsq(mod, factors, rcond=None)[0]
    loadings = rng.standard_normal((m, k))
    X = loadings @ factors.T + noise * rng.standard_normal((m, n))
    return X, mod, factors


def test_asymptotic_count():
    """The random-matrix threshold recovers the planted factors."""
    print("Testing asymptotic count...")

    X, mod, _ = make_latent_data()
    k = estimate_surrogate_count(X, mod, method="leek")
    assert 1 <= k <= 3, f"asymptotic count {k} outside [1, 3]"
    print(f"  ✓ asymptotic count = {k}")

    assert estimate_surrogate_count(X, mod, method="asymptotic") == k
    print("  ✓ method alias")


def test_permutation_count():
    """Strong factors are significant under the permutation null."""
    print("\nTesting permutation count...")

    X, mod, _ = make_latent_data()
    k = estimate_surrogate_count(X, mod, method="be", n_perm=20, seed=3)
    assert 2 <= k <= 3, f"permutation count {k} outside [2, 3]"
    print(f"  ✓ permutation count = {k}")


def test_permutation_determinism():
    """Same seed → same count; the result never depends on global state."""
    print("\nTesting determinism...")

    X, mod, _ = make_latent_data(k=1, noise=0.5, seed=4)
    k1 = estimate_surrogate_count(X, mod, method="be", n_perm=15, seed=11)
    np.random.seed(123)
    k2 = estimate_surrogate_count(X, mod, method="be", n_perm=15, seed=11)
    assert k1 == k2
    print("  ✓ identical seeds → identical counts")


def test_count_validation():
    """Bad arguments are rejected."""
    print("\nTesting validation...")

    X, mod, _ = make_latent_data()
    with pytest.raises(ValueError, match="Unknown method"):
        estimate_surrogate_count(X, mod, method="magic")
    with pytest.raises(ValueError, match="n_perm"):
        estimate_surrogate_count(X, mod, method="be", n_perm=0)

    outside = np.random.default_rng(1).standard_normal((X.shape[1], 1))
    with pytest.raises(NestingViolationError):
        estimate_surrogate_count(X, mod, mod0=outside)
    print("  ✓ errors raised")


def test_method_names():
    """Aliases resolve to the two counting strategies."""
    print("\nTesting method names...")

    assert resolve_method("be") == "be"
    assert resolve_method("permutation") == "be"
    assert resolve_method("leek") == "leek"
    assert resolve_method("asymptotic") == "leek"
    print("  ✓ aliases resolved")

    with pytest.raises(ValueError, match="Unknown method"):
        resolve_method("BE")
    print("  ✓ unknown name rejected")


def test_permutation_table():
    """Permutation rounds are reproducible and valid permutations."""
    print("\nTesting permutation table...")

    t1 = generate_permutation_table(10, 5, seed=0)
    t2 = generate_permutation_table(10, 5, seed=0)
    assert t1.shape == (5, 10)
    assert np.array_equal(t1, t2)
    for row in t1:
        assert sorted(row) == list(range(10))
    assert not np.array_equal(t1, generate_permutation_table(10, 5, seed=1))
    print("  ✓ reproducible permutations")

    # Round i only depends on (seed, i)
    short = generate_permutation_table(10, 3, seed=0)
    assert np.array_equal(short, t1[:3])
    print("  ✓ rounds independent of the round count")


def test_row_permutation():
    """Row-wise shuffles keep each row's values."""
    print("\nTesting row permutation...")

    mat = np.arange(24, dtype=float).reshape(4, 6)
    rng = spawn_generators(0, 1)[0]
    shuffled = permute_within_rows(mat, rng)
    assert shuffled.shape == mat.shape
    assert np.array_equal(np.sort(shuffled, axis=1), mat)
    assert np.array_equal(mat, np.arange(24, dtype=float).reshape(4, 6)), "input modified"
    print("  ✓ permute_within_rows")

    with pytest.raises(ValueError, match="seed"):
        make_seed_sequence(-1)
    print("  ✓ negative seed rejected")


def main():
    """Run all tests."""
    print("=" * 50)
    print("SVAPy Surrogate Count Tests")
    print("=" * 50)

    test_asymptotic_count()
    test_permutation_count()
    test_permutation_determinism()
    test_count_validation()
    test_method_names()
    test_permutation_table()
    test_row_permutation()

    print("\n" + "=" * 50)
    print("All tests passed! ✓")
    print("=" * 50)


if __name__ == "__main__":
    main()
