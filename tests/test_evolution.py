"""
Tests for Sparse CMA-ES
"""

import pytest
import numpy as np
from src.cellular_automata.evolution import (
    SparseCMAES,
    SparseCMAESOptions,
    OptimizerState
)
from src.utils.exceptions import ConfigurationError


def sphere(population):
    return np.sum(population ** 2, axis=1)


@pytest.mark.parametrize("kwargs", [
    {'subset_size': 11},
    {'subset_size': 0},
    {'population_size': 1},
    {'population_size': 6, 'mu': 6},
    {'mu': 0},
    {'sigma0': 0.0},
    {'covariance_retention': 1.5},
    {'mirrored_sampling': True, 'population_size': 7},
    {'max_evaluations': 5, 'population_size': 6},
])
def test_invalid_options(kwargs):
    """Test rejection of degenerate optimizer settings."""
    options = SparseCMAESOptions(**dict({'population_size': 6, 'subset_size': 4}, **kwargs))

    with pytest.raises(ConfigurationError):
        SparseCMAES(np.zeros(10), options)


def test_ask_shape():
    """Test population sampling shape."""
    es = SparseCMAES(np.zeros(20), SparseCMAESOptions(population_size=8, subset_size=5, seed=0))

    population = es.ask()

    assert population.shape == (8, 20)
    assert np.all(np.isfinite(population))
    assert es.state is OptimizerState.EVALUATING


def test_ask_tell_misuse():
    """Test the ask/tell protocol."""
    es = SparseCMAES(np.zeros(5), SparseCMAESOptions(population_size=4, subset_size=2, seed=0))

    with pytest.raises(RuntimeError):
        es.tell(np.zeros(4))

    es.ask()
    with pytest.raises(RuntimeError):
        es.ask()
    with pytest.raises(ValueError):
        es.tell(np.zeros(3))
    with pytest.raises(ValueError):
        es.tell(np.array([0.0, np.nan, 1.0, 2.0]))


def test_budget_exhaustion():
    """Test that sampling stops once the evaluation budget is spent."""
    es = SparseCMAES(np.zeros(5), SparseCMAESOptions(
        population_size=4, subset_size=2, max_evaluations=10, seed=0
    ))

    for _ in range(2):
        es.tell(sphere(es.ask()))

    assert es.evaluations == 8
    assert es.exhausted
    assert es.state is OptimizerState.EXHAUSTED
    with pytest.raises(RuntimeError):
        es.ask()


def test_mirrored_sampling():
    """Test that mirrored pairs are symmetric about the mean."""
    x0 = np.linspace(-1.0, 1.0, 12)
    es = SparseCMAES(x0, SparseCMAESOptions(
        population_size=6, subset_size=4, mirrored_sampling=True, seed=3
    ))

    population = es.ask()

    assert np.allclose(population[0::2] + population[1::2], 2.0 * x0)


def test_sphere_convergence_full_subset():
    """Test convergence on the sphere when every coordinate is tracked."""
    es = SparseCMAES(np.ones(10), SparseCMAESOptions(
        sigma0=0.5, population_size=12, subset_size=10,
        covariance_retention=1.0, max_evaluations=12 * 400, seed=1
    ))

    result = es.optimize(sphere)

    assert result['best_fitness'] < 1e-3
    assert result['evaluations'] <= 12 * 400


def test_sphere_progress_sparse_subset():
    """Test steady progress when only a few coordinates share covariance."""
    es = SparseCMAES(np.ones(30), SparseCMAESOptions(
        sigma0=0.5, population_size=12, subset_size=5, max_evaluations=12 * 600, seed=2
    ))

    result = es.optimize(sphere)

    assert result['best_fitness'] < 0.3
    assert result['best_fitness'] == min(result['history'])
    assert len(result['history']) == result['generations'] == 600


def test_best_tracking():
    """Test best-so-far bookkeeping."""
    es = SparseCMAES(np.ones(8), SparseCMAESOptions(population_size=6, subset_size=3, seed=4))

    for _ in range(5):
        population = es.ask()
        es.tell(sphere(population))

    assert es.generation == 5
    assert es.evaluations == 30
    assert es.best_fitness == min(es.history)
    assert sphere(es.best_params[None])[0] == pytest.approx(es.best_fitness)


def test_untracked_variances_unchanged():
    """Test that only tracked coordinates change their variance."""
    es = SparseCMAES(np.ones(40), SparseCMAESOptions(population_size=8, subset_size=6, seed=5))
    tracked = es.subset.copy()

    es.tell(sphere(es.ask()))

    untracked = np.setdiff1d(np.arange(40), tracked)
    assert np.all(es.variances[untracked] == 1.0)
    assert not np.all(es.variances[tracked] == 1.0)


def test_correlation_block_stays_valid():
    """Test that the tracked correlation block stays a valid correlation matrix."""
    es = SparseCMAES(np.ones(25), SparseCMAESOptions(
        population_size=10, subset_size=8, covariance_retention=0.9, seed=6
    ))

    for _ in range(30):
        es.tell(sphere(es.ask()))
        eigvals = np.linalg.eigvalsh(es.correlation)
        assert eigvals.min() > -1e-10
        assert np.allclose(np.diag(es.correlation), 1.0)
        assert np.allclose(es.correlation, es.correlation.T)


def test_zero_retention_resets_correlations():
    """Test that zero retention starts every subset uncorrelated."""
    es = SparseCMAES(np.ones(12), SparseCMAESOptions(
        population_size=8, subset_size=12, covariance_retention=0.0, seed=7
    ))

    for _ in range(3):
        es.tell(sphere(es.ask()))
        assert np.allclose(es.correlation, np.eye(12))


def test_no_nan_on_flat_objective():
    """Test numerical stability when every candidate ties."""
    es = SparseCMAES(np.zeros(50), SparseCMAESOptions(population_size=10, subset_size=10, seed=8))

    for _ in range(300):
        population = es.ask()
        assert np.all(np.isfinite(population))
        es.tell(np.ones(len(population)))

    assert np.isfinite(es.sigma)
    assert np.all(np.isfinite(es.variances))
    assert np.all(np.isfinite(es.mean))


def test_best_fitness_improves_across_seeds():
    """Test that late generations beat early ones on a mean-squared-error surface."""
    target = np.linspace(-0.5, 0.5, 16)

    def mse(population):
        return np.mean((population - target) ** 2, axis=1)

    early, late = [], []
    for seed in range(5):
        es = SparseCMAES(np.zeros(16), SparseCMAESOptions(
            sigma0=0.3, population_size=10, subset_size=6, max_evaluations=10 * 150, seed=seed
        ))
        history = es.optimize(mse)['history']
        early.append(np.mean(history[:10]))
        late.append(np.mean(history[-10:]))

    assert np.mean(late) < np.mean(early)
    assert all(l < e for l, e in zip(late, early))


def test_optimize_requires_budget():
    """Test that optimize() needs some stopping budget."""
    es = SparseCMAES(np.zeros(4), SparseCMAESOptions(population_size=4, subset_size=2))

    with pytest.raises(ConfigurationError):
        es.optimize(sphere)

    result = es.optimize(sphere, max_generations=3)
    assert result['generations'] == 3


def test_state_snapshot():
    """Test restoring a distribution snapshot."""
    options = SparseCMAESOptions(population_size=6, subset_size=4, seed=9)
    es = SparseCMAES(np.ones(10), options)
    for _ in range(3):
        es.tell(sphere(es.ask()))

    restored = SparseCMAES(np.zeros(10), options)
    restored.load_state(es.to_dict())

    assert np.array_equal(restored.mean, es.mean)
    assert restored.sigma == es.sigma
    assert np.array_equal(restored.subset, es.subset)
    assert restored.best_fitness == es.best_fitness
    assert restored.evaluations == 18


if __name__ == "__main__":
    pytest.main([__file__])
