"""
Sparse CMA-ES Evolution Engine
Evolution strategy whose covariance adapts on a random coordinate subset per generation
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, Any, List, Optional

import numpy as np

from ..utils.exceptions import ConfigurationError

logger = logging.getLogger(__name__)

MIN_SIGMA = 1e-12
MAX_SIGMA = 1e12
MIN_VARIANCE = 1e-20
MAX_VARIANCE = 1e20
EIGEN_FLOOR = 1e-12


class OptimizerState(Enum):
    """Lifecycle of the search distribution"""
    INITIALIZED = "initialized"
    SAMPLING = "sampling"
    EVALUATING = "evaluating"
    UPDATING = "updating"
    EXHAUSTED = "exhausted"


@dataclass
class SparseCMAESOptions:
    """
    Settings of the sparse CMA-ES.

    Attributes:
        sigma0: Initial global step size
        population_size: Candidates sampled per generation
        mu: Recombination members, defaults to population_size // 2
        subset_size: Coordinates whose joint covariance is tracked per generation
        covariance_retention: Share of tracked correlations kept when a
            coordinate pair survives a subset resample
        mirrored_sampling: Pair every sample with its reflection about the mean
        max_evaluations: Evaluation budget, None for unlimited
        seed: Random seed for reproducibility
    """
    sigma0: float = 0.2
    population_size: int = 100
    mu: Optional[int] = None
    subset_size: int = 64
    covariance_retention: float = 0.5
    mirrored_sampling: bool = False
    max_evaluations: Optional[int] = None
    seed: Optional[int] = None

    def resolved_mu(self) -> int:
        return self.mu if self.mu is not None else self.population_size // 2

    def validate(self, dim: int):
        """Raise ConfigurationError for settings the optimizer cannot run with."""
        if dim < 1:
            raise ConfigurationError("Search dimension must be >= 1")
        if not np.isfinite(self.sigma0) or self.sigma0 <= 0:
            raise ConfigurationError("sigma0 must be a finite value > 0")
        if self.population_size < 2:
            raise ConfigurationError("population_size must be >= 2")
        mu = self.resolved_mu()
        if not 1 <= mu < self.population_size:
            raise ConfigurationError(
                f"population_size ({self.population_size}) must exceed mu ({mu}) and mu must be >= 1"
            )
        if not 1 <= self.subset_size <= dim:
            raise ConfigurationError(f"subset_size must lie in [1, {dim}], got {self.subset_size}")
        if not 0.0 <= self.covariance_retention <= 1.0:
            raise ConfigurationError("covariance_retention must lie in [0, 1]")
        if self.mirrored_sampling and self.population_size % 2:
            raise ConfigurationError("mirrored_sampling needs an even population_size")
        if self.max_evaluations is not None and self.max_evaluations < self.population_size:
            raise ConfigurationError("max_evaluations must allow at least one generation")


def _psd_factor(corr: np.ndarray) -> tuple:
    """
    Repair a correlation block and return it with a sampling factor.

    The block is symmetrised, eigenvalues are floored, and the diagonal is
    renormalised to one. The factor B satisfies B @ B.T == corr.
    """
    corr = 0.5 * (corr + corr.T)
    eigvals, eigvecs = np.linalg.eigh(corr)
    eigvals = np.maximum(eigvals, EIGEN_FLOOR)
    corr = (eigvecs * eigvals) @ eigvecs.T
    scale = 1.0 / np.sqrt(np.diag(corr))
    corr = corr * np.outer(scale, scale)
    factor = (eigvecs * np.sqrt(eigvals)) * scale[:, None]
    return corr, factor


class SparseCMAES:
    """
    CMA-ES with per-coordinate variances and a sparse correlation block.

    Every coordinate owns a variance. Joint covariance is tracked only on a
    subset S of coordinates, resampled each generation, so storage and
    update cost grow with dim + |S|^2 rather than dim^2. The covariance is

        C = D^1/2 (I outside S, R_S on S) D^1/2

    Use as ask/tell:

        es = SparseCMAES(x0, SparseCMAESOptions(...))
        while not es.exhausted:
            population = es.ask()
            es.tell(objective(population))
    """

    def __init__(self, x0: np.ndarray, options: Optional[SparseCMAESOptions] = None):
        """
        Initialize search distribution.

        Args:
            x0: Initial mean
            options: Optimizer settings
        """
        self.options = options or SparseCMAESOptions()
        x0 = np.asarray(x0, dtype=np.float64).ravel()
        self.dim = x0.size
        self.options.validate(self.dim)
        if not np.all(np.isfinite(x0)):
            raise ConfigurationError("Initial mean must be finite")

        self.rng = np.random.default_rng(self.options.seed)

        n = self.dim
        k = self.options.subset_size
        self.lam = self.options.population_size
        self.mu = self.options.resolved_mu()

        # Recombination weights
        raw = np.log(self.mu + 0.5) - np.log(np.arange(1, self.mu + 1))
        self.weights = raw / raw.sum()
        self.mueff = 1.0 / np.sum(self.weights ** 2)

        # Step-size control over the full dimension
        self.cs = (self.mueff + 2.0) / (n + self.mueff + 5.0)
        self.damps = 1.0 + 2.0 * max(0.0, np.sqrt((self.mueff - 1.0) / (n + 1.0)) - 1.0) + self.cs
        self.chi_n = np.sqrt(n) * (1.0 - 1.0 / (4.0 * n) + 1.0 / (21.0 * n ** 2))
        self.cc = (4.0 + self.mueff / n) / (n + 4.0 + 2.0 * self.mueff / n)

        # Covariance learning rates sized for the tracked block
        self.c1 = 2.0 / ((k + 1.3) ** 2 + self.mueff)
        self.cmu = min(1.0 - self.c1,
                       2.0 * (self.mueff - 2.0 + 1.0 / self.mueff) / ((k + 2.0) ** 2 + self.mueff))

        self.mean = x0.copy()
        self.sigma = float(self.options.sigma0)
        self.p_sigma = np.zeros(n)
        self.p_c = np.zeros(n)
        self.variances = np.ones(n)

        self.subset = np.sort(self.rng.choice(n, size=k, replace=False))
        self.correlation = np.eye(k)
        self._factor = np.eye(k)

        self.generation = 0
        self.evaluations = 0
        self.best_params: Optional[np.ndarray] = None
        self.best_fitness = np.inf
        self.history: List[float] = []

        self._z: Optional[np.ndarray] = None
        self._y: Optional[np.ndarray] = None
        self._population: Optional[np.ndarray] = None
        self.state = OptimizerState.INITIALIZED

    @property
    def exhausted(self) -> bool:
        budget = self.options.max_evaluations
        return budget is not None and self.evaluations + self.lam > budget

    def covariance_block(self) -> np.ndarray:
        """Dense covariance of the tracked subset (without sigma)."""
        std = np.sqrt(self.variances[self.subset])
        return self.correlation * np.outer(std, std)

    def _transform(self, z: np.ndarray) -> np.ndarray:
        """Map whitened samples to covariance-shaped steps."""
        y = z * np.sqrt(self.variances)
        y[:, self.subset] = (z[:, self.subset] @ self._factor.T) * np.sqrt(self.variances[self.subset])
        # Non-finite entries would poison ranking
        y[~np.isfinite(y)] = 0.0
        return y

    def ask(self) -> np.ndarray:
        """
        Sample a population.

        Returns:
            Array of shape (population_size, dim)
        """
        if self.state is OptimizerState.EVALUATING:
            raise RuntimeError("ask() called twice without tell()")
        if self.exhausted:
            self.state = OptimizerState.EXHAUSTED
            raise RuntimeError("Evaluation budget exhausted")

        self.state = OptimizerState.SAMPLING
        z = self.rng.standard_normal((self.lam, self.dim))
        if self.options.mirrored_sampling:
            z[1::2] = -z[0::2]

        y = self._transform(z)
        population = self.mean + self.sigma * y

        self._z, self._y, self._population = z, y, population
        self.state = OptimizerState.EVALUATING
        return population.copy()

    def tell(self, fitness: np.ndarray):
        """
        Update the distribution from the fitness of the last population.

        Args:
            fitness: One value per member, lower is better
        """
        if self.state is not OptimizerState.EVALUATING:
            raise RuntimeError("tell() called without a pending ask()")

        fitness = np.asarray(fitness, dtype=np.float64).ravel()
        if fitness.size != self.lam:
            raise ValueError(f"Expected {self.lam} fitness values; found {fitness.size}")
        if not np.all(np.isfinite(fitness)):
            raise ValueError("Fitness values must be finite")

        self.state = OptimizerState.UPDATING
        self.evaluations += self.lam
        self.generation += 1

        order = np.argsort(fitness, kind='stable')
        best = order[0]
        self.history.append(float(fitness[best]))
        if fitness[best] < self.best_fitness:
            self.best_fitness = float(fitness[best])
            self.best_params = self._population[best].copy()

        selected = order[:self.mu]
        y_sel = self._y[selected]
        y_w = self.weights @ y_sel
        z_w = self.weights @ self._z[selected]

        self.mean = self.mean + self.sigma * y_w

        # Evolution paths
        self.p_sigma = (1.0 - self.cs) * self.p_sigma + np.sqrt(self.cs * (2.0 - self.cs) * self.mueff) * z_w
        ps_norm = np.linalg.norm(self.p_sigma)
        ps_norm_corr = ps_norm / np.sqrt(1.0 - (1.0 - self.cs) ** (2 * self.generation))
        h_sigma = float(ps_norm_corr / self.chi_n < 1.4 + 2.0 / (self.dim + 1.0))
        self.p_c = (1.0 - self.cc) * self.p_c + h_sigma * np.sqrt(self.cc * (2.0 - self.cc) * self.mueff) * y_w

        self._update_subset_covariance(y_sel, h_sigma)

        sigma = self.sigma * np.exp((self.cs / self.damps) * (ps_norm / self.chi_n - 1.0))
        if not MIN_SIGMA <= sigma <= MAX_SIGMA:
            logger.warning(f"Step size {sigma:.3e} clamped to [{MIN_SIGMA:.0e}, {MAX_SIGMA:.0e}]")
        self.sigma = float(np.clip(sigma, MIN_SIGMA, MAX_SIGMA))

        self._resample_subset()

        self._z = self._y = self._population = None
        self.state = OptimizerState.EXHAUSTED if self.exhausted else OptimizerState.SAMPLING

    def _update_subset_covariance(self, y_sel: np.ndarray, h_sigma: float):
        """Rank-one and rank-mu update restricted to the tracked subset."""
        idx = self.subset
        cov = self.covariance_block()

        p_c = self.p_c[idx]
        y_s = y_sel[:, idx]
        rank_mu = (y_s * self.weights[:, None]).T @ y_s

        c1a = self.c1 * (1.0 - (1.0 - h_sigma) * self.cc * (2.0 - self.cc))
        cov = (1.0 - c1a - self.cmu) * cov + self.c1 * np.outer(p_c, p_c) + self.cmu * rank_mu

        var = np.clip(np.diag(cov), MIN_VARIANCE, MAX_VARIANCE)
        std = np.sqrt(var)
        self.variances[idx] = var
        self.correlation, self._factor = _psd_factor(cov / np.outer(std, std))

    def _resample_subset(self):
        """
        Draw the next tracked subset.

        Correlations between coordinates kept in both subsets are shrunk
        toward zero by covariance_retention; new coordinates start
        uncorrelated. Variances persist for every coordinate.
        """
        k = self.options.subset_size
        rho = self.options.covariance_retention
        new_subset = np.sort(self.rng.choice(self.dim, size=k, replace=False))

        corr = np.eye(k)
        _, old_pos, new_pos = np.intersect1d(self.subset, new_subset, return_indices=True)
        if old_pos.size:
            corr[np.ix_(new_pos, new_pos)] = self.correlation[np.ix_(old_pos, old_pos)]
        corr = rho * corr + (1.0 - rho) * np.eye(k)

        self.subset = new_subset
        self.correlation, self._factor = _psd_factor(corr)

    def optimize(
        self,
        objective: Callable[[np.ndarray], np.ndarray],
        max_generations: Optional[int] = None,
        callback: Optional[Callable[["SparseCMAES"], None]] = None
    ) -> Dict[str, Any]:
        """
        Run ask/tell until the budget is exhausted.

        Args:
            objective: Maps a (population_size, dim) array to fitness values
            max_generations: Optional generation budget
            callback: Called after every generation

        Returns:
            Dictionary with best parameters, best fitness and history
        """
        if self.options.max_evaluations is None and max_generations is None:
            raise ConfigurationError("optimize() needs max_evaluations or max_generations")

        generations = 0
        while not self.exhausted and (max_generations is None or generations < max_generations):
            population = self.ask()
            self.tell(objective(population))
            generations += 1
            if callback is not None:
                callback(self)

        return {
            'best_params': self.best_params,
            'best_fitness': self.best_fitness,
            'evaluations': self.evaluations,
            'generations': self.generation,
            'history': list(self.history),
        }

    def to_dict(self) -> Dict[str, Any]:
        """Snapshot of the distribution state."""
        return {
            'mean': self.mean.tolist(),
            'sigma': self.sigma,
            'p_sigma': self.p_sigma.tolist(),
            'p_c': self.p_c.tolist(),
            'variances': self.variances.tolist(),
            'subset': self.subset.tolist(),
            'correlation': self.correlation.tolist(),
            'generation': self.generation,
            'evaluations': self.evaluations,
            'best_fitness': self.best_fitness,
            'best_params': None if self.best_params is None else self.best_params.tolist(),
        }

    def load_state(self, state: Dict[str, Any]):
        """Restore a snapshot produced by to_dict()."""
        subset = np.asarray(state['subset'], dtype=np.intp)
        if subset.size != self.options.subset_size or len(state['mean']) != self.dim:
            raise ConfigurationError("Snapshot does not match optimizer dimensions")

        self.mean = np.asarray(state['mean'], dtype=np.float64)
        self.sigma = float(state['sigma'])
        self.p_sigma = np.asarray(state['p_sigma'], dtype=np.float64)
        self.p_c = np.asarray(state['p_c'], dtype=np.float64)
        self.variances = np.asarray(state['variances'], dtype=np.float64)
        self.subset = subset
        self.correlation, self._factor = _psd_factor(np.asarray(state['correlation'], dtype=np.float64))
        self.generation = int(state['generation'])
        self.evaluations = int(state['evaluations'])
        self.best_fitness = float(state['best_fitness'])
        best = state.get('best_params')
        self.best_params = None if best is None else np.asarray(best, dtype=np.float64)
        self.history = []
        self.state = OptimizerState.SAMPLING
