"""
Automaton Trainer
Sparse CMA-ES training of several independent automata per puzzle task
"""

import logging
import time
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Any

import numpy as np
from tqdm import tqdm

from ..cellular_automata.core import AutomatonModel, ParameterShape, UpdatePolicy
from ..cellular_automata.evolution import SparseCMAES, SparseCMAESOptions
from ..cellular_automata.executor import inference
from ..cellular_automata.fitness import pixel_accuracy
from ..cellular_automata.substrate import ChannelLayout, Grid, Substrate
from ..diagnostics.parity import compare_model
from ..utils.config import TrainConfig, validate_config
from ..utils.logger import setup_logger
from .evaluator import PopulationEvaluator, build_evaluator
from .tasks import Task, preserves_grid_size
from .voting import best_attempt_accuracy, predict_remapped, vote


@dataclass
class TrainedModel:
    """One independently optimized automaton and its train scores."""
    model: AutomatonModel
    fitness: float
    train_accuracies: List[float]
    fitness_history: List[float] = field(default_factory=list)

    @property
    def solved(self) -> bool:
        return bool(self.train_accuracies) and all(acc == 1.0 for acc in self.train_accuracies)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'fitness': self.fitness,
            'train_accuracies': self.train_accuracies,
            'model': self.model.to_dict(),
        }


@dataclass
class TrainResult:
    """Models and statistics of one task's training run; best model first."""
    task_id: str
    best_model: Optional[AutomatonModel] = None
    best_fitness: float = float('inf')
    train_accuracies: List[float] = field(default_factory=list)
    generations: int = 0
    evaluations: int = 0
    fitness_history: List[float] = field(default_factory=list)
    elapsed_seconds: float = 0.0
    skipped: bool = False
    models: List[TrainedModel] = field(default_factory=list)
    test_accuracies: List[float] = field(default_factory=list)

    @property
    def mean_accuracy(self) -> float:
        return float(np.mean(self.train_accuracies)) if self.train_accuracies else 0.0

    @property
    def solved(self) -> bool:
        return bool(self.train_accuracies) and all(acc == 1.0 for acc in self.train_accuracies)

    @property
    def test_correct(self) -> int:
        return sum(1 for acc in self.test_accuracies if acc == 1.0)

    def candidates(self) -> List[TrainedModel]:
        """Models that solve every train example, or all models when none does."""
        solved = [m for m in self.models if m.solved]
        return solved or list(self.models)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'task_id': self.task_id,
            'best_fitness': self.best_fitness,
            'train_accuracies': self.train_accuracies,
            'test_accuracies': self.test_accuracies,
            'generations': self.generations,
            'evaluations': self.evaluations,
            'fitness_history': self.fitness_history,
            'elapsed_seconds': self.elapsed_seconds,
            'skipped': self.skipped,
            'model': None if self.best_model is None else self.best_model.to_dict(),
            'models': [m.to_dict() for m in self.models],
        }


class NCATrainer:
    """
    Trainer evolving automaton parameters with sparse CMA-ES.

    Each task trains `num_models` automata, each from its own optimizer
    seed. One generation samples a population, evaluates it on every train
    example and updates the search distribution; generations run until the
    evaluation budget of that model is spent. Test inputs are answered by a
    majority vote over the models that solve the train examples.
    """

    def __init__(
        self,
        config: Optional[TrainConfig] = None,
        evaluator: Optional[PopulationEvaluator] = None,
        logger: Optional[logging.Logger] = None
    ):
        """
        Initialize trainer.

        Args:
            config: Training configuration
            evaluator: Population evaluator, built from config when omitted
            logger: Logger, a named one is set up when omitted
        """
        self.config = config or TrainConfig()
        validate_config(self.config)

        self.layout = ChannelLayout(hidden=self.config.hidden_channels)
        self.policy = UpdatePolicy.from_names(self.config.update_phases, self.config.update_combine)
        self.shape = ParameterShape(self.layout)
        self.evaluator = evaluator or build_evaluator(self.config, self.layout, self.policy)
        self.logger = logger or setup_logger("nca_trainer")
        self.rng = np.random.default_rng(self.config.seed)

        # Fail on bad optimizer settings before any task starts
        self._options(seed=None).validate(self.shape.n_params)

    def _options(self, seed: Optional[int]) -> SparseCMAESOptions:
        return SparseCMAESOptions(
            sigma0=self.config.initial_sigma,
            population_size=self.config.population_size,
            mu=self.config.mu,
            subset_size=self.config.subset_size,
            covariance_retention=self.config.covariance_retention,
            mirrored_sampling=self.config.mirrored_sampling,
            max_evaluations=self.config.max_evaluations,
            seed=seed
        )

    def _model(self, params: np.ndarray) -> AutomatonModel:
        return AutomatonModel(params, self.layout, self.policy, self.config.max_steps)

    def _evolve(self, task: Task, index: int, verbose: bool) -> SparseCMAES:
        """Run one optimizer from the zero vector until its budget is spent."""
        seed = int(self.rng.integers(2 ** 32))
        es = SparseCMAES(np.zeros(self.shape.n_params), self._options(seed))

        total = self.config.max_evaluations // self.config.population_size
        desc = f"Task {task.task_id}"
        if self.config.num_models > 1:
            desc += f" [{index + 1}/{self.config.num_models}]"
        pbar = tqdm(total=total, desc=desc, disable=not verbose)

        while not es.exhausted:
            population = es.ask()
            losses = self.evaluator.evaluate(population, task.train, self.config.max_steps)
            es.tell(losses)

            pbar.set_postfix({
                'best': f"{es.best_fitness:.3e}",
                'sigma': f"{es.sigma:.2e}"
            })
            pbar.update(1)

            if es.generation % 50 == 0:
                self.logger.debug(
                    f"task={task.task_id} model={index} gen={es.generation} evals={es.evaluations} "
                    f"best={es.best_fitness:.4e} mean={np.mean(losses):.4e} sigma={es.sigma:.3e}"
                )

        pbar.close()
        return es

    def train_task(self, task: Task, verbose: bool = False) -> TrainResult:
        """
        Train the configured number of automata for a task.

        Args:
            task: Task with train examples; test outputs, when present, are scored
            verbose: Whether to show progress

        Returns:
            TrainResult with models sorted by fitness, best first
        """
        if not preserves_grid_size(task):
            self.logger.info(f"Skipping task {task.task_id}: train examples change grid size")
            result = TrainResult(task.task_id, skipped=True)
            result.test_accuracies = self.score(result, task)
            return result

        start = time.time()
        models = []
        generations = evaluations = 0

        for index in range(self.config.num_models):
            es = self._evolve(task, index, verbose)
            model = self._model(es.best_params)
            accuracies = [
                pixel_accuracy(inference(model, ex.input), ex.output)
                for ex in task.train
            ]
            models.append(TrainedModel(model, es.best_fitness, accuracies, list(es.history)))
            generations += es.generation
            evaluations += es.evaluations

        # Stable sort keeps training order among equal fitness
        models.sort(key=lambda m: m.fitness)
        best = models[0]

        result = TrainResult(
            task_id=task.task_id,
            best_model=best.model,
            best_fitness=best.fitness,
            train_accuracies=best.train_accuracies,
            generations=generations,
            evaluations=evaluations,
            fitness_history=best.fitness_history,
            models=models
        )
        result.test_accuracies = self.score(result, task)
        result.elapsed_seconds = time.time() - start

        solved_models = sum(1 for m in models if m.solved)
        self.logger.info(
            f"Task {task.task_id}: best_fitness={result.best_fitness:.4e} "
            f"train_acc={result.mean_accuracy:.3f} solved_models={solved_models}/{len(models)} "
            f"generations={result.generations}"
        )
        if result.test_accuracies:
            self.logger.info(
                f"Task {task.task_id}: test_correct={result.test_correct}/{len(result.test_accuracies)}"
            )
        return result

    def train_tasks(self, tasks: List[Task], verbose: bool = False) -> Dict[str, TrainResult]:
        """Train every task and keep the best result per task id."""
        results: Dict[str, TrainResult] = {}
        for task in tqdm(tasks, desc="Tasks", disable=not verbose or len(tasks) < 2):
            result = self.train_task(task, verbose=verbose)
            previous = results.get(task.task_id)
            if previous is None or result.best_fitness < previous.best_fitness:
                results[task.task_id] = result
        return results

    def predict(self, result: TrainResult, task: Task) -> List[List[Grid]]:
        """
        Answer attempts for each test input.

        Every candidate model predicts each test input, remapping colors the
        train inputs never use; the predictions are then put to a majority
        vote keeping `num_attempts` answers.

        Returns:
            One list of attempts per test input, most voted first; empty
            lists for skipped tasks
        """
        candidates = result.candidates()
        if not candidates:
            return [[] for _ in task.test]

        rng = np.random.default_rng(self.config.seed)
        attempts = []
        for grid in task.test_inputs:
            predictions = [
                predict_remapped(m.model, grid, task.train_inputs, rng,
                                 self.config.max_color_permutations)
                for m in candidates
            ]
            attempts.append(vote(predictions, grid, self.config.num_attempts))
        return attempts

    def score(self, result: TrainResult, task: Task) -> List[float]:
        """
        Best-attempt pixel accuracy of every test example with a known output.

        Returns:
            Accuracies in test order; skipped tasks score 0 on each
        """
        if not any(ex.output is not None for ex in task.test):
            return []
        attempts = self.predict(result, task)
        return [
            best_attempt_accuracy(tries, ex.output)
            for ex, tries in zip(task.test, attempts)
            if ex.output is not None
        ]

    def cross_check(self, result: TrainResult, task: Task, device: Optional[str] = None) -> float:
        """
        Run the best model through both executors on the task's train inputs.

        Returns:
            Largest absolute difference between the two executors
        """
        if result.best_model is None:
            return 0.0
        substrates = [Substrate.from_grid(grid, self.layout) for grid in task.train_inputs]
        diff = compare_model(
            result.best_model, substrates,
            device=device or self.config.devices[0],
            weight_layout=self.config.weight_layout
        )
        self.logger.info(f"Task {task.task_id}: executor max_abs_diff={diff:.3e}")
        return diff
