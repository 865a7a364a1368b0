"""
Population Evaluators
Executor-agnostic loss evaluation of a whole population
"""

from abc import ABC, abstractmethod
from typing import List, Optional, Sequence

import numpy as np

from ..cellular_automata.core import AutomatonModel, ParameterShape, UpdatePolicy
from ..cellular_automata.executor import SequentialExecutor
from ..cellular_automata.fitness import pixel_loss, weight_penalty
from ..cellular_automata.substrate import ChannelLayout, Substrate
from ..distributed.coordinator import DeviceCoordinator
from ..utils.config import TrainConfig
from ..utils.exceptions import EvaluationError, GridShapeError
from .tasks import Example


def _check_examples(examples: Sequence[Example]):
    if not examples:
        raise GridShapeError("At least one example is required")
    for ex in examples:
        if ex.output is None or ex.input.shape != ex.output.shape:
            raise GridShapeError(
                f"Example input {ex.input.shape} and output "
                f"{None if ex.output is None else ex.output.shape} must share a shape"
            )


class PopulationEvaluator(ABC):
    """
    Maps (population, examples, steps) to one loss per member.

    Subclasses differ only in which executor runs the automata.
    """

    def __init__(self, layout: ChannelLayout, policy: UpdatePolicy,
                 l1_coeff: float = 0.0, l2_coeff: float = 1e-4):
        self.layout = layout
        self.policy = policy
        self.shape = ParameterShape(layout)
        self.l1_coeff = l1_coeff
        self.l2_coeff = l2_coeff

    @abstractmethod
    def pixel_losses(self, population: np.ndarray, substrates: List[Substrate],
                     examples: Sequence[Example], steps: int) -> np.ndarray:
        """Pixel loss of every (member, example) pair, shape (P, E)."""

    def evaluate(self, population: np.ndarray, examples: Sequence[Example], steps: int) -> np.ndarray:
        """
        Loss of every member, averaged over examples, plus regularization.

        Args:
            population: Array of shape (P, n_params)
            examples: Task examples with targets
            steps: Update steps per execution

        Returns:
            Array of shape (P,)
        """
        _check_examples(examples)
        population = np.atleast_2d(np.asarray(population, dtype=np.float64))
        substrates = [Substrate.from_grid(ex.input, self.layout) for ex in examples]

        errors = self.pixel_losses(population, substrates, examples, steps)
        losses = errors.mean(axis=1) + weight_penalty(
            population, self.l1_coeff, self.l2_coeff, self.shape
        )
        if not np.all(np.isfinite(losses)):
            raise EvaluationError("Non-finite loss in evaluated population")
        return losses


class SequentialEvaluator(PopulationEvaluator):
    """Evaluates members one after another on the reference executor."""

    def pixel_losses(self, population, substrates, examples, steps):
        errors = np.zeros((population.shape[0], len(examples)))
        for p, params in enumerate(population):
            executor = SequentialExecutor(AutomatonModel(params, self.layout, self.policy, steps))
            for e, (substrate, example) in enumerate(zip(substrates, examples)):
                errors[p, e] = pixel_loss(executor.run(substrate), example.output)
        return errors


class ParallelEvaluator(PopulationEvaluator):
    """Evaluates the population in batches spread over one or more devices."""

    def __init__(self, coordinator: DeviceCoordinator,
                 l1_coeff: float = 0.0, l2_coeff: float = 1e-4):
        super().__init__(coordinator.layout, coordinator.policy, l1_coeff, l2_coeff)
        self.coordinator = coordinator

    def pixel_losses(self, population, substrates, examples, steps):
        targets = [ex.output for ex in examples]
        return self.coordinator.pixel_losses(population, substrates, targets, steps)


def build_evaluator(config: TrainConfig, layout: ChannelLayout, policy: UpdatePolicy,
                    dtype: Optional[str] = "float64") -> PopulationEvaluator:
    """Pick the evaluator named by config.backend."""
    if config.backend == "parallel":
        coordinator = DeviceCoordinator(config.devices, layout, policy, config.weight_layout, dtype)
        return ParallelEvaluator(coordinator, config.l1_coeff, config.l2_coeff)
    return SequentialEvaluator(layout, policy, config.l1_coeff, config.l2_coeff)
