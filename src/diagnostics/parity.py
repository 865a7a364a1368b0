"""
Parity Check
Cross-checks the parallel batched executor against the sequential reference
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, Optional, Sequence, Tuple, Any

import numpy as np

from ..cellular_automata.core import AutomatonModel, UpdatePolicy
from ..cellular_automata.executor import SequentialExecutor
from ..cellular_automata.substrate import ChannelLayout, Grid, Substrate
from ..distributed.batch_executor import ParallelBatchExecutor
from ..utils.exceptions import ParityError

logger = logging.getLogger(__name__)

DEFAULT_TOLERANCE = 1e-5
DEFAULT_SHAPES = ((1, 1), (3, 3), (7, 12), (30, 30))


@dataclass
class ParityReport:
    """Outcome of a parity run."""
    passed: bool
    max_abs_diff: float
    tolerance: float
    cases: int
    worst_case: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'passed': self.passed,
            'max_abs_diff': self.max_abs_diff,
            'tolerance': self.tolerance,
            'cases': self.cases,
            'worst_case': self.worst_case,
        }


def compare_substrates(a: Substrate, b: Substrate) -> float:
    """Largest absolute difference over every cell and channel."""
    if a.data.shape != b.data.shape:
        return float('inf')
    return float(np.max(np.abs(a.data - b.data)))


def _compare(models: Sequence[AutomatonModel], substrates: Sequence[Substrate], steps: int,
             device: str, weight_layout: str, dtype: str) -> Tuple[float, Dict[str, Any], int]:
    layout, policy = models[0].layout, models[0].policy
    executor = ParallelBatchExecutor(layout, policy, device, weight_layout, dtype)
    params = np.stack([m.params for m in models])
    parallel = executor.run(params, substrates, steps)

    worst, worst_case, cases = -1.0, {}, 0
    for p, model in enumerate(models):
        reference = SequentialExecutor(model)
        for e, substrate in enumerate(substrates):
            diff = compare_substrates(reference.run(substrate, steps), parallel[p][e])
            cases += 1
            if diff > worst:
                worst = diff
                worst_case = {'member': p, 'example': e, 'shape': list(substrate.shape)}
    return worst, worst_case, cases


def compare_model(model: AutomatonModel, substrates: Sequence[Substrate], steps: Optional[int] = None,
                  device: str = "cpu", weight_layout: str = "transposed", dtype: str = "float64") -> float:
    """
    Max discrepancy between executors for one model over some substrates.

    Returns:
        Largest absolute difference after `steps` steps
    """
    steps = model.max_steps if steps is None else steps
    return _compare([model], substrates, steps, device, weight_layout, dtype)[0]


def check_parity(
    layout: Optional[ChannelLayout] = None,
    policy: Optional[UpdatePolicy] = None,
    grid_shapes: Sequence[Tuple[int, int]] = DEFAULT_SHAPES,
    population_size: int = 4,
    steps: int = 10,
    seed: int = 0,
    device: str = "cpu",
    weight_layout: str = "transposed",
    tolerance: float = DEFAULT_TOLERANCE,
    dtype: str = "float64",
    scale: float = 0.2
) -> ParityReport:
    """
    Run random models over random grids through both executors.

    All grids go through the parallel executor in one launch, so differently
    sized examples share a padded batch.

    Args:
        layout: Channel layout
        policy: Update policy
        grid_shapes: (height, width) of the random grids
        population_size: Number of random models
        steps: Update steps per run
        seed: Random seed for reproducibility
        device: Torch device of the parallel executor
        weight_layout: Parameter staging order
        tolerance: Largest accepted absolute difference
        dtype: Floating point type of the parallel executor
        scale: Standard deviation of the random parameters

    Returns:
        ParityReport
    """
    layout = layout or ChannelLayout()
    policy = policy or UpdatePolicy()
    rng = np.random.default_rng(seed)

    models = [AutomatonModel.random(rng, layout, policy, steps, scale) for _ in range(population_size)]
    substrates = [
        Substrate.from_grid(Grid(rng.integers(0, 10, size=shape)), layout)
        for shape in grid_shapes
    ]

    worst, worst_case, cases = _compare(models, substrates, steps, device, weight_layout, dtype)
    report = ParityReport(
        passed=bool(worst <= tolerance),
        max_abs_diff=worst,
        tolerance=tolerance,
        cases=cases,
        worst_case=worst_case
    )

    log = logger.info if report.passed else logger.error
    log(f"Parity {'passed' if report.passed else 'FAILED'}: max_abs_diff={worst:.3e} "
        f"over {cases} cases (tolerance={tolerance:.0e})")
    return report


def assert_parity(**kwargs) -> ParityReport:
    """check_parity() that raises ParityError on failure."""
    report = check_parity(**kwargs)
    if not report.passed:
        raise ParityError(
            f"Executors diverge: max_abs_diff={report.max_abs_diff:.3e} > {report.tolerance:.0e} "
            f"at {report.worst_case}"
        )
    return report
