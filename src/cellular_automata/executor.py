"""
Sequential Executor
Reference single-path execution of one automaton over one substrate
"""

from typing import List, Optional

from .core import AutomatonModel
from .substrate import Grid, Substrate
from ..utils.exceptions import GridShapeError


class SequentialExecutor:
    """
    Runs one model over one substrate for a fixed number of steps.

    This is the ground truth the parallel executor is checked against.
    """

    def __init__(self, model: AutomatonModel):
        self.model = model

    def _check(self, substrate: Substrate):
        if substrate.layout != self.model.layout:
            raise GridShapeError(
                f"Substrate layout {substrate.layout} does not match model layout {self.model.layout}"
            )

    def step(self, substrate: Substrate) -> Substrate:
        """
        Execute one synchronous update.

        Args:
            substrate: Current state, left untouched

        Returns:
            New substrate state
        """
        self._check(substrate)
        return Substrate(self.model.update(substrate.data), substrate.layout)

    def run(self, substrate: Substrate, steps: Optional[int] = None) -> Substrate:
        """
        Run the automaton for multiple steps.

        Args:
            substrate: Initial state, left untouched
            steps: Number of steps (defaults to the model's max_steps)

        Returns:
            Final substrate state
        """
        self._check(substrate)
        steps = self.model.max_steps if steps is None else steps
        data = substrate.data.copy()
        for _ in range(steps):
            data = self.model.update(data)
        return Substrate(data, substrate.layout)

    def run_history(self, substrate: Substrate, steps: Optional[int] = None) -> List[Substrate]:
        """Run and return every state, initial state included."""
        self._check(substrate)
        steps = self.model.max_steps if steps is None else steps
        history = [substrate.copy()]
        for _ in range(steps):
            history.append(self.step(history[-1]))
        return history

    def run_grid(self, grid: Grid, steps: Optional[int] = None) -> Substrate:
        """Seed a substrate from a grid and run it."""
        return self.run(Substrate.from_grid(grid, self.model.layout), steps)


def inference(model: AutomatonModel, grid: Grid, steps: Optional[int] = None) -> Grid:
    """Predicted output grid for one input grid."""
    return SequentialExecutor(model).run_grid(grid, steps).to_grid()
