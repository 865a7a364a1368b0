"""
Test-time Prediction
Color remapping for unseen test colors and majority voting over trained models
"""

import itertools
import logging
import math
from collections import Counter
from typing import List, Sequence, Set, Tuple

import numpy as np

from ..cellular_automata.core import AutomatonModel
from ..cellular_automata.executor import inference
from ..cellular_automata.fitness import pixel_accuracy
from ..cellular_automata.substrate import NUM_COLORS, Grid

logger = logging.getLogger(__name__)

MAX_COLOR_PERMUTATIONS = 1000


def union_colors(grids: Sequence[Grid]) -> Set[int]:
    """Every color used by any of the grids."""
    colors: Set[int] = set()
    for grid in grids:
        colors |= grid.colors
    return colors


def remap_colors(grid: Grid, mapping: np.ndarray) -> Grid:
    """Grid with every color c replaced by mapping[c]."""
    return Grid(mapping[grid.data.astype(np.intp)])


def color_assignments(grid_colors: Sequence[int], train_colors: Sequence[int], limit: int,
                      rng: np.random.Generator) -> List[Tuple[int, ...]]:
    """
    Distinct ordered choices of train colors for the grid's colors.

    All k-permutations are returned when there are at most `limit` of them;
    otherwise `limit` distinct ones are drawn at random.
    """
    k = len(grid_colors)
    if math.perm(len(train_colors), k) <= limit:
        return list(itertools.permutations(train_colors, k))

    chosen = {}
    while len(chosen) < limit:
        candidate = tuple(int(c) for c in rng.permutation(train_colors)[:k])
        chosen.setdefault(candidate, None)
    return list(chosen)


def predict_remapped(
    model: AutomatonModel,
    grid: Grid,
    train_inputs: Sequence[Grid],
    rng: np.random.Generator,
    limit: int = MAX_COLOR_PERMUTATIONS
) -> Grid:
    """
    Predict a test input, remapping colors the train inputs never show.

    The nonzero colors of the grid are mapped onto nonzero train colors, the
    model runs on the remapped grid and the mapping is reverted on its
    output. Over up to `limit` mappings the most frequent non-empty
    prediction wins.

    Args:
        model: Trained automaton
        grid: Test input
        train_inputs: Inputs the model was trained on
        rng: Generator used when the mappings have to be sampled
        limit: Maximum number of mappings tried; 0 disables remapping

    Returns:
        Predicted grid. Inputs without unseen colors, or with more nonzero
        colors than the train inputs, are predicted directly.
    """
    seen = union_colors(train_inputs)
    if limit < 1 or grid.colors <= seen:
        return inference(model, grid)

    train_colors = sorted(c for c in seen if c != 0)
    grid_colors = sorted(c for c in grid.colors if c != 0)
    if len(grid_colors) > len(train_colors):
        return inference(model, grid)

    counts: Counter = Counter()
    for assignment in color_assignments(grid_colors, train_colors, limit, rng):
        forward = np.arange(NUM_COLORS)
        reverse = np.arange(NUM_COLORS)
        for source, target in zip(grid_colors, assignment):
            forward[source] = target
            reverse[target] = source

        prediction = remap_colors(inference(model, remap_colors(grid, forward)), reverse)
        # Blank outputs carry no vote
        if prediction.data.any():
            counts[prediction] += 1

    if not counts:
        return inference(model, grid)

    logger.debug(f"Color remapping: {len(counts)} distinct predictions for {grid}")
    return counts.most_common(1)[0][0]


def vote(predictions: Sequence[Grid], grid: Grid, num_attempts: int = 2) -> List[Grid]:
    """
    Majority vote over candidate predictions for one test input.

    Predictions equal to the input do not vote. Distinct predictions are
    ranked by count, the earlier one first on ties.

    Args:
        predictions: One prediction per trained model, best model first
        grid: The test input
        num_attempts: Number of answers to keep

    Returns:
        Up to `num_attempts` grids, most voted first. When every prediction
        equals the input the first `num_attempts` predictions are returned.
    """
    counts: Counter = Counter(prediction for prediction in predictions if prediction != grid)
    if not counts:
        return list(predictions[:num_attempts])
    return [prediction for prediction, _ in counts.most_common(num_attempts)]


def best_attempt_accuracy(attempts: Sequence[Grid], target: Grid) -> float:
    """Highest pixel accuracy of any attempt; 0 without attempts."""
    return max((pixel_accuracy(attempt, target) for attempt in attempts), default=0.0)
