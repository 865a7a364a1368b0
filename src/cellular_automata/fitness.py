"""
Fitness Functions for Automaton Training
Pixel-wise loss against target grids plus weight regularization
"""

from typing import Sequence, Union

import numpy as np

from .core import AutomatonModel, ParameterShape
from .substrate import Grid, Substrate, encode_grid
from ..utils.exceptions import GridShapeError


def _weights_block(model_or_params: Union[AutomatonModel, np.ndarray],
                   shape: ParameterShape = None) -> np.ndarray:
    if isinstance(model_or_params, AutomatonModel):
        return model_or_params.params[:model_or_params.shape.n_weights]
    params = np.asarray(model_or_params, dtype=np.float64)
    if shape is None:
        return params
    return params[..., :shape.n_weights]


def pixel_loss(substrate: Substrate, target: Grid) -> float:
    """
    Mean squared error between the read-write band and the encoded target.

    Args:
        substrate: Executed substrate
        target: Expected output grid

    Returns:
        Loss in [0, 1]
    """
    if substrate.shape != target.shape:
        raise GridShapeError(f"Prediction shape {substrate.shape} != target shape {target.shape}")

    diff = substrate.readwrite - encode_grid(target)
    return float(np.mean(diff ** 2))


def weight_penalty(
    model_or_params: Union[AutomatonModel, np.ndarray],
    l1_coeff: float = 0.0,
    l2_coeff: float = 1e-4,
    shape: ParameterShape = None
) -> Union[float, np.ndarray]:
    """
    Regularization on the weights block.

    A 2-D array of flat parameter vectors gives one penalty per row.

    Args:
        model_or_params: Model, flat vector or (P, n_params) array
        l1_coeff: Coefficient of the mean absolute weight
        l2_coeff: Coefficient of the mean squared weight
        shape: Parameter offsets, needed to drop biases from raw vectors

    Returns:
        Penalty value(s)
    """
    weights = _weights_block(model_or_params, shape)
    penalty = (l2_coeff * np.mean(weights ** 2, axis=-1)
               + l1_coeff * np.mean(np.abs(weights), axis=-1))
    if np.ndim(penalty) == 0:
        return float(penalty)
    return penalty


def example_loss(substrate: Substrate, target: Grid, model: AutomatonModel,
                 l1_coeff: float = 0.0, l2_coeff: float = 1e-4) -> float:
    """Loss of one executed example."""
    return pixel_loss(substrate, target) + weight_penalty(model, l1_coeff, l2_coeff)


def task_loss(substrates: Sequence[Substrate], targets: Sequence[Grid], model: AutomatonModel,
              l1_coeff: float = 0.0, l2_coeff: float = 1e-4) -> float:
    """
    Average loss over the examples of a task.

    Args:
        substrates: Executed substrates, one per example
        targets: Target grids in the same order
        model: Model that produced the substrates

    Returns:
        Scalar loss to minimize
    """
    if len(substrates) != len(targets) or not targets:
        raise GridShapeError("Each example needs exactly one executed substrate")

    errors = [pixel_loss(s, t) for s, t in zip(substrates, targets)]
    return float(np.mean(errors)) + weight_penalty(model, l1_coeff, l2_coeff)


def pixel_accuracy(prediction: Grid, target: Grid) -> float:
    """
    Fraction of matching cells.

    Returns:
        Accuracy in [0, 1]; 0 when shapes differ
    """
    if prediction.shape != target.shape:
        return 0.0
    return float(np.mean(prediction.data == target.data))


def solved(predictions: Sequence[Grid], targets: Sequence[Grid]) -> bool:
    """True when every prediction matches its target exactly."""
    return len(predictions) == len(targets) and all(p == t for p, t in zip(predictions, targets))
