"""
Cellular Automata Module
Neural automaton model, reference executor, losses and sparse CMA-ES
"""

from .substrate import Grid, ChannelLayout, Substrate, encode_grid, decode_colors
from .core import AutomatonModel, UpdatePolicy, UpdatePhases, UpdateCombine, ParameterShape
from .executor import SequentialExecutor, inference
from .evolution import SparseCMAES, SparseCMAESOptions, OptimizerState
from .fitness import (
    pixel_loss,
    weight_penalty,
    task_loss,
    pixel_accuracy
)

__all__ = [
    'Grid',
    'ChannelLayout',
    'Substrate',
    'encode_grid',
    'decode_colors',
    'AutomatonModel',
    'UpdatePolicy',
    'UpdatePhases',
    'UpdateCombine',
    'ParameterShape',
    'SequentialExecutor',
    'inference',
    'SparseCMAES',
    'SparseCMAESOptions',
    'OptimizerState',
    'pixel_loss',
    'weight_penalty',
    'task_loss',
    'pixel_accuracy'
]
