"""
Training Module
Task loading, population evaluation, the per-task training loop and test-time voting
"""

from .tasks import Example, Task, load_tasks, preserves_grid_size
from .evaluator import PopulationEvaluator, SequentialEvaluator, ParallelEvaluator, build_evaluator
from .voting import predict_remapped, vote
from .trainer import NCATrainer, TrainedModel, TrainResult

__all__ = [
    'Example',
    'Task',
    'load_tasks',
    'preserves_grid_size',
    'PopulationEvaluator',
    'SequentialEvaluator',
    'ParallelEvaluator',
    'build_evaluator',
    'predict_remapped',
    'vote',
    'NCATrainer',
    'TrainedModel',
    'TrainResult'
]
