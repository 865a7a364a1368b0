"""
Utilities Module
Configuration, logging and error types
"""

from .config import TrainConfig, apply_mode, load_config, save_config, validate_config
from .exceptions import (
    NCAError,
    ConfigurationError,
    GridShapeError,
    EvaluationError,
    ParityError
)
from .logger import setup_logger

__all__ = [
    'TrainConfig',
    'apply_mode',
    'load_config',
    'save_config',
    'validate_config',
    'NCAError',
    'ConfigurationError',
    'GridShapeError',
    'EvaluationError',
    'ParityError',
    'setup_logger'
]
