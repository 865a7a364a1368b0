"""
Error Taxonomy
Exceptions raised by the automaton core
"""


class NCAError(Exception):
    """Base class for every error raised by this package."""


class ConfigurationError(NCAError, ValueError):
    """Invalid sizes, parameter lengths or optimizer settings."""


class GridShapeError(NCAError, ValueError):
    """A grid does not fit the shape the computation expects."""


class EvaluationError(NCAError, RuntimeError):
    """A device failed while evaluating a population."""


class ParityError(NCAError, AssertionError):
    """Sequential and parallel executors disagree beyond tolerance."""
