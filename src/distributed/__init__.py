"""
Parallel batched execution of automaton populations.

A batch executor runs every (member, example) pair of a generation in one
torch launch per step; the coordinator spreads a population over several
devices and merges the results in population order.
"""

from .batch_executor import ParallelBatchExecutor
from .coordinator import DeviceCoordinator, partition_population

__all__ = [
    'ParallelBatchExecutor',
    'DeviceCoordinator',
    'partition_population'
]
