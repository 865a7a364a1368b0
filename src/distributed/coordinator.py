"""
Multi-device coordinator.

Splits a population into contiguous ranges, runs each range on its own
device and merges the results back in population order.
"""

import logging
from concurrent.futures import ThreadPoolExecutor, wait
from typing import List, Sequence, Tuple, Union

import numpy as np
import torch

from .batch_executor import ParallelBatchExecutor
from ..cellular_automata.core import UpdatePolicy
from ..cellular_automata.substrate import ChannelLayout, Grid, Substrate
from ..utils.exceptions import ConfigurationError, EvaluationError, NCAError

logger = logging.getLogger(__name__)


def partition_population(population_size: int, num_parts: int) -> List[Tuple[int, int]]:
    """
    Split range(population_size) into contiguous, nearly equal ranges.

    Args:
        population_size: Number of members
        num_parts: Number of devices

    Returns:
        List of (start, stop) pairs; empty ranges are dropped
    """
    if num_parts < 1:
        raise ConfigurationError("num_parts must be >= 1")

    base, extra = divmod(population_size, num_parts)
    ranges = []
    start = 0
    for part in range(num_parts):
        stop = start + base + (1 if part < extra else 0)
        if stop > start:
            ranges.append((start, stop))
        start = stop
    return ranges


class DeviceCoordinator:
    """
    Coordinator that fans one generation out over several devices.

    Each device evaluates a disjoint sub-population independently; the
    host waits for every device before returning anything.
    """

    def __init__(
        self,
        devices: Sequence[Union[str, torch.device]],
        layout: ChannelLayout,
        policy: UpdatePolicy,
        weight_layout: str = "transposed",
        dtype: Union[str, torch.dtype] = torch.float64
    ):
        """
        Initialize coordinator.

        Args:
            devices: Torch devices to spread the population over
            layout: Channel layout shared by every instance
            policy: Update policy shared by every instance
            weight_layout: Parameter staging order
            dtype: Floating point type of the computation
        """
        if not devices:
            raise ConfigurationError("At least one device is required")

        self.executors = [
            ParallelBatchExecutor(layout, policy, device, weight_layout, dtype)
            for device in devices
        ]
        self.layout = layout
        self.policy = policy

        logger.info(f"Device coordinator ready on {[str(ex.device) for ex in self.executors]}")

    @property
    def num_devices(self) -> int:
        return len(self.executors)

    def _map(self, method: str, params: np.ndarray, *args) -> list:
        """Run `method` on every device's slice and return results in order."""
        params = np.asarray(params, dtype=np.float64)
        ranges = partition_population(params.shape[0], self.num_devices)

        if len(ranges) == 1:
            executor = self.executors[0]
            try:
                return [getattr(executor, method)(params, *args)]
            except NCAError:
                raise
            except Exception as error:
                raise self._device_failure(executor, ranges[0], error) from error

        with ThreadPoolExecutor(max_workers=len(ranges)) as pool:
            futures = [
                pool.submit(getattr(executor, method), params[start:stop], *args)
                for executor, (start, stop) in zip(self.executors, ranges)
            ]
            # Join at the generation boundary before inspecting any result
            wait(futures)

        results = []
        for executor, span, future in zip(self.executors, ranges, futures):
            error = future.exception()
            if error is not None:
                if isinstance(error, NCAError):
                    raise error
                raise self._device_failure(executor, span, error) from error
            results.append(future.result())
        return results

    @staticmethod
    def _device_failure(executor: ParallelBatchExecutor, span: Tuple[int, int],
                        error: BaseException) -> EvaluationError:
        start, stop = span
        return EvaluationError(f"Device {executor.device} failed on members [{start}, {stop}): {error}")

    def run(self, params: np.ndarray, substrates: Sequence[Substrate], steps: int) -> List[List[Substrate]]:
        """
        Execute the whole population.

        Returns:
            Final substrates indexed [member][example], in population order
        """
        merged = []
        for part in self._map("run", params, substrates, steps):
            merged.extend(part)
        return merged

    def pixel_losses(self, params: np.ndarray, substrates: Sequence[Substrate],
                     targets: Sequence[Grid], steps: int) -> np.ndarray:
        """
        Per-unit pixel losses of the whole population.

        Returns:
            Array of shape (population, examples)
        """
        return np.concatenate(self._map("pixel_losses", params, substrates, targets, steps), axis=0)
