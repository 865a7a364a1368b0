"""
Parallel Batched Executor
Runs every (population member x task example) automaton instance at once on a torch device
"""

import logging
from typing import List, Sequence, Tuple, Union

import numpy as np
import torch

from ..cellular_automata.core import (
    ALIVE_THRESHOLD,
    NEIGHBORHOOD,
    ParameterShape,
    UpdatePhases,
    UpdatePolicy,
)
from ..cellular_automata.substrate import (
    MAX_GRID_CELLS,
    ChannelLayout,
    Grid,
    Substrate,
    encode_grid,
)
from ..utils.exceptions import ConfigurationError, EvaluationError, GridShapeError

logger = logging.getLogger(__name__)

WEIGHT_LAYOUTS = ("transposed", "channel_major")

_DTYPES = {
    "float32": torch.float32,
    "float64": torch.float64,
}


def resolve_dtype(dtype: Union[str, torch.dtype]) -> torch.dtype:
    if isinstance(dtype, torch.dtype):
        return dtype
    if dtype not in _DTYPES:
        raise ConfigurationError(f"Unsupported dtype: {dtype}")
    return _DTYPES[dtype]


def resolve_device(device: Union[str, torch.device]) -> torch.device:
    try:
        device = torch.device(device)
    except RuntimeError as e:
        raise ConfigurationError(f"Unknown device: {device}") from e
    if device.type == "cuda":
        if not torch.cuda.is_available():
            raise ConfigurationError(f"Device {device} requested but CUDA is not available")
        if device.index is not None and device.index >= torch.cuda.device_count():
            raise ConfigurationError(f"Device {device} does not exist")
    return device


class ParallelBatchExecutor:
    """
    Batched automaton execution on one device.

    A work unit is one (member, example) pair holding the example's whole
    lattice. All units of a launch advance in lock step: each step reads a
    frozen snapshot and publishes every write at once, so no unit observes a
    neighbor value from the step in progress.
    """

    def __init__(
        self,
        layout: ChannelLayout,
        policy: UpdatePolicy,
        device: Union[str, torch.device] = "cpu",
        weight_layout: str = "transposed",
        dtype: Union[str, torch.dtype] = torch.float64
    ):
        """
        Initialize executor.

        Args:
            layout: Channel layout shared by every instance
            policy: Update policy shared by every instance
            device: Torch device the batch runs on
            weight_layout: 'transposed' (neighbor, input, output) or
                'channel_major' (output, neighbor, input) staging
            dtype: Floating point type of the computation
        """
        if weight_layout not in WEIGHT_LAYOUTS:
            raise ConfigurationError(f"weight_layout must be one of {WEIGHT_LAYOUTS}")

        self.layout = layout
        self.policy = policy
        self.shape = ParameterShape(layout)
        self.device = resolve_device(device)
        self.weight_layout = weight_layout
        self.dtype = resolve_dtype(dtype)

    # Host-side staging

    def stage_parameters(self, params: np.ndarray) -> Tuple[torch.Tensor, torch.Tensor]:
        """
        Copy population parameters to the device.

        Args:
            params: Array of shape (population, n_params)

        Returns:
            (weights, biases); weights are (P, N, in, out) when transposed,
            (P, out, N, in) when channel-major
        """
        params = np.asarray(params, dtype=np.float64)
        if params.ndim != 2 or params.shape[1] != self.shape.n_params:
            raise ConfigurationError(
                f"Expected parameters of shape (P, {self.shape.n_params}); found {params.shape}"
            )
        if not np.all(np.isfinite(params)):
            raise ConfigurationError("Parameters must be finite")

        n_pop = params.shape[0]
        weights = params[:, :self.shape.n_weights].reshape((n_pop,) + self.shape.weights_shape)
        biases = params[:, self.shape.n_weights:]
        if self.weight_layout == "transposed":
            weights = weights.transpose(0, 2, 3, 1)

        weights_t = torch.as_tensor(np.ascontiguousarray(weights), dtype=self.dtype, device=self.device)
        biases_t = torch.as_tensor(np.ascontiguousarray(biases), dtype=self.dtype, device=self.device)
        return weights_t, biases_t

    def pack_substrates(self, substrates: Sequence[Substrate]) -> Tuple[torch.Tensor, torch.Tensor, torch.Tensor]:
        """
        Pack example lattices into one padded tensor.

        Returns:
            (state (E, H, W, C), cell mask (E, H, W), neighbor masks (N, E, H, W));
            neighbor_masks[n, e, y, x] is True when offset n of cell (y, x)
            lies inside example e's own grid
        """
        if not substrates:
            raise GridShapeError("At least one substrate is required")

        for s in substrates:
            if s.layout != self.layout:
                raise GridShapeError(f"Substrate layout {s.layout} does not match {self.layout}")
            if s.height * s.width > MAX_GRID_CELLS:
                raise GridShapeError(f"Grid {s.shape} exceeds {MAX_GRID_CELLS} cells")

        heights = np.array([s.height for s in substrates])
        widths = np.array([s.width for s in substrates])
        max_h, max_w = int(heights.max()), int(widths.max())

        packed = np.zeros((len(substrates), max_h, max_w, self.layout.input_channels))
        for e, s in enumerate(substrates):
            packed[e, :s.height, :s.width] = s.data

        ys = np.arange(max_h)[None, :, None]
        xs = np.arange(max_w)[None, None, :]
        h = heights[:, None, None]
        w = widths[:, None, None]
        cell_mask = (ys < h) & (xs < w)
        neighbor_masks = np.stack([
            cell_mask & (ys + dy >= 0) & (ys + dy < h) & (xs + dx >= 0) & (xs + dx < w)
            for dy, dx in NEIGHBORHOOD
        ])

        state = torch.as_tensor(packed, dtype=self.dtype, device=self.device)
        return (state,
                torch.as_tensor(cell_mask, device=self.device),
                torch.as_tensor(neighbor_masks, device=self.device))

    # Device-side update

    @staticmethod
    def _shift(state: torch.Tensor, dy: int, dx: int) -> torch.Tensor:
        """Neighbor values at offset (dy, dx); dims 2 and 3 are rows and columns."""
        height, width = state.shape[2], state.shape[3]
        out = torch.zeros_like(state)
        out[:, :, max(-dy, 0):height + min(-dy, 0), max(-dx, 0):width + min(-dx, 0)] = \
            state[:, :, max(dy, 0):height + min(dy, 0), max(dx, 0):width + min(dx, 0)]
        return out

    def _accumulate(self, state: torch.Tensor, weights: torch.Tensor, biases: torch.Tensor,
                    neighbor_masks: torch.Tensor, out_idx: slice, in_idx: slice) -> torch.Tensor:
        sources = state[..., in_idx]
        bias = biases[:, out_idx]
        out = bias[:, None, None, None, :].expand(sources.shape[:4] + (bias.shape[1],)).clone()

        for n, (dy, dx) in enumerate(NEIGHBORHOOD):
            neighbor = self._shift(sources, dy, dx)
            alive = (neighbor >= ALIVE_THRESHOLD) & neighbor_masks[n][None, :, :, :, None]
            neighbor = torch.where(alive, neighbor, torch.zeros_like(neighbor))

            if self.weight_layout == "transposed":
                w_n = weights[:, n, in_idx, out_idx]
                out = out + torch.einsum('pehwi,pio->pehwo', neighbor, w_n)
            else:
                w_n = weights[:, out_idx, n, in_idx]
                out = out + torch.einsum('pehwi,poi->pehwo', neighbor, w_n)
        return out

    def _combine(self, previous: torch.Tensor, out: torch.Tensor) -> torch.Tensor:
        if self.policy.accumulate:
            return torch.clamp(previous + out, 0.0, 1.0)
        return torch.clamp(out, 0.0, 1.0)

    def _step(self, state: torch.Tensor, weights: torch.Tensor, biases: torch.Tensor,
              cell_mask: torch.Tensor, neighbor_masks: torch.Tensor) -> torch.Tensor:
        layout = self.layout
        inside = cell_mask[None, :, :, :, None].to(state.dtype)

        if self.policy.phases is UpdatePhases.SINGLE:
            out = self._accumulate(state, weights, biases, neighbor_masks,
                                   slice(0, layout.output_channels), slice(0, layout.input_channels))
            next_state = state.clone()
            next_state[..., layout.writable] = self._combine(state[..., layout.writable], out) * inside
            return next_state

        next_state = state.clone()
        if layout.hidden:
            out = self._accumulate(state, weights, biases, neighbor_masks,
                                   slice(layout.visible, layout.output_channels),
                                   slice(0, layout.input_channels))
            next_state[..., layout.hidden_band] = self._combine(state[..., layout.hidden_band], out) * inside

        # Phase barrier: the visible half-step reads the published hidden band
        mid = next_state
        out = self._accumulate(mid, weights, biases, neighbor_masks,
                               slice(0, layout.visible), layout.writable)
        next_state = mid.clone()
        next_state[..., layout.readwrite] = self._combine(mid[..., layout.readwrite], out) * inside
        return next_state

    def _execute(self, params: np.ndarray, substrates: Sequence[Substrate],
                 steps: int) -> Tuple[torch.Tensor, torch.Tensor]:
        if steps < 0:
            raise ConfigurationError("steps must be >= 0")

        try:
            weights, biases = self.stage_parameters(params)
            state, cell_mask, neighbor_masks = self.pack_substrates(substrates)
        except (RuntimeError, MemoryError) as e:
            raise EvaluationError(f"Staging on {self.device} failed: {e}") from e

        logger.debug(
            f"Launching {weights.shape[0]}x{state.shape[0]} units of "
            f"{state.shape[1]}x{state.shape[2]} on {self.device} for {steps} steps"
        )

        try:
            with torch.no_grad():
                state = state.unsqueeze(0).expand((weights.shape[0],) + tuple(state.shape)).clone()
                for _ in range(steps):
                    state = self._step(state, weights, biases, cell_mask, neighbor_masks)
        except (RuntimeError, MemoryError) as e:
            raise EvaluationError(f"Batched execution failed on {self.device}: {e}") from e

        return state, cell_mask

    def run_tensor(self, params: np.ndarray, substrates: Sequence[Substrate], steps: int) -> torch.Tensor:
        """
        Execute all work units and keep the result on the device.

        Returns:
            Final state of shape (P, E, H, W, C), padded to the largest example
        """
        return self._execute(params, substrates, steps)[0]

    def run(self, params: np.ndarray, substrates: Sequence[Substrate], steps: int) -> List[List[Substrate]]:
        """
        Execute and unpack results.

        Args:
            params: Array of shape (population, n_params)
            substrates: Initial lattices, one per task example
            steps: Number of update steps

        Returns:
            Final substrates indexed [member][example]
        """
        state = self.run_tensor(params, substrates, steps)
        try:
            final = state.to("cpu", torch.float64).numpy()
        except (RuntimeError, MemoryError) as e:
            raise EvaluationError(f"Copy back from {self.device} failed: {e}") from e

        writable = self.layout.writable
        results = []
        for member in final:
            row = []
            for e, s in enumerate(substrates):
                data = s.data.copy()
                # The read-only band was never written, only writable bands come back
                data[:, :, writable] = member[e, :s.height, :s.width, writable]
                row.append(Substrate(data, self.layout))
            results.append(row)
        return results

    def pixel_losses(self, params: np.ndarray, substrates: Sequence[Substrate],
                     targets: Sequence[Grid], steps: int) -> np.ndarray:
        """
        Per-unit mean squared error of the read-write band.

        Returns:
            Array of shape (population, examples)
        """
        if len(targets) != len(substrates):
            raise GridShapeError("Each substrate needs exactly one target grid")
        for s, t in zip(substrates, targets):
            if s.shape != t.shape:
                raise GridShapeError(f"Input shape {s.shape} != target shape {t.shape}")

        state, cell_mask = self._execute(params, substrates, steps)
        max_h, max_w = state.shape[2], state.shape[3]

        counts = np.array([t.height * t.width * self.layout.visible for t in targets], dtype=np.float64)

        try:
            packed = np.zeros((len(targets), max_h, max_w, self.layout.visible))
            for e, t in enumerate(targets):
                packed[e, :t.height, :t.width] = encode_grid(t)
            target_t = torch.as_tensor(packed, dtype=self.dtype, device=self.device)
            inside = cell_mask[None, :, :, :, None].to(self.dtype)
            diff = (state[..., self.layout.readwrite] - target_t[None]) * inside
            sq_sum = (diff ** 2).sum(dim=(2, 3, 4)).to("cpu", torch.float64).numpy()
        except (RuntimeError, MemoryError) as e:
            raise EvaluationError(f"Loss computation failed on {self.device}: {e}") from e

        return sq_sum / counts[None, :]
