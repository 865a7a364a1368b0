"""
Core Neural Cellular Automaton Implementation
Fixed von Neumann neighborhood, flat parameter vector and selectable update policy
"""

import json
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Dict, Any, Optional, Tuple

import numpy as np

from .substrate import ChannelLayout
from ..utils.exceptions import ConfigurationError

# (dy, dx) offsets: up, left, center, right, down
NEIGHBORHOOD: Tuple[Tuple[int, int], ...] = (
    (-1, 0),
    (0, -1), (0, 0), (0, 1),
    (1, 0),
)
NEIGHBORHOOD_SIZE = len(NEIGHBORHOOD)
NEIGHBORHOOD_CENTER = NEIGHBORHOOD_SIZE // 2

# Neighbor values below this threshold do not contribute
ALIVE_THRESHOLD = 0.5


class UpdatePhases(Enum):
    """How one step is split"""
    SINGLE = "single"  # every writable channel from every input channel
    TWO_PHASE = "two_phase"  # hidden first, then visible from rw + hidden


class UpdateCombine(Enum):
    """How the new activation meets the previous value"""
    REPLACE = "replace"
    ACCUMULATE = "accumulate"


@dataclass(frozen=True)
class UpdatePolicy:
    """Update policy tags, resolved once per model."""
    phases: UpdatePhases = UpdatePhases.SINGLE
    combine: UpdateCombine = UpdateCombine.REPLACE

    @classmethod
    def from_names(cls, phases: str, combine: str) -> "UpdatePolicy":
        try:
            return cls(UpdatePhases(phases), UpdateCombine(combine))
        except ValueError as e:
            raise ConfigurationError(f"Unknown update policy: {e}") from e

    @property
    def accumulate(self) -> bool:
        return self.combine is UpdateCombine.ACCUMULATE

    def to_dict(self) -> Dict[str, str]:
        return {'phases': self.phases.value, 'combine': self.combine.value}


@dataclass(frozen=True)
class ParameterShape:
    """
    Offsets of the flat parameter vector.

    Weights come first, channel-major (output, neighbor, input), then one
    bias per output channel.
    """
    layout: ChannelLayout

    @property
    def weights_shape(self) -> Tuple[int, int, int]:
        return (self.layout.output_channels, NEIGHBORHOOD_SIZE, self.layout.input_channels)

    @property
    def n_weights(self) -> int:
        out_chs, nhbd, in_chs = self.weights_shape
        return out_chs * nhbd * in_chs

    @property
    def n_biases(self) -> int:
        return self.layout.output_channels

    @property
    def n_params(self) -> int:
        return self.n_weights + self.n_biases

    def split(self, params: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
        """Channel-major weight view and bias view of a flat vector."""
        weights = params[:self.n_weights].reshape(self.weights_shape)
        biases = params[self.n_weights:]
        return weights, biases


def _shifted(values: np.ndarray, dy: int, dx: int) -> np.ndarray:
    """
    Neighbor values at offset (dy, dx) for every cell.

    Cells whose neighbor falls outside the grid receive zeros, which the
    alive mask drops.
    """
    height, width = values.shape[:2]
    out = np.zeros_like(values)
    src_y = slice(max(dy, 0), height + min(dy, 0))
    src_x = slice(max(dx, 0), width + min(dx, 0))
    dst_y = slice(max(-dy, 0), height + min(-dy, 0))
    dst_x = slice(max(-dx, 0), width + min(-dx, 0))
    out[dst_y, dst_x] = values[src_y, src_x]
    return out


def _alive(values: np.ndarray) -> np.ndarray:
    return np.where(values >= ALIVE_THRESHOLD, values, 0.0)


def _accumulate(data: np.ndarray, weights: np.ndarray, biases: np.ndarray,
                out_idx: slice, in_idx: slice) -> np.ndarray:
    """Biased, alive-masked neighborhood sum for the given channel ranges."""
    sources = data[:, :, in_idx]
    out = np.broadcast_to(biases[out_idx], data.shape[:2] + (len(biases[out_idx]),)).copy()
    for n, (dy, dx) in enumerate(NEIGHBORHOOD):
        neighbor = _alive(_shifted(sources, dy, dx))
        out += neighbor @ weights[out_idx, n, in_idx].T
    return out


def _combine(previous: np.ndarray, out: np.ndarray, accumulate: bool) -> np.ndarray:
    if accumulate:
        return np.clip(previous + out, 0.0, 1.0)
    return np.clip(out, 0.0, 1.0)


def update_single(data: np.ndarray, weights: np.ndarray, biases: np.ndarray,
                  layout: ChannelLayout, accumulate: bool) -> np.ndarray:
    """One synchronous step writing read-write and hidden bands together."""
    out = _accumulate(data, weights, biases, slice(0, layout.output_channels),
                      slice(0, layout.input_channels))
    next_data = data.copy()
    next_data[:, :, layout.writable] = _combine(data[:, :, layout.writable], out, accumulate)
    return next_data


def update_two_phase(data: np.ndarray, weights: np.ndarray, biases: np.ndarray,
                     layout: ChannelLayout, accumulate: bool) -> np.ndarray:
    """Hidden band from all channels, then read-write band from rw + hidden."""
    vis = layout.visible
    hidden_out = slice(vis, layout.output_channels)

    next_data = data.copy()
    if layout.hidden:
        out = _accumulate(data, weights, biases, hidden_out, slice(0, layout.input_channels))
        next_data[:, :, layout.hidden_band] = _combine(data[:, :, layout.hidden_band], out, accumulate)

    # Phase boundary: the visible update reads the new hidden band
    mid = next_data
    out = _accumulate(mid, weights, biases, slice(0, vis), layout.writable)
    next_data = mid.copy()
    next_data[:, :, layout.readwrite] = _combine(mid[:, :, layout.readwrite], out, accumulate)
    return next_data


_UPDATE_FUNCTIONS = {
    UpdatePhases.SINGLE: update_single,
    UpdatePhases.TWO_PHASE: update_two_phase,
}


class AutomatonModel:
    """
    Local update rule of a neural cellular automaton.

    The rule is a neighborhood-weighted linear map plus bias, followed by a
    clamp to [0, 1]. Parameters are one flat vector; see ParameterShape.
    """

    def __init__(
        self,
        params: np.ndarray,
        layout: Optional[ChannelLayout] = None,
        policy: Optional[UpdatePolicy] = None,
        max_steps: int = 40
    ):
        """
        Initialize model.

        Args:
            params: Flat vector of weights followed by biases
            layout: Channel layout of the substrate
            policy: Update policy
            max_steps: Number of steps one execution runs
        """
        self.layout = layout or ChannelLayout()
        self.policy = policy or UpdatePolicy()
        self.shape = ParameterShape(self.layout)

        params = np.asarray(params, dtype=np.float64)
        if params.ndim != 1 or params.size != self.shape.n_params:
            raise ConfigurationError(
                f"Expected {self.shape.n_params} parameters; found {params.size}"
            )
        if not np.all(np.isfinite(params)):
            raise ConfigurationError("Parameters must be finite")
        if max_steps < 0:
            raise ConfigurationError("max_steps must be >= 0")

        self.params = params.copy()
        self.params.setflags(write=False)
        self.max_steps = max_steps
        self._update = _UPDATE_FUNCTIONS[self.policy.phases]

    @classmethod
    def zeros(cls, layout: Optional[ChannelLayout] = None, policy: Optional[UpdatePolicy] = None,
              max_steps: int = 40) -> "AutomatonModel":
        layout = layout or ChannelLayout()
        return cls(np.zeros(ParameterShape(layout).n_params), layout, policy, max_steps)

    @classmethod
    def random(cls, rng: np.random.Generator, layout: Optional[ChannelLayout] = None,
               policy: Optional[UpdatePolicy] = None, max_steps: int = 40,
               scale: float = 0.2) -> "AutomatonModel":
        """Small normally distributed weights and biases."""
        layout = layout or ChannelLayout()
        params = rng.normal(0.0, scale, size=ParameterShape(layout).n_params)
        return cls(params, layout, policy, max_steps)

    @classmethod
    def identity(cls, layout: Optional[ChannelLayout] = None, policy: Optional[UpdatePolicy] = None,
                 max_steps: int = 1) -> "AutomatonModel":
        """
        Rule copying each read-only channel into its read-write twin.

        Only meaningful for single-phase policies, since the two-phase
        visible update never reads the read-only band.
        """
        layout = layout or ChannelLayout()
        shape = ParameterShape(layout)
        weights = np.zeros(shape.weights_shape)
        for ch in range(layout.visible):
            weights[ch, NEIGHBORHOOD_CENTER, ch] = 1.0
        params = np.concatenate([weights.ravel(), np.zeros(shape.n_biases)])
        return cls(params, layout, policy, max_steps)

    @property
    def weights(self) -> np.ndarray:
        """Channel-major (output, neighbor, input) weights."""
        return self.shape.split(self.params)[0]

    @property
    def biases(self) -> np.ndarray:
        return self.shape.split(self.params)[1]

    def weights_transposed(self) -> np.ndarray:
        """Weights reordered as (neighbor, input, output)."""
        return np.ascontiguousarray(self.weights.transpose(1, 2, 0))

    def update(self, data: np.ndarray) -> np.ndarray:
        """Return the next lattice state for a (H, W, C) array."""
        weights, biases = self.shape.split(self.params)
        return self._update(data, weights, biases, self.layout, self.policy.accumulate)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'visible_channels': self.layout.visible,
            'hidden_channels': self.layout.hidden,
            'policy': self.policy.to_dict(),
            'max_steps': self.max_steps,
            'weights': self.params[:self.shape.n_weights].tolist(),
            'biases': self.params[self.shape.n_weights:].tolist(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AutomatonModel":
        layout = ChannelLayout(data['visible_channels'], data['hidden_channels'])
        policy = UpdatePolicy.from_names(data['policy']['phases'], data['policy']['combine'])
        params = np.concatenate([
            np.asarray(data['weights'], dtype=np.float64),
            np.asarray(data['biases'], dtype=np.float64)
        ])
        return cls(params, layout, policy, data['max_steps'])

    def to_json(self) -> str:
        return json.dumps(self.to_dict())

    @classmethod
    def from_json(cls, text: str) -> "AutomatonModel":
        return cls.from_dict(json.loads(text))

    def save(self, filepath: str):
        """Save model parameters as JSON."""
        path = Path(filepath)
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, 'w') as f:
            json.dump(self.to_dict(), f, indent=2)

    @classmethod
    def load(cls, filepath: str) -> "AutomatonModel":
        """Load model parameters from JSON."""
        with open(filepath, 'r') as f:
            return cls.from_dict(json.load(f))

    def __repr__(self) -> str:
        return (f"AutomatonModel(params={self.shape.n_params}, "
                f"policy={self.policy.phases.value}/{self.policy.combine.value})")
