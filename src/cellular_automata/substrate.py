"""
Grid Substrate
Puzzle grids, the color code and the channel lattice an automaton operates on
"""

from dataclasses import dataclass
from typing import Iterable, Sequence, Tuple, Union

import numpy as np

from ..utils.exceptions import ConfigurationError, GridShapeError

MAX_GRID_SIDE = 30
MAX_GRID_CELLS = MAX_GRID_SIDE * MAX_GRID_SIDE
NUM_COLORS = 10

# Binary code of the 10 palette colors
COLOR_ENCODING = np.array([
    [0., 0., 0., 0.],
    [1., 0., 0., 0.],
    [0., 1., 0., 0.],
    [0., 0., 1., 0.],
    [0., 0., 0., 1.],
    [1., 0., 1., 0.],
    [1., 0., 0., 1.],
    [0., 1., 1., 0.],
    [0., 1., 0., 1.],
    [0., 0., 1., 1.],
])

VISIBLE_CHANNELS = COLOR_ENCODING.shape[1]


class Grid:
    """
    Immutable puzzle grid of palette colors.

    Supports grids up to 30x30 with colors 0-9.
    """

    def __init__(self, data: Union[Sequence[Sequence[int]], np.ndarray]):
        if isinstance(data, np.ndarray):
            array = data
        else:
            rows = [list(row) for row in data]
            if not rows or any(len(row) != len(rows[0]) for row in rows):
                raise GridShapeError("Grid rows must be non-empty and of equal length")
            array = np.array(rows)

        if array.ndim != 2 or array.size == 0:
            raise GridShapeError(f"Grid must be a non-empty 2-D array, got shape {array.shape}")
        if array.shape[0] > MAX_GRID_SIDE or array.shape[1] > MAX_GRID_SIDE:
            raise GridShapeError(
                f"Grid {array.shape} exceeds the {MAX_GRID_SIDE}x{MAX_GRID_SIDE} maximum"
            )
        if array.dtype.kind not in "iuf" or (array.dtype.kind == "f" and not np.all(np.mod(array, 1) == 0)):
            raise GridShapeError(f"Grid colors must be integers, got dtype {array.dtype}")
        if array.min() < 0 or array.max() >= NUM_COLORS:
            raise GridShapeError(f"Grid colors must lie in [0, {NUM_COLORS})")

        self._data = array.astype(np.int8)
        self._data.setflags(write=False)

    @property
    def data(self) -> np.ndarray:
        return self._data

    @property
    def shape(self) -> Tuple[int, int]:
        return self._data.shape

    @property
    def height(self) -> int:
        return self._data.shape[0]

    @property
    def width(self) -> int:
        return self._data.shape[1]

    @property
    def colors(self) -> set:
        return set(int(v) for v in np.unique(self._data))

    def to_list(self) -> list:
        return self._data.tolist()

    def __getitem__(self, index):
        return self._data[index]

    def __eq__(self, other) -> bool:
        if not isinstance(other, Grid):
            return NotImplemented
        return self.shape == other.shape and bool(np.array_equal(self._data, other._data))

    def __hash__(self) -> int:
        return hash((self.shape, self._data.tobytes()))

    def __repr__(self) -> str:
        return f"Grid({self.height}x{self.width})"


def encode_grid(grid: Grid) -> np.ndarray:
    """Embed grid colors as a (height, width, VISIBLE_CHANNELS) array."""
    return COLOR_ENCODING[grid.data.astype(np.intp)]


def decode_colors(values: np.ndarray) -> Grid:
    """
    Decode visible channel values back into palette colors.

    Values are binarised at 0.5 and matched to the prototype with the
    largest dot product; the lowest color index wins ties.

    Args:
        values: Array of shape (height, width, VISIBLE_CHANNELS)

    Returns:
        Decoded grid
    """
    binary = (values > 0.5).astype(np.float64)
    scores = binary @ COLOR_ENCODING.T
    return Grid(np.argmax(scores, axis=-1))


@dataclass(frozen=True)
class ChannelLayout:
    """
    Channel bands of one substrate cell.

    [0, V) read-only visible, [V, 2V) read-write visible, [2V, 2V+H) hidden.
    """
    visible: int = VISIBLE_CHANNELS
    hidden: int = 2

    def __post_init__(self):
        if self.visible < 1:
            raise ConfigurationError("visible channel count must be >= 1")
        if self.hidden < 0:
            raise ConfigurationError("hidden channel count must be >= 0")

    @property
    def readonly(self) -> slice:
        return slice(0, self.visible)

    @property
    def readwrite(self) -> slice:
        return slice(self.visible, 2 * self.visible)

    @property
    def hidden_band(self) -> slice:
        return slice(2 * self.visible, 2 * self.visible + self.hidden)

    @property
    def writable(self) -> slice:
        """Read-write visible and hidden bands, contiguous."""
        return slice(self.visible, self.input_channels)

    @property
    def input_channels(self) -> int:
        return 2 * self.visible + self.hidden

    @property
    def output_channels(self) -> int:
        return self.visible + self.hidden


class Substrate:
    """
    Lattice of channel vectors for one puzzle example.

    The read-only band is seeded from the puzzle input and never written
    by an update.
    """

    def __init__(self, data: np.ndarray, layout: ChannelLayout):
        data = np.asarray(data, dtype=np.float64)
        if data.ndim != 3 or data.shape[2] != layout.input_channels:
            raise GridShapeError(
                f"Substrate data must have shape (H, W, {layout.input_channels}), got {data.shape}"
            )
        if not (1 <= data.shape[0] <= MAX_GRID_SIDE and 1 <= data.shape[1] <= MAX_GRID_SIDE):
            raise GridShapeError(f"Substrate extent {data.shape[:2]} is not supported")

        self.data = data
        self.layout = layout

    @classmethod
    def from_grid(cls, grid: Grid, layout: ChannelLayout) -> "Substrate":
        """Seed the read-only band from a grid; other bands start at zero."""
        if layout.visible != VISIBLE_CHANNELS:
            raise ConfigurationError(
                f"Grid seeding requires {VISIBLE_CHANNELS} visible channels, layout has {layout.visible}"
            )
        data = np.zeros((grid.height, grid.width, layout.input_channels))
        data[:, :, layout.readonly] = encode_grid(grid)
        return cls(data, layout)

    @property
    def height(self) -> int:
        return self.data.shape[0]

    @property
    def width(self) -> int:
        return self.data.shape[1]

    @property
    def shape(self) -> Tuple[int, int]:
        return self.data.shape[:2]

    @property
    def readonly(self) -> np.ndarray:
        return self.data[:, :, self.layout.readonly]

    @property
    def readwrite(self) -> np.ndarray:
        return self.data[:, :, self.layout.readwrite]

    @property
    def hidden_state(self) -> np.ndarray:
        return self.data[:, :, self.layout.hidden_band]

    def to_grid(self) -> Grid:
        """Decode the read-write visible band."""
        return decode_colors(self.readwrite)

    def copy(self) -> "Substrate":
        return Substrate(self.data.copy(), self.layout)

    def reset(self):
        """Zero the writable bands, keeping the seeded input."""
        self.data[:, :, self.layout.writable] = 0.0

    def __repr__(self) -> str:
        return f"Substrate({self.height}x{self.width}x{self.layout.input_channels})"


def substrates_from_grids(grids: Iterable[Grid], layout: ChannelLayout) -> list:
    """Seed one substrate per grid."""
    return [Substrate.from_grid(grid, layout) for grid in grids]
