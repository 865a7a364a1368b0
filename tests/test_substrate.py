"""
Tests for Grid Substrate
"""

import pytest
import numpy as np
from src.cellular_automata.substrate import (
    Grid,
    ChannelLayout,
    Substrate,
    COLOR_ENCODING,
    encode_grid,
    decode_colors,
    substrates_from_grids
)
from src.utils.exceptions import ConfigurationError, GridShapeError


def test_grid_initialization():
    """Test grid construction from nested lists."""
    grid = Grid([[0, 1, 2], [3, 4, 5]])

    assert grid.shape == (2, 3)
    assert grid.height == 2
    assert grid.width == 3
    assert grid.colors == {0, 1, 2, 3, 4, 5}
    assert grid.to_list() == [[0, 1, 2], [3, 4, 5]]


def test_grid_is_immutable():
    """Test that grid data cannot be written."""
    grid = Grid([[1, 2], [3, 4]])

    with pytest.raises(ValueError):
        grid.data[0, 0] = 5


@pytest.mark.parametrize("rows", [
    [],
    [[]],
    [[1, 2], [3]],
    [[0] * 31],
    [[0]] * 31,
    [[10]],
    [[-1]],
    [[1.5, 2]],
    [["a"]],
])
def test_grid_rejects_invalid(rows):
    """Test grid validation of shape and palette."""
    with pytest.raises(GridShapeError):
        Grid(rows)


def test_grid_rejects_fractional_arrays():
    """Test that non-integer colors are rejected instead of truncated."""
    with pytest.raises(GridShapeError):
        Grid(np.array([[2.9, 0.5]]))
    with pytest.raises(GridShapeError):
        Grid(np.array([[np.nan]]))

    assert Grid(np.array([[2.0, 0.0]])) == Grid([[2, 0]])


def test_grid_equality():
    """Test value equality and hashing."""
    a = Grid([[1, 2], [3, 4]])
    b = Grid(np.array([[1, 2], [3, 4]]))
    c = Grid([[1, 2], [3, 5]])

    assert a == b
    assert hash(a) == hash(b)
    assert a != c


def test_color_code_decodes_every_color():
    """Test that every palette color survives encoding and decoding."""
    grid = Grid([list(range(10))])

    assert decode_colors(encode_grid(grid)) == grid


def test_decode_binarises_values():
    """Test decoding of non-binary channel values."""
    values = np.array([[[0.9, 0.1, 0.7, 0.2], [0.4, 0.4, 0.4, 0.4]]])

    decoded = decode_colors(values)

    assert decoded.to_list() == [[5, 0]]


def test_channel_layout_bands():
    """Test channel band offsets."""
    layout = ChannelLayout(visible=4, hidden=2)

    assert layout.input_channels == 10
    assert layout.output_channels == 6
    assert layout.readonly == slice(0, 4)
    assert layout.readwrite == slice(4, 8)
    assert layout.hidden_band == slice(8, 10)
    assert layout.writable == slice(4, 10)


def test_channel_layout_validation():
    """Test invalid channel counts."""
    with pytest.raises(ConfigurationError):
        ChannelLayout(visible=0)
    with pytest.raises(ConfigurationError):
        ChannelLayout(hidden=-1)


def test_substrate_from_grid():
    """Test seeding the read-only band from a grid."""
    layout = ChannelLayout(hidden=3)
    grid = Grid([[1, 5], [9, 0]])

    substrate = Substrate.from_grid(grid, layout)

    assert substrate.data.shape == (2, 2, 11)
    assert np.array_equal(substrate.readonly, COLOR_ENCODING[grid.data])
    assert np.all(substrate.readwrite == 0.0)
    assert np.all(substrate.hidden_state == 0.0)


def test_substrate_from_grid_requires_color_channels():
    """Test that grid seeding needs one visible channel per color bit."""
    with pytest.raises(ConfigurationError):
        Substrate.from_grid(Grid([[1]]), ChannelLayout(visible=3))


def test_substrate_rejects_bad_shape():
    """Test substrate validation."""
    layout = ChannelLayout()

    with pytest.raises(GridShapeError):
        Substrate(np.zeros((3, 3, 5)), layout)
    with pytest.raises(GridShapeError):
        Substrate(np.zeros((31, 2, layout.input_channels)), layout)


def test_substrate_reset_and_copy():
    """Test reset keeps the input band and copy is independent."""
    layout = ChannelLayout()
    substrate = Substrate.from_grid(Grid([[3, 4]]), layout)
    substrate.data[:, :, layout.writable] = 0.7

    clone = substrate.copy()
    substrate.reset()

    assert np.all(substrate.data[:, :, layout.writable] == 0.0)
    assert np.array_equal(substrate.readonly, clone.readonly)
    assert np.all(clone.data[:, :, layout.writable] == 0.7)


def test_substrate_to_grid_reads_readwrite_band():
    """Test decoding of the read-write band."""
    layout = ChannelLayout(hidden=0)
    substrate = Substrate.from_grid(Grid([[2, 2]]), layout)
    substrate.data[:, :, layout.readwrite] = COLOR_ENCODING[7]

    assert substrate.to_grid() == Grid([[7, 7]])


def test_substrates_from_grids():
    """Test batch seeding."""
    grids = [Grid([[1]]), Grid([[1, 2], [3, 4]])]

    substrates = substrates_from_grids(grids, ChannelLayout())

    assert [s.shape for s in substrates] == [(1, 1), (2, 2)]


if __name__ == "__main__":
    pytest.main([__file__])
