"""
Per-tile image sampling for montage dewarp registration.

Each montage tile is copied into a float32 `TileImage` placed in montage
pixel coordinates. The sampled window is clipped to the nominal tile size
of the montage; in montages wider (taller) than two tiles the first column
(row) is anchored to its trailing edge so it still exposes overlap toward
its only interior neighbor.
"""

from dataclasses import dataclass
from types import MappingProxyType
from typing import Mapping, Tuple

import numpy as np
from numba import njit

from montage_dewarp.dataio.montage import GridMontage
from montage_dewarp.parallel import make_task_pool

# (column, row)
GridKey = Tuple[int, int]


@dataclass(frozen=True)
class RegionBounds:
    """
    Half-open rectangle [left, right) x [top, bottom) in montage pixels.
    """

    top: int
    bottom: int
    left: int
    right: int

    def __post_init__(self):
        if self.bottom < self.top or self.right < self.left:
            raise ValueError(f"Inverted region bounds: {self}")

    @classmethod
    def from_origin_size(cls, origin: Tuple[int, int], size: Tuple[int, int]) -> "RegionBounds":
        """Build bounds from an (x, y) origin and a (width, height) size."""
        return cls(
            top=origin[1],
            bottom=origin[1] + size[1],
            left=origin[0],
            right=origin[0] + size[0],
        )

    @property
    def width(self) -> int:
        return self.right - self.left

    @property
    def height(self) -> int:
        return self.bottom - self.top

    @property
    def is_empty(self) -> bool:
        return self.width == 0 or self.height == 0

    def contains(self, x: int, y: int) -> bool:
        return self.left <= x < self.right and self.top <= y < self.bottom


@dataclass(frozen=True)
class TileImage:
    """
    Read-only tile pixels positioned in montage coordinates.

    Parameters
    ----------
    data : (height, width) float32
        Tile pixels.
    origin : tuple of int
        (x, y) montage coordinate of `data[0, 0]`.
    """

    data: np.ndarray
    origin: Tuple[int, int]

    @property
    def size(self) -> Tuple[int, int]:
        """(width, height) in pixels."""
        return int(self.data.shape[1]), int(self.data.shape[0])

    @property
    def bounds(self) -> RegionBounds:
        return RegionBounds.from_origin_size(self.origin, self.size)


@njit(nogil=True)
def _copy_window(
    src: np.ndarray,
    out: np.ndarray,
    y_off: int,
    x_off: int,
) -> None:
    """
    Copy src[y_off:y_off+H, x_off:x_off+W] into out as float32.

    Parameters
    ----------
    src : (Y, X) array
        Backing intensity array.
    out : float32[H, W]
        Pre-allocated tile buffer.
    y_off, x_off : int
        Window offset inside `src`.
    """
    H, W = out.shape
    for y in range(H):
        for x in range(W):
            out[y, x] = np.float32(src[y_off + y, x_off + x])


def nominal_tile_extent(montage: GridMontage) -> Tuple[int, int]:
    """
    Nominal (width, height) used for every tile of the montage.

    The width is taken from the second column of the first row when the
    montage has more than two columns, otherwise from the first column.
    The height follows the same rule along the first column.
    """
    col = 1 if montage.column_count > 2 else 0
    row = 1 if montage.row_count > 2 else 0
    width = montage.get_tile(montage.get_tile_index(0, col)).dims[0]
    height = montage.get_tile(montage.get_tile_index(row, 0)).dims[1]
    return width, height


def sample_tile(
    montage: GridMontage,
    row: int,
    column: int,
    array_name: str,
    nominal_extent: Tuple[int, int],
) -> TileImage:
    """
    Build the `TileImage` for one grid tile.

    Parameters
    ----------
    montage : GridMontage
        Source montage.
    row, column : int
        Grid position of the tile.
    array_name : str
        Intensity array to sample. Only component 0 of multi-component
        arrays is used.
    nominal_extent : tuple of int
        Nominal (width, height) from `nominal_tile_extent`.

    Returns
    -------
    image : TileImage
        Window of size min(tile, nominal) per axis.
    """
    index = montage.get_tile_index(row, column)
    tile = montage.get_tile(index)
    arr = montage.get_intensity_array(index, array_name)
    if arr.ndim == 3:
        arr = arr[..., 0]

    geom_w, geom_h = tile.dims
    # the copy kernel does no bounds checking
    if arr.shape[:2] != (geom_h, geom_w):
        raise ValueError(
            f"Array '{array_name}' of tile {index} has shape {arr.shape[:2]}, "
            f"tile is {(geom_h, geom_w)}."
        )
    x_origin = int(round(tile.origin[0] / tile.spacing[0]))
    y_origin = int(round(tile.origin[1] / tile.spacing[1]))

    tile_w = min(geom_w, int(nominal_extent[0]))
    tile_h = min(geom_h, int(nominal_extent[1]))

    # edge tiles keep the window on the side facing their neighbor
    y_off = 0
    x_off = 0
    if row == 0 and montage.row_count > 2:
        y_off = geom_h - tile_h
        y_origin += y_off
    if column == 0 and montage.column_count > 2:
        x_off = geom_w - tile_w
        x_origin += x_off

    out = np.zeros((tile_h, tile_w), dtype=np.float32)
    if tile_h > 0 and tile_w > 0:
        _copy_window(arr, out, y_off, x_off)
    out.flags.writeable = False
    return TileImage(data=out, origin=(x_origin, y_origin))


def build_image_grid(
    montage: GridMontage,
    array_name: str,
    nominal_extent: Tuple[int, int],
    pool=None,
) -> Mapping[GridKey, TileImage]:
    """
    Sample every tile of the montage in parallel.

    Parameters
    ----------
    montage : GridMontage
        Source montage.
    array_name : str
        Intensity array to sample.
    nominal_extent : tuple of int
        Nominal (width, height) tile size.
    pool : task pool, optional
        Pool from `montage_dewarp.parallel`; a serial pool if omitted.

    Returns
    -------
    grid : read-only mapping of (column, row) to TileImage
    """
    pool = pool or make_task_pool(1)
    grid = {}
    lock = pool.make_lock()

    def sample(pos):
        row, column = pos
        image = sample_tile(montage, row, column, array_name, nominal_extent)
        with lock:
            grid[(column, row)] = image

    positions = [
        (r, c)
        for r in range(montage.row_count)
        for c in range(montage.column_count)
    ]
    pool.run_all(sample, positions)
    return MappingProxyType(grid)
