"""
Overlap pairing and dewarp resampling between adjacent montage tiles.

Adjacent tiles (right and bottom neighbors only) form an `OverlapPair`
whose bounds are the strip both tiles cover. For a trial parameter vector
the strip is resampled twice: directly from the second (right/bottom) tile
and through the dewarp mapping from the first (left/top) tile. Pixels that
fall outside their source tile stay zero and pull the nearest edge of the
valid rectangle inward, so both images can be cropped to a region that
exists in both tiles.
"""

from dataclasses import dataclass
from typing import Dict, List, Mapping, Tuple

import numpy as np
from numba import njit

from montage_dewarp.imageprocessing.dewarp import DewarpModel
from montage_dewarp.imageprocessing.tilesampler import GridKey, RegionBounds, TileImage

RIGHT = "right"
BOTTOM = "bottom"


@dataclass(frozen=True)
class OverlapPair:
    """
    Two axis-adjacent tiles and the rectangle they share.

    Parameters
    ----------
    first : GridKey
        Left (or top) tile.
    second : GridKey
        Right (or bottom) tile.
    bounds : RegionBounds
        Shared rectangle in montage pixels.
    direction : str
        "right" or "bottom".
    """

    first: GridKey
    second: GridKey
    bounds: RegionBounds
    direction: str


@dataclass(frozen=True)
class ResampledOverlap:
    """
    Both resampled overlap images plus the rectangle valid in both.

    `first` and `second` span the full requested bounds; `valid` is the
    shrunk rectangle (montage pixels) they must be cropped to.
    """

    first: np.ndarray
    second: np.ndarray
    bounds: RegionBounds
    valid: RegionBounds

    def cropped(self) -> Tuple[np.ndarray, np.ndarray]:
        """
        Crop both images to the valid rectangle.

        Returns
        -------
        first, second : ndarray
            Views with identical shape, possibly empty.
        """
        y0 = self.valid.top - self.bounds.top
        y1 = self.valid.bottom - self.bounds.top
        x0 = self.valid.left - self.bounds.left
        x1 = self.valid.right - self.bounds.left
        return self.first[y0:y1, x0:x1], self.second[y0:y1, x0:x1]


def build_region_bounds(image_grid: Mapping[GridKey, TileImage]) -> Dict[GridKey, RegionBounds]:
    """
    Record the occupied rectangle of every tile.
    """
    return {key: image.bounds for key, image in image_grid.items()}


def _right_pair_bounds(left: RegionBounds, right: RegionBounds) -> RegionBounds:
    top = max(left.top, right.top)
    bottom = max(min(left.bottom, right.bottom), top)
    return RegionBounds(
        top=top,
        bottom=bottom,
        left=right.left,
        right=max(left.right, right.left),
    )


def _bottom_pair_bounds(top: RegionBounds, bottom: RegionBounds) -> RegionBounds:
    left = max(top.left, bottom.left)
    right = max(min(top.right, bottom.right), left)
    return RegionBounds(
        top=bottom.top,
        bottom=max(top.bottom, bottom.top),
        left=left,
        right=right,
    )


def create_overlap_pairs(region_bounds: Mapping[GridKey, RegionBounds]) -> List[OverlapPair]:
    """
    Pair every tile with its right and bottom neighbors.

    Parameters
    ----------
    region_bounds : mapping of GridKey to RegionBounds
        Tile rectangles keyed by (column, row).

    Returns
    -------
    pairs : list of OverlapPair
        Ordered by tile key, right pair before bottom pair.
    """
    pairs = []
    for key in sorted(region_bounds):
        col, row = key
        bounds = region_bounds[key]

        right_key = (col + 1, row)
        if right_key in region_bounds:
            pairs.append(OverlapPair(
                first=key,
                second=right_key,
                bounds=_right_pair_bounds(bounds, region_bounds[right_key]),
                direction=RIGHT,
            ))

        bottom_key = (col, row + 1)
        if bottom_key in region_bounds:
            pairs.append(OverlapPair(
                first=key,
                second=bottom_key,
                bounds=_bottom_pair_bounds(bounds, region_bounds[bottom_key]),
                direction=BOTTOM,
            ))
    return pairs


@njit(nogil=True)
def _sample_region(
    src: np.ndarray,
    src_top: int,
    src_left: int,
    old_y: np.ndarray,
    old_x: np.ndarray,
    out: np.ndarray,
    contractions: np.ndarray,
) -> None:
    """
    Gather source pixels into `out` and record per-row edge contractions.

    Parameters
    ----------
    src : float32[Hs, Ws]
        Source tile pixels.
    src_top, src_left : int
        Montage coordinate of src[0, 0].
    old_y, old_x : int64[H, W]
        Source coordinate for every output pixel.
    out : float32[H, W]
        Output buffer.
    contractions : int64[H, 4]
        Per-row (top, bottom, left, right) limits in output-local pixels.
        An out-of-range pixel tightens whichever edge is nearest to it,
        ties resolved top, bottom, left, right.
    """
    H, W = out.shape
    src_h, src_w = src.shape

    for y in range(H):
        top_c = 0
        bot_c = H
        left_c = 0
        right_c = W
        for x in range(W):
            sy = old_y[y, x] - src_top
            sx = old_x[y, x] - src_left
            if 0 <= sy < src_h and 0 <= sx < src_w:
                out[y, x] = src[sy, sx]
            else:
                out[y, x] = 0.0
                d_top = y
                d_bot = H - y
                d_left = x
                d_right = W - x
                m = min(min(d_top, d_bot), min(d_left, d_right))
                if d_top == m:
                    top_c = max(top_c, y + 1)
                elif d_bot == m:
                    bot_c = min(bot_c, y)
                elif d_left == m:
                    left_c = max(left_c, x + 1)
                else:
                    right_c = min(right_c, x)
        contractions[y, 0] = top_c
        contractions[y, 1] = bot_c
        contractions[y, 2] = left_c
        contractions[y, 3] = right_c


def _resample_pass(
    source: TileImage,
    old_x: np.ndarray,
    old_y: np.ndarray,
    shape: Tuple[int, int],
) -> Tuple[np.ndarray, Tuple[int, int, int, int]]:
    out = np.zeros(shape, dtype=np.float32)
    contractions = np.empty((shape[0], 4), dtype=np.int64)
    _sample_region(
        source.data,
        source.origin[1],
        source.origin[0],
        old_y,
        old_x,
        out,
        contractions,
    )
    limits = (
        int(contractions[:, 0].max()),
        int(contractions[:, 1].min()),
        int(contractions[:, 2].max()),
        int(contractions[:, 3].min()),
    )
    return out, limits


def coordinate_origin_offset(
    bounds: RegionBounds,
    nominal_extent: Tuple[int, int],
) -> Tuple[float, float]:
    """
    Offset moving montage coordinates of an overlap into the dewarp frame.
    """
    return (
        (nominal_extent[0] - 1) / 2.0 - bounds.left,
        (nominal_extent[1] - 1) / 2.0 - bounds.top,
    )


def resample_overlap(
    pair: OverlapPair,
    image_grid: Mapping[GridKey, TileImage],
    parameters: np.ndarray,
    model: DewarpModel,
    nominal_extent: Tuple[int, int],
) -> ResampledOverlap:
    """
    Resample one overlap pair under a trial parameter vector.

    Parameters
    ----------
    pair : OverlapPair
        Pair to resample.
    image_grid : mapping of GridKey to TileImage
        Sampled tiles.
    parameters : ndarray
        Trial parameter vector.
    model : DewarpModel
        Coordinate mapping applied to the first tile.
    nominal_extent : tuple of int
        Nominal (width, height) tile size.

    Returns
    -------
    overlap : ResampledOverlap
        Full-size images and the rectangle valid in both.
    """
    bounds = pair.bounds
    shape = (bounds.height, bounds.width)
    if bounds.is_empty:
        empty = np.zeros(shape, dtype=np.float32)
        return ResampledOverlap(first=empty, second=empty, bounds=bounds, valid=bounds)

    new_y, new_x = np.meshgrid(
        np.arange(bounds.top, bounds.bottom, dtype=np.int64),
        np.arange(bounds.left, bounds.right, dtype=np.int64),
        indexing="ij",
    )

    offset = coordinate_origin_offset(bounds, nominal_extent)
    old_x, old_y = model.map_coordinates(new_x, new_y, offset, parameters)
    old_x = np.ascontiguousarray(old_x, dtype=np.int64)
    old_y = np.ascontiguousarray(old_y, dtype=np.int64)

    first, limits_first = _resample_pass(image_grid[pair.first], old_x, old_y, shape)
    second, limits_second = _resample_pass(image_grid[pair.second], new_x, new_y, shape)

    top = max(limits_first[0], limits_second[0])
    bottom = min(limits_first[1], limits_second[1])
    left = max(limits_first[2], limits_second[2])
    right = min(limits_first[3], limits_second[3])
    bottom = max(bottom, top)
    right = max(right, left)

    valid = RegionBounds(
        top=bounds.top + top,
        bottom=bounds.top + bottom,
        left=bounds.left + left,
        right=bounds.left + right,
    )
    return ResampledOverlap(first=first, second=second, bounds=bounds, valid=valid)
