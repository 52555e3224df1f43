import numpy as np
import pytest

from montage_dewarp.dataio.montage import GridMontage
from montage_dewarp.imageprocessing.dewarp import PolynomialDewarpModel
from montage_dewarp.imageprocessing.overlaps import (
    BOTTOM,
    RIGHT,
    _resample_pass,
    build_region_bounds,
    create_overlap_pairs,
    coordinate_origin_offset,
    resample_overlap,
)
from montage_dewarp.imageprocessing.tilesampler import (
    RegionBounds,
    TileImage,
    build_image_grid,
    nominal_tile_extent,
)


def _textured_image(shape, seed=0) -> np.ndarray:
    rng = np.random.default_rng(seed)
    img = rng.uniform(100.0, 1000.0, size=shape).astype(np.float32)
    yy, xx = np.meshgrid(np.arange(shape[0]), np.arange(shape[1]), indexing="ij")
    img[((yy - shape[0] // 2) ** 2 + (xx - shape[1] // 3) ** 2) <= 36] += 3000.0
    return img


def _grid_montage(rows, columns, tile=32, overlap=8, seed=0):
    step = tile - overlap
    shape = (step * (rows - 1) + tile, step * (columns - 1) + tile)
    return GridMontage.from_image(
        _textured_image(shape, seed), rows=rows, columns=columns,
        tile_shape=(tile, tile), overlap=(overlap, overlap),
    )


def _grid_and_pairs(montage):
    nominal = nominal_tile_extent(montage)
    grid = build_image_grid(montage, "intensity", nominal)
    pairs = create_overlap_pairs(build_region_bounds(grid))
    return grid, pairs, nominal


def _read_only_tile(data, origin=(0, 0)) -> TileImage:
    data = np.ascontiguousarray(data, dtype=np.float32)
    data.flags.writeable = False
    return TileImage(data=data, origin=origin)


@pytest.mark.parametrize("rows,columns", [(1, 2), (2, 1), (2, 2), (2, 3), (3, 3), (3, 4)])
def test_overlap_pair_count(rows, columns):
    """Every tile pairs with its right and bottom neighbors only."""
    montage = _grid_montage(rows, columns)
    _, pairs, _ = _grid_and_pairs(montage)
    right = [p for p in pairs if p.direction == RIGHT]
    bottom = [p for p in pairs if p.direction == BOTTOM]
    assert len(right) == rows * (columns - 1)
    assert len(bottom) == columns * (rows - 1)
    for p in right:
        assert p.second == (p.first[0] + 1, p.first[1])
    for p in bottom:
        assert p.second == (p.first[0], p.first[1] + 1)


def test_single_tile_has_no_pairs():
    """A 1x1 montage has nothing to register."""
    montage = GridMontage.from_image(_textured_image((32, 32)), 1, 1, (32, 32), (0, 0))
    _, pairs, _ = _grid_and_pairs(montage)
    assert pairs == []


def test_two_tile_right_overlap_geometry():
    """Two 100x100 tiles overlapping by 10 columns share a 10x100 strip."""
    montage = GridMontage.from_image(
        _textured_image((100, 190)), rows=1, columns=2,
        tile_shape=(100, 100), overlap=(0, 10),
    )
    _, pairs, _ = _grid_and_pairs(montage)
    assert len(pairs) == 1
    pair = pairs[0]
    assert pair.direction == RIGHT
    assert pair.first == (0, 0) and pair.second == (1, 0)
    assert pair.bounds == RegionBounds(top=0, bottom=100, left=90, right=100)


def test_bottom_overlap_geometry():
    """Vertical neighbors share a strip as tall as their overlap."""
    montage = _grid_montage(2, 1, tile=32, overlap=8)
    _, pairs, _ = _grid_and_pairs(montage)
    assert pairs[0].direction == BOTTOM
    assert pairs[0].bounds == RegionBounds(top=24, bottom=32, left=0, right=32)


def test_disjoint_tiles_give_empty_bounds():
    """Tiles that do not touch produce an empty, non-inverted overlap."""
    grid = {
        (0, 0): _read_only_tile(np.ones((10, 10)), origin=(0, 0)),
        (1, 0): _read_only_tile(np.ones((10, 10)), origin=(15, 0)),
    }
    pairs = create_overlap_pairs(build_region_bounds(grid))
    assert pairs[0].bounds.width == 0
    assert pairs[0].bounds.is_empty


def test_identity_resample_matches_both_tiles():
    """With zero parameters both overlap images are the same montage pixels."""
    montage = GridMontage.from_image(
        _textured_image((100, 190)), rows=1, columns=2,
        tile_shape=(100, 100), overlap=(0, 10),
    )
    grid, pairs, nominal = _grid_and_pairs(montage)
    model = PolynomialDewarpModel()
    overlap = resample_overlap(pairs[0], grid, model.identity_parameters(), model, nominal)

    assert overlap.valid == overlap.bounds
    first, second = overlap.cropped()
    assert first.shape == (100, 10)
    assert np.array_equal(first, second)


def test_cropped_shapes_agree_under_random_parameters():
    """Both cropped images always share a shape inside the overlap."""
    montage = _grid_montage(2, 2)
    grid, pairs, nominal = _grid_and_pairs(montage)
    model = PolynomialDewarpModel()
    delta = model.suggested_simplex_delta(nominal)
    rng = np.random.default_rng(11)
    for _ in range(10):
        params = rng.normal(scale=3.0, size=model.parameter_count) * delta
        for pair in pairs:
            overlap = resample_overlap(pair, grid, params, model, nominal)
            first, second = overlap.cropped()
            assert first.shape == second.shape
            assert overlap.bounds.left <= overlap.valid.left <= overlap.valid.right <= overlap.bounds.right
            assert overlap.bounds.top <= overlap.valid.top <= overlap.valid.bottom <= overlap.bounds.bottom


def test_out_of_range_pixel_pulls_nearest_edge():
    """A missing pixel near the right edge tightens the right limit only."""
    tile = _read_only_tile(np.ones((5, 3)))
    new_y, new_x = np.meshgrid(np.arange(5), np.arange(3), indexing="ij")
    old_x = new_x.astype(np.int64).copy()
    old_y = new_y.astype(np.int64).copy()
    old_x[2, 2] = 10

    out, limits = _resample_pass(tile, old_x, old_y, (5, 3))
    assert limits == (0, 5, 0, 2)
    assert out[2, 2] == 0.0
    assert out[0, 0] == 1.0


def test_edge_tie_prefers_top():
    """A missing corner pixel is attributed to the top edge."""
    tile = _read_only_tile(np.ones((5, 5)))
    new_y, new_x = np.meshgrid(np.arange(5), np.arange(5), indexing="ij")
    old_x = new_x.astype(np.int64).copy()
    old_y = new_y.astype(np.int64).copy()
    old_y[0, 0] = -1

    _, limits = _resample_pass(tile, old_x, old_y, (5, 5))
    assert limits == (1, 5, 0, 5)


def test_large_shift_crops_overlap_to_nothing():
    """Shifting the first tile out of the strip leaves an empty valid region."""
    montage = GridMontage.from_image(
        _textured_image((100, 190)), rows=1, columns=2,
        tile_shape=(100, 100), overlap=(0, 10),
    )
    grid, pairs, nominal = _grid_and_pairs(montage)
    model = PolynomialDewarpModel()
    params = model.identity_parameters()
    params[0] = 0.5
    overlap = resample_overlap(pairs[0], grid, params, model, nominal)
    first, second = overlap.cropped()
    assert first.size == 0
    assert first.shape == second.shape


def test_coordinate_origin_offset_centers_tile():
    """Offset puts the nominal tile center at the overlap origin."""
    bounds = RegionBounds(top=24, bottom=32, left=0, right=32)
    assert coordinate_origin_offset(bounds, (32, 32)) == (15.5, 15.5 - 24)


def test_polynomial_model_identity_and_shift():
    """Zero parameters map every pixel to itself; a0 scales x."""
    model = PolynomialDewarpModel()
    x, y = np.meshgrid(np.arange(4), np.arange(3))
    old_x, old_y = model.map_coordinates(x, y, (0.0, 0.0), model.identity_parameters())
    assert np.array_equal(old_x, x) and np.array_equal(old_y, y)

    params = model.identity_parameters()
    params[0] = 1.0
    old_x, old_y = model.map_coordinates(x, y, (0.0, 0.0), params)
    assert np.array_equal(old_x, 2 * x)
    assert np.array_equal(old_y, y)

    with pytest.raises(ValueError):
        model.map_coordinates(x, y, (0.0, 0.0), np.zeros(3))


def test_suggested_simplex_delta_shape():
    """One positive delta per parameter, smaller for higher order terms."""
    model = PolynomialDewarpModel()
    delta = model.suggested_simplex_delta((100, 80), displacement=2.0)
    assert delta.shape == (model.parameter_count,)
    assert np.all(delta > 0)
    assert np.isclose(delta[0], 2.0 / 100)
    assert delta[5] < delta[2] < delta[0]
