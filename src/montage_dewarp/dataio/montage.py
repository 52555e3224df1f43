"""
Grid montage container and tensorstore-backed storage.

A montage is a rows x columns grid of overlapping tiles. Each tile carries
its pixel dimensions, physical origin and spacing, and one or more named
intensity arrays. On disk the tiles are stacked into a single zarr3 array
of shape (n_tiles, Y, X) next to a `montage.json` sidecar describing the
grid geometry.
"""

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple, Union

import numpy as np
import tensorstore as ts
from tqdm import tqdm

GridTileIndex = Tuple[int, int]

DEFAULT_ARRAY_NAME = "intensity"
SIDECAR_NAME = "montage.json"
TILES_NAME = "tiles.zarr"


@dataclass
class MontageTile:
    """
    One tile of a grid montage.

    Parameters
    ----------
    arrays : dict of str to ndarray
        Named per-pixel arrays, each (Y, X) or (Y, X, C). All arrays must
        share the same (Y, X) shape.
    origin : tuple of float
        Physical (x, y) origin of the tile.
    spacing : tuple of float
        Physical (x, y) pixel spacing.
    """

    arrays: Dict[str, np.ndarray]
    origin: Tuple[float, float] = (0.0, 0.0)
    spacing: Tuple[float, float] = (1.0, 1.0)

    def __post_init__(self):
        if not self.arrays:
            raise ValueError("A montage tile needs at least one array.")
        shapes = {name: tuple(arr.shape[:2]) for name, arr in self.arrays.items()}
        if len(set(shapes.values())) > 1:
            raise ValueError(f"Tile arrays differ in (Y, X) shape: {shapes}.")

    @property
    def dims(self) -> Tuple[int, int]:
        """
        Pixel dimensions (width, height), taken from the first array.
        """
        arr = next(iter(self.arrays.values()))
        return int(arr.shape[1]), int(arr.shape[0])


@dataclass
class GridMontage:
    """
    Rectangular grid of tiles addressed by (row, column).
    """

    row_count: int
    column_count: int
    tiles: Dict[GridTileIndex, MontageTile] = field(default_factory=dict)

    def __post_init__(self):
        if self.row_count < 1 or self.column_count < 1:
            raise ValueError("Montage needs at least one row and one column.")

    def get_tile_index(self, row: int, column: int) -> GridTileIndex:
        """
        Return the index of the tile at (row, column).
        """
        if not (0 <= row < self.row_count and 0 <= column < self.column_count):
            raise KeyError(
                f"Tile ({row}, {column}) outside {self.row_count}x{self.column_count} montage."
            )
        return (row, column)

    def get_tile(self, index: GridTileIndex) -> MontageTile:
        try:
            return self.tiles[index]
        except KeyError:
            raise KeyError(f"No tile stored at index {index}.") from None

    def array_names(self) -> List[str]:
        """Array names shared by every tile, sorted."""
        names = None
        for tile in self.tiles.values():
            names = set(tile.arrays) if names is None else names & set(tile.arrays)
        return sorted(names or [])

    def get_intensity_array(self, index: GridTileIndex, array_name: str) -> np.ndarray:
        """
        Return the named intensity array of one tile.
        """
        tile = self.get_tile(index)
        if array_name not in tile.arrays:
            raise ValueError(
                f"Tile {index} has no array '{array_name}' "
                f"(available: {sorted(tile.arrays)})."
            )
        return tile.arrays[array_name]

    @classmethod
    def from_image(
        cls,
        image: np.ndarray,
        rows: int,
        columns: int,
        tile_shape: Tuple[int, int],
        overlap: Tuple[int, int],
        spacing: Tuple[float, float] = (1.0, 1.0),
        array_name: str = DEFAULT_ARRAY_NAME,
    ) -> "GridMontage":
        """
        Cut one large image into an overlapping rows x columns grid.

        Parameters
        ----------
        image : ndarray
            Source image, (Y, X).
        rows, columns : int
            Grid size.
        tile_shape : tuple of int
            Tile (height, width) in pixels.
        overlap : tuple of int
            Overlap (y, x) in pixels between neighboring tiles.
        spacing : tuple of float
            Physical (x, y) pixel spacing assigned to every tile.
        array_name : str
            Name under which the tile pixels are stored.

        Returns
        -------
        montage : GridMontage
            Montage whose tiles line up exactly with the source image.
        """
        tile_h, tile_w = tile_shape
        ov_y, ov_x = overlap
        if not (0 <= ov_y < tile_h and 0 <= ov_x < tile_w):
            raise ValueError("overlap must be non-negative and smaller than the tile.")
        step_y, step_x = tile_h - ov_y, tile_w - ov_x
        need_y = step_y * (rows - 1) + tile_h
        need_x = step_x * (columns - 1) + tile_w
        if image.shape[0] < need_y or image.shape[1] < need_x:
            raise ValueError(
                f"Image of shape {image.shape[:2]} too small for a {rows}x{columns} "
                f"grid of {tile_shape} tiles (needs {(need_y, need_x)})."
            )

        montage = cls(row_count=rows, column_count=columns)
        for r in range(rows):
            for c in range(columns):
                y0, x0 = r * step_y, c * step_x
                pixels = np.array(image[y0:y0 + tile_h, x0:x0 + tile_w], copy=True)
                montage.tiles[(r, c)] = MontageTile(
                    arrays={array_name: pixels},
                    origin=(x0 * spacing[0], y0 * spacing[1]),
                    spacing=tuple(spacing),
                )
        return montage


def save_montage(
    montage: GridMontage,
    output_path: Union[str, Path],
    array_name: str = DEFAULT_ARRAY_NAME,
) -> None:
    """
    Write a montage to a zarr3 tile stack plus its geometry sidecar.

    All tiles must share the same pixel shape.

    Parameters
    ----------
    montage : GridMontage
        Montage to save.
    output_path : str or Path
        Directory to create.
    array_name : str
        Intensity array to write.
    """
    out = Path(output_path)
    out.mkdir(parents=True, exist_ok=True)

    indices = [
        montage.get_tile_index(r, c)
        for r in range(montage.row_count)
        for c in range(montage.column_count)
    ]
    stack = np.stack([montage.get_intensity_array(idx, array_name) for idx in indices])

    chunk_shape = [1, *stack.shape[1:]]
    config = {
        "driver": "zarr3",
        "kvstore": {"driver": "file", "path": str(out / TILES_NAME)},
        "metadata": {
            "shape": list(stack.shape),
            "data_type": np.dtype(stack.dtype).name,
            "chunk_grid": {
                "name": "regular",
                "configuration": {"chunk_shape": chunk_shape}
            },
            "chunk_key_encoding": {"name": "default"},
            "codecs": [{"name": "bytes", "configuration": {"endian": "little"}}],
        },
    }
    store = ts.open(config, create=True, delete_existing=True).result()
    store.write(stack).result()

    sidecar = {
        "rows": montage.row_count,
        "columns": montage.column_count,
        "array_name": array_name,
        "tiles": [
            {
                "row": idx[0],
                "column": idx[1],
                "origin": list(montage.get_tile(idx).origin),
                "spacing": list(montage.get_tile(idx).spacing),
            }
            for idx in indices
        ],
    }
    with open(out / SIDECAR_NAME, "w") as f:
        json.dump(sidecar, f, indent=2)


def load_montage(
    input_path: Union[str, Path],
    array_name: Optional[str] = None,
    show_progress: bool = False,
) -> GridMontage:
    """
    Read a montage written by `save_montage`.

    Parameters
    ----------
    input_path : str or Path
        Montage directory.
    array_name : str, optional
        Name to store the pixels under. Defaults to the name in the sidecar.
    show_progress : bool
        Show a tqdm bar while reading tiles.

    Returns
    -------
    montage : GridMontage
        Fully materialized montage.
    """
    root = Path(input_path)
    sidecar_path = root / SIDECAR_NAME
    if not sidecar_path.exists():
        raise FileNotFoundError(f"Montage sidecar not found: {sidecar_path}")
    with open(sidecar_path, "r") as f:
        meta = json.load(f)

    tiles_path = root / TILES_NAME
    if not tiles_path.exists():
        raise FileNotFoundError(f"Montage tile store not found: {tiles_path}")
    store = ts.open({
        "driver": "zarr3",
        "kvstore": {"driver": "file", "path": str(tiles_path)},
    }).result()

    name = array_name or meta.get("array_name", DEFAULT_ARRAY_NAME)
    entries: Sequence[dict] = meta["tiles"]
    if store.shape[0] != len(entries):
        raise ValueError(
            f"Tile store holds {store.shape[0]} tiles but sidecar lists {len(entries)}."
        )

    montage = GridMontage(row_count=int(meta["rows"]), column_count=int(meta["columns"]))
    for pos, entry in enumerate(tqdm(entries, desc="tiles", leave=False, disable=not show_progress)):
        pixels = store[pos].read().result()
        montage.tiles[(int(entry["row"]), int(entry["column"]))] = MontageTile(
            arrays={name: np.asarray(pixels)},
            origin=tuple(float(v) for v in entry["origin"]),
            spacing=tuple(float(v) for v in entry.get("spacing", (1.0, 1.0))),
        )
    return montage
