"""
FFT convolution cost function for montage dewarp registration.

For a trial parameter vector every overlap pair is resampled, both cropped
overlap images are convolved in the frequency domain, and the maximum of
the convolution is taken as the pair's score. The objective is the square
of the summed scores; larger values mean better agreement between
neighboring tiles.
"""

import math
from typing import List, Mapping, Optional, Tuple

import numpy as np
from scipy.signal import fftconvolve

from montage_dewarp.dataio.montage import DEFAULT_ARRAY_NAME, GridMontage
from montage_dewarp.imageprocessing.dewarp import DewarpModel
from montage_dewarp.imageprocessing.overlaps import (
    RIGHT,
    OverlapPair,
    build_region_bounds,
    create_overlap_pairs,
    resample_overlap,
)
from montage_dewarp.imageprocessing.tilesampler import (
    GridKey,
    RegionBounds,
    TileImage,
    build_image_grid,
    nominal_tile_extent,
)
from montage_dewarp.parallel import make_task_pool


class UnsupportedOperationError(NotImplementedError):
    """Raised when a derivative is requested from a derivative-free objective."""


class _ScoreAccumulator:
    """
    Mutex-guarded sum of per-pair scores.

    Partial scores are kept and merged with `math.fsum`, so the total does
    not depend on the order tasks finish in.
    """

    def __init__(self, lock):
        self._lock = lock
        self._scores: List[float] = []

    def add(self, value: float) -> None:
        with self._lock:
            self._scores.append(value)

    def total(self) -> float:
        return math.fsum(self._scores)


def convolution_peak(first: np.ndarray, second: np.ndarray) -> float:
    """
    Maximum of the 2D FFT convolution of two equally shaped images.

    `first` is extended past its borders by edge replication (zero-flux
    Neumann boundary) so every output sample sees a full kernel footprint;
    the output has the shape of `first`, centered on the kernel midpoint
    `shape // 2`. Empty images score 0.

    Parameters
    ----------
    first : ndarray
        Input image.
    second : ndarray
        Kernel image, same shape as `first`.

    Returns
    -------
    peak : float
    """
    if first.shape != second.shape:
        raise ValueError(
            f"Overlap images differ in shape: {first.shape} vs {second.shape}."
        )
    if first.size == 0:
        return 0.0
    pad = [((k - 1) // 2, k // 2) for k in second.shape]
    padded = np.pad(first.astype(np.float64), pad, mode="edge")
    conv = fftconvolve(padded, second.astype(np.float64), mode="valid")
    return float(conv.max())


class FFTConvolutionCostFunction:
    """
    Single-valued, derivative-free registration objective.

    Parameters
    ----------
    dewarp_model : DewarpModel
        Coordinate mapping whose parameters are being estimated.
    max_workers : int
        Worker threads for tile sampling and per-pair scoring. 1 runs
        everything on the calling thread.
    debug : bool
        If True, print per-evaluation info.
    """

    def __init__(
        self,
        dewarp_model: DewarpModel,
        max_workers: int = 8,
        debug: bool = False,
    ):
        self.dewarp_model = dewarp_model
        self._max_workers = int(max_workers)
        self._pool = make_task_pool(self._max_workers)
        self._debug = bool(debug)

        self._montage: Optional[GridMontage] = None
        self._image_grid: Mapping[GridKey, TileImage] = {}
        self._region_bounds: Mapping[GridKey, RegionBounds] = {}
        self._overlaps: List[OverlapPair] = []
        self._image_dim_x = 0
        self._image_dim_y = 0

    @property
    def max_workers(self) -> int:
        """
        Maximum concurrent worker threads.
        """
        return self._max_workers

    @max_workers.setter
    def max_workers(self, mw: int):
        if mw < 1:
            raise ValueError("max_workers must be >= 1.")
        self._max_workers = int(mw)
        self._pool = make_task_pool(self._max_workers)

    @property
    def debug(self) -> bool:
        return self._debug

    @debug.setter
    def debug(self, flag: bool):
        self._debug = bool(flag)

    @property
    def montage(self) -> Optional[GridMontage]:
        return self._montage

    @property
    def image_grid(self) -> Mapping[GridKey, TileImage]:
        """
        Read-only mapping of (column, row) to sampled tile image.
        """
        return self._image_grid

    @property
    def region_bounds(self) -> Mapping[GridKey, RegionBounds]:
        return self._region_bounds

    @property
    def overlaps(self) -> List[OverlapPair]:
        return list(self._overlaps)

    @property
    def image_dim_x(self) -> int:
        """
        Nominal tile width in pixels.
        """
        return self._image_dim_x

    @property
    def image_dim_y(self) -> int:
        """
        Nominal tile height in pixels.
        """
        return self._image_dim_y

    @property
    def is_initialized(self) -> bool:
        return self._montage is not None

    def initialize(self, montage: GridMontage, array_name: str = DEFAULT_ARRAY_NAME) -> None:
        """
        Sample all tiles and precompute overlap pairs.

        Must be called before `get_value`, and not concurrently with it.

        Parameters
        ----------
        montage : GridMontage
            Montage to register.
        array_name : str
            Intensity array to read from every tile.
        """
        self._image_dim_x, self._image_dim_y = nominal_tile_extent(montage)
        self._image_grid = build_image_grid(
            montage,
            array_name,
            (self._image_dim_x, self._image_dim_y),
            pool=self._pool,
        )
        self._region_bounds = build_region_bounds(self._image_grid)
        self._overlaps = create_overlap_pairs(self._region_bounds)
        self._montage = montage

        if self._debug:
            print(
                f"[cost] {montage.row_count}x{montage.column_count} montage, "
                f"nominal tile {self._image_dim_x}x{self._image_dim_y}, "
                f"{len(self._overlaps)} overlap pairs"
            )

    def get_number_of_parameters(self) -> int:
        return int(self.dewarp_model.parameter_count)

    def get_derivative(self, parameters=None):
        """
        Not available: the objective is a maximum over a convolution.
        """
        raise UnsupportedOperationError(
            "FFTConvolutionCostFunction does not provide derivatives; "
            "use a derivative-free optimizer."
        )

    def _check_parameters(self, parameters) -> np.ndarray:
        params = np.asarray(parameters, dtype=np.float64)
        n = self.get_number_of_parameters()
        if params.shape != (n,):
            raise ValueError(f"Expected {n} parameters, got shape {params.shape}.")
        return params

    def score_overlap(self, pair: OverlapPair, parameters) -> float:
        """
        Convolution peak for a single overlap pair.
        """
        overlap = resample_overlap(
            pair,
            self._image_grid,
            parameters,
            self.dewarp_model,
            (self._image_dim_x, self._image_dim_y),
        )
        first, second = overlap.cropped()
        if first.size == 0 and self._debug:
            print(f"[cost] overlap {pair.first}->{pair.second} cropped to nothing")
        return convolution_peak(first, second)

    def get_value(self, parameters) -> float:
        """
        Evaluate the objective for a trial parameter vector.

        Parameters
        ----------
        parameters : array_like
            Parameter vector of length `get_number_of_parameters()`.

        Returns
        -------
        value : float
            (sum of per-pair convolution peaks) ** 2
        """
        if not self.is_initialized:
            raise RuntimeError("initialize() must be called before get_value().")
        params = self._check_parameters(parameters)
        accumulator = _ScoreAccumulator(self._pool.make_lock())

        def score(pair):
            accumulator.add(self.score_overlap(pair, params))

        self._pool.run_all(score, self._overlaps)
        residual = accumulator.total()
        value = residual * residual
        if self._debug:
            print(f"[cost] sum of peaks={residual:.6g} value={value:.6g}")
        return value

    def pair_count(self) -> Tuple[int, int]:
        """
        Number of (right, bottom) overlap pairs.
        """
        right = sum(1 for p in self._overlaps if p.direction == RIGHT)
        return right, len(self._overlaps) - right
