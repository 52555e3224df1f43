"""
Dewarp coordinate models.

A dewarp model maps a "new" (corrected) pixel coordinate to the "old"
(distorted) coordinate it was recorded at, given a parameter vector. The
overlap resampler only needs `parameter_count` and `map_coordinates`, so
any object with those two members can be injected.
"""

from typing import Protocol, Tuple

import numpy as np
from numpy.typing import ArrayLike, NDArray


class DewarpModel(Protocol):
    """
    Coordinate mapping contract used by the overlap resampler.
    """

    @property
    def parameter_count(self) -> int:
        ...

    def map_coordinates(
        self,
        new_x: NDArray,
        new_y: NDArray,
        origin_offset: Tuple[float, float],
        parameters: NDArray,
    ) -> Tuple[NDArray, NDArray]:
        ...


class PolynomialDewarpModel:
    """
    Cubic polynomial distortion about the tile center.

    With centered coordinates u = x + offset_x, v = y + offset_y, each axis
    is displaced by a 7-term polynomial::

        old_x = x + a0*u + a1*v + a2*u^2 + a3*u*v + a4*v^2 + a5*u^2*v + a6*u*v^2
        old_y = y + b0*u + b1*v + b2*u^2 + b3*u*v + b4*v^2 + b5*u^2*v + b6*u*v^2

    The parameter vector is (a0..a6, b0..b6). The zero vector is the
    identity mapping. Results are rounded to the nearest pixel index.
    """

    TERMS_PER_AXIS = 7

    @property
    def parameter_count(self) -> int:
        return 2 * self.TERMS_PER_AXIS

    def identity_parameters(self) -> NDArray:
        return np.zeros(self.parameter_count, dtype=np.float64)

    @staticmethod
    def _terms(u: NDArray, v: NDArray) -> Tuple[NDArray, ...]:
        return (u, v, u * u, u * v, v * v, u * u * v, u * v * v)

    def suggested_simplex_delta(
        self,
        nominal_extent: Tuple[int, int],
        displacement: float = 1.0,
    ) -> NDArray:
        """
        Per-parameter simplex edge lengths of comparable effect.

        Each delta moves pixels by roughly `displacement` at the far corner
        of a tile of size `nominal_extent` (width, height), so higher order
        terms get proportionally smaller steps.
        """
        u = float(max(nominal_extent[0], 1))
        v = float(max(nominal_extent[1], 1))
        scale = np.array([abs(t) for t in self._terms(u, v)], dtype=np.float64)
        per_axis = displacement / scale
        return np.concatenate([per_axis, per_axis])

    def map_coordinates(
        self,
        new_x: ArrayLike,
        new_y: ArrayLike,
        origin_offset: Tuple[float, float],
        parameters: ArrayLike,
    ) -> Tuple[NDArray, NDArray]:
        """
        Map new pixel coordinates to old pixel coordinates.

        Parameters
        ----------
        new_x, new_y : array_like
            New coordinates, any matching shape.
        origin_offset : tuple of float
            (x, y) translation moving coordinates into the centered frame.
        parameters : array_like
            Parameter vector of length `parameter_count`.

        Returns
        -------
        old_x, old_y : ndarray of int64
            Old coordinates, same shape as the inputs.
        """
        params = np.asarray(parameters, dtype=np.float64)
        if params.shape != (self.parameter_count,):
            raise ValueError(
                f"Expected {self.parameter_count} parameters, got shape {params.shape}."
            )
        x = np.asarray(new_x, dtype=np.float64)
        y = np.asarray(new_y, dtype=np.float64)
        u = x + origin_offset[0]
        v = y + origin_offset[1]

        n = self.TERMS_PER_AXIS
        dx = np.zeros_like(u)
        dy = np.zeros_like(v)
        for a, b, term in zip(params[:n], params[n:], self._terms(u, v)):
            if a != 0.0:
                dx += a * term
            if b != 0.0:
                dy += b * term

        old_x = np.floor(x + dx + 0.5).astype(np.int64)
        old_y = np.floor(y + dy + 0.5).astype(np.int64)
        return old_x, old_y
