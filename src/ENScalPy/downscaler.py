# SPDX-License-Identifier: MIT
"""
Spatial downscaling
===================

Moves a variable from an input grid onto an output grid.

- :class:`DownscalerNearestNeighbour`: copy the value of the nearest input
  gridpoint.
- :class:`DownscalerGradient`: nearest-neighbour value adjusted by the
  elevation difference times a lapse rate. The lapse rate is fixed, or
  estimated by least squares over a square neighbourhood of input points.
- :func:`get_downscaler`: construct a downscaler by scheme name.

Nearest points are found with :class:`~ENScalPy.kdtree.KDTree`, built once
per call over the input grid. Output gridpoints without a usable match get
missing values.

Runtime dependencies
--------------------
- numpy
- joblib
- tqdm
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Dict, Optional, Type

import numpy as np
from joblib import Parallel, delayed
from tqdm.auto import tqdm

from .core import MV, ConfigurationError, is_valid, row_blocks
from .field import GriddedFile
from .kdtree import KDTree

__all__ = [
    "Downscaler",
    "DownscalerNearestNeighbour",
    "DownscalerGradient",
    "get_downscaler",
]


class Downscaler(ABC):
    """
    Base class for downscaling one variable between two grids.

    Parameters
    ----------
    variable : str
        Variable to read from the input file and write to the output file.
    n_jobs : int
        Number of worker threads for the per-gridpoint loop.
    progress : bool
        Show a progress bar over lead times.
    """

    name: str = ""

    def __init__(self, variable: str, *, n_jobs: int = 1, progress: bool = False) -> None:
        if n_jobs == 0:
            raise ConfigurationError("n_jobs must be non-zero.")
        self.variable = variable
        self.n_jobs = int(n_jobs)
        self.progress = bool(progress)

    @staticmethod
    def get_nearest_neighbour(input_file: GriddedFile, output_file: GriddedFile):
        """Indices ``(I, J)`` into *input_file* for every output gridpoint."""
        tree = KDTree(input_file.get_lats(), input_file.get_lons())
        return tree.get_nearest_neighbour_grid(output_file.get_lats(), output_file.get_lons())

    @abstractmethod
    def _downscale_rows(
        self,
        input_file: GriddedFile,
        output_file: GriddedFile,
        ifield: np.ndarray,
        I: np.ndarray,
        J: np.ndarray,
        start: int,
        stop: int,
    ) -> np.ndarray:
        """Return output rows ``start:stop`` as a ``(rows, lon, ens)`` array."""

    def downscale(self, input_file: GriddedFile, output_file: GriddedFile) -> None:
        """
        Write the downscaled variable into *output_file* for every lead time.

        Raises
        ------
        ConfigurationError
            If the files disagree on the number of members or lead times.
        KeyError
            If the input lacks the variable at some lead time.
        """
        if input_file.num_ens != output_file.num_ens:
            raise ConfigurationError(
                f"Input has {input_file.num_ens} members, output {output_file.num_ens}."
            )
        if input_file.num_time != output_file.num_time:
            raise ConfigurationError(
                f"Input has {input_file.num_time} times, output {output_file.num_time}."
            )

        I, J = self.get_nearest_neighbour(input_file, output_file)
        blocks = row_blocks(output_file.num_lat, self.n_jobs)

        for t in tqdm(range(input_file.num_time), desc=f"[{self.name}]", disable=not self.progress):
            ifield = input_file.get_field(self.variable, t)
            results = Parallel(n_jobs=self.n_jobs, prefer="threads")(
                delayed(self._downscale_rows)(input_file, output_file, ifield, I, J, start, stop)
                for start, stop in blocks
            )
            ofield = output_file.get_empty_field()
            for (start, stop), block in zip(blocks, results):
                ofield[start:stop] = block
            output_file.add_field(ofield, self.variable, t)


class DownscalerNearestNeighbour(Downscaler):
    """Use the value of the nearest input gridpoint."""

    name = "nearestNeighbour"

    def _downscale_rows(self, input_file, output_file, ifield, I, J, start, stop):
        rows_i = I[start:stop]
        rows_j = J[start:stop]
        found = rows_i >= 0
        block = ifield[np.where(found, rows_i, 0), np.where(found, rows_j, 0)]
        block[~found] = MV
        return block


class DownscalerGradient(Downscaler):
    """
    Adjust the nearest neighbour by the elevation difference to the output point.

    ``output = nearest + (elev_out - elev_nearest) * gradient``. The gradient
    is ``constant_gradient`` if given, otherwise the least-squares slope of
    the variable against elevation over the input points within
    ``search_radius`` rows/columns of the nearest neighbour. Either way it is
    clamped to ``[min_gradient, max_gradient]``. Without both elevations the
    nearest-neighbour value is used as is.

    Parameters
    ----------
    variable : str
        Variable to downscale.
    search_radius : int
        Half-width of the neighbourhood box, in gridpoints (>= 1).
    min_gradient, max_gradient : float
        Bounds of the gradient (units of the variable per metre).
    constant_gradient : float, optional
        Fixed gradient. ``None`` estimates it from the neighbourhood.
    """

    name = "gradient"

    def __init__(
        self,
        variable: str,
        *,
        search_radius: int = 3,
        min_gradient: float = -10.0,
        max_gradient: float = 10.0,
        constant_gradient: Optional[float] = None,
        n_jobs: int = 1,
        progress: bool = False,
    ) -> None:
        super().__init__(variable, n_jobs=n_jobs, progress=progress)
        if int(search_radius) != search_radius or search_radius < 1:
            raise ConfigurationError("DownscalerGradient: search radius must be >= 1.")
        if not (is_valid(min_gradient) and is_valid(max_gradient)):
            raise ConfigurationError("DownscalerGradient: gradient bounds must be valid numbers.")
        if min_gradient > max_gradient:
            raise ConfigurationError(
                f"DownscalerGradient: min_gradient ({min_gradient}) is larger than "
                f"max_gradient ({max_gradient})."
            )
        if constant_gradient is not None and not is_valid(constant_gradient):
            raise ConfigurationError(
                "DownscalerGradient: constant gradient must be a valid number."
            )
        self.search_radius = int(search_radius)
        self.min_gradient = float(min_gradient)
        self.max_gradient = float(max_gradient)
        self.constant_gradient = None if constant_gradient is None else float(constant_gradient)

    @staticmethod
    def compute_gradient(elevs, values) -> float:
        """
        Least-squares slope of *values* against *elevs*.

        Pairs where either value is missing are ignored. Returns 0 when no
        valid pair is left or the elevations have no spread.
        """
        x = np.asarray(elevs, dtype=float).ravel()
        y = np.asarray(values, dtype=float).ravel()
        ok = np.isfinite(x) & np.isfinite(y)
        if not ok.any():
            return 0.0
        x = x[ok]
        y = y[ok]
        dx = x - x.mean()
        var_x = float(np.mean(dx * dx))
        if var_x == 0.0:
            return 0.0
        gradient = float(np.mean(dx * (y - y.mean())) / var_x)
        return gradient if np.isfinite(gradient) else 0.0

    def _clamp(self, gradient: float) -> float:
        return min(self.max_gradient, max(self.min_gradient, gradient))

    def _downscale_rows(self, input_file, output_file, ifield, I, J, start, stop):
        ielevs = input_file.get_elevs()
        oelevs = output_file.get_elevs()
        n_lat_in, n_lon_in = input_file.num_lat, input_file.num_lon
        r = self.search_radius

        block = np.full((stop - start, output_file.num_lon, output_file.num_ens), MV)
        for i in range(start, stop):
            for j in range(output_file.num_lon):
                ic, jc = I[i, j], J[i, j]
                if ic < 0:
                    continue
                nearest = ifield[ic, jc]
                curr_elev = oelevs[i, j]
                nearest_elev = ielevs[ic, jc]
                if not (is_valid(curr_elev) and is_valid(nearest_elev)):
                    # No elevation to adjust with
                    block[i - start, j] = nearest
                    continue

                d_elev = curr_elev - nearest_elev
                if self.constant_gradient is not None:
                    gradients = np.full(nearest.shape, self._clamp(self.constant_gradient))
                else:
                    i0, i1 = max(0, ic - r), min(n_lat_in - 1, ic + r) + 1
                    j0, j1 = max(0, jc - r), min(n_lon_in - 1, jc + r) + 1
                    x = ielevs[i0:i1, j0:j1]
                    gradients = np.array(
                        [
                            self._clamp(self.compute_gradient(x, ifield[i0:i1, j0:j1, e]))
                            for e in range(nearest.size)
                        ]
                    )
                block[i - start, j] = nearest + d_elev * gradients
        return block


_SCHEMES: Dict[str, Type[Downscaler]] = {
    DownscalerNearestNeighbour.name: DownscalerNearestNeighbour,
    DownscalerGradient.name: DownscalerGradient,
}


def get_downscaler(name: str, variable: str, **options) -> Downscaler:
    """
    Instantiate a downscaler by scheme name.

    Parameters
    ----------
    name : {"nearestNeighbour", "gradient"}
        Scheme name.
    variable : str
        Variable to downscale.
    **options
        Keyword arguments of the scheme's constructor.

    Raises
    ------
    ConfigurationError
        For an unknown scheme or invalid options.
    """
    try:
        cls = _SCHEMES[name]
    except KeyError:
        raise ConfigurationError(
            f"Could not instantiate downscaler with name '{name}'; "
            f"available: {sorted(_SCHEMES)}."
        ) from None
    try:
        return cls(variable, **options)
    except TypeError as e:
        raise ConfigurationError(f"Invalid options for downscaler '{name}': {e}") from e
