"""
ENScalPy
========

Calibration and downscaling of gridded ensemble weather forecasts.

The package post-processes numerical weather prediction ensembles defined on
a latitude/longitude grid, using statistical models fitted elsewhere and
supplied as coefficients per lead time (optionally per site).

1. Calibration
   -----------
   Gridpoint-wise transforms of the raw ensemble into a calibrated one.
   Gridpoints with missing raw members, or for which the model fails, keep
   their raw values and are reported once per pass.

   Main entry points
   -----------------
   - :class:`CalibratorZaga` (zero-adjusted gamma, precipitation)
   - :class:`CalibratorQq` (quantile-quantile mapping)
   - :class:`CalibratorRegression`
   - :func:`shuffle` (rank-preserving reorder of members)
   - :func:`get_calibrator`

2. Downscaling
   -----------
   Nearest-neighbour transfer between grids, optionally corrected for the
   elevation difference with a fixed or locally regressed gradient.

   Main entry points
   -----------------
   - :class:`DownscalerNearestNeighbour`
   - :class:`DownscalerGradient`
   - :func:`get_downscaler`

Supporting pieces: :class:`GriddedFile` (in-memory fields and geometry),
:class:`ParameterFile` / :class:`Parameters` / :class:`Location`
(coefficients), :class:`KDTree` (nearest gridpoint lookup) and
:func:`run_postprocess` (configured chain of steps).

Example
-------
    >>> import numpy as np
    >>> from ENScalPy import GriddedFile, ParameterFile, CalibratorQq
    >>> lats, lons = np.linspace(59, 61, 10), np.linspace(9, 11, 10)
    >>> raw = np.random.default_rng(0).gamma(1.0, 2.0, size=(10, 10, 5, 1))
    >>> file = GriddedFile.from_array("precip", raw, lats, lons)
    >>> pars = ParameterFile({0: [0, 0, 1, 2, 5, 8]})
    >>> summary = CalibratorQq(pars, "precip", extrapolation="zero").calibrate(file)
"""

from __future__ import annotations

# Public version (update in sync with pyproject.toml)
__version__ = "0.1.0"

# ---------------------------------------------------------------------------
# Core helpers and data structures
# ---------------------------------------------------------------------------

from .core import (
    MV,
    CalibrationWarning,
    ConfigurationError,
    is_valid,
    set_warning_policy,
)
from .field import PRECIP, PRECIP_ACC, T, GriddedFile, field_nan_report
from .kdtree import KDTree
from .parameters import Location, ParameterFile, Parameters

# ---------------------------------------------------------------------------
# Calibration and downscaling schemes
# ---------------------------------------------------------------------------

from .calibrator import (
    CalibrationSummary,
    Calibrator,
    CalibratorQq,
    CalibratorRegression,
    CalibratorZaga,
    get_calibrator,
    shuffle,
)
from .downscaler import (
    Downscaler,
    DownscalerGradient,
    DownscalerNearestNeighbour,
    get_downscaler,
)
from .pipeline import PostprocessConfig, SchemeConfig, run_postprocess

__all__ = [
    "__version__",
    # core
    "MV",
    "CalibrationWarning",
    "ConfigurationError",
    "is_valid",
    "set_warning_policy",
    "PRECIP",
    "PRECIP_ACC",
    "T",
    "GriddedFile",
    "field_nan_report",
    "KDTree",
    "Location",
    "ParameterFile",
    "Parameters",
    # calibration
    "CalibrationSummary",
    "Calibrator",
    "CalibratorQq",
    "CalibratorRegression",
    "CalibratorZaga",
    "get_calibrator",
    "shuffle",
    # downscaling
    "Downscaler",
    "DownscalerGradient",
    "DownscalerNearestNeighbour",
    "get_downscaler",
    # pipeline
    "PostprocessConfig",
    "SchemeConfig",
    "run_postprocess",
]
