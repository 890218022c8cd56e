# SPDX-License-Identifier: MIT
"""
Ensemble calibration
====================

This module converts raw ensemble fields into calibrated ones, gridpoint by
gridpoint, using precomputed coefficients from a
:class:`~ENScalPy.parameters.ParameterFile`.

- :class:`Calibrator`: strategy-agnostic driver. Loops over lead times,
  resolves coefficients (per gridpoint for location-dependent files), runs
  the per-gridpoint transform in parallel row blocks and keeps the
  bookkeeping for incomplete or failed ensembles.
- :class:`CalibratorZaga`: zero-adjusted gamma quantile mapping for
  precipitation-like variables.
- :class:`CalibratorQq`: empirical quantile-quantile mapping with a choice
  of extrapolation policy.
- :class:`CalibratorRegression`: polynomial regression of the raw value.
- :func:`shuffle`: reorder calibrated members to follow the raw ranks.
- :func:`get_calibrator`: construct a calibrator by scheme name.

Every gridpoint ends up either calibrated or holding its raw values. Two
conditions are counted and reported once per pass as a
:class:`~ENScalPy.core.CalibrationWarning`:

* the raw ensemble has missing members;
* the calibrator produced a missing value for a valid member, in which case
  the whole ensemble at that gridpoint reverts to raw values.

Runtime dependencies
--------------------
- numpy
- scipy
- joblib
- tqdm
"""

from __future__ import annotations

import warnings
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Dict, Optional, Sequence, Tuple, Type

import numpy as np
from joblib import Parallel, delayed
from scipy.stats import gamma
from tqdm.auto import tqdm

from .core import (
    MV,
    CalibrationWarning,
    ConfigurationError,
    interpolate,
    inv_logit,
    is_valid,
    row_blocks,
)
from .field import PRECIP, PRECIP_ACC, GriddedFile
from .parameters import ParameterFile, Parameters

__all__ = [
    "CalibrationSummary",
    "Calibrator",
    "CalibratorZaga",
    "CalibratorQq",
    "CalibratorRegression",
    "shuffle",
    "get_calibrator",
]


# ---------------------------------------------------------------------
# Rank-preserving reorder
# ---------------------------------------------------------------------


def shuffle(before: Sequence[float], after: Sequence[float]) -> np.ndarray:
    """
    Reorder *after* so that its members follow the rank order of *before*.

    The member that is largest in *before* receives the largest value of
    *after*, and so on. Ties in *before* are resolved by member index.

    Parameters
    ----------
    before : sequence of float
        Raw ensemble.
    after : sequence of float
        Calibrated ensemble (same length).

    Returns
    -------
    np.ndarray
        The reordered values. A copy of *after* is returned unchanged when
        the lengths differ or either vector has a missing value.
    """
    before = np.asarray(before, dtype=float)
    after = np.array(after, dtype=float)
    if before.shape != after.shape or after.ndim != 1:
        return after
    if not (np.isfinite(before).all() and np.isfinite(after).all()):
        return after

    out = np.empty_like(after)
    out[np.argsort(before, kind="stable")] = np.sort(after)
    return out


# ---------------------------------------------------------------------
# Driver
# ---------------------------------------------------------------------


@dataclass(frozen=True)
class CalibrationSummary:
    """Bookkeeping of one :meth:`Calibrator.calibrate` pass."""

    num_cells: int
    num_invalid_raw: int
    num_invalid_cal: int

    @property
    def num_calibrated(self) -> int:
        return self.num_cells - self.num_invalid_raw - self.num_invalid_cal


class Calibrator(ABC):
    """
    Base class for gridpoint-wise ensemble calibration.

    Subclasses implement :meth:`calibrate_ensemble`, which only ever sees
    complete ensembles: a gridpoint with any missing raw member is left
    untouched. Subclasses may set:

    ``reorders``
        If ``True`` the calibrated members are reordered with :func:`shuffle`.

    Parameters
    ----------
    parameter_file : ParameterFile
        Coefficients. Read-only during a pass.
    variable : str
        Variable to calibrate (calibrated in place in the file).
    n_jobs : int
        Number of worker threads for the per-gridpoint loop (``-1`` = all
        cores). Results do not depend on this value.
    progress : bool
        Show a progress bar over lead times.
    """

    name: str = ""
    reorders: bool = False

    def __init__(
        self,
        parameter_file: ParameterFile,
        variable: str,
        *,
        n_jobs: int = 1,
        progress: bool = False,
    ) -> None:
        if n_jobs == 0:
            raise ConfigurationError("n_jobs must be non-zero.")
        self._parameter_file = parameter_file
        self.variable = variable
        self.n_jobs = int(n_jobs)
        self.progress = bool(progress)
        self._check_parameter_file(parameter_file)

    @property
    def parameter_file(self) -> ParameterFile:
        return self._parameter_file

    def _check_parameter_file(self, parameter_file: ParameterFile) -> None:
        """Hook for subclasses to validate the coefficient count."""

    @abstractmethod
    def calibrate_ensemble(self, raw: np.ndarray, parameters: Parameters) -> np.ndarray:
        """Return calibrated values for one gridpoint's raw ensemble."""

    # ------------------------------------------------------------------
    # Pass over the file
    # ------------------------------------------------------------------

    def _calibrate_rows(
        self,
        file: GriddedFile,
        field: np.ndarray,
        time: int,
        parameters: Optional[Parameters],
        start: int,
        stop: int,
    ) -> Tuple[np.ndarray, int, int]:
        """Calibrate rows ``start:stop``; returns the block and its two counters."""
        block = field[start:stop].copy()
        num_invalid_raw = 0
        num_invalid_cal = 0
        for i in range(start, stop):
            for j in range(file.num_lon):
                raw = field[i, j]
                if not np.isfinite(raw).all():
                    num_invalid_raw += 1
                    continue

                params = parameters
                if params is None:
                    params = self._parameter_file.get_parameters(time, file.get_location(i, j))

                cal = np.asarray(self.calibrate_ensemble(raw, params), dtype=float)
                if cal.shape != raw.shape or not np.isfinite(cal).all():
                    # All-or-nothing: the whole ensemble reverts
                    num_invalid_cal += 1
                    continue
                if self.reorders:
                    cal = shuffle(raw, cal)
                block[i - start, j] = cal
        return block, num_invalid_raw, num_invalid_cal

    def _store(self, file: GriddedFile, field: np.ndarray, time: int) -> None:
        file.add_field(field, self.variable, time)

    def calibrate(self, file: GriddedFile) -> CalibrationSummary:
        """
        Calibrate ``self.variable`` in *file* for every lead time.

        Parameters
        ----------
        file : GriddedFile
            Input; the calibrated fields replace the raw ones.

        Returns
        -------
        CalibrationSummary
            Counts of gridpoints with missing raw members and of reverted
            gridpoints.

        Raises
        ------
        KeyError
            If the variable or the coefficients for a lead time are missing.
        """
        num_time, num_lat, num_lon = file.num_time, file.num_lat, file.num_lon
        num_cells = num_time * num_lat * num_lon
        num_invalid_raw = 0
        num_invalid_cal = 0
        blocks = row_blocks(num_lat, self.n_jobs)

        for t in tqdm(range(num_time), desc=f"[{self.name}]", disable=not self.progress):
            field = file.get_field(self.variable, t)
            parameters = None
            if not self._parameter_file.is_location_dependent:
                parameters = self._parameter_file.get_parameters(t)

            results = Parallel(n_jobs=self.n_jobs, prefer="threads")(
                delayed(self._calibrate_rows)(file, field, t, parameters, start, stop)
                for start, stop in blocks
            )

            out = np.empty_like(field)
            for (start, stop), (block, n_raw, n_cal) in zip(blocks, results):
                out[start:stop] = block
                num_invalid_raw += n_raw
                num_invalid_cal += n_cal
            self._store(file, out, t)

        if num_invalid_raw > 0:
            warnings.warn(
                f"File '{file.name}' has {num_invalid_raw} missing ensembles, "
                f"out of {num_cells}.",
                CalibrationWarning,
                stacklevel=2,
            )
        if num_invalid_cal > 0:
            warnings.warn(
                f"Calibrator produced {num_invalid_cal} invalid ensembles, "
                f"out of {num_cells}.",
                CalibrationWarning,
                stacklevel=2,
            )
        return CalibrationSummary(num_cells, num_invalid_raw, num_invalid_cal)


# ---------------------------------------------------------------------
# Zero-adjusted gamma
# ---------------------------------------------------------------------


class CalibratorZaga(Calibrator):
    """
    Zero-adjusted gamma quantile mapping.

    The calibrated distribution has a point mass ``P0`` at zero and a gamma
    distribution above it. Both depend on the raw ensemble mean and on the
    fraction of members at or below ``frac_threshold``::

        P0    = invlogit(a + b*mean + c*frac + d*mean^(1/3))
        mu    = exp(mua + mub*mean^(1/3))
        sigma = exp(sa + sb*mean)

    with coefficients ordered ``[mua, mub, sa, sb, a, b, c, d]``. Member
    ``e`` of ``n`` receives the quantile ``(e + 0.5) / n`` of that
    distribution, after which members are reordered to follow the raw ranks.

    Parameters
    ----------
    parameter_file : ParameterFile
        Must hold 8 coefficients per entry.
    variable : str
        Variable to calibrate.
    frac_threshold : float
        Members at or below this amount count as dry. In [0, 1].
    max_ens_mean : float
        The ensemble mean is clipped to this value before entering the model.
    output_accumulated : bool
        Also store the running sum over lead times under ``precip_acc``.
    """

    name = "zaga"
    reorders = True
    num_parameters = 8

    def __init__(
        self,
        parameter_file: ParameterFile,
        variable: str = PRECIP,
        *,
        frac_threshold: float = 0.5,
        max_ens_mean: float = 100.0,
        output_accumulated: bool = False,
        n_jobs: int = 1,
        progress: bool = False,
    ) -> None:
        if not is_valid(frac_threshold) or not 0 <= frac_threshold <= 1:
            raise ConfigurationError(
                f"CalibratorZaga: fraction threshold ({frac_threshold}) must be "
                "between 0 and 1, inclusive."
            )
        if not is_valid(max_ens_mean) or max_ens_mean <= 0:
            raise ConfigurationError("CalibratorZaga: max_ens_mean must be positive.")
        super().__init__(parameter_file, variable, n_jobs=n_jobs, progress=progress)
        self.frac_threshold = float(frac_threshold)
        self.max_ens_mean = float(max_ens_mean)
        self.output_accumulated = bool(output_accumulated)
        self._accumulated: Optional[np.ndarray] = None

    def _check_parameter_file(self, parameter_file: ParameterFile) -> None:
        if parameter_file.num_parameters != self.num_parameters:
            raise ConfigurationError(
                f"Parameter file '{parameter_file.filename}' must have "
                f"{self.num_parameters} parameters, has {parameter_file.num_parameters}."
            )

    def calibrate(self, file: GriddedFile) -> CalibrationSummary:
        self._accumulated = None
        return super().calibrate(file)

    def _store(self, file: GriddedFile, field: np.ndarray, time: int) -> None:
        super()._store(file, field, time)
        if self.output_accumulated:
            if self._accumulated is None:
                self._accumulated = field.copy()
            else:
                self._accumulated = self._accumulated + field
            file.add_field(self._accumulated, PRECIP_ACC, time)

    def calibrate_ensemble(self, raw: np.ndarray, parameters: Parameters) -> np.ndarray:
        ens_mean = float(np.mean(raw))
        ens_frac = float(np.mean(raw <= self.frac_threshold))
        # Clip before the mean enters the model
        ens_mean = min(ens_mean, self.max_ens_mean)

        n = raw.size
        quantiles = (np.arange(n) + 0.5) / n
        return np.array(
            [self.get_inv_cdf(q, ens_mean, ens_frac, parameters) for q in quantiles]
        )

    @staticmethod
    def get_p0(ens_mean: float, ens_frac: float, parameters: Parameters) -> float:
        """Probability of zero."""
        a, b, c, d = (float(v) for v in parameters[4:8])
        with np.errstate(all="ignore"):
            return inv_logit(a + b * ens_mean + c * ens_frac + d * np.cbrt(ens_mean))

    @staticmethod
    def get_inv_cdf(
        quantile: float,
        ens_mean: float,
        ens_frac: float,
        parameters: Parameters,
    ) -> float:
        """
        Value at *quantile* of the calibrated distribution.

        Returns
        -------
        float
            The calibrated value, ``0`` inside the point mass, or
            :data:`~ENScalPy.core.MV` for an invalid quantile, predictor,
            coefficient or distribution parameter.
        """
        if quantile == 0:
            return 0.0
        if not is_valid(quantile) or quantile < 0 or quantile >= 1:
            return MV
        if not is_valid(ens_mean) or not is_valid(ens_frac):
            return MV
        if ens_mean < 0 or ens_frac < 0 or ens_frac > 1:
            return MV
        if not parameters.is_valid():
            return MV

        p0 = CalibratorZaga.get_p0(ens_mean, ens_frac, parameters)
        if not is_valid(p0):
            return MV
        if quantile < p0:
            return 0.0

        mua, mub, sa, sb = (float(v) for v in parameters[0:4])
        quantile_cont = (quantile - p0) / (1 - p0)

        with np.errstate(all="ignore"):
            mu = np.exp(mua + mub * np.cbrt(ens_mean))
            sigma = np.exp(sa + sb * ens_mean)
        if not is_valid(mu) or not is_valid(sigma) or mu <= 0 or sigma <= 0:
            return MV

        shape = 1 / (sigma * sigma)
        scale = sigma * sigma * mu
        if not is_valid(shape) or not is_valid(scale) or shape <= 0 or scale <= 0:
            return MV

        value = float(gamma.ppf(quantile_cont, a=shape, scale=scale))
        if not is_valid(value):
            return MV
        return value


# ---------------------------------------------------------------------
# Quantile-quantile mapping
# ---------------------------------------------------------------------


class CalibratorQq(Calibrator):
    """
    Quantile-quantile mapping against sorted observations and forecasts.

    Coefficients are ``[obs0, fcst0, obs1, fcst1, ..., obsN, fcstN]``. Both
    sequences are sorted independently, i.e. ``obs_k`` is simply the
    observation at the same quantile as ``fcst_k``. A raw value strictly
    inside the forecast range is linearly interpolated; outside it, the
    nearest end point is extrapolated with a slope chosen by *extrapolation*:

    ``"1to1"``
        Slope 1, preserving the bias at the nearest end point.
    ``"meanSlope"``
        Slope between the lowest and highest points of the curve.
    ``"nearestSlope"``
        Slope through the two points nearest the end.
    ``"zero"``
        Slope 0, i.e. the extreme observation.

    A curve with a single point always uses slope 1.
    """

    name = "qq"

    ONE_TO_ONE = "1to1"
    MEAN_SLOPE = "meanSlope"
    NEAREST_SLOPE = "nearestSlope"
    ZERO = "zero"
    POLICIES = (ONE_TO_ONE, MEAN_SLOPE, NEAREST_SLOPE, ZERO)

    def __init__(
        self,
        parameter_file: ParameterFile,
        variable: str,
        *,
        extrapolation: str = ONE_TO_ONE,
        n_jobs: int = 1,
        progress: bool = False,
    ) -> None:
        if extrapolation not in self.POLICIES:
            raise ConfigurationError(
                f"CalibratorQq: value for 'extrapolation' not recognized ({extrapolation!r}); "
                f"use one of {self.POLICIES}."
            )
        super().__init__(parameter_file, variable, n_jobs=n_jobs, progress=progress)
        self.extrapolation = extrapolation

    def _check_parameter_file(self, parameter_file: ParameterFile) -> None:
        n = parameter_file.num_parameters
        if n == 0 or n % 2 != 0:
            raise ConfigurationError(
                f"Parameter file '{parameter_file.filename}' must have an even "
                f"number of datacolumns, has {n}."
            )

    @staticmethod
    def separate(parameters: Parameters) -> Tuple[np.ndarray, np.ndarray]:
        """Split interleaved coefficients into sorted observations and forecasts."""
        values = parameters.get_values()
        return np.sort(values[0::2]), np.sort(values[1::2])

    def map_value(self, raw: float, obs: np.ndarray, fcst: np.ndarray) -> float:
        """Calibrate a single raw value against the curve ``(obs, fcst)``."""
        if not is_valid(raw):
            return MV
        n = obs.size
        smallest_obs, largest_obs = obs[0], obs[-1]
        smallest_fcst, largest_fcst = fcst[0], fcst[-1]

        if smallest_fcst < raw < largest_fcst:
            return interpolate(raw, fcst, obs)

        if raw <= smallest_fcst:
            nearest_obs, nearest_fcst = smallest_obs, smallest_fcst
        else:
            nearest_obs, nearest_fcst = largest_obs, largest_fcst

        slope = 1.0
        if self.extrapolation == self.ZERO:
            slope = 0.0
        if self.extrapolation == self.ONE_TO_ONE or n <= 1:
            slope = 1.0
        elif self.extrapolation == self.MEAN_SLOPE:
            with np.errstate(all="ignore"):
                slope = (largest_obs - smallest_obs) / (largest_fcst - smallest_fcst)
        elif self.extrapolation == self.NEAREST_SLOPE:
            if raw <= smallest_fcst:
                d_obs, d_fcst = obs[1] - obs[0], fcst[1] - fcst[0]
            else:
                d_obs, d_fcst = obs[-1] - obs[-2], fcst[-1] - fcst[-2]
            with np.errstate(all="ignore"):
                slope = d_obs / d_fcst
        return float(nearest_obs + slope * (raw - nearest_fcst))

    def calibrate_ensemble(self, raw: np.ndarray, parameters: Parameters) -> np.ndarray:
        obs, fcst = self.separate(parameters)
        return np.array([self.map_value(r, obs, fcst) for r in raw])


# ---------------------------------------------------------------------
# Polynomial regression
# ---------------------------------------------------------------------


class CalibratorRegression(Calibrator):
    """
    Polynomial regression of each member: ``p0 + p1*x + p2*x^2 + ...``.

    A single coefficient replaces every value by that constant. Missing
    coefficients revert the gridpoint to raw.
    """

    name = "regression"

    def _check_parameter_file(self, parameter_file: ParameterFile) -> None:
        if parameter_file.num_parameters == 0:
            raise ConfigurationError(
                f"Parameter file '{parameter_file.filename}' must have at least "
                "one parameter."
            )

    def calibrate_ensemble(self, raw: np.ndarray, parameters: Parameters) -> np.ndarray:
        with np.errstate(all="ignore"):
            out = np.polynomial.polynomial.polyval(raw, parameters.get_values())
        return np.broadcast_to(out, raw.shape).astype(float)


# ---------------------------------------------------------------------
# Factory
# ---------------------------------------------------------------------


_SCHEMES: Dict[str, Type[Calibrator]] = {
    CalibratorZaga.name: CalibratorZaga,
    CalibratorQq.name: CalibratorQq,
    CalibratorRegression.name: CalibratorRegression,
}


def get_calibrator(name: str, parameter_file: ParameterFile, **options) -> Calibrator:
    """
    Instantiate a calibrator by scheme name.

    Parameters
    ----------
    name : {"zaga", "qq", "regression"}
        Scheme name.
    parameter_file : ParameterFile
        Coefficients.
    **options
        Keyword arguments of the scheme's constructor (``variable``,
        ``extrapolation``, ``frac_threshold``, ``n_jobs``, ...).

    Raises
    ------
    ConfigurationError
        For an unknown scheme or invalid options.
    """
    try:
        cls = _SCHEMES[name]
    except KeyError:
        raise ConfigurationError(
            f"Could not instantiate calibrator with name '{name}'; "
            f"available: {sorted(_SCHEMES)}."
        ) from None
    try:
        return cls(parameter_file, **options)
    except TypeError as e:
        raise ConfigurationError(f"Invalid options for calibrator '{name}': {e}") from e
