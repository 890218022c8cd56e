# SPDX-License-Identifier: MIT
"""
Core helpers shared by every ENScalPy module.

- Missing-value convention (:data:`MV`, :func:`is_valid`).
- Error and warning categories raised/emitted by the calibrators.
- Warning policy (:func:`set_warning_policy`).
- Small numerical utilities: logistic link, degree/radian conversion,
  great-circle distance and piecewise linear interpolation.
- Row partitioning for the parallel per-gridpoint loops.

Runtime dependencies
--------------------
- numpy
- scipy
- joblib
"""

from __future__ import annotations

import warnings
from typing import List, Sequence, Tuple, Union

import numpy as np
from joblib import effective_n_jobs
from scipy.special import expit
from scipy.special import logit as _logit

__all__ = [
    "MV",
    "RADIUS_EARTH",
    "ConfigurationError",
    "CalibrationWarning",
    "set_warning_policy",
    "is_valid",
    "logit",
    "inv_logit",
    "deg2rad",
    "rad2deg",
    "get_distance",
    "row_blocks",
    "interpolate",
]

ArrayLike = Union[float, Sequence[float], np.ndarray]

#: Missing value. Never equal to itself; test with :func:`is_valid`.
MV = np.nan

#: Earth radius (m) used by :func:`get_distance`.
RADIUS_EARTH = 6.378137e6


# ---------------------------------------------------------------------
# Errors and warnings
# ---------------------------------------------------------------------


class ConfigurationError(ValueError):
    """Invalid scheme configuration, raised before any grid pass starts."""


class CalibrationWarning(UserWarning):
    """Aggregate, non-fatal diagnostic reported at the end of a pass."""


def set_warning_policy(silence: bool = False) -> None:
    """
    Control how calibration diagnostics are surfaced.

    Parameters
    ----------
    silence : bool
        If ``True``, :class:`CalibrationWarning` messages are ignored.
        Otherwise they are always shown (not only once per location), since
        each one summarises a full calibration pass.
    """
    warnings.filterwarnings(
        "ignore" if silence else "always",
        category=CalibrationWarning,
    )


set_warning_policy(False)


# ---------------------------------------------------------------------
# Missing values
# ---------------------------------------------------------------------


def is_valid(value: ArrayLike) -> Union[bool, np.ndarray]:
    """Return ``True`` where *value* is a finite number (vectorised)."""
    out = np.isfinite(np.asarray(value, dtype=float))
    if out.ndim == 0:
        return bool(out)
    return out


# ---------------------------------------------------------------------
# Numerical helpers
# ---------------------------------------------------------------------


def logit(p: ArrayLike) -> Union[float, np.ndarray]:
    """Log-odds of a probability ``p`` in (0, 1)."""
    out = _logit(np.asarray(p, dtype=float))
    return float(out) if np.ndim(out) == 0 else out


def inv_logit(x: ArrayLike) -> Union[float, np.ndarray]:
    """Inverse of :func:`logit`, i.e. ``exp(x) / (1 + exp(x))``."""
    out = expit(np.asarray(x, dtype=float))
    return float(out) if np.ndim(out) == 0 else out


def deg2rad(deg: ArrayLike) -> Union[float, np.ndarray]:
    out = np.deg2rad(np.asarray(deg, dtype=float))
    return float(out) if np.ndim(out) == 0 else out


def rad2deg(rad: ArrayLike) -> Union[float, np.ndarray]:
    out = np.rad2deg(np.asarray(rad, dtype=float))
    return float(out) if np.ndim(out) == 0 else out


def get_distance(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """
    Great-circle distance between two points.

    Parameters
    ----------
    lat1, lon1, lat2, lon2 : float
        Coordinates in degrees.

    Returns
    -------
    float
        Distance in metres, or :data:`MV` if any coordinate is missing.
    """
    if not all(is_valid(v) for v in (lat1, lon1, lat2, lon2)):
        return MV
    if lat1 == lat2 and lon1 == lon2:
        return 0.0

    lat1r, lon1r = np.deg2rad(lat1), np.deg2rad(lon1)
    lat2r, lon2r = np.deg2rad(lat2), np.deg2rad(lon2)
    ratio = np.cos(lat1r) * np.cos(lon1r) * np.cos(lat2r) * np.cos(lon2r) \
        + np.cos(lat1r) * np.sin(lon1r) * np.cos(lat2r) * np.sin(lon2r) \
        + np.sin(lat1r) * np.sin(lat2r)
    # Rounding can push |ratio| slightly above 1
    ratio = min(1.0, max(-1.0, float(ratio)))
    return float(np.arccos(ratio) * RADIUS_EARTH)


def row_blocks(n_rows: int, n_jobs: int = 1) -> List[Tuple[int, int]]:
    """
    Split ``range(n_rows)`` into contiguous ``(start, stop)`` blocks.

    A single block is returned for serial runs; otherwise about four blocks
    per worker, so that uneven rows still balance across the pool.
    """
    n_workers = effective_n_jobs(n_jobs)
    n_blocks = max(1, min(n_rows, 1 if n_workers == 1 else 4 * n_workers))
    edges = np.linspace(0, n_rows, n_blocks + 1).astype(int)
    return [(int(a), int(b)) for a, b in zip(edges[:-1], edges[1:]) if b > a]


def interpolate(x: float, xs: Sequence[float], ys: Sequence[float]) -> float:
    """
    Piecewise linear interpolation of *x* against a sorted breakpoint table.

    Parameters
    ----------
    x : float
        Value to interpolate.
    xs : sequence of float
        Breakpoints, sorted ascending. Repeated values are allowed.
    ys : sequence of float
        Values at each breakpoint (same length as *xs*).

    Returns
    -------
    float
        Interpolated value. When *x* coincides with a run of equal
        breakpoints, the mean of the matching *ys* is returned. Outside
        ``[xs[0], xs[-1]]``, or for an invalid *x*, :data:`MV` is returned.
    """
    xs = np.asarray(xs, dtype=float)
    ys = np.asarray(ys, dtype=float)
    if xs.shape != ys.shape:
        raise ValueError(
            f"Shapes of xs {xs.shape} and ys {ys.shape} do not match."
        )
    if xs.size == 0 or not is_valid(x):
        return MV
    if x < xs[0] or x > xs[-1]:
        return MV

    exact = xs == x
    if exact.any():
        return float(np.mean(ys[exact]))

    upper = int(np.searchsorted(xs, x, side="right"))
    lower = upper - 1
    x0, x1 = xs[lower], xs[upper]
    y0, y1 = ys[lower], ys[upper]
    return float(y0 + (y1 - y0) * (x - x0) / (x1 - x0))
