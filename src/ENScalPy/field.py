# SPDX-License-Identifier: MIT
"""
In-memory gridded ensemble data.

:class:`GriddedFile` holds the grid geometry (latitude, longitude, elevation
per ``(i, j)``) and one ``(lat, lon, ens)`` field per variable and lead time.
It is the accessor the calibrators and downscalers read from and write to;
reading/writing actual file formats is left to the caller, who can move data
in and out with :meth:`GriddedFile.from_array`, :meth:`GriddedFile.to_array`
and :meth:`GriddedFile.to_dataframe`.

Missing values are ``nan`` (:data:`~ENScalPy.core.MV`).
"""

from __future__ import annotations

from typing import Dict, Tuple

import numpy as np
import pandas as pd

from .core import MV, ConfigurationError
from .parameters import Location

__all__ = [
    "PRECIP",
    "PRECIP_ACC",
    "T",
    "GriddedFile",
    "field_nan_report",
]

# Common variable names
PRECIP = "precip"
PRECIP_ACC = "precip_acc"
T = "air_temperature"


class GriddedFile:
    """
    Ensemble fields on a fixed latitude/longitude grid.

    Parameters
    ----------
    lats, lons : array-like
        Either 2-D arrays of identical shape ``(num_lat, num_lon)`` or 1-D
        coordinate vectors, which are expanded to a regular grid.
    elevs : array-like, optional
        Elevation per gridpoint (2-D). ``None`` means all missing.
    n_ens, n_time : int
        Number of ensemble members and lead times.
    name : str
        Label used in diagnostics.
    """

    def __init__(
        self,
        lats,
        lons,
        elevs=None,
        *,
        n_ens: int = 1,
        n_time: int = 1,
        name: str = "",
    ) -> None:
        lats = np.asarray(lats, dtype=float)
        lons = np.asarray(lons, dtype=float)
        if lats.ndim == 1 and lons.ndim == 1:
            lons, lats = np.meshgrid(lons, lats)
        if lats.ndim != 2 or lats.shape != lons.shape:
            raise ConfigurationError(
                f"lats {lats.shape} and lons {lons.shape} must be 2-D with the same shape."
            )
        if elevs is None:
            elevs = np.full(lats.shape, MV)
        elevs = np.asarray(elevs, dtype=float)
        if elevs.shape != lats.shape:
            raise ConfigurationError(
                f"elevs {elevs.shape} must have the grid shape {lats.shape}."
            )
        if int(n_ens) < 1 or int(n_time) < 1:
            raise ConfigurationError("n_ens and n_time must be >= 1.")

        self._lats = lats.copy()
        self._lons = lons.copy()
        self._elevs = elevs.copy()
        self._n_ens = int(n_ens)
        self._n_time = int(n_time)
        self.name = name
        self._fields: Dict[Tuple[str, int], np.ndarray] = {}

    # ------------------------------------------------------------------
    # Geometry
    # ------------------------------------------------------------------

    @property
    def num_lat(self) -> int:
        return self._lats.shape[0]

    @property
    def num_lon(self) -> int:
        return self._lats.shape[1]

    @property
    def num_ens(self) -> int:
        return self._n_ens

    @property
    def num_time(self) -> int:
        return self._n_time

    @property
    def field_shape(self) -> Tuple[int, int, int]:
        return self.num_lat, self.num_lon, self.num_ens

    def get_lats(self) -> np.ndarray:
        return self._lats

    def get_lons(self) -> np.ndarray:
        return self._lons

    def get_elevs(self) -> np.ndarray:
        return self._elevs

    def set_elevs(self, elevs) -> None:
        elevs = np.asarray(elevs, dtype=float)
        if elevs.shape != self._lats.shape:
            raise ConfigurationError(
                f"elevs {elevs.shape} must have the grid shape {self._lats.shape}."
            )
        self._elevs = elevs.copy()

    def get_location(self, i: int, j: int) -> Location:
        return Location(
            float(self._lats[i, j]),
            float(self._lons[i, j]),
            float(self._elevs[i, j]),
        )

    # ------------------------------------------------------------------
    # Fields
    # ------------------------------------------------------------------

    def get_empty_field(self, fill: float = MV) -> np.ndarray:
        """New ``(lat, lon, ens)`` array filled with *fill*."""
        return np.full(self.field_shape, fill, dtype=float)

    def has_field(self, variable: str, time: int) -> bool:
        return (variable, int(time)) in self._fields

    def get_field(self, variable: str, time: int) -> np.ndarray:
        """
        Return the stored ``(lat, lon, ens)`` array (not a copy).

        Raises
        ------
        KeyError
            If the variable is not available at *time*.
        """
        key = (variable, int(time))
        if key not in self._fields:
            raise KeyError(f"File '{self.name}' has no field '{variable}' at time {time}.")
        return self._fields[key]

    def add_field(self, field, variable: str, time: int) -> None:
        """Store a copy of *field* for *variable* at lead time *time*."""
        time = int(time)
        if not 0 <= time < self._n_time:
            raise ConfigurationError(
                f"Time {time} out of range for a file with {self._n_time} times."
            )
        arr = np.asarray(field, dtype=float)
        if arr.shape != self.field_shape:
            raise ConfigurationError(
                f"Field shape {arr.shape} does not match grid {self.field_shape}."
            )
        self._fields[(variable, time)] = arr.copy()

    # ------------------------------------------------------------------
    # Conversion helpers
    # ------------------------------------------------------------------

    @classmethod
    def from_array(
        cls,
        variable: str,
        data,
        lats,
        lons,
        elevs=None,
        *,
        name: str = "",
    ) -> "GriddedFile":
        """Build a file from a ``(lat, lon, ens, time)`` array."""
        data = np.asarray(data, dtype=float)
        if data.ndim != 4:
            raise ConfigurationError(
                f"Expected a (lat, lon, ens, time) array, got shape {data.shape}."
            )
        out = cls(lats, lons, elevs, n_ens=data.shape[2], n_time=data.shape[3], name=name)
        for t in range(out.num_time):
            out.add_field(data[:, :, :, t], variable, t)
        return out

    def to_array(self, variable: str) -> np.ndarray:
        """Return a ``(lat, lon, ens, time)`` copy of *variable*."""
        return np.stack(
            [self.get_field(variable, t) for t in range(self._n_time)], axis=-1
        )

    def to_dataframe(self, variable: str) -> pd.DataFrame:
        """
        Long-format table of *variable*.

        Returns
        -------
        DataFrame
            Columns ``[time, i, j, latitude, longitude, altitude, member,
            value]``, one row per gridpoint, member and lead time.
        """
        ii, jj, ee = np.indices(self.field_shape)
        parts = []
        for t in range(self._n_time):
            values = self.get_field(variable, t)
            parts.append(
                pd.DataFrame(
                    {
                        "time": t,
                        "i": ii.ravel(),
                        "j": jj.ravel(),
                        "latitude": self._lats[ii, jj].ravel(),
                        "longitude": self._lons[ii, jj].ravel(),
                        "altitude": self._elevs[ii, jj].ravel(),
                        "member": ee.ravel(),
                        "value": values.ravel(),
                    }
                )
            )
        return pd.concat(parts, ignore_index=True)


def field_nan_report(file: GriddedFile, variable: str) -> pd.DataFrame:
    """
    Missing-value report for *variable*, one row per lead time.

    Columns: ``time``, ``n_missing`` (missing values), ``n_incomplete``
    (gridpoints with at least one missing member) and ``n_cells``.
    Useful before calibrating, since incomplete ensembles are passed through.
    """
    rows = []
    for t in range(file.num_time):
        missing = ~np.isfinite(file.get_field(variable, t))
        rows.append(
            {
                "time": t,
                "n_missing": int(missing.sum()),
                "n_incomplete": int(missing.any(axis=2).sum()),
                "n_cells": file.num_lat * file.num_lon,
            }
        )
    return pd.DataFrame(rows)
