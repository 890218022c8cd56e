# SPDX-License-Identifier: MIT
"""
Calibration coefficients.

- :class:`Location`: (latitude, longitude, elevation) triple.
- :class:`Parameters`: immutable ordered coefficients for one lead time.
- :class:`ParameterFile`: coefficients per lead time, optionally per site.

Location-dependent files resolve a gridpoint to the nearest site with a
:class:`~ENScalPy.kdtree.KDTree` built once when the file is created.

Text format
-----------
Whitespace separated, ``#`` starts a comment::

    # time p0 p1 ...                  (time-only)
    0 0.3 1.2
    # time lat lon elev p0 p1 ...     (location-dependent)
    0 60.0 10.0 120 0.3 1.2

Missing coefficients are written as ``nan``.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Dict, Iterable, Iterator, List, Optional, Sequence, Tuple, Union

import numpy as np
import pandas as pd

from .core import MV, ConfigurationError, is_valid
from .kdtree import KDTree

__all__ = ["Location", "Parameters", "ParameterFile"]


@dataclass(frozen=True, eq=False)
class Location:
    """
    A point in space. ``elev`` may be missing (:data:`~ENScalPy.core.MV`).

    Locations are used as dictionary keys, so missing coordinates compare
    equal to each other (``nan`` would not).
    """

    lat: float
    lon: float
    elev: float = MV

    def _key(self) -> Tuple[Optional[float], ...]:
        return tuple(
            float(v) if is_valid(v) else None for v in (self.lat, self.lon, self.elev)
        )

    def __eq__(self, other) -> bool:
        if not isinstance(other, Location):
            return NotImplemented
        return self._key() == other._key()

    def __hash__(self) -> int:
        return hash(self._key())


class Parameters:
    """
    Immutable, index-addressed coefficients.

    Parameters
    ----------
    values : iterable of float
        Coefficients. Missing coefficients are ``nan``.
    """

    __slots__ = ("_values",)

    def __init__(self, values: Iterable[float] = ()) -> None:
        arr = np.array(list(values), dtype=float)
        arr.setflags(write=False)
        self._values = arr

    def size(self) -> int:
        return int(self._values.size)

    def __len__(self) -> int:
        return self.size()

    def __getitem__(self, index):
        return self._values[index]

    def __iter__(self) -> Iterator[float]:
        return iter(self._values.tolist())

    def __eq__(self, other) -> bool:
        if not isinstance(other, Parameters):
            return NotImplemented
        return np.array_equal(self._values, other._values, equal_nan=True)

    def __repr__(self) -> str:
        return f"Parameters({self._values.tolist()})"

    def get_values(self) -> np.ndarray:
        """Return a writable copy of the coefficients."""
        return self._values.copy()

    def is_valid(self) -> bool:
        """``True`` when every coefficient is finite."""
        return bool(np.isfinite(self._values).all())


ParametersLike = Union[Parameters, Sequence[float]]


def _as_parameters(values: ParametersLike) -> Parameters:
    return values if isinstance(values, Parameters) else Parameters(values)


class ParameterFile:
    """
    Coefficients per lead time, optionally specialised per location.

    Parameters
    ----------
    parameters : dict
        Time-only mode: ``{time: Parameters}``.
    filename : str, optional
        Where the coefficients came from (used in messages only).

    Notes
    -----
    Use :meth:`location_dependent` or :meth:`load` to create a
    location-dependent file. A file holding a single lead time serves those
    coefficients for every lead time.
    """

    def __init__(
        self,
        parameters: Optional[Dict[int, ParametersLike]] = None,
        *,
        filename: str = "",
    ) -> None:
        self.filename = filename
        self._location_dependent = False
        self._by_location: Dict[Location, Dict[int, Parameters]] = {}
        self._global: Dict[int, Parameters] = {
            int(t): _as_parameters(p) for t, p in (parameters or {}).items()
        }
        self._tree: Optional[KDTree] = None
        self._sites: List[Location] = []
        self._validate()

    @classmethod
    def location_dependent(
        cls,
        parameters: Dict[Location, Dict[int, ParametersLike]],
        *,
        filename: str = "",
    ) -> "ParameterFile":
        """Create a file whose coefficients vary between sites."""
        out = cls(filename=filename)
        out._location_dependent = True
        out._by_location = {
            loc: {int(t): _as_parameters(p) for t, p in by_time.items()}
            for loc, by_time in parameters.items()
        }
        out._validate()
        out._build_index()
        return out

    # ------------------------------------------------------------------
    # Validation and indexing
    # ------------------------------------------------------------------

    def _all_parameters(self) -> List[Parameters]:
        if self._location_dependent:
            return [p for by_time in self._by_location.values() for p in by_time.values()]
        return list(self._global.values())

    def _validate(self) -> None:
        sizes = {p.size() for p in self._all_parameters()}
        if len(sizes) > 1:
            raise ConfigurationError(
                f"Parameter file '{self.filename}' has inconsistent numbers of "
                f"parameters: {sorted(sizes)}."
            )

    def _build_index(self) -> None:
        self._sites = list(self._by_location.keys())
        self._tree = KDTree(
            [loc.lat for loc in self._sites],
            [loc.lon for loc in self._sites],
        )

    # ------------------------------------------------------------------
    # Accessors
    # ------------------------------------------------------------------

    @property
    def is_location_dependent(self) -> bool:
        return self._location_dependent

    @property
    def num_parameters(self) -> int:
        """Number of coefficients per entry (0 for an empty file)."""
        params = self._all_parameters()
        return params[0].size() if params else 0

    def get_times(self) -> List[int]:
        if self._location_dependent:
            times = {t for by_time in self._by_location.values() for t in by_time}
            return sorted(times)
        return sorted(self._global)

    def get_locations(self) -> List[Location]:
        return list(self._by_location.keys())

    @staticmethod
    def _lookup(by_time: Dict[int, Parameters], time: int, where: str) -> Parameters:
        if time in by_time:
            return by_time[time]
        if len(by_time) == 1:
            return next(iter(by_time.values()))
        raise KeyError(f"No parameters for time {time}{where}.")

    def get_parameters(self, time: int, location: Optional[Location] = None) -> Parameters:
        """
        Coefficients for lead time *time*.

        Parameters
        ----------
        time : int
            Lead time index.
        location : Location, optional
            Required for location-dependent files; the nearest site is used.
            Ignored for time-only files.

        Raises
        ------
        KeyError
            If no coefficients are available for *time* (or no site exists).
        """
        time = int(time)
        if not self._location_dependent:
            return self._lookup(self._global, time, f" in '{self.filename}'")

        if location is None:
            raise KeyError(
                f"Parameter file '{self.filename}' is location dependent; "
                "a location is required."
            )
        match = self._tree.get_nearest_neighbour(location.lat, location.lon)
        if match is None:
            raise KeyError(f"Parameter file '{self.filename}' has no valid sites.")
        site = self._sites[match[0]]
        return self._lookup(self._by_location[site], time, f" at {site}")

    def set_parameters(
        self,
        parameters: ParametersLike,
        time: int,
        location: Optional[Location] = None,
    ) -> None:
        """Add or replace coefficients (rebuilds the site index if needed)."""
        parameters = _as_parameters(parameters)
        if self.num_parameters and parameters.size() != self.num_parameters:
            raise ConfigurationError(
                f"Expected {self.num_parameters} parameters, got {parameters.size()}."
            )
        if not self._location_dependent:
            self._global[int(time)] = parameters
            return
        if location is None:
            raise ConfigurationError("A location is required for location-dependent files.")
        is_new = location not in self._by_location
        self._by_location.setdefault(location, {})[int(time)] = parameters
        if is_new:
            self._build_index()

    # ------------------------------------------------------------------
    # Tabular I/O
    # ------------------------------------------------------------------

    def to_dataframe(self) -> pd.DataFrame:
        """Return one row per entry with columns ``time[, lat, lon, elev], p0..pN``."""
        n = self.num_parameters
        pcols = [f"p{k}" for k in range(n)]
        rows = []
        if self._location_dependent:
            for loc, by_time in self._by_location.items():
                for t in sorted(by_time):
                    rows.append([t, loc.lat, loc.lon, loc.elev] + list(by_time[t]))
            cols = ["time", "lat", "lon", "elev"] + pcols
        else:
            for t in sorted(self._global):
                rows.append([t] + list(self._global[t]))
            cols = ["time"] + pcols
        return pd.DataFrame(rows, columns=cols)

    def save(self, path: str) -> str:
        """Write the coefficients in the whitespace-separated text format."""
        os.makedirs(os.path.dirname(str(path)) or ".", exist_ok=True)
        df = self.to_dataframe()
        df.to_csv(path, sep=" ", header=False, index=False, na_rep="nan")
        return str(path)

    @classmethod
    def load(cls, path: str, *, location_dependent: bool = False) -> "ParameterFile":
        """
        Read a parameter file.

        Parameters
        ----------
        path : str
            Text file (see module docstring for the layout).
        location_dependent : bool
            If ``True``, columns 2-4 hold latitude, longitude and elevation.

        Raises
        ------
        ConfigurationError
            If the file cannot be parsed, a row is longer than the first one,
            or there are too few columns. Shorter rows are padded with missing
            coefficients.
        """
        try:
            df = pd.read_csv(path, sep=r"\s+", header=None, comment="#", dtype=float)
        except pd.errors.EmptyDataError:
            df = pd.DataFrame()
        except ValueError as e:
            raise ConfigurationError(f"Could not parse parameter file '{path}': {e}") from e

        n_meta = 4 if location_dependent else 1
        if df.empty:
            if location_dependent:
                return cls.location_dependent({}, filename=str(path))
            return cls(filename=str(path))
        if df.shape[1] < n_meta or df.iloc[:, 0].isna().any():
            raise ConfigurationError(
                f"Parameter file '{path}' needs at least {n_meta} columns "
                "and a lead time on every row."
            )

        if not location_dependent:
            params = {
                int(row[0]): Parameters(row[1:]) for row in df.itertuples(index=False)
            }
            return cls(params, filename=str(path))

        by_location: Dict[Location, Dict[int, Parameters]] = {}
        for row in df.itertuples(index=False):
            loc = Location(float(row[1]), float(row[2]), float(row[3]))
            by_location.setdefault(loc, {})[int(row[0])] = Parameters(row[4:])
        return cls.location_dependent(by_location, filename=str(path))
