# SPDX-License-Identifier: MIT
"""
KD-tree over a latitude/longitude grid.

The tree answers "which gridpoint (i, j) is closest to this coordinate?"
queries. It is used to resolve location-dependent parameters and to map an
output grid onto the nearest points of an input grid when downscaling.

The tree is built once and is read-only afterwards, so a single instance can
be shared by concurrent queries. Nodes are stored in an arena of flat lists;
children and parents are referred to by node index (``-1`` means none).

Distances are planar in (longitude, latitude) degrees. This keeps the
distance to a splitting plane a lower bound of the distance to any point
behind it, which is what the pruning step relies on.
"""

from __future__ import annotations

from typing import List, Optional, Tuple

import numpy as np

__all__ = ["KDTree"]

_LON = 0
_LAT = 1


class KDTree:
    """
    Balanced 2-d tree alternating longitude / latitude splits.

    Parameters
    ----------
    lats, lons : array-like
        Coordinates in degrees with identical shapes. A 2-D array is indexed
        by ``(i, j)``; a 1-D array is treated as a single column (``j == 0``).
        Points with a non-finite latitude or longitude are not indexed.

    Examples
    --------
    >>> tree = KDTree([[60.0, 60.0], [61.0, 61.0]], [[5.0, 6.0], [5.0, 6.0]])
    >>> tree.get_nearest_neighbour(60.9, 5.8)
    (1, 1)
    """

    def __init__(self, lats, lons) -> None:
        lats = np.asarray(lats, dtype=float)
        lons = np.asarray(lons, dtype=float)
        if lats.shape != lons.shape:
            raise ValueError(
                f"Shapes of lats {lats.shape} and lons {lons.shape} do not match."
            )
        if lats.ndim == 0:
            lats = lats.reshape(1, 1)
            lons = lons.reshape(1, 1)
        elif lats.ndim == 1:
            lats = lats[:, None]
            lons = lons[:, None]
        elif lats.ndim != 2:
            raise ValueError("lats/lons must be at most 2-dimensional.")

        ii, jj = np.indices(lats.shape)
        ok = np.isfinite(lats) & np.isfinite(lons)
        pt_lat = lats[ok]
        pt_lon = lons[ok]
        pt_i = ii[ok]
        pt_j = jj[ok]

        n = int(pt_lat.size)
        self._lon: List[float] = [0.0] * n
        self._lat: List[float] = [0.0] * n
        self._ipos: List[int] = [0] * n
        self._jpos: List[int] = [0] * n
        self._axis: List[int] = [_LON] * n
        self._left: List[int] = [-1] * n
        self._right: List[int] = [-1] * n
        self._parent: List[int] = [-1] * n
        self._num_nodes = 0

        self._pt = (pt_lon, pt_lat, pt_i, pt_j)
        self._root = self._sub_tree(np.arange(n), _LON, -1) if n > 0 else -1
        del self._pt

    # ------------------------------------------------------------------
    # Construction
    # ------------------------------------------------------------------

    def _sub_tree(self, order: np.ndarray, axis: int, parent: int) -> int:
        """Build the subtree holding the points in *order*; return its root."""
        if order.size == 0:
            return -1
        pt_lon, pt_lat, pt_i, pt_j = self._pt
        keys = pt_lon[order] if axis == _LON else pt_lat[order]
        order = order[np.argsort(keys, kind="stable")]
        mid = order.size // 2
        p = order[mid]

        node = self._num_nodes
        self._num_nodes += 1
        self._lon[node] = float(pt_lon[p])
        self._lat[node] = float(pt_lat[p])
        self._ipos[node] = int(pt_i[p])
        self._jpos[node] = int(pt_j[p])
        self._axis[node] = axis
        self._parent[node] = parent

        child_axis = _LAT if axis == _LON else _LON
        self._left[node] = self._sub_tree(order[:mid], child_axis, node)
        self._right[node] = self._sub_tree(order[mid + 1:], child_axis, node)
        return node

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def __len__(self) -> int:
        return self._num_nodes

    @property
    def size(self) -> int:
        """Number of indexed points."""
        return self._num_nodes

    def _dist2(self, node: int, lon: float, lat: float) -> float:
        dlon = self._lon[node] - lon
        dlat = self._lat[node] - lat
        return dlon * dlon + dlat * dlat

    def _plane_offset(self, node: int, lon: float, lat: float) -> float:
        """Signed offset of the query from the splitting plane of *node*."""
        if self._axis[node] == _LON:
            return lon - self._lon[node]
        return lat - self._lat[node]

    def _first_guess(self, root: int, lon: float, lat: float) -> int:
        """Greedy descent from *root* to a leaf on the query's side of each plane."""
        node = root
        while True:
            if self._plane_offset(node, lon, lat) < 0:
                near, far = self._left[node], self._right[node]
            else:
                near, far = self._right[node], self._left[node]
            nxt = near if near != -1 else far
            if nxt == -1:
                return node
            node = nxt

    def _nearest(self, root: int, lon: float, lat: float) -> int:
        """Nearest node to (lon, lat) within the subtree rooted at *root*."""
        node = self._first_guess(root, lon, lat)
        best = node
        best_d = self._dist2(node, lon, lat)

        # Walk back up to the subtree root, checking the far side of each
        # plane only when it can hold a strictly closer point.
        cur = node
        while cur != root:
            prev = cur
            cur = self._parent[cur]
            d = self._dist2(cur, lon, lat)
            if d < best_d:
                best, best_d = cur, d

            offset = self._plane_offset(cur, lon, lat)
            if offset * offset >= best_d:
                continue
            other = self._right[cur] if prev == self._left[cur] else self._left[cur]
            if other == -1:
                continue
            cand = self._nearest(other, lon, lat)
            cand_d = self._dist2(cand, lon, lat)
            if cand_d < best_d:
                best, best_d = cand, cand_d
        return best

    def get_nearest_neighbour(self, lat: float, lon: float) -> Optional[Tuple[int, int]]:
        """
        Return the ``(i, j)`` index of the indexed point closest to a coordinate.

        Parameters
        ----------
        lat, lon : float
            Query coordinate in degrees.

        Returns
        -------
        tuple of int or None
            Grid index of the nearest point. ``None`` if the tree is empty or
            the query coordinate is not finite.
        """
        if self._root == -1:
            return None
        lat = float(lat)
        lon = float(lon)
        if not (np.isfinite(lat) and np.isfinite(lon)):
            return None
        node = self._nearest(self._root, lon, lat)
        return self._ipos[node], self._jpos[node]

    def get_nearest_neighbour_grid(self, lats, lons) -> Tuple[np.ndarray, np.ndarray]:
        """
        Nearest indexed point for every point of another grid.

        Parameters
        ----------
        lats, lons : array-like
            Target coordinates (any shape, identical for both).

        Returns
        -------
        I, J : np.ndarray
            Integer arrays with the shape of *lats*. Entries are ``-1`` where
            no match exists (empty tree or missing target coordinate).
        """
        lats = np.asarray(lats, dtype=float)
        lons = np.asarray(lons, dtype=float)
        if lats.shape != lons.shape:
            raise ValueError(
                f"Shapes of lats {lats.shape} and lons {lons.shape} do not match."
            )
        I = np.full(lats.shape, -1, dtype=int)
        J = np.full(lats.shape, -1, dtype=int)
        for idx in np.ndindex(lats.shape):
            match = self.get_nearest_neighbour(lats[idx], lons[idx])
            if match is not None:
                I[idx], J[idx] = match
        return I, J
