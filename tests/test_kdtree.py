# tests/test_kdtree.py
import numpy as np
import pytest

from ENScalPy.kdtree import KDTree


# ---------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------


def _brute_force(lats: np.ndarray, lons: np.ndarray, lat: float, lon: float):
    """Exhaustive nearest (i, j) with the planar (lon, lat) metric."""
    d2 = (lons - lon) ** 2 + (lats - lat) ** 2
    return np.unravel_index(np.nanargmin(d2), lats.shape)


def _random_grid(rng, shape):
    lats = rng.uniform(-60.0, 70.0, size=shape)
    lons = rng.uniform(-30.0, 40.0, size=shape)
    return lats, lons


# ---------------------------------------------------------------------
# Degenerate trees
# ---------------------------------------------------------------------


def test_empty_tree_returns_none():
    tree = KDTree(np.zeros((0, 0)), np.zeros((0, 0)))
    assert len(tree) == 0
    assert tree.get_nearest_neighbour(60.0, 10.0) is None

    I, J = tree.get_nearest_neighbour_grid([[1.0, 2.0]], [[3.0, 4.0]])
    assert (I == -1).all() and (J == -1).all()


def test_single_point_always_matches():
    tree = KDTree([[60.0]], [[10.0]])
    for lat, lon in [(60.0, 10.0), (-80.0, 170.0), (0.0, 0.0)]:
        assert tree.get_nearest_neighbour(lat, lon) == (0, 0)


def test_two_points():
    tree = KDTree([[0.0, 0.0]], [[0.0, 10.0]])
    assert tree.get_nearest_neighbour(0.0, 1.0) == (0, 0)
    assert tree.get_nearest_neighbour(5.0, 9.0) == (0, 1)


def test_duplicate_coordinates_do_not_crash_and_are_deterministic():
    lats = np.full((4, 4), 50.0)
    lons = np.full((4, 4), 5.0)
    tree = KDTree(lats, lons)
    first = tree.get_nearest_neighbour(50.1, 5.1)
    assert first is not None
    for _ in range(5):
        assert tree.get_nearest_neighbour(50.1, 5.1) == first


def test_missing_coordinates_are_skipped():
    lats = np.array([[0.0, np.nan], [10.0, 20.0]])
    lons = np.array([[0.0, 0.0], [np.nan, 20.0]])
    tree = KDTree(lats, lons)
    assert len(tree) == 2
    assert tree.get_nearest_neighbour(9.0, 1.0) == (0, 0)
    assert tree.get_nearest_neighbour(15.0, 15.0) == (1, 1)
    assert tree.get_nearest_neighbour(np.nan, 0.0) is None


def test_one_dimensional_input_is_a_column():
    tree = KDTree([60.0, 61.0, 62.0], [5.0, 6.0, 7.0])
    assert tree.get_nearest_neighbour(61.2, 6.1) == (1, 0)


def test_shape_mismatch_raises():
    with pytest.raises(ValueError):
        KDTree(np.zeros((2, 2)), np.zeros((2, 3)))


# ---------------------------------------------------------------------
# Correctness against an exhaustive scan
# ---------------------------------------------------------------------


@pytest.mark.parametrize("shape", [(1, 1), (1, 2), (10, 10), (17, 23)])
def test_matches_linear_scan(shape):
    rng = np.random.default_rng(42)
    lats, lons = _random_grid(rng, shape)
    tree = KDTree(lats, lons)
    assert len(tree) == lats.size

    qlats = rng.uniform(-90.0, 90.0, size=200)
    qlons = rng.uniform(-60.0, 70.0, size=200)
    for lat, lon in zip(qlats, qlons):
        expected = _brute_force(lats, lons, lat, lon)
        assert tree.get_nearest_neighbour(lat, lon) == tuple(int(v) for v in expected)


def test_regular_grid_queries_off_grid():
    """Queries near split planes on a regular grid still find the true match."""
    lons, lats = np.meshgrid(np.linspace(0, 9, 10), np.linspace(50, 59, 10))
    tree = KDTree(lats, lons)
    rng = np.random.default_rng(7)
    for lat, lon in zip(rng.uniform(49, 60, 300), rng.uniform(-1, 10, 300)):
        i, j = tree.get_nearest_neighbour(lat, lon)
        d_tree = (lats[i, j] - lat) ** 2 + (lons[i, j] - lon) ** 2
        bi, bj = _brute_force(lats, lons, lat, lon)
        d_best = (lats[bi, bj] - lat) ** 2 + (lons[bi, bj] - lon) ** 2
        assert d_tree == pytest.approx(d_best)


def test_grid_query_matches_point_queries():
    rng = np.random.default_rng(3)
    lats, lons = _random_grid(rng, (12, 9))
    tree = KDTree(lats, lons)

    tlats, tlons = _random_grid(rng, (5, 6))
    I, J = tree.get_nearest_neighbour_grid(tlats, tlons)
    assert I.shape == tlats.shape and J.shape == tlats.shape
    for idx in np.ndindex(tlats.shape):
        assert (I[idx], J[idx]) == tree.get_nearest_neighbour(tlats[idx], tlons[idx])


def test_agrees_with_sklearn_kdtree():
    """Independent check: same nearest distances as scikit-learn's KDTree."""
    sk_neighbors = pytest.importorskip("sklearn.neighbors")
    rng = np.random.default_rng(11)
    lats, lons = _random_grid(rng, (20, 20))
    tree = KDTree(lats, lons)

    points = np.column_stack([lons.ravel(), lats.ravel()])
    sk_tree = sk_neighbors.KDTree(points, metric="euclidean")
    queries = np.column_stack([rng.uniform(-30, 40, 100), rng.uniform(-60, 70, 100)])
    dist, _ = sk_tree.query(queries, k=1)

    for (lon, lat), d in zip(queries, dist[:, 0]):
        i, j = tree.get_nearest_neighbour(lat, lon)
        ours = np.hypot(lons[i, j] - lon, lats[i, j] - lat)
        assert ours == pytest.approx(d)
