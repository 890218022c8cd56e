# tests/test_field.py
import numpy as np
import pytest

from ENScalPy.core import ConfigurationError
from ENScalPy.field import PRECIP, T, GriddedFile, field_nan_report


def _file(n_ens=2, n_time=2):
    lats = np.array([60.0, 61.0, 62.0])
    lons = np.array([5.0, 6.0])
    elevs = np.array([[0.0, 10.0], [20.0, 30.0], [40.0, 50.0]])
    return GriddedFile(lats, lons, elevs, n_ens=n_ens, n_time=n_time, name="toy")


# ---------------------------------------------------------------------
# Geometry
# ---------------------------------------------------------------------


def test_vectors_expand_to_grid():
    f = _file()
    assert (f.num_lat, f.num_lon, f.num_ens, f.num_time) == (3, 2, 2, 2)
    assert f.field_shape == (3, 2, 2)
    assert f.get_lats()[2, 0] == 62.0
    assert f.get_lons()[2, 1] == 6.0

    loc = f.get_location(1, 1)
    assert (loc.lat, loc.lon, loc.elev) == (61.0, 6.0, 30.0)


def test_missing_elevations_by_default():
    f = GriddedFile([[0.0]], [[0.0]])
    assert np.isnan(f.get_elevs()).all()
    f.set_elevs([[12.0]])
    assert f.get_elevs()[0, 0] == 12.0


def test_bad_geometry_raises():
    with pytest.raises(ConfigurationError):
        GriddedFile(np.zeros((2, 2)), np.zeros((3, 2)))
    with pytest.raises(ConfigurationError):
        GriddedFile(np.zeros((2, 2)), np.zeros((2, 2)), np.zeros((2, 3)))
    with pytest.raises(ConfigurationError):
        GriddedFile(np.zeros((2, 2)), np.zeros((2, 2)), n_ens=0)


# ---------------------------------------------------------------------
# Fields
# ---------------------------------------------------------------------


def test_add_and_get_field():
    f = _file()
    assert not f.has_field(T, 0)
    with pytest.raises(KeyError):
        f.get_field(T, 0)

    values = f.get_empty_field(fill=1.5)
    f.add_field(values, T, 1)
    values[0, 0, 0] = -99.0  # stored copy is unaffected
    assert f.has_field(T, 1)
    assert (f.get_field(T, 1) == 1.5).all()


def test_add_field_validates_time_and_shape():
    f = _file()
    with pytest.raises(ConfigurationError):
        f.add_field(f.get_empty_field(), T, 2)
    with pytest.raises(ConfigurationError):
        f.add_field(np.zeros((3, 2, 3)), T, 0)


def test_from_array_and_to_array():
    data = np.arange(3 * 2 * 2 * 2, dtype=float).reshape(3, 2, 2, 2)
    f = GriddedFile.from_array(PRECIP, data, [60.0, 61.0, 62.0], [5.0, 6.0])
    assert f.num_ens == 2 and f.num_time == 2
    np.testing.assert_array_equal(f.get_field(PRECIP, 1), data[:, :, :, 1])
    np.testing.assert_array_equal(f.to_array(PRECIP), data)

    with pytest.raises(ConfigurationError):
        GriddedFile.from_array(PRECIP, np.zeros((3, 2, 2)), [0, 1, 2], [0, 1])


def test_to_dataframe_long_format():
    data = np.zeros((3, 2, 2, 1))
    data[2, 1, 1, 0] = 7.0
    f = GriddedFile.from_array(T, data, [60.0, 61.0, 62.0], [5.0, 6.0])
    df = f.to_dataframe(T)
    assert list(df.columns) == [
        "time", "i", "j", "latitude", "longitude", "altitude", "member", "value"
    ]
    assert len(df) == 3 * 2 * 2
    row = df[df["value"] == 7.0].iloc[0]
    assert (row["i"], row["j"], row["member"]) == (2, 1, 1)
    assert (row["latitude"], row["longitude"]) == (62.0, 6.0)


def test_field_nan_report():
    f = _file(n_ens=2, n_time=2)
    first = f.get_empty_field(fill=0.0)
    first[0, 0, 1] = np.nan
    first[2, 1, :] = np.nan
    f.add_field(first, PRECIP, 0)
    f.add_field(f.get_empty_field(fill=1.0), PRECIP, 1)

    report = field_nan_report(f, PRECIP)
    assert report["n_missing"].tolist() == [3, 0]
    assert report["n_incomplete"].tolist() == [2, 0]
    assert report["n_cells"].tolist() == [6, 6]
