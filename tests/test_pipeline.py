import json
import warnings

import numpy as np
import pytest

from ENScalPy.calibrator import CalibratorQq, CalibratorRegression
from ENScalPy.core import CalibrationWarning, ConfigurationError
from ENScalPy.field import T, GriddedFile
from ENScalPy.parameters import ParameterFile
from ENScalPy.pipeline import (
    PostprocessConfig,
    SchemeConfig,
    build_calibrators,
    run_postprocess,
)


# ---------------------------------------------------------------------
# Synthetic toy grids
# ---------------------------------------------------------------------


@pytest.fixture
def coarse() -> GriddedFile:
    """
    4x4 coarse grid, 2 members, 2 lead times.

    Values are a linear lapse of -0.01 per metre on top of 20 (member 0)
    or 22 (member 1).
    """
    axis = np.array([0.0, 1.0, 2.0, 3.0])
    elevs = np.arange(16, dtype=float).reshape(4, 4) * 100.0
    values = np.empty((4, 4, 2, 2))
    values[:, :, 0, :] = (20.0 - 0.01 * elevs)[:, :, None]
    values[:, :, 1, :] = (22.0 - 0.01 * elevs)[:, :, None]
    return GriddedFile.from_array(T, values, axis, axis, elevs, name="coarse")


@pytest.fixture
def fine() -> GriddedFile:
    axis = np.linspace(0.0, 3.0, 7)
    lons, lats = np.meshgrid(axis, axis)
    return GriddedFile(lats, lons, np.full(lats.shape, 50.0), n_ens=2, n_time=2, name="fine")


# ---------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------


def test_config_json_roundtrip(tmp_path):
    config = PostprocessConfig(
        variable=T,
        calibrators=(
            SchemeConfig("qq", {"extrapolation": "zero"}, parameters="qq"),
            SchemeConfig("regression", parameters="reg.txt", location_dependent=True),
        ),
        downscaler=SchemeConfig("gradient", {"search_radius": 2}),
    )
    path = config.save(str(tmp_path / "cfg" / "postprocess.json"))
    with open(path, "r", encoding="utf-8") as f:
        raw = json.load(f)
    assert raw["variable"] == T
    assert raw["downscaler"]["options"] == {"search_radius": 2}

    again = PostprocessConfig.load(path)
    assert again == config


def test_config_without_downscaler(tmp_path):
    path = tmp_path / "cfg.json"
    path.write_text(json.dumps({"variable": T, "calibrators": [{"name": "regression"}]}))
    config = PostprocessConfig.load(str(path))
    assert config.downscaler is None
    assert config.calibrators[0].options == {}
    assert config.calibrators[0].parameters is None


def test_invalid_config_raises(tmp_path):
    path = tmp_path / "cfg.json"
    path.write_text(json.dumps({"calibrators": []}))
    with pytest.raises(ConfigurationError):
        PostprocessConfig.load(str(path))


# ---------------------------------------------------------------------
# Building steps
# ---------------------------------------------------------------------


def test_build_calibrators_from_mapping_and_path(tmp_path):
    reg_path = tmp_path / "reg.txt"
    reg_path.write_text("0 0.3\n")
    config = PostprocessConfig(
        variable=T,
        calibrators=(
            SchemeConfig("qq", {"extrapolation": "meanSlope"}, parameters="qq"),
            SchemeConfig("regression", parameters=str(reg_path)),
        ),
    )
    qq_file = ParameterFile({0: [0.0, 0.0, 10.0, 10.0]})
    calibrators = build_calibrators(config, {"qq": qq_file})

    assert isinstance(calibrators[0], CalibratorQq)
    assert calibrators[0].parameter_file is qq_file
    assert calibrators[0].variable == T
    assert isinstance(calibrators[1], CalibratorRegression)
    assert calibrators[1].parameter_file.num_parameters == 1


@pytest.mark.parametrize("parameters", [None, "does-not-exist.txt"])
def test_missing_parameter_file_raises(parameters):
    config = PostprocessConfig(
        variable=T, calibrators=(SchemeConfig("regression", parameters=parameters),)
    )
    with pytest.raises(ConfigurationError):
        build_calibrators(config)


# ---------------------------------------------------------------------
# End to end
# ---------------------------------------------------------------------


def test_calibrate_in_place(coarse):
    config = PostprocessConfig(
        variable=T, calibrators=(SchemeConfig("regression", parameters="reg"),)
    )
    summaries = run_postprocess(
        coarse, config=config, parameter_files={"reg": ParameterFile({0: [1.0, 2.0]})}
    )
    assert len(summaries) == 1
    assert summaries[0].num_cells == 2 * 16
    expected = 1.0 + 2.0 * (20.0 - 0.01 * coarse.get_elevs())
    np.testing.assert_allclose(coarse.get_field(T, 1)[:, :, 0], expected)


def test_downscale_then_calibrate(coarse, fine):
    config = PostprocessConfig(
        variable=T,
        calibrators=(SchemeConfig("regression", parameters="reg"),),
        downscaler=SchemeConfig("gradient", {"search_radius": 1}),
    )
    parameter_files = {"reg": ParameterFile({0: [0.0, 1.0]})}
    with warnings.catch_warnings():
        warnings.simplefilter("error", CalibrationWarning)
        summaries = run_postprocess(
            coarse, fine, config=config, parameter_files=parameter_files
        )

    assert summaries[0].num_cells == 2 * 7 * 7
    assert summaries[0].num_calibrated == 2 * 7 * 7
    # The lapse rate is recovered exactly, so every fine point sits at 50 m
    for t in range(2):
        out = fine.get_field(T, t)
        np.testing.assert_allclose(out[:, :, 0], 19.5)
        np.testing.assert_allclose(out[:, :, 1], 21.5)


def test_downscaling_requires_output_file(coarse):
    config = PostprocessConfig(variable=T, downscaler=SchemeConfig("nearestNeighbour"))
    with pytest.raises(ConfigurationError):
        run_postprocess(coarse, config=config)


def test_invalid_scheme_fails_before_any_pass(coarse):
    before = coarse.to_array(T)
    config = PostprocessConfig(
        variable=T,
        calibrators=(
            SchemeConfig("regression", parameters="reg"),
            SchemeConfig("qq", parameters="reg"),
        ),
    )
    with pytest.raises(ConfigurationError):
        run_postprocess(
            coarse, config=config, parameter_files={"reg": ParameterFile({0: [0.3]})}
        )
    np.testing.assert_array_equal(coarse.to_array(T), before)
