# SPDX-License-Identifier: MIT
"""
Post-processing driver.

Chains an optional downscaling step and any number of calibrators for one
variable, as described by a :class:`PostprocessConfig`. The configuration is
a frozen dataclass persisted as JSON next to the parameter files, e.g.::

    {
      "variable": "precip",
      "downscaler": {"name": "gradient", "options": {"search_radius": 2}},
      "calibrators": [
        {"name": "zaga", "parameters": "zaga.txt", "options": {}}
      ]
    }

All schemes are constructed (and their parameter files read and validated)
before any grid pass starts, so a configuration error never leaves a file
half processed.
"""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

from .calibrator import CalibrationSummary, Calibrator, get_calibrator
from .core import ConfigurationError
from .downscaler import get_downscaler
from .field import GriddedFile
from .parameters import ParameterFile

__all__ = [
    "SchemeConfig",
    "PostprocessConfig",
    "build_calibrators",
    "run_postprocess",
]


def _save_json(obj: dict, path: str) -> str:
    """Persist a dictionary as a UTF-8 JSON file with indentation."""
    os.makedirs(os.path.dirname(str(path)) or ".", exist_ok=True)
    with open(path, "w", encoding="utf-8") as f:
        json.dump(obj, f, ensure_ascii=False, indent=2)
    return str(path)


@dataclass(frozen=True)
class SchemeConfig:
    """
    One calibration or downscaling step.

    Attributes
    ----------
    name :
        Scheme name (see :func:`~ENScalPy.calibrator.get_calibrator` and
        :func:`~ENScalPy.downscaler.get_downscaler`).
    options :
        Keyword arguments for the scheme's constructor.
    parameters :
        Calibrators only: key into the ``parameter_files`` mapping given to
        :func:`run_postprocess`, or else a path to a parameter text file.
    location_dependent :
        Whether the parameter text file holds per-site coefficients.
    """

    name: str
    options: Dict = field(default_factory=dict)
    parameters: Optional[str] = None
    location_dependent: bool = False

    @staticmethod
    def from_dict(d: dict) -> "SchemeConfig":
        return SchemeConfig(
            name=d["name"],
            options=dict(d.get("options", {})),
            parameters=d.get("parameters"),
            location_dependent=bool(d.get("location_dependent", False)),
        )

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "options": dict(self.options),
            "parameters": self.parameters,
            "location_dependent": self.location_dependent,
        }


@dataclass(frozen=True)
class PostprocessConfig:
    """
    Steps applied to one variable.

    Attributes
    ----------
    variable :
        Variable name in the gridded files.
    calibrators :
        Calibration steps, applied in order.
    downscaler :
        Optional downscaling step, applied first.
    """

    variable: str
    calibrators: Tuple[SchemeConfig, ...] = ()
    downscaler: Optional[SchemeConfig] = None

    @staticmethod
    def from_dict(d: dict) -> "PostprocessConfig":
        down = d.get("downscaler")
        return PostprocessConfig(
            variable=d["variable"],
            calibrators=tuple(SchemeConfig.from_dict(c) for c in d.get("calibrators", [])),
            downscaler=SchemeConfig.from_dict(down) if down else None,
        )

    def to_dict(self) -> dict:
        return {
            "variable": self.variable,
            "calibrators": [c.to_dict() for c in self.calibrators],
            "downscaler": self.downscaler.to_dict() if self.downscaler else None,
        }

    @staticmethod
    def load(path: str) -> "PostprocessConfig":
        """Load a configuration from a JSON file."""
        with open(path, "r", encoding="utf-8") as f:
            d = json.load(f)
        try:
            return PostprocessConfig.from_dict(d)
        except (KeyError, TypeError) as e:
            raise ConfigurationError(f"Invalid configuration file '{path}': {e}") from e

    def save(self, path: str) -> str:
        """Save the configuration to a JSON file."""
        return _save_json(self.to_dict(), path)


def _resolve_parameter_file(
    scheme: SchemeConfig,
    parameter_files: Dict[str, ParameterFile],
) -> ParameterFile:
    if scheme.parameters is None:
        raise ConfigurationError(f"Calibrator '{scheme.name}' needs a parameter file.")
    if scheme.parameters in parameter_files:
        return parameter_files[scheme.parameters]
    if not os.path.exists(scheme.parameters):
        raise ConfigurationError(
            f"Parameter file '{scheme.parameters}' for calibrator '{scheme.name}' not found."
        )
    return ParameterFile.load(scheme.parameters, location_dependent=scheme.location_dependent)


def build_calibrators(
    config: PostprocessConfig,
    parameter_files: Optional[Dict[str, ParameterFile]] = None,
) -> List[Calibrator]:
    """Construct every calibrator of *config* (raises on the first invalid one)."""
    parameter_files = parameter_files or {}
    out = []
    for scheme in config.calibrators:
        options = dict(scheme.options)
        options.setdefault("variable", config.variable)
        out.append(
            get_calibrator(scheme.name, _resolve_parameter_file(scheme, parameter_files), **options)
        )
    return out


def run_postprocess(
    input_file: GriddedFile,
    output_file: Optional[GriddedFile] = None,
    *,
    config: PostprocessConfig,
    parameter_files: Optional[Dict[str, ParameterFile]] = None,
) -> List[CalibrationSummary]:
    """
    Downscale (optional) and calibrate one variable.

    Parameters
    ----------
    input_file :
        Source data. Calibrated in place when there is no downscaling step.
    output_file :
        Target grid; required when *config* has a downscaler, and then the
        calibrators run on it.
    config :
        Steps to apply.
    parameter_files :
        Already loaded parameter files, keyed by the names used in
        :attr:`SchemeConfig.parameters`.

    Returns
    -------
    list of CalibrationSummary
        One per calibrator, in order.
    """
    calibrators = build_calibrators(config, parameter_files)

    target = input_file
    if config.downscaler is not None:
        if output_file is None:
            raise ConfigurationError("An output file is required when downscaling.")
        downscaler = get_downscaler(
            config.downscaler.name, config.variable, **config.downscaler.options
        )
        downscaler.downscale(input_file, output_file)
        target = output_file

    return [calibrator.calibrate(target) for calibrator in calibrators]
