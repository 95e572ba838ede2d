"""
Service name and version, shared by the API, the health check and the CLI.

The version lives only in pyproject.toml. A source checkout reads it from
there; an installed package falls back to its distribution metadata.
"""

from __future__ import annotations

import tomllib
from importlib import metadata
from pathlib import Path

__all__ = ["VERSION", "APP_NAME"]

APP_NAME = "MarketCycle"
_DIST_NAME = "marketcycle"
_PYPROJECT = Path(__file__).resolve().parent.parent / "pyproject.toml"


def _read_version() -> str:
    try:
        with _PYPROJECT.open("rb") as fh:
            return tomllib.load(fh)["project"]["version"]
    except (OSError, KeyError, tomllib.TOMLDecodeError):
        pass
    try:
        return metadata.version(_DIST_NAME)
    except metadata.PackageNotFoundError:
        return "0.0.0"


VERSION = _read_version()
