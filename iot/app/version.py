from __future__ import annotations

import tomllib
from importlib import metadata
from pathlib import Path


_DIST_NAME = "agrimaan-iot-service"


def get_version() -> str:
    """Return the service version.

    Prefer installed distribution metadata; fall back to pyproject.toml for a
    source checkout that was never installed.
    """

    try:
        return metadata.version(_DIST_NAME)
    except metadata.PackageNotFoundError:
        pass

    pyproject = Path(__file__).resolve().parents[2] / "pyproject.toml"
    if not pyproject.exists():
        return "0.0.0"

    try:
        data = tomllib.loads(pyproject.read_text("utf-8"))
    except (OSError, tomllib.TOMLDecodeError):
        return "0.0.0"
    v = (data.get("project") or {}).get("version")
    return str(v) if v else "0.0.0"


__version__ = get_version()
