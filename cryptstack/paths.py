from __future__ import annotations

import os
from pathlib import Path

_DEFAULT_BASE = "/var/lib/cryptstack"


def _expand(path: str) -> str:
    candidate = Path(path).expanduser()
    try:
        return str(candidate.resolve())
    except FileNotFoundError:
        return str(candidate)


def base_path() -> str:
    """Return the base directory for cryptstack logs.

    The location can be overridden via the ``CRYPTSTACK_BASE_PATH``
    environment variable.
    """

    override = os.environ.get("CRYPTSTACK_BASE_PATH")
    if override:
        return _expand(override)
    return _expand(_DEFAULT_BASE)


def logs_dir() -> str:
    return str(Path(base_path()) / "logs")


def lv_path(vg: str, lv: str) -> str:
    return f"/dev/{vg}/{lv}"


def luks_name(prefix: str, lv: str) -> str:
    """Device-mapper name used when opening the LUKS volume on ``lv``."""

    return f"{prefix}-{lv}"


def mapper_path(name: str) -> str:
    return f"/dev/mapper/{name}"
