"""
Utilities for building the environment used to configure the client.

Values come from three layers: the process environment, an optional ``.env``
file, and explicit overrides. Only keys with the ``OPEN_PAYMENTS_`` prefix are
kept, so unrelated variables never leak into the configuration.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Mapping, MutableMapping, Optional

__all__ = ["ENV_PREFIX", "ClientEnvironment", "build_environment", "load_env_file"]

ENV_PREFIX = "OPEN_PAYMENTS_"


def _unquote(value: str) -> str:
    if len(value) >= 2 and value[0] == value[-1] and value[0] in ("'", '"'):
        return value[1:-1]
    return value


def _parse_env_file(path: Path) -> Dict[str, str]:
    values: Dict[str, str] = {}
    try:
        data = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        return values

    for raw_line in data.splitlines():
        line = raw_line.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        if line.startswith("export "):
            line = line[len("export "):].lstrip()
        key, value = line.split("=", 1)
        values[key.strip()] = _unquote(value.strip())
    return values


def _with_prefix(values: Mapping[str, str]) -> Dict[str, str]:
    return {key: value for key, value in values.items() if key.startswith(ENV_PREFIX)}


def load_env_file(
    path: str = ".env",
    *,
    environ: Optional[MutableMapping[str, str]] = None,
) -> Dict[str, str]:
    """
    Copy the ``OPEN_PAYMENTS_*`` entries of ``path`` into ``environ``.

    Keys already present are left alone. Returns the prefixed view of the
    merged mapping.
    """
    target: MutableMapping[str, str] = environ if environ is not None else os.environ
    for key, value in _with_prefix(_parse_env_file(Path(path))).items():
        target.setdefault(key, value)
    return _with_prefix(target)


@dataclass(frozen=True)
class ClientEnvironment:
    """The resolved ``OPEN_PAYMENTS_*`` variables."""

    variables: Mapping[str, str]

    def get(self, key: str, default: Optional[str] = None) -> Optional[str]:
        return self.variables.get(key, default)


def build_environment(
    *,
    env_file: Optional[str] = ".env",
    base: Optional[Mapping[str, str]] = None,
    overrides: Optional[Mapping[str, str]] = None,
) -> ClientEnvironment:
    """
    Assemble a :class:`ClientEnvironment` from ``base`` (default
    :data:`os.environ`), then ``env_file`` for keys not set yet, then
    ``overrides``, which always win. Pass ``env_file=None`` to skip the file.
    """
    merged: Dict[str, str] = _with_prefix(os.environ if base is None else base)

    if env_file is not None:
        for key, value in _with_prefix(_parse_env_file(Path(env_file))).items():
            merged.setdefault(key, value)

    if overrides:
        merged.update(overrides)

    return ClientEnvironment(variables=merged)
