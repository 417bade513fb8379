"""
Environment assembly for the checkout configuration.

Values come from three layers: the process environment, an optional ``.env``
file and explicit overrides. The result is a plain mapping that
:class:`checkout_payments.core.config.CheckoutConfig` knows how to read.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Mapping, MutableMapping, Optional

ENV_PREFIX = "CHECKOUT_"


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


def load_env_file(
    path: str = ".env",
    *,
    environ: Optional[MutableMapping[str, str]] = None,
) -> Dict[str, str]:
    """
    Merge ``path`` into ``environ`` without clobbering keys that are already set.
    """
    target: MutableMapping[str, str] = environ if environ is not None else os.environ
    for key, value in _parse_env_file(Path(path)).items():
        target.setdefault(key, value)
    return dict(target)


@dataclass(frozen=True)
class CheckoutEnvironment:
    variables: Mapping[str, str]

    def get(self, key: str, default: Optional[str] = None) -> Optional[str]:
        value = self.variables.get(key)
        if value is None or value == "":
            return default
        return value

    def checkout_keys(self) -> Dict[str, str]:
        """Only the ``CHECKOUT_*`` entries, handy for diagnostics."""
        return {k: v for k, v in self.variables.items() if k.startswith(ENV_PREFIX)}


def build_environment(
    *,
    env_file: Optional[str] = ".env",
    base: Optional[Mapping[str, str]] = None,
    overrides: Optional[Mapping[str, str]] = None,
) -> CheckoutEnvironment:
    """
    Layer ``base`` (default :data:`os.environ`), ``env_file`` and ``overrides``.

    The file never replaces a key already present in ``base``; ``overrides``
    always win.
    """
    merged: Dict[str, str] = dict(os.environ if base is None else base)

    if env_file is not None:
        for key, value in _parse_env_file(Path(env_file)).items():
            merged.setdefault(key, value)

    if overrides:
        merged.update(overrides)

    return CheckoutEnvironment(variables=merged)
