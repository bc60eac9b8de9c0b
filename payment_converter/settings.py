"""Runtime limits and policies, read from the environment at call time.

Nothing here is cached at import so tests can ``monkeypatch.setenv`` per case.
"""
from __future__ import annotations

import os
import tempfile
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Tuple

__all__ = [
    "ControlTotalsPolicy",
    "ConverterSettings",
    "DEFAULT_MAX_FILE_BYTES",
    "DEFAULT_MAX_LINES",
    "MAX_TEXT_LENGTH",
    "default_allowed_roots",
]

DEFAULT_MAX_FILE_BYTES = 50 * 1024 * 1024
DEFAULT_MAX_LINES = 1_000_000
MAX_TEXT_LENGTH = 10_000


class ControlTotalsPolicy(str, Enum):
    """What to do when NACHA control records disagree with the entries."""

    IGNORE = "ignore"
    WARN = "warn"
    STRICT = "strict"


def _get_int(name: str, default: int) -> int:
    try:
        return int(os.getenv(name, str(default)))
    except ValueError:
        return default


def default_allowed_roots() -> Tuple[Path, ...]:
    """User home and system temp dir, canonicalised."""
    return (
        Path.home().resolve(),
        Path(tempfile.gettempdir()).resolve(),
    )


def _allowed_roots_from_env() -> Tuple[Path, ...]:
    raw = os.getenv("PAYCONV_ALLOWED_DIRS", "")
    roots = tuple(Path(p).expanduser().resolve() for p in raw.split(os.pathsep) if p.strip())
    return roots or default_allowed_roots()


def _control_totals_from_env() -> ControlTotalsPolicy:
    raw = os.getenv("PAYCONV_CONTROL_TOTALS", ControlTotalsPolicy.WARN.value).strip().lower()
    try:
        return ControlTotalsPolicy(raw)
    except ValueError:
        return ControlTotalsPolicy.WARN


@dataclass(frozen=True, slots=True)
class ConverterSettings:
    """Limits applied to one conversion.

    Attributes
    ----------
    max_file_bytes
        Input files above this size are rejected before being read.
    max_lines
        Input files with more lines are rejected before parsing.
    allowed_roots
        Canonical directories input and output paths must live under.
    control_totals
        Reconciliation policy for NACHA batch / file control records.
    """

    max_file_bytes: int = DEFAULT_MAX_FILE_BYTES
    max_lines: int = DEFAULT_MAX_LINES
    allowed_roots: Tuple[Path, ...] = field(default_factory=default_allowed_roots)
    control_totals: ControlTotalsPolicy = ControlTotalsPolicy.WARN

    @classmethod
    def from_env(cls) -> "ConverterSettings":
        return cls(
            max_file_bytes=_get_int("PAYCONV_MAX_FILE_BYTES", DEFAULT_MAX_FILE_BYTES),
            max_lines=_get_int("PAYCONV_MAX_LINES", DEFAULT_MAX_LINES),
            allowed_roots=_allowed_roots_from_env(),
            control_totals=_control_totals_from_env(),
        )
