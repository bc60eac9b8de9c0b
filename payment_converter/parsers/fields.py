"""Low-level field extraction shared by the format parsers.

Nothing in here knows what a payment is.
"""
from __future__ import annotations

import re
from typing import Iterator, Optional, Tuple

__all__ = ["TAG_RE", "extract_fixed", "extract_tagged"]

# ``:20:`` / ``:32A:`` followed by a value running up to the next tag or EOF.
TAG_RE = re.compile(r":(\d+[A-Z]?):(.*?)(?=:\d+[A-Z]?:|\Z)", re.DOTALL)


def extract_fixed(line: str, start: int, end: int) -> Optional[str]:
    """Return ``line[start:end]`` stripped, or ``None`` if the line is too short.

    Short lines are common in malformed exports; the caller decides whether
    that means skip or default.
    """
    if len(line) < end:
        return None
    return line[start:end].strip()


def extract_tagged(text: str) -> Iterator[Tuple[str, str]]:
    """Yield ``(tag, value)`` pairs in source order.

    Values may span several lines and are stripped. Duplicates are yielded as
    they appear.
    """
    for match in TAG_RE.finditer(text):
        yield match.group(1), match.group(2).strip()
