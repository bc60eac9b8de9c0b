"""Exception taxonomy for the converter.

Content errors may be recovered by the caller, security violations never are,
and usage errors signal a programming mistake in how the XML builder is driven.
"""
from __future__ import annotations

__all__ = [
    "ConversionError",
    "ContentError",
    "ParseError",
    "ControlTotalsMismatch",
    "SecurityViolation",
    "UnsupportedFormatError",
    "UsageError",
]


class ConversionError(Exception):
    """Base class for every failure reported through a ``ConversionResult``."""


class ContentError(ConversionError):
    """Source data is malformed beyond what a defaulting rule can absorb."""


class ParseError(ContentError):
    """Structural parse failure (empty input, missing required tags)."""


class ControlTotalsMismatch(ContentError):
    """NACHA control record disagrees with totals computed from entries."""

    def __init__(self, mismatches: list[str]) -> None:
        self.mismatches = list(mismatches)
        super().__init__("Control totals mismatch: " + "; ".join(self.mismatches))


class SecurityViolation(ConversionError):
    """Input, path or XML content rejected by a security check.

    ``category`` names the check that fired (``sql``, ``script``, ``command``,
    ``path``, ``size``, ``xml_name``, ``xml_value``).
    """

    def __init__(self, message: str, *, category: str = "generic", field: str | None = None) -> None:
        super().__init__(message)
        self.category = category
        self.field = field


class UnsupportedFormatError(ConversionError):
    """Declared input format is neither ``MT103`` nor ``NACHA``."""

    def __init__(self, input_format: str | None) -> None:
        self.input_format = input_format
        super().__init__(f"Unsupported input format: {input_format}")


class UsageError(RuntimeError):
    """The XML builder API was called out of order."""
