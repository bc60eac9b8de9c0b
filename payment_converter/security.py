"""Input/output guards: size limits, path containment, injection heuristics and
message sanitising.

The injection and path checks are blocklist heuristics. Both are exposed as
policy objects so callers can swap the pattern sets or the allowed roots
without touching the parsers or the XML builder.
"""
from __future__ import annotations

import logging
import os
import re
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Mapping, Optional, Tuple, Union

from .errors import SecurityViolation
from .settings import DEFAULT_MAX_FILE_BYTES, DEFAULT_MAX_LINES, default_allowed_roots

__all__ = [
    "DEFAULT_INJECTION_PATTERNS",
    "InjectionPolicy",
    "PathPolicy",
    "create_secure_temp_file",
    "is_filename_safe",
    "sanitize_error_message",
    "sanitize_for_logging",
    "validate_file",
]

SECURITY_LOGGER = logging.getLogger("payment_converter.security.audit")

PathLike = Union[str, "os.PathLike[str]"]

# ---------------------------------------------------------------------------
# Injection heuristics
# ---------------------------------------------------------------------------

DEFAULT_INJECTION_PATTERNS: Mapping[str, Tuple[str, ...]] = {
    "sql": ("' or ", "union select", "drop table", "insert into"),
    "script": ("<script", "javascript:", "vbscript:", "onload="),
    "command": ("cmd.exe", "/bin/sh", "powershell", "$("),
}


@dataclass(frozen=True)
class InjectionPolicy:
    """Case-insensitive substring blocklist grouped by category."""

    patterns: Mapping[str, Tuple[str, ...]] = field(
        default_factory=lambda: dict(DEFAULT_INJECTION_PATTERNS)
    )

    def find(self, value: Optional[str]) -> Optional[str]:
        """Return the category of the first matching pattern, or ``None``."""
        if not value:
            return None
        lowered = value.lower()
        for category, needles in self.patterns.items():
            for needle in needles:
                if needle.lower() in lowered:
                    return category
        return None

    def check(self, value: Optional[str], field_name: str = "input") -> None:
        """Raise :class:`SecurityViolation` when *value* matches a pattern."""
        category = self.find(value)
        if category is None:
            return
        SECURITY_LOGGER.warning(
            "%s injection attempt detected in %s",
            category.upper(),
            sanitize_for_logging(field_name),
            extra={"event": "injection_detected", "category": category},
        )
        raise SecurityViolation("Invalid input detected", category=category, field=field_name)


# ---------------------------------------------------------------------------
# Paths
# ---------------------------------------------------------------------------

# ``..`` as a whole segment, on either separator style.
_TRAVERSAL_RE = re.compile(r"(?:^|[/\\])\.\.(?:[/\\]|$)")
_SAFE_FILENAME_RE = re.compile(r"^[a-zA-Z0-9._-]+$")


def _is_within(path: Path, root: Path) -> bool:
    try:
        path.relative_to(root)
    except ValueError:
        return False
    return True


@dataclass(frozen=True)
class PathPolicy:
    """Reject traversal-shaped paths and anything outside ``allowed_roots``.

    The raw string is pattern-checked before canonicalisation and the resolved
    path is containment-checked after it; either check alone can be fooled by
    symlinks or mixed separators.
    """

    allowed_roots: Tuple[Path, ...] = field(default_factory=default_allowed_roots)

    def validate(self, raw_path: Optional[PathLike]) -> Path:
        raw = os.fspath(raw_path) if raw_path is not None else ""
        if not raw.strip():
            raise SecurityViolation("File path cannot be null or empty", category="path")

        if _TRAVERSAL_RE.search(raw):
            SECURITY_LOGGER.warning(
                "Path traversal attempt detected: %s",
                sanitize_for_logging(raw),
                extra={"event": "path_traversal", "category": "path"},
            )
            raise SecurityViolation("Path traversal detected in file path", category="path")

        canonical = Path(raw).expanduser().resolve()
        roots = [Path(r).resolve() for r in self.allowed_roots]
        if not any(_is_within(canonical, root) for root in roots):
            SECURITY_LOGGER.warning(
                "Access attempt outside allowed directories: %s",
                sanitize_for_logging(str(canonical)),
                extra={"event": "path_outside_roots", "category": "path"},
            )
            raise SecurityViolation("File access outside allowed directories", category="path")

        SECURITY_LOGGER.debug("Path validation successful: %s", sanitize_for_logging(str(canonical)))
        return canonical


def is_filename_safe(filename: Optional[str]) -> bool:
    """True for plain names made of ``[A-Za-z0-9._-]`` other than ``.``/``..``."""
    if filename is None or not filename.strip():
        return False
    trimmed = filename.strip()
    if trimmed in (".", ".."):
        return False
    safe = bool(_SAFE_FILENAME_RE.match(trimmed))
    if not safe:
        SECURITY_LOGGER.warning("Unsafe filename detected: %s", sanitize_for_logging(filename))
    return safe


def create_secure_temp_file(directory: Path, prefix: str, suffix: str) -> Path:
    """Create an owner-only temp file in *directory* and return its path."""
    if not is_filename_safe(prefix) or not is_filename_safe(suffix):
        raise SecurityViolation("Invalid characters in temporary file name", category="path")
    fd, name = tempfile.mkstemp(prefix=prefix, suffix=suffix, dir=directory)
    os.close(fd)
    path = Path(name)
    try:
        os.chmod(path, 0o600)
    except OSError:
        # platforms without POSIX modes keep mkstemp's defaults
        SECURITY_LOGGER.info("POSIX permissions not supported, using default file permissions")
    return path


# ---------------------------------------------------------------------------
# Files
# ---------------------------------------------------------------------------


def validate_file(
    path: Path,
    *,
    max_file_bytes: int = DEFAULT_MAX_FILE_BYTES,
    max_lines: int = DEFAULT_MAX_LINES,
) -> None:
    """Check existence, byte size and line count of *path* before reading it."""
    if not path.is_file():
        raise SecurityViolation("File does not exist", category="path")

    size = path.stat().st_size
    if size > max_file_bytes:
        SECURITY_LOGGER.warning(
            "File size exceeds limit: %d bytes", size, extra={"event": "file_too_large", "category": "size"}
        )
        raise SecurityViolation("File size exceeds maximum allowed size", category="size")

    lines = 0
    with path.open("rb") as fh:
        for _ in fh:
            lines += 1
            if lines > max_lines:
                SECURITY_LOGGER.warning(
                    "File line count exceeds limit of %d lines",
                    max_lines,
                    extra={"event": "too_many_lines", "category": "size"},
                )
                raise SecurityViolation("File contains too many lines", category="size")

    SECURITY_LOGGER.debug("File content validation successful: %s", sanitize_for_logging(path.name))


# ---------------------------------------------------------------------------
# Sanitising
# ---------------------------------------------------------------------------

_SANITIZE_RULES: Tuple[Tuple[re.Pattern[str], str], ...] = (
    (re.compile(r"Traceback \(most recent call last\):"), ""),
    (re.compile(r'File "[^"]*", line \d+(?:, in \S+)?'), ""),
    (re.compile(r"(?i)at\s+[\w.$]+\([^)]*\)"), ""),
    (re.compile(r"(?i)caused by:.*"), ""),
    (re.compile(r"(?i)[a-z]:\\[^\s]*"), "[PATH]"),
    (re.compile(r"/[^\s]*"), "[PATH]"),
    (re.compile(r"\b\d{1,3}\.\d{1,3}\.\d{1,3}\.\d{1,3}\b"), "[IP]"),
    (re.compile(r"(?i)password[^\s]*"), "[PASSWORD]"),
    (re.compile(r"(?i)token[^\s]*"), "[TOKEN]"),
)
_WS_RE = re.compile(r"\s+")
_LOG_CONTROL_RE = re.compile(r"[\x00-\x1f\x7f]")


def sanitize_error_message(message: Optional[str]) -> str:
    """Strip paths, addresses, credentials and stack frames from *message*."""
    if message is None:
        return "An unknown error occurred"
    sanitized = message
    for pattern, replacement in _SANITIZE_RULES:
        sanitized = pattern.sub(replacement, sanitized)
    sanitized = _WS_RE.sub(" ", sanitized).strip()
    return sanitized or "A processing error occurred"


def sanitize_for_logging(text: Optional[str]) -> str:
    """Single-line, control-free, at most 200 characters."""
    if text is None:
        return "[null]"
    cleaned = re.sub(r"[\r\n]", "_", text).replace("\t", " ")
    return _LOG_CONTROL_RE.sub("?", cleaned)[:200]
