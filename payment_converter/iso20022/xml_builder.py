"""Streaming XML writer that validates every name and value before writing.

Escaping is left to :class:`xml.sax.saxutils.XMLGenerator` at the point of
writing; callers never build markup by string substitution.
"""
from __future__ import annotations

import io
import logging
import re
from enum import Enum
from typing import IO, Dict, List, Optional
from xml.sax.saxutils import XMLGenerator

import defusedxml.ElementTree as SafeET

from ..errors import SecurityViolation, UsageError
from ..security import InjectionPolicy, sanitize_for_logging
from ..settings import MAX_TEXT_LENGTH

__all__ = ["BuilderState", "SecureXmlBuilder", "secure_parse_xml"]

logger = logging.getLogger(__name__)
SECURITY_LOGGER = logging.getLogger("payment_converter.security.audit")

_NAME_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9._-]*$")
_CONTROL_CHARS_RE = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]")
_INDENT = "  "


class BuilderState(Enum):
    NOT_STARTED = "not_started"
    OPEN = "open"
    ENDED = "ended"


class _Pending:
    """An element on the open stack."""

    __slots__ = ("name", "attrs", "written", "has_children")

    def __init__(self, name: str) -> None:
        self.name = name
        self.attrs: Dict[str, str] = {}
        self.written = False
        self.has_children = False


class SecureXmlBuilder:
    """Element-by-element XML writer with an explicit state machine.

    ``NOT_STARTED -> OPEN -> ENDED``. Starting twice, ending before starting
    and ending twice raise :class:`UsageError`. Invalid names or values raise
    :class:`SecurityViolation` before anything about them reaches the stream.

    Start tags are held back until the first child, text or end so that
    attributes can still be added after :meth:`start_element`.

    Use as a context manager; :meth:`close` releases the writer exactly once.
    """

    def __init__(
        self,
        stream: Optional[IO] = None,
        *,
        policy: Optional[InjectionPolicy] = None,
        max_text_length: int = MAX_TEXT_LENGTH,
        indent: bool = True,
    ) -> None:
        self._owns_stream = stream is None
        self._stream: IO = stream if stream is not None else io.StringIO()
        self._gen = XMLGenerator(self._stream, encoding="utf-8", short_empty_elements=False)
        self._policy = policy or InjectionPolicy()
        self._max_text_length = max_text_length
        self._indent = indent
        self._stack: List[_Pending] = []
        self._state = BuilderState.NOT_STARTED
        self._closed = False

    # ------------------------------------------------------------------
    # context manager
    # ------------------------------------------------------------------
    def __enter__(self) -> "SecureXmlBuilder":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    @property
    def state(self) -> BuilderState:
        return self._state

    @property
    def depth(self) -> int:
        return len(self._stack)

    # ------------------------------------------------------------------
    # document
    # ------------------------------------------------------------------
    def start_document(self) -> "SecureXmlBuilder":
        if self._state is not BuilderState.NOT_STARTED:
            raise UsageError("Document has already been started")
        self._gen.startDocument()
        self._state = BuilderState.OPEN
        return self

    def end_document(self) -> "SecureXmlBuilder":
        if self._state is BuilderState.NOT_STARTED:
            raise UsageError("Document has not been started")
        if self._state is BuilderState.ENDED:
            raise UsageError("Document has already been ended")
        while self._stack:
            self.end_element()
        self._whitespace("\n")
        self._gen.endDocument()
        self._state = BuilderState.ENDED
        return self

    # ------------------------------------------------------------------
    # elements
    # ------------------------------------------------------------------
    def start_element(self, name: str) -> "SecureXmlBuilder":
        self._require_open()
        self._validate_name(name)
        if self._stack:
            parent = self._stack[-1]
            self._flush(parent)
            parent.has_children = True
            self._whitespace("\n" + _INDENT * len(self._stack))
        self._stack.append(_Pending(name))
        return self

    def add_attribute(self, name: str, value: str) -> "SecureXmlBuilder":
        self._require_open()
        if not self._stack or self._stack[-1].written:
            raise UsageError("Attributes must be added directly after start_element")
        self._validate_name(name)
        self._validate_value(value, f"attribute {name}")
        self._stack[-1].attrs[name] = value if value is not None else ""
        return self

    def add_text(self, text: Optional[str]) -> "SecureXmlBuilder":
        self._require_open()
        if not self._stack:
            raise UsageError("Text must be written inside an element")
        self._validate_value(text, f"text of {self._stack[-1].name}")
        if text is not None and text.strip():
            self._flush(self._stack[-1])
            self._gen.characters(text)
        return self

    def add_element(self, name: str, text: Optional[str]) -> "SecureXmlBuilder":
        """Write ``<name>text</name>``; both are validated before writing."""
        self._require_open()
        self._validate_name(name)
        self._validate_value(text, name)
        return self.start_element(name).add_text(text).end_element()

    def end_element(self) -> "SecureXmlBuilder":
        self._require_open()
        if not self._stack:
            raise UsageError("No open element to end")
        element = self._stack[-1]
        self._flush(element)
        self._stack.pop()
        if element.has_children:
            self._whitespace("\n" + _INDENT * len(self._stack))
        self._gen.endElement(element.name)
        return self

    # ------------------------------------------------------------------
    # output
    # ------------------------------------------------------------------
    def getvalue(self) -> str:
        """Document text, for builders writing to their own in-memory buffer."""
        if not isinstance(self._stream, io.StringIO):
            raise UsageError("getvalue() is only available for in-memory builders")
        if self._state is not BuilderState.ENDED:
            logger.warning("Reading XML before the document was ended")
        return self._stream.getvalue()

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            self._stream.flush()
        finally:
            # in-memory buffers stay readable through getvalue()
            if self._owns_stream and not isinstance(self._stream, io.StringIO):
                self._stream.close()
        logger.debug("Closed XML builder")

    # ------------------------------------------------------------------
    # internals
    # ------------------------------------------------------------------
    def _require_open(self) -> None:
        if self._closed:
            raise UsageError("Builder has been closed")
        if self._state is BuilderState.NOT_STARTED:
            raise UsageError("Document has not been started")
        if self._state is BuilderState.ENDED:
            raise UsageError("Document has already been ended")

    def _flush(self, element: _Pending) -> None:
        if not element.written:
            self._gen.startElement(element.name, element.attrs)
            element.written = True

    def _whitespace(self, text: str) -> None:
        if self._indent:
            self._gen.ignorableWhitespace(text)

    def _validate_name(self, name: Optional[str]) -> None:
        if name is None or not name.strip():
            raise SecurityViolation("Element name cannot be null or empty", category="xml_name")
        if name.lower() == "xml" or ":" in name:
            SECURITY_LOGGER.warning(
                "Reserved XML name rejected: %s",
                sanitize_for_logging(name),
                extra={"event": "xml_name_rejected", "category": "xml_name"},
            )
            raise SecurityViolation("Reserved XML element name", category="xml_name", field=name)
        if not _NAME_RE.match(name):
            SECURITY_LOGGER.warning(
                "Invalid XML name rejected: %s",
                sanitize_for_logging(name),
                extra={"event": "xml_name_rejected", "category": "xml_name"},
            )
            raise SecurityViolation("Invalid XML element name", category="xml_name", field=name)

    def _validate_value(self, value: Optional[str], context: str) -> None:
        if value is None:
            return
        if _CONTROL_CHARS_RE.search(value):
            SECURITY_LOGGER.warning(
                "Control characters in %s", context, extra={"event": "xml_value_rejected", "category": "xml_value"}
            )
            raise SecurityViolation("Text contains invalid control characters", category="xml_value", field=context)
        if len(value) > self._max_text_length:
            SECURITY_LOGGER.warning(
                "Over-long text in %s (%d chars)",
                context,
                len(value),
                extra={"event": "xml_value_rejected", "category": "xml_value"},
            )
            raise SecurityViolation("Text content exceeds maximum length", category="xml_value", field=context)
        self._policy.check(value, context)


def secure_parse_xml(text: str | bytes):
    """Parse XML with DTDs, entity declarations and external references refused."""
    return SafeET.fromstring(text, forbid_dtd=True, forbid_entities=True, forbid_external=True)
