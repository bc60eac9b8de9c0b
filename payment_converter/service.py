"""Conversion orchestrator: validate, parse, render, write.

``ConversionService`` is the only entry point the CLI and the HTTP API use.
File conversions never leave a partial document at the output path: the XML
is rendered into an owner-only temporary file beside the target and renamed
over it only after the document is complete.
"""
from __future__ import annotations

import io
import logging
import os
import time
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, List, Optional, Tuple, Union

from pydantic import BaseModel, Field

from common.audit import log_event
from common.logging import ConversionLogAdapter
from conversion_observability.metrics import conversion_seconds, conversions_total, security_violations_total

from .errors import ConversionError, SecurityViolation, UnsupportedFormatError
from .iso20022.pain001 import Clock, SystemClock, UUID4Factory, UUIDFactory, build_pain001, render_pain001
from .models import CreditTransfer, ParseResult, PaymentBatch
from .parsers.mt103 import parse_mt103
from .parsers.nacha import parse_nacha
from .security import (
    InjectionPolicy,
    PathPolicy,
    create_secure_temp_file,
    sanitize_error_message,
    sanitize_for_logging,
    validate_file,
)
from .settings import ConverterSettings

__all__ = ["INPUT_FORMATS", "OUTPUT_FORMAT", "ConversionResult", "ConversionService", "count_records"]

logger = logging.getLogger(__name__)
SECURITY_LOGGER = logging.getLogger("payment_converter.security.audit")

SERVICE_NAME = "payment_converter"
INPUT_FORMATS = ("MT103", "NACHA")
OUTPUT_FORMAT = "pain.001.001.03"

ProgressCallback = Callable[[str], None]
Parsed = ParseResult[Union[CreditTransfer, PaymentBatch]]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _no_progress(_message: str) -> None:
    return None


def _split_lines(text: str) -> List[str]:
    """Split on CR, LF and CRLF only; other Unicode line breaks stay inside the record."""
    lines = io.StringIO(text, newline=None).read().split("\n")
    if lines and not lines[-1]:
        lines.pop()
    return lines


class ConversionResult(BaseModel):
    """Outcome of one conversion, as reported to CLI and API callers."""

    success: bool
    output_file: Optional[str] = None
    input_format: Optional[str] = None
    output_format: str = OUTPUT_FORMAT
    records_processed: int = 0
    warnings: List[str] = Field(default_factory=list)
    error_message: Optional[str] = None
    timestamp: datetime = Field(default_factory=_utcnow)

    @classmethod
    def succeeded(
        cls,
        output_file: str,
        input_format: str,
        records_processed: int,
        warnings: Optional[List[str]] = None,
    ) -> "ConversionResult":
        return cls(
            success=True,
            output_file=output_file,
            input_format=input_format,
            records_processed=records_processed,
            warnings=list(warnings or []),
        )

    @classmethod
    def failed(cls, error_message: str, input_format: Optional[str] = None) -> "ConversionResult":
        return cls(success=False, input_format=input_format, error_message=error_message)


def count_records(parsed: Parsed) -> int:
    if isinstance(parsed.value, PaymentBatch):
        return len(parsed.value.transfers)
    return 1


class ConversionService:
    """Turn MT103 / NACHA input into pain.001.001.03 XML.

    Settings are read from the environment when not passed in. ``clock`` and
    ``uuidf`` exist so tests can pin ``CreDtTm`` and ``MsgId``.
    """

    def __init__(
        self,
        settings: Optional[ConverterSettings] = None,
        *,
        clock: Optional[Clock] = None,
        uuidf: Optional[UUIDFactory] = None,
        injection_policy: Optional[InjectionPolicy] = None,
        path_policy: Optional[PathPolicy] = None,
    ) -> None:
        self.settings = settings or ConverterSettings.from_env()
        self.clock = clock or SystemClock()
        self.uuidf = uuidf or UUID4Factory()
        self.injection_policy = injection_policy or InjectionPolicy()
        self.path_policy = path_policy or PathPolicy(self.settings.allowed_roots)

    # ------------------------------------------------------------------
    # public API
    # ------------------------------------------------------------------
    def convert_file(
        self,
        input_path: Union[str, Path],
        input_format: str,
        output_path: Union[str, Path],
        progress: Optional[ProgressCallback] = None,
    ) -> ConversionResult:
        """Convert *input_path* to XML at *output_path*.

        Never raises for bad input: every content, security or I/O problem
        comes back as a failed :class:`ConversionResult` with a sanitised
        message.
        """
        emit = progress or _no_progress
        conversion_id = uuid.uuid4().hex
        log = ConversionLogAdapter(logger, {"conversion_id": conversion_id, "input_format": input_format})
        started = time.perf_counter()
        emit("Starting conversion")

        if input_format not in INPUT_FORMATS:
            conversions_total.labels(input_format="unsupported", result="unsupported").inc()
            log.warning("Rejected unsupported input format %s", sanitize_for_logging(input_format))
            return ConversionResult.failed(str(UnsupportedFormatError(input_format)), input_format)

        tmp_path: Optional[Path] = None
        try:
            emit("Validating input")
            source = self.path_policy.validate(input_path)
            target = self.path_policy.validate(output_path)
            validate_file(
                source,
                max_file_bytes=self.settings.max_file_bytes,
                max_lines=self.settings.max_lines,
            )

            emit("Reading input file")
            text = source.read_text(encoding="utf-8")

            emit(f"Parsing {input_format} content")
            parsed = self._parse(text, input_format, emit)

            emit(f"Converting to {OUTPUT_FORMAT}")
            target.parent.mkdir(parents=True, exist_ok=True)
            tmp_path = create_secure_temp_file(target.parent, ".payconv-", ".xml.tmp")
            with tmp_path.open("w", encoding="utf-8", newline="") as fh:
                render_pain001(
                    parsed.value,
                    fh,
                    clock=self.clock,
                    uuidf=self.uuidf,
                    policy=self.injection_policy,
                )

            emit("Writing output file")
            os.replace(tmp_path, target)
            tmp_path = None
        except SecurityViolation as exc:
            self._record_violation(exc, conversion_id, input_format)
            conversions_total.labels(input_format=input_format, result="security").inc()
            return ConversionResult.failed(sanitize_error_message(str(exc)), input_format)
        except ConversionError as exc:
            conversions_total.labels(input_format=input_format, result="failure").inc()
            log.warning("Conversion failed: %s", sanitize_for_logging(str(exc)))
            return ConversionResult.failed(sanitize_error_message(str(exc)), input_format)
        except UnicodeDecodeError:
            conversions_total.labels(input_format=input_format, result="failure").inc()
            log.warning("Input is not valid UTF-8")
            return ConversionResult.failed("Input file is not valid UTF-8 text", input_format)
        except OSError as exc:
            conversions_total.labels(input_format=input_format, result="failure").inc()
            log.warning("I/O error during conversion: %s", sanitize_for_logging(str(exc)))
            return ConversionResult.failed(sanitize_error_message(str(exc)), input_format)
        finally:
            if tmp_path is not None:
                tmp_path.unlink(missing_ok=True)
            conversion_seconds.labels(input_format=input_format).observe(time.perf_counter() - started)

        conversions_total.labels(input_format=input_format, result="success").inc()
        emit("Conversion completed")
        log.info("Converted %s input to %s with %d warnings", input_format, OUTPUT_FORMAT, len(parsed.warnings))
        return ConversionResult.succeeded(
            output_file=str(target),
            input_format=input_format,
            records_processed=count_records(parsed),
            warnings=parsed.warnings,
        )

    def convert_text(self, text: str, input_format: str) -> Tuple[str, Parsed]:
        """Convert in-memory *text*; return the XML and the parse result.

        Unlike :meth:`convert_file` this raises: :class:`UnsupportedFormatError`,
        :class:`SecurityViolation` (audited first) or :class:`ContentError`.
        """
        if input_format not in INPUT_FORMATS:
            conversions_total.labels(input_format="unsupported", result="unsupported").inc()
            raise UnsupportedFormatError(input_format)

        conversion_id = uuid.uuid4().hex
        started = time.perf_counter()
        try:
            self._check_text_limits(text)
            parsed = self._parse(text, input_format, _no_progress)
            xml = build_pain001(
                parsed.value,
                clock=self.clock,
                uuidf=self.uuidf,
                policy=self.injection_policy,
            )
        except SecurityViolation as exc:
            self._record_violation(exc, conversion_id, input_format)
            conversions_total.labels(input_format=input_format, result="security").inc()
            raise
        except ConversionError:
            conversions_total.labels(input_format=input_format, result="failure").inc()
            raise
        finally:
            conversion_seconds.labels(input_format=input_format).observe(time.perf_counter() - started)

        conversions_total.labels(input_format=input_format, result="success").inc()
        ConversionLogAdapter(logger, {"conversion_id": conversion_id, "input_format": input_format}).info(
            "Converted %s text to %s", input_format, OUTPUT_FORMAT
        )
        return xml, parsed

    # ------------------------------------------------------------------
    # internals
    # ------------------------------------------------------------------
    def _parse(self, text: str, input_format: str, emit: ProgressCallback) -> Parsed:
        if input_format == "MT103":
            return parse_mt103(text, policy=self.injection_policy)
        return parse_nacha(
            _split_lines(text),
            policy=self.injection_policy,
            progress=emit,
            control_totals=self.settings.control_totals,
        )

    def _check_text_limits(self, text: str) -> None:
        if len(text.encode("utf-8")) > self.settings.max_file_bytes:
            raise SecurityViolation("File size exceeds maximum allowed size", category="size")
        if len(_split_lines(text)) > self.settings.max_lines:
            raise SecurityViolation("File contains too many lines", category="size")

    def _record_violation(self, exc: SecurityViolation, conversion_id: str, input_format: str) -> None:
        security_violations_total.labels(category=exc.category).inc()
        audit_log = ConversionLogAdapter(SECURITY_LOGGER, {"conversion_id": conversion_id, "input_format": input_format})
        audit_log.warning(
            "Conversion rejected by %s check: %s",
            exc.category,
            sanitize_for_logging(str(exc)),
            extra={"event": "conversion_rejected", "category": exc.category},
        )
        details = {"conversion_id": conversion_id, "input_format": input_format, "message": str(exc)}
        if exc.field:
            details["field"] = sanitize_for_logging(exc.field)
        log_event(
            service=SERVICE_NAME,
            action="CONVERSION_REJECTED",
            category=exc.category,
            details=details,
        )
