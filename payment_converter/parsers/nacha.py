"""NACHA ACH file parser.

NACHA files are 94-character fixed-width records whose first character is the
record type:

    1  File header        6  Entry detail      8  Batch control
    5  Batch header       7  Addenda           9  File control

Records are processed in whatever order they appear. A bad record is skipped
with a warning and never aborts the file. Field boundaries live in
:data:`RECORD_LAYOUTS` and nowhere else.
"""
from __future__ import annotations

import logging
import math
import re
from dataclasses import dataclass
from decimal import Decimal
from typing import Callable, Dict, Iterable, List, Mapping, Optional, Tuple

from conversion_observability.metrics import parse_warnings_total, records_parsed_total

from ..errors import ControlTotalsMismatch, ParseError
from ..models import BatchControl, CreditTransfer, FileControl, FileHeader, ParseResult, PaymentBatch
from ..security import InjectionPolicy
from ..settings import ControlTotalsPolicy
from .fields import extract_fixed

__all__ = [
    "CREDIT_TRANSACTION_CODES",
    "DEBIT_TRANSACTION_CODES",
    "RECORD_LAYOUTS",
    "RECORD_LENGTH",
    "FieldSpec",
    "parse_cents",
    "parse_nacha",
]

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[str], None]

RECORD_LENGTH = 94


@dataclass(frozen=True, slots=True)
class FieldSpec:
    """Half-open ``[start, end)`` character range of one field."""

    name: str
    start: int
    end: int


def _layout(*fields: Tuple[str, int, int]) -> Tuple[FieldSpec, ...]:
    return tuple(FieldSpec(name, start, end) for name, start, end in fields)


# ---------------------------------------------------------------------------
# Field-position table
# ---------------------------------------------------------------------------

RECORD_LAYOUTS: Mapping[str, Tuple[FieldSpec, ...]] = {
    "1": _layout(
        ("priority_code", 1, 3),
        ("immediate_destination", 3, 13),
        ("immediate_origin", 13, 23),
        ("creation_date", 23, 29),
        ("creation_time", 29, 33),
        ("file_id_modifier", 33, 34),
        ("destination_name", 40, 63),
        ("origin_name", 63, 86),
    ),
    "5": _layout(
        ("service_class_code", 1, 4),
        ("company_name", 4, 20),
        ("company_discretionary_data", 20, 40),
        ("company_id", 40, 50),
        ("entry_class_code", 50, 53),
        ("entry_description", 53, 63),
        ("descriptive_date", 63, 69),
        ("effective_date", 69, 75),
        ("originating_dfi", 79, 87),
        ("batch_number", 87, 94),
    ),
    "6": _layout(
        ("transaction_code", 1, 3),
        ("receiving_dfi", 3, 11),
        ("check_digit", 11, 12),
        ("account_number", 12, 29),
        ("amount", 29, 39),
        ("individual_id", 39, 54),
        ("individual_name", 54, 76),
        ("discretionary_data", 76, 78),
        ("addenda_indicator", 78, 79),
        ("trace_number", 79, 94),
    ),
    "7": _layout(
        ("addenda_type", 1, 3),
        ("payment_info", 3, 83),
        ("addenda_sequence", 83, 87),
        ("entry_sequence", 87, 94),
    ),
    "8": _layout(
        ("service_class_code", 1, 4),
        ("entry_addenda_count", 4, 10),
        ("entry_hash", 10, 20),
        ("total_debit", 20, 32),
        ("total_credit", 32, 44),
        ("company_id", 44, 54),
        ("originating_dfi", 79, 87),
        ("batch_number", 87, 94),
    ),
    "9": _layout(
        ("batch_count", 1, 7),
        ("block_count", 7, 13),
        ("entry_addenda_count", 13, 21),
        ("entry_hash", 21, 31),
        ("total_debit", 31, 43),
        ("total_credit", 43, 55),
    ),
}

RECORD_NAMES: Mapping[str, str] = {
    "1": "file header",
    "5": "batch header",
    "6": "entry detail",
    "7": "addenda",
    "8": "batch control",
    "9": "file control",
}

# Checking / savings / GL / loan account codes (live, prenote, zero-dollar).
CREDIT_TRANSACTION_CODES = frozenset({"22", "23", "24", "32", "33", "34", "42", "43", "44", "52", "53", "54"})
DEBIT_TRANSACTION_CODES = frozenset({"27", "28", "29", "37", "38", "39", "47", "48", "49", "55"})

_DIGITS_RE = re.compile(r"[0-9]+")
_ENTRY_HASH_MODULUS = 10**10


def parse_cents(raw: Optional[str]) -> str:
    """Convert a NACHA cents field to a two-decimal major-unit string.

    ``"0000012345"`` -> ``"123.45"``. Anything that is not all digits -> ``"0.00"``.
    """
    if raw is None or not _DIGITS_RE.fullmatch(raw.strip()):
        return "0.00"
    return str((Decimal(int(raw.strip())) / 100).quantize(Decimal("0.01")))


def extract_record(line: str, record_type: str) -> Optional[Dict[str, str]]:
    """Pull every field of *record_type* out of *line*; ``None`` if it is too short."""
    values: Dict[str, str] = {}
    for spec in RECORD_LAYOUTS[record_type]:
        value = extract_fixed(line, spec.start, spec.end)
        if value is None:
            return None
        values[spec.name] = value
    return values


def _opt(value: Optional[str]) -> Optional[str]:
    return value or None


def _to_int(value: Optional[str]) -> Optional[int]:
    if value and _DIGITS_RE.fullmatch(value):
        return int(value)
    return None


# ---------------------------------------------------------------------------
# Reconciliation
# ---------------------------------------------------------------------------


@dataclass
class _Totals:
    entries: int = 0
    addenda: int = 0
    entry_hash: int = 0
    debit_cents: int = 0
    credit_cents: int = 0

    @property
    def entry_addenda_count(self) -> int:
        return self.entries + self.addenda

    @property
    def hash_value(self) -> int:
        return self.entry_hash % _ENTRY_HASH_MODULUS


def _compare(label: str, reported: Optional[str], computed: int, out: List[str]) -> None:
    if reported is None:
        return
    value = _to_int(reported)
    if value is None:
        out.append(f"{label} is not numeric ({reported!r})")
    elif value != computed:
        out.append(f"{label} reports {value}, entries give {computed}")


def _compare_control(prefix: str, control: BatchControl | FileControl, totals: _Totals, out: List[str]) -> None:
    _compare(f"{prefix} entry-addenda count", control.entry_addenda_count, totals.entry_addenda_count, out)
    _compare(f"{prefix} entry hash", control.entry_hash, totals.hash_value, out)
    _compare(f"{prefix} total debit", control.total_debit, totals.debit_cents, out)
    _compare(f"{prefix} total credit", control.total_credit, totals.credit_cents, out)


# ---------------------------------------------------------------------------
# Parser
# ---------------------------------------------------------------------------


class _NachaParser:
    """Single-use parser state; one instance per file."""

    def __init__(
        self,
        policy: InjectionPolicy,
        progress: Optional[ProgressCallback],
        control_totals: ControlTotalsPolicy,
    ) -> None:
        self.policy = policy
        self.progress = progress
        self.control_totals = control_totals
        self.batch = PaymentBatch()
        self.warnings: List[str] = []
        self.mismatches: List[str] = []
        self._batch_totals = _Totals()
        self._file_totals = _Totals()
        self._handlers: Mapping[str, Callable[[int, Dict[str, str]], None]] = {
            "1": self._file_header,
            "5": self._batch_header,
            "6": self._entry_detail,
            "7": self._addenda,
            "8": self._batch_control,
            "9": self._file_control,
        }

    # ------------------------------------------------------------------
    def run(self, lines: Iterable[str]) -> ParseResult[PaymentBatch]:
        for lineno, raw in enumerate(lines, start=1):
            line = raw.rstrip("\r\n")
            if not line.strip():
                continue
            self.batch.record_count += 1

            record_type = line[0]
            if record_type not in RECORD_LAYOUTS:
                self.warnings.append(f"Line {lineno}: unrecognised record type {record_type!r} skipped")
                continue
            if len(line) < RECORD_LENGTH:
                self.warnings.append(
                    f"Line {lineno}: {RECORD_NAMES[record_type]} record is {len(line)} characters, "
                    f"expected {RECORD_LENGTH}; skipped"
                )
                continue
            if record_type == "9" and line.strip("9") == "":
                # block padding
                continue

            name = RECORD_NAMES[record_type]
            if self.progress is not None:
                self.progress(f"Processing {name} record")
            fields = extract_record(line, record_type)
            if fields is None:
                continue
            for field_name, value in fields.items():
                self.policy.check(value, f"NACHA {name} {field_name}")

            self._handlers[record_type](lineno, fields)
            records_parsed_total.labels(input_format="NACHA", record_type=name).inc()

        if self.batch.record_count == 0:
            raise ParseError("NACHA file contains no records")
        if not self.batch.transfers:
            self.warnings.append("NACHA file contains no entry detail records")

        self._finish_reconciliation()
        if self.warnings:
            parse_warnings_total.labels(input_format="NACHA").inc(len(self.warnings))
        logger.info(
            "Parsed NACHA file: %d entries, %d addenda, %d warnings",
            len(self.batch.transfers),
            self.batch.addenda_count,
            len(self.warnings),
            extra={"input_format": "NACHA"},
        )
        return ParseResult(self.batch, self.warnings)

    # ------------------------------------------------------------------
    def _file_header(self, lineno: int, f: Dict[str, str]) -> None:
        self.batch.file_header = FileHeader(**{k: _opt(v) for k, v in f.items()})

    def _batch_header(self, lineno: int, f: Dict[str, str]) -> None:
        if self.batch.batch_header_count:
            self.warnings.append(
                f"Line {lineno}: additional batch header; header fields now taken from this batch"
            )
        self.batch.batch_header_count += 1
        self.batch.originator_name = _opt(f["company_name"])
        self.batch.originator_id = _opt(f["company_id"])
        self.batch.originating_dfi = _opt(f["originating_dfi"])
        self.batch.effective_date = _opt(f["effective_date"])
        self.batch.service_class_code = _opt(f["service_class_code"])
        self.batch.entry_class_code = _opt(f["entry_class_code"])
        self.batch.entry_description = _opt(f["entry_description"])
        self.batch.batch_number = _opt(f["batch_number"])
        self._batch_totals = _Totals()

    def _entry_detail(self, lineno: int, f: Dict[str, str]) -> None:
        amount_raw = f["amount"]
        if not _DIGITS_RE.fullmatch(amount_raw):
            self.warnings.append(f"Line {lineno}: non-numeric amount {amount_raw!r} defaulted to 0.00")
        amount = parse_cents(amount_raw)

        routing = (f["receiving_dfi"] + f["check_digit"]) or None
        transfer = CreditTransfer(
            reference=_opt(f["trace_number"]),
            value_date=self.batch.effective_date,
            amount=amount,
            debtor_name=self.batch.originator_name,
            debtor_account=self.batch.originating_dfi,
            creditor_name=_opt(f["individual_name"]),
            creditor_account=_opt(f["account_number"]),
            transaction_code=_opt(f["transaction_code"]),
            creditor_agent=routing,
            individual_id=_opt(f["individual_id"]),
            addenda_indicator=_opt(f["addenda_indicator"]),
        )
        self.batch.transfers.append(transfer)

        cents = _to_int(amount_raw) or 0
        dfi = _to_int(f["receiving_dfi"]) or 0
        for totals in (self._batch_totals, self._file_totals):
            totals.entries += 1
            totals.entry_hash += dfi
            if transfer.transaction_code in DEBIT_TRANSACTION_CODES:
                totals.debit_cents += cents
            elif transfer.transaction_code in CREDIT_TRANSACTION_CODES:
                totals.credit_cents += cents

    def _addenda(self, lineno: int, f: Dict[str, str]) -> None:
        if not self.batch.transfers:
            self.warnings.append(f"Line {lineno}: addenda record without a preceding entry detail dropped")
            return
        self.batch.addenda_count += 1
        self._batch_totals.addenda += 1
        self._file_totals.addenda += 1
        info = f["payment_info"]
        if info:
            self.batch.transfers[-1] = self.batch.transfers[-1].with_remittance(info)

    def _batch_control(self, lineno: int, f: Dict[str, str]) -> None:
        control = BatchControl(**{k: _opt(v) for k, v in f.items() if k in BatchControl.model_fields})
        self.batch.batch_control = control
        _compare_control(f"Line {lineno}: batch control", control, self._batch_totals, self.mismatches)

    def _file_control(self, lineno: int, f: Dict[str, str]) -> None:
        self.batch.file_control = FileControl(**{k: _opt(v) for k, v in f.items()})

    # ------------------------------------------------------------------
    def _finish_reconciliation(self) -> None:
        control = self.batch.file_control
        if control is not None:
            _compare("file control batch count", control.batch_count, self.batch.batch_header_count, self.mismatches)
            _compare(
                "file control block count",
                control.block_count,
                math.ceil(self.batch.record_count / 10),
                self.mismatches,
            )
            _compare_control("file control", control, self._file_totals, self.mismatches)

        if not self.mismatches or self.control_totals is ControlTotalsPolicy.IGNORE:
            return
        if self.control_totals is ControlTotalsPolicy.STRICT:
            raise ControlTotalsMismatch(self.mismatches)
        self.warnings.extend(f"Control totals: {m}" for m in self.mismatches)


def parse_nacha(
    lines: Iterable[str],
    *,
    policy: Optional[InjectionPolicy] = None,
    progress: Optional[ProgressCallback] = None,
    control_totals: ControlTotalsPolicy = ControlTotalsPolicy.WARN,
) -> ParseResult[PaymentBatch]:
    """Parse NACHA *lines* into a :class:`PaymentBatch`.

    Raises
    ------
    ParseError
        The input holds no records at all.
    ControlTotalsMismatch
        Control records disagree with the entries and *control_totals* is
        ``STRICT``.
    SecurityViolation
        A field value matches the injection policy.
    """
    parser = _NachaParser(policy or InjectionPolicy(), progress, control_totals)
    return parser.run(lines)
