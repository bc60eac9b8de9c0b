"""SWIFT MT103 (single customer credit transfer) parser.

Only the commonly used subset of fields is mapped; other tags are reported as
warnings and otherwise ignored. Field values are taken verbatim. In particular
the 32A amount keeps SWIFT's comma decimal separator.
"""
from __future__ import annotations

import logging
import re
from typing import Any, Dict, Iterable, Mapping, Optional, Tuple

from conversion_observability.metrics import parse_warnings_total, records_parsed_total

from ..errors import ParseError
from ..models import CreditTransfer, ParseResult
from ..security import InjectionPolicy
from .fields import extract_tagged

__all__ = ["PARTY_TAGS", "SUBFIELD_TAGS", "TAG_SLOTS", "parse_mt103"]

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Field-tag tables
# ---------------------------------------------------------------------------

# Tag -> CreditTransfer slot, value copied as-is (whitespace collapsed).
TAG_SLOTS: Mapping[str, str] = {
    "20": "reference",
    "23B": "bank_operation_code",
    "70": "remittance",
    "71A": "charges",
}

# Party tags: optional ``/ACCOUNT`` first line, then name/address lines.
PARTY_TAGS: Mapping[str, Tuple[str, str]] = {
    "50K": ("debtor_account", "debtor_name"),
    "50A": ("debtor_account", "debtor_name"),
    "50F": ("debtor_account", "debtor_name"),
    "59": ("creditor_account", "creditor_name"),
    "59A": ("creditor_account", "creditor_name"),
    "59F": ("creditor_account", "creditor_name"),
}

# Tags split at fixed offsets: (slot, start, end); end None = rest of value.
SUBFIELD_TAGS: Mapping[str, Tuple[Tuple[str, int, Optional[int]], ...]] = {
    "32A": (
        ("value_date", 0, 6),
        ("currency", 6, 9),
        ("amount", 9, None),
    ),
}

_MIN_SUBFIELD_LEN: Mapping[str, int] = {"32A": 9}

# Text block trailer ``-}`` left on the last field of a full SWIFT message.
_TRAILER_RE = re.compile(r"\s*-\}.*\Z", re.DOTALL)


def _collapse(value: str) -> Optional[str]:
    collapsed = " ".join(value.split())
    return collapsed or None


def _split_party(value: str) -> Tuple[Optional[str], Optional[str]]:
    lines = [ln.strip() for ln in value.splitlines() if ln.strip()]
    account = None
    if lines and lines[0].startswith("/"):
        account = lines.pop(0)[1:].strip() or None
    return account, _collapse(" ".join(lines))


def parse_mt103(
    content: Optional[str],
    *,
    policy: Optional[InjectionPolicy] = None,
    required_tags: Optional[Iterable[str]] = None,
) -> ParseResult[CreditTransfer]:
    """Parse MT103 *content* into one :class:`CreditTransfer`.

    Raises
    ------
    ParseError
        Content is empty, or a tag listed in *required_tags* is missing.
    SecurityViolation
        A field value matches the injection policy.
    """
    if content is None or not content.strip():
        raise ParseError("MT103 content cannot be null or empty")

    policy = policy or InjectionPolicy()
    slots: Dict[str, Any] = {}
    warnings: list[str] = []
    seen: set[str] = set()
    recognised = 0

    for tag, raw_value in extract_tagged(content):
        value = _TRAILER_RE.sub("", raw_value)
        policy.check(value, f"MT103 field {tag}")
        seen.add(tag)

        if tag in TAG_SLOTS:
            slots[TAG_SLOTS[tag]] = _collapse(value)
        elif tag in PARTY_TAGS:
            account_slot, name_slot = PARTY_TAGS[tag]
            slots[account_slot], slots[name_slot] = _split_party(value)
        elif tag in SUBFIELD_TAGS:
            if len(value) < _MIN_SUBFIELD_LEN[tag]:
                warnings.append(f"Field :{tag}: too short to decompose; value date, currency and amount left empty")
                continue
            for slot, start, end in SUBFIELD_TAGS[tag]:
                slots[slot] = value[start:end].strip() or None
        else:
            warnings.append(f"Unsupported MT103 field :{tag}: ignored")
            continue
        recognised += 1
        records_parsed_total.labels(input_format="MT103", record_type=tag).inc()

    if required_tags is not None:
        missing = sorted(set(required_tags) - seen)
        if missing:
            raise ParseError("MT103 message missing required fields: " + ", ".join(missing))

    if warnings:
        parse_warnings_total.labels(input_format="MT103").inc(len(warnings))
    logger.info(
        "Parsed MT103 message with %d recognised fields, %d warnings",
        recognised,
        len(warnings),
        extra={"input_format": "MT103"},
    )
    return ParseResult(CreditTransfer(**slots), warnings)
