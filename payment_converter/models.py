"""Format-agnostic payment model shared by both parsers and the serializer.

Fields hold what the source actually contained; absent values stay ``None``.
Placeholders ("UNKNOWN", "Unknown Creditor", today's date, ...) are applied
only when rendering XML.
"""
from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Generic, List, Optional, TypeVar

from pydantic import BaseModel, ConfigDict, Field

__all__ = [
    "BatchControl",
    "CreditTransfer",
    "FileControl",
    "FileHeader",
    "ParseResult",
    "PaymentBatch",
    "decimal_amount",
    "yymmdd_to_iso",
]

_YYMMDD_RE = re.compile(r"[0-9]{6}")


def yymmdd_to_iso(value: Optional[str]) -> Optional[str]:
    """``"250101"`` -> ``"2025-01-01"``; ``None`` unless six digits forming a real date.

    Two-digit years map to 2000-2099.
    """
    if value is None or not _YYMMDD_RE.fullmatch(value):
        return None
    try:
        parsed = datetime.strptime("20" + value, "%Y%m%d")
    except ValueError:
        return None
    return parsed.date().isoformat()


def decimal_amount(value: Optional[str]) -> Optional[Decimal]:
    """Parse a major-unit amount string; ``None`` if it is not a finite decimal."""
    if value is None:
        return None
    try:
        amount = Decimal(value.strip())
    except InvalidOperation:
        return None
    return amount if amount.is_finite() else None


class CreditTransfer(BaseModel):
    """One movement of value from debtor to creditor."""

    model_config = ConfigDict(frozen=True)

    reference: Optional[str] = None
    # Value / effective date exactly as in the source (YYMMDD).
    value_date: Optional[str] = None
    currency: Optional[str] = None
    # Major units. NACHA entries are converted from cents by the parser; MT103
    # amounts are the raw 32A substring (comma decimal separator kept).
    amount: Optional[str] = None
    debtor_name: Optional[str] = None
    debtor_account: Optional[str] = None
    creditor_name: Optional[str] = None
    creditor_account: Optional[str] = None
    remittance: Optional[str] = None

    # MT103 extras
    bank_operation_code: Optional[str] = None
    charges: Optional[str] = None

    # NACHA entry detail extras
    transaction_code: Optional[str] = None
    creditor_agent: Optional[str] = None
    individual_id: Optional[str] = None
    addenda_indicator: Optional[str] = None

    @property
    def execution_date(self) -> Optional[str]:
        """ISO 8601 form of :attr:`value_date`, if it is a valid YYMMDD date."""
        return yymmdd_to_iso(self.value_date)

    def with_remittance(self, fragment: str) -> "CreditTransfer":
        """Return a copy with *fragment* appended (space-joined) to the remittance."""
        combined = f"{self.remittance} {fragment}" if self.remittance else fragment
        return self.model_copy(update={"remittance": combined})


class FileHeader(BaseModel):
    """NACHA record type 1."""

    priority_code: Optional[str] = None
    immediate_destination: Optional[str] = None
    immediate_origin: Optional[str] = None
    creation_date: Optional[str] = None
    creation_time: Optional[str] = None
    file_id_modifier: Optional[str] = None
    destination_name: Optional[str] = None
    origin_name: Optional[str] = None


class BatchControl(BaseModel):
    """NACHA record type 8, values kept as the digit strings found in the file."""

    service_class_code: Optional[str] = None
    entry_addenda_count: Optional[str] = None
    entry_hash: Optional[str] = None
    total_debit: Optional[str] = None
    total_credit: Optional[str] = None
    company_id: Optional[str] = None
    batch_number: Optional[str] = None


class FileControl(BaseModel):
    """NACHA record type 9."""

    batch_count: Optional[str] = None
    block_count: Optional[str] = None
    entry_addenda_count: Optional[str] = None
    entry_hash: Optional[str] = None
    total_debit: Optional[str] = None
    total_credit: Optional[str] = None


class PaymentBatch(BaseModel):
    """Ordered transfers from a NACHA file plus header and control metadata."""

    transfers: List[CreditTransfer] = Field(default_factory=list)

    # Batch header (type 5)
    originator_name: Optional[str] = None
    originator_id: Optional[str] = None
    originating_dfi: Optional[str] = None
    effective_date: Optional[str] = None
    service_class_code: Optional[str] = None
    entry_class_code: Optional[str] = None
    entry_description: Optional[str] = None
    batch_number: Optional[str] = None

    file_header: Optional[FileHeader] = None
    batch_control: Optional[BatchControl] = None
    file_control: Optional[FileControl] = None

    # Bookkeeping for reconciliation against control records
    batch_header_count: int = 0
    addenda_count: int = 0
    record_count: int = 0

    @property
    def total_amount(self) -> Decimal:
        """Sum of the transfer amounts, computed from the entries themselves."""
        total = Decimal("0.00")
        for transfer in self.transfers:
            amount = decimal_amount(transfer.amount)
            if amount is not None:
                total += amount
        return total.quantize(Decimal("0.01"))


T = TypeVar("T")


@dataclass
class ParseResult(Generic[T]):
    """Parsed model plus the non-fatal warnings raised while building it."""

    value: T
    warnings: List[str] = field(default_factory=list)
