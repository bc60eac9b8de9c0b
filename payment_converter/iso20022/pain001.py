"""Render canonical payments as ISO 20022 pain.001.001.03 XML.

Subset sufficient for legacy MT103 / NACHA migration. All placeholder
defaulting for absent source fields happens here, nowhere else.
"""
from __future__ import annotations

import re
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import IO, Optional, Protocol, Sequence, Union

from ..models import CreditTransfer, PaymentBatch, decimal_amount, yymmdd_to_iso
from ..security import InjectionPolicy
from .xml_builder import SecureXmlBuilder

__all__ = [
    "NS",
    "Clock",
    "SystemClock",
    "UUIDFactory",
    "UUID4Factory",
    "build_pain001",
    "format_amount",
    "format_date",
    "render_pain001",
]

NS = "urn:iso:std:iso:20022:tech:xsd:pain.001.001.03"

UNKNOWN_ID = "UNKNOWN"
UNKNOWN_DEBTOR = "Unknown Debtor"
UNKNOWN_CREDITOR = "Unknown Creditor"
DEFAULT_AMOUNT = "0.00"
DEFAULT_CURRENCY = "USD"

_CCY_RE = re.compile(r"[A-Z]{3}")
_COMMA_AMOUNT_RE = re.compile(r"\d+,\d*")

# MT103 71A -> ISO 20022 ChargeBearerType1Code
_CHARGE_BEARER = {"OUR": "DEBT", "BEN": "CRED", "SHA": "SHAR"}

Payment = Union[CreditTransfer, PaymentBatch]


class Clock(Protocol):
    """Abstract clock used for deterministic testing."""

    def now_iso(self) -> str:  # pragma: no cover – protocol stub
        """Return current timestamp in ISO-8601 (UTC) format."""


class UUIDFactory(Protocol):
    """Abstract UUID factory for deterministic testing."""

    def new(self) -> str:  # pragma: no cover – protocol stub
        """Return a new unique identifier string."""


class SystemClock:
    def now_iso(self) -> str:
        return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S")


class UUID4Factory:
    def new(self) -> str:
        # 32 hex chars fits the Max35Text identifiers
        return uuid.uuid4().hex


# ---------------------------------------------------------------------------
# Value formatting
# ---------------------------------------------------------------------------


def format_date(value: Optional[str], clock: Clock) -> str:
    """``YYMMDD`` -> ``YYYY-MM-DD``; anything else -> the clock's current date."""
    iso = yymmdd_to_iso(value)
    if iso is not None:
        return iso
    return clock.now_iso().split("T", 1)[0]


def format_amount(value: Optional[str]) -> str:
    """Two fraction digits for decimal amounts; non-decimal source text verbatim."""
    if value is None or not value.strip():
        return DEFAULT_AMOUNT
    amount = decimal_amount(value)
    if amount is None:
        return value.strip()
    return f"{amount:.2f}"


def _summable_amount(value: Optional[str]) -> Optional[Decimal]:
    """Decimal value of *value*, reading a SWIFT comma separator as the decimal point."""
    amount = decimal_amount(value)
    if amount is None and value is not None and _COMMA_AMOUNT_RE.fullmatch(value.strip()):
        return Decimal(value.strip().replace(",", "."))
    return amount


def _control_sum(transfers: Sequence[CreditTransfer]) -> str:
    total = Decimal("0")
    for transfer in transfers:
        amount = _summable_amount(transfer.amount)
        if amount is not None:
            total += amount
    return f"{total:.2f}"


def _currency(value: Optional[str]) -> str:
    if value and _CCY_RE.fullmatch(value):
        return value
    return DEFAULT_CURRENCY


# ---------------------------------------------------------------------------
# Builder
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class _PaymentInfo:
    """The PmtInf-level view shared by single messages and batches."""

    transfers: Sequence[CreditTransfer]
    payment_info_id: Optional[str]
    debtor_name: Optional[str]
    debtor_account: Optional[str]
    value_date: Optional[str]


def _payment_info(payment: Payment) -> _PaymentInfo:
    if isinstance(payment, PaymentBatch):
        return _PaymentInfo(
            transfers=tuple(payment.transfers),
            payment_info_id=payment.originator_id,
            debtor_name=payment.originator_name,
            debtor_account=payment.originating_dfi,
            value_date=payment.effective_date,
        )
    return _PaymentInfo(
        transfers=(payment,),
        payment_info_id=payment.reference,
        debtor_name=payment.debtor_name,
        debtor_account=payment.debtor_account,
        value_date=payment.value_date,
    )


def _account(xb: SecureXmlBuilder, element: str, account_id: Optional[str]) -> None:
    (
        xb.start_element(element)
        .start_element("Id")
        .start_element("Othr")
        .add_element("Id", account_id or UNKNOWN_ID)
        .end_element()  # Othr
        .end_element()  # Id
        .end_element()
    )


def _transaction(xb: SecureXmlBuilder, transfer: CreditTransfer, position: int) -> None:
    xb.start_element("CdtTrfTxInf")

    xb.start_element("PmtId")
    xb.add_element("EndToEndId", transfer.reference or f"E2E{position:03d}")
    xb.end_element()

    bearer = _CHARGE_BEARER.get((transfer.charges or "").upper())
    xb.start_element("Amt")
    xb.start_element("InstdAmt").add_attribute("Ccy", _currency(transfer.currency))
    xb.add_text(format_amount(transfer.amount))
    xb.end_element()  # InstdAmt
    xb.end_element()  # Amt
    if bearer:
        xb.add_element("ChrgBr", bearer)

    if transfer.creditor_agent:
        (
            xb.start_element("CdtrAgt")
            .start_element("FinInstnId")
            .start_element("ClrSysMmbId")
            .add_element("MmbId", transfer.creditor_agent)
            .end_element()  # ClrSysMmbId
            .end_element()  # FinInstnId
            .end_element()  # CdtrAgt
        )

    xb.start_element("Cdtr").add_element("Nm", transfer.creditor_name or UNKNOWN_CREDITOR).end_element()
    _account(xb, "CdtrAcct", transfer.creditor_account)

    if transfer.remittance and transfer.remittance.strip():
        xb.start_element("RmtInf").add_element("Ustrd", transfer.remittance.strip()).end_element()

    xb.end_element()  # CdtTrfTxInf


def _write_document(payment: Payment, xb: SecureXmlBuilder, clock: Clock, uuidf: UUIDFactory) -> None:
    info = _payment_info(payment)
    count = str(len(info.transfers))
    ctrl_sum = _control_sum(info.transfers)
    debtor_name = info.debtor_name or UNKNOWN_DEBTOR

    xb.start_document()
    xb.start_element("Document").add_attribute("xmlns", NS)
    xb.start_element("CstmrCdtTrfInitn")

    # ------------------- Group Header -------------------
    xb.start_element("GrpHdr")
    xb.add_element("MsgId", uuidf.new())
    xb.add_element("CreDtTm", clock.now_iso())
    xb.add_element("NbOfTxs", count)
    xb.add_element("CtrlSum", ctrl_sum)
    xb.start_element("InitgPty").add_element("Nm", debtor_name).end_element()
    xb.end_element()  # GrpHdr

    # ------------------- Payment Information -------------
    xb.start_element("PmtInf")
    xb.add_element("PmtInfId", info.payment_info_id or UNKNOWN_ID)
    xb.add_element("PmtMtd", "TRF")
    xb.add_element("NbOfTxs", count)
    xb.add_element("CtrlSum", ctrl_sum)
    xb.add_element("ReqdExctnDt", format_date(info.value_date, clock))
    xb.start_element("Dbtr").add_element("Nm", debtor_name).end_element()
    _account(xb, "DbtrAcct", info.debtor_account)

    for position, transfer in enumerate(info.transfers, start=1):
        _transaction(xb, transfer, position)

    xb.end_element()  # PmtInf
    xb.end_element()  # CstmrCdtTrfInitn
    xb.end_element()  # Document
    xb.end_document()


def render_pain001(
    payment: Payment,
    stream: IO,
    *,
    clock: Clock,
    uuidf: UUIDFactory,
    policy: Optional[InjectionPolicy] = None,
) -> None:
    """Stream a pain.001.001.03 document for *payment* into *stream*.

    Every value is validated before it is written. On a
    :class:`SecurityViolation` the stream may hold a prefix of the document;
    callers writing files render into a temporary file and discard it.
    """
    with SecureXmlBuilder(stream, policy=policy) as xb:
        _write_document(payment, xb, clock, uuidf)


def build_pain001(
    payment: Payment,
    *,
    clock: Clock,
    uuidf: UUIDFactory,
    policy: Optional[InjectionPolicy] = None,
) -> str:
    """Return pain.001.001.03 XML for *payment* as a string."""
    with SecureXmlBuilder(policy=policy) as xb:
        _write_document(payment, xb, clock, uuidf)
        return xb.getvalue()
