from __future__ import annotations

import re
from pathlib import Path
from typing import Dict, Union

import pytest

from common import audit
from payment_converter.parsers.nacha import RECORD_LAYOUTS, RECORD_LENGTH

FIXTURES_DIR = Path(__file__).resolve().parents[1] / "payment_converter" / "iso20022" / "fixtures"


def pytest_configure(config):
    """If pytest-socket is installed, disable sockets and allow localhost if supported."""
    try:
        import pytest_socket

        pytest_socket.disable_socket()
        if hasattr(pytest_socket, "allow_hosts"):
            pytest_socket.allow_hosts("127.0.0.1", "localhost")
    except ImportError:
        pass


# ---------------------------------------------------------------------------
# Isolation: audit journal + allowed directories per test
# ---------------------------------------------------------------------------


@pytest.fixture(autouse=True)
def _audit_db(tmp_path: Path):
    """Point the security audit journal at a throwaway SQLite file."""

    db_dir = tmp_path / ".audit"
    db_dir.mkdir()
    audit.configure_engine(f"sqlite:///{db_dir / 'audit.db'}")
    yield
    audit.get_engine().dispose()


@pytest.fixture(autouse=True)
def _converter_env(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setenv("PAYCONV_ALLOWED_DIRS", str(tmp_path))
    for name in ("PAYCONV_MAX_FILE_BYTES", "PAYCONV_MAX_LINES", "PAYCONV_CONTROL_TOTALS"):
        monkeypatch.delenv(name, raising=False)


# ---------------------------------------------------------------------------
# Deterministic clock / ids
# ---------------------------------------------------------------------------


class FixedClock:
    def now_iso(self) -> str:  # type: ignore[override]
        return "2025-08-06T10:37:01Z"


class FixedUUID:
    def __init__(self) -> None:
        self.i = 0

    def new(self) -> str:  # type: ignore[override]
        self.i += 1
        return f"00000000-0000-0000-0000-{self.i:012d}"


@pytest.fixture()
def clock() -> FixedClock:
    return FixedClock()


@pytest.fixture()
def uuidf() -> FixedUUID:
    return FixedUUID()


def normalize_xml(s: str) -> str:
    """Collapse whitespace outside of tags for robust comparison."""
    return re.sub(r">\s+<", "><", s.strip())


# ---------------------------------------------------------------------------
# Sample inputs
# ---------------------------------------------------------------------------

SCENARIO_A_MT103 = """:20:REF1
:32A:250615USD000001500,00
:50K:ACME CORP
:59:JOHN DOE
:70:INVOICE 123
"""


def nacha_record(record_type: str, fields: Dict[str, Union[str, int]] | None = None) -> str:
    """Build one 94-character NACHA record from named fields.

    Integers are zero-padded to the field width, strings left-justified.
    """
    buf = [" "] * RECORD_LENGTH
    buf[0] = record_type
    layout = {spec.name: spec for spec in RECORD_LAYOUTS[record_type]}
    for name, value in (fields or {}).items():
        spec = layout[name]
        width = spec.end - spec.start
        text = str(value).zfill(width) if isinstance(value, int) else str(value).ljust(width)
        assert len(text) == width, f"{name}={value!r} does not fit {width} characters"
        buf[spec.start : spec.end] = list(text)
    return "".join(buf)


def _entry(amount_cents: int, name: str, trace: int, *, addenda: str = "0") -> str:
    return nacha_record(
        "6",
        {
            "transaction_code": "22",
            "receiving_dfi": "02100002",
            "check_digit": "1",
            "account_number": f"ACCT{trace:05d}",
            "amount": amount_cents,
            "individual_id": f"EMP{trace:03d}",
            "individual_name": name,
            "addenda_indicator": addenda,
            "trace_number": f"12345678{trace:07d}",
        },
    )


def scenario_b_lines(*, batch_credit_cents: int = 35000, file_credit_cents: int = 35000) -> list[str]:
    """WIDGETCO batch with two credits of 100.00 and 250.00."""
    return [
        nacha_record(
            "1",
            {
                "priority_code": "01",
                "immediate_destination": " 021000021",
                "immediate_origin": "1234567890",
                "creation_date": "250630",
                "creation_time": "1200",
                "file_id_modifier": "A",
                "destination_name": "FIRST NATIONAL BANK",
                "origin_name": "WIDGETCO",
            },
        ),
        nacha_record(
            "5",
            {
                "service_class_code": "220",
                "company_name": "WIDGETCO",
                "company_id": "1234567890",
                "entry_class_code": "PPD",
                "entry_description": "PAYROLL",
                "effective_date": "250701",
                "originating_dfi": "12345678",
                "batch_number": 1,
            },
        ),
        _entry(10000, "ALICE SMITH", 1),
        _entry(25000, "BOB JONES", 2),
        nacha_record(
            "8",
            {
                "service_class_code": "220",
                "entry_addenda_count": 2,
                "entry_hash": 4200004,
                "total_debit": 0,
                "total_credit": batch_credit_cents,
                "company_id": "1234567890",
                "originating_dfi": "12345678",
                "batch_number": 1,
            },
        ),
        nacha_record(
            "9",
            {
                "batch_count": 1,
                "block_count": 1,
                "entry_addenda_count": 2,
                "entry_hash": 4200004,
                "total_debit": 0,
                "total_credit": file_credit_cents,
            },
        ),
    ]


@pytest.fixture()
def nacha_file(tmp_path: Path) -> Path:
    path = tmp_path / "payroll.ach"
    path.write_text("\n".join(scenario_b_lines()) + "\n")
    return path


@pytest.fixture()
def mt103_file(tmp_path: Path) -> Path:
    path = tmp_path / "scenario_a.mt103"
    path.write_text(SCENARIO_A_MT103)
    return path
