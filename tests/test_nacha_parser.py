"""NACHA parser tests (offline, synthetic 94-character records)."""
from __future__ import annotations

from decimal import Decimal

import pytest

from conftest import _entry, nacha_record, scenario_b_lines
from payment_converter.errors import ControlTotalsMismatch, ParseError, SecurityViolation
from payment_converter.parsers.nacha import RECORD_LAYOUTS, parse_cents, parse_nacha
from payment_converter.security import sanitize_error_message
from payment_converter.settings import ControlTotalsPolicy


@pytest.mark.parametrize(
    "raw,expected",
    [
        ("12345", "123.45"),
        ("0000012345", "123.45"),
        ("0000000000", "0.00"),
        ("5", "0.05"),
        ("12A45", "0.00"),
        ("", "0.00"),
        (None, "0.00"),
    ],
)
def test_parse_cents(raw, expected):
    assert parse_cents(raw) == expected


def test_scenario_b_batch():
    result = parse_nacha(scenario_b_lines())
    batch = result.value

    assert batch.originator_name == "WIDGETCO"
    assert batch.originator_id == "1234567890"
    assert batch.effective_date == "250701"
    assert [t.amount for t in batch.transfers] == ["100.00", "250.00"]
    assert batch.total_amount == Decimal("350.00")
    assert result.warnings == []

    first = batch.transfers[0]
    assert first.creditor_name == "ALICE SMITH"
    assert first.creditor_account == "ACCT00001"
    assert first.creditor_agent == "021000021"
    assert first.debtor_name == "WIDGETCO"
    assert first.debtor_account == "12345678"
    assert first.value_date == "250701"
    assert first.reference == "123456780000001"
    assert first.transaction_code == "22"

    assert batch.file_header is not None
    assert batch.file_header.origin_name == "WIDGETCO"
    assert batch.batch_control is not None and batch.batch_control.total_credit == "000000035000"
    assert batch.file_control is not None and batch.file_control.batch_count == "000001"


def test_addenda_appends_to_previous_entry():
    lines = scenario_b_lines()
    addenda = [
        nacha_record("7", {"addenda_type": "05", "payment_info": "INVOICE 42"}),
        nacha_record("7", {"addenda_type": "05", "payment_info": "PART 2"}),
    ]
    lines[3:3] = addenda  # after the first entry
    result = parse_nacha(lines, control_totals=ControlTotalsPolicy.IGNORE)

    assert result.value.transfers[0].remittance == "INVOICE 42 PART 2"
    assert result.value.transfers[1].remittance is None
    assert result.value.addenda_count == 2


def test_orphan_addenda_is_dropped_with_warning():
    lines = [nacha_record("7", {"payment_info": "LOST"})] + scenario_b_lines()
    result = parse_nacha(lines, control_totals=ControlTotalsPolicy.IGNORE)
    assert any("addenda record without a preceding entry detail" in w for w in result.warnings)
    assert all(t.remittance is None for t in result.value.transfers)


def test_unknown_record_type_is_skipped():
    lines = scenario_b_lines()
    lines.insert(2, "X" * 94)
    result = parse_nacha(lines)
    assert len(result.value.transfers) == 2
    assert result.warnings[0] == "Line 3: unrecognised record type 'X' skipped"


@pytest.mark.parametrize("record_type", sorted(RECORD_LAYOUTS))
def test_93_character_record_is_skipped(record_type):
    line = nacha_record(record_type)[:93]
    result = parse_nacha([line])
    assert any("record is 93 characters, expected 94; skipped" in w for w in result.warnings)
    assert result.value.transfers == []


def test_block_filler_lines_are_ignored():
    lines = scenario_b_lines() + ["9" * 94] * 4
    result = parse_nacha(lines)
    assert result.warnings == []
    assert result.value.record_count == 10


def test_blank_lines_are_ignored():
    lines = scenario_b_lines()
    lines.insert(1, "")
    lines.insert(3, "   ")
    assert parse_nacha(lines).warnings == []


@pytest.mark.parametrize("lines", [[], ["", "   "]])
def test_empty_file_raises(lines):
    with pytest.raises(ParseError, match="no records"):
        parse_nacha(lines)


def test_file_without_entries_warns():
    result = parse_nacha(scenario_b_lines()[:2], control_totals=ControlTotalsPolicy.IGNORE)
    assert "NACHA file contains no entry detail records" in result.warnings


def test_non_numeric_amount_defaults_to_zero():
    entry = list(_entry(0, "ALICE SMITH", 1))
    entry[29:39] = list("12AB000000")
    lines = scenario_b_lines()
    lines[2] = "".join(entry)
    result = parse_nacha(lines, control_totals=ControlTotalsPolicy.IGNORE)
    assert result.value.transfers[0].amount == "0.00"
    assert any("non-numeric amount" in w for w in result.warnings)


def test_progress_reports_each_record():
    seen: list[str] = []
    parse_nacha(scenario_b_lines(), progress=seen.append)
    assert seen == [
        "Processing file header record",
        "Processing batch header record",
        "Processing entry detail record",
        "Processing entry detail record",
        "Processing batch control record",
        "Processing file control record",
    ]


def test_injection_in_entry_is_rejected():
    lines = scenario_b_lines()
    lines[2] = _entry(10000, "<script>x", 1)
    with pytest.raises(SecurityViolation) as info:
        parse_nacha(lines)
    assert info.value.category == "script"


# ---------------------------------------------------------------------------
# Control totals reconciliation
# ---------------------------------------------------------------------------


def _mismatched() -> list[str]:
    return scenario_b_lines(batch_credit_cents=99999, file_credit_cents=99999)


def test_control_totals_warn_by_default():
    result = parse_nacha(_mismatched())
    mismatch = [w for w in result.warnings if w.startswith("Control totals: ")]
    assert len(mismatch) == 2
    assert "total credit reports 99999, entries give 35000" in mismatch[0]
    # the payments themselves are untouched
    assert result.value.total_amount == Decimal("350.00")


def test_control_totals_ignore():
    assert parse_nacha(_mismatched(), control_totals=ControlTotalsPolicy.IGNORE).warnings == []


def test_control_totals_strict():
    with pytest.raises(ControlTotalsMismatch) as info:
        parse_nacha(_mismatched(), control_totals=ControlTotalsPolicy.STRICT)
    assert len(info.value.mismatches) == 2
    assert str(info.value).startswith("Control totals mismatch: ")


def test_control_totals_match_in_strict_mode():
    result = parse_nacha(scenario_b_lines(), control_totals=ControlTotalsPolicy.STRICT)
    assert result.warnings == []


def test_short_filler_line_is_reported():
    result = parse_nacha(scenario_b_lines() + ["9" * 93])
    assert result.warnings == ["Line 7: file control record is 93 characters, expected 94; skipped"]


def test_count_mismatch_label_survives_sanitising():
    lines = scenario_b_lines()
    lines[4] = lines[4][:1] + "220" + "000003" + lines[4][10:]
    with pytest.raises(ControlTotalsMismatch) as info:
        parse_nacha(lines, control_totals=ControlTotalsPolicy.STRICT)
    message = sanitize_error_message(str(info.value))
    assert "batch control entry-addenda count reports 3, entries give 2" in message
    assert "[PATH]" not in message
