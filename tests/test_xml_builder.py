"""SecureXmlBuilder state machine, validation and escaping."""
from __future__ import annotations

import io

import pytest
from defusedxml import DTDForbidden, EntitiesForbidden

from payment_converter.errors import SecurityViolation, UsageError
from payment_converter.iso20022.xml_builder import BuilderState, SecureXmlBuilder, secure_parse_xml


@pytest.fixture()
def xb():
    builder = SecureXmlBuilder()
    builder.start_document()
    return builder


# ---------------------------------------------------------------------------
# API contract
# ---------------------------------------------------------------------------


def test_double_start_is_rejected(xb):
    with pytest.raises(UsageError, match="already been started"):
        xb.start_document()


def test_end_before_start_is_rejected():
    with pytest.raises(UsageError, match="not been started"):
        SecureXmlBuilder().end_document()


def test_double_end_is_rejected(xb):
    xb.start_element("Root").end_element().end_document()
    with pytest.raises(UsageError, match="already been ended"):
        xb.end_document()


def test_element_before_start_is_rejected():
    with pytest.raises(UsageError):
        SecureXmlBuilder().start_element("Root")


def test_end_element_without_open_element(xb):
    with pytest.raises(UsageError, match="No open element"):
        xb.end_element()


def test_text_outside_element(xb):
    with pytest.raises(UsageError, match="inside an element"):
        xb.add_text("loose")


def test_attribute_after_content_is_rejected(xb):
    xb.start_element("Root").add_text("x")
    with pytest.raises(UsageError):
        xb.add_attribute("Ccy", "USD")


def test_closed_builder_is_unusable(xb):
    xb.close()
    xb.close()  # second close is a no-op
    with pytest.raises(UsageError, match="closed"):
        xb.start_element("Root")


def test_state_transitions():
    builder = SecureXmlBuilder()
    assert builder.state is BuilderState.NOT_STARTED
    builder.start_document()
    assert builder.state is BuilderState.OPEN
    builder.end_document()
    assert builder.state is BuilderState.ENDED


def test_end_document_closes_open_elements(xb):
    xb.start_element("A").start_element("B").add_text("1")
    assert xb.depth == 2
    xb.end_document()
    root = secure_parse_xml(xb.getvalue())
    assert root.tag == "A"
    assert root.find("B").text == "1"


# ---------------------------------------------------------------------------
# Output
# ---------------------------------------------------------------------------


def test_escaping_round_trips(xb):
    text = 'Smith & Sons <Ltd> "quoted"'
    xb.start_element("Root").add_attribute("note", 'a"b&c').add_element("Nm", text).end_element().end_document()
    out = xb.getvalue()
    assert "&amp;" in out and "&lt;Ltd&gt;" in out
    root = secure_parse_xml(out)
    assert root.get("note") == 'a"b&c'
    assert root.find("Nm").text == text


def test_declaration_and_indentation(xb):
    xb.start_element("Root").add_element("Child", "v").end_element().end_document()
    assert xb.getvalue() == '<?xml version="1.0" encoding="utf-8"?>\n<Root>\n  <Child>v</Child>\n</Root>\n'


def test_none_and_blank_text_produce_empty_element(xb):
    xb.start_element("Root").add_element("A", None).add_element("B", "   ").end_element().end_document()
    root = secure_parse_xml(xb.getvalue())
    assert root.find("A").text is None
    assert root.find("B").text is None


def test_external_stream_is_left_open():
    stream = io.StringIO()
    with SecureXmlBuilder(stream, indent=False) as builder:
        builder.start_document().start_element("Root").end_element().end_document()
    assert not stream.closed
    assert stream.getvalue().endswith("<Root></Root>")


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


@pytest.mark.parametrize("name", ["", "   ", "xml", "XML", "ns:Tag", "1abc", "a b", "<evil>", "Nm&"])
def test_invalid_element_names(xb, name):
    with pytest.raises(SecurityViolation):
        xb.start_element(name)


@pytest.mark.parametrize("name", ["Document", "CdtTrfTxInf", "_x", "a-b.c", "Id2"])
def test_valid_element_names(xb, name):
    xb.start_element(name)


def test_control_characters_rejected(xb):
    xb.start_element("Root")
    with pytest.raises(SecurityViolation, match="control characters"):
        xb.add_text("bad\x00value")


def test_tab_and_newline_are_allowed(xb):
    xb.start_element("Root").add_text("a\tb\nc")


def test_overlong_text_rejected():
    builder = SecureXmlBuilder(max_text_length=10)
    builder.start_document().start_element("Root")
    with pytest.raises(SecurityViolation, match="exceeds maximum length"):
        builder.add_text("x" * 11)


def test_injection_in_text_rejected(xb):
    xb.start_element("Root")
    with pytest.raises(SecurityViolation) as info:
        xb.add_element("Ustrd", "javascript:alert(1)")
    assert info.value.category == "script"


def test_rejected_value_is_not_written(xb):
    xb.start_element("Root").add_element("Ok", "fine")
    before = xb.getvalue()
    with pytest.raises(SecurityViolation):
        xb.add_element("Nm", "<script>")
    assert xb.getvalue() == before


# ---------------------------------------------------------------------------
# Secure reading
# ---------------------------------------------------------------------------


def test_secure_parse_rejects_dtd():
    doc = '<?xml version="1.0"?><!DOCTYPE r [<!ELEMENT r ANY>]><r/>'
    with pytest.raises(DTDForbidden):
        secure_parse_xml(doc)


def test_secure_parse_rejects_external_entities():
    doc = '<?xml version="1.0"?><!DOCTYPE r [<!ENTITY x SYSTEM "file:///etc/passwd">]><r>&x;</r>'
    with pytest.raises((DTDForbidden, EntitiesForbidden)):
        secure_parse_xml(doc)
