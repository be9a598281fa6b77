"""
Tests for the rule-tier extractors and the evidence span check
"""

import pytest

from formly.utils import text_patterns
from formly.utils.evidence import validate_evidence_span


# ========== Yes / no ==========

@pytest.mark.parametrize("text, expected", [
    ("yes", "true"),
    ("Yeah, I have", "true"),
    ("nope", "false"),
    ("no, I don't", "false"),
    ("yes and no", None),
    ("maybe later", None),
    ("", None),
])
def test_yes_no(text, expected):
    assert text_patterns.yes_no(text) == expected


def test_skip_words():
    assert text_patterns.is_skip("Skip.")
    assert text_patterns.is_skip(" N/A ")
    assert text_patterns.is_skip("prefer not to say")
    assert not text_patterns.is_skip("skip this one please")


# ========== Typed extractors ==========

def test_extract_email_spoken_form():
    assert text_patterns.extract_email("jane dot doe at example dot com") == "jane.doe@example.com"
    assert text_patterns.extract_email("Reach me: Jane@Example.org.") == "jane@example.org"
    assert text_patterns.extract_email("no email here") is None


def test_extract_phone_skips_dates():
    assert text_patterns.extract_phone("call 555-123-4567 anytime") == "555-123-4567"
    assert text_patterns.extract_phone("born 1990-01-15") is None
    assert text_patterns.extract_phone("room 12") is None


def test_extract_date_formats():
    assert text_patterns.extract_date("born on 1990-01-15 in Ohio") == "1990-01-15"
    assert text_patterns.extract_date("it was 01/15/1990") == "01/15/1990"
    assert text_patterns.extract_date("March 3rd, 1985") == "March 3, 1985"
    assert text_patterns.extract_date("15th Jan 2024") == "15 Jan 2024"
    assert text_patterns.extract_date("starting tomorrow") == "tomorrow"
    assert text_patterns.extract_date("sometime soon") is None


def test_extract_number():
    assert text_patterns.extract_number("about 200 days") == "200"
    assert text_patterns.extract_number("it costs $1,250.50") == "$1,250.50"
    assert text_patterns.extract_number("on 01/15/1990") is None


def test_extract_choice_longest_option_first():
    options = ["Mail", "In Person", "Person"]
    assert text_patterns.extract_choice("I'll come in person", options) == "In Person"
    assert text_patterns.extract_choice("email me", ["Mail"]) is None


def test_text_after_keyword():
    assert text_patterns.text_after_keyword("My address is 12 Main St.", ["address"]) == "12 Main St"
    assert text_patterns.text_after_keyword("I live at 4 Elm Rd", text_patterns.ADDRESS_KEYWORDS) == "4 Elm Rd"
    assert text_patterns.text_after_keyword("surname: Smith", ["surname"]) == "Smith"
    assert text_patterns.text_after_keyword("address", ["address"]) is None
    assert text_patterns.text_after_keyword("hello", ["address"]) is None


# ========== Evidence span ==========

def test_evidence_case_and_whitespace_insensitive():
    assert validate_evidence_span("12 main st", "My address is 12  Main\nSt, Springfield")
    assert validate_evidence_span("JANE", "i'm jane")


def test_evidence_rejects_invented_values():
    assert not validate_evidence_span("John Smith", "I'm Jane")
    assert not validate_evidence_span("", "anything")
    assert not validate_evidence_span(None, "anything")
    assert not validate_evidence_span("long value", "short")
