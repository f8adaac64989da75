import math

import pytest

from captionrelay.validation import LengthValidator, accept, extract_content


@pytest.mark.parametrize(
    "length,expected",
    [(0, False), (9, False), (10, True), (15, True), (20, True), (21, False)],
)
def test_accept_window_is_inclusive(length, expected):
    assert accept("a" * length, 10, 20) is expected


def test_missing_or_infinite_bounds_are_unbounded():
    assert accept("", None, None)
    assert accept("a" * 10_000, 5, math.inf)
    assert accept("", -math.inf, 3)
    assert not accept("abcd", None, 3)


def test_length_validator_reports_reason():
    result = LengthValidator(5, 8).validate("abc")
    assert not result.valid
    assert "Too short" in result.error

    result = LengthValidator(5, 8).validate("abcdefghij")
    assert not result.valid
    assert "Too long" in result.error

    result = LengthValidator(5, 8).validate("abcdef")
    assert result.valid
    assert result.value == "abcdef"


def test_schema_description():
    assert "unbounded" in LengthValidator(10).get_schema_description()
    assert "between 10 and 20" in LengthValidator(10, 20).get_schema_description()


def test_extract_content():
    ok = {"choices": [{"message": {"content": "a red fox"}}]}
    assert extract_content(ok) == "a red fox"
    assert extract_content({"choices": []}) == ""
    assert extract_content({"choices": [{"message": {"content": None}}]}) == ""
    assert extract_content({"choices": [{"message": {"content": [{"type": "text"}]}}]}) == ""
    assert extract_content({"raw": "<html>"}) == ""
    assert extract_content(None) == ""
