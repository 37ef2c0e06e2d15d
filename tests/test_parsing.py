"""Tests for pure protocol parsing and encoding functions."""

import pytest

from tic80_lib import parsing, protocol


def test_encode_string_escapes_quotes_and_backslashes() -> None:
    """Test quoting of request arguments."""
    assert parsing.encode_string("x") == '"x"'
    assert parsing.encode_string('say "hi"') == '"say \\"hi\\""'
    assert parsing.encode_string("a\\b") == '"a\\\\b"'


def test_decode_string() -> None:
    """Test unquoting of string results."""
    assert parsing.decode_string('  "tic-80 remoting v1" ') == "tic-80 remoting v1"
    assert parsing.decode_string('"say \\"hi\\""') == 'say "hi"'
    assert parsing.decode_string('"a\\\\b"') == "a\\b"
    # Unquoted input is only trimmed
    assert parsing.decode_string(" 42 ") == "42"
    assert parsing.decode_string('"') == '"'


def test_decode_reverses_encode() -> None:
    """Test that decoding an encoded argument gives the original text."""
    for text in ["plain", 'q"uote', "back\\slash", ""]:
        assert parsing.decode_string(parsing.encode_string(text)) == text


def test_format_request_line() -> None:
    """Test request line framing."""
    assert parsing.format_request_line(1, "hello") == "1 hello\n"
    assert parsing.format_request_line(7, "evalexpr", '"x"') == '7 evalexpr "x"\n'


def test_parse_response_line() -> None:
    """Test parsing of well-formed response lines."""
    response = parsing.parse_response_line('3 OK "tic-80 remoting v1"')
    assert response is not None
    assert response.id == 3
    assert response.status == "OK"
    assert response.data == '"tic-80 remoting v1"'

    response = parsing.parse_response_line("4 err something broke")
    assert response is not None
    assert response.status == protocol.STATUS_ERR
    assert response.data == "something broke"

    response = parsing.parse_response_line("5 OK")
    assert response is not None
    assert response.data == ""


@pytest.mark.parametrize(
    "line",
    ["", "@frame 12", "@", "garbage", "x OK 1", "5 MAYBE 1", "   "],
)
def test_parse_response_line_ignores_noise(line: str) -> None:
    """Test that out-of-band and malformed lines are dropped."""
    assert parsing.parse_response_line(line) is None


def test_parse_globals_list() -> None:
    """Test splitting of listglobals payloads."""
    assert parsing.parse_globals_list("x, score ,,TIC") == ["x", "score", "TIC"]
    assert parsing.parse_globals_list("") == []


@pytest.mark.parametrize(
    "text,expected",
    [
        ("5", 5.0),
        ("-1.5", -1.5),
        ("1e3", 1000.0),
        ('"5"', 5.0),
        (" 7 ", 7.0),
        ("true", 1.0),
        ("false", 0.0),
    ],
)
def test_parse_numeric_value(text: str, expected: float) -> None:
    """Test numeric interpretation of evaluation results."""
    assert parsing.parse_numeric_value(text) == expected


@pytest.mark.parametrize(
    "text",
    ["", "null", "nil", '"bob"', "inf", "nan", "[1, 2]", "{}"],
)
def test_parse_numeric_value_rejects(text: str) -> None:
    """Test that non-numeric, nil and non-finite results give None."""
    assert parsing.parse_numeric_value(text) is None


def test_is_expected_hello() -> None:
    """Test hello banner check."""
    assert parsing.is_expected_hello("tic-80 remoting v1")
    assert parsing.is_expected_hello("  TIC-80 Remoting V1 ")
    assert not parsing.is_expected_hello("tic-80 remoting v2")
    assert not parsing.is_expected_hello("")


def test_session_file_pattern() -> None:
    """Test discovery record file name matching."""
    assert protocol.RE_SESSION_FILE.match("tic80-remote.1234.json")
    assert protocol.RE_SESSION_FILE.match("TIC80-REMOTE.abc.JSON")
    assert not protocol.RE_SESSION_FILE.match("tic80-remote..json")
    assert not protocol.RE_SESSION_FILE.match("other.json")
