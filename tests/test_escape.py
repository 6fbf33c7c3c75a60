import pytest

from trustguard.escape import check_escape_shell, escape_shell, unescape, unescape_shell

SAMPLES = [
    "/usr/bin/ls",
    "/tmp/with space",
    "/tmp/quote\"'`$!()|",
    "/tmp/back\\slash",
    "/tmp/new\nline\ttab",
    "/tmp/\x015digit",
    "",
]


def test_plain_path_needs_no_escape():
    assert check_escape_shell("/usr/bin/ls") == 0


def test_space_is_backslash_escaped():
    assert escape_shell("/tmp/a b", 9) == "/tmp/a\\ b"


def test_control_char_becomes_octal():
    assert escape_shell("a\nb", 6) == "a\\012b"


@pytest.mark.parametrize("text", SAMPLES)
def test_check_matches_escaped_length(text):
    escaped = escape_shell(text, 100)
    expected = 0 if escaped == text else len(escaped)
    assert check_escape_shell(text) == expected


@pytest.mark.parametrize("text", SAMPLES)
def test_escape_round_trip(text):
    escaped = escape_shell(text, 100)
    assert unescape_shell(escaped, len(escaped) + 1) == text


def test_escape_size_limit():
    with pytest.raises(ValueError):
        escape_shell("x", 8192)


def test_unescape_shell_respects_length_bound():
    # With no room for the octal digits the backslash escapes one char only.
    assert unescape_shell("\\101", 3) == "101"
    assert unescape_shell("\\101", 5) == "A"


def test_unescape_percent_sequence():
    assert unescape("%2Fusr%2Fbin") == "/usr/bin"


def test_unescape_lowercase_hex_is_copied():
    assert unescape("%2fusr") == "%2fusr"


def test_unescape_incomplete_sequence_is_copied():
    assert unescape("abc%4") == "abc%4"


def test_unescape_utf8_bytes():
    assert unescape("caf%C3%A9") == "café"


def test_unescape_stops_at_nul():
    assert unescape("ab%00cd") == "ab"


def test_unescape_limit():
    assert unescape("a" * 4096) == "a" * 4096
    with pytest.raises(ValueError):
        unescape("a" * 4097)