"""Shell-style escaping of paths and decoding of the old percent format."""

from __future__ import annotations

from .message import Priority, msg

__all__ = ["check_escape_shell", "escape_shell", "unescape_shell", "unescape"]

_SHELL_SPECIAL = "\"'`$\\!()| "
_MAX_ESCAPED = 8192
_MAX_UNESCAPED = 4096
_OCTAL = frozenset("01234567")
_UPPER_HEX = frozenset("0123456789ABCDEF".encode("ascii"))


def check_escape_shell(text: str) -> int:
    """Return the escaped length of ``text``, or 0 if no escaping is needed."""
    count = 0
    for ch in text:
        if ord(ch) < 32:
            count += 4
        elif ch in _SHELL_SPECIAL:
            count += 2
        else:
            count += 1
    return 0 if count == len(text) else count


def escape_shell(text: str, expected_size: int) -> str:
    """Escape control characters as octal and shell specials with a backslash.

    Raises ValueError when ``expected_size`` does not fit the escape limit.
    """
    if expected_size >= _MAX_ESCAPED:
        raise ValueError(
            f"escaped size {expected_size} exceeds limit of {_MAX_ESCAPED - 1}"
        )
    parts = []
    for ch in text:
        if ord(ch) < 32:
            parts.append(f"\\{ord(ch):03o}")
        elif ch in _SHELL_SPECIAL:
            parts.append("\\" + ch)
        else:
            parts.append(ch)
    return "".join(parts)


def unescape_shell(text: str, length: int) -> str:
    """Undo :func:`escape_shell`, looking at no more than ``length`` characters
    of escape context."""
    out = []
    i = 0
    end = len(text)
    while i < end:
        ch = text[i]
        if (
            ch == "\\"
            and i + 3 < length
            and i + 3 < end
            and text[i + 1] in _OCTAL
            and text[i + 2] in _OCTAL
            and text[i + 3] in _OCTAL
        ):
            value = 64 * int(text[i + 1]) + 8 * int(text[i + 2]) + int(text[i + 3])
            out.append(chr(value & 0xFF))
            i += 4
        elif ch == "\\" and i + 2 < length and i + 1 < end:
            out.append(text[i + 1])
            i += 2
        else:
            out.append(ch)
            i += 1
    return "".join(out)


def unescape(text: str) -> str:
    """Decode the old ``%XX`` (upper-case hex) trust file escaping.

    Invalid sequences are copied as they are. Raises ValueError when the
    result would exceed the 4096 byte limit.
    """
    data = text.encode("utf-8", "surrogateescape")
    out = bytearray()

    def put(byte: int) -> None:
        if len(out) >= _MAX_UNESCAPED:
            raise ValueError("unescaped text exceeds 4096 bytes")
        out.append(byte)

    i = 0
    size = len(data)
    while i < size:
        byte = data[i]
        if byte == ord("%"):
            if i + 2 < size and data[i + 1] in _UPPER_HEX and data[i + 2] in _UPPER_HEX:
                put(int(data[i + 1 : i + 3].decode("ascii"), 16))
                i += 3
                continue
            msg(
                Priority.WARNING,
                "Input %s does not have a valid escape sequence, "
                "unable to unescape, copying char by char",
                text,
            )
        put(byte)
        i += 1

    nul = out.find(0)
    if nul >= 0:
        del out[nul:]
    return out.decode("utf-8", "surrogateescape")