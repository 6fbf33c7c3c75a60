"""Diagnostic messages routed to stderr, syslog or nowhere."""

from __future__ import annotations

import sys
from enum import Enum, IntEnum

__all__ = ["MessageMode", "Priority", "set_message_mode", "msg"]


class MessageMode(Enum):
    """Where informational messages are sent."""

    STDERR = 0
    SYSLOG = 1
    QUIET = 2


class Priority(IntEnum):
    """Message priorities, numbered as syslog numbers them."""

    EMERG = 0
    ALERT = 1
    CRIT = 2
    ERR = 3
    WARNING = 4
    NOTICE = 5
    INFO = 6
    DEBUG = 7


_mode: MessageMode = MessageMode.QUIET
_debug: bool = False


def set_message_mode(mode: MessageMode, debug: bool) -> None:
    """Choose the message destination and whether debug messages are shown."""
    global _mode, _debug
    _mode = MessageMode(mode)
    _debug = bool(debug)


def msg(priority: int, fmt: str, *args: object) -> None:
    """Emit a message, formatting ``fmt`` with ``args`` when any are given."""
    if _mode is MessageMode.QUIET:
        return
    if priority == Priority.DEBUG and not _debug:
        return

    text = fmt % args if args else fmt
    if _mode is MessageMode.SYSLOG:
        import syslog

        syslog.syslog(int(priority), text)
    else:
        stream = sys.stderr
        stream.write(text + "\n")
        stream.flush()