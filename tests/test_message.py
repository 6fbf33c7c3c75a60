from unittest import mock

import pytest

from trustguard.message import MessageMode, Priority, msg, set_message_mode


@pytest.fixture(autouse=True)
def _restore_mode():
    yield
    set_message_mode(MessageMode.QUIET, False)


def test_stderr_mode_writes_formatted_line(capsys):
    set_message_mode(MessageMode.STDERR, False)
    msg(Priority.ERR, "failed %s (%d)", "open", 5)
    assert capsys.readouterr().err == "failed open (5)\n"


def test_message_without_args_is_written_verbatim(capsys):
    set_message_mode(MessageMode.STDERR, False)
    msg(Priority.INFO, "100% done")
    assert capsys.readouterr().err == "100% done\n"


def test_quiet_mode_writes_nothing(capsys):
    set_message_mode(MessageMode.QUIET, True)
    msg(Priority.ERR, "should not appear")
    assert capsys.readouterr().err == ""


def test_debug_suppressed_without_debug_flag(capsys):
    set_message_mode(MessageMode.STDERR, False)
    msg(Priority.DEBUG, "hidden")
    msg(Priority.WARNING, "shown")
    assert capsys.readouterr().err == "shown\n"


def test_debug_shown_with_debug_flag(capsys):
    set_message_mode(MessageMode.STDERR, True)
    msg(Priority.DEBUG, "visible %s", "debug")
    assert capsys.readouterr().err == "visible debug\n"


def test_syslog_mode_sends_to_syslog(capsys):
    set_message_mode(MessageMode.SYSLOG, False)
    with mock.patch("syslog.syslog") as fake:
        msg(Priority.WARNING, "value %d", 7)
    fake.assert_called_once_with(int(Priority.WARNING), "value 7")
    assert capsys.readouterr().err == ""