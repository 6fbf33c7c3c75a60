"""Background updater feeding the trust database from a named pipe."""

from __future__ import annotations

import os
import select
import stat
import threading
from enum import Enum
from typing import Callable, Iterable, Optional

from .database import Backend, DatabaseError, TrustDatabase, TrustSource, format_record
from .fdlines import LineReader
from .message import Priority, msg

__all__ = ["Operation", "TrustUpdater", "parse_operation", "parse_update_record"]

RELOAD_TRUSTDB_COMMAND = "1"
FLUSH_CACHE_COMMAND = "2"
RELOAD_RULES_COMMAND = "3"

BUFFER_SIZE = 4096
_MAX_PATH = 2048
_MAX_HASH = 64


class Operation(Enum):
    """What a line read from the pipe asks for."""

    NO_OP = 0
    ONE_FILE = 1
    RELOAD_DB = 2
    FLUSH_CACHE = 3
    RELOAD_RULES = 4


_COMMANDS = {
    "/": Operation.ONE_FILE,
    RELOAD_TRUSTDB_COMMAND: Operation.RELOAD_DB,
    FLUSH_CACHE_COMMAND: Operation.FLUSH_CACHE,
    RELOAD_RULES_COMMAND: Operation.RELOAD_RULES,
}


def parse_operation(line: str) -> Operation:
    """Classify a pipe line by its first character that is not whitespace."""
    for ch in line:
        operation = _COMMANDS.get(ch)
        if operation is not None:
            return operation
        if ch.isspace():
            continue
        msg(Priority.ERR, 'Cannot handle data "%s" from pipe', line)
        break
    return Operation.NO_OP


def parse_update_record(line: str) -> tuple[str, str]:
    """Parse ``path size sha256`` into the key and data of a trust record.

    Raises ValueError when the line does not hold the three fields.
    """
    msg(Priority.DEBUG, "update_thread: Parsing input buffer: %s", line)
    fields = line.split()
    if len(fields) < 3:
        raise ValueError(f"expected path, size and hash: {line!r}")
    path, size_text, sha = fields[0], fields[1], fields[2]
    if len(path) > _MAX_PATH:
        raise ValueError(f"path longer than {_MAX_PATH} characters")
    if not size_text.isdigit():
        raise ValueError(f"bad file size {size_text!r}")
    data = format_record(TrustSource.UNKNOWN, int(size_text), sha[:_MAX_HASH])
    return path, data


class TrustUpdater:
    """Listens on a named pipe for trust updates and control commands.

    Lines starting with ``/`` add a record; ``1`` reloads the database from
    the backends, ``2`` flushes the cache and ``3`` reloads the rules.
    """

    def __init__(
        self,
        database: TrustDatabase,
        fifo_path: str | os.PathLike[str],
        load_backends: Callable[[], Iterable[Backend]],
        reload_rules: Optional[Callable[[], None]] = None,
        flush_cache: Optional[Callable[[], None]] = None,
    ) -> None:
        self.database = database
        self.fifo_path = os.fspath(fifo_path)
        self.load_backends = load_backends
        self.reload_rules = reload_rules
        self.flush_cache = flush_cache
        self.poll_interval = 1.0
        self.reload_requested = threading.Event()
        self.rules_requested = threading.Event()
        self._fd: Optional[int] = None
        self._reader: Optional[LineReader] = None
        self._thread: Optional[threading.Thread] = None

    # -- the pipe -----------------------------------------------------

    def preconstruct_fifo(self, gid: Optional[int]) -> int:
        """Create and open the pipe, giving it group ``gid`` when that is not
        ours. Returns the descriptor; raises OSError on failure."""
        self.unlink_fifo()
        try:
            os.mkfifo(self.fifo_path, 0o660)
        except OSError as exc:
            msg(Priority.ERR, "Failed to create a pipe %s (%s)",
                self.fifo_path, exc.strerror)
            raise
        try:
            fd = os.open(self.fifo_path, os.O_RDWR)
        except OSError as exc:
            msg(Priority.ERR, "Failed to open a pipe %s (%s)",
                self.fifo_path, exc.strerror)
            self.unlink_fifo()
            raise
        if gid is not None and gid != os.getgid():
            try:
                os.fchown(fd, 0, gid)
            except OSError as exc:
                msg(Priority.ERR, "Failed to fix ownership of pipe %s (%s)",
                    self.fifo_path, exc.strerror)
                self.unlink_fifo()
                os.close(fd)
                raise
        os.set_blocking(fd, False)
        self._fd = fd
        self._reader = LineReader(fd)
        return fd

    def unlink_fifo(self) -> None:
        """Remove the pipe from the file system, if it is there."""
        try:
            if stat.S_ISFIFO(os.lstat(self.fifo_path).st_mode):
                os.unlink(self.fifo_path)
        except OSError:
            pass

    def _close_fifo(self) -> None:
        if self._fd is not None:
            os.close(self._fd)
            self._fd = None
            self._reader = None
        self.unlink_fifo()

    # -- commands -----------------------------------------------------

    def request_reload(self) -> None:
        """Ask the running updater to reload the database from the backends."""
        self.reload_requested.set()

    def _reload_db(self) -> None:
        msg(Priority.INFO,
            "It looks like there was an update of the system... Syncing DB.")
        backends = list(self.load_backends())
        try:
            self.database.update(backends)
        except DatabaseError:
            msg(Priority.ERR, "Cannot update trust database!")
            self._close_fifo()
            raise
        msg(Priority.INFO, "Updated")

    def _reload_rules(self) -> None:
        if self.reload_rules is None:
            return
        with self.database.rule_lock:
            self.reload_rules()

    def _flush(self) -> None:
        if self.flush_cache is not None:
            self.flush_cache()
        else:
            self.database.flush_needed.set()

    def _save_record(self, line: str) -> bool:
        try:
            path, data = parse_update_record(line)
        except ValueError:
            msg(Priority.INFO, "Corrupted data read, ignoring...")
            return False
        msg(Priority.DEBUG, "update_thread: Saving %s %s", path, data)
        with self.database.update_lock:
            try:
                self.database.write(path, data)
            except DatabaseError as exc:
                msg(Priority.ERR, "Cannot save %s (%s)", path, exc)
                return False
        return True

    def handle_line(self, line: str | bytes) -> Operation:
        """Carry out one pipe line; return the operation that was performed."""
        if isinstance(line, bytes):
            line = line.decode("utf-8", "surrogateescape")
        if line.endswith("\n"):
            line = line[:-1]
        operation = parse_operation(line)
        if operation is Operation.RELOAD_DB:
            self._reload_db()
        elif operation is Operation.RELOAD_RULES:
            self._reload_rules()
        elif operation is Operation.FLUSH_CACHE:
            self._flush()
        elif operation is Operation.ONE_FILE:
            if not self._save_record(line):
                return Operation.NO_OP
        return operation

    def process_available(self) -> list[Operation]:
        """Handle every complete line waiting in the pipe."""
        if self._reader is None:
            raise OSError("the update pipe is not open")
        reader = self._reader
        done = []
        while True:
            reader.rewind()
            try:
                raw = reader.read_line(BUFFER_SIZE)
            except OSError:
                break
            if raw is None:
                if reader.eof:
                    break
                continue
            if not raw.endswith(b"\n"):
                msg(Priority.ERR, "Too long line?")
                continue
            done.append(self.handle_line(raw))
            if reader.eof:
                break
        return done

    # -- the loop -----------------------------------------------------

    def run(self, stop_event: threading.Event) -> None:
        """Serve the pipe until ``stop_event`` is set."""
        if self._fd is None:
            try:
                self.preconstruct_fifo(None)
            except OSError:
                return
        fd = self._fd
        assert fd is not None
        os.set_blocking(fd, False)
        poller = select.poll()
        poller.register(fd, select.POLLIN)
        try:
            while not stop_event.is_set():
                try:
                    events = poller.poll(int(self.poll_interval * 1000))
                except InterruptedError:
                    continue
                except OSError as exc:
                    msg(Priority.ERR, "Update poll error (%s)", exc.strerror)
                    break

                if self.rules_requested.is_set():
                    self.rules_requested.clear()
                    self._reload_rules()
                if self.reload_requested.is_set():
                    self.reload_requested.clear()
                    self._reload_db()

                if any(mask & select.POLLIN for _, mask in events):
                    self.process_available()
        finally:
            self._close_fifo()

    def start(self, stop_event: threading.Event) -> threading.Thread:
        """Run the updater in a background thread."""
        thread = threading.Thread(
            target=self.run, args=(stop_event,), name="trust-updater", daemon=True
        )
        self._thread = thread
        thread.start()
        return thread

    def join(self) -> None:
        """Wait for the background thread to finish."""
        if self._thread is not None:
            self._thread.join()
            self._thread = None