"""Trust database kept in LMDB: records of trusted files and their checks."""

from __future__ import annotations

import hashlib
import os
import threading
from dataclasses import dataclass, field
from enum import IntEnum
from pathlib import Path
from typing import Iterable, Iterator, Optional, TextIO

import lmdb

from .fileinfo import FileInfo, get_hash_from_fd, get_ima_hash
from .message import Priority, msg
from .trustlist import TrustList

__all__ = [
    "Integrity",
    "TrustSource",
    "Backend",
    "TrustRecord",
    "DatabaseError",
    "TrustDatabase",
    "lookup_tsource",
    "format_record",
    "parse_record",
    "unlink_db",
    "migrate_database",
]

MEGABYTE = 1024 * 1024
DB_NAME = b"trust.db"
DB_VERSION = b"2"
_MAX_ATTEMPTS = 128
_TOP_LEVEL_DIRS = ("lib64", "lib", "bin", "sbin")
_DB_FILES = ("data.mdb", "lock.mdb", "db.ver")


class Integrity(IntEnum):
    """How much of a file is verified against its trust record."""

    NONE = 0
    SIZE = 1
    IMA = 2
    SHA256 = 3


class TrustSource(IntEnum):
    """Where a trust record came from."""

    UNKNOWN = 0
    RPM = 1
    DEB = 2
    FILE_DB = 3


_SOURCE_NAMES = {
    TrustSource.RPM: "rpmdb",
    TrustSource.DEB: "debdb",
    TrustSource.FILE_DB: "filedb",
}


@dataclass
class Backend:
    """A named supplier of (path, record) trust entries."""

    name: str
    entries: TrustList = field(default_factory=TrustList)


@dataclass(frozen=True)
class TrustRecord:
    """The parsed data stored for a trusted path."""

    tsource: int
    size: int
    sha: str


class DatabaseError(Exception):
    """The trust database could not be used as asked."""


def lookup_tsource(tsource: int) -> str:
    """Name of a trust source, or ``src_unknown``."""
    try:
        return _SOURCE_NAMES.get(TrustSource(tsource), "src_unknown")
    except ValueError:
        return "src_unknown"


def format_record(tsource: int, size: int, sha: str) -> str:
    """Text stored as the data of a trust record."""
    return f"{int(tsource)} {int(size)} {sha}"


def parse_record(data: str) -> TrustRecord:
    """Parse record text; raises ValueError when it is malformed."""
    fields = data.split()
    if len(fields) < 3:
        raise ValueError(f"malformed trust record: {data!r}")
    tsource, size = int(fields[0]), int(fields[1])
    if tsource < 0 or size < 0:
        raise ValueError(f"malformed trust record: {data!r}")
    return TrustRecord(tsource, size, fields[2][:64])


def unlink_db(data_dir: str | os.PathLike[str]) -> None:
    """Remove the database files; missing files are not an error."""
    failures = []
    for name in _DB_FILES:
        path = Path(data_dir) / name
        try:
            path.unlink()
        except FileNotFoundError:
            continue
        except OSError as exc:
            msg(Priority.ERR, "Could not unlink %s (%s)", path, exc.strerror)
            failures.append(str(path))
    if failures:
        raise DatabaseError("Could not unlink " + ", ".join(failures))


def migrate_database(data_dir: str | os.PathLike[str]) -> None:
    """Make sure the database is of the current version.

    A database without a version file predates duplicate keys and is
    removed; a version file of another version raises DatabaseError.
    """
    vpath = Path(data_dir) / "db.ver"
    try:
        with open(vpath, "rb") as stream:
            content = stream.read(2)
    except OSError:
        msg(Priority.INFO, "Trust database migration will be performed.")
        unlink_db(data_dir)
        try:
            fd = os.open(vpath, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o640)
        except OSError as exc:
            msg(Priority.ERR, "Failed writing db version %s", exc.strerror)
            raise DatabaseError(f"Failed writing db version: {exc}") from exc
        with os.fdopen(fd, "wb") as stream:
            stream.write(DB_VERSION)
        return
    if content[:1] != DB_VERSION:
        raise DatabaseError(f"unsupported trust database version {content!r}")


class TrustDatabase:
    """The trust database of one data directory."""

    def __init__(
        self,
        data_dir: str | os.PathLike[str],
        max_size_mb: int,
        integrity: Integrity = Integrity.NONE,
    ) -> None:
        self.data_dir = Path(data_dir)
        self.max_size_mb = max_size_mb
        self.integrity = Integrity(integrity)
        self.update_lock = threading.Lock()
        self.rule_lock = threading.Lock()
        self.flush_needed = threading.Event()
        self.merged_dirs: set[str] = set()
        self.pages = 0
        self.max_pages = 0
        self._env: Optional[lmdb.Environment] = None
        self._db = None
        self._max_key = 511

    # -- lifetime -----------------------------------------------------

    def open(self) -> TrustDatabase:
        """Migrate if needed and open the environment."""
        self.data_dir.mkdir(parents=True, exist_ok=True)
        migrate_database(self.data_dir)
        try:
            env = lmdb.open(
                str(self.data_dir),
                map_size=self.max_size_mb * MEGABYTE,
                max_dbs=2,
                max_readers=4,
                sync=False,
                map_async=True,
                writemap=True,
                mode=0o660,
            )
            self._db = env.open_db(DB_NAME, dupsort=True, create=True)
        except lmdb.Error as exc:
            msg(Priority.ERR, "env_open error: %s", exc)
            raise DatabaseError(f"Cannot open the trust database: {exc}") from exc
        self._env = env
        self._max_key = env.max_key_size()
        msg(Priority.INFO, "fapolicyd integrity is %u", int(self.integrity))
        self.merged_dirs = {
            name for name in _TOP_LEVEL_DIRS if os.path.islink("/" + name)
        }
        return self

    def close(self) -> None:
        """Log usage statistics and close the environment."""
        if self._env is None:
            return
        self._collect_stats()
        if self.pages == 0:
            msg(Priority.DEBUG, "The trust database is empty.")
        else:
            msg(Priority.DEBUG, "Trust database max pages: %d", self.max_pages)
            msg(
                Priority.DEBUG,
                "Trust database pages in use: %d (%d%%)",
                self.pages,
                self._percent_used(),
            )
        self._env.close()
        self._env = None
        self._db = None

    def __enter__(self) -> TrustDatabase:
        return self.open()

    def __exit__(self, *args: object) -> None:
        self.close()

    # -- helpers ------------------------------------------------------

    def _require_open(self) -> lmdb.Environment:
        if self._env is None:
            raise DatabaseError("the trust database is not open")
        return self._env

    def _key(self, index: str | bytes) -> bytes:
        raw = (
            index.encode("utf-8", "surrogateescape")
            if isinstance(index, str)
            else bytes(index)
        )
        if len(raw) > self._max_key:
            return hashlib.sha512(raw).hexdigest().encode("ascii") + b"\0"
        return raw

    def _values(self, txn: lmdb.Transaction, key: bytes) -> Iterator[str]:
        cursor = txn.cursor(self._db)
        if not cursor.set_key(key):
            return
        for value in cursor.iternext_dup():
            yield bytes(value).decode("utf-8", "surrogateescape")

    def _collect_stats(self) -> None:
        env = self._require_open()
        with env.begin(db=self._db) as txn:
            st = txn.stat(self._db)
        self.pages = st["leaf_pages"] + st["branch_pages"] + st["overflow_pages"]
        if st["psize"]:
            self.max_pages = env.info()["map_size"] // st["psize"]

    def _percent_used(self) -> int:
        return (100 * self.pages) // self.max_pages if self.max_pages else 0

    def _check_size(self) -> None:
        self._collect_stats()
        if self.entry_count() == 0:
            msg(Priority.WARNING, "The trust database is empty")
            return
        percent = self._percent_used()
        if percent > 80:
            msg(
                Priority.WARNING,
                "Trust database at %d%% capacity - "
                "might want to increase db_max_size setting",
                percent,
            )

    def _load(self, backends: Iterable[Backend]) -> int:
        failures = 0
        for backend in backends:
            msg(Priority.INFO, "Loading trust data from %s backend", backend.name)
            for item in backend.entries:
                try:
                    self.write(item.index, item.data)
                except DatabaseError as exc:
                    failures += 1
                    msg(
                        Priority.ERR,
                        'Error (%s) writing key="%s" data="%s"',
                        exc,
                        item.index,
                        item.data,
                    )
        return failures

    # -- records ------------------------------------------------------

    def write(self, index: str, data: str) -> None:
        """Store ``data`` under ``index``; duplicates of a key are kept."""
        env = self._require_open()
        key = self._key(index)
        value = data.encode("utf-8", "surrogateescape")
        try:
            with env.begin(write=True, db=self._db) as txn:
                txn.put(key, value, dupdata=True)
        except lmdb.MapFullError as exc:
            msg(Priority.ERR, "db_max_size needs to be increased")
            raise DatabaseError(str(exc)) from exc
        except lmdb.Error as exc:
            msg(Priority.ERR, "%s", exc)
            raise DatabaseError(str(exc)) from exc

    def read_all(self, index: str) -> list[str]:
        """Every record stored under ``index``, in key order."""
        env = self._require_open()
        try:
            with env.begin(db=self._db) as txn:
                return list(self._values(txn, self._key(index)))
        except lmdb.Error as exc:
            raise DatabaseError(str(exc)) from exc

    def is_empty(self) -> bool:
        """True when there are no records."""
        return self.entry_count() == 0

    def entry_count(self) -> int:
        """Number of records, duplicates included."""
        env = self._require_open()
        with env.begin(db=self._db) as txn:
            return txn.stat(self._db)["entries"]

    def delete_all(self) -> None:
        """Remove every record."""
        env = self._require_open()
        try:
            with env.begin(write=True) as txn:
                txn.drop(self._db, delete=False)
        except lmdb.MapFullError as exc:
            msg(Priority.ERR, "db_max_size needs to be increased")
            raise DatabaseError(f"Cannot delete database: {exc}") from exc
        except lmdb.Error as exc:
            msg(Priority.DEBUG, "mdb_drop -> %s", exc)
            raise DatabaseError(f"Cannot delete database: {exc}") from exc

    def create(self, backends: Iterable[Backend]) -> None:
        """Fill the database from the backends and flush it to disk."""
        msg(Priority.INFO, "Creating trust database")
        failures = self._load(backends)
        self._require_open().sync(True)
        self._check_size()
        if failures:
            raise DatabaseError(f"{failures} trust records could not be written")

    def check_copy(self, backends: Iterable[Backend]) -> bool:
        """Compare with the backends; True when the database is out of date."""
        env = self._require_open()
        msg(Priority.INFO, "Checking if the trust database up to date")
        problems = 0
        total = 0
        added = 0
        with env.begin(db=self._db) as txn:
            for backend in backends:
                msg(
                    Priority.INFO,
                    "Importing trust data from %s backend",
                    backend.name,
                )
                total += len(backend.entries)
                for item in backend.entries:
                    examined = 0
                    found = False
                    for value in self._values(txn, self._key(item.index)):
                        examined += 1
                        if value == item.data:
                            found = True
                            break
                    if found:
                        continue
                    problems += 1
                    if examined == 0:
                        msg(
                            Priority.DEBUG,
                            "%s is not in the trust database",
                            item.index,
                        )
                        added += 1
                    else:
                        msg(Priority.DEBUG, "Trust data miscompare for %s", item.index)

        db_total = self.entry_count()
        msg(Priority.INFO, "Entries in trust DB: %d", db_total)
        self._check_size()
        msg(
            Priority.INFO,
            "Loaded trust info from all backends(without duplicates): %d",
            total,
        )
        if added > 0:
            msg(Priority.INFO, "New trust database entries: %d", added)
        removed = abs(db_total - (total - added))
        if removed > 0:
            msg(Priority.INFO, "Removed trust database entries: %d", removed)
        problems += removed

        if problems:
            msg(
                Priority.WARNING,
                "Found %d problematic trust database entries",
                problems,
            )
            return True
        msg(Priority.INFO, "Trust database checks OK")
        return False

    def update(self, backends: Iterable[Backend]) -> None:
        """Replace all records with those of the backends."""
        msg(Priority.INFO, "Updating trust database")
        msg(Priority.DEBUG, "Loading trust database backends")
        env = self._require_open()
        with self.update_lock:
            self.delete_all()
            failures = self._load(backends)
            self.flush_needed.set()
        env.sync(True)
        if failures:
            msg(Priority.ERR, "Failed to create the trust database (%d)", failures)
            self.close()
            raise DatabaseError("Failed to create the trust database")

    # -- trust checks -------------------------------------------------

    def _read_trust(
        self,
        txn: lmdb.Transaction,
        path: str,
        info: Optional[FileInfo],
        fd: int,
    ) -> bool:
        values = self._values(txn, self._key(path))
        if self.integrity is Integrity.NONE or info is None:
            return next(values, None) is not None

        expected: Optional[str] = None
        attempts = 0
        for value in values:
            attempts += 1
            try:
                record = parse_record(value)
            except ValueError as exc:
                raise DatabaseError(f"corrupt trust record for {path}") from exc

            if self.integrity is Integrity.SIZE:
                if record.size == info.size:
                    return True
            elif self.integrity is Integrity.IMA:
                if expected is None:
                    expected = get_ima_hash(fd)
                    if expected is None:
                        raise DatabaseError(f"no IMA hash available for {path}")
                if record.size == info.size and record.sha == expected:
                    return True
            elif self.integrity is Integrity.SHA256:
                if expected is None:
                    try:
                        expected = get_hash_from_fd(fd, info.size, True)
                    except OSError as exc:
                        raise DatabaseError(f"cannot hash {path}: {exc}") from exc
                if record.size == info.size and record.sha == expected:
                    return True
            else:
                raise DatabaseError(f"unknown integrity setting {self.integrity}")

            if attempts >= _MAX_ATTEMPTS - 1:
                msg(
                    Priority.ERR,
                    "Checked 128 duplicates for %s "
                    "and there is no match. Breaking the cycle.",
                    path,
                )
                raise DatabaseError(f"too many duplicates for {path}")
        return False

    def check_trust(self, path: str, info: Optional[FileInfo], fd: int) -> bool:
        """True if ``path`` is trusted; raises DatabaseError on failure.

        Without ``info`` only the presence of the path is checked. On
        systems where top level directories link into /usr, a /usr path
        is tried again without the /usr prefix.
        """
        env = self._require_open()
        with self.update_lock:
            try:
                with env.begin(db=self._db) as txn:
                    if self._read_trust(txn, path, info, fd):
                        return True
                    if path.startswith("/usr/"):
                        rest = path[5:]
                        if any(
                            name in self.merged_dirs and rest.startswith(name + "/")
                            for name in _TOP_LEVEL_DIRS
                        ):
                            return self._read_trust(txn, path[4:], info, fd)
            except lmdb.Error as exc:
                raise DatabaseError(str(exc)) from exc
        return False

    # -- reporting ----------------------------------------------------

    def report(self, stream: TextIO) -> None:
        """Write page usage figures to ``stream``."""
        if self._env is not None:
            self._collect_stats()
        stream.write(f"Trust database max pages: {self.max_pages}\n")
        stream.write(
            f"Trust database pages in use: {self.pages} ({self._percent_used()}%)\n"
        )

    def walk(self) -> Iterator[tuple[str, str]]:
        """Yield every (key, data) pair; raises DatabaseError when empty."""
        env = self._require_open()
        if self.is_empty():
            raise DatabaseError("The trust database is empty - nothing to do")
        with env.begin(db=self._db) as txn:
            for key, value in txn.cursor(self._db):
                yield (
                    bytes(key).decode("utf-8", "surrogateescape"),
                    bytes(value).decode("utf-8", "surrogateescape"),
                )