# trustguard

`trustguard` is a library for keeping and querying a trust database of
files. For each trusted path it stores a record of where the trust came
from, the file size and the file's SHA-256 digest, and it checks files
presented to it against those records.

## Modules

- `trustguard.database` – `TrustDatabase`, kept in an LMDB environment in a
  data directory. It is used as a context manager (or with `open()` /
  `close()`). Records are written with `write`, read back with `read_all`,
  counted with `entry_count` / `is_empty`, and iterated with `walk`.
  `create(backends)` fills the database from a list of `Backend` objects,
  `check_copy(backends)` returns `True` when the stored copy differs from
  the backends, and `update(backends)` replaces every record.
  `check_trust(path, info, fd)` answers whether a path is trusted, honouring
  the configured `Integrity` level (`NONE`, `SIZE`, `IMA` or `SHA256`); on
  systems where `/lib`, `/lib64`, `/bin` or `/sbin` are symlinks, a `/usr/...`
  path is also tried without the `/usr` prefix. Failures raise
  `DatabaseError`. The helpers `format_record`, `parse_record` (returning a
  `TrustRecord`), `lookup_tsource`, `unlink_db` and `migrate_database` handle
  the record text and the on-disk version file.
- `trustguard.updater` – `TrustUpdater`, which creates a named pipe and
  serves it, in the calling thread (`run`) or a background thread
  (`start` / `join`). A line starting with `/` adds a record
  (`path size sha256`), `1` reloads the database from the backends, `2`
  flushes caches and `3` reloads rules. `parse_operation` and
  `parse_update_record` parse single lines.
- `trustguard.pathfilter` – `PathFilter`, an indentation-based tree of
  `+` (keep) and `-` (drop) rules over paths and glob patterns.
  `load(lines)` and `load_file(*paths)` read rules, raising `FilterError` on
  bad input; `check(path)` returns whether a path is kept.
- `trustguard.fileinfo` – file fingerprints (`FileInfo`, `stat_file_entry`,
  `compare_file_infos`), path lookup for a descriptor (`get_file_from_fd`),
  ELF inspection (`gather_elf` returning `ElfInfo` flags,
  `classify_elf_info`), `classify_device`, and hashing (`get_hash_from_fd`,
  `get_ima_hash`, `bytes2hex`).
- `trustguard.lru` – `LruCache`, a fixed-slot LRU cache of `CacheNode`
  entries with hit, miss and eviction counts and a `report` method.
- `trustguard.escape` – `escape_shell`, `check_escape_shell` and
  `unescape_shell` for shell-style escaping of paths, and `unescape` for the
  older `%XX` encoding.
- `trustguard.trustlist` – `TrustList`, an ordered list of `ListItem`
  (index, data) entries.
- `trustguard.fdlines` – `LineReader`, a line reader over a raw file
  descriptor.
- `trustguard.message` – `set_message_mode` and `msg`, sending messages to
  stderr, syslog or nowhere (`MessageMode`), with `Priority` levels.

## Example

```python
from trustguard.database import (
    Backend, Integrity, TrustDatabase, TrustSource, format_record,
)
from trustguard.trustlist import TrustList

entries = TrustList()
entries.append("/usr/bin/tool", format_record(TrustSource.FILE_DB, 1234, "ab" * 32))
backend = Backend(name="file", entries=entries)

with TrustDatabase("/var/lib/trustguard", 100, Integrity.NONE) as db:
    if db.is_empty():
        db.create([backend])
    elif db.check_copy([backend]):
        db.update([backend])
    print(db.check_trust("/usr/bin/tool", None, -1))
```

Serving the update pipe in the background:

```python
import threading
from trustguard.updater import TrustUpdater

stop = threading.Event()
updater = TrustUpdater(db, "/run/trustguard.fifo", load_backends=lambda: [backend])
updater.start(stop)
# ...
stop.set()
updater.join()
```

A path filter file nests entries by single-space indentation:

```
- /
 + usr/bin/
 + usr/lib/
  - *.pyc
```

```python
from trustguard.pathfilter import PathFilter

flt = PathFilter()
flt.load_file("/etc/trustguard/filter.conf")
flt.check("/usr/bin/ls")
```

## What it does not do

`trustguard` is a library only. It has no command-line tool and no daemon,
does not watch file access events or make allow/deny decisions itself, and
has no backends that read a system package manager's database: records
reach the trust database only through the `Backend` objects you build or
through lines written to the updater's pipe.

## Installing

```
pip install trustguard
```

Run the tests with `pip install trustguard[test]` followed by `pytest`.