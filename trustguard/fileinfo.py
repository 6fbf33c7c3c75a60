"""File fingerprints, hashing, mime classification and ELF inspection."""

from __future__ import annotations

import hashlib
import mmap
import os
import stat
import struct
from dataclasses import dataclass
from enum import IntFlag
from typing import NamedTuple, Optional

from .message import Priority, msg

__all__ = [
    "ElfInfo",
    "FileInfo",
    "stat_file_entry",
    "compare_file_infos",
    "get_file_from_fd",
    "classify_elf_info",
    "classify_device",
    "bytes2hex",
    "get_hash_from_fd",
    "get_ima_hash",
    "gather_elf",
]

SHA256_LEN = 32
SHA512_LEN = 64

_IMA_XATTR_DIGEST_NG = 0x04
_HASH_ALGO_SHA256 = 4

_DEGENERATE_SHA256 = "e3b0c44298fc1c149afbf4c8996fb92427ae41e4649b934ca495991b7852b855"
_DEGENERATE_MD5 = "d41d8cd98f00b204e9800998ecf8427e"

_INTERPRETERS = frozenset(
    {
        "/lib64/ld-linux-x86-64.so.2",
        "/lib/ld-linux.so.2",
        "/usr/lib64/ld-linux-x86-64.so.2",
        "/usr/lib/ld-linux.so.2",
        "/lib/ld.so.2",
        "/lib/ld-linux-armhf.so.3",
        "/lib/ld-linux-aarch64.so.1",
        "/lib/ld64.so.1",
        "/lib64/ld64.so.2",
    }
)

_EI_NIDENT = 16
_ELFMAG = b"\x7fELF"
_ELFCLASS32 = 1
_ELFCLASS64 = 2
_ET_REL = 1
_ET_EXEC = 2
_ET_CORE = 4
_PT_LOAD = 1
_PT_DYNAMIC = 2
_PT_INTERP = 3
_PT_PHDR = 6
_PT_GNU_STACK = 0x6474E551
_PF_X = 1
_PF_W = 2
_PF_R = 4
_DT_DEBUG = 21
_DYN_ENTRY_SIZE = 16
_MAX_DYN_ENTRIES = 1000


class ElfInfo(IntFlag):
    """Properties found while inspecting an ELF file."""

    IS_ELF = 0x0001
    HAS_ERROR = 0x0002
    HAS_RPATH = 0x0004
    HAS_DYNAMIC = 0x0008
    HAS_RWE_LOAD = 0x0010
    HAS_LOAD = 0x0020
    HAS_INTERP = 0x0040
    HAS_BAD_INTERP = 0x0080
    HAS_EXEC = 0x0100
    HAS_CORE = 0x0200
    HAS_REL = 0x0400
    HAS_DEBUG = 0x0800
    HAS_PHDR = 0x1000
    HAS_EXE_STACK = 0x2000


@dataclass(frozen=True)
class FileInfo:
    """What is cached to recognise the same file again."""

    device: int
    inode: int
    mode: int
    size: int
    time_sec: int
    time_nsec: int


def stat_file_entry(fd: int) -> FileInfo:
    """Fingerprint the open file ``fd``; raises OSError if it cannot be stat'ed.

    The modification time is used, falling back to the change time for the
    seconds or nanoseconds part that is zero.
    """
    sb = os.fstat(fd)
    m_sec, m_nsec = divmod(sb.st_mtime_ns, 1_000_000_000)
    c_sec, c_nsec = divmod(sb.st_ctime_ns, 1_000_000_000)
    return FileInfo(
        device=sb.st_dev,
        inode=sb.st_ino,
        mode=sb.st_mode,
        size=sb.st_size,
        time_sec=m_sec or c_sec,
        time_nsec=m_nsec or c_nsec,
    )


def compare_file_infos(first: Optional[FileInfo], second: Optional[FileInfo]) -> bool:
    """True when both fingerprints exist and describe the same file."""
    if first is None or second is None:
        return False
    return (
        first.inode == second.inode
        and first.time_nsec == second.time_nsec
        and first.time_sec == second.time_sec
        and first.size == second.size
        and first.device == second.device
    )


def get_file_from_fd(fd: int, pid: int) -> str:
    """Return the path behind ``fd``; relative paths are resolved against the
    working directory of process ``pid``. Raises OSError if unknown."""
    path = os.readlink(f"/proc/self/fd/{fd}")
    if not path.startswith("/"):
        try:
            cwd = os.readlink(f"/proc/{pid}/cwd")
        except OSError:
            cwd = ""
        path = os.path.realpath(cwd + path)
    return path


def classify_elf_info(elf: int, path: str) -> Optional[str]:
    """Map ELF properties to a mime type, or None if nothing fits."""
    if elf & ElfInfo.HAS_ERROR:
        return "application/x-bad-elf"
    if elf & ElfInfo.HAS_EXEC:
        return "application/x-executable"
    if elf & ElfInfo.HAS_REL:
        return "application/x-object"
    if elf & ElfInfo.HAS_CORE:
        return "application/x-coredump"
    if elf & ElfInfo.HAS_INTERP:
        # libc and libpthread carry an interpreter but are libraries.
        rest = path
        if rest.startswith("/usr"):
            rest = rest[4:]
        if rest.startswith("/lib"):
            rest = rest[4:]
            if rest.startswith("64"):
                rest = rest[2:]
            if rest.startswith(("/libc-2", "/libc.so", "/libpthread-2")):
                return "application/x-sharedlib"
        return "application/x-executable"
    if elf & ElfInfo.HAS_DYNAMIC:
        if elf & ElfInfo.HAS_DEBUG:
            return "application/x-executable"
        return "application/x-sharedlib"
    return None


_DEVICE_TYPES = {
    stat.S_IFCHR: "inode/chardevice",
    stat.S_IFBLK: "inode/blockdevice",
    stat.S_IFIFO: "inode/fifo",
    stat.S_IFSOCK: "inode/socket",
}


def classify_device(mode: int) -> Optional[str]:
    """Mime type for device, fifo and socket modes; None for anything else."""
    return _DEVICE_TYPES.get(stat.S_IFMT(mode))


def bytes2hex(data: bytes) -> str:
    """Lower-case hexadecimal text of ``data``."""
    return bytes(data).hex()


def get_hash_from_fd(fd: int, size: int, is_sha: bool) -> str:
    """Hash the first ``size`` bytes of ``fd`` with SHA-256, or MD5 when
    ``is_sha`` is false. Raises OSError if the file cannot be mapped."""
    if size == 0:
        return _DEGENERATE_SHA256 if is_sha else _DEGENERATE_MD5
    try:
        with mmap.mmap(fd, size, access=mmap.ACCESS_READ) as mapped:
            if is_sha:
                digest = hashlib.sha256(mapped)
            else:
                digest = hashlib.md5(mapped, usedforsecurity=False)
    except (OSError, ValueError) as exc:
        raise OSError(f"cannot map descriptor {fd} for hashing: {exc}") from exc
    return digest.hexdigest()


def get_ima_hash(fd: int) -> Optional[str]:
    """Return the SHA-256 held in the IMA extended attribute, or None."""
    try:
        value = os.getxattr(fd, "security.ima")
    except OSError:
        msg(Priority.DEBUG, "Can't read ima xattr")
        return None
    if len(value) != 2 + SHA256_LEN:
        msg(Priority.DEBUG, "Can't read ima xattr")
        return None
    if value[0] != _IMA_XATTR_DIGEST_NG:
        msg(Priority.DEBUG, "Wrong ima xattr type")
        return None
    if value[1] != _HASH_ALGO_SHA256:
        msg(Priority.DEBUG, "Wrong ima hash algorithm")
        return None
    return bytes2hex(value[2:])


class _Layout(NamedTuple):
    ehdr_size: int
    ehdr_fmt: str
    phdr_size: int
    phdr_fmt: str
    phdr_fields: tuple[int, int, int, int]  # type, flags, offset, filesz
    interp_max: int


_LAYOUTS = {
    _ELFCLASS32: _Layout(52, "HHIIIIIHHHHHH", 32, "IIIIIIII", (0, 6, 1, 4), 23),
    _ELFCLASS64: _Layout(64, "HHIQQQIHHHHHH", 56, "IIQQQQQQ", (0, 1, 2, 5), 33),
}


class _ElfReadError(Exception):
    pass


def _read_at(fd: int, offset: int, length: int) -> bytes:
    try:
        if os.lseek(fd, offset, os.SEEK_SET) != offset:
            raise _ElfReadError
        data = os.read(fd, length)
    except (OSError, OverflowError) as exc:
        raise _ElfReadError from exc
    if len(data) != length:
        raise _ElfReadError
    return data


def gather_elf(fd: int, size: int) -> ElfInfo:
    """Inspect ``fd`` as an ELF file of ``size`` bytes; the descriptor is
    rewound to the start afterwards."""
    try:
        return _gather(fd, size)
    finally:
        os.lseek(fd, 0, os.SEEK_SET)


def _gather(fd: int, size: int) -> ElfInfo:
    ident = os.read(fd, _EI_NIDENT)
    if len(ident) != _EI_NIDENT or ident[:4] != _ELFMAG:
        return ElfInfo(0)

    info = ElfInfo.IS_ELF
    layout = _LAYOUTS.get(ident[4])
    if layout is None:
        return info | ElfInfo.HAS_ERROR
    order = {1: "<", 2: ">"}.get(ident[5], "=")

    rest = os.read(fd, layout.ehdr_size - _EI_NIDENT)
    if len(rest) != layout.ehdr_size - _EI_NIDENT:
        return info | ElfInfo.HAS_ERROR
    header = struct.unpack(order + layout.ehdr_fmt, rest)
    e_type, e_phoff, e_phentsize, e_phnum = header[0], header[4], header[8], header[9]

    if e_type == _ET_EXEC:
        info |= ElfInfo.HAS_EXEC
    elif e_type == _ET_REL:
        info |= ElfInfo.HAS_REL
    elif e_type == _ET_CORE:
        info |= ElfInfo.HAS_CORE

    table_size = e_phentsize * e_phnum
    if table_size == 0 and e_type == _ET_REL:
        return info
    if e_phentsize != layout.phdr_size or e_phnum == 0:
        return info | ElfInfo.HAS_ERROR
    if size >= layout.ehdr_size and table_size > size - layout.ehdr_size:
        return info | ElfInfo.HAS_ERROR

    try:
        table = _read_at(fd, e_phoff, table_size)
        t_idx, f_idx, o_idx, s_idx = layout.phdr_fields
        for entry in struct.iter_unpack(order + layout.phdr_fmt, table):
            p_type, p_flags = entry[t_idx], entry[f_idx]
            p_offset, p_filesz = entry[o_idx], entry[s_idx]
            info |= _inspect_segment(fd, size, order, layout, p_type, p_flags,
                                     p_offset, p_filesz)
    except _ElfReadError:
        info |= ElfInfo.HAS_ERROR
    return info


def _inspect_segment(
    fd: int,
    size: int,
    order: str,
    layout: _Layout,
    p_type: int,
    p_flags: int,
    p_offset: int,
    p_filesz: int,
) -> ElfInfo:
    found = ElfInfo(0)
    if p_type == _PT_LOAD:
        found |= ElfInfo.HAS_LOAD
        if p_flags == (_PF_X | _PF_W | _PF_R):
            found |= ElfInfo.HAS_RWE_LOAD
    if p_type == _PT_PHDR:
        found |= ElfInfo.HAS_PHDR
    if p_type == _PT_INTERP:
        found |= ElfInfo.HAS_INTERP
        raw = _read_at(fd, p_offset, min(p_filesz, layout.interp_max))
        interp = raw[:-1].split(b"\0", 1)[0] if raw else b""
        if interp.decode("utf-8", "surrogateescape") not in _INTERPRETERS:
            found |= ElfInfo.HAS_BAD_INTERP
    if p_type == _PT_GNU_STACK and p_flags & _PF_X:
        found |= ElfInfo.HAS_EXE_STACK
    if p_type == _PT_DYNAMIC:
        found |= ElfInfo.HAS_DYNAMIC
        if p_filesz > size:
            raise _ElfReadError
        count = p_filesz // _DYN_ENTRY_SIZE
        if count > _MAX_DYN_ENTRIES:
            raise _ElfReadError
        data = _read_at(fd, p_offset, p_filesz)
        entries = struct.iter_unpack(order + "qQ", data[: count * _DYN_ENTRY_SIZE])
        if any(tag == _DT_DEBUG for tag, _ in entries):
            found |= ElfInfo.HAS_DEBUG
    return found