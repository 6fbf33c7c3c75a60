import dataclasses
import os
import stat
import struct

import pytest

from trustguard.fileinfo import (
    ElfInfo,
    bytes2hex,
    classify_device,
    classify_elf_info,
    compare_file_infos,
    gather_elf,
    get_file_from_fd,
    get_hash_from_fd,
    get_ima_hash,
    stat_file_entry,
)

ET_REL = 1
ET_EXEC = 2
PT_LOAD = 1
PT_DYNAMIC = 2
PT_INTERP = 3
PT_GNU_STACK = 0x6474E551


def make_elf64(e_type=ET_EXEC, segments=(), phentsize=56, elf_class=2):
    phoff = 64 if segments else 0
    data_start = 64 + 56 * len(segments)
    phdrs = b""
    payload = b""
    for p_type, p_flags, blob in segments:
        offset = data_start + len(payload)
        phdrs += struct.pack(
            "<IIQQQQQQ", p_type, p_flags, offset, 0, 0, len(blob), len(blob), 0
        )
        payload += blob
    header = _ELF_IDENT(elf_class) + struct.pack(
        "<HHIQQQIHHHHHH",
        e_type, 62, 1, 0, phoff, 0, 0, 64, phentsize, len(segments), 0, 0, 0,
    )
    return header + phdrs + payload


def _ELF_IDENT(elf_class):
    return b"\x7fELF" + bytes([elf_class, 1, 1]) + bytes(9)


def run_gather(tmp_path, blob):
    path = tmp_path / "sample.bin"
    path.write_bytes(blob)
    fd = os.open(path, os.O_RDONLY)
    try:
        info = gather_elf(fd, os.fstat(fd).st_size)
        position = os.lseek(fd, 0, os.SEEK_CUR)
    finally:
        os.close(fd)
    return info, position


@pytest.fixture
def open_file(tmp_path):
    fds = []

    def opener(content):
        path = tmp_path / f"file{len(fds)}"
        path.write_bytes(content)
        fd = os.open(path, os.O_RDONLY)
        fds.append(fd)
        return path, fd

    yield opener
    for fd in fds:
        os.close(fd)


def test_non_elf_is_zero_and_rewound(tmp_path):
    info, position = run_gather(tmp_path, b"#!/bin/sh\necho hello world\n")
    assert info == ElfInfo(0)
    assert position == 0


def test_short_file_is_not_elf(tmp_path):
    info, _ = run_gather(tmp_path, b"\x7fELF")
    assert info == ElfInfo(0)


def test_relocatable_without_program_headers(tmp_path):
    info, position = run_gather(tmp_path, make_elf64(e_type=ET_REL))
    assert info == ElfInfo.IS_ELF | ElfInfo.HAS_REL
    assert position == 0


def test_invalid_class_is_error(tmp_path):
    info, _ = run_gather(tmp_path, make_elf64(elf_class=7))
    assert info == ElfInfo.IS_ELF | ElfInfo.HAS_ERROR


def test_truncated_header_is_error(tmp_path):
    info, _ = run_gather(tmp_path, _ELF_IDENT(2) + b"\x02\x00")
    assert info == ElfInfo.IS_ELF | ElfInfo.HAS_ERROR


def test_wrong_phentsize_is_error(tmp_path):
    blob = make_elf64(segments=[(PT_LOAD, 5, b"")], phentsize=40)
    info, position = run_gather(tmp_path, blob)
    assert info == ElfInfo.IS_ELF | ElfInfo.HAS_EXEC | ElfInfo.HAS_ERROR
    assert position == 0


def test_load_and_stack_flags(tmp_path):
    blob = make_elf64(segments=[(PT_LOAD, 7, b""), (PT_GNU_STACK, 1, b"")])
    info, _ = run_gather(tmp_path, blob)
    expected = (
        ElfInfo.IS_ELF
        | ElfInfo.HAS_EXEC
        | ElfInfo.HAS_LOAD
        | ElfInfo.HAS_RWE_LOAD
        | ElfInfo.HAS_EXE_STACK
    )
    assert info == expected


def test_known_interpreter(tmp_path):
    blob = make_elf64(
        segments=[(PT_INTERP, 4, b"/lib64/ld-linux-x86-64.so.2\0")]
    )
    info, _ = run_gather(tmp_path, blob)
    assert info == ElfInfo.IS_ELF | ElfInfo.HAS_EXEC | ElfInfo.HAS_INTERP


def test_unknown_interpreter(tmp_path):
    blob = make_elf64(segments=[(PT_INTERP, 4, b"/tmp/loader.so\0")])
    info, _ = run_gather(tmp_path, blob)
    assert info == (
        ElfInfo.IS_ELF
        | ElfInfo.HAS_EXEC
        | ElfInfo.HAS_INTERP
        | ElfInfo.HAS_BAD_INTERP
    )


def test_dynamic_with_debug(tmp_path):
    dynamic = struct.pack("<qQ", 1, 0) + struct.pack("<qQ", 21, 0)
    blob = make_elf64(e_type=3, segments=[(PT_DYNAMIC, 6, dynamic)])
    info, _ = run_gather(tmp_path, blob)
    assert info == ElfInfo.IS_ELF | ElfInfo.HAS_DYNAMIC | ElfInfo.HAS_DEBUG


def test_dynamic_without_debug_is_sharedlib(tmp_path):
    dynamic = struct.pack("<qQ", 1, 0) + struct.pack("<qQ", 0, 0)
    blob = make_elf64(e_type=3, segments=[(PT_DYNAMIC, 6, dynamic)])
    info, _ = run_gather(tmp_path, blob)
    assert info == ElfInfo.IS_ELF | ElfInfo.HAS_DYNAMIC
    assert classify_elf_info(info, "/usr/lib64/libfoo.so") == "application/x-sharedlib"


@pytest.mark.parametrize(
    "flags, path, expected",
    [
        (ElfInfo.HAS_ERROR | ElfInfo.HAS_EXEC, "/bin/x", "application/x-bad-elf"),
        (ElfInfo.HAS_EXEC, "/bin/x", "application/x-executable"),
        (ElfInfo.HAS_REL, "/bin/x.o", "application/x-object"),
        (ElfInfo.HAS_CORE, "/core", "application/x-coredump"),
        (ElfInfo.HAS_INTERP, "/usr/bin/ls", "application/x-executable"),
        (ElfInfo.HAS_INTERP, "/usr/lib64/libc.so.6", "application/x-sharedlib"),
        (ElfInfo.HAS_INTERP, "/lib/libpthread-2.28.so", "application/x-sharedlib"),
        (ElfInfo.HAS_DYNAMIC | ElfInfo.HAS_DEBUG, "/x", "application/x-executable"),
        (ElfInfo.HAS_DYNAMIC, "/x", "application/x-sharedlib"),
        (ElfInfo.IS_ELF, "/x", None),
    ],
)
def test_classify_elf_info(flags, path, expected):
    assert classify_elf_info(flags, path) == expected


@pytest.mark.parametrize(
    "mode, expected",
    [
        (stat.S_IFCHR | 0o600, "inode/chardevice"),
        (stat.S_IFBLK | 0o600, "inode/blockdevice"),
        (stat.S_IFIFO | 0o600, "inode/fifo"),
        (stat.S_IFSOCK | 0o600, "inode/socket"),
        (stat.S_IFREG | 0o644, None),
        (stat.S_IFDIR | 0o755, None),
    ],
)
def test_classify_device(mode, expected):
    assert classify_device(mode) == expected


def test_bytes2hex():
    assert bytes2hex(b"\x00\xff\x10") == "00ff10"
    assert bytes2hex(b"") == ""


def test_empty_file_hashes(open_file):
    _, fd = open_file(b"")
    assert get_hash_from_fd(fd, 0, True) == (
        "e3b0c44298fc1c149afbf4c8996fb92427ae41e4649b934ca495991b7852b855"
    )
    assert get_hash_from_fd(fd, 0, False) == "d41d8cd98f00b204e9800998ecf8427e"


def test_known_hashes(open_file):
    _, fd = open_file(b"abc")
    assert get_hash_from_fd(fd, 3, True) == (
        "ba7816bf8f01cfea414140de5dae2223b00361a396177a9cb410ff61f20015ad"
    )
    assert get_hash_from_fd(fd, 3, False) == "900150983cd24fb0d6963f7d28e17f72"


def test_hash_beyond_file_size_fails(open_file):
    _, fd = open_file(b"abc")
    with pytest.raises(OSError):
        get_hash_from_fd(fd, 1 << 20, True)


def test_hash_length_is_sha256_hex(open_file):
    _, fd = open_file(b"some content here")
    digest = get_hash_from_fd(fd, 17, True)
    assert len(digest) == 64
    assert set(digest) <= set("0123456789abcdef")


def test_stat_file_entry(open_file):
    _, fd = open_file(b"twelve bytes")
    info = stat_file_entry(fd)
    sb = os.fstat(fd)
    assert info.size == 12
    assert info.inode == sb.st_ino
    assert info.device == sb.st_dev
    assert stat.S_ISREG(info.mode)


def test_stat_file_entry_bad_fd(open_file):
    _, fd = open_file(b"x")
    dup = os.dup(fd)
    os.close(dup)
    with pytest.raises(OSError):
        stat_file_entry(dup)


def test_compare_file_infos(open_file):
    _, fd = open_file(b"data")
    first = stat_file_entry(fd)
    second = stat_file_entry(fd)
    assert compare_file_infos(first, second) is True
    assert compare_file_infos(first, dataclasses.replace(second, size=5)) is False
    assert compare_file_infos(first, dataclasses.replace(second, inode=0)) is False
    assert compare_file_infos(first, None) is False
    assert compare_file_infos(None, None) is False


def test_get_file_from_fd(open_file):
    path, fd = open_file(b"data")
    assert get_file_from_fd(fd, os.getpid()) == os.path.realpath(path)


def test_ima_hash_missing(open_file):
    _, fd = open_file(b"data")
    assert get_ima_hash(fd) is None