"""Indented include/exclude path filter for trust sources."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from enum import Enum
from functools import lru_cache
from typing import Iterable, Optional

from .message import Priority, msg

__all__ = ["FilterType", "FilterNode", "FilterError", "PathFilter"]

OLD_FILTER_FILE = "/etc/fapolicyd/rpm-filter.conf"
FILTER_FILE = "/etc/fapolicyd/fapolicyd-filter.conf"

_WILDCARDS = frozenset("?*[")


class FilterType(Enum):
    """Kind of a filter line."""

    NONE = 0
    ADD = 1
    SUB = 2
    COMMENT = 3
    BAD = 4


@dataclass
class FilterNode:
    """A filter line and the lines nested beneath it."""

    type: FilterType = FilterType.NONE
    path: Optional[str] = None
    children: list[FilterNode] = field(default_factory=list)


class FilterError(ValueError):
    """The filter configuration could not be read or parsed."""


@dataclass
class _Frame:
    level: int
    offset: int
    node: FilterNode


@lru_cache(maxsize=256)
def _compile_glob(pattern: str) -> re.Pattern[str]:
    out = []
    i = 0
    n = len(pattern)
    while i < n:
        ch = pattern[i]
        i += 1
        if ch == "*":
            out.append(".*")
        elif ch == "?":
            out.append(".")
        elif ch == "\\":
            if i < n:
                out.append(re.escape(pattern[i]))
                i += 1
            else:
                out.append(re.escape("\\"))
        elif ch == "[":
            j = i
            if j < n and pattern[j] in "!^":
                j += 1
            if j < n and pattern[j] == "]":
                j += 1
            while j < n and pattern[j] != "]":
                j += 1
            if j >= n:
                out.append(re.escape("["))
                continue
            body = pattern[i:j]
            i = j + 1
            negate = body[:1] in ("!", "^")
            if negate:
                body = body[1:]
            escaped = "".join(
                "\\" + c if c in "\\]^[&~|" else c for c in body
            )
            out.append("[" + ("^" if negate else "") + escaped + "]")
        else:
            out.append(re.escape(ch))
    return re.compile("(?s:" + "".join(out) + ")")


def _fnmatch(pattern: str, text: str) -> bool:
    return _compile_glob(pattern).fullmatch(text) is not None


def _match_wildcard(pattern: str, path: str, offset: int) -> tuple[bool, int]:
    """Match a wildcard pattern at ``offset``; return (matched, last slash)."""
    count = 0
    f_lim = f_old = 0
    p_lim = p_old = offset
    # A wildcard may span directory names; find how far the path reaches.
    while True:
        f_lim = pattern.find("/", f_lim)
        p_lim = path.find("/", p_lim)
        if f_lim < 0:
            break
        count += 1
        f_old = f_lim
        f_lim += 1
        if p_lim < 0:
            break
        p_old = p_lim
        p_lim += 1

    if count and f_old + 1 == len(pattern):
        subject = path[offset : p_old + 1]
    else:
        subject = path[offset:]
    return _fnmatch(pattern, subject), p_old


class PathFilter:
    """Tree of ``+``/``-`` path rules deciding which files to keep."""

    def __init__(self) -> None:
        self.root = FilterNode()

    def load(self, lines: Iterable[str]) -> None:
        """Replace the rules with those parsed from ``lines``.

        Raises FilterError on a line that cannot be parsed.
        """
        root = FilterNode()
        stack = [_Frame(0, 0, root)]

        for line_number, raw in enumerate(lines, start=1):
            if raw == "" or raw[0] == "\n":
                continue
            line = raw.split("\n", 1)[0]

            level = 1
            ftype = FilterType.BAD
            rest = ""
            for i, ch in enumerate(line):
                if ch == " ":
                    level += 1
                    continue
                ftype = {
                    "+": FilterType.ADD,
                    "-": FilterType.SUB,
                    "#": FilterType.COMMENT,
                }.get(ch, FilterType.BAD)
                rest = line[i + 2 :].strip()
                break

            if ftype is FilterType.COMMENT:
                continue
            if ftype is FilterType.BAD:
                msg(
                    Priority.ERR,
                    'filter_load_file: cannot parse line number %d, "%s"',
                    line_number,
                    line,
                )
                raise FilterError(f"cannot parse line {line_number}: {line!r}")

            node = FilterNode(ftype, rest)
            last_level = stack[-1].level
            if level == last_level:
                stack.pop()
            elif level == last_level + 1:
                pass
            elif level < last_level:
                del stack[len(stack) - (last_level - level + 1) :]
            else:
                msg(
                    Priority.ERR,
                    'filter_load_file: paring error line: %d, "%s"',
                    line_number,
                    line,
                )
                raise FilterError(
                    f"bad indentation on line {line_number}: {line!r}"
                )
            stack[-1].node.children.insert(0, node)
            stack.append(_Frame(level, 0, node))

        if not root.children:
            msg(
                Priority.ERR,
                "filter_load_file: no valid filter provided in %s",
                FILTER_FILE,
            )
        self.root = root

    def load_file(self, *args: str) -> None:
        """Load the first readable file among ``args``.

        With no arguments the old and then the current default file are
        tried. Raises FilterError when none can be opened.
        """
        candidates = args or (OLD_FILTER_FILE, FILTER_FILE)
        for position, path in enumerate(candidates):
            try:
                stream = open(path, encoding="utf-8", errors="surrogateescape")
            except OSError:
                continue
            if position < len(candidates) - 1:
                msg(
                    Priority.INFO,
                    "Using old filter file: %s, use the new one: %s",
                    path,
                    candidates[-1],
                )
                msg(Priority.INFO, "Consider 'mv %s %s'", path, candidates[-1])
            with stream:
                self.load(stream)
            return
        msg(Priority.ERR, "Cannot open filter file %s", candidates[-1])
        raise FilterError(f"Cannot open filter file {candidates[-1]}")

    def check(self, path: str) -> bool:
        """Return True if ``path`` is kept by the rules, False if dropped."""
        if path is None:
            msg(Priority.ERR, "filter_check: path is NULL, something is wrong!")
            return False

        processed: set[int] = set()
        matched_nodes: set[int] = set()
        node = self.root
        offset = 0
        level = 0
        stack = [_Frame(level, offset, node)]

        while stack:
            processed.add(id(node))
            matched = False

            if node.path is None:
                for child in node.children:
                    stack.append(_Frame(level + 1, offset, child))
            else:
                wildcard = any(c in _WILDCARDS for c in node.path)
                if wildcard:
                    matched, last_slash = _match_wildcard(node.path, path, offset)
                    if matched:
                        offset = last_slash + offset
                else:
                    matched = path.startswith(node.path, offset)
                    if matched:
                        offset += len(node.path)

                if matched:
                    level += 1
                    matched_nodes.add(id(node))
                    if not node.children and (wildcard or offset == len(path)):
                        return node.type is FilterType.ADD
                    for child in node.children:
                        stack.append(_Frame(level, offset, child))

            frame: Optional[_Frame] = None
            while True:
                if frame is not None:
                    node, offset, level = frame.node, frame.offset, frame.level
                    # Nothing below matched, so a matched directory decides.
                    if id(node) in matched_nodes and (node.path or "").endswith("/"):
                        return node.type is FilterType.ADD
                    stack.pop()
                    processed.discard(id(node))
                    matched_nodes.discard(id(node))
                frame = stack[-1] if stack else None
                if frame is None or id(frame.node) not in processed:
                    break

            if frame is None:
                break
            node, offset, level = frame.node, frame.offset, frame.level

        return False