#!/usr/bin/env python3
# git_hunk.py
# Line-level staging and declarative interactive rebase for agents
# Usage:
#   uv run git_hunk.py diff [--staged] [--format json|pretty|raw|files|summary|hints] [paths ...]
#   uv run git_hunk.py stage src/app.py:10-20,31 docs/index.md:4 [--dry-run]
#   uv run git_hunk.py preview
#   uv run git_hunk.py commit -m "add error handling"
#   uv run git_hunk.py reset [paths ...]
#   uv run git_hunk.py apply-patch < changes.diff
#   uv run git_hunk.py rebase list --onto main
#   uv run git_hunk.py rebase run --onto main pick:abc1234,squash:def5678
#   uv run git_hunk.py rebase run --onto main --spec plan.json
#   uv run git_hunk.py rebase autosquash --onto main [--dry-run]
#   uv run git_hunk.py rebase status|continue|abort|skip
#   uv run git_hunk.py mcp  # Run as MCP server

import argparse
import dataclasses
import enum
import json
import logging
import os
import re
import shlex
import subprocess
import sys
import tempfile
from collections.abc import Callable, Iterable, Iterator
from typing import Any

PATCH_CONTEXT_DEFAULT = 3 # Context lines kept around staged changes
SHORT_HASH_LEN = 7 # Abbreviated hash length indexed for todo lookups
HINT_CONTENT_WIDTH = 60 # Long lines are cut in pretty views
SPEC_SNIPPET_LEN = 100 # Invalid JSON input echoed back in errors
DEV_NULL = "/dev/null"
NO_NEWLINE_MARKER = "\\ No newline at end of file"

logger = logging.getLogger("git_hunk")

# ---------- Errors ----------

class HunkError(Exception):
    """Base class for errors reported back to the caller verbatim."""


class ParseError(HunkError, ValueError):
    """Malformed diff, selection, rebase spec or todo text."""


class ValidationError(HunkError, ValueError):
    """Well-formed rebase spec that cannot be applied to the commit range."""


class SelectionMismatch(HunkError):
    """No changed line matches any of the requested selections."""

# ---------- Utility ----------

def run_process(cmd: list[str], cwd: str | None = None, input_data: str | bytes | None = None, env: dict[str, str] | None = None) -> subprocess.CompletedProcess:
    full_env = os.environ.copy()
    full_env.setdefault("LC_ALL", "C")
    full_env.setdefault("LANG", "C")
    if env:
        full_env.update(env)
    if isinstance(input_data, str):
        input_data = input_data.encode("utf-8", "surrogateescape")
    logger.debug("running %s (cwd=%s)", " ".join(cmd), cwd or ".")
    p = subprocess.run(cmd, cwd=cwd, capture_output=True, input=input_data, env=full_env)
    stdout = p.stdout.decode("utf-8", "surrogateescape")
    stderr = p.stderr.decode("utf-8", "surrogateescape")
    return subprocess.CompletedProcess(cmd, p.returncode, stdout, stderr)

def run(cmd: list[str], cwd: str | None = None, check: bool = True, input_data: str | bytes | None = None, env: dict[str, str] | None = None) -> str:
    p = run_process(cmd, cwd=cwd, input_data=input_data, env=env)
    if check and p.returncode != 0:
        raise subprocess.CalledProcessError(p.returncode, cmd, p.stdout, p.stderr)
    return p.stdout

def error_text(exc: BaseException) -> str:
    """Render an exception as the one-line text shown to agents."""
    if isinstance(exc, subprocess.CalledProcessError):
        detail = (exc.stderr or exc.stdout or "").strip()
        cmd = " ".join(exc.cmd) if isinstance(exc.cmd, list) else str(exc.cmd)
        return f"{cmd} failed (exit {exc.returncode}): {detail}" if detail else f"{cmd} failed (exit {exc.returncode})"
    return str(exc)

# ---------- diff model ----------

class LineOp(enum.Enum):
    CONTEXT = " "
    ADD = "+"
    DELETE = "-"

    @property
    def prefix(self) -> str:
        return self.value

    @property
    def label(self) -> str:
        return self.name.lower()


@dataclasses.dataclass(frozen=True)
class DiffLine:
    op: LineOp
    content: str
    old_line: int = 0  # 0 when the line does not exist in the old file
    new_line: int = 0  # 0 when the line does not exist in the new file
    no_newline: bool = False  # followed by "\ No newline at end of file"

    def __str__(self) -> str:
        return self.op.prefix + self.content

    @property
    def is_change(self) -> bool:
        return self.op is not LineOp.CONTEXT

    @property
    def effective_line(self) -> int:
        """Line number used for selection: new side for additions, old side otherwise."""
        if self.op is LineOp.ADD:
            return self.new_line
        return self.old_line

    def line_ref(self) -> str:
        old = str(self.old_line) if self.old_line else "-"
        new = str(self.new_line) if self.new_line else "-"
        return f"{old}:{new}"

    def format(self) -> str:
        old = f"{self.old_line:4d}" if self.old_line else "    "
        new = f"{self.new_line:4d}" if self.new_line else "    "
        return f"{old} {new} {self.op.prefix}{self.content}"


@dataclasses.dataclass(frozen=True)
class Hunk:
    old_start: int
    old_count: int
    new_start: int
    new_count: int
    section: str = ""
    lines: tuple[DiffLine, ...] = ()

    def header(self) -> str:
        header = f"@@ -{self.old_start},{self.old_count} +{self.new_start},{self.new_count} @@"
        if self.section:
            header += " " + self.section
        return header

    def changes(self) -> Iterator[DiffLine]:
        return (ln for ln in self.lines if ln.is_change)

    def additions(self) -> Iterator[DiffLine]:
        return (ln for ln in self.lines if ln.op is LineOp.ADD)

    def deletions(self) -> Iterator[DiffLine]:
        return (ln for ln in self.lines if ln.op is LineOp.DELETE)

    def stats(self) -> tuple[int, int]:
        return sum(1 for _ in self.additions()), sum(1 for _ in self.deletions())

    def change_groups(self) -> list[tuple[int, int]]:
        """Return [start, end) index spans of the maximal runs of change lines."""
        groups: list[tuple[int, int]] = []
        start: int | None = None
        for i, ln in enumerate(self.lines):
            if ln.is_change:
                if start is None:
                    start = i
            elif start is not None:
                groups.append((start, i))
                start = None
        if start is not None:
            groups.append((start, len(self.lines)))
        return groups

    def can_split(self) -> bool:
        return len(self.change_groups()) > 1

    def contains_line(self, line_num: int) -> bool:
        return any(ln.effective_line == line_num for ln in self.changes())

    def contains_range(self, start: int, end: int) -> bool:
        return any(start <= ln.effective_line <= end for ln in self.changes())

    def recounted(self) -> "Hunk":
        old_count = sum(1 for ln in self.lines if ln.op is not LineOp.ADD)
        new_count = sum(1 for ln in self.lines if ln.op is not LineOp.DELETE)
        return dataclasses.replace(self, old_count=old_count, new_count=new_count)

    def format(self) -> str:
        out = [self.header()]
        for ln in self.lines:
            out.append(str(ln))
            if ln.no_newline:
                out.append(NO_NEWLINE_MARKER)
        return "\n".join(out) + "\n"


@dataclasses.dataclass(frozen=True)
class FileDiff:
    old_name: str
    new_name: str
    is_new: bool = False
    is_deleted: bool = False
    is_renamed: bool = False
    is_binary: bool = False
    hunks: tuple[Hunk, ...] = ()

    @property
    def path(self) -> str:
        if self.is_deleted:
            return self.old_name
        return self.new_name

    @property
    def status(self) -> str:
        if self.is_new:
            return "new"
        if self.is_deleted:
            return "deleted"
        if self.is_renamed:
            return "renamed"
        return "modified"

    def stats(self) -> tuple[int, int]:
        added = deleted = 0
        for hunk in self.hunks:
            a, d = hunk.stats()
            added += a
            deleted += d
        return added, deleted

    def hunk_containing_line(self, line_num: int) -> Hunk | None:
        for hunk in self.hunks:
            if hunk.contains_line(line_num):
                return hunk
        return None

    def hunks_in_range(self, start: int, end: int) -> list[Hunk]:
        return [h for h in self.hunks if h.contains_range(start, end)]

    def format(self) -> str:
        old = DEV_NULL if self.is_new else f"a/{self.old_name}"
        new = DEV_NULL if self.is_deleted else f"b/{self.new_name}"
        return f"--- {old}\n+++ {new}\n" + "".join(h.format() for h in self.hunks)


@dataclasses.dataclass(frozen=True)
class LineWithContext:
    global_index: int
    file: FileDiff
    hunk_index: int
    line_index: int
    line: DiffLine


@dataclasses.dataclass(frozen=True)
class ParsedDiff:
    files: tuple[FileDiff, ...] = ()

    def __iter__(self) -> Iterator[FileDiff]:
        return iter(self.files)

    def __len__(self) -> int:
        return len(self.files)

    def file_by_path(self, path: str) -> FileDiff | None:
        for f in self.files:
            if path in (f.path, f.old_name, f.new_name):
                return f
        return None

    def stats(self) -> tuple[int, int]:
        added = deleted = 0
        for f in self.files:
            a, d = f.stats()
            added += a
            deleted += d
        return added, deleted

    def lines_with_context(self) -> Iterator[LineWithContext]:
        idx = 0
        for f in self.files:
            for hunk_idx, hunk in enumerate(f.hunks):
                for line_idx, ln in enumerate(hunk.lines):
                    yield LineWithContext(idx, f, hunk_idx, line_idx, ln)
                    idx += 1

# ---------- diff parsing ----------

HUNK_RE = re.compile(r'^@@ -(\d+)(?:,(\d+))? \+(\d+)(?:,(\d+))? @@ ?(.*)$')

_C_ESCAPES = {"a": 7, "b": 8, "t": 9, "n": 10, "v": 11, "f": 12, "r": 13, '"': 34, "\\": 92}

def _unquote_path(text: str) -> str:
    """Undo git's C-style quoting of paths with unusual characters."""
    if len(text) < 2 or not (text.startswith('"') and text.endswith('"')):
        return text
    body = text[1:-1]
    out = bytearray()
    i = 0
    while i < len(body):
        c = body[i]
        if c == "\\" and i + 1 < len(body):
            nxt = body[i + 1]
            if re.fullmatch(r"[0-7]{3}", body[i + 1:i + 4]):
                out.append(int(body[i + 1:i + 4], 8))
                i += 4
                continue
            if nxt in _C_ESCAPES:
                out.append(_C_ESCAPES[nxt])
                i += 2
                continue
        out.extend(c.encode("utf-8", "surrogateescape"))
        i += 1
    return out.decode("utf-8", "surrogateescape")

def _strip_prefix(path: str) -> str:
    if path.startswith(("a/", "b/")):
        return path[2:]
    return path

def _header_path(text: str) -> str:
    # git appends a TAB after names containing spaces; plain diff(1) appends a timestamp
    if not text.startswith('"'):
        text = text.split("\t", 1)[0]
    return _unquote_path(text)

def _split_git_header(text: str) -> tuple[str | None, str | None]:
    """Old and new names from the rest of a "diff --git a/X b/Y" line."""
    if text.startswith('"'):
        m = re.match(r'^("(?:[^"\\]|\\.)*")\s+(.*)$', text)
        if not m:
            return None, None
        return _strip_prefix(_unquote_path(m.group(1))), _strip_prefix(_unquote_path(m.group(2)))
    if text.endswith('"'):
        m = re.match(r'^(.*?)\s+("(?:[^"\\]|\\.)*")$', text)
        if not m:
            return None, None
        return _strip_prefix(m.group(1)), _strip_prefix(_unquote_path(m.group(2)))
    half = (len(text) - 1) // 2
    if len(text) % 2 == 1 and text[half] == " " and text[:half][2:] == text[half + 1:][2:]:
        return _strip_prefix(text[:half]), _strip_prefix(text[half + 1:])
    old, sep, new = text.partition(" b/")
    if not sep:
        return None, None
    return _strip_prefix(old), new


@dataclasses.dataclass
class _PendingFile:
    git_old: str | None = None
    git_new: str | None = None
    old_name: str | None = None
    new_name: str | None = None
    rename_from: str | None = None
    rename_to: str | None = None
    headers_seen: bool = False
    is_new: bool = False
    is_deleted: bool = False
    is_binary: bool = False
    hunks: list[Hunk] = dataclasses.field(default_factory=list)

    def build(self) -> FileDiff:
        old = self.old_name or self.rename_from or self.git_old
        new = self.new_name or self.rename_to or self.git_new
        if old is None and new is None:
            raise ParseError("file section without any file name")
        # new and deleted files carry the real path on both sides
        old = old or new
        new = new or old
        is_renamed = old != new and not self.is_new and not self.is_deleted
        return FileDiff(
            old_name=old,
            new_name=new,
            is_new=self.is_new,
            is_deleted=self.is_deleted,
            is_renamed=is_renamed,
            is_binary=self.is_binary,
            hunks=tuple(self.hunks),
        )

def _parse_hunk(lines: list[str], i: int) -> tuple[Hunk, int]:
    header = lines[i]
    m = HUNK_RE.match(header)
    if not m:
        raise ParseError(f"malformed hunk header: {header!r}")
    old_start = int(m.group(1))
    old_count = int(m.group(2)) if m.group(2) is not None else 1
    new_start = int(m.group(3))
    new_count = int(m.group(4)) if m.group(4) is not None else 1
    section = (m.group(5) or "").strip()

    body: list[DiffLine] = []
    old_line, new_line = old_start, new_start
    old_left, new_left = old_count, new_count
    i += 1
    while i < len(lines) and (old_left > 0 or new_left > 0):
        raw = lines[i]
        prefix, content = raw[:1], raw[1:]
        if prefix == "\\":
            if body:
                body[-1] = dataclasses.replace(body[-1], no_newline=True)
        elif prefix == " " or raw == "":
            if old_left == 0 or new_left == 0:
                raise ParseError(f"hunk {header!r} has more lines than its header declares")
            body.append(DiffLine(LineOp.CONTEXT, content, old_line, new_line))
            old_line += 1
            new_line += 1
            old_left -= 1
            new_left -= 1
        elif prefix == "+":
            if new_left == 0:
                raise ParseError(f"hunk {header!r} has more added lines than its header declares")
            body.append(DiffLine(LineOp.ADD, content, 0, new_line))
            new_line += 1
            new_left -= 1
        elif prefix == "-":
            if old_left == 0:
                raise ParseError(f"hunk {header!r} has more deleted lines than its header declares")
            body.append(DiffLine(LineOp.DELETE, content, old_line, 0))
            old_line += 1
            old_left -= 1
        else:
            raise ParseError(f"unexpected line in hunk {header!r}: {raw!r}")
        i += 1

    if old_left > 0 or new_left > 0:
        raise ParseError(f"hunk {header!r} is truncated ({old_left} old and {new_left} new lines missing)")
    # The marker for the final line comes after the counted body
    if i < len(lines) and lines[i].startswith("\\"):
        if body:
            body[-1] = dataclasses.replace(body[-1], no_newline=True)
        i += 1
    return Hunk(old_start, old_count, new_start, new_count, section, tuple(body)), i

def parse_unified_diff(diff_text: str) -> ParsedDiff:
    """Parse unified diff text into a line-numbered structural model.

    Args:
        diff_text: Output of `git diff` (or any unified diff) as a string

    Returns:
        ParsedDiff with one FileDiff per file section, in input order

    Raises:
        ParseError: If a header is malformed or a hunk body does not match its counts

    Note:
        Handles the git extended headers (new/deleted file mode, renames,
        binary markers), quoted paths, omitted hunk counts (@@ -1 +1 @@ means
        one line) and "\\ No newline at end of file" markers. Empty or
        whitespace-only input yields an empty ParsedDiff.
    """
    if not diff_text.strip():
        return ParsedDiff()

    lines = diff_text.split("\n")
    if lines and lines[-1] == "":
        lines.pop()

    files: list[FileDiff] = []
    cur: _PendingFile | None = None
    i = 0
    while i < len(lines):
        raw = lines[i]
        if raw.startswith("diff --git "):
            if cur is not None:
                files.append(cur.build())
            cur = _PendingFile()
            cur.git_old, cur.git_new = _split_git_header(raw[len("diff --git "):])
            i += 1
            continue
        if raw.startswith("--- "):
            if cur is None or cur.headers_seen:
                if cur is not None:
                    files.append(cur.build())
                cur = _PendingFile()
            if i + 1 >= len(lines) or not lines[i + 1].startswith("+++ "):
                raise ParseError(f"missing '+++' header after {raw!r}")
            old_path = _header_path(raw[4:])
            new_path = _header_path(lines[i + 1][4:])
            cur.headers_seen = True
            if old_path == DEV_NULL:
                cur.is_new = True
            else:
                cur.old_name = _strip_prefix(old_path)
            if new_path == DEV_NULL:
                cur.is_deleted = True
            else:
                cur.new_name = _strip_prefix(new_path)
            i += 2
            continue
        if raw.startswith("+++ "):
            raise ParseError(f"'+++' header without a preceding '---': {raw!r}")
        if raw.startswith("@@"):
            if cur is None:
                raise ParseError(f"hunk outside of a file section: {raw!r}")
            hunk, i = _parse_hunk(lines, i)
            cur.hunks.append(hunk)
            continue
        if cur is not None:
            if raw.startswith("new file mode"):
                cur.is_new = True
            elif raw.startswith("deleted file mode"):
                cur.is_deleted = True
            elif raw.startswith("rename from "):
                cur.rename_from = _unquote_path(raw[len("rename from "):])
            elif raw.startswith("rename to "):
                cur.rename_to = _unquote_path(raw[len("rename to "):])
            elif raw.startswith("Binary files ") or raw == "GIT binary patch":
                cur.is_binary = True
        i += 1

    if cur is not None:
        files.append(cur.build())
    return ParsedDiff(tuple(files))

# ---------- line selection ----------

_RANGE_RE = re.compile(r"(\d+)(?:\s*-\s*(\d+))?")


@dataclasses.dataclass(frozen=True, order=True)
class LineRange:
    start: int  # inclusive
    end: int  # inclusive

    def __post_init__(self) -> None:
        if self.start < 1:
            raise ParseError(f"line numbers must be positive, got {self.start}")
        if self.start > self.end:
            raise ParseError(f"start line {self.start} greater than end line {self.end}")

    def __contains__(self, line_num: int) -> bool:
        return self.start <= line_num <= self.end

    def __str__(self) -> str:
        if self.start == self.end:
            return str(self.start)
        return f"{self.start}-{self.end}"

    @classmethod
    def parse(cls, text: str) -> "LineRange":
        m = _RANGE_RE.fullmatch(text.strip())
        if not m:
            raise ParseError(f"invalid range: {text!r}")
        start = int(m.group(1))
        end = int(m.group(2)) if m.group(2) else start
        return cls(start, end)

def merge_ranges(ranges: Iterable[LineRange]) -> tuple[LineRange, ...]:
    """Sort ranges and coalesce the ones that overlap or touch.

    Returns a new tuple; the covered line numbers are unchanged.
    """
    merged: list[LineRange] = []
    for r in sorted(ranges):
        if merged and r.start <= merged[-1].end + 1:
            last = merged[-1]
            merged[-1] = LineRange(last.start, max(last.end, r.end))
        else:
            merged.append(r)
    return tuple(merged)

def _normalize_path(path: str) -> str:
    while path.startswith("./"):
        path = path[2:]
    return path


@dataclasses.dataclass(frozen=True)
class FileSelection:
    path: str
    ranges: tuple[LineRange, ...]

    @classmethod
    def parse(cls, token: str) -> "FileSelection":
        """Parse "FILE:LINES", e.g. "main.py:10-20,31".

        The path ends at the last colon, so paths that contain colons
        (C:\\src\\app.py:4) still work.
        """
        path, sep, spec = token.rpartition(":")
        if not sep:
            raise ParseError(f"invalid selection syntax: expected FILE:LINES, got {token!r}")
        if not path:
            raise ParseError(f"empty file path in selection: {token!r}")
        if not spec.strip():
            raise ParseError(f"empty line range in selection: {token!r}")
        ranges = []
        for part in spec.split(","):
            try:
                ranges.append(LineRange.parse(part))
            except ParseError as e:
                raise ParseError(f"invalid range {part!r} in {token!r}: {e}") from e
        return cls(_normalize_path(path), tuple(ranges))

    def merge(self) -> "FileSelection":
        return dataclasses.replace(self, ranges=merge_ranges(self.ranges))

    def contains(self, line_num: int) -> bool:
        return any(line_num in r for r in self.ranges)

    def all_lines(self) -> list[int]:
        return [n for r in self.ranges for n in range(r.start, r.end + 1)]

    def __str__(self) -> str:
        return self.path + ":" + ",".join(str(r) for r in self.ranges)

def parse_selections(tokens: Iterable[str]) -> list[FileSelection]:
    return [FileSelection.parse(tok) for tok in tokens]


class SelectionMap(dict[str, FileSelection]):
    """Selections keyed by path, with the ranges of repeated paths merged."""

    @classmethod
    def from_selections(cls, selections: Iterable[FileSelection]) -> "SelectionMap":
        m = cls()
        for sel in selections:
            existing = m.get(sel.path)
            ranges = sel.ranges if existing is None else existing.ranges + sel.ranges
            m[sel.path] = FileSelection(sel.path, merge_ranges(ranges))
        return m

    @classmethod
    def from_tokens(cls, tokens: Iterable[str]) -> "SelectionMap":
        return cls.from_selections(parse_selections(tokens))

    def lookup(self, file: FileDiff) -> FileSelection | None:
        for name in (file.path, file.old_name, file.new_name):
            sel = self.get(name)
            if sel is not None:
                return sel
        return None

    def contains(self, path: str, line_num: int) -> bool:
        sel = self.get(path)
        return sel is not None and sel.contains(line_num)

# ---------- patch generation ----------

def _is_replacement(group: Iterable[DiffLine]) -> bool:
    ops = {ln.op for ln in group}
    return LineOp.ADD in ops and LineOp.DELETE in ops

def select_lines(hunk: Hunk, selection: FileSelection) -> list[bool]:
    """Flag each line of the hunk whose change goes into the patch.

    A replacement group (deletions and additions with no context between
    them) is all-or-nothing: one selected line pulls in the whole group.
    Other groups are selected line by line.
    """
    included = [False] * len(hunk.lines)
    for start, end in hunk.change_groups():
        group = hunk.lines[start:end]
        hits = [selection.contains(ln.effective_line) for ln in group]
        if _is_replacement(group):
            hits = [any(hits)] * len(group)
        included[start:end] = hits
    return included

def _old_lines_before(hunk: Hunk, idx: int) -> int:
    for ln in reversed(hunk.lines[:idx]):
        if ln.old_line:
            return ln.old_line
    # A zero-length old side means "insert after old_start"
    return hunk.old_start - 1 if hunk.old_count else hunk.old_start

def _build_hunk(hunk: Hunk, included: list[bool], start: int, end: int, offset: int) -> Hunk:
    kept: list[DiffLine] = []
    for ln, keep in zip(hunk.lines[start:end], included[start:end]):
        if ln.op is LineOp.CONTEXT or keep:
            kept.append(ln)
        elif ln.op is LineOp.DELETE:
            # Unstaged deletions stay in the index, so they are context here
            kept.append(dataclasses.replace(ln, op=LineOp.CONTEXT))

    out = Hunk(0, 0, 0, 0, hunk.section, tuple(kept)).recounted()
    old_before = _old_lines_before(hunk, start)
    new_before = old_before + offset
    old_start = old_before + 1 if out.old_count else old_before
    new_start = new_before + 1 if out.new_count else new_before

    renumbered = []
    new_line = new_start
    for ln in out.lines:
        if ln.op is LineOp.DELETE:
            renumbered.append(dataclasses.replace(ln, new_line=0))
        else:
            renumbered.append(dataclasses.replace(ln, new_line=new_line))
            new_line += 1
    return dataclasses.replace(out, old_start=old_start, new_start=new_start, lines=tuple(renumbered))

def split_hunk(hunk: Hunk, selection: FileSelection, context: int = PATCH_CONTEXT_DEFAULT, offset: int = 0) -> list[Hunk]:
    """Build the output hunks that carry the selected changes of one source hunk.

    Touched change groups that are not separated by an untouched group form
    one run, and every run becomes its own hunk. Each run keeps up to
    `context` lines of context on either side but never reaches into an
    unselected change group, so neighbouring output hunks cannot overlap.

    Args:
        hunk: Source hunk from the working tree diff
        selection: Line selection for the file the hunk belongs to
        context: Maximum number of context lines on each side of a run
        offset: Net lines added by output hunks already emitted for this file

    Returns:
        Output hunks in source order. Empty when nothing in the hunk is selected.
        Their new-side numbers describe the index after the earlier hunks apply.
    """
    if context < 0:
        raise ValueError(f"context must not be negative, got {context}")
    included = select_lines(hunk, selection)
    groups = hunk.change_groups()
    touched = [any(included[s:e]) for s, e in groups]

    runs: list[tuple[int, int]] = []
    first_group: int | None = None
    for gi, is_touched in enumerate(touched):
        if is_touched:
            if first_group is None:
                first_group = gi
        elif first_group is not None:
            runs.append((first_group, gi - 1))
            first_group = None
    if first_group is not None:
        runs.append((first_group, len(groups) - 1))

    result: list[Hunk] = []
    for g0, g1 in runs:
        first, last = groups[g0][0], groups[g1][1]
        floor = groups[g0 - 1][1] if g0 > 0 else 0
        ceiling = groups[g1 + 1][0] if g1 + 1 < len(groups) else len(hunk.lines)
        start = max(floor, first - context)
        end = min(ceiling, last + context)
        out = _build_hunk(hunk, included, start, end, offset)
        offset += out.new_count - out.old_count
        result.append(out)
    return result

def _file_header(file: FileDiff, hunks: list[Hunk]) -> str:
    old = DEV_NULL if file.is_new else f"a/{file.old_name}"
    removes_file = file.is_deleted and all(h.new_count == 0 for h in hunks)
    new = DEV_NULL if removes_file else f"b/{file.new_name}"
    return f"--- {old}\n+++ {new}\n"

def generate_patch(parsed: ParsedDiff, selections: SelectionMap | Iterable[FileSelection], context: int = PATCH_CONTEXT_DEFAULT) -> bytes:
    """Create a patch that stages exactly the selected lines.

    Args:
        parsed: Parsed working tree diff (`git diff` against the index)
        selections: SelectionMap, or FileSelections to merge into one
        context: Maximum context lines around each staged run

    Returns:
        Unified diff bytes for `git apply --cached`. Empty when no selected
        line is a change.
    """
    if not isinstance(selections, SelectionMap):
        selections = SelectionMap.from_selections(selections)

    chunks: list[str] = []
    for file in parsed:
        sel = selections.lookup(file)
        if sel is None or file.is_binary:
            continue
        out_hunks: list[Hunk] = []
        offset = 0
        for hunk in file.hunks:
            for out in split_hunk(hunk, sel, context, offset):
                offset += out.new_count - out.old_count
                out_hunks.append(out)
        if not out_hunks:
            continue
        chunks.append(_file_header(file, out_hunks))
        chunks.extend(h.format() for h in out_hunks)
    return "".join(chunks).encode("utf-8", "surrogateescape")

def count_selected(file: FileDiff, selection: FileSelection) -> int:
    """Number of change lines the selection stages in the file, replacement groups included."""
    if file.is_binary:
        return 0
    total = 0
    for hunk in file.hunks:
        total += sum(1 for ln, keep in zip(hunk.lines, select_lines(hunk, selection)) if keep and ln.is_change)
    return total

def staging_hint(file: FileDiff) -> str | None:
    """A FILE:LINES token that covers every change of each hunk."""
    ranges = []
    for hunk in file.hunks:
        nums = [ln.effective_line for ln in hunk.changes()]
        if nums:
            ranges.append(LineRange(min(nums), max(nums)))
    if not ranges or file.is_binary:
        return None
    return str(FileSelection(file.path, merge_ranges(ranges)))

# ---------- rebase spec ----------

HASH_RE = re.compile(r"[0-9a-fA-F]{7,40}")

def is_commit_hash(text: str) -> bool:
    return HASH_RE.fullmatch(text) is not None


class RebaseActionType(enum.Enum):
    PICK = "pick"
    REWORD = "reword"
    EDIT = "edit"
    SQUASH = "squash"
    FIXUP = "fixup"
    DROP = "drop"
    EXEC = "exec"

    @property
    def short(self) -> str:
        if self is RebaseActionType.EXEC:
            return "x"
        return self.value[0]

    @property
    def combines(self) -> bool:
        """True for actions that fold a commit into its predecessor."""
        return self in (RebaseActionType.SQUASH, RebaseActionType.FIXUP)

    @classmethod
    def from_name(cls, name: str) -> "RebaseActionType":
        key = name.strip().lower()
        for action in cls:
            if key in (action.value, action.short):
                return action
        raise ParseError(f"unknown action: {name!r}")


@dataclasses.dataclass(frozen=True)
class RebaseAction:
    action: RebaseActionType
    commit: str = ""
    message: str = ""  # reword/squash only
    command: str = ""  # exec only

    def validate(self) -> None:
        # A newline would smuggle extra lines into the rewritten todo file
        if "\n" in self.command or "\r" in self.command:
            raise ValidationError("exec command cannot contain newlines")
        if self.action is RebaseActionType.EXEC:
            if not self.command.strip():
                raise ValidationError("exec action requires a command")
            return
        if not self.commit:
            raise ValidationError(f"{self.action.value} action requires a commit hash")

    def to_dict(self) -> dict[str, str]:
        data = {"action": self.action.value}
        for key in ("commit", "message", "command"):
            value = getattr(self, key)
            if value:
                data[key] = value
        return data

    @classmethod
    def from_dict(cls, data: Any) -> "RebaseAction":
        if not isinstance(data, dict):
            raise ParseError(f"each action must be an object, got {type(data).__name__}")
        name = data.get("action")
        if not isinstance(name, str):
            raise ParseError(f"action object is missing the 'action' field: {data!r}")
        fields: dict[str, str] = {}
        for key in ("commit", "message", "command"):
            value = data.get(key) or ""
            if not isinstance(value, str):
                raise ParseError(f"'{key}' must be a string, got {type(value).__name__}")
            fields[key] = value.strip() if key == "commit" else value
        return cls(RebaseActionType.from_name(name), **fields)

def split_preserving_quotes(text: str) -> list[str]:
    """Split on commas that are not inside single or double quotes.

    A quote only opens at the start of a word (after a comma, colon or
    whitespace), so an apostrophe such as "don't" is plain text.
    """
    parts: list[str] = []
    current: list[str] = []
    quote = ""
    for c in text:
        if quote:
            if c == quote:
                quote = ""
            current.append(c)
        elif c in "\"'" and (not current or current[-1] == ":" or current[-1].isspace()):
            quote = c
            current.append(c)
        elif c == ",":
            if current:
                parts.append("".join(current))
                current = []
        else:
            current.append(c)
    if current:
        parts.append("".join(current))
    return parts

def _strip_quotes(text: str) -> str:
    if len(text) >= 2 and text[0] == text[-1] and text[0] in "\"'":
        return text[1:-1]
    return text

def parse_action_token(token: str) -> RebaseAction:
    """Parse one CLI shorthand token.

    Formats: "abc1234" (pick), "squash:abc1234", "reword:abc1234:New message",
    "exec:make test". Action names may be long or single-letter.
    """
    if ":" not in token:
        return RebaseAction(RebaseActionType.PICK, commit=token)
    name, _, rest = token.partition(":")
    action = RebaseActionType.from_name(name)
    if action is RebaseActionType.EXEC:
        return RebaseAction(action, command=rest.strip())
    commit, sep, message = rest.partition(":")
    return RebaseAction(action, commit=commit.strip(), message=_strip_quotes(message.strip()) if sep else "")


@dataclasses.dataclass(frozen=True)
class RebaseSpec:
    actions: tuple[RebaseAction, ...]

    def __len__(self) -> int:
        return len(self.actions)

    def validate(self) -> None:
        if not self.actions:
            raise ValidationError("rebase spec has no actions")
        for i, action in enumerate(self.actions, 1):
            try:
                action.validate()
            except ValidationError as e:
                raise ValidationError(f"action {i}: {e}") from e
        first = self.actions[0].action
        if first.combines:
            raise ValidationError(f"cannot start with {first.value}: no previous commit to combine with")

    def validate_against(self, entries: list["TodoEntry"]) -> None:
        """Check that every commit named by an action is part of the rebase range.

        Raises:
            ValidationError: Naming the first commit that is missing or ambiguous
        """
        for i, action in enumerate(self.actions, 1):
            if action.action is RebaseActionType.EXEC:
                continue
            try:
                entry = resolve_commit(action.commit, entries)
            except ValidationError as e:
                raise ValidationError(f"action {i}: {e}") from e
            if entry is None:
                raise ValidationError(f"action {i}: commit {action.commit!r} not found in rebase range")

    def to_json(self) -> str:
        return json.dumps({"actions": [a.to_dict() for a in self.actions]}, ensure_ascii=False)

    @classmethod
    def from_json(cls, data: str | bytes) -> "RebaseSpec":
        """Parse and validate the {"actions": [...]} form."""
        if isinstance(data, bytes):
            data = data.decode("utf-8")
        try:
            doc = json.loads(data)
        except json.JSONDecodeError as e:
            snippet = data if len(data) <= SPEC_SNIPPET_LEN else data[:SPEC_SNIPPET_LEN] + "..."
            raise ParseError(f"invalid JSON spec: {e}\ninput: {snippet}") from e
        if not isinstance(doc, dict) or not isinstance(doc.get("actions"), list):
            raise ParseError('rebase spec must be an object with an "actions" list')
        spec = cls(tuple(RebaseAction.from_dict(item) for item in doc["actions"]))
        spec.validate()
        return spec

    @classmethod
    def from_cli(cls, args: Iterable[str]) -> "RebaseSpec":
        """Parse and validate comma-separated shorthand tokens."""
        args = list(args)
        if not args:
            raise ParseError("no rebase actions specified")
        actions = []
        for part in split_preserving_quotes(",".join(args)):
            part = part.strip()
            if not part:
                continue
            try:
                actions.append(parse_action_token(part))
            except ParseError as e:
                raise ParseError(f"invalid action {part!r}: {e}") from e
        spec = cls(tuple(actions))
        spec.validate()
        return spec

# ---------- rebase todo ----------

# Verbs git may write that are not part of a declarative plan
_TODO_SKIPPED_VERBS = {"break", "b", "label", "l", "reset", "t", "merge", "m", "update-ref", "u", "noop"}


@dataclasses.dataclass(frozen=True)
class TodoEntry:
    action: RebaseActionType
    commit: str = ""  # empty for exec
    subject: str = ""  # commit subject, or the command for exec

    def to_line(self) -> str:
        if self.action is RebaseActionType.EXEC:
            return f"exec {self.subject}"
        if self.subject:
            return f"{self.action.value} {self.commit} {self.subject}"
        return f"{self.action.value} {self.commit}"

def parse_todo(text: str) -> list[TodoEntry]:
    """Parse a git-rebase-todo file into entries.

    Blank lines and comments are ignored; so are break/label/reset/merge/
    update-ref lines, with a warning.
    """
    entries: list[TodoEntry] = []
    for lineno, raw in enumerate(text.splitlines(), 1):
        line = raw.strip()
        if not line or line.startswith("#"):
            continue
        verb, _, rest = line.partition(" ")
        verb = verb.lower()
        rest = rest.strip()
        if verb in _TODO_SKIPPED_VERBS:
            logger.warning("ignoring todo line %d: %s", lineno, line)
            continue
        try:
            action = RebaseActionType.from_name(verb)
        except ParseError as e:
            raise ParseError(f"todo line {lineno}: {e}") from e

        if action is RebaseActionType.EXEC:
            if not rest:
                raise ParseError(f"todo line {lineno}: exec without a command")
            entries.append(TodoEntry(action, "", rest))
            continue

        if action is RebaseActionType.FIXUP and rest[:3] in ("-C ", "-c "):
            rest = rest[3:].lstrip()
        commit, _, subject = rest.partition(" ")
        if not commit:
            raise ParseError(f"todo line {lineno}: {action.value} without a commit")
        subject = subject.strip()
        if subject.startswith("# "):
            subject = subject[2:]
        entries.append(TodoEntry(action, commit, subject))
    return entries

def format_todo(entries: Iterable[TodoEntry]) -> str:
    return "".join(entry.to_line() + "\n" for entry in entries)

def resolve_commit(ref: str, entries: Iterable[TodoEntry]) -> TodoEntry | None:
    """Find the entry a commit reference points at.

    An exact hash wins; otherwise the full hash or its 7-character short form
    must be a prefix of ref or the other way round.

    Raises:
        ValidationError: If ref matches more than one distinct commit
    """
    ref = ref.strip().lower()
    commits = [e for e in entries if e.action is not RebaseActionType.EXEC and e.commit]
    for entry in commits:
        if entry.commit.lower() == ref:
            return entry
    candidates: dict[str, TodoEntry] = {}
    for entry in commits:
        full = entry.commit.lower()
        for key in (full, full[:SHORT_HASH_LEN]):
            if key.startswith(ref) or ref.startswith(key):
                candidates.setdefault(full, entry)
    if len(candidates) > 1:
        raise ValidationError(f"commit {ref!r} is ambiguous: matches {', '.join(sorted(candidates))}")
    return next(iter(candidates.values()), None)

def reorder_to_match_spec(spec: RebaseSpec, original: list[TodoEntry]) -> list[TodoEntry]:
    """Rebuild the todo list in spec order, one entry per action.

    Commit hashes and subjects come from the todo git generated; exec actions
    become standalone entries carrying their command.
    """
    result: list[TodoEntry] = []
    for action in spec.actions:
        if action.action is RebaseActionType.EXEC:
            result.append(TodoEntry(RebaseActionType.EXEC, "", action.command))
            continue
        entry = resolve_commit(action.commit, original)
        if entry is None:
            raise ValidationError(f"commit {action.commit!r} not found")
        result.append(TodoEntry(action.action, entry.commit, entry.subject))
    return result

def amend_message_command(message: str) -> str:
    """Shell command, safe for one todo line, that replaces HEAD's message."""
    lines = message.splitlines() or [""]
    printf = "printf '%s\\n' " + " ".join(shlex.quote(ln) for ln in lines)
    return f"{printf} | git commit --amend --only --allow-empty --no-verify -F -"

def _with_messages(spec: RebaseSpec, entries: list[TodoEntry]) -> list[TodoEntry]:
    out: list[TodoEntry] = []
    for action, entry in zip(spec.actions, entries):
        if action.message and action.action in (RebaseActionType.REWORD, RebaseActionType.SQUASH):
            if action.action is RebaseActionType.REWORD:
                entry = dataclasses.replace(entry, action=RebaseActionType.PICK)
            out.append(entry)
            out.append(TodoEntry(RebaseActionType.EXEC, "", amend_message_command(action.message)))
        else:
            out.append(entry)
    return out

def plan_todo(spec: RebaseSpec, todo_text: str) -> str:
    """Rewrite git's generated todo so that it executes the action list.

    Args:
        spec: Validated rebase spec
        todo_text: Content of the git-rebase-todo file git is about to run

    Returns:
        New todo file content

    Raises:
        ParseError: If the todo file cannot be parsed
        ValidationError: If an action names a commit outside the rebase range
    """
    original = parse_todo(todo_text)
    if not any(e.commit for e in original):
        raise ValidationError("no commits found in rebase todo")
    spec.validate()
    spec.validate_against(original)
    entries = _with_messages(spec, reorder_to_match_spec(spec, original))
    logger.info("rewrote rebase todo: %d entries from %d original", len(entries), len(original))
    return format_todo(entries)

# ---------- autosquash ----------

_AUTOSQUASH_PREFIXES = (("fixup! ", RebaseActionType.FIXUP), ("squash! ", RebaseActionType.SQUASH))


@dataclasses.dataclass(frozen=True)
class CommitInfo:
    hash: str
    short_hash: str
    subject: str
    author: str = ""
    date: str = ""


@dataclasses.dataclass(frozen=True)
class AutosquashStep:
    action: RebaseActionType
    commit: CommitInfo
    target: str = ""  # hash of the commit this one folds into


@dataclasses.dataclass(frozen=True)
class AutosquashPlan:
    steps: tuple[AutosquashStep, ...]
    fixup_count: int

    @property
    def spec(self) -> RebaseSpec:
        return RebaseSpec(tuple(RebaseAction(s.action, commit=s.commit.hash) for s in self.steps))

def autosquash_kind(subject: str) -> tuple[RebaseActionType, str] | None:
    """(fixup|squash, target subject) for "fixup! X" / "squash! X" subjects."""
    for prefix, action in _AUTOSQUASH_PREFIXES:
        if subject.startswith(prefix):
            return action, subject[len(prefix):]
    return None

def find_autosquash_target(target: str, candidates: list[CommitInfo]) -> CommitInfo | None:
    if not target:
        return None
    for c in candidates:
        if c.subject == target:
            return c
    for c in candidates:
        if c.subject.startswith(target):
            return c
    if is_commit_hash(target):
        for c in candidates:
            if c.hash.lower().startswith(target.lower()):
                return c
    nested = autosquash_kind(target)
    if nested is not None:
        return find_autosquash_target(nested[1], candidates)
    return None

def build_autosquash_plan(commits: list[CommitInfo]) -> AutosquashPlan:
    """Move each fixup!/squash! commit right after the commit it targets.

    Args:
        commits: Commits of the rebase range, oldest first

    Returns:
        AutosquashPlan whose steps keep the relative order of every other
        commit. Fixups whose target cannot be found go to the end as picks.
    """
    targets = [c for c in commits if autosquash_kind(c.subject) is None]
    folded: dict[str, list[AutosquashStep]] = {}
    unresolved: list[AutosquashStep] = []
    for c in commits:
        kind = autosquash_kind(c.subject)
        if kind is None:
            continue
        action, target_subject = kind
        target = find_autosquash_target(target_subject, targets)
        if target is None:
            logger.warning("no target for %s %r, keeping it as a pick", c.short_hash, c.subject)
            unresolved.append(AutosquashStep(RebaseActionType.PICK, c))
            continue
        folded.setdefault(target.hash, []).append(AutosquashStep(action, c, target.hash))

    steps: list[AutosquashStep] = []
    for c in targets:
        steps.append(AutosquashStep(RebaseActionType.PICK, c))
        steps.extend(folded.get(c.hash, []))
    steps.extend(unresolved)
    return AutosquashPlan(tuple(steps), sum(len(v) for v in folded.values()))

# ---------- git ----------

def git_root(cwd: str | None = None) -> str:
    return run(["git", "rev-parse", "--show-toplevel"], cwd=cwd).strip()

def git_dir(cwd: str | None = None) -> str:
    out = run(["git", "rev-parse", "--git-dir"], cwd=cwd).strip()
    if not os.path.isabs(out):
        out = os.path.join(cwd or os.getcwd(), out)
    return out

def git_diff(paths: list[str] | None = None, staged: bool = False, cwd: str | None = None, unified: int = PATCH_CONTEXT_DEFAULT) -> str:
    cmd = ["git", "diff", "--no-color", "--no-ext-diff", f"--unified={unified}", "--src-prefix=a/", "--dst-prefix=b/"]
    if staged:
        cmd.append("--cached")
    if paths:
        cmd += ["--"] + paths
    return run(cmd, cwd=cwd)

def git_untracked(paths: list[str] | None = None, cwd: str | None = None) -> list[str]:
    cmd = ["git", "ls-files", "--others", "--exclude-standard"]
    if paths:
        cmd += ["--"] + paths
    return [p for p in run(cmd, cwd=cwd, check=False).split("\n") if p]

def git_apply_cached(patch: bytes, cwd: str | None = None, check_only: bool = False, unidiff_zero: bool = False) -> None:
    cmd = ["git", "apply", "--cached"]
    if check_only:
        cmd.append("--check")
    # Without this git anchors context-free hunks to the end of the file
    if unidiff_zero:
        cmd.append("--unidiff-zero")
    cmd.append("-")
    run(cmd, cwd=cwd, input_data=patch)

def git_commit(message: str, cwd: str | None = None) -> str:
    """Commit the index and return the new short HEAD hash."""
    run(["git", "commit", "-q", "-m", message], cwd=cwd)
    return run(["git", "rev-parse", "--short", "HEAD"], cwd=cwd).strip()

def git_reset(paths: list[str] | None = None, cwd: str | None = None) -> None:
    cmd = ["git", "reset", "-q", "HEAD"]
    if paths:
        cmd += ["--"] + paths
    run(cmd, cwd=cwd)

def git_status(cwd: str | None = None) -> dict[str, list[str]]:
    """Staged, unstaged and untracked paths from `git status --porcelain -z`."""
    out = run(["git", "status", "--porcelain", "-z"], cwd=cwd)
    status: dict[str, list[str]] = {"staged": [], "unstaged": [], "untracked": []}
    entries = out.split("\0")
    i = 0
    while i < len(entries):
        entry = entries[i]
        i += 1
        if len(entry) < 4:
            continue
        x, y, path = entry[0], entry[1], entry[3:]
        if x in "RC":
            i += 1  # the original path follows as its own field
        if x == "?" and y == "?":
            status["untracked"].append(path)
            continue
        if x not in " ?":
            status["staged"].append(path)
        if y != " ":
            status["unstaged"].append(path)
    return status

def git_rebase_list(base: str, cwd: str | None = None) -> list[CommitInfo]:
    """Commits base..HEAD, oldest first, as git rebase -i would list them."""
    fmt = "%H%x1f%h%x1f%s%x1f%an <%ae>%x1f%aI"
    out = run(["git", "log", f"--format={fmt}", "--reverse", "--no-merges", f"{base}..HEAD"], cwd=cwd)
    commits = []
    for line in out.split("\n"):
        parts = line.split("\x1f")
        if len(parts) != 5:
            continue
        commits.append(CommitInfo(hash=parts[0], short_hash=parts[1], subject=parts[2], author=parts[3], date=parts[4]))
    return commits

def git_rebase_start(base: str, editor: str, cwd: str | None = None) -> subprocess.CompletedProcess:
    # GIT_EDITOR=true accepts the default message of squash/reword steps
    env = {"GIT_SEQUENCE_EDITOR": editor, "GIT_EDITOR": "true"}
    return run_process(["git", "rebase", "-i", base], cwd=cwd, env=env)

def git_rebase_control(verb: str, cwd: str | None = None) -> subprocess.CompletedProcess:
    if verb not in ("continue", "abort", "skip"):
        raise ValidationError(f"unknown rebase control verb: {verb!r}")
    return run_process(["git", "rebase", f"--{verb}"], cwd=cwd, env={"GIT_EDITOR": "true"})

def _read_text(path: str) -> str | None:
    try:
        with open(path, encoding="utf-8", errors="surrogateescape") as f:
            return f.read()
    except FileNotFoundError:
        return None

def _todo_lines(text: str | None) -> list[str]:
    if not text:
        return []
    return [ln.strip() for ln in text.splitlines() if ln.strip() and not ln.strip().startswith("#")]

def git_conflicts(cwd: str | None = None) -> list[str]:
    out = run(["git", "diff", "--name-only", "--diff-filter=U"], cwd=cwd, check=False)
    return [p.strip() for p in out.split("\n") if p.strip()]

def git_rebase_state(cwd: str | None = None) -> dict[str, Any]:
    """Describe the rebase in progress, if any.

    Returns:
        Dictionary with keys:
        - in_progress: True while .git/rebase-merge or rebase-apply exists
        - state: "none", "normal", "conflict" or "edit"
        - total/remaining/completed: todo entry counts
        - current_action: last executed todo line
        - conflicts: paths with unmerged entries
        - original_branch, onto: from the rebase state directory
    """
    gdir = git_dir(cwd)
    state_dir = None
    for name in ("rebase-merge", "rebase-apply"):
        candidate = os.path.join(gdir, name)
        if os.path.isdir(candidate):
            state_dir = candidate
            break
    if state_dir is None:
        return {"in_progress": False, "state": "none"}

    remaining = _todo_lines(_read_text(os.path.join(state_dir, "git-rebase-todo")))
    done = _todo_lines(_read_text(os.path.join(state_dir, "done")))
    branch = (_read_text(os.path.join(state_dir, "head-name")) or "").strip()
    onto = (_read_text(os.path.join(state_dir, "onto")) or "").strip()
    conflicts = git_conflicts(cwd)

    state = "normal"
    if conflicts:
        state = "conflict"
    elif os.path.exists(os.path.join(state_dir, "amend")):
        state = "edit"

    return {
        "in_progress": True,
        "state": state,
        "current_action": done[-1] if done else None,
        "total": len(done) + len(remaining),
        "remaining": len(remaining),
        "completed": len(done),
        "conflicts": conflicts,
        "original_branch": branch.removeprefix("refs/heads/"),
        "onto": onto,
    }

# ---------- operations ----------

def line_to_dict(ln: DiffLine) -> dict[str, Any]:
    data: dict[str, Any] = {"op": ln.op.label, "content": ln.content}
    if ln.old_line:
        data["old_line"] = ln.old_line
    if ln.new_line:
        data["new_line"] = ln.new_line
    if ln.no_newline:
        data["no_newline"] = True
    return data

def file_to_dict(file: FileDiff) -> dict[str, Any]:
    added, deleted = file.stats()
    data: dict[str, Any] = {"path": file.path, "status": file.status, "binary": file.is_binary}
    if file.old_name != file.path:
        data["old_path"] = file.old_name
    data["additions"] = added
    data["deletions"] = deleted
    hint = staging_hint(file)
    if hint:
        data["stage_hint"] = hint
    data["hunks"] = [
        {"header": h.header(), "section": h.section, "lines": [line_to_dict(ln) for ln in h.lines]}
        for h in file.hunks
    ]
    return data

def diff_to_dict(parsed: ParsedDiff, untracked: list[str] | None = None) -> dict[str, Any]:
    added, deleted = parsed.stats()
    return {
        "files": [file_to_dict(f) for f in parsed],
        "untracked": untracked or [],
        "stats": {"files": len(parsed), "additions": added, "deletions": deleted},
    }

def show_diff(paths: list[str] | None = None, staged: bool = False, cwd: str | None = None) -> dict[str, Any]:
    """Unstaged (or staged) changes with old/new line numbers for every line.

    Untracked files are listed separately: git diff does not show them and
    they cannot be staged by line until they are tracked (`git add -N`).
    """
    parsed = parse_unified_diff(git_diff(paths, staged=staged, cwd=cwd))
    untracked = [] if staged else git_untracked(paths, cwd=cwd)
    return diff_to_dict(parsed, untracked)

def preview(cwd: str | None = None) -> dict[str, Any]:
    return show_diff(staged=True, cwd=cwd)

def stage_lines(tokens: list[str], dry_run: bool = False, context: int = PATCH_CONTEXT_DEFAULT, cwd: str | None = None) -> dict[str, Any]:
    """Stage the changed lines named by FILE:LINES tokens.

    Args:
        tokens: Selections such as "src/app.py:10-20,31" (new-file line
            numbers for additions, old-file numbers for deletions)
        dry_run: Only build the patch and check that git would accept it
        context: Context lines kept around each staged run
        cwd: Directory inside the repository

    Returns:
        Dictionary with keys:
        - applied: [{file, applied_count, after_applying: {unstaged_lines}}]
        - skipped: [{selection, reason}] for selections that matched nothing
        - stats: files, changes_applied, changes_skipped
        - patch: the generated patch (dry run only)

    Raises:
        ParseError: If a token is malformed
        SelectionMismatch: If no selected line is a change
    """
    if context < 0:
        raise ValidationError(f"context must not be negative, got {context}")
    selections = SelectionMap.from_tokens(tokens)
    root = git_root(cwd)
    parsed = parse_unified_diff(git_diff(cwd=root, unified=context))
    if not parsed:
        raise SelectionMismatch("no unstaged changes")

    patch = generate_patch(parsed, selections, context)
    if not patch:
        raise SelectionMismatch("no matching lines found for selection")

    applied: list[dict[str, Any]] = []
    skipped: list[dict[str, Any]] = []
    for path, sel in selections.items():
        file = parsed.file_by_path(path)
        if file is None:
            skipped.append({"selection": str(sel), "reason": "file has no unstaged changes"})
        elif file.is_binary:
            skipped.append({"selection": str(sel), "reason": "binary"})
        else:
            n = count_selected(file, sel)
            if n:
                applied.append({"file": file.path, "applied_count": n})
            else:
                skipped.append({"selection": str(sel), "reason": "no changed lines in range"})

    if dry_run:
        git_apply_cached(patch, cwd=root, check_only=True, unidiff_zero=context == 0)
    else:
        git_apply_cached(patch, cwd=root, unidiff_zero=context == 0)
        logger.info("staged %d change line(s) in %d file(s)", sum(a["applied_count"] for a in applied), len(applied))
        remaining = parse_unified_diff(git_diff([a["file"] for a in applied], cwd=root))
        for entry in applied:
            f = remaining.file_by_path(entry["file"])
            unstaged = sum(1 for h in f.hunks for _ in h.changes()) if f else 0
            entry["after_applying"] = {"unstaged_lines": unstaged}

    result: dict[str, Any] = {
        "applied": applied,
        "skipped": skipped,
        "stats": {
            "files": len(applied),
            "changes_applied": sum(a["applied_count"] for a in applied),
            "changes_skipped": len(skipped),
        },
    }
    if dry_run:
        result["dry_run"] = True
        result["patch"] = patch.decode("utf-8", "surrogateescape")
    return result

def apply_patch(patch_text: str, cwd: str | None = None) -> dict[str, Any]:
    """Stage an externally produced unified diff as-is."""
    parsed = parse_unified_diff(patch_text)
    if not parsed:
        raise ParseError("patch contains no file changes")
    git_apply_cached(patch_text.encode("utf-8", "surrogateescape"), cwd=git_root(cwd))
    return {"applied": True, "files": [f.path for f in parsed]}

def commit(message: str, cwd: str | None = None) -> dict[str, Any]:
    if not message.strip():
        raise ValidationError("commit message must not be empty")
    head = git_commit(message, cwd=cwd)
    return {"committed": True, "commit": head, "subject": message.splitlines()[0]}

def reset(paths: list[str] | None = None, cwd: str | None = None) -> dict[str, Any]:
    git_reset(paths, cwd=cwd)
    return {"reset": True, "paths": paths or []}

def rebase_list(onto: str, cwd: str | None = None) -> dict[str, Any]:
    commits = git_rebase_list(onto, cwd=cwd)
    return {
        "base": onto,
        "head": "HEAD",
        "commits": [dict(dataclasses.asdict(c), position=i) for i, c in enumerate(commits, 1)],
        "count": len(commits),
    }

def sequence_editor_command(spec_path: str) -> str:
    """Command line git runs as GIT_SEQUENCE_EDITOR; git appends the todo path."""
    parts = [sys.executable, os.path.abspath(__file__), "rebase", "_apply-spec", spec_path]
    if os.name == "nt":
        parts = [p.replace("\\", "/") for p in parts]
    return " ".join(shlex.quote(p) for p in parts)

def apply_spec_file(spec_path: str, todo_path: str) -> None:
    """Sequence editor entry point: rewrite git's todo file from a JSON spec."""
    with open(spec_path, encoding="utf-8") as f:
        spec = RebaseSpec.from_json(f.read())
    with open(todo_path, encoding="utf-8", errors="surrogateescape") as f:
        todo_text = f.read()
    new_todo = plan_todo(spec, todo_text)
    with open(todo_path, "w", encoding="utf-8", errors="surrogateescape") as f:
        f.write(new_todo)

def _rebase_outcome(state: dict[str, Any], label: str) -> dict[str, Any]:
    if not state["in_progress"]:
        message = f"{label} completed successfully"
    elif state["state"] == "conflict":
        message = f"{label} paused due to conflicts"
    elif state["state"] == "edit":
        message = f"{label} stopped for editing"
    else:
        message = f"{label} in progress"
    return {
        "success": not state["in_progress"],
        "message": message,
        "in_progress": state["in_progress"],
        "has_conflict": state["state"] == "conflict",
        "state": state,
    }

def _run_rebase_with_spec(onto: str, spec: RebaseSpec, cwd: str | None, label: str) -> dict[str, Any]:
    fd, spec_path = tempfile.mkstemp(prefix="git-hunk-spec-", suffix=".json")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(spec.to_json())
        logger.info("starting rebase onto %s with %d action(s)", onto, len(spec))
        p = git_rebase_start(onto, sequence_editor_command(spec_path), cwd=cwd)
    finally:
        os.remove(spec_path)

    state = git_rebase_state(cwd)
    # exit 1 with a rebase in progress means git stopped; otherwise it refused
    if p.returncode != 0 and not (p.returncode == 1 and state["in_progress"]):
        raise subprocess.CalledProcessError(p.returncode, p.args, p.stdout, p.stderr)
    return _rebase_outcome(state, label)

def rebase_run(onto: str, spec: RebaseSpec, cwd: str | None = None) -> dict[str, Any]:
    """Run `git rebase -i onto` non-interactively following spec.

    The spec is checked against base..HEAD before the repository is touched.
    """
    commits = git_rebase_list(onto, cwd=cwd)
    if not commits:
        raise ValidationError(f"no commits to rebase: HEAD is already at or behind {onto}")
    spec.validate()
    spec.validate_against([TodoEntry(RebaseActionType.PICK, c.hash, c.subject) for c in commits])
    return _run_rebase_with_spec(onto, spec, cwd, "Rebase")

def rebase_autosquash(onto: str, dry_run: bool = False, cwd: str | None = None) -> dict[str, Any]:
    """Fold fixup!/squash! commits into their targets, like `git rebase -i --autosquash`."""
    commits = git_rebase_list(onto, cwd=cwd)
    if not commits:
        return {"success": True, "message": "No commits to rebase", "fixups_applied": 0}
    plan = build_autosquash_plan(commits)
    if plan.fixup_count == 0:
        return {"success": True, "message": "No fixup/squash commits found", "fixups_applied": 0}

    actions = []
    for step in plan.steps:
        item = {"action": step.action.value, "commit": step.commit.hash, "subject": step.commit.subject}
        if step.target:
            item["target"] = step.target
        actions.append(item)
    if dry_run:
        return {"success": True, "message": "Dry run - no changes made", "fixups_applied": plan.fixup_count, "actions": actions}

    result = _run_rebase_with_spec(onto, plan.spec, cwd, "Autosquash")
    result["fixups_applied"] = plan.fixup_count
    result["actions"] = actions
    return result

def rebase_status(cwd: str | None = None) -> dict[str, Any]:
    return git_rebase_state(cwd)

def rebase_control(verb: str, cwd: str | None = None) -> dict[str, Any]:
    """Continue, abort or skip the rebase in progress."""
    if not git_rebase_state(cwd)["in_progress"]:
        raise ValidationError("no rebase in progress")
    p = git_rebase_control(verb, cwd=cwd)
    state = git_rebase_state(cwd)
    if p.returncode != 0 and not state["in_progress"]:
        raise subprocess.CalledProcessError(p.returncode, p.args, p.stdout, p.stderr)
    result = _rebase_outcome(state, "Rebase")
    if verb == "abort" and not state["in_progress"]:
        result["message"] = "Rebase aborted"
    elif p.returncode != 0:
        result["detail"] = (p.stderr or p.stdout).strip()
    return result

# ---------- ANSI Colors ----------

ANSI_RED = "\033[31m"
ANSI_GREEN = "\033[32m"
ANSI_BLUE = "\033[34m"
ANSI_CYAN = "\033[36m"
ANSI_DIM = "\033[2m"
ANSI_RESET = "\033[0m"
ANSI_BOLD = "\033[1m"

def format_diff_pretty(parsed: ParsedDiff, untracked: list[str] | None = None) -> str:
    """Format a parsed diff as colored "OLD NEW ±content" rows."""
    lines: list[str] = []
    for file in parsed:
        header = f"{file.old_name} -> {file.new_name}" if file.is_renamed else file.path
        status_label = f" ({file.status})" if file.status != "modified" else ""
        lines.append(f"{ANSI_CYAN}{ANSI_BOLD}{header}{status_label}{ANSI_RESET}")
        if file.is_binary:
            lines.append("  (binary file)")
            lines.append("")
            continue
        for i, hunk in enumerate(file.hunks):
            if i > 0:
                lines.append("")
            lines.append(f"{ANSI_BLUE}{hunk.header()}{ANSI_RESET}")
            for ln in hunk.lines:
                if ln.op is LineOp.ADD:
                    lines.append(f"{ANSI_GREEN}{ln.format()}{ANSI_RESET}")
                elif ln.op is LineOp.DELETE:
                    lines.append(f"{ANSI_RED}{ln.format()}{ANSI_RESET}")
                else:
                    lines.append(f"{ANSI_DIM}{ln.format()}{ANSI_RESET}")
        lines.append("")

    added, deleted = parsed.stats()
    lines.append(f"--- {len(parsed)} file(s), {added} insertion(s)(+), {deleted} deletion(s)(-)")
    if untracked:
        lines.append(f"    ({len(untracked)} untracked file(s) not shown - use git add -N)")
    return "\n".join(lines)

def format_summary(parsed: ParsedDiff) -> str:
    added, deleted = parsed.stats()
    lines = [f"{len(parsed)} file(s) changed:"]
    lines.extend(f"  {f.path}" for f in parsed)
    lines.append("")
    lines.append(f"{added} insertions(+), {deleted} deletions(-)")
    return "\n".join(lines)

def format_hints(parsed: ParsedDiff) -> str:
    """Ready-to-run stage commands, one per file, plus each change line."""
    lines: list[str] = []
    for file in parsed:
        hint = staging_hint(file)
        if hint is None:
            continue
        lines.append(f"git-hunk stage {hint}")
        for hunk in file.hunks:
            for ln in hunk.changes():
                content = ln.content
                if len(content) > HINT_CONTENT_WIDTH:
                    content = content[:HINT_CONTENT_WIDTH - 3] + "..."
                lines.append(f"    {ln.effective_line:4d} {ln.op.prefix} {content}")
    return "\n".join(lines)

def format_stage_pretty(result: dict) -> str:
    lines: list[str] = []
    if result.get("dry_run"):
        lines.append(result.get("patch", "").rstrip("\n"))
        lines.append("")
        lines.append(f"{ANSI_CYAN}Dry run: patch applies cleanly, nothing staged{ANSI_RESET}")
    for applied in result.get("applied", []):
        verb = "Would stage" if result.get("dry_run") else "Staged"
        lines.append(f"{ANSI_GREEN}{verb} {applied['applied_count']} change(s) in {applied['file']}{ANSI_RESET}")
        unstaged = applied.get("after_applying", {}).get("unstaged_lines", 0)
        if unstaged > 0:
            lines.append(f"  {unstaged} unstaged change(s) remaining")
    for skipped in result.get("skipped", []):
        lines.append(f"{ANSI_RED}Skipped {skipped['selection']}: {skipped['reason']}{ANSI_RESET}")
    stats = result.get("stats", {})
    lines.append("")
    lines.append(f"--- {stats.get('changes_applied', 0)} applied, {stats.get('changes_skipped', 0)} skipped")
    return "\n".join(lines)

def format_rebase_list_pretty(result: dict) -> str:
    commits = result.get("commits", [])
    if not commits:
        return f"No commits to rebase onto {result.get('base')}"
    lines = [f"{len(commits)} commit(s) to rebase onto {result.get('base')}:", ""]
    for c in commits:
        label = " (HEAD)" if c["position"] == len(commits) else ""
        lines.append(f"{c['position']}. {ANSI_CYAN}{c['short_hash']}{ANSI_RESET} {c['subject']}{label}")
    return "\n".join(lines)

def format_rebase_pretty(result: dict) -> str:
    lines: list[str] = []
    actions = result.get("actions")
    if actions:
        lines.append(f"Autosquash plan ({result.get('fixups_applied', 0)} fixup(s)):")
        for a in actions:
            lines.append(f"  {a['action']:<6} {a['commit'][:SHORT_HASH_LEN]} {a.get('subject', '')}")
        lines.append("")
    message = result.get("message", "")
    color = ANSI_GREEN if result.get("success") else ANSI_RED if result.get("has_conflict") else ANSI_CYAN
    lines.append(f"{color}{message}{ANSI_RESET}")
    state = result.get("state") or {}
    if state.get("in_progress"):
        for path in state.get("conflicts", []):
            lines.append(f"  Conflict: {path}")
        lines.append(f"  {state.get('remaining', 0)} of {state.get('total', 0)} todo entries remaining")
        lines.append("")
        lines.append("Resolve, then:")
        lines.append("  git-hunk rebase continue  # to continue")
        lines.append("  git-hunk rebase abort     # to abort")
    if result.get("detail"):
        lines.append(result["detail"])
    return "\n".join(lines)

def format_rebase_status_pretty(state: dict) -> str:
    if not state.get("in_progress"):
        return "No rebase in progress."
    lines = [f"Rebase of {state.get('original_branch') or '(detached)'} in progress: {state['state']}"]
    if state.get("current_action"):
        lines.append(f"  current: {state['current_action']}")
    lines.append(f"  {state['completed']} done, {state['remaining']} remaining of {state['total']}")
    for path in state.get("conflicts", []):
        lines.append(f"  {ANSI_RED}Conflict: {path}{ANSI_RESET}")
    return "\n".join(lines)

# ---------- CLI ----------

def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    p = argparse.ArgumentParser(prog="git-hunk", description="Line-level staging and declarative rebase for git")
    p.add_argument("-C", "--dir", default=None, help="Run as if git was started in this directory")
    p.add_argument("-v", "--verbose", action="store_true", help="Log git invocations to stderr")
    sub = p.add_subparsers(dest="cmd", required=True)

    d = sub.add_parser("diff", help="Show changes with old/new line numbers")
    d.add_argument("paths", nargs="*", help="Paths to include (default: all)")
    d.add_argument("--staged", action="store_true", help="Show staged instead of unstaged changes")
    d.add_argument("--format", choices=["json", "pretty", "raw", "files", "summary", "hints"], default="json", help="Output format (default: json)")

    s = sub.add_parser("stage", help="Stage specific lines given as FILE:LINES")
    s.add_argument("selections", nargs="+", help="FILE:LINES, e.g. main.py:10-20,31")
    s.add_argument("--dry-run", action="store_true", help="Show the patch and check it without staging")
    s.add_argument("--context", type=int, default=PATCH_CONTEXT_DEFAULT, help="Context lines around staged changes")
    s.add_argument("--format", choices=["json", "pretty"], default="json", help="Output format (default: json)")

    pv = sub.add_parser("preview", help="Show staged changes")
    pv.add_argument("--format", choices=["json", "pretty", "raw"], default="json", help="Output format (default: json)")

    c = sub.add_parser("commit", help="Commit staged changes")
    c.add_argument("-m", "--message", required=True, help="Commit message")

    r = sub.add_parser("reset", help="Unstage everything, or the given paths")
    r.add_argument("paths", nargs="*", help="Paths to unstage (default: all)")

    sub.add_parser("apply-patch", help="Stage a unified diff read from stdin")

    rb = sub.add_parser("rebase", help="Non-interactive interactive rebase")
    rsub = rb.add_subparsers(dest="rebase_cmd", required=True)

    rl = rsub.add_parser("list", help="List commits that would be rebased")
    rl.add_argument("--onto", required=True, help="Base reference to rebase onto")
    rl.add_argument("--format", choices=["json", "pretty"], default="json", help="Output format (default: json)")

    rr = rsub.add_parser("run", help="Rebase following a declarative action list")
    rr.add_argument("actions", nargs="*", help="pick:abc1234,squash:def5678,reword:abc1234:\"Message, with comma\",exec:make test (quote fields that contain commas)")
    rr.add_argument("--onto", required=True, help="Base reference to rebase onto")
    rr.add_argument("--spec", default=None, help="JSON spec file ({\"actions\": [...]}), - for stdin")
    rr.add_argument("--format", choices=["json", "pretty"], default="json", help="Output format (default: json)")

    ra = rsub.add_parser("autosquash", help="Fold fixup!/squash! commits into their targets")
    ra.add_argument("--onto", required=True, help="Base reference to rebase onto")
    ra.add_argument("--dry-run", action="store_true", help="Show the plan without rebasing")
    ra.add_argument("--format", choices=["json", "pretty"], default="json", help="Output format (default: json)")

    for verb in ("status", "continue", "abort", "skip"):
        rv = rsub.add_parser(verb, help=f"Rebase {verb}")
        rv.add_argument("--format", choices=["json", "pretty"], default="json", help="Output format (default: json)")

    ap = rsub.add_parser("_apply-spec", help=argparse.SUPPRESS)
    ap.add_argument("spec_file")
    ap.add_argument("todo_file")

    sub.add_parser("mcp", help="Run as MCP server (stdio)")

    return p.parse_args(argv)

def configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        stream=sys.stderr,
        format="%(asctime)s %(name)s %(levelname)s: %(message)s",
    )

def emit(result: dict, fmt: str, pretty: Callable[[dict], str]) -> None:
    if fmt == "pretty":
        print(pretty(result))
    else:
        json.dump(result, sys.stdout, ensure_ascii=False)
        sys.stdout.write("\n")

def _read_spec_arg(spec_file: str | None, actions: list[str]) -> RebaseSpec:
    if spec_file:
        if spec_file == "-":
            return RebaseSpec.from_json(sys.stdin.read())
        with open(spec_file, encoding="utf-8") as f:
            return RebaseSpec.from_json(f.read())
    if not actions:
        raise ParseError("no actions specified; provide commits/actions or --spec")
    return RebaseSpec.from_cli(actions)

def _run_diff_command(args: argparse.Namespace) -> None:
    staged = args.cmd == "preview" or args.staged
    paths = [] if args.cmd == "preview" else args.paths
    parsed = parse_unified_diff(git_diff(paths, staged=staged, cwd=args.dir))
    untracked = [] if staged else git_untracked(paths, cwd=args.dir)
    if args.format == "json":
        emit(diff_to_dict(parsed, untracked), "json", str)
    elif args.format == "pretty":
        print(format_diff_pretty(parsed, untracked))
    elif args.format == "raw":
        sys.stdout.write("".join(f.format() for f in parsed))
    elif args.format == "files":
        for f in parsed:
            print(f.path)
    elif args.format == "summary":
        print(format_summary(parsed))
    elif args.format == "hints":
        print(format_hints(parsed))

def _run_rebase_command(args: argparse.Namespace) -> None:
    cmd = args.rebase_cmd
    if cmd == "_apply-spec":
        apply_spec_file(args.spec_file, args.todo_file)
    elif cmd == "list":
        emit(rebase_list(args.onto, cwd=args.dir), args.format, format_rebase_list_pretty)
    elif cmd == "run":
        spec = _read_spec_arg(args.spec, args.actions)
        emit(rebase_run(args.onto, spec, cwd=args.dir), args.format, format_rebase_pretty)
    elif cmd == "autosquash":
        emit(rebase_autosquash(args.onto, dry_run=args.dry_run, cwd=args.dir), args.format, format_rebase_pretty)
    elif cmd == "status":
        emit(rebase_status(cwd=args.dir), args.format, format_rebase_status_pretty)
    else:
        emit(rebase_control(cmd, cwd=args.dir), args.format, format_rebase_pretty)

def main(argv: list[str] | None = None) -> None:
    args = parse_args(argv)
    configure_logging(args.verbose)
    fmt = getattr(args, "format", "json")
    try:
        if args.cmd in ("diff", "preview"):
            _run_diff_command(args)
        elif args.cmd == "stage":
            emit(stage_lines(args.selections, dry_run=args.dry_run, context=args.context, cwd=args.dir), args.format, format_stage_pretty)
        elif args.cmd == "commit":
            emit(commit(args.message, cwd=args.dir), "json", str)
        elif args.cmd == "reset":
            emit(reset(args.paths, cwd=args.dir), "json", str)
        elif args.cmd == "apply-patch":
            emit(apply_patch(sys.stdin.read(), cwd=args.dir), "json", str)
        elif args.cmd == "rebase":
            _run_rebase_command(args)
        elif args.cmd == "mcp":
            mcp = create_mcp_server(cwd=args.dir)
            mcp.run()
    except SelectionMismatch as e:
        if fmt == "pretty":
            print(f"Nothing to stage: {e}", file=sys.stderr)
        else:
            print(json.dumps({"nothing_to_stage": True, "message": str(e)}), file=sys.stderr)
        sys.exit(1)
    except (HunkError, subprocess.CalledProcessError, OSError) as e:
        if fmt == "pretty":
            print(f"{ANSI_RED}Error: {error_text(e)}{ANSI_RESET}", file=sys.stderr)
        else:
            print(json.dumps({"error": error_text(e)}), file=sys.stderr)
        sys.exit(2)

# ---------- MCP Server ----------

def _tool_result(fn: Callable[..., dict], *args: Any, **kwargs: Any) -> str:
    try:
        result = fn(*args, **kwargs)
    except SelectionMismatch as e:
        result = {"nothing_to_stage": True, "message": str(e)}
    except (HunkError, subprocess.CalledProcessError, OSError) as e:
        result = {"error": error_text(e)}
    return json.dumps(result, ensure_ascii=False, indent=2)

def _rebase_from_actions(onto: str, actions: list[dict[str, str]], cwd: str | None) -> dict[str, Any]:
    spec = RebaseSpec.from_json(json.dumps({"actions": actions}))
    return rebase_run(onto, spec, cwd=cwd)

def create_mcp_server(cwd: str | None = None):
    """Create and configure MCP server with FastMCP."""
    try:
        from fastmcp import FastMCP
        from mcp.types import ToolAnnotations
    except ImportError:
        print("Error: fastmcp package not found. Install with: pip install fastmcp", file=sys.stderr)
        sys.exit(1)

    mcp = FastMCP("git-hunk")

    @mcp.tool(name="diff", annotations=ToolAnnotations(
        readOnlyHint=True,
        openWorldHint=True
    ))
    def diff_tool(paths: list[str] | None = None, staged: bool = False) -> str:
        """View git changes with old/new line numbers for line-level staging.

        PREFER THIS OVER `git diff` when you need to stage only part of your changes.
        Every diff line carries `old_line` / `new_line`: additions are selected by
        their new_line, deletions by their old_line. Each file also carries a
        `stage_hint` selection that stages all of its changes.

        Untracked files are listed under `untracked`; run `git add -N <file>` to
        make their lines stageable.

        Args:
            paths: Optional list of file paths to filter (default: all files)
            staged: Show staged changes instead of unstaged ones

        Returns:
            JSON string with format: {files: [{path, status, stage_hint, hunks: [{header, lines}]}], untracked, stats}
        """
        return _tool_result(show_diff, paths or None, staged=staged, cwd=cwd)

    @mcp.tool(name="stage_lines", annotations=ToolAnnotations(
        readOnlyHint=False,
        destructiveHint=True,
        openWorldHint=True
    ))
    def stage_lines_tool(selections: list[str], dry_run: bool = False) -> str:
        """Stage selected lines to the git index (alternative to `git add -p`).

        Selection format: "PATH:RANGES" where RANGES is a comma-separated list of
        N or N-M, e.g. "src/app.py:10-20,31". Line numbers come from the `diff` tool.

        A deletion directly replaced by additions is staged as a whole: selecting
        any line of such a block stages all of it. Other added or deleted lines
        can be staged one by one.

        Args:
            selections: One or more PATH:RANGES strings
            dry_run: Only build the patch and check that git accepts it

        Returns:
            JSON string with format: {applied: [{file, applied_count, after_applying}], skipped, stats}
            or {nothing_to_stage: true, message} when no selected line is a change
        """
        return _tool_result(stage_lines, selections, dry_run=dry_run, cwd=cwd)

    @mcp.tool(name="preview", annotations=ToolAnnotations(
        readOnlyHint=True,
        openWorldHint=True
    ))
    def preview_tool() -> str:
        """View the changes currently staged for commit, in the same format as `diff`."""
        return _tool_result(preview, cwd=cwd)

    @mcp.tool(name="reset", annotations=ToolAnnotations(
        readOnlyHint=False,
        destructiveHint=True,
        openWorldHint=True
    ))
    def reset_tool(paths: list[str] | None = None) -> str:
        """Unstage everything, or only the given paths. Working tree files are not touched."""
        return _tool_result(reset, paths or None, cwd=cwd)

    @mcp.tool(name="commit", annotations=ToolAnnotations(
        readOnlyHint=False,
        destructiveHint=False,
        openWorldHint=True
    ))
    def commit_tool(message: str) -> str:
        """Commit the staged changes with the given message."""
        return _tool_result(commit, message, cwd=cwd)

    @mcp.tool(name="rebase_list", annotations=ToolAnnotations(
        readOnlyHint=True,
        openWorldHint=True
    ))
    def rebase_list_tool(onto: str) -> str:
        """List the commits between `onto` and HEAD, oldest first, that a rebase would rewrite."""
        return _tool_result(rebase_list, onto, cwd=cwd)

    @mcp.tool(name="rebase_run", annotations=ToolAnnotations(
        readOnlyHint=False,
        destructiveHint=True,
        openWorldHint=True
    ))
    def rebase_run_tool(onto: str, actions: list[dict[str, str]]) -> str:
        """Run an interactive rebase without an editor, from a declarative action list.

        Each action is {"action": "pick|reword|edit|squash|fixup|drop|exec",
        "commit": "<hash>", "message": "<reword/squash only>", "command": "<exec only>"}.
        Commits left out of the list are dropped. The list may not start with
        squash or fixup, and exec commands may not contain newlines.

        Args:
            onto: Base reference (branch, tag or commit)
            actions: Ordered action objects

        Returns:
            JSON string with format: {success, message, in_progress, has_conflict, state}
        """
        return _tool_result(_rebase_from_actions, onto, actions, cwd)

    @mcp.tool(name="rebase_autosquash", annotations=ToolAnnotations(
        readOnlyHint=False,
        destructiveHint=True,
        openWorldHint=True
    ))
    def rebase_autosquash_tool(onto: str, dry_run: bool = False) -> str:
        """Fold "fixup! X" / "squash! X" commits into their targets (git rebase --autosquash)."""
        return _tool_result(rebase_autosquash, onto, dry_run=dry_run, cwd=cwd)

    @mcp.tool(name="rebase_status", annotations=ToolAnnotations(
        readOnlyHint=True,
        openWorldHint=True
    ))
    def rebase_status_tool() -> str:
        """Report whether a rebase is in progress, how far it got and which files conflict."""
        return _tool_result(rebase_status, cwd=cwd)

    @mcp.tool(name="rebase_control", annotations=ToolAnnotations(
        readOnlyHint=False,
        destructiveHint=True,
        openWorldHint=True
    ))
    def rebase_control_tool(verb: str) -> str:
        """Continue, abort or skip the rebase in progress.

        Args:
            verb: "continue", "abort" or "skip"
        """
        return _tool_result(rebase_control, verb, cwd=cwd)

    @mcp.prompt(name="split-commit", description="Split unstaged work into focused commits using git-hunk tools.")
    def split_commit_command() -> str:
        """Split unstaged work into focused commits using git-hunk tools."""
        return (
            "Call diff, group the changes into logical commits, then for each group "
            "call stage_lines with its line numbers, preview to check, and commit."
        )

    return mcp

if __name__ == "__main__":
    main()
