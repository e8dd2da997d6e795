"""Unified-diff codec for per-file patches.

A patch file describes exactly one target path::

    == AT ==
    public net/minecraft/server/Main main([Ljava/lang/String;)V
    == END AT ==
    --- a/net/minecraft/server/Main.java
    +++ b/net/minecraft/server/Main.java
    @@ -10,3 +10,4 @@
     context
    -removed
    +added

The access-transformer block is optional. ``--- /dev/null`` marks a created
file and ``+++ /dev/null`` a deleted one. Hunk headers are recomputed from the
hunk bodies on serialisation, so edited hunks always re-serialise consistently.
"""

from __future__ import annotations

import difflib
import re
from dataclasses import dataclass, field, replace
from enum import Enum
from pathlib import PurePosixPath
from typing import Iterable, List, Sequence, Tuple

from ..errors import MalformedPatch
from .access import AccessTransformEntry, format_access_transforms, parse_access_transforms

__all__ = [
    "AT_BLOCK_END",
    "AT_BLOCK_START",
    "DEFAULT_CONTEXT_LINES",
    "DEV_NULL",
    "ChangeType",
    "Hunk",
    "HunkLine",
    "LineKind",
    "PatchFile",
    "diff_lines",
    "parse_patch",
    "render_hunks",
    "serialize_patch",
]

DEV_NULL = "/dev/null"
AT_BLOCK_START = "== AT =="
AT_BLOCK_END = "== END AT =="
DEFAULT_CONTEXT_LINES = 3

_HUNK_HEADER = re.compile(
    r"^@@ -(?P<old_start>\d+)(?:,(?P<old_count>\d+))? "
    r"\+(?P<new_start>\d+)(?:,(?P<new_count>\d+))? @@"
)
_GIT_PREAMBLE = ("diff --git ", "index ", "new file mode ", "deleted file mode ", "old mode ", "new mode ")


class ChangeType(str, Enum):
    """Final existence state of the patched file."""

    CREATED = "created"
    MODIFIED = "modified"
    DELETED = "deleted"


class LineKind(str, Enum):
    """Prefix character of a hunk body line."""

    CONTEXT = " "
    ADDED = "+"
    REMOVED = "-"


@dataclass(frozen=True, slots=True)
class HunkLine:
    kind: LineKind
    text: str


@dataclass(frozen=True, slots=True)
class Hunk:
    """Contiguous change region anchored at ``source_start`` (0-based)."""

    source_start: int
    lines: Tuple[HunkLine, ...]

    @property
    def source_lines(self) -> List[str]:
        return [line.text for line in self.lines if line.kind is not LineKind.ADDED]

    @property
    def target_lines(self) -> List[str]:
        return [line.text for line in self.lines if line.kind is not LineKind.REMOVED]

    @property
    def source_length(self) -> int:
        return sum(1 for line in self.lines if line.kind is not LineKind.ADDED)

    @property
    def target_length(self) -> int:
        return sum(1 for line in self.lines if line.kind is not LineKind.REMOVED)

    @property
    def delta(self) -> int:
        """Net number of lines this hunk adds to the file."""
        return self.target_length - self.source_length


@dataclass(frozen=True, slots=True)
class PatchFile:
    """All hunks for one target path plus its final existence state."""

    path: str
    change: ChangeType
    hunks: Tuple[Hunk, ...] = ()
    access_transforms: Tuple[AccessTransformEntry, ...] = field(default=())

    def with_hunks(self, hunks: Iterable[Hunk]) -> "PatchFile":
        return replace(self, hunks=tuple(hunks))


def _format_start(index: int, length: int) -> int:
    # Unified diff convention: an empty range names the line *before* it.
    return index + 1 if length else index


def _hunk_header(hunk: Hunk, target_start: int) -> str:
    source_length = hunk.source_length
    target_length = hunk.target_length
    return (
        f"@@ -{_format_start(hunk.source_start, source_length)},{source_length} "
        f"+{_format_start(target_start, target_length)},{target_length} @@"
    )


def render_hunks(hunks: Sequence[Hunk]) -> List[str]:
    """Render hunks with headers computed from their bodies."""
    rendered: List[str] = []
    delta = 0
    for hunk in hunks:
        rendered.append(_hunk_header(hunk, hunk.source_start + delta))
        rendered.extend(f"{line.kind.value}{line.text}" for line in hunk.lines)
        delta += hunk.delta
    return rendered


def serialize_patch(patch: PatchFile) -> bytes:
    """Serialise ``patch`` into its canonical on-disk representation."""
    lines: List[str] = []
    if patch.access_transforms:
        lines.append(AT_BLOCK_START)
        lines.extend(format_access_transforms(patch.access_transforms).splitlines())
        lines.append(AT_BLOCK_END)
    source = DEV_NULL if patch.change is ChangeType.CREATED else f"a/{patch.path}"
    target = DEV_NULL if patch.change is ChangeType.DELETED else f"b/{patch.path}"
    lines.append(f"--- {source}")
    lines.append(f"+++ {target}")
    lines.extend(render_hunks(patch.hunks))
    return ("\n".join(lines) + "\n").encode("utf-8")


def _header_path(raw: str) -> str | None:
    operand = raw.split("\t", 1)[0].strip()
    if operand == DEV_NULL:
        return None
    if operand.startswith(("a/", "b/")):
        operand = operand[2:]
    return operand or None


def _is_unsafe(path: str) -> bool:
    """Paths must stay inside the tree the patch is applied to."""
    posix = PurePosixPath(path)
    return posix.is_absolute() or ".." in posix.parts or "\\" in path


def _decode(data: bytes | str, where: str) -> str:
    if isinstance(data, str):
        text = data
    else:
        try:
            text = data.decode("utf-8")
        except UnicodeDecodeError as error:
            raise MalformedPatch("patch is not valid UTF-8", path=where) from error
    return text.replace("\r\n", "\n")


def parse_patch(data: bytes | str, *, path_hint: str | None = None) -> PatchFile:
    """Parse a single-file patch; raises :class:`MalformedPatch` on any inconsistency."""
    where = path_hint or "<patch>"
    text = _decode(data, where)
    lines = text.split("\n")
    if lines and lines[-1] == "":
        lines.pop()

    index = 0
    access: Tuple[AccessTransformEntry, ...] = ()
    if lines and lines[0] == AT_BLOCK_START:
        try:
            end = lines.index(AT_BLOCK_END, 1)
        except ValueError:
            raise MalformedPatch("unterminated access transformer block", path=where, line=1) from None
        access = tuple(parse_access_transforms("\n".join(lines[1:end]), source=where))
        index = end + 1

    while index < len(lines) and lines[index].startswith(_GIT_PREAMBLE):
        index += 1

    if index + 1 >= len(lines) or not lines[index].startswith("--- ") or not lines[index + 1].startswith("+++ "):
        raise MalformedPatch("missing ---/+++ file header", path=where, line=index + 1)
    old_path = _header_path(lines[index][4:])
    new_path = _header_path(lines[index + 1][4:])
    if old_path is None and new_path is None:
        raise MalformedPatch("both sides of the header are /dev/null", path=where, line=index + 1)
    for offset, header_path in enumerate((old_path, new_path)):
        if header_path is not None and _is_unsafe(header_path):
            raise MalformedPatch(
                f"header path {header_path!r} escapes the patched tree",
                path=where,
                line=index + 1 + offset,
            )
    if old_path is None:
        change = ChangeType.CREATED
    elif new_path is None:
        change = ChangeType.DELETED
    else:
        change = ChangeType.MODIFIED
    path = new_path or old_path or where
    where = path_hint or path
    index += 2

    hunks: List[Hunk] = []
    while index < len(lines):
        header = lines[index]
        match = _HUNK_HEADER.match(header)
        if not match:
            raise MalformedPatch(f"expected hunk header, found {header!r}", path=where, line=index + 1)
        header_line = index + 1
        old_start = int(match.group("old_start"))
        old_count = int(match.group("old_count")) if match.group("old_count") is not None else 1
        new_count = int(match.group("new_count")) if match.group("new_count") is not None else 1
        index += 1

        body: List[HunkLine] = []
        remaining_old = old_count
        remaining_new = new_count
        while remaining_old > 0 or remaining_new > 0:
            if index >= len(lines):
                raise MalformedPatch(
                    f"hunk declares -{old_count}/+{new_count} lines but the body ends early",
                    path=where,
                    line=header_line,
                )
            raw = lines[index]
            index += 1
            if raw.startswith("\\"):
                continue
            prefix, content = raw[:1], raw[1:]
            if prefix == "+":
                kind = LineKind.ADDED
                remaining_new -= 1
            elif prefix == "-":
                kind = LineKind.REMOVED
                remaining_old -= 1
            elif prefix == " " or raw == "":
                kind = LineKind.CONTEXT
                remaining_old -= 1
                remaining_new -= 1
            else:
                raise MalformedPatch(f"unexpected hunk line {raw!r}", path=where, line=index)
            if remaining_old < 0 or remaining_new < 0:
                raise MalformedPatch(
                    f"hunk body exceeds declared counts -{old_count}/+{new_count}",
                    path=where,
                    line=header_line,
                )
            body.append(HunkLine(kind, content))
        while index < len(lines) and lines[index].startswith("\\"):
            index += 1
        if index < len(lines) and lines[index][:1] in {"+", "-", " "}:
            raise MalformedPatch(
                f"hunk body exceeds declared counts -{old_count}/+{new_count}",
                path=where,
                line=header_line,
            )

        source_start = old_start - 1 if old_count else old_start
        hunk = Hunk(source_start=max(source_start, 0), lines=tuple(body))
        if hunks:
            previous = hunks[-1]
            if hunk.source_start < previous.source_start + previous.source_length:
                raise MalformedPatch("hunks overlap or are out of order", path=where, line=header_line)
        hunks.append(hunk)

    if change is ChangeType.CREATED and any(hunk.source_length for hunk in hunks):
        raise MalformedPatch("created file patch removes lines", path=where)
    if change is ChangeType.DELETED and any(hunk.target_length for hunk in hunks):
        raise MalformedPatch("deleted file patch keeps lines", path=where)

    return PatchFile(path=path, change=change, hunks=tuple(hunks), access_transforms=access)


def diff_lines(
    path: str,
    old: Sequence[str] | None,
    new: Sequence[str] | None,
    *,
    context: int = DEFAULT_CONTEXT_LINES,
    access_transforms: Sequence[AccessTransformEntry] = (),
) -> PatchFile | None:
    """Compute the patch turning ``old`` into ``new``.

    ``None`` for ``old`` means the file is created and ``None`` for ``new``
    means it is deleted. Returns ``None`` when both sides are identical.
    """
    ats = tuple(access_transforms)
    if old is None and new is None:
        return None
    if old is None:
        assert new is not None
        hunks: Tuple[Hunk, ...] = ()
        if new:
            hunks = (Hunk(0, tuple(HunkLine(LineKind.ADDED, line) for line in new)),)
        return PatchFile(path, ChangeType.CREATED, hunks, ats)
    if new is None:
        hunks = ()
        if old:
            hunks = (Hunk(0, tuple(HunkLine(LineKind.REMOVED, line) for line in old)),)
        return PatchFile(path, ChangeType.DELETED, hunks, ats)
    if list(old) == list(new):
        return None

    matcher = difflib.SequenceMatcher(None, list(old), list(new), autojunk=False)
    grouped: List[Hunk] = []
    for group in matcher.get_grouped_opcodes(context):
        body: List[HunkLine] = []
        for tag, i1, i2, j1, j2 in group:
            if tag == "equal":
                body.extend(HunkLine(LineKind.CONTEXT, line) for line in old[i1:i2])
                continue
            if tag in {"replace", "delete"}:
                body.extend(HunkLine(LineKind.REMOVED, line) for line in old[i1:i2])
            if tag in {"replace", "insert"}:
                body.extend(HunkLine(LineKind.ADDED, line) for line in new[j1:j2])
        grouped.append(Hunk(source_start=group[0][1], lines=tuple(body)))
    return PatchFile(path, ChangeType.MODIFIED, tuple(grouped), ats)
