"""Per-file patch application shared by the file and commit engines.

Application is split into a pure planning step, which computes the new file
contents in memory, and a write step. Callers can therefore validate a whole
unit of work before touching the working tree.
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import List

from ..tools.tree import atomic_write_text, join_lines, read_lines, remove_file
from .codec import ChangeType, Hunk, PatchFile
from .matching import FileMatchResult, FuzzySettings, MatchMode, RejectedHunk, apply_hunks

__all__ = ["PlannedFile", "plan_patch_file", "plan_patch_lines", "write_planned_file"]

_EMPTY_HUNK = Hunk(source_start=0, lines=())


@dataclass(frozen=True, slots=True)
class PlannedFile:
    """Outcome of applying one :class:`PatchFile` in memory.

    ``lines`` is ``None`` when the file is to be deleted.
    """

    patch: PatchFile
    lines: List[str] | None
    match: FileMatchResult

    @property
    def clean(self) -> bool:
        return self.match.clean

    @property
    def changes_tree(self) -> bool:
        return self.match.clean or bool(self.match.applied)


def _reject_all(patch: PatchFile, current: List[str], reason: str) -> FileMatchResult:
    return FileMatchResult(
        lines=list(current),
        rejected=[RejectedHunk(index, hunk, hunk.source_start, reason) for index, hunk in enumerate(patch.hunks)],
    )


def plan_patch_lines(
    patch: PatchFile,
    current: List[str] | None,
    *,
    mode: MatchMode = MatchMode.STRICT,
    fuzzy: FuzzySettings | None = None,
) -> PlannedFile:
    """Apply ``patch`` to ``current`` (``None`` = file absent) in memory."""
    if patch.change is ChangeType.CREATED:
        if current is not None:
            return PlannedFile(patch, current, _failed(patch, current, "file already exists"))
        current = []
    elif current is None:
        return PlannedFile(patch, None, _failed(patch, [], "file does not exist"))

    match = apply_hunks(current, patch.hunks, mode=mode, fuzzy=fuzzy)
    if patch.change is ChangeType.DELETED:
        if match.clean and match.lines:
            return PlannedFile(patch, current, _failed(patch, current, "file has content beyond the deletion"))
        if match.clean:
            return PlannedFile(patch, None, match)
    return PlannedFile(patch, match.lines, match)


def _failed(patch: PatchFile, current: List[str], reason: str) -> FileMatchResult:
    result = _reject_all(patch, current, reason)
    if not result.rejected:
        # A hunk-less patch can still fail on the existence check.
        result.rejected.append(RejectedHunk(-1, _EMPTY_HUNK, 0, reason))
    return result


def plan_patch_file(
    root: Path,
    patch: PatchFile,
    *,
    mode: MatchMode = MatchMode.STRICT,
    fuzzy: FuzzySettings | None = None,
) -> PlannedFile:
    """Plan ``patch`` against the file it targets below ``root``."""
    target = root / patch.path
    current: List[str] | None = None
    if target.is_file():
        current = read_lines(target)
        if current is None:
            return PlannedFile(patch, None, _failed(patch, [], "target is a binary file"))
    elif target.exists():
        return PlannedFile(patch, None, _failed(patch, [], "target is not a regular file"))
    return plan_patch_lines(patch, current, mode=mode, fuzzy=fuzzy)


def write_planned_file(root: Path, planned: PlannedFile, *, prune: bool = True) -> bool:
    """Persist a planned file atomically; returns ``True`` when the tree changed.

    A deletion prunes the directories it empties unless ``prune`` is false.
    Callers writing from several threads prune once all writes are done.
    """
    if not planned.changes_tree:
        return False
    target = root / planned.patch.path
    if planned.lines is None:
        remove_file(target, stop_at=root if prune else None)
    else:
        atomic_write_text(target, join_lines(planned.lines))
    return True
