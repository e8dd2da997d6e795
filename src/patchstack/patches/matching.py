"""Hunk placement: exact matching at adjusted offsets and fuzzy window search."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import List, Sequence

from .codec import Hunk, LineKind, render_hunks

__all__ = [
    "FileMatchResult",
    "FuzzySettings",
    "HunkPlacement",
    "MatchMode",
    "RejectedHunk",
    "apply_hunks",
    "locate_fuzzy",
    "matches_exactly",
    "score_candidate",
    "splice_hunk",
]


class MatchMode(str, Enum):
    STRICT = "strict"
    FUZZY = "fuzzy"


@dataclass(frozen=True, slots=True)
class FuzzySettings:
    """Tuning knobs for the fuzzy matcher.

    ``radius`` bounds the search window on each side of the expected offset,
    ``max_mismatches`` is the number of context lines allowed to differ beyond
    whitespace, and ``min_similarity`` is the lowest accepted score in [0, 1].
    """

    radius: int = 32
    max_mismatches: int = 1
    min_similarity: float = 0.5


@dataclass(frozen=True, slots=True)
class HunkPlacement:
    index: int
    position: int
    expected: int
    score: float = 1.0

    @property
    def drift(self) -> int:
        return self.position - self.expected


@dataclass(frozen=True, slots=True)
class RejectedHunk:
    """Hunk that could not be placed; keeps its original text for manual work."""

    index: int
    hunk: Hunk
    expected_line: int
    reason: str

    @property
    def text(self) -> str:
        return "\n".join(render_hunks([self.hunk])) + "\n"


@dataclass(slots=True)
class FileMatchResult:
    lines: List[str]
    applied: List[HunkPlacement] = field(default_factory=list)
    rejected: List[RejectedHunk] = field(default_factory=list)

    @property
    def clean(self) -> bool:
        return not self.rejected


def _squash(line: str) -> str:
    return "".join(line.split())


def matches_exactly(lines: Sequence[str], hunk: Hunk, position: int) -> bool:
    """Return ``True`` when the hunk's context/removed lines sit at ``position``."""
    source = hunk.source_lines
    if position < 0 or position + len(source) > len(lines):
        return False
    return list(lines[position : position + len(source)]) == source


def score_candidate(lines: Sequence[str], hunk: Hunk, position: int, settings: FuzzySettings) -> float | None:
    """Similarity of the hunk's source side against ``lines`` at ``position``.

    Lines equal after dropping all whitespace count as matches. Removed lines
    must always match; at most ``settings.max_mismatches`` context lines may
    differ. Returns ``None`` for an impossible candidate.
    """
    source = [line for line in hunk.lines if line.kind is not LineKind.ADDED]
    if position < 0 or position + len(source) > len(lines):
        return None
    if not source:
        return 1.0
    matched = 0
    mismatched = 0
    for offset, expected in enumerate(source):
        actual = lines[position + offset]
        if actual == expected.text or _squash(actual) == _squash(expected.text):
            matched += 1
            continue
        if expected.kind is LineKind.REMOVED:
            return None
        mismatched += 1
        if mismatched > settings.max_mismatches:
            return None
    return matched / len(source)


def locate_fuzzy(
    lines: Sequence[str],
    hunk: Hunk,
    expected: int,
    settings: FuzzySettings,
    *,
    floor: int = 0,
) -> tuple[int, float] | None:
    """Best position within ``expected ± radius``: highest score, nearest, earliest."""
    low = max(floor, expected - settings.radius, 0)
    high = min(len(lines) - hunk.source_length, expected + settings.radius)
    best: tuple[float, int, int] | None = None
    for position in range(low, high + 1):
        score = score_candidate(lines, hunk, position, settings)
        if score is None or score < settings.min_similarity:
            continue
        key = (-score, abs(position - expected), position)
        if best is None or key < best:
            best = key
    if best is None:
        return None
    return best[2], -best[0]


def splice_hunk(lines: Sequence[str], hunk: Hunk, position: int) -> List[str]:
    """Apply ``hunk`` at ``position``; context lines keep the target's own text."""
    result = list(lines[:position])
    cursor = position
    for line in hunk.lines:
        if line.kind is LineKind.CONTEXT:
            result.append(lines[cursor])
            cursor += 1
        elif line.kind is LineKind.REMOVED:
            cursor += 1
        else:
            result.append(line.text)
    result.extend(lines[cursor:])
    return result


def apply_hunks(
    lines: Sequence[str],
    hunks: Sequence[Hunk],
    *,
    mode: MatchMode = MatchMode.STRICT,
    fuzzy: FuzzySettings | None = None,
) -> FileMatchResult:
    """Place ``hunks`` in order, shifting each by the drift of those before it.

    Strict mode is all-or-nothing: if any hunk misses, the returned lines are
    the untouched input. Fuzzy mode keeps the hunks it could place.
    """
    settings = fuzzy or FuzzySettings()
    current = list(lines)
    result = FileMatchResult(lines=current)
    offset = 0
    floor = 0
    for index, hunk in enumerate(hunks):
        expected = hunk.source_start + offset
        position: int | None = None
        score = 1.0
        if expected >= floor and matches_exactly(current, hunk, expected):
            position = expected
        elif mode is MatchMode.FUZZY:
            found = locate_fuzzy(current, hunk, expected, settings, floor=floor)
            if found is not None:
                position, score = found
        if position is None:
            reason = "context mismatch" if mode is MatchMode.STRICT else "no candidate above similarity threshold"
            result.rejected.append(RejectedHunk(index, hunk, expected, reason))
            continue
        current = splice_hunk(current, hunk, position)
        result.applied.append(HunkPlacement(index, position, expected, score))
        offset = position - hunk.source_start + hunk.delta
        floor = position + hunk.target_length

    if mode is MatchMode.STRICT and result.rejected:
        result.lines = list(lines)
        result.applied = []
    else:
        result.lines = current
    return result
