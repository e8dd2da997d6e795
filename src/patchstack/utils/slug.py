"""Utilities for naming commit patch files the way ``git format-patch`` does."""

from __future__ import annotations

import re
from typing import Pattern

_UNSAFE_PATTERN: Pattern[str] = re.compile(r"[^A-Za-z0-9_.]+")
_DOT_COLLAPSE: Pattern[str] = re.compile(r"\.{2,}")
_SEQUENCE_PATTERN: Pattern[str] = re.compile(r"^(?P<number>\d{4,})-")

DEFAULT_MAX_LENGTH = 64


def slugify(value: str | None, *, fallback: str = "patch", max_length: int = DEFAULT_MAX_LENGTH) -> str:
    """Normalise a commit subject into a filesystem-friendly slug."""
    source = (value or "").strip() or fallback
    slug = _DOT_COLLAPSE.sub(".", _UNSAFE_PATTERN.sub("-", source)).strip("-.")
    if not slug:
        slug = fallback
    if len(slug) > max_length:
        slug = slug[:max_length].rstrip("-.") or fallback
    return slug


def commit_patch_name(sequence: int, subject: str | None) -> str:
    """Return ``NNNN-<subject-slug>.patch`` for the ``sequence``-th commit (1-based)."""
    if sequence < 1:
        raise ValueError("sequence numbers start at 1")
    return f"{sequence:04d}-{slugify(subject)}.patch"


def sequence_number(filename: str) -> int | None:
    """Extract the leading sequence number of a commit patch file name."""
    match = _SEQUENCE_PATTERN.match(filename)
    if not match:
        return None
    return int(match.group("number"))
