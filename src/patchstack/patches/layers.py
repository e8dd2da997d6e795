"""On-disk patch layers: reading, deterministic writing and AT collection."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable, List, Mapping, Sequence, Tuple

from ..errors import MalformedPatch
from ..tools.tree import atomic_write_bytes, list_files, read_bytes, remove_file
from ..utils.slug import sequence_number
from .access import AccessTransformEntry, format_access_transforms, parse_access_transforms
from .codec import PatchFile, parse_patch
from .commits import Commit, parse_commit_patch

__all__ = [
    "PATCH_SUFFIX",
    "REJECT_SUFFIX",
    "CommitEntry",
    "LayerEntry",
    "LayerWriteResult",
    "collect_access_transforms",
    "existing_access_transforms",
    "patch_name_for",
    "read_access_transforms",
    "read_commit_layer",
    "read_file_layer",
    "write_access_transforms",
    "write_layer",
]

LOGGER = logging.getLogger(__name__)

PATCH_SUFFIX = ".patch"
REJECT_SUFFIX = ".rej"


@dataclass(frozen=True, slots=True)
class LayerEntry:
    """One patch file of a file layer; ``error`` is set when it failed to parse."""

    name: str
    patch: PatchFile | None = None
    error: MalformedPatch | None = None


@dataclass(frozen=True, slots=True)
class CommitEntry:
    name: str
    commit: Commit


@dataclass(slots=True)
class LayerWriteResult:
    written: List[str] = field(default_factory=list)
    removed: List[str] = field(default_factory=list)
    unchanged: List[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, list[str]]:
        return {"written": list(self.written), "removed": list(self.removed), "unchanged": list(self.unchanged)}


def patch_name_for(path: str) -> str:
    return f"{path}{PATCH_SUFFIX}"


def _patch_files(patch_dir: Path) -> List[str]:
    return [name for name in list_files(patch_dir) if name.endswith(PATCH_SUFFIX)]


def read_file_layer(patch_dir: Path) -> List[LayerEntry]:
    """Parse every ``*.patch`` below ``patch_dir`` in path order."""
    entries: List[LayerEntry] = []
    for name in _patch_files(patch_dir):
        data = read_bytes(patch_dir / name)
        try:
            entries.append(LayerEntry(name=name, patch=parse_patch(data, path_hint=name)))
        except MalformedPatch as error:
            LOGGER.warning("Skipping malformed patch %s: %s", name, error)
            entries.append(LayerEntry(name=name, error=error))
    return entries


def _commit_sort_key(name: str) -> Tuple[int, str]:
    number = sequence_number(Path(name).name)
    return (number if number is not None else 1 << 30, name)


def read_commit_layer(patch_dir: Path) -> List[CommitEntry]:
    """Parse the commit patches of ``patch_dir`` in sequence order.

    A malformed commit propagates :class:`MalformedPatch`: later commits depend
    on it, so the sequence cannot be used partially.
    """
    names = sorted((name for name in _patch_files(patch_dir) if "/" not in name), key=_commit_sort_key)
    return [
        CommitEntry(name=name, commit=parse_commit_patch(read_bytes(patch_dir / name), source=name))
        for name in names
    ]


def existing_access_transforms(patch_dir: Path) -> dict[str, Tuple[AccessTransformEntry, ...]]:
    """Map target paths to the AT block of their current patch file."""
    carried: dict[str, Tuple[AccessTransformEntry, ...]] = {}
    for entry in read_file_layer(patch_dir):
        if entry.patch is not None and entry.patch.access_transforms:
            carried[entry.patch.path] = entry.patch.access_transforms
    return carried


def write_layer(
    patch_dir: Path,
    payloads: Mapping[str, bytes],
    *,
    prune: bool = True,
    scope: Iterable[str] | None = None,
) -> LayerWriteResult:
    """Write ``payloads`` (patch name -> bytes), skipping byte-identical files.

    With ``prune`` every other ``*.patch`` file is removed; ``scope`` limits
    pruning to the given patch names.
    """
    result = LayerWriteResult()
    for name in sorted(payloads):
        target = patch_dir / name
        data = payloads[name]
        if target.is_file() and read_bytes(target) == data:
            result.unchanged.append(name)
            continue
        atomic_write_bytes(target, data)
        result.written.append(name)
    if prune:
        candidates = _patch_files(patch_dir) if scope is None else sorted(scope)
        for name in candidates:
            if name in payloads or not (patch_dir / name).is_file():
                continue
            remove_file(patch_dir / name, stop_at=patch_dir)
            result.removed.append(name)
    return result


def collect_access_transforms(
    file_patch_dirs: Sequence[Path],
    commit_patch_dir: Path | None = None,
) -> List[AccessTransformEntry]:
    """Collect AT declarations in declaration order across all layers.

    File layers come first (each in path order), then the commit layer in
    sequence order.
    """
    collected: List[AccessTransformEntry] = []
    for patch_dir in file_patch_dirs:
        for entry in read_file_layer(patch_dir):
            if entry.patch is not None:
                collected.extend(entry.patch.access_transforms)
    if commit_patch_dir is not None:
        for commit_entry in read_commit_layer(commit_patch_dir):
            collected.extend(commit_entry.commit.access_transforms)
    return collected


def write_access_transforms(path: Path, entries: Sequence[AccessTransformEntry]) -> bool:
    """Atomically write the consolidated AT file; returns ``False`` when unchanged."""
    data = format_access_transforms(entries).encode("utf-8")
    if path.is_file() and read_bytes(path) == data:
        return False
    atomic_write_bytes(path, data)
    return True


def read_access_transforms(path: Path) -> List[AccessTransformEntry]:
    """Parse an AT file written by :func:`write_access_transforms` or by hand."""
    try:
        text = read_bytes(path).decode("utf-8")
    except UnicodeDecodeError as error:
        raise MalformedPatch("access transformer file is not valid UTF-8", path=path.as_posix()) from error
    return parse_access_transforms(text, source=path.as_posix())
