"""Filesystem helpers for source trees: normalisation, listing and atomic writes."""

from __future__ import annotations

import os
import shutil
import tempfile
from pathlib import Path
from typing import Iterable, List

from ..errors import IOFailure

__all__ = [
    "IGNORED_DIRECTORIES",
    "atomic_write_bytes",
    "atomic_write_text",
    "copy_tree",
    "join_lines",
    "list_files",
    "normalise_text",
    "prune_empty_parents",
    "read_bytes",
    "read_lines",
    "remove_file",
    "reset_tree",
    "split_lines",
]

IGNORED_DIRECTORIES = frozenset({".git"})


def normalise_text(text: str) -> str:
    """Convert CRLF/CR sequences to LF and guarantee a trailing newline."""
    normalised = text.replace("\r\n", "\n").replace("\r", "\n")
    if normalised and not normalised.endswith("\n"):
        normalised += "\n"
    return normalised


def split_lines(text: str) -> List[str]:
    """Split ``text`` into lines without their terminators.

    Only ``\\n`` separates lines; ``str.splitlines`` would also break on form
    feeds and unicode separators that legitimately occur inside sources.
    """
    normalised = normalise_text(text)
    if not normalised:
        return []
    return normalised[:-1].split("\n")


def join_lines(lines: Iterable[str]) -> str:
    """Join lines back into text, ensuring a trailing newline."""
    items = list(lines)
    if not items:
        return ""
    return "\n".join(items) + "\n"


def read_bytes(path: Path) -> bytes:
    try:
        return path.read_bytes()
    except OSError as error:
        raise IOFailure(path, error) from error


def read_lines(path: Path) -> List[str] | None:
    """Return the normalised lines of ``path`` or ``None`` for binary content."""
    data = read_bytes(path)
    try:
        text = data.decode("utf-8")
    except UnicodeDecodeError:
        return None
    return split_lines(text)


def list_files(root: Path) -> List[str]:
    """Return POSIX paths of every regular file below ``root``, sorted."""
    if not root.exists():
        return []
    found: List[str] = []
    try:
        for current, directories, files in os.walk(root):
            directories[:] = sorted(name for name in directories if name not in IGNORED_DIRECTORIES)
            base = Path(current)
            for name in files:
                # Linked worktrees keep a ``.git`` pointer file instead of a directory.
                if name in IGNORED_DIRECTORIES:
                    continue
                candidate = base / name
                if candidate.is_file():
                    found.append(candidate.relative_to(root).as_posix())
    except OSError as error:
        raise IOFailure(root, error) from error
    return sorted(found)


def atomic_write_bytes(path: Path, data: bytes) -> None:
    """Write ``data`` to ``path`` through a temporary file and rename."""
    temp_name: str | None = None
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        with tempfile.NamedTemporaryFile(
            "wb",
            dir=path.parent,
            prefix=f".{path.name}.",
            suffix=".tmp",
            delete=False,
        ) as handle:
            temp_name = handle.name
            handle.write(data)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(temp_name, path)
        temp_name = None
    except OSError as error:
        raise IOFailure(path, error) from error
    finally:
        if temp_name is not None:
            Path(temp_name).unlink(missing_ok=True)


def atomic_write_text(path: Path, text: str) -> None:
    atomic_write_bytes(path, text.encode("utf-8"))


def prune_empty_parents(path: Path, stop_at: Path) -> None:
    """Remove the empty directories above ``path``, stopping at ``stop_at``."""
    parent = path.parent
    boundary = stop_at.resolve()
    try:
        while parent.resolve() != boundary and parent.is_dir() and not any(parent.iterdir()):
            parent.rmdir()
            parent = parent.parent
    except OSError as error:
        raise IOFailure(parent, error) from error


def remove_file(path: Path, *, stop_at: Path | None = None) -> None:
    """Delete ``path`` and prune directories it leaves empty, up to ``stop_at``.

    Without ``stop_at`` no directory is touched, which is what concurrent
    writers into the same tree need.
    """
    try:
        path.unlink(missing_ok=True)
    except OSError as error:
        raise IOFailure(path, error) from error
    if stop_at is not None:
        prune_empty_parents(path, stop_at)


def reset_tree(root: Path, *, keep: Iterable[str] = IGNORED_DIRECTORIES) -> None:
    """Remove every entry of ``root`` except the names in ``keep``."""
    preserved = set(keep)
    try:
        root.mkdir(parents=True, exist_ok=True)
        for entry in sorted(root.iterdir()):
            if entry.name in preserved:
                continue
            if entry.is_dir() and not entry.is_symlink():
                shutil.rmtree(entry)
            else:
                entry.unlink()
    except OSError as error:
        raise IOFailure(root, error) from error


def copy_tree(source: Path, target: Path) -> List[str]:
    """Copy every file of ``source`` into ``target`` and return the copied paths."""
    copied = list_files(source)
    for relative in copied:
        destination = target / relative
        try:
            destination.parent.mkdir(parents=True, exist_ok=True)
            shutil.copyfile(source / relative, destination)
        except OSError as error:
            raise IOFailure(destination, error) from error
    return copied
