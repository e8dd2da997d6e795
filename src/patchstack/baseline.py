"""Materialise the vanilla baseline tree that every patch layer is applied onto.

The baseline is produced from a decompiled source tree (a directory or a zip
archive), filtered by a path predicate and normalised so that apply and
rebuild always compare like with like.
"""

from __future__ import annotations

import fnmatch
import logging
import zipfile
from dataclasses import dataclass, field
from pathlib import Path, PurePosixPath
from typing import Callable, Iterable, Iterator, List, Sequence, Tuple

from .errors import IOFailure, PatchError
from .patches.access import AccessTransformEntry
from .patches.applier import plan_patch_file, write_planned_file
from .patches.layers import read_file_layer, write_access_transforms
from .telemetry import emit_event
from .tools.tree import IGNORED_DIRECTORIES, atomic_write_bytes, list_files, normalise_text, read_bytes, reset_tree

__all__ = ["BaselineReport", "PathPredicate", "baseline_metadata_path", "glob_predicate", "materialize_baseline"]

LOGGER = logging.getLogger(__name__)

PathPredicate = Callable[[str], bool]


@dataclass(slots=True)
class BaselineReport:
    output_dir: Path
    files: List[str] = field(default_factory=list)
    binary: List[str] = field(default_factory=list)
    metadata_path: Path | None = None
    upstream_applied: List[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return True

    def summary(self) -> str:
        text = f"Materialised {len(self.files)} file(s) into {self.output_dir} ({len(self.binary)} binary)"
        if self.upstream_applied:
            text += f"; applied {len(self.upstream_applied)} upstream patch(es)"
        return text + "."


def baseline_metadata_path(output_dir: Path) -> Path:
    """Where the AT list a baseline was built with is recorded."""
    return output_dir.with_name(f"{output_dir.name}.at")


def _matches(path: str, pattern: str) -> bool:
    if fnmatch.fnmatchcase(path, pattern):
        return True
    # ``**/`` also matches files at the top level.
    return pattern.startswith("**/") and fnmatch.fnmatchcase(path, pattern[3:])


def glob_predicate(include: Sequence[str] = ("**",), exclude: Sequence[str] = ()) -> PathPredicate:
    """Build a predicate accepting paths matching any ``include`` and no ``exclude`` glob."""
    includes = tuple(include) or ("**",)
    excludes = tuple(exclude)

    def predicate(path: str) -> bool:
        if not any(_matches(path, pattern) for pattern in includes):
            return False
        return not any(_matches(path, pattern) for pattern in excludes)

    return predicate


def _safe_member(name: str) -> str | None:
    posix = PurePosixPath(name)
    if posix.is_absolute() or ".." in posix.parts:
        raise PatchError(f"Refusing unsafe archive member {name!r}", details={"member": name})
    if any(part in IGNORED_DIRECTORIES for part in posix.parts):
        return None
    return posix.as_posix()


def _iter_archive(source: Path) -> Iterator[Tuple[str, bytes]]:
    try:
        with zipfile.ZipFile(source) as archive:
            for info in sorted(archive.infolist(), key=lambda item: item.filename):
                if info.is_dir():
                    continue
                name = _safe_member(info.filename)
                if name is not None:
                    yield name, archive.read(info)
    except zipfile.BadZipFile as error:
        raise PatchError(f"{source} is not a readable zip archive: {error}") from error
    except OSError as error:
        raise IOFailure(source, error) from error


def _iter_directory(source: Path) -> Iterator[Tuple[str, bytes]]:
    for relative in list_files(source):
        yield relative, read_bytes(source / relative)


def _iter_source(source: Path) -> Iterator[Tuple[str, bytes]]:
    if source.is_dir():
        return _iter_directory(source)
    if source.is_file() and zipfile.is_zipfile(source):
        return _iter_archive(source)
    raise PatchError(f"Baseline source must be a directory or zip archive: {source}", details={"source": str(source)})


def _normalise(data: bytes) -> Tuple[bytes, bool]:
    """Return ``(bytes, is_text)``; undecodable content is kept verbatim."""
    try:
        text = data.decode("utf-8")
    except UnicodeDecodeError:
        return data, False
    return normalise_text(text).encode("utf-8"), True


def _apply_upstream(output_dir: Path, upstream: Path) -> List[str]:
    applied: List[str] = []
    for entry in read_file_layer(upstream):
        if entry.patch is None:
            raise PatchError(
                f"Upstream patch {entry.name} is malformed: {entry.error}",
                details={"patch": entry.name},
            )
        planned = plan_patch_file(output_dir, entry.patch)
        if not planned.clean:
            rejected = planned.match.rejected[0]
            raise PatchError(
                f"Upstream patch {entry.name} does not apply to the baseline "
                f"(hunk #{rejected.index + 1}: {rejected.reason})",
                details={"patch": entry.name, "hunk": rejected.index + 1},
            )
        write_planned_file(output_dir, planned)
        applied.append(entry.name)
    return applied


def materialize_baseline(
    source: Path,
    output_dir: Path,
    predicate: PathPredicate | None = None,
    *,
    access_transforms: Iterable[AccessTransformEntry] = (),
    upstream_patches: Path | None = None,
    metadata_path: Path | None = None,
) -> BaselineReport:
    """Rebuild ``output_dir`` from ``source`` so that it holds exactly the selected files.

    The merged access-transformer list is recorded next to the tree (default
    ``<output_dir>.at``) rather than inside it, so it never shows up as a
    patchable file. Feature replay checks its declarations against that record.
    """
    accept = predicate or glob_predicate()
    entries = _iter_source(source)
    report = BaselineReport(output_dir=output_dir)
    reset_tree(output_dir, keep=())

    for relative, data in entries:
        if not accept(relative):
            continue
        payload, is_text = _normalise(data)
        atomic_write_bytes(output_dir / relative, payload)
        report.files.append(relative)
        if not is_text:
            report.binary.append(relative)
    report.files.sort()
    report.binary.sort()

    if upstream_patches is not None:
        report.upstream_applied = _apply_upstream(output_dir, upstream_patches)

    report.metadata_path = metadata_path or baseline_metadata_path(output_dir)
    write_access_transforms(report.metadata_path, list(access_transforms))

    LOGGER.info("Baseline %s: %d file(s)", output_dir, len(report.files))
    emit_event(
        "baseline_materialized",
        output_dir=output_dir,
        files=len(report.files),
        binary=len(report.binary),
        upstream=report.upstream_applied,
    )
    return report
