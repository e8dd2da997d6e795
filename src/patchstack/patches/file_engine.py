"""File patch layer: apply (strict or fuzzy), rebuild and fixup.

Each patch file is independent of every other one, so application and
rebuild diffing fan out over a thread pool and the per-file outcomes are
merged into a single report once all workers finish. Failures stay isolated
to their file: a rejected patch leaves its target at the baseline content,
writes a reject artifact and the run carries on.
"""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field, replace
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Mapping, Sequence, Tuple

from ..errors import HunkMismatch, PatchError, SequenceBroken
from ..telemetry import emit_event
from ..tools.tree import (
    atomic_write_bytes,
    atomic_write_text,
    copy_tree,
    join_lines,
    list_files,
    prune_empty_parents,
    read_bytes,
    read_lines,
    remove_file,
    reset_tree,
    split_lines,
)
from ..tools.vcs import GitRepository
from .access import AccessTransformEntry
from .applier import PlannedFile, plan_patch_file, plan_patch_lines, write_planned_file
from .codec import ChangeType, PatchFile, diff_lines, serialize_patch
from .commit_engine import read_history, rebase_feature_commits
from .layers import (
    REJECT_SUFFIX,
    LayerEntry,
    LayerWriteResult,
    existing_access_transforms,
    patch_name_for,
    read_file_layer,
    write_layer,
)
from .matching import MatchMode, RejectedHunk
from .settings import EngineSettings

__all__ = [
    "ApplyReport",
    "FileApplyResult",
    "FileStatus",
    "FixupReport",
    "RebuildReport",
    "apply_file_patches",
    "diff_trees",
    "fixup_file_patches",
    "rebuild_file_patches",
]

LOGGER = logging.getLogger(__name__)


class FileStatus(str, Enum):
    """Per patch file state; every file ends a run in a terminal state."""

    PENDING = "pending"
    APPLIED = "applied"
    REJECTED = "rejected"
    MALFORMED = "malformed"


@dataclass(slots=True)
class FileApplyResult:
    name: str
    path: str | None
    status: FileStatus = FileStatus.PENDING
    rejected: Tuple[RejectedHunk, ...] = ()
    fuzzed: int = 0
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "path": self.path,
            "status": self.status.value,
            "rejected_hunks": [
                {"hunk": hunk.index + 1, "line": hunk.expected_line + 1, "reason": hunk.reason}
                for hunk in self.rejected
            ],
            "fuzzed": self.fuzzed,
            "error": self.error,
        }


@dataclass(slots=True)
class ApplyReport:
    """Aggregated outcome of one file-patch run."""

    mode: MatchMode
    results: List[FileApplyResult] = field(default_factory=list)

    def _with_status(self, status: FileStatus) -> List[FileApplyResult]:
        return [result for result in self.results if result.status is status]

    @property
    def applied(self) -> List[FileApplyResult]:
        return self._with_status(FileStatus.APPLIED)

    @property
    def rejected(self) -> List[FileApplyResult]:
        return self._with_status(FileStatus.REJECTED)

    @property
    def malformed(self) -> List[FileApplyResult]:
        return self._with_status(FileStatus.MALFORMED)

    @property
    def ok(self) -> bool:
        return all(result.status is FileStatus.APPLIED for result in self.results)

    def summary(self) -> str:
        lines = [
            f"{self.mode.value} apply: {len(self.applied)} applied, "
            f"{len(self.rejected)} rejected, {len(self.malformed)} malformed"
        ]
        for result in self.rejected:
            hunks = ", ".join(f"#{hunk.index + 1} ({hunk.reason})" for hunk in result.rejected)
            lines.append(f"  rejected {result.path}: {hunks}")
        for result in self.malformed:
            lines.append(f"  malformed {result.name}: {result.error}")
        return "\n".join(lines)

    def to_dict(self) -> dict[str, Any]:
        return {
            "mode": self.mode.value,
            "ok": self.ok,
            "results": [result.to_dict() for result in self.results],
        }


@dataclass(slots=True)
class RebuildReport:
    layer: LayerWriteResult = field(default_factory=LayerWriteResult)
    patched_paths: List[str] = field(default_factory=list)
    skipped_binary: List[str] = field(default_factory=list)
    source_ref: str | None = None

    @property
    def ok(self) -> bool:
        return True

    def summary(self) -> str:
        return (
            f"Rebuilt {len(self.patched_paths)} file patch(es): {len(self.layer.written)} written, "
            f"{len(self.layer.removed)} removed, {len(self.layer.unchanged)} unchanged."
        )


@dataclass(slots=True)
class FixupReport:
    touched: List[str] = field(default_factory=list)
    layer: LayerWriteResult = field(default_factory=LayerWriteResult)
    rebased: List[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return True

    def summary(self) -> str:
        if not self.touched:
            return "Nothing to fix up."
        return (
            f"Folded {len(self.touched)} changed file(s) into the file patches "
            f"({len(self.layer.written)} written, {len(self.layer.removed)} removed); "
            f"re-based {len(self.rebased)} feature commit(s)."
        )


# ---------------------------------------------------------------------- apply
def _write_rejects(rejects_dir: Path, patch: PatchFile, planned: PlannedFile, mode: MatchMode) -> None:
    if mode is MatchMode.STRICT:
        # Nothing of a strictly rejected file was applied.
        hunks = patch.hunks
    else:
        failed = {hunk.index for hunk in planned.match.rejected}
        hunks = tuple(hunk for index, hunk in enumerate(patch.hunks) if index in failed)
    artifact = replace(patch, hunks=hunks, access_transforms=())
    atomic_write_bytes(rejects_dir / f"{patch.path}{REJECT_SUFFIX}", serialize_patch(artifact))


def _apply_entry(
    entry: LayerEntry,
    target: Path,
    rejects_dir: Path | None,
    mode: MatchMode,
    settings: EngineSettings,
) -> FileApplyResult:
    if entry.patch is None:
        return FileApplyResult(
            name=entry.name,
            path=None,
            status=FileStatus.MALFORMED,
            error=str(entry.error) if entry.error else "unparseable patch",
        )
    patch = entry.patch
    result = FileApplyResult(name=entry.name, path=patch.path)
    planned = plan_patch_file(target, patch, mode=mode, fuzzy=settings.fuzzy)
    # Sibling workers may be creating files in the same directory.
    write_planned_file(target, planned, prune=False)
    result.fuzzed = sum(1 for placement in planned.match.applied if placement.drift or placement.score < 1.0)
    if planned.clean:
        result.status = FileStatus.APPLIED
        return result
    result.status = FileStatus.REJECTED
    result.rejected = tuple(planned.match.rejected)
    if rejects_dir is not None:
        _write_rejects(rejects_dir, patch, planned, mode)
    return result


def _record_history(target: Path, settings: EngineSettings, message: str, tag: str, *, fresh: bool) -> None:
    git = settings.git
    if fresh:
        repo = GitRepository.initialise(target, git.identity)
    else:
        repo = GitRepository(target)
    repo.commit_all(message, author=git.identity, allow_empty=True)
    repo.tag(tag)


def apply_file_patches(
    baseline: Path,
    patch_dir: Path,
    target: Path,
    *,
    rejects_dir: Path | None = None,
    settings: EngineSettings | None = None,
    mode: MatchMode = MatchMode.STRICT,
) -> ApplyReport:
    """Rebuild ``target`` from ``baseline`` and apply every patch in ``patch_dir``.

    Fuzzy mode is only used when requested; a strict run never falls back to it.
    """
    engine = settings or EngineSettings()
    if not baseline.is_dir():
        raise PatchError(f"Baseline tree does not exist: {baseline}", details={"baseline": baseline.as_posix()})

    reset_tree(target, keep=())
    copy_tree(baseline, target)
    if engine.git.enabled:
        _record_history(target, engine, engine.git.vanilla_message, engine.git.base_tag, fresh=True)
    if rejects_dir is not None:
        reset_tree(rejects_dir, keep=())

    entries = read_file_layer(patch_dir)
    report = ApplyReport(mode=mode)
    with ThreadPoolExecutor(max_workers=max(engine.workers, 1)) as executor:
        futures = [
            executor.submit(_apply_entry, entry, target, rejects_dir, mode, engine)
            for entry in entries
        ]
        report.results = [future.result() for future in futures]
    report.results.sort(key=lambda result: result.name)
    for result in report.applied:
        if result.path is not None and not (target / result.path).exists():
            prune_empty_parents(target / result.path, target)

    if engine.git.enabled:
        _record_history(target, engine, engine.git.file_message, engine.git.file_tag, fresh=False)

    for result in report.rejected:
        LOGGER.warning("Rejected %s (%d hunk(s))", result.path, len(result.rejected))
    emit_event(
        "file_patches_applied",
        mode=mode,
        applied=len(report.applied),
        rejected=[result.path for result in report.rejected],
        malformed=[result.name for result in report.malformed],
    )
    return report


# -------------------------------------------------------------------- rebuild
def _read_side(root: Path, relative: str) -> Tuple[bool, List[str] | None]:
    """Return ``(exists, lines)``; ``lines`` is ``None`` for binary content."""
    path = root / relative
    if not path.is_file():
        return False, None
    return True, read_lines(path)


def _diff_path(
    baseline: Path,
    source: Path,
    relative: str,
    context: int,
    carried: Sequence[AccessTransformEntry],
) -> Tuple[PatchFile | None, bool]:
    in_base, old = _read_side(baseline, relative)
    in_source, new = _read_side(source, relative)
    if (in_base and old is None) or (in_source and new is None):
        if in_base and in_source and read_bytes(baseline / relative) == read_bytes(source / relative):
            return None, False
        return None, True
    patch = diff_lines(
        relative,
        old if in_base else None,
        new if in_source else None,
        context=context,
        access_transforms=carried,
    )
    if patch is None and carried:
        patch = PatchFile(relative, ChangeType.MODIFIED, (), tuple(carried))
    return patch, False


def diff_trees(
    baseline: Path,
    source: Path,
    *,
    settings: EngineSettings | None = None,
    paths: Sequence[str] | None = None,
    carried: Mapping[str, Sequence[AccessTransformEntry]] | None = None,
) -> Tuple[List[PatchFile], List[str]]:
    """Diff ``source`` against ``baseline``; returns patches and skipped binary paths."""
    engine = settings or EngineSettings()
    ats = carried or {}
    if paths is None:
        candidates = sorted(set(list_files(baseline)) | set(list_files(source)))
    else:
        candidates = sorted(set(paths))
    with ThreadPoolExecutor(max_workers=max(engine.workers, 1)) as executor:
        outcomes = list(
            executor.map(
                lambda relative: _diff_path(baseline, source, relative, engine.context_lines, ats.get(relative, ())),
                candidates,
            )
        )
    patches: List[PatchFile] = []
    skipped: List[str] = []
    for relative, (patch, binary) in zip(candidates, outcomes):
        if binary:
            LOGGER.warning("Binary file %s differs from the baseline; not representable as a patch", relative)
            skipped.append(relative)
        elif patch is not None:
            patches.append(patch)
    return patches, skipped


def _history_ahead(repo: GitRepository, file_tag: str) -> bool:
    return bool(repo.rev_list(f"{file_tag}..HEAD"))


def rebuild_file_patches(
    baseline: Path,
    source: Path,
    patch_dir: Path,
    *,
    settings: EngineSettings | None = None,
) -> RebuildReport:
    """Regenerate the file patch layer from the working tree.

    When feature commits sit on top of the file-patch commit, the tree at the
    ``file`` tag is diffed instead so that feature changes never leak into
    the file layer.
    """
    engine = settings or EngineSettings()
    carried = existing_access_transforms(patch_dir)
    report = RebuildReport()

    if GitRepository.is_repository(source):
        repo = GitRepository(source)
        if repo.rev_parse(engine.git.file_tag) is not None and _history_ahead(repo, engine.git.file_tag):
            if repo.has_changes():
                LOGGER.warning(
                    "Uncommitted changes in %s are ignored; run fixup-file-patches to fold them in", source
                )
            with repo.temporary_worktree(engine.git.file_tag) as snapshot:
                patches, skipped = diff_trees(baseline, snapshot, settings=engine, carried=carried)
            report.source_ref = engine.git.file_tag
            return _finish_rebuild(report, patch_dir, patches, skipped)

    patches, skipped = diff_trees(baseline, source, settings=engine, carried=carried)
    return _finish_rebuild(report, patch_dir, patches, skipped)


def _finish_rebuild(
    report: RebuildReport,
    patch_dir: Path,
    patches: Sequence[PatchFile],
    skipped: Sequence[str],
) -> RebuildReport:
    payloads = {patch_name_for(patch.path): serialize_patch(patch) for patch in patches}
    report.layer = write_layer(patch_dir, payloads)
    report.patched_paths = [patch.path for patch in patches]
    report.skipped_binary = list(skipped)
    emit_event(
        "file_patches_rebuilt",
        source_ref=report.source_ref,
        layer=report.layer.to_dict(),
        skipped_binary=report.skipped_binary,
    )
    return report


# ---------------------------------------------------------------------- fixup
def _regenerate(
    baseline: Path,
    patch_dir: Path,
    contents: Mapping[str, List[str] | None],
    settings: EngineSettings,
) -> LayerWriteResult:
    """Replace the patch files of ``contents`` (path -> file-layer lines) in place."""
    carried = existing_access_transforms(patch_dir)
    payloads: Dict[str, bytes] = {}
    for relative, lines in sorted(contents.items()):
        in_base, old = _read_side(baseline, relative)
        patch = diff_lines(
            relative,
            old if in_base else None,
            lines,
            context=settings.context_lines,
            access_transforms=carried.get(relative, ()),
        )
        if patch is None and carried.get(relative):
            patch = PatchFile(relative, ChangeType.MODIFIED, (), tuple(carried[relative]))
        if patch is not None:
            payloads[patch_name_for(relative)] = serialize_patch(patch)
    scope = [patch_name_for(relative) for relative in contents]
    return write_layer(patch_dir, payloads, prune=True, scope=scope)


def _recorded_state(baseline: Path, patch_dir: Path) -> Dict[str, List[str] | None]:
    """Recompute the file-layer contents of every patched path in memory."""
    state: Dict[str, List[str] | None] = {}
    for entry in read_file_layer(patch_dir):
        if entry.patch is None:
            continue
        in_base, current = _read_side(baseline, entry.patch.path)
        planned = plan_patch_lines(entry.patch, current if in_base else None)
        state[entry.patch.path] = planned.lines if planned.clean else current
    return state


def _fixup_without_history(
    baseline: Path,
    patch_dir: Path,
    target: Path,
    settings: EngineSettings,
) -> FixupReport:
    recorded = _recorded_state(baseline, patch_dir)
    report = FixupReport()
    contents: Dict[str, List[str] | None] = {}
    for relative in sorted(set(list_files(baseline)) | set(list_files(target)) | set(recorded)):
        if relative in recorded:
            expected = recorded[relative]
        else:
            expected = _read_side(baseline, relative)[1]
        exists, actual = _read_side(target, relative)
        if exists and actual is None:
            continue
        if (actual if exists else None) != expected:
            contents[relative] = actual if exists else None
    report.touched = sorted(contents)
    if contents:
        report.layer = _regenerate(baseline, patch_dir, contents, settings)
    return report


def fixup_file_patches(
    baseline: Path,
    patch_dir: Path,
    target: Path,
    *,
    settings: EngineSettings | None = None,
) -> FixupReport:
    """Fold uncommitted working-tree edits into the file patch layer.

    With git history the edits are replayed onto the file-patch commit, that
    commit is amended, the feature commits are re-based on top of it and only
    the touched patch files are regenerated.
    """
    engine = settings or EngineSettings()
    git = engine.git
    if not GitRepository.is_repository(target):
        return _fixup_without_history(baseline, patch_dir, target, engine)
    repo = GitRepository(target)
    if repo.rev_parse(git.file_tag) is None:
        return _fixup_without_history(baseline, patch_dir, target, engine)

    report = FixupReport()
    touched = [path.as_posix() for path in repo.working_tree_changes()]
    if not touched:
        return report

    # Capture the edits and plan them onto the file-patch commit before anything moves.
    saved: Dict[str, bytes | None] = {}
    file_layer: Dict[str, List[str] | None] = {}
    for relative in touched:
        path = target / relative
        saved[relative] = read_bytes(path) if path.is_file() else None
        try:
            edited = _decode_blob(saved[relative])
            head = _decode_blob(repo.show_file("HEAD", relative))
            base = _decode_blob(repo.show_file(git.file_tag, relative))
        except UnicodeDecodeError:
            LOGGER.warning("Binary change to %s cannot be folded into a file patch", relative)
            continue
        delta = diff_lines(relative, head, edited, context=engine.context_lines)
        if delta is None:
            continue
        # Feature commits may have shifted lines, so the edit is located rather than pinned.
        planned = plan_patch_lines(delta, base, mode=MatchMode.FUZZY, fuzzy=engine.fuzzy)
        if not planned.clean:
            rejected = planned.match.rejected[0]
            raise PatchError(
                f"{relative}: uncommitted change does not apply to the file-patch commit "
                f"(hunk #{rejected.index + 1}: {rejected.reason}); commit it as a feature patch instead",
                details={"path": relative, "hunk": rejected.index + 1},
            ) from HunkMismatch(relative, rejected.index, rejected.expected_line, rejected.reason)
        file_layer[relative] = planned.lines
    report.touched = sorted(file_layer)
    if not file_layer:
        return report

    original_head = repo.rev_parse("HEAD")
    original_file = repo.rev_parse(git.file_tag)
    features = read_history(repo, git.file_tag, context=engine.context_lines)
    repo.reset_hard(git.file_tag)
    try:
        for relative, lines in file_layer.items():
            if lines is None:
                remove_file(target / relative, stop_at=target)
            else:
                atomic_write_text(target / relative, join_lines(lines))
        repo.commit_all(git.file_message, author=git.identity, allow_empty=True, amend=True)
        repo.tag(git.file_tag)
        report.rebased = rebase_feature_commits(repo, features, fuzzy=engine.fuzzy)
    except SequenceBroken:
        _restore(repo, original_head, saved)
        if original_file is not None:
            repo.tag(git.file_tag, original_file)
        raise

    # Edits that could not be folded (binary files) survive the rewind untouched.
    for relative, data in saved.items():
        if relative not in file_layer and data is not None:
            atomic_write_bytes(target / relative, data)

    report.layer = _regenerate(baseline, patch_dir, file_layer, engine)
    emit_event(
        "file_patches_fixup",
        touched=report.touched,
        layer=report.layer.to_dict(),
        rebased=report.rebased,
    )
    return report


def _decode_blob(data: bytes | None) -> List[str] | None:
    if data is None:
        return None
    return split_lines(data.decode("utf-8"))


def _restore(repo: GitRepository, head: str | None, saved: Mapping[str, bytes | None]) -> None:
    """Put the working tree back the way the user left it."""
    if head is not None:
        repo.reset_hard(head)
    for relative, data in saved.items():
        path = repo.root / relative
        if data is None:
            remove_file(path, stop_at=repo.root)
        else:
            atomic_write_bytes(path, data)
