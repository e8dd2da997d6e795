"""Feature layer: replay and rebuild an ordered sequence of commit patches.

Commits are replayed one after another on top of the file-patched tree and
recorded in the working tree's git history. Later commits assume the earlier
ones applied, so the first failure halts the sequence. Rebuild walks that
history back from the ``file`` tag to regenerate one patch per commit.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, List, Sequence

from ..errors import HunkMismatch, MalformedPatch, SequenceBroken
from ..telemetry import emit_event
from ..tools.tree import atomic_write_bytes, reset_tree, split_lines
from ..tools.vcs import GitError, GitRepository
from ..utils.slug import commit_patch_name
from .applier import PlannedFile, plan_patch_file, write_planned_file
from .codec import PatchFile, diff_lines, serialize_patch
from .commits import Commit, serialize_commit_patch
from .layers import (
    REJECT_SUFFIX,
    CommitEntry,
    LayerWriteResult,
    read_access_transforms,
    read_commit_layer,
    write_layer,
)
from .matching import FuzzySettings, MatchMode
from .settings import EngineSettings

__all__ = [
    "CommitApplyReport",
    "CommitRebuildReport",
    "apply_commit",
    "apply_feature_patches",
    "commit_identity",
    "read_history",
    "rebase_feature_commits",
    "rebuild_feature_patches",
    "replay_commits",
]

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True)
class CommitApplyReport:
    """Outcome of replaying the feature layer."""

    applied: List[str] = field(default_factory=list)
    not_attempted: List[str] = field(default_factory=list)
    failure: SequenceBroken | None = None
    stale_access_transforms: List[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.failure is None

    def summary(self) -> str:
        if self.failure is None:
            text = f"Applied {len(self.applied)} feature patch(es)."
        else:
            text = (
                f"Applied {len(self.applied)} feature patch(es); stopped at {self.failure.commit}: "
                f"{self.failure}. {len(self.not_attempted)} later patch(es) not attempted."
            )
        if self.stale_access_transforms:
            text += (
                f" {len(self.stale_access_transforms)} access transformer(s) are not in the baseline;"
                " run setup-baseline."
            )
        return text

    def to_dict(self) -> dict[str, Any]:
        return {
            "ok": self.ok,
            "applied": list(self.applied),
            "not_attempted": list(self.not_attempted),
            "stale_access_transforms": list(self.stale_access_transforms),
            "failure": None if self.failure is None else {"message": str(self.failure), **self.failure.details},
        }


@dataclass(slots=True)
class CommitRebuildReport:
    commits: List[str] = field(default_factory=list)
    layer: LayerWriteResult = field(default_factory=LayerWriteResult)
    skipped_binary: List[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return True

    def summary(self) -> str:
        return (
            f"Rebuilt {len(self.commits)} feature patch(es): {len(self.layer.written)} written, "
            f"{len(self.layer.removed)} removed, {len(self.layer.unchanged)} unchanged."
        )


def commit_identity(sequence: int, commit: Commit) -> str:
    return f"{sequence:04d} {commit.subject}"


def _open_history(target: Path, settings: EngineSettings) -> GitRepository:
    if not GitRepository.is_repository(target):
        raise SequenceBroken(
            f"{target} has no git history; apply the file patches first",
            commit=None,
        )
    repo = GitRepository(target)
    if repo.rev_parse(settings.git.file_tag) is None:
        raise SequenceBroken(
            f"{target} has no '{settings.git.file_tag}' tag marking the file-patch commit",
            commit=None,
        )
    return repo


def apply_commit(
    root: Path,
    commit: Commit,
    identity: str,
    *,
    mode: MatchMode = MatchMode.STRICT,
    fuzzy: FuzzySettings | None = None,
) -> List[PlannedFile]:
    """Apply every file of ``commit``; nothing is written unless every hunk applies."""
    planned: List[PlannedFile] = []
    for patch in commit.files:
        outcome = plan_patch_file(root, patch, mode=mode, fuzzy=fuzzy)
        if not outcome.clean:
            rejected = outcome.match.rejected[0]
            raise SequenceBroken(
                f"{patch.path}: hunk #{rejected.index + 1} does not apply ({rejected.reason})",
                commit=identity,
                path=patch.path,
                hunk=rejected.index + 1,
            ) from HunkMismatch(patch.path, rejected.index, rejected.expected_line, rejected.reason)
        planned.append(outcome)
    for outcome in planned:
        write_planned_file(root, outcome)
    return planned


def replay_commits(
    repo: GitRepository,
    commits: Sequence[Commit],
    *,
    rejects_dir: Path | None = None,
    start: int = 1,
    mode: MatchMode = MatchMode.STRICT,
    fuzzy: FuzzySettings | None = None,
) -> List[str]:
    """Apply and record ``commits`` in order; raises :class:`SequenceBroken` on the first failure."""
    applied: List[str] = []
    for sequence, commit in enumerate(commits, start=start):
        identity = commit_identity(sequence, commit)
        try:
            apply_commit(repo.root, commit, identity, mode=mode, fuzzy=fuzzy)
        except SequenceBroken as error:
            if rejects_dir is not None and error.path is not None:
                _write_commit_rejects(repo.root, commit, error.path, rejects_dir)
            raise
        repo.commit_all(commit.message, author=commit.author, date=commit.date, allow_empty=True)
        applied.append(identity)
        LOGGER.debug("Applied feature patch %s", identity)
    return applied


def _write_commit_rejects(root: Path, commit: Commit, path: str, rejects_dir: Path) -> None:
    for patch in commit.files:
        if patch.path != path:
            continue
        atomic_write_bytes(rejects_dir / f"{patch.path}{REJECT_SUFFIX}", serialize_patch(patch))


def _stale_access_transforms(entries: Sequence[CommitEntry], recorded_path: Path) -> List[str]:
    recorded = {entry.descriptor for entry in read_access_transforms(recorded_path)}
    stale: List[str] = []
    for commit_entry in entries:
        for declared in commit_entry.commit.access_transforms:
            if declared.descriptor not in recorded and declared.render() not in stale:
                stale.append(declared.render())
    if stale:
        LOGGER.warning(
            "%d access transformer(s) declared by feature patches are missing from %s",
            len(stale),
            recorded_path,
        )
    return stale


def apply_feature_patches(
    patch_dir: Path,
    target: Path,
    *,
    settings: EngineSettings | None = None,
    rejects_dir: Path | None = None,
    baseline_access_transforms: Path | None = None,
) -> CommitApplyReport:
    """Reset ``target`` to the file-patch commit and replay the feature layer.

    ``baseline_access_transforms`` is the AT record written with the baseline.
    Declarations of the feature layer missing from it are reported as stale,
    since the baseline was then built before those commits were added.
    """
    engine = settings or EngineSettings()
    repo = _open_history(target, engine)
    report = CommitApplyReport()
    try:
        entries = read_commit_layer(patch_dir)
        if baseline_access_transforms is not None and baseline_access_transforms.is_file():
            report.stale_access_transforms = _stale_access_transforms(entries, baseline_access_transforms)
    except MalformedPatch as error:
        report.failure = SequenceBroken(str(error), commit=error.path)
        emit_event("feature_patches_failed", **report.to_dict())
        return report

    repo.reset_hard(engine.git.file_tag)
    if rejects_dir is not None:
        reset_tree(rejects_dir, keep=())
    names = [entry.name for entry in entries]
    try:
        report.applied = replay_commits(
            repo,
            [entry.commit for entry in entries],
            rejects_dir=rejects_dir,
        )
    except SequenceBroken as error:
        report.failure = error
        done = len(repo.rev_list(f"{engine.git.file_tag}..HEAD"))
        report.applied = [commit_identity(index + 1, entries[index].commit) for index in range(done)]
        report.not_attempted = names[done + 1 :]
        LOGGER.error("Feature patch sequence broken at %s: %s", error.commit, error)
        emit_event("feature_patches_failed", **report.to_dict())
        return report

    emit_event("feature_patches_applied", **report.to_dict())
    return report


def _decode_lines(data: bytes | None) -> List[str] | None:
    if data is None:
        return None
    return split_lines(data.decode("utf-8"))


def read_history(
    repo: GitRepository,
    reference: str,
    *,
    context: int,
    skipped_binary: List[str] | None = None,
) -> List[Commit]:
    """Regenerate one :class:`Commit` per history entry after ``reference``."""
    commits: List[Commit] = []
    for rev in repo.rev_list(f"{reference}..HEAD"):
        metadata = repo.commit_metadata(rev)
        files: List[PatchFile] = []
        for status, path in sorted(repo.changed_paths(rev), key=lambda item: item[1]):
            old_blob = None if status == "A" else repo.show_file(f"{rev}^", path)
            new_blob = None if status == "D" else repo.show_file(rev, path)
            try:
                old = _decode_lines(old_blob)
                new = _decode_lines(new_blob)
            except UnicodeDecodeError:
                LOGGER.warning("Skipping binary change to %s in %s", path, metadata.subject)
                if skipped_binary is not None:
                    skipped_binary.append(path)
                continue
            patch = diff_lines(path, old, new, context=context)
            if patch is not None:
                files.append(patch)
        commits.append(
            Commit(
                subject=metadata.subject,
                author=metadata.author,
                date=metadata.date,
                body=metadata.body,
                files=tuple(files),
            )
        )
    return commits


def rebuild_feature_patches(
    target: Path,
    patch_dir: Path,
    *,
    settings: EngineSettings | None = None,
) -> CommitRebuildReport:
    """Write one commit patch per commit recorded above the ``file`` tag."""
    engine = settings or EngineSettings()
    repo = _open_history(target, engine)
    if repo.has_changes():
        LOGGER.warning("Uncommitted changes in %s are not part of any feature patch", target)

    report = CommitRebuildReport()
    commits = read_history(
        repo,
        engine.git.file_tag,
        context=engine.context_lines,
        skipped_binary=report.skipped_binary,
    )
    payloads: dict[str, bytes] = {}
    for sequence, commit in enumerate(commits, start=1):
        payloads[commit_patch_name(sequence, commit.subject)] = serialize_commit_patch(commit)
        report.commits.append(commit_identity(sequence, commit))
    report.layer = write_layer(patch_dir, payloads)
    emit_event(
        "feature_patches_rebuilt",
        commits=report.commits,
        layer=report.layer.to_dict(),
    )
    return report


def rebase_feature_commits(
    repo: GitRepository,
    commits: Sequence[Commit],
    *,
    fuzzy: FuzzySettings | None = None,
) -> List[str]:
    """Replay ``commits`` on the current ``HEAD`` after the file-patch commit changed.

    Commit patches are positioned relative to the file-patch commit, whose
    line numbers just moved, so each hunk is located rather than pinned. Every
    hunk must still be placed for a commit to be recorded.
    """
    try:
        return replay_commits(repo, commits, mode=MatchMode.FUZZY, fuzzy=fuzzy)
    except GitError as error:
        raise SequenceBroken(f"git failed while rebasing feature commits: {error}") from error
