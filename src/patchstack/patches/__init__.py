"""Convenience exports for the patch codec and the two patch engines."""

from .access import AccessTransformEntry, format_access_transforms, merge_access_transforms, parse_access_transforms
from .codec import ChangeType, Hunk, HunkLine, LineKind, PatchFile, diff_lines, parse_patch, serialize_patch
from .commit_engine import (
    CommitApplyReport,
    CommitRebuildReport,
    apply_feature_patches,
    rebase_feature_commits,
    rebuild_feature_patches,
)
from .commits import Commit, parse_commit_patch, serialize_commit_patch
from .file_engine import (
    ApplyReport,
    FileApplyResult,
    FileStatus,
    FixupReport,
    RebuildReport,
    apply_file_patches,
    fixup_file_patches,
    rebuild_file_patches,
)
from .layers import collect_access_transforms, write_access_transforms
from .matching import FuzzySettings, MatchMode
from .settings import EngineSettings, GitSettings

__all__ = [
    "AccessTransformEntry",
    "ApplyReport",
    "ChangeType",
    "Commit",
    "CommitApplyReport",
    "CommitRebuildReport",
    "EngineSettings",
    "FileApplyResult",
    "FileStatus",
    "FixupReport",
    "FuzzySettings",
    "GitSettings",
    "Hunk",
    "HunkLine",
    "LineKind",
    "MatchMode",
    "PatchFile",
    "RebuildReport",
    "apply_feature_patches",
    "apply_file_patches",
    "collect_access_transforms",
    "diff_lines",
    "fixup_file_patches",
    "format_access_transforms",
    "merge_access_transforms",
    "parse_access_transforms",
    "parse_commit_patch",
    "parse_patch",
    "rebase_feature_commits",
    "rebuild_feature_patches",
    "rebuild_file_patches",
    "serialize_commit_patch",
    "serialize_patch",
    "write_access_transforms",
]
