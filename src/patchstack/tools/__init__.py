"""Filesystem and git integrations used by the patch engines."""

from .tree import atomic_write_bytes, atomic_write_text, copy_tree, list_files, normalise_text, read_lines, reset_tree
from .vcs import CommitMetadata, GitError, GitIdentity, GitRepository

__all__ = [
    "CommitMetadata",
    "GitError",
    "GitIdentity",
    "GitRepository",
    "atomic_write_bytes",
    "atomic_write_text",
    "copy_tree",
    "list_files",
    "normalise_text",
    "read_lines",
    "reset_tree",
]
