"""Immutable runtime settings handed to the patch engines."""

from __future__ import annotations

from dataclasses import dataclass, field

from ..tools.vcs import GitIdentity
from .codec import DEFAULT_CONTEXT_LINES
from .matching import FuzzySettings

__all__ = ["DEFAULT_IDENTITY", "EngineSettings", "GitSettings"]

DEFAULT_IDENTITY = GitIdentity(name="patchstack", email="patchstack@localhost")


@dataclass(frozen=True, slots=True)
class GitSettings:
    """How the working tree history is recorded."""

    enabled: bool = True
    identity: GitIdentity = DEFAULT_IDENTITY
    base_tag: str = "base"
    file_tag: str = "file"
    vanilla_message: str = "Vanilla"
    file_message: str = "File patches"


@dataclass(frozen=True, slots=True)
class EngineSettings:
    context_lines: int = DEFAULT_CONTEXT_LINES
    workers: int = 4
    fuzzy: FuzzySettings = field(default_factory=FuzzySettings)
    git: GitSettings = field(default_factory=GitSettings)
