"""Exception hierarchy shared by the patch-stack engine."""

from __future__ import annotations

from pathlib import Path
from typing import Any, Mapping


class PatchError(RuntimeError):
    """Raised when a patch fails validation or application."""

    def __init__(self, message: str, *, details: Mapping[str, Any] | None = None) -> None:
        super().__init__(message)
        self.details: dict[str, Any] = dict(details or {})


class MalformedPatch(PatchError):
    """A patch file could not be parsed or its hunk headers disagree with the body."""

    def __init__(
        self,
        message: str,
        *,
        path: str | None = None,
        line: int | None = None,
        details: Mapping[str, Any] | None = None,
    ) -> None:
        payload = dict(details or {})
        if path is not None:
            payload.setdefault("path", path)
        if line is not None:
            payload.setdefault("line", line)
        location = ""
        if path is not None:
            location = f"{path}:{line}: " if line is not None else f"{path}: "
        super().__init__(f"{location}{message}", details=payload)
        self.path = path
        self.line = line


class HunkMismatch(PatchError):
    """A hunk's context or removed lines were not found in the target file."""

    def __init__(self, path: str, hunk_index: int, expected_line: int, reason: str) -> None:
        super().__init__(
            f"{path}: hunk #{hunk_index + 1} failed at line {expected_line + 1} ({reason})",
            details={
                "path": path,
                "hunk": hunk_index + 1,
                "line": expected_line + 1,
                "reason": reason,
            },
        )
        self.path = path
        self.hunk_index = hunk_index
        self.expected_line = expected_line
        self.reason = reason


class SequenceBroken(PatchError):
    """A commit in the feature sequence failed; later commits were not attempted."""

    def __init__(
        self,
        message: str,
        *,
        commit: str | None = None,
        path: str | None = None,
        hunk: int | None = None,
    ) -> None:
        super().__init__(
            message,
            details={"commit": commit, "path": path, "hunk": hunk},
        )
        self.commit = commit
        self.path = path
        self.hunk = hunk


class ConfigError(PatchError):
    """The project configuration file is missing, unparsable or invalid."""


class IOFailure(PatchError):
    """Filesystem access failed; the run stops immediately."""

    def __init__(self, path: Path | str, error: OSError) -> None:
        location = Path(path).as_posix()
        super().__init__(
            f"I/O failure on {location}: {error.strerror or error}",
            details={"path": location, "errno": error.errno},
        )
        self.path = Path(path)
        self.__cause__ = error


__all__ = ["ConfigError", "HunkMismatch", "IOFailure", "MalformedPatch", "PatchError", "SequenceBroken"]
