"""Minimal git helpers for the patched working tree.

The working tree carries a short, well-known history: a ``Vanilla`` commit
tagged ``base``, a ``File patches`` commit tagged ``file`` and one commit per
feature patch on top. The helpers below provide just enough structure to
create that history, walk it, and rewind it.
"""

from __future__ import annotations

import os
import subprocess
import tempfile
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Iterator, List, Mapping, Sequence, Set


class GitError(RuntimeError):
    """Raised when a git command fails or the repository cannot be used."""


@dataclass(frozen=True, slots=True)
class GitIdentity:
    name: str
    email: str


@dataclass(frozen=True, slots=True)
class CommitMetadata:
    """Author, date and message of one recorded commit."""

    sha: str
    author: GitIdentity
    date: str
    subject: str
    body: str


_METADATA_FORMAT = "%H%x00%an%x00%ae%x00%aD%x00%s%x00%b"


class GitRepository:
    """Lightweight wrapper around ``git`` commands."""

    def __init__(self, root: Path | str) -> None:
        self.root = Path(root).resolve()
        if not (self.root / ".git").exists():
            raise GitError(f"Not a git repository: {self.root}")

    @classmethod
    def is_repository(cls, root: Path | str) -> bool:
        return (Path(root) / ".git").exists()

    @classmethod
    def initialise(cls, root: Path | str, identity: GitIdentity) -> "GitRepository":
        """Initialise an empty repository at ``root`` with deterministic settings."""

        path = Path(root).resolve()
        path.mkdir(parents=True, exist_ok=True)
        process = subprocess.run(
            ["git", "init", "--quiet"],
            cwd=path,
            capture_output=True,
            text=True,
            check=False,
        )
        if process.returncode != 0:
            message = process.stderr.strip() or process.stdout.strip() or "unknown git error"
            raise GitError(f"git init failed: {message}")

        repo = cls(path)
        repo.git("config", "user.email", identity.email)
        repo.git("config", "user.name", identity.name)
        repo.git("config", "core.autocrlf", "false")
        repo.git("config", "core.quotepath", "false")
        repo.git("config", "commit.gpgsign", "false")
        return repo

    # ------------------------------------------------------------------ git IO
    def _run_git_raw(
        self,
        args: Sequence[str],
        *,
        check: bool = True,
        env: Mapping[str, str] | None = None,
    ) -> subprocess.CompletedProcess[bytes]:
        command = ["git", *args]
        environment = None
        if env:
            environment = os.environ.copy()
            environment.update(env)
        process = subprocess.run(
            command,
            cwd=self.root,
            capture_output=True,
            text=False,
            check=False,
            env=environment,
        )
        if check and process.returncode != 0:
            stderr = process.stderr.decode("utf-8", errors="replace").strip()
            stdout = process.stdout.decode("utf-8", errors="replace").strip()
            message = stderr or stdout or "unknown git error"
            raise GitError(f"git {' '.join(args)} failed: {message}")
        return process

    def _run_git(
        self,
        args: Sequence[str],
        *,
        check: bool = True,
        env: Mapping[str, str] | None = None,
    ) -> subprocess.CompletedProcess[str]:
        process = self._run_git_raw(args, check=check, env=env)
        stdout = process.stdout.decode("utf-8", errors="replace") if process.stdout else ""
        stderr = process.stderr.decode("utf-8", errors="replace") if process.stderr else ""
        return subprocess.CompletedProcess(process.args, process.returncode, stdout, stderr)

    def git(self, *args: str, check: bool = True) -> subprocess.CompletedProcess[str]:
        """Execute ``git`` with ``args`` relative to the repository root."""

        return self._run_git(list(args), check=check)

    # ------------------------------------------------------------------- refs
    def rev_parse(self, ref: str) -> str | None:
        """Resolve ``ref`` to a commit SHA, or ``None`` when it does not exist."""

        result = self._run_git(["rev-parse", "--verify", "--quiet", f"{ref}^{{commit}}"], check=False)
        if result.returncode != 0:
            return None
        return result.stdout.strip() or None

    def tag(self, name: str, ref: str = "HEAD") -> None:
        """Point the lightweight tag ``name`` at ``ref``, replacing it if present."""

        self._run_git(["tag", "--force", name, ref])

    def rev_list(self, revision_range: str) -> List[str]:
        """Return the commits in ``revision_range`` oldest first."""

        result = self._run_git(["rev-list", "--reverse", "--topo-order", revision_range])
        return [line.strip() for line in result.stdout.splitlines() if line.strip()]

    def reset_hard(self, ref: str) -> None:
        self._run_git(["reset", "--hard", "--quiet", ref])
        self._run_git(["clean", "-fdq"])

    # ---------------------------------------------------------------- commits
    def commit_all(
        self,
        message: str,
        *,
        author: GitIdentity | None = None,
        date: str | None = None,
        allow_empty: bool = False,
        amend: bool = False,
    ) -> str | None:
        """Add all changes to the index and create a commit.

        Returns the new commit SHA when a commit was created.  Returns ``None`` when
        there were no changes to commit (and ``allow_empty`` is ``False``).
        """

        self._run_git(["add", "--all"], check=True)

        env: dict[str, str] = {}
        if author is not None:
            env.update(
                {
                    "GIT_AUTHOR_NAME": author.name,
                    "GIT_AUTHOR_EMAIL": author.email,
                    "GIT_COMMITTER_NAME": author.name,
                    "GIT_COMMITTER_EMAIL": author.email,
                }
            )
        if date:
            env["GIT_AUTHOR_DATE"] = date
            env["GIT_COMMITTER_DATE"] = date

        commit_args: List[str] = ["commit", "--quiet", "--no-verify", "--cleanup=verbatim", "-m", message]
        if allow_empty:
            commit_args.append("--allow-empty")
        if amend:
            commit_args.append("--amend")

        commit = self._run_git(commit_args, check=False, env=env)
        if commit.returncode != 0:
            output = commit.stderr.strip() or commit.stdout.strip() or ""
            if "nothing to commit" in output.lower() or "nothing added to commit" in output.lower():
                return None
            raise GitError(f"git commit failed: {output}")

        rev = self._run_git(["rev-parse", "HEAD"], check=True)
        return rev.stdout.strip()

    def commit_metadata(self, rev: str) -> CommitMetadata:
        """Return author, date and message for ``rev``."""

        result = self._run_git(["show", "-s", f"--format={_METADATA_FORMAT}", rev])
        fields = result.stdout.split("\0")
        if len(fields) < 6:
            raise GitError(f"Unable to read metadata for {rev}")
        sha, name, email, date, subject, body = fields[:6]
        return CommitMetadata(
            sha=sha.strip(),
            author=GitIdentity(name=name, email=email),
            date=date,
            subject=subject,
            body=body.rstrip("\n"),
        )

    def changed_paths(self, rev: str) -> List[tuple[str, str]]:
        """Return ``(status, path)`` pairs changed by ``rev`` relative to its parent."""

        result = self._run_git(
            ["diff-tree", "-r", "-z", "--no-renames", "--no-commit-id", "--name-status", f"{rev}^", rev]
        )
        tokens = [token for token in result.stdout.split("\0") if token]
        entries: List[tuple[str, str]] = []
        for status, path in zip(tokens[0::2], tokens[1::2]):
            entries.append((status.strip(), path))
        return entries

    def show_file(self, rev: str, path: str) -> bytes | None:
        """Return the blob for ``path`` at ``rev`` or ``None`` if it does not exist."""

        result = self._run_git_raw(["show", f"{rev}:{path}"], check=False)
        if result.returncode != 0:
            return None
        return result.stdout

    # ------------------------------------------------------------- repo status
    def _status_entries(self) -> List[tuple[str, Path]]:
        result = self._run_git(["status", "--porcelain=v1", "-z", "--untracked-files=all"], check=True)
        entries: List[tuple[str, Path]] = []
        tokens = result.stdout.split("\0")
        index = 0
        while index < len(tokens):
            token = tokens[index]
            index += 1
            if not token:
                continue
            status = token[:2]
            raw_path = token[3:]
            if status[0] in {"R", "C"}:
                # The rename source follows as its own entry.
                if index < len(tokens) and tokens[index]:
                    entries.append(("D", Path(tokens[index])))
                index += 1
            status_clean = status.strip() or status
            entries.append((status_clean, Path(raw_path)))
        return entries

    def working_tree_changes(self, *, include_untracked: bool = True) -> List[Path]:
        """Return the set of paths with pending modifications."""

        entries = self._status_entries()
        paths: Set[Path] = set()
        for status, path in entries:
            if status == "??" and not include_untracked:
                continue
            paths.add(path)
        return sorted(paths, key=lambda item: item.as_posix())

    def has_changes(self, *, include_untracked: bool = True) -> bool:
        """Return ``True`` when there are working tree changes."""

        return bool(self.working_tree_changes(include_untracked=include_untracked))

    # ------------------------------------------------------------- worktrees
    @contextmanager
    def temporary_worktree(self, ref: str) -> Iterator[Path]:
        """Check ``ref`` out into a disposable worktree."""

        base_dir = tempfile.TemporaryDirectory(prefix="patchstack-worktree-")
        try:
            worktree_root = Path(base_dir.name) / "worktree"
            add = self._run_git(["worktree", "add", "--detach", str(worktree_root), ref], check=False)
            if add.returncode != 0:
                message = add.stderr.strip() or add.stdout.strip() or "unable to create temporary worktree"
                raise GitError(f"Failed to create temporary worktree: {message}")
            try:
                yield worktree_root
            finally:
                self._run_git(["worktree", "remove", "--force", str(worktree_root)], check=False)
                self._run_git(["worktree", "prune"], check=False)
        finally:
            base_dir.cleanup()


__all__ = ["CommitMetadata", "GitError", "GitIdentity", "GitRepository"]
