from __future__ import annotations

from pathlib import Path

import pytest

from patchstack.tools.vcs import GitError, GitIdentity, GitRepository

IDENTITY = GitIdentity(name="Patch Bot", email="bot@example.com")
AUTHOR = GitIdentity(name="Jane Doe", email="jane@example.com")
DATE = "Mon, 1 Jan 2024 10:00:00 +0000"


def _repository(root: Path) -> GitRepository:
    repo = GitRepository.initialise(root, IDENTITY)
    (root / "Main.java").write_text("class Main {}\n", encoding="utf-8")
    repo.commit_all("Vanilla", author=IDENTITY)
    repo.tag("base")
    return repo


def test_opening_a_plain_directory_fails(tmp_path: Path) -> None:
    assert not GitRepository.is_repository(tmp_path)
    with pytest.raises(GitError):
        GitRepository(tmp_path)


def test_commit_metadata_preserves_author_date_and_body(tmp_path: Path) -> None:
    repo = _repository(tmp_path)
    (tmp_path / "Main.java").write_text("final class Main {}\n", encoding="utf-8")

    sha = repo.commit_all("Make main final\n\nNobody extends it.\n", author=AUTHOR, date=DATE)

    assert sha is not None
    metadata = repo.commit_metadata(sha)
    assert metadata.sha == sha
    assert metadata.author == AUTHOR
    assert metadata.date == DATE
    assert metadata.subject == "Make main final"
    assert metadata.body == "Nobody extends it."


def test_commit_without_changes_returns_none(tmp_path: Path) -> None:
    repo = _repository(tmp_path)

    assert repo.commit_all("Nothing") is None
    assert repo.commit_all("Marker", allow_empty=True) is not None


def test_rev_list_and_changed_paths_describe_history(tmp_path: Path) -> None:
    repo = _repository(tmp_path)
    (tmp_path / "Main.java").unlink()
    (tmp_path / "pkg").mkdir()
    (tmp_path / "pkg" / "Util.java").write_text("class Util {}\n", encoding="utf-8")
    first = repo.commit_all("Move main", author=AUTHOR, date=DATE)
    (tmp_path / "pkg" / "Util.java").write_text("class Util { }\n", encoding="utf-8")
    second = repo.commit_all("Reformat util", author=AUTHOR, date=DATE)

    assert repo.rev_list("base..HEAD") == [first, second]
    assert sorted(repo.changed_paths(first)) == [("A", "pkg/Util.java"), ("D", "Main.java")]
    assert repo.changed_paths(second) == [("M", "pkg/Util.java")]
    assert repo.show_file("base", "Main.java") == b"class Main {}\n"
    assert repo.show_file(second, "Main.java") is None


def test_rev_parse_handles_missing_refs(tmp_path: Path) -> None:
    repo = _repository(tmp_path)

    assert repo.rev_parse("base") == repo.rev_parse("HEAD")
    assert repo.rev_parse("file") is None


def test_working_tree_changes_and_reset(tmp_path: Path) -> None:
    repo = _repository(tmp_path)
    (tmp_path / "Main.java").write_text("class Main { int x; }\n", encoding="utf-8")
    (tmp_path / "notes").mkdir()
    (tmp_path / "notes" / "todo.txt").write_text("later\n", encoding="utf-8")

    assert repo.working_tree_changes() == [Path("Main.java"), Path("notes/todo.txt")]
    assert repo.working_tree_changes(include_untracked=False) == [Path("Main.java")]

    repo.reset_hard("base")

    assert not repo.has_changes()
    assert not (tmp_path / "notes").exists()


def test_amend_rewrites_the_tagged_commit(tmp_path: Path) -> None:
    repo = _repository(tmp_path)
    original = repo.rev_parse("base")
    (tmp_path / "Main.java").write_text("class Main { }\n", encoding="utf-8")

    amended = repo.commit_all("Vanilla", author=IDENTITY, amend=True)
    repo.tag("base")

    assert amended != original
    assert repo.rev_parse("base") == amended
    assert repo.rev_list("HEAD") == [amended]


def test_temporary_worktree_checks_out_a_tag(tmp_path: Path) -> None:
    repo = _repository(tmp_path / "repo")
    (tmp_path / "repo" / "Main.java").write_text("class Changed {}\n", encoding="utf-8")
    repo.commit_all("Change", author=AUTHOR)

    with repo.temporary_worktree("base") as snapshot:
        assert (snapshot / "Main.java").read_text(encoding="utf-8") == "class Main {}\n"
        location = snapshot

    assert not location.exists()
    assert (tmp_path / "repo" / "Main.java").read_text(encoding="utf-8") == "class Changed {}\n"
