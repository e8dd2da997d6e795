from __future__ import annotations

from pathlib import Path

from conftest import Trees

from patchstack.patches.file_engine import (
    FileStatus,
    apply_file_patches,
    fixup_file_patches,
    rebuild_file_patches,
)
from patchstack.patches.matching import MatchMode
from patchstack.patches.settings import EngineSettings, GitSettings
from patchstack.tools.vcs import GitRepository

ABC_PATCH = "--- a/f.txt\n+++ b/f.txt\n@@ -1,3 +1,3 @@\n A\n-B\n+B2\n C\n"

NUMBERED = "".join(f"line {number}\n" for number in range(1, 31))


def test_abc_scenario_applies_and_rebuilds_identically(trees: Trees, plain_settings: EngineSettings) -> None:
    baseline = trees.write("baseline", {"f.txt": "A\nB\nC\n"})
    patches = trees.write("patches", {"f.txt.patch": ABC_PATCH})
    target = trees.root / "work"

    report = apply_file_patches(baseline, patches, target, settings=plain_settings)

    assert report.ok
    assert (target / "f.txt").read_bytes() == b"A\nB2\nC\n"

    rebuilt = trees.root / "rebuilt"
    rebuild_file_patches(baseline, target, rebuilt, settings=plain_settings)
    assert (rebuilt / "f.txt.patch").read_bytes() == ABC_PATCH.encode("utf-8")

    again = rebuild_file_patches(baseline, target, patches, settings=plain_settings)
    assert again.layer.written == []
    assert again.layer.unchanged == ["f.txt.patch"]


def test_rebuild_then_apply_reproduces_hand_edited_tree(trees: Trees, plain_settings: EngineSettings) -> None:
    baseline = trees.write(
        "baseline",
        {
            "src/Main.java": NUMBERED,
            "src/Util.java": "class Util {\n}\n",
            "src/Gone.java": "class Gone {}\n",
            "res/data.txt": "alpha\nbeta\n",
        },
    )
    edited = NUMBERED.replace("line 3\n", "line three\n").replace("line 25\n", "line 25\nextra\n")
    working = trees.write(
        "working",
        {
            "src/Main.java": edited,
            "src/Util.java": "class Util {\n}\n",
            "src/pkg/Added.java": "class Added {\n    int x;\n}\n",
            "res/data.txt": "alpha\nbeta\ngamma\n",
        },
    )
    patches = trees.root / "patches"

    rebuild = rebuild_file_patches(baseline, working, patches, settings=plain_settings)

    assert rebuild.patched_paths == ["res/data.txt", "src/Gone.java", "src/Main.java", "src/pkg/Added.java"]
    assert (patches / "src/Gone.java.patch").read_text(encoding="utf-8").splitlines()[1] == "+++ /dev/null"

    target = trees.root / "target"
    report = apply_file_patches(baseline, patches, target, settings=plain_settings)

    assert report.ok
    assert trees.snapshot(target) == trees.snapshot(working)


def test_rebuild_is_idempotent_and_prunes_stale_patches(trees: Trees, plain_settings: EngineSettings) -> None:
    baseline = trees.write("baseline", {"a.txt": "one\n", "b.txt": "two\n"})
    working = trees.write("working", {"a.txt": "one!\n", "b.txt": "two!\n"})
    patches = trees.root / "patches"

    first = rebuild_file_patches(baseline, working, patches, settings=plain_settings)
    snapshot = trees.snapshot(patches)
    second = rebuild_file_patches(baseline, working, patches, settings=plain_settings)

    assert first.layer.written == ["a.txt.patch", "b.txt.patch"]
    assert second.layer.written == []
    assert trees.snapshot(patches) == snapshot

    (working / "b.txt").write_text("two\n", encoding="utf-8")
    third = rebuild_file_patches(baseline, working, patches, settings=plain_settings)

    assert third.layer.removed == ["b.txt.patch"]
    assert sorted(trees.snapshot(patches)) == ["a.txt.patch"]


def test_rejects_are_isolated_per_file(trees: Trees, plain_settings: EngineSettings) -> None:
    baseline = trees.write(
        "baseline",
        {"one.txt": "a\nb\nc\n", "two.txt": "d\ne\nf\n", "three.txt": "g\nh\ni\n"},
    )
    patches = trees.write(
        "patches",
        {
            "one.txt.patch": "--- a/one.txt\n+++ b/one.txt\n@@ -1,3 +1,3 @@\n a\n-x\n+B\n c\n",
            "two.txt.patch": "--- a/two.txt\n+++ b/two.txt\n@@ -1,3 +1,3 @@\n d\n-y\n+E\n f\n",
            "three.txt.patch": "--- a/three.txt\n+++ b/three.txt\n@@ -1,3 +1,3 @@\n g\n-h\n+H\n i\n",
        },
    )
    target = trees.root / "work"
    rejects = trees.root / "rejects"

    report = apply_file_patches(baseline, patches, target, rejects_dir=rejects, settings=plain_settings)

    assert not report.ok
    statuses = {result.path: result.status for result in report.results}
    assert statuses == {
        "one.txt": FileStatus.REJECTED,
        "three.txt": FileStatus.APPLIED,
        "two.txt": FileStatus.REJECTED,
    }
    assert sorted(trees.snapshot(rejects)) == ["one.txt.rej", "two.txt.rej"]
    assert (rejects / "one.txt.rej").read_text(encoding="utf-8") == (patches / "one.txt.patch").read_text(
        encoding="utf-8"
    )
    assert (target / "one.txt").read_text(encoding="utf-8") == "a\nb\nc\n"
    assert (target / "three.txt").read_text(encoding="utf-8") == "g\nH\ni\n"
    assert "rejected one.txt" in report.summary()


def test_malformed_patch_is_reported_and_skipped(trees: Trees, plain_settings: EngineSettings) -> None:
    baseline = trees.write("baseline", {"f.txt": "A\nB\nC\n", "g.txt": "x\n"})
    patches = trees.write(
        "patches",
        {
            "f.txt.patch": ABC_PATCH,
            "g.txt.patch": "--- a/g.txt\n+++ b/g.txt\n@@ -1,5 +1,5 @@\n x\n",
        },
    )
    target = trees.root / "work"

    report = apply_file_patches(baseline, patches, target, settings=plain_settings)

    assert [result.name for result in report.malformed] == ["g.txt.patch"]
    assert [result.path for result in report.applied] == ["f.txt"]
    assert (target / "g.txt").read_text(encoding="utf-8") == "x\n"


def test_created_and_deleted_files(trees: Trees, plain_settings: EngineSettings) -> None:
    baseline = trees.write("baseline", {"old/Gone.java": "bye\n", "keep.txt": "k\n"})
    patches = trees.write(
        "patches",
        {
            "old/Gone.java.patch": "--- a/old/Gone.java\n+++ /dev/null\n@@ -1,1 +0,0 @@\n-bye\n",
            "new/Fresh.java.patch": "--- /dev/null\n+++ b/new/Fresh.java\n@@ -0,0 +1,2 @@\n+hello\n+world\n",
        },
    )
    target = trees.root / "work"

    report = apply_file_patches(baseline, patches, target, settings=plain_settings)

    assert report.ok
    assert trees.snapshot(target) == {"keep.txt": b"k\n", "new/Fresh.java": b"hello\nworld\n"}
    assert not (target / "old").exists()


def test_fuzzy_mode_is_explicit_and_writes_partial_rejects(trees: Trees, plain_settings: EngineSettings) -> None:
    drifted = "header\nheader\n" + NUMBERED
    baseline = trees.write("baseline", {"Main.java": drifted})
    patch = (
        "--- a/Main.java\n+++ b/Main.java\n"
        "@@ -2,3 +2,3 @@\n line 2\n-line 3\n+LINE 3\n line 4\n"
        "@@ -20,3 +20,3 @@\n line 20\n-missing\n+LINE 21\n line 22\n"
    )
    patches = trees.write("patches", {"Main.java.patch": patch})
    target = trees.root / "work"
    rejects = trees.root / "rejects"

    strict = apply_file_patches(baseline, patches, target, rejects_dir=rejects, settings=plain_settings)
    assert strict.rejected and "LINE 3" not in (target / "Main.java").read_text(encoding="utf-8")

    fuzzy = apply_file_patches(
        baseline,
        patches,
        target,
        rejects_dir=rejects,
        settings=plain_settings,
        mode=MatchMode.FUZZY,
    )

    assert fuzzy.mode is MatchMode.FUZZY
    assert [hunk.index for hunk in fuzzy.rejected[0].rejected] == [1]
    assert fuzzy.rejected[0].fuzzed == 1
    assert "LINE 3" in (target / "Main.java").read_text(encoding="utf-8")
    reject_text = (rejects / "Main.java.rej").read_text(encoding="utf-8")
    assert "-missing" in reject_text
    assert "LINE 3" not in reject_text


def test_rebuild_keeps_access_transform_blocks(trees: Trees, plain_settings: EngineSettings) -> None:
    patch = "== AT ==\npublic Foo bar\n== END AT ==\n" + ABC_PATCH
    baseline = trees.write("baseline", {"f.txt": "A\nB\nC\n", "g.txt": "g\n"})
    patches = trees.write(
        "patches",
        {
            "f.txt.patch": patch,
            "g.txt.patch": "== AT ==\npublic Only field\n== END AT ==\n--- a/g.txt\n+++ b/g.txt\n",
        },
    )
    target = trees.root / "work"
    apply_file_patches(baseline, patches, target, settings=plain_settings)

    report = rebuild_file_patches(baseline, target, patches, settings=plain_settings)

    assert report.layer.written == []
    assert (patches / "f.txt.patch").read_text(encoding="utf-8") == patch
    assert (patches / "g.txt.patch").exists()


def test_binary_changes_are_skipped(trees: Trees, plain_settings: EngineSettings) -> None:
    baseline = trees.write("baseline", {"icon.png": b"\x89PNG\xff\x00"})
    working = trees.write("working", {"icon.png": b"\x89PNG\xfe\x01"})

    report = rebuild_file_patches(baseline, working, trees.root / "patches", settings=plain_settings)

    assert report.skipped_binary == ["icon.png"]
    assert report.patched_paths == []


def test_fixup_without_history_amends_patch_in_place(trees: Trees, plain_settings: EngineSettings) -> None:
    baseline = trees.write("baseline", {"f.txt": "A\nB\nC\n", "other.txt": "o\n"})
    patches = trees.write("patches", {"f.txt.patch": ABC_PATCH})
    target = trees.root / "work"
    apply_file_patches(baseline, patches, target, settings=plain_settings)
    (target / "f.txt").write_text("A\nB2\nC\nD\n", encoding="utf-8")

    report = fixup_file_patches(baseline, patches, target, settings=plain_settings)

    assert report.touched == ["f.txt"]
    assert sorted(trees.snapshot(patches)) == ["f.txt.patch"]
    assert "+D\n" in (patches / "f.txt.patch").read_text(encoding="utf-8")

    fresh = trees.root / "fresh"
    apply_file_patches(baseline, patches, fresh, settings=plain_settings)
    assert trees.snapshot(fresh) == trees.snapshot(target)


def test_fixup_with_history_amends_file_commit(trees: Trees, git_settings: EngineSettings) -> None:
    baseline = trees.write("baseline", {"f.txt": "A\nB\nC\n"})
    patches = trees.write("patches", {"f.txt.patch": ABC_PATCH})
    target = trees.root / "work"
    apply_file_patches(baseline, patches, target, settings=git_settings)
    repo = GitRepository(target)
    file_commit = repo.rev_parse("file")
    (target / "f.txt").write_text("A\nB3\nC\n", encoding="utf-8")

    report = fixup_file_patches(baseline, patches, target, settings=git_settings)

    assert report.touched == ["f.txt"]
    assert "+B3\n" in (patches / "f.txt.patch").read_text(encoding="utf-8")
    assert not repo.has_changes()
    assert repo.rev_parse("HEAD") == repo.rev_parse("file")
    assert repo.rev_parse("file") != file_commit
    assert repo.show_file("file", "f.txt") == b"A\nB3\nC\n"


def test_fixup_rebases_feature_commits(trees: Trees, git_settings: EngineSettings) -> None:
    baseline = trees.write("baseline", {"Main.java": NUMBERED})
    patches = trees.write("patches", {})
    target = trees.root / "work"
    apply_file_patches(baseline, patches, target, settings=git_settings)
    repo = GitRepository(target)

    main = target / "Main.java"
    main.write_text(NUMBERED.replace("line 25\n", "line 25 feature\n"), encoding="utf-8")
    repo.commit_all("Add feature", author=git_settings.git.identity)
    edited = "new first line\n" + NUMBERED.replace("line 25\n", "line 25 feature\n")
    main.write_text(edited, encoding="utf-8")

    report = fixup_file_patches(baseline, patches, target, settings=git_settings)

    assert report.rebased == ["0001 Add feature"]
    assert main.read_text(encoding="utf-8") == edited
    assert not repo.has_changes()
    assert repo.show_file("file", "Main.java") == ("new first line\n" + NUMBERED).encode("utf-8")
    assert len(repo.rev_list("file..HEAD")) == 1
    assert "+new first line\n" in (patches / "Main.java.patch").read_text(encoding="utf-8")


def test_apply_records_base_and_file_history(trees: Trees, git_settings: EngineSettings) -> None:
    baseline = trees.write("baseline", {"f.txt": "A\nB\nC\n"})
    patches = trees.write("patches", {"f.txt.patch": ABC_PATCH})
    target = trees.root / "work"

    apply_file_patches(baseline, patches, target, settings=git_settings)

    repo = GitRepository(target)
    assert repo.show_file("base", "f.txt") == b"A\nB\nC\n"
    assert repo.show_file("file", "f.txt") == b"A\nB2\nC\n"
    assert repo.commit_metadata("file").subject == "File patches"
    assert repo.commit_metadata("base").subject == "Vanilla"
    assert not repo.has_changes()


def test_parallel_renames_round_trip(trees: Trees) -> None:
    settings = EngineSettings(workers=16, git=GitSettings(enabled=False))
    packages = [f"net/example/pkg{number}" for number in range(40)]
    baseline = trees.write(
        "baseline",
        {**{f"{package}/Old.java": "class Old {}\n" for package in packages}, "gone/Only.java": "x\n"},
    )
    working = trees.write("working", {f"{package}/New.java": "class New {}\n" for package in packages})
    patches = trees.root / "patches"
    rebuild_file_patches(baseline, working, patches, settings=settings)

    for attempt in range(5):
        target = trees.root / f"work{attempt}"
        report = apply_file_patches(baseline, patches, target, settings=settings)

        assert report.ok, report.summary()
        assert len(report.applied) == 2 * len(packages) + 1
        assert trees.snapshot(target) == trees.snapshot(working)
        assert not (target / "gone").exists()


def test_rebuild_with_feature_commits_ignores_worktree_metadata(trees: Trees, git_settings: EngineSettings) -> None:
    baseline = trees.write("baseline", {"f.txt": "A\nB\nC\n"})
    patches = trees.write("patches", {"f.txt.patch": ABC_PATCH})
    target = trees.root / "work"
    apply_file_patches(baseline, patches, target, settings=git_settings)
    repo = GitRepository(target)
    (target / "feature.txt").write_text("feature\n", encoding="utf-8")
    repo.commit_all("Add feature file", author=git_settings.git.identity)

    report = rebuild_file_patches(baseline, target, patches, settings=git_settings)

    assert report.source_ref == "file"
    assert report.patched_paths == ["f.txt"]
    assert report.layer.unchanged == ["f.txt.patch"]
    assert sorted(trees.snapshot(patches)) == ["f.txt.patch"]

    fresh = trees.root / "fresh"
    again = apply_file_patches(baseline, patches, fresh, settings=git_settings)
    assert again.ok, again.summary()
    assert trees.snapshot(fresh) == {"f.txt": b"A\nB2\nC\n"}


def test_patch_paths_cannot_escape_the_target(trees: Trees, plain_settings: EngineSettings) -> None:
    baseline = trees.write("baseline", {"f.txt": "A\nB\nC\n"})
    patches = trees.write(
        "patches",
        {
            "f.txt.patch": ABC_PATCH,
            "escape.patch": "--- /dev/null\n+++ b/../escaped.txt\n@@ -0,0 +1,1 @@\n+owned\n",
        },
    )
    target = trees.root / "work"

    report = apply_file_patches(baseline, patches, target, settings=plain_settings)

    assert [result.name for result in report.malformed] == ["escape.patch"]
    assert [result.path for result in report.applied] == ["f.txt"]
    assert not (trees.root / "escaped.txt").exists()
