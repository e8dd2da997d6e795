from __future__ import annotations

import pytest

from patchstack.errors import MalformedPatch
from patchstack.patches.access import AccessTransformEntry
from patchstack.patches.codec import (
    ChangeType,
    Hunk,
    HunkLine,
    LineKind,
    PatchFile,
    diff_lines,
    parse_patch,
    serialize_patch,
)

ABC_PATCH = "--- a/f.txt\n+++ b/f.txt\n@@ -1,3 +1,3 @@\n A\n-B\n+B2\n C\n"

TWO_HUNK_PATCH = (
    "== AT ==\n"
    "public net/example/Foo bar()V\n"
    "== END AT ==\n"
    "--- a/src/Foo.java\n"
    "+++ b/src/Foo.java\n"
    "@@ -1,4 +1,5 @@\n"
    " line 1\n"
    "+inserted\n"
    " line 2\n"
    " line 3\n"
    " line 4\n"
    "@@ -10,3 +11,2 @@\n"
    " line 10\n"
    "-line 11\n"
    " line 12\n"
)


def test_parse_reads_hunks_and_change_type() -> None:
    patch = parse_patch(ABC_PATCH.encode("utf-8"))

    assert patch.path == "f.txt"
    assert patch.change is ChangeType.MODIFIED
    assert len(patch.hunks) == 1
    hunk = patch.hunks[0]
    assert hunk.source_start == 0
    assert hunk.source_lines == ["A", "B", "C"]
    assert hunk.target_lines == ["A", "B2", "C"]
    assert hunk.delta == 0


@pytest.mark.parametrize("text", [ABC_PATCH, TWO_HUNK_PATCH])
def test_serialize_reproduces_parsed_bytes(text: str) -> None:
    data = text.encode("utf-8")

    assert serialize_patch(parse_patch(data)) == data


def test_access_transform_block_is_parsed() -> None:
    patch = parse_patch(TWO_HUNK_PATCH)

    assert patch.access_transforms == (AccessTransformEntry("public", "net/example/Foo bar()V"),)
    assert [hunk.source_start for hunk in patch.hunks] == [0, 9]


def test_headers_are_recomputed_from_hunk_bodies() -> None:
    patch = parse_patch(ABC_PATCH)
    hunk = patch.hunks[0]
    edited = Hunk(hunk.source_start, hunk.lines + (HunkLine(LineKind.ADDED, "D"),))

    text = serialize_patch(patch.with_hunks([edited])).decode("utf-8")

    assert "@@ -1,3 +1,4 @@" in text
    assert parse_patch(text).hunks[0].target_lines == ["A", "B2", "C", "D"]


def test_created_and_deleted_files_use_dev_null() -> None:
    created = diff_lines("new.txt", None, ["hello"])
    deleted = diff_lines("old.txt", ["bye"], None)
    assert created is not None and deleted is not None

    created_text = serialize_patch(created).decode("utf-8")
    deleted_text = serialize_patch(deleted).decode("utf-8")

    assert created_text == "--- /dev/null\n+++ b/new.txt\n@@ -0,0 +1,1 @@\n+hello\n"
    assert deleted_text == "--- a/old.txt\n+++ /dev/null\n@@ -1,1 +0,0 @@\n-bye\n"
    assert parse_patch(created_text).change is ChangeType.CREATED
    assert parse_patch(deleted_text).change is ChangeType.DELETED


def test_empty_created_file_round_trips() -> None:
    created = diff_lines("empty.txt", None, [])
    assert created == PatchFile("empty.txt", ChangeType.CREATED)

    data = serialize_patch(created)

    assert parse_patch(data) == created


def test_diff_lines_returns_none_for_identical_content() -> None:
    assert diff_lines("same.txt", ["a", "b"], ["a", "b"]) is None


def test_diff_merges_change_runs_with_overlapping_context() -> None:
    old = [f"line {number}" for number in range(20)]
    close = list(old)
    close[1] = "changed 1"
    close[6] = "changed 6"
    far = list(old)
    far[1] = "changed 1"
    far[12] = "changed 12"

    merged = diff_lines("f.txt", old, close)
    split = diff_lines("f.txt", old, far)

    assert merged is not None and split is not None
    assert len(merged.hunks) == 1
    assert len(split.hunks) == 2
    assert split.hunks[1].source_start == 9


def test_zero_context_insertion_round_trips() -> None:
    patch = diff_lines("f.txt", ["a", "b", "c"], ["a", "b", "x", "c"], context=0)
    assert patch is not None

    data = serialize_patch(patch)

    assert b"@@ -2,0 +3,1 @@" in data
    assert parse_patch(data) == patch


def test_count_mismatch_short_body_is_malformed() -> None:
    text = "--- a/f.txt\n+++ b/f.txt\n@@ -1,4 +1,4 @@\n A\n-B\n+B2\n C\n"

    with pytest.raises(MalformedPatch) as excinfo:
        parse_patch(text, path_hint="f.txt.patch")

    assert excinfo.value.path == "f.txt.patch"
    assert excinfo.value.line == 3


def test_count_mismatch_long_body_is_malformed() -> None:
    text = "--- a/f.txt\n+++ b/f.txt\n@@ -1,2 +1,2 @@\n A\n-B\n+B2\n C\n"

    with pytest.raises(MalformedPatch):
        parse_patch(text)


def test_overlapping_hunks_are_malformed() -> None:
    text = (
        "--- a/f.txt\n+++ b/f.txt\n"
        "@@ -1,2 +1,2 @@\n A\n-B\n+B2\n"
        "@@ -2,1 +2,1 @@\n-B\n+B3\n"
    )

    with pytest.raises(MalformedPatch, match="overlap"):
        parse_patch(text)


@pytest.mark.parametrize(
    "text",
    [
        "",
        "garbage\n",
        "--- a/f.txt\n",
        "--- /dev/null\n+++ /dev/null\n",
        "== AT ==\npublic Foo\n--- a/f.txt\n+++ b/f.txt\n",
        "--- a/f.txt\n+++ b/f.txt\n@@ -1,1 +1,1 @@\n?odd\n",
    ],
)
def test_structural_errors_raise_malformed_patch(text: str) -> None:
    with pytest.raises(MalformedPatch):
        parse_patch(text)


def test_non_utf8_patch_is_malformed() -> None:
    with pytest.raises(MalformedPatch, match="UTF-8"):
        parse_patch(b"--- a/f\n+++ b/f\n@@ -1,1 +1,1 @@\n-\xff\n+x\n")


def test_git_preamble_lines_are_skipped() -> None:
    text = "diff --git a/f.txt b/f.txt\nindex 123..456 100644\n" + ABC_PATCH

    assert parse_patch(text) == parse_patch(ABC_PATCH)


@pytest.mark.parametrize(
    "header",
    [
        "--- /dev/null\n+++ b/../escaped.txt\n@@ -0,0 +1,1 @@\n+x\n",
        "--- a/../../etc/passwd\n+++ /dev/null\n@@ -1,1 +0,0 @@\n-root\n",
        "--- a/src/../../f.txt\n+++ b/src/../../f.txt\n",
        "--- /tmp/f.txt\n+++ /tmp/f.txt\n",
    ],
)
def test_header_paths_outside_the_tree_are_malformed(header: str) -> None:
    with pytest.raises(MalformedPatch, match="escapes the patched tree"):
        parse_patch(header, path_hint="evil.patch")


def test_dotted_names_inside_the_tree_are_accepted() -> None:
    patch = parse_patch("--- a/src/..hidden/f..txt\n+++ b/src/..hidden/f..txt\n")

    assert patch.path == "src/..hidden/f..txt"
