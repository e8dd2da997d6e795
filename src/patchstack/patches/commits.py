"""Commit patch records: an authored message plus file-level hunks.

Commit patches are stored one per file in an mbox-like layout close to what
``git format-patch`` writes, so they stay readable in any patch viewer::

    From 0000000000000000000000000000000000000000 Mon Sep 17 00:00:00 2001
    From: Jane Doe <jane@example.com>
    Date: Mon, 1 Jan 2024 10:00:00 +0000
    Subject: [PATCH] Add configurable tick rate

    Optional body.

    == AT ==
    public net/minecraft/server/MinecraftServer tickRate
    ---
    diff --git a/net/minecraft/server/MinecraftServer.java b/net/minecraft/server/MinecraftServer.java
    --- a/net/minecraft/server/MinecraftServer.java
    +++ b/net/minecraft/server/MinecraftServer.java
    @@ -1,3 +1,3 @@
    ...
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import List, Tuple

from ..errors import MalformedPatch
from ..tools.vcs import GitIdentity
from .access import AccessTransformEntry, parse_access_transforms
from .codec import AT_BLOCK_START, PatchFile, parse_patch, serialize_patch

__all__ = ["MBOX_FROM_LINE", "Commit", "parse_commit_patch", "serialize_commit_patch"]

MBOX_FROM_LINE = "From 0000000000000000000000000000000000000000 Mon Sep 17 00:00:00 2001"
MESSAGE_SEPARATOR = "---"

_IDENTITY_PATTERN = re.compile(r"^(?P<name>.*?)\s*<(?P<email>[^>]*)>\s*$")
_SUBJECT_PREFIX = re.compile(r"^\[PATCH(?: \d+/\d+)?\]\s*")


@dataclass(frozen=True, slots=True)
class Commit:
    """One logical change in the feature layer."""

    subject: str
    author: GitIdentity
    date: str
    body: str = ""
    files: Tuple[PatchFile, ...] = ()

    @property
    def message(self) -> str:
        if self.body:
            return f"{self.subject}\n\n{self.body}\n"
        return f"{self.subject}\n"

    @property
    def access_transforms(self) -> List[AccessTransformEntry]:
        """AT lines following an ``== AT ==`` marker in the message body."""
        lines = self.body.splitlines()
        if AT_BLOCK_START not in lines:
            return []
        start = lines.index(AT_BLOCK_START) + 1
        return parse_access_transforms("\n".join(lines[start:]), source=self.subject)


def serialize_commit_patch(commit: Commit) -> bytes:
    """Render ``commit`` in the mbox layout read by :func:`parse_commit_patch`.

    A body line consisting of ``---`` would be read back as the end of the
    message, so such commits are refused.
    """
    body = commit.body.split("\n") if commit.body else []
    if MESSAGE_SEPARATOR in body:
        raise MalformedPatch(
            f"commit message contains a bare {MESSAGE_SEPARATOR!r} line; reword it before rebuilding",
            path=commit.subject,
        )
    lines: List[str] = [
        MBOX_FROM_LINE,
        f"From: {commit.author.name} <{commit.author.email}>",
        f"Date: {commit.date}",
        f"Subject: [PATCH] {commit.subject}",
        "",
    ]
    if body:
        lines.extend(body)
        lines.append("")
    lines.append(MESSAGE_SEPARATOR)
    text = "\n".join(lines) + "\n"
    for patch in commit.files:
        text += f"diff --git a/{patch.path} b/{patch.path}\n"
        text += serialize_patch(patch).decode("utf-8")
    return text.encode("utf-8")


def _split_sections(lines: List[str]) -> List[List[str]]:
    sections: List[List[str]] = []
    for line in lines:
        if line.startswith("diff --git "):
            sections.append([line])
        elif sections:
            sections[-1].append(line)
        elif line.strip():
            raise MalformedPatch(f"unexpected line before first diff: {line!r}")
    return sections


def parse_commit_patch(data: bytes | str, *, source: str = "<commit>") -> Commit:
    """Parse a commit patch; raises :class:`MalformedPatch` on structural errors."""
    if isinstance(data, bytes):
        try:
            text = data.decode("utf-8")
        except UnicodeDecodeError as error:
            raise MalformedPatch("commit patch is not valid UTF-8", path=source) from error
    else:
        text = data
    lines = text.replace("\r\n", "\n").split("\n")
    if lines and lines[-1] == "":
        lines.pop()
    if not lines or not lines[0].startswith("From "):
        raise MalformedPatch("missing mbox 'From' line", path=source, line=1)

    headers: dict[str, str] = {}
    index = 1
    last_key: str | None = None
    while index < len(lines) and lines[index] != "":
        line = lines[index]
        if line[:1] in {" ", "\t"} and last_key is not None:
            headers[last_key] += " " + line.strip()
        elif ":" in line:
            key, value = line.split(":", 1)
            last_key = key.strip().lower()
            headers[last_key] = value.strip()
        else:
            raise MalformedPatch(f"invalid header line {line!r}", path=source, line=index + 1)
        index += 1
    index += 1

    for required in ("from", "date", "subject"):
        if required not in headers:
            raise MalformedPatch(f"missing {required.title()} header", path=source)
    identity = _IDENTITY_PATTERN.match(headers["from"])
    if not identity:
        raise MalformedPatch(f"invalid author {headers['from']!r}", path=source)

    try:
        separator = lines.index(MESSAGE_SEPARATOR, index)
    except ValueError:
        raise MalformedPatch("missing '---' separator after the message", path=source) from None
    body_lines = lines[index:separator]
    while body_lines and not body_lines[-1].strip():
        body_lines.pop()
    while body_lines and not body_lines[0].strip():
        body_lines.pop(0)

    try:
        sections = _split_sections(lines[separator + 1 :])
    except MalformedPatch as error:
        raise MalformedPatch(str(error), path=source) from error
    files = tuple(parse_patch("\n".join(section) + "\n", path_hint=source) for section in sections)

    return Commit(
        subject=_SUBJECT_PREFIX.sub("", headers["subject"]),
        author=GitIdentity(name=identity.group("name"), email=identity.group("email")),
        date=headers["date"],
        body="\n".join(body_lines),
        files=files,
    )
