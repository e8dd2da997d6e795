"""Access-transformer entries: parsing, formatting and precedence-aware merging."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Dict, Iterable, List, Sequence

from ..errors import MalformedPatch

__all__ = [
    "AccessTransformEntry",
    "format_access_transforms",
    "merge_access_transforms",
    "parse_access_transforms",
]

LOGGER = logging.getLogger(__name__)

_ACCESS_PATTERN = re.compile(r"^(public|protected|default|private)([-+]f)?$")


@dataclass(frozen=True, slots=True)
class AccessTransformEntry:
    """Target access level for one class or member descriptor."""

    access: str
    descriptor: str

    def render(self) -> str:
        return f"{self.access} {self.descriptor}"


def parse_access_transforms(text: str, *, source: str = "<ats>") -> List[AccessTransformEntry]:
    """Parse ``<access> <descriptor>`` lines; ``#`` starts a comment."""
    entries: List[AccessTransformEntry] = []
    for number, raw in enumerate(text.splitlines(), start=1):
        line = raw.split("#", 1)[0].strip()
        if not line:
            continue
        parts = line.split(None, 1)
        if len(parts) != 2 or not _ACCESS_PATTERN.match(parts[0]):
            raise MalformedPatch(f"invalid access transformer line {raw.strip()!r}", path=source, line=number)
        descriptor = " ".join(parts[1].split())
        entries.append(AccessTransformEntry(access=parts[0], descriptor=descriptor))
    return entries


def format_access_transforms(entries: Iterable[AccessTransformEntry]) -> str:
    lines = [entry.render() for entry in entries]
    return "\n".join(lines) + "\n" if lines else ""


def merge_access_transforms(
    collected: Sequence[AccessTransformEntry],
    overrides: Sequence[AccessTransformEntry] | None = None,
) -> List[AccessTransformEntry]:
    """Resolve one access level per descriptor, later declarations winning.

    ``collected`` is inserted in declaration order, ``overrides`` last. The
    result is sorted by descriptor so the written file is deterministic.
    """
    resolved: Dict[str, str] = {}
    origin: Dict[str, str] = {}
    layers = (("patches", collected), ("override", overrides or ()))
    for layer, entries in layers:
        for entry in entries:
            previous = resolved.get(entry.descriptor)
            if previous is not None and previous != entry.access:
                LOGGER.info(
                    "Access transformer for %s overwritten: %s (%s) -> %s (%s)",
                    entry.descriptor,
                    previous,
                    origin[entry.descriptor],
                    entry.access,
                    layer,
                )
            resolved[entry.descriptor] = entry.access
            origin[entry.descriptor] = layer
    return [AccessTransformEntry(access=resolved[key], descriptor=key) for key in sorted(resolved)]
