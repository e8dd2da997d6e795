from __future__ import annotations

import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Mapping

import pytest

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"

if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

from patchstack.patches.settings import EngineSettings, GitSettings  # noqa: E402
from patchstack.tools.vcs import GitIdentity  # noqa: E402


@dataclass(slots=True)
class Trees:
    """Builds and inspects small source trees below a temporary directory."""

    root: Path

    def write(self, name: str, files: Mapping[str, str | bytes]) -> Path:
        base = self.root / name
        base.mkdir(parents=True, exist_ok=True)
        for relative, content in files.items():
            path = base / relative
            path.parent.mkdir(parents=True, exist_ok=True)
            if isinstance(content, bytes):
                path.write_bytes(content)
            else:
                path.write_bytes(content.encode("utf-8"))
        return base

    @staticmethod
    def snapshot(base: Path) -> Dict[str, bytes]:
        """Map relative POSIX paths to bytes, ignoring git metadata."""
        if not base.exists():
            return {}
        return {
            path.relative_to(base).as_posix(): path.read_bytes()
            for path in sorted(base.rglob("*"))
            if path.is_file() and ".git" not in path.relative_to(base).parts
        }


@pytest.fixture()
def trees(tmp_path: Path) -> Trees:
    return Trees(root=tmp_path)


@pytest.fixture()
def plain_settings() -> EngineSettings:
    """Engine settings that never touch git."""
    return EngineSettings(workers=2, git=GitSettings(enabled=False))


@pytest.fixture()
def git_settings() -> EngineSettings:
    return EngineSettings(
        workers=2,
        git=GitSettings(identity=GitIdentity(name="Patch Bot", email="bot@example.com")),
    )
