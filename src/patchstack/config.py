"""Project configuration: ``patchstack.yaml`` loading, validation and path layout."""

from __future__ import annotations

import copy
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .errors import ConfigError
from .patches.matching import FuzzySettings
from .patches.settings import EngineSettings, GitSettings
from .tools.vcs import GitIdentity

__all__ = [
    "DEFAULT_CONFIG_NAME",
    "DEFAULT_CONFIG_TEMPLATE",
    "PatchstackConfig",
    "ProjectLayout",
    "load_config",
    "write_default_config",
]

DEFAULT_CONFIG_NAME = "patchstack.yaml"

DEFAULT_CONFIG_TEMPLATE: Dict[str, Any] = {
    "paths": {
        "decompiled": "build-data/decompiled",
        "work": "work",
        "patches": "patches",
        "rejects": "rejects",
        "build_data": "build-data",
        "resources_input": None,
        "upstream_patches": None,
    },
    "baseline": {
        "sources": {"include": ["**/*.java"], "exclude": []},
        "resources": {"include": ["**"], "exclude": ["**/*.java", "**/*.class"]},
    },
    "apply": {
        "workers": 4,
        "context_lines": 3,
    },
    "fuzzy": {
        "radius": 32,
        "max_mismatches": 1,
        "min_similarity": 0.5,
    },
    "git": {
        "enabled": True,
        "author_name": "patchstack",
        "author_email": "patchstack@localhost",
        "base_tag": "base",
        "file_tag": "file",
    },
    "access_transforms": {
        "name": "patchstack",
        "overrides": None,
    },
}


class ConfigModel(BaseModel):
    """Base model rejecting unknown keys so typos surface immediately."""

    model_config = ConfigDict(extra="forbid", frozen=True)


class PathsConfig(ConfigModel):
    decompiled: str = "build-data/decompiled"
    work: str = "work"
    patches: str = "patches"
    rejects: str = "rejects"
    build_data: str = "build-data"
    resources_input: Optional[str] = None
    upstream_patches: Optional[str] = None


class SelectionConfig(ConfigModel):
    include: List[str] = Field(default_factory=lambda: ["**"])
    exclude: List[str] = Field(default_factory=list)


class BaselineConfig(ConfigModel):
    sources: SelectionConfig = Field(
        default_factory=lambda: SelectionConfig(include=["**/*.java"]),
    )
    resources: SelectionConfig = Field(
        default_factory=lambda: SelectionConfig(exclude=["**/*.java", "**/*.class"]),
    )


class ApplyConfig(ConfigModel):
    workers: int = Field(default=4, ge=1)
    context_lines: int = Field(default=3, ge=0)


class FuzzyConfig(ConfigModel):
    radius: int = Field(default=32, ge=0)
    max_mismatches: int = Field(default=1, ge=0)
    min_similarity: float = Field(default=0.5, ge=0.0, le=1.0)


class GitConfig(ConfigModel):
    enabled: bool = True
    author_name: str = "patchstack"
    author_email: str = "patchstack@localhost"
    base_tag: str = "base"
    file_tag: str = "file"


class AccessTransformsConfig(ConfigModel):
    name: str = "patchstack"
    overrides: Optional[str] = None


@dataclass(frozen=True, slots=True)
class ProjectLayout:
    """Absolute locations of every tree and layer the pipeline touches."""

    root: Path
    decompiled: Path
    resources_input: Path
    work: Path
    sources_baseline: Path
    resources_baseline: Path
    sources: Path
    resources: Path
    source_patches: Path
    resource_patches: Path
    feature_patches: Path
    rejects: Path
    build_data: Path
    access_transforms: Path
    access_overrides: Path | None
    upstream_patches: Path | None


class PatchstackConfig(ConfigModel):
    paths: PathsConfig = Field(default_factory=PathsConfig)
    baseline: BaselineConfig = Field(default_factory=BaselineConfig)
    apply: ApplyConfig = Field(default_factory=ApplyConfig)
    fuzzy: FuzzyConfig = Field(default_factory=FuzzyConfig)
    git: GitConfig = Field(default_factory=GitConfig)
    access_transforms: AccessTransformsConfig = Field(default_factory=AccessTransformsConfig)

    def to_engine_settings(self) -> EngineSettings:
        return EngineSettings(
            context_lines=self.apply.context_lines,
            workers=self.apply.workers,
            fuzzy=FuzzySettings(
                radius=self.fuzzy.radius,
                max_mismatches=self.fuzzy.max_mismatches,
                min_similarity=self.fuzzy.min_similarity,
            ),
            git=GitSettings(
                enabled=self.git.enabled,
                identity=GitIdentity(name=self.git.author_name, email=self.git.author_email),
                base_tag=self.git.base_tag,
                file_tag=self.git.file_tag,
            ),
        )

    def layout(self, root: Path) -> ProjectLayout:
        """Resolve configured paths relative to ``root`` (the config file's directory)."""

        def resolve(value: str) -> Path:
            candidate = Path(value)
            if not candidate.is_absolute():
                candidate = root / candidate
            return candidate.resolve()

        paths = self.paths
        work = resolve(paths.work)
        patches = resolve(paths.patches)
        build_data = resolve(paths.build_data)
        overrides = self.access_transforms.overrides
        decompiled = resolve(paths.decompiled)
        return ProjectLayout(
            root=root.resolve(),
            decompiled=decompiled,
            # Resources usually come from the unmodified server jar.
            resources_input=resolve(paths.resources_input) if paths.resources_input else decompiled,
            work=work,
            sources_baseline=work / "baseline" / "sources",
            resources_baseline=work / "baseline" / "resources",
            sources=work / "sources",
            resources=work / "resources",
            source_patches=patches / "sources",
            resource_patches=patches / "resources",
            feature_patches=patches / "features",
            rejects=resolve(paths.rejects),
            build_data=build_data,
            access_transforms=build_data / f"{self.access_transforms.name}.at",
            access_overrides=resolve(overrides) if overrides else None,
            upstream_patches=resolve(paths.upstream_patches) if paths.upstream_patches else None,
        )


def load_config(config_path: Path) -> PatchstackConfig:
    """Load and validate YAML configuration from disk."""
    if not config_path.exists():
        raise ConfigError(f"Config file not found: {config_path}", details={"path": str(config_path)})

    try:
        with config_path.open("r", encoding="utf-8") as handle:
            data = yaml.safe_load(handle) or {}
    except yaml.YAMLError as error:
        raise ConfigError(f"Failed to parse config: {error}") from error
    except OSError as error:
        raise ConfigError(f"Failed to read config {config_path}: {error}") from error

    if not isinstance(data, dict):
        raise ConfigError("Configuration must be a mapping at the top level.")

    try:
        return PatchstackConfig.model_validate(data)
    except ValidationError as error:
        raise ConfigError(f"Invalid configuration in {config_path}:\n{error}") from error


def write_default_config(config_path: Path) -> None:
    """Persist the default configuration template with stable formatting."""
    config_path.parent.mkdir(parents=True, exist_ok=True)
    with config_path.open("w", encoding="utf-8") as handle:
        yaml.safe_dump(copy.deepcopy(DEFAULT_CONFIG_TEMPLATE), handle, sort_keys=False)
