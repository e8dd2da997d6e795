"""Explicit driver wiring configuration to the baseline and patch engines.

Every public method is one user-facing operation. Each returns a
:class:`PipelineReport` collecting the per-layer reports in the order the
steps ran.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Protocol, Tuple

from .baseline import BaselineReport, baseline_metadata_path, glob_predicate, materialize_baseline
from .config import PatchstackConfig, ProjectLayout, load_config
from .errors import MalformedPatch
from .patches.access import AccessTransformEntry, merge_access_transforms
from .patches.commit_engine import apply_feature_patches, rebuild_feature_patches
from .patches.file_engine import apply_file_patches, fixup_file_patches, rebuild_file_patches
from .patches.layers import (
    collect_access_transforms,
    read_access_transforms,
    read_commit_layer,
    read_file_layer,
    write_access_transforms,
)
from .patches.matching import MatchMode
from .patches.settings import EngineSettings
from .tools.vcs import GitRepository

__all__ = ["AccessTransformReport", "Pipeline", "PipelineReport"]

LOGGER = logging.getLogger(__name__)


class StepReport(Protocol):
    @property
    def ok(self) -> bool: ...

    def summary(self) -> str: ...


@dataclass(slots=True)
class AccessTransformReport:
    path: Path
    entries: List[AccessTransformEntry] = field(default_factory=list)
    written: bool = False

    @property
    def ok(self) -> bool:
        return True

    def summary(self) -> str:
        state = "written" if self.written else "unchanged"
        return f"{len(self.entries)} access transformer(s) {state} at {self.path}."


@dataclass(slots=True)
class PipelineReport:
    steps: List[Tuple[str, StepReport]] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)

    def add(self, name: str, report: StepReport) -> StepReport:
        self.steps.append((name, report))
        return report

    @property
    def ok(self) -> bool:
        return not self.skipped and all(report.ok for _, report in self.steps)

    def summary(self) -> str:
        lines = [f"[{name}] {report.summary()}" for name, report in self.steps]
        lines.extend(f"[{name}] skipped: an earlier step failed." for name in self.skipped)
        return "\n".join(lines)


class Pipeline:
    """Runs patch-stack operations for one configured project."""

    def __init__(self, config: PatchstackConfig, root: Path) -> None:
        self.config = config
        self.layout: ProjectLayout = config.layout(root)
        self.settings: EngineSettings = config.to_engine_settings()

    @classmethod
    def from_config_file(cls, config_path: Path) -> "Pipeline":
        return cls(load_config(config_path), config_path.resolve().parent)

    # ------------------------------------------------------------------ layers
    def _file_layers(self) -> List[Tuple[str, Path, Path, Path]]:
        """``(name, baseline, patch_dir, target)`` for each file patch layer."""
        layout = self.layout
        return [
            ("sources", layout.sources_baseline, layout.source_patches, layout.sources),
            ("resources", layout.resources_baseline, layout.resource_patches, layout.resources),
        ]

    # ---------------------------------------------------------------- baseline
    def merge_ats(self) -> AccessTransformReport:
        """Collect AT declarations from every layer, apply overrides and write the result."""
        layout = self.layout
        collected = collect_access_transforms(
            [layout.source_patches, layout.resource_patches],
            layout.feature_patches,
        )
        overrides: List[AccessTransformEntry] = []
        if layout.access_overrides is not None and layout.access_overrides.is_file():
            overrides = read_access_transforms(layout.access_overrides)
        merged = merge_access_transforms(collected, overrides)
        report = AccessTransformReport(path=layout.access_transforms, entries=merged)
        report.written = write_access_transforms(layout.access_transforms, merged)
        return report

    def setup_baseline(self) -> PipelineReport:
        report = PipelineReport()
        ats = self.merge_ats()
        report.add("access-transforms", ats)
        layout = self.layout
        selections = {
            "sources": (layout.decompiled, layout.sources_baseline, self.config.baseline.sources),
            "resources": (layout.resources_input, layout.resources_baseline, self.config.baseline.resources),
        }
        for name, (source, output_dir, selection) in selections.items():
            upstream = None
            if layout.upstream_patches is not None and (layout.upstream_patches / name).is_dir():
                upstream = layout.upstream_patches / name
            baseline: BaselineReport = materialize_baseline(
                source,
                output_dir,
                glob_predicate(selection.include, selection.exclude),
                access_transforms=ats.entries,
                upstream_patches=upstream,
            )
            report.add(f"baseline:{name}", baseline)
        return report

    # ------------------------------------------------------------------- apply
    def apply_file_patches(self, *, fuzzy: bool = False) -> PipelineReport:
        mode = MatchMode.FUZZY if fuzzy else MatchMode.STRICT
        report = PipelineReport()
        for name, baseline, patch_dir, target in self._file_layers():
            report.add(
                f"file:{name}",
                apply_file_patches(
                    baseline,
                    patch_dir,
                    target,
                    rejects_dir=self.layout.rejects / name,
                    settings=self.settings,
                    mode=mode,
                ),
            )
        return report

    def apply_feature_patches(self) -> PipelineReport:
        report = PipelineReport()
        report.add(
            "features",
            apply_feature_patches(
                self.layout.feature_patches,
                self.layout.sources,
                settings=self.settings,
                rejects_dir=self.layout.rejects / "features",
                baseline_access_transforms=baseline_metadata_path(self.layout.sources_baseline),
            ),
        )
        return report

    def apply_patches(self, *, fuzzy: bool = False) -> PipelineReport:
        """Apply the file layers, then the feature layer on top of them.

        The feature layer needs git history, so it is left out when git is disabled.
        """
        report = self.apply_file_patches(fuzzy=fuzzy)
        if not self.settings.git.enabled:
            return report
        if not report.ok:
            report.skipped.append("features")
            return report
        report.steps.extend(self.apply_feature_patches().steps)
        return report

    # ----------------------------------------------------------------- rebuild
    def rebuild_file_patches(self) -> PipelineReport:
        report = PipelineReport()
        for name, baseline, patch_dir, target in self._file_layers():
            report.add(f"file:{name}", rebuild_file_patches(baseline, target, patch_dir, settings=self.settings))
        return report

    def rebuild_feature_patches(self) -> PipelineReport:
        report = PipelineReport()
        report.add(
            "features",
            rebuild_feature_patches(self.layout.sources, self.layout.feature_patches, settings=self.settings),
        )
        return report

    def rebuild_patches(self) -> PipelineReport:
        report = self.rebuild_file_patches()
        if self.settings.git.enabled:
            report.steps.extend(self.rebuild_feature_patches().steps)
        return report

    def fixup_file_patches(self) -> PipelineReport:
        report = PipelineReport()
        for name, baseline, patch_dir, target in self._file_layers():
            report.add(f"file:{name}", fixup_file_patches(baseline, patch_dir, target, settings=self.settings))
        return report

    # ------------------------------------------------------------------ status
    def status(self) -> Dict[str, Any]:
        """Summarise configured layers without modifying anything."""
        layout = self.layout
        info: Dict[str, Any] = {"root": layout.root.as_posix()}
        for name, baseline, patch_dir, target in self._file_layers():
            entries = read_file_layer(patch_dir)
            info[name] = {
                "baseline": baseline.is_dir(),
                "patches": len(entries),
                "malformed": sum(1 for entry in entries if entry.patch is None),
                "target": target.is_dir(),
            }
        features = sorted(layout.feature_patches.glob("*.patch")) if layout.feature_patches.is_dir() else []
        info["features"] = {"patches": len(features)}
        if GitRepository.is_repository(layout.sources):
            repo = GitRepository(layout.sources)
            file_tag = self.settings.git.file_tag
            if repo.rev_parse(file_tag) is not None:
                info["features"]["commits"] = len(repo.rev_list(f"{file_tag}..HEAD"))
            info["features"]["dirty"] = repo.has_changes()
        try:
            read_commit_layer(layout.feature_patches)
        except MalformedPatch as error:
            info["features"]["error"] = str(error)
        return info
