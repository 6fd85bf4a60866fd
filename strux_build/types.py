"""Shared type definitions for strux_build.

This module contains enums, dataclasses, and type aliases shared across
subpackages to avoid circular imports.
"""

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path


class BuildStep(str, Enum):
    """Cacheable steps of the image build pipeline."""

    FRONTEND = "frontend"
    APPLICATION = "application"
    CAGE = "cage"
    WPE = "wpe"
    CLIENT = "client"
    ROOTFS_BASE = "rootfs-base"
    ROOTFS_POST = "rootfs-post"


# Order in which the pipeline runs the steps
PIPELINE_ORDER: tuple[BuildStep, ...] = (
    BuildStep.FRONTEND,
    BuildStep.APPLICATION,
    BuildStep.CAGE,
    BuildStep.WPE,
    BuildStep.CLIENT,
    BuildStep.ROOTFS_BASE,
    BuildStep.ROOTFS_POST,
)


class ScriptStage(str, Enum):
    """Pipeline hook points where board lifecycle scripts can run."""

    BEFORE_BUILD = "before_build"
    BEFORE_FRONTEND = "before_frontend"
    AFTER_FRONTEND = "after_frontend"
    BEFORE_APPLICATION = "before_application"
    AFTER_APPLICATION = "after_application"
    BEFORE_CAGE = "before_cage"
    AFTER_CAGE = "after_cage"
    BEFORE_WPE = "before_wpe"
    AFTER_WPE = "after_wpe"
    BEFORE_CLIENT = "before_client"
    AFTER_CLIENT = "after_client"
    BEFORE_KERNEL = "before_kernel"
    AFTER_KERNEL = "after_kernel"
    BEFORE_BOOTLOADER = "before_bootloader"
    AFTER_BOOTLOADER = "after_bootloader"
    BEFORE_ROOTFS = "before_rootfs"
    AFTER_ROOTFS = "after_rootfs"
    BEFORE_BUNDLE = "before_bundle"
    MAKE_IMAGE = "make_image"
    AFTER_BUILD = "after_build"
    FLASH_SCRIPT = "flash_script"


class DependencyKind(str, Enum):
    """Namespace prefix of a dependency key (``kind:identifier``)."""

    FILE = "file"
    DIRECTORY = "dir"
    CONFIG = "config"
    ASSET = "asset"
    ASSET_FALLBACK = "asset-fallback"

    def key(self, identifier: str) -> str:
        """Build a namespaced dependency key."""
        return f"{self.value}:{identifier}"


@dataclass(frozen=True)
class RebuildDecision:
    """Verdict of the cache for one build step.

    Attributes:
        rebuild: Whether the step must run.
        reason: Human-readable explanation when a rebuild is needed.
    """

    rebuild: bool
    reason: str | None = None


@dataclass(frozen=True)
class BuildContext:
    """Explicit per-invocation state passed into every cache call.

    Attributes:
        project_root: Root of the user's project (contains strux.yaml).
        target: Active board identifier; selects manifest and artifact paths.
        clean: Clean build requested; nothing is considered cached.
        force_rebuild: Step names that always rebuild.
        ignore_patterns: Extra names/globs skipped when hashing directories.
    """

    project_root: Path
    target: str
    clean: bool = False
    force_rebuild: tuple[str, ...] = ()
    ignore_patterns: tuple[str, ...] = ()

    @property
    def dist_dir(self) -> Path:
        """Root of all generated build output."""
        return self.project_root / "dist"

    @property
    def shared_cache_dir(self) -> Path:
        """Cache directory shared by every target."""
        return self.dist_dir / "cache"

    @property
    def cache_dir(self) -> Path:
        """Target-scoped cache directory."""
        return self.shared_cache_dir / self.target

    @property
    def output_dir(self) -> Path:
        """Target-scoped output directory."""
        return self.dist_dir / "output" / self.target

    @property
    def board_dir(self) -> Path:
        """Directory holding the board definition and its scripts."""
        return self.project_root / "bsp" / self.target


@dataclass
class StepOutcome:
    """Result of one pipeline step as seen by the orchestrator."""

    step: BuildStep
    decision: RebuildDecision
    ran: bool
    recorded: bool = False
    details: dict[str, object] = field(default_factory=dict)


__all__ = [
    "PIPELINE_ORDER",
    "BuildContext",
    "BuildStep",
    "DependencyKind",
    "RebuildDecision",
    "ScriptStage",
    "StepOutcome",
]
