"""Build step dependency definitions.

This module defines which files, directories, config keys and bundled
assets each build step depends on for cache invalidation, which upstream
steps it consumes, and which artifacts it produces.

Paths are relative to the project root, artifacts relative to ``dist/``.
The ``{bsp}`` placeholder is replaced with the active board name.
A trailing ``/`` marks a directory.
"""

from __future__ import annotations

from dataclasses import dataclass
from types import MappingProxyType

from strux_build.types import BuildStep

BOARD_PLACEHOLDER = "{bsp}"

PROJECT_CONFIG = "strux.yaml"
BOARD_CONFIG = "bsp/{bsp}/bsp.yaml"


@dataclass(frozen=True)
class ConfigKeyDependency:
    """A value inside a YAML config file.

    Attributes:
        file: Path to the YAML file (supports the {bsp} placeholder).
        key_path: Dot-notation path to the key (e.g. ``bsp.rootfs.packages``).
    """

    file: str
    key_path: str


@dataclass(frozen=True)
class StepDependencySpec:
    """Declared inputs and outputs of one build step.

    Attributes:
        files: Individual files.
        directories: Directories hashed recursively.
        exclude_patterns: Patterns skipped when hashing this step's
            directories, in addition to the global ignore patterns.
        config_keys: YAML key paths whose values are hashed.
        assets: Bundled asset ids.
        fallback_assets: Bundled asset ids used only while the declared
            directories do not all exist yet (first build).
        depends_on_steps: Upstream steps whose rerun invalidates this one.
        artifacts: Output artifacts.
    """

    artifacts: tuple[str, ...]
    files: tuple[str, ...] = ()
    directories: tuple[str, ...] = ()
    exclude_patterns: tuple[str, ...] = ()
    config_keys: tuple[ConfigKeyDependency, ...] = ()
    assets: tuple[str, ...] = ()
    fallback_assets: tuple[str, ...] = ()
    depends_on_steps: tuple[BuildStep, ...] = ()


STEP_DEPENDENCIES: MappingProxyType[BuildStep, StepDependencySpec] = MappingProxyType(
    {
        BuildStep.FRONTEND: StepDependencySpec(
            directories=("frontend/",),
            exclude_patterns=("node_modules", "dist"),
            config_keys=(ConfigKeyDependency(PROJECT_CONFIG, "dev"),),
            assets=("build-frontend-script",),
            # Architecture independent, kept in the shared cache
            artifacts=("cache/frontend/",),
        ),
        BuildStep.APPLICATION: StepDependencySpec(
            directories=("./",),
            exclude_patterns=(
                "frontend",
                "dist",
                "overlay",
                "bsp",
                "node_modules",
                "test",
                PROJECT_CONFIG,
            ),
            config_keys=(ConfigKeyDependency(BOARD_CONFIG, "bsp.name"),),
            assets=("build-app-script",),
            artifacts=("cache/{bsp}/app/main",),
        ),
        BuildStep.CAGE: StepDependencySpec(
            directories=("dist/cage/",),
            config_keys=(ConfigKeyDependency(BOARD_CONFIG, "bsp.arch"),),
            assets=("build-cage-script",),
            fallback_assets=("cage-sources",),
            artifacts=("cache/{bsp}/cage",),
        ),
        BuildStep.WPE: StepDependencySpec(
            directories=("dist/extension/",),
            config_keys=(ConfigKeyDependency(BOARD_CONFIG, "bsp.arch"),),
            assets=("build-wpe-script",),
            fallback_assets=("wpe-extension-sources",),
            artifacts=("cache/{bsp}/libstrux-extension.so",),
        ),
        BuildStep.CLIENT: StepDependencySpec(
            # Copied from the bundled client base on first build, user editable after
            directories=("dist/artifacts/client/",),
            config_keys=(
                ConfigKeyDependency(PROJECT_CONFIG, "dev.server"),
                ConfigKeyDependency(BOARD_CONFIG, "bsp.arch"),
            ),
            assets=("build-client-script",),
            fallback_assets=("client-base",),
            artifacts=("cache/{bsp}/client",),
        ),
        BuildStep.ROOTFS_BASE: StepDependencySpec(
            config_keys=(
                ConfigKeyDependency(BOARD_CONFIG, "bsp.arch"),
                ConfigKeyDependency(BOARD_CONFIG, "bsp.rootfs.packages"),
                ConfigKeyDependency(PROJECT_CONFIG, "rootfs.packages"),
            ),
            assets=("build-base-script",),
            artifacts=("cache/{bsp}/rootfs-base.tar.gz",),
        ),
        BuildStep.ROOTFS_POST: StepDependencySpec(
            files=("dist/artifacts/logo.png",),
            directories=(
                "overlay/",
                "bsp/{bsp}/overlay/",
                "dist/artifacts/plymouth/",
                "dist/artifacts/scripts/",
                "dist/artifacts/systemd/",
            ),
            config_keys=(
                ConfigKeyDependency(PROJECT_CONFIG, "hostname"),
                ConfigKeyDependency(PROJECT_CONFIG, "rootfs.overlay"),
                ConfigKeyDependency(PROJECT_CONFIG, "boot.splash"),
                ConfigKeyDependency(BOARD_CONFIG, "bsp.rootfs.overlay"),
                ConfigKeyDependency(BOARD_CONFIG, "bsp.hostname"),
            ),
            assets=("build-post-script",),
            fallback_assets=("plymouth-assets", "systemd-assets", "init-scripts"),
            depends_on_steps=(
                BuildStep.FRONTEND,
                BuildStep.APPLICATION,
                BuildStep.CAGE,
                BuildStep.WPE,
                BuildStep.CLIENT,
                BuildStep.ROOTFS_BASE,
            ),
            artifacts=(
                "cache/{bsp}/rootfs-post.tar.gz",
                "cache/{bsp}/initrd.img",
                "cache/{bsp}/vmlinuz",
            ),
        ),
    }
)


def resolve_placeholders(path: str, target: str) -> str:
    """Replace every {bsp} placeholder with the board name."""
    return path.replace(BOARD_PLACEHOLDER, target)


def get_step_spec(step: BuildStep | str) -> StepDependencySpec:
    """Look up the dependency spec of a step.

    Args:
        step: BuildStep or its string value.

    Returns:
        The step's StepDependencySpec.

    Raises:
        ValueError: If the step is unknown.
    """
    return STEP_DEPENDENCIES[BuildStep(step)]


def get_step_artifacts(step: BuildStep | str, target: str) -> list[str]:
    """Return a step's artifacts with placeholders resolved."""
    return [resolve_placeholders(a, target) for a in get_step_spec(step).artifacts]


def is_directory_path(path: str) -> bool:
    """Check whether a declared path denotes a directory."""
    return path.endswith("/")


__all__ = [
    "BOARD_CONFIG",
    "BOARD_PLACEHOLDER",
    "PROJECT_CONFIG",
    "STEP_DEPENDENCIES",
    "ConfigKeyDependency",
    "StepDependencySpec",
    "get_step_artifacts",
    "get_step_spec",
    "is_directory_path",
    "resolve_placeholders",
]
