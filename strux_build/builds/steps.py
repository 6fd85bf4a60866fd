"""Build step actions and first-build artifacts.

This module handles:
- Mapping each build step to its bundled build script
- Installing a step script into the project so the container can see it
- Running a step script in the builder container
- Copying the bundled starter files into dist/artifacts/ on first build
- Writing the build info file of a finished build
"""

from __future__ import annotations

import json
import logging
import shutil
from datetime import datetime, timezone
from pathlib import Path
from types import MappingProxyType

from strux_build import __version__
from strux_build.boards.io import load_splash_config
from strux_build.builds import runner
from strux_build.cache.assets import BUNDLED_ASSET_GROUPS, read_asset_file
from strux_build.types import BuildContext, BuildStep

logger = logging.getLogger(__name__)

STEP_SCRIPTS: MappingProxyType[BuildStep, str] = MappingProxyType(
    {
        BuildStep.FRONTEND: "scripts/build-frontend.sh",
        BuildStep.APPLICATION: "scripts/build-app.sh",
        BuildStep.CAGE: "scripts/build-cage.sh",
        BuildStep.WPE: "scripts/build-wpe.sh",
        BuildStep.CLIENT: "scripts/build-client.sh",
        BuildStep.ROOTFS_BASE: "scripts/build-base.sh",
        BuildStep.ROOTFS_POST: "scripts/build-post.sh",
    }
)

# Asset group -> directory under dist/artifacts/
STARTER_ARTIFACTS: MappingProxyType[str, str] = MappingProxyType(
    {
        "client-base": "client",
        "plymouth-assets": "plymouth",
        "init-scripts": "scripts",
        "systemd-assets": "systemd",
    }
)

LOGO_ARTIFACT = "logo.png"
BUILD_INFO_FILENAME = ".build-info.json"


def artifacts_dir(ctx: BuildContext) -> Path:
    """Return dist/artifacts/ of the project."""
    return ctx.dist_dir / "artifacts"


def copy_starter_artifacts(ctx: BuildContext) -> list[Path]:
    """Copy the bundled starter files into dist/artifacts/.

    Files already present are left alone; they belong to the user once
    copied.

    Args:
        ctx: Build context.

    Returns:
        Paths of the files written.
    """
    written: list[Path] = []
    for asset_id, directory in STARTER_ARTIFACTS.items():
        target_dir = artifacts_dir(ctx) / directory
        for relative_path in BUNDLED_ASSET_GROUPS[asset_id]:
            destination = target_dir / Path(relative_path).name
            if destination.exists():
                continue
            destination.parent.mkdir(parents=True, exist_ok=True)
            destination.write_bytes(read_asset_file(relative_path))
            written.append(destination)

    if written:
        logger.info("Copied %d starter files to %s", len(written), artifacts_dir(ctx))

    logo = copy_splash_logo(ctx)
    if logo is not None:
        written.append(logo)
    return written


def copy_splash_logo(ctx: BuildContext) -> Path | None:
    """Copy the configured boot splash logo to dist/artifacts/logo.png.

    Skipped when the splash is disabled or has no logo. An existing copy
    is kept unless this is a clean build.

    Returns:
        Destination path if the logo was copied.

    Raises:
        BoardConfigError: If strux.yaml is invalid.
    """
    splash = load_splash_config(ctx.project_root)
    if not splash.enabled or not splash.logo:
        return None

    destination = artifacts_dir(ctx) / LOGO_ARTIFACT
    if destination.exists() and not ctx.clean:
        return None

    source = ctx.project_root / splash.logo
    if not source.is_file():
        logger.warning("Logo file not found: %s, check boot.splash.logo", source)
        return None

    destination.parent.mkdir(parents=True, exist_ok=True)
    shutil.copy2(source, destination)
    logger.info("Copied boot splash logo from %s", splash.logo)
    return destination


def install_step_script(ctx: BuildContext, step: BuildStep | str) -> Path:
    """Write a step's bundled build script into the board cache.

    The script is rewritten on every call so a new release of the tool
    always runs its own version.

    Returns:
        Path of the installed script, inside the project.
    """
    step = BuildStep(step)
    relative_path = STEP_SCRIPTS[step]
    script_path = ctx.cache_dir / "scripts" / Path(relative_path).name
    script_path.parent.mkdir(parents=True, exist_ok=True)
    script_path.write_bytes(read_asset_file(relative_path))
    return script_path


def run_step_script(
    ctx: BuildContext,
    step: BuildStep | str,
    image: str,
    timeout: int | None = None,
) -> runner.ScriptResult:
    """Run a step's build script in the builder container.

    Args:
        ctx: Build context.
        step: Build step.
        image: Builder image tag.
        timeout: Timeout in seconds (None = no timeout).

    Returns:
        ScriptResult of the successful run.

    Raises:
        ScriptExecutionError: If the script fails or cannot be run.
    """
    step = BuildStep(step)
    script_path = install_step_script(ctx, step)
    result = runner.run_script(
        script_path,
        ctx.project_root,
        ctx.cache_dir / "logs" / f"{step.value}.log",
        image,
        env=runner.compose_script_env(ctx, step.value, __version__),
        timeout=timeout,
    )
    if not result.success:
        raise runner.ScriptExecutionError(
            f"Build step {step.value} failed. See log: {result.log_path}",
            exit_code=result.exit_code,
            code="step_failed",
        )
    return result


def write_build_info(ctx: BuildContext, now: datetime | None = None) -> Path:
    """Write dist/output/<board>/.build-info.json for a finished build."""
    info = {
        "board": ctx.target,
        "build_time": (now or datetime.now(timezone.utc)).isoformat(),
        "tool_version": __version__,
    }
    path = ctx.output_dir / BUILD_INFO_FILENAME
    path.parent.mkdir(parents=True, exist_ok=True)

    with path.open("w", encoding="utf-8") as f:
        json.dump(info, f, indent=2, sort_keys=True)

    logger.info("Wrote build info to %s", path)
    return path


__all__ = [
    "BUILD_INFO_FILENAME",
    "STARTER_ARTIFACTS",
    "STEP_SCRIPTS",
    "copy_splash_logo",
    "copy_starter_artifacts",
    "install_step_script",
    "run_step_script",
    "write_build_info",
]
