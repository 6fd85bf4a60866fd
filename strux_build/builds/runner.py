"""Container runner for build and lifecycle scripts.

This module handles:
- Composing the environment scripts see inside the builder container
- Composing `docker run` commands
- Executing scripts with subprocess, capturing output to a log file
- Enforcing script timeouts
- Checking for and building the builder image
"""

from __future__ import annotations

import logging
import shlex
import subprocess
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path

from strux_build.types import BuildContext

logger = logging.getLogger(__name__)

# Project root as mounted inside the builder container
CONTAINER_PROJECT_DIR = "/project"


class ScriptExecutionError(Exception):
    """Raised when a script cannot be executed."""

    def __init__(
        self,
        message: str,
        exit_code: int | None = None,
        code: str = "script_error",
    ) -> None:
        super().__init__(message)
        self.exit_code = exit_code
        self.code = code


@dataclass
class ScriptResult:
    """Result of a script execution.

    Attributes:
        success: Whether the script exited with status 0.
        exit_code: Process exit code.
        log_path: Path to the script log file.
        started_at: Start time.
        finished_at: Finish time.
        command: The command that was executed.
        error_message: Error message if the script failed.
    """

    success: bool
    exit_code: int
    log_path: Path
    started_at: datetime
    finished_at: datetime
    command: str
    error_message: str | None = None


def compose_script_env(
    ctx: BuildContext,
    stage: str,
    tool_version: str,
) -> dict[str, str]:
    """Compose the environment of a script inside the container.

    Args:
        ctx: Build context.
        stage: Pipeline stage or step the script runs for.
        tool_version: strux_build version.

    Returns:
        Environment variables.
    """
    dist = f"{CONTAINER_PROJECT_DIR}/dist"
    return {
        "BSP_NAME": ctx.target,
        "PROJECT_FOLDER": CONTAINER_PROJECT_DIR,
        "PROJECT_DIST_FOLDER": dist,
        "PROJECT_DIST_CACHE_FOLDER": f"{dist}/cache/{ctx.target}",
        "PROJECT_DIST_OUTPUT_FOLDER": f"{dist}/output/{ctx.target}",
        "PROJECT_DIST_ARTIFACTS_FOLDER": f"{dist}/artifacts",
        "SHARED_CACHE_DIR": f"{dist}/cache",
        "BSP_CACHE_DIR": f"{dist}/cache/{ctx.target}",
        "STEP": stage,
        "STRUX_VERSION": tool_version,
    }


def compose_container_command(
    image: str,
    project_root: Path,
    script_path: Path,
    env: dict[str, str] | None = None,
) -> list[str]:
    """Compose the `docker run` command for a script.

    Args:
        image: Builder image tag.
        project_root: Project root, mounted at /project.
        script_path: Script on the host; must be inside project_root.
        env: Environment variables for the script.

    Returns:
        Command as list of strings suitable for subprocess.

    Raises:
        ScriptExecutionError: If the script is outside the project.
    """
    try:
        relative = script_path.resolve().relative_to(project_root.resolve())
    except ValueError:
        raise ScriptExecutionError(
            f"Script {script_path} is outside the project {project_root}",
            code="script_outside_project",
        ) from None

    cmd = [
        "docker",
        "run",
        "--rm",
        "-v",
        f"{project_root.resolve()}:{CONTAINER_PROJECT_DIR}",
        "-w",
        CONTAINER_PROJECT_DIR,
    ]
    for key, value in sorted((env or {}).items()):
        cmd.extend(["-e", f"{key}={value}"])
    cmd.extend([image, "bash", f"{CONTAINER_PROJECT_DIR}/{relative.as_posix()}"])
    return cmd


def run_script(
    script_path: Path,
    project_root: Path,
    log_path: Path,
    image: str,
    env: dict[str, str] | None = None,
    timeout: int | None = None,
) -> ScriptResult:
    """Execute a script inside the builder container.

    Args:
        script_path: Script on the host.
        project_root: Project root mounted into the container.
        log_path: File receiving stdout/stderr.
        image: Builder image tag.
        env: Environment variables for the script.
        timeout: Timeout in seconds (None = no timeout).

    Returns:
        ScriptResult with execution details.

    Raises:
        ScriptExecutionError: If the script is missing, times out, or the
            container runtime cannot be started.
    """
    if not script_path.is_file():
        raise ScriptExecutionError(
            f"Script not found: {script_path}",
            code="script_not_found",
        )

    cmd = compose_container_command(image, project_root, script_path, env)
    cmd_str = shlex.join(cmd)
    logger.info("Executing script: %s", script_path.name)
    logger.debug("Command: %s", cmd_str)

    log_path.parent.mkdir(parents=True, exist_ok=True)
    started_at = datetime.now(timezone.utc)
    error_message: str | None = None

    try:
        with log_path.open("w") as log_file:
            log_file.write(f"# Command: {cmd_str}\n")
            log_file.write(f"# Started: {started_at.isoformat()}\n")
            log_file.write("# " + "=" * 70 + "\n\n")
            log_file.flush()

            result = subprocess.run(
                cmd,
                cwd=project_root,
                stdout=log_file,
                stderr=subprocess.STDOUT,
                timeout=timeout,
                check=False,
            )

        exit_code = result.returncode
        success = exit_code == 0
        if not success:
            error_message = f"Script failed with exit code {exit_code}"
            logger.error("%s. See log: %s", error_message, log_path)

    except subprocess.TimeoutExpired as e:
        error_message = f"Script timed out after {timeout} seconds"
        logger.error("%s. See log: %s", error_message, log_path)

        with log_path.open("a") as log_file:
            log_file.write(f"\n# TIMEOUT after {timeout} seconds\n")

        raise ScriptExecutionError(
            error_message,
            exit_code=-1,
            code="script_timeout",
        ) from e

    except OSError as e:
        error_message = f"Failed to execute script: {e}"
        logger.error(error_message)
        raise ScriptExecutionError(
            error_message,
            exit_code=None,
            code="execution_error",
        ) from e

    finished_at = datetime.now(timezone.utc)

    with log_path.open("a") as log_file:
        log_file.write(f"\n# Finished: {finished_at.isoformat()}\n")
        log_file.write(f"# Exit code: {exit_code}\n")
        duration = (finished_at - started_at).total_seconds()
        log_file.write(f"# Duration: {duration:.1f}s\n")

    return ScriptResult(
        success=success,
        exit_code=exit_code,
        log_path=log_path,
        started_at=started_at,
        finished_at=finished_at,
        command=cmd_str,
        error_message=error_message,
    )


def container_image_exists(image: str, timeout: int = 60) -> bool:
    """Check whether the builder image exists locally.

    Args:
        image: Image tag.
        timeout: Command timeout in seconds.

    Returns:
        True if `docker images -q` lists the image.
    """
    try:
        result = subprocess.run(
            ["docker", "images", "-q", image],
            capture_output=True,
            text=True,
            timeout=timeout,
            check=False,
        )
    except (OSError, subprocess.TimeoutExpired) as e:
        logger.debug("Cannot query docker images: %s", e)
        return False
    return result.returncode == 0 and bool(result.stdout.strip())


def build_container_image(
    image: str,
    dockerfile: bytes,
    context_dir: Path,
    timeout: int | None = None,
) -> None:
    """Build the builder image from the bundled recipe.

    Args:
        image: Image tag.
        dockerfile: Recipe content.
        context_dir: Directory receiving the Dockerfile (build context).
        timeout: Timeout in seconds (None = no timeout).

    Raises:
        ScriptExecutionError: If the build fails.
    """
    context_dir.mkdir(parents=True, exist_ok=True)
    dockerfile_path = context_dir / "Dockerfile"
    dockerfile_path.write_bytes(dockerfile)

    cmd = ["docker", "build", "-t", image, "-f", str(dockerfile_path), str(context_dir)]
    logger.info("Building builder image %s", image)

    try:
        subprocess.run(
            cmd,
            capture_output=True,
            text=True,
            timeout=timeout,
            check=True,
        )
    except subprocess.TimeoutExpired as e:
        raise ScriptExecutionError(
            f"docker build timed out after {timeout}s",
            exit_code=-1,
            code="timeout",
        ) from e
    except subprocess.CalledProcessError as e:
        raise ScriptExecutionError(
            f"docker build failed: {e.stderr}",
            exit_code=e.returncode,
            code="image_build_error",
        ) from e
    except OSError as e:
        raise ScriptExecutionError(
            f"Failed to run docker build: {e}",
            code="execution_error",
        ) from e


__all__ = [
    "CONTAINER_PROJECT_DIR",
    "ScriptExecutionError",
    "ScriptResult",
    "build_container_image",
    "compose_container_command",
    "compose_script_env",
    "container_image_exists",
    "run_script",
]
