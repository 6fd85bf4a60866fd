"""Loading board and project configuration from YAML.

See strux_build.boards.schema for the modelled fields.
"""

from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from strux_build.boards.schema import (
    BoardSchema,
    CacheConfigSchema,
    LifecycleScriptSchema,
    SplashConfigSchema,
)
from strux_build.types import ScriptStage

PROJECT_CONFIG_FILENAME = "strux.yaml"
BOARD_CONFIG_FILENAME = "bsp.yaml"


class BoardConfigError(Exception):
    """Raised when a board or project config file cannot be used."""

    def __init__(self, message: str, code: str = "board_config_error") -> None:
        super().__init__(message)
        self.code = code


def load_yaml(path: Path) -> dict[str, Any]:
    """Load a YAML file and return its contents as a dict.

    Args:
        path: Path to the YAML file.

    Returns:
        Parsed YAML content as a dictionary.

    Raises:
        FileNotFoundError: If the file does not exist.
        yaml.YAMLError: If the file is not valid YAML.
        ValueError: If the document is not a mapping.
    """
    with open(path, encoding="utf-8") as f:
        data = yaml.safe_load(f)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueError(f"Expected a YAML mapping, got {type(data).__name__}")
    return data


def board_config_path(project_root: Path, board: str) -> Path:
    """Return the path of a board's bsp.yaml."""
    return project_root / "bsp" / board / BOARD_CONFIG_FILENAME


def load_board(project_root: Path, board: str) -> BoardSchema:
    """Load and validate a board definition.

    Args:
        project_root: Project root directory.
        board: Board name.

    Returns:
        Validated BoardSchema.

    Raises:
        BoardConfigError: If the file is missing or invalid.
    """
    path = board_config_path(project_root, board)
    if not path.exists():
        raise BoardConfigError(
            f"Board {board} not found: {path}",
            code="board_not_found",
        )

    try:
        data = load_yaml(path)
        return BoardSchema.model_validate(data.get("bsp") or {})
    except (OSError, yaml.YAMLError, ValueError) as e:
        # pydantic.ValidationError is a ValueError
        raise BoardConfigError(
            f"Invalid board config {path}: {e}",
            code="board_invalid",
        ) from e


def load_cache_config(project_root: Path) -> CacheConfigSchema:
    """Load the ``build.cache`` block of strux.yaml.

    A missing file or block yields the defaults.

    Args:
        project_root: Project root directory.

    Returns:
        Validated CacheConfigSchema.

    Raises:
        BoardConfigError: If the file exists but is invalid.
    """
    path = project_root / PROJECT_CONFIG_FILENAME
    if not path.exists():
        return CacheConfigSchema()

    try:
        data = load_yaml(path)
    except (OSError, yaml.YAMLError, ValueError) as e:
        raise BoardConfigError(
            f"Invalid project config {path}: {e}",
            code="project_invalid",
        ) from e

    build = data.get("build") or {}
    cache = build.get("cache") if isinstance(build, dict) else None
    if cache is None:
        return CacheConfigSchema()

    try:
        return CacheConfigSchema.model_validate(cache)
    except ValidationError as e:
        raise BoardConfigError(
            f"Invalid build.cache block in {path}: {e}",
            code="cache_config_invalid",
        ) from e


def load_splash_config(project_root: Path) -> SplashConfigSchema:
    """Load the ``boot.splash`` block of strux.yaml.

    A missing file or block yields a disabled splash.

    Raises:
        BoardConfigError: If the file exists but is invalid.
    """
    path = project_root / PROJECT_CONFIG_FILENAME
    if not path.exists():
        return SplashConfigSchema()

    try:
        data = load_yaml(path)
    except (OSError, yaml.YAMLError, ValueError) as e:
        raise BoardConfigError(
            f"Invalid project config {path}: {e}",
            code="project_invalid",
        ) from e

    boot = data.get("boot") or {}
    splash = boot.get("splash") if isinstance(boot, dict) else None
    if not isinstance(splash, dict):
        return SplashConfigSchema()

    try:
        return SplashConfigSchema.model_validate(splash)
    except ValidationError as e:
        raise BoardConfigError(
            f"Invalid boot.splash block in {path}: {e}",
            code="splash_config_invalid",
        ) from e


def scripts_for_stage(
    board: BoardSchema,
    stage: ScriptStage | str,
) -> list[LifecycleScriptSchema]:
    """Return a board's scripts for one stage, in declared order."""
    stage = ScriptStage(stage)
    return [script for script in board.scripts if script.step == stage]


__all__ = [
    "BoardConfigError",
    "board_config_path",
    "load_board",
    "load_cache_config",
    "load_splash_config",
    "load_yaml",
    "scripts_for_stage",
]
