"""Configuration settings for strux_build.

Uses pydantic-settings for config parsing from environment variables
and defaults. Configuration precedence: CLI flags > env vars >
strux.yaml ``build.cache`` block > defaults.
"""

from pathlib import Path
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from strux_build.types import BuildContext


class Settings(BaseSettings):
    """Application settings.

    Settings are loaded from environment variables with the STRUX_ prefix.
    CLI flags can override these at runtime.
    """

    model_config = SettingsConfigDict(
        env_prefix="STRUX_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Paths
    project_path: Path = Field(
        default_factory=Path.cwd,
        description="Root of the project (directory containing strux.yaml)",
    )
    board: str | None = Field(
        default=None,
        description="Active board (BSP) name; selects the cache manifest",
    )

    # Operational modes
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        description="Logging level",
    )

    # Build cache
    cache_enabled: bool = Field(
        default=True,
        description="Skip build steps whose inputs did not change",
    )
    force_rebuild: list[str] = Field(
        default_factory=list,
        description="Build steps that are always rebuilt",
    )
    ignore_patterns: list[str] = Field(
        default_factory=list,
        description="Extra names or *.ext globs ignored when hashing directories",
    )

    # Container execution
    container_image: str = Field(
        default="strux-builder",
        description="Tag of the builder container image",
    )

    # Timeouts (in seconds)
    script_timeout: int = Field(
        default=3600,
        ge=60,
        description="Timeout for a single lifecycle script",
    )
    lock_timeout: float = Field(
        default=30.0,
        ge=0,
        description="Timeout waiting for the manifest lock of a board",
    )

    def build_context(
        self,
        board: str | None = None,
        clean: bool = False,
        force_rebuild: list[str] | None = None,
        ignore_patterns: list[str] | None = None,
    ) -> BuildContext:
        """Create the explicit context handed to the cache engine.

        Args:
            board: Board override (falls back to the configured board).
            clean: Clean build requested.
            force_rebuild: Extra steps to force, merged with settings.
            ignore_patterns: Extra ignore patterns, merged with settings.

        Returns:
            BuildContext for one invocation.

        Raises:
            ValueError: If no board is configured.
        """
        target = board or self.board
        if not target:
            raise ValueError("No board selected. Pass --board or set STRUX_BOARD")

        forced = list(self.force_rebuild)
        for step in force_rebuild or []:
            if step not in forced:
                forced.append(step)

        ignored = list(self.ignore_patterns)
        for pattern in ignore_patterns or []:
            if pattern not in ignored:
                ignored.append(pattern)

        return BuildContext(
            project_root=self.project_path,
            target=target,
            clean=clean,
            force_rebuild=tuple(forced),
            ignore_patterns=tuple(ignored),
        )


def get_settings() -> Settings:
    """Get the application settings singleton.

    Returns:
        Settings instance loaded from environment.
    """
    return Settings()


def print_settings_json(settings: Settings | None = None) -> str:
    """Render effective settings as JSON.

    Args:
        settings: Optional settings instance; uses default if not provided.

    Returns:
        JSON string of effective settings.
    """
    if settings is None:
        settings = get_settings()
    return settings.model_dump_json(indent=2)


__all__ = ["Settings", "get_settings", "print_settings_json"]
