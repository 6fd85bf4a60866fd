"""Pydantic models for the parts of board and project YAML the build uses.

Only the fields the build cache and lifecycle scripts read are modelled;
other keys are accepted and ignored.
"""

from pydantic import BaseModel, ConfigDict, Field, field_validator

from strux_build.types import ScriptStage


class LifecycleScriptSchema(BaseModel):
    """Schema for a board lifecycle script.

    Attributes:
        location: Script path, relative to the board directory.
        step: Pipeline stage the script hooks into.
        description: Optional human-readable name.
        depends_on: Files whose change reruns the script. ``./`` paths are
            relative to the board directory; ``cache/`` and ``output/``
            paths resolve to the board's cache and output directories;
            anything else is relative to ``dist/``.
        cached_generated_artifacts: Files the script produces. A script
            without any is never skipped.
    """

    model_config = ConfigDict(extra="ignore")

    location: str = Field(description="Script path relative to the board directory")
    step: ScriptStage = Field(description="Pipeline stage to run at")
    description: str | None = Field(default=None)
    depends_on: list[str] = Field(default_factory=list)
    cached_generated_artifacts: list[str] = Field(default_factory=list)

    @field_validator("location")
    @classmethod
    def validate_location(cls, v: str) -> str:
        """Validate location is a relative path."""
        if not v.strip():
            raise ValueError("location must not be empty")
        if v.startswith("/"):
            raise ValueError("location must be relative to the board directory")
        return v

    @property
    def display_name(self) -> str:
        """Name shown in logs."""
        return self.description or self.location


class BoardSchema(BaseModel):
    """Schema for the ``bsp`` block of ``bsp/<board>/bsp.yaml``."""

    model_config = ConfigDict(extra="ignore")

    name: str
    arch: str
    description: str | None = None
    hostname: str | None = None
    scripts: list[LifecycleScriptSchema] = Field(default_factory=list)


class CacheConfigSchema(BaseModel):
    """Schema for the ``build.cache`` block of ``strux.yaml``.

    Attributes:
        enabled: Use the build cache at all.
        force_rebuild: Steps that always rebuild.
        ignore_patterns: Names or ``*.ext`` globs ignored when hashing
            directories.
    """

    model_config = ConfigDict(extra="forbid")

    enabled: bool = True
    force_rebuild: list[str] = Field(default_factory=list)
    ignore_patterns: list[str] = Field(default_factory=list)


class SplashConfigSchema(BaseModel):
    """Schema for the ``boot.splash`` block of ``strux.yaml``.

    Attributes:
        enabled: Show a boot splash.
        logo: Logo image, relative to the project root.
    """

    model_config = ConfigDict(extra="ignore")

    enabled: bool = False
    logo: str | None = None


__all__ = [
    "BoardSchema",
    "CacheConfigSchema",
    "LifecycleScriptSchema",
    "SplashConfigSchema",
]
