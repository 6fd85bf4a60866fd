"""Build orchestration module.

This module handles:
- Running scripts in the builder container
- Cache-aware sequencing of build steps and lifecycle scripts
- Step scripts and first-build artifacts
"""

from strux_build.builds.pipeline import (
    BUILD_SEQUENCE,
    BuildPipeline,
    BuildReport,
    ScriptOutcome,
)
from strux_build.builds.runner import ScriptExecutionError, ScriptResult

__all__ = [
    "BUILD_SEQUENCE",
    "BuildPipeline",
    "BuildReport",
    "ScriptExecutionError",
    "ScriptOutcome",
    "ScriptResult",
]
