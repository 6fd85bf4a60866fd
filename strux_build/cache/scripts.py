"""Cache for board lifecycle scripts.

Lifecycle scripts are not part of the step graph. A script is skipped
only when it declares generated artifacts that all exist, it has a cache
entry, its own file is unchanged, and every declared dependency exists
with an unchanged hash.

Path namespaces:
- ``cache/<path>``  -> ``dist/cache/<board>/<path>``
- ``output/<path>`` -> ``dist/output/<board>/<path>``
- ``./<path>``      -> ``bsp/<board>/<path>`` (dependencies only)
- anything else     -> ``dist/<path>``
"""

from __future__ import annotations

import logging
from datetime import datetime
from pathlib import Path

from strux_build.boards.schema import LifecycleScriptSchema
from strux_build.cache.hashing import compute_file_hash
from strux_build.cache.manifest import CacheManifest, CacheStore, ScriptCacheEntry, utc_now
from strux_build.types import BuildContext, ScriptStage

logger = logging.getLogger(__name__)

CACHE_PREFIX = "cache/"
OUTPUT_PREFIX = "output/"
BOARD_RELATIVE_PREFIX = "./"


def script_cache_key(target: str, stage: ScriptStage | str, location: str) -> str:
    """Build the manifest key of a lifecycle script."""
    stage_value = stage.value if isinstance(stage, ScriptStage) else stage
    return f"{target}/{stage_value}/{location}"


def resolve_artifact_path(artifact: str, ctx: BuildContext) -> Path:
    """Resolve a script artifact path to its location on disk."""
    if artifact.startswith(CACHE_PREFIX):
        return ctx.cache_dir / artifact[len(CACHE_PREFIX) :]
    if artifact.startswith(OUTPUT_PREFIX):
        return ctx.output_dir / artifact[len(OUTPUT_PREFIX) :]
    return ctx.dist_dir / artifact


def resolve_dependency_path(dependency: str, ctx: BuildContext) -> Path:
    """Resolve a script dependency path to its location on disk."""
    if dependency.startswith(BOARD_RELATIVE_PREFIX):
        return ctx.board_dir / dependency[len(BOARD_RELATIVE_PREFIX) :]
    return resolve_artifact_path(dependency, ctx)


def resolve_script_path(location: str, ctx: BuildContext) -> Path:
    """Resolve a script location relative to the board directory."""
    if location.startswith(BOARD_RELATIVE_PREFIX):
        location = location[len(BOARD_RELATIVE_PREFIX) :]
    return ctx.board_dir / location


def should_skip_script(
    script: LifecycleScriptSchema,
    cache_key: str,
    manifest: CacheManifest,
    ctx: BuildContext,
) -> bool:
    """Check whether a lifecycle script can be skipped.

    Args:
        script: Script definition from the board config.
        cache_key: Manifest key of the script (see script_cache_key).
        manifest: Board manifest.
        ctx: Build context.

    Returns:
        True if every skip condition holds; False means run the script.
    """
    if ctx.clean:
        return False

    # Nothing to check for: always run
    if not script.cached_generated_artifacts:
        return False

    for artifact in script.cached_generated_artifacts:
        if not resolve_artifact_path(artifact, ctx).exists():
            logger.debug("Artifact missing: %s", artifact)
            return False

    cached = manifest.scripts.get(cache_key)
    if cached is None:
        logger.debug("No cache entry found for: %s", cache_key)
        return False

    script_hash = compute_file_hash(resolve_script_path(script.location, ctx))
    if script_hash != cached.script_hash:
        logger.info("Script file changed: %s", script.location)
        return False

    for dependency in script.depends_on:
        current = compute_file_hash(resolve_dependency_path(dependency, ctx))
        if current is None:
            logger.debug("Dependency file not found, will run script: %s", dependency)
            return False

        previous = cached.dependency_hashes.get(dependency)
        if previous is None:
            logger.debug("No cached hash for dependency: %s", dependency)
            return False

        if current != previous:
            logger.info("Dependency changed: %s", dependency)
            return False

    return True


def record_script_run(
    script: LifecycleScriptSchema,
    cache_key: str,
    manifest: CacheManifest,
    ctx: BuildContext,
    store: CacheStore,
    now: datetime | None = None,
) -> ScriptCacheEntry:
    """Record a lifecycle script run and persist the manifest.

    Args:
        script: Script that just completed successfully.
        cache_key: Manifest key of the script.
        manifest: Board manifest, updated in place.
        ctx: Build context.
        store: Store used to persist the manifest.
        now: Completion time (defaults to the current UTC time).

    Returns:
        The new cache entry.
    """
    dependency_hashes: dict[str, str] = {}
    for dependency in script.depends_on:
        digest = compute_file_hash(resolve_dependency_path(dependency, ctx))
        if digest is not None:
            dependency_hashes[dependency] = digest

    entry = ScriptCacheEntry(
        last_run_at=now or utc_now(),
        script_hash=compute_file_hash(resolve_script_path(script.location, ctx)) or "",
        dependency_hashes=dependency_hashes,
        generated_artifacts=list(script.cached_generated_artifacts),
    )
    manifest.scripts[cache_key] = entry
    store.save(manifest, ctx.target)
    return entry


__all__ = [
    "record_script_run",
    "resolve_artifact_path",
    "resolve_dependency_path",
    "resolve_script_path",
    "script_cache_key",
    "should_skip_script",
]
