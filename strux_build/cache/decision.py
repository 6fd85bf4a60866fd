"""Rebuild decisions for build steps.

This module handles:
- Computing the current dependency hashes of a step
- Deciding whether a step must rebuild, with a human-readable reason
- Recording a step's cache entry after it ran successfully

Decisions are values, never errors: anything unexpected while evaluating
a step resolves to a rebuild.
"""

from __future__ import annotations

import logging
from datetime import datetime

from strux_build.cache.assets import get_asset_registry
from strux_build.cache.deps import (
    get_step_artifacts,
    get_step_spec,
    is_directory_path,
    resolve_placeholders,
)
from strux_build.cache.hashing import (
    AssetRegistry,
    compute_directory_hash,
    compute_file_hash,
    extract_config_value,
    hash_text,
)
from strux_build.cache.manifest import (
    CacheManifest,
    CacheStore,
    StepCacheEntry,
    compute_artifacts_hash,
    utc_now,
)
from strux_build.types import BuildContext, BuildStep, DependencyKind, RebuildDecision

logger = logging.getLogger(__name__)


def compute_dependency_hashes(
    step: BuildStep | str,
    ctx: BuildContext,
    registry: AssetRegistry | None = None,
) -> dict[str, str]:
    """Compute the hashes of every declared input of a step.

    Inputs that do not exist produce no key, so they compare as changed
    or removed against a cached entry.

    Args:
        step: Build step.
        ctx: Build context (project root, board, ignore patterns).
        registry: Bundled asset registry; defaults to the process-wide one.

    Returns:
        Mapping of namespaced dependency key to hash.
    """
    spec = get_step_spec(step)
    if registry is None:
        registry = get_asset_registry()

    hashes: dict[str, str] = {}

    for file in spec.files:
        resolved = resolve_placeholders(file, ctx.target)
        digest = compute_file_hash(ctx.project_root / resolved)
        if digest:
            hashes[DependencyKind.FILE.key(resolved)] = digest

    found_directories = 0
    ignore_patterns = [*ctx.ignore_patterns, *spec.exclude_patterns]
    for directory in spec.directories:
        resolved = resolve_placeholders(directory, ctx.target)
        digest = compute_directory_hash(ctx.project_root / resolved, ignore_patterns)
        if digest:
            hashes[DependencyKind.DIRECTORY.key(resolved)] = digest
            found_directories += 1

    for config_key in spec.config_keys:
        resolved = resolve_placeholders(config_key.file, ctx.target)
        value = extract_config_value(ctx.project_root / resolved, config_key.key_path)
        if value is not None:
            key = DependencyKind.CONFIG.key(f"{resolved}:{config_key.key_path}")
            hashes[key] = hash_text(value)

    for asset_id in spec.assets:
        digest = registry.hash(asset_id)
        if digest:
            hashes[DependencyKind.ASSET.key(asset_id)] = digest

    # First build: sources have not been copied into the project yet
    if spec.fallback_assets and found_directories < len(spec.directories):
        for asset_id in spec.fallback_assets:
            digest = registry.hash(asset_id)
            if digest:
                hashes[DependencyKind.ASSET_FALLBACK.key(asset_id)] = digest

    return hashes


def _missing_artifact(step: BuildStep, ctx: BuildContext) -> str | None:
    for artifact in get_step_artifacts(step, ctx.target):
        path = ctx.dist_dir / artifact
        if is_directory_path(artifact):
            if not path.is_dir():
                return f"artifact directory missing: {artifact}"
        elif not path.is_file():
            return f"artifact missing: {artifact}"
    return None


def _evaluate(
    step: BuildStep,
    manifest: CacheManifest,
    ctx: BuildContext,
    registry: AssetRegistry | None,
) -> RebuildDecision:
    if ctx.clean:
        return RebuildDecision(True, "clean build requested")

    if step.value in ctx.force_rebuild:
        return RebuildDecision(True, "force rebuild configured")

    cached = manifest.steps.get(step.value)
    if cached is None:
        return RebuildDecision(True, "no cache entry")

    missing = _missing_artifact(step, ctx)
    if missing:
        return RebuildDecision(True, missing)

    current = compute_dependency_hashes(step, ctx, registry)
    for key, digest in current.items():
        if cached.dependency_hashes.get(key) != digest:
            return RebuildDecision(True, f"dependency changed: {key}")

    for key in cached.dependency_hashes:
        if key not in current:
            return RebuildDecision(True, f"dependency removed: {key}")

    for upstream in get_step_spec(step).depends_on_steps:
        upstream_cached = manifest.steps.get(upstream.value)
        if upstream_cached is None:
            return RebuildDecision(True, f"upstream step not cached: {upstream.value}")
        if upstream_cached.last_run_at > cached.last_run_at:
            return RebuildDecision(True, f"upstream step rebuilt: {upstream.value}")

    return RebuildDecision(False)


def should_rebuild_step(
    step: BuildStep | str,
    manifest: CacheManifest,
    ctx: BuildContext,
    registry: AssetRegistry | None = None,
) -> RebuildDecision:
    """Decide whether a build step must run.

    Checks, in order, stopping at the first hit: clean build, forced
    step, missing cache entry, missing artifact, changed or removed
    dependency, upstream step missing from the cache or run later than
    this step.

    Args:
        step: Build step.
        manifest: Board manifest.
        ctx: Build context.
        registry: Bundled asset registry; defaults to the process-wide one.

    Returns:
        RebuildDecision; rebuild=False only when every check passed. An
        unknown step name or a failing check resolves to a rebuild.
    """
    try:
        step = BuildStep(step)
    except ValueError:
        logger.debug("Rebuilding unknown step %s", step)
        return RebuildDecision(True, f"unknown step: {step}")

    try:
        decision = _evaluate(step, manifest, ctx, registry)
    except (OSError, TypeError, ValueError) as e:
        # TypeError covers naive vs aware timestamps in hand-edited manifests
        decision = RebuildDecision(True, f"cache check failed: {e}")

    if decision.rebuild:
        logger.debug("Rebuilding %s: %s", step.value, decision.reason)
    return decision


def update_step_cache(
    step: BuildStep | str,
    manifest: CacheManifest,
    ctx: BuildContext,
    store: CacheStore,
    registry: AssetRegistry | None = None,
    now: datetime | None = None,
) -> StepCacheEntry:
    """Record a step's cache entry after it succeeded and persist it.

    Args:
        step: Build step that just completed.
        manifest: Board manifest, updated in place.
        ctx: Build context.
        store: Store used to persist the manifest.
        registry: Bundled asset registry; defaults to the process-wide one.
        now: Completion time (defaults to the current UTC time).

    Returns:
        The new cache entry.
    """
    step = BuildStep(step)
    artifacts = get_step_artifacts(step, ctx.target)
    entry = StepCacheEntry(
        last_run_at=now or utc_now(),
        dependency_hashes=compute_dependency_hashes(step, ctx, registry),
        artifacts=artifacts,
        combined_artifact_hash=compute_artifacts_hash(
            ctx.dist_dir / artifact for artifact in artifacts
        ),
    )
    manifest.steps[step.value] = entry
    store.save(manifest, ctx.target)
    logger.debug("Recorded cache entry for %s", step.value)
    return entry


__all__ = [
    "compute_dependency_hashes",
    "should_rebuild_step",
    "update_step_cache",
]
