"""Build environment invalidation.

Every build step runs inside the builder container, so a change to the
container recipe invalidates all cached steps. Lifecycle script entries
are kept: they track their own inputs.
"""

from __future__ import annotations

import logging

from strux_build.cache.assets import DOCKERFILE_ASSET
from strux_build.cache.hashing import AssetRegistry
from strux_build.cache.manifest import CacheManifest, CacheStore

logger = logging.getLogger(__name__)


class BuildEnvironmentInvalidator:
    """Tracks the builder container recipe recorded in a manifest."""

    def __init__(self, registry: AssetRegistry, tool_version: str) -> None:
        self.registry = registry
        self.tool_version = tool_version

    def current_hash(self) -> str:
        """Return the hash of the bundled container recipe."""
        digest = self.registry.hash(DOCKERFILE_ASSET)
        if digest is None:
            raise KeyError(f"Bundled asset not registered: {DOCKERFILE_ASSET}")
        return digest

    def should_rebuild_environment(self, manifest: CacheManifest) -> bool:
        """Check whether the recipe differs from the one recorded."""
        return manifest.build_environment_hash != self.current_hash()

    def record_environment(self, manifest: CacheManifest) -> None:
        """Record the current recipe hash and tool version."""
        manifest.build_environment_hash = self.current_hash()
        manifest.tool_version = self.tool_version

    def invalidate_all_steps(self, manifest: CacheManifest) -> int:
        """Drop every step entry and record the current environment.

        Args:
            manifest: Board manifest, updated in place.

        Returns:
            Number of step entries removed.
        """
        removed = len(manifest.steps)
        manifest.steps.clear()
        self.record_environment(manifest)
        logger.info("Build environment rebuilt, invalidated %d cached steps", removed)
        return removed

    def sync(
        self,
        manifest: CacheManifest,
        rebuilt: bool,
        store: CacheStore,
        target: str,
    ) -> None:
        """Apply the outcome of preparing the builder image and persist it.

        Args:
            manifest: Board manifest.
            rebuilt: Whether the builder image was (re)built.
            store: Store used to persist the manifest.
            target: Board name.
        """
        if rebuilt:
            self.invalidate_all_steps(manifest)
        else:
            self.record_environment(manifest)
        store.save(manifest, target)


__all__ = ["BuildEnvironmentInvalidator"]
