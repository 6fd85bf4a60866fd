"""Incremental build cache.

This module handles:
- Content hashing of files, directories, config values and bundled assets
- The per-step dependency registry
- Versioned per-board manifests
- Rebuild decisions for build steps and lifecycle scripts
- Build environment invalidation
"""

from strux_build.cache.manifest import (
    CacheManifest,
    CacheStore,
    ScriptCacheEntry,
    StepCacheEntry,
)

__all__ = ["CacheManifest", "CacheStore", "ScriptCacheEntry", "StepCacheEntry"]

# Access the engine via strux_build.cache.decision, strux_build.cache.scripts, etc.
