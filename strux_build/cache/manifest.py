"""Build cache manifest models and persistence.

This module handles:
- The versioned manifest schema (steps and lifecycle scripts)
- Loading per-board manifests with parse-or-default semantics
- One-time migration from the legacy combined script cache
- Whole-file manifest writes and an advisory per-board lock

A manifest that cannot be read, fails validation, or carries another
format version is replaced by an empty one. Loading never raises.
"""

from __future__ import annotations

import fcntl
import json
import logging
import os
import shutil
import tempfile
import time
from collections.abc import Iterable, Iterator
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Literal

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError

from strux_build.cache.hashing import compute_directory_hash, compute_file_hash, hash_text

logger = logging.getLogger(__name__)

# Bump when the manifest layout changes; older manifests are discarded
CACHE_MANIFEST_VERSION = "3"

MANIFEST_FILENAME = ".build-cache.json"
LEGACY_MANIFEST_FILENAME = ".script-cache.json"
LOCKS_DIRNAME = ".locks"


def utc_now() -> datetime:
    """Return the current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


class StepCacheEntry(BaseModel):
    """Record of the last successful run of a build step.

    Attributes:
        last_run_at: When the step finished.
        dependency_hashes: Dependency key to hash at that time.
        artifacts: Artifacts the step produced (relative to dist/).
        combined_artifact_hash: Combined hash of the artifacts; recorded
            but not used to decide rebuilds.
    """

    model_config = ConfigDict(extra="ignore")

    last_run_at: datetime
    dependency_hashes: dict[str, str] = Field(default_factory=dict)
    artifacts: list[str] = Field(default_factory=list)
    combined_artifact_hash: str | None = None


class ScriptCacheEntry(BaseModel):
    """Record of the last successful run of a lifecycle script.

    Accepts the camelCase field names of the legacy script cache.
    """

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    last_run_at: datetime = Field(
        validation_alias=AliasChoices("last_run_at", "lastRun"),
    )
    script_hash: str = Field(
        default="",
        validation_alias=AliasChoices("script_hash", "scriptHash"),
    )
    dependency_hashes: dict[str, str] = Field(
        default_factory=dict,
        validation_alias=AliasChoices("dependency_hashes", "dependencyHashes"),
    )
    generated_artifacts: list[str] = Field(
        default_factory=list,
        validation_alias=AliasChoices("generated_artifacts", "generatedArtifacts"),
    )


class CacheManifest(BaseModel):
    """Persisted build cache state of one board.

    Attributes:
        format_version: Manifest layout version; must equal
            CACHE_MANIFEST_VERSION.
        build_environment_hash: Hash of the builder container recipe the
            cached steps ran in.
        tool_version: Version of strux_build that wrote the manifest.
        steps: Step name to cache entry.
        scripts: Script cache key to cache entry.
    """

    model_config = ConfigDict(extra="forbid")

    format_version: Literal["3"] = CACHE_MANIFEST_VERSION
    build_environment_hash: str | None = None
    tool_version: str | None = None
    steps: dict[str, StepCacheEntry] = Field(default_factory=dict)
    scripts: dict[str, ScriptCacheEntry] = Field(default_factory=dict)

    @classmethod
    def empty(cls) -> CacheManifest:
        """Create a manifest with nothing cached."""
        return cls()


def compute_artifacts_hash(paths: Iterable[Path]) -> str | None:
    """Compute a combined hash over a step's artifacts.

    Args:
        paths: Artifact paths (files or directories), in declared order.

    Returns:
        SHA-256 hex digest, or None if no artifact could be hashed.
    """
    lines: list[str] = []
    for path in paths:
        digest = compute_directory_hash(path) if path.is_dir() else compute_file_hash(path)
        if digest is not None:
            lines.append(f"{path.name}:{digest}\n")
    if not lines:
        return None
    return hash_text("".join(lines))


def _read_json_object(path: Path) -> dict[str, Any]:
    with path.open(encoding="utf-8") as f:
        data = json.load(f)
    if not isinstance(data, dict):
        raise ValueError(f"Expected a JSON object, got {type(data).__name__}")
    return data


class CacheStore:
    """Loads and saves per-board manifests below ``<project>/dist/cache``.

    One process is expected to own a board's manifest for the duration of
    an invocation; use lock() when several invocations may overlap.
    """

    def __init__(self, project_root: Path) -> None:
        self.project_root = project_root

    @property
    def cache_root(self) -> Path:
        """Shared cache directory of the project."""
        return self.project_root / "dist" / "cache"

    def cache_dir(self, target: str) -> Path:
        """Board-scoped cache directory."""
        return self.cache_root / target

    def manifest_path(self, target: str) -> Path:
        """Path of a board's manifest file."""
        return self.cache_dir(target) / MANIFEST_FILENAME

    @property
    def legacy_manifest_path(self) -> Path:
        """Path of the pre-per-board script cache."""
        return self.cache_root / LEGACY_MANIFEST_FILENAME

    def load(self, target: str) -> CacheManifest:
        """Load a board's manifest.

        Args:
            target: Board name.

        Returns:
            The stored manifest, a manifest migrated from the legacy script
            cache, or an empty manifest.
        """
        path = self.manifest_path(target)
        if path.exists():
            return self._load_current(path)
        if self.legacy_manifest_path.exists():
            return self._migrate_legacy(self.legacy_manifest_path)
        return CacheManifest.empty()

    def _load_current(self, path: Path) -> CacheManifest:
        try:
            data = _read_json_object(path)
        except (OSError, ValueError) as e:
            logger.debug("Failed to parse cache manifest %s, resetting cache: %s", path, e)
            return CacheManifest.empty()

        version = data.get("format_version")
        if version != CACHE_MANIFEST_VERSION:
            logger.debug(
                "Cache manifest version mismatch (%s != %s), resetting cache",
                version,
                CACHE_MANIFEST_VERSION,
            )
            return CacheManifest.empty()

        try:
            return CacheManifest.model_validate(data)
        except ValidationError as e:
            logger.debug("Invalid cache manifest %s, resetting cache: %s", path, e)
            return CacheManifest.empty()

    def _migrate_legacy(self, path: Path) -> CacheManifest:
        manifest = CacheManifest.empty()
        try:
            data = _read_json_object(path)
        except (OSError, ValueError) as e:
            logger.debug("Failed to migrate legacy cache manifest %s: %s", path, e)
            return manifest

        scripts = data.get("scripts")
        if not isinstance(scripts, dict):
            return manifest

        for key, raw_entry in scripts.items():
            try:
                manifest.scripts[str(key)] = ScriptCacheEntry.model_validate(raw_entry)
            except ValidationError:
                logger.debug("Dropping invalid legacy script cache entry: %s", key)

        logger.debug(
            "Migrated %d script entries from %s", len(manifest.scripts), path.name
        )
        return manifest

    def save(self, manifest: CacheManifest, target: str) -> Path:
        """Write a board's manifest, replacing the previous file.

        Args:
            manifest: Manifest to persist.
            target: Board name.

        Returns:
            Path to the written manifest.
        """
        path = self.manifest_path(target)
        path.parent.mkdir(parents=True, exist_ok=True)

        fd, tmp_name = tempfile.mkstemp(prefix=".build-cache.", dir=path.parent)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(manifest.model_dump_json(indent=2))
            os.replace(tmp_name, path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise

        logger.debug("Saved cache manifest to %s", path)
        return path

    def clear(self, target: str) -> bool:
        """Delete a board's cache directory (clean build).

        Args:
            target: Board name.

        Returns:
            True if a directory was removed.
        """
        cache_dir = self.cache_dir(target)
        if not cache_dir.exists():
            return False
        shutil.rmtree(cache_dir)
        logger.info("Removed cache directory %s", cache_dir)
        return True

    @contextmanager
    def lock(self, target: str, timeout: float | None = None) -> Iterator[None]:
        """Hold an advisory lock on a board's manifest.

        Args:
            target: Board name.
            timeout: Lock acquisition timeout in seconds (None = blocking).

        Yields:
            None when lock is acquired.

        Raises:
            TimeoutError: If lock cannot be acquired within timeout.
        """
        lock_dir = self.cache_root / LOCKS_DIRNAME
        lock_dir.mkdir(parents=True, exist_ok=True)
        lock_file = lock_dir / f"{target.replace('/', '_')}.lock"

        logger.debug("Acquiring cache lock for %s", target)

        fd = os.open(str(lock_file), os.O_RDWR | os.O_CREAT, 0o600)
        try:
            if timeout is not None:
                start = time.monotonic()
                while True:
                    try:
                        fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
                        break
                    except BlockingIOError as e:
                        if time.monotonic() - start >= timeout:
                            raise TimeoutError(
                                f"Timeout waiting for cache lock of board {target}"
                            ) from e
                        time.sleep(0.1)
            else:
                fcntl.flock(fd, fcntl.LOCK_EX)

            logger.debug("Cache lock acquired for %s", target)
            yield
        finally:
            fcntl.flock(fd, fcntl.LOCK_UN)
            os.close(fd)
            logger.debug("Cache lock released for %s", target)


__all__ = [
    "CACHE_MANIFEST_VERSION",
    "LEGACY_MANIFEST_FILENAME",
    "MANIFEST_FILENAME",
    "CacheManifest",
    "CacheStore",
    "ScriptCacheEntry",
    "StepCacheEntry",
    "compute_artifacts_hash",
    "utc_now",
]
