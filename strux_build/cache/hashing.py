"""Content hashing for the build cache.

This module handles:
- Hashing single files (streamed SHA-256)
- Hashing directory trees with ignore patterns
- Extracting and serializing values from YAML config files
- Hashing bundled assets held in an in-memory registry

Every function returns None for inputs that do not exist instead of
raising; callers treat None as "does not match anything cached".
"""

from __future__ import annotations

import hashlib
import json
import logging
from collections.abc import Iterable, Mapping, Sequence
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import Any

import yaml

logger = logging.getLogger(__name__)

# Default chunk size for hashing
HASH_CHUNK_SIZE = 64 * 1024  # 64KB

# Always skipped when walking a directory
DEFAULT_IGNORE_PATTERNS: tuple[str, ...] = (
    "node_modules",
    ".git",
    ".DS_Store",
    "*.log",
)

# Directories with at least this many files are hashed in a thread pool
PARALLEL_HASH_THRESHOLD = 64
MAX_HASH_WORKERS = 8


def hash_bytes(data: bytes) -> str:
    """Return the SHA-256 hex digest of raw bytes."""
    return hashlib.sha256(data).hexdigest()


def hash_text(value: str) -> str:
    """Return the SHA-256 hex digest of a UTF-8 string."""
    return hash_bytes(value.encode("utf-8"))


def compute_file_hash(
    file_path: Path,
    chunk_size: int = HASH_CHUNK_SIZE,
) -> str | None:
    """Compute SHA-256 hash of a file.

    Args:
        file_path: Path to the file.
        chunk_size: Size of chunks for streaming hash.

    Returns:
        SHA-256 hex digest, or None if the file does not exist or
        cannot be read.
    """
    if not file_path.is_file():
        return None

    sha256 = hashlib.sha256()
    try:
        with file_path.open("rb") as f:
            while chunk := f.read(chunk_size):
                sha256.update(chunk)
    except OSError as e:
        logger.debug("Cannot read %s for hashing: %s", file_path, e)
        return None
    return sha256.hexdigest()


def should_ignore(name: str, patterns: Iterable[str]) -> bool:
    """Check whether a directory entry name matches an ignore pattern.

    A pattern is either an exact name (``node_modules``) or a suffix glob
    starting with ``*`` (``*.log``).

    Args:
        name: Entry name (not a path).
        patterns: Ignore patterns.

    Returns:
        True if the entry should be skipped.
    """
    for pattern in patterns:
        if pattern.startswith("*"):
            if name.endswith(pattern[1:]):
                return True
        elif name == pattern:
            return True
    return False


def collect_files(directory: Path, ignore_patterns: Sequence[str]) -> list[Path]:
    """Recursively collect regular files below a directory.

    Entries whose name matches an ignore pattern are skipped at any depth;
    an ignored directory is not descended into. Symlinks are not followed.

    Args:
        directory: Directory to walk.
        ignore_patterns: Patterns as accepted by should_ignore.

    Returns:
        Unsorted list of file paths.
    """
    files: list[Path] = []
    try:
        entries = list(directory.iterdir())
    except OSError as e:
        logger.debug("Cannot list %s: %s", directory, e)
        return files

    for entry in entries:
        if should_ignore(entry.name, ignore_patterns):
            continue
        if entry.is_symlink():
            continue
        if entry.is_dir():
            files.extend(collect_files(entry, ignore_patterns))
        elif entry.is_file():
            files.append(entry)
    return files


def compute_directory_hash(
    directory: Path,
    ignore_patterns: Sequence[str] = (),
) -> str | None:
    """Compute a deterministic hash of a directory tree.

    The hash covers one ``<relative_path>:<file_hash>`` line per file,
    in lexicographic order of the relative POSIX paths, so it changes
    when files are edited, added, removed, or renamed but not when the
    filesystem enumerates entries in a different order.

    Args:
        directory: Directory to hash.
        ignore_patterns: Patterns added to DEFAULT_IGNORE_PATTERNS.

    Returns:
        SHA-256 hex digest, or None if the directory is missing or holds
        no non-ignored files.
    """
    if not directory.is_dir():
        return None

    patterns = [*DEFAULT_IGNORE_PATTERNS, *ignore_patterns]
    files = collect_files(directory, patterns)
    if not files:
        return None

    relative = sorted((path.relative_to(directory).as_posix(), path) for path in files)
    paths = [path for _, path in relative]

    if len(paths) >= PARALLEL_HASH_THRESHOLD:
        with ThreadPoolExecutor(max_workers=MAX_HASH_WORKERS) as pool:
            file_hashes = list(pool.map(compute_file_hash, paths))
    else:
        file_hashes = [compute_file_hash(path) for path in paths]

    lines = [
        f"{rel_path}:{file_hash}\n"
        for (rel_path, _), file_hash in zip(relative, file_hashes, strict=True)
        # Files that vanished mid-walk are left out
        if file_hash is not None
    ]
    if not lines:
        return None
    return hash_text("".join(lines))


def _load_yaml_document(path: Path) -> Any:
    with path.open(encoding="utf-8") as f:
        return yaml.safe_load(f)


def _is_list(value: Any) -> bool:
    return isinstance(value, Sequence) and not isinstance(value, (str, bytes))


def extract_config_value(path: Path, key_path: str) -> str | None:
    """Extract a value from a YAML file at a dot-notation path.

    Args:
        path: Path to the YAML file.
        key_path: Dotted key path (e.g. ``bsp.rootfs.packages``). Integer
            segments index into lists (e.g. ``bsp.scripts.0.location``).

    Returns:
        Canonical JSON serialization of the value, or None if the file
        is missing or unparsable, a segment is missing or out of range,
        a scalar is traversed, or the value is null.
    """
    if not path.is_file():
        return None

    try:
        current = _load_yaml_document(path)
    except (OSError, yaml.YAMLError) as e:
        logger.debug("Cannot parse %s: %s", path, e)
        return None

    for part in key_path.split("."):
        if isinstance(current, Mapping):
            current = current.get(part)
        elif _is_list(current) and part.isdigit() and int(part) < len(current):
            current = current[int(part)]
        else:
            return None
        if current is None:
            return None

    try:
        return json.dumps(current, sort_keys=True, separators=(",", ":"), default=str)
    except (TypeError, ValueError):
        return None


class AssetRegistry:
    """In-memory registry of assets bundled with the tool.

    Maps an asset id to the byte contents making it up. Hashes are
    computed lazily and memoized for the lifetime of the registry, so a
    process-wide registry hashes every asset at most once.
    """

    def __init__(self, assets: Mapping[str, Sequence[bytes]]) -> None:
        self._assets = {asset_id: tuple(parts) for asset_id, parts in assets.items()}
        self._hashes: dict[str, str] = {}

    def __contains__(self, asset_id: object) -> bool:
        return asset_id in self._assets

    def ids(self) -> list[str]:
        """Return the registered asset ids, sorted."""
        return sorted(self._assets)

    def content(self, asset_id: str) -> tuple[bytes, ...] | None:
        """Return the raw parts of an asset, or None if unknown."""
        return self._assets.get(asset_id)

    def hash(self, asset_id: str) -> str | None:
        """Return the memoized hash of an asset, or None if unknown."""
        cached = self._hashes.get(asset_id)
        if cached is not None:
            return cached

        parts = self._assets.get(asset_id)
        if parts is None:
            return None

        digest = hash_bytes(b"\n".join(parts))
        self._hashes[asset_id] = digest
        return digest

    def hashes(self) -> dict[str, str]:
        """Return the hashes of every registered asset."""
        return {asset_id: self.hash(asset_id) or "" for asset_id in self.ids()}


__all__ = [
    "DEFAULT_IGNORE_PATTERNS",
    "HASH_CHUNK_SIZE",
    "AssetRegistry",
    "collect_files",
    "compute_directory_hash",
    "compute_file_hash",
    "extract_config_value",
    "hash_bytes",
    "hash_text",
    "should_ignore",
]
