"""Tests for cache/manifest.py module.

Tests manifest loading (version gate, corruption, legacy migration),
saving, clearing and locking.
"""

import json
from datetime import datetime, timezone
from pathlib import Path

import pytest

from strux_build.cache.manifest import (
    CACHE_MANIFEST_VERSION,
    CacheManifest,
    CacheStore,
    ScriptCacheEntry,
    StepCacheEntry,
    compute_artifacts_hash,
)

T0 = datetime(2024, 1, 1, tzinfo=timezone.utc)


@pytest.fixture
def manifest() -> CacheManifest:
    """Create a manifest with one step and one script."""
    return CacheManifest(
        build_environment_hash="env",
        tool_version="0.1.0",
        steps={
            "frontend": StepCacheEntry(
                last_run_at=T0,
                dependency_hashes={"dir:frontend/": "abc"},
                artifacts=["cache/frontend/"],
            )
        },
        scripts={
            "pi/before_build/./fetch.sh": ScriptCacheEntry(
                last_run_at=T0,
                script_hash="def",
            )
        },
    )


class TestCacheManifestModel:
    """Tests for CacheManifest model."""

    def test_empty(self) -> None:
        """Empty manifest should carry the current version and nothing else."""
        manifest = CacheManifest.empty()
        assert manifest.format_version == CACHE_MANIFEST_VERSION
        assert manifest.steps == {}
        assert manifest.scripts == {}
        assert manifest.build_environment_hash is None

    def test_script_entry_accepts_legacy_names(self) -> None:
        """camelCase field names should be accepted."""
        entry = ScriptCacheEntry.model_validate(
            {
                "lastRun": "2024-01-01T00:00:00Z",
                "scriptHash": "abc",
                "dependencyHashes": {"./a": "1"},
                "generatedArtifacts": ["cache/a"],
            }
        )
        assert entry.script_hash == "abc"
        assert entry.dependency_hashes == {"./a": "1"}
        assert entry.generated_artifacts == ["cache/a"]
        assert entry.last_run_at == T0


class TestCacheStoreLoad:
    """Tests for CacheStore.load."""

    def test_missing_manifest(self, tmp_path: Path) -> None:
        """No file should load as empty."""
        assert CacheStore(tmp_path).load("pi") == CacheManifest.empty()

    def test_round_trip(self, tmp_path: Path, manifest: CacheManifest) -> None:
        """A saved manifest should load back unchanged."""
        store = CacheStore(tmp_path)
        path = store.save(manifest, "pi")
        assert path == tmp_path / "dist" / "cache" / "pi" / ".build-cache.json"
        assert store.load("pi") == manifest

    def test_per_board_manifests(self, tmp_path: Path, manifest: CacheManifest) -> None:
        """Boards should not share manifests."""
        store = CacheStore(tmp_path)
        store.save(manifest, "pi")
        assert store.load("x86") == CacheManifest.empty()

    def test_version_mismatch(self, tmp_path: Path) -> None:
        """Another format version should load as empty."""
        store = CacheStore(tmp_path)
        path = store.manifest_path("pi")
        path.parent.mkdir(parents=True)
        path.write_text(
            json.dumps(
                {
                    "format_version": "2",
                    "steps": {"frontend": {"last_run_at": "2024-01-01T00:00:00Z"}},
                }
            )
        )
        assert store.load("pi") == CacheManifest.empty()

    def test_missing_version(self, tmp_path: Path) -> None:
        """A manifest without version should load as empty."""
        store = CacheStore(tmp_path)
        path = store.manifest_path("pi")
        path.parent.mkdir(parents=True)
        path.write_text(json.dumps({"steps": {}}))
        assert store.load("pi") == CacheManifest.empty()

    @pytest.mark.parametrize("content", ["{not json", "[]", '"text"', ""])
    def test_corrupt_manifest(self, tmp_path: Path, content: str) -> None:
        """Unparsable content should load as empty."""
        store = CacheStore(tmp_path)
        path = store.manifest_path("pi")
        path.parent.mkdir(parents=True)
        path.write_text(content)
        assert store.load("pi") == CacheManifest.empty()

    def test_invalid_entry(self, tmp_path: Path) -> None:
        """A schema violation should load as empty."""
        store = CacheStore(tmp_path)
        path = store.manifest_path("pi")
        path.parent.mkdir(parents=True)
        path.write_text(
            json.dumps(
                {
                    "format_version": CACHE_MANIFEST_VERSION,
                    "steps": {"frontend": {"last_run_at": "yesterday"}},
                }
            )
        )
        assert store.load("pi") == CacheManifest.empty()


class TestLegacyMigration:
    """Tests for migrating the legacy script cache."""

    def _write_legacy(self, store: CacheStore, data: object) -> None:
        store.legacy_manifest_path.parent.mkdir(parents=True, exist_ok=True)
        store.legacy_manifest_path.write_text(json.dumps(data))

    def test_migrates_scripts(self, tmp_path: Path) -> None:
        """Valid legacy script entries should be migrated."""
        store = CacheStore(tmp_path)
        self._write_legacy(
            store,
            {
                "version": "1",
                "scripts": {
                    "pi/before_build/./fetch.sh": {
                        "lastRun": "2024-01-01T00:00:00Z",
                        "scriptHash": "abc",
                        "dependencyHashes": {"./kernel.config": "123"},
                        "generatedArtifacts": ["cache/kernel.tar.gz"],
                    },
                    "pi/make_image/./broken.sh": {"scriptHash": "no timestamp"},
                },
            },
        )

        manifest = store.load("pi")

        assert manifest.steps == {}
        assert list(manifest.scripts) == ["pi/before_build/./fetch.sh"]
        entry = manifest.scripts["pi/before_build/./fetch.sh"]
        assert entry.script_hash == "abc"
        assert entry.dependency_hashes == {"./kernel.config": "123"}

    def test_current_manifest_wins(self, tmp_path: Path, manifest: CacheManifest) -> None:
        """The legacy file should be ignored once a current manifest exists."""
        store = CacheStore(tmp_path)
        store.save(manifest, "pi")
        self._write_legacy(store, {"scripts": {}})
        assert store.load("pi") == manifest

    def test_corrupt_legacy(self, tmp_path: Path) -> None:
        """A broken legacy file should load as empty."""
        store = CacheStore(tmp_path)
        store.legacy_manifest_path.parent.mkdir(parents=True)
        store.legacy_manifest_path.write_text("{oops")
        assert store.load("pi") == CacheManifest.empty()

    def test_legacy_without_scripts(self, tmp_path: Path) -> None:
        """A legacy file without a scripts map should load as empty."""
        store = CacheStore(tmp_path)
        self._write_legacy(store, {"scripts": ["not", "a", "map"]})
        assert store.load("pi") == CacheManifest.empty()


class TestCacheStoreSave:
    """Tests for CacheStore.save and clear."""

    def test_no_temp_files_left(self, tmp_path: Path, manifest: CacheManifest) -> None:
        """Only the manifest should remain after saving."""
        store = CacheStore(tmp_path)
        store.save(manifest, "pi")
        store.save(manifest, "pi")
        assert [p.name for p in store.cache_dir("pi").iterdir()] == [".build-cache.json"]

    def test_written_json(self, tmp_path: Path, manifest: CacheManifest) -> None:
        """The file should be JSON with the version field."""
        store = CacheStore(tmp_path)
        data = json.loads(store.save(manifest, "pi").read_text())
        assert data["format_version"] == CACHE_MANIFEST_VERSION
        assert "frontend" in data["steps"]

    def test_clear(self, tmp_path: Path, manifest: CacheManifest) -> None:
        """clear() should remove the board's cache directory."""
        store = CacheStore(tmp_path)
        store.save(manifest, "pi")
        assert store.clear("pi") is True
        assert not store.cache_dir("pi").exists()
        assert store.clear("pi") is False


class TestCacheStoreLock:
    """Tests for CacheStore.lock."""

    def test_lock_acquire_release(self, tmp_path: Path) -> None:
        """Lock should be reusable after release."""
        store = CacheStore(tmp_path)
        with store.lock("pi", timeout=1):
            pass
        with store.lock("pi", timeout=1):
            pass
        assert (tmp_path / "dist" / "cache" / ".locks" / "pi.lock").exists()

    def test_lock_timeout(self, tmp_path: Path) -> None:
        """A held lock should time out a second acquirer."""
        store = CacheStore(tmp_path)
        with store.lock("pi"):
            with pytest.raises(TimeoutError), store.lock("pi", timeout=0.2):
                pass

    def test_boards_lock_independently(self, tmp_path: Path) -> None:
        """Different boards should not contend."""
        store = CacheStore(tmp_path)
        with store.lock("pi"), store.lock("x86", timeout=0.2):
            pass


class TestComputeArtifactsHash:
    """Tests for compute_artifacts_hash function."""

    def test_missing_artifacts(self, tmp_path: Path) -> None:
        """No hashable artifact should give None."""
        assert compute_artifacts_hash([tmp_path / "missing"]) is None

    def test_files_and_directories(self, tmp_path: Path) -> None:
        """Files and directories should both contribute."""
        (tmp_path / "out").mkdir()
        (tmp_path / "out" / "a.js").write_text("a")
        (tmp_path / "main").write_text("bin")
        combined = compute_artifacts_hash([tmp_path / "out", tmp_path / "main"])
        assert combined is not None
        (tmp_path / "main").write_text("bin2")
        assert compute_artifacts_hash([tmp_path / "out", tmp_path / "main"]) != combined
