"""Tests for cache/decision.py module.

Covers dependency hashing per step and the ordered rebuild checks.
"""

import shutil
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from pathlib import Path
from unittest.mock import patch

import pytest

from strux_build.cache.decision import (
    compute_dependency_hashes,
    should_rebuild_step,
    update_step_cache,
)
from strux_build.cache.hashing import AssetRegistry, compute_directory_hash
from strux_build.cache.manifest import CacheManifest, CacheStore, StepCacheEntry
from strux_build.types import BuildContext, BuildStep, RebuildDecision

T0 = datetime(2024, 1, 1, tzinfo=timezone.utc)

UPSTREAM_STEPS = (
    BuildStep.FRONTEND,
    BuildStep.APPLICATION,
    BuildStep.CAGE,
    BuildStep.WPE,
    BuildStep.CLIENT,
    BuildStep.ROOTFS_BASE,
)


def _make_frontend_artifact(ctx: BuildContext) -> None:
    (ctx.dist_dir / "cache" / "frontend").mkdir(parents=True, exist_ok=True)


def _make_rootfs_post_artifacts(ctx: BuildContext) -> None:
    ctx.cache_dir.mkdir(parents=True, exist_ok=True)
    for name in ("rootfs-post.tar.gz", "initrd.img", "vmlinuz"):
        (ctx.cache_dir / name).write_bytes(b"image")


def _record_rootfs_post(
    ctx: BuildContext, store: CacheStore, registry: AssetRegistry
) -> CacheManifest:
    manifest = CacheManifest.empty()
    for step in UPSTREAM_STEPS:
        manifest.steps[step.value] = StepCacheEntry(last_run_at=T0)
    _make_rootfs_post_artifacts(ctx)
    update_step_cache(
        BuildStep.ROOTFS_POST,
        manifest,
        ctx,
        store,
        registry,
        now=T0 + timedelta(hours=1),
    )
    return manifest


@pytest.fixture
def recorded_frontend(
    ctx: BuildContext,
    store: CacheStore,
    registry: AssetRegistry,
) -> CacheManifest:
    """Create a manifest with a fresh frontend entry."""
    _make_frontend_artifact(ctx)
    manifest = CacheManifest.empty()
    update_step_cache("frontend", manifest, ctx, store, registry, now=T0)
    return manifest


@pytest.fixture
def recorded_rootfs_post(
    ctx: BuildContext,
    store: CacheStore,
    registry: AssetRegistry,
) -> CacheManifest:
    """Create a manifest where rootfs-post ran after all upstream steps."""
    return _record_rootfs_post(ctx, store, registry)


class TestComputeDependencyHashes:
    """Tests for compute_dependency_hashes function."""

    def test_frontend_keys(self, ctx: BuildContext, registry: AssetRegistry) -> None:
        """Frontend should hash its directory, dev config and build script."""
        hashes = compute_dependency_hashes("frontend", ctx, registry)
        assert set(hashes) == {
            "dir:frontend/",
            "config:strux.yaml:dev",
            "asset:build-frontend-script",
        }

    def test_frontend_excludes_build_output(
        self, ctx: BuildContext, registry: AssetRegistry
    ) -> None:
        """node_modules and dist below frontend/ should not matter."""
        before = compute_dependency_hashes("frontend", ctx, registry)
        frontend = ctx.project_root / "frontend"
        (frontend / "node_modules" / "react").mkdir(parents=True)
        (frontend / "node_modules" / "react" / "index.js").write_text("x")
        (frontend / "dist").mkdir()
        (frontend / "dist" / "bundle.js").write_text("y")
        assert compute_dependency_hashes("frontend", ctx, registry) == before

    def test_context_ignore_patterns(
        self, ctx: BuildContext, registry: AssetRegistry
    ) -> None:
        """Configured ignore patterns should apply to step directories."""
        before = compute_dependency_hashes("frontend", ctx, registry)
        (ctx.project_root / "frontend" / "notes.tmp").write_text("scratch")
        assert compute_dependency_hashes("frontend", ctx, registry) != before

        ignoring = replace(ctx, ignore_patterns=("*.tmp",))
        assert compute_dependency_hashes("frontend", ignoring, registry) == before

    def test_board_placeholder(self, ctx: BuildContext, registry: AssetRegistry) -> None:
        """Board config keys should resolve to the active board."""
        hashes = compute_dependency_hashes("rootfs-base", ctx, registry)
        assert "config:bsp/pi/bsp.yaml:bsp.arch" in hashes
        assert "config:bsp/pi/bsp.yaml:bsp.rootfs.packages" in hashes
        assert "config:strux.yaml:rootfs.packages" in hashes

    def test_missing_config_key_omitted(
        self, ctx: BuildContext, registry: AssetRegistry
    ) -> None:
        """Absent config values should produce no key."""
        hashes = compute_dependency_hashes("rootfs-post", ctx, registry)
        assert "config:strux.yaml:hostname" in hashes
        assert "config:strux.yaml:boot.splash" not in hashes

    def test_fallback_assets_on_first_build(
        self, ctx: BuildContext, registry: AssetRegistry
    ) -> None:
        """Fallback assets should be used while sources are not copied yet."""
        hashes = compute_dependency_hashes("cage", ctx, registry)
        assert "asset-fallback:cage-sources" in hashes
        assert "dir:dist/cage/" not in hashes

    def test_fallback_assets_dropped_once_sources_exist(
        self, ctx: BuildContext, registry: AssetRegistry
    ) -> None:
        """Existing sources should replace the fallback assets."""
        sources = ctx.dist_dir / "cage"
        sources.mkdir(parents=True)
        (sources / "main.c").write_text("int main() {}")
        hashes = compute_dependency_hashes("cage", ctx, registry)
        assert "dir:dist/cage/" in hashes
        assert "asset-fallback:cage-sources" not in hashes

    def test_partial_directories_keep_fallback(
        self, ctx: BuildContext, registry: AssetRegistry
    ) -> None:
        """Fallback assets should stay until every directory exists."""
        overlay = ctx.project_root / "overlay" / "etc"
        overlay.mkdir(parents=True)
        (overlay / "motd").write_text("hello")
        hashes = compute_dependency_hashes("rootfs-post", ctx, registry)
        assert "dir:overlay/" in hashes
        assert "asset-fallback:plymouth-assets" in hashes

    def test_unknown_asset_omitted(self, ctx: BuildContext) -> None:
        """Assets missing from the registry should produce no key."""
        hashes = compute_dependency_hashes("frontend", ctx, AssetRegistry({}))
        assert "asset:build-frontend-script" not in hashes


class TestShouldRebuildStep:
    """Tests for should_rebuild_step function."""

    def test_no_cache_entry(self, ctx: BuildContext, registry: AssetRegistry) -> None:
        """A step never recorded should rebuild."""
        decision = should_rebuild_step("frontend", CacheManifest.empty(), ctx, registry)
        assert decision == RebuildDecision(True, "no cache entry")

    def test_unchanged_is_cached(
        self,
        ctx: BuildContext,
        registry: AssetRegistry,
        recorded_frontend: CacheManifest,
    ) -> None:
        """Recording then checking without changes should not rebuild."""
        decision = should_rebuild_step("frontend", recorded_frontend, ctx, registry)
        assert decision == RebuildDecision(False)
        assert decision.reason is None

    def test_check_is_repeatable(
        self,
        ctx: BuildContext,
        registry: AssetRegistry,
        recorded_frontend: CacheManifest,
    ) -> None:
        """Checking should not modify the manifest."""
        before = recorded_frontend.model_copy(deep=True)
        should_rebuild_step("frontend", recorded_frontend, ctx, registry)
        should_rebuild_step("frontend", recorded_frontend, ctx, registry)
        assert recorded_frontend == before

    def test_source_edit(
        self,
        ctx: BuildContext,
        registry: AssetRegistry,
        recorded_frontend: CacheManifest,
    ) -> None:
        """Editing a frontend source should rebuild with the directory key."""
        (ctx.project_root / "frontend" / "src" / "main.ts").write_text("changed")
        decision = should_rebuild_step("frontend", recorded_frontend, ctx, registry)
        assert decision == RebuildDecision(True, "dependency changed: dir:frontend/")

    def test_config_change(
        self,
        ctx: BuildContext,
        registry: AssetRegistry,
        recorded_frontend: CacheManifest,
    ) -> None:
        """Changing a watched config key should rebuild."""
        config = ctx.project_root / "strux.yaml"
        config.write_text(config.read_text().replace("8080", "9090"))
        decision = should_rebuild_step("frontend", recorded_frontend, ctx, registry)
        assert decision == RebuildDecision(
            True, "dependency changed: config:strux.yaml:dev"
        )

    def test_unrelated_config_change(
        self,
        ctx: BuildContext,
        registry: AssetRegistry,
        recorded_frontend: CacheManifest,
    ) -> None:
        """Changing an unwatched config key should not rebuild."""
        config = ctx.project_root / "strux.yaml"
        config.write_text(config.read_text().replace("kiosk", "other"))
        decision = should_rebuild_step("frontend", recorded_frontend, ctx, registry)
        assert decision.rebuild is False

    def test_dependency_removed(
        self,
        ctx: BuildContext,
        registry: AssetRegistry,
        recorded_frontend: CacheManifest,
    ) -> None:
        """Removing a hashed input should rebuild."""
        (ctx.project_root / "strux.yaml").write_text("name: kiosk\n")
        decision = should_rebuild_step("frontend", recorded_frontend, ctx, registry)
        assert decision == RebuildDecision(
            True, "dependency removed: config:strux.yaml:dev"
        )

    def test_directory_dependency_removed(
        self,
        ctx: BuildContext,
        registry: AssetRegistry,
        recorded_frontend: CacheManifest,
    ) -> None:
        """Deleting a source directory should report it as removed."""
        shutil.rmtree(ctx.project_root / "frontend")
        decision = should_rebuild_step("frontend", recorded_frontend, ctx, registry)
        assert decision == RebuildDecision(True, "dependency removed: dir:frontend/")

    def test_file_dependency_removed(
        self,
        ctx: BuildContext,
        store: CacheStore,
        registry: AssetRegistry,
    ) -> None:
        """Deleting a file input should report it as removed."""
        logo = ctx.dist_dir / "artifacts" / "logo.png"
        logo.parent.mkdir(parents=True)
        logo.write_bytes(b"png")
        manifest = _record_rootfs_post(ctx, store, registry)
        assert "file:dist/artifacts/logo.png" in manifest.steps["rootfs-post"].dependency_hashes

        logo.unlink()
        decision = should_rebuild_step("rootfs-post", manifest, ctx, registry)
        assert decision == RebuildDecision(
            True, "dependency removed: file:dist/artifacts/logo.png"
        )

    def test_dependency_added(
        self,
        ctx: BuildContext,
        registry: AssetRegistry,
        recorded_frontend: CacheManifest,
    ) -> None:
        """An input missing at record time should rebuild once it appears."""
        del recorded_frontend.steps["frontend"].dependency_hashes["config:strux.yaml:dev"]
        decision = should_rebuild_step("frontend", recorded_frontend, ctx, registry)
        assert decision == RebuildDecision(
            True, "dependency changed: config:strux.yaml:dev"
        )

    def test_asset_change(
        self,
        ctx: BuildContext,
        recorded_frontend: CacheManifest,
    ) -> None:
        """A new release of the build script should rebuild."""
        from strux_build.cache.assets import BUNDLED_ASSET_GROUPS

        assets = {asset_id: (asset_id.encode(),) for asset_id in BUNDLED_ASSET_GROUPS}
        assets["build-frontend-script"] = (b"#!/bin/bash\nnpm run build --v2\n",)
        decision = should_rebuild_step(
            "frontend", recorded_frontend, ctx, AssetRegistry(assets)
        )
        assert decision == RebuildDecision(
            True, "dependency changed: asset:build-frontend-script"
        )

    def test_artifact_missing(
        self,
        ctx: BuildContext,
        registry: AssetRegistry,
        recorded_frontend: CacheManifest,
    ) -> None:
        """Deleting the output should rebuild."""
        (ctx.dist_dir / "cache" / "frontend").rmdir()
        decision = should_rebuild_step("frontend", recorded_frontend, ctx, registry)
        assert decision == RebuildDecision(
            True, "artifact directory missing: cache/frontend/"
        )

    def test_file_artifact_missing(
        self,
        ctx: BuildContext,
        registry: AssetRegistry,
        recorded_rootfs_post: CacheManifest,
    ) -> None:
        """Deleting one of several file artifacts should rebuild."""
        (ctx.cache_dir / "initrd.img").unlink()
        decision = should_rebuild_step("rootfs-post", recorded_rootfs_post, ctx, registry)
        assert decision == RebuildDecision(True, "artifact missing: cache/pi/initrd.img")

    def test_clean_build(
        self,
        ctx: BuildContext,
        registry: AssetRegistry,
        recorded_frontend: CacheManifest,
    ) -> None:
        """A clean build should rebuild everything."""
        decision = should_rebuild_step(
            "frontend", recorded_frontend, replace(ctx, clean=True), registry
        )
        assert decision == RebuildDecision(True, "clean build requested")

    def test_force_rebuild(
        self,
        ctx: BuildContext,
        registry: AssetRegistry,
        recorded_frontend: CacheManifest,
    ) -> None:
        """Forced steps should rebuild."""
        forced = replace(ctx, force_rebuild=("frontend",))
        decision = should_rebuild_step("frontend", recorded_frontend, forced, registry)
        assert decision == RebuildDecision(True, "force rebuild configured")

    def test_force_other_step(
        self,
        ctx: BuildContext,
        registry: AssetRegistry,
        recorded_frontend: CacheManifest,
    ) -> None:
        """Forcing another step should not affect this one."""
        forced = replace(ctx, force_rebuild=("cage",))
        decision = should_rebuild_step("frontend", recorded_frontend, forced, registry)
        assert decision.rebuild is False

    def test_unknown_step(self, ctx: BuildContext, registry: AssetRegistry) -> None:
        """Unknown step names should resolve to a rebuild, not raise."""
        decision = should_rebuild_step("kernel", CacheManifest.empty(), ctx, registry)
        assert decision == RebuildDecision(True, "unknown step: kernel")

    def test_check_failure_rebuilds(
        self,
        ctx: BuildContext,
        registry: AssetRegistry,
        recorded_frontend: CacheManifest,
    ) -> None:
        """Errors while checking should resolve to a rebuild."""
        with patch(
            "strux_build.cache.decision.compute_dependency_hashes",
            side_effect=OSError("disk gone"),
        ):
            decision = should_rebuild_step("frontend", recorded_frontend, ctx, registry)
        assert decision.rebuild is True
        assert decision.reason == "cache check failed: disk gone"


class TestUpstreamSteps:
    """Tests for rebuild propagation from upstream steps."""

    def test_all_upstream_older(
        self,
        ctx: BuildContext,
        registry: AssetRegistry,
        recorded_rootfs_post: CacheManifest,
    ) -> None:
        """Upstream steps run before this step should not rebuild it."""
        decision = should_rebuild_step("rootfs-post", recorded_rootfs_post, ctx, registry)
        assert decision == RebuildDecision(False)

    def test_upstream_rebuilt(
        self,
        ctx: BuildContext,
        registry: AssetRegistry,
        recorded_rootfs_post: CacheManifest,
    ) -> None:
        """An upstream step run later should rebuild this step."""
        recorded_rootfs_post.steps["wpe"].last_run_at = T0 + timedelta(hours=2)
        decision = should_rebuild_step("rootfs-post", recorded_rootfs_post, ctx, registry)
        assert decision == RebuildDecision(True, "upstream step rebuilt: wpe")

    def test_upstream_not_cached(
        self,
        ctx: BuildContext,
        registry: AssetRegistry,
        recorded_rootfs_post: CacheManifest,
    ) -> None:
        """A missing upstream entry should rebuild this step."""
        del recorded_rootfs_post.steps["application"]
        decision = should_rebuild_step("rootfs-post", recorded_rootfs_post, ctx, registry)
        assert decision == RebuildDecision(True, "upstream step not cached: application")

    def test_first_upstream_reported(
        self,
        ctx: BuildContext,
        registry: AssetRegistry,
        recorded_rootfs_post: CacheManifest,
    ) -> None:
        """Upstream steps should be checked in declared order."""
        later = T0 + timedelta(hours=2)
        recorded_rootfs_post.steps["client"].last_run_at = later
        recorded_rootfs_post.steps["frontend"].last_run_at = later
        decision = should_rebuild_step("rootfs-post", recorded_rootfs_post, ctx, registry)
        assert decision.reason == "upstream step rebuilt: frontend"

    def test_dependency_checked_before_upstream(
        self,
        ctx: BuildContext,
        registry: AssetRegistry,
        recorded_rootfs_post: CacheManifest,
    ) -> None:
        """Own input changes should be reported first."""
        del recorded_rootfs_post.steps["application"]
        config = ctx.project_root / "strux.yaml"
        config.write_text(config.read_text().replace("hostname: kiosk", "hostname: tv"))
        decision = should_rebuild_step("rootfs-post", recorded_rootfs_post, ctx, registry)
        assert decision.reason == "dependency changed: config:strux.yaml:hostname"


class TestUpdateStepCache:
    """Tests for update_step_cache function."""

    def test_records_and_persists(
        self,
        ctx: BuildContext,
        store: CacheStore,
        registry: AssetRegistry,
    ) -> None:
        """Recording should store the hashes and write the manifest."""
        _make_frontend_artifact(ctx)
        (ctx.dist_dir / "cache" / "frontend" / "index.js").write_text("bundle")
        manifest = CacheManifest.empty()

        entry = update_step_cache("frontend", manifest, ctx, store, registry, now=T0)

        assert manifest.steps["frontend"] is entry
        assert entry.last_run_at == T0
        assert entry.artifacts == ["cache/frontend/"]
        assert entry.dependency_hashes["dir:frontend/"] == compute_directory_hash(
            ctx.project_root / "frontend", ["node_modules", "dist"]
        )
        assert entry.combined_artifact_hash is not None
        assert store.load("pi") == manifest

    def test_replaces_previous_entry(
        self,
        ctx: BuildContext,
        store: CacheStore,
        registry: AssetRegistry,
        recorded_frontend: CacheManifest,
    ) -> None:
        """Recording again should replace the entry and fix the verdict."""
        (ctx.project_root / "frontend" / "index.html").write_text("<html>v2</html>")
        assert should_rebuild_step("frontend", recorded_frontend, ctx, registry).rebuild

        later = T0 + timedelta(minutes=5)
        update_step_cache("frontend", recorded_frontend, ctx, store, registry, now=later)

        assert recorded_frontend.steps["frontend"].last_run_at == later
        assert not should_rebuild_step("frontend", recorded_frontend, ctx, registry).rebuild

    def test_records_board_scoped_artifacts(
        self,
        project: Path,
        store: CacheStore,
        registry: AssetRegistry,
    ) -> None:
        """Artifacts should be recorded with the board resolved."""
        ctx = BuildContext(project_root=project, target="x86")
        entry = update_step_cache("application", CacheManifest.empty(), ctx, store, registry)
        assert entry.artifacts == ["cache/x86/app/main"]
        assert store.manifest_path("x86").exists()
