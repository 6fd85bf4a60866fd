"""Shared fixtures for build cache tests."""

from pathlib import Path

import pytest

from strux_build.cache.assets import BUNDLED_ASSET_GROUPS
from strux_build.cache.hashing import AssetRegistry
from strux_build.cache.manifest import CacheStore
from strux_build.types import BuildContext

BOARD = "pi"

PROJECT_YAML = """\
name: kiosk
hostname: kiosk
dev:
  server:
    host: 0.0.0.0
    port: 8080
rootfs:
  packages:
    - curl
"""

BOARD_YAML = """\
bsp:
  name: pi
  arch: arm64
  description: Raspberry Pi 4
  rootfs:
    packages:
      - firmware-brcm80211
  scripts:
    - location: ./scripts/fetch-kernel.sh
      step: before_build
      description: Fetch kernel
      depends_on:
        - ./kernel.config
      cached_generated_artifacts:
        - cache/kernel.tar.gz
    - location: ./scripts/make-image.sh
      step: make_image
"""


@pytest.fixture
def registry() -> AssetRegistry:
    """Create a registry with a small fake payload for every bundled asset."""
    return AssetRegistry(
        {asset_id: (asset_id.encode(),) for asset_id in BUNDLED_ASSET_GROUPS}
    )


@pytest.fixture
def project(tmp_path: Path) -> Path:
    """Create a minimal project tree with one board."""
    (tmp_path / "strux.yaml").write_text(PROJECT_YAML)

    board_dir = tmp_path / "bsp" / BOARD
    (board_dir / "scripts").mkdir(parents=True)
    (board_dir / "bsp.yaml").write_text(BOARD_YAML)
    (board_dir / "kernel.config").write_text("CONFIG_DRM=y\n")
    (board_dir / "scripts" / "fetch-kernel.sh").write_text("#!/bin/bash\necho fetch\n")
    (board_dir / "scripts" / "make-image.sh").write_text("#!/bin/bash\necho image\n")

    frontend = tmp_path / "frontend"
    (frontend / "src").mkdir(parents=True)
    (frontend / "index.html").write_text("<html></html>")
    (frontend / "src" / "main.ts").write_text("console.log('hi')")

    (tmp_path / "main.go").write_text("package main\n")
    return tmp_path


@pytest.fixture
def ctx(project: Path) -> BuildContext:
    """Create a build context for the test board."""
    return BuildContext(project_root=project, target=BOARD)


@pytest.fixture
def store(project: Path) -> CacheStore:
    """Create a cache store rooted at the test project."""
    return CacheStore(project)
