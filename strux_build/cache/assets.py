"""Bundled asset registry.

Groups the files shipped in ``strux_build.assets`` into named assets that
build steps can depend on. A new release of the tool that changes one of
these files changes the asset hash and so invalidates the steps using it,
independently of the user's project tree.
"""

from __future__ import annotations

import logging
from functools import lru_cache
from importlib import resources
from types import MappingProxyType

from strux_build.cache.hashing import AssetRegistry

logger = logging.getLogger(__name__)

ASSETS_PACKAGE = "strux_build.assets"

# Asset id of the build-environment recipe
DOCKERFILE_ASSET = "dockerfile"

BUNDLED_ASSET_GROUPS: MappingProxyType[str, tuple[str, ...]] = MappingProxyType(
    {
        # Build scripts
        "build-frontend-script": ("scripts/build-frontend.sh",),
        "build-app-script": ("scripts/build-app.sh",),
        "build-cage-script": ("scripts/build-cage.sh",),
        "build-wpe-script": ("scripts/build-wpe.sh",),
        "build-base-script": ("scripts/build-base.sh",),
        "build-post-script": ("scripts/build-post.sh",),
        "build-client-script": ("scripts/build-client.sh",),
        # Client sources copied to dist/artifacts/client/ on first build
        "client-base": ("client/main.go", "client/config.go", "client/go.mod"),
        # Cage and WPE sources are fetched by their build scripts
        "cage-sources": ("scripts/build-cage.sh",),
        "wpe-extension-sources": ("scripts/build-wpe.sh",),
        # Templates copied to dist/artifacts/ on first build
        "plymouth-assets": (
            "artifacts/plymouth/strux.plymouth",
            "artifacts/plymouth/strux.script",
            "artifacts/plymouth/plymouthd.conf",
        ),
        "init-scripts": (
            "artifacts/scripts/init.sh",
            "artifacts/scripts/strux-network.sh",
            "artifacts/scripts/strux.sh",
        ),
        "systemd-assets": (
            "artifacts/systemd/strux.service",
            "artifacts/systemd/strux-network.service",
            "artifacts/systemd/20-ethernet.network",
        ),
        DOCKERFILE_ASSET: ("Dockerfile",),
    }
)


def read_asset_file(relative_path: str) -> bytes:
    """Read one bundled file.

    Args:
        relative_path: POSIX path relative to the assets package.

    Returns:
        File content.

    Raises:
        FileNotFoundError: If the file is not shipped with the package.
    """
    resource = resources.files(ASSETS_PACKAGE).joinpath(*relative_path.split("/"))
    return resource.read_bytes()


def load_bundled_assets() -> dict[str, tuple[bytes, ...]]:
    """Load the content of every bundled asset group.

    Returns:
        Mapping of asset id to the contents of its files, in declared order.
    """
    assets: dict[str, tuple[bytes, ...]] = {}
    for asset_id, paths in BUNDLED_ASSET_GROUPS.items():
        assets[asset_id] = tuple(read_asset_file(path) for path in paths)
    logger.debug("Loaded %d bundled assets", len(assets))
    return assets


@lru_cache(maxsize=1)
def get_asset_registry() -> AssetRegistry:
    """Get the process-wide registry of bundled assets.

    Returns:
        AssetRegistry built once from the package data.
    """
    return AssetRegistry(load_bundled_assets())


def clear_asset_registry() -> None:
    """Drop the process-wide registry so the next call reloads it."""
    get_asset_registry.cache_clear()


__all__ = [
    "BUNDLED_ASSET_GROUPS",
    "DOCKERFILE_ASSET",
    "clear_asset_registry",
    "get_asset_registry",
    "load_bundled_assets",
    "read_asset_file",
]
