"""Board and project configuration module.

This module handles:
- Validation of the board fields the build reads (name, arch, scripts)
- The build.cache and boot.splash blocks of strux.yaml
- Loading both from YAML
"""

from strux_build.boards.io import (
    BoardConfigError,
    board_config_path,
    load_board,
    load_cache_config,
    load_splash_config,
    load_yaml,
    scripts_for_stage,
)
from strux_build.boards.schema import (
    BoardSchema,
    CacheConfigSchema,
    LifecycleScriptSchema,
    SplashConfigSchema,
)

__all__ = [
    # Schema
    "BoardSchema",
    "CacheConfigSchema",
    "LifecycleScriptSchema",
    "SplashConfigSchema",
    # IO functions
    "BoardConfigError",
    "board_config_path",
    "load_board",
    "load_cache_config",
    "load_splash_config",
    "load_yaml",
    "scripts_for_stage",
]
