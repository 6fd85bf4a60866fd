"""Strux Build - kiosk-oriented Linux OS image builder.

This package provides the incremental build cache that decides which
containerized build steps and board lifecycle scripts can be skipped,
plus the CLI and pipeline glue around it.
"""

__version__ = "0.1.0"
__all__ = ["__version__"]
