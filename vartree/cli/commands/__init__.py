"""CLI commands for vartree."""

from . import (
    build,
    runs,
    predict,
    config_cmd,
)

__all__ = [
    "build",
    "runs",
    "predict",
    "config_cmd",
]
