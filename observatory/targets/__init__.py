"""Target registry — declarative target configuration."""

from .registry import (
    TargetConfigError,
    TargetRegistry,
    parse_targets,
)

__all__ = [
    "TargetConfigError",
    "TargetRegistry",
    "parse_targets",
]
