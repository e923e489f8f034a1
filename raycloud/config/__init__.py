"""Configuration loading utilities for raycloud."""

from .schema import (
    RayCloudConfig,
    load_config,
)

__all__ = ["RayCloudConfig", "load_config"]
