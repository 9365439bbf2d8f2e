"""Configuration for binbuild.

This module provides the target platform model and the process-wide
configuration object read from the environment.
"""

from .platform import (
    InvalidTripletError,
    Platform,
    UnsupportedPlatformError,
    all_platforms,
    format_triplet,
    pick_preferred_platform,
    preferred_order,
    supported_platforms,
)
from .settings import BuildConfig, ConfigError

__all__ = [
    "BuildConfig",
    "ConfigError",
    "InvalidTripletError",
    "Platform",
    "UnsupportedPlatformError",
    "all_platforms",
    "format_triplet",
    "pick_preferred_platform",
    "preferred_order",
    "supported_platforms",
]
