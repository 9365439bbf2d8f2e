"""Shard, dependency, and product management.

This module handles downloading and caching toolchain shards and the base
rootfs, installing pre-built dependencies, and checking build products.
"""

from .cache import Cache
from .dependency import Dependency, DependencyError
from .downloader import DownloadError, ExtractionError, HashMismatchError, PackageDownloader
from .manifest import ArtifactEntry, InstallManifest, ManifestError
from .prefix import Prefix
from .products import (
    ExecutableProduct,
    FileProduct,
    LibraryProduct,
    Product,
    ProductError,
    product_from_dict,
    unsatisfied_products,
)
from .shard_index import ShardEncoding, ShardIndex, ShardIndexError, ShardInfo
from .shards import MountSpec, SDKLicenseError, ShardError, ShardManager, load_shard_index
from .squashfs import SquashfsError, rewrite_squashfs_uids

__all__ = [
    "Cache",
    "Dependency",
    "DependencyError",
    "DownloadError",
    "ExtractionError",
    "HashMismatchError",
    "PackageDownloader",
    "ArtifactEntry",
    "InstallManifest",
    "ManifestError",
    "Prefix",
    "ExecutableProduct",
    "FileProduct",
    "LibraryProduct",
    "Product",
    "ProductError",
    "product_from_dict",
    "unsatisfied_products",
    "ShardEncoding",
    "ShardIndex",
    "ShardIndexError",
    "ShardInfo",
    "MountSpec",
    "SDKLicenseError",
    "ShardError",
    "ShardManager",
    "load_shard_index",
    "SquashfsError",
    "rewrite_squashfs_uids",
]
