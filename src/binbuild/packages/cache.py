"""Cache management for binbuild shards and builds.

This module provides a unified cache structure for storing downloaded shard
archives and images, unpacked toolchains, and the emulation backend's
guest kernel.

Cache Structure:
    ~/.binbuild/
    ├── downloads/
    │   ├── {name}.{hash}.tar.gz    # Shard archives, keyed by content hash
    │   ├── {name}.{hash}.tar.gz.sha256  # Verified marker
    │   ├── {name}.{hash}.squashfs  # Shard images
    │   └── {name}.{hash}.uid{N}.squashfs  # Image copies owned by uid N
    ├── rootfs/{hash}/              # Unpacked base rootfs
    ├── shards/
    │   └── {triplet}.{hash}/       # Unpacked toolchain for one target
    ├── qemu/                       # qemu binaries and guest kernel
    ├── builds/
    │   └── {name}/{triplet}/       # Per-platform workspaces
    ├── locks/                      # Advisory lock files
    └── logs/

The shard cache is shared between concurrent builds. Every mutation goes
through lock() so two builds never download or verify the same shard at the
same time.
"""

import fcntl
import logging
import shutil
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator

from ..config.settings import BuildConfig

logger = logging.getLogger(__name__)


class Cache:
    """Manages the binbuild cache directory structure.

    Every root can be relocated independently through BuildConfig, which
    mirrors the BINBUILD_*_DIR environment variables.
    """

    def __init__(self, config: BuildConfig):
        """Initialize cache manager.

        Args:
            config: Configuration holding the cache locations
        """
        self.config = config
        self.cache_root = Path(config.cache_root)
        self._thread_locks: dict[str, threading.Lock] = {}
        self._thread_locks_guard = threading.Lock()

    @property
    def downloads_dir(self) -> Path:
        """Directory for downloaded shard archives and images."""
        return self.config.downloads_dir or self.cache_root / "downloads"

    @property
    def rootfs_dir(self) -> Path:
        """Directory the base rootfs is unpacked into."""
        return self.config.rootfs_dir or self.cache_root / "rootfs"

    @property
    def shards_dir(self) -> Path:
        """Directory for unpacked toolchain shards."""
        return self.config.shards_dir or self.cache_root / "shards"

    @property
    def qemu_dir(self) -> Path:
        """Directory for the emulation backend's qemu and kernel."""
        return self.config.qemu_dir or self.cache_root / "qemu"

    @property
    def builds_dir(self) -> Path:
        """Directory holding per-platform build workspaces."""
        return self.cache_root / "builds"

    @property
    def locks_dir(self) -> Path:
        return self.cache_root / "locks"

    @property
    def logs_dir(self) -> Path:
        return self.cache_root / "logs"

    @staticmethod
    def short_hash(sha256: str) -> str:
        """First 16 characters of a content hash (sufficient for uniqueness)."""
        return sha256.lower()[:16]

    def shard_dir(self, name: str, sha256: str) -> Path:
        """Get the directory a shard archive is unpacked into.

        Entries are keyed by content hash, so a new index version never
        collides with an already-verified entry.

        Args:
            name: Shard name (a triplet, 'base' for the rootfs, or 'qemu'/'kernel')
            sha256: Hash of the shard archive

        Returns:
            Path to the unpacked shard
        """
        key = self.short_hash(sha256)
        if name == "base":
            return self.rootfs_dir / key
        if name in ("qemu", "kernel"):
            return self.qemu_dir / f"{name}.{key}"
        return self.shards_dir / f"{name}.{key}"

    def download_path(self, name: str, extension: str, sha256: str) -> Path:
        """Get the path a shard download is stored at.

        Args:
            name: Shard name
            extension: File extension ('tar.gz' or 'squashfs')
            sha256: Expected hash of the file

        Returns:
            Path to the downloaded file
        """
        return self.downloads_dir / f"{name}.{self.short_hash(sha256)}.{extension}"

    def get_build_dir(self, name: str, triplet: str) -> Path:
        """Get the workspace directory for one build of one platform."""
        return self.builds_dir / name / triplet

    def ensure_directories(self) -> None:
        """Create all cache directories if they don't exist."""
        for directory in [
            self.downloads_dir,
            self.shards_dir,
            self.qemu_dir,
            self.builds_dir,
            self.locks_dir,
            self.logs_dir,
        ]:
            directory.mkdir(parents=True, exist_ok=True)

    @contextmanager
    def lock(self, name: str) -> Iterator[Path]:
        """Hold an exclusive advisory lock on a cache entry.

        The lock is taken both within the process (threads building different
        platforms) and across processes (flock on a lock file).

        Args:
            name: Lock name, usually the shard file name

        Yields:
            Path to the lock file
        """
        with self._thread_locks_guard:
            thread_lock = self._thread_locks.setdefault(name, threading.Lock())

        self.locks_dir.mkdir(parents=True, exist_ok=True)
        lock_path = self.locks_dir / f"{name}.lock"
        with thread_lock:
            with open(lock_path, "a+") as lock_handle:
                logger.debug(f"Waiting for cache lock {lock_path}")
                fcntl.flock(lock_handle.fileno(), fcntl.LOCK_EX)
                try:
                    yield lock_path
                finally:
                    fcntl.flock(lock_handle.fileno(), fcntl.LOCK_UN)

    def clean_build(self, name: str, triplet: str) -> None:
        """Remove the workspace of one platform build."""
        build_dir = self.get_build_dir(name, triplet)
        if build_dir.exists():
            shutil.rmtree(build_dir)

    def clear(self) -> None:
        """Evict every downloaded and unpacked shard.

        This is the only way verified cache entries are ever removed.
        """
        for directory in [self.downloads_dir, self.rootfs_dir, self.shards_dir, self.qemu_dir]:
            if directory.exists():
                logger.info(f"Removing {directory}")
                shutil.rmtree(directory)
