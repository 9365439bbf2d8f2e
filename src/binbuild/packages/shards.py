"""Shard and rootfs management.

This module makes compiler toolchain shards and the shared base rootfs
available on the host, downloading and verifying them on first use.

A shard is content-addressed: the cache entry for it is only trusted once a
verified marker recording the index hash has been written next to the file.
Archive shards are then extracted once; image shards are used as-is.
"""

import logging
import os
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional

from ..config.platform import Platform, UnsupportedPlatformError
from ..config.settings import BuildConfig
from .cache import Cache
from .downloader import DownloadError, PackageDownloader, sha256_file
from .shard_index import ShardEncoding, ShardIndex, ShardIndexError, ShardInfo, shard_name
from .squashfs import rewrite_squashfs_uids

logger = logging.getLogger(__name__)

SDK_LICENSE_MESSAGE = (
    "The macOS SDK used by the x86_64-apple-darwin14 toolchain is licensed for use on "
    "Apple-branded hardware only. Building macOS binaries on other hardware is a breach "
    "of that license. Set BINBUILD_AUTOMATIC_APPLE=true to confirm you accept the terms."
)


class ShardError(Exception):
    """Raised when a shard cannot be provisioned."""

    pass


class SDKLicenseError(ShardError):
    """Raised when the macOS toolchain is requested without accepting its SDK license."""

    pass


@dataclass(frozen=True)
class MountSpec:
    """One host path to expose inside the sandbox.

    Attributes:
        source: Host path (a directory or a .squashfs image)
        target: Absolute path inside the sandbox
        read_only: Whether the mount is read-only
    """

    source: Path
    target: str
    read_only: bool = True

    @property
    def is_image(self) -> bool:
        return self.source.suffix == ".squashfs"


def _marker_path(path: Path) -> Path:
    return path.with_name(path.name + ".sha256")


def _write_marker(path: Path, sha256: str) -> None:
    marker = _marker_path(path)
    temp = marker.with_name(f".{marker.name}.{os.getpid()}.tmp")
    temp.write_text(sha256 + "\n", encoding="utf-8")
    os.replace(temp, marker)


def _has_marker(path: Path, sha256: str) -> bool:
    marker = _marker_path(path)
    if not path.exists() or not marker.exists():
        return False
    return marker.read_text(encoding="utf-8").strip().lower() == sha256.lower()


class ShardManager:
    """Provisions toolchain shards and the base rootfs from the shard index."""

    def __init__(
        self,
        config: BuildConfig,
        cache: Cache,
        index: ShardIndex,
        downloader: Optional[PackageDownloader] = None,
    ):
        """Initialize shard manager.

        Args:
            config: Configuration (encoding preference, license acceptance)
            cache: Cache the shards are stored in
            index: Index mapping shard names to URLs and hashes
            downloader: Downloader to fetch shards with
        """
        self.config = config
        self.cache = cache
        self.index = index
        self.downloader = downloader or PackageDownloader(
            retries=config.download_retries, backoff=config.download_backoff
        )

    @property
    def encoding(self) -> ShardEncoding:
        """The shard encoding this manager provisions by default."""
        return ShardEncoding.IMAGE if self.config.use_squashfs else ShardEncoding.ARCHIVE

    def check_license(self, target: "Platform | str") -> None:
        """Refuse the macOS shard unless its SDK license has been accepted.

        Raises:
            SDKLicenseError: If target is macOS and automatic_apple is not set
        """
        name = shard_name(target)
        if "apple-darwin" in name and not self.config.automatic_apple:
            raise SDKLicenseError(SDK_LICENSE_MESSAGE)

    def info(self, target: "Platform | str", encoding: Optional[ShardEncoding] = None) -> ShardInfo:
        """Look up a shard in the index.

        Raises:
            UnsupportedPlatformError: If the index has no such shard
        """
        encoding = encoding or self.encoding
        try:
            return self.index.get(target, encoding)
        except KeyError:
            raise UnsupportedPlatformError(
                f"No {encoding.extension} shard for {shard_name(target)} in the shard index"
                + (f" (version {self.index.version})" if self.index.version else "")
            )

    def ensure(
        self,
        target: "Platform | str",
        use_squashfs: Optional[bool] = None,
        show_progress: bool = True,
    ) -> Path:
        """Ensure a shard is present and verified in the cache.

        Args:
            target: Platform, or a shard name such as 'base'
            use_squashfs: Override the configured encoding
            show_progress: Whether to show download progress

        Returns:
            Unpacked shard directory (archives) or .squashfs file (images)

        Raises:
            SDKLicenseError: If the macOS shard is requested without license acceptance
            UnsupportedPlatformError: If the index has no entry for target
            DownloadError: If the shard cannot be downloaded
            HashMismatchError: If the download does not match the index hash
        """
        self.check_license(target)

        if use_squashfs is None:
            encoding = self.encoding
        else:
            encoding = ShardEncoding.IMAGE if use_squashfs else ShardEncoding.ARCHIVE
        info = self.info(target, encoding)

        download_path = self.cache.download_path(info.name, encoding.extension, info.sha256)
        with self.cache.lock(download_path.name):
            self._ensure_download(info, download_path, show_progress)
            if encoding is ShardEncoding.IMAGE:
                return download_path

            unpacked = self.cache.shard_dir(info.name, info.sha256)
            if not unpacked.is_dir():
                self.downloader.extract_archive(download_path, unpacked, show_progress=show_progress)
                logger.info(f"Unpacked shard {info.name} into {unpacked}")
            return unpacked

    def _ensure_download(self, info: ShardInfo, path: Path, show_progress: bool) -> None:
        if _has_marker(path, info.sha256):
            logger.debug(f"Using verified shard {path}")
            return

        if path.exists():
            # Left behind by a run that died before writing the marker
            if sha256_file(path) == info.sha256:
                _write_marker(path, info.sha256)
                return
            logger.warning(f"Discarding unverified shard file {path}")
            path.unlink()

        if show_progress:
            print(f"Downloading {info.name} shard ({info.encoding.extension})...")
        self.downloader.download(info.url, path, info.sha256, show_progress=show_progress)
        _write_marker(path, info.sha256)

    def ensure_rootfs(self, use_squashfs: Optional[bool] = None, show_progress: bool = True) -> Path:
        """Ensure the shared base rootfs is present."""
        return self.ensure("base", use_squashfs=use_squashfs, show_progress=show_progress)

    def ensure_all(
        self, platform: Platform, use_squashfs: Optional[bool] = None, show_progress: bool = True
    ) -> List[Path]:
        """Ensure the rootfs and the toolchain for platform.

        Returns:
            [rootfs, toolchain] paths
        """
        self.check_license(platform)
        return [
            self.ensure_rootfs(use_squashfs=use_squashfs, show_progress=show_progress),
            self.ensure(platform, use_squashfs=use_squashfs, show_progress=show_progress),
        ]

    def mount_plan(
        self, platform: Platform, use_squashfs: Optional[bool] = None, show_progress: bool = True
    ) -> List[MountSpec]:
        """Describe how the shards for platform are composed into a sandbox root.

        The rootfs goes at '/' and the toolchain at /opt/<triplet>, both read-only.
        """
        rootfs, toolchain = self.ensure_all(platform, use_squashfs=use_squashfs, show_progress=show_progress)
        return [
            MountSpec(source=rootfs, target="/", read_only=True),
            MountSpec(source=toolchain, target=f"/opt/{platform.triplet}", read_only=True),
        ]

    def owned_image(self, image: Path, uid: int) -> Path:
        """Get a copy of a squashfs image whose files are all owned by uid.

        The verified image is never modified; the copy is derived from it once
        per uid and reused afterwards.

        Raises:
            SquashfsError: If the image's id table cannot be rewritten
        """
        derived = image.with_name(f"{image.stem}.uid{uid}.squashfs")
        with self.cache.lock(derived.name):
            if derived.exists():
                return derived
            temp = derived.with_name(f".{derived.name}.{os.getpid()}.tmp")
            try:
                shutil.copyfile(image, temp)
                rewrite_squashfs_uids(temp, uid)
                os.replace(temp, derived)
            finally:
                if temp.exists():
                    temp.unlink()
        return derived

    def update_qemu(self, show_progress: bool = True) -> List[Path]:
        """Ensure the emulation backend's qemu binaries and guest kernel.

        Returns:
            [qemu, kernel] paths
        """
        return [
            self.ensure("qemu", use_squashfs=False, show_progress=show_progress),
            self.ensure("kernel", use_squashfs=False, show_progress=show_progress),
        ]


def load_shard_index(
    config: BuildConfig, cache: Cache, downloader: Optional[PackageDownloader] = None
) -> ShardIndex:
    """Load the shard index named by config.shard_index.

    A fetched index is cached under downloads/shards.json and that copy is used
    when the index cannot be fetched.

    Raises:
        ShardError: If no index can be loaded
    """
    downloader = downloader or PackageDownloader(
        retries=config.download_retries, backoff=config.download_backoff
    )
    cached = cache.downloads_dir / "shards.json"

    try:
        text = downloader.fetch_text(config.shard_index)
    except DownloadError as e:
        if not cached.exists():
            raise ShardError(f"Could not load shard index from {config.shard_index}: {e}") from e
        logger.warning(f"Using cached shard index; fetching {config.shard_index} failed: {e}")
        text = cached.read_text(encoding="utf-8")

    try:
        index = ShardIndex.from_json(text)
    except ShardIndexError as e:
        raise ShardError(str(e)) from e

    cached.parent.mkdir(parents=True, exist_ok=True)
    temp = cached.with_name(f".shards.json.{os.getpid()}.tmp")
    temp.write_text(text, encoding="utf-8")
    os.replace(temp, cached)
    return index
