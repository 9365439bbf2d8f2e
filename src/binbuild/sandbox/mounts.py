"""Host mount bookkeeping.

Squashfs shard images have to be loop-mounted on the host before a
namespace can bind them. Every mount made through a MountTable is undone in
reverse order when the table is closed, however the run ended.
"""

import logging
import os
import subprocess
from pathlib import Path
from typing import List, Optional

logger = logging.getLogger(__name__)

PROC_MOUNTS = Path("/proc/mounts")


class MountError(Exception):
    """Raised when a host mount or unmount fails."""

    pass


def _unescape(field: str) -> str:
    # /proc/mounts escapes whitespace and backslashes as octal
    return (
        field.replace("\\040", " ").replace("\\011", "\t").replace("\\012", "\n").replace("\\134", "\\")
    )


def filesystem_type(path: Path, mounts_file: Path = PROC_MOUNTS) -> Optional[str]:
    """Type of the filesystem path lives on, by longest mount point prefix."""
    try:
        lines = Path(mounts_file).read_text().splitlines()
    except OSError:
        return None

    target = os.path.realpath(path)
    best, best_type = "", None
    for line in lines:
        fields = line.split()
        if len(fields) < 3:
            continue
        mountpoint = _unescape(fields[1])
        if target == mountpoint or target.startswith(mountpoint.rstrip("/") + "/"):
            if len(mountpoint) >= len(best):
                best, best_type = mountpoint, fields[2]
    return best_type


def is_ecryptfs(path: Path, mounts_file: Path = PROC_MOUNTS) -> bool:
    """Check whether path is on an ecryptfs mount.

    ecryptfs cannot serve as a lower layer for overlay mounts, so sandbox
    directories on it fail in confusing ways.
    """
    return filesystem_type(path, mounts_file) == "ecryptfs"


class MountTable:
    """Host mounts owned by one sandbox context."""

    def __init__(self, sudo: bool = True):
        self.sudo = sudo and os.geteuid() != 0
        self._mounted: List[Path] = []

    def _command(self, argv: List[str]) -> List[str]:
        return (["sudo", "-n"] if self.sudo else []) + argv

    def mount_image(self, image: Path, mountpoint: Path) -> Path:
        """Loop-mount a squashfs image read-only.

        Raises:
            MountError: If the mount fails
        """
        mountpoint.mkdir(parents=True, exist_ok=True)
        argv = self._command(["mount", "-t", "squashfs", "-o", "loop,ro", str(image), str(mountpoint)])
        result = subprocess.run(argv, capture_output=True, text=True, check=False)
        if result.returncode != 0:
            raise MountError(f"Failed to mount {image} at {mountpoint}: {result.stderr.strip()}")
        logger.debug(f"Mounted {image} at {mountpoint}")
        self._mounted.append(mountpoint)
        return mountpoint

    def unmount_all(self) -> None:
        """Unmount everything in reverse order.

        Raises:
            MountError: If any unmount fails (the rest are still attempted)
        """
        failures = []
        while self._mounted:
            mountpoint = self._mounted.pop()
            result = subprocess.run(
                self._command(["umount", str(mountpoint)]), capture_output=True, text=True, check=False
            )
            if result.returncode != 0:
                failures.append(f"{mountpoint}: {result.stderr.strip()}")
                continue
            logger.debug(f"Unmounted {mountpoint}")
        if failures:
            raise MountError("Failed to unmount " + "; ".join(failures))

    @property
    def mounted(self) -> List[Path]:
        return list(self._mounted)

    def __enter__(self) -> "MountTable":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        try:
            self.unmount_all()
        except MountError as e:
            if exc_type is None:
                raise
            # Keep the original exception
            logger.error(str(e))
