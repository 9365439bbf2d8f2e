"""Packaging of install prefixes into release tarballs."""

import logging
import os
import tarfile
from pathlib import Path
from typing import Tuple

from ..config.platform import Platform
from ..packages.downloader import sha256_file
from ..packages.prefix import Prefix

logger = logging.getLogger(__name__)

# Bookkeeping inside a prefix that never ships
EXCLUDED_DIRS = (".binbuild",)


def tarball_name(name: str, version: str, platform: Platform) -> str:
    return f"{name}.v{version}.{platform.triplet}.tar.gz"


def _normalize(info: tarfile.TarInfo) -> tarfile.TarInfo:
    info.uid = info.gid = 0
    info.uname = info.gname = ""
    return info


def package_prefix(
    prefix: Prefix, name: str, version: str, platform: Platform, output_dir: Path
) -> Tuple[Path, str]:
    """Pack the contents of prefix into a tarball in output_dir.

    Paths in the tarball are relative to the prefix, and ownership is reset
    so the tarball can be extracted by anyone.

    Args:
        prefix: Prefix to package
        name: Package name
        version: Package version
        platform: Platform the prefix was built for
        output_dir: Directory the tarball is written to

    Returns:
        (tarball path, sha256 of the tarball)
    """
    output_dir = Path(output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)
    tarball = output_dir / tarball_name(name, version, platform)
    temp = tarball.with_name(f".{tarball.name}.{os.getpid()}.tmp")

    try:
        with tarfile.open(temp, "w:gz") as tar:
            for entry in sorted(prefix.path.iterdir()):
                if entry.name in EXCLUDED_DIRS:
                    continue
                tar.add(entry, arcname=entry.name, recursive=True, filter=_normalize)
        os.replace(temp, tarball)
    finally:
        if temp.exists():
            temp.unlink()

    sha256 = sha256_file(tarball)
    logger.info(f"Packaged {prefix.path} as {tarball} ({sha256})")
    return tarball, sha256
