"""Per-platform build workspaces.

Every build attempt for a platform starts from a fresh workspace:

    <build_root>/<triplet>/
        srcdir/     Sources, unpacked (the build script starts here)
        destdir/    Install prefix
        logs/       Build output
        metadir/    Downloaded source archives

The workspace root is what the sandbox exposes as /workspace.
"""

import logging
import posixpath
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import Any, List, Mapping, Optional, Sequence
from urllib.parse import urlparse

from ..config.platform import Platform
from ..packages.downloader import DownloadError, ExtractionError, HashMismatchError, PackageDownloader
from ..packages.prefix import Prefix

logger = logging.getLogger(__name__)

ARCHIVE_SUFFIXES = (".tar.gz", ".tgz", ".tar.bz2", ".tar.xz", ".tar", ".zip")


class WorkspaceError(Exception):
    """Raised when a workspace cannot be prepared."""

    pass


@dataclass(frozen=True)
class SourceSpec:
    """A source the build script needs.

    Attributes:
        location: URL, or a local file or directory path
        sha256: Expected hash of the file (required for URLs, unused for directories)
    """

    location: str
    sha256: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Mapping[str, Any], base_dir: Optional[Path] = None) -> "SourceSpec":
        """Parse a {"url": ..., "sha256": ...} or {"path": ...} entry.

        Args:
            data: Source entry
            base_dir: Directory relative paths are resolved against

        Raises:
            WorkspaceError: If the entry is malformed
        """
        if "url" in data:
            if not data.get("sha256"):
                raise WorkspaceError(f"Source {data['url']} has no sha256")
            return cls(location=str(data["url"]), sha256=str(data["sha256"]).lower())
        if "path" in data:
            path = Path(data["path"]).expanduser()
            if base_dir is not None and not path.is_absolute():
                path = base_dir / path
            sha256 = data.get("sha256")
            return cls(location=str(path), sha256=str(sha256).lower() if sha256 else None)
        raise WorkspaceError(f"Source entry needs a 'url' or 'path': {dict(data)}")

    @property
    def is_remote(self) -> bool:
        return urlparse(self.location).scheme in ("http", "https", "file")

    @property
    def filename(self) -> str:
        if self.is_remote:
            return posixpath.basename(urlparse(self.location).path) or "source"
        return Path(self.location).name

    @property
    def is_archive(self) -> bool:
        return self.filename.endswith(ARCHIVE_SUFFIXES)


@dataclass(frozen=True)
class Workspace:
    """Directories of one build attempt for one platform."""

    root: Path
    srcdir: Path
    prefix: Prefix
    logdir: Path
    metadir: Path

    @classmethod
    def at(cls, root: Path) -> "Workspace":
        root = Path(root).absolute()
        return cls(
            root=root,
            srcdir=root / "srcdir",
            prefix=Prefix(root / "destdir"),
            logdir=root / "logs",
            metadir=root / "metadir",
        )

    @property
    def build_log(self) -> Path:
        return self.logdir / "build.log"

    def directories(self) -> List[Path]:
        return [self.srcdir, self.prefix.path, self.logdir, self.metadir]


def setup_workspace(
    build_root: Path,
    sources: Sequence[SourceSpec],
    platform: Platform,
    downloader: Optional[PackageDownloader] = None,
    verbose: bool = False,
) -> Workspace:
    """Create a fresh workspace for platform and populate its sources.

    Archives are unpacked into srcdir, directories are copied into
    srcdir/<name>, and any other file is copied into srcdir as-is. A previous
    workspace for the same platform is removed first.

    Args:
        build_root: Directory holding the per-platform workspaces
        sources: Sources to populate srcdir with
        platform: Platform the workspace is for
        downloader: Downloader for remote sources
        verbose: Print progress

    Returns:
        The prepared Workspace

    Raises:
        WorkspaceError: If a source cannot be fetched, verified, or unpacked
    """
    downloader = downloader or PackageDownloader()
    workspace = Workspace.at(Path(build_root) / platform.triplet)

    if workspace.root.exists():
        logger.debug(f"Removing previous workspace {workspace.root}")
        shutil.rmtree(workspace.root)
    for directory in workspace.directories():
        directory.mkdir(parents=True)

    for source in sources:
        if verbose:
            print(f"  Preparing source {source.filename}")
        try:
            _populate(workspace, source, downloader, verbose)
        except (DownloadError, HashMismatchError, ExtractionError, OSError) as e:
            raise WorkspaceError(f"Cannot prepare source {source.location}: {e}") from e

    return workspace


def _populate(workspace: Workspace, source: SourceSpec, downloader: PackageDownloader, verbose: bool) -> None:
    local = None if source.is_remote else Path(source.location)

    if local is not None and local.is_dir():
        shutil.copytree(local, workspace.srcdir / local.name, symlinks=True)
        return
    if local is not None and not local.exists():
        raise WorkspaceError(f"Source not found: {local}")

    if source.is_remote or source.sha256:
        # Goes through the downloader so the hash is checked
        fetched = downloader.download(
            source.location, workspace.metadir / source.filename, source.sha256, show_progress=verbose
        )
    else:
        fetched = Path(source.location)

    if source.is_archive:
        downloader.extract_into(fetched, workspace.srcdir)
    else:
        shutil.copy2(fetched, workspace.srcdir / source.filename)
