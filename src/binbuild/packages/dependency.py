"""Pre-built dependencies.

A Dependency points at another build's install manifest. Building it for a
platform installs that platform's tarball into a prefix and records a
receipt, so later builds can tell the dependency is already satisfied
without downloading the artifact again. Checking a receipt still reads the
manifest (once per Dependency), since the receipt must name the artifact
hash the manifest currently publishes.
"""

import json
import logging
import os
import posixpath
import tempfile
from pathlib import Path
from typing import TYPE_CHECKING, Dict, Iterable, Optional
from urllib.parse import urljoin, urlparse

from ..audit.auditor import AuditError, AuditOptions, audit
from ..config.platform import Platform
from .downloader import (
    DownloadError,
    ExtractionError,
    HashMismatchError,
    PackageDownloader,
    sha256_file,
)
from .manifest import ArtifactEntry, InstallManifest, ManifestError
from .prefix import Prefix

if TYPE_CHECKING:
    from ..sandbox.runner import Runner

logger = logging.getLogger(__name__)


class DependencyError(Exception):
    """Raised when a dependency cannot be resolved or installed."""

    pass


def _is_url(source: str) -> bool:
    return urlparse(source).scheme in ("http", "https", "file")


class Dependency:
    """Reference to another build's published artifacts."""

    def __init__(self, source: str, downloader: Optional[PackageDownloader] = None):
        """Initialize dependency.

        Args:
            source: Path or URL of the dependency's build.json
            downloader: Downloader for the manifest and artifacts
        """
        self.source = str(source)
        self.downloader = downloader or PackageDownloader()
        self._manifest: Optional[InstallManifest] = None

    def __repr__(self) -> str:
        return f"Dependency({self.source!r})"

    def manifest(self) -> InstallManifest:
        """Fetch and parse the manifest (once).

        Raises:
            DependencyError: If the manifest cannot be read or parsed
        """
        if self._manifest is None:
            try:
                self._manifest = InstallManifest.from_json(self.downloader.fetch_text(self.source))
            except ManifestError as e:
                raise DependencyError(f"Invalid manifest {self.source}: {e}") from e
            except DownloadError as e:
                raise DependencyError(f"Cannot read manifest {self.source}: {e}") from e
        return self._manifest

    @property
    def name(self) -> str:
        return self.manifest().name

    def artifact(self, platform: Platform) -> ArtifactEntry:
        """Artifact for platform, with its URL made absolute.

        Raises:
            DependencyError: If the manifest has no artifact for platform
        """
        manifest = self.manifest()
        try:
            entry = manifest.get(platform)
        except KeyError:
            raise DependencyError(f"{manifest.name} has no artifact for {platform.triplet}")

        url = entry.url
        if not _is_url(url) and not os.path.isabs(url):
            if _is_url(self.source):
                url = urljoin(self.source, url)
            else:
                url = str(Path(self.source).resolve().parent / url)
        return ArtifactEntry(url=url, sha256=entry.sha256)

    def receipt_path(self, prefix: Prefix, platform: Platform) -> Path:
        return prefix.receipts_dir / f"{self.name}-{platform.triplet}.json"

    def _read_receipt(self, prefix: Prefix, platform: Platform) -> Optional[dict]:
        path = self.receipt_path(prefix, platform)
        if not path.exists():
            return None
        try:
            return json.loads(path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as e:
            logger.warning(f"Ignoring unreadable receipt {path}: {e}")
            return None

    def satisfied(self, prefix: Prefix, platform: Platform, verbose: bool = False) -> bool:
        """Check whether the artifact for platform is installed and intact.

        The receipt must name the manifest's current artifact hash and every
        file it recorded must still be present with the recorded hash. This
        reads the manifest, which may be remote, but never the artifact.
        """
        receipt = self._read_receipt(prefix, platform)
        if receipt is None:
            if verbose:
                print(f"  {self.name}: not installed for {platform.triplet}")
            return False

        if receipt.get("sha256") != self.artifact(platform).sha256:
            if verbose:
                print(f"  {self.name}: installed artifact is out of date")
            return False

        for relpath, expected in receipt.get("files", {}).items():
            path = prefix.path / relpath
            if path.is_symlink():
                if not expected.startswith("symlink:") or os.readlink(path) != expected[len("symlink:") :]:
                    return False
                continue
            if not path.is_file() or sha256_file(path) != expected:
                if verbose:
                    print(f"  {self.name}: {relpath} is missing or modified")
                return False
        return True

    def build(
        self,
        prefix: Prefix,
        platform: Platform,
        runner: Optional["Runner"] = None,
        force: bool = False,
        autofix: bool = False,
        ignore_audit_errors: bool = True,
        verbose: bool = False,
    ) -> bool:
        """Install the artifact for platform into prefix.

        Args:
            prefix: Prefix to install into
            platform: Platform whose artifact to install
            runner: Sandbox runner used when auditing
            force: Reinstall even if already satisfied
            autofix: Repair autofixable audit findings
            ignore_audit_errors: Report audit findings instead of failing
            verbose: Print progress

        Returns:
            False if nothing was done, True if the artifact was installed

        Raises:
            DependencyError: If the artifact cannot be downloaded or extracted
            AuditError: If the audit fails and ignore_audit_errors is False
        """
        if not force and self.satisfied(prefix, platform):
            if verbose:
                print(f"{self.name} already satisfied for {platform.triplet}")
            return False

        entry = self.artifact(platform)
        if force:
            self.uninstall(prefix, platform)

        prefix.ensure()
        if verbose:
            print(f"Installing {self.name} for {platform.triplet}...")

        with tempfile.TemporaryDirectory(prefix="binbuild-dep-") as temp_dir:
            archive_name = posixpath.basename(urlparse(entry.url).path) or "artifact.tar.gz"
            archive = Path(temp_dir) / archive_name
            try:
                self.downloader.download(entry.url, archive, entry.sha256, show_progress=verbose)
                files = self.downloader.extract_into(archive, prefix.path)
            except (DownloadError, HashMismatchError, ExtractionError) as e:
                raise DependencyError(f"Failed to install {self.name} for {platform.triplet}: {e}") from e

        try:
            audit(
                prefix,
                platform,
                runner=runner,
                options=AuditOptions(verbose=verbose, autofix=autofix, fatal=not ignore_audit_errors),
            )
        except AuditError:
            # Leave the prefix as it was before build()
            self._remove_files(prefix, files)
            raise

        self._write_receipt(prefix, platform, entry.sha256, files)
        logger.info(f"Installed {self.name} ({len(files)} files) into {prefix.path}")
        return True

    def _write_receipt(self, prefix: Prefix, platform: Platform, sha256: str, files) -> None:
        recorded: Dict[str, str] = {}
        for relpath in files:
            path = prefix.path / relpath
            if path.is_symlink():
                recorded[relpath] = "symlink:" + os.readlink(path)
            elif path.is_file():
                recorded[relpath] = sha256_file(path)

        receipt = self.receipt_path(prefix, platform)
        receipt.parent.mkdir(parents=True, exist_ok=True)
        temp = receipt.with_name(f".{receipt.name}.{os.getpid()}.tmp")
        temp.write_text(
            json.dumps({"name": self.name, "sha256": sha256, "files": recorded}, indent=2) + "\n",
            encoding="utf-8",
        )
        os.replace(temp, receipt)

    def uninstall(self, prefix: Prefix, platform: Platform) -> bool:
        """Remove the files a previous build() installed into prefix.

        Returns:
            False if no receipt was found, True otherwise
        """
        receipt = self._read_receipt(prefix, platform)
        if receipt is None:
            return False
        self._remove_files(prefix, receipt.get("files", {}))
        self.receipt_path(prefix, platform).unlink()
        return True

    @staticmethod
    def _remove_files(prefix: Prefix, relpaths: Iterable[str]) -> None:
        for relpath in relpaths:
            path = prefix.path / relpath
            if path.is_symlink() or path.is_file():
                path.unlink()
