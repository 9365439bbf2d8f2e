"""Package downloader with progress tracking and checksum verification.

This module handles downloading shards, sources, and dependency tarballs,
verifying their sha256 hashes, and extracting archives.

Downloads are written to a temporary file next to the destination and only
moved into place once the hash matches, so a half-downloaded or corrupted
file is never visible under its final name.
"""

import hashlib
import logging
import os
import shutil
import tarfile
import tempfile
import time
import zipfile
from pathlib import Path
from typing import Optional
from urllib.parse import urlparse

import requests
from tqdm import tqdm

from ..config.settings import DEFAULT_DOWNLOAD_BACKOFF, DEFAULT_DOWNLOAD_RETRIES

logger = logging.getLogger(__name__)


class DownloadError(Exception):
    """Raised when download fails."""

    pass


class HashMismatchError(Exception):
    """Raised when checksum verification fails."""

    pass


class ExtractionError(Exception):
    """Raised when archive extraction fails."""

    pass


def sha256_file(path: Path, chunk_size: int = 1024 * 1024) -> str:
    """Compute the SHA256 hex digest of a file."""
    sha256 = hashlib.sha256()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(chunk_size), b""):
            sha256.update(chunk)
    return sha256.hexdigest()


class PackageDownloader:
    """Downloads and extracts packages with progress tracking."""

    def __init__(
        self,
        chunk_size: int = 8192,
        retries: int = DEFAULT_DOWNLOAD_RETRIES,
        backoff: float = DEFAULT_DOWNLOAD_BACKOFF,
        timeout: float = 30,
    ):
        """Initialize downloader.

        Args:
            chunk_size: Size of chunks for downloading and hashing
            retries: Attempts made for transient network failures
            backoff: Base delay in seconds, doubled after each failed attempt
            timeout: Connect/read timeout for each request
        """
        self.chunk_size = chunk_size
        self.retries = max(1, retries)
        self.backoff = backoff
        self.timeout = timeout

    def download(
        self,
        url: str,
        dest_path: Path,
        checksum: Optional[str] = None,
        show_progress: bool = True,
    ) -> Path:
        """Download a file from a URL, retrying transient failures.

        Local paths and file:// URLs are copied instead of fetched.

        Args:
            url: URL to download from
            dest_path: Destination file path
            checksum: Optional SHA256 checksum for verification
            show_progress: Whether to show progress bar

        Returns:
            Path to the downloaded file

        Raises:
            DownloadError: If download fails after all retries
            HashMismatchError: If checksum verification fails
        """
        dest_path = Path(dest_path)
        dest_path.parent.mkdir(parents=True, exist_ok=True)

        parsed = urlparse(url)
        if parsed.scheme in ("", "file"):
            return self._copy_local(Path(parsed.path if parsed.scheme else url), dest_path, checksum)

        last_error: Optional[Exception] = None
        for attempt in range(1, self.retries + 1):
            try:
                return self._download_once(url, dest_path, checksum, show_progress)
            except requests.RequestException as e:
                last_error = e
                if attempt < self.retries:
                    delay = self.backoff * (2 ** (attempt - 1))
                    logger.warning(
                        f"Download of {url} failed (attempt {attempt}/{self.retries}): {e}; retrying in {delay:.1f}s"
                    )
                    time.sleep(delay)

        raise DownloadError(f"Failed to download {url} after {self.retries} attempts: {last_error}")

    def _download_once(
        self, url: str, dest_path: Path, checksum: Optional[str], show_progress: bool
    ) -> Path:
        # Use temporary file during download
        temp_file = dest_path.with_name(f".{dest_path.name}.{os.getpid()}.tmp")

        try:
            response = requests.get(url, stream=True, timeout=self.timeout)
            response.raise_for_status()

            total_size = int(response.headers.get("content-length", 0))

            progress_bar = None
            if show_progress and total_size > 0:
                filename = Path(urlparse(url).path).name
                progress_bar = tqdm(
                    total=total_size,
                    unit="B",
                    unit_scale=True,
                    unit_divisor=1024,
                    desc=f"Downloading {filename}",
                )

            sha256 = hashlib.sha256()
            try:
                with open(temp_file, "wb") as f:
                    for chunk in response.iter_content(chunk_size=self.chunk_size):
                        if chunk:
                            f.write(chunk)
                            sha256.update(chunk)
                            if progress_bar:
                                progress_bar.update(len(chunk))
            finally:
                if progress_bar:
                    progress_bar.close()

            if checksum:
                actual = sha256.hexdigest()
                if actual.lower() != checksum.lower():
                    raise HashMismatchError(
                        f"Checksum mismatch for {url}\n" + f"Expected: {checksum}\n" + f"Got: {actual}"
                    )

            os.replace(temp_file, dest_path)
            logger.info(f"Downloaded {url} -> {dest_path}")
            return dest_path
        finally:
            if temp_file.exists():
                temp_file.unlink()

    def _copy_local(self, source: Path, dest_path: Path, checksum: Optional[str]) -> Path:
        if not source.is_file():
            raise DownloadError(f"Local file not found: {source}")
        if checksum:
            self.verify_checksum(source, checksum)
        if source.resolve() == dest_path.resolve():
            return dest_path
        temp_file = dest_path.with_name(f".{dest_path.name}.{os.getpid()}.tmp")
        try:
            shutil.copyfile(source, temp_file)
            os.replace(temp_file, dest_path)
        finally:
            if temp_file.exists():
                temp_file.unlink()
        return dest_path

    def fetch_text(self, url: str) -> str:
        """Fetch a small text document (an index or manifest) from a URL or path.

        Raises:
            DownloadError: If the document cannot be read
        """
        parsed = urlparse(url)
        if parsed.scheme in ("", "file"):
            path = Path(parsed.path if parsed.scheme else url)
            try:
                return path.read_text(encoding="utf-8")
            except OSError as e:
                raise DownloadError(f"Failed to read {path}: {e}") from e

        last_error: Optional[Exception] = None
        for attempt in range(1, self.retries + 1):
            try:
                response = requests.get(url, timeout=self.timeout)
                response.raise_for_status()
                return response.text
            except requests.RequestException as e:
                last_error = e
                if attempt < self.retries:
                    time.sleep(self.backoff * (2 ** (attempt - 1)))
        raise DownloadError(f"Failed to fetch {url}: {last_error}")

    def verify_checksum(self, file_path: Path, expected: str) -> bool:
        """Verify SHA256 checksum of a file.

        Args:
            file_path: Path to file to verify
            expected: Expected SHA256 checksum (hex string)

        Returns:
            True if checksum matches

        Raises:
            HashMismatchError: If checksum doesn't match
        """
        actual = sha256_file(file_path)
        if actual.lower() != expected.lower():
            raise HashMismatchError(
                f"Checksum mismatch for {file_path}\n" + f"Expected: {expected}\n" + f"Got: {actual}"
            )
        return True

    def extract_archive(self, archive_path: Path, dest_dir: Path, show_progress: bool = True) -> Path:
        """Extract an archive into a new directory.

        Supports .tar.gz, .tar.bz2, .tar.xz, .tar, and .zip. The archive is
        unpacked into a temporary sibling of dest_dir which is renamed into
        place once extraction succeeds, so dest_dir either does not exist or is
        complete.

        Args:
            archive_path: Path to the archive file
            dest_dir: Destination directory (must not exist yet)
            show_progress: Whether to show progress information

        Returns:
            Path to the extracted directory

        Raises:
            ExtractionError: If extraction fails
        """
        archive_path = Path(archive_path)
        dest_dir = Path(dest_dir)

        if not archive_path.exists():
            raise ExtractionError(f"Archive not found: {archive_path}")
        if dest_dir.exists():
            raise ExtractionError(f"Extraction target already exists: {dest_dir}")

        dest_dir.parent.mkdir(parents=True, exist_ok=True)
        temp_dir = Path(tempfile.mkdtemp(prefix=f".{dest_dir.name}.", dir=dest_dir.parent))

        try:
            if show_progress:
                print(f"Extracting {archive_path.name}...")
            self.extract_into(archive_path, temp_dir)
            os.rename(temp_dir, dest_dir)
            return dest_dir
        except ExtractionError:
            raise
        except OSError as e:
            raise ExtractionError(f"Failed to extract {archive_path}: {e}") from e
        finally:
            if temp_dir.exists():
                shutil.rmtree(temp_dir, ignore_errors=True)

    def extract_into(self, archive_path: Path, dest_dir: Path) -> list[str]:
        """Extract an archive into an existing directory.

        Args:
            archive_path: Path to the archive file
            dest_dir: Existing destination directory

        Returns:
            Relative paths of the regular files and symlinks extracted

        Raises:
            ExtractionError: If the format is unsupported or extraction fails
        """
        name = archive_path.name
        try:
            if name.endswith(".zip"):
                with zipfile.ZipFile(archive_path, "r") as zip_file:
                    zip_file.extractall(dest_dir)
                    return [n for n in zip_file.namelist() if not n.endswith("/")]
            if name.endswith((".tar.gz", ".tgz", ".tar.bz2", ".tar.xz", ".tar")):
                with tarfile.open(archive_path, "r:*") as tar:
                    members = [m for m in tar.getmembers() if m.isfile() or m.issym() or m.islnk()]
                    tar.extractall(dest_dir, filter="tar")
                    return [m.name.lstrip("/") for m in members]
        except (tarfile.TarError, zipfile.BadZipFile, OSError) as e:
            raise ExtractionError(f"Failed to extract {archive_path}: {e}") from e
        raise ExtractionError(f"Unsupported archive format: {archive_path.name}")
