"""Unit tests for pre-built dependencies."""

import json
import tarfile
from unittest.mock import MagicMock, patch

import pytest

from binbuild.audit.auditor import AuditError
from binbuild.config.platform import Platform
from binbuild.packages.dependency import Dependency, DependencyError
from binbuild.packages.downloader import PackageDownloader, sha256_file
from binbuild.packages.manifest import InstallManifest
from binbuild.packages.prefix import Prefix

LINUX = Platform.linux("x86_64")


@pytest.fixture
def published(tmp_path, make_elf):
    """A published libfoo build: one tarball and its build.json."""
    content = tmp_path / "content"
    (content / "lib").mkdir(parents=True)
    (content / "lib" / "libfoo.so.1").write_bytes(make_elf(needed=["libc.so.6"]))
    (content / "lib" / "libfoo.so").symlink_to("libfoo.so.1")
    (content / "include").mkdir()
    (content / "include" / "foo.h").write_text("int foo(void);\n")

    out = tmp_path / "products"
    out.mkdir()
    tarball = out / "libfoo.v1.0.0.x86_64-linux-gnu.tar.gz"
    with tarfile.open(tarball, "w:gz") as tar:
        for entry in sorted(content.iterdir()):
            tar.add(entry, arcname=entry.name)

    manifest = InstallManifest(name="libfoo", version="1.0.0")
    manifest.add(LINUX, tarball.name, sha256_file(tarball))
    return manifest.save(out / "build.json")


@pytest.fixture
def prefix(tmp_path):
    return Prefix(tmp_path / "destdir")


class TestDependencyManifest:
    """Test cases for manifest resolution."""

    def test_name(self, published):
        assert Dependency(str(published)).name == "libfoo"

    def test_relative_url_resolved_against_manifest(self, published):
        entry = Dependency(str(published)).artifact(LINUX)
        assert entry.url == str(published.parent / "libfoo.v1.0.0.x86_64-linux-gnu.tar.gz")

    def test_relative_url_resolved_against_remote_manifest(self):
        downloader = MagicMock(spec=PackageDownloader)
        downloader.fetch_text.return_value = json.dumps(
            {"name": "libfoo", "artifacts": {"x86_64-linux-gnu": {"url": "libfoo.tar.gz", "sha256": "a" * 64}}}
        )
        dep = Dependency("https://example.com/releases/build.json", downloader=downloader)
        assert dep.artifact(LINUX).url == "https://example.com/releases/libfoo.tar.gz"

    def test_manifest_fetched_once(self, published):
        downloader = MagicMock(wraps=PackageDownloader())
        dep = Dependency(str(published), downloader=downloader)
        assert dep.name == "libfoo"
        dep.artifact(LINUX)
        assert downloader.fetch_text.call_count == 1

    def test_missing_platform(self, published):
        with pytest.raises(DependencyError, match="no artifact for i686-w64-mingw32"):
            Dependency(str(published)).artifact(Platform.windows("i686"))

    def test_missing_manifest(self, tmp_path):
        with pytest.raises(DependencyError, match="Cannot read manifest"):
            Dependency(str(tmp_path / "missing.json")).manifest()

    def test_invalid_manifest(self, tmp_path):
        path = tmp_path / "build.json"
        path.write_text("[1, 2]")
        with pytest.raises(DependencyError, match="Invalid manifest"):
            Dependency(str(path)).manifest()


class TestDependencyInstall:
    """Test cases for Dependency.build(), satisfied() and uninstall()."""

    def test_install(self, published, prefix):
        dep = Dependency(str(published))
        assert dep.build(prefix, LINUX) is True
        assert (prefix.path / "include" / "foo.h").exists()
        assert (prefix.path / "lib" / "libfoo.so").is_symlink()
        assert dep.receipt_path(prefix, LINUX).exists()
        assert dep.satisfied(prefix, LINUX)

    def test_second_build_is_noop(self, published, prefix):
        dep = Dependency(str(published))
        dep.build(prefix, LINUX)
        assert dep.build(prefix, LINUX) is False

    def test_modified_file_unsatisfies(self, published, prefix):
        dep = Dependency(str(published))
        dep.build(prefix, LINUX)
        (prefix.path / "include" / "foo.h").write_text("changed\n")
        assert not dep.satisfied(prefix, LINUX)

    def test_retargeted_symlink_unsatisfies(self, published, prefix):
        dep = Dependency(str(published))
        dep.build(prefix, LINUX)
        link = prefix.path / "lib" / "libfoo.so"
        link.unlink()
        link.symlink_to("elsewhere")
        assert not dep.satisfied(prefix, LINUX)

    def test_new_artifact_unsatisfies(self, published, prefix):
        dep = Dependency(str(published))
        dep.build(prefix, LINUX)

        manifest = InstallManifest.load(published)
        manifest.add(LINUX, manifest.get(LINUX).url, "0" * 64)
        manifest.save(published)
        assert not Dependency(str(published)).satisfied(prefix, LINUX)

    def test_force_reinstalls(self, published, prefix):
        dep = Dependency(str(published))
        dep.build(prefix, LINUX)
        assert dep.build(prefix, LINUX, force=True) is True
        assert dep.satisfied(prefix, LINUX)

    def test_corrupt_artifact(self, published, prefix):
        manifest = InstallManifest.load(published)
        manifest.add(LINUX, manifest.get(LINUX).url, "0" * 64)
        manifest.save(published)
        with pytest.raises(DependencyError, match="Failed to install"):
            Dependency(str(published)).build(prefix, LINUX)

    def test_uninstall(self, published, prefix):
        dep = Dependency(str(published))
        dep.build(prefix, LINUX)
        assert dep.uninstall(prefix, LINUX) is True
        assert not (prefix.path / "include" / "foo.h").exists()
        assert not (prefix.path / "lib" / "libfoo.so").exists()
        assert not dep.receipt_path(prefix, LINUX).exists()

    def test_uninstall_without_receipt(self, published, prefix):
        assert Dependency(str(published)).uninstall(prefix, LINUX) is False

    def test_satisfied_does_not_download(self, published, prefix):
        Dependency(str(published)).build(prefix, LINUX)
        downloader = MagicMock(wraps=PackageDownloader())
        dep = Dependency(str(published), downloader=downloader)
        assert dep.satisfied(prefix, LINUX)
        assert dep.satisfied(prefix, LINUX)
        downloader.download.assert_not_called()
        assert downloader.fetch_text.call_count == 1


class TestDependencyAuditFailure:
    """Test cases for a dependency rejected by a fatal audit."""

    @pytest.fixture
    def foreign(self, tmp_path, make_elf):
        """A build.json whose x86_64 artifact actually contains an aarch64 library."""
        content = tmp_path / "foreign"
        (content / "lib").mkdir(parents=True)
        (content / "lib" / "libbar.so").write_bytes(make_elf(machine=183))
        (content / "include").mkdir()
        (content / "include" / "bar.h").write_text("int bar(void);\n")

        tarball = tmp_path / "libbar.v1.0.0.x86_64-linux-gnu.tar.gz"
        with tarfile.open(tarball, "w:gz") as tar:
            for entry in sorted(content.iterdir()):
                tar.add(entry, arcname=entry.name)
        manifest = InstallManifest(name="libbar", version="1.0.0")
        manifest.add(LINUX, tarball.name, sha256_file(tarball))
        return manifest.save(tmp_path / "build.json")

    def test_fatal_audit_removes_installed_files(self, foreign, prefix):
        dep = Dependency(str(foreign))
        with pytest.raises(AuditError):
            dep.build(prefix, LINUX, ignore_audit_errors=False)

        assert not (prefix.path / "lib" / "libbar.so").exists()
        assert not (prefix.path / "include" / "bar.h").exists()
        assert not dep.receipt_path(prefix, LINUX).exists()
        assert not dep.satisfied(prefix, LINUX)

    def test_prefix_files_of_other_packages_kept(self, foreign, prefix):
        prefix.ensure()
        own = prefix.path / "include" / "own.h"
        own.parent.mkdir(parents=True, exist_ok=True)
        own.write_text("int own(void);\n")

        with patch("binbuild.packages.dependency.audit", side_effect=AuditError("rejected")):
            with pytest.raises(AuditError, match="rejected"):
                Dependency(str(foreign)).build(prefix, LINUX, ignore_audit_errors=False)
        assert own.exists()
        assert not (prefix.path / "include" / "bar.h").exists()

    def test_non_fatal_audit_installs(self, foreign, prefix):
        dep = Dependency(str(foreign))
        assert dep.build(prefix, LINUX) is True
        assert dep.satisfied(prefix, LINUX)
