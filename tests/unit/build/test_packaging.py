"""Unit tests for prefix packaging."""

import hashlib
import tarfile

from binbuild.build.packaging import package_prefix, tarball_name
from binbuild.config.platform import Platform
from binbuild.packages.prefix import Prefix

LINUX = Platform.parse("x86_64-linux-gnu")


class TestTarballName:
    def test_name(self):
        assert tarball_name("libfoo", "1.2.0", LINUX) == "libfoo.v1.2.0.x86_64-linux-gnu.tar.gz"
        assert tarball_name("libfoo", "1.2.0", Platform.windows("i686")) == "libfoo.v1.2.0.i686-w64-mingw32.tar.gz"


class TestPackagePrefix:
    """Test cases for package_prefix()."""

    def _prefix(self, tmp_path):
        prefix = Prefix(tmp_path / "destdir")
        (prefix.path / "lib").mkdir(parents=True)
        (prefix.path / "lib" / "libfoo.so.1").write_text("elf")
        (prefix.path / "lib" / "libfoo.so").symlink_to("libfoo.so.1")
        (prefix.path / "include").mkdir()
        (prefix.path / "include" / "foo.h").write_text("int foo(void);\n")
        (prefix.receipts_dir).mkdir(parents=True)
        (prefix.receipts_dir / "libbar.json").write_text("{}")
        return prefix

    def test_contents(self, tmp_path):
        tarball, _ = package_prefix(self._prefix(tmp_path), "libfoo", "1.0", LINUX, tmp_path / "out")
        assert tarball == tmp_path / "out" / "libfoo.v1.0.x86_64-linux-gnu.tar.gz"
        with tarfile.open(tarball) as tar:
            names = sorted(tar.getnames())
            link = tar.getmember("lib/libfoo.so")
            owners = {(m.uid, m.gid, m.uname) for m in tar.getmembers()}
        assert names == ["include", "include/foo.h", "lib", "lib/libfoo.so", "lib/libfoo.so.1"]
        assert link.issym() and link.linkname == "libfoo.so.1"
        assert owners == {(0, 0, "")}

    def test_hash(self, tmp_path):
        tarball, sha256 = package_prefix(self._prefix(tmp_path), "libfoo", "1.0", LINUX, tmp_path / "out")
        assert sha256 == hashlib.sha256(tarball.read_bytes()).hexdigest()
        assert [p.name for p in (tmp_path / "out").iterdir()] == [tarball.name]

    def test_overwrites_previous(self, tmp_path):
        prefix = self._prefix(tmp_path)
        first, _ = package_prefix(prefix, "libfoo", "1.0", LINUX, tmp_path / "out")
        (prefix.path / "include" / "bar.h").write_text("")
        second, _ = package_prefix(prefix, "libfoo", "1.0", LINUX, tmp_path / "out")
        assert first == second
        with tarfile.open(second) as tar:
            assert "include/bar.h" in tar.getnames()
