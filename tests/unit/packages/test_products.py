"""Unit tests for build products."""

import struct

import pytest

from binbuild.config.platform import Platform
from binbuild.packages.prefix import Prefix
from binbuild.packages.products import (
    ExecutableProduct,
    FileProduct,
    LibraryProduct,
    ProductError,
    product_from_dict,
    unsatisfied_products,
)

LINUX = Platform.linux("x86_64")
WINDOWS = Platform.windows("x86_64")
MACOS = Platform.macos()


@pytest.fixture
def prefix(tmp_path):
    prefix = Prefix(tmp_path / "destdir")
    prefix.ensure()
    return prefix


def _install(path, data, mode=0o755):
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(data)
    path.chmod(mode)
    return path


class TestLibraryProduct:
    """Test cases for LibraryProduct."""

    def test_versioned_soname(self, prefix, make_elf):
        lib = _install(prefix.path / "lib" / "libfoo.so.1.2", make_elf())
        assert LibraryProduct("libfoo").locate(prefix, LINUX) == lib

    def test_through_symlink(self, prefix, make_elf):
        _install(prefix.path / "lib" / "libfoo.so.1", make_elf())
        (prefix.path / "lib" / "libfoo.so").symlink_to("libfoo.so.1")
        assert LibraryProduct("libfoo").satisfied(prefix, LINUX)

    def test_missing_libdir(self, prefix):
        assert LibraryProduct("libfoo").locate(prefix, LINUX) is None

    def test_wrong_architecture(self, prefix, make_elf):
        _install(prefix.path / "lib" / "libfoo.so", make_elf(machine=183))
        assert not LibraryProduct("libfoo").satisfied(prefix, LINUX)

    def test_executable_is_not_a_library(self, prefix, make_elf):
        _install(prefix.path / "lib" / "libfoo.so", make_elf(interpreter="/lib64/ld-linux-x86-64.so.2"))
        assert not LibraryProduct("libfoo").satisfied(prefix, LINUX)

    def test_non_object_ignored(self, prefix):
        _install(prefix.path / "lib" / "libfoo.so", b"INPUT(-lfoo)\n")
        assert not LibraryProduct("libfoo").satisfied(prefix, LINUX)

    def test_similar_name_does_not_match(self, prefix, make_elf):
        _install(prefix.path / "lib" / "libfoobar.so", make_elf())
        assert not LibraryProduct("libfoo").satisfied(prefix, LINUX)

    def test_truncated_library_is_not_satisfied(self, prefix, make_elf):
        data = bytearray(make_elf(needed=["libc.so.6"]))
        struct.pack_into("<Q", data, 40, len(data) + 4096)
        _install(prefix.path / "lib" / "libfoo.so", bytes(data))
        assert not LibraryProduct("libfoo").satisfied(prefix, LINUX)

    def test_windows_dll_in_bin(self, prefix, make_pe):
        dll = _install(prefix.path / "bin" / "libfoo-1.dll", make_pe())
        assert LibraryProduct("libfoo").locate(prefix, WINDOWS) == dll

    def test_windows_dll_without_lib_prefix(self, prefix, make_pe):
        dll = _install(prefix.path / "bin" / "foo.dll", make_pe())
        assert LibraryProduct("libfoo").locate(prefix, WINDOWS) == dll

    def test_macos_dylib(self, prefix, make_macho):
        dylib = _install(prefix.path / "lib" / "libfoo.1.dylib", make_macho())
        assert LibraryProduct("libfoo").locate(prefix, MACOS) == dylib

    def test_invalid_name(self):
        with pytest.raises(ProductError):
            LibraryProduct("lib/foo")


class TestExecutableProduct:
    """Test cases for ExecutableProduct."""

    def test_linux_executable(self, prefix, make_elf):
        exe = _install(prefix.bindir / "fooifier", make_elf(e_type=2))
        assert ExecutableProduct("fooifier").locate(prefix, LINUX) == exe

    def test_not_executable(self, prefix, make_elf):
        _install(prefix.bindir / "fooifier", make_elf(e_type=2), mode=0o644)
        assert not ExecutableProduct("fooifier").satisfied(prefix, LINUX)

    def test_script_is_accepted(self, prefix):
        _install(prefix.bindir / "foo-config", b"#!/bin/sh\necho -lfoo\n")
        assert ExecutableProduct("foo-config").satisfied(prefix, LINUX)

    def test_windows_extension(self, prefix, make_pe):
        exe = _install(prefix.bindir / "fooifier.exe", make_pe(dll=False), mode=0o644)
        assert ExecutableProduct("fooifier").locate(prefix, WINDOWS) == exe

    def test_wrong_platform(self, prefix, make_elf):
        _install(prefix.bindir / "fooifier", make_elf(machine=3, is_64bit=False, e_type=2))
        assert not ExecutableProduct("fooifier").satisfied(prefix, LINUX)


class TestFileProduct:
    """Test cases for FileProduct."""

    def test_present(self, prefix):
        _install(prefix.includedir / "foo.h", b"")
        assert FileProduct("include/foo.h").satisfied(prefix, LINUX)

    def test_absent(self, prefix):
        assert not FileProduct("include/foo.h").satisfied(prefix, LINUX)

    def test_absolute_path_rejected(self):
        with pytest.raises(ProductError):
            FileProduct("/usr/include/foo.h")


class TestProductParsing:
    """Test cases for product_from_dict() and unsatisfied_products()."""

    def test_round_trip(self):
        for product in (LibraryProduct("libfoo"), ExecutableProduct("foo"), FileProduct("share/foo.txt")):
            parsed = product_from_dict(product.to_dict())
            assert type(parsed) is type(product)
            assert parsed.name == product.name

    def test_unknown_type(self):
        with pytest.raises(ProductError, match="Unknown product type"):
            product_from_dict({"type": "framework", "name": "Foo"})

    def test_missing_field(self):
        with pytest.raises(ProductError, match="missing"):
            product_from_dict({"type": "library"})

    def test_unsatisfied_products(self, prefix, make_elf):
        _install(prefix.path / "lib" / "libfoo.so", make_elf())
        products = [LibraryProduct("libfoo"), LibraryProduct("libbar"), FileProduct("include/foo.h")]
        missing = unsatisfied_products(products, prefix, LINUX)
        assert [p.name for p in missing] == ["libbar", "include/foo.h"]

    def test_satisfied_verbose(self, prefix, capsys):
        FileProduct("include/foo.h").satisfied(prefix, LINUX, verbose=True)
        assert "not found" in capsys.readouterr().out
