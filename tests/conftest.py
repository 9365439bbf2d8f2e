"""
Shared fixtures for the binbuild test suite.

The object file builders produce the smallest ELF, Mach-O, PE and squashfs
files the parsers accept, so the audit and shard code can be tested without
any cross toolchain installed.
"""

import struct
from pathlib import Path
from typing import Dict, List, Optional, Sequence

import pytest

from binbuild.config.platform import Platform
from binbuild.config.settings import BuildConfig
from binbuild.sandbox.runner import RunResult

# ELF


def build_elf(
    machine: int = 62,
    is_64bit: bool = True,
    e_type: int = 3,
    interpreter: Optional[str] = None,
    needed: Sequence[str] = (),
    rpath: Optional[str] = None,
    text: bytes = b"\x90" * 16,
) -> bytes:
    """Build a minimal little-endian ELF object.

    Args:
        machine: e_machine (62 x86_64, 3 i386, 183 aarch64, 40 arm, 21 ppc64)
        is_64bit: ELFCLASS64 or ELFCLASS32
        e_type: 2 for ET_EXEC, 3 for ET_DYN
        interpreter: PT_INTERP path (makes an ET_DYN object an executable)
        needed: DT_NEEDED entries
        rpath: DT_RUNPATH value
        text: Contents of the .text section
    """
    ehsize = 64 if is_64bit else 52
    phentsize = 56 if is_64bit else 32
    shentsize = 64 if is_64bit else 40
    phnum = 1 if interpreter else 0
    base = ehsize + phnum * phentsize
    body = bytearray()

    def place(blob: bytes) -> int:
        offset = base + len(body)
        body.extend(blob)
        return offset

    interp_offset = place(interpreter.encode() + b"\0") if interpreter else 0
    text_offset = place(text)

    dynstr = bytearray(b"\0")

    def add_string(value: str) -> int:
        offset = len(dynstr)
        dynstr.extend(value.encode() + b"\0")
        return offset

    entries = [(1, add_string(name)) for name in needed]
    if rpath:
        entries.append((29, add_string(rpath)))
    entries.append((0, 0))
    dynstr_offset = place(bytes(dynstr))
    dynfmt = "<qQ" if is_64bit else "<iI"
    dynamic = b"".join(struct.pack(dynfmt, tag, value) for tag, value in entries)
    dynamic_offset = place(dynamic)

    shstrtab = bytearray(b"\0")
    names: Dict[str, int] = {}
    for name in (".text", ".dynstr", ".dynamic", ".shstrtab"):
        names[name] = len(shstrtab)
        shstrtab.extend(name.encode() + b"\0")
    shstrtab_offset = place(bytes(shstrtab))

    # (name, type, flags, offset, size, link)
    sections = [
        (0, 0, 0, 0, 0, 0),
        (names[".text"], 1, 0x6, text_offset, len(text), 0),
        (names[".dynstr"], 3, 0x2, dynstr_offset, len(dynstr), 0),
        (names[".dynamic"], 6, 0x3, dynamic_offset, len(dynamic), 2),
        (names[".shstrtab"], 3, 0, shstrtab_offset, len(shstrtab), 0),
    ]
    shoff = base + len(body)
    shfmt = "<IIQQQQIIQQ" if is_64bit else "<IIIIIIIIII"
    shdrs = b"".join(
        struct.pack(shfmt, name, sh_type, flags, 0, offset, size, link, 0, 0, 0)
        for name, sh_type, flags, offset, size, link in sections
    )

    ident = b"\x7fELF" + bytes([2 if is_64bit else 1, 1, 1, 0]) + b"\0" * 8
    phoff = ehsize if phnum else 0
    if is_64bit:
        header = struct.pack(
            "<HHIQQQIHHHHHH", e_type, machine, 1, 0, phoff, shoff, 0, ehsize, phentsize, phnum,
            shentsize, len(sections), 4,
        )
    else:
        header = struct.pack(
            "<HHIIIIIHHHHHH", e_type, machine, 1, 0, phoff, shoff, 0, ehsize, phentsize, phnum,
            shentsize, len(sections), 4,
        )

    phdrs = b""
    if interpreter:
        size = len(interpreter) + 1
        if is_64bit:
            phdrs = struct.pack("<IIQQQQQQ", 3, 4, interp_offset, 0, 0, size, size, 1)
        else:
            phdrs = struct.pack("<IIIIIIII", 3, interp_offset, 0, 0, size, size, 4, 1)

    return ident + header + phdrs + bytes(body) + shdrs


# Mach-O


def _padded(value: str, align: int = 8) -> bytes:
    raw = value.encode() + b"\0"
    return raw + b"\0" * (-len(raw) % align)


def build_macho(
    cputype: int = 0x01000007,
    filetype: int = 0x6,
    install_name: Optional[str] = None,
    dylibs: Sequence[str] = (),
    rpaths: Sequence[str] = (),
    text: bytes = b"\x90" * 16,
) -> bytes:
    """Build a minimal 64-bit Mach-O object.

    Args:
        cputype: CPU type (0x01000007 x86_64)
        filetype: 0x2 MH_EXECUTE, 0x6 MH_DYLIB
        install_name: LC_ID_DYLIB name
        dylibs: LC_LOAD_DYLIB names
        rpaths: LC_RPATH entries
        text: Contents of __TEXT,__text
    """
    commands: List[bytes] = []

    def dylib_command(cmd: int, name: str) -> bytes:
        payload = _padded(name)
        return struct.pack("<IIIIII", cmd, 24 + len(payload), 24, 2, 0x10000, 0x10000) + payload

    if install_name:
        commands.append(dylib_command(0xD, install_name))
    for name in dylibs:
        commands.append(dylib_command(0xC, name))
    for path in rpaths:
        payload = _padded(path)
        commands.append(struct.pack("<III", 0x8000001C, 12 + len(payload), 12) + payload)

    segment_size = 72 + 80
    sizeofcmds = sum(len(c) for c in commands) + segment_size
    text_offset = 32 + sizeofcmds
    segment = struct.pack(
        "<II16sQQQQiiII", 0x19, segment_size, b"__TEXT", 0, len(text), text_offset, len(text), 5, 5, 1, 0
    )
    section = struct.pack(
        "<16s16sQQIIIIIIII", b"__text", b"__TEXT", 0, len(text), text_offset, 0, 0, 0, 0x80000400, 0, 0, 0
    )
    commands.append(segment + section)

    header = struct.pack("<IiiIIIII", 0xFEEDFACF, cputype, 3, filetype, len(commands), sizeofcmds, 0, 0)
    return header + b"".join(commands) + text


# PE


def build_pe(machine: int = 0x8664, dll: bool = True, imports: Sequence[str] = ()) -> bytes:
    """Build a minimal PE image with an import directory.

    Args:
        machine: COFF machine (0x8664 x86_64, 0x14c i386)
        dll: Mark the image as a DLL
        imports: Names of imported DLLs
    """
    is_64bit = machine == 0x8664
    optional_size = 240 if is_64bit else 224
    dirs = 112 if is_64bit else 96

    idata_rva, text_rva = 0x2000, 0x1000
    idata = bytearray()
    names_offset = 20 * (len(imports) + 1)
    strings = bytearray()
    for name in imports:
        idata.extend(struct.pack("<IIIII", 0, 0, 0, idata_rva + names_offset + len(strings), 1))
        strings.extend(name.encode() + b"\0")
    idata.extend(b"\0" * 20)
    idata.extend(strings)
    idata.extend(b"\0" * (-len(idata) % 0x200))

    optional = bytearray(optional_size)
    struct.pack_into("<H", optional, 0, 0x20B if is_64bit else 0x10B)
    struct.pack_into("<I", optional, dirs - 4, 16)
    struct.pack_into("<II", optional, dirs + 8, idata_rva, len(idata))

    characteristics = 0x0002 | (0x2000 if dll else 0)
    coff = struct.pack("<HHIIIHH", machine, 2, 0, 0, 0, optional_size, characteristics)
    sections = struct.pack("<8sIIIIIIHHI", b".text", 0x200, text_rva, 0x200, 0x400, 0, 0, 0, 0, 0x60000020)
    sections += struct.pack("<8sIIIIIIHHI", b".idata", len(idata), idata_rva, len(idata), 0x600, 0, 0, 0, 0, 0xC0000040)

    dos = bytearray(0x80)
    dos[0:2] = b"MZ"
    struct.pack_into("<I", dos, 0x3C, 0x80)
    headers = bytes(dos) + b"PE\0\0" + coff + bytes(optional) + sections
    headers += b"\0" * (0x400 - len(headers))
    return headers + b"\x90" * 0x200 + bytes(idata)


# squashfs


def build_squashfs(ids: Sequence[int] = (0, 1000), compressed_ids: bool = False) -> bytes:
    """Build a squashfs 4.0 superblock followed by its id table."""
    block_start = 96
    payload = b"".join(struct.pack("<I", i) for i in ids)
    header = len(payload) | (0 if compressed_ids else 0x8000)
    block = struct.pack("<H", header) + payload
    table_start = block_start + len(block)

    superblock = bytearray(96)
    struct.pack_into("<I", superblock, 0, 0x73717368)
    struct.pack_into("<H", superblock, 26, len(ids))
    struct.pack_into("<HH", superblock, 28, 4, 0)
    struct.pack_into("<Q", superblock, 48, table_start)
    return bytes(superblock) + block + struct.pack("<Q", block_start)


@pytest.fixture
def make_elf():
    return build_elf


@pytest.fixture
def make_macho():
    return build_macho


@pytest.fixture
def make_pe():
    return build_pe


@pytest.fixture
def make_squashfs():
    return build_squashfs


# Sandbox doubles


class FakeRunner:
    """Stands in for a sandbox runner: records commands and replays canned results.

    Attributes:
        commands: Every argv or script passed to run()
        responses: Maps the first word of a command to its RunResult
        script_result: Result for shell-script commands
        on_script: Called with the workspace when a script runs, to fake its effects
    """

    backend_name = "fake"

    def __init__(self, platform: Platform, workspace: Path):
        self.platform = platform
        self.workspace = Path(workspace).absolute()
        self.commands: List = []
        self.responses: Dict[str, RunResult] = {}
        self.script_result = RunResult(exit_code=0)
        self.on_script = None
        self.opened = 0
        self.closed = 0
        self.terminated = 0

    def sandbox_path(self, host_path) -> str:
        relative = Path(host_path).absolute().relative_to(self.workspace)
        return "/workspace" if str(relative) == "." else f"/workspace/{relative.as_posix()}"

    def open(self):
        runner = self

        class _Context:
            def __enter__(self):
                runner.opened += 1
                return runner

            def __exit__(self, *exc):
                runner.closed += 1
                return False

        return _Context()

    def run(self, cmd, log_path=None, verbose=False, timeout=None) -> RunResult:
        self.commands.append(cmd)
        if isinstance(cmd, str):
            if log_path is not None:
                Path(log_path).parent.mkdir(parents=True, exist_ok=True)
                Path(log_path).write_text("fake build output\n")
            if self.on_script is not None:
                self.on_script(self.workspace)
            return self.script_result
        return self.responses.get(cmd[0], RunResult(exit_code=0))

    def terminate(self) -> int:
        self.terminated += 1
        return 0


@pytest.fixture
def fake_runner(tmp_path):
    """A FakeRunner for x86_64-linux-gnu whose workspace is tmp_path."""
    return FakeRunner(Platform.parse("x86_64-linux-gnu"), tmp_path)


@pytest.fixture
def fake_runner_class():
    return FakeRunner


@pytest.fixture
def config(tmp_path):
    """A BuildConfig whose caches live under tmp_path."""
    return BuildConfig(cache_root=tmp_path / "cache", parallelism=2, download_retries=1, download_backoff=0)
