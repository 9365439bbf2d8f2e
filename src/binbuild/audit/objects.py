"""Object file inspection.

This module gives the auditor a single view of ELF, Mach-O, and PE objects:
what platform an object was built for, which libraries it loads, which
search paths it embeds, and which of its sections hold code. Headers are
parsed directly with struct, so inspection works on the host without any
target binutils. Rewriting linkage does need target tools, and is done
through a sandbox runner.
"""

import logging
import struct
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, List, Optional, Tuple

from ..config.platform import Platform

if TYPE_CHECKING:
    from ..sandbox.runner import Runner

logger = logging.getLogger(__name__)


class ObjectParseError(Exception):
    """Raised when an object file header is truncated or malformed."""

    pass


@dataclass(frozen=True)
class Section:
    """One section of an object file."""

    name: str
    offset: int
    size: int
    executable: bool


class ObjectHandle(ABC):
    """Format-independent view of one object file."""

    def __init__(self, path: Path, data: bytes):
        self.path = Path(path)
        self._data = data

    @property
    @abstractmethod
    def os(self) -> str:
        """Operating system the object targets ('linux', 'windows', 'macos')."""

    @property
    @abstractmethod
    def arch(self) -> Optional[str]:
        """Architecture name as used by Platform, or None if unknown."""

    @property
    @abstractmethod
    def is_64bit(self) -> bool: ...

    @property
    @abstractmethod
    def is_shared_library(self) -> bool: ...

    @property
    @abstractmethod
    def is_executable(self) -> bool: ...

    @abstractmethod
    def dynamic_dependencies(self) -> List[str]:
        """Libraries the object loads, exactly as recorded in the object."""

    def rpaths(self) -> List[str]:
        """Runtime library search paths embedded in the object."""
        return []

    @abstractmethod
    def sections(self) -> List[Section]: ...

    def executable_sections(self) -> List[Section]:
        return [s for s in self.sections() if s.executable]

    def libc(self) -> Optional[str]:
        """C library the object was linked against, when it can be told."""
        return None

    def platform(self) -> Optional[Platform]:
        """Best-effort Platform this object was built for."""
        if self.arch is None:
            return None
        try:
            if self.os == "windows":
                return Platform.windows(self.arch)
            if self.os == "macos":
                return Platform.macos(self.arch)
            return Platform.linux(self.arch, self.libc() or "glibc")
        except ValueError:
            return None

    def rewrite_dependency(self, runner: "Runner", old: str, new: str) -> bool:
        """Change a recorded dependency from old to new. Returns success."""
        raise NotImplementedError(f"Cannot rewrite linkage of {self.format_name} objects")

    def add_rpath(self, runner: "Runner", rpath: str) -> bool:
        """Append a runtime search path. Returns success."""
        raise NotImplementedError(f"Cannot add search paths to {self.format_name} objects")

    @property
    def format_name(self) -> str:
        return type(self).__name__.replace("Handle", "")

    def _cstring(self, offset: int) -> str:
        end = self._data.find(b"\0", offset)
        if end < 0:
            end = len(self._data)
        return self._data[offset:end].decode("utf-8", errors="replace")

    def _unpack(self, fmt: str, offset: int) -> Tuple:
        try:
            return struct.unpack_from(fmt, self._data, offset)
        except struct.error as e:
            raise ObjectParseError(f"{self.path}: truncated header at offset {offset}") from e


# ELF

ELF_MAGIC = b"\x7fELF"
ET_EXEC = 2
ET_DYN = 3
PT_INTERP = 3
SHT_DYNAMIC = 6
SHF_EXECINSTR = 0x4
DT_NULL = 0
DT_NEEDED = 1
DT_RPATH = 15
DT_RUNPATH = 29

_ELF_MACHINES = {
    3: "i686",
    62: "x86_64",
    40: "armv7l",
    183: "aarch64",
    21: "ppc64le",
}


class ElfHandle(ObjectHandle):
    """ELF object (linux)."""

    def __init__(self, path: Path, data: bytes):
        super().__init__(path, data)
        if len(data) < 52:
            raise ObjectParseError(f"{path}: truncated ELF header")
        self._64 = data[4] == 2
        self._endian = "<" if data[5] == 1 else ">"
        e = self._endian
        self.e_type, self.e_machine = self._unpack(f"{e}HH", 16)
        if self._64:
            self.e_phoff, self.e_shoff = self._unpack(f"{e}QQ", 32)
            (self.e_phentsize, self.e_phnum, self.e_shentsize, self.e_shnum, self.e_shstrndx) = (
                self._unpack(f"{e}HHHHH", 54)
            )
        else:
            self.e_phoff, self.e_shoff = self._unpack(f"{e}II", 28)
            (self.e_phentsize, self.e_phnum, self.e_shentsize, self.e_shnum, self.e_shstrndx) = (
                self._unpack(f"{e}HHHHH", 42)
            )
        self._sections: Optional[List[Tuple[str, int, int, int, int, int]]] = None
        self._dynamic: Optional[List[Tuple[int, str]]] = None

    @property
    def os(self) -> str:
        return "linux"

    @property
    def arch(self) -> Optional[str]:
        return _ELF_MACHINES.get(self.e_machine)

    @property
    def is_64bit(self) -> bool:
        return self._64

    @property
    def is_shared_library(self) -> bool:
        # PIE executables are ET_DYN too; they carry an interpreter
        return self.e_type == ET_DYN and self.interpreter() is None

    @property
    def is_executable(self) -> bool:
        return self.e_type == ET_EXEC or (self.e_type == ET_DYN and self.interpreter() is not None)

    def interpreter(self) -> Optional[str]:
        """Path of the program interpreter (PT_INTERP), if any."""
        e = self._endian
        for i in range(self.e_phnum):
            base = self.e_phoff + i * self.e_phentsize
            if self._64:
                p_type, _, p_offset = self._unpack(f"{e}IIQ", base)
            else:
                p_type, p_offset = self._unpack(f"{e}II", base)
            if p_type == PT_INTERP:
                return self._cstring(p_offset)
        return None

    def libc(self) -> Optional[str]:
        interp = self.interpreter()
        if interp is not None:
            return "musl" if "ld-musl" in interp else "glibc"
        needed = self.dynamic_dependencies()
        if any(n.startswith(("libc.musl", "ld-musl")) for n in needed):
            return "musl"
        if any(n.startswith("libc.so.6") for n in needed):
            return "glibc"
        return None

    def _section_headers(self) -> List[Tuple[str, int, int, int, int, int]]:
        """(name, type, flags, offset, size, link) for every section."""
        if self._sections is not None:
            return self._sections
        e = self._endian
        raw = []
        for i in range(self.e_shnum):
            base = self.e_shoff + i * self.e_shentsize
            if self._64:
                name, sh_type, flags, _, offset, size, link = self._unpack(f"{e}IIQQQQI", base)
            else:
                name, sh_type, flags, _, offset, size, link = self._unpack(f"{e}IIIIIII", base)
            raw.append((name, sh_type, flags, offset, size, link))

        strtab_offset = raw[self.e_shstrndx][3] if 0 < self.e_shstrndx < len(raw) else None
        self._sections = [
            (
                self._cstring(strtab_offset + name) if strtab_offset is not None else "",
                sh_type,
                flags,
                offset,
                size,
                link,
            )
            for name, sh_type, flags, offset, size, link in raw
        ]
        return self._sections

    def _dynamic_entries(self) -> List[Tuple[int, str]]:
        """(tag, string) for the string-valued dynamic entries we care about."""
        if self._dynamic is not None:
            return self._dynamic
        e = self._endian
        headers = self._section_headers()
        entries: List[Tuple[int, str]] = []
        for _, sh_type, _, offset, size, link in headers:
            if sh_type != SHT_DYNAMIC or link >= len(headers):
                continue
            strtab = headers[link][3]
            entsize = 16 if self._64 else 8
            fmt = f"{e}qQ" if self._64 else f"{e}iI"
            for pos in range(offset, offset + size, entsize):
                tag, value = self._unpack(fmt, pos)
                if tag == DT_NULL:
                    break
                if tag in (DT_NEEDED, DT_RPATH, DT_RUNPATH):
                    entries.append((tag, self._cstring(strtab + value)))
        self._dynamic = entries
        return entries

    def dynamic_dependencies(self) -> List[str]:
        return [value for tag, value in self._dynamic_entries() if tag == DT_NEEDED]

    def rpaths(self) -> List[str]:
        paths: List[str] = []
        for tag, value in self._dynamic_entries():
            if tag in (DT_RPATH, DT_RUNPATH):
                paths.extend(p for p in value.split(":") if p)
        return paths

    def sections(self) -> List[Section]:
        return [
            Section(name, offset, size, bool(flags & SHF_EXECINSTR))
            for name, _, flags, offset, size, _ in self._section_headers()
            if name
        ]

    def rewrite_dependency(self, runner: "Runner", old: str, new: str) -> bool:
        result = runner.run(["patchelf", "--replace-needed", old, new, runner.sandbox_path(self.path)])
        return result.exit_code == 0

    def add_rpath(self, runner: "Runner", rpath: str) -> bool:
        current = self.rpaths()
        if rpath in current:
            return True
        result = runner.run(
            ["patchelf", "--set-rpath", ":".join(current + [rpath]), runner.sandbox_path(self.path)]
        )
        return result.exit_code == 0


# Mach-O

MH_MAGIC = 0xFEEDFACE
MH_MAGIC_64 = 0xFEEDFACF
FAT_MAGIC = 0xCAFEBABE
MH_EXECUTE = 0x2
MH_DYLIB = 0x6
MH_BUNDLE = 0x8
LC_SEGMENT = 0x1
LC_SEGMENT_64 = 0x19
LC_LOAD_DYLIB = 0xC
LC_ID_DYLIB = 0xD
LC_LOAD_WEAK_DYLIB = 0x80000018
LC_REEXPORT_DYLIB = 0x8000001F
LC_RPATH = 0x8000001C
S_ATTR_PURE_INSTRUCTIONS = 0x80000000
S_ATTR_SOME_INSTRUCTIONS = 0x400

_MACHO_CPUS = {
    7: "i686",
    0x01000007: "x86_64",
    12: "armv7l",
    0x0100000C: "aarch64",
    0x01000012: "ppc64le",
}


class MachOHandle(ObjectHandle):
    """Mach-O object (macos). Fat files are inspected through their first slice."""

    def __init__(self, path: Path, data: bytes, base: int = 0):
        super().__init__(path, data)
        self._base = base
        magic = self._unpack("<I", base)[0]
        self._64 = magic == MH_MAGIC_64
        self.cputype, _, self.filetype, self.ncmds, self.sizeofcmds = self._unpack("<iiIII", base + 4)
        self._header_size = 32 if self._64 else 28
        self._commands: Optional[List[Tuple[int, int, int]]] = None

    @property
    def os(self) -> str:
        return "macos"

    @property
    def arch(self) -> Optional[str]:
        return _MACHO_CPUS.get(self.cputype)

    @property
    def is_64bit(self) -> bool:
        return self._64

    @property
    def is_shared_library(self) -> bool:
        return self.filetype in (MH_DYLIB, MH_BUNDLE)

    @property
    def is_executable(self) -> bool:
        return self.filetype == MH_EXECUTE

    def _load_commands(self) -> List[Tuple[int, int, int]]:
        """(cmd, offset, size) for each load command."""
        if self._commands is None:
            commands = []
            offset = self._base + self._header_size
            for _ in range(self.ncmds):
                cmd, size = self._unpack("<II", offset)
                if size < 8:
                    raise ObjectParseError(f"{self.path}: malformed load command at {offset}")
                commands.append((cmd, offset, size))
                offset += size
            self._commands = commands
        return self._commands

    def _lc_str(self, offset: int) -> str:
        return self._cstring(offset + self._unpack("<I", offset + 8)[0])

    def install_name(self) -> Optional[str]:
        for cmd, offset, _ in self._load_commands():
            if cmd == LC_ID_DYLIB:
                return self._lc_str(offset)
        return None

    def dynamic_dependencies(self) -> List[str]:
        return [
            self._lc_str(offset)
            for cmd, offset, _ in self._load_commands()
            if cmd in (LC_LOAD_DYLIB, LC_LOAD_WEAK_DYLIB, LC_REEXPORT_DYLIB)
        ]

    def rpaths(self) -> List[str]:
        return [self._lc_str(offset) for cmd, offset, _ in self._load_commands() if cmd == LC_RPATH]

    def sections(self) -> List[Section]:
        sections = []
        for cmd, offset, _ in self._load_commands():
            if cmd == LC_SEGMENT_64:
                nsects = self._unpack("<I", offset + 64)[0]
                start, step = offset + 72, 80
            elif cmd == LC_SEGMENT:
                nsects = self._unpack("<I", offset + 48)[0]
                start, step = offset + 56, 68
            else:
                continue
            for i in range(nsects):
                sect = start + i * step
                name = self._data[sect : sect + 16].rstrip(b"\0").decode("ascii", errors="replace")
                if self._64:
                    size, file_offset = self._unpack("<QI", sect + 40)
                    flags = self._unpack("<I", sect + 64)[0]
                else:
                    size, file_offset = self._unpack("<II", sect + 36)
                    flags = self._unpack("<I", sect + 56)[0]
                executable = bool(flags & (S_ATTR_PURE_INSTRUCTIONS | S_ATTR_SOME_INSTRUCTIONS))
                sections.append(Section(name, self._base + file_offset, size, executable))
        return sections

    def rewrite_dependency(self, runner: "Runner", old: str, new: str) -> bool:
        result = runner.run(["install_name_tool", "-change", old, new, runner.sandbox_path(self.path)])
        return result.exit_code == 0

    def add_rpath(self, runner: "Runner", rpath: str) -> bool:
        if rpath in self.rpaths():
            return True
        result = runner.run(["install_name_tool", "-add_rpath", rpath, runner.sandbox_path(self.path)])
        return result.exit_code == 0


def _fat_slice(data: bytes) -> Optional[int]:
    """Offset of the slice to inspect in a fat Mach-O file (x86_64 preferred)."""
    nfat = struct.unpack_from(">I", data, 4)[0]
    # Java class files share the fat magic; they have a large version here
    if nfat == 0 or nfat > 20 or len(data) < 8 + 20 * nfat:
        return None
    offsets = []
    for i in range(nfat):
        cputype, _, offset = struct.unpack_from(">iiI", data, 8 + 20 * i)
        offsets.append((cputype, offset))
    for cputype, offset in offsets:
        if cputype == 0x01000007:
            return offset
    return offsets[0][1]


# PE

IMAGE_FILE_DLL = 0x2000
IMAGE_FILE_EXECUTABLE_IMAGE = 0x0002
IMAGE_SCN_CNT_CODE = 0x20
IMAGE_SCN_MEM_EXECUTE = 0x20000000

_PE_MACHINES = {
    0x14C: "i686",
    0x8664: "x86_64",
    0xAA64: "aarch64",
    0x1C4: "armv7l",
}


class PEHandle(ObjectHandle):
    """PE/COFF object (windows). Windows has no embedded search paths."""

    def __init__(self, path: Path, data: bytes):
        super().__init__(path, data)
        pe_offset = self._unpack("<I", 0x3C)[0]
        if data[pe_offset : pe_offset + 4] != b"PE\0\0":
            raise ObjectParseError(f"{path}: missing PE signature")
        coff = pe_offset + 4
        self.machine, self.nsections = self._unpack("<HH", coff)
        self.optional_size, self.characteristics = self._unpack("<HH", coff + 16)
        self._optional = coff + 20
        self.optional_magic = self._unpack("<H", self._optional)[0] if self.optional_size else 0
        self._section_table = self._optional + self.optional_size

    @property
    def os(self) -> str:
        return "windows"

    @property
    def arch(self) -> Optional[str]:
        return _PE_MACHINES.get(self.machine)

    @property
    def is_64bit(self) -> bool:
        return self.optional_magic == 0x20B

    @property
    def is_shared_library(self) -> bool:
        return bool(self.characteristics & IMAGE_FILE_DLL)

    @property
    def is_executable(self) -> bool:
        return bool(self.characteristics & IMAGE_FILE_EXECUTABLE_IMAGE) and not self.is_shared_library

    def _raw_sections(self) -> List[Tuple[str, int, int, int, int, int]]:
        """(name, virtual size, virtual address, raw size, raw offset, characteristics)."""
        result = []
        for i in range(self.nsections):
            base = self._section_table + 40 * i
            name = self._data[base : base + 8].rstrip(b"\0").decode("ascii", errors="replace")
            vsize, vaddr, raw_size, raw_offset = self._unpack("<IIII", base + 8)
            flags = self._unpack("<I", base + 36)[0]
            result.append((name, vsize, vaddr, raw_size, raw_offset, flags))
        return result

    def sections(self) -> List[Section]:
        return [
            Section(name, raw_offset, raw_size, bool(flags & (IMAGE_SCN_CNT_CODE | IMAGE_SCN_MEM_EXECUTE)))
            for name, _, _, raw_size, raw_offset, flags in self._raw_sections()
        ]

    def _rva_to_offset(self, rva: int) -> Optional[int]:
        for _, vsize, vaddr, raw_size, raw_offset, _ in self._raw_sections():
            if vaddr <= rva < vaddr + max(vsize, raw_size):
                return raw_offset + rva - vaddr
        return None

    def dynamic_dependencies(self) -> List[str]:
        if not self.optional_size:
            return []
        dirs = self._optional + (112 if self.is_64bit else 96)
        count = self._unpack("<I", dirs - 4)[0]
        if count < 2:
            return []
        import_rva, import_size = self._unpack("<II", dirs + 8)
        offset = self._rva_to_offset(import_rva) if import_size else None
        if offset is None:
            return []

        names = []
        while True:
            original_thunk, _, _, name_rva, first_thunk = self._unpack("<IIIII", offset)
            if not (original_thunk or name_rva or first_thunk):
                break
            name_offset = self._rva_to_offset(name_rva)
            if name_offset is not None:
                names.append(self._cstring(name_offset))
            offset += 20
        return names


_OBJECT_MAGICS = (ELF_MAGIC, b"\xcf\xfa\xed\xfe", b"\xce\xfa\xed\xfe", b"\xca\xfe\xba\xbe")


def readmeta(path: Path) -> Optional[ObjectHandle]:
    """Open an object file.

    Args:
        path: File to inspect

    Returns:
        A handle for ELF, Mach-O, or PE files, or None for anything else
        (including files too damaged to parse)
    """
    path = Path(path)
    if path.is_symlink() or not path.is_file():
        return None
    try:
        with open(path, "rb") as f:
            head = f.read(4)
            if head not in _OBJECT_MAGICS and head[:2] != b"MZ":
                return None
            data = head + f.read()
    except OSError as e:
        logger.debug(f"Cannot read {path}: {e}")
        return None

    try:
        if data[:4] == ELF_MAGIC:
            return ElfHandle(path, data)
        if data[:4] == b"\xca\xfe\xba\xbe":
            base = _fat_slice(data)
            return None if base is None else MachOHandle(path, data, base)
        if data[:4] in (b"\xcf\xfa\xed\xfe", b"\xce\xfa\xed\xfe"):
            return MachOHandle(path, data)
        return PEHandle(path, data)
    except (ObjectParseError, struct.error, IndexError) as e:
        logger.debug(f"Skipping unparseable object {path}: {e}")
        return None


def is_for_platform(handle: ObjectHandle, platform: Platform) -> bool:
    """Check whether an object was built for platform.

    ELF objects are also checked for libc: an object whose interpreter or
    dependencies identify musl does not match a glibc platform, and vice
    versa. Objects whose libc cannot be determined match either.
    """
    if handle.os != platform.os or handle.arch != platform.arch:
        return False
    if platform.is_linux:
        libc = handle.libc()
        return libc is None or libc == platform.libc
    return True
