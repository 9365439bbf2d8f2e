"""Target platform model.

This module describes the platforms binbuild can cross-compile for and maps
them to and from the compiler triplets used to name toolchain shards.

Triplets:
    linux (glibc):  x86_64-linux-gnu, i686-linux-gnu, aarch64-linux-gnu,
                    arm-linux-gnueabihf, powerpc64le-linux-gnu
    linux (musl):   x86_64-linux-musl, i686-linux-musl, aarch64-linux-musl,
                    arm-linux-musleabihf
    windows:        x86_64-w64-mingw32, i686-w64-mingw32
    macos:          x86_64-apple-darwin14
"""

import platform as _host
import re
from dataclasses import dataclass
from typing import Iterable, List, Literal, Optional, Sequence, Tuple

OSName = Literal["linux", "windows", "macos"]
ArchName = Literal["x86_64", "i686", "aarch64", "armv7l", "ppc64le"]
LibcName = Literal["glibc", "musl", "none"]

OS_ORDER: Tuple[str, ...] = ("linux", "windows", "macos")
ARCH_ORDER: Tuple[str, ...] = ("x86_64", "i686", "aarch64", "ppc64le", "armv7l")

# Darwin kernel version the macOS toolchain targets (10.10 SDK)
DARWIN_VERSION = "14"

SUPPORTED_PLATFORMS_VERSION = "2018.02"

# Architecture name as it appears in a triplet
_TRIPLET_ARCH = {
    "x86_64": "x86_64",
    "i686": "i686",
    "aarch64": "aarch64",
    "armv7l": "arm",
    "ppc64le": "powerpc64le",
}
_ARCH_FROM_TRIPLET = {v: k for k, v in _TRIPLET_ARCH.items()}

_LINUX_RE = re.compile(r"^(?P<arch>[a-z0-9_]+)-linux-(?P<libc>gnu|musl)(?P<abi>eabihf)?$")
_WINDOWS_RE = re.compile(r"^(?P<arch>x86_64|i686)-w64-mingw32$")
_MACOS_RE = re.compile(r"^(?P<arch>x86_64)-apple-darwin(?P<version>\d+)$")


class InvalidTripletError(ValueError):
    """Raised when a triplet string or platform combination is invalid."""

    pass


class UnsupportedPlatformError(Exception):
    """Raised when a platform is not supported by the host or toolchain."""

    pass


@dataclass(frozen=True)
class Platform:
    """A cross-compilation target.

    Attributes:
        os: Operating system ('linux', 'windows', 'macos')
        arch: CPU architecture ('x86_64', 'i686', 'aarch64', 'armv7l', 'ppc64le')
        libc: C library ('glibc', 'musl', or 'none' for windows/macos)
        abi: ABI tag ('eabihf' for armv7l linux, empty otherwise)
    """

    os: str
    arch: str
    libc: str = "glibc"
    abi: str = ""

    def __post_init__(self) -> None:
        _validate(self.os, self.arch, self.libc, self.abi)

    @classmethod
    def linux(cls, arch: str, libc: str = "glibc") -> "Platform":
        """Build a Linux platform, filling in the ABI tag for armv7l."""
        return cls("linux", arch, libc, "eabihf" if arch == "armv7l" else "")

    @classmethod
    def windows(cls, arch: str) -> "Platform":
        return cls("windows", arch, "none")

    @classmethod
    def macos(cls, arch: str = "x86_64") -> "Platform":
        return cls("macos", arch, "none")

    @classmethod
    def parse(cls, triplet: str) -> "Platform":
        """Parse a compiler triplet into a Platform.

        Args:
            triplet: Triplet string (e.g., 'arm-linux-gnueabihf')

        Returns:
            The Platform the triplet names

        Raises:
            InvalidTripletError: If the triplet is not recognized
        """
        m = _LINUX_RE.match(triplet)
        if m:
            arch = _ARCH_FROM_TRIPLET.get(m.group("arch"))
            if arch is None:
                raise InvalidTripletError(f"Unknown architecture in triplet: {triplet}")
            libc = "glibc" if m.group("libc") == "gnu" else "musl"
            abi = m.group("abi") or ""
            try:
                return cls("linux", arch, libc, abi)
            except InvalidTripletError as e:
                raise InvalidTripletError(f"Invalid triplet {triplet}: {e}") from e

        m = _WINDOWS_RE.match(triplet)
        if m:
            return cls.windows(m.group("arch"))

        m = _MACOS_RE.match(triplet)
        if m:
            if m.group("version") != DARWIN_VERSION:
                raise InvalidTripletError(
                    f"Unsupported darwin version in triplet: {triplet} (expected darwin{DARWIN_VERSION})"
                )
            return cls.macos(m.group("arch"))

        raise InvalidTripletError(f"Unrecognized triplet: {triplet}")

    @property
    def triplet(self) -> str:
        """The canonical triplet string for this platform."""
        arch = _TRIPLET_ARCH[self.arch]
        if self.os == "linux":
            libc = "gnu" if self.libc == "glibc" else "musl"
            return f"{arch}-linux-{libc}{self.abi}"
        if self.os == "windows":
            return f"{arch}-w64-mingw32"
        return f"{arch}-apple-darwin{DARWIN_VERSION}"

    def __str__(self) -> str:
        return self.triplet

    @property
    def is_linux(self) -> bool:
        return self.os == "linux"

    @property
    def is_windows(self) -> bool:
        return self.os == "windows"

    @property
    def is_macos(self) -> bool:
        return self.os == "macos"

    @property
    def nbits(self) -> int:
        """Word size of the target."""
        return 32 if self.arch in ("i686", "armv7l") else 64

    @property
    def proc_family(self) -> str:
        """Processor family ('intel', 'arm', or 'power')."""
        if self.arch in ("x86_64", "i686"):
            return "intel"
        if self.arch in ("aarch64", "armv7l"):
            return "arm"
        return "power"

    @property
    def dlext(self) -> str:
        """Shared library extension without the leading dot."""
        if self.is_windows:
            return "dll"
        if self.is_macos:
            return "dylib"
        return "so"

    @property
    def exeext(self) -> str:
        return ".exe" if self.is_windows else ""

    @staticmethod
    def host() -> "Platform":
        """Detect the platform binbuild itself is running on.

        Raises:
            UnsupportedPlatformError: If the host system is not recognized
        """
        system = _host.system().lower()
        machine = _host.machine().lower()

        if machine in ("x86_64", "amd64"):
            arch = "x86_64"
        elif machine in ("i386", "i686"):
            arch = "i686"
        elif machine in ("aarch64", "arm64"):
            arch = "aarch64"
        elif machine.startswith("arm"):
            arch = "armv7l"
        elif machine in ("ppc64le", "powerpc64le"):
            arch = "ppc64le"
        else:
            raise UnsupportedPlatformError(f"Unsupported host architecture: {machine}")

        try:
            if system == "linux":
                libc_name, _ = _host.libc_ver()
                return Platform.linux(arch, "glibc" if libc_name == "glibc" else "musl")
            if system == "windows":
                return Platform.windows(arch)
            if system == "darwin":
                return Platform.macos(arch)
        except InvalidTripletError as e:
            raise UnsupportedPlatformError(f"Unsupported host platform: {system} {machine}") from e
        raise UnsupportedPlatformError(f"Unsupported host platform: {system} {machine}")


def _validate(os_name: str, arch: str, libc: str, abi: str) -> None:
    if os_name not in OS_ORDER:
        raise InvalidTripletError(f"Unknown operating system: {os_name}")
    if arch not in ARCH_ORDER:
        raise InvalidTripletError(f"Unknown architecture: {arch}")

    if os_name == "linux":
        if libc not in ("glibc", "musl"):
            raise InvalidTripletError(f"Linux platforms need glibc or musl, got {libc}")
        if libc == "musl" and arch == "ppc64le":
            raise InvalidTripletError("ppc64le is only available with glibc")
        expected_abi = "eabihf" if arch == "armv7l" else ""
        if abi != expected_abi:
            raise InvalidTripletError(f"Invalid ABI tag '{abi}' for linux/{arch}")
        return

    if libc != "none" or abi:
        raise InvalidTripletError(f"{os_name} platforms carry no libc or ABI tag")
    if os_name == "windows" and arch not in ("x86_64", "i686"):
        raise InvalidTripletError(f"Windows is not available for {arch}")
    if os_name == "macos" and arch != "x86_64":
        raise InvalidTripletError(f"macOS is not available for {arch}")


def format_triplet(platform: Platform) -> str:
    """Inverse of Platform.parse()."""
    return platform.triplet


_SUPPORTED: Tuple[Platform, ...] = (
    Platform.linux("x86_64"),
    Platform.linux("i686"),
    Platform.linux("aarch64"),
    Platform.linux("armv7l"),
    Platform.linux("ppc64le"),
    Platform.windows("x86_64"),
    Platform.windows("i686"),
    Platform.macos("x86_64"),
)

# musl toolchains ship in the shard index but are still considered beta
_BETA: Tuple[Platform, ...] = (
    Platform.linux("x86_64", "musl"),
    Platform.linux("i686", "musl"),
    Platform.linux("aarch64", "musl"),
    Platform.linux("armv7l", "musl"),
)


def supported_platforms() -> List[Platform]:
    """Return the platforms binbuild officially supports building for.

    The list is fixed for a given SUPPORTED_PLATFORMS_VERSION. Toolchains for
    additional platforms may exist in the shard index (see all_platforms()),
    but those are considered unstable.
    """
    return list(_SUPPORTED)


def all_platforms() -> List[Platform]:
    """Return every platform a toolchain shard exists for, including beta ones."""
    return list(_SUPPORTED + _BETA)


def preferred_order(
    platforms: Iterable[Platform], host: Optional[Platform] = None
) -> List[Platform]:
    """Rank platforms for build order.

    The host platform comes first when present, since it is usually the
    cheapest to build and debug. The rest are ordered by OS (linux, windows,
    macos), then architecture (x86_64, i686, aarch64, ppc64le, armv7l), then by
    their position in the input.

    Args:
        platforms: Platforms to rank (duplicates are dropped)
        host: Host platform (defaults to Platform.host())

    Returns:
        New list of platforms, best first
    """
    if host is None:
        try:
            host = Platform.host()
        except UnsupportedPlatformError:
            host = None

    unique: List[Platform] = []
    for p in platforms:
        if p not in unique:
            unique.append(p)

    def rank(item: Tuple[int, Platform]) -> Tuple[int, int, int, int]:
        index, p = item
        return (
            0 if p == host else 1,
            OS_ORDER.index(p.os),
            ARCH_ORDER.index(p.arch),
            index,
        )

    return [p for _, p in sorted(enumerate(unique), key=rank)]


def pick_preferred_platform(
    platforms: Sequence[Platform], host: Optional[Platform] = None
) -> Platform:
    """Pick the platform to build first.

    Raises:
        ValueError: If platforms is empty
    """
    ordered = preferred_order(platforms, host=host)
    if not ordered:
        raise ValueError("No platforms to choose from")
    return ordered[0]
