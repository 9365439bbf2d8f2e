"""File enumeration and product name matching."""

import os
import re
from pathlib import Path
from typing import Callable, Iterable, List, Optional, Set

from ..config.platform import Platform
from .objects import ObjectParseError, is_for_platform, readmeta

# Version suffixes: .so.1.2.3, -1.dll, .1.dylib
_SO_VERSION_RE = re.compile(r"\.so(\.\d+)*$")
_DYLIB_RE = re.compile(r"(\.\d+)*\.dylib$")
_DLL_RE = re.compile(r"(-\d+)*\.dll$")
_ARCHIVE_RE = re.compile(r"\.(tar\.gz|tar\.bz2|tar\.xz|tgz|zip|tar)$")
_EXE_RE = re.compile(r"\.exe$")


def collect_files(
    path: Path, predicate: Optional[Callable[[Path], bool]] = None
) -> List[Path]:
    """Find all files beneath path, optionally filtered by predicate.

    Symlinks are included as files and never followed into directories.
    The result is sorted so audits are deterministic.
    """
    path = Path(path)
    if not path.is_dir():
        return []
    found: List[Path] = []
    for root, dirs, files in os.walk(path):
        root_path = Path(root)
        for d in dirs:
            if (root_path / d).is_symlink():
                files.append(d)
        for name in files:
            candidate = root_path / name
            if predicate is None or predicate(candidate):
                found.append(candidate)
    return sorted(found)


def normalize_name(file: "Path | str") -> str:
    """Reduce a file name to the logical name a product would declare.

    The directory, archive and library extensions, and version suffixes are
    removed: 'foo/libfoo.tar.gz' -> 'libfoo', 'libfoo.so.1.2' -> 'libfoo',
    'libfoo-1.dll' -> 'libfoo', 'foo.exe' -> 'foo'.
    """
    name = Path(file).name
    for pattern in (_ARCHIVE_RE, _SO_VERSION_RE, _DYLIB_RE, _DLL_RE, _EXE_RE):
        stripped = pattern.sub("", name)
        if stripped != name:
            return stripped
    return name


def _strip_lib(name: str) -> str:
    return name[3:] if name.startswith("lib") else name


def match_files(
    files: "Iterable[Path] | Path", platform: Platform, names: Iterable[str]
) -> Set[str]:
    """Match declared product names against the objects actually produced.

    Args:
        files: Candidate files, or a prefix directory to search
        platform: Platform the objects must have been built for
        names: Declared logical names (e.g., 'libfoo', 'fooifier')

    Returns:
        Normalized declared names that matched no object, which is empty
        when every product was found
    """
    if isinstance(files, (str, Path)):
        files = collect_files(Path(files))

    produced: Set[str] = set()
    for f in files:
        handle = readmeta(f)
        try:
            if handle is None or not is_for_platform(handle, platform):
                continue
        except ObjectParseError:
            continue
        produced.add(_strip_lib(normalize_name(f)))

    return {
        normalize_name(name) for name in names if _strip_lib(normalize_name(name)) not in produced
    }
