"""Symlink normalization within an install prefix."""

import logging
import os
from pathlib import Path
from typing import Iterable, List, Optional, Tuple

from .files import collect_files

logger = logging.getLogger(__name__)


def _prefix_relative(target: str, roots: Iterable[Path]) -> Optional[Path]:
    """Return target relative to whichever root it lies under, if any."""
    for root in roots:
        try:
            return Path(target).relative_to(root)
        except ValueError:
            continue
    return None


def find_absolute_symlinks(root: Path, sandbox_root: Optional[str] = None) -> List[Tuple[Path, str]]:
    """Find absolute symlinks that point inside root.

    A build script running in the sandbox sees the prefix at a different path
    than the host does, so links spelled with either path are found.

    Returns:
        (link, equivalent relative target) pairs
    """
    root = Path(root)
    roots = [root.resolve(), root.absolute()]
    if sandbox_root:
        roots.append(Path(sandbox_root))

    found: List[Tuple[Path, str]] = []
    for link in collect_files(root, lambda p: p.is_symlink()):
        target = os.readlink(link)
        if not os.path.isabs(target):
            continue
        inner = _prefix_relative(target, roots)
        if inner is None:
            continue
        found.append((link, os.path.relpath(root / inner, link.parent)))
    return found


def translate_symlinks(root: Path, sandbox_root: Optional[str] = None, verbose: bool = False) -> List[Path]:
    """Rewrite absolute symlinks that point inside root as relative links.

    Running this twice changes nothing the second time.

    Args:
        root: Prefix directory on the host
        sandbox_root: Path of the same prefix inside the sandbox, if any
        verbose: Whether to print each rewritten link

    Returns:
        Symlinks that were rewritten
    """
    rewritten: List[Path] = []
    for link, relative in find_absolute_symlinks(root, sandbox_root):
        if verbose:
            print(f"  Relinking {link.relative_to(root)} -> {relative}")
        link.unlink()
        os.symlink(relative, link)
        logger.debug(f"Relativized symlink {link} -> {relative}")
        rewritten.append(link)
    return rewritten


def collapse_symlinks(files: Iterable[Path]) -> List[Path]:
    """Drop symlinks whose target is itself in files.

    Shared libraries are commonly installed as libfoo.so -> libfoo.so.1 ->
    libfoo.so.1.2.3; only the real file needs to be audited.
    """
    files = [Path(f) for f in files]
    real = {f.resolve() for f in files if not f.is_symlink()}
    return [f for f in files if not (f.is_symlink() and f.resolve() in real)]
