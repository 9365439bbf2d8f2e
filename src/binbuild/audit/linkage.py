"""Dynamic linkage relocatability.

A binary that records a dependency by absolute path only loads when the
prefix sits at the exact place it was built. Dependencies inside the prefix
are rewritten to be found through a loader-relative search path instead:
$ORIGIN on ELF and @loader_path on Mach-O. PE has no such concept and
Windows binaries are never checked.
"""

import logging
import posixpath
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, List, Optional, Sequence

from .objects import ElfHandle, MachOHandle, ObjectHandle

if TYPE_CHECKING:
    from ..sandbox.runner import Runner

logger = logging.getLogger(__name__)

# System libraries on macOS are always referenced by absolute path
_MACOS_SYSTEM_DIRS = ("/usr/lib/", "/System/Library/")


@dataclass
class LinkageIssue:
    """One absolute dependency reference.

    Attributes:
        dependency: The reference as recorded in the object
        relative_dir: Directory of the dependency relative to the object's
            directory, when the dependency lives inside the prefix
    """

    dependency: str
    relative_dir: Optional[str] = None

    @property
    def inside_prefix(self) -> bool:
        return self.relative_dir is not None


def _relative_to_any(path: str, roots: Sequence[str]) -> Optional[str]:
    for root in roots:
        root = root.rstrip("/")
        if path == root or path.startswith(root + "/"):
            return path[len(root) :].lstrip("/")
    return None


def find_absolute_linkage(handle: ObjectHandle, prefix_dir: Path, sandbox_prefix: str) -> List[LinkageIssue]:
    """List the absolute dependency references of an object.

    Args:
        handle: Object to inspect
        prefix_dir: Host path of the prefix the object was installed into
        sandbox_prefix: Path of the same prefix inside the sandbox

    Returns:
        One LinkageIssue per absolute reference (empty for PE objects)
    """
    if not isinstance(handle, (ElfHandle, MachOHandle)):
        return []

    prefix_dir = Path(prefix_dir)
    roots = [sandbox_prefix, str(prefix_dir.resolve()), str(prefix_dir.absolute())]
    try:
        object_rel = str(handle.path.resolve().relative_to(prefix_dir.resolve()))
    except ValueError:
        object_rel = handle.path.name
    object_dir = posixpath.dirname(object_rel)

    issues: List[LinkageIssue] = []
    for dep in handle.dynamic_dependencies():
        if not dep.startswith("/"):
            continue
        if isinstance(handle, MachOHandle) and dep.startswith(_MACOS_SYSTEM_DIRS):
            continue
        in_prefix = _relative_to_any(dep, roots)
        relative_dir = None
        if in_prefix is not None:
            relative_dir = posixpath.relpath(posixpath.dirname(in_prefix) or ".", object_dir or ".")
        issues.append(LinkageIssue(dependency=dep, relative_dir=relative_dir))
    return issues


def loader_rpath(handle: ObjectHandle, relative_dir: str) -> str:
    """Search path entry that finds relative_dir from the object's own directory."""
    anchor = "@loader_path" if isinstance(handle, MachOHandle) else "$ORIGIN"
    return anchor if relative_dir in ("", ".") else f"{anchor}/{relative_dir}"


def relocatable_name(handle: ObjectHandle, dependency: str) -> str:
    """The relative form a dependency reference is rewritten to."""
    name = posixpath.basename(dependency)
    return f"@rpath/{name}" if isinstance(handle, MachOHandle) else name


def fix_linkage(handle: ObjectHandle, issue: LinkageIssue, runner: "Runner") -> bool:
    """Rewrite one absolute in-prefix reference to its relocatable form.

    Returns:
        True if both the reference and the search path were updated
    """
    if not issue.inside_prefix:
        return False
    rpath = loader_rpath(handle, issue.relative_dir or ".")
    new = relocatable_name(handle, issue.dependency)
    if not handle.rewrite_dependency(runner, issue.dependency, new):
        logger.warning(f"Failed to rewrite {issue.dependency} in {handle.path}")
        return False
    if not handle.add_rpath(runner, rpath):
        logger.warning(f"Failed to add search path {rpath} to {handle.path}")
        return False
    logger.info(f"Relinked {handle.path}: {issue.dependency} -> {new} (rpath {rpath})")
    return True

