"""Install prefix layout."""

from dataclasses import dataclass
from pathlib import Path

from ..config.platform import Platform

SANDBOX_PREFIX = "/workspace/destdir"


@dataclass(frozen=True)
class Prefix:
    """A directory a build installs into.

    Attributes:
        path: Host path of the prefix
        sandbox_path: Where the build script sees the prefix
    """

    path: Path
    sandbox_path: str = SANDBOX_PREFIX

    def __post_init__(self) -> None:
        object.__setattr__(self, "path", Path(self.path))

    @property
    def bindir(self) -> Path:
        return self.path / "bin"

    def libdir(self, platform: Platform) -> Path:
        """Directory shared libraries are installed into (bin/ on windows)."""
        return self.bindir if platform.is_windows else self.path / "lib"

    @property
    def includedir(self) -> Path:
        return self.path / "include"

    @property
    def receipts_dir(self) -> Path:
        """Where install receipts for dependencies are recorded."""
        return self.path / ".binbuild" / "receipts"

    def ensure(self) -> None:
        self.path.mkdir(parents=True, exist_ok=True)
