"""Build products.

A product is an artifact a build promises to produce. Products are declared
by logical name and evaluated against a prefix for a specific platform, so
one declaration covers libfoo.so.1 on linux, libfoo.1.dylib on macos, and
libfoo-1.dll on windows.
"""

import logging
import os
import re
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, List, Mapping, Optional

from ..audit.objects import ObjectParseError, is_for_platform, readmeta
from ..config.platform import Platform
from .prefix import Prefix

logger = logging.getLogger(__name__)


class ProductError(Exception):
    """Raised when a product declaration is invalid."""

    pass


class Product(ABC):
    """An artifact a build is expected to produce."""

    kind = "product"

    @abstractmethod
    def locate(self, prefix: Prefix, platform: Platform) -> Optional[Path]:
        """Find the file satisfying this product, if present."""

    def satisfied(self, prefix: Prefix, platform: Platform, verbose: bool = False) -> bool:
        """Check whether prefix contains this product for platform."""
        path = self.locate(prefix, platform)
        if verbose:
            status = f"found at {path}" if path else "not found"
            print(f"  {self}: {status}")
        return path is not None

    def to_dict(self) -> dict:
        return {"type": self.kind, "name": self.name}

    @property
    @abstractmethod
    def name(self) -> str: ...

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.name!r})"


class LibraryProduct(Product):
    """A shared library, declared by logical name (e.g., 'libfoo')."""

    kind = "library"

    def __init__(self, name: str):
        if not name or "/" in name:
            raise ProductError(f"Invalid library name: {name!r}")
        self._name = name

    @property
    def name(self) -> str:
        return self._name

    def pattern(self, platform: Platform) -> "re.Pattern[str]":
        """File name pattern the library takes on platform."""
        name = re.escape(self._name)
        if platform.is_windows:
            # mingw drops the lib prefix inconsistently
            bare = re.escape(self._name[3:]) if self._name.startswith("lib") else name
            return re.compile(rf"^(?:{name}|{bare})(?:-\d+)*\.dll$")
        if platform.is_macos:
            return re.compile(rf"^{name}(?:\.\d+)*\.dylib$")
        return re.compile(rf"^{name}\.so(?:\.\d+)*$")

    def locate(self, prefix: Prefix, platform: Platform) -> Optional[Path]:
        libdir = prefix.libdir(platform)
        if not libdir.is_dir():
            return None
        pattern = self.pattern(platform)
        for entry in sorted(libdir.iterdir()):
            if not pattern.match(entry.name):
                continue
            handle = readmeta(entry.resolve()) if entry.exists() else None
            try:
                if handle is None or not handle.is_shared_library:
                    logger.debug(f"{entry} matches {self} but is not a shared library")
                    continue
                if not is_for_platform(handle, platform):
                    logger.debug(f"{entry} matches {self} but was built for another platform")
                    continue
            except ObjectParseError as e:
                logger.warning(f"{entry} matches {self} but cannot be parsed: {e}")
                continue
            return entry
        return None


class ExecutableProduct(Product):
    """An executable in bin/, declared without extension (e.g., 'fooifier')."""

    kind = "executable"

    def __init__(self, name: str):
        if not name or "/" in name:
            raise ProductError(f"Invalid executable name: {name!r}")
        self._name = name

    @property
    def name(self) -> str:
        return self._name

    def locate(self, prefix: Prefix, platform: Platform) -> Optional[Path]:
        path = prefix.bindir / f"{self._name}{platform.exeext}"
        if not path.is_file():
            return None
        if not platform.is_windows and not os.access(path, os.X_OK):
            logger.debug(f"{path} is not executable")
            return None
        handle = readmeta(path.resolve())
        try:
            if handle is not None and not is_for_platform(handle, platform):
                logger.debug(f"{path} was built for another platform")
                return None
        except ObjectParseError as e:
            logger.warning(f"{path} cannot be parsed: {e}")
            return None
        return path


class FileProduct(Product):
    """Any file, declared by its path relative to the prefix."""

    kind = "file"

    def __init__(self, path: str):
        if not path or os.path.isabs(path):
            raise ProductError(f"File products need a relative path, got {path!r}")
        self._path = path

    @property
    def name(self) -> str:
        return self._path

    def locate(self, prefix: Prefix, platform: Platform) -> Optional[Path]:
        path = prefix.path / self._path
        return path if path.exists() else None

    def to_dict(self) -> dict:
        return {"type": self.kind, "path": self._path}


def product_from_dict(data: Mapping[str, Any]) -> Product:
    """Build a product from its descriptor form.

    Raises:
        ProductError: If the type is unknown or a field is missing
    """
    kind = data.get("type")
    try:
        if kind == "library":
            return LibraryProduct(data["name"])
        if kind == "executable":
            return ExecutableProduct(data["name"])
        if kind == "file":
            return FileProduct(data["path"])
    except KeyError as e:
        raise ProductError(f"{kind} product is missing {e}") from e
    raise ProductError(f"Unknown product type: {kind!r}")


def unsatisfied_products(products: List[Product], prefix: Prefix, platform: Platform) -> List[Product]:
    """Products not present in prefix for platform."""
    return [p for p in products if not p.satisfied(prefix, platform)]
