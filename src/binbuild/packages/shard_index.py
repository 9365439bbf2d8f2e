"""Shard index parsing.

The shard index maps a shard name and encoding to the URL it can be downloaded
from and its sha256 hash. Shard names are target triplets, plus 'base' for the
shared rootfs and 'qemu'/'kernel' for the emulation backend.

Index format:
    {
      "version": "2018.02",
      "shards": {
        "base": {
          "tar.gz":   {"url": "https://.../base.tar.gz",   "sha256": "..."},
          "squashfs": {"url": "https://.../base.squashfs", "sha256": "..."}
        },
        "x86_64-linux-gnu": { ... }
      }
    }
"""

import json
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Mapping, Tuple

from ..config.platform import Platform


class ShardIndexError(Exception):
    """Raised when the shard index cannot be parsed."""

    pass


class ShardEncoding(Enum):
    """How a shard is distributed.

    ARCHIVE shards must be extracted before use and need no privileges.
    IMAGE shards are mounted directly but mounting them needs privileges.
    """

    ARCHIVE = "tar.gz"
    IMAGE = "squashfs"

    @property
    def extension(self) -> str:
        return self.value

    @property
    def requires_privilege(self) -> bool:
        return self is ShardEncoding.IMAGE


@dataclass(frozen=True)
class ShardInfo:
    """Download location and hash of one shard encoding."""

    name: str
    encoding: ShardEncoding
    url: str
    sha256: str


def shard_name(target: "Platform | str") -> str:
    """Get the shard name for a platform or an explicit shard name."""
    return target.triplet if isinstance(target, Platform) else target


class ShardIndex:
    """Lookup table from (shard name, encoding) to ShardInfo."""

    def __init__(self, entries: Mapping[Tuple[str, ShardEncoding], ShardInfo], version: str = ""):
        self._entries = dict(entries)
        self.version = version

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "ShardIndex":
        """Parse an index document.

        Raises:
            ShardIndexError: If the document is malformed
        """
        shards = data.get("shards")
        if not isinstance(shards, dict):
            raise ShardIndexError("Shard index is missing the 'shards' table")

        entries: Dict[Tuple[str, ShardEncoding], ShardInfo] = {}
        for name, encodings in shards.items():
            if not isinstance(encodings, dict):
                raise ShardIndexError(f"Shard {name!r} must map encodings to entries")
            for ext, entry in encodings.items():
                try:
                    encoding = ShardEncoding(ext)
                except ValueError as e:
                    raise ShardIndexError(f"Unknown encoding {ext!r} for shard {name!r}") from e
                if not isinstance(entry, dict) or not entry.get("url") or not entry.get("sha256"):
                    raise ShardIndexError(f"Shard {name!r} ({ext}) needs both 'url' and 'sha256'")
                entries[(name, encoding)] = ShardInfo(
                    name=name, encoding=encoding, url=entry["url"], sha256=entry["sha256"].lower()
                )
        return cls(entries, version=str(data.get("version", "")))

    @classmethod
    def from_json(cls, text: str) -> "ShardIndex":
        try:
            data = json.loads(text)
        except json.JSONDecodeError as e:
            raise ShardIndexError(f"Shard index is not valid JSON: {e}") from e
        if not isinstance(data, dict):
            raise ShardIndexError("Shard index must be a JSON object")
        return cls.from_dict(data)

    def get(self, target: "Platform | str", encoding: ShardEncoding) -> ShardInfo:
        """Look up one shard.

        Raises:
            KeyError: If the index has no such shard
        """
        return self._entries[(shard_name(target), encoding)]

    def __contains__(self, key: Tuple[str, ShardEncoding]) -> bool:
        return key in self._entries

    def names(self) -> List[str]:
        """Sorted names of every shard in the index."""
        return sorted({name for name, _ in self._entries})
