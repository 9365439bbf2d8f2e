"""Install manifests.

A build publishes one tarball per platform and a build.json manifest that
maps each triplet to the tarball's location and hash. Other builds consume
the manifest to install those tarballs as dependencies.

Format:
    {
      "name": "libfoo",
      "version": "1.0.0",
      "artifacts": {
        "x86_64-linux-gnu": {"url": "libfoo.v1.0.0.x86_64-linux-gnu.tar.gz", "sha256": "..."}
      }
    }

Relative URLs are resolved against the manifest's own location.
"""

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Mapping

from ..config.platform import InvalidTripletError, Platform


class ManifestError(Exception):
    """Raised when a manifest cannot be parsed."""

    pass


@dataclass(frozen=True)
class ArtifactEntry:
    url: str
    sha256: str


@dataclass
class InstallManifest:
    """Published artifacts of one build.

    Attributes:
        name: Project name
        version: Project version
        artifacts: Triplet -> artifact location and hash
    """

    name: str
    version: str = "0.0.0"
    artifacts: Dict[str, ArtifactEntry] = field(default_factory=dict)

    def add(self, platform: Platform, url: str, sha256: str) -> None:
        self.artifacts[platform.triplet] = ArtifactEntry(url=url, sha256=sha256.lower())

    def get(self, platform: Platform) -> ArtifactEntry:
        """Look up the artifact for platform.

        Raises:
            KeyError: If the manifest has no artifact for platform
        """
        return self.artifacts[platform.triplet]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "version": self.version,
            "artifacts": {
                triplet: {"url": entry.url, "sha256": entry.sha256}
                for triplet, entry in sorted(self.artifacts.items())
            },
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "InstallManifest":
        """Parse a manifest document.

        Raises:
            ManifestError: If a field is missing or a triplet is invalid
        """
        if not isinstance(data, Mapping) or "name" not in data:
            raise ManifestError("Manifest must be an object with a 'name'")
        artifacts: Dict[str, ArtifactEntry] = {}
        for triplet, entry in (data.get("artifacts") or {}).items():
            try:
                Platform.parse(triplet)
            except InvalidTripletError as e:
                raise ManifestError(f"Manifest lists an invalid platform: {e}") from e
            if not isinstance(entry, Mapping) or not entry.get("url") or not entry.get("sha256"):
                raise ManifestError(f"Artifact for {triplet} needs both 'url' and 'sha256'")
            artifacts[triplet] = ArtifactEntry(url=entry["url"], sha256=entry["sha256"].lower())
        return cls(name=data["name"], version=str(data.get("version", "0.0.0")), artifacts=artifacts)

    @classmethod
    def from_json(cls, text: str) -> "InstallManifest":
        try:
            return cls.from_dict(json.loads(text))
        except json.JSONDecodeError as e:
            raise ManifestError(f"Manifest is not valid JSON: {e}") from e

    @classmethod
    def load(cls, path: Path) -> "InstallManifest":
        return cls.from_json(Path(path).read_text(encoding="utf-8"))

    def save(self, path: Path) -> Path:
        """Write the manifest atomically."""
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        temp = path.with_name(f".{path.name}.{os.getpid()}.tmp")
        temp.write_text(json.dumps(self.to_dict(), indent=2) + "\n", encoding="utf-8")
        os.replace(temp, path)
        return path
