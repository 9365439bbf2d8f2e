"""Process-wide configuration.

Every option that binbuild reads from the environment is gathered into a
single BuildConfig object, which is passed explicitly to the cache, shard
manager, and runners. Nothing below reads os.environ after construction, so
several configurations can coexist within one process.

Recognized environment variables:
    BINBUILD_CACHE_DIR          Root of all caches (default: ~/.binbuild)
    BINBUILD_DOWNLOADS_CACHE    Where shard archives/images are downloaded
    BINBUILD_ROOTFS_DIR         Where the base rootfs is unpacked
    BINBUILD_SHARDS_DIR         Where toolchain shards are unpacked
    BINBUILD_QEMU_DIR           Where qemu and the guest kernel are installed
    BINBUILD_AUTOMATIC_APPLE    Accept the macOS SDK license automatically
    BINBUILD_USE_SQUASHFS       Prefer .squashfs images over .tar.gz archives
    BINBUILD_RUNNER             namespace | privileged-namespace | emulation
    BINBUILD_ALLOW_ECRYPTFS     Allow sandbox directories on ecryptfs mounts
    BINBUILD_SHARD_INDEX        Path or URL of the shard index JSON
    BINBUILD_PARALLELISM        Maximum concurrent platform builds
    BINBUILD_RUN_TIMEOUT        Seconds before a sandboxed command is killed
    BINBUILD_DOWNLOAD_RETRIES   Attempts for transient download failures
"""

import os
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Mapping, Optional

DEFAULT_SHARD_INDEX = (
    "https://github.com/staticfloat/julia-docker/releases/download/crossbuild-2018.02/shards.json"
)

RUNNER_CHOICES = ("namespace", "privileged-namespace", "emulation")

# Conservative defaults; both are overridable from the environment
DEFAULT_RUN_TIMEOUT = 4 * 60 * 60
DEFAULT_DOWNLOAD_RETRIES = 3
DEFAULT_DOWNLOAD_BACKOFF = 2.0


class ConfigError(Exception):
    """Raised when a configuration value cannot be parsed."""

    pass


def _parse_bool(name: str, value: Optional[str], default: bool) -> bool:
    if value is None or value.strip() == "":
        return default
    lowered = value.strip().lower()
    if lowered in ("1", "true", "yes", "on"):
        return True
    if lowered in ("0", "false", "no", "off"):
        return False
    raise ConfigError(f"{name} must be a boolean, got {value!r}")


def _parse_int(name: str, value: Optional[str], default: int) -> int:
    if value is None or value.strip() == "":
        return default
    try:
        parsed = int(value)
    except ValueError as e:
        raise ConfigError(f"{name} must be an integer, got {value!r}") from e
    if parsed < 0:
        raise ConfigError(f"{name} must not be negative, got {parsed}")
    return parsed


def _default_parallelism() -> int:
    return max(1, min(os.cpu_count() or 1, 4))


@dataclass(frozen=True)
class BuildConfig:
    """Configuration shared by the cache, shard manager, and runners.

    Attributes:
        cache_root: Root directory for all caches
        downloads_dir: Override for downloaded shard archives/images
        rootfs_dir: Override for the unpacked base rootfs
        shards_dir: Override for unpacked toolchain shards
        qemu_dir: Override for the emulation backend's qemu/kernel
        automatic_apple: Accept the macOS SDK license without prompting
        use_squashfs: Use .squashfs images instead of .tar.gz archives
        runner: Forced sandbox backend, or None to probe the host
        allow_ecryptfs: Allow sandbox directories on ecryptfs
        shard_index: Path or URL of the shard index document
        parallelism: Maximum concurrent platform builds
        run_timeout: Seconds before a sandboxed command is killed (0 = never)
        download_retries: Attempts for transient download failures
        download_backoff: Base delay in seconds between download attempts
    """

    cache_root: Path = field(default_factory=lambda: Path.home() / ".binbuild")
    downloads_dir: Optional[Path] = None
    rootfs_dir: Optional[Path] = None
    shards_dir: Optional[Path] = None
    qemu_dir: Optional[Path] = None
    automatic_apple: bool = False
    use_squashfs: bool = False
    runner: Optional[str] = None
    allow_ecryptfs: bool = False
    shard_index: str = DEFAULT_SHARD_INDEX
    parallelism: int = field(default_factory=_default_parallelism)
    run_timeout: int = DEFAULT_RUN_TIMEOUT
    download_retries: int = DEFAULT_DOWNLOAD_RETRIES
    download_backoff: float = DEFAULT_DOWNLOAD_BACKOFF

    def __post_init__(self) -> None:
        if self.runner is not None and self.runner not in RUNNER_CHOICES:
            raise ConfigError(
                f"Unknown runner {self.runner!r}; expected one of {', '.join(RUNNER_CHOICES)}"
            )
        if self.parallelism < 1:
            raise ConfigError("parallelism must be at least 1")
        if self.download_retries < 1:
            raise ConfigError("download_retries must be at least 1")

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "BuildConfig":
        """Build a configuration from BINBUILD_* environment variables.

        Args:
            environ: Mapping to read from (defaults to os.environ)

        Returns:
            BuildConfig with every recognized variable applied

        Raises:
            ConfigError: If a variable has an invalid value
        """
        env = os.environ if environ is None else environ

        def path(name: str) -> Optional[Path]:
            value = env.get(name)
            return Path(value).expanduser().resolve() if value else None

        runner = env.get("BINBUILD_RUNNER") or None
        if runner is not None:
            runner = runner.strip().lower()
            # Names used by older releases
            runner = {"userns": "namespace", "privileged": "privileged-namespace", "qemu": "emulation"}.get(
                runner, runner
            )

        kwargs = dict(
            downloads_dir=path("BINBUILD_DOWNLOADS_CACHE"),
            rootfs_dir=path("BINBUILD_ROOTFS_DIR"),
            shards_dir=path("BINBUILD_SHARDS_DIR"),
            qemu_dir=path("BINBUILD_QEMU_DIR"),
            automatic_apple=_parse_bool(
                "BINBUILD_AUTOMATIC_APPLE", env.get("BINBUILD_AUTOMATIC_APPLE"), False
            ),
            use_squashfs=_parse_bool("BINBUILD_USE_SQUASHFS", env.get("BINBUILD_USE_SQUASHFS"), False),
            runner=runner,
            allow_ecryptfs=_parse_bool(
                "BINBUILD_ALLOW_ECRYPTFS", env.get("BINBUILD_ALLOW_ECRYPTFS"), False
            ),
            shard_index=env.get("BINBUILD_SHARD_INDEX") or DEFAULT_SHARD_INDEX,
            parallelism=_parse_int("BINBUILD_PARALLELISM", env.get("BINBUILD_PARALLELISM"), _default_parallelism()),
            run_timeout=_parse_int("BINBUILD_RUN_TIMEOUT", env.get("BINBUILD_RUN_TIMEOUT"), DEFAULT_RUN_TIMEOUT),
            download_retries=_parse_int(
                "BINBUILD_DOWNLOAD_RETRIES", env.get("BINBUILD_DOWNLOAD_RETRIES"), DEFAULT_DOWNLOAD_RETRIES
            ),
        )
        cache_root = path("BINBUILD_CACHE_DIR")
        if cache_root is not None:
            kwargs["cache_root"] = cache_root
        return cls(**kwargs)

    def with_overrides(self, **changes) -> "BuildConfig":
        """Return a copy with the given fields replaced."""
        return replace(self, **changes)
