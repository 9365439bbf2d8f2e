"""Sandbox backend selection."""

import logging
import shutil
import subprocess
import sys
from functools import lru_cache
from pathlib import Path
from typing import Callable, Optional, Type

from ..config.platform import Platform
from ..config.settings import BuildConfig
from .qemu import QemuRunner
from .runner import Runner, SandboxSetupError
from .userns import PrivilegedRunner, UserNSRunner

logger = logging.getLogger(__name__)

BACKENDS: dict[str, Type[Runner]] = {
    UserNSRunner.backend_name: UserNSRunner,
    PrivilegedRunner.backend_name: PrivilegedRunner,
    QemuRunner.backend_name: QemuRunner,
}


@lru_cache(maxsize=1)
def probe_user_namespaces() -> bool:
    """Check whether this host lets unprivileged users create user namespaces."""
    try:
        result = subprocess.run(
            ["unshare", "--user", "--map-root-user", "--mount", "true"],
            stdin=subprocess.DEVNULL,
            capture_output=True,
            timeout=30,
            check=False,
        )
    except (OSError, subprocess.TimeoutExpired) as e:
        logger.debug(f"User namespace probe failed: {e}")
        return False
    return result.returncode == 0


def select_backend(
    config: BuildConfig,
    target: Platform,
    host: Optional[str] = None,
    probe: Optional[Callable[[], bool]] = None,
) -> str:
    """Choose the sandbox backend for building target on this host.

    Order of preference:
        1. config.runner, when set
        2. emulation on non-Linux hosts (the only backend they can run)
        3. namespace, when unprivileged user namespaces work
        4. privileged-namespace, when sudo is available

    Args:
        config: Configuration (config.runner forces a backend)
        target: Platform to be built
        host: Host system name as reported by sys.platform (defaults to this host)
        probe: Callable that reports user namespace support

    Returns:
        Backend name

    Raises:
        SandboxSetupError: If no backend can run on this host
    """
    if config.runner:
        logger.debug(f"Using configured {config.runner} backend for {target.triplet}")
        return config.runner

    host = host or sys.platform
    if not host.startswith("linux"):
        return QemuRunner.backend_name

    probe = probe or probe_user_namespaces
    if probe():
        return UserNSRunner.backend_name
    if shutil.which("sudo"):
        logger.info("Unprivileged user namespaces are unavailable, falling back to sudo")
        return PrivilegedRunner.backend_name

    raise SandboxSetupError(
        "No sandbox backend can run on this host",
        hint="Enable unprivileged user namespaces (sysctl kernel.unprivileged_userns_clone=1), "
        + "install sudo, or set BINBUILD_RUNNER=emulation.",
    )


def make_runner(
    config: BuildConfig,
    platform: Platform,
    workspace: Path,
    shards,
    nproc: Optional[int] = None,
    host: Optional[str] = None,
    probe: Optional[Callable[[], bool]] = None,
    show_progress: bool = True,
) -> Runner:
    """Create a runner for platform with its shards provisioned.

    Args:
        config: Configuration
        platform: Target platform
        workspace: Host directory exposed as /workspace
        shards: ShardManager providing the mount plan
        nproc: Parallelism hint for build scripts
        host: Host system name (defaults to this host)
        probe: User namespace probe (for testing)
        show_progress: Whether to show shard download progress

    Returns:
        Runner ready to be opened
    """
    backend = select_backend(config, platform, host=host, probe=probe)
    mounts = shards.mount_plan(platform, show_progress=show_progress)
    runner_class = BACKENDS[backend]

    if runner_class is QemuRunner:
        qemu_dir, kernel_dir = shards.update_qemu(show_progress=show_progress)
        return QemuRunner(
            platform, workspace, mounts, config, shards=shards, nproc=nproc, qemu_dir=qemu_dir, kernel_dir=kernel_dir
        )
    return runner_class(platform, workspace, mounts, config, shards=shards, nproc=nproc)
