"""Sandboxed command execution.

This module runs build scripts for a target inside an isolated view of the
base rootfs and the target's toolchain, using Linux namespaces or a full
system emulator.
"""

from .environment import (
    HOST_TRIPLET,
    SANDBOX_PREFIX,
    SANDBOX_WORKSPACE,
    target_envs,
    tool_path,
    write_wrapper_scripts,
)
from .mounts import MountError, MountTable, filesystem_type, is_ecryptfs
from .process_tree import kill_process_tree
from .qemu import QemuRunner
from .runner import RunResult, Runner, SandboxContext, SandboxError, SandboxSetupError
from .selection import BACKENDS, make_runner, probe_user_namespaces, select_backend
from .userns import PrivilegedRunner, UserNSRunner

__all__ = [
    "BACKENDS",
    "HOST_TRIPLET",
    "SANDBOX_PREFIX",
    "SANDBOX_WORKSPACE",
    "MountError",
    "MountTable",
    "PrivilegedRunner",
    "QemuRunner",
    "RunResult",
    "Runner",
    "SandboxContext",
    "SandboxError",
    "SandboxSetupError",
    "UserNSRunner",
    "filesystem_type",
    "is_ecryptfs",
    "kill_process_tree",
    "make_runner",
    "probe_user_namespaces",
    "select_backend",
    "target_envs",
    "tool_path",
    "write_wrapper_scripts",
]
