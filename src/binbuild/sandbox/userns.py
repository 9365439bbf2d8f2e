"""Namespace sandbox backends.

Both backends compose the sandbox root the same way, from a small init script
that runs inside fresh mount and PID namespaces:

    tmpfs                  scratch space for the overlay
    overlay on /           rootfs as the read-only lower layer
    bind  /opt/<triplet>   toolchain shard, read-only
    bind  /workspace       workspace, read-write
    proc, /dev

and then chroots into the result. UserNSRunner does this from an
unprivileged user namespace with the invoking user mapped to root; some
kernels refuse unprivileged overlay mounts, in which case PrivilegedRunner
does the same thing as the real root through sudo.
"""

import logging
import os
import shlex
from pathlib import Path
from typing import List

from .environment import SANDBOX_WORKSPACE
from .mounts import MountError, MountTable
from .runner import (
    SETUP_FAILURE_EXIT,
    SETUP_FAILURE_MARKER,
    Runner,
    SandboxContext,
    SandboxSetupError,
    env_assignments,
)

logger = logging.getLogger(__name__)

ENTER_WORKSPACE = f'cd {SANDBOX_WORKSPACE} && exec "$@"'


class UserNSRunner(Runner):
    """Runs commands in an unprivileged user namespace."""

    backend_name = "namespace"
    setup_hint = (
        "Your kernel may not allow unprivileged overlay mounts. "
        + "Set BINBUILD_RUNNER=privileged-namespace to run the sandbox through sudo instead."
    )

    def _unshare(self, interactive: bool) -> List[str]:
        return ["unshare", "--user", "--map-root-user", "--mount", "--pid", "--fork", "--kill-child"]

    def _image_for_mount(self, image: Path) -> Path:
        # Files in the image must belong to the user that is root in the namespace
        if self.shards is None:
            return image
        return self.shards.owned_image(image, os.getuid())

    def _acquire(self, ctx: SandboxContext) -> None:
        images = [m for m in ctx.mounts if m.is_image]
        if not images:
            return
        table = ctx.stack.enter_context(MountTable(sudo=True))
        for index, mount in enumerate(images):
            mountpoint = ctx.state_dir / "mnt" / str(index)
            image = self._image_for_mount(mount.source)
            try:
                ctx.host_mounts[mount.target] = table.mount_image(image, mountpoint)
            except MountError as e:
                raise SandboxSetupError(
                    str(e),
                    hint="Mounting squashfs shards needs sudo. "
                    + "Set BINBUILD_USE_SQUASHFS=false to use unpacked shards instead.",
                ) from e

    def init_script(self, ctx: SandboxContext) -> str:
        """Shell script that composes the sandbox root and enters it."""
        q = shlex.quote
        root = ctx.state_dir / "root"
        rootfs, shards = ctx.mounts[0], ctx.mounts[1:]

        lines = [
            "#!/bin/sh",
            "fail() {",
            f'    echo "{SETUP_FAILURE_MARKER}: $*" >&2',
            f"    exit {SETUP_FAILURE_EXIT}",
            "}",
            'mount --make-rprivate / || fail "cannot make mounts private"',
            f"ROOT={q(str(root))}",
            'mkdir -p "$ROOT" || fail "cannot create $ROOT"',
            'mount -t tmpfs binbuild "$ROOT" || fail "cannot mount scratch tmpfs"',
            'mkdir -p "$ROOT/upper" "$ROOT/work" "$ROOT/merged"',
            "mount -t overlay overlay "
            + f'-o "lowerdir={ctx.source_for(rootfs)},upperdir=$ROOT/upper,workdir=$ROOT/work" '
            + '"$ROOT/merged" || fail "overlay mount of the rootfs failed"',
        ]
        for mount in shards:
            target = '"$ROOT/merged"' + q(mount.target)
            lines.append(f"mkdir -p {target}")
            lines.append(
                f"mount --bind {q(str(ctx.source_for(mount)))} {target} || fail {q('cannot bind ' + mount.target)}"
            )
            if mount.read_only:
                lines.append(f"mount -o remount,bind,ro {target} || fail {q('cannot remount ' + mount.target)}")
        lines += [
            f'mkdir -p "$ROOT/merged{SANDBOX_WORKSPACE}"',
            f'mount --bind {q(str(ctx.workspace))} "$ROOT/merged{SANDBOX_WORKSPACE}" '
            + '|| fail "cannot bind the workspace"',
            'mkdir -p "$ROOT/merged/proc" "$ROOT/merged/dev" "$ROOT/merged/tmp"',
            'mount -t proc proc "$ROOT/merged/proc" || fail "cannot mount /proc"',
            'mount --rbind /dev "$ROOT/merged/dev" || fail "cannot bind /dev"',
            'exec chroot "$ROOT/merged" /usr/bin/env -i "$@"',
        ]
        return "\n".join(lines) + "\n"

    def _wrap(self, argv: List[str], ctx: SandboxContext, interactive: bool = False) -> List[str]:
        script = ctx.state_dir / "init.sh"
        script.write_text(self.init_script(ctx), encoding="utf-8")
        return (
            self._unshare(interactive)
            + ["/bin/sh", str(script)]
            + env_assignments(ctx.env)
            + ["/bin/sh", "-c", ENTER_WORKSPACE, "sh"]
            + argv
        )


class PrivilegedRunner(UserNSRunner):
    """Runs commands in mount and PID namespaces created by root through sudo."""

    backend_name = "privileged-namespace"
    setup_hint = "The privileged sandbox needs passwordless sudo, or run `sudo -v` first."

    def _unshare(self, interactive: bool) -> List[str]:
        # A non-interactive run has no terminal for a password prompt
        sudo = ["sudo"] if interactive else ["sudo", "-n"]
        if os.geteuid() == 0:
            sudo = []
        return sudo + ["unshare", "--mount", "--pid", "--fork", "--kill-child"]

    def _image_for_mount(self, image: Path) -> Path:
        return image
