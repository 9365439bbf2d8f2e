"""Full-system emulation backend.

Boots the guest kernel from the qemu shard under qemu-system-x86_64. The
guest sees the same composition as the namespace backends: squashfs shards
are attached as read-only virtio disks, unpacked shards and the workspace
are shared over 9p. The guest init reads the composition and the command
from the kernel command line and the workspace, runs the command, and
writes its exit code back into the workspace before powering off.

Guest contract (kernel command line):
    binbuild.mount=<source>:<target>   one per shard; source is vdX or a 9p tag
    binbuild.cmd=<path>                command script, relative to /workspace
    binbuild.exit=<path>               file the exit code is written to
"""

import logging
import os
import shlex
from pathlib import Path
from typing import List, Optional

from .environment import SANDBOX_WORKSPACE
from .runner import Runner, SandboxContext, SandboxSetupError

logger = logging.getLogger(__name__)

GUEST_MEMORY_MB = 4096


class QemuRunner(Runner):
    """Runs commands inside an emulated Linux guest."""

    backend_name = "emulation"
    setup_hint = "Run `binbuild update-rootfs --qemu` to fetch qemu and the guest kernel."

    def __init__(self, *args, qemu_dir: Optional[Path] = None, kernel_dir: Optional[Path] = None, **kwargs):
        """Initialize runner.

        Args:
            qemu_dir: Unpacked qemu shard (defaults to one provisioned by the shard manager)
            kernel_dir: Unpacked guest kernel shard
        """
        super().__init__(*args, **kwargs)
        self.qemu_dir = Path(qemu_dir) if qemu_dir else None
        self.kernel_dir = Path(kernel_dir) if kernel_dir else None

    def _acquire(self, ctx: SandboxContext) -> None:
        if self.qemu_dir is None or self.kernel_dir is None:
            if self.shards is None:
                raise SandboxSetupError("No qemu installation is available", hint=self.setup_hint)
            self.qemu_dir, self.kernel_dir = self.shards.update_qemu()

        for path in (self.qemu_binary, self.kernel_image):
            if not path.exists():
                raise SandboxSetupError(f"Missing emulator component: {path}", hint=self.setup_hint)

    @property
    def qemu_binary(self) -> Path:
        assert self.qemu_dir is not None
        return self.qemu_dir / "bin" / "qemu-system-x86_64"

    @property
    def kernel_image(self) -> Path:
        assert self.kernel_dir is not None
        return self.kernel_dir / "bzImage"

    @property
    def exit_code_file(self) -> Path:
        return self.workspace / ".binbuild" / "exit_code"

    def _write_command(self, argv: List[str], ctx: SandboxContext) -> Path:
        script = ctx.state_dir / "cmd.sh"
        lines = ["#!/bin/sh"]
        lines += [f"export {key}={shlex.quote(value)}" for key, value in sorted(ctx.env.items())]
        lines += [f"cd {SANDBOX_WORKSPACE}", "exec " + " ".join(shlex.quote(a) for a in argv)]
        script.write_text("\n".join(lines) + "\n", encoding="utf-8")
        script.chmod(0o755)
        return script

    def _wrap(self, argv: List[str], ctx: SandboxContext, interactive: bool = False) -> List[str]:
        script = self._write_command(argv, ctx)
        if self.exit_code_file.exists():
            self.exit_code_file.unlink()

        nproc = self.nproc or os.cpu_count() or 1
        cmdline = ["console=ttyS0", "quiet", "panic=-1"]
        qemu = [
            str(self.qemu_binary),
            "-kernel",
            str(self.kernel_image),
            "-m",
            str(GUEST_MEMORY_MB),
            "-smp",
            str(nproc),
            "-nographic",
            "-no-reboot",
        ]

        disk = ord("a")
        for index, mount in enumerate(ctx.mounts):
            if mount.is_image:
                device = f"vd{chr(disk)}"
                disk += 1
                qemu += ["-drive", f"if=virtio,format=raw,readonly=on,file={mount.source}"]
            else:
                device = f"shard{index}"
                qemu += [
                    "-fsdev",
                    f"local,id={device},path={mount.source},security_model=none,readonly=on",
                    "-device",
                    f"virtio-9p-pci,fsdev={device},mount_tag={device}",
                ]
            cmdline.append(f"binbuild.mount={device}:{mount.target}")

        qemu += [
            "-fsdev",
            f"local,id=workspace,path={ctx.workspace},security_model=none",
            "-device",
            "virtio-9p-pci,fsdev=workspace,mount_tag=workspace",
        ]
        cmdline += [
            f"binbuild.cmd={script.relative_to(ctx.workspace).as_posix()}",
            f"binbuild.exit={self.exit_code_file.relative_to(ctx.workspace).as_posix()}",
        ]
        if interactive:
            cmdline.append("binbuild.interactive=1")
        return qemu + ["-append", " ".join(cmdline)]

    def _finish(self, ctx: SandboxContext, exit_code: int) -> int:
        if exit_code != 0:
            logger.warning(f"qemu exited with status {exit_code}")
        try:
            return int(self.exit_code_file.read_text().strip())
        except (OSError, ValueError) as e:
            raise SandboxSetupError(
                f"The emulated guest did not report an exit code ({e})", hint=self.setup_hint
            ) from e
