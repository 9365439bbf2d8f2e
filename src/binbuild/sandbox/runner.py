"""Sandbox runner interface.

A Runner executes commands for one target inside a sandbox that composes the
base rootfs, the target's toolchain shard, and a writable workspace into a
single filesystem view. Backends differ only in how that view is built; they
share the environment, output handling, timeout, and cleanup logic here.

Resources are acquired through open(), a context manager backed by an
ExitStack, so mounts and processes are released on every exit path:

    with runner.open():
        runner.run("make -j${nproc}")
        runner.run("make install")

run() outside of open() opens a context for that single command.
"""

import logging
import subprocess
import threading
from abc import ABC, abstractmethod
from contextlib import ExitStack, contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import IO, TYPE_CHECKING, Dict, Iterator, List, Optional, Sequence, Union

from ..config.platform import Platform
from ..config.settings import BuildConfig
from .environment import SANDBOX_WORKSPACE, target_envs, write_wrapper_scripts
from .mounts import is_ecryptfs
from .process_tree import kill_process_tree

if TYPE_CHECKING:
    from ..packages.shards import MountSpec, ShardManager

logger = logging.getLogger(__name__)

# Exit status and marker the sandbox init uses to report its own failures
SETUP_FAILURE_EXIT = 125
SETUP_FAILURE_MARKER = "BINBUILD_SANDBOX_SETUP_FAILED"

Command = Union[str, Sequence[str]]


class SandboxError(Exception):
    """Raised when a sandboxed command cannot be run."""

    pass


class SandboxSetupError(SandboxError):
    """Raised when the sandbox itself could not be set up.

    Attributes:
        hint: Suggested remediation, if known
    """

    def __init__(self, message: str, hint: Optional[str] = None):
        super().__init__(message)
        self.hint = hint

    def __str__(self) -> str:
        message = super().__str__()
        return f"{message}\nHint: {self.hint}" if self.hint else message


@dataclass
class RunResult:
    """Outcome of one sandboxed command.

    Attributes:
        exit_code: Exit status of the command (negative if killed by a signal)
        output: Combined stdout and stderr
        timed_out: Whether the command was killed for exceeding its timeout
    """

    exit_code: int
    output: str = ""
    timed_out: bool = False

    @property
    def success(self) -> bool:
        return self.exit_code == 0 and not self.timed_out


@dataclass
class SandboxContext:
    """Resources held while a sandbox is open.

    Attributes:
        platform: Target platform
        workspace: Host path of the workspace
        mounts: Composition of the sandbox root
        env: Environment commands run with
        backend: Name of the backend
        stack: Releases everything acquired for this context
        host_mounts: Host paths standing in for mounts (e.g., mounted images)
    """

    platform: Platform
    workspace: Path
    mounts: List["MountSpec"]
    env: Dict[str, str]
    backend: str
    stack: ExitStack
    host_mounts: Dict[str, Path] = field(default_factory=dict)
    processes: List[subprocess.Popen] = field(default_factory=list)

    @property
    def rootfs(self) -> Path:
        return self.mounts[0].source

    @property
    def state_dir(self) -> Path:
        """Host directory for files the runner exchanges with the sandbox."""
        return self.workspace / ".binbuild"

    def source_for(self, mount: "MountSpec") -> Path:
        """Host directory to expose for a mount."""
        return self.host_mounts.get(mount.target, mount.source)


class Runner(ABC):
    """Executes commands for one target inside a sandbox."""

    backend_name = "abstract"
    setup_hint: Optional[str] = None

    def __init__(
        self,
        platform: Platform,
        workspace: Path,
        mounts: List["MountSpec"],
        config: BuildConfig,
        shards: Optional["ShardManager"] = None,
        nproc: Optional[int] = None,
    ):
        """Initialize runner.

        Args:
            platform: Target platform
            workspace: Host directory exposed as /workspace
            mounts: Sandbox root composition (rootfs first)
            config: Configuration (timeouts, ecryptfs policy)
            shards: Shard manager, for backends that derive images
            nproc: Parallelism hint for build scripts
        """
        if not mounts:
            raise ValueError("A sandbox needs at least a rootfs mount")
        self.platform = platform
        self.workspace = Path(workspace).absolute()
        self.mounts = list(mounts)
        self.config = config
        self.shards = shards
        self.nproc = nproc
        self._ctx: Optional[SandboxContext] = None

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.platform.triplet}, {self.workspace})"

    def sandbox_path(self, host_path: Union[Path, str]) -> str:
        """Translate a host path inside the workspace to its sandbox path.

        Raises:
            ValueError: If host_path is outside the workspace
        """
        relative = Path(host_path).absolute().relative_to(self.workspace)
        return SANDBOX_WORKSPACE if str(relative) == "." else f"{SANDBOX_WORKSPACE}/{relative.as_posix()}"

    @property
    def is_open(self) -> bool:
        return self._ctx is not None

    @contextmanager
    def open(self) -> Iterator[SandboxContext]:
        """Acquire the sandbox.

        Yields:
            The SandboxContext; everything in it is released when the block exits

        Raises:
            SandboxSetupError: If the sandbox cannot be set up
        """
        if self._ctx is not None:
            yield self._ctx
            return

        with ExitStack() as stack:
            self._check_filesystems()
            self.workspace.mkdir(parents=True, exist_ok=True)
            ctx = SandboxContext(
                platform=self.platform,
                workspace=self.workspace,
                mounts=self.mounts,
                env=target_envs(self.platform, self.nproc),
                backend=self.backend_name,
                stack=stack,
            )
            ctx.state_dir.mkdir(parents=True, exist_ok=True)
            write_wrapper_scripts(ctx.state_dir / "bin", self.platform)

            self._acquire(ctx)
            # Processes are killed before backend resources are released
            stack.callback(self._release, ctx)

            self._ctx = ctx
            logger.debug(f"Opened {self.backend_name} sandbox for {self.platform.triplet}")
            yield ctx

    def _release(self, ctx: SandboxContext) -> None:
        for proc in ctx.processes:
            if proc.poll() is None:
                killed = kill_process_tree(proc.pid)
                logger.warning(f"Killed {killed} leftover sandbox processes")
        ctx.processes.clear()
        self._ctx = None
        logger.debug(f"Closed {self.backend_name} sandbox for {self.platform.triplet}")

    def terminate(self) -> int:
        """Kill every command currently running in this runner's sandbox.

        Safe to call from another thread; the commands' run() calls return
        with a failed result.

        Returns:
            Number of processes killed
        """
        ctx = self._ctx
        if ctx is None:
            return 0
        return sum(kill_process_tree(proc.pid) for proc in list(ctx.processes) if proc.poll() is None)

    def _check_filesystems(self) -> None:
        if self.config.allow_ecryptfs:
            return
        for path in [self.workspace.parent] + [m.source for m in self.mounts]:
            if path.exists() and is_ecryptfs(path):
                raise SandboxSetupError(
                    f"{path} is on an ecryptfs filesystem, which cannot back a sandbox",
                    hint="Move the cache and build directories off ecryptfs, "
                    + "or set BINBUILD_ALLOW_ECRYPTFS=true to try anyway",
                )

    def _acquire(self, ctx: SandboxContext) -> None:
        """Acquire backend resources, registering their release on ctx.stack."""

    @abstractmethod
    def _wrap(self, argv: List[str], ctx: SandboxContext, interactive: bool = False) -> List[str]:
        """Build the host command line that runs argv inside the sandbox."""

    def _finish(self, ctx: SandboxContext, exit_code: int) -> int:
        """Map the host process's exit code to the command's exit code."""
        return exit_code

    @staticmethod
    def _argv(cmd: Optional[Command]) -> List[str]:
        if cmd is None:
            return ["/bin/bash", "-l"]
        if isinstance(cmd, str):
            return ["/bin/bash", "-c", cmd]
        return list(cmd)

    def run(
        self,
        cmd: Command,
        log_path: Optional[Path] = None,
        verbose: bool = False,
        timeout: Optional[float] = None,
    ) -> RunResult:
        """Run a command inside the sandbox and wait for it.

        Args:
            cmd: Shell script text, or an argv list
            log_path: File the combined output is appended to
            verbose: Echo output to the console as it arrives
            timeout: Seconds before the command is killed (defaults to
                config.run_timeout; 0 disables)

        Returns:
            RunResult for the command

        Raises:
            SandboxSetupError: If the sandbox could not be set up
        """
        if timeout is None:
            timeout = self.config.run_timeout or None

        with self.open() as ctx, ExitStack() as files:
            argv = self._wrap(self._argv(cmd), ctx)
            logger.debug(f"Running in {self.backend_name} sandbox: {argv}")

            log_file: Optional[IO[str]] = None
            if log_path is not None:
                log_path = Path(log_path)
                log_path.parent.mkdir(parents=True, exist_ok=True)
                log_file = files.enter_context(open(log_path, "a", encoding="utf-8"))

            exit_code, output, timed_out = self._execute(argv, ctx, log_file, verbose, timeout)

        if exit_code == SETUP_FAILURE_EXIT and SETUP_FAILURE_MARKER in output:
            reason = next(
                (line for line in output.splitlines() if SETUP_FAILURE_MARKER in line), SETUP_FAILURE_MARKER
            )
            raise SandboxSetupError(f"Sandbox setup failed: {reason}", hint=self.setup_hint)

        if timed_out:
            logger.warning(f"Command timed out after {timeout}s in {self.platform.triplet} sandbox")
        return RunResult(exit_code=exit_code, output=output, timed_out=timed_out)

    def _execute(
        self,
        argv: List[str],
        ctx: SandboxContext,
        log_file: Optional[IO[str]],
        verbose: bool,
        timeout: Optional[float],
    ) -> tuple[int, str, bool]:
        try:
            proc = subprocess.Popen(
                argv,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True,
                errors="replace",
                start_new_session=True,
            )
        except FileNotFoundError as e:
            raise SandboxSetupError(
                f"Cannot start the {self.backend_name} sandbox: {e}", hint=self.setup_hint
            ) from e
        ctx.processes.append(proc)

        timed_out = threading.Event()

        def on_timeout() -> None:
            timed_out.set()
            kill_process_tree(proc.pid)

        timer = threading.Timer(timeout, on_timeout) if timeout else None
        if timer:
            timer.daemon = True
            timer.start()

        lines: List[str] = []
        try:
            assert proc.stdout is not None
            for line in proc.stdout:
                lines.append(line)
                if log_file is not None:
                    log_file.write(line)
                if verbose:
                    print(line, end="")
            exit_code = proc.wait()
        except KeyboardInterrupt:
            kill_process_tree(proc.pid)
            raise
        finally:
            if timer:
                timer.cancel()
            if proc.poll() is None:
                kill_process_tree(proc.pid)
            ctx.processes.remove(proc)

        return self._finish(ctx, exit_code), "".join(lines), timed_out.is_set()

    def run_interactive(self, cmd: Optional[Command] = None) -> int:
        """Run a command attached to the terminal (a login shell by default).

        Returns:
            Exit code of the command
        """
        with self.open() as ctx:
            argv = self._wrap(self._argv(cmd), ctx, interactive=True)
            proc = subprocess.Popen(argv)
            ctx.processes.append(proc)
            try:
                exit_code = proc.wait()
            finally:
                ctx.processes.remove(proc)
                if proc.poll() is None:
                    kill_process_tree(proc.pid)
            return self._finish(ctx, exit_code)


def env_assignments(env: Dict[str, str]) -> List[str]:
    """KEY=VALUE words for env(1), in stable order."""
    return [f"{key}={value}" for key, value in sorted(env.items())]

