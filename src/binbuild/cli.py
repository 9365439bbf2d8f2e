"""
Command-line interface for binbuild.

This module provides the `binbuild` CLI tool for cross-compiling packages.
"""

import argparse
import logging
import platform as host_platform
import sys
from dataclasses import dataclass, field
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import List, Optional

from binbuild import __version__
from binbuild.audit import AuditOptions, audit
from binbuild.build import BuildDescriptor, BuildOptions, BuildOrchestrator, BuildOrchestratorError
from binbuild.cli_utils import BannerFormatter, ErrorFormatter, PlatformParser, SummaryFormatter
from binbuild.config import (
    BuildConfig,
    ConfigError,
    InvalidTripletError,
    Platform,
    UnsupportedPlatformError,
    all_platforms,
    supported_platforms,
)
from binbuild.config.platform import SUPPORTED_PLATFORMS_VERSION
from binbuild.packages import (
    Cache,
    DownloadError,
    HashMismatchError,
    Prefix,
    ShardError,
    ShardManager,
    load_shard_index,
)
from binbuild.sandbox import SandboxSetupError, make_runner, select_backend

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def setup_logging(cache: Cache, verbose: bool = False) -> None:
    """Send binbuild's log records to <cache>/logs/binbuild.log, and to the console if verbose."""
    logger = logging.getLogger("binbuild")
    logger.setLevel(logging.DEBUG if verbose else logging.INFO)
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setLevel(logging.DEBUG if verbose else logging.WARNING)
    console_handler.setFormatter(logging.Formatter("%(levelname)s: %(message)s"))
    logger.addHandler(console_handler)

    cache.logs_dir.mkdir(parents=True, exist_ok=True)
    file_handler = RotatingFileHandler(
        str(cache.logs_dir / "binbuild.log"),
        maxBytes=10 * 1024 * 1024,  # 10MB
        backupCount=3,
    )
    file_handler.setLevel(logging.DEBUG)
    file_handler.setFormatter(logging.Formatter(LOG_FORMAT))
    logger.addHandler(file_handler)


def _shard_manager(config: BuildConfig, cache: Cache) -> ShardManager:
    return ShardManager(config, cache, load_shard_index(config, cache))


@dataclass
class BuildArgs:
    """Arguments for the build command."""

    descriptor: Path
    platforms: List[str] = field(default_factory=list)
    output_dir: Path = Path("products")
    force: bool = False
    fail_fast: bool = True
    autofix: bool = True
    ignore_audit_errors: bool = False
    nproc: Optional[int] = None
    verbose: bool = False


@dataclass
class ShellArgs:
    """Arguments for the shell command."""

    triplet: str
    workspace: Optional[Path] = None
    command: Optional[str] = None
    verbose: bool = False


@dataclass
class AuditArgs:
    """Arguments for the audit command."""

    prefix: Path
    triplet: str
    autofix: bool = False
    sandbox: bool = False
    skip: List[str] = field(default_factory=list)
    verbose: bool = False


@dataclass
class UpdateRootfsArgs:
    """Arguments for the update-rootfs command."""

    triplets: List[str] = field(default_factory=list)
    squashfs: Optional[bool] = None
    qemu: bool = False
    verbose: bool = False


def build_command(config: BuildConfig, args: BuildArgs) -> None:
    """Build a package for its platforms.

    Examples:
        binbuild build build.json                          # All platforms in the descriptor
        binbuild build build.json -p x86_64-linux-gnu      # One platform
        binbuild build build.json -p host --force          # Rebuild for the host
        binbuild build build.json -o dist --verbose        # Custom output directory
    """
    print(f"binbuild v{__version__}")
    print()

    try:
        descriptor = BuildDescriptor.from_file(args.descriptor)
        platforms = PlatformParser.parse_platforms(args.platforms) or descriptor.platforms

        cache = Cache(config)
        cache.ensure_directories()
        orchestrator = BuildOrchestrator(
            config,
            shards=_shard_manager(config, cache),
            build_root=cache.builds_dir / descriptor.name,
        )
        options = BuildOptions(
            force=args.force,
            fail_fast=args.fail_fast,
            autofix=args.autofix,
            ignore_audit_errors=args.ignore_audit_errors,
            verbose=args.verbose,
            nproc=args.nproc,
        )
        result = orchestrator.build(descriptor, platforms, args.output_dir, options)

        SummaryFormatter.print_summary(result)
        if result.success:
            ErrorFormatter.print_success("Build successful!")
        else:
            failed = [r for r in result.results.values() if not r.success]
            ErrorFormatter.print_error(
                "Build failed!", "\n".join(f"{r.platform.triplet}: {r.message}" for r in failed)
            )
        sys.exit(result.exit_code)

    except FileNotFoundError as e:
        ErrorFormatter.handle_file_not_found(e)
    except PermissionError as e:
        ErrorFormatter.handle_permission_error(e)
    except (BuildOrchestratorError, InvalidTripletError, UnsupportedPlatformError, ShardError) as e:
        ErrorFormatter.print_error("Error", str(e))
        sys.exit(1)
    except SandboxSetupError as e:
        ErrorFormatter.handle_setup_error(e)
    except KeyboardInterrupt:
        ErrorFormatter.handle_keyboard_interrupt()
    except Exception as e:
        ErrorFormatter.handle_unexpected_error(e, args.verbose)


def shell_command(config: BuildConfig, args: ShellArgs) -> None:
    """Open an interactive shell in a target's sandbox.

    Examples:
        binbuild shell x86_64-linux-gnu                    # Login shell
        binbuild shell aarch64-linux-gnu -w ./work         # Custom workspace
        binbuild shell i686-w64-mingw32 -c 'gcc --version' # One command
    """
    try:
        target = Platform.parse(args.triplet)
        cache = Cache(config)
        cache.ensure_directories()
        workspace = args.workspace or cache.get_build_dir("shell", target.triplet)

        runner = make_runner(config, target, workspace, _shard_manager(config, cache), show_progress=True)
        if args.verbose:
            print(f"Opening {runner.backend_name} sandbox for {target.triplet} at {workspace}")
        sys.exit(runner.run_interactive(args.command))

    except (InvalidTripletError, UnsupportedPlatformError, ShardError, DownloadError, HashMismatchError) as e:
        ErrorFormatter.print_error("Error", str(e))
        sys.exit(1)
    except SandboxSetupError as e:
        ErrorFormatter.handle_setup_error(e)
    except KeyboardInterrupt:
        ErrorFormatter.handle_keyboard_interrupt()
    except Exception as e:
        ErrorFormatter.handle_unexpected_error(e, args.verbose)


def audit_command(config: BuildConfig, args: AuditArgs) -> None:
    """Audit an install prefix for portability problems.

    Examples:
        binbuild audit ./destdir --platform x86_64-linux-gnu             # Report only
        binbuild audit ./destdir --platform x86_64-linux-gnu --autofix   # Repair what can be repaired
        binbuild audit ./destdir --platform x86_64-linux-gnu --sandbox   # Include the instruction-set check
    """
    try:
        target = Platform.parse(args.triplet)
        prefix_dir = args.prefix.absolute()
        if not prefix_dir.is_dir():
            raise FileNotFoundError(f"Prefix not found: {prefix_dir}")

        runner = None
        prefix = Prefix(prefix_dir)
        if args.sandbox:
            cache = Cache(config)
            cache.ensure_directories()
            runner = make_runner(config, target, prefix_dir.parent, _shard_manager(config, cache))
            prefix = Prefix(prefix_dir, sandbox_path=runner.sandbox_path(prefix_dir))

        options = AuditOptions(
            verbose=args.verbose, autofix=args.autofix, fatal=False, skip=frozenset(args.skip)
        )
        if runner is not None:
            with runner.open():
                findings = audit(prefix, target, runner=runner, options=options)
        else:
            findings = audit(prefix, target, options=options)

        for finding in findings:
            print(finding)
        blocking = [f for f in findings if f.blocking]
        if blocking:
            ErrorFormatter.print_error("Audit failed!", f"{len(blocking)} unresolved problem(s) in {prefix_dir}")
            sys.exit(2)
        ErrorFormatter.print_success(f"Audit passed ({len(findings)} finding(s))")
        sys.exit(0)

    except FileNotFoundError as e:
        ErrorFormatter.handle_file_not_found(e)
    except (InvalidTripletError, ShardError) as e:
        ErrorFormatter.print_error("Error", str(e))
        sys.exit(1)
    except SandboxSetupError as e:
        ErrorFormatter.handle_setup_error(e)
    except KeyboardInterrupt:
        ErrorFormatter.handle_keyboard_interrupt()
    except Exception as e:
        ErrorFormatter.handle_unexpected_error(e, args.verbose)


def update_rootfs_command(config: BuildConfig, args: UpdateRootfsArgs) -> None:
    """Download and verify the rootfs and toolchain shards.

    Examples:
        binbuild update-rootfs                             # Every supported platform
        binbuild update-rootfs x86_64-linux-gnu            # One toolchain
        binbuild update-rootfs --squashfs                  # Image encoding
        binbuild update-rootfs --qemu                      # Also the emulator and kernel
    """
    try:
        platforms = PlatformParser.parse_platforms(args.triplets) or list(supported_platforms())
        cache = Cache(config)
        cache.ensure_directories()
        shards = _shard_manager(config, cache)

        print(f"Updating rootfs and {len(platforms)} toolchain shard(s)...")
        print(f"  rootfs: {shards.ensure_rootfs(use_squashfs=args.squashfs)}")
        for target in platforms:
            print(f"  {target.triplet}: {shards.ensure(target, use_squashfs=args.squashfs)}")
        if args.qemu:
            qemu_dir, kernel_dir = shards.update_qemu()
            print(f"  qemu: {qemu_dir}")
            print(f"  kernel: {kernel_dir}")

        ErrorFormatter.print_success("Shards are up to date")
        sys.exit(0)

    except (InvalidTripletError, UnsupportedPlatformError, ShardError, DownloadError, HashMismatchError) as e:
        ErrorFormatter.print_error("Error", str(e))
        sys.exit(4)
    except KeyboardInterrupt:
        ErrorFormatter.handle_keyboard_interrupt()
    except Exception as e:
        ErrorFormatter.handle_unexpected_error(e, args.verbose)


def platforms_command(show_all: bool = False) -> None:
    """List the platforms binbuild can target."""
    platforms = all_platforms() if show_all else supported_platforms()
    supported = set(supported_platforms())
    for target in platforms:
        suffix = "" if target in supported else "  (beta)"
        print(f"{target.triplet}{suffix}")
    sys.exit(0)


def cache_clear_command(config: BuildConfig) -> None:
    """Remove every downloaded and unpacked shard."""
    cache = Cache(config)
    cache.clear()
    ErrorFormatter.print_success(f"Cleared shard cache under {config.cache_root}")
    sys.exit(0)


def versioninfo_command(config: BuildConfig) -> None:
    """Print version and environment information for bug reports."""
    BannerFormatter.print_banner(f"binbuild v{__version__}")
    print(f"Python:              {sys.version.split()[0]} ({host_platform.platform()})")
    try:
        host = Platform.host().triplet
    except UnsupportedPlatformError:
        host = "unsupported"
    print(f"Host platform:       {host}")
    print(f"Platforms version:   {SUPPORTED_PLATFORMS_VERSION}")
    print(f"Cache root:          {config.cache_root}")
    print(f"Shard index:         {config.shard_index}")
    print(f"Shard encoding:      {'squashfs' if config.use_squashfs else 'tar.gz'}")
    print(f"Parallelism:         {config.parallelism}")
    print(f"Command timeout:     {config.run_timeout or 'none'}")
    try:
        backend = select_backend(config, supported_platforms()[0])
    except SandboxSetupError as e:
        backend = f"unavailable ({e.hint})"
    print(f"Sandbox backend:     {backend}")
    sys.exit(0)


def main(argv: Optional[List[str]] = None) -> None:
    """binbuild - cross-compile native packages for many platforms.

    Configuration is read from BINBUILD_* environment variables.
    """
    parser = argparse.ArgumentParser(
        prog="binbuild",
        description="binbuild - cross-compile native packages for many platforms",
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"binbuild {__version__}",
    )

    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    # Build command
    build_parser = subparsers.add_parser("build", help="Build a package for its platforms")
    build_parser.add_argument("descriptor", type=Path, help="Build descriptor (JSON)")
    build_parser.add_argument(
        "-p",
        "--platform",
        dest="platforms",
        action="append",
        default=[],
        help="Platform triplet(s) to build, comma-separated; 'all' or 'host' (default: descriptor's)",
    )
    build_parser.add_argument(
        "-o",
        "--output-dir",
        type=Path,
        default=Path("products"),
        help="Where tarballs and build.json are written (default: ./products)",
    )
    build_parser.add_argument("-f", "--force", action="store_true", help="Rebuild already published platforms")
    build_parser.add_argument(
        "--no-fail-fast",
        dest="fail_fast",
        action="store_false",
        help="Build the other platforms even if the first one fails",
    )
    build_parser.add_argument(
        "--no-autofix", dest="autofix", action="store_false", help="Report audit problems without fixing them"
    )
    build_parser.add_argument(
        "--ignore-audit-errors", action="store_true", help="Accept platforms with unresolved audit problems"
    )
    build_parser.add_argument("-j", "--nproc", type=int, default=None, help="Parallelism hint for build scripts")
    build_parser.add_argument("-v", "--verbose", action="store_true", help="Show verbose build output")

    # Shell command
    shell_parser = subparsers.add_parser("shell", help="Open a shell in a target's sandbox")
    shell_parser.add_argument("triplet", help="Platform triplet")
    shell_parser.add_argument("-w", "--workspace", type=Path, default=None, help="Workspace directory")
    shell_parser.add_argument(
        "-c", "--command", dest="command_line", default=None, help="Command to run instead of a login shell"
    )
    shell_parser.add_argument("-v", "--verbose", action="store_true", help="Show verbose output")

    # Audit command
    audit_parser = subparsers.add_parser("audit", help="Audit an install prefix")
    audit_parser.add_argument("prefix", type=Path, help="Prefix directory")
    audit_parser.add_argument("--platform", dest="triplet", required=True, help="Platform the prefix was built for")
    audit_parser.add_argument("--autofix", action="store_true", help="Repair autofixable problems")
    audit_parser.add_argument(
        "--sandbox", action="store_true", help="Run inspection tools in the target's sandbox"
    )
    audit_parser.add_argument("--skip", action="append", default=[], help="Check to skip (repeatable)")
    audit_parser.add_argument("-v", "--verbose", action="store_true", help="Show verbose output")

    # Update-rootfs command
    update_parser = subparsers.add_parser("update-rootfs", help="Download the rootfs and toolchain shards")
    update_parser.add_argument("triplets", nargs="*", help="Platform triplets (default: all supported)")
    encoding = update_parser.add_mutually_exclusive_group()
    encoding.add_argument("--squashfs", dest="squashfs", action="store_true", default=None, help="Use images")
    encoding.add_argument("--tarball", dest="squashfs", action="store_false", help="Use archives")
    update_parser.add_argument("--qemu", action="store_true", help="Also fetch the emulator and guest kernel")
    update_parser.add_argument("-v", "--verbose", action="store_true", help="Show verbose output")

    # Platforms command
    platforms_parser = subparsers.add_parser("platforms", help="List target platforms")
    platforms_parser.add_argument("--all", action="store_true", help="Include beta platforms")

    # Cache command
    cache_parser = subparsers.add_parser("cache", help="Manage the shard cache")
    cache_parser.add_argument("action", choices=["clear"], help="Cache action")

    # Versioninfo command
    subparsers.add_parser("versioninfo", help="Show version and environment information")

    # Parse arguments
    parsed_args = parser.parse_args(argv)

    # If no command specified, show help
    if not parsed_args.command:
        parser.print_help()
        sys.exit(0)

    if parsed_args.command == "platforms":
        platforms_command(parsed_args.all)

    try:
        config = BuildConfig.from_env()
    except ConfigError as e:
        ErrorFormatter.print_error("Invalid configuration", str(e))
        sys.exit(1)

    setup_logging(Cache(config), verbose=getattr(parsed_args, "verbose", False))

    # Execute command
    if parsed_args.command == "build":
        build_command(
            config,
            BuildArgs(
                descriptor=parsed_args.descriptor,
                platforms=parsed_args.platforms,
                output_dir=parsed_args.output_dir,
                force=parsed_args.force,
                fail_fast=parsed_args.fail_fast,
                autofix=parsed_args.autofix,
                ignore_audit_errors=parsed_args.ignore_audit_errors,
                nproc=parsed_args.nproc,
                verbose=parsed_args.verbose,
            ),
        )
    elif parsed_args.command == "shell":
        shell_command(
            config,
            ShellArgs(
                triplet=parsed_args.triplet,
                workspace=parsed_args.workspace,
                command=parsed_args.command_line,
                verbose=parsed_args.verbose,
            ),
        )
    elif parsed_args.command == "audit":
        audit_command(
            config,
            AuditArgs(
                prefix=parsed_args.prefix,
                triplet=parsed_args.triplet,
                autofix=parsed_args.autofix,
                sandbox=parsed_args.sandbox,
                skip=parsed_args.skip,
                verbose=parsed_args.verbose,
            ),
        )
    elif parsed_args.command == "update-rootfs":
        update_rootfs_command(
            config,
            UpdateRootfsArgs(
                triplets=parsed_args.triplets,
                squashfs=parsed_args.squashfs,
                qemu=parsed_args.qemu,
                verbose=parsed_args.verbose,
            ),
        )
    elif parsed_args.command == "cache":
        cache_clear_command(config)
    elif parsed_args.command == "versioninfo":
        versioninfo_command(config)


if __name__ == "__main__":
    main()
