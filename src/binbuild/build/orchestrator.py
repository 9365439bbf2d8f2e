"""
Build orchestration for binbuild.

This module drives a build descriptor through every requested platform. For
each platform it:
- Prepares a fresh workspace with the descriptor's sources
- Provisions the toolchain and opens a sandbox
- Installs pre-built dependencies into the prefix
- Runs the build script
- Audits the prefix and checks the declared products
- Packages the prefix and records it in the install manifest

The preferred platform (normally the host's) is built first, on its own, so
a broken script is noticed before every other platform has been started.
The remaining platforms are built concurrently.
"""

import json
import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from contextlib import contextmanager
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, List, Mapping, Optional, Sequence

from ..audit.auditor import AuditError, AuditFinding, AuditOptions, audit
from ..audit.objects import ObjectParseError
from ..config.platform import (
    InvalidTripletError,
    Platform,
    UnsupportedPlatformError,
    preferred_order,
    supported_platforms,
)
from ..config.settings import BuildConfig
from ..interrupt_utils import handle_keyboard_interrupt_properly
from ..packages.dependency import Dependency, DependencyError
from ..packages.downloader import (
    DownloadError,
    ExtractionError,
    HashMismatchError,
    PackageDownloader,
    sha256_file,
)
from ..packages.manifest import InstallManifest, ManifestError
from ..packages.products import Product, ProductError, product_from_dict, unsatisfied_products
from ..packages.shards import ShardError, ShardManager
from ..packages.squashfs import SquashfsError
from ..sandbox.environment import SANDBOX_WORKSPACE
from ..sandbox.mounts import MountError
from ..sandbox.runner import Runner, SandboxError, SandboxSetupError
from ..sandbox.selection import make_runner
from .packaging import package_prefix, tarball_name
from .workspace import SourceSpec, Workspace, WorkspaceError, setup_workspace

logger = logging.getLogger(__name__)

MANIFEST_NAME = "build.json"

RunnerFactory = Callable[[Platform, Path], Runner]

# Failures that mean a platform could not be prepared, as opposed to a failed build
PROVISIONING_ERRORS = (
    DownloadError,
    HashMismatchError,
    ExtractionError,
    ShardError,
    UnsupportedPlatformError,
    WorkspaceError,
    DependencyError,
    SquashfsError,
)


class BuildOrchestratorError(Exception):
    """Exception raised for build orchestration errors."""

    pass


class BuildStatus(Enum):
    """Outcome of building one platform; the value is the exit code."""

    SUCCESS = 0
    SCRIPT_FAILED = 1
    AUDIT_REJECTED = 2
    PRODUCTS_UNSATISFIED = 3
    PROVISIONING_FAILED = 4
    SANDBOX_ERROR = 5
    SKIPPED = 6

    @property
    def exit_code(self) -> int:
        return self.value


@dataclass
class BuildDescriptor:
    """What to build, and for which platforms.

    Attributes:
        name: Package name (used for tarball names)
        version: Package version
        sources: Sources unpacked into srcdir
        script: Shell script run in srcdir with the cross-compilation environment
        platforms: Platforms to build for
        products: Products that must exist in the prefix afterwards
        dependencies: Paths or URLs of other builds' build.json manifests
    """

    name: str
    script: str
    version: str = "0.0.0"
    sources: List[SourceSpec] = field(default_factory=list)
    platforms: List[Platform] = field(default_factory=lambda: list(supported_platforms()))
    products: List[Product] = field(default_factory=list)
    dependencies: List[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any], base_dir: Optional[Path] = None) -> "BuildDescriptor":
        """Parse a descriptor document.

        Args:
            data: Descriptor document
            base_dir: Directory relative source and dependency paths are resolved against

        Raises:
            BuildOrchestratorError: If the descriptor is malformed
        """
        if not isinstance(data, Mapping):
            raise BuildOrchestratorError("Build descriptor must be a JSON object")
        for key in ("name", "script"):
            if not data.get(key):
                raise BuildOrchestratorError(f"Build descriptor is missing '{key}'")

        try:
            sources = [SourceSpec.from_dict(s, base_dir) for s in data.get("sources", [])]
            products = [product_from_dict(p) for p in data.get("products", [])]
            platforms = [Platform.parse(t) for t in data["platforms"]] if data.get("platforms") else None
        except (WorkspaceError, ProductError, InvalidTripletError) as e:
            raise BuildOrchestratorError(f"Invalid build descriptor: {e}") from e

        dependencies = []
        for dep in data.get("dependencies", []):
            dep = str(dep)
            if base_dir is not None and "://" not in dep and not Path(dep).is_absolute():
                dep = str(base_dir / dep)
            dependencies.append(dep)

        descriptor = cls(
            name=str(data["name"]),
            script=str(data["script"]),
            version=str(data.get("version", "0.0.0")),
            sources=sources,
            products=products,
            dependencies=dependencies,
        )
        if platforms is not None:
            descriptor.platforms = platforms
        return descriptor

    @classmethod
    def from_json(cls, text: str, base_dir: Optional[Path] = None) -> "BuildDescriptor":
        try:
            data = json.loads(text)
        except json.JSONDecodeError as e:
            raise BuildOrchestratorError(f"Build descriptor is not valid JSON: {e}") from e
        return cls.from_dict(data, base_dir)

    @classmethod
    def from_file(cls, path: Path) -> "BuildDescriptor":
        path = Path(path)
        if not path.exists():
            raise FileNotFoundError(f"Build descriptor not found: {path}")
        return cls.from_json(path.read_text(encoding="utf-8"), base_dir=path.parent.absolute())


@dataclass
class BuildOptions:
    """Knobs for one orchestrated build.

    Attributes:
        force: Rebuild platforms whose tarball is already published
        fail_fast: Skip the other platforms when the preferred one fails
        autofix: Repair autofixable audit findings
        ignore_audit_errors: Accept platforms with unresolved audit findings
        verbose: Print progress and echo build output
        nproc: Parallelism hint passed to build scripts
    """

    force: bool = False
    fail_fast: bool = True
    autofix: bool = True
    ignore_audit_errors: bool = False
    verbose: bool = False
    nproc: Optional[int] = None


@dataclass
class PlatformResult:
    """Result of building one platform."""

    platform: Platform
    status: BuildStatus
    message: str = ""
    tarball: Optional[Path] = None
    sha256: Optional[str] = None
    log_path: Optional[Path] = None
    findings: List[AuditFinding] = field(default_factory=list)
    unsatisfied: List[Product] = field(default_factory=list)
    build_time: float = 0.0
    cached: bool = False

    @property
    def success(self) -> bool:
        return self.status is BuildStatus.SUCCESS


@dataclass
class MultiBuildResult:
    """Results of a build across platforms, in build order."""

    results: Dict[Platform, PlatformResult]
    manifest: InstallManifest
    manifest_path: Optional[Path] = None
    build_time: float = 0.0

    @property
    def success(self) -> bool:
        return all(r.success for r in self.results.values())

    @property
    def exit_code(self) -> int:
        """0 if every platform succeeded, else the code of the first real failure."""
        failures = [r for r in self.results.values() if not r.success]
        if not failures:
            return 0
        for result in failures:
            if result.status is not BuildStatus.SKIPPED:
                return result.status.exit_code
        return BuildStatus.SKIPPED.exit_code

    def by_status(self, status: BuildStatus) -> List[PlatformResult]:
        return [r for r in self.results.values() if r.status is status]


class BuildOrchestrator:
    """
    Builds a descriptor for many platforms.

    Example usage:
        orchestrator = BuildOrchestrator(config, shards)
        result = orchestrator.build(descriptor, descriptor.platforms, Path("products"))
        for platform, r in result.results.items():
            print(platform, r.status.name)
    """

    def __init__(
        self,
        config: BuildConfig,
        shards: Optional[ShardManager] = None,
        runner_factory: Optional[RunnerFactory] = None,
        downloader: Optional[PackageDownloader] = None,
        build_root: Optional[Path] = None,
    ):
        """
        Initialize build orchestrator.

        Args:
            config: Configuration (parallelism, timeouts, backend)
            shards: Shard manager used to provision sandboxes
            runner_factory: Creates the runner for (platform, workspace root);
                defaults to make_runner with the configured backend
            downloader: Downloader for sources and dependencies
            build_root: Directory for per-platform workspaces
                (defaults to <cache>/builds/<name>)
        """
        if shards is None and runner_factory is None:
            raise BuildOrchestratorError("Either a shard manager or a runner factory is required")
        self.config = config
        self.shards = shards
        self.runner_factory = runner_factory
        self.downloader = downloader or PackageDownloader(
            retries=config.download_retries, backoff=config.download_backoff
        )
        self.build_root = Path(build_root) if build_root else None
        self._cancelled = threading.Event()
        self._active: Dict[Platform, Runner] = {}
        self._lock = threading.Lock()

    def build(
        self,
        descriptor: BuildDescriptor,
        platforms: Optional[Sequence[Platform]],
        output_dir: Path,
        options: Optional[BuildOptions] = None,
    ) -> MultiBuildResult:
        """
        Build descriptor for platforms and publish the results in output_dir.

        Args:
            descriptor: What to build
            platforms: Platforms to build (defaults to descriptor.platforms)
            output_dir: Where tarballs and build.json are written
            options: Build options

        Returns:
            MultiBuildResult with one PlatformResult per platform

        Raises:
            BuildOrchestratorError: If there is nothing to build
            KeyboardInterrupt: After running sandboxes have been killed
        """
        options = options or BuildOptions()
        output_dir = Path(output_dir).absolute()
        start_time = time.time()
        self._cancelled.clear()

        ordered = preferred_order(platforms or descriptor.platforms)
        if not ordered:
            raise BuildOrchestratorError("No platforms to build")

        manifest = self._load_manifest(descriptor, output_dir)
        results: Dict[Platform, PlatformResult] = {}

        first, rest = ordered[0], ordered[1:]
        print(f"Building {descriptor.name} {descriptor.version} for {len(ordered)} platform(s)")
        results[first] = self._build_platform_guarded(descriptor, first, output_dir, manifest, options)

        if not results[first].success and options.fail_fast and rest:
            logger.warning(f"{first.triplet} failed, skipping the remaining platforms")
            for platform in rest:
                results[platform] = PlatformResult(
                    platform, BuildStatus.SKIPPED, f"Skipped after {first.triplet} failed"
                )
        elif rest:
            results.update(self._build_concurrently(descriptor, rest, output_dir, manifest, options))

        # Keep build order stable regardless of completion order
        results = {p: results[p] for p in ordered}
        for result in results.values():
            if result.success and result.tarball is not None and result.sha256:
                manifest.add(result.platform, result.tarball.name, result.sha256)
        manifest_path = manifest.save(output_dir / MANIFEST_NAME)

        return MultiBuildResult(
            results=results,
            manifest=manifest,
            manifest_path=manifest_path,
            build_time=time.time() - start_time,
        )

    def _build_concurrently(
        self,
        descriptor: BuildDescriptor,
        platforms: List[Platform],
        output_dir: Path,
        manifest: InstallManifest,
        options: BuildOptions,
    ) -> Dict[Platform, PlatformResult]:
        results: Dict[Platform, PlatformResult] = {}
        executor = ThreadPoolExecutor(max_workers=self.config.parallelism, thread_name_prefix="binbuild")
        try:
            futures = {
                executor.submit(
                    self._build_platform_guarded, descriptor, platform, output_dir, manifest, options
                ): platform
                for platform in platforms
            }
            for future, platform in futures.items():
                results[platform] = future.result()
        except KeyboardInterrupt:
            self.cancel()
            executor.shutdown(wait=True, cancel_futures=True)
            raise
        executor.shutdown(wait=True)
        return results

    def cancel(self) -> None:
        """Stop starting new platforms and kill the running sandboxes."""
        self._cancelled.set()
        with self._lock:
            runners = list(self._active.values())
        for runner in runners:
            killed = runner.terminate()
            logger.info(f"Cancelled {runner!r} ({killed} processes killed)")

    def _build_platform_guarded(
        self,
        descriptor: BuildDescriptor,
        platform: Platform,
        output_dir: Path,
        manifest: InstallManifest,
        options: BuildOptions,
    ) -> PlatformResult:
        if self._cancelled.is_set():
            return PlatformResult(platform, BuildStatus.SKIPPED, "Build was cancelled")

        start_time = time.time()
        try:
            result = self._build_platform(descriptor, platform, output_dir, manifest, options)
        except KeyboardInterrupt as ke:
            self.cancel()
            if threading.current_thread() is threading.main_thread():
                raise
            handle_keyboard_interrupt_properly(ke)
        except SandboxSetupError as e:
            result = PlatformResult(platform, BuildStatus.SANDBOX_ERROR, str(e))
        except PROVISIONING_ERRORS as e:
            result = PlatformResult(platform, BuildStatus.PROVISIONING_FAILED, str(e))
        except (AuditError, ObjectParseError) as e:
            result = PlatformResult(platform, BuildStatus.AUDIT_REJECTED, f"{type(e).__name__}: {e}")
        except (SandboxError, MountError, OSError) as e:
            result = PlatformResult(platform, BuildStatus.SANDBOX_ERROR, f"{type(e).__name__}: {e}")
        except Exception as e:
            # Any other failure is scoped to this platform
            logger.exception(f"Unexpected error building {platform.triplet}")
            result = PlatformResult(platform, BuildStatus.SANDBOX_ERROR, f"{type(e).__name__}: {e}")

        result.build_time = time.time() - start_time
        if result.success:
            print(f"  {platform.triplet}: ok ({result.build_time:.1f}s)")
        else:
            print(f"  {platform.triplet}: {result.status.name.lower()}")
            logger.error(f"{platform.triplet}: {result.status.name}: {result.message}")
        return result

    def _build_platform(
        self,
        descriptor: BuildDescriptor,
        platform: Platform,
        output_dir: Path,
        manifest: InstallManifest,
        options: BuildOptions,
    ) -> PlatformResult:
        verbose = options.verbose

        cached = self._published(descriptor, platform, output_dir, manifest)
        if cached is not None and not options.force:
            if verbose:
                print(f"[{platform.triplet}] Already built: {cached.name}")
            return PlatformResult(
                platform,
                BuildStatus.SUCCESS,
                "Already built",
                tarball=cached,
                sha256=manifest.get(platform).sha256,
                cached=True,
            )

        # Phase 1: Workspace
        if verbose:
            print(f"[{platform.triplet}] [1/6] Preparing workspace...")
        workspace = setup_workspace(
            self._build_root(descriptor), descriptor.sources, platform, self.downloader, verbose=verbose
        )

        # Phase 2: Sandbox
        if verbose:
            print(f"[{platform.triplet}] [2/6] Provisioning sandbox...")
        runner = self._make_runner(platform, workspace, options)
        dependencies = [Dependency(source, self.downloader) for source in descriptor.dependencies]

        with self._tracking(platform, runner), runner.open():
            # Phase 3: Dependencies
            if verbose:
                print(f"[{platform.triplet}] [3/6] Installing {len(dependencies)} dependencies...")
            for dependency in dependencies:
                dependency.build(workspace.prefix, platform, runner=runner, autofix=options.autofix, verbose=verbose)

            # Phase 4: Build script
            if verbose:
                print(f"[{platform.triplet}] [4/6] Running build script...")
            run = runner.run(self._script(descriptor), log_path=workspace.build_log, verbose=verbose)
            if not run.success:
                reason = "timed out" if run.timed_out else f"exited with status {run.exit_code}"
                return PlatformResult(
                    platform,
                    BuildStatus.SCRIPT_FAILED,
                    f"Build script {reason}; see {workspace.build_log}",
                    log_path=workspace.build_log,
                )

            # Dependencies are not part of this package
            for dependency in dependencies:
                dependency.uninstall(workspace.prefix, platform)

            # Phase 5: Audit and products
            if verbose:
                print(f"[{platform.triplet}] [5/6] Auditing...")
            findings = audit(
                workspace.prefix,
                platform,
                runner=runner,
                options=AuditOptions(verbose=verbose, autofix=options.autofix, fatal=False),
            )

        blocking = [f for f in findings if f.blocking]
        if blocking and not options.ignore_audit_errors:
            return PlatformResult(
                platform,
                BuildStatus.AUDIT_REJECTED,
                "; ".join(str(f) for f in blocking),
                log_path=workspace.build_log,
                findings=findings,
            )

        missing = unsatisfied_products(descriptor.products, workspace.prefix, platform)
        if missing:
            return PlatformResult(
                platform,
                BuildStatus.PRODUCTS_UNSATISFIED,
                "Missing products: " + ", ".join(p.name for p in missing),
                log_path=workspace.build_log,
                findings=findings,
                unsatisfied=missing,
            )

        # Phase 6: Package
        if verbose:
            print(f"[{platform.triplet}] [6/6] Packaging...")
        tarball, sha256 = package_prefix(
            workspace.prefix, descriptor.name, descriptor.version, platform, output_dir
        )
        return PlatformResult(
            platform,
            BuildStatus.SUCCESS,
            f"Built {tarball.name}",
            tarball=tarball,
            sha256=sha256,
            log_path=workspace.build_log,
            findings=findings,
        )

    @contextmanager
    def _tracking(self, platform: Platform, runner: Runner) -> Iterator[None]:
        with self._lock:
            self._active[platform] = runner
        try:
            yield
        finally:
            with self._lock:
                self._active.pop(platform, None)

    def _make_runner(self, platform: Platform, workspace: Workspace, options: BuildOptions) -> Runner:
        if self.runner_factory is not None:
            return self.runner_factory(platform, workspace.root)
        return make_runner(
            self.config, platform, workspace.root, self.shards, nproc=options.nproc, show_progress=options.verbose
        )

    def _build_root(self, descriptor: BuildDescriptor) -> Path:
        if self.build_root is not None:
            return self.build_root
        return self.config.cache_root / "builds" / descriptor.name

    @staticmethod
    def _script(descriptor: BuildDescriptor) -> str:
        return f"set -e\ncd {SANDBOX_WORKSPACE}/srcdir\n{descriptor.script}\n"

    @staticmethod
    def _load_manifest(descriptor: BuildDescriptor, output_dir: Path) -> InstallManifest:
        path = output_dir / MANIFEST_NAME
        if path.exists():
            try:
                previous = InstallManifest.load(path)
            except ManifestError as e:
                logger.warning(f"Ignoring unreadable {path}: {e}")
            else:
                if previous.name == descriptor.name and previous.version == descriptor.version:
                    return previous
        return InstallManifest(name=descriptor.name, version=descriptor.version)

    @staticmethod
    def _published(
        descriptor: BuildDescriptor, platform: Platform, output_dir: Path, manifest: InstallManifest
    ) -> Optional[Path]:
        """The platform's tarball, if it is already published with a matching hash."""
        try:
            entry = manifest.get(platform)
        except KeyError:
            return None
        tarball = output_dir / tarball_name(descriptor.name, descriptor.version, platform)
        if not tarball.exists() or sha256_file(tarball) != entry.sha256:
            return None
        return tarball
