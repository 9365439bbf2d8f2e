"""
Unit tests for BuildOrchestrator.

The sandbox is replaced by a fake runner whose build script "installs"
a shared library into the prefix, so every phase after provisioning runs
for real: auditing, product checks, packaging and the install manifest.
"""

import json
import struct
from unittest import mock

import pytest

from binbuild.audit.auditor import AuditError
from binbuild.build.orchestrator import (
    BuildDescriptor,
    BuildOptions,
    BuildOrchestrator,
    BuildOrchestratorError,
    BuildStatus,
    MultiBuildResult,
    PlatformResult,
)
from binbuild.build.workspace import SourceSpec
from binbuild.config.platform import Platform
from binbuild.packages.manifest import InstallManifest
from binbuild.packages.products import ExecutableProduct, LibraryProduct
from binbuild.packages.squashfs import SquashfsError
from binbuild.sandbox.mounts import MountError
from binbuild.sandbox.runner import RunResult, SandboxSetupError

X86 = Platform.parse("x86_64-linux-gnu")
ARM = Platform.parse("aarch64-linux-gnu")
MACHINES = {"x86_64": 62, "aarch64": 183}


@pytest.fixture
def descriptor():
    return BuildDescriptor(
        name="libfoo",
        version="1.2.0",
        script="make install",
        platforms=[X86, ARM],
        products=[LibraryProduct("libfoo")],
    )


@pytest.fixture
def runners():
    """Every runner the orchestrator created, in creation order."""
    return []


@pytest.fixture
def make_orchestrator(config, tmp_path, fake_runner_class, make_elf, runners):
    """Build an orchestrator whose sandboxes are fake runners.

    Args:
        install: Whether the script installs libfoo.so
        machine: ELF machine to install (defaults to the platform's)
        script_result: What the build script returns
        on_script: Extra callback run when the script runs
    """

    def make(install=True, machine=None, script_result=None, on_script=None):
        def factory(platform, root):
            runner = fake_runner_class(platform, root)
            if script_result is not None:
                runner.script_result = script_result

            def fake_build(workspace):
                if install:
                    lib = workspace / "destdir" / "lib"
                    lib.mkdir(parents=True, exist_ok=True)
                    data = make_elf(machine=machine or MACHINES[platform.arch], needed=["libc.so.6"])
                    (lib / "libfoo.so").write_bytes(data)
                if on_script is not None:
                    on_script(runner)

            runner.on_script = fake_build
            runners.append(runner)
            return runner

        return BuildOrchestrator(config, runner_factory=factory, build_root=tmp_path / "builds")

    return make


class TestBuildDescriptor:
    """Test cases for BuildDescriptor parsing."""

    def test_from_dict(self, tmp_path):
        descriptor = BuildDescriptor.from_dict(
            {
                "name": "libfoo",
                "version": "1.2.0",
                "script": "make install",
                "sources": [{"path": "src"}],
                "platforms": ["x86_64-linux-gnu", "x86_64-w64-mingw32"],
                "products": [{"type": "library", "name": "libfoo"}, {"type": "executable", "name": "foo"}],
                "dependencies": ["../libbar/products/build.json", "https://example.com/libz/build.json"],
            },
            base_dir=tmp_path,
        )
        assert descriptor.sources == [SourceSpec(str(tmp_path / "src"))]
        assert descriptor.platforms == [X86, Platform.windows("x86_64")]
        assert [type(p) for p in descriptor.products] == [LibraryProduct, ExecutableProduct]
        assert descriptor.dependencies == [
            str(tmp_path / "../libbar/products/build.json"),
            "https://example.com/libz/build.json",
        ]

    def test_defaults(self):
        descriptor = BuildDescriptor.from_dict({"name": "libfoo", "script": "true"})
        assert descriptor.version == "0.0.0"
        assert len(descriptor.platforms) == 8
        assert descriptor.products == []

    @pytest.mark.parametrize(
        "data,match",
        [
            ({"script": "true"}, "missing 'name'"),
            ({"name": "libfoo"}, "missing 'script'"),
            ({"name": "libfoo", "script": "true", "platforms": ["sparc-sun-solaris"]}, "Invalid build descriptor"),
            ({"name": "libfoo", "script": "true", "products": [{"type": "font"}]}, "Invalid build descriptor"),
            (["libfoo"], "JSON object"),
        ],
    )
    def test_invalid(self, data, match):
        with pytest.raises(BuildOrchestratorError, match=match):
            BuildDescriptor.from_dict(data)

    def test_from_json_invalid(self):
        with pytest.raises(BuildOrchestratorError, match="not valid JSON"):
            BuildDescriptor.from_json("{name:")

    def test_from_file(self, tmp_path):
        path = tmp_path / "build.binbuild.json"
        path.write_text(json.dumps({"name": "libfoo", "script": "true", "sources": [{"path": "src"}]}))
        descriptor = BuildDescriptor.from_file(path)
        assert descriptor.sources[0].location == str(tmp_path.absolute() / "src")

    def test_from_file_missing(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            BuildDescriptor.from_file(tmp_path / "missing.json")


class TestMultiBuildResult:
    """Test cases for the aggregate exit code."""

    def _result(self, *statuses):
        platforms = [X86, ARM, Platform.windows("x86_64")]
        results = {p: PlatformResult(p, s) for p, s in zip(platforms, statuses)}
        return MultiBuildResult(results=results, manifest=InstallManifest("libfoo"))

    def test_all_succeeded(self):
        result = self._result(BuildStatus.SUCCESS, BuildStatus.SUCCESS)
        assert result.success
        assert result.exit_code == 0

    def test_first_real_failure_wins(self):
        result = self._result(BuildStatus.SKIPPED, BuildStatus.AUDIT_REJECTED, BuildStatus.SCRIPT_FAILED)
        assert result.exit_code == 2

    def test_only_skipped(self):
        assert self._result(BuildStatus.SUCCESS, BuildStatus.SKIPPED).exit_code == 6

    def test_by_status(self):
        result = self._result(BuildStatus.SUCCESS, BuildStatus.SKIPPED, BuildStatus.SKIPPED)
        assert [r.platform for r in result.by_status(BuildStatus.SKIPPED)] == [ARM, Platform.windows("x86_64")]


class TestBuildOrchestrator:
    """Test cases for BuildOrchestrator.build()."""

    def test_requires_shards_or_factory(self, config):
        with pytest.raises(BuildOrchestratorError):
            BuildOrchestrator(config)

    def test_no_platforms(self, make_orchestrator, descriptor, tmp_path):
        descriptor.platforms = []
        with pytest.raises(BuildOrchestratorError, match="No platforms"):
            make_orchestrator().build(descriptor, None, tmp_path / "out")

    def test_success(self, make_orchestrator, descriptor, runners, tmp_path):
        out = tmp_path / "out"
        result = make_orchestrator().build(descriptor, None, out)

        assert result.success
        assert result.exit_code == 0
        assert set(result.results) == {X86, ARM}
        for platform in (X86, ARM):
            r = result.results[platform]
            assert r.tarball == out / f"libfoo.v1.2.0.{platform.triplet}.tar.gz"
            assert r.tarball.exists()
            assert r.log_path.read_text() == "fake build output\n"
            assert not r.cached

        manifest = InstallManifest.load(result.manifest_path)
        assert result.manifest_path == out / "build.json"
        assert sorted(manifest.artifacts) == ["aarch64-linux-gnu", "x86_64-linux-gnu"]
        assert manifest.get(X86).sha256 == result.results[X86].sha256

        assert len(runners) == 2
        assert all(r.opened == 1 and r.closed == 1 for r in runners)

    def test_script_runs_in_srcdir(self, make_orchestrator, descriptor, runners, tmp_path):
        make_orchestrator().build(descriptor, [X86], tmp_path / "out")
        [script] = [c for c in runners[0].commands if isinstance(c, str)]
        assert script.startswith("set -e\ncd /workspace/srcdir\n")
        assert "make install" in script

    def test_platform_argument_overrides_descriptor(self, make_orchestrator, descriptor, tmp_path):
        result = make_orchestrator().build(descriptor, [ARM], tmp_path / "out")
        assert list(result.results) == [ARM]

    def test_script_failure_with_fail_fast(self, make_orchestrator, descriptor, tmp_path):
        result = make_orchestrator(script_result=RunResult(exit_code=2)).build(descriptor, None, tmp_path / "out")

        statuses = sorted(r.status.name for r in result.results.values())
        assert statuses == ["SCRIPT_FAILED", "SKIPPED"]
        assert result.exit_code == BuildStatus.SCRIPT_FAILED.exit_code
        [failed] = result.by_status(BuildStatus.SCRIPT_FAILED)
        assert "exited with status 2" in failed.message
        assert InstallManifest.load(result.manifest_path).artifacts == {}

    def test_script_failure_without_fail_fast(self, make_orchestrator, descriptor, tmp_path):
        orchestrator = make_orchestrator(script_result=RunResult(exit_code=1))
        result = orchestrator.build(descriptor, None, tmp_path / "out", BuildOptions(fail_fast=False))
        assert [r.status for r in result.results.values()] == [BuildStatus.SCRIPT_FAILED] * 2

    def test_script_timeout(self, make_orchestrator, descriptor, tmp_path):
        orchestrator = make_orchestrator(script_result=RunResult(exit_code=-9, timed_out=True))
        result = orchestrator.build(descriptor, [X86], tmp_path / "out")
        assert "timed out" in result.results[X86].message

    def test_audit_rejected(self, make_orchestrator, descriptor, tmp_path):
        result = make_orchestrator(machine=21).build(descriptor, [X86], tmp_path / "out")
        r = result.results[X86]
        assert r.status is BuildStatus.AUDIT_REJECTED
        assert "platform-mismatch" in r.message
        assert result.exit_code == 2
        assert r.tarball is None

    def test_ignore_audit_errors(self, make_orchestrator, descriptor, tmp_path):
        orchestrator = make_orchestrator(machine=21)
        result = orchestrator.build(descriptor, [X86], tmp_path / "out", BuildOptions(ignore_audit_errors=True))
        # The foreign library does not count as the declared product either
        assert result.results[X86].status is BuildStatus.PRODUCTS_UNSATISFIED

    def test_products_unsatisfied(self, make_orchestrator, descriptor, tmp_path):
        result = make_orchestrator(install=False).build(descriptor, [X86], tmp_path / "out")
        r = result.results[X86]
        assert r.status is BuildStatus.PRODUCTS_UNSATISFIED
        assert [p.name for p in r.unsatisfied] == ["libfoo"]
        assert "libfoo" in r.message
        assert result.exit_code == 3

    def test_provisioning_failure(self, make_orchestrator, descriptor, runners, tmp_path):
        descriptor.sources = [SourceSpec(str(tmp_path / "missing.tar.gz"))]
        result = make_orchestrator().build(descriptor, [X86], tmp_path / "out")
        assert result.results[X86].status is BuildStatus.PROVISIONING_FAILED
        assert result.exit_code == 4
        assert runners == []

    def test_sandbox_setup_failure(self, config, descriptor, tmp_path):
        def factory(platform, root):
            raise SandboxSetupError("user namespaces are disabled", hint="use --runner privileged")

        orchestrator = BuildOrchestrator(config, runner_factory=factory, build_root=tmp_path / "builds")
        result = orchestrator.build(descriptor, [X86], tmp_path / "out")
        r = result.results[X86]
        assert r.status is BuildStatus.SANDBOX_ERROR
        assert "Hint: use --runner privileged" in r.message
        assert result.exit_code == 5

    def test_published_platform_not_rebuilt(self, make_orchestrator, descriptor, runners, tmp_path):
        out = tmp_path / "out"
        orchestrator = make_orchestrator()
        first = orchestrator.build(descriptor, None, out)
        second = orchestrator.build(descriptor, None, out)

        assert len(runners) == 2
        assert all(r.cached and r.success for r in second.results.values())
        assert second.results[X86].sha256 == first.results[X86].sha256
        assert second.results[X86].tarball == first.results[X86].tarball

    def test_force_rebuilds(self, make_orchestrator, descriptor, runners, tmp_path):
        orchestrator = make_orchestrator()
        orchestrator.build(descriptor, [X86], tmp_path / "out")
        result = orchestrator.build(descriptor, [X86], tmp_path / "out", BuildOptions(force=True))
        assert len(runners) == 2
        assert not result.results[X86].cached

    def test_tampered_tarball_rebuilt(self, make_orchestrator, descriptor, runners, tmp_path):
        orchestrator = make_orchestrator()
        first = orchestrator.build(descriptor, [X86], tmp_path / "out")
        first.results[X86].tarball.write_bytes(b"corrupt")
        second = orchestrator.build(descriptor, [X86], tmp_path / "out")
        assert len(runners) == 2
        assert not second.results[X86].cached

    def test_manifest_keeps_other_platforms(self, make_orchestrator, descriptor, tmp_path):
        orchestrator = make_orchestrator()
        orchestrator.build(descriptor, [X86], tmp_path / "out")
        result = orchestrator.build(descriptor, [ARM], tmp_path / "out")
        assert sorted(result.manifest.artifacts) == ["aarch64-linux-gnu", "x86_64-linux-gnu"]

    def test_manifest_of_other_version_replaced(self, make_orchestrator, descriptor, tmp_path):
        orchestrator = make_orchestrator()
        orchestrator.build(descriptor, [X86], tmp_path / "out")
        descriptor.version = "1.3.0"
        result = orchestrator.build(descriptor, [ARM], tmp_path / "out")
        assert result.manifest.version == "1.3.0"
        assert list(result.manifest.artifacts) == ["aarch64-linux-gnu"]

    def test_cancel_kills_running_sandboxes(self, make_orchestrator, descriptor, tmp_path):
        holder = {}

        def cancel(runner):
            holder["orchestrator"].cancel()

        orchestrator = make_orchestrator(on_script=cancel)
        holder["orchestrator"] = orchestrator
        result = orchestrator.build(descriptor, None, tmp_path / "out")

        statuses = [r.status for r in result.results.values()]
        assert statuses == [BuildStatus.SUCCESS, BuildStatus.SKIPPED]
        assert "cancelled" in list(result.results.values())[1].message
        assert result.exit_code == BuildStatus.SKIPPED.exit_code


class TestPlatformIsolation:
    """One platform failing in an unexpected way must leave the others' results intact."""

    @pytest.mark.parametrize(
        "error, status",
        [
            (SquashfsError("id table is compressed"), BuildStatus.PROVISIONING_FAILED),
            (MountError("mount: permission denied"), BuildStatus.SANDBOX_ERROR),
            (ValueError("unexpected value"), BuildStatus.SANDBOX_ERROR),
        ],
    )
    def test_sandbox_open_error(self, make_orchestrator, descriptor, tmp_path, error, status):
        orchestrator = make_orchestrator()
        make_runner = orchestrator.runner_factory

        def factory(platform, root):
            runner = make_runner(platform, root)
            if platform == ARM:
                runner.open = mock.Mock(side_effect=error)
            return runner

        orchestrator.runner_factory = factory
        out = tmp_path / "out"
        result = orchestrator.build(descriptor, None, out, BuildOptions(fail_fast=False))

        assert result.results[X86].status is BuildStatus.SUCCESS
        assert result.results[ARM].status is status
        assert result.exit_code == status.exit_code
        assert str(error) in result.results[ARM].message
        assert list(InstallManifest.load(out / "build.json").artifacts) == ["x86_64-linux-gnu"]

    def test_truncated_object_rejected(self, make_orchestrator, descriptor, tmp_path):
        def truncate(runner):
            if runner.platform == ARM:
                lib = runner.workspace / "destdir" / "lib" / "libfoo.so"
                data = bytearray(lib.read_bytes())
                struct.pack_into("<Q", data, 40, len(data) + 4096)
                lib.write_bytes(bytes(data))

        out = tmp_path / "out"
        result = make_orchestrator(on_script=truncate).build(descriptor, None, out, BuildOptions(fail_fast=False))

        assert result.results[X86].status is BuildStatus.SUCCESS
        r = result.results[ARM]
        assert r.status is BuildStatus.AUDIT_REJECTED
        assert "malformed-object" in r.message
        assert list(InstallManifest.load(out / "build.json").artifacts) == ["x86_64-linux-gnu"]

    def test_audit_error_rejects_platform(self, make_orchestrator, descriptor, tmp_path):
        with mock.patch("binbuild.build.orchestrator.unsatisfied_products", side_effect=AuditError("bad prefix")):
            result = make_orchestrator().build(descriptor, [X86], tmp_path / "out")
        assert result.results[X86].status is BuildStatus.AUDIT_REJECTED
        assert result.manifest_path.exists()
