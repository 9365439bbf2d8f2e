"""Binary auditor.

This module inspects everything a build installed into its prefix and
reports portability defects, optionally repairing the ones that can be
repaired safely:

1. platform-mismatch: an object was built for a different platform
2. absolute-linkage: a dependency is recorded by absolute path
3. absolute-symlink: a symlink into the prefix is spelled absolutely
4. instruction-set: x86 code needs a newer CPU than the baseline

Objects too damaged to parse are reported as malformed-object and skipped.

Findings are returned, never raised, unless the caller asks for a fatal audit.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, FrozenSet, List, Optional, Union

from ..config.platform import Platform
from .files import collect_files
from .isa import analyze_instruction_set, instruction_mnemonics
from .linkage import find_absolute_linkage, fix_linkage
from .objects import ObjectHandle, ObjectParseError, is_for_platform, readmeta
from .symlinks import collapse_symlinks, find_absolute_symlinks, translate_symlinks

if TYPE_CHECKING:
    from ..packages.prefix import Prefix
    from ..sandbox.runner import Runner

logger = logging.getLogger(__name__)

PLATFORM_MISMATCH = "platform-mismatch"
ABSOLUTE_LINKAGE = "absolute-linkage"
ABSOLUTE_SYMLINK = "absolute-symlink"
INSTRUCTION_SET = "instruction-set"

# Reported for damaged objects; not a check that can be skipped
MALFORMED_OBJECT = "malformed-object"

CHECKS = (PLATFORM_MISMATCH, ABSOLUTE_LINKAGE, ABSOLUTE_SYMLINK, INSTRUCTION_SET)

DEFAULT_SANDBOX_PREFIX = "/workspace/destdir"


class Severity(Enum):
    INFO = "info"
    WARNING = "warning"
    HIGH = "high"


class AuditError(Exception):
    """Raised when a fatal audit has unresolved findings."""

    def __init__(self, message: str, findings: Optional[List["AuditFinding"]] = None):
        super().__init__(message)
        self.findings = findings or []


@dataclass
class AuditFinding:
    """One problem found in a prefix.

    Attributes:
        kind: Which check produced the finding
        severity: How bad the finding is
        location: File the finding is about, relative to the prefix
        message: Human readable description
        autofixable: Whether autofix can repair it
        fixed: Whether it has been repaired
    """

    kind: str
    severity: Severity
    location: str
    message: str
    autofixable: bool = False
    fixed: bool = False

    @property
    def blocking(self) -> bool:
        """Whether the finding should fail a fatal audit."""
        return not self.fixed and self.severity is not Severity.INFO

    def __str__(self) -> str:
        state = " (fixed)" if self.fixed else ""
        return f"[{self.severity.value}] {self.kind}: {self.location}: {self.message}{state}"


@dataclass
class AuditOptions:
    """Options controlling an audit.

    Attributes:
        verbose: Print each finding and informational findings
        autofix: Repair autofixable findings in place
        fatal: Raise AuditError if unresolved findings remain
        skip: Names of checks not to run
    """

    verbose: bool = False
    autofix: bool = False
    fatal: bool = False
    skip: FrozenSet[str] = field(default_factory=frozenset)

    def enabled(self, check: str) -> bool:
        return check not in self.skip


def audit(
    prefix: Union["Prefix", Path],
    platform: Platform,
    runner: Optional["Runner"] = None,
    options: Optional[AuditOptions] = None,
) -> List[AuditFinding]:
    """Audit the files installed into a prefix.

    Checks that must run target tools (linkage rewriting and disassembly)
    need a runner; without one, linkage problems are reported unfixed and the
    instruction set check is skipped.

    Args:
        prefix: Prefix (or its host directory) to audit
        platform: Platform the build targeted
        runner: Sandbox runner for the target, if available
        options: Audit options

    Returns:
        All findings, including fixed ones

    Raises:
        AuditError: Only if options.fatal and blocking findings remain
    """
    options = options or AuditOptions()
    prefix_dir = Path(getattr(prefix, "path", prefix))
    sandbox_prefix = getattr(prefix, "sandbox_path", DEFAULT_SANDBOX_PREFIX)

    if options.verbose:
        print(f"Auditing {prefix_dir} for {platform.triplet}...")

    findings: List[AuditFinding] = []

    if options.enabled(ABSOLUTE_SYMLINK):
        findings.extend(_check_symlinks(prefix_dir, sandbox_prefix, options))

    files = collapse_symlinks(
        collect_files(prefix_dir, lambda p: ".binbuild" not in p.relative_to(prefix_dir).parts)
    )
    for path in files:
        handle = readmeta(path)
        if handle is None:
            continue
        location = str(path.relative_to(prefix_dir))
        try:
            findings.extend(
                _audit_object(handle, location, platform, prefix_dir, sandbox_prefix, runner, options)
            )
        except ObjectParseError as e:
            findings.append(
                AuditFinding(
                    kind=MALFORMED_OBJECT,
                    severity=Severity.WARNING,
                    location=location,
                    message=f"cannot be parsed, skipped ({e})",
                )
            )

    if options.verbose:
        for finding in findings:
            print(f"  {finding}")

    for finding in findings:
        if finding.blocking:
            logger.warning(str(finding))
        else:
            logger.debug(str(finding))

    if options.fatal:
        blocking = [f for f in findings if f.blocking]
        if blocking:
            raise AuditError(
                f"Audit of {prefix_dir} found {len(blocking)} unresolved problem(s)", blocking
            )
    return findings


def _audit_object(
    handle: ObjectHandle,
    location: str,
    platform: Platform,
    prefix_dir: Path,
    sandbox_prefix: str,
    runner: Optional["Runner"],
    options: AuditOptions,
) -> List[AuditFinding]:
    if not is_for_platform(handle, platform):
        if not options.enabled(PLATFORM_MISMATCH):
            return []
        found = handle.platform()
        return [
            AuditFinding(
                kind=PLATFORM_MISMATCH,
                severity=Severity.HIGH,
                location=location,
                message=f"built for {found.triplet if found else 'an unknown platform'}, "
                + f"not {platform.triplet}",
            )
        ]

    findings = []
    if options.enabled(ABSOLUTE_LINKAGE) and not platform.is_windows:
        findings.extend(_check_linkage(handle, location, prefix_dir, sandbox_prefix, runner, options))

    if options.enabled(INSTRUCTION_SET) and runner is not None and platform.proc_family == "intel":
        finding = _check_instruction_set(handle, location, runner, options)
        if finding is not None:
            findings.append(finding)
    return findings


def _check_symlinks(prefix_dir: Path, sandbox_prefix: str, options: AuditOptions) -> List[AuditFinding]:
    pending = find_absolute_symlinks(prefix_dir, sandbox_prefix)
    fixed = set()
    if options.autofix and pending:
        fixed = set(translate_symlinks(prefix_dir, sandbox_prefix, verbose=options.verbose))

    findings = []
    for link, relative in pending:
        finding = AuditFinding(
            kind=ABSOLUTE_SYMLINK,
            severity=Severity.WARNING,
            location=str(link.relative_to(prefix_dir)),
            message=f"absolute symlink, relative form is {relative}",
            autofixable=True,
            fixed=link in fixed,
        )
        findings.append(finding)
    return findings


def _check_linkage(
    handle: ObjectHandle,
    location: str,
    prefix_dir: Path,
    sandbox_prefix: str,
    runner: Optional["Runner"],
    options: AuditOptions,
) -> List[AuditFinding]:
    findings = []
    for issue in find_absolute_linkage(handle, prefix_dir, sandbox_prefix):
        finding = AuditFinding(
            kind=ABSOLUTE_LINKAGE,
            severity=Severity.WARNING,
            location=location,
            message=f"links against {issue.dependency} by absolute path",
            autofixable=issue.inside_prefix,
        )
        if options.autofix and issue.inside_prefix and runner is not None:
            finding.fixed = fix_linkage(handle, issue, runner)
        findings.append(finding)
    return findings


def _check_instruction_set(
    handle: ObjectHandle, location: str, runner: "Runner", options: AuditOptions
) -> Optional[AuditFinding]:
    if not handle.executable_sections():
        return None
    try:
        counts = instruction_mnemonics(handle.path, runner)
    except RuntimeError as e:
        logger.warning(f"Skipping instruction set check for {location}: {e}")
        return None

    report = analyze_instruction_set(counts, handle.is_64bit)
    if not report.exceeds_baseline:
        return None

    detail = f"requires {report.generation} (baseline {report.baseline}; uses {', '.join(report.offending[:5])})"
    if report.newest and report.newest != report.generation:
        detail += f", including {report.newest} extensions"
    if report.uses_cpuid:
        if not options.verbose:
            return None
        return AuditFinding(
            kind=INSTRUCTION_SET,
            severity=Severity.INFO,
            location=location,
            message=f"{detail}, but dispatches on cpuid at runtime",
        )
    return AuditFinding(kind=INSTRUCTION_SET, severity=Severity.WARNING, location=location, message=detail)
