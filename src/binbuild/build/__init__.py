"""Build orchestration.

This module builds a descriptor for many platforms: it prepares workspaces,
runs the build script in a sandbox, audits and packages the results, and
writes the install manifest.
"""

from .orchestrator import (
    BuildDescriptor,
    BuildOptions,
    BuildOrchestrator,
    BuildOrchestratorError,
    BuildStatus,
    MultiBuildResult,
    PlatformResult,
)
from .packaging import package_prefix, tarball_name
from .workspace import SourceSpec, Workspace, WorkspaceError, setup_workspace

__all__ = [
    "BuildDescriptor",
    "BuildOptions",
    "BuildOrchestrator",
    "BuildOrchestratorError",
    "BuildStatus",
    "MultiBuildResult",
    "PlatformResult",
    "SourceSpec",
    "Workspace",
    "WorkspaceError",
    "package_prefix",
    "setup_workspace",
    "tarball_name",
]
