"""Cross-compilation environment for a target.

Build scripts are written against generic tool names (gcc, ar, make) and a
handful of variables. This module derives those variables for a target and
writes wrapper scripts that point the generic names at the target's cross
tools.

In-sandbox layout:
    /opt/<triplet>/bin          Target toolchain (<triplet>-gcc, ...)
    /opt/super_binutils/bin     Binary inspection tools for every target
    /workspace                  Workspace (sources, logs)
    /workspace/destdir          Install prefix
    /workspace/.binbuild/bin    Generic tool name wrappers
"""

import os
from pathlib import Path
from typing import Dict, List, Optional

from ..config.platform import Platform

SANDBOX_WORKSPACE = "/workspace"
SANDBOX_PREFIX = f"{SANDBOX_WORKSPACE}/destdir"
SANDBOX_WRAPPERS = f"{SANDBOX_WORKSPACE}/.binbuild/bin"
SUPER_BINUTILS = "/opt/super_binutils/bin"
HOST_TRIPLET = "x86_64-linux-gnu"

# Variable name -> tool suffix
_COMMON_TOOLS = {
    "CC": "gcc",
    "CXX": "g++",
    "FC": "gfortran",
    "LD": "ld",
    "AR": "ar",
    "AS": "as",
    "NM": "nm",
    "RANLIB": "ranlib",
    "STRIP": "strip",
    "OBJCOPY": "objcopy",
    "OBJDUMP": "objdump",
}
_MACOS_TOOLS = {"LIPO": "lipo", "INSTALL_NAME_TOOL": "install_name_tool"}
_WINDOWS_TOOLS = {"DLLTOOL": "dlltool", "WINDRES": "windres"}

# Generic name -> tool suffix
_WRAPPERS = {
    "gcc": "gcc",
    "cc": "gcc",
    "g++": "g++",
    "c++": "g++",
    "cpp": "cpp",
    "gfortran": "gfortran",
    "f77": "gfortran",
    "ld": "ld",
    "ar": "ar",
    "as": "as",
    "nm": "nm",
    "ranlib": "ranlib",
    "strip": "strip",
    "objcopy": "objcopy",
    "objdump": "objdump",
}


def toolchain_dir(platform: Platform) -> str:
    return f"/opt/{platform.triplet}"


def tool_path(platform: Platform, tool: str) -> str:
    """In-sandbox path of one of the target's cross tools."""
    return f"{toolchain_dir(platform)}/bin/{platform.triplet}-{tool}"


def _tools(platform: Platform) -> Dict[str, str]:
    tools = dict(_COMMON_TOOLS)
    if platform.is_macos:
        tools.update(_MACOS_TOOLS)
    if platform.is_windows:
        tools.update(_WINDOWS_TOOLS)
    if platform.is_linux:
        tools["READELF"] = "readelf"
    return tools


def target_envs(platform: Platform, nproc: Optional[int] = None) -> Dict[str, str]:
    """Environment variables a build script sees for platform.

    Args:
        platform: Target platform
        nproc: Parallelism hint (defaults to the host CPU count)

    Returns:
        Variable name -> value
    """
    nproc = nproc or os.cpu_count() or 1
    toolchain = toolchain_dir(platform)

    env = {
        "PATH": ":".join(
            [SANDBOX_WRAPPERS, f"{toolchain}/bin", SUPER_BINUTILS, "/usr/local/bin", "/usr/bin", "/bin"]
        ),
        "LD_LIBRARY_PATH": ":".join(["/usr/local/lib64", "/usr/local/lib", "/usr/lib64", "/usr/lib", "/lib64", "/lib"]),
        "target": platform.triplet,
        "nproc": str(nproc),
        "nbits": str(platform.nbits),
        "proc_family": platform.proc_family,
        "dlext": platform.dlext,
        "exeext": platform.exeext,
        "prefix": SANDBOX_PREFIX,
        "WORKSPACE": SANDBOX_WORKSPACE,
        "HOME": "/root",
        "HOST_TRIPLET": HOST_TRIPLET,
        "TERM": "xterm",
    }
    for variable, tool in _tools(platform).items():
        env[variable] = tool_path(platform, tool)
    return env


def wrapper_names(platform: Platform) -> Dict[str, str]:
    """Generic tool name -> tool suffix for platform."""
    names = dict(_WRAPPERS)
    if platform.is_macos:
        names.update({"lipo": "lipo", "install_name_tool": "install_name_tool"})
    if platform.is_windows:
        names.update({"dlltool": "dlltool", "windres": "windres"})
    if platform.is_linux:
        names["readelf"] = "readelf"
    return names


def write_wrapper_scripts(bin_dir: Path, platform: Platform) -> List[Path]:
    """Write generic-name wrappers for platform's cross tools.

    Args:
        bin_dir: Host directory that is SANDBOX_WRAPPERS inside the sandbox

    Returns:
        Paths of the scripts written
    """
    bin_dir = Path(bin_dir)
    bin_dir.mkdir(parents=True, exist_ok=True)

    written = []
    for name, tool in sorted(wrapper_names(platform).items()):
        script = bin_dir / name
        script.write_text(f'#!/bin/sh\nexec {tool_path(platform, tool)} "$@"\n', encoding="utf-8")
        script.chmod(0o755)
        written.append(script)
    return written
