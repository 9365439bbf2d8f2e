"""Binary auditing.

This module inspects the objects a build produced for portability defects
and repairs the ones that can be repaired.
"""

from .auditor import (
    ABSOLUTE_LINKAGE,
    ABSOLUTE_SYMLINK,
    CHECKS,
    INSTRUCTION_SET,
    MALFORMED_OBJECT,
    PLATFORM_MISMATCH,
    AuditError,
    AuditFinding,
    AuditOptions,
    Severity,
    audit,
)
from .files import collect_files, match_files, normalize_name
from .isa import ISAReport, analyze_instruction_set, instruction_mnemonics, parse_objdump_output
from .linkage import LinkageIssue, find_absolute_linkage, fix_linkage
from .objects import (
    ElfHandle,
    MachOHandle,
    ObjectHandle,
    ObjectParseError,
    PEHandle,
    is_for_platform,
    readmeta,
)
from .symlinks import collapse_symlinks, translate_symlinks

__all__ = [
    "ABSOLUTE_LINKAGE",
    "ABSOLUTE_SYMLINK",
    "CHECKS",
    "INSTRUCTION_SET",
    "MALFORMED_OBJECT",
    "PLATFORM_MISMATCH",
    "AuditError",
    "AuditFinding",
    "AuditOptions",
    "Severity",
    "audit",
    "collect_files",
    "match_files",
    "normalize_name",
    "ISAReport",
    "analyze_instruction_set",
    "instruction_mnemonics",
    "parse_objdump_output",
    "LinkageIssue",
    "find_absolute_linkage",
    "fix_linkage",
    "ElfHandle",
    "MachOHandle",
    "ObjectHandle",
    "ObjectParseError",
    "PEHandle",
    "is_for_platform",
    "readmeta",
    "collapse_symlinks",
    "translate_symlinks",
]
