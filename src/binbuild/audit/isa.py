"""Instruction set classification for x86 objects.

A binary built on a modern machine can silently pick up instructions that
older CPUs lack. The objects are disassembled, each mnemonic is counted, and
the counts are classified into the oldest microarchitecture generation able
to run every instruction seen.

Generations:
    32-bit: pentium4 < prescott
    64-bit: core2 < sandybridge < haswell

A binary that executes cpuid is assumed to dispatch on CPU features at
runtime, so its ceiling is reported for information only.
"""

from collections import Counter
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Dict, List, Mapping, Optional, Tuple

if TYPE_CHECKING:
    from ..sandbox.runner import Runner

ISA_GENERATIONS_32: Tuple[str, ...] = ("pentium4", "prescott")
ISA_GENERATIONS_64: Tuple[str, ...] = ("core2", "sandybridge", "haswell")

# Extension generations in the order they appeared
EXTENSION_ORDER: Tuple[str, ...] = ("prescott", "core2", "sandybridge", "haswell")

# Index into the word size's ladder for each extension generation. The 32-bit
# ladder ends at prescott, so SSSE3 and everything after it also rank as
# prescott there; ISAReport.newest keeps the unclamped name.
LADDER_RANK_32: Dict[str, int] = {"prescott": 1, "core2": 1, "sandybridge": 1, "haswell": 1}
LADDER_RANK_64: Dict[str, int] = {"prescott": 0, "core2": 0, "sandybridge": 1, "haswell": 2}

# SSE3
_PRESCOTT = frozenset(
    {"addsubpd", "addsubps", "haddpd", "haddps", "hsubpd", "hsubps", "lddqu", "movddup",
     "movshdup", "movsldup", "fisttp", "fisttpl", "fisttpll", "fisttps", "monitor", "mwait"}
)

# SSSE3; core2 is the x86_64 baseline, the set is kept so 32-bit code using it
# is classified above pentium4
_CORE2 = frozenset(
    {"pabsb", "pabsd", "pabsw", "palignr", "phaddd", "phaddsw", "phaddw", "phsubd", "phsubsw",
     "phsubw", "pmaddubsw", "pmulhrsw", "pshufb", "psignb", "psignd", "psignw"}
)

# SSE4.1, SSE4.2, AES-NI, PCLMUL, AVX
_SANDYBRIDGE = frozenset(
    {"blendpd", "blendps", "blendvpd", "blendvps", "dppd", "dpps", "extractps", "insertps",
     "movntdqa", "mpsadbw", "packusdw", "pblendvb", "pblendw", "pcmpeqq", "pextrb", "pextrd",
     "pextrq", "phminposuw", "pinsrb", "pinsrd", "pinsrq", "pmaxsb", "pmaxsd", "pmaxud",
     "pmaxuw", "pminsb", "pminsd", "pminud", "pminuw", "pmovsxbd", "pmovsxbq", "pmovsxbw",
     "pmovsxdq", "pmovsxwd", "pmovsxwq", "pmovzxbd", "pmovzxbq", "pmovzxbw", "pmovzxdq",
     "pmovzxwd", "pmovzxwq", "pmuldq", "pmulld", "ptest", "roundpd", "roundps", "roundsd",
     "roundss", "crc32", "pcmpestri", "pcmpestrm", "pcmpistri", "pcmpistrm", "pcmpgtq",
     "popcnt", "aesdec", "aesdeclast", "aesenc", "aesenclast", "aesimc", "aeskeygenassist",
     "pclmulqdq", "vzeroupper", "vzeroall", "vbroadcastss", "vbroadcastsd", "vbroadcastf128",
     "vinsertf128", "vextractf128", "vmaskmovps", "vmaskmovpd", "vpermilps", "vpermilpd",
     "vperm2f128", "vtestps", "vtestpd", "vldmxcsr", "vstmxcsr"}
)

# AVX2, FMA, BMI1/2, F16C, MOVBE, LZCNT
_HASWELL = frozenset(
    {"vpbroadcastb", "vpbroadcastw", "vpbroadcastd", "vpbroadcastq", "vbroadcasti128",
     "vinserti128", "vextracti128", "vperm2i128", "vpermd", "vpermq", "vpermps", "vpermpd",
     "vpmaskmovd", "vpmaskmovq", "vpsllvd", "vpsllvq", "vpsravd", "vpsrlvd", "vpsrlvq",
     "vpblendd", "andn", "bextr", "blsi", "blsmsk", "blsr", "bzhi", "mulx", "pdep", "pext",
     "rorx", "sarx", "shlx", "shrx", "tzcnt", "lzcnt", "movbe", "vcvtph2ps", "vcvtps2ph"}
)
_HASWELL_PREFIXES = ("vfmadd", "vfmsub", "vfnmadd", "vfnmsub", "vfmaddsub", "vfmsubadd", "vgather", "vpgather")

# VEX-encoded forms of SSE instructions are AVX
_AVX_EXEMPT = frozenset({"vmcall", "vmlaunch", "vmresume", "vmxoff", "vmxon", "vmread", "vmwrite",
                         "vmptrld", "vmptrst", "vmclear", "verr", "verw"})

CPUID = "cpuid"

_PREFIX_WORDS = frozenset({"lock", "rep", "repz", "repnz", "repe", "repne", "data16", "addr32", "bnd", "notrack"})


@dataclass(frozen=True)
class ISAReport:
    """Result of classifying one object.

    Attributes:
        generation: Oldest generation able to run every instruction seen
        baseline: Generation every build for this word size may assume
        uses_cpuid: Whether the object queries CPU features at runtime
        offending: Mnemonics that raised the generation above the baseline
        newest: Newest extension generation seen, before clamping to the ladder
    """

    generation: str
    baseline: str
    uses_cpuid: bool
    offending: Tuple[str, ...] = ()
    newest: Optional[str] = None

    @property
    def exceeds_baseline(self) -> bool:
        return self.generation != self.baseline


def classify_mnemonic(mnemonic: str) -> Optional[str]:
    """Name the generation that introduced mnemonic, or None for baseline instructions."""
    m = mnemonic.lower()
    if m in _HASWELL or m.startswith(_HASWELL_PREFIXES):
        return "haswell"
    if m in _SANDYBRIDGE:
        return "sandybridge"
    if m.startswith("v") and m not in _AVX_EXEMPT and len(m) > 3:
        return "sandybridge"
    if m in _CORE2:
        return "core2"
    if m in _PRESCOTT:
        return "prescott"
    return None


def analyze_instruction_set(counts: Mapping[str, int], is_64bit: bool) -> ISAReport:
    """Classify a mnemonic histogram.

    Args:
        counts: Mnemonic -> number of occurrences
        is_64bit: Whether the object is x86_64 (else i686)

    Returns:
        ISAReport naming the minimum required generation
    """
    generations = ISA_GENERATIONS_64 if is_64bit else ISA_GENERATIONS_32
    baseline = generations[0]

    rank = LADDER_RANK_64 if is_64bit else LADDER_RANK_32

    level = 0
    newest: Optional[str] = None
    offending: List[str] = []
    for mnemonic, count in counts.items():
        if count <= 0:
            continue
        generation = classify_mnemonic(mnemonic)
        if generation is None:
            continue
        if newest is None or EXTENSION_ORDER.index(generation) > EXTENSION_ORDER.index(newest):
            newest = generation
        r = rank[generation]
        if r > 0:
            offending.append(mnemonic)
        level = max(level, r)

    uses_cpuid = counts.get(CPUID, 0) > 0
    return ISAReport(
        generation=generations[level],
        baseline=baseline,
        uses_cpuid=uses_cpuid,
        offending=tuple(sorted(offending)),
        newest=newest,
    )


def parse_objdump_output(text: str) -> Counter:
    """Count mnemonics in `objdump -d` output.

    Instruction lines look like:
        '  401000:\\t55                   \\tpush   %rbp'
    """
    counts: Counter = Counter()
    for line in text.splitlines():
        fields = line.split("\t")
        if len(fields) < 3 or not fields[0].strip().endswith(":"):
            continue
        instruction = fields[2].strip()
        if not instruction:
            continue
        tokens = instruction.split()
        mnemonic = tokens[0]
        # Prefixes are printed as separate words
        while mnemonic in _PREFIX_WORDS and len(tokens) > 1:
            tokens = tokens[1:]
            mnemonic = tokens[0]
        counts[mnemonic.lower()] += 1
    return counts


def instruction_mnemonics(path: Path, runner: "Runner") -> Counter:
    """Disassemble an object inside the sandbox and count its mnemonics.

    Raises:
        RuntimeError: If objdump fails
    """
    result = runner.run(["objdump", "-d", runner.sandbox_path(path)])
    if result.exit_code != 0:
        raise RuntimeError(f"objdump failed on {path} (exit code {result.exit_code})")
    return parse_objdump_output(result.output)

