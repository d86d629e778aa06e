"""Candidate calling per trio member and merging of the three call sets.

Each sample runs the same very sensitive caller with its own thresholds. A
site becomes a trio candidate as soon as one member calls it; the other
members still contribute their allele-count summaries so downstream encoding
sees all three pileups.
"""

from __future__ import annotations

import logging
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from .models import Allele, AlleleCount, AlleleType, CandidateVariant, SampleSummary
from .options import SampleRole, TrioOptions, VariantCallerOptions

logger = logging.getLogger(__name__)


class VerySensitiveCaller:
    """Call every non-reference allele with enough read support.

    An allele is called when both its read count and its fraction of the
    position's depth reach the SNP or indel thresholds of ``options``.
    """

    def __init__(self, options: VariantCallerOptions) -> None:
        self.options = options

    def passes(self, allele: Allele, count: int, depth: int) -> bool:
        if depth <= 0 or count <= 0:
            return False
        fraction = count / depth
        if allele.type is AlleleType.SUBSTITUTION:
            return count >= self.options.min_count_snps and fraction >= self.options.min_fraction_snps
        return count >= self.options.min_count_indels and fraction >= self.options.min_fraction_indels

    def call_alleles(self, ac: Optional[AlleleCount]) -> List[Allele]:
        if ac is None:
            return []
        depth = ac.depth
        called = [a for a, s in ac.alleles.items() if self.passes(a, s.count, depth)]
        return sorted(called, key=lambda a: a.sort_key)


def normalize_alleles(ref_base: str, alleles: Sequence[Allele]) -> Tuple[str, Tuple[str, ...]]:
    """Express read-level alleles as VCF-style alternates over one reference allele.

    The shared reference allele spans the longest deletion (or is the single
    reference base); every alternate is extended with the reference bases it
    does not cover.
    """
    ref = ref_base
    for a in alleles:
        if a.type is AlleleType.DELETION and len(a.bases) > len(ref):
            ref = a.bases
    tail = ref[1:]
    alts: List[str] = []
    for a in alleles:
        if a.type is AlleleType.SUBSTITUTION:
            alts.append(a.bases + tail)
        elif a.type is AlleleType.INSERTION:
            alts.append(a.bases + tail)
        elif a.type is AlleleType.DELETION:
            alts.append(ref[0] + ref[len(a.bases):])
        else:
            raise ValueError(f"Reference allele cannot be an alternate: {a}")
    return ref, tuple(alts)


def matches_variant_types(candidate: CandidateVariant, types: Iterable[str]) -> bool:
    """True if ``candidate`` belongs to any of ``types``; an empty list selects everything."""
    types = list(types)
    if not types or "all" in types:
        return True
    checks = {
        "snps": candidate.is_snp,
        "indels": candidate.is_indel,
        "multi-allelics": candidate.is_multiallelic,
    }
    return any(checks[t] for t in types)


class TrioVariantCaller:
    def __init__(
        self,
        callers: Mapping[SampleRole, VerySensitiveCaller],
        *,
        select_variant_types: Sequence[str] = (),
    ) -> None:
        self.callers = dict(callers)
        self.select_variant_types = list(select_variant_types)

    @classmethod
    def from_options(cls, options: TrioOptions) -> "TrioVariantCaller":
        callers = {role: VerySensitiveCaller(options.caller_options(role)) for role in SampleRole}
        return cls(callers, select_variant_types=options.select_variant_types)

    def call(
        self, contig: str, counts: Mapping[SampleRole, Mapping[int, AlleleCount]]
    ) -> List[CandidateVariant]:
        """Merge per-sample calls into trio candidates, ascending by position.

        ``counts`` holds one entry per sample that has a read source; samples
        missing from it are not summarised.
        """
        roles = [r for r in SampleRole if r in counts]
        positions = sorted({p for r in roles for p in counts[r]})
        out: List[CandidateVariant] = []
        n_filtered = 0
        for pos in positions:
            called: Dict[SampleRole, List[Allele]] = {
                r: self.callers[r].call_alleles(counts[r].get(pos)) for r in roles
            }
            union = sorted({a for alleles in called.values() for a in alleles}, key=lambda a: a.sort_key)
            if not union:
                continue
            ref_base = next(counts[r][pos].ref_base for r in roles if pos in counts[r])
            ref, alts = normalize_alleles(ref_base, union)
            samples: Dict[SampleRole, SampleSummary] = {}
            for r in roles:
                ac = counts[r].get(pos)
                samples[r] = SampleSummary(
                    depth=ac.depth if ac else 0,
                    ref_support=ac.ref_support.count if ac else 0,
                    alt_support=tuple(ac.support(a) if ac else 0 for a in union),
                    called=bool(called[r]),
                )
            candidate = CandidateVariant(
                contig=contig,
                start=pos,
                ref=ref,
                alts=alts,
                raw_alleles=tuple(union),
                samples=samples,
            )
            if not matches_variant_types(candidate, self.select_variant_types):
                n_filtered += 1
                continue
            out.append(candidate)
        if n_filtered:
            logger.debug("%d candidates on %s dropped by variant type selection", n_filtered, contig)
        return out
