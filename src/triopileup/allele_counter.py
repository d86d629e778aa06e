from __future__ import annotations

import logging
from typing import Dict, Iterable, Tuple

from .models import AlignedRead, Allele, AlleleCount, AlleleSupport, AlleleType
from .options import AlleleCounterOptions
from .ranges import Range
from .reference import ReferenceWindow

logger = logging.getLogger(__name__)

_CANONICAL = frozenset("ACGT")


def _is_canonical(bases: str) -> bool:
    return bool(bases) and all(b in _CANONICAL for b in bases)


def read_alleles(
    read: AlignedRead,
    ref: ReferenceWindow,
    *,
    start: int,
    end: int,
    min_base_quality: int = 0,
) -> Dict[int, Tuple[Allele, int]]:
    """Return ``{pos: (allele, quality)}`` for reference positions in [start, end).

    The CIGAR is walked once. An insertion or deletion replaces the base
    observation at its anchor (the reference base before the event), so each
    read contributes at most one allele per position. Indels are only recorded
    when preceded by an aligned base; bases below ``min_base_quality`` and
    non-ACGT bases are ignored.
    """
    out: Dict[int, Tuple[Allele, int]] = {}
    seq = read.sequence
    quals = read.qualities
    ref_pos = read.start
    query_pos = 0
    after_match = False

    for op, length in read.cigar:
        if op in (0, 7, 8):  # M, =, X: consumes query and ref
            lo = max(ref_pos, start)
            hi = min(ref_pos + length, end)
            for p in range(lo, hi):
                qpos = query_pos + (p - ref_pos)
                base = seq[qpos]
                bq = quals[qpos] if qpos < len(quals) else 0
                ref_base = ref.base(p)
                if bq < min_base_quality or base not in _CANONICAL or ref_base not in _CANONICAL:
                    continue
                if base == ref_base:
                    out[p] = (Allele(AlleleType.REFERENCE, ref_base), bq)
                else:
                    out[p] = (Allele(AlleleType.SUBSTITUTION, base), bq)
            ref_pos += length
            query_pos += length
            after_match = True

        elif op == 1:  # I: consumes query only
            anchor = ref_pos - 1
            if after_match and start <= anchor < end:
                inserted = seq[query_pos : query_pos + length]
                iq = min(quals[query_pos : query_pos + length], default=0)
                anchor_base = ref.base(anchor)
                out.pop(anchor, None)
                if iq >= min_base_quality and _is_canonical(inserted) and anchor_base in _CANONICAL:
                    out[anchor] = (Allele(AlleleType.INSERTION, anchor_base + inserted), iq)
            query_pos += length
            after_match = False

        elif op == 2:  # D: consumes ref only
            anchor = ref_pos - 1
            if after_match and start <= anchor < end:
                deleted = ref.bases(anchor, ref_pos + length)
                dq = quals[query_pos - 1] if 0 < query_pos <= len(quals) else 0
                out.pop(anchor, None)
                if dq >= min_base_quality and _is_canonical(deleted):
                    out[anchor] = (Allele(AlleleType.DELETION, deleted), dq)
            ref_pos += length
            after_match = False

        elif op == 3:  # N: consumes ref only
            ref_pos += length
            after_match = False
        elif op == 4:  # S: consumes query only
            query_pos += length
            after_match = False
        else:  # H, P and anything rarer consume neither
            continue

        if ref_pos > end:
            break

    return out


class AlleleCounter:
    """Tabulate per-position allele support of one sample over one partition.

    A counter holds no state between calls; each :meth:`count` builds a fresh
    mapping, so samples and partitions can be counted independently.
    """

    def __init__(self, options: AlleleCounterOptions) -> None:
        self.options = options

    def count(
        self,
        region: Range,
        reads: Iterable[AlignedRead],
        ref: ReferenceWindow,
    ) -> Dict[int, AlleleCount]:
        counts: Dict[int, AlleleCount] = {}
        n_reads = 0
        for read in reads:
            if not read.overlaps(region.contig, region.start, region.end):
                continue
            n_reads += 1
            observations = read_alleles(
                read,
                ref,
                start=region.start,
                end=region.end,
                min_base_quality=self.options.min_base_quality,
            )
            for pos, (allele, quality) in observations.items():
                ac = counts.get(pos)
                if ac is None:
                    ac = AlleleCount(position=pos, ref_base=ref.base(pos))
                    counts[pos] = ac
                if allele.type is AlleleType.REFERENCE:
                    ac.ref_support.add(is_reverse=read.is_reverse, quality=quality)
                else:
                    support = ac.alleles.setdefault(allele, AlleleSupport())
                    support.add(is_reverse=read.is_reverse, quality=quality)

        logger.debug("Counted %d reads over %s: %d positions with data", n_reads, region, len(counts))
        return dict(sorted(counts.items()))
