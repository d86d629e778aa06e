"""Read source access, read filtering and seeded downsampling.

Every keep/drop decision is a pure function of (random seed, sample role,
read identity), so results do not depend on worker scheduling or on which
partition a read is fetched for.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple

import pysam

from .errors import ConfigurationError, PartitionError
from .models import AlignedRead
from .options import ReadRequirements, SampleRole
from .ranges import Range
from .utils import seeded_unit_hash

logger = logging.getLogger(__name__)

_FLAG_UNMAPPED = 0x4
_FLAG_SECONDARY = 0x100
_FLAG_QCFAIL = 0x200
_FLAG_DUPLICATE = 0x400
_FLAG_SUPPLEMENTARY = 0x800


def aligned_read_from_pysam(
    segment: pysam.AlignedSegment,
    *,
    use_original_quality_scores: bool = False,
) -> Optional[AlignedRead]:
    """Convert a pysam record; returns None for records without alignment or sequence."""
    if segment.cigartuples is None or segment.query_sequence is None:
        return None

    if use_original_quality_scores:
        if not segment.has_tag("OQ"):
            raise PartitionError(
                f"Read {segment.query_name} has no OQ tag but original quality scores were requested"
            )
        qualities = tuple(ord(c) - 33 for c in str(segment.get_tag("OQ")))
    elif segment.query_qualities is not None:
        qualities = tuple(int(q) for q in segment.query_qualities)
    else:
        qualities = (0,) * len(segment.query_sequence)

    if segment.is_read1:
        read_number = 1
    elif segment.is_read2:
        read_number = 2
    else:
        read_number = 0

    return AlignedRead(
        fragment_name=str(segment.query_name),
        read_number=read_number,
        contig=str(segment.reference_name),
        start=int(segment.reference_start),
        cigar=tuple((int(op), int(n)) for op, n in segment.cigartuples),
        sequence=segment.query_sequence.upper(),
        qualities=qualities,
        mapping_quality=int(segment.mapping_quality),
        is_reverse=bool(segment.is_reverse),
        flag=int(segment.flag),
    )


def satisfies_requirements(read: AlignedRead, req: ReadRequirements) -> bool:
    flag = read.flag
    if flag & _FLAG_UNMAPPED and not req.keep_unaligned:
        return False
    if flag & _FLAG_SECONDARY and not req.keep_secondary_alignments:
        return False
    if flag & _FLAG_SUPPLEMENTARY and not req.keep_supplementary_alignments:
        return False
    if flag & _FLAG_DUPLICATE and not req.keep_duplicates:
        return False
    if flag & _FLAG_QCFAIL and not req.keep_failed_vendor_quality_checks:
        return False
    return read.mapping_quality >= req.min_mapping_quality


def keep_read(read: AlignedRead, *, fraction: float, seed: int, role: SampleRole) -> bool:
    """Bernoulli(fraction) draw keyed off the seed and the read identity.

    A fraction of 0.0 (the default) or 1.0 keeps every read.
    """
    if fraction <= 0.0 or fraction >= 1.0:
        return True
    return seeded_unit_hash(seed, "downsample", role.value, read.fragment_name, read.read_number) < fraction


def downsample_reads(
    reads: Sequence[AlignedRead], *, fraction: float, seed: int, role: SampleRole
) -> List[AlignedRead]:
    return [r for r in reads if keep_read(r, fraction=fraction, seed=seed, role=role)]


def cap_reads(
    reads: Sequence[AlignedRead], *, cap: int, seed: int, role: SampleRole
) -> List[AlignedRead]:
    """Keep at most ``cap`` reads, chosen by seeded hash; input order is preserved.

    ``cap == 0`` disables the limit.
    """
    if cap <= 0 or len(reads) <= cap:
        return list(reads)
    ranked = sorted(
        range(len(reads)),
        key=lambda i: (
            seeded_unit_hash(seed, "cap", role.value, reads[i].fragment_name, reads[i].read_number),
            reads[i].key,
            reads[i].start,
        ),
    )
    keep = sorted(ranked[:cap])
    return [reads[i] for i in keep]


class ReadSource:
    """An indexed BAM/CRAM file holding the reads of one trio member."""

    def __init__(
        self,
        path: str | Path,
        *,
        reference_filename: Optional[str] = None,
        use_original_quality_scores: bool = False,
    ) -> None:
        self.path = str(path)
        self.use_original_quality_scores = use_original_quality_scores
        try:
            self._bam = pysam.AlignmentFile(self.path, reference_filename=reference_filename)
        except (OSError, ValueError) as e:
            raise ConfigurationError(f"Cannot open alignment file {self.path}: {e}") from e

    @property
    def contigs(self) -> List[str]:
        return list(self._bam.references)

    def query(self, region: Range) -> List[AlignedRead]:
        out: List[AlignedRead] = []
        if region.contig not in self._bam.references:
            return out
        for segment in self._bam.fetch(region.contig, region.start, region.end):
            read = aligned_read_from_pysam(
                segment, use_original_quality_scores=self.use_original_quality_scores
            )
            if read is not None:
                out.append(read)
        return out

    def close(self) -> None:
        self._bam.close()

    def __enter__(self) -> "ReadSource":
        return self

    def __exit__(self, *args) -> None:
        self.close()


def fetch_sample_reads(
    source,
    region: Range,
    *,
    role: SampleRole,
    requirements: ReadRequirements,
    downsample_fraction: float,
    seed: int,
) -> Tuple[List[AlignedRead], Dict[str, int]]:
    """Fetch reads overlapping ``region``, apply read requirements, then downsampling.

    ``source`` is anything with a ``query(Range) -> list[AlignedRead]`` method.
    """
    fetched = source.query(region)
    passing = [r for r in fetched if satisfies_requirements(r, requirements)]
    kept = downsample_reads(passing, fraction=downsample_fraction, seed=seed, role=role)
    stats = {
        "reads_fetched": len(fetched),
        "reads_failed_requirements": len(fetched) - len(passing),
        "reads_downsampled_out": len(passing) - len(kept),
    }
    return kept, stats
