from __future__ import annotations

import bisect
import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Tuple

import pysam

from .errors import ConfigurationError
from .models import TruthVariant
from .ranges import RangeSet

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TruthIndex:
    """Per-contig truth lookup structure."""

    positions: List[int]  # sorted 0-based starts
    variants: List[TruthVariant]  # aligned with positions
    max_ref_length: int = 1

    def overlapping(self, start: int, end: int) -> List[TruthVariant]:
        """Truth variants whose reference span intersects [start, end)."""
        lo = bisect.bisect_left(self.positions, start - self.max_ref_length + 1)
        hi = bisect.bisect_left(self.positions, end)
        return [v for v in self.variants[lo:hi] if v.end > start]

    def starting_at(self, pos: int) -> List[TruthVariant]:
        lo = bisect.bisect_left(self.positions, pos)
        hi = bisect.bisect_right(self.positions, pos)
        return self.variants[lo:hi]


@dataclass
class TruthContext:
    """Truth variants and confident regions used for labeling."""

    variants: Dict[str, TruthIndex] = field(default_factory=dict)
    confident: RangeSet = field(default_factory=lambda: RangeSet([]))
    stats: Dict[str, int] = field(default_factory=dict)

    def overlapping(self, contig: str, start: int, end: int) -> List[TruthVariant]:
        index = self.variants.get(contig)
        if index is None:
            return []
        return index.overlapping(start, end)

    def is_confident(self, contig: str, start: int, end: int) -> bool:
        """True if every base of [start, end) lies in a confident region."""
        return self.confident.covers(contig, start, max(end, start + 1))


def _genotype(rec: pysam.VariantRecord, sample: str) -> Optional[Tuple[int, ...]]:
    s = rec.samples[sample]
    gt = s["GT"] if "GT" in s else None
    if gt is None or any(g is None for g in gt):
        return None
    return tuple(int(g) for g in gt)


def load_truth_variants(
    vcf_path: str,
    *,
    sample: Optional[str] = None,
    info_fields: Sequence[str] = (),
) -> Tuple[Dict[str, TruthIndex], Dict[str, int]]:
    """Load truth genotypes from a VCF.

    Parameters
    ----------
    vcf_path:
        Truth VCF (optionally bgzip+tabix indexed).
    sample:
        Sample whose genotypes are the truth. If None, uses the first sample.
    info_fields:
        INFO keys copied onto each :class:`TruthVariant` (used by the
        customized-classes labeler).

    Records that are filtered or have a missing genotype are skipped.
    """
    try:
        vcf = pysam.VariantFile(vcf_path)
    except (OSError, ValueError) as e:
        raise ConfigurationError(f"Cannot open truth VCF {vcf_path}: {e}") from e

    samples = list(vcf.header.samples)
    if not samples:
        raise ConfigurationError(f"Truth VCF {vcf_path} has no samples")
    if sample is None:
        sample = samples[0]
        logger.info("No truth sample given; using first VCF sample: %s", sample)
    if sample not in samples:
        raise ConfigurationError(f"Sample '{sample}' not found in truth VCF samples: {samples}")

    stats = {
        "records_total": 0,
        "records_kept": 0,
        "records_skipped_filter": 0,
        "records_skipped_genotype": 0,
    }
    by_contig: Dict[str, List[TruthVariant]] = {}
    for rec in vcf:
        stats["records_total"] += 1
        filt = list(rec.filter.keys())
        if filt and filt != ["PASS"]:
            stats["records_skipped_filter"] += 1
            continue
        gt = _genotype(rec, sample)
        if gt is None:
            stats["records_skipped_genotype"] += 1
            continue
        info = {k: rec.info[k] for k in info_fields if k in rec.info}
        chrom = str(rec.contig)
        rid = rec.id if rec.id is not None else f"{chrom}:{rec.pos}:{rec.ref}"
        by_contig.setdefault(chrom, []).append(
            TruthVariant(
                contig=chrom,
                start=int(rec.pos) - 1,  # VCF is 1-based
                ref=rec.ref.upper(),
                alts=tuple(a.upper() for a in (rec.alts or ())),
                genotype=gt,
                record_id=rid,
                info=info,
            )
        )
        stats["records_kept"] += 1
    vcf.close()

    index: Dict[str, TruthIndex] = {}
    for chrom, lst in by_contig.items():
        lst.sort(key=lambda v: v.start)
        index[chrom] = TruthIndex(
            positions=[v.start for v in lst],
            variants=lst,
            max_ref_length=max(len(v.ref) for v in lst),
        )
    logger.info(
        "Loaded %d truth variants (%d filtered, %d without genotype)",
        stats["records_kept"],
        stats["records_skipped_filter"],
        stats["records_skipped_genotype"],
    )
    return index, stats


def load_truth_context(
    truth_variants_filename: str,
    confident_regions_filename: str,
    *,
    sample: Optional[str] = None,
    info_fields: Sequence[str] = (),
) -> TruthContext:
    variants, stats = load_truth_variants(truth_variants_filename, sample=sample, info_fields=info_fields)
    try:
        confident = RangeSet.from_bed(confident_regions_filename)
    except OSError as e:
        raise ConfigurationError(f"Cannot read confident regions {confident_regions_filename}: {e}") from e
    logger.info("Confident regions: %d intervals, %d bp", len(confident), confident.total_length())
    return TruthContext(variants=variants, confident=confident, stats=stats)
