"""Pileup image encoding.

Every candidate gets one ``uint8`` tensor per trio member, of shape
``(height, width, 6)``. The candidate position sits in the middle column; the
first ``reference_band_height`` rows repeat the reference, the remaining rows
hold one read each.

Channels:

0. base (A=250, G=180, T=100, C=30, anything else 0)
1. base quality, scaled to the cap
2. mapping quality, scaled to the cap
3. strand (forward 70, reverse 240)
4. read supports one of the candidate's alternate alleles (254) or not (152)
5. base differs from the reference (254) or not (0)
"""

from __future__ import annotations

import logging
from typing import Dict, List, Mapping, Optional, Sequence

import numpy as np

from .allele_counter import read_alleles
from .models import AlignedRead, AlleleType, CandidateVariant, PileupImage
from .options import PileupImageOptions, SampleRole
from .reference import ReferenceWindow
from .utils import seeded_unit_hash

logger = logging.getLogger(__name__)

N_CHANNELS = 6
BASE_COLORS = {"A": 250, "G": 180, "T": 100, "C": 30}
FORWARD_STRAND = 70
REVERSE_STRAND = 240
SUPPORTS_ALT = 254
NOT_SUPPORTS_ALT = 152
DIFFERS = 254
MAX_VALUE = 254


def _scale(value: int, cap: int) -> int:
    if cap <= 0:
        return 0
    return int(MAX_VALUE * min(max(value, 0), cap) / cap)


def select_rows(
    reads: Sequence[AlignedRead], n_rows: int, *, seed: int, role: SampleRole
) -> List[AlignedRead]:
    """Pick the reads shown in an image and put them in row order.

    When more reads are available than rows, the ones with the smallest
    seeded hash are kept. Rows are ordered by (start, fragment name, read
    number) so images do not depend on fetch order.
    """
    chosen = list(reads)
    if len(chosen) > n_rows:
        chosen.sort(
            key=lambda r: (seeded_unit_hash(seed, "pileup", role.value, r.fragment_name, r.read_number), r.key)
        )
        chosen = chosen[:n_rows]
    chosen.sort(key=lambda r: (r.start, r.fragment_name, r.read_number))
    return chosen


class PileupImageEncoder:
    def __init__(self, options: PileupImageOptions, *, seed: int = 0) -> None:
        self.options = options
        self.seed = seed

    @property
    def half_width(self) -> int:
        return self.options.width // 2

    def _window_start(self, candidate: CandidateVariant) -> int:
        return candidate.start - self.half_width

    def _reference_row(self, candidate: CandidateVariant, ref: ReferenceWindow) -> np.ndarray:
        row = np.zeros((self.options.width, N_CHANNELS), dtype=np.uint8)
        first = self._window_start(candidate)
        for col in range(self.options.width):
            base = ref.base(first + col)
            row[col, 0] = BASE_COLORS.get(base, 0)
            row[col, 1] = MAX_VALUE
            row[col, 2] = MAX_VALUE
            row[col, 3] = FORWARD_STRAND
            row[col, 4] = NOT_SUPPORTS_ALT
        return row

    def _supports_alt(self, read: AlignedRead, candidate: CandidateVariant, ref: ReferenceWindow) -> bool:
        observed = read_alleles(read, ref, start=candidate.start, end=candidate.start + 1)
        obs = observed.get(candidate.start)
        if obs is None:
            return False
        allele = obs[0]
        return allele.type is not AlleleType.REFERENCE and allele in candidate.raw_alleles

    def _read_row(self, read: AlignedRead, candidate: CandidateVariant, ref: ReferenceWindow) -> np.ndarray:
        width = self.options.width
        row = np.zeros((width, N_CHANNELS), dtype=np.uint8)
        first = self._window_start(candidate)
        mq = _scale(read.mapping_quality, self.options.mapping_quality_cap)
        strand = REVERSE_STRAND if read.is_reverse else FORWARD_STRAND
        alt = SUPPORTS_ALT if self._supports_alt(read, candidate, ref) else NOT_SUPPORTS_ALT
        bq_cap = self.options.base_quality_cap
        quals = read.qualities

        def fill(col: int, base_value: int, bq: int, differs: bool) -> None:
            row[col, 0] = base_value
            row[col, 1] = _scale(bq, bq_cap)
            row[col, 2] = mq
            row[col, 3] = strand
            row[col, 4] = alt
            row[col, 5] = DIFFERS if differs else 0

        ref_pos = read.start
        query_pos = 0
        for op, length in read.cigar:
            if op in (0, 7, 8):
                for k in range(length):
                    col = ref_pos + k - first
                    if 0 <= col < width:
                        base = read.sequence[query_pos + k]
                        bq = quals[query_pos + k] if query_pos + k < len(quals) else 0
                        fill(col, BASE_COLORS.get(base, 0), bq, base != ref.base(ref_pos + k))
                ref_pos += length
                query_pos += length
            elif op == 1:
                # Flag the anchor column of an insertion.
                col = ref_pos - 1 - first
                if 0 <= col < width and row[col, 0]:
                    row[col, 5] = DIFFERS
                query_pos += length
            elif op == 2:
                bq = quals[query_pos - 1] if 0 < query_pos <= len(quals) else 0
                for k in range(length):
                    col = ref_pos + k - first
                    if 0 <= col < width:
                        fill(col, 0, bq, True)
                ref_pos += length
            elif op == 3:
                ref_pos += length
            elif op == 4:
                query_pos += length
            if ref_pos - first >= width:
                break
        return row

    def encode(
        self,
        candidate: CandidateVariant,
        role: SampleRole,
        reads: Optional[Sequence[AlignedRead]],
        ref: ReferenceWindow,
        height: int,
    ) -> PileupImage:
        """Encode one trio member's pileup at ``candidate``.

        ``reads=None`` means the member has no read source; its image carries
        only the reference band.
        """
        band = self.options.reference_band_height
        image = np.zeros((height, self.options.width, N_CHANNELS), dtype=np.uint8)
        image[:band] = self._reference_row(candidate, ref)
        if reads is not None:
            overlapping = [r for r in reads if r.overlaps(candidate.contig, candidate.start, candidate.end)]
            rows = select_rows(overlapping, height - band, seed=self.seed, role=role)
            for i, read in enumerate(rows):
                image[band + i] = self._read_row(read, candidate, ref)
        return PileupImage(role=role, array=image)

    def encode_trio(
        self,
        candidate: CandidateVariant,
        reads: Mapping[SampleRole, Optional[Sequence[AlignedRead]]],
        ref: ReferenceWindow,
        heights: Mapping[SampleRole, int],
    ) -> Dict[SampleRole, PileupImage]:
        return {
            role: self.encode(candidate, role, reads.get(role), ref, heights[role]) for role in SampleRole
        }
