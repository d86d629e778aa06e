from __future__ import annotations

import enum
from dataclasses import dataclass, field
from functools import cached_property
from typing import Dict, Mapping, Optional, Tuple

import numpy as np

from .options import STACK_ORDER, LabelerAlgorithm, SampleRole

# CIGAR operations that consume reference bases (M, D, N, =, X).
_REF_CONSUMING = frozenset((0, 2, 3, 7, 8))


@dataclass(frozen=True)
class AlignedRead:
    """A read alignment as seen by the pipeline.

    Coordinates are 0-based half-open. ``cigar`` uses pysam operation codes.
    Instances are built from pysam records in :mod:`triopileup.reads` and are
    never mutated; the realigner returns new instances.
    """

    fragment_name: str
    read_number: int
    contig: str
    start: int
    cigar: Tuple[Tuple[int, int], ...]
    sequence: str
    qualities: Tuple[int, ...]
    mapping_quality: int
    is_reverse: bool = False
    flag: int = 0

    @cached_property
    def end(self) -> int:
        return self.start + sum(length for op, length in self.cigar if op in _REF_CONSUMING)

    @property
    def key(self) -> Tuple[str, int]:
        return (self.fragment_name, self.read_number)

    def overlaps(self, contig: str, start: int, end: int) -> bool:
        return self.contig == contig and self.start < end and start < self.end


class AlleleType(enum.Enum):
    REFERENCE = 0
    SUBSTITUTION = 1
    INSERTION = 2
    DELETION = 3


@dataclass(frozen=True)
class Allele:
    """One read's observation at a position.

    Insertions and deletions are anchored at the preceding reference base and
    include it: an insertion of ``TT`` after ``A`` is ``Allele(INSERTION, "ATT")``,
    a deletion of ``CG`` after ``A`` is ``Allele(DELETION, "ACG")``.
    """

    type: AlleleType
    bases: str

    @property
    def sort_key(self) -> Tuple[int, str]:
        return (self.type.value, self.bases)


@dataclass
class AlleleSupport:
    count: int = 0
    forward_count: int = 0
    quality_sum: int = 0

    def add(self, *, is_reverse: bool, quality: int) -> None:
        self.count += 1
        if not is_reverse:
            self.forward_count += 1
        self.quality_sum += quality


@dataclass
class AlleleCount:
    """Per-position, per-sample allele tabulation for one partition."""

    position: int
    ref_base: str
    ref_support: AlleleSupport = field(default_factory=AlleleSupport)
    alleles: Dict[Allele, AlleleSupport] = field(default_factory=dict)

    @property
    def depth(self) -> int:
        return self.ref_support.count + sum(s.count for s in self.alleles.values())

    def support(self, allele: Allele) -> int:
        s = self.alleles.get(allele)
        return s.count if s is not None else 0


@dataclass(frozen=True)
class SampleSummary:
    """Allele-count summary of one trio member at a candidate site."""

    depth: int
    ref_support: int
    alt_support: Tuple[int, ...]
    called: bool


@dataclass(frozen=True)
class CandidateVariant:
    """A candidate site proposed by at least one trio member.

    ``alts`` are normalised onto ``ref``; ``raw_alleles`` holds the read-level
    allele each alt was derived from (same order). ``samples`` only contains
    roles that have a read source.
    """

    contig: str
    start: int
    ref: str
    alts: Tuple[str, ...]
    raw_alleles: Tuple[Allele, ...]
    samples: Mapping[SampleRole, SampleSummary]

    @property
    def end(self) -> int:
        return self.start + len(self.ref)

    @property
    def is_snp(self) -> bool:
        return len(self.ref) == 1 and all(len(a) == 1 for a in self.alts)

    @property
    def is_indel(self) -> bool:
        return any(len(a) != len(self.ref) for a in self.alts)

    @property
    def is_multiallelic(self) -> bool:
        return len(self.alts) > 1

    @property
    def site_id(self) -> str:
        return f"{self.contig}:{self.start + 1}:{self.ref}>{','.join(self.alts)}"

    def called_by(self) -> Tuple[SampleRole, ...]:
        return tuple(role for role, s in self.samples.items() if s.called)


@dataclass(frozen=True, eq=False)
class PileupImage:
    role: SampleRole
    array: np.ndarray

    @property
    def shape(self) -> Tuple[int, ...]:
        return tuple(self.array.shape)


@dataclass(frozen=True)
class TruthVariant:
    contig: str
    start: int
    ref: str
    alts: Tuple[str, ...]
    genotype: Tuple[int, ...]
    record_id: str
    info: Mapping[str, object] = field(default_factory=dict)

    @property
    def end(self) -> int:
        return self.start + len(self.ref)

    @property
    def is_variant(self) -> bool:
        return any(g > 0 for g in self.genotype)


@dataclass(frozen=True)
class Label:
    """Training label of a candidate.

    ``label_class`` is the number of alternate alleles in the matched genotype
    for the genotype-based labelers, or the configured class index for the
    customized-classes labeler.
    """

    label_class: int
    algorithm: LabelerAlgorithm
    genotype: Optional[Tuple[int, int]] = None
    truth_id: Optional[str] = None


@dataclass(frozen=True, eq=False)
class Example:
    candidate: CandidateVariant
    images: Mapping[SampleRole, PileupImage]
    label: Optional[Label] = None

    def stacked(self) -> np.ndarray:
        """Concatenate parent1 / child / parent2 images along the height axis."""
        return np.concatenate([self.images[role].array for role in STACK_ORDER], axis=0)
