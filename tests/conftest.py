import random
from typing import Iterable, List, Optional, Sequence, Tuple

import pytest

from triopileup.models import AlignedRead
from triopileup.ranges import Range
from triopileup.reference import ReferenceWindow

CONTIG = "chr1"


def _reference(length: int = 300, seed: int = 3) -> str:
    rng = random.Random(seed)
    return "".join(rng.choice("ACGT") for _ in range(length))


REF = _reference()


class InMemoryReference:
    """Stands in for ReferenceSource over a single sequence."""

    def __init__(self, sequence: str = REF, contig: str = CONTIG) -> None:
        self.contig = contig
        self.sequence = sequence

    @property
    def contig_lengths(self):
        return {self.contig: len(self.sequence)}

    def window(self, contig: str, start: int, end: int) -> ReferenceWindow:
        if contig != self.contig:
            raise KeyError(contig)
        start = max(0, start)
        end = min(end, len(self.sequence))
        return ReferenceWindow(contig, start, self.sequence[start:end])


class InMemoryReads:
    """Stands in for ReadSource over a list of AlignedRead."""

    def __init__(self, reads: Iterable[AlignedRead]) -> None:
        self.reads = list(reads)

    @property
    def contigs(self) -> List[str]:
        return sorted({r.contig for r in self.reads})

    def query(self, region: Range) -> List[AlignedRead]:
        return [r for r in self.reads if r.overlaps(region.contig, region.start, region.end)]


def build_read(
    name: str,
    start: int,
    seq: str,
    *,
    cigar: Optional[Sequence[Tuple[int, int]]] = None,
    contig: str = CONTIG,
    mapq: int = 60,
    qual: int = 40,
    is_reverse: bool = False,
    flag: int = 0,
    read_number: int = 0,
) -> AlignedRead:
    return AlignedRead(
        fragment_name=name,
        read_number=read_number,
        contig=contig,
        start=start,
        cigar=tuple(cigar) if cigar is not None else ((0, len(seq)),),
        sequence=seq,
        qualities=(qual,) * len(seq),
        mapping_quality=mapq,
        is_reverse=is_reverse,
        flag=flag | (0x10 if is_reverse else 0),
    )


def with_snp(start: int, length: int, pos: int, alt: str, ref: str = REF) -> str:
    seq = list(ref[start : start + length])
    seq[pos - start] = alt
    return "".join(seq)


def other_base(base: str) -> str:
    return "C" if base != "C" else "G"


@pytest.fixture
def ref_window() -> ReferenceWindow:
    return ReferenceWindow(CONTIG, 0, REF)


@pytest.fixture
def reference() -> InMemoryReference:
    return InMemoryReference()
