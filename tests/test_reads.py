import pysam
import pytest

from conftest import REF, InMemoryReads, build_read
from triopileup.errors import PartitionError
from triopileup.options import ReadRequirements, SampleRole
from triopileup.ranges import Range
from triopileup.reads import (
    aligned_read_from_pysam,
    cap_reads,
    downsample_reads,
    fetch_sample_reads,
    satisfies_requirements,
)


def _segment(seq: str, *, oq: str = "") -> pysam.AlignedSegment:
    header = pysam.AlignmentHeader.from_dict({"SQ": [{"SN": "chr1", "LN": 1000}]})
    a = pysam.AlignedSegment(header)
    a.query_name = "frag1"
    a.query_sequence = seq
    a.flag = 0x1 | 0x40 | 0x10
    a.reference_id = 0
    a.reference_start = 100
    a.mapping_quality = 37
    a.cigartuples = [(4, 2), (0, len(seq) - 2)]
    a.query_qualities = pysam.qualitystring_to_array("I" * len(seq))
    if oq:
        a.set_tag("OQ", oq)
    return a


def test_aligned_read_from_pysam():
    read = aligned_read_from_pysam(_segment("acGTACGT"))
    assert read.fragment_name == "frag1"
    assert read.read_number == 1
    assert read.is_reverse
    assert read.sequence == "ACGTACGT"
    assert read.start == 100
    assert read.end == 106
    assert read.qualities == (40,) * 8


def test_original_quality_scores():
    read = aligned_read_from_pysam(_segment("ACGT", oq="+++5"), use_original_quality_scores=True)
    assert read.qualities == (10, 10, 10, 20)
    with pytest.raises(PartitionError):
        aligned_read_from_pysam(_segment("ACGT"), use_original_quality_scores=True)


def test_read_requirements():
    req = ReadRequirements(min_mapping_quality=20)
    assert satisfies_requirements(build_read("a", 0, "ACGT"), req)
    assert not satisfies_requirements(build_read("a", 0, "ACGT", mapq=19), req)
    assert not satisfies_requirements(build_read("a", 0, "ACGT", flag=0x400), req)
    assert not satisfies_requirements(build_read("a", 0, "ACGT", flag=0x100), req)
    assert not satisfies_requirements(build_read("a", 0, "ACGT", flag=0x800), req)
    assert not satisfies_requirements(build_read("a", 0, "ACGT", flag=0x200), req)
    assert satisfies_requirements(
        build_read("a", 0, "ACGT", flag=0x400), ReadRequirements(keep_duplicates=True)
    )


def _reads(n: int):
    return [build_read(f"r{i}", i % 50, REF[i % 50 : i % 50 + 30]) for i in range(n)]


def test_downsampling_is_seeded_and_converges():
    reads = _reads(4000)
    assert downsample_reads(reads, fraction=0.0, seed=1, role=SampleRole.CHILD) == reads

    kept = downsample_reads(reads, fraction=0.25, seed=1, role=SampleRole.CHILD)
    assert kept == downsample_reads(reads, fraction=0.25, seed=1, role=SampleRole.CHILD)
    assert 0.2 < len(kept) / len(reads) < 0.3
    assert kept != downsample_reads(reads, fraction=0.25, seed=2, role=SampleRole.CHILD)


def test_cap_reads_keeps_order_and_size():
    reads = _reads(100)
    capped = cap_reads(reads, cap=30, seed=5, role=SampleRole.PARENT1)
    assert len(capped) == 30
    positions = [reads.index(r) for r in capped]
    assert positions == sorted(positions)
    assert cap_reads(reads, cap=0, seed=5, role=SampleRole.PARENT1) == reads
    assert capped == cap_reads(list(reversed(reads)), cap=30, seed=5, role=SampleRole.PARENT1)[::-1]


def test_fetch_sample_reads_stats():
    reads = [
        build_read("ok", 10, REF[10:40]),
        build_read("dup", 10, REF[10:40], flag=0x400),
        build_read("far", 200, REF[200:230]),
    ]
    kept, stats = fetch_sample_reads(
        InMemoryReads(reads),
        Range("chr1", 0, 100),
        role=SampleRole.CHILD,
        requirements=ReadRequirements(),
        downsample_fraction=0.0,
        seed=0,
    )
    assert [r.fragment_name for r in kept] == ["ok"]
    assert stats == {"reads_fetched": 2, "reads_failed_requirements": 1, "reads_downsampled_out": 0}
