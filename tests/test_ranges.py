import pytest

from triopileup.errors import ConfigurationError
from triopileup.ranges import (
    Range,
    RangeSet,
    build_calling_regions,
    check_shared_contigs,
    compute_partitions,
    parse_region,
    shard_partitions,
)

LENGTHS = {"chr1": 1000, "chr2": 500, "chrM": 100}


def test_parse_region_forms():
    assert parse_region("chr2", LENGTHS) == Range("chr2", 0, 500)
    assert parse_region("chr1:101-200", LENGTHS) == Range("chr1", 100, 200)
    assert parse_region("chr1:101-2,000", LENGTHS) == Range("chr1", 100, 1000)
    assert parse_region("chr1:50", LENGTHS) == Range("chr1", 49, 50)
    assert str(Range("chr1", 100, 200)) == "chr1:101-200"


def test_parse_region_rejects_bad_input():
    with pytest.raises(ConfigurationError):
        parse_region("chr9:1-10", LENGTHS)
    with pytest.raises(ConfigurationError):
        parse_region("chr1:abc", LENGTHS)
    with pytest.raises(ConfigurationError):
        parse_region("chr1:200-100", LENGTHS)


def test_rangeset_merges_and_orders():
    rs = RangeSet(
        [Range("chr2", 10, 20), Range("chr1", 50, 60), Range("chr1", 55, 70), Range("chr1", 0, 5)],
        contig_order=["chr1", "chr2"],
    )
    assert list(rs) == [Range("chr1", 0, 5), Range("chr1", 50, 70), Range("chr2", 10, 20)]
    assert rs.total_length() == 5 + 20 + 10
    assert rs.contains("chr1", 69)
    assert not rs.contains("chr1", 70)
    assert rs.covers("chr1", 50, 70)
    assert not rs.covers("chr1", 4, 51)
    assert rs.overlaps("chr1", 4, 51)
    assert not rs.overlaps("chr2", 0, 10)


def test_rangeset_intersection_and_subtract():
    a = RangeSet([Range("chr1", 0, 100)])
    b = RangeSet([Range("chr1", 10, 20), Range("chr1", 50, 150)])
    assert list(a.intersection(b)) == [Range("chr1", 10, 20), Range("chr1", 50, 100)]
    assert list(a.subtract(b)) == [Range("chr1", 0, 10), Range("chr1", 20, 50)]
    assert list(a.subtract(RangeSet([Range("chr1", 0, 100)]))) == []


def test_partition_splits_each_interval():
    rs = RangeSet([Range("chr1", 0, 250), Range("chr1", 300, 310)])
    parts = rs.partition(100)
    assert parts == [
        Range("chr1", 0, 100),
        Range("chr1", 100, 200),
        Range("chr1", 200, 250),
        Range("chr1", 300, 310),
    ]


def test_calling_regions_minus_exclusions(tmp_path):
    bed = tmp_path / "exclude.bed"
    bed.write_text("#header\nchr1\t100\t200\n", encoding="utf-8")
    regions = build_calling_regions(
        LENGTHS,
        calling_regions=["chr1", "chr2:1-100"],
        exclude_calling_regions=[str(bed)],
        exclude_contigs=["chrM"],
    )
    assert list(regions) == [Range("chr1", 0, 100), Range("chr1", 200, 1000), Range("chr2", 0, 100)]


def test_shards_cover_partitions_exactly_once():
    whole = compute_partitions(LENGTHS, partition_size=64)
    seen = []
    for task in range(3):
        seen.extend(compute_partitions(LENGTHS, partition_size=64, task_id=task, num_shards=3))
    assert sorted(seen, key=lambda r: (r.contig, r.start)) == sorted(
        whole, key=lambda r: (r.contig, r.start)
    )
    assert len(seen) == len(set(seen))


def test_excluding_every_contig_yields_no_partitions():
    parts = compute_partitions(LENGTHS, partition_size=100, exclude_contigs=list(LENGTHS))
    assert parts == []


def test_shard_validation():
    with pytest.raises(ConfigurationError):
        shard_partitions([], task_id=3, num_shards=3)
    with pytest.raises(ConfigurationError):
        shard_partitions([], task_id=1, num_shards=0)


def test_check_shared_contigs():
    shared = check_shared_contigs(LENGTHS, [["chr1", "chr2", "chrM"], ["chr1", "chr2"]], min_fraction=0.9)
    assert shared == {"chr1": 1000, "chr2": 500}

    with pytest.raises(ConfigurationError, match="naming"):
        check_shared_contigs(LENGTHS, [["1", "2", "MT"]], min_fraction=0.9)

    # excluded contigs do not count against the shared fraction
    shared = check_shared_contigs(
        LENGTHS, [["chr2"]], min_fraction=0.9, exclude_contigs=["chr1", "chrM"]
    )
    assert shared == {"chr2": 500}
