import pytest

from conftest import build_read
from triopileup.errors import PartitionError
from triopileup.options import RealignerOptions
from triopileup.realigner import Realigner, left_align_read
from triopileup.reference import ReferenceWindow

# A homopolymer run of six A at positions 8-13.
SEQ = "TGCATGCC" + "AAAAAA" + "GTCGATCGGATCCTAGG"
REF = ReferenceWindow("chr1", 0, SEQ)


def test_deletion_moves_to_start_of_repeat():
    read = build_read("d", 0, SEQ[0:13] + SEQ[14:24], cigar=[(0, 13), (2, 1), (0, 10)])
    new, stats = left_align_read(read, REF, padding=2)
    assert new.cigar == ((0, 8), (2, 1), (0, 15))
    assert new.start == read.start
    assert new.end == read.end
    assert stats["indels_shifted"] == 1


def test_insertion_moves_to_start_of_repeat():
    read = build_read("i", 0, SEQ[0:14] + "A" + SEQ[14:23], cigar=[(0, 14), (1, 1), (0, 9)])
    new, _ = left_align_read(read, REF, padding=2)
    assert new.cigar == ((0, 8), (1, 1), (0, 15))


def test_already_left_aligned_read_is_returned_unchanged():
    read = build_read("d", 0, SEQ[0:8] + SEQ[9:24], cigar=[(0, 8), (2, 1), (0, 15)])
    new, stats = left_align_read(read, REF, padding=2)
    assert new is read
    assert stats["indels_shifted"] == 0


def test_non_acgt_reference_leaves_indel_in_place():
    ref = ReferenceWindow("chr1", 0, "TGCNTGCC" + SEQ[8:])
    read = build_read("d", 0, SEQ[0:13] + SEQ[14:24], cigar=[(0, 13), (2, 1), (0, 10)])
    new, stats = left_align_read(read, ref, padding=16)
    assert new is read
    assert stats["indels_skipped"] == 1


def test_realigner_keeps_read_order():
    reads = [
        build_read("plain", 0, SEQ[0:20]),
        build_read("d", 0, SEQ[0:13] + SEQ[14:24], cigar=[(0, 13), (2, 1), (0, 10)]),
    ]
    out, totals = Realigner(RealignerOptions(window_padding=2)).realign(reads, REF)
    assert [r.fragment_name for r in out] == ["plain", "d"]
    assert out[0] is reads[0]
    assert totals["reads_realigned"] == 1


def test_cigar_not_matching_sequence_raises():
    read = build_read("bad", 0, SEQ[0:13] + SEQ[14:25], cigar=[(0, 13), (2, 1), (0, 10)])
    with pytest.raises(PartitionError):
        left_align_read(read, REF, padding=2)
