"""Local realignment of reads around indels.

Aligners place an indel inside a repeat at an arbitrary offset, so reads that
carry the same event can disagree on where it is. The realigner moves every
indel to its leftmost equivalent position, which gives one representation per
event and lets the allele counter pool their support.

Indels whose surrounding reference (indel +/- ``window_padding``) contains
non-ACGT bases are left untouched; the rest of the read is still realigned.
"""

from __future__ import annotations

import dataclasses
import logging
from typing import Dict, Iterable, List, Tuple

from .errors import PartitionError
from .models import AlignedRead
from .options import RealignerOptions
from .reference import ReferenceWindow

logger = logging.getLogger(__name__)

_CANONICAL = frozenset("ACGT")
_SUPPORTED_OPS = frozenset((0, 1, 2, 4, 5, 7, 8))
_M, _I, _D = 0, 1, 2


def _normalize_cigar(cigar: Iterable[Tuple[int, int]]) -> List[List[int]]:
    """Fold =/X into M and merge adjacent operations of the same kind."""
    out: List[List[int]] = []
    for op, length in cigar:
        if op in (7, 8):
            op = _M
        if length == 0:
            continue
        if out and out[-1][0] == op:
            out[-1][1] += length
        else:
            out.append([op, length])
    return out


def _window_is_canonical(ref: ReferenceWindow, start: int, end: int) -> bool:
    return all(ref.base(p) in _CANONICAL for p in range(start, end))


def left_align_read(
    read: AlignedRead, ref: ReferenceWindow, *, padding: int = 16
) -> Tuple[AlignedRead, Dict[str, int]]:
    """Shift each indel of ``read`` to its leftmost equivalent position.

    The read keeps at least one aligned base before every indel, so its start
    never changes. Returns the (possibly unchanged) read and counters.
    Raises PartitionError when the CIGAR does not describe the read sequence.
    """
    stats = {"indels_shifted": 0, "indels_skipped": 0}
    if any(op not in _SUPPORTED_OPS for op, _ in read.cigar):
        return read, stats

    query_length = sum(length for op, length in read.cigar if op in (0, 1, 4, 7, 8))
    if query_length != len(read.sequence):
        raise PartitionError(
            f"Read {read.fragment_name}: CIGAR covers {query_length} bases, sequence has {len(read.sequence)}"
        )

    ops = _normalize_cigar(read.cigar)
    seq = read.sequence
    ref_pos = read.start
    query_pos = 0
    i = 0
    while i < len(ops):
        op, length = ops[i]
        if op in (_I, _D) and i > 0 and ops[i - 1][0] == _M:
            span = length if op == _D else 0
            if not _window_is_canonical(ref, ref_pos - padding, ref_pos + span + padding):
                stats["indels_skipped"] += 1
            else:
                shift = 0
                while ops[i - 1][1] - shift > 1:
                    if op == _D:
                        left, right = ref.base(ref_pos - shift - 1), ref.base(ref_pos - shift + length - 1)
                    else:
                        left = seq[query_pos - shift - 1]
                        right = seq[query_pos - shift + length - 1]
                    if left != right:
                        break
                    shift += 1
                if shift:
                    stats["indels_shifted"] += 1
                    ops[i - 1][1] -= shift
                    if i + 1 < len(ops) and ops[i + 1][0] == _M:
                        ops[i + 1][1] += shift
                    else:
                        ops.insert(i + 1, [_M, shift])
                    ref_pos -= shift
                    query_pos -= shift
        if op in (_M, _D):
            ref_pos += length
        if op in (_M, _I, 4):
            query_pos += length
        i += 1

    if stats["indels_shifted"] == 0:
        return read, stats
    new_cigar = tuple((op, length) for op, length in ops)
    return dataclasses.replace(read, cigar=new_cigar), stats


class Realigner:
    def __init__(self, options: RealignerOptions) -> None:
        self.options = options

    def realign(
        self, reads: Iterable[AlignedRead], ref: ReferenceWindow
    ) -> Tuple[List[AlignedRead], Dict[str, int]]:
        """Return reads in the same order, with indels left-aligned where possible."""
        out: List[AlignedRead] = []
        totals = {"reads_realigned": 0, "indels_shifted": 0, "indels_skipped": 0}
        for read in reads:
            if not any(op in (_I, _D) for op, _ in read.cigar):
                out.append(read)
                continue
            new_read, stats = left_align_read(read, ref, padding=self.options.window_padding)
            if new_read is not read:
                totals["reads_realigned"] += 1
            totals["indels_shifted"] += stats["indels_shifted"]
            totals["indels_skipped"] += stats["indels_skipped"]
            out.append(new_read)
        if totals["indels_skipped"]:
            logger.debug(
                "%d indels left unrealigned (non-ACGT reference around them)", totals["indels_skipped"]
            )
        return out, totals
