"""Genomic intervals, calling-region arithmetic and shard partitioning.

Coordinates are 0-based half-open internally; region strings given by users
(``chr1:100-200``) are 1-based inclusive, as printed by samtools.
"""

from __future__ import annotations

import bisect
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterable, Iterator, List, Mapping, Optional, Sequence, Tuple

from .errors import ConfigurationError
from .utils import open_textmaybe_gzip
from .validation import detect_contig_style

logger = logging.getLogger(__name__)

_BED_SUFFIXES = (".bed", ".bed.gz")


@dataclass(frozen=True)
class Range:
    contig: str
    start: int
    end: int

    @property
    def length(self) -> int:
        return self.end - self.start

    def __str__(self) -> str:
        return f"{self.contig}:{self.start + 1}-{self.end}"


def parse_region(spec: str, contig_lengths: Mapping[str, int]) -> Range:
    """Parse ``chr``, ``chr:pos`` or ``chr:start-end`` (1-based, inclusive)."""
    spec = spec.strip()
    if spec in contig_lengths:
        return Range(spec, 0, contig_lengths[spec])
    if ":" not in spec:
        raise ConfigurationError(f"Unknown contig in region {spec!r}")
    contig, _, coords = spec.rpartition(":")
    if contig not in contig_lengths:
        raise ConfigurationError(f"Unknown contig in region {spec!r}")
    coords = coords.replace(",", "")
    try:
        if "-" in coords:
            first, last = coords.split("-", 1)
            start, end = int(first) - 1, int(last)
        else:
            start = int(coords) - 1
            end = start + 1
    except ValueError:
        raise ConfigurationError(f"Malformed region {spec!r}") from None
    if start < 0 or end <= start:
        raise ConfigurationError(f"Malformed region {spec!r}: empty or negative interval")
    return Range(contig, start, min(end, contig_lengths[contig]))


def read_bed(path: str | Path) -> List[Range]:
    """Read BED intervals (0-based half-open); header and comment lines are skipped."""
    out: List[Range] = []
    with open_textmaybe_gzip(path, "rt") as fh:
        for lineno, line in enumerate(fh, start=1):
            if not line.strip() or line.startswith(("#", "track", "browser")):
                continue
            fields = line.rstrip("\n").split("\t")
            if len(fields) < 3:
                raise ConfigurationError(f"{path}:{lineno}: BED line has fewer than 3 columns")
            try:
                start, end = int(fields[1]), int(fields[2])
            except ValueError:
                raise ConfigurationError(f"{path}:{lineno}: non-integer BED coordinates") from None
            if end > start:
                out.append(Range(fields[0], start, end))
    return out


def _is_bed(spec: str) -> bool:
    return spec.endswith(_BED_SUFFIXES)


class RangeSet:
    """A set of disjoint, merged intervals, iterated in contig order then by start."""

    def __init__(
        self,
        ranges: Iterable[Range] = (),
        *,
        contig_order: Optional[Sequence[str]] = None,
    ) -> None:
        self._order: Dict[str, int] = {c: i for i, c in enumerate(contig_order or ())}
        by_contig: Dict[str, List[Tuple[int, int]]] = {}
        for r in ranges:
            if r.end > r.start:
                by_contig.setdefault(r.contig, []).append((r.start, r.end))
        self._starts: Dict[str, List[int]] = {}
        self._intervals: Dict[str, List[Tuple[int, int]]] = {}
        for contig, intervals in by_contig.items():
            merged = _merge(intervals)
            self._intervals[contig] = merged
            self._starts[contig] = [s for s, _ in merged]

    @classmethod
    def from_contigs(cls, contig_lengths: Mapping[str, int]) -> "RangeSet":
        return cls(
            (Range(c, 0, n) for c, n in contig_lengths.items()),
            contig_order=list(contig_lengths),
        )

    @classmethod
    def from_bed(cls, path: str | Path, *, contig_order: Optional[Sequence[str]] = None) -> "RangeSet":
        return cls(read_bed(path), contig_order=contig_order)

    def _contig_key(self, contig: str) -> Tuple[int, str]:
        return (self._order.get(contig, len(self._order)), contig)

    @property
    def contigs(self) -> List[str]:
        return sorted(self._intervals, key=self._contig_key)

    def __iter__(self) -> Iterator[Range]:
        for contig in self.contigs:
            for start, end in self._intervals[contig]:
                yield Range(contig, start, end)

    def __len__(self) -> int:
        return sum(len(v) for v in self._intervals.values())

    def __bool__(self) -> bool:
        return bool(self._intervals)

    def total_length(self) -> int:
        return sum(e - s for v in self._intervals.values() for s, e in v)

    def _with(self, ranges: Iterable[Range]) -> "RangeSet":
        return RangeSet(ranges, contig_order=sorted(self._order, key=self._order.__getitem__))

    def contains(self, contig: str, pos: int) -> bool:
        starts = self._starts.get(contig)
        if not starts:
            return False
        i = bisect.bisect_right(starts, pos) - 1
        return i >= 0 and pos < self._intervals[contig][i][1]

    def covers(self, contig: str, start: int, end: int) -> bool:
        """True if [start, end) lies entirely inside one interval."""
        starts = self._starts.get(contig)
        if not starts:
            return False
        i = bisect.bisect_right(starts, start) - 1
        return i >= 0 and end <= self._intervals[contig][i][1]

    def overlaps(self, contig: str, start: int, end: int) -> bool:
        starts = self._starts.get(contig)
        if not starts:
            return False
        i = bisect.bisect_left(starts, end)
        return i > 0 and self._intervals[contig][i - 1][1] > start

    def intersection(self, other: "RangeSet") -> "RangeSet":
        out: List[Range] = []
        for contig, mine in self._intervals.items():
            theirs = other._intervals.get(contig, [])
            i = j = 0
            while i < len(mine) and j < len(theirs):
                lo = max(mine[i][0], theirs[j][0])
                hi = min(mine[i][1], theirs[j][1])
                if lo < hi:
                    out.append(Range(contig, lo, hi))
                if mine[i][1] < theirs[j][1]:
                    i += 1
                else:
                    j += 1
        return self._with(out)

    def subtract(self, other: "RangeSet") -> "RangeSet":
        out: List[Range] = []
        for contig, mine in self._intervals.items():
            holes = other._intervals.get(contig, [])
            for start, end in mine:
                cursor = start
                k = max(0, bisect.bisect_right(other._starts.get(contig, []), start) - 1)
                while k < len(holes) and holes[k][0] < end:
                    h_start, h_end = holes[k]
                    if h_end > cursor:
                        if h_start > cursor:
                            out.append(Range(contig, cursor, h_start))
                        cursor = max(cursor, h_end)
                    k += 1
                if cursor < end:
                    out.append(Range(contig, cursor, end))
        return self._with(out)

    def without_contigs(self, contigs: Iterable[str]) -> "RangeSet":
        drop = set(contigs)
        return self._with(r for r in self if r.contig not in drop)

    def partition(self, max_size: int) -> List[Range]:
        """Split every interval into consecutive chunks of at most ``max_size`` bp."""
        if max_size <= 0:
            raise ValueError("max_size must be > 0")
        out: List[Range] = []
        for r in self:
            for start in range(r.start, r.end, max_size):
                out.append(Range(r.contig, start, min(start + max_size, r.end)))
        return out


def _merge(intervals: List[Tuple[int, int]]) -> List[Tuple[int, int]]:
    merged: List[Tuple[int, int]] = []
    for start, end in sorted(intervals):
        if merged and start <= merged[-1][1]:
            if end > merged[-1][1]:
                merged[-1] = (merged[-1][0], end)
        else:
            merged.append((start, end))
    return merged


def regions_from_specs(specs: Sequence[str], contig_lengths: Mapping[str, int]) -> RangeSet:
    """Build a RangeSet from a mix of region literals and BED file paths."""
    ranges: List[Range] = []
    for spec in specs:
        if _is_bed(spec):
            ranges.extend(read_bed(spec))
        else:
            ranges.append(parse_region(spec, contig_lengths))
    return RangeSet(ranges, contig_order=list(contig_lengths))


def build_calling_regions(
    contig_lengths: Mapping[str, int],
    *,
    calling_regions: Sequence[str] = (),
    exclude_calling_regions: Sequence[str] = (),
    exclude_contigs: Sequence[str] = (),
) -> RangeSet:
    """Filtered whole: calling regions (default: whole reference) minus exclusions."""
    genome = RangeSet.from_contigs(contig_lengths)
    regions = genome
    if calling_regions:
        regions = regions_from_specs(calling_regions, contig_lengths).intersection(genome)
    if exclude_calling_regions:
        regions = regions.subtract(regions_from_specs(exclude_calling_regions, contig_lengths))
    if exclude_contigs:
        regions = regions.without_contigs(exclude_contigs)
    logger.info(
        "Calling regions: %d intervals covering %d bp on %d contigs",
        len(regions),
        regions.total_length(),
        len(regions.contigs),
    )
    return regions


def shard_partitions(partitions: Sequence[Range], task_id: int, num_shards: int) -> List[Range]:
    """Round-robin assignment of partitions to tasks; ``num_shards == 0`` keeps all."""
    if num_shards == 0:
        if task_id != 0:
            raise ConfigurationError(f"task_id={task_id} given for an unsharded run")
        return list(partitions)
    if not 0 <= task_id < num_shards:
        raise ConfigurationError(f"task_id={task_id} must be in [0, {num_shards})")
    return [p for i, p in enumerate(partitions) if i % num_shards == task_id]


def compute_partitions(
    contig_lengths: Mapping[str, int],
    *,
    partition_size: int,
    task_id: int = 0,
    num_shards: int = 0,
    calling_regions: Sequence[str] = (),
    exclude_calling_regions: Sequence[str] = (),
    exclude_contigs: Sequence[str] = (),
) -> List[Range]:
    """Ordered partitions of the filtered calling regions assigned to this task."""
    regions = build_calling_regions(
        contig_lengths,
        calling_regions=calling_regions,
        exclude_calling_regions=exclude_calling_regions,
        exclude_contigs=exclude_contigs,
    )
    partitions = shard_partitions(regions.partition(partition_size), task_id, num_shards)
    logger.info("Task %d/%d: %d partitions", task_id, max(num_shards, 1), len(partitions))
    return partitions


def check_shared_contigs(
    reference_contigs: Mapping[str, int],
    reads_contigs: Sequence[Sequence[str]],
    *,
    min_fraction: float,
    exclude_contigs: Sequence[str] = (),
) -> Dict[str, int]:
    """Return the contigs shared by the reference and every read source.

    Raises ConfigurationError when the shared contigs cover less than
    ``min_fraction`` of the (non-excluded) reference base pairs, which usually
    means the inputs were aligned against a different genome build.
    """
    excluded = set(exclude_contigs)
    considered = {c: n for c, n in reference_contigs.items() if c not in excluded}
    shared = dict(considered)
    for names in reads_contigs:
        present = set(names)
        shared = {c: n for c, n in shared.items() if c in present}

    total = sum(considered.values())
    if not total:
        logger.warning("Every reference contig is excluded; nothing to process")
        return {}
    covered = sum(shared.values())
    fraction = covered / total
    logger.info(
        "%d of %d reference contigs shared with the reads (%.1f%% of basepairs)",
        len(shared),
        len(considered),
        100.0 * fraction,
    )
    if fraction < min_fraction:
        styles = {detect_contig_style(considered)} | {detect_contig_style(names) for names in reads_contigs}
        hint = " Contig naming differs (chr1 vs 1)." if len(styles - {"unknown"}) > 1 else ""
        raise ConfigurationError(
            f"Reads and reference share only {100.0 * fraction:.1f}% of reference basepairs "
            f"(minimum {100.0 * min_fraction:.1f}%). The inputs look like they come from "
            f"incompatible genome builds.{hint} "
            f"Reference contigs: {sorted(considered)[:10]}"
        )
    return shared
