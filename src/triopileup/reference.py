from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Dict

import pysam

from .errors import ConfigurationError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ReferenceWindow:
    """An uppercase slice of the reference starting at ``start`` (0-based).

    Positions outside the slice read as ``N`` so callers never index past the
    window they fetched.
    """

    contig: str
    start: int
    sequence: str

    @property
    def end(self) -> int:
        return self.start + len(self.sequence)

    def base(self, pos: int) -> str:
        i = pos - self.start
        if 0 <= i < len(self.sequence):
            return self.sequence[i]
        return "N"

    def bases(self, start: int, end: int) -> str:
        return "".join(self.base(p) for p in range(start, end))


class ReferenceSource:
    """Indexed FASTA reference (``samtools faidx``)."""

    def __init__(self, path: str | Path) -> None:
        self.path = str(path)
        try:
            self._fasta = pysam.FastaFile(self.path)
        except (OSError, ValueError) as e:
            raise ConfigurationError(f"Cannot open reference FASTA {self.path}: {e}") from e
        self._lengths: Dict[str, int] = dict(zip(self._fasta.references, self._fasta.lengths))

    @property
    def contig_lengths(self) -> Dict[str, int]:
        return dict(self._lengths)

    def fetch(self, contig: str, start: int, end: int) -> str:
        length = self._lengths[contig]
        start = max(0, start)
        end = min(end, length)
        if end <= start:
            return ""
        return self._fasta.fetch(contig, start, end).upper()

    def window(self, contig: str, start: int, end: int) -> ReferenceWindow:
        start = max(0, start)
        return ReferenceWindow(contig, start, self.fetch(contig, start, end))

    def close(self) -> None:
        self._fasta.close()

    def __enter__(self) -> "ReferenceSource":
        return self

    def __exit__(self, *args) -> None:
        self.close()
