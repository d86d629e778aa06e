"""Output sinks: example chunks and the candidate VCF.

Examples are buffered and flushed as compressed ``.npz`` chunks named
``<base>-<task:05d>-of-<shards:05d>.<chunk:05d>.npz``. Each chunk holds
``child``, ``parent1`` and ``parent2`` image stacks, ``label`` (-1 when
unlabeled), ``genotype`` (``(n, 2)``, -1 when unknown) and ``metadata``, a
JSON list with one record per example.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Dict, Iterable, Iterator, List, Mapping, Optional, Sequence

import numpy as np
import pysam

from .errors import SinkError
from .models import CandidateVariant, Example
from .options import STACK_ORDER, SampleRole

logger = logging.getLogger(__name__)

DEFAULT_CHUNK_SIZE = 256


def examples_base(examples_filename: str) -> str:
    """Strip the ``.npz`` suffix and any ``@N`` shard marker from a path."""
    base = examples_filename
    for suffix in (".npz", ".tfrecord.gz", ".tfrecord"):
        if base.endswith(suffix):
            base = base[: -len(suffix)]
            break
    if "@" in Path(base).name:
        base = base[: base.rindex("@")]
    return base


def chunk_path(base: str, task_id: int, num_shards: int, chunk: int) -> Path:
    return Path(f"{base}-{task_id:05d}-of-{max(num_shards, 1):05d}.{chunk:05d}.npz")


def example_metadata(example: Example) -> Dict[str, Any]:
    c = example.candidate
    meta: Dict[str, Any] = {
        "site_id": c.site_id,
        "contig": c.contig,
        "start": c.start,
        "ref": c.ref,
        "alts": list(c.alts),
        "called_by": [r.value for r in c.called_by()],
        "samples": {
            role.value: {
                "depth": s.depth,
                "ref_support": s.ref_support,
                "alt_support": list(s.alt_support),
                "called": s.called,
            }
            for role, s in c.samples.items()
        },
    }
    if example.label is not None:
        meta["label"] = {
            "class": example.label.label_class,
            "algorithm": example.label.algorithm.name,
            "truth_id": example.label.truth_id,
        }
    return meta


class ExampleWriter:
    """Buffer examples for one task and write them as numbered chunks."""

    def __init__(
        self,
        examples_filename: str,
        *,
        task_id: int = 0,
        num_shards: int = 0,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
    ) -> None:
        self.base = examples_base(examples_filename)
        self.task_id = task_id
        self.num_shards = num_shards
        self.chunk_size = max(1, chunk_size)
        self.paths: List[Path] = []
        self.n_written = 0
        self._buffer: List[Example] = []
        try:
            Path(self.base).parent.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise SinkError(f"Cannot create output directory for {self.base}: {e}", path=self.base) from e

    def write(self, example: Example) -> None:
        self._buffer.append(example)
        if len(self._buffer) >= self.chunk_size:
            self.flush()

    def write_all(self, examples: Iterable[Example]) -> None:
        for example in examples:
            self.write(example)

    def flush(self) -> None:
        if not self._buffer:
            return
        path = chunk_path(self.base, self.task_id, self.num_shards, len(self.paths))
        batch = self._buffer
        arrays: Dict[str, np.ndarray] = {
            role.value: np.stack([e.images[role].array for e in batch]) for role in STACK_ORDER
        }
        arrays["label"] = np.array(
            [e.label.label_class if e.label is not None else -1 for e in batch], dtype=np.int64
        )
        arrays["genotype"] = np.array(
            [
                list(e.label.genotype) if e.label is not None and e.label.genotype is not None else [-1, -1]
                for e in batch
            ],
            dtype=np.int64,
        ).reshape(len(batch), 2)
        arrays["metadata"] = np.array(json.dumps([example_metadata(e) for e in batch]))
        try:
            np.savez_compressed(path, **arrays)
        except OSError as e:
            raise SinkError(f"Failed to write examples to {path}: {e}", path=path) from e
        logger.debug("Wrote %d examples to %s", len(batch), path)
        self.paths.append(path)
        self.n_written += len(batch)
        self._buffer = []

    def close(self) -> None:
        self.flush()
        logger.info("Wrote %d examples in %d chunk(s) under %s", self.n_written, len(self.paths), self.base)

    def __enter__(self) -> "ExampleWriter":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        if exc_type is None:
            self.close()


def find_example_chunks(examples_filename: str) -> List[Path]:
    """All chunks written for ``examples_filename`` by any task, in name order."""
    base = Path(examples_base(examples_filename))
    return sorted(base.parent.glob(f"{base.name}-*-of-*.*.npz"))


def read_examples(paths: Iterable[str | Path]) -> Iterator[Dict[str, Any]]:
    """Yield examples from chunk files as dicts of arrays and metadata."""
    for path in paths:
        with np.load(path) as data:
            metadata = json.loads(str(data["metadata"]))
            labels = data["label"]
            genotypes = data["genotype"]
            images = {role.value: data[role.value] for role in STACK_ORDER}
            for i, meta in enumerate(metadata):
                label = int(labels[i])
                gt = tuple(int(g) for g in genotypes[i])
                yield {
                    **{k: v[i] for k, v in images.items()},
                    "label": None if label < 0 else label,
                    "genotype": None if gt == (-1, -1) else gt,
                    "metadata": meta,
                }


class CandidateVcfWriter:
    """Write candidates as a VCF with per-sample DP and AD (CALLING mode)."""

    def __init__(
        self,
        path: str | Path,
        *,
        contig_lengths: Mapping[str, int],
        roles: Sequence[SampleRole],
        sample_names: Optional[Mapping[SampleRole, str]] = None,
    ) -> None:
        self.path = str(path)
        self.roles = list(roles)
        names = dict(sample_names or {})
        self.sample_names = {r: names.get(r, r.value) for r in self.roles}
        self.n_written = 0

        header = pysam.VariantHeader()
        header.add_meta("fileformat", "VCFv4.2")
        for contig, length in contig_lengths.items():
            header.contigs.add(contig, length=length)
        header.info.add("CALLERS", number=".", type="String", description="Trio members calling the site")
        header.formats.add("DP", number=1, type="Integer", description="Read depth")
        header.formats.add("AD", number="R", type="Integer", description="Allelic depths")
        for r in self.roles:
            header.add_sample(self.sample_names[r])

        mode = "wz" if self.path.endswith(".gz") else "w"
        try:
            Path(self.path).parent.mkdir(parents=True, exist_ok=True)
            self._vcf = pysam.VariantFile(self.path, mode, header=header)
        except (OSError, ValueError) as e:
            raise SinkError(f"Cannot open candidate VCF {self.path}: {e}", path=self.path) from e

    def write(self, candidate: CandidateVariant) -> None:
        rec = self._vcf.new_record(
            contig=candidate.contig,
            start=candidate.start,
            stop=candidate.end,
            alleles=(candidate.ref,) + tuple(candidate.alts),
        )
        rec.info["CALLERS"] = tuple(r.value for r in candidate.called_by())
        for r in self.roles:
            summary = candidate.samples.get(r)
            if summary is None:
                continue
            sample = rec.samples[self.sample_names[r]]
            sample["DP"] = summary.depth
            sample["AD"] = (summary.ref_support,) + tuple(summary.alt_support)
        try:
            self._vcf.write(rec)
        except OSError as e:
            raise SinkError(f"Failed to write candidate to {self.path}: {e}", path=self.path) from e
        self.n_written += 1

    def close(self) -> None:
        self._vcf.close()
        logger.info("Wrote %d candidates to %s", self.n_written, self.path)

    def __enter__(self) -> "CandidateVcfWriter":
        return self

    def __exit__(self, *args) -> None:
        self.close()
