"""Run orchestration: partitions in, examples and candidates out.

A :class:`PartitionProcessor` turns one partition into labeled or unlabeled
examples. :func:`make_examples` drives it over every partition of this task,
either in process or on a pool of worker processes that open their own
read-only file handles. Results are always consumed in partition order, so
output does not depend on ``n_cores``.
"""

from __future__ import annotations

import logging
import time
from concurrent.futures import ProcessPoolExecutor
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

from tqdm import tqdm

from . import __version__
from .allele_counter import AlleleCounter
from .errors import ConfigurationError, PartitionError
from .labeler import LabelingMetrics, VariantLabeler
from .models import AlignedRead, AlleleCount, CandidateVariant, Example
from .options import Mode, SampleRole, TrioOptions, validate_options
from .pileup_image import PileupImageEncoder
from .ranges import Range, check_shared_contigs, compute_partitions
from .reads import ReadSource, cap_reads, fetch_sample_reads
from .realigner import Realigner
from .reference import ReferenceSource, ReferenceWindow
from .truth import TruthContext, load_truth_context
from .utils import peak_memory_mb, write_json
from .validation import check_inputs
from .variant_caller import TrioVariantCaller
from .writer import CandidateVcfWriter, ExampleWriter

logger = logging.getLogger(__name__)

# Extra reference bases fetched around each partition's reads.
_REFERENCE_PADDING = 32


@dataclass
class PartitionResult:
    partition: Range
    examples: List[Example] = field(default_factory=list)
    candidates: List[CandidateVariant] = field(default_factory=list)
    stats: Dict[str, int] = field(default_factory=dict)
    labeling: LabelingMetrics = field(default_factory=LabelingMetrics)
    skipped: bool = False
    error: Optional[str] = None
    realignment_fallbacks: int = 0

    def merge(self, other: "PartitionResult") -> None:
        self.examples.extend(other.examples)
        self.candidates.extend(other.candidates)
        _add_counts(self.stats, other.stats)
        self.labeling.merge(other.labeling)
        self.realignment_fallbacks += other.realignment_fallbacks


def _add_counts(into: Dict[str, int], other: Mapping[str, int]) -> None:
    for k, v in other.items():
        into[k] = into.get(k, 0) + v


class PartitionProcessor:
    """Run every per-partition stage for one trio.

    ``reference`` needs a ``window(contig, start, end)`` method and each read
    source a ``query(Range)`` method, so in-memory doubles work as well as the
    pysam-backed classes. Roles missing from ``sources`` have no reads.
    """

    def __init__(
        self,
        options: TrioOptions,
        reference,
        sources: Mapping[SampleRole, Any],
        truth: Optional[TruthContext] = None,
    ) -> None:
        if SampleRole.CHILD not in sources:
            raise ConfigurationError("A child read source is required")
        self.options = options
        self.reference = reference
        self.sources = {r: s for r, s in sources.items() if s is not None}
        self.counter = AlleleCounter(options.allele_counter_options)
        self.realigner = Realigner(options.realigner_options) if options.realigner_enabled else None
        self.caller = TrioVariantCaller.from_options(options)
        self.encoder = PileupImageEncoder(options.pic_options, seed=options.random_seed)
        self.heights = {r: options.image_height(r) for r in SampleRole}
        self.labeler: Optional[VariantLabeler] = None
        if options.mode is Mode.TRAINING:
            if truth is None:
                raise ConfigurationError("TRAINING mode needs truth variants and confident regions")
            self.labeler = VariantLabeler(options.labeler_algorithm, options.labeler_options, truth)

    def process(self, partition: Range) -> PartitionResult:
        """Process one partition; a PartitionError marks it skipped instead of raising."""
        try:
            return self._process(partition)
        except PartitionError as e:
            logger.warning("Skipping partition %s: %s", partition, e)
            return PartitionResult(partition=partition, skipped=True, error=str(e))

    def _fetch(self, partition: Range) -> Tuple[Dict[SampleRole, List[AlignedRead]], Dict[str, int]]:
        """Fetch, filter and downsample every member's reads for ``partition``.

        Read stats count reads per partition: a read overlapping two partitions
        is counted in both, so run totals are read observations, not distinct reads.
        """
        reads: Dict[SampleRole, List[AlignedRead]] = {}
        stats: Dict[str, int] = {}
        for role, source in self.sources.items():
            kept, s = fetch_sample_reads(
                source,
                partition,
                role=role,
                requirements=self.options.read_requirements,
                downsample_fraction=self.options.downsample_fraction(role),
                seed=self.options.random_seed,
            )
            reads[role] = kept
            _add_counts(stats, {f"{k}_{role.value}": v for k, v in s.items()})
        return reads, stats

    def _process(self, partition: Range) -> PartitionResult:
        reads, fetch_stats = self._fetch(partition)
        cap = self.options.max_reads_per_partition
        min_split = max(1, self.options.allele_counter_options.min_partition_split_size)
        if cap and any(len(r) > cap for r in reads.values()) and partition.length >= 2 * min_split:
            mid = partition.start + partition.length // 2
            logger.debug("Splitting oversized partition %s at %d", partition, mid + 1)
            result = self._process(Range(partition.contig, partition.start, mid))
            result.merge(self._process(Range(partition.contig, mid, partition.end)))
            result.partition = partition
            _add_counts(result.stats, {"partitions_split": 1})
            return result

        result = PartitionResult(partition=partition)
        _add_counts(result.stats, fetch_stats)
        for role in list(reads):
            before = len(reads[role])
            reads[role] = cap_reads(reads[role], cap=cap, seed=self.options.random_seed, role=role)
            _add_counts(
                result.stats,
                {f"reads_capped_out_{role.value}": before - len(reads[role]), f"reads_{role.value}": len(reads[role])},
            )

        ref = self._reference_window(partition, reads)
        if self.realigner is not None:
            reads = self._realign(partition, reads, ref, result)

        counts: Dict[SampleRole, Dict[int, AlleleCount]] = {
            role: self.counter.count(partition, role_reads, ref) for role, role_reads in reads.items()
        }
        candidates = self.caller.call(partition.contig, counts)
        result.candidates = candidates
        _add_counts(result.stats, _variant_type_counts(candidates))

        labeled: Iterable[Tuple[CandidateVariant, Any]]
        if self.labeler is not None:
            labeled = [
                (c, lab) for c, lab in self.labeler.label(candidates, ref, result.labeling) if lab is not None
            ]
        else:
            labeled = [(c, None) for c in candidates]

        reads_by_role = {role: reads.get(role) for role in SampleRole}
        for candidate, label in labeled:
            images = self.encoder.encode_trio(candidate, reads_by_role, ref, self.heights)
            result.examples.append(Example(candidate=candidate, images=images, label=label))
        _add_counts(result.stats, {"candidates": len(candidates), "examples": len(result.examples)})
        logger.debug(
            "Partition %s: %d candidates, %d examples", partition, len(candidates), len(result.examples)
        )
        return result

    def _window(self, contig: str, start: int, end: int) -> ReferenceWindow:
        try:
            return self.reference.window(contig, start, end)
        except (KeyError, ValueError, OSError) as e:
            raise PartitionError(f"Cannot fetch reference {contig}:{start + 1}-{end}: {e}") from e

    def _reference_window(
        self, partition: Range, reads: Mapping[SampleRole, List[AlignedRead]]
    ) -> ReferenceWindow:
        all_reads = [r for role_reads in reads.values() for r in role_reads]
        start = min([partition.start] + [r.start for r in all_reads])
        end = max([partition.end] + [r.end for r in all_reads])
        half = self.options.pic_options.width // 2
        padding = max(_REFERENCE_PADDING, half, self.options.realigner_options.window_padding)
        return self._window(partition.contig, start - padding, end + padding + 1)

    def _realign(
        self,
        partition: Range,
        reads: Dict[SampleRole, List[AlignedRead]],
        ref: ReferenceWindow,
        result: PartitionResult,
    ) -> Dict[SampleRole, List[AlignedRead]]:
        """Realign every member's reads; on failure the partition keeps its original alignments."""
        out: Dict[SampleRole, List[AlignedRead]] = {}
        totals: Dict[str, int] = {}
        try:
            for role, role_reads in reads.items():
                out[role], role_totals = self.realigner.realign(role_reads, ref)
                _add_counts(totals, role_totals)
        except PartitionError as e:
            logger.warning("Realignment failed for %s, using original alignments: %s", partition, e)
            result.realignment_fallbacks += 1
            return reads
        _add_counts(result.stats, totals)
        return out


def _variant_type_counts(candidates: Iterable[CandidateVariant]) -> Dict[str, int]:
    counts = {"snps": 0, "indels": 0, "multi-allelics": 0}
    for c in candidates:
        counts["snps"] += c.is_snp
        counts["indels"] += c.is_indel
        counts["multi-allelics"] += c.is_multiallelic
    return counts


def _open_reads(options: TrioOptions) -> Dict[SampleRole, ReadSource]:
    sources: Dict[SampleRole, ReadSource] = {}
    for role in SampleRole:
        path = options.reads_path(role)
        if not path:
            continue
        sources[role] = ReadSource(
            path,
            reference_filename=options.reference_filename or None,
            use_original_quality_scores=options.use_original_quality_scores,
        )
    return sources


def _load_truth(options: TrioOptions) -> Optional[TruthContext]:
    if options.mode is not Mode.TRAINING:
        return None
    lo = options.labeler_options
    info_fields = []
    if lo.customized_classes_labeler_info_field_name:
        info_fields.append(lo.customized_classes_labeler_info_field_name)
    return load_truth_context(
        options.truth_variants_filename,
        options.confident_regions_filename,
        sample=lo.truth_sample,
        info_fields=info_fields,
    )


_WORKER_STATE: Dict[str, PartitionProcessor] = {}


def _init_worker(options: TrioOptions) -> None:
    reference = ReferenceSource(options.reference_filename)
    sources = _open_reads(options)
    _WORKER_STATE["processor"] = PartitionProcessor(options, reference, sources, _load_truth(options))


def _process_in_worker(partition: Range) -> PartitionResult:
    return _WORKER_STATE["processor"].process(partition)


def _require_paths(options: TrioOptions) -> None:
    for name in ("reference_filename", "reads_filename", "examples_filename"):
        if not getattr(options, name):
            raise ConfigurationError(f"{name} is required")


def make_examples(options: TrioOptions, *, progress: bool = False) -> Dict[str, Any]:
    """Generate examples (and candidates in CALLING mode) for this task.

    Returns the run-info dictionary, which is also written to
    ``options.run_info_filename`` when set.
    """
    t0 = time.perf_counter()
    validate_options(options)
    _require_paths(options)
    check_inputs(options)

    with ReferenceSource(options.reference_filename) as reference:
        contig_lengths = reference.contig_lengths
        sources = _open_reads(options)
        try:
            shared = check_shared_contigs(
                contig_lengths,
                [s.contigs for s in sources.values()],
                min_fraction=options.min_shared_contigs_basepairs,
                exclude_contigs=options.exclude_contigs,
            )
            unshared = [c for c in contig_lengths if c not in shared]
            partitions = compute_partitions(
                contig_lengths,
                partition_size=options.allele_counter_options.partition_size,
                task_id=options.task_id,
                num_shards=options.num_shards,
                calling_regions=options.calling_regions,
                exclude_calling_regions=options.exclude_calling_regions,
                exclude_contigs=list(options.exclude_contigs) + unshared,
            )
            truth = _load_truth(options)
            roles = [r for r in SampleRole if r in sources]
            if len(roles) < len(SampleRole):
                logger.info("Running with %s only", ", ".join(r.value for r in roles))

            summary = _run_partitions(
                options, reference, sources, truth, partitions, contig_lengths, roles, progress
            )
        finally:
            for s in sources.values():
                s.close()

    wall = time.perf_counter() - t0
    run_info = {
        "version": __version__,
        "options": options.to_jsonable(),
        "labeling_metrics": summary["labeling"].to_dict() if options.mode is Mode.TRAINING else None,
        "resource_metrics": {
            "wall_seconds": round(wall, 3),
            "peak_memory_mb": round(peak_memory_mb(), 1),
            "n_cores": options.n_cores,
            "partitions_total": len(partitions),
            "partitions_processed": len(partitions) - len(summary["skipped"]),
            "partitions_skipped": len(summary["skipped"]),
            "realignment_fallbacks": summary["realignment_fallbacks"],
            "skipped": summary["skipped"],
        },
        "stats": summary["stats"],
        "per_partition": summary["per_partition"],
        "outputs": {
            "examples": [str(p) for p in summary["example_paths"]],
            "candidates": options.candidates_filename if summary["wrote_candidates"] else None,
        },
    }
    if options.run_info_filename:
        Path(options.run_info_filename).parent.mkdir(parents=True, exist_ok=True)
        write_json(options.run_info_filename, run_info)
    logger.info(
        "Done: %d partitions, %d candidates, %d examples in %.1fs",
        len(partitions),
        summary["stats"].get("candidates", 0),
        summary["stats"].get("examples", 0),
        wall,
    )
    return run_info


def _run_partitions(
    options: TrioOptions,
    reference: ReferenceSource,
    sources: Mapping[SampleRole, ReadSource],
    truth: Optional[TruthContext],
    partitions: List[Range],
    contig_lengths: Mapping[str, int],
    roles: List[SampleRole],
    progress: bool,
) -> Dict[str, Any]:
    stats: Dict[str, int] = {}
    labeling = LabelingMetrics()
    skipped: List[Dict[str, str]] = []
    per_partition: List[Dict[str, Any]] = []
    fallbacks = 0

    writer = ExampleWriter(options.examples_filename, task_id=options.task_id, num_shards=options.num_shards)
    vcf_writer: Optional[CandidateVcfWriter] = None
    if options.mode is Mode.CALLING and options.candidates_filename:
        vcf_writer = CandidateVcfWriter(options.candidates_filename, contig_lengths=contig_lengths, roles=roles)

    def handle(result: PartitionResult) -> None:
        nonlocal fallbacks
        if result.skipped:
            skipped.append({"partition": str(result.partition), "error": result.error or ""})
            return
        writer.write_all(result.examples)
        if vcf_writer is not None:
            for c in result.candidates:
                vcf_writer.write(c)
        _add_counts(stats, result.stats)
        labeling.merge(result.labeling)
        fallbacks += result.realignment_fallbacks
        per_partition.append(
            {
                "partition": str(result.partition),
                "candidates": result.stats.get("candidates", 0),
                "examples": result.stats.get("examples", 0),
            }
        )

    try:
        if options.n_cores == 1:
            processor = PartitionProcessor(options, reference, sources, truth)
            it: Iterable[Range] = partitions
            if progress:
                it = tqdm(it, unit="partition", desc="Making examples")
            for partition in it:
                handle(processor.process(partition))
        else:
            with ProcessPoolExecutor(
                max_workers=options.n_cores, initializer=_init_worker, initargs=(options,)
            ) as pool:
                results = pool.map(_process_in_worker, partitions, chunksize=1)
                if progress:
                    results = tqdm(results, total=len(partitions), unit="partition", desc="Making examples")
                for result in results:
                    handle(result)
    finally:
        if vcf_writer is not None:
            vcf_writer.close()
    writer.close()

    return {
        "stats": stats,
        "labeling": labeling,
        "skipped": skipped,
        "per_partition": per_partition,
        "realignment_fallbacks": fallbacks,
        "example_paths": writer.paths,
        "wrote_candidates": vcf_writer is not None,
    }
