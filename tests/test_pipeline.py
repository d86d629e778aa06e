import json
from pathlib import Path

import numpy as np
import pysam
import pytest

from conftest import REF, InMemoryReads, InMemoryReference, build_read, other_base, with_snp
from triopileup.errors import ConfigurationError, LabelingError
from triopileup.options import (
    AlleleCounterOptions,
    LabelerAlgorithm,
    Mode,
    SampleRole,
    TrioOptions,
    validate_options,
)
from triopileup.pipeline import PartitionProcessor, make_examples
from triopileup.ranges import Range
from triopileup.toy_data import TOY_SNP_POS, make_toy_data
from triopileup.writer import read_examples


@pytest.fixture(scope="module")
def toy(tmp_path_factory):
    return make_toy_data(outdir=tmp_path_factory.mktemp("toy"))


def _options(toy, outdir: Path, **kwargs) -> TrioOptions:
    base = dict(
        reference_filename=toy["ref_fa"],
        reads_filename=toy["child_bam"],
        reads_parent1_filename=toy["parent1_bam"],
        reads_parent2_filename=toy["parent2_bam"],
        examples_filename=str(outdir / "examples"),
        run_info_filename=str(outdir / "run_info.json"),
        truth_variants_filename=toy["truth_vcf"],
        confident_regions_filename=toy["confident_bed"],
        mode=Mode.TRAINING,
        labeler_algorithm=LabelerAlgorithm.POSITIONAL_LABELER,
    )
    base.update(kwargs)
    return TrioOptions(**base)


def _examples(run_info):
    return list(read_examples(run_info["outputs"]["examples"]))


def test_training_run_on_toy_trio(toy, tmp_path):
    options = _options(toy, tmp_path)
    run_info = make_examples(options)

    examples = _examples(run_info)
    assert len(examples) == 1
    ex = examples[0]
    assert ex["metadata"]["start"] == TOY_SNP_POS
    assert ex["label"] == 1
    assert ex["genotype"] == (0, 1)
    assert ex["child"].shape == (options.height_child, options.pic_options.width, 6)
    assert ex["parent1"].shape == (options.height_parent, options.pic_options.width, 6)
    assert ex["metadata"]["samples"]["child"]["depth"] == 20
    assert ex["metadata"]["samples"]["parent2"]["alt_support"] == [5]

    assert run_info["labeling_metrics"]["n_labeled"] == 1
    assert run_info["labeling_metrics"]["class_counts"] == {"1": 1}
    assert run_info["resource_metrics"]["partitions_skipped"] == 0
    on_disk = json.loads(Path(options.run_info_filename).read_text(encoding="utf-8"))
    assert on_disk["stats"]["examples"] == 1


def test_output_does_not_depend_on_cores(toy, tmp_path):
    runs = []
    for n_cores in (1, 2):
        outdir = tmp_path / f"cores{n_cores}"
        options = _options(
            toy,
            outdir,
            n_cores=n_cores,
            allele_counter_options=AlleleCounterOptions(partition_size=20),
            downsample_fraction_child=0.7,
        )
        runs.append(_examples(make_examples(options)))

    one, two = runs
    assert len(one) == len(two)
    for a, b in zip(one, two):
        assert a["metadata"] == b["metadata"]
        assert a["label"] == b["label"]
        for role in ("parent1", "child", "parent2"):
            np.testing.assert_array_equal(a[role], b[role])


def test_excluded_contig_yields_no_examples(toy, tmp_path):
    options = _options(toy, tmp_path, exclude_contigs=["chr1"], calling_regions=["chr1:40-60"])
    run_info = make_examples(options)
    assert run_info["resource_metrics"]["partitions_total"] == 0
    assert run_info["outputs"]["examples"] == []


def test_calling_mode_writes_candidates(toy, tmp_path):
    candidates = tmp_path / "candidates.vcf.gz"
    options = _options(toy, tmp_path, mode=Mode.CALLING, candidates_filename=str(candidates))
    run_info = make_examples(options)

    examples = _examples(run_info)
    assert [e["label"] for e in examples] == [None]
    assert run_info["labeling_metrics"] is None
    with pysam.VariantFile(str(candidates)) as vcf:
        records = list(vcf)
        assert list(vcf.header.samples) == ["child", "parent1", "parent2"]
    assert [r.pos for r in records] == [TOY_SNP_POS + 1]
    assert records[0].samples["child"]["AD"] == (10, 10)


def test_child_only_run(toy, tmp_path):
    options = _options(toy, tmp_path, reads_parent1_filename="", reads_parent2_filename="", mode=Mode.CALLING)
    (example,) = _examples(make_examples(options))
    band = options.pic_options.reference_band_height
    assert example["parent1"][:band].any()
    assert not example["parent1"][band:].any()
    assert example["child"][band:].any()
    assert set(example["metadata"]["samples"]) == {"child"}


def test_training_requires_labeler(toy, tmp_path):
    options = _options(toy, tmp_path, labeler_algorithm=LabelerAlgorithm.UNSPECIFIED_LABELER_ALGORITHM)
    with pytest.raises(LabelingError):
        validate_options(options)
    with pytest.raises(ConfigurationError):
        make_examples(_options(toy, tmp_path, task_id=2, num_shards=2))


def _processor(reads, **kwargs) -> PartitionProcessor:
    options = TrioOptions(mode=Mode.CALLING, **kwargs)
    return PartitionProcessor(options, InMemoryReference(), {SampleRole.CHILD: InMemoryReads(reads)})


def test_processor_splits_oversized_partitions():
    alt = other_base(REF[60])
    reads = [build_read(f"r{i}", 30 + i, with_snp(30 + i, 40, 60, alt)) for i in range(20)]
    processor = _processor(
        reads,
        max_reads_per_partition=8,
        allele_counter_options=AlleleCounterOptions(min_partition_split_size=10),
    )
    result = processor.process(Range("chr1", 40, 80))
    assert not result.skipped
    assert result.partition == Range("chr1", 40, 80)
    assert result.stats["partitions_split"] >= 1
    assert [c.start for c in result.candidates] == [60]
    assert all(ex.images[SampleRole.PARENT1].array[5:].sum() == 0 for ex in result.examples)


def test_processor_skips_unreadable_partition():
    processor = _processor([build_read("r", 10, REF[10:40])])
    result = processor.process(Range("chr9", 0, 100))
    assert result.skipped
    assert "chr9" in result.error


def test_processor_keeps_original_alignments_when_realignment_fails():
    # CIGAR covers 40 query bases but the sequence has 41
    bad = build_read("bad", 20, REF[20:40] + REF[41:62], cigar=[(0, 20), (2, 1), (0, 20)])
    processor = _processor([bad, build_read("ok", 10, REF[10:50])], realigner_enabled=True)
    result = processor.process(Range("chr1", 0, 100))
    assert not result.skipped
    assert result.realignment_fallbacks == 1
    assert "indels_shifted" not in result.stats


def test_read_spanning_partitions_is_counted_in_each():
    processor = _processor([build_read("span", 30, REF[30:60])])
    left = processor.process(Range("chr1", 0, 40))
    right = processor.process(Range("chr1", 40, 80))
    assert left.stats["reads_fetched_child"] == 1
    assert right.stats["reads_fetched_child"] == 1
