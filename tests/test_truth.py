from pathlib import Path

import pysam
import pytest

from triopileup.errors import ConfigurationError
from triopileup.truth import load_truth_context, load_truth_variants
from triopileup.validation import check_alignment_index, check_vcf_index, detect_contig_style


def _write_vcf(path: Path) -> Path:
    header = pysam.VariantHeader()
    header.add_meta("fileformat", "VCFv4.2")
    header.add_sample("KID")
    header.contigs.add("chr1", length=1000)
    header.filters.add("LowQual", None, None, "Low quality")
    header.formats.add("GT", number=1, type="String", description="Genotype")
    header.info.add("TYPE", number=1, type="String", description="Variant class")

    rows = [
        (99, ("A", "G"), "PASS", (0, 1), "snv"),
        (9, ("CAT", "C"), "PASS", (1, 1), "indel"),
        (199, ("T", "A"), "LowQual", (0, 1), "snv"),
        (299, ("G", "C"), "PASS", (None, None), "snv"),
    ]
    with pysam.VariantFile(str(path), "w", header=header) as vcf:
        for start, alleles, filt, gt, kind in rows:
            rec = vcf.new_record(
                contig="chr1", start=start, stop=start + len(alleles[0]), alleles=alleles, filter=filt
            )
            rec.info["TYPE"] = kind
            rec.samples["KID"]["GT"] = gt
            vcf.write(rec)
    return path


def test_load_truth_variants(tmp_path):
    vcf = _write_vcf(tmp_path / "truth.vcf")
    index, stats = load_truth_variants(str(vcf), info_fields=["TYPE"])
    assert stats == {
        "records_total": 4,
        "records_kept": 2,
        "records_skipped_filter": 1,
        "records_skipped_genotype": 1,
    }
    chr1 = index["chr1"]
    assert chr1.positions == [9, 99]
    assert chr1.variants[0].ref == "CAT"
    assert chr1.variants[0].genotype == (1, 1)
    assert chr1.variants[1].info == {"TYPE": "snv"}

    # the deletion spans 9-11 and is found from a query starting inside it
    assert [v.start for v in chr1.overlapping(11, 12)] == [9]
    assert chr1.overlapping(12, 99) == []
    assert [v.start for v in chr1.starting_at(99)] == [99]


def test_unknown_truth_sample(tmp_path):
    vcf = _write_vcf(tmp_path / "truth.vcf")
    with pytest.raises(ConfigurationError, match="MOM"):
        load_truth_variants(str(vcf), sample="MOM")


def test_truth_context_confident_regions(tmp_path):
    vcf = _write_vcf(tmp_path / "truth.vcf")
    bed = tmp_path / "confident.bed"
    bed.write_text("chr1\t0\t50\nchr1\t90\t110\n", encoding="utf-8")
    ctx = load_truth_context(str(vcf), str(bed), sample="KID")
    assert ctx.is_confident("chr1", 9, 12)
    assert ctx.is_confident("chr1", 99, 100)
    assert not ctx.is_confident("chr1", 48, 52)
    assert [v.start for v in ctx.overlapping("chr1", 0, 200)] == [9, 99]
    assert ctx.overlapping("chr2", 0, 200) == []


def test_index_checks_explain_the_fix(tmp_path):
    bam = tmp_path / "reads.bam"
    bam.write_bytes(b"")
    with pytest.raises(ConfigurationError, match="samtools index"):
        check_alignment_index(bam)
    (tmp_path / "reads.bam.bai").write_bytes(b"")
    check_alignment_index(bam)

    vcf = tmp_path / "truth.vcf.gz"
    vcf.write_bytes(b"")
    with pytest.raises(ConfigurationError, match="tabix"):
        check_vcf_index(vcf)


def test_detect_contig_style():
    assert detect_contig_style(["chr1", "chr2", "chrX"]) == "ucsc"
    assert detect_contig_style(["1", "2", "X"]) == "ensembl"
    assert detect_contig_style([]) == "unknown"
