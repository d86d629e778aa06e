from __future__ import annotations

import random
from pathlib import Path
from typing import Dict, List

import pysam

from .utils import ensure_outdir, write_json

TOY_CONTIG = "chr1"
TOY_LENGTH = 100
TOY_SNP_POS = 50  # 0-based
TOY_READ_LENGTH = 50


def _write_fasta(path: Path, contig: str, seq: str) -> None:
    lines = [f">{contig}"]
    for i in range(0, len(seq), 60):
        lines.append(seq[i : i + 60])
    path.write_text("\n".join(lines) + "\n", encoding="utf-8")


def _mutate_base(base: str) -> str:
    for alt in ["A", "C", "G", "T"]:
        if alt != base:
            return alt
    return "A"


def _make_read(
    name: str,
    start0: int,
    seq: str,
    mapq: int = 60,
    is_reverse: bool = False,
) -> pysam.AlignedSegment:
    a = pysam.AlignedSegment()
    a.query_name = name
    a.query_sequence = seq
    a.flag = 16 if is_reverse else 0
    a.reference_id = 0
    a.reference_start = start0
    a.mapping_quality = mapq
    a.cigartuples = [(0, len(seq))]
    a.query_qualities = pysam.qualitystring_to_array("I" * len(seq))
    return a


def _write_bam(path: Path, contig: str, length: int, reads: List[pysam.AlignedSegment]) -> None:
    header = {
        "HD": {"VN": "1.6", "SO": "coordinate"},
        "SQ": [{"SN": contig, "LN": length}],
    }
    reads = sorted(reads, key=lambda r: (r.reference_start, r.query_name))
    with pysam.AlignmentFile(str(path), "wb", header=header) as bam:
        for r in reads:
            bam.write(r)
    pysam.index(str(path))


def _sample_reads(
    prefix: str, ref_seq: str, *, n_reads: int, first_start: int, alt_base: str
) -> List[pysam.AlignedSegment]:
    reads = []
    for i in range(n_reads):
        start0 = first_start + i
        seq = list(ref_seq[start0 : start0 + TOY_READ_LENGTH])
        # even-indexed reads carry the heterozygous SNP
        if i % 2 == 0:
            seq[TOY_SNP_POS - start0] = alt_base
        reads.append(_make_read(f"{prefix}_{i}", start0, "".join(seq), is_reverse=(i % 4 >= 2)))
    return reads


def make_toy_data(*, outdir: str | Path, seed: int = 7) -> Dict[str, str]:
    """Create a tiny trio dataset suitable for quick demos/tests.

    A 100 bp reference with one heterozygous SNP at 0-based position 50 that
    all three trio members carry. The outputs include:
    - toy_ref.fa (+ .fai)
    - child.bam, parent1.bam, parent2.bam (+ .bai); 20 child reads, 10 per parent
    - truth.vcf.gz (+ .tbi), child genotype 0/1
    - confident.bed, covering the whole contig

    Returns
    -------
    dict
        Paths to the generated files.
    """
    outdir_p = ensure_outdir(outdir)
    rng = random.Random(seed)

    ref_seq = "".join(rng.choice("ACGT") for _ in range(TOY_LENGTH))
    ref_fa = outdir_p / "toy_ref.fa"
    _write_fasta(ref_fa, TOY_CONTIG, ref_seq)
    pysam.faidx(str(ref_fa))

    ref_base = ref_seq[TOY_SNP_POS]
    alt_base = _mutate_base(ref_base)

    bams = {}
    for name, n_reads, first_start in (("child", 20, 10), ("parent1", 10, 20), ("parent2", 10, 20)):
        path = outdir_p / f"{name}.bam"
        reads = _sample_reads(name, ref_seq, n_reads=n_reads, first_start=first_start, alt_base=alt_base)
        _write_bam(path, TOY_CONTIG, TOY_LENGTH, reads)
        bams[name] = path

    vcf_path = outdir_p / "truth.vcf"
    header = pysam.VariantHeader()
    header.add_meta("fileformat", "VCFv4.2")
    header.add_sample("CHILD")
    header.contigs.add(TOY_CONTIG, length=TOY_LENGTH)
    header.formats.add("GT", number=1, type="String", description="Genotype")
    header.info.add("TYPE", number=1, type="String", description="Variant class")

    with pysam.VariantFile(str(vcf_path), "w", header=header) as vcf:
        rec = vcf.new_record(
            contig=TOY_CONTIG,
            start=TOY_SNP_POS,
            stop=TOY_SNP_POS + 1,
            alleles=(ref_base, alt_base),
            id=f"{TOY_CONTIG}:{TOY_SNP_POS + 1}:{ref_base}:{alt_base}",
            qual=60,
            filter="PASS",
        )
        rec.info["TYPE"] = "snv"
        rec.samples[0]["GT"] = (0, 1)
        vcf.write(rec)

    vcf_gz = outdir_p / "truth.vcf.gz"
    pysam.tabix_compress(str(vcf_path), str(vcf_gz), force=True)
    pysam.tabix_index(str(vcf_gz), preset="vcf", force=True)

    bed = outdir_p / "confident.bed"
    bed.write_text(f"{TOY_CONTIG}\t0\t{TOY_LENGTH}\n", encoding="utf-8")

    summary = {
        "ref_fa": str(ref_fa),
        "child_bam": str(bams["child"]),
        "parent1_bam": str(bams["parent1"]),
        "parent2_bam": str(bams["parent2"]),
        "truth_vcf": str(vcf_gz),
        "confident_bed": str(bed),
        "snp_pos": str(TOY_SNP_POS),
        "outdir": str(outdir_p),
    }

    write_json(outdir_p / "toy_summary.json", summary)
    return summary
