"""Up-front input checks with fix instructions.

Everything here runs before any partition is processed, so a missing index
fails the run in the first second rather than inside a worker.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Iterable

from .errors import ConfigurationError
from .options import Mode, SampleRole, TrioOptions

logger = logging.getLogger(__name__)


_UCSC_PREFIX = "chr"


def _require_file(path: str | Path, what: str) -> Path:
    p = Path(path)
    if not p.exists():
        raise ConfigurationError(f"{what} not found: {p}")
    return p


def check_alignment_index(path: str | Path) -> None:
    """Ensure a BAM/CRAM has an index; raise ConfigurationError with fix instructions."""
    aln = _require_file(path, "Alignment file")
    if aln.suffix == ".cram":
        candidates = [aln.with_suffix(aln.suffix + ".crai"), aln.with_suffix(".crai")]
    else:
        candidates = [
            aln.with_suffix(aln.suffix + ".bai"),
            aln.with_suffix(".bai"),
            aln.with_suffix(aln.suffix + ".csi"),
        ]
    if any(c.exists() for c in candidates):
        return
    raise ConfigurationError("Alignment file is not indexed. Run: samtools index " + str(aln))


def check_fasta_index(path: str | Path) -> None:
    fasta = _require_file(path, "Reference FASTA")
    if not fasta.with_suffix(fasta.suffix + ".fai").exists():
        raise ConfigurationError("Reference FASTA is not indexed. Run: samtools faidx " + str(fasta))


def check_vcf_index(vcf_path: str | Path) -> None:
    """Ensure a bgzipped VCF has a tabix index; raise ConfigurationError with fix instructions."""
    vcf = _require_file(vcf_path, "VCF")
    if vcf.suffixes[-2:] == [".vcf", ".gz"]:
        tbi = vcf.with_suffix(vcf.suffix + ".tbi")
        if not tbi.exists():
            raise ConfigurationError(
                "VCF is not bgzip/tabix indexed. Run: bgzip -c "
                + str(vcf.with_suffix(""))
                + " > "
                + str(vcf)
                + "; tabix -p vcf "
                + str(vcf)
            )
    elif vcf.suffix == ".vcf":
        logger.info(
            "VCF is uncompressed (.vcf). This is supported but slower; "
            "consider bgzip+tabix for large files."
        )


def detect_contig_style(contigs: Iterable[str]) -> str:
    """Infer contig style: 'ucsc' if most contigs start with 'chr', else 'ensembl'."""
    names = [c for c in contigs if c]
    if not names:
        return "unknown"
    chr_like = [c for c in names if c.startswith(_UCSC_PREFIX)]
    if len(chr_like) >= max(1, int(0.5 * len(names))):
        return "ucsc"
    return "ensembl"


def check_inputs(options: TrioOptions) -> None:
    """Check that every input file of a run exists and is indexed."""
    check_fasta_index(options.reference_filename)
    for role in SampleRole:
        path = options.reads_path(role)
        if path:
            check_alignment_index(path)
        elif role is not SampleRole.CHILD:
            logger.info("No reads for %s; its images will only carry the reference band", role.value)
    if options.mode is Mode.TRAINING:
        check_vcf_index(options.truth_variants_filename)
        _require_file(options.confident_regions_filename, "Confident regions BED")
