import json
import subprocess
import sys
from pathlib import Path

from triopileup.cli import build_parser, options_from_args
from triopileup.options import LabelerAlgorithm, Mode, SampleRole


def _run_cli(args: list[str]) -> subprocess.CompletedProcess:
    return subprocess.run(
        [sys.executable, "-m", "triopileup"] + args,
        check=False,
        capture_output=True,
        text=True,
    )


def test_cli_help() -> None:
    cp = _run_cli(["--help"])
    assert cp.returncode == 0
    assert "TrioPileup" in cp.stdout


def test_options_from_args(tmp_path: Path) -> None:
    ref = tmp_path / "ref.fa"
    reads = tmp_path / "child.bam"
    for p in (ref, reads):
        p.write_text("", encoding="utf-8")
    args = build_parser().parse_args(
        [
            "make-examples",
            "--mode", "training",
            "--ref", str(ref),
            "--reads", str(reads),
            "--examples", str(tmp_path / "out" / "examples@4.npz"),
            "--candidates", str(tmp_path / "out" / "candidates@4.vcf.gz"),
            "--task-id", "3",
            "--num-shards", "4",
            "--labeler", "haplotype",
            "--parent1-min-fraction-snps", "0.3",
            "--select-variant-types", "snps", "indels",
        ]
    )
    options = options_from_args(args)
    assert options.mode is Mode.TRAINING
    assert options.labeler_algorithm is LabelerAlgorithm.HAPLOTYPE_LABELER
    assert options.candidates_filename.endswith("candidates-00003-of-00004.vcf.gz")
    assert options.run_info_filename.endswith("examples-00003-of-00004.run_info.json")
    assert options.caller_options(SampleRole.PARENT1).min_fraction_snps == 0.3
    assert options.caller_options(SampleRole.CHILD).min_fraction_snps == 0.12
    assert options.reads_parent1_filename == ""
    assert options.select_variant_types == ["snps", "indels"]


def test_cli_end_to_end(tmp_path: Path) -> None:
    toy_dir = tmp_path / "toy"
    cp = _run_cli(["make-toy-data", "--outdir", str(toy_dir)])
    assert cp.returncode == 0, cp.stderr
    toy = json.loads(cp.stdout)

    out = tmp_path / "out"
    cp = _run_cli(
        [
            "make-examples",
            "--mode", "training",
            "--ref", toy["ref_fa"],
            "--reads", toy["child_bam"],
            "--reads-parent1", toy["parent1_bam"],
            "--reads-parent2", toy["parent2_bam"],
            "--truth-variants", toy["truth_vcf"],
            "--confident-regions", toy["confident_bed"],
            "--labeler", "positional",
            "--examples", str(out / "examples"),
            "--no-progress",
            "--report",
        ]
    )
    assert cp.returncode == 0, cp.stderr
    run_info_path = Path(cp.stdout.strip().splitlines()[-1])
    assert run_info_path.exists()
    assert (out / "examples-00000-of-00001.00000.npz").exists()
    assert (out / "report" / "report.html").exists()
    assert (out / "logs" / "make_examples.00000.log").exists()

    cp = _run_cli(["report", "--run-info", str(run_info_path), "--outdir", str(tmp_path / "rep")])
    assert cp.returncode == 0, cp.stderr
    assert "TrioPileup Report" in (tmp_path / "rep" / "report.html").read_text(encoding="utf-8")


def test_cli_reports_configuration_errors(tmp_path: Path) -> None:
    cp = _run_cli(["make-toy-data", "--outdir", str(tmp_path / "toy")])
    toy = json.loads(cp.stdout)
    cp = _run_cli(
        [
            "make-examples",
            "--mode", "training",
            "--ref", toy["ref_fa"],
            "--reads", toy["child_bam"],
            "--examples", str(tmp_path / "out" / "examples"),
        ]
    )
    assert cp.returncode == 2
    assert "labeler" in cp.stderr.lower()
