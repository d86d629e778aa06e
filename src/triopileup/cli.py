from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import Optional

from . import __version__
from .errors import TrioPileupError
from .options import (
    VARIANT_TYPES,
    AlleleCounterOptions,
    LabelerAlgorithm,
    Mode,
    PileupImageOptions,
    ReadRequirements,
    RealignerOptions,
    SampleRole,
    TrioOptions,
    VariantCallerOptions,
    VariantLabelerOptions,
)
from .pipeline import make_examples
from .report import load_run_info, render_report
from .toy_data import make_toy_data
from .utils import sharded_filename
from .writer import examples_base

_LABELERS = {
    "positional": LabelerAlgorithm.POSITIONAL_LABELER,
    "haplotype": LabelerAlgorithm.HAPLOTYPE_LABELER,
    "customized_classes": LabelerAlgorithm.CUSTOMIZED_CLASSES_LABELER,
}
_CALLER_FIELDS = ("min_count_snps", "min_count_indels", "min_fraction_snps", "min_fraction_indels")


def _setup_logging(verbosity: int, *, logfile: Optional[Path] = None) -> None:
    level = logging.WARNING
    if verbosity == 1:
        level = logging.INFO
    elif verbosity >= 2:
        level = logging.DEBUG

    log_fmt = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
    logging.basicConfig(level=level, format=log_fmt, stream=sys.stderr)

    if logfile is not None:
        logfile.parent.mkdir(parents=True, exist_ok=True)
        fh = logging.FileHandler(logfile)
        fh.setLevel(level)
        fh.setFormatter(logging.Formatter(log_fmt))
        logging.getLogger().addHandler(fh)


def _path_exists(p: str) -> str:
    if not Path(p).exists():
        raise argparse.ArgumentTypeError(f"Path does not exist: {p}")
    return p


def _fraction(s: str) -> float:
    v = float(s)
    if not 0.0 <= v <= 1.0:
        raise argparse.ArgumentTypeError(f"Expected a value in [0, 1], got {s}")
    return v


def _log_path(outdir: Path, name: str) -> Path:
    return outdir / "logs" / name


def _handle_error(err: Exception, *, log_path: Optional[Path] = None) -> int:
    if isinstance(err, TrioPileupError):
        msg = str(err)
    else:
        msg = f"{err.__class__.__name__}: {err}"
    logging.getLogger("triopileup").debug("Run failed", exc_info=err)

    sys.stderr.write(msg + "\n")
    if log_path is not None:
        sys.stderr.write(f"See log: {log_path}\n")
    return 2


def _add_caller_flags(parser: argparse.ArgumentParser) -> None:
    g = parser.add_argument_group(
        "variant caller thresholds",
        "Per trio member; unset values use the defaults "
        f"({VariantCallerOptions()}).",
    )
    for role in SampleRole:
        for name in _CALLER_FIELDS:
            flag = f"--{role.value}-{name.replace('_', '-')}"
            kind = int if name.startswith("min_count") else _fraction
            g.add_argument(flag, dest=f"{role.value}_{name}", type=kind, default=None)


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="triopileup",
        description=(
            "TrioPileup: trio-aware candidate generation and pileup example encoding "
            "(child + two parents) for DeepTrio-style models."
        ),
    )
    p.add_argument("--version", action="version", version=f"triopileup {__version__}")

    sub = p.add_subparsers(dest="cmd", required=True)

    # -----------------
    # make-examples
    # -----------------
    m = sub.add_parser(
        "make-examples",
        help="Find candidates in a trio and encode them as pileup image examples.",
    )
    m.add_argument("--mode", required=True, choices=["calling", "training"], help="Run mode.")
    m.add_argument("--ref", required=True, type=_path_exists, help="Reference FASTA (faidx indexed).")
    m.add_argument("--reads", required=True, type=_path_exists, help="Child BAM/CRAM (indexed).")
    m.add_argument("--reads-parent1", type=_path_exists, help="Parent 1 BAM/CRAM (optional).")
    m.add_argument("--reads-parent2", type=_path_exists, help="Parent 2 BAM/CRAM (optional).")
    m.add_argument(
        "--examples",
        required=True,
        help="Output examples base path; chunks are named <base>-<task>-of-<shards>.<chunk>.npz.",
    )
    m.add_argument("--candidates", help="Candidate VCF output (calling mode).")
    m.add_argument("--run-info", help="Run info JSON output (default: next to the examples).")
    m.add_argument("--truth-variants", type=_path_exists, help="Truth VCF (training mode).")
    m.add_argument("--confident-regions", type=_path_exists, help="Confident regions BED (training mode).")
    m.add_argument("--truth-sample", help="Sample in the truth VCF (default: first).")
    m.add_argument("--model-name", default="", help="Recorded in the run info.")

    g = m.add_argument_group("regions")
    g.add_argument(
        "--regions",
        nargs="+",
        default=[],
        help="Calling regions: 'chr', 'chr:start-end' or BED files.",
    )
    g.add_argument("--exclude-regions", nargs="+", default=[], help="Regions or BED files to skip.")
    g.add_argument("--exclude-contigs", nargs="+", default=[], help="Contigs to skip entirely.")
    g.add_argument(
        "--min-shared-contigs-basepairs",
        type=_fraction,
        default=0.9,
        help="Minimum fraction of reference bp on contigs shared with the reads.",
    )

    g = m.add_argument_group("execution")
    g.add_argument("--task-id", type=int, default=0, help="Index of this task.")
    g.add_argument("--num-shards", type=int, default=0, help="Number of tasks (0 = unsharded).")
    g.add_argument("--n-cores", type=int, default=1, help="Worker processes.")
    g.add_argument("--random-seed", type=int, default=TrioOptions.random_seed, help="Seed for all sampling.")
    g.add_argument("--partition-size", type=int, default=AlleleCounterOptions.partition_size)

    g = m.add_argument_group("reads")
    g.add_argument("--min-mapping-quality", type=int, default=ReadRequirements.min_mapping_quality)
    g.add_argument("--min-base-quality", type=int, default=AlleleCounterOptions.min_base_quality)
    g.add_argument("--keep-duplicates", action="store_true")
    g.add_argument("--keep-secondary-alignments", action="store_true")
    g.add_argument("--keep-supplementary-alignments", action="store_true")
    g.add_argument("--keep-failed-vendor-quality-checks", action="store_true")
    g.add_argument("--use-original-quality-scores", action="store_true", help="Read qualities from OQ tags.")
    g.add_argument(
        "--max-reads-per-partition",
        type=int,
        default=TrioOptions.max_reads_per_partition,
        help="Per-sample read cap per partition (0 disables).",
    )
    g.add_argument("--downsample-fraction-child", type=_fraction, default=0.0)
    g.add_argument("--downsample-fraction-parents", type=_fraction, default=0.0)
    g.add_argument("--realign", action="store_true", help="Left-align indels before counting.")
    g.add_argument("--realigner-window-padding", type=int, default=RealignerOptions.window_padding)

    _add_caller_flags(m)
    m.add_argument(
        "--select-variant-types",
        nargs="+",
        default=[],
        choices=list(VARIANT_TYPES),
        help="Only emit these variant classes.",
    )

    g = m.add_argument_group("images")
    g.add_argument("--height-child", type=int, default=TrioOptions.height_child)
    g.add_argument("--height-parent", type=int, default=TrioOptions.height_parent)
    g.add_argument("--width", type=int, default=PileupImageOptions.width)

    g = m.add_argument_group("labeling (training mode)")
    g.add_argument("--labeler", choices=sorted(_LABELERS), help="Labeling algorithm.")
    g.add_argument("--max-separation", type=int, default=VariantLabelerOptions.max_separation)
    g.add_argument("--max-group-size", type=int, default=VariantLabelerOptions.max_group_size)
    g.add_argument("--customized-classes-info-field", default="", help="Truth INFO field holding the class.")
    g.add_argument("--customized-classes", default="", help="Comma-separated class names, class 0 first.")

    m.add_argument("--report", action="store_true", help="Also render an HTML report next to the run info.")
    m.add_argument("--no-progress", action="store_true", help="Disable the progress bar.")
    m.add_argument("-v", "--verbose", action="count", default=0, help="Increase verbosity (-v/-vv).")

    # -----------------
    # make-toy-data
    # -----------------
    t = sub.add_parser(
        "make-toy-data",
        help="Generate a tiny trio (reference, three BAMs, truth VCF, BED) for demos/tests.",
    )
    t.add_argument("--outdir", required=True, help="Output directory for toy data.")
    t.add_argument("--dry-run", action="store_true", help="Validate paths without writing files.")

    # -----------------
    # report
    # -----------------
    r = sub.add_parser("report", help="Render an HTML report from a run info JSON.")
    r.add_argument("--run-info", required=True, type=_path_exists, help="Run info JSON.")
    r.add_argument("--outdir", required=True, help="Output directory for report.html and plots.")
    r.add_argument("-v", "--verbose", action="count", default=0, help="Increase verbosity (-v/-vv).")

    return p


def options_from_args(args: argparse.Namespace) -> TrioOptions:
    examples = args.examples
    run_info = args.run_info or (
        f"{examples_base(examples)}-{args.task_id:05d}-of-{max(args.num_shards, 1):05d}.run_info.json"
    )

    callers = {}
    for role in SampleRole:
        overrides = {
            name: getattr(args, f"{role.value}_{name}")
            for name in _CALLER_FIELDS
            if getattr(args, f"{role.value}_{name}") is not None
        }
        callers[role] = VariantCallerOptions(**overrides)

    classes = tuple(c.strip() for c in args.customized_classes.split(",") if c.strip())
    return TrioOptions(
        exclude_contigs=list(args.exclude_contigs),
        calling_regions=list(args.regions),
        exclude_calling_regions=list(args.exclude_regions),
        random_seed=args.random_seed,
        n_cores=args.n_cores,
        allele_counter_options=AlleleCounterOptions(
            partition_size=args.partition_size, min_base_quality=args.min_base_quality
        ),
        variant_caller_options_child=callers[SampleRole.CHILD],
        variant_caller_options_parent1=callers[SampleRole.PARENT1],
        variant_caller_options_parent2=callers[SampleRole.PARENT2],
        pic_options=PileupImageOptions(width=args.width),
        labeler_options=VariantLabelerOptions(
            max_separation=args.max_separation,
            max_group_size=args.max_group_size,
            truth_sample=args.truth_sample,
            customized_classes_labeler_info_field_name=args.customized_classes_info_field,
            customized_classes_labeler_classes_list=classes,
        ),
        read_requirements=ReadRequirements(
            min_mapping_quality=args.min_mapping_quality,
            keep_duplicates=args.keep_duplicates,
            keep_secondary_alignments=args.keep_secondary_alignments,
            keep_supplementary_alignments=args.keep_supplementary_alignments,
            keep_failed_vendor_quality_checks=args.keep_failed_vendor_quality_checks,
        ),
        reference_filename=args.ref,
        reads_filename=args.reads,
        reads_parent1_filename=args.reads_parent1 or "",
        reads_parent2_filename=args.reads_parent2 or "",
        candidates_filename=sharded_filename(args.candidates, args.task_id) if args.candidates else "",
        examples_filename=examples,
        confident_regions_filename=args.confident_regions or "",
        truth_variants_filename=args.truth_variants or "",
        run_info_filename=run_info,
        model_name=args.model_name,
        mode=Mode.TRAINING if args.mode == "training" else Mode.CALLING,
        min_shared_contigs_basepairs=args.min_shared_contigs_basepairs,
        task_id=args.task_id,
        num_shards=args.num_shards,
        realigner_enabled=args.realign,
        realigner_options=RealignerOptions(window_padding=args.realigner_window_padding),
        max_reads_per_partition=args.max_reads_per_partition,
        downsample_fraction_child=args.downsample_fraction_child,
        downsample_fraction_parents=args.downsample_fraction_parents,
        labeler_algorithm=_LABELERS.get(args.labeler, LabelerAlgorithm.UNSPECIFIED_LABELER_ALGORITHM),
        use_original_quality_scores=args.use_original_quality_scores,
        select_variant_types=list(args.select_variant_types),
        height_parent=args.height_parent,
        height_child=args.height_child,
    )


# -----------------
# Command handlers
# -----------------

def cmd_make_examples(args: argparse.Namespace) -> int:
    outdir = Path(args.examples).expanduser().resolve().parent
    log_path = _log_path(outdir, f"make_examples.{args.task_id:05d}.log")
    _setup_logging(args.verbose, logfile=log_path)

    logger = logging.getLogger("triopileup")
    logger.info("triopileup %s", __version__)

    try:
        options = options_from_args(args)
        run_info = make_examples(options, progress=not args.no_progress)
        if args.report:
            report_dir = Path(options.run_info_filename).parent / "report"
            report_path = render_report(run_info=run_info, outdir=report_dir)
            logger.info("Report written: %s", report_path)
        print(options.run_info_filename)
        return 0
    except Exception as e:
        return _handle_error(e, log_path=log_path)


def cmd_make_toy_data(args: argparse.Namespace) -> int:
    outdir = Path(args.outdir).expanduser().resolve()
    if args.dry_run:
        print(f"Would write toy data into: {outdir}")
        return 0

    summary = make_toy_data(outdir=outdir)
    print(json.dumps(summary, indent=2))
    return 0


def cmd_report(args: argparse.Namespace) -> int:
    _setup_logging(args.verbose, logfile=None)
    try:
        report_path = render_report(run_info=load_run_info(args.run_info), outdir=args.outdir)
        print(str(report_path))
        return 0
    except Exception as e:
        return _handle_error(e, log_path=None)


def main(argv: Optional[list[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.cmd == "make-examples":
        return cmd_make_examples(args)
    if args.cmd == "make-toy-data":
        return cmd_make_toy_data(args)
    if args.cmd == "report":
        return cmd_report(args)

    parser.error(f"Unknown command: {args.cmd}")
    return 2


if __name__ == "__main__":
    raise SystemExit(main())
