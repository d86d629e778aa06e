"""Run configuration.

All knobs of a run live in a single :class:`TrioOptions` object, grouped into
per-tool option blocks. Options are read-only once a run starts; workers
receive a copy.
"""

from __future__ import annotations

import enum
import logging
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional

from .errors import ConfigurationError, LabelingError

logger = logging.getLogger(__name__)

VARIANT_TYPES = ("snps", "indels", "multi-allelics", "all")


class Mode(enum.Enum):
    UNSPECIFIED = 0
    CALLING = 1
    TRAINING = 2


class LabelerAlgorithm(enum.Enum):
    UNSPECIFIED_LABELER_ALGORITHM = 0
    POSITIONAL_LABELER = 1
    HAPLOTYPE_LABELER = 2
    CUSTOMIZED_CLASSES_LABELER = 3


class VariantCaller(enum.Enum):
    UNSPECIFIED_CALLER = 0
    VERY_SENSITIVE_CALLER = 1


class SampleRole(enum.Enum):
    CHILD = "child"
    PARENT1 = "parent1"
    PARENT2 = "parent2"


# Row order of the stacked DeepTrio-style image: parent1 on top, child in the middle.
STACK_ORDER = (SampleRole.PARENT1, SampleRole.CHILD, SampleRole.PARENT2)


@dataclass(frozen=True)
class ReadRequirements:
    """Only reads satisfying these requirements are used anywhere downstream."""

    min_mapping_quality: int = 10
    keep_duplicates: bool = False
    keep_secondary_alignments: bool = False
    keep_supplementary_alignments: bool = False
    keep_failed_vendor_quality_checks: bool = False
    keep_unaligned: bool = False


@dataclass(frozen=True)
class AlleleCounterOptions:
    partition_size: int = 1000
    min_base_quality: int = 10
    # Oversized partitions are halved until they reach this length, then capped.
    min_partition_split_size: int = 100


@dataclass(frozen=True)
class VariantCallerOptions:
    min_count_snps: int = 2
    min_count_indels: int = 2
    min_fraction_snps: float = 0.12
    min_fraction_indels: float = 0.06
    ploidy: int = 2


@dataclass(frozen=True)
class PileupImageOptions:
    width: int = 199
    reference_band_height: int = 5
    base_quality_cap: int = 40
    mapping_quality_cap: int = 60


@dataclass(frozen=True)
class VariantLabelerOptions:
    max_separation: int = 10
    max_group_size: int = 6
    truth_sample: Optional[str] = None
    customized_classes_labeler_info_field_name: str = ""
    customized_classes_labeler_classes_list: tuple = ()


@dataclass(frozen=True)
class RealignerOptions:
    window_padding: int = 16


@dataclass
class TrioOptions:
    """Everything needed to run candidate generation and example encoding end to end.

    ``num_shards == 0`` means unsharded output. Downsample fractions of 0.0
    disable downsampling; otherwise they are the probability to keep a read.
    """

    exclude_contigs: List[str] = field(default_factory=list)
    calling_regions: List[str] = field(default_factory=list)
    exclude_calling_regions: List[str] = field(default_factory=list)
    random_seed: int = 609314161
    n_cores: int = 1

    allele_counter_options: AlleleCounterOptions = field(default_factory=AlleleCounterOptions)
    variant_caller_options_child: VariantCallerOptions = field(default_factory=VariantCallerOptions)
    variant_caller_options_parent1: VariantCallerOptions = field(
        default_factory=VariantCallerOptions
    )
    variant_caller_options_parent2: VariantCallerOptions = field(
        default_factory=VariantCallerOptions
    )
    pic_options: PileupImageOptions = field(default_factory=PileupImageOptions)
    labeler_options: VariantLabelerOptions = field(default_factory=VariantLabelerOptions)
    read_requirements: ReadRequirements = field(default_factory=ReadRequirements)

    reference_filename: str = ""
    reads_filename: str = ""
    reads_parent1_filename: str = ""
    reads_parent2_filename: str = ""
    candidates_filename: str = ""
    examples_filename: str = ""
    confident_regions_filename: str = ""
    truth_variants_filename: str = ""
    run_info_filename: str = ""
    model_name: str = ""

    mode: Mode = Mode.UNSPECIFIED
    min_shared_contigs_basepairs: float = 0.9
    task_id: int = 0
    num_shards: int = 0

    realigner_enabled: bool = False
    realigner_options: RealignerOptions = field(default_factory=RealignerOptions)

    max_reads_per_partition: int = 1500
    downsample_fraction_child: float = 0.0
    downsample_fraction_parents: float = 0.0

    labeler_algorithm: LabelerAlgorithm = LabelerAlgorithm.UNSPECIFIED_LABELER_ALGORITHM
    use_original_quality_scores: bool = False
    select_variant_types: List[str] = field(default_factory=list)
    variant_caller: VariantCaller = VariantCaller.VERY_SENSITIVE_CALLER

    height_parent: int = 40
    height_child: int = 60

    def caller_options(self, role: SampleRole) -> VariantCallerOptions:
        return {
            SampleRole.CHILD: self.variant_caller_options_child,
            SampleRole.PARENT1: self.variant_caller_options_parent1,
            SampleRole.PARENT2: self.variant_caller_options_parent2,
        }[role]

    def downsample_fraction(self, role: SampleRole) -> float:
        if role is SampleRole.CHILD:
            return self.downsample_fraction_child
        return self.downsample_fraction_parents

    def image_height(self, role: SampleRole) -> int:
        if role is SampleRole.CHILD:
            return self.height_child
        return self.height_parent

    def reads_path(self, role: SampleRole) -> str:
        return {
            SampleRole.CHILD: self.reads_filename,
            SampleRole.PARENT1: self.reads_parent1_filename,
            SampleRole.PARENT2: self.reads_parent2_filename,
        }[role]

    def to_jsonable(self) -> Dict[str, Any]:
        d = asdict(self)
        for key, value in d.items():
            if isinstance(value, enum.Enum):
                d[key] = value.name
        return d


def validate_options(options: TrioOptions) -> None:
    """Reject inconsistent options before any partition is processed."""
    if options.num_shards < 0:
        raise ConfigurationError(f"num_shards must be >= 0, got {options.num_shards}")
    if options.num_shards == 0:
        if options.task_id != 0:
            raise ConfigurationError(
                f"task_id={options.task_id} given for an unsharded run (num_shards=0)"
            )
    elif not 0 <= options.task_id < options.num_shards:
        raise ConfigurationError(
            f"task_id={options.task_id} must be in [0, num_shards={options.num_shards})"
        )

    if options.n_cores < 1:
        raise ConfigurationError(f"n_cores must be >= 1, got {options.n_cores}")
    if options.max_reads_per_partition < 0:
        raise ConfigurationError("max_reads_per_partition must be >= 0 (0 disables the cap)")
    if options.allele_counter_options.partition_size <= 0:
        raise ConfigurationError("partition_size must be > 0")

    for name in ("downsample_fraction_child", "downsample_fraction_parents"):
        value = getattr(options, name)
        if not 0.0 <= value <= 1.0:
            raise ConfigurationError(f"{name} must be in [0, 1], got {value}")

    band = options.pic_options.reference_band_height
    for name in ("height_child", "height_parent"):
        value = getattr(options, name)
        if value <= band:
            raise ConfigurationError(
                f"{name}={value} leaves no rows for reads (reference band is {band} rows)"
            )
    if options.pic_options.width <= 0 or options.pic_options.width % 2 == 0:
        raise ConfigurationError("pic_options.width must be a positive odd number")

    if options.variant_caller is not VariantCaller.VERY_SENSITIVE_CALLER:
        raise ConfigurationError(f"Unsupported variant caller: {options.variant_caller.name}")

    unknown = [t for t in options.select_variant_types if t not in VARIANT_TYPES]
    if unknown:
        raise ConfigurationError(
            f"Unknown select_variant_types {unknown}; expected a subset of {list(VARIANT_TYPES)}"
        )

    if not 0.0 <= options.min_shared_contigs_basepairs <= 1.0:
        raise ConfigurationError("min_shared_contigs_basepairs must be in [0, 1]")

    if options.mode is Mode.UNSPECIFIED:
        raise ConfigurationError("mode must be CALLING or TRAINING")
    if options.mode is Mode.TRAINING:
        if options.labeler_algorithm is LabelerAlgorithm.UNSPECIFIED_LABELER_ALGORITHM:
            raise LabelingError("A labeler algorithm is required in TRAINING mode")
        if not options.truth_variants_filename:
            raise ConfigurationError("truth_variants_filename is required in TRAINING mode")
        if not options.confident_regions_filename:
            raise ConfigurationError("confident_regions_filename is required in TRAINING mode")
        if options.labeler_algorithm is LabelerAlgorithm.CUSTOMIZED_CLASSES_LABELER:
            lo = options.labeler_options
            if not lo.customized_classes_labeler_info_field_name:
                raise LabelingError("CUSTOMIZED_CLASSES_LABELER requires an INFO field name")
            if not lo.customized_classes_labeler_classes_list:
                raise LabelingError("CUSTOMIZED_CLASSES_LABELER requires a list of classes")

    logger.debug("Options validated (mode=%s, task %d/%d)", options.mode.name, options.task_id, options.num_shards)
