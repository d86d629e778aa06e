"""Training labels for trio candidates.

Three algorithms share one contract: given the confident candidates of a
partition, the truth context and the partition reference, return one
:class:`~triopileup.models.Label` per candidate (same order).

- positional: a candidate takes the genotype of the truth record starting at
  the same position, after both are expressed over a common reference allele.
- haplotype: nearby candidates and truth variants are grouped; the cheapest
  candidate genotype assignment whose two haplotypes reproduce the truth
  haplotypes wins. Groups that cannot be matched fall back to the positional
  rule.
- customized classes: the class is the index of a truth INFO value in a
  user-supplied class list.
"""

from __future__ import annotations

import itertools
import logging
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Sequence, Set, Tuple

from .errors import LabelingError
from .models import CandidateVariant, Label, TruthVariant
from .options import LabelerAlgorithm, VariantLabelerOptions
from .reference import ReferenceWindow
from .truth import TruthContext

logger = logging.getLogger(__name__)

# Upper bound on candidate phasings tried for one haplotype group.
_MAX_ENUMERATION = 1 << 16


@dataclass
class LabelingMetrics:
    n_candidates: int = 0
    n_non_confident: int = 0
    n_labeled: int = 0
    n_truth_matched: int = 0
    n_haplotype_fallbacks: int = 0
    class_counts: Dict[int, int] = field(default_factory=dict)

    def record(self, label: Label) -> None:
        self.n_labeled += 1
        if label.truth_id is not None:
            self.n_truth_matched += 1
        self.class_counts[label.label_class] = self.class_counts.get(label.label_class, 0) + 1

    def merge(self, other: "LabelingMetrics") -> None:
        self.n_candidates += other.n_candidates
        self.n_non_confident += other.n_non_confident
        self.n_labeled += other.n_labeled
        self.n_truth_matched += other.n_truth_matched
        self.n_haplotype_fallbacks += other.n_haplotype_fallbacks
        for k, v in other.class_counts.items():
            self.class_counts[k] = self.class_counts.get(k, 0) + v

    def to_dict(self) -> Dict[str, object]:
        return {
            "n_candidates": self.n_candidates,
            "n_non_confident": self.n_non_confident,
            "n_labeled": self.n_labeled,
            "n_truth_matched": self.n_truth_matched,
            "n_haplotype_fallbacks": self.n_haplotype_fallbacks,
            "class_counts": {str(k): v for k, v in sorted(self.class_counts.items())},
        }


def _extend(ref: str, alts: Sequence[str], common_ref: str) -> List[str]:
    tail = common_ref[len(ref):]
    return [a + tail for a in alts]


def match_alleles(candidate: CandidateVariant, truth: TruthVariant) -> Optional[Dict[int, int]]:
    """Map truth allele indices to candidate allele indices.

    Both variants are rewritten over the longer of their two reference alleles.
    Truth alternates the candidate does not carry map to 0 (reference).
    Returns None when the variants cannot be compared (different start, or
    neither reference allele is a prefix of the other).
    """
    if candidate.start != truth.start:
        return None
    cr, tr = candidate.ref, truth.ref
    if cr.startswith(tr):
        common = cr
    elif tr.startswith(cr):
        common = tr
    else:
        return None
    c_alts = _extend(cr, candidate.alts, common)
    t_alts = _extend(tr, truth.alts, common)
    mapping = {0: 0}
    for i, alt in enumerate(t_alts, start=1):
        mapping[i] = c_alts.index(alt) + 1 if alt in c_alts else 0
    return mapping


def genotype_class(genotype: Sequence[int]) -> int:
    """Number of alternate alleles in a diploid genotype (0, 1 or 2)."""
    return min(sum(1 for g in genotype if g > 0), 2)


def _diploid(genotype: Sequence[int]) -> Tuple[int, int]:
    if len(genotype) == 1:
        return (genotype[0], genotype[0])
    return (genotype[0], genotype[1])


def _positional(
    candidate: CandidateVariant, truths: Sequence[TruthVariant]
) -> Tuple[Tuple[int, int], Optional[TruthVariant]]:
    for t in truths:
        mapping = match_alleles(candidate, t)
        if mapping is None:
            continue
        gt = tuple(sorted(mapping.get(g, 0) for g in _diploid(t.genotype)))
        return (gt[0], gt[1]), t
    return (0, 0), None


def _genotype_label(
    gt: Tuple[int, int], truth: Optional[TruthVariant], algorithm: LabelerAlgorithm
) -> Label:
    return Label(
        label_class=genotype_class(gt),
        algorithm=algorithm,
        genotype=gt,
        truth_id=truth.record_id if truth is not None else None,
    )


def label_positional(
    candidates: Sequence[CandidateVariant],
    truth: TruthContext,
    options: VariantLabelerOptions,
    ref: ReferenceWindow,
    metrics: LabelingMetrics,
) -> List[Label]:
    out: List[Label] = []
    for c in candidates:
        gt, t = _positional(c, truth.overlapping(c.contig, c.start, c.start + 1))
        out.append(_genotype_label(gt, t, LabelerAlgorithm.POSITIONAL_LABELER))
    return out


def _haplotype(
    ref_seq: str, window_start: int, edits: Sequence[Tuple[int, str, str]]
) -> Optional[str]:
    """Apply ``(start, ref, alt)`` edits to the window; None if two edits overlap."""
    pieces: List[str] = []
    cursor = window_start
    for start, ref, alt in sorted(edits):
        if start < cursor:
            return None
        pieces.append(ref_seq[cursor - window_start : start - window_start])
        pieces.append(alt)
        cursor = start + len(ref)
    pieces.append(ref_seq[cursor - window_start :])
    return "".join(pieces)


def _truth_haplotype_pairs(
    truths: Sequence[TruthVariant], ref_seq: str, window_start: int
) -> Set[Tuple[str, str]]:
    options = []
    for t in truths:
        a, b = _diploid(t.genotype)
        options.append([(a, b)] if a == b else [(a, b), (b, a)])
    pairs: Set[Tuple[str, str]] = set()
    for phasing in itertools.product(*options):
        haps = []
        for side in (0, 1):
            edits = [
                (t.start, t.ref, t.alts[gt[side] - 1])
                for t, gt in zip(truths, phasing)
                if gt[side] > 0 and gt[side] <= len(t.alts)
            ]
            haps.append(_haplotype(ref_seq, window_start, edits))
        if haps[0] is not None and haps[1] is not None:
            pairs.add((min(haps), max(haps)))
    return pairs


def _match_group(
    candidates: Sequence[CandidateVariant],
    truths: Sequence[TruthVariant],
    ref: ReferenceWindow,
) -> Optional[List[Tuple[int, int]]]:
    window_start = min([c.start for c in candidates] + [t.start for t in truths])
    window_end = max([c.end for c in candidates] + [t.end for t in truths])
    ref_seq = ref.bases(window_start, window_end)
    targets = _truth_haplotype_pairs(truths, ref_seq, window_start)
    if not targets:
        return None

    # Equal-cost assignments are ranked by how many candidates they label
    # differently from the positional rule.
    positional = [
        _positional(c, [t for t in truths if t.start == c.start])[0] for c in candidates
    ]
    per_candidate = [
        list(itertools.product(range(len(c.alts) + 1), repeat=2)) for c in candidates
    ]
    best: Optional[List[Tuple[int, int]]] = None
    best_cost = None
    for assignment in itertools.product(*per_candidate):
        cost = (
            sum((a > 0) + (b > 0) for a, b in assignment),
            sum(tuple(sorted(gt)) != pos for gt, pos in zip(assignment, positional)),
        )
        if best_cost is not None and cost >= best_cost:
            continue
        haps = []
        for side in (0, 1):
            edits = [
                (c.start, c.ref, c.alts[gt[side] - 1])
                for c, gt in zip(candidates, assignment)
                if gt[side] > 0
            ]
            haps.append(_haplotype(ref_seq, window_start, edits))
        if haps[0] is None or haps[1] is None:
            continue
        if (min(haps), max(haps)) in targets:
            best = [tuple(sorted(gt)) for gt in assignment]
            best_cost = cost
    return best


def _groups(
    candidates: Sequence[CandidateVariant], truths: Sequence[TruthVariant], max_separation: int
) -> List[Tuple[List[CandidateVariant], List[TruthVariant]]]:
    events = sorted(
        [(c.start, c.end, 0, i) for i, c in enumerate(candidates)]
        + [(t.start, t.end, 1, i) for i, t in enumerate(truths)]
    )
    groups: List[Tuple[List[CandidateVariant], List[TruthVariant]]] = []
    group_end = None
    for start, end, kind, i in events:
        if group_end is None or start - group_end > max_separation:
            groups.append(([], []))
            group_end = end
        else:
            group_end = max(group_end, end)
        if kind == 0:
            groups[-1][0].append(candidates[i])
        else:
            groups[-1][1].append(truths[i])
    return groups


def label_haplotype(
    candidates: Sequence[CandidateVariant],
    truth: TruthContext,
    options: VariantLabelerOptions,
    ref: ReferenceWindow,
    metrics: LabelingMetrics,
) -> List[Label]:
    if not candidates:
        return []
    algorithm = LabelerAlgorithm.HAPLOTYPE_LABELER
    contig = candidates[0].contig
    lo = min(c.start for c in candidates) - options.max_separation
    hi = max(c.end for c in candidates) + options.max_separation
    truths = [
        t
        for t in truth.overlapping(contig, lo, hi)
        if t.is_variant and truth.is_confident(contig, t.start, t.end)
    ]

    labels: Dict[int, Label] = {}
    for group_candidates, group_truths in _groups(candidates, truths, options.max_separation):
        if not group_candidates:
            continue
        matched = None
        if not group_truths:
            matched = [(0, 0)] * len(group_candidates)
        elif len(group_candidates) <= options.max_group_size and len(group_truths) <= options.max_group_size:
            n_options = 1
            for c in group_candidates:
                n_options *= (len(c.alts) + 1) ** 2
            if n_options <= _MAX_ENUMERATION:
                matched = _match_group(group_candidates, group_truths, ref)

        if matched is None:
            metrics.n_haplotype_fallbacks += len(group_candidates)
            logger.debug(
                "Haplotype match failed for %d candidates near %s:%d; using positional labels",
                len(group_candidates),
                contig,
                group_candidates[0].start + 1,
            )
            for c in group_candidates:
                gt, t = _positional(c, group_truths)
                labels[id(c)] = _genotype_label(gt, t, algorithm)
            continue

        for c, gt in zip(group_candidates, matched):
            same_start = [t for t in group_truths if t.start == c.start]
            t = same_start[0] if same_start and gt != (0, 0) else None
            labels[id(c)] = _genotype_label((gt[0], gt[1]), t, algorithm)
    return [labels[id(c)] for c in candidates]


def label_customized_classes(
    candidates: Sequence[CandidateVariant],
    truth: TruthContext,
    options: VariantLabelerOptions,
    ref: ReferenceWindow,
    metrics: LabelingMetrics,
) -> List[Label]:
    field_name = options.customized_classes_labeler_info_field_name
    classes = list(options.customized_classes_labeler_classes_list)
    out: List[Label] = []
    for c in candidates:
        at_site = [t for t in truth.overlapping(c.contig, c.start, c.start + 1) if t.start == c.start]
        if not at_site:
            out.append(Label(label_class=0, algorithm=LabelerAlgorithm.CUSTOMIZED_CLASSES_LABELER))
            continue
        # The class comes from the truth record at the site whatever its
        # genotype or alleles.
        t = at_site[0]
        gt: Optional[Tuple[int, int]] = None
        if match_alleles(c, t) is not None:
            gt = _positional(c, [t])[0]
        value = t.info.get(field_name)
        if isinstance(value, (list, tuple)):
            value = value[0] if value else None
        if value is None:
            raise LabelingError(f"Truth record {t.record_id} has no INFO/{field_name} value")
        if str(value) not in classes:
            raise LabelingError(
                f"Truth record {t.record_id} has {field_name}={value!r}, not one of {classes}"
            )
        out.append(
            Label(
                label_class=classes.index(str(value)),
                algorithm=LabelerAlgorithm.CUSTOMIZED_CLASSES_LABELER,
                genotype=gt,
                truth_id=t.record_id,
            )
        )
    return out


LabelFn = Callable[
    [Sequence[CandidateVariant], TruthContext, VariantLabelerOptions, ReferenceWindow, LabelingMetrics],
    List[Label],
]

LABELERS: Dict[LabelerAlgorithm, LabelFn] = {
    LabelerAlgorithm.POSITIONAL_LABELER: label_positional,
    LabelerAlgorithm.HAPLOTYPE_LABELER: label_haplotype,
    LabelerAlgorithm.CUSTOMIZED_CLASSES_LABELER: label_customized_classes,
}


class VariantLabeler:
    """Attach labels to candidates inside confident regions."""

    def __init__(
        self,
        algorithm: LabelerAlgorithm,
        options: VariantLabelerOptions,
        truth: TruthContext,
    ) -> None:
        if algorithm not in LABELERS:
            raise LabelingError(f"No labeler for algorithm {algorithm.name}")
        self.algorithm = algorithm
        self.options = options
        self.truth = truth
        self._fn = LABELERS[algorithm]

    def label(
        self,
        candidates: Sequence[CandidateVariant],
        ref: ReferenceWindow,
        metrics: Optional[LabelingMetrics] = None,
    ) -> List[Tuple[CandidateVariant, Optional[Label]]]:
        """Return ``(candidate, label)`` pairs; non-confident candidates get ``None``."""
        if metrics is None:
            metrics = LabelingMetrics()
        metrics.n_candidates += len(candidates)
        confident = [c for c in candidates if self.truth.is_confident(c.contig, c.start, c.end)]
        metrics.n_non_confident += len(candidates) - len(confident)

        labels = self._fn(confident, self.truth, self.options, ref, metrics)
        by_id = {id(c): lab for c, lab in zip(confident, labels)}
        out: List[Tuple[CandidateVariant, Optional[Label]]] = []
        for c in candidates:
            lab = by_id.get(id(c))
            if lab is not None:
                metrics.record(lab)
            out.append((c, lab))
        return out
