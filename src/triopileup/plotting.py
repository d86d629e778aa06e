from __future__ import annotations

import logging
from pathlib import Path
from typing import Dict, List, Mapping

import matplotlib.pyplot as plt

logger = logging.getLogger(__name__)


def plot_candidates_per_partition(
    *,
    per_partition: List[Mapping[str, object]],
    out_png: str | Path,
    title: str = "Candidates per partition",
) -> None:
    out_png = Path(out_png)
    out_png.parent.mkdir(parents=True, exist_ok=True)

    candidates = [int(p.get("candidates", 0)) for p in per_partition]
    examples = [int(p.get("examples", 0)) for p in per_partition]
    xs = list(range(len(per_partition)))

    plt.figure()
    plt.plot(xs, candidates, label="candidates")
    plt.plot(xs, examples, label="examples")
    plt.xlabel("Partition index")
    plt.ylabel("Count")
    plt.title(title)
    plt.legend()
    plt.tight_layout()
    plt.savefig(out_png, dpi=160)
    plt.close()


def plot_label_classes(
    *,
    class_counts: Mapping[str, int],
    out_png: str | Path,
    title: str = "Label classes",
) -> None:
    out_png = Path(out_png)
    out_png.parent.mkdir(parents=True, exist_ok=True)

    labels = sorted(class_counts, key=int)
    values = [int(class_counts[k]) for k in labels]

    plt.figure()
    plt.bar([f"class {k}" for k in labels], values)
    plt.ylabel("Example count")
    plt.title(title)
    plt.tight_layout()
    plt.savefig(out_png, dpi=160)
    plt.close()


def plot_reads_per_sample(
    *,
    stats: Mapping[str, int],
    out_png: str | Path,
    title: str = "Read observations per trio member",
) -> None:
    """Stacked bars of reads used, capped out, downsampled and filtered per sample.

    Counts are summed over partitions, so a read spanning two partitions counts twice.
    """
    out_png = Path(out_png)
    out_png.parent.mkdir(parents=True, exist_ok=True)

    roles = ["parent1", "child", "parent2"]
    layers: Dict[str, List[int]] = {
        "used": [int(stats.get(f"reads_{r}", 0)) for r in roles],
        "capped out": [int(stats.get(f"reads_capped_out_{r}", 0)) for r in roles],
        "downsampled out": [int(stats.get(f"reads_downsampled_out_{r}", 0)) for r in roles],
        "failed requirements": [int(stats.get(f"reads_failed_requirements_{r}", 0)) for r in roles],
    }

    plt.figure()
    bottom = [0] * len(roles)
    for name, values in layers.items():
        plt.bar(roles, values, bottom=bottom, label=name)
        bottom = [b + v for b, v in zip(bottom, values)]
    plt.ylabel("Read observations (summed over partitions)")
    plt.title(title)
    plt.legend()
    plt.tight_layout()
    plt.savefig(out_png, dpi=160)
    plt.close()
