from __future__ import annotations

import datetime as _dt
import json
import logging
from pathlib import Path
from typing import Any, Dict

from jinja2 import Template

from .plotting import plot_candidates_per_partition, plot_label_classes, plot_reads_per_sample

logger = logging.getLogger(__name__)


_REPORT_TEMPLATE = Template(
    """<!doctype html>
<html lang="en">
<head>
  <meta charset="utf-8">
  <title>TrioPileup Report</title>
  <style>
    body { font-family: Arial, Helvetica, sans-serif; margin: 24px; }
    code, pre { background: #f6f8fa; padding: 2px 4px; border-radius: 4px; }
    pre { padding: 12px; overflow-x: auto; }
    h1, h2, h3 { margin-top: 1.2em; }
    table { border-collapse: collapse; margin-top: 0.6em; }
    th, td { border: 1px solid #ddd; padding: 8px; }
    th { background: #f2f2f2; text-align: left; }
    .grid { display: grid; grid-template-columns: 1fr 1fr; gap: 16px; }
    .card { border: 1px solid #ddd; border-radius: 8px; padding: 12px; }
    .small { color: #666; font-size: 0.9em; }
    img { max-width: 100%; height: auto; border: 1px solid #eee; border-radius: 6px; }
  </style>
</head>
<body>

<h1>TrioPileup Report</h1>
<p class="small">Generated: {{ generated_at }}</p>

<h2>Run summary</h2>
<div class="grid">
  <div class="card">
    <h3>Inputs</h3>
    <table>
      <tr><th>Mode</th><td>{{ options.mode }}</td></tr>
      <tr><th>Reference</th><td><code>{{ options.reference_filename }}</code></td></tr>
      <tr><th>Child reads</th><td><code>{{ options.reads_filename }}</code></td></tr>
      <tr><th>Parent 1 reads</th><td><code>{{ options.reads_parent1_filename or "-" }}</code></td></tr>
      <tr><th>Parent 2 reads</th><td><code>{{ options.reads_parent2_filename or "-" }}</code></td></tr>
      <tr><th>Task</th><td>{{ options.task_id }} / {{ options.num_shards }}</td></tr>
    </table>
  </div>
  <div class="card">
    <h3>Resources</h3>
    <table>
      <tr><th>Wall time (s)</th><td>{{ resources.wall_seconds }}</td></tr>
      <tr><th>Peak memory (MB)</th><td>{{ resources.peak_memory_mb }}</td></tr>
      <tr><th>Cores</th><td>{{ resources.n_cores }}</td></tr>
      <tr><th>Partitions processed</th><td>{{ resources.partitions_processed }} / {{ resources.partitions_total }}</td></tr>
      <tr><th>Partitions skipped</th><td>{{ resources.partitions_skipped }}</td></tr>
      <tr><th>Realignment fallbacks</th><td>{{ resources.realignment_fallbacks }}</td></tr>
    </table>
  </div>
</div>

<h2>Candidates</h2>
<table>
  <tr><th>Candidates</th><td>{{ stats.candidates or 0 }}</td></tr>
  <tr><th>Examples</th><td>{{ stats.examples or 0 }}</td></tr>
  <tr><th>SNPs</th><td>{{ stats["snps"] or 0 }}</td></tr>
  <tr><th>Indels</th><td>{{ stats["indels"] or 0 }}</td></tr>
  <tr><th>Multi-allelic</th><td>{{ stats["multi-allelics"] or 0 }}</td></tr>
</table>

{% if labeling %}
<h2>Labeling</h2>
<table>
  <tr><th>Algorithm</th><td>{{ options.labeler_algorithm }}</td></tr>
  <tr><th>Candidates seen</th><td>{{ labeling.n_candidates }}</td></tr>
  <tr><th>Outside confident regions</th><td>{{ labeling.n_non_confident }}</td></tr>
  <tr><th>Labeled</th><td>{{ labeling.n_labeled }}</td></tr>
  <tr><th>Matched a truth record</th><td>{{ labeling.n_truth_matched }}</td></tr>
  <tr><th>Haplotype fallbacks</th><td>{{ labeling.n_haplotype_fallbacks }}</td></tr>
</table>
{% endif %}

<h2>Plots</h2>
<div class="grid">
  <div class="card">
    <h3>Read observations per trio member</h3>
    <p class="small">Summed over partitions; reads spanning a partition boundary count once per partition.</p>
    <img src="{{ plots.reads_per_sample }}" alt="reads per sample">
  </div>
  <div class="card">
    <h3>Candidates per partition</h3>
    <img src="{{ plots.candidates_per_partition }}" alt="candidates per partition">
  </div>
  {% if plots.label_classes %}
  <div class="card">
    <h3>Label classes</h3>
    <img src="{{ plots.label_classes }}" alt="label classes">
  </div>
  {% endif %}
</div>

{% if skipped %}
<h2>Skipped partitions</h2>
<table>
  <tr><th>Partition</th><th>Error</th></tr>
  {% for s in skipped %}
  <tr><td><code>{{ s.partition }}</code></td><td>{{ s.error }}</td></tr>
  {% endfor %}
</table>
{% endif %}

<h2>Outputs</h2>
<ul>
  {% for p in outputs.examples %}
  <li><code>{{ p }}</code></li>
  {% endfor %}
  {% if outputs.candidates %}
  <li><code>{{ outputs.candidates }}</code> (candidate VCF)</li>
  {% endif %}
</ul>

<hr>
<p class="small">TrioPileup {{ version }}</p>
</body>
</html>"""
)


def render_report(*, run_info: Dict[str, Any], outdir: str | Path) -> Path:
    """Render plots and ``report.html`` for one run-info dictionary."""
    outdir = Path(outdir)
    outdir.mkdir(parents=True, exist_ok=True)

    stats = run_info.get("stats", {})
    labeling = run_info.get("labeling_metrics")
    plots = {
        "reads_per_sample": "reads_per_sample.png",
        "candidates_per_partition": "candidates_per_partition.png",
    }
    plot_reads_per_sample(stats=stats, out_png=outdir / plots["reads_per_sample"])
    plot_candidates_per_partition(
        per_partition=run_info.get("per_partition", []),
        out_png=outdir / plots["candidates_per_partition"],
    )
    if labeling and labeling.get("class_counts"):
        plots["label_classes"] = "label_classes.png"
        plot_label_classes(class_counts=labeling["class_counts"], out_png=outdir / plots["label_classes"])

    resources = run_info.get("resource_metrics", {})
    html = _REPORT_TEMPLATE.render(
        generated_at=_dt.datetime.now().isoformat(timespec="seconds"),
        version=run_info.get("version", ""),
        options=run_info.get("options", {}),
        resources=resources,
        stats=stats,
        labeling=labeling,
        skipped=resources.get("skipped", []),
        outputs=run_info.get("outputs", {"examples": []}),
        plots=plots,
    )

    out_path = outdir / "report.html"
    out_path.write_text(html, encoding="utf-8")
    logger.info("Report written to %s", out_path)
    return out_path


def load_run_info(path: str | Path) -> Dict[str, Any]:
    with open(path, "rt", encoding="utf-8") as f:
        return json.load(f)
