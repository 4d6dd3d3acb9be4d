from __future__ import annotations

import logging
import math
from pathlib import Path
from typing import Sequence

from mdutils.mdutils import MdUtils  # type: ignore[import-untyped]

from .compare import build_distribution
from .errors import ReportError
from .model import ComparisonResult, MetricDistribution, RawResultSet

logger = logging.getLogger(__name__)

VERDICTS = ("regressed", "improved", "unchanged", "insufficient-data")


def _format_float(v: float | None, digits: int = 3) -> str:
    if v is None or math.isnan(v):
        return "NA"
    return f"{v:.{digits}f}"


def _format_signed(v: float | None, digits: int = 3) -> str:
    if v is None or math.isnan(v):
        return "NA"
    return f"{v:+.{digits}f}"


def _format_p(v: float | None) -> str:
    if v is None or math.isnan(v):
        return "NA"
    if v < 1e-4:
        return f"{v:.2e}"
    return f"{v:.4f}"


def _mean_pm(d: MetricDistribution) -> str:
    if d.n == 0:
        return "NA (n=0)"
    return f"{_format_float(d.mean)} ± {_format_float(d.stddev)} (n={d.n})"


def _escape(text: str) -> str:
    return text.replace("|", "\\|").replace("\n", " ")


def _table(header: list[str], align: list[str], rows: list[list[str]]) -> str:
    lines = [
        "| " + " | ".join(header) + " |",
        "|" + "|".join(align) + "|",
    ]
    for row in rows:
        lines.append("| " + " | ".join(_escape(c) for c in row) + " |")
    return "\n".join(lines)


def _set_description(label: str, raw_set: RawResultSet) -> str:
    lines = [
        f"- {label}: `{raw_set.project_identity}`",
        f"  - configuration: `{raw_set.configuration}`, package: `{raw_set.package_name}`",
        f"  - created at: `{raw_set.created_at}`",
        f"  - successful runs: {len(raw_set.successful_runs)}/{len(raw_set.runs)}",
    ]
    if raw_set.aborted:
        lines.append(f"  - aborted: {raw_set.abort_reason}")
    if raw_set.source_path is not None:
        lines.append(f"  - file: `{raw_set.source_path}`")
    return "\n".join(lines)


def _md_for(output_path: Path, title: str) -> MdUtils:
    try:
        output_path.parent.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        raise ReportError(f"Could not create report directory {output_path.parent}: {e}") from e
    # MdUtils appends the `.md` suffix itself.
    return MdUtils(file_name=str(output_path.with_suffix("")), title=title)


def _write(md: MdUtils, output_path: Path) -> None:
    try:
        md.create_md_file()
    except OSError as e:
        raise ReportError(f"Could not write report {output_path}: {e}") from e


def render_comparison(
    results: Sequence[ComparisonResult],
    output_path: Path,
    *,
    baseline: RawResultSet,
    candidate: RawResultSet,
    logger: logging.Logger = logger,
) -> Path | None:
    """Write the comparison report to `output_path` (a `.md` file).

    Returns None, writing nothing, when there are no metrics to report.
    """
    if not results:
        logger.warning("No metrics to compare; no comparison report written")
        return None

    md = _md_for(output_path, "Performance Comparison")
    md.new_header(level=1, title="Inputs")
    md.new_paragraph(_set_description("Baseline", baseline) + "\n" + _set_description("Candidate", candidate))

    md.new_header(level=1, title="Results")
    rows = [
        [
            r.key,
            r.baseline.unit or r.candidate.unit,
            _mean_pm(r.baseline),
            _mean_pm(r.candidate),
            _format_signed(r.delta_mean),
            _format_signed(r.delta_percent, 2),
            _format_p(r.p_value),
            r.verdict if r.note is None else f"{r.verdict} ({r.note})",
        ]
        for r in results
    ]
    md.new_paragraph(
        _table(
            ["metric", "unit", "baseline mean ± stddev (n)", "candidate mean ± stddev (n)", "delta", "delta %", "p", "verdict"],
            [":---", ":---", "---:", "---:", "---:", "---:", "---:", ":---"],
            rows,
        )
    )

    md.new_header(level=1, title="Summary")
    tally = {v: 0 for v in VERDICTS}
    for r in results:
        tally[r.verdict] += 1
    md.new_paragraph("\n".join(f"- {v}: {tally[v]}" for v in VERDICTS))

    md.new_header(level=1, title="Columns")
    md.new_paragraph(
        "\n".join(
            [
                "- `delta`: candidate mean minus baseline mean, in the metric's unit.",
                "- `delta %`: delta relative to the baseline mean (NA when the baseline mean is 0).",
                "- `p`: two-sided Welch's t-test p-value (NA when not computed).",
                "- `verdict`: direction follows the metric's polarity; changes that are not significant or fall under the minimum change are `unchanged`.",
            ]
        )
    )
    _write(md, output_path)
    logger.info(f"Wrote comparison report: {output_path}")
    return output_path


def render_summary(raw_set: RawResultSet, output_path: Path, *, logger: logging.Logger = logger) -> Path | None:
    """Write a single-set summary (per-metric statistics and per-run status).

    Returns None, writing nothing, when the set holds no metrics.
    """
    keys = sorted(raw_set.metric_keys())
    if not keys:
        logger.warning("No metrics recorded; no summary report written")
        return None

    md = _md_for(output_path, "Performance Run Summary")
    md.new_header(level=1, title="Inputs")
    md.new_paragraph(_set_description("Project", raw_set))

    md.new_header(level=1, title="Metrics")
    rows: list[list[str]] = []
    for key in keys:
        d = build_distribution(raw_set, key)
        rows.append(
            [
                key,
                d.unit,
                d.phase,
                str(d.n),
                _format_float(d.mean),
                _format_float(d.stddev),
                _format_float(d.min),
                _format_float(d.max),
            ]
        )
    md.new_paragraph(
        _table(
            ["metric", "unit", "phase", "n", "mean", "stddev", "min", "max"],
            [":---", ":---", ":---", "---:", "---:", "---:", "---:", "---:"],
            rows,
        )
    )

    md.new_header(level=1, title="Runs")
    run_rows = [
        [
            str(r.run_index),
            "ok" if r.succeeded else "failed",
            str(r.attempts),
            r.failure_reason or "",
            "" if r.managed_profile_artifact_path is None else str(r.managed_profile_artifact_path),
            "" if r.native_profile_artifact_path is None else str(r.native_profile_artifact_path),
        ]
        for r in raw_set.runs
    ]
    md.new_paragraph(
        _table(
            ["run", "status", "attempts", "failure", "managed profile", "native profile"],
            ["---:", ":---", "---:", ":---", ":---", ":---"],
            run_rows,
        )
    )
    _write(md, output_path)
    logger.info(f"Wrote summary report: {output_path}")
    return output_path
