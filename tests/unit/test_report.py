from __future__ import annotations

from pathlib import Path

import pytest

from xaptr.compare import Comparator
from xaptr.errors import ReportError
from xaptr.model import MetricSample, RawResultSet, RunFailure, RunRecord
from xaptr.report import render_comparison, render_summary


def _set(values: list[float], *, created_at: str, failed: bool = False) -> RawResultSet:
    runs = [
        RunRecord(
            run_index=i,
            started_at="t",
            succeeded=True,
            samples=[
                MetricSample(key="cold_start_total_ms", value=v, unit="ms", phase="cold-start"),
                MetricSample(key="steady_state_pss_bytes", value=40_000_000 + v, unit="bytes", phase="steady-state"),
            ],
        )
        for i, v in enumerate(values)
    ]
    if failed:
        runs.append(
            RunRecord(
                run_index=len(runs),
                started_at="t",
                succeeded=False,
                failure=RunFailure(phase="deploy", kind="exit", detail="adb install exited with code 1: Failure [X|Y]"),
            )
        )
    return RawResultSet(
        project_identity="/src/App/App.csproj",
        configuration="Release",
        package_name="com.example.app",
        created_at=created_at,
        runs=runs,
    )


BASELINE = _set([100.0, 102.0, 98.0, 101.0, 99.0], created_at="2026-01-01T00:00:00.000Z")
CANDIDATE = _set([140.0, 138.0, 142.0, 141.0, 139.0], created_at="2026-01-02T00:00:00.000Z", failed=True)


def test_render_comparison_writes_table_and_tally(tmp_path: Path) -> None:
    results = Comparator().compare(BASELINE, CANDIDATE)
    out = render_comparison(results, tmp_path / "compare-results" / "comparison.md", baseline=BASELINE, candidate=CANDIDATE)

    assert out == tmp_path / "compare-results" / "comparison.md"
    text = out.read_text()
    assert "Performance Comparison" in text
    assert "| cold_start_total_ms | ms | 100.000 ± 1.581 (n=5) | 140.000 ± 1.581 (n=5) | +40.000 | +40.00 |" in text
    assert "- regressed: 1" in text
    assert "- unchanged: 1" in text
    assert "successful runs: 5/6" in text
    assert "2026-01-02T00:00:00.000Z" in text


def test_render_comparison_is_deterministic(tmp_path: Path) -> None:
    results = Comparator().compare(BASELINE, CANDIDATE)
    a = render_comparison(results, tmp_path / "a" / "comparison.md", baseline=BASELINE, candidate=CANDIDATE)
    b = render_comparison(results, tmp_path / "b" / "comparison.md", baseline=BASELINE, candidate=CANDIDATE)
    assert a is not None and b is not None
    assert a.read_text() == b.read_text()


def test_render_comparison_nothing_to_report(tmp_path: Path) -> None:
    out = tmp_path / "comparison.md"
    assert render_comparison([], out, baseline=BASELINE, candidate=CANDIDATE) is None
    assert not out.exists()


def test_render_summary(tmp_path: Path) -> None:
    out = render_summary(CANDIDATE, tmp_path / "report.md")
    assert out is not None
    text = out.read_text()
    assert "Performance Run Summary" in text
    assert "| cold_start_total_ms | ms | cold-start | 5 | 140.000 | 1.581 | 138.000 | 142.000 |" in text
    assert "| 5 | failed | 1 | deploy-exit: adb install exited with code 1: Failure [X\\|Y] |" in text


def test_render_summary_without_metrics(tmp_path: Path) -> None:
    empty = RawResultSet(project_identity="p", configuration="Release", package_name="x", created_at="t")
    assert render_summary(empty, tmp_path / "report.md") is None
    assert not (tmp_path / "report.md").exists()


def test_render_summary_unwritable_location_raises_report_error(tmp_path: Path) -> None:
    blocker = tmp_path / "blocker"
    blocker.write_text("")
    with pytest.raises(ReportError, match="blocker"):
        render_summary(CANDIDATE, blocker / "sub" / "report.md")
