from __future__ import annotations

from pathlib import Path

import pytest

from xaptr.compare import Comparator, build_distribution, pooled_stddev
from xaptr.config import ComparisonPolicy
from xaptr.errors import ComparisonInputError
from xaptr.model import ComparisonResult, MetricSample, RawResultSet, RunFailure, RunRecord

BASELINE = [100.0, 102.0, 98.0, 101.0, 99.0]
CANDIDATE = [140.0, 138.0, 142.0, 141.0, 139.0]


def make_set(series: dict[str, list[float]], *, source_path: Path | None = None, failed_runs: int = 0) -> RawResultSet:
    n = max((len(v) for v in series.values()), default=0)
    runs = []
    for i in range(n):
        samples = [
            MetricSample(key=k, value=v[i], unit="ms", phase="cold-start") for k, v in series.items() if i < len(v)
        ]
        runs.append(RunRecord(run_index=i, started_at="t", succeeded=True, samples=samples))
    for j in range(failed_runs):
        runs.append(
            RunRecord(
                run_index=n + j,
                started_at="t",
                succeeded=False,
                failure=RunFailure(phase="launch", kind="exit", detail="x"),
                # Older files may keep partial samples on failed runs.
                samples=[MetricSample(key=k, value=1e9, unit="ms", phase="cold-start") for k in series],
            )
        )
    return RawResultSet(
        project_identity="p", configuration="Release", package_name="com.example", created_at="t", runs=runs, source_path=source_path
    )


def by_key(results: list[ComparisonResult]) -> dict[str, ComparisonResult]:
    return {r.key: r for r in results}


def test_distribution_uses_successful_runs_only() -> None:
    d = build_distribution(make_set({"m": BASELINE}, failed_runs=2), "m")
    assert d.n == 5
    assert d.mean == pytest.approx(100.0)
    assert d.stddev == pytest.approx(1.5811, abs=1e-4)
    assert (d.min, d.max) == (98.0, 102.0)
    assert (d.unit, d.phase) == ("ms", "cold-start")


def test_clear_regression() -> None:
    [r] = Comparator().compare(make_set({"cold_start_total_ms": BASELINE}), make_set({"cold_start_total_ms": CANDIDATE}))
    assert r.verdict == "regressed"
    assert r.delta_mean == pytest.approx(40.0)
    assert r.delta_percent == pytest.approx(40.0)
    assert r.p_value is not None and r.p_value < 1e-6
    assert r.polarity == "higher-is-worse"


def test_self_comparison_is_unchanged() -> None:
    raw = make_set({"a": BASELINE, "b": CANDIDATE, "c": [5.0, 5.0, 5.0]})
    results = Comparator().compare(raw, raw)
    assert [r.verdict for r in results] == ["unchanged"] * 3
    assert all(r.delta_mean == 0 for r in results)


def test_same_source_path_is_rejected(tmp_path: Path) -> None:
    p = tmp_path / "raw-results.json"
    with pytest.raises(ComparisonInputError, match="same results file"):
        Comparator().compare(make_set({"a": BASELINE}, source_path=p), make_set({"a": BASELINE}, source_path=p))


def test_swapping_sides_flips_direction_only() -> None:
    b = make_set({"slow": BASELINE, "noise": [10.0, 11.0, 9.0, 10.5], "only_b": [1.0, 2.0]})
    c = make_set({"slow": CANDIDATE, "noise": [10.2, 10.8, 9.1, 10.4], "only_c": [1.0, 2.0]})
    forward = by_key(Comparator().compare(b, c))
    backward = by_key(Comparator().compare(c, b))

    assert forward.keys() == backward.keys()
    flip = {"regressed": "improved", "improved": "regressed"}
    for key, f in forward.items():
        back = backward[key]
        assert back.verdict == flip.get(f.verdict, f.verdict)
        if f.delta_mean is not None:
            assert back.delta_mean == -f.delta_mean
        if f.delta_percent is not None and back.delta_percent is not None:
            assert (f.delta_percent > 0) == (back.delta_percent < 0)


def test_metric_absent_from_one_side() -> None:
    results = by_key(Comparator().compare(make_set({"a": BASELINE, "old": [1.0, 2.0, 3.0]}), make_set({"a": BASELINE, "new": [1.0, 2.0]})))
    assert list(results) == ["a", "new", "old"]
    assert results["new"].verdict == "insufficient-data"
    assert results["new"].note == "absent from baseline"
    assert results["new"].delta_mean is None
    assert results["old"].note == "absent from candidate"


def test_too_few_samples_is_insufficient() -> None:
    [r] = Comparator().compare(make_set({"a": [100.0]}), make_set({"a": [200.0, 201.0, 199.0]}))
    assert r.verdict == "insufficient-data"
    assert r.delta_mean == pytest.approx(100.0)
    assert "fewer than 2 samples" in (r.note or "")


def test_zero_baseline_uses_absolute_floor() -> None:
    b = make_set({"gc_count": [0.0, 0.0, 0.0]})
    c = make_set({"gc_count": [3.0, 3.0, 3.0]})
    [r] = Comparator().compare(b, c)
    assert r.delta_percent is None
    assert r.verdict == "regressed"

    [r2] = Comparator(ComparisonPolicy(min_absolute_delta=5.0)).compare(b, c)
    assert r2.verdict == "unchanged"


def test_small_significant_change_under_floor_is_unchanged() -> None:
    b = make_set({"m": [100.0, 100.1, 99.9, 100.0, 100.05, 99.95]})
    c = make_set({"m": [101.0, 101.1, 100.9, 101.0, 101.05, 100.95]})
    [r] = Comparator().compare(b, c)
    assert r.p_value is not None and r.p_value < 0.05
    assert r.verdict == "unchanged"

    [r2] = Comparator(ComparisonPolicy(min_percent_change=0.5)).compare(b, c)
    assert r2.verdict == "regressed"


def test_noisy_overlap_is_unchanged() -> None:
    [r] = Comparator().compare(make_set({"m": [100.0, 130.0, 90.0, 120.0]}), make_set({"m": [105.0, 125.0, 95.0, 118.0]}))
    assert r.verdict == "unchanged"


def test_lower_is_worse_polarity() -> None:
    policy = ComparisonPolicy(polarities={"fps": "lower-is-worse"})
    [r] = Comparator(policy).compare(make_set({"fps": [60.0, 59.0, 61.0, 60.0]}), make_set({"fps": [45.0, 44.0, 46.0, 45.0]}))
    assert r.polarity == "lower-is-worse"
    assert r.verdict == "regressed"


def test_pooled_stddev_method() -> None:
    policy = ComparisonPolicy(method="pooled-stddev", stddev_multiplier=2.0)
    b, c = make_set({"m": BASELINE}), make_set({"m": CANDIDATE})
    [r] = Comparator(policy).compare(b, c)
    assert r.verdict == "regressed"
    assert r.p_value is None
    assert pooled_stddev(build_distribution(b, "m"), build_distribution(c, "m")) == pytest.approx(1.5811, abs=1e-4)

    [r2] = Comparator(ComparisonPolicy(method="pooled-stddev", stddev_multiplier=50.0)).compare(b, c)
    assert r2.verdict == "unchanged"


def test_constant_samples() -> None:
    [same] = Comparator().compare(make_set({"m": [7.0, 7.0]}), make_set({"m": [7.0, 7.0]}))
    [diff] = Comparator().compare(make_set({"m": [7.0, 7.0]}), make_set({"m": [9.0, 9.0]}))
    assert same.verdict == "unchanged"
    assert diff.verdict == "regressed"
