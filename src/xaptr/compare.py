"""
Comparison engine: two raw result sets → one verdict per metric key.

Significance and the magnitude floor are both symmetric in the two sides, so
swapping baseline and candidate only flips the direction of a verdict.
"""

from __future__ import annotations

import logging
import math

import numpy as np
from scipy import stats

from .config import ComparisonPolicy
from .errors import ComparisonInputError
from .model import ComparisonResult, MetricDistribution, RawResultSet, Verdict

logger = logging.getLogger(__name__)


def build_distribution(raw_set: RawResultSet, key: str, *, unit: str = "", phase: str = "") -> MetricDistribution:
    """Distribution of `key` over the set's succeeded runs.

    `unit`/`phase` are fallbacks for when no succeeded run carries the key.
    """
    values: list[float] = []
    for run in raw_set.successful_runs:
        s = run.sample(key)
        if s is None:
            continue
        values.append(s.value)
        unit, phase = s.unit, s.phase

    if not values:
        return MetricDistribution(
            key=key, unit=unit, phase=phase, n=0, mean=math.nan, stddev=0.0, min=math.nan, max=math.nan, values=()
        )
    arr = np.asarray(values, dtype=float)
    return MetricDistribution(
        key=key,
        unit=unit,
        phase=phase,
        n=len(values),
        mean=float(np.mean(arr)),
        stddev=float(np.std(arr, ddof=1)) if len(values) > 1 else 0.0,
        min=float(np.min(arr)),
        max=float(np.max(arr)),
        values=tuple(values),
    )


def _sample_metadata(raw_set: RawResultSet, key: str) -> tuple[str, str]:
    for run in raw_set.runs:
        s = run.sample(key)
        if s is not None:
            return s.unit, s.phase
    return "", ""


def pooled_stddev(a: MetricDistribution, b: MetricDistribution) -> float:
    dof = a.n + b.n - 2
    if dof <= 0:
        return 0.0
    return math.sqrt(((a.n - 1) * a.stddev**2 + (b.n - 1) * b.stddev**2) / dof)


class Comparator:
    def __init__(self, policy: ComparisonPolicy | None = None, *, logger: logging.Logger = logger) -> None:
        self.policy = policy if policy is not None else ComparisonPolicy()
        self.policy.validate()
        self.logger = logger

    def compare(self, baseline: RawResultSet, candidate: RawResultSet) -> list[ComparisonResult]:
        """Compare every metric key present in either set, sorted by key.

        Raises ComparisonInputError when both sets were loaded from the same file.
        """
        if baseline.source_path is not None and baseline.source_path == candidate.source_path:
            raise ComparisonInputError(f"Baseline and candidate are the same results file: {baseline.source_path}")

        keys = sorted(set(baseline.metric_keys()) | set(candidate.metric_keys()))
        results: list[ComparisonResult] = []
        for key in keys:
            unit, phase = _sample_metadata(baseline, key)
            if not unit:
                unit, phase = _sample_metadata(candidate, key)
            b = build_distribution(baseline, key, unit=unit, phase=phase)
            c = build_distribution(candidate, key, unit=unit, phase=phase)
            result = self._compare_metric(key, b, c)
            self.logger.debug(f"{key}: {result.verdict} (delta={result.delta_mean}, p={result.p_value})")
            results.append(result)

        tally: dict[str, int] = {}
        for r in results:
            tally[r.verdict] = tally.get(r.verdict, 0) + 1
        self.logger.info(
            f"Compared {len(results)} metric(s): " + ", ".join(f"{v}={n}" for v, n in sorted(tally.items()))
        )
        return results

    def _compare_metric(self, key: str, b: MetricDistribution, c: MetricDistribution) -> ComparisonResult:
        policy = self.policy
        polarity = policy.polarity_for(key)

        delta_mean: float | None = None
        delta_percent: float | None = None
        if b.n > 0 and c.n > 0:
            delta_mean = c.mean - b.mean
            delta_percent = None if b.mean == 0 else delta_mean / b.mean * 100.0

        if b.n < policy.min_samples or c.n < policy.min_samples:
            if b.n == 0:
                note = "absent from baseline"
            elif c.n == 0:
                note = "absent from candidate"
            else:
                note = f"fewer than {policy.min_samples} samples (baseline n={b.n}, candidate n={c.n})"
            return ComparisonResult(
                key=key,
                baseline=b,
                candidate=c,
                delta_mean=delta_mean,
                delta_percent=delta_percent,
                verdict="insufficient-data",
                polarity=polarity,
                note=note,
            )

        assert delta_mean is not None
        significant, p_value = self._significant(b, c, delta_mean)
        verdict: Verdict = "unchanged"
        if significant and self._above_floor(b, c, delta_mean):
            worse = delta_mean > 0 if polarity == "higher-is-worse" else delta_mean < 0
            verdict = "regressed" if worse else "improved"
        return ComparisonResult(
            key=key,
            baseline=b,
            candidate=c,
            delta_mean=delta_mean,
            delta_percent=delta_percent,
            verdict=verdict,
            polarity=polarity,
            p_value=p_value,
        )

    def _significant(self, b: MetricDistribution, c: MetricDistribution, delta: float) -> tuple[bool, float | None]:
        policy = self.policy
        if policy.method == "pooled-stddev":
            return abs(delta) > policy.stddev_multiplier * pooled_stddev(b, c), None

        if b.stddev == 0 and c.stddev == 0:
            # The t statistic is undefined; identical constants are the same, different ones are not.
            return delta != 0, (0.0 if delta != 0 else 1.0)
        p = float(stats.ttest_ind(c.values, b.values, equal_var=False).pvalue)
        if math.isnan(p):
            return False, None
        return p < policy.alpha, p

    def _above_floor(self, b: MetricDistribution, c: MetricDistribution, delta: float) -> bool:
        if delta == 0:
            return False
        if b.mean == 0 or c.mean == 0:
            return abs(delta) >= self.policy.min_absolute_delta
        scale = max(abs(b.mean), abs(c.mean))
        return abs(delta) / scale * 100.0 >= self.policy.min_percent_change
