"""Performance-test harness for Xamarin/.NET Android apps.

`xaptr perf` builds, deploys and cold-launches an app N times, collecting
timing and memory metrics (and optional profiler artifacts) into a raw
results file. `xaptr compare` turns two such files into a per-metric
regressed/improved/unchanged report.
"""

from __future__ import annotations
