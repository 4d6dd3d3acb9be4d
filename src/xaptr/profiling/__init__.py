"""
Profiler attach/detach helpers.

Each profiler is driven through `adb` and yields an artifact file in the run's
directory. The profile formats themselves are opaque to xaptr; only the
artifact paths end up in the raw results.
"""
