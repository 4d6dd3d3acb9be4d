from __future__ import annotations


class XaptrError(Exception):
    """Base class for fatal xaptr errors (converted to exit code 1 by the CLI)."""


class ConfigurationError(XaptrError):
    """Bad or missing project, invalid repetition count, malformed config file."""


class OrchestratorFailure(XaptrError):
    """No usable data from a perf invocation (zero successful runs) or persistence failed."""


class ComparisonInputError(XaptrError):
    """Missing directory, missing raw results file, or the same set given twice."""


class RawResultsFormatError(ComparisonInputError):
    """A raw results file exists but cannot be parsed or fails schema validation."""


class DuplicateMetricError(XaptrError):
    """A run produced two samples with the same key."""

    def __init__(self, keys: list[str]) -> None:
        self.keys = keys
        super().__init__(f"duplicate metric key(s): {', '.join(keys)}")


class ReportError(XaptrError):
    """A markdown report could not be written."""
