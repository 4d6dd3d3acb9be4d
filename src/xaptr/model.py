from __future__ import annotations

from datetime import datetime, timezone
from pathlib import Path
from typing import TYPE_CHECKING, Any, Literal, cast

import attrs

from .errors import DuplicateMetricError

if TYPE_CHECKING:
    from .process import CommandResult

Unit = Literal["ms", "bytes", "count"]
Phase = Literal["build", "install", "launch", "cold-start", "steady-state", "custom"]
FailurePhase = Literal["build", "deploy", "launch", "profiler", "collect", "orchestrator"]
FailureKind = Literal["exit", "timeout", "cancelled", "error", "skipped"]
Polarity = Literal["higher-is-worse", "lower-is-worse"]
Verdict = Literal["improved", "regressed", "unchanged", "insufficient-data"]

POLARITIES: tuple[str, ...] = ("higher-is-worse", "lower-is-worse")

SCHEMA_VERSION = "1.0.0"


def now_rfc3339() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def _optional_path(v: Any) -> Path | None:
    if v is None or v == "":
        return None
    return Path(v)


@attrs.define(frozen=True, slots=True)
class MetricSample:
    key: str
    value: float = attrs.field(converter=float)
    unit: Unit
    phase: Phase

    def to_dict(self) -> dict[str, Any]:
        return {"key": self.key, "value": self.value, "unit": self.unit, "phase": self.phase}

    @staticmethod
    def from_dict(d: dict[str, Any]) -> "MetricSample":
        return MetricSample(
            key=str(d["key"]),
            value=float(d["value"]),
            unit=cast(Unit, d["unit"]),
            phase=cast(Phase, d["phase"]),
        )


@attrs.define(frozen=True, slots=True)
class RunFailure:
    phase: FailurePhase
    kind: FailureKind
    detail: str

    def render(self) -> str:
        return f"{self.phase}-{self.kind}: {self.detail}"

    @staticmethod
    def from_command(phase: FailurePhase, result: CommandResult, what: str) -> "RunFailure":
        """Categorize a failed external command: cancellation, timeout, or non-zero exit."""
        if result.cancelled:
            return RunFailure(phase=phase, kind="cancelled", detail=f"{what} cancelled")
        if result.timed_out:
            return RunFailure(phase=phase, kind="timeout", detail=f"{what} timed out after {result.duration_ms / 1e3:.1f}s")
        detail = f"{what} exited with code {result.returncode}"
        tail = result.tail(500)
        if tail:
            detail += f": {tail}"
        return RunFailure(phase=phase, kind="exit", detail=detail)

    def to_dict(self) -> dict[str, Any]:
        return {"phase": self.phase, "kind": self.kind, "detail": self.detail}

    @staticmethod
    def from_dict(d: dict[str, Any]) -> "RunFailure":
        return RunFailure(
            phase=cast(FailurePhase, d["phase"]),
            kind=cast(FailureKind, d["kind"]),
            detail=str(d.get("detail", "")),
        )


@attrs.define(frozen=True, slots=True)
class RunRecord:
    """One execution attempt. Sample keys are unique within a record."""

    run_index: int
    started_at: str
    succeeded: bool
    failure: RunFailure | None = None
    samples: tuple[MetricSample, ...] = attrs.field(factory=tuple, converter=tuple)
    managed_profile_artifact_path: Path | None = None
    native_profile_artifact_path: Path | None = None
    attempts: int = 1

    def __attrs_post_init__(self) -> None:
        seen: set[str] = set()
        dupes: list[str] = []
        for s in self.samples:
            if s.key in seen and s.key not in dupes:
                dupes.append(s.key)
            seen.add(s.key)
        if dupes:
            raise DuplicateMetricError(dupes)

    @property
    def failure_reason(self) -> str | None:
        return None if self.failure is None else self.failure.render()

    def sample(self, key: str) -> MetricSample | None:
        for s in self.samples:
            if s.key == key:
                return s
        return None

    def to_dict(self) -> dict[str, Any]:
        return {
            "run_index": self.run_index,
            "started_at": self.started_at,
            "succeeded": self.succeeded,
            "failure_reason": self.failure_reason,
            "failure": None if self.failure is None else self.failure.to_dict(),
            "samples": [s.to_dict() for s in self.samples],
            "managed_profile_artifact_path": (
                None if self.managed_profile_artifact_path is None else str(self.managed_profile_artifact_path)
            ),
            "native_profile_artifact_path": (
                None if self.native_profile_artifact_path is None else str(self.native_profile_artifact_path)
            ),
            "attempts": self.attempts,
        }

    @staticmethod
    def from_dict(d: dict[str, Any]) -> "RunRecord":
        failure_obj = d.get("failure")
        failure = RunFailure.from_dict(failure_obj) if isinstance(failure_obj, dict) else None
        if failure is None and not d.get("succeeded") and d.get("failure_reason"):
            # Files that only carry the rendered reason.
            failure = RunFailure(phase="orchestrator", kind="error", detail=str(d["failure_reason"]))
        return RunRecord(
            run_index=int(d["run_index"]),
            started_at=str(d.get("started_at", "")),
            succeeded=bool(d["succeeded"]),
            failure=failure,
            samples=tuple(MetricSample.from_dict(s) for s in d.get("samples", []) or []),
            managed_profile_artifact_path=_optional_path(d.get("managed_profile_artifact_path")),
            native_profile_artifact_path=_optional_path(d.get("native_profile_artifact_path")),
            attempts=int(d.get("attempts", 1)),
        )


@attrs.define(frozen=True, slots=True)
class RawResultSet:
    project_identity: str
    configuration: str
    package_name: str
    created_at: str
    runs: tuple[RunRecord, ...] = attrs.field(factory=tuple, converter=tuple)
    aborted: bool = False
    abort_reason: str | None = None
    host: dict[str, Any] = attrs.field(factory=dict)
    # Where the set was loaded from; never serialized.
    source_path: Path | None = attrs.field(default=None, eq=False)

    @property
    def successful_runs(self) -> list[RunRecord]:
        return [r for r in self.runs if r.succeeded]

    def metric_keys(self) -> list[str]:
        keys: dict[str, None] = {}
        for r in self.runs:
            for s in r.samples:
                keys.setdefault(s.key, None)
        return list(keys)

    def to_dict(self) -> dict[str, Any]:
        return {
            "schema_version": SCHEMA_VERSION,
            "project_identity": self.project_identity,
            "configuration": self.configuration,
            "package_name": self.package_name,
            "created_at": self.created_at,
            "aborted": self.aborted,
            "abort_reason": self.abort_reason,
            "host": dict(self.host),
            "runs": [r.to_dict() for r in self.runs],
        }

    @staticmethod
    def from_dict(d: dict[str, Any], *, source_path: Path | None = None) -> "RawResultSet":
        return RawResultSet(
            project_identity=str(d["project_identity"]),
            configuration=str(d["configuration"]),
            package_name=str(d["package_name"]),
            created_at=str(d["created_at"]),
            runs=tuple(RunRecord.from_dict(r) for r in d.get("runs", []) or []),
            aborted=bool(d.get("aborted", False)),
            abort_reason=d.get("abort_reason"),
            host=dict(d.get("host") or {}),
            source_path=source_path,
        )


@attrs.define(frozen=True, slots=True)
class MetricDistribution:
    key: str
    unit: str
    phase: str
    n: int
    mean: float
    stddev: float
    min: float
    max: float
    values: tuple[float, ...]


@attrs.define(frozen=True, slots=True)
class ComparisonResult:
    key: str
    baseline: MetricDistribution
    candidate: MetricDistribution
    delta_mean: float | None
    delta_percent: float | None
    verdict: Verdict
    polarity: Polarity
    p_value: float | None = None
    note: str | None = None
