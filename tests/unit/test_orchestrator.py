from __future__ import annotations

import json
import threading
from pathlib import Path

import pytest

from xaptr.config import PerfTestConfig
from xaptr.errors import ConfigurationError, OrchestratorFailure
from xaptr.model import FailureKind, FailurePhase, MetricSample, RunFailure, RunRecord
from xaptr.orchestrator import TestOrchestrator
from xaptr.results import load_raw_results


def ok(i: int) -> RunRecord:
    return RunRecord(
        run_index=i,
        started_at="2026-01-01T00:00:00.000Z",
        succeeded=True,
        samples=[MetricSample(key="cold_start_total_ms", value=800 + i, unit="ms", phase="cold-start")],
    )


def failed(i: int, phase: FailurePhase = "build", kind: FailureKind = "exit") -> RunRecord:
    return RunRecord(
        run_index=i,
        started_at="2026-01-01T00:00:00.000Z",
        succeeded=False,
        failure=RunFailure(phase=phase, kind=kind, detail="scripted"),
    )


class ScriptedExecutor:
    """Returns scripted outcomes in order: "ok", "fail", or (phase, kind) for a failure."""

    def __init__(self, script: list[object]) -> None:
        self.script = list(script)
        self.calls: list[int] = []

    def execute(self, config: PerfTestConfig, run_index: int, cancel: threading.Event | None = None) -> RunRecord:
        self.calls.append(run_index)
        step = self.script.pop(0)
        if step == "ok":
            return ok(run_index)
        if step == "fail":
            return failed(run_index)
        phase, kind = step  # type: ignore[misc]
        return failed(run_index, phase, kind)


@pytest.fixture
def project(tmp_path: Path) -> Path:
    p = tmp_path / "App.csproj"
    p.write_text("<Project />")
    return p


def _config(project: Path, n: int, **kw: object) -> PerfTestConfig:
    return PerfTestConfig(
        project_path=project,
        package_name="com.example.app",
        data_dir=project.parent / "perfdata" / "20260101-000000-Release",
        repetition_count=n,
        **kw,  # type: ignore[arg-type]
    )


def test_records_every_run_in_order_and_persists(project: Path) -> None:
    ex = ScriptedExecutor(["ok", "fail", "ok", "ok"])
    cfg = _config(project, 4)
    raw = TestOrchestrator(executor=ex).run(cfg)  # type: ignore[arg-type]

    assert [r.run_index for r in raw.runs] == [0, 1, 2, 3]
    assert [r.succeeded for r in raw.runs] == [True, False, True, True]
    assert not raw.aborted
    assert raw.project_identity == str(project)

    path = cfg.data_dir / "raw-results.json"
    assert raw.source_path == path.resolve()
    payload = json.loads(path.read_text())
    assert payload["runs"][1]["failure_reason"] == "build-exit: scripted"
    assert load_raw_results(cfg.data_dir) == raw


def test_all_runs_failing_writes_nothing(project: Path) -> None:
    ex = ScriptedExecutor(["fail", "fail"])
    cfg = _config(project, 2)
    with pytest.raises(OrchestratorFailure, match="All 2 run"):
        TestOrchestrator(executor=ex).run(cfg)  # type: ignore[arg-type]
    assert not (cfg.data_dir / "raw-results.json").exists()


def test_consecutive_failures_abort_and_pad_remaining_runs(project: Path) -> None:
    ex = ScriptedExecutor(["ok", "fail", "fail", "fail"])
    raw = TestOrchestrator(executor=ex).run(_config(project, 6))  # type: ignore[arg-type]

    assert ex.calls == [0, 1, 2, 3]
    assert len(raw.runs) == 6
    assert raw.aborted
    assert raw.abort_reason == "3 consecutive failed runs"
    skipped = raw.runs[4:]
    assert [r.run_index for r in skipped] == [4, 5]
    for r in skipped:
        assert r.failure is not None
        assert (r.failure.phase, r.failure.kind) == ("orchestrator", "skipped")
        assert r.attempts == 0


def test_limit_reached_on_last_run_is_not_an_abort(project: Path) -> None:
    ex = ScriptedExecutor(["ok", "fail", "fail", "fail"])
    raw = TestOrchestrator(executor=ex).run(_config(project, 4))  # type: ignore[arg-type]

    assert ex.calls == [0, 1, 2, 3]
    assert len(raw.runs) == 4
    assert not raw.aborted
    assert raw.abort_reason is None
    assert all(r.attempts == 1 for r in raw.runs)


def test_abort_disabled_with_zero(project: Path) -> None:
    ex = ScriptedExecutor(["fail", "fail", "fail", "fail", "ok"])
    raw = TestOrchestrator(executor=ex).run(_config(project, 5, max_consecutive_failures=0))  # type: ignore[arg-type]
    assert ex.calls == [0, 1, 2, 3, 4]
    assert not raw.aborted


def test_launch_timeouts_are_retried(project: Path) -> None:
    ex = ScriptedExecutor([("launch", "timeout"), "ok", ("build", "timeout"), ("deploy", "timeout"), ("deploy", "timeout")])
    raw = TestOrchestrator(executor=ex).run(_config(project, 3, max_retries=1))  # type: ignore[arg-type]

    assert ex.calls == [0, 0, 1, 2, 2]
    assert raw.runs[0].succeeded and raw.runs[0].attempts == 2
    assert raw.runs[1].attempts == 1
    assert raw.runs[2].attempts == 2
    assert raw.runs[2].failure_reason == "deploy-timeout: scripted"


def test_exit_failures_are_not_retried(project: Path) -> None:
    ex = ScriptedExecutor([("launch", "exit"), "ok"])
    TestOrchestrator(executor=ex).run(_config(project, 2, max_retries=3))  # type: ignore[arg-type]
    assert ex.calls == [0, 1]


def test_cancelled_run_stops_and_keeps_completed_runs(project: Path) -> None:
    ex = ScriptedExecutor(["ok", ("launch", "cancelled")])
    raw = TestOrchestrator(executor=ex).run(_config(project, 4), threading.Event())  # type: ignore[arg-type]

    assert ex.calls == [0, 1]
    assert len(raw.runs) == 4
    assert raw.abort_reason == "cancelled"
    assert [r.failure.kind for r in raw.runs[2:] if r.failure is not None] == ["cancelled", "cancelled"]


def test_cancel_before_start_runs_nothing(project: Path) -> None:
    cancel = threading.Event()
    cancel.set()
    ex = ScriptedExecutor([])
    with pytest.raises(OrchestratorFailure):
        TestOrchestrator(executor=ex).run(_config(project, 3), cancel)  # type: ignore[arg-type]
    assert ex.calls == []


def test_refuses_existing_raw_results(project: Path) -> None:
    cfg = _config(project, 1)
    cfg.data_dir.mkdir(parents=True)
    (cfg.data_dir / "raw-results.json").write_text("{}")
    ex = ScriptedExecutor(["ok"])
    with pytest.raises(ConfigurationError, match="Refusing to overwrite"):
        TestOrchestrator(executor=ex).run(cfg)  # type: ignore[arg-type]
    assert ex.calls == []


def test_invalid_config_attempts_no_runs(project: Path) -> None:
    ex = ScriptedExecutor(["ok"])
    cfg = _config(project, 0)
    with pytest.raises(ConfigurationError, match="Repetition count"):
        TestOrchestrator(executor=ex).run(cfg)  # type: ignore[arg-type]
    assert ex.calls == []
    assert not cfg.data_dir.exists()


def test_state_ends_done(project: Path) -> None:
    orch = TestOrchestrator(executor=ScriptedExecutor(["ok"]))  # type: ignore[arg-type]
    assert orch.state == "idle"
    orch.run(_config(project, 1))
    assert orch.state == "done"


def test_uncreatable_data_dir_is_an_orchestrator_failure(project: Path) -> None:
    blocker = project.parent / "perfdata"
    blocker.write_text("not a directory")
    ex = ScriptedExecutor(["ok"])
    with pytest.raises(OrchestratorFailure, match="Could not create data directory"):
        TestOrchestrator(executor=ex).run(_config(project, 1))  # type: ignore[arg-type]
    assert ex.calls == []
