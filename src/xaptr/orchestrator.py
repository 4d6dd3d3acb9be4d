"""
Repeated-run orchestration: N sequential executor runs → one persisted raw result set.

States: Idle → Preparing → Running(i) → Persisting → Done, with Running → Aborted
when too many runs fail in a row or the caller cancels. An aborted invocation
still records exactly N runs; indices that never ran are filled with
`orchestrator-skipped` / `orchestrator-cancelled` records.
"""

from __future__ import annotations

import logging
import platform
import threading
from typing import Any, Literal

import attrs
from jsonschema.exceptions import ValidationError

from .config import PerfTestConfig
from .errors import ConfigurationError, OrchestratorFailure
from .executor import RunExecutor
from .model import FailureKind, RawResultSet, RunFailure, RunRecord, now_rfc3339
from .paths import raw_results_path
from .results import write_raw_results

logger = logging.getLogger(__name__)

OrchestratorState = Literal["idle", "preparing", "running", "aborted", "persisting", "done"]

# Only transient device-side timeouts are worth another attempt.
_RETRYABLE_PHASES = ("deploy", "launch")


def host_info(config: PerfTestConfig) -> dict[str, Any]:
    return {
        "platform": platform.platform(),
        "machine": platform.machine(),
        "python": platform.python_version(),
        "device_serial": config.device_serial,
    }


def _retryable(record: RunRecord) -> bool:
    f = record.failure
    return f is not None and f.kind == "timeout" and f.phase in _RETRYABLE_PHASES


class TestOrchestrator:
    __test__ = False  # not a pytest class

    def __init__(self, *, executor: RunExecutor | None = None, logger: logging.Logger = logger) -> None:
        self.executor = executor if executor is not None else RunExecutor(logger=logger)
        self.logger = logger
        self.state: OrchestratorState = "idle"

    def _set_state(self, state: OrchestratorState) -> None:
        self.logger.debug(f"Orchestrator state: {self.state} -> {state}")
        self.state = state

    def _prepare(self, config: PerfTestConfig) -> None:
        self._set_state("preparing")
        config.validate()
        raw_path = raw_results_path(config.data_dir)
        if raw_path.exists():
            raise ConfigurationError(f"Refusing to overwrite existing raw results: {raw_path}")
        try:
            config.data_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise OrchestratorFailure(f"Could not create data directory {config.data_dir}: {e}") from e

    def _run_once(self, config: PerfTestConfig, run_index: int, cancel: threading.Event | None) -> RunRecord:
        attempts = 1
        record = self.executor.execute(config, run_index, cancel)
        while _retryable(record) and attempts <= config.max_retries and not (cancel is not None and cancel.is_set()):
            self.logger.warning(
                f"Run {run_index} hit {record.failure_reason}; retrying ({attempts}/{config.max_retries})"
            )
            attempts += 1
            record = self.executor.execute(config, run_index, cancel)
        if attempts == record.attempts:
            return record
        return attrs.evolve(record, attempts=attempts)

    def run(self, config: PerfTestConfig, cancel: threading.Event | None = None) -> RawResultSet:
        """Run the configured number of repetitions and persist the raw result set.

        Raises ConfigurationError for an invalid config or an existing raw results
        file, and OrchestratorFailure when no run succeeded or the data directory
        or the file cannot be written.
        """
        self._prepare(config)
        created_at = now_rfc3339()
        total = config.repetition_count
        self.logger.info(
            f"Running {total} repetition(s) of {config.project_path.name} ({config.configuration}) into {config.data_dir}"
        )

        self._set_state("running")
        records: list[RunRecord] = []
        consecutive_failures = 0
        abort_reason: str | None = None
        fill_kind: FailureKind = "skipped"
        for i in range(total):
            if cancel is not None and cancel.is_set():
                abort_reason, fill_kind = "cancelled", "cancelled"
                break
            self.logger.info(f"[{i + 1}/{total}] Starting run")
            record = self._run_once(config, i, cancel)
            records.append(record)
            if record.succeeded:
                consecutive_failures = 0
                self.logger.info(f"[{i + 1}/{total}] Run succeeded with {len(record.samples)} sample(s)")
            else:
                consecutive_failures += 1
                self.logger.error(f"[{i + 1}/{total}] Run failed: {record.failure_reason}")

            if record.failure is not None and record.failure.kind == "cancelled":
                abort_reason, fill_kind = "cancelled", "cancelled"
                break
            # Hitting the limit on the last run leaves nothing to skip.
            if (
                config.max_consecutive_failures
                and consecutive_failures >= config.max_consecutive_failures
                and i < total - 1
            ):
                abort_reason = f"{consecutive_failures} consecutive failed runs"
                break
            if config.cooldown_s > 0 and i < total - 1:
                self.logger.info(f"Applying cooldown: {config.cooldown_s}s")
                waiter = cancel if cancel is not None else threading.Event()
                if waiter.wait(config.cooldown_s):
                    abort_reason, fill_kind = "cancelled", "cancelled"
                    break

        if abort_reason is not None:
            self._set_state("aborted")
            self.logger.warning(f"Aborting after {len(records)}/{total} run(s): {abort_reason}")
            for j in range(len(records), total):
                records.append(
                    RunRecord(
                        run_index=j,
                        started_at=now_rfc3339(),
                        succeeded=False,
                        failure=RunFailure(phase="orchestrator", kind=fill_kind, detail=f"not run: {abort_reason}"),
                        attempts=0,
                    )
                )

        raw_set = RawResultSet(
            project_identity=config.project_identity,
            configuration=config.configuration,
            package_name=config.package_name,
            created_at=created_at,
            runs=tuple(records),
            aborted=abort_reason is not None,
            abort_reason=abort_reason,
            host=host_info(config),
        )
        return self._persist(config, raw_set)

    def _persist(self, config: PerfTestConfig, raw_set: RawResultSet) -> RawResultSet:
        self._set_state("persisting")
        succeeded = len(raw_set.successful_runs)
        total = len(raw_set.runs)
        self.logger.info(f"All runs complete: {succeeded}/{total} successful")
        if succeeded == 0:
            last = next((r.failure_reason for r in reversed(raw_set.runs) if r.failure_reason), None)
            raise OrchestratorFailure(f"All {total} run(s) failed; no raw results written (last failure: {last})")

        path = raw_results_path(config.data_dir)
        try:
            write_raw_results(raw_set, path)
        except (OSError, ValidationError) as e:
            raise OrchestratorFailure(f"Could not write raw results to {path}: {e}") from e
        self.logger.info(f"Wrote {path}")
        self._set_state("done")
        return attrs.evolve(raw_set, source_path=path.resolve())
