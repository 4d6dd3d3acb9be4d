"""
One build → deploy → launch → [profile] → collect cycle.

`RunExecutor.execute` never raises: every failure, including cancellation and
unexpected exceptions, is returned as a failed `RunRecord` whose `RunFailure`
names the phase and whether the cause was an exit code, a timeout, or a
cancellation. The orchestrator's retry/abort policy keys off that distinction.
"""

from __future__ import annotations

import logging
import shlex
import threading
from pathlib import Path

import attrs

from . import device as adb
from .config import PerfTestConfig
from .device import Device
from .errors import DuplicateMetricError
from .model import FailurePhase, MetricSample, RunFailure, RunRecord, now_rfc3339
from .paths import find_signed_apk, run_dir
from .process import CommandResult, CommandRunner, run_command
from .profiling.android import ManagedProfiler, NativeProfiler

logger = logging.getLogger(__name__)


class _RunAborted(Exception):
    def __init__(self, failure: RunFailure) -> None:
        super().__init__(failure.render())
        self.failure = failure


@attrs.define(slots=True)
class _RunState:
    phase: FailurePhase = "build"
    samples: list[MetricSample] = attrs.field(factory=list)
    managed: ManagedProfiler | None = None
    native: NativeProfiler | None = None
    managed_artifact: Path | None = None
    native_artifact: Path | None = None


def build_argv(config: PerfTestConfig) -> list[str]:
    return [
        *shlex.split(config.build_command),
        "build",
        str(config.project_path),
        "-c",
        config.configuration,
        "-t:SignAndroidPackage",
        # Reused MSBuild nodes outlive the build and hold its output pipes.
        "-nodeReuse:false",
    ]


def _check(result: CommandResult, phase: FailurePhase, what: str) -> CommandResult:
    if not result.ok:
        raise _RunAborted(RunFailure.from_command(phase, result, what))
    return result


def _wait(seconds: float, cancel: threading.Event | None) -> bool:
    """Sleep up to `seconds`; return False if cancelled meanwhile."""
    if seconds <= 0:
        return not (cancel is not None and cancel.is_set())
    waiter = cancel if cancel is not None else threading.Event()
    return not waiter.wait(seconds)


class RunExecutor:
    def __init__(
        self,
        *,
        runner: CommandRunner = run_command,
        device: Device | None = None,
        logger: logging.Logger = logger,
    ) -> None:
        self.runner = runner
        self.device = device
        self.logger = logger

    def _device_for(self, config: PerfTestConfig) -> Device:
        if self.device is not None:
            return self.device
        return Device(
            adb=config.adb,
            serial=config.device_serial,
            runner=self.runner,
            command_timeout_s=config.timeouts.device_command_s,
        )

    def execute(self, config: PerfTestConfig, run_index: int, cancel: threading.Event | None = None) -> RunRecord:
        started_at = now_rfc3339()
        state = _RunState()
        try:
            self._execute(config, run_index, state, cancel)
            record = RunRecord(
                run_index=run_index,
                started_at=started_at,
                succeeded=True,
                samples=tuple(state.samples),
                managed_profile_artifact_path=state.managed_artifact,
                native_profile_artifact_path=state.native_artifact,
            )
        except _RunAborted as e:
            return self._failed(run_index, started_at, e.failure)
        except DuplicateMetricError as e:
            return self._failed(run_index, started_at, RunFailure(phase="collect", kind="error", detail=str(e)))
        except Exception as e:
            self.logger.exception(f"Unexpected error in run {run_index} during {state.phase}")
            return self._failed(run_index, started_at, RunFailure(phase=state.phase, kind="error", detail=f"{type(e).__name__}: {e}"))
        finally:
            if state.native is not None:
                state.native.kill()
            if state.managed is not None:
                state.managed.disarm()
        return record

    def _failed(self, run_index: int, started_at: str, failure: RunFailure) -> RunRecord:
        self.logger.error(f"Run {run_index} failed: {failure.render()}")
        return RunRecord(run_index=run_index, started_at=started_at, succeeded=False, failure=failure)

    def _execute(self, config: PerfTestConfig, run_index: int, state: _RunState, cancel: threading.Event | None) -> None:
        out_dir = run_dir(config.data_dir, run_index)
        out_dir.mkdir(parents=True, exist_ok=True)
        device = self._device_for(config)
        timeouts = config.timeouts
        package = config.package_name

        state.phase = "build"
        res = self.runner(build_argv(config), timeout_s=timeouts.build_s, cancel=cancel, cwd=config.project_path.parent)
        (out_dir / "build.log").write_text(f"$ {res.command}\n{res.stdout}{res.stderr}")
        _check(res, "build", "build")
        state.samples.append(MetricSample(key="build_time_ms", value=res.duration_ms, unit="ms", phase="build"))
        self.logger.info(f"Build finished in {res.duration_ms / 1e3:.1f}s")

        apk = find_signed_apk(config.project_path, config.configuration)
        if apk is None:
            raise _RunAborted(
                RunFailure(phase="build", kind="error", detail=f"no *-Signed.apk under bin/{config.configuration}")
            )

        state.phase = "deploy"
        res = device.install(apk, timeout_s=timeouts.deploy_s, cancel=cancel)
        if adb.install_failed(res):
            if res.ok:
                raise _RunAborted(RunFailure(phase="deploy", kind="exit", detail=f"adb install reported: {res.tail(500)}"))
            _check(res, "deploy", "adb install")
        state.samples.append(MetricSample(key="install_time_ms", value=res.duration_ms, unit="ms", phase="install"))
        self.logger.info(f"Installed {apk.name} in {res.duration_ms / 1e3:.1f}s")

        state.phase = "launch"
        res = _check(device.resolve_launch_activity(package, cancel=cancel), "launch", "resolve-activity")
        component = adb.parse_resolved_activity(res.stdout)
        if component is None:
            raise _RunAborted(RunFailure(phase="launch", kind="error", detail=f"no launchable activity for {package}"))

        if config.profile_managed:
            state.phase = "profiler"
            state.managed = ManagedProfiler(
                device,
                package=package,
                options=config.managed_profiler_options,
                artifact_path=out_dir / "managed.mlpd",
                timeout_s=timeouts.profiler_s,
                logger=self.logger,
            )
            outcome = state.managed.attach(cancel=cancel)
            if outcome.failure is not None:
                raise _RunAborted(outcome.failure)

        state.phase = "launch"
        _check(device.clear_logcat(cancel=cancel), "launch", "logcat -c")
        res = _check(device.start_activity(component, timeout_s=timeouts.launch_s, cancel=cancel), "launch", "am start")
        info = adb.parse_am_start(res.stdout)
        status = info.get("Status")
        if status != "ok":
            detail = info.get("Error") or f"am start status {status!r}"
            raise _RunAborted(RunFailure(phase="launch", kind="exit", detail=detail))
        for field_name, key, phase in (("WaitTime", "launch_wait_ms", "launch"), ("TotalTime", "cold_start_total_ms", "cold-start")):
            if field_name in info:
                state.samples.append(MetricSample(key=key, value=float(info[field_name]), unit="ms", phase=phase))  # type: ignore[arg-type]

        if config.profile_native:
            state.phase = "profiler"
            pid = adb.parse_pid(_check(device.pidof(package, cancel=cancel), "profiler", "pidof").stdout)
            if pid is None:
                raise _RunAborted(RunFailure(phase="profiler", kind="error", detail=f"{package} is not running"))
            state.native = NativeProfiler(
                device,
                artifact_path=out_dir / "native.perf.data",
                duration_s=config.steady_state_delay_s,
                timeout_s=timeouts.profiler_s,
                logger=self.logger,
            )
            state.native.attach(pid)

        state.phase = "launch"
        if not _wait(config.steady_state_delay_s, cancel):
            raise _RunAborted(RunFailure(phase="launch", kind="cancelled", detail="cancelled while waiting for steady state"))

        state.phase = "collect"
        res = _check(device.meminfo(package, cancel=cancel), "collect", "dumpsys meminfo")
        pss = adb.parse_total_pss_bytes(res.stdout)
        if pss is not None:
            state.samples.append(MetricSample(key="steady_state_pss_bytes", value=pss, unit="bytes", phase="steady-state"))
        else:
            self.logger.warning(f"No TOTAL PSS in meminfo output for {package}")

        logcat = _check(device.dump_logcat(cancel=cancel), "collect", "logcat -d").stdout
        displayed = adb.parse_displayed_ms(logcat, package)
        if displayed is not None:
            state.samples.append(MetricSample(key="cold_start_displayed_ms", value=displayed, unit="ms", phase="cold-start"))
        state.samples.extend(adb.parse_metric_markers(logcat))

        if state.native is not None:
            state.phase = "profiler"
            outcome = state.native.detach(cancel=cancel)
            state.native = None
            if outcome.failure is not None:
                raise _RunAborted(outcome.failure)
            state.native_artifact = outcome.artifact_path

        if state.managed is not None:
            state.phase = "profiler"
            outcome = state.managed.detach(cancel=cancel)
            if outcome.failure is not None:
                raise _RunAborted(outcome.failure)
            state.managed_artifact = outcome.artifact_path

        state.phase = "collect"
        self.logger.info(f"Run {run_index} collected {len(state.samples)} sample(s)")
