from __future__ import annotations

import logging
import threading
from pathlib import Path

import attrs

from ..device import Device
from ..model import RunFailure
from ..process import BackgroundCommand

MONO_PROFILE_PROPERTY = "debug.mono.profile"
MANAGED_PROFILE_FILE = "files/xaptr-profile.mlpd"
NATIVE_PROFILE_REMOTE = "/data/local/tmp/xaptr-perf.data"

logger = logging.getLogger(__name__)


@attrs.define(frozen=True, slots=True)
class ProfilerOutcome:
    artifact_path: Path | None = None
    failure: RunFailure | None = None


def _missing_artifact(path: Path, what: str) -> RunFailure | None:
    if not path.exists() or path.stat().st_size == 0:
        return RunFailure(phase="profiler", kind="error", detail=f"{what} produced no data at {path}")
    return None


class ManagedProfiler:
    """Mono log profiler, enabled for the next app start via a system property.

    The app must be debuggable: the profile is written to the app's private
    files dir and copied out with `run-as`.
    """

    def __init__(
        self,
        device: Device,
        *,
        package: str,
        options: str,
        artifact_path: Path,
        timeout_s: float,
        logger: logging.Logger = logger,
    ) -> None:
        self.device = device
        self.package = package
        self.options = options
        self.artifact_path = artifact_path
        self.timeout_s = timeout_s
        self.logger = logger
        self._armed = False

    @property
    def property_value(self) -> str:
        return f"{self.options},output=/data/data/{self.package}/{MANAGED_PROFILE_FILE}"

    def attach(self, *, cancel: threading.Event | None = None) -> ProfilerOutcome:
        res = self.device.setprop(MONO_PROFILE_PROPERTY, self.property_value, cancel=cancel)
        if not res.ok:
            return ProfilerOutcome(failure=RunFailure.from_command("profiler", res, "managed profiler attach"))
        self._armed = True
        return ProfilerOutcome()

    def detach(self, *, cancel: threading.Event | None = None) -> ProfilerOutcome:
        # Stopping the app makes the runtime flush the profile.
        self.device.force_stop(self.package, cancel=cancel)
        res = self.device.copy_app_file(
            self.package, MANAGED_PROFILE_FILE, self.artifact_path, timeout_s=self.timeout_s, cancel=cancel
        )
        self.disarm()
        if not res.ok:
            return ProfilerOutcome(failure=RunFailure.from_command("profiler", res, "managed profile copy"))
        failure = _missing_artifact(self.artifact_path, "managed profiler")
        if failure is not None:
            return ProfilerOutcome(failure=failure)
        return ProfilerOutcome(artifact_path=self.artifact_path)

    def disarm(self) -> None:
        """Clear the property so later plain launches are not profiled. Safe to call twice."""
        if not self._armed:
            return
        self._armed = False
        res = self.device.setprop(MONO_PROFILE_PROPERTY, "")
        if not res.ok:
            self.logger.warning(f"Could not clear {MONO_PROFILE_PROPERTY}: {res.tail(200)}")


class NativeProfiler:
    """`simpleperf record` attached to the running app for a fixed window."""

    def __init__(
        self,
        device: Device,
        *,
        artifact_path: Path,
        duration_s: float,
        timeout_s: float,
        logger: logging.Logger = logger,
    ) -> None:
        self.device = device
        self.artifact_path = artifact_path
        self.duration_s = duration_s
        self.timeout_s = timeout_s
        self.logger = logger
        self._recorder: BackgroundCommand | None = None

    def attach(self, pid: int) -> ProfilerOutcome:
        self._recorder = self.device.start_shell_background(
            "simpleperf",
            "record",
            "-p",
            str(pid),
            "--duration",
            f"{max(self.duration_s, 1.0):g}",
            "-o",
            NATIVE_PROFILE_REMOTE,
        )
        return ProfilerOutcome()

    def detach(self, *, cancel: threading.Event | None = None) -> ProfilerOutcome:
        if self._recorder is None:
            return ProfilerOutcome(failure=RunFailure(phase="profiler", kind="error", detail="native profiler was not attached"))
        res = self._recorder.wait(timeout_s=self.duration_s + self.timeout_s, cancel=cancel)
        self._recorder = None
        if not res.ok:
            return ProfilerOutcome(failure=RunFailure.from_command("profiler", res, "simpleperf record"))
        pulled = self.device.pull(NATIVE_PROFILE_REMOTE, self.artifact_path, timeout_s=self.timeout_s, cancel=cancel)
        if not pulled.ok:
            return ProfilerOutcome(failure=RunFailure.from_command("profiler", pulled, "native profile pull"))
        failure = _missing_artifact(self.artifact_path, "native profiler")
        if failure is not None:
            return ProfilerOutcome(failure=failure)
        return ProfilerOutcome(artifact_path=self.artifact_path)

    def kill(self) -> None:
        if self._recorder is not None:
            self._recorder.kill()
            self._recorder = None
