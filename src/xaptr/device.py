"""
Android device access through `adb`, plus parsers for the tool output we consume.

Every method returns the raw `CommandResult`; callers decide what counts as a
failure. Parsers are pure functions so they can be tested against captured
output without a device.
"""

from __future__ import annotations

import re
import threading
from collections.abc import Callable
from pathlib import Path

from .model import MetricSample
from .process import BackgroundCommand, CommandResult, CommandRunner, run_command

METRIC_MARKER = "XAPTR-METRIC"

_DISPLAYED_RE = re.compile(r"Displayed (?P<pkg>[\w.]+)/\S+: \+(?:(?P<s>\d+)s)?(?:(?P<ms>\d+)ms)?")
_PSS_NEW_RE = re.compile(r"TOTAL PSS:\s+(\d+)")
_PSS_OLD_RE = re.compile(r"^\s*TOTAL\s+(\d+)", re.MULTILINE)
_MARKER_RE = re.compile(
    METRIC_MARKER
    + r"\s+key=(?P<key>[A-Za-z0-9_.-]+)\s+value=(?P<value>[-+]?\d+(?:\.\d+)?(?:[eE][-+]?\d+)?)\s+unit=(?P<unit>ms|bytes|count)\b"
)


def parse_am_start(text: str) -> dict[str, str]:
    """Parse `am start -W` output (`Key: value` lines) into a mapping."""
    out: dict[str, str] = {}
    for line in text.splitlines():
        key, sep, value = line.partition(":")
        if not sep:
            continue
        key = key.strip()
        if key and " " not in key:
            out[key] = value.strip()
    return out


def parse_displayed_ms(logcat: str, package: str) -> float | None:
    """Return the first ActivityManager `Displayed` time for `package`, in ms."""
    for m in _DISPLAYED_RE.finditer(logcat):
        if m.group("pkg") != package:
            continue
        if m.group("s") is None and m.group("ms") is None:
            continue
        seconds = int(m.group("s") or 0)
        millis = int(m.group("ms") or 0)
        return float(seconds * 1000 + millis)
    return None


def parse_total_pss_bytes(meminfo: str) -> float | None:
    """Total PSS from `dumpsys meminfo <package>` (reported in KiB)."""
    m = _PSS_NEW_RE.search(meminfo) or _PSS_OLD_RE.search(meminfo)
    if m is None:
        return None
    return float(int(m.group(1)) * 1024)


def parse_metric_markers(logcat: str) -> list[MetricSample]:
    """Custom samples logged by the app as `XAPTR-METRIC key=<k> value=<v> unit=<u>`.

    Duplicates are returned as-is; rejecting them is the caller's job.
    """
    samples: list[MetricSample] = []
    for m in _MARKER_RE.finditer(logcat):
        samples.append(MetricSample(key=m.group("key"), value=float(m.group("value")), unit=m.group("unit"), phase="custom"))  # type: ignore[arg-type]
    return samples


def parse_resolved_activity(text: str) -> str | None:
    """Component name from `cmd package resolve-activity --brief` (last line, `pkg/.Activity`)."""
    lines = [ln.strip() for ln in text.splitlines() if ln.strip()]
    if not lines or "/" not in lines[-1]:
        return None
    return lines[-1]


def parse_pid(text: str) -> int | None:
    parts = text.split()
    if not parts:
        return None
    try:
        return int(parts[0])
    except ValueError:
        return None


def install_failed(result: CommandResult) -> bool:
    """`adb install` may exit 0 and still print `Failure [...]`."""
    return not result.ok or "Failure [" in result.stdout or "Failure [" in result.stderr


class Device:
    """Thin `adb` wrapper bound to one (optional) device serial."""

    def __init__(
        self,
        *,
        adb: str = "adb",
        serial: str | None = None,
        runner: CommandRunner = run_command,
        spawn: Callable[[list[str]], BackgroundCommand] = BackgroundCommand,
        command_timeout_s: float = 30.0,
    ) -> None:
        self.adb = adb
        self.serial = serial
        self.runner = runner
        self.spawn = spawn
        self.command_timeout_s = command_timeout_s

    def _argv(self, *args: str) -> list[str]:
        prefix = [self.adb]
        if self.serial:
            prefix += ["-s", self.serial]
        return [*prefix, *args]

    def _run(
        self,
        *args: str,
        timeout_s: float | None = None,
        cancel: threading.Event | None = None,
        stdout_path: Path | None = None,
    ) -> CommandResult:
        return self.runner(
            self._argv(*args),
            timeout_s=self.command_timeout_s if timeout_s is None else timeout_s,
            cancel=cancel,
            stdout_path=stdout_path,
        )

    def shell(self, *args: str, timeout_s: float | None = None, cancel: threading.Event | None = None) -> CommandResult:
        return self._run("shell", *args, timeout_s=timeout_s, cancel=cancel)

    def install(self, apk: Path, *, timeout_s: float, cancel: threading.Event | None = None) -> CommandResult:
        return self._run("install", "-r", str(apk), timeout_s=timeout_s, cancel=cancel)

    def resolve_launch_activity(self, package: str, *, cancel: threading.Event | None = None) -> CommandResult:
        return self.shell("cmd", "package", "resolve-activity", "--brief", package, cancel=cancel)

    def clear_logcat(self, *, cancel: threading.Event | None = None) -> CommandResult:
        return self._run("logcat", "-c", cancel=cancel)

    def dump_logcat(self, *, cancel: threading.Event | None = None) -> CommandResult:
        return self._run("logcat", "-d", cancel=cancel)

    def start_activity(self, component: str, *, timeout_s: float, cancel: threading.Event | None = None) -> CommandResult:
        # -S force-stops the app first so every launch is a cold start.
        return self.shell("am", "start", "-W", "-S", "-n", component, timeout_s=timeout_s, cancel=cancel)

    def force_stop(self, package: str, *, cancel: threading.Event | None = None) -> CommandResult:
        return self.shell("am", "force-stop", package, cancel=cancel)

    def pidof(self, package: str, *, cancel: threading.Event | None = None) -> CommandResult:
        return self.shell("pidof", package, cancel=cancel)

    def meminfo(self, package: str, *, cancel: threading.Event | None = None) -> CommandResult:
        return self.shell("dumpsys", "meminfo", package, cancel=cancel)

    def setprop(self, name: str, value: str, *, cancel: threading.Event | None = None) -> CommandResult:
        return self.shell("setprop", name, value if value else "''", cancel=cancel)

    def pull(self, remote: str, local: Path, *, timeout_s: float, cancel: threading.Event | None = None) -> CommandResult:
        local.parent.mkdir(parents=True, exist_ok=True)
        return self._run("pull", remote, str(local), timeout_s=timeout_s, cancel=cancel)

    def copy_app_file(
        self, package: str, remote: str, local: Path, *, timeout_s: float, cancel: threading.Event | None = None
    ) -> CommandResult:
        """Copy a file from the app's private data dir (debuggable apps only)."""
        return self._run("exec-out", "run-as", package, "cat", remote, timeout_s=timeout_s, cancel=cancel, stdout_path=local)

    def start_shell_background(self, *args: str) -> BackgroundCommand:
        bg = self.spawn(self._argv("shell", *args))
        bg.start()
        return bg
