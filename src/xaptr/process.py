from __future__ import annotations

import os
import shlex
import signal
import subprocess
import threading
import time
from pathlib import Path
from typing import IO, Any, Protocol

import attrs

# How often a blocked wait wakes up to look at the deadline and the cancel flag.
POLL_INTERVAL_S = 0.2
# Grace period between SIGTERM and SIGKILL.
TERMINATE_GRACE_S = 5.0
# How long to keep reading output after the command itself has exited.
DRAIN_S = 1.0


@attrs.define(frozen=True, slots=True)
class CommandResult:
    argv: tuple[str, ...]
    returncode: int | None
    stdout: str
    stderr: str
    duration_ms: float
    timed_out: bool = False
    cancelled: bool = False

    @property
    def ok(self) -> bool:
        return self.returncode == 0 and not self.timed_out and not self.cancelled

    @property
    def command(self) -> str:
        return shlex.join(self.argv)

    def tail(self, limit: int = 2000) -> str:
        """Last `limit` characters of combined output, for failure messages."""
        text = "\n".join(p for p in (self.stdout.strip(), self.stderr.strip()) if p)
        return text[-limit:]


class CommandRunner(Protocol):
    def __call__(
        self,
        argv: list[str],
        *,
        timeout_s: float,
        cancel: threading.Event | None = None,
        cwd: Path | None = None,
        stdout_path: Path | None = None,
    ) -> CommandResult: ...


class _PipeReader:
    """Reads one pipe to EOF on a daemon thread.

    Children the command leaves behind can hold the pipe open after it exits,
    so callers wait for the reader with a bounded timeout.
    """

    def __init__(self, stream: IO[bytes] | None) -> None:
        self._chunks: list[bytes] = []
        self._thread: threading.Thread | None = None
        if stream is not None:
            self._thread = threading.Thread(target=self._pump, args=(stream,), daemon=True)
            self._thread.start()

    def _pump(self, stream: IO[bytes]) -> None:
        fd = stream.fileno()
        try:
            while True:
                chunk = os.read(fd, 65536)
                if not chunk:
                    break
                self._chunks.append(chunk)
        except OSError:
            pass
        finally:
            stream.close()

    @property
    def done(self) -> bool:
        return self._thread is None or not self._thread.is_alive()

    def join(self, timeout_s: float) -> None:
        if self._thread is not None:
            self._thread.join(timeout_s)

    def data(self) -> bytes:
        return b"".join(list(self._chunks))


def _signal_group(pid: int, sig: signal.Signals) -> None:
    try:
        os.killpg(pid, sig)
    except (ProcessLookupError, PermissionError):
        pass


def _terminate(proc: subprocess.Popen[Any]) -> None:
    """Terminate the child and everything it spawned (it leads its own session)."""
    _signal_group(proc.pid, signal.SIGTERM)
    try:
        proc.wait(timeout=TERMINATE_GRACE_S)
    except subprocess.TimeoutExpired:
        _signal_group(proc.pid, signal.SIGKILL)
        proc.wait()


def _decode(data: bytes) -> str:
    if not data:
        return ""
    return data.decode(errors="replace")


def _drain(proc: subprocess.Popen[Any], readers: list[_PipeReader]) -> tuple[bytes, bytes]:
    """Collect remaining output once `proc` has exited, stopping leftover group members if they hold the pipes."""
    for r in readers:
        r.join(DRAIN_S)
    if not all(r.done for r in readers):
        _signal_group(proc.pid, signal.SIGKILL)
        for r in readers:
            r.join(DRAIN_S)
    return readers[0].data(), readers[1].data()


def _collect(
    proc: subprocess.Popen[bytes],
    readers: list[_PipeReader],
    *,
    deadline: float,
    cancel: threading.Event | None,
) -> tuple[bytes, bytes, bool, bool]:
    """Wait for `proc` to exit, returning (stdout, stderr, timed_out, cancelled).

    Completion is the process exiting, not its pipes closing.
    """
    timed_out = cancelled = False
    while True:
        try:
            proc.wait(timeout=POLL_INTERVAL_S)
            break
        except subprocess.TimeoutExpired:
            pass
        cancelled = cancel is not None and cancel.is_set()
        timed_out = time.monotonic() >= deadline
        if cancelled or timed_out:
            _terminate(proc)
            break
    out, err = _drain(proc, readers)
    return out, err, timed_out and not cancelled, cancelled


def _readers_for(proc: subprocess.Popen[bytes]) -> list[_PipeReader]:
    return [_PipeReader(proc.stdout), _PipeReader(proc.stderr)]


def run_command(
    argv: list[str],
    *,
    timeout_s: float,
    cancel: threading.Event | None = None,
    cwd: Path | None = None,
    stdout_path: Path | None = None,
) -> CommandResult:
    """Run `argv` to completion, a timeout, or cancellation.

    Never raises for process failures: a missing executable is reported as
    returncode 127 with the OS error on stderr. When `stdout_path` is given,
    stdout is streamed to that file (binary) instead of being captured.
    """
    started = time.monotonic()
    if cancel is not None and cancel.is_set():
        return CommandResult(argv=tuple(argv), returncode=None, stdout="", stderr="", duration_ms=0.0, cancelled=True)

    out_file: IO[bytes] | None = None
    try:
        if stdout_path is not None:
            stdout_path.parent.mkdir(parents=True, exist_ok=True)
            out_file = stdout_path.open("wb")
        try:
            proc = subprocess.Popen(
                argv,
                cwd=cwd,
                stdin=subprocess.DEVNULL,
                stdout=out_file if out_file is not None else subprocess.PIPE,
                stderr=subprocess.PIPE,
                start_new_session=True,
            )
        except OSError as e:
            return CommandResult(
                argv=tuple(argv),
                returncode=127,
                stdout="",
                stderr=str(e),
                duration_ms=(time.monotonic() - started) * 1e3,
            )
        out, err, timed_out, cancelled = _collect(
            proc, _readers_for(proc), deadline=started + timeout_s, cancel=cancel
        )
    finally:
        if out_file is not None:
            out_file.close()

    return CommandResult(
        argv=tuple(argv),
        returncode=proc.returncode,
        stdout=_decode(out),
        stderr=_decode(err),
        duration_ms=(time.monotonic() - started) * 1e3,
        timed_out=timed_out,
        cancelled=cancelled,
    )


class BackgroundCommand:
    """A process started now and collected later (e.g. a profiler recording a window)."""

    def __init__(self, argv: list[str], *, cwd: Path | None = None) -> None:
        self.argv = list(argv)
        self.cwd = cwd
        self._proc: subprocess.Popen[bytes] | None = None
        self._readers: list[_PipeReader] = []
        self._started = 0.0
        self._start_error: str | None = None

    def start(self) -> bool:
        self._started = time.monotonic()
        try:
            self._proc = subprocess.Popen(
                self.argv,
                cwd=self.cwd,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                start_new_session=True,
            )
        except OSError as e:
            self._start_error = str(e)
            return False
        # Read from the start so a chatty process never blocks on a full pipe.
        self._readers = _readers_for(self._proc)
        return True

    @property
    def running(self) -> bool:
        return self._proc is not None and self._proc.poll() is None

    def wait(self, *, timeout_s: float, cancel: threading.Event | None = None) -> CommandResult:
        if self._proc is None:
            return CommandResult(
                argv=tuple(self.argv),
                returncode=127,
                stdout="",
                stderr=self._start_error or "not started",
                duration_ms=0.0,
            )
        out, err, timed_out, cancelled = _collect(
            self._proc, self._readers, deadline=time.monotonic() + timeout_s, cancel=cancel
        )
        return CommandResult(
            argv=tuple(self.argv),
            returncode=self._proc.returncode,
            stdout=_decode(out),
            stderr=_decode(err),
            duration_ms=(time.monotonic() - self._started) * 1e3,
            timed_out=timed_out,
            cancelled=cancelled,
        )

    def kill(self) -> None:
        if self._proc is not None and self._proc.poll() is None:
            _terminate(self._proc)
            _drain(self._proc, self._readers)
