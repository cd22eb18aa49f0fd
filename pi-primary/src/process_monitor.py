"""Start, watch and stop the external capture and publish processes."""

from __future__ import annotations

import signal
import subprocess
import threading
import time
from contextlib import suppress
from typing import IO, Callable, Optional

from pipeline_builder import SpawnSpec
from service_log import describe_command, log_event
from stream_errors import (
    GracefulTerminationTimeout,
    ProcessExited,
    ProcessReadinessTimeout,
    ProcessSpawnFailure,
    StopRequested,
)

KILL_WAIT_SECONDS = 5.0


class ProcessHandle:
    """First-class view of one spawned process."""

    def __init__(
        self,
        name: str,
        process: subprocess.Popen,
        started_at: float,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.name = name
        self._process = process
        self._started_at = started_at
        self._clock = clock
        self._stop_requested = False
        self._lock = threading.Lock()

    def __repr__(self) -> str:
        return f"ProcessHandle(name={self.name!r}, pid={self.pid})"

    @property
    def pid(self) -> int:
        return self._process.pid

    @property
    def stdin(self) -> Optional[IO[bytes]]:
        return self._process.stdin

    @property
    def stdout(self) -> Optional[IO[bytes]]:
        return self._process.stdout

    @property
    def started_at(self) -> float:
        return self._started_at

    @property
    def stop_requested(self) -> bool:
        return self._stop_requested

    def is_alive(self) -> bool:
        return self._process.poll() is None

    def exit_status(self) -> Optional[int]:
        return self._process.poll()

    def uptime(self) -> float:
        return max(self._clock() - self._started_at, 0.0)

    def describe_exit(self) -> str:
        code = self.exit_status()
        if code is None:
            return "still running"
        if self._stop_requested:
            return f"stopped by supervisor (code {code})"
        if code == 0:
            return "exited cleanly (code 0)"
        if code < 0:
            try:
                signame = signal.Signals(-code).name
            except ValueError:
                signame = f"signal {-code}"
            return f"killed by {signame}"
        return f"crashed with exit code {code}"

    def terminate(self, grace: float) -> Optional[int]:
        """Ask the process to stop and wait up to ``grace`` seconds.

        Terminating a process that already exited is a no-op.
        """

        with self._lock:
            code = self._process.poll()
            if code is not None:
                return code
            self._stop_requested = True
            with suppress(ProcessLookupError):
                self._process.terminate()
        try:
            return self._process.wait(timeout=grace)
        except subprocess.TimeoutExpired as exc:
            raise GracefulTerminationTimeout(self.name, self.pid, grace) from exc

    def kill(self, wait: float = KILL_WAIT_SECONDS) -> Optional[int]:
        with self._lock:
            self._stop_requested = True
            if self._process.poll() is None:
                with suppress(ProcessLookupError):
                    self._process.kill()
        try:
            return self._process.wait(timeout=wait)
        except subprocess.TimeoutExpired:
            return None

    def close_pipes(self) -> None:
        for stream in (self._process.stdin, self._process.stdout):
            if stream is not None:
                with suppress(OSError, ValueError):
                    stream.close()


class ProcessMonitor:
    """Launch processes, wait for warm-up and report liveness."""

    def __init__(
        self,
        clock: Callable[[], float] = time.monotonic,
        popen: Callable[..., subprocess.Popen] = subprocess.Popen,
        log_fn: Callable[..., None] = log_event,
        poll_interval: float = 0.2,
        sleeper: Callable[[float], None] = time.sleep,
    ) -> None:
        self._clock = clock
        self._popen = popen
        self._log = log_fn
        self._poll_interval = poll_interval
        self._sleep = sleeper

    def launch(self, spec: SpawnSpec) -> ProcessHandle:
        self._log(spec.name, f"Launching: {describe_command(list(spec.argv))}")
        try:
            process = self._popen(
                list(spec.argv),
                stdin=spec.stdin,
                stdout=spec.stdout,
                start_new_session=True,
            )
        except OSError as exc:
            raise ProcessSpawnFailure(spec.name, spec.executable, str(exc)) from exc

        handle = ProcessHandle(spec.name, process, self._clock(), clock=self._clock)
        self._log(spec.name, f"Started with PID {handle.pid}")
        return handle

    def is_alive(self, handle: Optional[ProcessHandle]) -> bool:
        return bool(handle and handle.is_alive())

    def await_ready(
        self,
        handle: ProcessHandle,
        timeout: float,
        warmup: float,
        cancel: Optional[threading.Event] = None,
    ) -> float:
        """Block until ``handle`` survived ``warmup`` seconds.

        Raises ProcessExited as soon as the process dies, ProcessReadinessTimeout
        when ``timeout`` elapses first and StopRequested when ``cancel`` is set.
        Returns the observed uptime.
        """

        deadline = self._clock() + timeout
        while True:
            if not handle.is_alive():
                raise ProcessExited(
                    handle.name, handle.pid, handle.exit_status(), handle.describe_exit()
                )
            uptime = handle.uptime()
            if uptime >= warmup:
                return uptime
            now = self._clock()
            if now >= deadline:
                raise ProcessReadinessTimeout(handle.name, handle.pid, timeout)

            delay = min(self._poll_interval, max(deadline - now, 0.0), max(warmup - uptime, 0.0))
            delay = max(delay, 0.01)
            if cancel is not None:
                if cancel.wait(delay):
                    raise StopRequested(f"stop requested while {handle.name} was warming up")
            else:
                self._sleep(delay)

    def terminate(self, handle: Optional[ProcessHandle], grace: float) -> Optional[int]:
        if handle is None:
            return None
        if not handle.is_alive():
            handle.close_pipes()
            return handle.exit_status()

        self._log(handle.name, f"Stopping PID {handle.pid} (grace {grace:.1f}s)")
        try:
            code = handle.terminate(grace)
        except GracefulTerminationTimeout as exc:
            self._log(handle.name, f"{exc}; killing", "warning")
            code = handle.kill()
            if code is None:
                self._log(
                    handle.name,
                    f"PID {handle.pid} still present {KILL_WAIT_SECONDS:.0f}s after kill",
                    "error",
                )
        handle.close_pipes()
        self._log(handle.name, f"PID {handle.pid} {handle.describe_exit()}")
        return code
