"""Failures raised by the streaming components.

None of these are fatal to the supervisor: each one maps to a recovery
transition in :mod:`stream_supervisor`.
"""

from __future__ import annotations

from typing import Optional


class StreamError(Exception):
    """Base class for recoverable streaming failures."""


class ScheduleFetchFailure(StreamError):
    """Sun times could not be obtained; the previous window stays in use."""


class NetworkFailure(ScheduleFetchFailure):
    pass


class ParseFailure(ScheduleFetchFailure):
    pass


class ChannelCreationFailure(StreamError):
    pass


class ProcessSpawnFailure(StreamError):
    def __init__(self, name: str, executable: str, reason: str) -> None:
        super().__init__(f"failed to spawn {name} ({executable}): {reason}")
        self.name = name
        self.executable = executable
        self.reason = reason


class ProcessReadinessTimeout(StreamError):
    def __init__(self, name: str, pid: int, timeout: float) -> None:
        super().__init__(
            f"{name} (PID {pid}) not ready within {timeout:.1f}s"
        )
        self.name = name
        self.pid = pid
        self.timeout = timeout


class ProcessCrash(StreamError):
    def __init__(self, name: str, pid: int, exit_code: Optional[int], detail: str = "") -> None:
        message = f"{name} (PID {pid}) exited with code {exit_code}"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)
        self.name = name
        self.pid = pid
        self.exit_code = exit_code


class ProcessExited(ProcessCrash):
    """The process died while it was still warming up."""


class GracefulTerminationTimeout(StreamError):
    def __init__(self, name: str, pid: int, grace: float) -> None:
        super().__init__(
            f"{name} (PID {pid}) ignored the stop signal for {grace:.1f}s"
        )
        self.name = name
        self.pid = pid
        self.grace = grace


class StopRequested(StreamError):
    """An external stop arrived while a bounded wait was in progress."""
