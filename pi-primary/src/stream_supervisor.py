"""Control loop that keeps the day/night camera broadcast running.

The supervisor owns at most one :class:`StreamSession`. A session pairs a
publish process, which holds the connection to the ingest endpoint, with a
capture process that is cycled periodically (and whenever it dies) through
a fresh :class:`~data_channel.DataChannel`. A day/night boundary crossing or
a dead publisher tears the whole session down and builds a new one.
"""

from __future__ import annotations

import datetime
import threading
import time
import traceback
from collections import deque
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Deque, Dict, Optional

from data_channel import ChannelRelay, DataChannel
from pipeline_builder import (
    CaptureParams,
    PipelineBuilder,
    PublishParams,
    describe_capture,
    describe_publish,
)
from process_monitor import ProcessHandle, ProcessMonitor
from service_log import log_event
from solar_schedule import Mode, SolarScheduleProvider, SolarWindow, classify
from stream_config import StreamConfig
from stream_errors import StopRequested, StreamError
from system_status import collect_system_status, describe_system_status


class SupervisorState(Enum):
    IDLE = "idle"
    BUILDING_PIPELINE = "building_pipeline"
    RUNNING = "running"
    RESTARTING_CAPTURE = "restarting_capture"
    REBUILDING_FOR_MODE_CHANGE = "rebuilding_for_mode_change"
    SHUTTING_DOWN = "shutting_down"


@dataclass
class StreamSession:
    session_id: int
    mode: Mode
    capture_params: CaptureParams
    publish_params: PublishParams
    relay: ChannelRelay
    session_start: float
    last_capture_restart: float
    capture: Optional[ProcessHandle] = None
    publish: Optional[ProcessHandle] = None
    channel: Optional[DataChannel] = None
    capture_restarts: int = 0
    capture_launches: int = 0


class StreamSupervisor:
    """Drive the session state machine from a single control thread."""

    def __init__(
        self,
        config: StreamConfig,
        schedule: SolarScheduleProvider,
        builder: PipelineBuilder,
        monitor: ProcessMonitor,
        *,
        clock: Callable[[], float] = time.monotonic,
        now_fn: Optional[Callable[[], datetime.datetime]] = None,
        stop_event: Optional[threading.Event] = None,
        wait_fn: Optional[Callable[[float], bool]] = None,
        channel_factory: Callable[[], DataChannel] = DataChannel.create,
        relay_factory: Callable[[], ChannelRelay] = ChannelRelay,
        status_probe: Callable[[], Dict[str, Any]] = collect_system_status,
        log_fn: Callable[..., None] = log_event,
    ) -> None:
        self._config = config
        self._timings = config.timings
        self._schedule = schedule
        self._builder = builder
        self._monitor = monitor
        self._clock = clock
        self._now_fn = now_fn or schedule.local_now
        self._stop_event = stop_event or threading.Event()
        self._wait_fn = wait_fn or self._stop_event.wait
        self._channel_factory = channel_factory
        self._relay_factory = relay_factory
        self._status_probe = status_probe
        self._log = log_fn

        self._state = SupervisorState.IDLE
        self._session: Optional[StreamSession] = None
        self._session_counter = 0
        self._build_failures = 0
        self._restart_reason = ""
        self._shutdown_done = False
        self._started_at: Optional[float] = None
        self._last_progress_log: Optional[float] = None
        self._last_status_log: Optional[float] = None
        self._current_window: Optional[SolarWindow] = None
        self._transitions: Deque[tuple[SupervisorState, SupervisorState]] = deque(maxlen=64)

    # ------------------------------------------------------------------
    # Public surface
    # ------------------------------------------------------------------
    @property
    def state(self) -> SupervisorState:
        return self._state

    @property
    def session(self) -> Optional[StreamSession]:
        return self._session

    @property
    def stop_event(self) -> threading.Event:
        return self._stop_event

    @property
    def transitions(self) -> list[tuple[SupervisorState, SupervisorState]]:
        return list(self._transitions)

    def stop(self) -> None:
        if not self._stop_event.is_set():
            self._log("supervisor", "Stop requested")
        self._stop_event.set()

    def run(self) -> None:
        self._started_at = self._clock()
        self._log("supervisor", "Supervisor started")
        try:
            while not self._stop_event.is_set() and self._state is not SupervisorState.SHUTTING_DOWN:
                self.step()
        finally:
            self.shutdown()

    def step(self) -> SupervisorState:
        """Advance the state machine by one transition or one Running tick."""

        if self._state is SupervisorState.SHUTTING_DOWN:
            return self._state
        if self._stop_event.is_set():
            self.shutdown()
            return self._state

        handlers = {
            SupervisorState.IDLE: self._start_building,
            SupervisorState.BUILDING_PIPELINE: self._build_pipeline,
            SupervisorState.RUNNING: self._tick,
            SupervisorState.RESTARTING_CAPTURE: self._restart_capture,
            SupervisorState.REBUILDING_FOR_MODE_CHANGE: self._rebuild,
        }
        try:
            handlers[self._state]()
        except StopRequested as exc:
            self._log("supervisor", f"{exc}; shutting down")
            self.shutdown()
        except Exception:  # noqa: BLE001
            self._log(
                "supervisor",
                f"Unexpected error in state {self._state.value}:\n{traceback.format_exc()}",
                "error",
            )
            self._teardown_session("unexpected error")
            self._transition(SupervisorState.BUILDING_PIPELINE, "recovering from unexpected error")
            self._wait(self._timings.retry_delay_seconds)
        return self._state

    def shutdown(self) -> None:
        if self._shutdown_done:
            return
        self._shutdown_done = True
        self._stop_event.set()
        if self._state is not SupervisorState.SHUTTING_DOWN:
            self._transition(SupervisorState.SHUTTING_DOWN, "stop requested")
        self._teardown_session("shutdown")
        self._log("supervisor", "Supervisor stopped")

    def status_snapshot(self) -> Dict[str, Any]:
        now = self._clock()
        session = self._session
        window = self._current_window
        snapshot: Dict[str, Any] = {
            "state": self._state.value,
            "mode": None,
            "capture_pid": None,
            "publish_pid": None,
            "capture_running": False,
            "publish_running": False,
            "uptime_seconds": round(now - self._started_at, 1) if self._started_at else 0.0,
            "session_seconds": None,
            "segment_seconds": None,
            "capture_restarts": 0,
            "build_failures": self._build_failures,
            "bytes_relayed": 0,
            "seconds_since_data": None,
            "solar_window": window.describe() if window else None,
        }
        if session is not None:
            capture = session.capture
            publish = session.publish
            since_data = session.relay.seconds_since_data()
            snapshot.update(
                {
                    "mode": session.mode.value,
                    "capture_pid": capture.pid if capture else None,
                    "publish_pid": publish.pid if publish else None,
                    "capture_running": bool(capture and capture.is_alive()),
                    "publish_running": bool(publish and publish.is_alive()),
                    "session_seconds": round(now - session.session_start, 1),
                    "segment_seconds": round(now - session.last_capture_restart, 1),
                    "capture_restarts": session.capture_restarts,
                    "bytes_relayed": session.relay.bytes_relayed,
                    "seconds_since_data": round(since_data, 1) if since_data is not None else None,
                }
            )
        return snapshot

    # ------------------------------------------------------------------
    # State handlers
    # ------------------------------------------------------------------
    def _start_building(self) -> None:
        if self._started_at is None:
            self._started_at = self._clock()
        self._transition(SupervisorState.BUILDING_PIPELINE, "startup")

    def _build_pipeline(self) -> None:
        mode, now = self._classify()
        capture_params, publish_params = self._builder.build(mode)
        self._session_counter += 1
        started = self._clock()
        session = StreamSession(
            session_id=self._session_counter,
            mode=mode,
            capture_params=capture_params,
            publish_params=publish_params,
            relay=self._relay_factory(),
            session_start=started,
            last_capture_restart=started,
        )
        self._session = session
        self._log(
            "supervisor",
            f"Building {mode.value} pipeline (session {session.session_id}, "
            f"local time {now.strftime('%H:%M')})",
        )
        self._log("capture", describe_capture(capture_params))
        self._log("publish", describe_publish(publish_params))

        try:
            session.relay.start()
            self._start_capture(session)
            publish = self._monitor.launch(self._builder.publish_spec(publish_params))
            session.publish = publish
            session.relay.set_sink(publish.stdin)
            self._monitor.await_ready(
                publish,
                timeout=self._timings.ready_timeout_seconds,
                warmup=self._timings.publish_check_seconds,
                cancel=self._stop_event,
            )
        except StopRequested:
            raise
        except StreamError as exc:
            self._build_failures += 1
            self._log(
                "supervisor",
                f"Pipeline build failed ({exc.__class__.__name__}: {exc}); "
                f"consecutive failures {self._build_failures}, retrying in "
                f"{self._timings.retry_delay_seconds:.0f}s",
                "error",
            )
            self._teardown_session("build failed")
            self._wait(self._timings.retry_delay_seconds)
            return

        self._build_failures = 0
        ready_at = self._clock()
        session.session_start = ready_at
        session.last_capture_restart = ready_at
        self._last_progress_log = ready_at
        self._last_status_log = ready_at
        self._transition(
            SupervisorState.RUNNING,
            f"{mode.value} pipeline up (capture PID {session.capture.pid if session.capture else '?'}, "
            f"publish PID {publish.pid})",
        )
        self._log_system_status()

    def _tick(self) -> None:
        session = self._session
        if session is None:
            self._transition(SupervisorState.BUILDING_PIPELINE, "no active session")
            return

        mode, now = self._classify()
        if mode is not session.mode:
            self._log(
                "supervisor",
                f"Mode change {session.mode.value} -> {mode.value} at {now.strftime('%H:%M')}",
            )
            self._transition(SupervisorState.REBUILDING_FOR_MODE_CHANGE, "mode change")
            return

        publish = session.publish
        if publish is None or not publish.is_alive():
            detail = publish.describe_exit() if publish else "missing"
            self._log("publish", f"Publisher {detail}; rebuilding the session", "warning")
            self._transition(SupervisorState.REBUILDING_FOR_MODE_CHANGE, "publisher exited")
            return

        capture = session.capture
        if capture is None or not capture.is_alive():
            detail = capture.describe_exit() if capture else "missing"
            self._log(
                "capture",
                f"Capture {detail} after {self._segment_age(session):.0f}s in segment",
                "warning",
            )
            self._restart_reason = "capture exited"
            self._transition(SupervisorState.RESTARTING_CAPTURE, "capture exited")
            return

        elapsed = self._segment_age(session)
        if elapsed >= self._timings.max_segment_seconds:
            self._log(
                "capture",
                f"Capture segment reached {elapsed / 60:.0f} min; cycling capture",
            )
            self._restart_reason = "segment expired"
            self._transition(SupervisorState.RESTARTING_CAPTURE, "segment expired")
            return

        clock_now = self._clock()
        self._maybe_log_progress(session, clock_now, now)
        if (
            self._last_status_log is None
            or clock_now - self._last_status_log >= self._timings.status_interval_seconds
        ):
            self._log_system_status()
        self._wait(self._timings.tick_seconds)

    def _restart_capture(self) -> None:
        session = self._session
        if session is None:
            self._transition(SupervisorState.BUILDING_PIPELINE, "no active session")
            return

        self._monitor.terminate(session.capture, self._timings.terminate_grace_seconds)
        max_attempts = self._timings.capture_restart_attempts
        attempt = 0
        while True:
            attempt += 1
            if self._wait(self._timings.capture_restart_delay_seconds):
                raise StopRequested("stop requested during capture restart")

            publish = session.publish
            if publish is None or not publish.is_alive():
                detail = publish.describe_exit() if publish else "missing"
                self._log("publish", f"Publisher {detail} during capture restart", "warning")
                self._transition(SupervisorState.REBUILDING_FOR_MODE_CHANGE, "publisher exited")
                return

            try:
                self._start_capture(session)
            except StopRequested:
                raise
            except StreamError as exc:
                self._log(
                    "capture",
                    f"Capture restart attempt {attempt}/{max_attempts} failed "
                    f"({exc.__class__.__name__}: {exc})",
                    "error",
                )
                self._monitor.terminate(session.capture, self._timings.terminate_grace_seconds)
                if attempt >= max_attempts:
                    self._transition(
                        SupervisorState.REBUILDING_FOR_MODE_CHANGE,
                        "capture restart attempts exhausted",
                    )
                    return
                continue
            break

        session.last_capture_restart = self._clock()
        session.capture_restarts += 1
        reason = self._restart_reason or "restart"
        self._restart_reason = ""
        self._transition(
            SupervisorState.RUNNING,
            f"capture restarted ({reason}), PID {session.capture.pid if session.capture else '?'}, "
            f"publisher PID {session.publish.pid if session.publish else '?'} kept",
        )

    def _rebuild(self) -> None:
        self._teardown_session("rebuild")
        self._transition(SupervisorState.BUILDING_PIPELINE, "rebuild")

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    def _start_capture(self, session: StreamSession) -> None:
        channel = self._channel_factory()
        session.channel = channel
        spec = self._builder.capture_spec(session.capture_params, channel.write_fd)
        try:
            handle = self._monitor.launch(spec)
        finally:
            channel.close_writer()
        session.capture = handle
        session.capture_launches += 1
        session.relay.attach(channel)

        warmup = (
            self._timings.night_warmup_seconds
            if session.mode is Mode.NIGHT
            else self._timings.day_warmup_seconds
        )
        self._monitor.await_ready(
            handle,
            timeout=self._timings.ready_timeout_seconds,
            warmup=warmup,
            cancel=self._stop_event,
        )
        self._log("capture", f"Capture PID {handle.pid} ready after {warmup:.0f}s warm-up")

    def _teardown_session(self, reason: str) -> None:
        session = self._session
        if session is None:
            return
        self._session = None
        grace = self._timings.terminate_grace_seconds

        self._monitor.terminate(session.capture, grace)
        session.relay.stop(close_sink=True)
        self._monitor.terminate(session.publish, grace)
        if session.channel is not None:
            session.channel.close()

        lifetime = self._clock() - session.session_start
        self._log(
            "supervisor",
            f"Session {session.session_id} ({session.mode.value}) torn down ({reason}) after "
            f"{lifetime:.0f}s, {session.capture_restarts} capture restart(s), "
            f"{session.relay.bytes_relayed} bytes relayed",
        )

    def _classify(self) -> tuple[Mode, datetime.datetime]:
        now = self._now_fn()
        window = self._schedule.ensure_current(now.date())
        self._current_window = window
        return classify(now, window), now

    def _segment_age(self, session: StreamSession) -> float:
        return self._clock() - session.last_capture_restart

    def _maybe_log_progress(
        self, session: StreamSession, clock_now: float, local_now: datetime.datetime
    ) -> None:
        last = self._last_progress_log
        if last is not None and clock_now - last < self._timings.progress_interval_seconds:
            return
        self._last_progress_log = clock_now
        remaining = max(self._timings.max_segment_seconds - self._segment_age(session), 0.0)
        self._log(
            "supervisor",
            f"{remaining / 60:.0f} minutes left in capture segment "
            f"(local {local_now.strftime('%H:%M')}, {session.mode.value} mode)",
        )

    def _log_system_status(self) -> None:
        self._last_status_log = self._clock()
        try:
            status = self._status_probe()
        except Exception as exc:  # noqa: BLE001
            self._log("supervisor", f"Host status unavailable: {exc}", "warning")
            return
        self._log("supervisor", f"Host status: {describe_system_status(status)}")

    def _transition(self, new_state: SupervisorState, reason: str) -> None:
        old_state = self._state
        self._state = new_state
        self._transitions.append((old_state, new_state))
        self._log("supervisor", f"{old_state.value} -> {new_state.value}: {reason}")

    def _wait(self, seconds: float) -> bool:
        """Sleep up to ``seconds``; True when a stop arrived meanwhile."""

        if seconds <= 0:
            return self._stop_event.is_set()
        return bool(self._wait_fn(seconds)) or self._stop_event.is_set()
