#!/usr/bin/env python3
# skycam_stream.py: Raspberry Pi camera sender
# - Streams 24/7, switching capture settings between day and night.
# - Cycles the camera process periodically without dropping the broadcast.
# - Stop with --stop (sentinel file) or SIGTERM.

from __future__ import annotations

import argparse
import atexit
import os
import signal
import sys
import threading
import time
from contextlib import suppress
from pathlib import Path
from typing import Optional, Sequence

import psutil

from pipeline_builder import PipelineBuilder
from process_monitor import ProcessMonitor
from service_log import base_dir, log_event, set_show_on_screen
from solar_schedule import SolarScheduleProvider, classify, fetcher_for, format_minute
from stream_config import StreamConfig, describe_config, load_config
from stream_supervisor import StreamSupervisor

_PID_FILE_NAME = "skycam_stream.pid"
_STOP_SENTINEL_NAME = "skycam_stream.stop"

_ACTIVE_SUPERVISOR: Optional[StreamSupervisor] = None
_SIGNAL_HANDLERS_INSTALLED = False


def _pid_file_path() -> Path:
    return base_dir() / _PID_FILE_NAME


def _stop_sentinel_path() -> Path:
    return base_dir() / _STOP_SENTINEL_NAME


def _read_pid_file(path: Optional[Path] = None) -> Optional[int]:
    try:
        return int((path or _pid_file_path()).read_text(encoding="utf-8").strip())
    except (OSError, ValueError):
        return None


def _is_pid_running(pid: int) -> bool:
    return pid > 0 and psutil.pid_exists(pid)


def _report(message: str, level: str = "info") -> None:
    stream = sys.stderr if level == "error" else sys.stdout
    print(f"[primary] {message}", file=stream)
    log_event("primary", message, level)


def _claim_pid_file() -> None:
    path = _pid_file_path()
    existing_pid = _read_pid_file(path)
    if existing_pid and existing_pid != os.getpid() and _is_pid_running(existing_pid):
        raise RuntimeError(
            f"Another instance is already running (PID {existing_pid}). Use --stop first."
        )

    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_suffix(".tmp")
    tmp_path.write_text(str(os.getpid()), encoding="utf-8")
    os.replace(tmp_path, path)
    log_event("primary", f"Registered PID {os.getpid()} in {path}")


def _release_pid_file(expected_pid: Optional[int] = None) -> None:
    """Remove the PID file unless it belongs to another process."""

    path = _pid_file_path()
    if not path.exists():
        return
    recorded_pid = _read_pid_file(path)
    if recorded_pid is not None and recorded_pid != (expected_pid or os.getpid()):
        return
    with suppress(OSError):
        path.unlink()
        log_event("primary", f"PID record removed from {path}")


atexit.register(_release_pid_file)


def _stop_request_active() -> bool:
    return _stop_sentinel_path().exists()


def _clear_stop_request() -> None:
    with suppress(OSError):
        _stop_sentinel_path().unlink()


def _request_stop_via_sentinel() -> bool:
    path = _stop_sentinel_path()
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(str(time.time()), encoding="utf-8")
    except OSError:
        return False
    return True


def _handle_shutdown_signal(signum, _frame) -> None:
    log_event("primary", f"Signal {signum} received; stopping supervisor.")
    supervisor = _ACTIVE_SUPERVISOR
    if supervisor is not None:
        supervisor.stop()


def _ensure_signal_handlers() -> None:
    global _SIGNAL_HANDLERS_INSTALLED
    if _SIGNAL_HANDLERS_INSTALLED:
        return
    for sig in (signal.SIGTERM, signal.SIGINT):
        signal.signal(sig, _handle_shutdown_signal)
    _SIGNAL_HANDLERS_INSTALLED = True


def build_supervisor(config: StreamConfig) -> StreamSupervisor:
    schedule = SolarScheduleProvider(config.solar, fetcher=fetcher_for(config.solar))
    return StreamSupervisor(
        config,
        schedule,
        PipelineBuilder(config),
        ProcessMonitor(),
    )


def run_forever(supervisor: StreamSupervisor, poll_interval: float = 0.5) -> None:
    """Run the supervisor on a worker thread and watch the stop sentinel."""

    global _ACTIVE_SUPERVISOR
    _ACTIVE_SUPERVISOR = supervisor
    thread = threading.Thread(target=supervisor.run, name="StreamSupervisor", daemon=True)
    thread.start()
    stop_logged = False
    try:
        while thread.is_alive():
            if _stop_request_active():
                if not stop_logged:
                    log_event("primary", "Stop sentinel detected; shutting down supervisor.")
                    stop_logged = True
                supervisor.stop()
                _clear_stop_request()
            thread.join(timeout=poll_interval)
    finally:
        supervisor.stop()
        thread.join(timeout=60)
        if thread.is_alive():
            log_event("primary", "Supervisor thread did not finish within 60s", "warning")
        _ACTIVE_SUPERVISOR = None


def _start_streaming_instance() -> int:
    try:
        _claim_pid_file()
    except RuntimeError as exc:
        _report(str(exc), "error")
        return 1
    except OSError as exc:
        _report(f"Failed to register PID: {exc}", "error")
        return 1

    try:
        if _stop_request_active():
            log_event("primary", "Clearing stale stop sentinel from a previous run.")
            _clear_stop_request()
        _ensure_signal_handlers()
        config = load_config()
        if not config.publish.endpoint_url:
            _report("YT_URL/YT_KEY missing; refusing to start the stream.", "error")
            return 2

        for line in describe_config(config):
            log_event("primary", line)
        log_event("primary", f"Starting supervisor (PID {os.getpid()})")
        run_forever(build_supervisor(config))
        log_event("primary", "Supervisor finished")
        return 0
    finally:
        _release_pid_file()


def _stop_streaming_instance(timeout: float = 60.0) -> int:
    pid = _read_pid_file()
    if pid is None:
        _report("No running instance found.")
        _clear_stop_request()
        return 0
    if not _is_pid_running(pid):
        _report(f"Stale PID record ({pid}); removing file.")
        _release_pid_file(expected_pid=pid)
        _clear_stop_request()
        return 0

    if not _request_stop_via_sentinel():
        _report("Failed to write the stop sentinel.", "error")
        return 1
    _report(f"Stop requested for PID {pid}; waiting for it to exit.")

    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if not _is_pid_running(pid):
            _release_pid_file(expected_pid=pid)
            _clear_stop_request()
            _report("Instance stopped.")
            return 0
        time.sleep(0.5)

    _clear_stop_request()
    _report("Timed out waiting for the supervisor to stop.", "error")
    return 1


def _print_sun_report() -> int:
    config = load_config(create_env=False)
    schedule = SolarScheduleProvider(config.solar, log_fn=lambda *_args, **_kw: None)
    now = schedule.local_now()
    window = schedule.ensure_current(now.date())
    mode = classify(now, window)
    print(f"Location: {config.solar.latitude}, {config.solar.longitude} ({config.solar.timezone})")
    print(f"Sun source: {config.solar.source}")
    print(f"Solar window: {window.describe()}")
    print(
        f"Daytime: {format_minute(window.day_start)}-{format_minute(window.day_end)}; "
        f"now {now.strftime('%H%M')} -> {mode.value}"
    )
    return 0


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Day/night camera streamer for YouTube Live")
    command = parser.add_mutually_exclusive_group()
    command.add_argument("--start", action="store_true", help="run the streamer (default)")
    command.add_argument("--stop", action="store_true", help="stop the running instance")
    command.add_argument(
        "--sun", action="store_true", help="print today's solar window and current mode"
    )
    parser.add_argument(
        "--showonscreen", action="store_true", help="mirror log lines on the console"
    )
    parser.add_argument(
        "--stop-timeout",
        type=float,
        default=60.0,
        help="seconds --stop waits for the instance to exit",
    )
    return parser.parse_args(argv)


def main(argv: Optional[Sequence[str]] = None) -> None:
    args = parse_args(argv)

    if args.stop:
        sys.exit(_stop_streaming_instance(timeout=args.stop_timeout))

    set_show_on_screen(args.showonscreen)

    if args.sun:
        sys.exit(_print_sun_report())

    if args.showonscreen:
        log_event("primary", "--showonscreen active; mirroring log lines on the console.")
    sys.exit(_start_streaming_instance())


if __name__ == "__main__":
    main()
