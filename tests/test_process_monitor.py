import signal
import subprocess
import sys
import threading
import time

import pytest

from pipeline_builder import SpawnSpec
from process_monitor import ProcessMonitor
from stream_errors import (
    GracefulTerminationTimeout,
    ProcessExited,
    ProcessReadinessTimeout,
    ProcessSpawnFailure,
    StopRequested,
)

SLEEPER = "import time; time.sleep(30)"
STUBBORN = (
    "import signal, sys, time\n"
    "signal.signal(signal.SIGTERM, signal.SIG_IGN)\n"
    "sys.stdout.write('armed\\n'); sys.stdout.flush()\n"
    "time.sleep(30)\n"
)


def python_spec(script: str, name: str = "capture", stdout=None) -> SpawnSpec:
    return SpawnSpec(name=name, argv=(sys.executable, "-c", script), stdout=stdout)


@pytest.fixture()
def monitor(events):
    return ProcessMonitor(log_fn=events, poll_interval=0.05)


@pytest.fixture()
def cleanup(monitor):
    handles = []
    yield handles
    for handle in handles:
        if handle.is_alive():
            handle.kill()


def test_await_ready_after_warmup(monitor, cleanup):
    handle = monitor.launch(python_spec(SLEEPER))
    cleanup.append(handle)

    uptime = monitor.await_ready(handle, timeout=5.0, warmup=0.3)

    assert uptime >= 0.3
    assert monitor.is_alive(handle)


def test_await_ready_short_circuits_when_process_exits(monitor, cleanup):
    handle = monitor.launch(python_spec("import sys, time; time.sleep(1); sys.exit(3)"))
    cleanup.append(handle)

    started = time.monotonic()
    with pytest.raises(ProcessExited) as excinfo:
        monitor.await_ready(handle, timeout=30.0, warmup=10.0)
    elapsed = time.monotonic() - started

    assert elapsed < 5.0
    assert excinfo.value.exit_code == 3
    assert not isinstance(excinfo.value, ProcessReadinessTimeout)
    assert "crashed with exit code 3" in str(excinfo.value)


def test_await_ready_times_out(monitor, cleanup):
    handle = monitor.launch(python_spec(SLEEPER))
    cleanup.append(handle)

    with pytest.raises(ProcessReadinessTimeout):
        monitor.await_ready(handle, timeout=0.3, warmup=5.0)
    assert handle.is_alive()


def test_await_ready_observes_stop_request(monitor, cleanup):
    handle = monitor.launch(python_spec(SLEEPER))
    cleanup.append(handle)
    cancel = threading.Event()
    threading.Timer(0.2, cancel.set).start()

    with pytest.raises(StopRequested):
        monitor.await_ready(handle, timeout=10.0, warmup=5.0, cancel=cancel)


def test_terminate_is_idempotent(monitor, cleanup):
    handle = monitor.launch(python_spec(SLEEPER))
    cleanup.append(handle)

    first = monitor.terminate(handle, grace=5.0)
    second = monitor.terminate(handle, grace=5.0)

    assert first == second == -signal.SIGTERM
    assert not handle.is_alive()
    assert handle.describe_exit().startswith("stopped by supervisor")
    assert monitor.terminate(None, grace=1.0) is None


def test_terminate_escalates_to_kill(monitor, cleanup, events):
    handle = monitor.launch(python_spec(STUBBORN, stdout=subprocess.PIPE))
    cleanup.append(handle)
    assert handle.stdout.readline().strip() == b"armed"

    code = monitor.terminate(handle, grace=0.3)

    assert code == -signal.SIGKILL
    assert not handle.is_alive()
    assert any("ignored the stop signal" in message for message in events.levels("warning"))


def test_handle_terminate_raises_on_grace_timeout(monitor, cleanup):
    handle = monitor.launch(python_spec(STUBBORN, stdout=subprocess.PIPE))
    cleanup.append(handle)
    assert handle.stdout.readline().strip() == b"armed"

    with pytest.raises(GracefulTerminationTimeout):
        handle.terminate(0.2)
    assert handle.is_alive()


def test_describe_exit_distinguishes_clean_exit_and_signals(monitor, cleanup):
    clean = monitor.launch(python_spec("pass"))
    cleanup.append(clean)
    clean_code = clean._process.wait(timeout=10)

    killed = monitor.launch(python_spec("import os, signal; os.kill(os.getpid(), signal.SIGKILL)"))
    cleanup.append(killed)
    killed._process.wait(timeout=10)

    assert clean_code == 0
    assert clean.describe_exit() == "exited cleanly (code 0)"
    assert killed.describe_exit() == "killed by SIGKILL"


def test_launch_missing_executable_is_spawn_failure(monitor):
    spec = SpawnSpec(name="publish", argv=("/nonexistent/ffmpeg-binary", "-version"))

    with pytest.raises(ProcessSpawnFailure) as excinfo:
        monitor.launch(spec)

    assert excinfo.value.executable == "/nonexistent/ffmpeg-binary"
    assert excinfo.value.name == "publish"
