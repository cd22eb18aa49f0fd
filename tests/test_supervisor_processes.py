"""Supervisor runs against real child processes, pipes and the relay thread."""

import datetime as dt
import subprocess
import sys
import threading
import time
from dataclasses import replace

import pytest

from data_channel import ChannelRelay
from pipeline_builder import PipelineBuilder, SpawnSpec
from process_monitor import ProcessMonitor
from solar_schedule import SolarWindow
from stream_supervisor import StreamSupervisor, SupervisorState

State = SupervisorState
NOON = dt.datetime(2025, 6, 1, 12, 0, tzinfo=dt.timezone.utc)

TAGGED_CAPTURE = (
    "import os, sys, time\n"
    "tag = ('capture-%d|' % os.getpid()).encode()\n"
    "while True:\n"
    "    sys.stdout.buffer.write(tag)\n"
    "    sys.stdout.buffer.flush()\n"
    "    time.sleep(0.02)\n"
)
BULK_CAPTURE = (
    "import sys\n"
    "block = b'\\xff' * 65536\n"
    "while True:\n"
    "    sys.stdout.buffer.write(block)\n"
    "    sys.stdout.buffer.flush()\n"
)
RECORDING_PUBLISHER = (
    "import os, sys\n"
    "out = open(sys.argv[1], 'ab')\n"
    "while True:\n"
    "    data = os.read(0, 65536)\n"
    "    if not data:\n"
    "        break\n"
    "    out.write(data)\n"
    "    out.flush()\n"
)
STALLED_PUBLISHER = "import time; time.sleep(60)"


class ScriptBuilder(PipelineBuilder):
    def __init__(self, config, capture_script: str, publish_argv: tuple) -> None:
        super().__init__(config)
        self.capture_script = capture_script
        self.publish_argv = publish_argv

    def capture_spec(self, params, stdout) -> SpawnSpec:
        return SpawnSpec(
            name="capture",
            argv=(sys.executable, "-c", self.capture_script),
            stdin=subprocess.DEVNULL,
            stdout=stdout,
        )

    def publish_spec(self, params) -> SpawnSpec:
        return SpawnSpec(
            name="publish",
            argv=(sys.executable, "-c") + self.publish_argv,
            stdin=subprocess.PIPE,
            stdout=subprocess.DEVNULL,
        )


class FixedSchedule:
    def ensure_current(self, today: dt.date) -> SolarWindow:
        return SolarWindow(6 * 60, 20 * 60, 0, 0, today)

    def local_now(self) -> dt.datetime:
        return NOON


def wait_until(predicate, timeout: float = 5.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.02)
    return predicate()


def read_output(path) -> bytes:
    try:
        return path.read_bytes()
    except FileNotFoundError:
        return b""


@pytest.fixture()
def fast_config(stream_config):
    timings = replace(
        stream_config.timings,
        tick_seconds=0.05,
        day_warmup_seconds=0.2,
        night_warmup_seconds=0.2,
        ready_timeout_seconds=5.0,
        publish_check_seconds=0.2,
        retry_delay_seconds=0.1,
        capture_restart_delay_seconds=0.05,
        terminate_grace_seconds=1.0,
    )
    return replace(stream_config, timings=timings)


def make_supervisor(config, events, builder) -> StreamSupervisor:
    return StreamSupervisor(
        config,
        FixedSchedule(),
        builder,
        ProcessMonitor(log_fn=events, poll_interval=0.05),
        now_fn=lambda: NOON,
        relay_factory=lambda: ChannelRelay(log_fn=events, poll_interval=0.05),
        status_probe=lambda: {},
        log_fn=events,
    )


def step_until(supervisor: StreamSupervisor, state: SupervisorState, limit: int = 10) -> None:
    for _ in range(limit):
        if supervisor.step() is state:
            return
    raise AssertionError(f"supervisor never reached {state}, stuck in {supervisor.state}")


def test_capture_cycle_keeps_feeding_the_same_publisher(fast_config, events, tmp_path):
    output = tmp_path / "published.bin"
    builder = ScriptBuilder(fast_config, TAGGED_CAPTURE, (RECORDING_PUBLISHER, str(output)))
    supervisor = make_supervisor(fast_config, events, builder)
    try:
        step_until(supervisor, State.RUNNING)
        session = supervisor.session
        publisher_pid = session.publish.pid
        first_capture = session.capture.pid
        first_channel = session.channel
        assert wait_until(lambda: f"capture-{first_capture}|".encode() in read_output(output))

        session.last_capture_restart -= fast_config.timings.max_segment_seconds
        assert supervisor.step() is State.RESTARTING_CAPTURE
        assert supervisor.step() is State.RUNNING

        second_capture = session.capture.pid
        assert second_capture != first_capture
        assert session.channel is not first_channel
        assert session.channel.channel_id != first_channel.channel_id
        assert session.publish.pid == publisher_pid
        assert session.publish.is_alive()
        assert wait_until(lambda: f"capture-{second_capture}|".encode() in read_output(output))
        assert wait_until(lambda: first_channel.read_fd is None)
        assert session.capture_restarts == 1
    finally:
        supervisor.shutdown()

    assert supervisor.state is State.SHUTTING_DOWN
    assert not session.capture.is_alive()
    assert not session.publish.is_alive()


def test_shutdown_is_bounded_when_publisher_stops_reading(fast_config, events):
    builder = ScriptBuilder(fast_config, BULK_CAPTURE, (STALLED_PUBLISHER,))
    supervisor = make_supervisor(fast_config, events, builder)
    step_until(supervisor, State.RUNNING)
    session = supervisor.session
    # Fill the publisher's input pipe; nothing drains it from here on.
    assert wait_until(lambda: session.relay.bytes_relayed > 0)
    time.sleep(0.3)

    stopper = threading.Thread(target=supervisor.shutdown, daemon=True)
    started = time.monotonic()
    stopper.start()
    stopper.join(timeout=10.0)

    assert not stopper.is_alive(), "teardown blocked on the stalled publisher"
    assert time.monotonic() - started < 10.0
    assert supervisor.state is State.SHUTTING_DOWN
    assert not session.capture.is_alive()
    assert not session.publish.is_alive()
    assert not session.relay.is_running
