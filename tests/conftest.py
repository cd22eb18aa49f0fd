from __future__ import annotations

import sys
from pathlib import Path

import pytest

SRC_PATH = Path(__file__).resolve().parents[1] / "pi-primary" / "src"
if str(SRC_PATH) not in sys.path:
    sys.path.insert(0, str(SRC_PATH))

from stream_config import (  # noqa: E402
    CameraSettings,
    PublishSettings,
    SolarSettings,
    StreamConfig,
    SupervisorTimings,
)


class FakeClock:
    def __init__(self, start: float = 1000.0) -> None:
        self.current = start

    def __call__(self) -> float:
        return self.current

    def advance(self, seconds: float) -> None:
        self.current += seconds


class EventLog:
    def __init__(self) -> None:
        self.entries: list[tuple[str, str, str]] = []

    def __call__(self, component: str, message: str, level: str = "info") -> None:
        self.entries.append((component, message, level))

    def messages(self, component: str | None = None) -> list[str]:
        return [msg for comp, msg, _ in self.entries if component is None or comp == component]

    def levels(self, level: str) -> list[str]:
        return [msg for _, msg, lvl in self.entries if lvl == level]


@pytest.fixture(autouse=True)
def isolated_home(tmp_path, monkeypatch):
    monkeypatch.setenv("SKYCAM_HOME", str(tmp_path))
    monkeypatch.delenv("SKYCAM_LOG_FILE", raising=False)
    monkeypatch.delenv("SKYCAM_ENV_FILE", raising=False)
    return tmp_path


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def events() -> EventLog:
    return EventLog()


@pytest.fixture()
def stream_config() -> StreamConfig:
    return StreamConfig(
        camera=CameraSettings(),
        publish=PublishSettings(
            endpoint_url="rtmp://a.rtmp.youtube.com/live2/abcd-efgh-ijkl",
            audio_path="/srv/skycam/audio.mp3",
        ),
        solar=SolarSettings(),
        timings=SupervisorTimings(
            max_segment_seconds=1800.0,
            tick_seconds=1.0,
            day_warmup_seconds=10.0,
            night_warmup_seconds=30.0,
            ready_timeout_seconds=60.0,
            publish_check_seconds=2.0,
            retry_delay_seconds=10.0,
            capture_restart_delay_seconds=2.0,
            capture_restart_attempts=3,
            terminate_grace_seconds=5.0,
            status_interval_seconds=300.0,
            progress_interval_seconds=60.0,
        ),
    )
