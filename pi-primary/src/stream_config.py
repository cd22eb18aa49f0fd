"""Configuration surface for the day/night camera streamer.

Every knob can be overridden through the environment or a ``.env`` file, so
field deployments never need code changes.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from service_log import base_dir, log_event

DEFAULT_INGEST_BASE = "rtmp://a.rtmp.youtube.com/live2"
DEFAULT_SUN_API_URL = "https://api.sunrise-sunset.org/json"


ENV_TEMPLATE_CONTENT = """# Settings for skycam-stream.
# Copy this file to ".env" or let the streamer create one and then edit it.

# YouTube Live stream key. When set, the ingest URL is built automatically.
#YT_KEY=YOUR_STREAM_KEY
# Full ingest URL, used instead of YT_KEY when present.
#YT_URL=rtmp://a.rtmp.youtube.com/live2/YOUR_STREAM_KEY
#YT_INGEST_BASE=rtmp://a.rtmp.youtube.com/live2

# Camera (rpicam-vid) settings.
#CAM_WIDTH=1296
#CAM_HEIGHT=972
#CAM_FRAMERATE=30
#CAM_BITRATE=20000000
#CAM_NIGHT_FRAMERATE=1
#CAM_NIGHT_SHUTTER=2900000
#CAM_NIGHT_GAIN=20.0
#CAM_DENOISE=cdn_off
#RPICAM_VID=rpicam-vid
#RPICAM_VERBOSE=0

# Publisher (ffmpeg) settings.
#FFMPEG=ffmpeg
#FFMPEG_LOGLEVEL=warning
#FFMPEG_PRESET=veryfast
#STREAM_AUDIO_FILE=audio.mp3

# Location used for sunrise/sunset.
#SUN_LAT=45.14
#SUN_LON=7.38
#SUN_TIMEZONE=Europe/Rome
#SUN_SUNRISE_BUFFER_MIN=0
#SUN_SUNSET_BUFFER_MIN=0
# "api" (sunrise-sunset.org) or "astral" (offline computation).
#SUN_SOURCE=api
#SUN_RETRY_SECONDS=600
#SUN_FALLBACK_SUNRISE=06:00
#SUN_FALLBACK_SUNSET=20:00

# Supervisor timings (seconds).
#STREAM_MAX_SEGMENT_SECONDS=1800
#STREAM_TICK_SECONDS=1
#STREAM_DAY_WARMUP_SECONDS=10
#STREAM_NIGHT_WARMUP_SECONDS=30
#STREAM_READY_TIMEOUT_SECONDS=90
#STREAM_PUBLISH_CHECK_SECONDS=2
#STREAM_RETRY_DELAY_SECONDS=10
#STREAM_CAPTURE_RESTART_DELAY_SECONDS=2
#STREAM_CAPTURE_RESTART_ATTEMPTS=3
#STREAM_TERMINATE_GRACE_SECONDS=5
#STREAM_STATUS_INTERVAL_SECONDS=300
#STREAM_PROGRESS_INTERVAL_SECONDS=60
"""


@dataclass(frozen=True)
class CameraSettings:
    width: int = 1296
    height: int = 972
    frame_rate: int = 30
    bitrate_bps: int = 20_000_000
    night_frame_rate: int = 1
    night_shutter_us: int = 2_900_000
    night_gain: float = 20.0
    denoise: str = "cdn_off"
    awb: str = "auto"
    profile: str = "high"
    rpicam_vid: str = "rpicam-vid"
    verbose: bool = False


@dataclass(frozen=True)
class PublishSettings:
    endpoint_url: Optional[str]
    audio_path: str = "audio.mp3"
    ffmpeg: str = "ffmpeg"
    loglevel: str = "warning"
    preset: str = "veryfast"


@dataclass(frozen=True)
class SolarSettings:
    latitude: float = 45.14
    longitude: float = 7.38
    timezone: str = "Europe/Rome"
    sunrise_buffer_min: int = 0
    sunset_buffer_min: int = 0
    source: str = "api"
    api_url: str = DEFAULT_SUN_API_URL
    api_timeout: float = 10.0
    retry_seconds: float = 600.0
    fallback_sunrise_minute: int = 6 * 60
    fallback_sunset_minute: int = 20 * 60


@dataclass(frozen=True)
class SupervisorTimings:
    max_segment_seconds: float = 1800.0
    tick_seconds: float = 1.0
    day_warmup_seconds: float = 10.0
    night_warmup_seconds: float = 30.0
    ready_timeout_seconds: float = 90.0
    publish_check_seconds: float = 2.0
    retry_delay_seconds: float = 10.0
    capture_restart_delay_seconds: float = 2.0
    capture_restart_attempts: int = 3
    terminate_grace_seconds: float = 5.0
    status_interval_seconds: float = 300.0
    progress_interval_seconds: float = 60.0


@dataclass(frozen=True)
class StreamConfig:
    camera: CameraSettings
    publish: PublishSettings
    solar: SolarSettings
    timings: SupervisorTimings


def _env_flag(name: str, default: bool = False) -> bool:
    value = os.environ.get(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if not normalized:
        return default
    return normalized not in {"0", "false", "no", "off"}


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None:
        return default
    try:
        return int(raw.strip())
    except (TypeError, ValueError):
        log_event("primary", f"Invalid value in {name} ({raw!r}); using {default}.", "warning")
        return default


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if raw is None:
        return default
    try:
        return float(raw.strip())
    except (TypeError, ValueError):
        log_event("primary", f"Invalid value in {name} ({raw!r}); using {default}.", "warning")
        return default


def _env_str(name: str, default: str) -> str:
    value = os.environ.get(name, "").strip()
    return value or default


def parse_clock_minute(value: str) -> Optional[int]:
    """Parse ``HH:MM`` or ``HHMM`` into a minute of the day."""

    cleaned = value.strip().replace(":", "")
    if len(cleaned) not in (3, 4) or not cleaned.isdigit():
        return None
    hours, minutes = int(cleaned[:-2]), int(cleaned[-2:])
    if hours > 23 or minutes > 59:
        return None
    return hours * 60 + minutes


def _env_clock_minute(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    parsed = parse_clock_minute(raw)
    if parsed is None:
        log_event(
            "primary",
            f"Invalid time in {name} ({raw!r}); using {default // 60:02d}:{default % 60:02d}.",
            "warning",
        )
        return default
    return parsed


def _ensure_env_file() -> None:
    env_path = base_dir() / ".env"
    if env_path.exists():
        return

    try:
        env_path.write_text(ENV_TEMPLATE_CONTENT, encoding="utf-8")
    except OSError as exc:
        log_event("primary", f"Failed to create .env automatically ({exc}).", "warning")
        return

    log_event(
        "primary",
        f".env created automatically at {env_path}. Edit the stream key before broadcasting.",
    )


def load_env_files() -> None:
    """Populate os.environ with values from nearby .env files."""

    env_paths: list[Path] = []
    override = os.environ.get("SKYCAM_ENV_FILE", "").strip()
    if override:
        env_paths.append(Path(os.path.expandvars(override)).expanduser())
    env_paths.append(base_dir() / ".env")

    seen = set()
    for path in env_paths:
        if path in seen or not path.is_file():
            continue
        seen.add(path)
        try:
            with path.open("r", encoding="utf-8") as fh:
                for raw_line in fh:
                    line = raw_line.strip()
                    if not line or line.startswith("#") or "=" not in line:
                        continue
                    key, value = line.split("=", 1)
                    key = key.strip()
                    value = value.strip()
                    if len(value) >= 2 and value[0] == value[-1] and value[0] in "\"'":
                        value = value[1:-1]
                    os.environ.setdefault(key, value)
        except OSError:
            continue


def resolve_endpoint_url() -> Optional[str]:
    url = os.environ.get("YT_URL", "").strip()
    if url:
        return url

    key = os.environ.get("YT_KEY", "").strip()
    if key:
        ingest = _env_str("YT_INGEST_BASE", DEFAULT_INGEST_BASE).rstrip("/")
        return f"{ingest}/{key}"

    return None


def _resolve_timings() -> SupervisorTimings:
    defaults = SupervisorTimings()

    tick = _env_float("STREAM_TICK_SECONDS", defaults.tick_seconds)
    if tick < 0.2:
        tick = 0.2

    day_warmup = max(_env_float("STREAM_DAY_WARMUP_SECONDS", defaults.day_warmup_seconds), 0.0)
    night_warmup = max(
        _env_float("STREAM_NIGHT_WARMUP_SECONDS", defaults.night_warmup_seconds), 0.0
    )
    publish_check = max(
        _env_float("STREAM_PUBLISH_CHECK_SECONDS", defaults.publish_check_seconds), 0.0
    )

    ready_timeout = _env_float("STREAM_READY_TIMEOUT_SECONDS", defaults.ready_timeout_seconds)
    minimum_timeout = max(day_warmup, night_warmup, publish_check) + 5.0
    if ready_timeout < minimum_timeout:
        log_event(
            "primary",
            f"Readiness timeout {ready_timeout:.1f}s is shorter than the warm-up; "
            f"using {minimum_timeout:.1f}s.",
            "warning",
        )
        ready_timeout = minimum_timeout

    max_segment = _env_float("STREAM_MAX_SEGMENT_SECONDS", defaults.max_segment_seconds)
    if max_segment < 60.0:
        max_segment = 60.0

    retry_delay = _env_float("STREAM_RETRY_DELAY_SECONDS", defaults.retry_delay_seconds)
    if retry_delay < 1.0:
        retry_delay = 1.0

    restart_delay = max(
        _env_float(
            "STREAM_CAPTURE_RESTART_DELAY_SECONDS", defaults.capture_restart_delay_seconds
        ),
        0.0,
    )
    restart_attempts = _env_int(
        "STREAM_CAPTURE_RESTART_ATTEMPTS", defaults.capture_restart_attempts
    )
    if restart_attempts < 1:
        restart_attempts = 1

    grace = _env_float("STREAM_TERMINATE_GRACE_SECONDS", defaults.terminate_grace_seconds)
    if grace <= 0:
        grace = defaults.terminate_grace_seconds

    status_interval = _env_float(
        "STREAM_STATUS_INTERVAL_SECONDS", defaults.status_interval_seconds
    )
    progress_interval = _env_float(
        "STREAM_PROGRESS_INTERVAL_SECONDS", defaults.progress_interval_seconds
    )

    return SupervisorTimings(
        max_segment_seconds=max_segment,
        tick_seconds=tick,
        day_warmup_seconds=day_warmup,
        night_warmup_seconds=night_warmup,
        ready_timeout_seconds=ready_timeout,
        publish_check_seconds=publish_check,
        retry_delay_seconds=retry_delay,
        capture_restart_delay_seconds=restart_delay,
        capture_restart_attempts=restart_attempts,
        terminate_grace_seconds=grace,
        status_interval_seconds=status_interval,
        progress_interval_seconds=progress_interval,
    )


def _resolve_camera() -> CameraSettings:
    defaults = CameraSettings()

    frame_rate = _env_int("CAM_FRAMERATE", defaults.frame_rate)
    if frame_rate < 1:
        frame_rate = defaults.frame_rate
    night_frame_rate = _env_int("CAM_NIGHT_FRAMERATE", defaults.night_frame_rate)
    if night_frame_rate < 1:
        night_frame_rate = 1

    return CameraSettings(
        width=_env_int("CAM_WIDTH", defaults.width),
        height=_env_int("CAM_HEIGHT", defaults.height),
        frame_rate=frame_rate,
        bitrate_bps=_env_int("CAM_BITRATE", defaults.bitrate_bps),
        night_frame_rate=night_frame_rate,
        night_shutter_us=_env_int("CAM_NIGHT_SHUTTER", defaults.night_shutter_us),
        night_gain=_env_float("CAM_NIGHT_GAIN", defaults.night_gain),
        denoise=_env_str("CAM_DENOISE", defaults.denoise),
        awb=_env_str("CAM_AWB", defaults.awb),
        profile=_env_str("CAM_PROFILE", defaults.profile),
        rpicam_vid=_env_str("RPICAM_VID", defaults.rpicam_vid),
        verbose=_env_flag("RPICAM_VERBOSE", defaults.verbose),
    )


def _resolve_solar() -> SolarSettings:
    defaults = SolarSettings()

    source = _env_str("SUN_SOURCE", defaults.source).lower()
    if source not in {"api", "astral"}:
        log_event("primary", f"Unknown SUN_SOURCE ({source}); using api.", "warning")
        source = "api"

    timeout = _env_float("SUN_API_TIMEOUT", defaults.api_timeout)
    if timeout <= 0:
        timeout = defaults.api_timeout

    retry = _env_float("SUN_RETRY_SECONDS", defaults.retry_seconds)
    if retry < 30.0:
        retry = 30.0

    return SolarSettings(
        latitude=_env_float("SUN_LAT", defaults.latitude),
        longitude=_env_float("SUN_LON", defaults.longitude),
        timezone=_env_str("SUN_TIMEZONE", defaults.timezone),
        sunrise_buffer_min=_env_int("SUN_SUNRISE_BUFFER_MIN", defaults.sunrise_buffer_min),
        sunset_buffer_min=_env_int("SUN_SUNSET_BUFFER_MIN", defaults.sunset_buffer_min),
        source=source,
        api_url=_env_str("SUN_API_URL", defaults.api_url),
        api_timeout=timeout,
        retry_seconds=retry,
        fallback_sunrise_minute=_env_clock_minute(
            "SUN_FALLBACK_SUNRISE", defaults.fallback_sunrise_minute
        ),
        fallback_sunset_minute=_env_clock_minute(
            "SUN_FALLBACK_SUNSET", defaults.fallback_sunset_minute
        ),
    )


def load_config(create_env: bool = True) -> StreamConfig:
    if create_env:
        _ensure_env_file()
    load_env_files()

    publish = PublishSettings(
        endpoint_url=resolve_endpoint_url(),
        audio_path=_env_str("STREAM_AUDIO_FILE", "audio.mp3"),
        ffmpeg=_env_str("FFMPEG", "ffmpeg"),
        loglevel=_env_str("FFMPEG_LOGLEVEL", "warning"),
        preset=_env_str("FFMPEG_PRESET", "veryfast"),
    )

    return StreamConfig(
        camera=_resolve_camera(),
        publish=publish,
        solar=_resolve_solar(),
        timings=_resolve_timings(),
    )


def describe_config(config: StreamConfig) -> list[str]:
    camera = config.camera
    solar = config.solar
    timings = config.timings
    return [
        f"Stream configuration: {camera.width}x{camera.height} @ {camera.frame_rate}fps, "
        f"bitrate {camera.bitrate_bps // 1000}kbps",
        f"Night capture: {camera.night_frame_rate}fps, shutter {camera.night_shutter_us}us, "
        f"gain {camera.night_gain}",
        f"Location: lat {solar.latitude}, lon {solar.longitude} ({solar.timezone}), "
        f"sun source {solar.source}, buffers -{solar.sunrise_buffer_min}/+{solar.sunset_buffer_min} min",
        f"Capture segment {timings.max_segment_seconds / 60:.0f} min, warm-up "
        f"{timings.day_warmup_seconds:.0f}s day / {timings.night_warmup_seconds:.0f}s night, "
        f"tick {timings.tick_seconds:.1f}s",
    ]
