"""Shared service log used by every component of the camera streamer."""

from __future__ import annotations

import datetime
import os
import time
from pathlib import Path
from typing import Optional

LOG_RETENTION_DAYS = 7
DEFAULT_LOG_RELATIVE = "logs/skycam_stream.log"

_SHOW_ON_SCREEN = False


def base_dir() -> Path:
    raw = os.environ.get("SKYCAM_HOME", "").strip()
    if raw:
        return Path(os.path.expandvars(raw)).expanduser()
    return Path.cwd()


def _resolve_log_target() -> tuple[Path, str, str]:
    """Determine the directory, stem and suffix for daily log files."""

    raw_path = os.environ.get("SKYCAM_LOG_FILE", "").strip()

    if raw_path:
        candidate = Path(os.path.expandvars(raw_path)).expanduser()
        if not candidate.is_absolute():
            candidate = (base_dir() / candidate).resolve()
    else:
        candidate = base_dir() / DEFAULT_LOG_RELATIVE

    directory = candidate.parent
    suffix = candidate.suffix or ".log"
    stem = candidate.stem or "skycam_stream"
    return directory, stem, suffix


def set_show_on_screen(enabled: bool) -> None:
    global _SHOW_ON_SCREEN
    _SHOW_ON_SCREEN = enabled


def current_log_file(now: Optional[datetime.datetime] = None) -> Path:
    if now is None:
        now = datetime.datetime.now(datetime.timezone.utc)
    directory, stem, suffix = _resolve_log_target()
    return directory / f"{stem}-{now.strftime('%Y-%m-%d')}{suffix}"


def prune_old_logs(active_file: Optional[Path] = None) -> None:
    """Remove log files older than the retention window."""

    directory, stem, suffix = _resolve_log_target()
    try:
        directory.mkdir(parents=True, exist_ok=True)
        candidates = list(directory.glob(f"{stem}-*{suffix}"))
    except OSError:
        return

    cutoff_ts = time.time() - (LOG_RETENTION_DAYS * 24 * 60 * 60)
    for path in candidates:
        try:
            if active_file is not None and path.resolve() == active_file.resolve():
                continue
            if path.stat().st_mtime < cutoff_ts:
                path.unlink()
        except OSError:
            continue


def format_line(
    component: str, message: str, level: str = "info", now: Optional[datetime.datetime] = None
) -> str:
    if now is None:
        now = datetime.datetime.now(datetime.timezone.utc)
    timestamp = now.strftime("%Y-%m-%d %H:%M:%S")
    if level and level.lower() != "info":
        return f"{timestamp} [{component}] [{level.upper()}] {message}"
    return f"{timestamp} [{component}] {message}"


def log_event(component: str, message: str, level: str = "info") -> None:
    """Append a timestamped entry to the shared service log."""

    line = format_line(component, message, level) + "\n"
    log_file = current_log_file()

    prune_old_logs(active_file=log_file)

    try:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        with log_file.open("a", encoding="utf-8") as handle:
            handle.write(line)
    except OSError:
        # Logging must never interrupt the control loop.
        pass

    if _SHOW_ON_SCREEN:
        try:
            print(line.rstrip("\n"), flush=True)
        except OSError:
            pass


def mask_sensitive_arg(value: str) -> str:
    """Hide stream keys and URL credentials before an argument is logged."""

    sanitized = value
    if "://" in sanitized and "@" in sanitized:
        prefix, _, remainder = sanitized.partition("://")
        credentials, sep, tail = remainder.partition("@")
        if sep:
            user, colon, _password = credentials.partition(":")
            if colon:
                masked = f"{user}:***" if user else "***"
            else:
                masked = f"{credentials}:***" if credentials else "***"
            sanitized = f"{prefix}://{masked}@{tail}"

    lowered = sanitized.lower()
    if lowered.startswith(("rtmp://", "rtmps://")):
        scheme, _, rest = sanitized.partition("://")
        host_path, sep, key = rest.rpartition("/")
        if sep and key and host_path:
            sanitized = f"{scheme}://{host_path}/***"
    return sanitized


def describe_command(argv: list[str]) -> str:
    return " ".join(mask_sensitive_arg(arg) for arg in argv)
