"""Host health snapshot logged next to the stream status."""

from __future__ import annotations

from typing import Any, Dict, Optional

import psutil

TEMPERATURE_SENSORS = ("cpu_thermal", "coretemp", "soc_thermal", "k10temp")


def _cpu_temperature() -> Optional[float]:
    reader = getattr(psutil, "sensors_temperatures", None)
    if reader is None:
        return None
    try:
        temps = reader() or {}
    except (OSError, RuntimeError):
        return None

    for sensor in TEMPERATURE_SENSORS:
        entries = temps.get(sensor)
        if entries:
            return float(entries[0].current)
    for entries in temps.values():
        if entries:
            return float(entries[0].current)
    return None


def collect_system_status(disk_path: str = "/") -> Dict[str, Any]:
    """Sample CPU, memory, disk and temperature; unavailable values are None."""

    status: Dict[str, Any] = {
        "cpu_percent": None,
        "memory_percent": None,
        "disk_percent": None,
        "temperature_c": None,
    }

    try:
        status["cpu_percent"] = float(psutil.cpu_percent(interval=None))
    except (OSError, RuntimeError):
        pass

    try:
        status["memory_percent"] = float(psutil.virtual_memory().percent)
    except (OSError, RuntimeError):
        pass

    try:
        status["disk_percent"] = float(psutil.disk_usage(disk_path).percent)
    except (OSError, RuntimeError):
        pass

    status["temperature_c"] = _cpu_temperature()
    return status


def _fmt(value: Optional[float], unit: str) -> str:
    if value is None:
        return "n/a"
    return f"{value:.1f}{unit}"


def describe_system_status(status: Dict[str, Any]) -> str:
    return (
        f"CPU {_fmt(status.get('cpu_percent'), '%')} | "
        f"MEM {_fmt(status.get('memory_percent'), '%')} | "
        f"DISK {_fmt(status.get('disk_percent'), '%')} | "
        f"TEMP {_fmt(status.get('temperature_c'), 'C')}"
    )
