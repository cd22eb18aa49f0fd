from types import SimpleNamespace

import system_status
from system_status import collect_system_status, describe_system_status


def test_collect_system_status_reads_psutil(monkeypatch):
    monkeypatch.setattr(system_status.psutil, "cpu_percent", lambda interval=None: 41.0)
    monkeypatch.setattr(
        system_status.psutil, "virtual_memory", lambda: SimpleNamespace(percent=63.5)
    )
    monkeypatch.setattr(
        system_status.psutil, "disk_usage", lambda path: SimpleNamespace(percent=71.2)
    )
    monkeypatch.setattr(
        system_status.psutil,
        "sensors_temperatures",
        lambda: {"cpu_thermal": [SimpleNamespace(current=58.4)]},
        raising=False,
    )

    status = collect_system_status()

    assert status == {
        "cpu_percent": 41.0,
        "memory_percent": 63.5,
        "disk_percent": 71.2,
        "temperature_c": 58.4,
    }
    assert describe_system_status(status) == "CPU 41.0% | MEM 63.5% | DISK 71.2% | TEMP 58.4C"


def test_missing_sensors_become_none(monkeypatch):
    def unavailable(*_args, **_kwargs):
        raise OSError("not supported")

    monkeypatch.setattr(system_status.psutil, "disk_usage", unavailable)
    monkeypatch.setattr(system_status.psutil, "sensors_temperatures", lambda: {}, raising=False)

    status = collect_system_status()

    assert status["disk_percent"] is None
    assert status["temperature_c"] is None
    assert "DISK n/a" in describe_system_status(status)
    assert "TEMP n/a" in describe_system_status(status)
