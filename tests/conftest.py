from __future__ import annotations

import copy
import subprocess
from typing import Any, Sequence

import pytest

from endpoint_doctor.config import ExecutionPolicy
from endpoint_doctor.events import EventBus, EventRecorder
from endpoint_doctor.executor import ActionExecutor
from endpoint_doctor.snapshot import Snapshot
from endpoint_doctor.system_control import TrashOutcome, TrashResult

HEALTHY = {
    "captured_at": "2026-01-15T10:00:00+00:00",
    "system": {"hostname": "ws-01", "os_version": "Windows 11 Pro", "uptime_hours": 30},
    "cpu": {"name": "Test CPU", "load_percent": 12.0},
    "ram": {"total_mb": 16384, "used_mb": 6000, "top_processes": []},
    "disk": {"drives": [{"mount": "C:", "total_gb": 500.0, "free_gb": 250.0}]},
    "gpu": {"has_gpu": True, "name": "Test GPU", "driver_date": "2025-11-01"},
    "battery": {"has_battery": False, "power_plan": "High performance"},
    "startup": {"enabled_count": 5},
    "visuals": {"transparency_enabled": False, "animations_enabled": False},
    "antivirus": {"name": "Defender", "enabled": True},
    "network": {"dns_response": "12 ms", "ping_latency": "10 ms"},
    "browsers": [],
    "office": {"installed": True, "repair_needed": False},
    "shell": {"process_name": "explorer", "launch_command": ["explorer.exe"], "memory_mb": 120},
    "event_log": {},
    "updates": {"service_start_type": "Manual", "pending_reboot": False},
}


def snapshot_data(**sections: Any) -> dict[str, Any]:
    """Healthy snapshot data with the given sections merged in."""
    data = copy.deepcopy(HEALTHY)
    for name, value in sections.items():
        if isinstance(value, dict) and isinstance(data.get(name), dict):
            data[name].update(value)
        else:
            data[name] = value
    return data


def make_snapshot(**sections: Any) -> Snapshot:
    return Snapshot.from_dict(snapshot_data(**sections))


class FakeProcess:
    def __init__(self, pid: int, rc: int | None = 0):
        self.pid = pid
        self.rc = rc
        self.wait_timeouts: list[float | None] = []

    def wait(self, timeout: float | None = None) -> int:
        self.wait_timeouts.append(timeout)
        if self.rc is None:
            raise subprocess.TimeoutExpired(cmd="fake", timeout=timeout)
        return self.rc


class FakeSystemControl:
    """In-memory SystemControl that records every call."""

    def __init__(self) -> None:
        self.power_command: list[str] | None = ["powercfg", "/setactive", "guid"]
        self.dns_command: list[str] | None = ["ipconfig", "/flushdns"]
        self.command_rc: int | None = 0
        self.visual_changes: int | Exception = 2
        self.trash: TrashResult | Exception = TrashResult(TrashOutcome.EMPTIED, 300 * 1024 * 1024)
        self.processes: dict[str, list[int]] = {}
        self.start_failures = 0
        self.spawned: list[list[str]] = []
        self.killed_trees: list[int] = []
        self.terminated: list[int] = []
        self.started: list[list[str]] = []
        self.kill_count = 3

    def power_plan_command(self) -> list[str] | None:
        return self.power_command

    def flush_dns_command(self) -> list[str] | None:
        return self.dns_command

    def apply_performance_visuals(self) -> int:
        if isinstance(self.visual_changes, Exception):
            raise self.visual_changes
        return self.visual_changes

    def empty_trash(self) -> TrashResult:
        if isinstance(self.trash, Exception):
            raise self.trash
        return self.trash

    def find_processes(self, name: str) -> list[int]:
        return list(self.processes.get(name, []))

    def terminate_process(self, pid: int) -> None:
        self.terminated.append(pid)

    def wait_for_exit(self, pids: Sequence[int], timeout: float) -> list[int]:
        return []

    def start_process(self, command: Sequence[str]) -> int:
        if self.start_failures > 0:
            self.start_failures -= 1
            raise OSError("launch failed")
        self.started.append(list(command))
        return 4242

    def spawn(self, command: Sequence[str]) -> FakeProcess:
        self.spawned.append(list(command))
        return FakeProcess(1000 + len(self.spawned), self.command_rc)

    def kill_tree(self, pid: int) -> int:
        self.killed_trees.append(pid)
        return self.kill_count


@pytest.fixture
def control() -> FakeSystemControl:
    return FakeSystemControl()


@pytest.fixture
def recorder() -> EventRecorder:
    return EventRecorder()


@pytest.fixture
def executor(control, recorder) -> ActionExecutor:
    bus = EventBus()
    bus.subscribe(recorder)
    policy = ExecutionPolicy(settle_seconds=0.0, shell_exit_wait=0.0)
    return ActionExecutor(control, policy=policy, bus=bus, sleep=lambda seconds: None)
