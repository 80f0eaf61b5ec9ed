"""Immutable machine snapshot consumed by the evaluator, planner and comparator.

A snapshot is produced by an external scanner and never mutated afterwards.
Each category is its own frozen record; missing hardware is expressed through
explicit flags (has_battery, has_gpu, has_temperature_sensor) and unavailable
measurements fall back to documented defaults ("Unknown", 0, empty tuple).
"""

from __future__ import annotations

import dataclasses
import datetime as dt
import typing
from dataclasses import dataclass, field
from typing import Any, Mapping

from endpoint_doctor.config import parse_bool

UNKNOWN = "Unknown"


def _plain(value: Any) -> Any:
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        return {f.name: _plain(getattr(value, f.name)) for f in dataclasses.fields(value)}
    if isinstance(value, (list, tuple)):
        return [_plain(v) for v in value]
    return value


def _coerce(tp: Any, value: Any, where: str) -> Any:
    if dataclasses.is_dataclass(tp):
        return _build(tp, value, where)
    if typing.get_origin(tp) is tuple:
        inner = typing.get_args(tp)[0]
        if isinstance(value, (str, bytes)) or not isinstance(value, (list, tuple)):
            raise ValueError(f"{where} must be a list, got {type(value).__name__}")
        return tuple(_coerce(inner, v, f"{where}[{i}]") for i, v in enumerate(value))
    if tp is bool:
        return parse_bool(value, where)
    try:
        if tp is int:
            return int(value)
        if tp is float:
            return float(value)
        if tp is str:
            return str(value)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"{where}: {exc}") from exc
    return value


def _build(cls: type, data: Any, where: str) -> Any:
    if isinstance(data, cls):
        return data
    if not isinstance(data, Mapping):
        raise ValueError(f"{where} must be an object, got {type(data).__name__}")
    hints = typing.get_type_hints(cls)
    kwargs = {}
    for f in dataclasses.fields(cls):
        if f.name in data and data[f.name] is not None:
            kwargs[f.name] = _coerce(hints[f.name], data[f.name], f"{where}.{f.name}")
    return cls(**kwargs)


# ------------------------------ Category Records ---------------------------- #


@dataclass(frozen=True)
class SystemOverview:
    hostname: str = UNKNOWN
    os_version: str = UNKNOWN
    uptime_hours: float = 0.0

    @property
    def uptime_days(self) -> float:
        return self.uptime_hours / 24.0


@dataclass(frozen=True)
class ProcessInfo:
    pid: int = 0
    name: str = ""
    memory_mb: int = 0


@dataclass(frozen=True)
class CpuInfo:
    name: str = UNKNOWN
    load_percent: float = 0.0
    has_temperature_sensor: bool = False
    temperature_c: float = 0.0


@dataclass(frozen=True)
class RamInfo:
    total_mb: int = 0
    used_mb: int = 0
    top_processes: tuple[ProcessInfo, ...] = ()

    @property
    def percent_used(self) -> float:
        if self.total_mb <= 0:
            return 0.0
        return self.used_mb * 100.0 / self.total_mb


@dataclass(frozen=True)
class DriveInfo:
    mount: str = ""
    total_gb: float = 0.0
    free_gb: float = 0.0

    @property
    def measured(self) -> bool:
        return self.total_gb > 0

    @property
    def free_percent(self) -> float:
        if not self.measured:
            return 0.0
        return self.free_gb * 100.0 / self.total_gb


@dataclass(frozen=True)
class FolderMeasurement:
    path: str = ""
    size_mb: int = 0


@dataclass(frozen=True)
class DiskInfo:
    drives: tuple[DriveInfo, ...] = ()
    temp_folders: tuple[FolderMeasurement, ...] = ()
    crash_dump_folders: tuple[FolderMeasurement, ...] = ()
    recycle_bin_mb: int = 0
    windows_old_exists: bool = False
    windows_old_mb: int = 0
    upgrade_logs_mb: int = 0

    @property
    def temp_total_mb(self) -> int:
        return sum(max(0, f.size_mb) for f in self.temp_folders)

    @property
    def crash_dump_total_mb(self) -> int:
        return sum(max(0, f.size_mb) for f in self.crash_dump_folders)

    @property
    def free_percent(self) -> float:
        """Aggregate free space across all measured drives."""
        measured = [d for d in self.drives if d.measured]
        total = sum(d.total_gb for d in measured)
        if total <= 0:
            return 0.0
        return sum(d.free_gb for d in measured) * 100.0 / total


@dataclass(frozen=True)
class GpuInfo:
    has_gpu: bool = False
    name: str = UNKNOWN
    driver_version: str = UNKNOWN
    driver_date: str = UNKNOWN

    def driver_age_days(self, as_of: str) -> int | None:
        """Days between the driver date and `as_of`; None when either is unknown."""
        try:
            driver = dt.date.fromisoformat(self.driver_date[:10])
            ref = dt.datetime.fromisoformat(as_of).date()
        except (TypeError, ValueError):
            return None
        return (ref - driver).days


@dataclass(frozen=True)
class BatteryInfo:
    has_battery: bool = False
    health_percent: float = 0.0
    power_plan: str = UNKNOWN


@dataclass(frozen=True)
class StartupInfo:
    enabled_count: int = 0


@dataclass(frozen=True)
class VisualSettings:
    transparency_enabled: bool = False
    animations_enabled: bool = False

    @property
    def performance_mode(self) -> bool:
        return not (self.transparency_enabled or self.animations_enabled)


@dataclass(frozen=True)
class AntivirusInfo:
    name: str = UNKNOWN
    enabled: bool = True
    scan_running: bool = False


@dataclass(frozen=True)
class NetworkInfo:
    dns_response: str = UNKNOWN
    ping_latency: str = UNKNOWN


@dataclass(frozen=True)
class BrowserInfo:
    name: str = ""
    cache_mb: int = 0
    cache_paths: tuple[str, ...] = ()
    open_tabs: int = 0
    process_count: int = 0


@dataclass(frozen=True)
class OfficeInfo:
    installed: bool = False
    repair_needed: bool = False


@dataclass(frozen=True)
class ShellInfo:
    process_name: str = "explorer"
    launch_command: tuple[str, ...] = ("explorer.exe",)
    memory_mb: int = 0
    responding: bool = True


@dataclass(frozen=True)
class CrashRecord:
    app_name: str = ""
    count: int = 0


@dataclass(frozen=True)
class EventLogInfo:
    bsod_count: int = 0
    app_crash_count: int = 0
    disk_error_count: int = 0
    unexpected_shutdown_count: int = 0
    crashing_apps: tuple[CrashRecord, ...] = ()

    def top_crashing_apps(self, limit: int = 3) -> list[CrashRecord]:
        ranked = sorted(
            (c for c in self.crashing_apps if c.app_name and c.count > 0),
            key=lambda c: (-c.count, c.app_name.lower()),
        )
        return ranked[:limit]


@dataclass(frozen=True)
class UpdateInfo:
    service_start_type: str = UNKNOWN
    pending_reboot: bool = False


# --------------------------------- Snapshot --------------------------------- #


@dataclass(frozen=True)
class Snapshot:
    """All measured facts about one machine at one point in time."""

    captured_at: str = ""
    system: SystemOverview = field(default_factory=SystemOverview)
    cpu: CpuInfo = field(default_factory=CpuInfo)
    ram: RamInfo = field(default_factory=RamInfo)
    disk: DiskInfo = field(default_factory=DiskInfo)
    gpu: GpuInfo = field(default_factory=GpuInfo)
    battery: BatteryInfo = field(default_factory=BatteryInfo)
    startup: StartupInfo = field(default_factory=StartupInfo)
    visuals: VisualSettings = field(default_factory=VisualSettings)
    antivirus: AntivirusInfo = field(default_factory=AntivirusInfo)
    network: NetworkInfo = field(default_factory=NetworkInfo)
    browsers: tuple[BrowserInfo, ...] = ()
    office: OfficeInfo = field(default_factory=OfficeInfo)
    shell: ShellInfo = field(default_factory=ShellInfo)
    event_log: EventLogInfo = field(default_factory=EventLogInfo)
    updates: UpdateInfo = field(default_factory=UpdateInfo)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> Snapshot:
        """Build a snapshot from JSON data; unknown keys are ignored, missing ones defaulted."""
        return _build(cls, data, "snapshot")

    def to_dict(self) -> dict[str, Any]:
        return _plain(self)


__all__ = [
    "UNKNOWN",
    "AntivirusInfo",
    "BatteryInfo",
    "BrowserInfo",
    "CpuInfo",
    "CrashRecord",
    "DiskInfo",
    "DriveInfo",
    "EventLogInfo",
    "FolderMeasurement",
    "GpuInfo",
    "NetworkInfo",
    "OfficeInfo",
    "ProcessInfo",
    "RamInfo",
    "ShellInfo",
    "Snapshot",
    "StartupInfo",
    "SystemOverview",
    "UpdateInfo",
    "VisualSettings",
]
