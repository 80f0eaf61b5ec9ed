"""Constants, environment configuration, policies and logging setup.

Shared by the engine modules, the CLI and the local API server.
- Environment overrides use the ENDPOINT_DOCTOR_ prefix
- Policy dataclasses hold every threshold and penalty used by the engine
- setup_logger() wires file + console handlers once per process
"""

from __future__ import annotations

import dataclasses
import datetime as dt
import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Any

# ------------------------------- Constants ---------------------------------- #

APP_NAME = "endpoint_doctor"
APP_VERSION = "1.0.0"
DEFAULT_DATA_DIR = Path.home() / ".local" / "share" / APP_NAME
DEFAULT_LOG_FILE = DEFAULT_DATA_DIR / "actions.log"

ENV_PREFIX = "ENDPOINT_DOCTOR_"
MB = 1024 * 1024


# ------------------------------- Utilities ---------------------------------- #


def now_utc_iso() -> str:
    return dt.datetime.now(dt.timezone.utc).replace(microsecond=0).isoformat()


def format_mb(value_mb: float) -> str:
    """Human-readable size for a value already expressed in megabytes."""
    if value_mb >= 1024:
        return f"{value_mb / 1024:.1f} GB"
    return f"{int(value_mb)} MB"


def bytes_to_mb(value: int) -> int:
    """Whole megabytes, rounded down."""
    return max(0, int(value)) // MB


def write_json(path: str | Path, data: Any) -> None:
    out = Path(path)
    out.parent.mkdir(parents=True, exist_ok=True)
    out.write_text(json.dumps(data, indent=2, ensure_ascii=True), encoding="utf-8")


def read_json(path: str | Path) -> Any:
    return json.loads(Path(path).read_text(encoding="utf-8"))


_TRUE_WORDS = {"true", "yes", "1"}
_FALSE_WORDS = {"false", "no", "0"}


def parse_bool(value: Any, where: str) -> bool:
    """Accept JSON booleans, 0/1 and true/false words; anything else is a ValueError."""
    if isinstance(value, bool):
        return value
    if isinstance(value, int) and value in (0, 1):
        return bool(value)
    if isinstance(value, str):
        word = value.strip().lower()
        if word in _TRUE_WORDS:
            return True
        if word in _FALSE_WORDS:
            return False
    raise ValueError(f"{where} must be true or false, got {value!r}")


def env_str(name: str, default: str) -> str:
    return os.getenv(ENV_PREFIX + name, default)


def env_float(name: str, default: float) -> float:
    raw = os.getenv(ENV_PREFIX + name, "").strip()
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError as exc:
        raise ValueError(f"{ENV_PREFIX + name} must be a number, got {raw!r}") from exc


# ------------------------------- Logging ------------------------------------ #


def setup_logger(log_file: Path | None = None, console: bool = True) -> logging.Logger:
    logger = logging.getLogger(APP_NAME)
    if logger.handlers:
        return logger

    chosen = log_file or Path(env_str("LOG", str(DEFAULT_LOG_FILE)))
    try:
        chosen.parent.mkdir(parents=True, exist_ok=True)
    except OSError:
        chosen = Path(tempfile.gettempdir()) / APP_NAME / "actions.log"
        chosen.parent.mkdir(parents=True, exist_ok=True)

    logger.setLevel(logging.INFO)
    formatter = logging.Formatter("%(asctime)s %(levelname)s %(message)s")

    fh = logging.FileHandler(chosen, encoding="utf-8")
    fh.setFormatter(formatter)
    logger.addHandler(fh)

    if console:
        sh = logging.StreamHandler()
        sh.setFormatter(formatter)
        logger.addHandler(sh)
    return logger


# ------------------------------- Policies ----------------------------------- #


@dataclasses.dataclass(slots=True)
class EvaluationPolicy:
    """Thresholds and penalties for the health evaluator."""

    uptime_warning_days: float = 14.0
    uptime_info_days: float = 7.0
    cpu_critical_percent: float = 80.0
    cpu_warning_percent: float = 60.0
    temp_critical_c: float = 90.0
    temp_warning_c: float = 80.0
    ram_critical_percent: float = 95.0
    ram_warning_percent: float = 85.0
    ram_info_percent: float = 70.0
    disk_critical_free_percent: float = 10.0
    disk_warning_free_percent: float = 20.0
    temp_files_warning_mb: int = 500
    recycle_bin_info_mb: int = 1024
    gpu_driver_max_age_days: int = 365
    battery_critical_health: float = 50.0
    battery_warning_health: float = 70.0
    startup_critical_count: int = 25
    startup_warning_count: int = 15
    app_crash_warning_count: int = 5
    unexpected_shutdown_warning_count: int = 3
    browser_process_info_count: int = 20
    browser_cache_info_mb: int = 1024

    critical_penalty: int = 15
    warning_penalty: int = 5
    info_penalty: int = 2
    ram_critical_penalty: int = 20
    ram_warning_penalty: int = 10
    cpu_warning_penalty: int = 8
    disk_warning_penalty: int = 8
    temp_critical_penalty: int = 10
    battery_critical_penalty: int = 10
    startup_critical_penalty: int = 10
    temp_files_penalty: int = 3
    update_service_penalty: int = 8


@dataclasses.dataclass(slots=True)
class PlanningPolicy:
    """Thresholds used when deriving actions from a snapshot."""

    high_performance_plan: str = "High performance"
    shell_memory_restart_mb: int = 300
    upgrade_logs_min_mb: int = 200
    browser_cache_min_mb: int = 200
    browser_tabs_max: int = 30
    heavy_process_min_mb: int = 500
    protected_processes: tuple[str, ...] = ("system", "svchost", "csrss", "dwm", "explorer", "systemd", "init")


@dataclasses.dataclass(slots=True)
class ExecutionPolicy:
    """Runtime limits for the action executor."""

    command_timeout: float = 10.0
    partial_failure_ratio: float = 0.20
    shell_exit_wait: float = 5.0
    settle_seconds: float = 1.0
    kill_wait: float = 3.0

    def __post_init__(self) -> None:
        if self.command_timeout <= 0:
            raise ValueError("command_timeout must be positive")
        if not 0.0 <= self.partial_failure_ratio <= 1.0:
            raise ValueError("partial_failure_ratio must be within [0, 1]")
        if self.settle_seconds < 0 or self.shell_exit_wait < 0 or self.kill_wait < 0:
            raise ValueError("wait intervals must not be negative")


def load_execution_policy() -> ExecutionPolicy:
    return ExecutionPolicy(
        command_timeout=env_float("COMMAND_TIMEOUT", 10.0),
        partial_failure_ratio=env_float("PARTIAL_FAILURE_RATIO", 0.20),
        settle_seconds=env_float("SETTLE_SECONDS", 1.0),
    )


__all__ = [
    "APP_NAME",
    "APP_VERSION",
    "DEFAULT_LOG_FILE",
    "MB",
    "EvaluationPolicy",
    "ExecutionPolicy",
    "PlanningPolicy",
    "bytes_to_mb",
    "format_mb",
    "load_execution_policy",
    "now_utc_iso",
    "parse_bool",
    "read_json",
    "setup_logger",
    "write_json",
]
