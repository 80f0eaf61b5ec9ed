"""System control capability used by the executor for every machine mutation.

The executor only talks to a SystemControl. LocalSystemControl implements it
with subprocess and psutil; tests pass a fake with the same methods.
- Commands run without a visible window and can be killed as a tree
- Recycle bin / trash emptying distinguishes "emptied" from "already empty"
- Process lookup, termination and relaunch for shell replacement
"""

from __future__ import annotations

import contextlib
import ctypes
import logging
import os
import shutil
import subprocess
import sys
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Protocol, Sequence

import psutil

from endpoint_doctor.config import APP_NAME

IS_WINDOWS = os.name == "nt"
HIGH_PERFORMANCE_GUID = "8c5e7fda-e8bf-4a96-9a85-a6e23a8c635c"

# SHEmptyRecycleBinW flags and the HRESULT it returns for an empty bin.
SHERB_NOCONFIRMATION = 0x1
SHERB_NOPROGRESSUI = 0x2
SHERB_NOSOUND = 0x4
E_UNEXPECTED = 0x8000FFFF


class UnsupportedOperation(RuntimeError):
    """The host has no way to perform the requested change."""


class TrashOutcome(str, Enum):
    EMPTIED = "emptied"
    ALREADY_EMPTY = "already_empty"


@dataclass(frozen=True)
class TrashResult:
    outcome: TrashOutcome
    freed_bytes: int = 0


class ProcessHandle(Protocol):
    pid: int

    def wait(self, timeout: float | None = None) -> int: ...


class SystemControl(Protocol):
    """Capabilities the executor needs from the live machine."""

    def power_plan_command(self) -> list[str] | None: ...

    def flush_dns_command(self) -> list[str] | None: ...

    def apply_performance_visuals(self) -> int: ...

    def empty_trash(self) -> TrashResult: ...

    def find_processes(self, name: str) -> list[int]: ...

    def terminate_process(self, pid: int) -> None: ...

    def wait_for_exit(self, pids: Sequence[int], timeout: float) -> list[int]: ...

    def start_process(self, command: Sequence[str]) -> int: ...

    def spawn(self, command: Sequence[str]) -> ProcessHandle: ...

    def kill_tree(self, pid: int) -> int: ...


# ------------------------------- Utilities ---------------------------------- #


def run_command(command: list[str], timeout: int = 10) -> tuple[int, str, str]:
    try:
        cp = subprocess.run(
            command,
            text=True,
            capture_output=True,
            timeout=timeout,
            check=False,
            **_hidden_window_kwargs(),
        )
        return cp.returncode, cp.stdout, cp.stderr
    except Exception as exc:  # pylint: disable=broad-except
        return 1, "", str(exc)


def _hidden_window_kwargs() -> dict:
    if IS_WINDOWS:
        return {"creationflags": subprocess.CREATE_NO_WINDOW}
    return {}


def _detached_kwargs() -> dict:
    if IS_WINDOWS:
        return {"creationflags": subprocess.DETACHED_PROCESS | subprocess.CREATE_NEW_PROCESS_GROUP}
    return {"start_new_session": True}


def normalize_process_name(name: str) -> str:
    return name.strip().lower().removesuffix(".exe")


def launches_process(process_name: str, command: Sequence[str]) -> bool:
    """True when the command's executable is the named process (path and .exe ignored)."""
    if not process_name or not command or not command[0]:
        return False
    executable = command[0].replace("\\", "/").rsplit("/", 1)[-1]
    return normalize_process_name(executable) == normalize_process_name(process_name)


def path_size(path: Path) -> int:
    """Total bytes under a path without following symlinks."""
    try:
        st = path.lstat()
    except OSError:
        return 0
    if not path.is_dir() or path.is_symlink():
        return int(st.st_size)
    total = 0
    stack = [path]
    while stack:
        current = stack.pop()
        try:
            with os.scandir(current) as it:
                for entry in it:
                    try:
                        if entry.is_dir(follow_symlinks=False):
                            stack.append(Path(entry.path))
                        else:
                            total += entry.stat(follow_symlinks=False).st_size
                    except OSError:
                        continue
        except OSError:
            continue
    return total


class _SHQUERYRBINFO(ctypes.Structure):
    _fields_ = [
        ("cbSize", ctypes.c_uint32),
        ("i64Size", ctypes.c_int64),
        ("i64NumItems", ctypes.c_int64),
    ]


# --------------------------- Local Implementation --------------------------- #


class LocalSystemControl:
    """SystemControl backed by the real machine."""

    def __init__(
        self,
        trash_dir: Path | None = None,
        kill_wait: float = 3.0,
        logger: logging.Logger | None = None,
    ):
        data_home = Path(os.getenv("XDG_DATA_HOME") or Path.home() / ".local" / "share")
        self.trash_dir = trash_dir or data_home / "Trash"
        self.kill_wait = kill_wait
        self.logger = logger or logging.getLogger(APP_NAME)

    # -- commands --

    def power_plan_command(self) -> list[str] | None:
        if IS_WINDOWS:
            return ["powercfg", "/setactive", HIGH_PERFORMANCE_GUID]
        if shutil.which("powerprofilesctl"):
            return ["powerprofilesctl", "set", "performance"]
        return None

    def flush_dns_command(self) -> list[str] | None:
        if IS_WINDOWS:
            return ["ipconfig", "/flushdns"]
        if sys.platform == "darwin":
            return ["dscacheutil", "-flushcache"]
        if shutil.which("resolvectl"):
            return ["resolvectl", "flush-caches"]
        return None

    # -- visual settings --

    def apply_performance_visuals(self) -> int:
        if IS_WINDOWS:
            return self._windows_visuals()
        if shutil.which("gsettings"):
            return self._gnome_visuals()
        raise UnsupportedOperation("no desktop settings backend available")

    def _windows_visuals(self) -> int:
        import winreg

        settings = [
            (r"Software\Microsoft\Windows\CurrentVersion\Themes\Personalize", "EnableTransparency", 0, winreg.REG_DWORD),
            (r"Control Panel\Desktop\WindowMetrics", "MinAnimate", "0", winreg.REG_SZ),
            (r"Software\Microsoft\Windows\CurrentVersion\Explorer\VisualEffects", "VisualFXSetting", 2, winreg.REG_DWORD),
        ]
        changed = 0
        for subkey, name, value, kind in settings:
            access = winreg.KEY_READ | winreg.KEY_SET_VALUE
            with winreg.CreateKeyEx(winreg.HKEY_CURRENT_USER, subkey, 0, access) as key:
                try:
                    current, _ = winreg.QueryValueEx(key, name)
                except FileNotFoundError:
                    current = None
                if current != value:
                    winreg.SetValueEx(key, name, 0, kind, value)
                    changed += 1
        return changed

    def _gnome_visuals(self) -> int:
        changed = 0
        for schema, key, value in (("org.gnome.desktop.interface", "enable-animations", "false"),):
            rc, out, err = run_command(["gsettings", "get", schema, key], timeout=5)
            if rc != 0:
                raise UnsupportedOperation(f"gsettings cannot read {schema} {key}: {err.strip()}")
            if out.strip() == value:
                continue
            rc, _, err = run_command(["gsettings", "set", schema, key, value], timeout=5)
            if rc != 0:
                raise OSError(f"gsettings set {schema} {key} failed: {err.strip()}")
            changed += 1
        return changed

    # -- trash --

    def empty_trash(self) -> TrashResult:
        if IS_WINDOWS:
            return self._empty_recycle_bin()
        return self._empty_freedesktop_trash()

    def _empty_recycle_bin(self) -> TrashResult:
        shell32 = ctypes.windll.shell32
        info = _SHQUERYRBINFO()
        info.cbSize = ctypes.sizeof(_SHQUERYRBINFO)
        size_before = 0
        if shell32.SHQueryRecycleBinW(None, ctypes.byref(info)) == 0:
            size_before = max(0, int(info.i64Size))

        hr = shell32.SHEmptyRecycleBinW(None, None, SHERB_NOCONFIRMATION | SHERB_NOPROGRESSUI | SHERB_NOSOUND)
        code = hr & 0xFFFFFFFF
        if code == 0:
            return TrashResult(TrashOutcome.EMPTIED, size_before)
        if code == E_UNEXPECTED:
            return TrashResult(TrashOutcome.ALREADY_EMPTY, 0)
        raise OSError(f"SHEmptyRecycleBinW failed hr=0x{code:08X}")

    def _empty_freedesktop_trash(self) -> TrashResult:
        files_dir = self.trash_dir / "files"
        info_dir = self.trash_dir / "info"
        try:
            entries = list(files_dir.iterdir()) if files_dir.is_dir() else []
        except OSError as exc:
            raise OSError(f"cannot read trash {files_dir}: {exc}") from exc
        if not entries:
            return TrashResult(TrashOutcome.ALREADY_EMPTY, 0)

        freed = 0
        removed = 0
        errors: list[str] = []
        for entry in entries:
            size = path_size(entry)
            try:
                if entry.is_dir() and not entry.is_symlink():
                    shutil.rmtree(entry)
                else:
                    entry.unlink()
            except OSError as exc:
                errors.append(f"{entry.name}: {exc}")
                continue
            freed += size
            removed += 1
            with contextlib.suppress(OSError):
                (info_dir / f"{entry.name}.trashinfo").unlink()

        if removed == 0:
            raise OSError(f"could not remove any trash entries ({len(errors)} failed)")
        if errors:
            self.logger.warning("trash_partial removed=%s failed=%s", removed, len(errors))
        return TrashResult(TrashOutcome.EMPTIED, freed)

    # -- processes --

    def find_processes(self, name: str) -> list[int]:
        wanted = normalize_process_name(name)
        pids = []
        for proc in psutil.process_iter(["pid", "name"]):
            pname = normalize_process_name(proc.info.get("name") or "")
            if pname == wanted:
                pids.append(int(proc.info["pid"]))
        return sorted(pids)

    def terminate_process(self, pid: int) -> None:
        psutil.Process(pid).terminate()

    def wait_for_exit(self, pids: Sequence[int], timeout: float) -> list[int]:
        procs = []
        for pid in pids:
            with contextlib.suppress(psutil.NoSuchProcess):
                procs.append(psutil.Process(pid))
        _, alive = psutil.wait_procs(procs, timeout=timeout)
        for proc in alive:
            with contextlib.suppress(psutil.Error):
                proc.kill()
        return [p.pid for p in alive]

    def start_process(self, command: Sequence[str]) -> int:
        proc = subprocess.Popen(
            list(command),
            stdin=subprocess.DEVNULL,
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
            close_fds=True,
            **_detached_kwargs(),
        )
        return proc.pid

    def spawn(self, command: Sequence[str]) -> subprocess.Popen:
        return subprocess.Popen(
            list(command),
            stdin=subprocess.DEVNULL,
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
            **_hidden_window_kwargs(),
        )

    def kill_tree(self, pid: int) -> int:
        """Kill a process and all of its descendants; returns how many exited."""
        try:
            parent = psutil.Process(pid)
            procs = parent.children(recursive=True) + [parent]
        except psutil.NoSuchProcess:
            return 0
        for proc in procs:
            with contextlib.suppress(psutil.NoSuchProcess, psutil.AccessDenied):
                proc.kill()
        gone, alive = psutil.wait_procs(procs, timeout=self.kill_wait)
        if alive:
            self.logger.warning("kill_tree_incomplete pid=%s alive=%s", pid, [p.pid for p in alive])
        return len(gone)


__all__ = [
    "LocalSystemControl",
    "ProcessHandle",
    "SystemControl",
    "TrashOutcome",
    "TrashResult",
    "UnsupportedOperation",
    "launches_process",
    "normalize_process_name",
    "path_size",
    "run_command",
]
