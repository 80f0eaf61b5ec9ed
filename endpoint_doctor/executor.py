"""Action executor: runs automatable plan actions against the live system.

- Strictly sequential, in plan order
- External commands are bounded by a timeout and killed as a process tree
- Folder cleanup ignores locked files and reports what was actually freed
- Planned records are never mutated; executed copies are returned
"""

from __future__ import annotations

import dataclasses
import logging
import os
import stat
import subprocess
import time
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Iterable, Sequence

from endpoint_doctor.config import APP_NAME, ExecutionPolicy, bytes_to_mb, now_utc_iso
from endpoint_doctor.events import (
    ACTION_FINISHED,
    ACTION_STARTED,
    RUN_COMPLETED,
    RUN_STARTED,
    ActionEvent,
    EventBus,
)
from endpoint_doctor.models import (
    ActionStatus,
    ExecutionResult,
    OptimizationAction,
    OptimizationSummary,
)
from endpoint_doctor.system_control import SystemControl, TrashOutcome, UnsupportedOperation, launches_process

PROTECTED_ABSOLUTE_PATHS = {
    "/",
    "/bin",
    "/boot",
    "/dev",
    "/etc",
    "/home",
    "/lib",
    "/lib64",
    "/proc",
    "/root",
    "/run",
    "/sbin",
    "/srv",
    "/sys",
    "/usr",
    "/var",
}

MAX_ERROR_SAMPLES = 20

AUTOMATED_KEYS = (
    "SetPowerPlan",
    "FlushDns",
    "PerformanceVisuals",
    "ClearTempFiles",
    "ClearBrowserCache",
    "ClearCrashDumps",
    "EmptyRecycleBin",
    "RestartShell",
    "EndProcess",
)


@dataclass(frozen=True)
class ActionOutcome:
    status: ActionStatus
    freed_mb: int = 0
    message: str = ""


# ----------------------------- Folder Cleanup ------------------------------- #


@dataclasses.dataclass(slots=True)
class CleanupStats:
    roots: int = 0
    roots_missing: int = 0
    roots_inaccessible: int = 0
    files_found: int = 0
    files_deleted: int = 0
    files_failed: int = 0
    bytes_freed: int = 0
    dirs_removed: int = 0
    dirs_skipped: int = 0
    errors: list[str] = dataclasses.field(default_factory=list)

    @property
    def freed_mb(self) -> int:
        return bytes_to_mb(self.bytes_freed)

    @property
    def failure_ratio(self) -> float:
        if self.files_found == 0:
            return 0.0
        return self.files_failed / self.files_found


def _is_protected(path: Path) -> bool:
    rp = os.path.realpath(path)
    if rp in PROTECTED_ABSOLUTE_PATHS:
        return True
    # The home folder and everything above it.
    try:
        home = os.path.realpath(Path.home())
    except RuntimeError:
        home = ""
    if home and (home == rp or home.startswith(rp.rstrip(os.sep) + os.sep)):
        return True
    # Drive roots such as C:\ on Windows.
    return os.path.dirname(rp) == rp


class DirectoryCleaner:
    """Delete the contents of target folders, keeping the folders themselves."""

    def __init__(self, logger: logging.Logger | None = None):
        self.logger = logger or logging.getLogger(APP_NAME)

    def clean(self, folders: Iterable[str]) -> CleanupStats:
        stats = CleanupStats()
        for folder in folders:
            stats.roots += 1
            root = Path(folder).expanduser()
            if _is_protected(root):
                stats.roots_inaccessible += 1
                self._note(stats, root, "protected path")
                continue
            if not root.exists() or root.is_symlink() or not root.is_dir():
                stats.roots_missing += 1
                continue
            self._clean_root(root, stats)
        return stats

    def _clean_root(self, root: Path, stats: CleanupStats) -> None:
        subdirs: list[Path] = []
        stack = [root]
        while stack:
            current = stack.pop()
            try:
                with os.scandir(current) as it:
                    entries = list(it)
            except (PermissionError, FileNotFoundError, OSError) as exc:
                if current == root:
                    stats.roots_inaccessible += 1
                else:
                    stats.dirs_skipped += 1
                self._note(stats, current, exc)
                continue

            for entry in entries:
                try:
                    is_dir = entry.is_dir(follow_symlinks=False)
                except OSError:
                    is_dir = False
                if is_dir:
                    path = Path(entry.path)
                    subdirs.append(path)
                    stack.append(path)
                    continue
                self._delete_file(entry, stats)

        # Deepest first so parents become empty before their turn.
        for path in sorted(subdirs, key=lambda p: len(p.parts), reverse=True):
            try:
                os.rmdir(path)
                stats.dirs_removed += 1
            except OSError:
                continue

    def _delete_file(self, entry: os.DirEntry, stats: CleanupStats) -> None:
        try:
            size = entry.stat(follow_symlinks=False).st_size
        except FileNotFoundError:
            return
        except OSError:
            size = 0

        stats.files_found += 1
        try:
            self._unlink(entry.path)
        except FileNotFoundError:
            stats.files_found -= 1
            return
        except OSError as exc:
            stats.files_failed += 1
            self._note(stats, entry.path, exc)
            return
        stats.files_deleted += 1
        stats.bytes_freed += int(size)

    @staticmethod
    def _unlink(path: str) -> None:
        try:
            os.unlink(path)
        except PermissionError:
            if os.name != "nt":
                raise
            # Read-only attribute blocks deletion on Windows.
            os.chmod(path, stat.S_IWRITE)
            os.unlink(path)

    @staticmethod
    def _note(stats: CleanupStats, path: Path | str, error: Exception | str) -> None:
        if len(stats.errors) < MAX_ERROR_SAMPLES:
            stats.errors.append(f"{path}: {error}")


def classify_cleanup(stats: CleanupStats, partial_failure_ratio: float) -> ActionOutcome:
    """Map folder cleanup counters to an action outcome."""
    freed = stats.freed_mb
    reachable = stats.roots - stats.roots_missing
    inaccessible = ""
    if stats.roots_inaccessible:
        inaccessible = f"; {stats.roots_inaccessible} folder(s) inaccessible"

    if reachable > 0 and stats.roots_inaccessible == reachable and stats.files_deleted == 0:
        return ActionOutcome(ActionStatus.FAILED, 0, f"Access denied to all {reachable} target folder(s)")
    if stats.files_found == 0:
        if reachable == 0:
            return ActionOutcome(ActionStatus.NO_CHANGE, 0, "Target folders no longer exist")
        return ActionOutcome(ActionStatus.NO_CHANGE, 0, f"Already clean{inaccessible}")
    if stats.files_deleted == 0:
        return ActionOutcome(
            ActionStatus.NO_CHANGE, 0, f"No files deleted; {stats.files_failed} locked/in-use{inaccessible}"
        )

    detail = f"Freed {freed} MB ({stats.files_deleted} files)"
    if stats.files_failed:
        detail += f"; {stats.files_failed} of {stats.files_found} files locked/in-use"
    detail += inaccessible
    if stats.roots_inaccessible or stats.failure_ratio > partial_failure_ratio:
        return ActionOutcome(ActionStatus.PARTIAL_SUCCESS, freed, detail)
    return ActionOutcome(ActionStatus.SUCCESS, freed, detail)


# -------------------------------- Executor ---------------------------------- #


class ActionExecutor:
    """Run a plan one action at a time and return executed copies."""

    def __init__(
        self,
        control: SystemControl,
        policy: ExecutionPolicy | None = None,
        bus: EventBus | None = None,
        logger: logging.Logger | None = None,
        cleaner: DirectoryCleaner | None = None,
        sleep: Callable[[float], None] = time.sleep,
        allowed_roots: Iterable[str] | None = None,
    ):
        self.control = control
        self.policy = policy or ExecutionPolicy()
        self.logger = logger or logging.getLogger(APP_NAME)
        self.bus = bus or EventBus(self.logger)
        self.cleaner = cleaner or DirectoryCleaner(self.logger)
        self._sleep = sleep
        # None trusts plan targets; a list confines cleanup to those folders.
        self.allowed_roots = (
            None if allowed_roots is None else [os.path.realpath(r) for r in allowed_roots if str(r).strip()]
        )
        self._handlers: dict[str, Callable[[OptimizationAction], ActionOutcome]] = {
            "SetPowerPlan": self._set_power_plan,
            "FlushDns": self._flush_dns,
            "PerformanceVisuals": self._performance_visuals,
            "ClearTempFiles": self._clean_folders,
            "ClearBrowserCache": self._clean_folders,
            "ClearCrashDumps": self._clean_folders,
            "EmptyRecycleBin": self._empty_recycle_bin,
            "RestartShell": self._restart_shell,
            "EndProcess": self._end_process,
        }

    @property
    def supported_keys(self) -> list[str]:
        return sorted(self._handlers)

    def run(self, plan: Sequence[OptimizationAction]) -> ExecutionResult:
        if plan is None:
            raise ValueError("plan is required")
        plan = list(plan)
        for action in plan:
            if not isinstance(action, OptimizationAction):
                raise ValueError(f"plan items must be OptimizationAction, got {type(action).__name__}")
            if action.is_terminal:
                raise ValueError(f"{action.action_key} was already executed ({action.status.value}); re-plan first")

        run_id = uuid.uuid4().hex[:12]
        started_at = now_utc_iso()
        total = sum(1 for a in plan if a.is_automatable)
        self.logger.info("run_started run=%s actions=%s automatable=%s", run_id, len(plan), total)
        self.bus.publish(ActionEvent(RUN_STARTED, run_id, total=total))

        executed: list[OptimizationAction] = []
        index = 0
        for action in plan:
            if not action.is_automatable:
                executed.append(action)
                continue

            index += 1
            if action.selected:
                self.bus.publish(
                    ActionEvent(ACTION_STARTED, run_id, index, total, action.action_key, action.title,
                                ActionStatus.PENDING.value)
                )
                outcome = self._execute(action)
            else:
                outcome = ActionOutcome(ActionStatus.SKIPPED, 0, "Not selected")

            done = action.with_outcome(outcome.status, outcome.freed_mb, outcome.message)
            executed.append(done)
            self.bus.publish(
                ActionEvent(ACTION_FINISHED, run_id, index, total, done.action_key, done.title,
                            done.status.value, done.actual_freed_mb, done.result_message)
            )

        summary = OptimizationSummary.from_actions(executed)
        self.logger.info(
            "run_completed run=%s actions_run=%s freed_mb=%s failures=%s",
            run_id, summary.actions_run, summary.total_freed_mb, summary.failure_count,
        )
        self.bus.publish(
            ActionEvent(RUN_COMPLETED, run_id, total=total, freed_mb=summary.total_freed_mb,
                        message=f"actions_run={summary.actions_run} failures={summary.failure_count}")
        )
        return ExecutionResult(
            run_id=run_id,
            actions=tuple(executed),
            summary=summary,
            started_at=started_at,
            finished_at=now_utc_iso(),
        )

    def _execute(self, action: OptimizationAction) -> ActionOutcome:
        handler = self._handlers.get(action.key_root)
        if handler is None:
            return ActionOutcome(ActionStatus.SKIPPED, 0, f"No automated handler for {action.key_root}")
        try:
            return handler(action)
        except UnsupportedOperation as exc:
            self.logger.info("action_unsupported key=%s reason=%s", action.action_key, exc)
            return ActionOutcome(ActionStatus.SKIPPED, 0, f"Not supported on this system: {exc}")
        except Exception as exc:  # pylint: disable=broad-except
            self.logger.error("action_failed key=%s error=%s", action.action_key, exc)
            return ActionOutcome(ActionStatus.FAILED, 0, str(exc) or exc.__class__.__name__)

    # ---------------------------- External commands ------------------------- #

    def _run_external(self, command: list[str] | None, label: str) -> ActionOutcome:
        if not command:
            raise UnsupportedOperation(f"no {label} command available")

        timeout = self.policy.command_timeout
        proc = self.control.spawn(command)
        try:
            rc = proc.wait(timeout=timeout)
        except subprocess.TimeoutExpired:
            try:
                killed = self.control.kill_tree(proc.pid)
            except Exception as exc:  # pylint: disable=broad-except
                self.logger.error("kill_tree_failed cmd=%s pid=%s error=%s", command[0], proc.pid, exc)
                return ActionOutcome(
                    ActionStatus.FAILED, 0, f"Timed out after {timeout:g}s; process tree could not be terminated: {exc}"
                )
            self.logger.warning("command_timeout cmd=%s timeout=%s killed=%s", command[0], timeout, killed)
            return ActionOutcome(
                ActionStatus.FAILED, 0, f"Timed out after {timeout:g}s; process tree terminated ({killed} killed)"
            )

        if rc == 0:
            return ActionOutcome(ActionStatus.SUCCESS, 0, f"{label} completed")
        return ActionOutcome(ActionStatus.FAILED, 0, f"{label} failed with exit code {rc}")

    def _set_power_plan(self, action: OptimizationAction) -> ActionOutcome:
        return self._run_external(self.control.power_plan_command(), "Power plan change")

    def _flush_dns(self, action: OptimizationAction) -> ActionOutcome:
        return self._run_external(self.control.flush_dns_command(), "DNS flush")

    # ------------------------------ Settings -------------------------------- #

    def _performance_visuals(self, action: OptimizationAction) -> ActionOutcome:
        changed = self.control.apply_performance_visuals()
        if changed <= 0:
            return ActionOutcome(ActionStatus.NO_CHANGE, 0, "Already using performance visuals")
        return ActionOutcome(ActionStatus.SUCCESS, 0, f"Changed {changed} visual setting(s)")

    # ------------------------------ Filesystem ------------------------------ #

    def _clean_folders(self, action: OptimizationAction) -> ActionOutcome:
        if not action.targets:
            raise ValueError("no target folders in action")
        outside = [t for t in action.targets if not self._is_allowed_target(t)]
        if outside:
            raise ValueError(f"refusing to clean {outside[0]}: not a measured cleanup folder")
        stats = self.cleaner.clean(action.targets)
        self.logger.info(
            "cleanup_done key=%s deleted=%s failed=%s freed_mb=%s dirs_removed=%s",
            action.action_key, stats.files_deleted, stats.files_failed, stats.freed_mb, stats.dirs_removed,
        )
        return classify_cleanup(stats, self.policy.partial_failure_ratio)

    def _is_allowed_target(self, target: str) -> bool:
        if self.allowed_roots is None:
            return True
        rp = os.path.realpath(target)
        return any(rp == root or rp.startswith(root.rstrip(os.sep) + os.sep) for root in self.allowed_roots)

    def _empty_recycle_bin(self, action: OptimizationAction) -> ActionOutcome:
        result = self.control.empty_trash()
        if result.outcome is TrashOutcome.ALREADY_EMPTY:
            return ActionOutcome(ActionStatus.SUCCESS, 0, "Recycle bin was already empty")
        freed = bytes_to_mb(result.freed_bytes)
        return ActionOutcome(ActionStatus.SUCCESS, freed, f"Freed {freed} MB")

    # ------------------------------ Processes ------------------------------- #

    def _start_with_retry(self, command: list[str]) -> str | None:
        try:
            self.control.start_process(command)
            return None
        except OSError as exc:
            self.logger.warning("process_start_failed cmd=%s error=%s retrying=1", command[0], exc)
        self._sleep(self.policy.settle_seconds)
        try:
            self.control.start_process(command)
            return None
        except OSError as exc:
            return str(exc)

    def _restart_shell(self, action: OptimizationAction) -> ActionOutcome:
        if not action.key_args or not action.targets:
            raise ValueError("shell restart needs a process name and launch command")
        name = action.key_args[0]
        command = list(action.targets)
        if not launches_process(name, command):
            raise ValueError(f"launch command {command[0]!r} does not start {name}")

        pids = self.control.find_processes(name)
        if not pids:
            error = self._start_with_retry(command)
            if error:
                return ActionOutcome(ActionStatus.FAILED, 0, f"Could not start {name}: {error}")
            return ActionOutcome(ActionStatus.SUCCESS, 0, f"{name} was not running; started a new instance")

        stop_errors = 0
        for pid in pids:
            try:
                self.control.terminate_process(pid)
            except Exception as exc:  # pylint: disable=broad-except
                stop_errors += 1
                self.logger.warning("terminate_failed name=%s pid=%s error=%s", name, pid, exc)

        self.control.wait_for_exit(pids, self.policy.shell_exit_wait)
        self._sleep(self.policy.settle_seconds)

        error = self._start_with_retry(command)
        if error:
            return ActionOutcome(ActionStatus.FAILED, 0, f"Could not restart {name}: {error}")
        message = f"Restarted {name}"
        if stop_errors:
            message += f" ({stop_errors} instance(s) could not be stopped)"
        return ActionOutcome(ActionStatus.SUCCESS, 0, message)

    def _end_process(self, action: OptimizationAction) -> ActionOutcome:
        args = action.key_args
        if len(args) < 2:
            raise ValueError("process action needs a PID and a name")
        pid, name = int(args[0]), args[1]

        # A different name behind the same PID means the PID was reused.
        if pid not in self.control.find_processes(name):
            return ActionOutcome(ActionStatus.NO_CHANGE, 0, f"{name} (PID {pid}) is no longer running")
        self.control.terminate_process(pid)
        self.control.wait_for_exit([pid], self.policy.kill_wait)
        return ActionOutcome(ActionStatus.SUCCESS, 0, f"Ended {name} (PID {pid})")


def run_plan(
    plan: Sequence[OptimizationAction],
    control: SystemControl,
    policy: ExecutionPolicy | None = None,
    bus: EventBus | None = None,
    allowed_roots: Iterable[str] | None = None,
) -> ExecutionResult:
    return ActionExecutor(control, policy=policy, bus=bus, allowed_roots=allowed_roots).run(plan)


__all__ = [
    "AUTOMATED_KEYS",
    "ActionExecutor",
    "ActionOutcome",
    "CleanupStats",
    "DirectoryCleaner",
    "classify_cleanup",
    "run_plan",
]
