"""Before/after comparison of two snapshots for reporting.

- compare: CPU / RAM / disk deltas, health score change and a verdict
- verify: re-check executed actions against the after-snapshot
"""

from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import Any, Callable, Sequence

from endpoint_doctor.config import EvaluationPolicy, PlanningPolicy
from endpoint_doctor.evaluator import evaluate
from endpoint_doctor.models import ActionStatus, OptimizationAction, Risk, VerificationStatus
from endpoint_doctor.snapshot import UNKNOWN, Snapshot
from endpoint_doctor.system_control import normalize_process_name

VERDICTS = {
    3: "Significant improvement",
    2: "Good improvement",
    1: "Minor improvement",
    0: "Minimal change detected",
}

VERIFY_TEMP_MAX_MB = 100
VERIFY_RECYCLE_BIN_MAX_MB = 10
VERIFY_BROWSER_CACHE_MAX_MB = 50

_VERIFIABLE = frozenset({ActionStatus.SUCCESS, ActionStatus.PARTIAL_SUCCESS, ActionStatus.NO_CHANGE})


@dataclass(frozen=True)
class Comparison:
    cpu_before: float
    cpu_after: float
    cpu_delta: float
    ram_used_before_mb: int
    ram_used_after_mb: int
    ram_delta_mb: int
    ram_freed_mb: int
    disk_free_percent_before: float
    disk_free_percent_after: float
    disk_free_percent_delta: float
    health_score_before: int
    health_score_after: int
    score_delta: int
    issues_resolved: int
    issues_added: int
    verdict: str

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    def summary_lines(self) -> list[str]:
        return [
            f"CPU:  {format_delta(self.cpu_delta, '%', lower_is_better=True)}",
            f"RAM:  {format_delta(self.ram_delta_mb, ' MB', lower_is_better=True)}",
            f"Disk: {format_delta(self.disk_free_percent_delta, '% free', lower_is_better=False)}",
            f"Health score: {self.health_score_before} -> {self.health_score_after}",
            f"Overall: {self.verdict}",
        ]


def format_delta(delta: float, unit: str, lower_is_better: bool) -> str:
    if abs(delta) < 0.05:
        return "no change"
    improved = delta < 0 if lower_is_better else delta > 0
    sign = "+" if delta > 0 else ""
    value = f"{delta:.0f}" if unit.strip() == "MB" else f"{delta:.1f}"
    return f"{sign}{value}{unit} ({'better' if improved else 'worse'})"


def verdict_for(cpu_delta: float, ram_freed_mb: int, disk_delta: float) -> str:
    points = 0
    if cpu_delta < -2:
        points += 1
    if ram_freed_mb > 50:
        points += 1
    if disk_delta > 1:
        points += 1
    return VERDICTS[points]


def compare(before: Snapshot, after: Snapshot, policy: EvaluationPolicy | None = None) -> Comparison:
    if before is None or after is None:
        raise ValueError("both before and after snapshots are required")

    cpu_delta = round(after.cpu.load_percent - before.cpu.load_percent, 1)
    ram_delta = int(after.ram.used_mb - before.ram.used_mb)
    disk_before = before.disk.free_percent
    disk_after = after.disk.free_percent
    disk_delta = round(disk_after - disk_before, 1)

    issues_before, score_before = evaluate(before, policy)
    issues_after, score_after = evaluate(after, policy)
    issue_delta = len(issues_before) - len(issues_after)

    return Comparison(
        cpu_before=before.cpu.load_percent,
        cpu_after=after.cpu.load_percent,
        cpu_delta=cpu_delta,
        ram_used_before_mb=before.ram.used_mb,
        ram_used_after_mb=after.ram.used_mb,
        ram_delta_mb=ram_delta,
        ram_freed_mb=-ram_delta,
        disk_free_percent_before=round(disk_before, 1),
        disk_free_percent_after=round(disk_after, 1),
        disk_free_percent_delta=disk_delta,
        health_score_before=score_before,
        health_score_after=score_after,
        score_delta=score_after - score_before,
        issues_resolved=max(0, issue_delta),
        issues_added=max(0, -issue_delta),
        verdict=verdict_for(cpu_delta, -ram_delta, disk_delta),
    )


# ------------------------------- Verification ------------------------------- #


@dataclass(frozen=True)
class ActionVerification:
    action_key: str
    title: str
    status: VerificationStatus
    message: str = ""

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["status"] = self.status.value
        return data


Check = Callable[[OptimizationAction, Snapshot, PlanningPolicy], tuple[VerificationStatus, str]]


def _trust_result(action: OptimizationAction) -> tuple[VerificationStatus, str]:
    if action.status is ActionStatus.SUCCESS:
        return VerificationStatus.VERIFIED, "Completed successfully"
    return VerificationStatus.PARTIALLY_VERIFIED, action.result_message or "Check manually"


def _temp_files(action, after, policy):
    mb = after.disk.temp_total_mb
    if mb < VERIFY_TEMP_MAX_MB:
        return VerificationStatus.VERIFIED, f"Temp folders now {mb} MB"
    return VerificationStatus.PARTIALLY_VERIFIED, f"Temp folders still {mb} MB; some files were locked"


def _crash_dumps(action, after, policy):
    mb = after.disk.crash_dump_total_mb
    if mb == 0:
        return VerificationStatus.VERIFIED, "Crash dumps cleared"
    return VerificationStatus.PARTIALLY_VERIFIED, f"{mb} MB of crash dumps remain (locked)"


def _recycle_bin(action, after, policy):
    mb = after.disk.recycle_bin_mb
    if mb < VERIFY_RECYCLE_BIN_MAX_MB:
        return VerificationStatus.VERIFIED, f"Recycle bin now {mb} MB"
    return VerificationStatus.PARTIALLY_VERIFIED, f"Recycle bin still {mb} MB"


def _browser_cache(action, after, policy):
    name = action.key_args[0] if action.key_args else ""
    browser = next((b for b in after.browsers if b.name == name), None)
    if browser is None:
        if action.actual_freed_mb > 0 or action.status is ActionStatus.SUCCESS:
            return VerificationStatus.VERIFIED, f"Freed {action.actual_freed_mb} MB"
        return VerificationStatus.PARTIALLY_VERIFIED, "Some cache files were locked"
    if browser.cache_mb < VERIFY_BROWSER_CACHE_MAX_MB:
        return VerificationStatus.VERIFIED, f"{name} cache now {browser.cache_mb} MB"
    return VerificationStatus.PARTIALLY_VERIFIED, f"{name} cache still {browser.cache_mb} MB; some files were locked"


def _end_process(action, after, policy):
    args = action.key_args
    if len(args) < 2 or not args[0].isdigit():
        return _trust_result(action)
    pid, name = int(args[0]), args[1]
    wanted = normalize_process_name(name)
    # Only the heaviest processes are listed; absence from the list counts as ended.
    if any(p.pid == pid and normalize_process_name(p.name) == wanted for p in after.ram.top_processes):
        return VerificationStatus.NOT_VERIFIED, f"{name} is still running"
    return VerificationStatus.VERIFIED, f"{name} is no longer running"


def _power_plan(action, after, policy):
    current = after.battery.power_plan.strip()
    if not current or current == UNKNOWN:
        return VerificationStatus.PARTIALLY_VERIFIED, "Could not confirm power plan"
    if policy.high_performance_plan.lower() in current.lower():
        return VerificationStatus.VERIFIED, f"{current} power plan is active"
    return VerificationStatus.NOT_VERIFIED, f"{current} power plan is still active"


def _visuals(action, after, policy):
    if after.visuals.performance_mode:
        return VerificationStatus.VERIFIED, "Transparency and animations are off"
    return VerificationStatus.PARTIALLY_VERIFIED, "Visual settings unchanged; signing out and back in may be needed"


def _shell(action, after, policy):
    shell = after.shell
    if not shell.responding:
        return VerificationStatus.NOT_VERIFIED, f"{shell.process_name} is still not responding"
    if shell.memory_mb >= policy.shell_memory_restart_mb:
        return VerificationStatus.PARTIALLY_VERIFIED, f"{shell.process_name} still uses {shell.memory_mb} MB"
    return VerificationStatus.VERIFIED, f"{shell.process_name} is responding ({shell.memory_mb} MB)"


_CHECKS: dict[str, Check] = {
    "ClearTempFiles": _temp_files,
    "ClearCrashDumps": _crash_dumps,
    "EmptyRecycleBin": _recycle_bin,
    "ClearBrowserCache": _browser_cache,
    "EndProcess": _end_process,
    "SetPowerPlan": _power_plan,
    "PerformanceVisuals": _visuals,
    "RestartShell": _shell,
}


def verify_action(
    action: OptimizationAction,
    after: Snapshot,
    policy: PlanningPolicy | None = None,
) -> ActionVerification:
    policy = policy or PlanningPolicy()
    if action.status is ActionStatus.FAILED:
        status, message = VerificationStatus.NOT_VERIFIED, "Action failed; not verified"
    elif action.status not in _VERIFIABLE:
        status, message = VerificationStatus.NONE, ""
    elif action.risk is Risk.REQUIRES_REBOOT:
        status, message = VerificationStatus.REQUIRES_REBOOT, "Takes effect after reboot"
    else:
        check = _CHECKS.get(action.key_root)
        status, message = check(action, after, policy) if check else _trust_result(action)
    return ActionVerification(action.action_key, action.title, status, message)


def verify(
    actions: Sequence[OptimizationAction],
    after: Snapshot,
    policy: PlanningPolicy | None = None,
) -> list[ActionVerification]:
    """Re-check executed actions against a snapshot taken after the run.

    One record per action, in plan order. Actions that finished as Success,
    PartialSuccess or NoChange are checked against the snapshot; Failed ones
    are NotVerified; Skipped and Pending ones stay None.
    """
    if after is None:
        raise ValueError("an after-snapshot is required")
    return [verify_action(action, after, policy) for action in actions]


__all__ = [
    "ActionVerification",
    "Comparison",
    "compare",
    "format_delta",
    "verdict_for",
    "verify",
    "verify_action",
]
