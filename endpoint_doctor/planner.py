"""Remediation planner: snapshot facts -> ordered, risk-classified actions.

The planner never touches the machine. Rules run in a fixed order; each one
maps a diagnostic fact to zero or one action. Duplicate action keys keep the
first occurrence.
"""

from __future__ import annotations

import dataclasses
from typing import Sequence

from endpoint_doctor.config import EvaluationPolicy, PlanningPolicy, format_mb
from endpoint_doctor.evaluator import GOOD, rate_dns
from endpoint_doctor.models import FlaggedIssue, OptimizationAction, Risk
from endpoint_doctor.snapshot import UNKNOWN, Snapshot
from endpoint_doctor.system_control import launches_process

CRASHING_BROWSER_EXECUTABLES = {
    "chrome.exe": "Chrome",
    "msedge.exe": "Microsoft Edge",
    "firefox.exe": "Firefox",
    "firefox": "Firefox",
    "chrome": "Chrome",
}

DURATION_BY_KEY = {
    "SetPowerPlan": "< 5 sec",
    "PerformanceVisuals": "< 10 sec",
    "ClearTempFiles": "~10-30 sec",
    "EmptyRecycleBin": "~5-15 sec",
    "RestartShell": "< 10 sec",
    "FlushDns": "< 5 sec",
    "ClearBrowserCache": "< 10 sec",
    "ClearCrashDumps": "< 10 sec",
    "EndProcess": "< 5 sec",
    "RemoveWindowsOld": "~2-5 min",
    "CleanUpgradeLogs": "~10-30 sec",
    "RunSystemFileCheck": "~5-15 min",
    "ScheduleDiskCheck": "< 10 sec",
}


def estimate_duration(action_key: str) -> str:
    return DURATION_BY_KEY.get(action_key.split(":", 1)[0], "manual")


class RemediationPlanner:
    """Derive an action plan from one snapshot."""

    def __init__(self, policy: PlanningPolicy | None = None, evaluation: EvaluationPolicy | None = None):
        self.policy = policy or PlanningPolicy()
        self.evaluation = evaluation or EvaluationPolicy()

    def build_plan(self, snapshot: Snapshot, issues: Sequence[FlaggedIssue] | None = None) -> list[OptimizationAction]:
        if snapshot is None:
            raise ValueError("snapshot is required")

        actions: list[OptimizationAction] = []
        seen_keys: set[str] = set()

        for rule in (
            self._power_plan,
            self._visuals,
            self._temp_files,
            self._recycle_bin,
            self._shell,
            self._dns,
            self._os_leftovers,
            self._external_tooling,
            self._browser_caches,
            self._crash_dumps,
            self._heavy_process,
            self._manual_followups,
        ):
            for action in rule(snapshot):
                self._add_action(actions, seen_keys, action)

        return actions

    @staticmethod
    def _add_action(actions: list[OptimizationAction], seen_keys: set[str], action: OptimizationAction) -> None:
        if action.action_key in seen_keys:
            return
        seen_keys.add(action.action_key)
        if not action.estimated_duration:
            action = dataclasses.replace(action, estimated_duration=estimate_duration(action.action_key))
        actions.append(action)

    # ---------------------------- Automatable rules ------------------------- #

    def _power_plan(self, snap: Snapshot) -> list[OptimizationAction]:
        plan = snap.battery.power_plan.strip()
        if not plan or plan == UNKNOWN or self.policy.high_performance_plan.lower() in plan.lower():
            return []
        return [
            OptimizationAction(
                action_key="SetPowerPlan",
                category="Performance",
                title=f"Switch to {self.policy.high_performance_plan} Power Plan",
                description=f"Current plan '{plan}' limits CPU performance",
                risk=Risk.SAFE,
                is_automatable=True,
            )
        ]

    def _visuals(self, snap: Snapshot) -> list[OptimizationAction]:
        if snap.visuals.performance_mode:
            return []
        return [
            OptimizationAction(
                action_key="PerformanceVisuals",
                category="Visual Settings",
                title="Switch to Performance Visuals",
                description="Disable transparency and animations to reduce CPU/GPU overhead",
                risk=Risk.SAFE,
                is_automatable=True,
            )
        ]

    def _temp_files(self, snap: Snapshot) -> list[OptimizationAction]:
        folders = [f for f in snap.disk.temp_folders if f.path and f.size_mb > 0]
        total = sum(f.size_mb for f in folders)
        if total <= 0:
            return []
        return [
            OptimizationAction(
                action_key="ClearTempFiles",
                category="Disk Cleanup",
                title="Clear Temporary Files",
                description=f"Delete system and user temp files (~{format_mb(total)})",
                risk=Risk.SAFE,
                is_automatable=True,
                estimated_free_mb=total,
                targets=tuple(f.path for f in folders),
            )
        ]

    def _recycle_bin(self, snap: Snapshot) -> list[OptimizationAction]:
        size = snap.disk.recycle_bin_mb
        if size <= 0:
            return []
        return [
            OptimizationAction(
                action_key="EmptyRecycleBin",
                category="Disk Cleanup",
                title="Empty Recycle Bin",
                description=f"Permanently delete recycled files ({format_mb(size)})",
                risk=Risk.SAFE,
                is_automatable=True,
                estimated_free_mb=size,
            )
        ]

    def _shell(self, snap: Snapshot) -> list[OptimizationAction]:
        shell = snap.shell
        if not launches_process(shell.process_name, shell.launch_command):
            return []
        stale = not shell.responding
        bloated = shell.memory_mb >= self.policy.shell_memory_restart_mb
        if not (stale or bloated):
            return []
        reason = "is not responding" if stale else f"is using {format_mb(shell.memory_mb)}"
        return [
            OptimizationAction(
                action_key=f"RestartShell:{shell.process_name}",
                category="Performance",
                title=f"Restart {shell.process_name}",
                description=f"{shell.process_name} {reason}; restarting refreshes its caches (desktop flickers briefly)",
                risk=Risk.MODERATE,
                is_automatable=True,
                targets=tuple(shell.launch_command),
            )
        ]

    def _dns(self, snap: Snapshot) -> list[OptimizationAction]:
        rating = rate_dns(snap.network.dns_response)
        if rating == GOOD:
            return []
        return [
            OptimizationAction(
                action_key="FlushDns",
                category="Network",
                title="Flush DNS Cache",
                description=f"DNS response is {rating.lower()} ({snap.network.dns_response}); clear cached lookups",
                risk=Risk.SAFE,
                is_automatable=True,
            )
        ]

    # ------------------------------ Manual rules ---------------------------- #

    def _os_leftovers(self, snap: Snapshot) -> list[OptimizationAction]:
        out = []
        disk = snap.disk
        if disk.windows_old_exists and disk.windows_old_mb > 0:
            out.append(
                OptimizationAction(
                    action_key="RemoveWindowsOld",
                    category="Disk Cleanup",
                    title="Remove Previous OS Installation",
                    description=f"Delete the old installation folder with the system disk cleanup tool (~{format_mb(disk.windows_old_mb)})",
                    risk=Risk.MODERATE,
                    is_automatable=False,
                    estimated_free_mb=disk.windows_old_mb,
                )
            )
        if disk.upgrade_logs_mb > self.policy.upgrade_logs_min_mb:
            out.append(
                OptimizationAction(
                    action_key="CleanUpgradeLogs",
                    category="Disk Cleanup",
                    title="Clean Upgrade Logs",
                    description=f"Remove upgrade logs and setup leftovers (~{format_mb(disk.upgrade_logs_mb)})",
                    risk=Risk.MODERATE,
                    is_automatable=False,
                    estimated_free_mb=disk.upgrade_logs_mb,
                )
            )
        return out

    def _external_tooling(self, snap: Snapshot) -> list[OptimizationAction]:
        out = []
        gpu = snap.gpu
        if gpu.has_gpu:
            age = gpu.driver_age_days(snap.captured_at)
            if age is not None and age > self.evaluation.gpu_driver_max_age_days:
                out.append(
                    OptimizationAction(
                        action_key=f"UpdateGpuDriver:{gpu.name}",
                        category="GPU",
                        title="Update GPU Driver",
                        description=f"Driver dated {gpu.driver_date}; install the latest from the vendor's download page",
                        risk=Risk.REQUIRES_REBOOT,
                        is_automatable=False,
                    )
                )
        if snap.office.installed and snap.office.repair_needed:
            out.append(
                OptimizationAction(
                    action_key="RepairOffice",
                    category="Office",
                    title="Repair Office Installation",
                    description="Run an online repair from the installed applications settings",
                    risk=Risk.MODERATE,
                    is_automatable=False,
                )
            )
        if not snap.antivirus.enabled:
            out.append(
                OptimizationAction(
                    action_key="EnableAntivirus",
                    category="Security",
                    title="Enable Antivirus Protection",
                    description=f"{snap.antivirus.name} real-time protection is off; re-enable it in the security center",
                    risk=Risk.MODERATE,
                    is_automatable=False,
                )
            )
        return out

    # --------------------------- Supplemental rules ------------------------- #

    def _browser_caches(self, snap: Snapshot) -> list[OptimizationAction]:
        crashing = {
            CRASHING_BROWSER_EXECUTABLES[c.app_name.lower()]
            for c in snap.event_log.top_crashing_apps(3)
            if c.app_name.lower() in CRASHING_BROWSER_EXECUTABLES
        }
        if snap.event_log.app_crash_count < self.evaluation.app_crash_warning_count:
            crashing = set()

        out = []
        for browser in snap.browsers:
            if not browser.cache_paths:
                continue
            large = browser.cache_mb > self.policy.browser_cache_min_mb
            if not (large or browser.name in crashing):
                continue
            reason = (
                f"Delete browser cache files (~{format_mb(browser.cache_mb)})"
                if large
                else f"{browser.name} is crashing; corrupt cache files are a common cause"
            )
            out.append(
                OptimizationAction(
                    action_key=f"ClearBrowserCache:{browser.name}",
                    category="Browser",
                    title=f"Clear {browser.name} Cache",
                    description=reason,
                    risk=Risk.SAFE,
                    is_automatable=True,
                    estimated_free_mb=max(0, browser.cache_mb),
                    targets=tuple(browser.cache_paths),
                )
            )
        return out

    def _crash_dumps(self, snap: Snapshot) -> list[OptimizationAction]:
        folders = [f for f in snap.disk.crash_dump_folders if f.path and f.size_mb > 0]
        total = sum(f.size_mb for f in folders)
        if total <= 0:
            return []
        return [
            OptimizationAction(
                action_key="ClearCrashDumps",
                category="Disk Cleanup",
                title="Clear Crash Dump Files",
                description=f"Delete old memory dumps (~{format_mb(total)})",
                risk=Risk.SAFE,
                is_automatable=True,
                estimated_free_mb=total,
                targets=tuple(f.path for f in folders),
            )
        ]

    def _heavy_process(self, snap: Snapshot) -> list[OptimizationAction]:
        ram = snap.ram
        if ram.total_mb <= 0 or ram.percent_used <= self.evaluation.ram_warning_percent:
            return []
        protected = {n.lower() for n in self.policy.protected_processes}
        protected.add(snap.shell.process_name.lower())
        candidates = [
            p for p in ram.top_processes
            if p.pid > 0 and p.name and p.name.lower().removesuffix(".exe") not in protected
        ]
        if not candidates:
            return []
        top = max(candidates, key=lambda p: (p.memory_mb, -p.pid))
        if top.memory_mb <= self.policy.heavy_process_min_mb:
            return []
        return [
            OptimizationAction(
                action_key=f"EndProcess:{top.pid}:{top.name}",
                category="RAM",
                title=f"End Memory-Heavy Process: {top.name}",
                description=f"{top.name} (PID {top.pid}) is using {format_mb(top.memory_mb)} of RAM",
                risk=Risk.MODERATE,
                is_automatable=True,
                selected=False,
            )
        ]

    def _manual_followups(self, snap: Snapshot) -> list[OptimizationAction]:
        out = []
        if snap.system.uptime_days >= self.evaluation.uptime_warning_days or snap.updates.pending_reboot:
            reason = (
                "Pending updates require a restart"
                if snap.updates.pending_reboot
                else f"System has been running for {int(snap.system.uptime_days)} days"
            )
            out.append(
                OptimizationAction(
                    action_key="ScheduleRestart",
                    category="System",
                    title="Restart the System",
                    description=reason,
                    risk=Risk.REQUIRES_REBOOT,
                    is_automatable=False,
                )
            )
        if snap.event_log.disk_error_count > 0:
            out.append(
                OptimizationAction(
                    action_key="ScheduleDiskCheck",
                    category="Event Log",
                    title="Schedule Disk Check",
                    description=f"{snap.event_log.disk_error_count} disk error(s) detected; scan and repair on next boot",
                    risk=Risk.REQUIRES_REBOOT,
                    is_automatable=False,
                )
            )
        if snap.event_log.bsod_count > 0:
            out.append(
                OptimizationAction(
                    action_key="RunSystemFileCheck",
                    category="Event Log",
                    title="Run System File Checker",
                    description=f"{snap.event_log.bsod_count} system crash(es) detected; repair corrupted system files",
                    risk=Risk.MODERATE,
                    is_automatable=False,
                )
            )
        if snap.startup.enabled_count > self.evaluation.startup_warning_count:
            out.append(
                OptimizationAction(
                    action_key="ReviewStartupItems",
                    category="Startup",
                    title="Review Startup Items",
                    description=f"{snap.startup.enabled_count} startup items enabled; disable the ones you do not need",
                    risk=Risk.SAFE,
                    is_automatable=False,
                )
            )
        for browser in snap.browsers:
            if browser.open_tabs > self.policy.browser_tabs_max:
                out.append(
                    OptimizationAction(
                        action_key=f"CloseBrowserTabs:{browser.name}",
                        category="Browser",
                        title=f"Close {browser.name} Tabs",
                        description=f"{browser.open_tabs} tabs open; excessive tabs consume RAM",
                        risk=Risk.SAFE,
                        is_automatable=False,
                    )
                )
        if snap.updates.service_start_type.lower() == "disabled":
            out.append(
                OptimizationAction(
                    action_key="EnableUpdateService",
                    category="Updates",
                    title="Enable Update Service",
                    description="The update service is disabled; security patches will not be installed",
                    risk=Risk.MODERATE,
                    is_automatable=False,
                )
            )
        return out


def build_plan(
    snapshot: Snapshot,
    issues: Sequence[FlaggedIssue] | None = None,
    policy: PlanningPolicy | None = None,
) -> list[OptimizationAction]:
    return RemediationPlanner(policy).build_plan(snapshot, issues)


def manual_actions(plan: Sequence[OptimizationAction]) -> list[OptimizationAction]:
    return [a for a in plan if not a.is_automatable]


def select_actions(plan: Sequence[OptimizationAction], only: Sequence[str] | None) -> list[OptimizationAction]:
    """Restrict selection to the given keys (full key or key root); no-op when empty."""
    if not only:
        return list(plan)
    wanted = set(only)
    return [
        dataclasses.replace(a, selected=a.action_key in wanted or a.key_root in wanted) if a.is_automatable else a
        for a in plan
    ]


def cleanup_roots(snapshot: Snapshot) -> list[str]:
    """Folders the snapshot measured as safe to empty: temp, crash dump and browser cache paths."""
    roots = [f.path for f in snapshot.disk.temp_folders]
    roots += [f.path for f in snapshot.disk.crash_dump_folders]
    for browser in snapshot.browsers:
        roots += list(browser.cache_paths)
    return [r for r in dict.fromkeys(roots) if r]


def reconcile_plan(
    planned: Sequence[OptimizationAction],
    requested: Sequence[OptimizationAction],
) -> list[OptimizationAction]:
    """Carry the selection of a client-edited plan onto a freshly built one.

    The planned records are what runs. A requested automatable action must
    exist in the planned set with the same targets; planned actions missing
    from the request are deselected.
    """
    by_key = {a.action_key: a for a in planned}
    chosen: dict[str, bool] = {}
    for req in requested:
        base = by_key.get(req.action_key)
        if base is None:
            if req.is_automatable:
                raise ValueError(f"{req.action_key} is not part of the plan for this snapshot")
            continue
        if req.is_automatable != base.is_automatable:
            raise ValueError(f"{req.action_key} does not match the planned action")
        if req.targets and tuple(req.targets) != base.targets:
            raise ValueError(f"{req.action_key} targets differ from the planned action")
        chosen[req.action_key] = req.selected
    return [
        dataclasses.replace(a, selected=chosen.get(a.action_key, False)) if a.is_automatable else a
        for a in planned
    ]


__all__ = [
    "DURATION_BY_KEY",
    "RemediationPlanner",
    "build_plan",
    "cleanup_roots",
    "estimate_duration",
    "manual_actions",
    "reconcile_plan",
    "select_actions",
]
