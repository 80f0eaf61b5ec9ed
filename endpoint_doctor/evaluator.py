"""Health evaluator: snapshot -> flagged issues + 0..100 health score.

Pure and deterministic. Each category check appends issues carrying a fixed
penalty; penalties are summed and the score is clamped once at the end.
"""

from __future__ import annotations

import re

from endpoint_doctor.config import EvaluationPolicy, format_mb
from endpoint_doctor.models import FlaggedIssue, Severity
from endpoint_doctor.snapshot import Snapshot

GOOD = "Good"
FAIR = "Fair"
POOR = "Poor"

_FAILED_MEASUREMENTS = {"failed", "timed out", "timeout", "unknown", "n/a", ""}
_NUMBER = re.compile(r"(\d+(?:\.\d+)?)")
_GROUPING = re.compile(r"(?<=\d)[,_](?=\d{3}(?!\d))")


# ----------------------------- Latency Ratings ------------------------------ #


def parse_latency_ms(text: str) -> float | None:
    """Extract milliseconds from scanner text such as '23 ms' or '<1ms'."""
    value = (text or "").strip().lower()
    if value in _FAILED_MEASUREMENTS:
        return None
    match = _NUMBER.search(_GROUPING.sub("", value))
    if not match:
        return None
    return float(match.group(1))


def _rate(text: str, fair_above: float, poor_above: float) -> str:
    ms = parse_latency_ms(text)
    if ms is None:
        # Failed or unknown measurements rate as Poor.
        return POOR
    if ms > poor_above:
        return POOR
    if ms > fair_above:
        return FAIR
    return GOOD


def rate_dns(text: str) -> str:
    return _rate(text, fair_above=50.0, poor_above=150.0)


def rate_ping(text: str) -> str:
    return _rate(text, fair_above=30.0, poor_above=100.0)


def health_label(score: int) -> str:
    if score >= 90:
        return "Excellent"
    if score >= 75:
        return "Good"
    if score >= 50:
        return "Fair"
    return "Poor"


# -------------------------------- Evaluator --------------------------------- #


class HealthEvaluator:
    """Apply per-category threshold rules to a snapshot."""

    def __init__(self, policy: EvaluationPolicy | None = None):
        self.policy = policy or EvaluationPolicy()

    def evaluate(self, snapshot: Snapshot) -> tuple[list[FlaggedIssue], int]:
        if snapshot is None:
            raise ValueError("snapshot is required")

        issues: list[FlaggedIssue] = []
        for check in (
            self._check_system,
            self._check_cpu,
            self._check_ram,
            self._check_disk,
            self._check_gpu,
            self._check_battery,
            self._check_startup,
            self._check_antivirus,
            self._check_network,
            self._check_browsers,
            self._check_office,
            self._check_event_log,
            self._check_updates,
            self._check_shell,
        ):
            check(snapshot, issues)

        score = 100 - sum(i.penalty for i in issues)
        score = max(0, min(100, score))
        return issues, score

    # -- helpers --

    def _flag(
        self,
        issues: list[FlaggedIssue],
        severity: Severity,
        category: str,
        description: str,
        recommendation: str,
        penalty: int | None = None,
    ) -> None:
        if penalty is None:
            penalty = {
                Severity.CRITICAL: self.policy.critical_penalty,
                Severity.WARNING: self.policy.warning_penalty,
                Severity.INFO: self.policy.info_penalty,
            }[severity]
        issues.append(FlaggedIssue(severity, category, description, recommendation, penalty))

    # -- categories --

    def _check_system(self, snap: Snapshot, issues: list[FlaggedIssue]) -> None:
        days = snap.system.uptime_days
        if days >= self.policy.uptime_warning_days:
            self._flag(issues, Severity.WARNING, "System", f"System has been running for {int(days)} days",
                       "Restart the machine to clear accumulated memory leaks")
        elif days >= self.policy.uptime_info_days:
            self._flag(issues, Severity.INFO, "System", f"System has been running for {int(days)} days",
                       "Consider a restart soon")

    def _check_cpu(self, snap: Snapshot, issues: list[FlaggedIssue]) -> None:
        p = self.policy
        load = snap.cpu.load_percent
        if load >= p.cpu_critical_percent:
            self._flag(issues, Severity.CRITICAL, "CPU", f"CPU load is {load:.0f}% at idle",
                       "Identify the processes keeping the CPU busy")
        elif load >= p.cpu_warning_percent:
            self._flag(issues, Severity.WARNING, "CPU", f"CPU load is elevated at {load:.0f}%",
                       "Review background processes", penalty=p.cpu_warning_penalty)

        if snap.cpu.has_temperature_sensor:
            temp = snap.cpu.temperature_c
            if temp >= p.temp_critical_c:
                self._flag(issues, Severity.CRITICAL, "CPU", f"CPU temperature is {temp:.0f} C",
                           "Clean the cooling system and check thermal paste", penalty=p.temp_critical_penalty)
            elif temp >= p.temp_warning_c:
                self._flag(issues, Severity.WARNING, "CPU", f"CPU temperature is high at {temp:.0f} C",
                           "Check airflow and fan operation")

    def _check_ram(self, snap: Snapshot, issues: list[FlaggedIssue]) -> None:
        p = self.policy
        if snap.ram.total_mb <= 0:
            return
        pct = snap.ram.percent_used
        if pct > p.ram_critical_percent:
            self._flag(issues, Severity.CRITICAL, "RAM", f"Memory usage is critical at {pct:.1f}%",
                       "Close memory-heavy applications or add RAM", penalty=p.ram_critical_penalty)
        elif pct > p.ram_warning_percent:
            self._flag(issues, Severity.WARNING, "RAM", f"Memory usage is high at {pct:.1f}%",
                       "Close unused applications", penalty=p.ram_warning_penalty)
        elif pct > p.ram_info_percent:
            self._flag(issues, Severity.INFO, "RAM", f"Memory usage is {pct:.1f}%",
                       "Monitor memory usage")

    def _check_disk(self, snap: Snapshot, issues: list[FlaggedIssue]) -> None:
        p = self.policy
        disk = snap.disk
        for drive in disk.drives:
            if not drive.measured:
                continue
            free = drive.free_percent
            if free < p.disk_critical_free_percent:
                self._flag(issues, Severity.CRITICAL, "Disk", f"Drive {drive.mount} has only {free:.1f}% free",
                           "Free disk space immediately")
            elif free < p.disk_warning_free_percent:
                self._flag(issues, Severity.WARNING, "Disk", f"Drive {drive.mount} has {free:.1f}% free",
                           "Clean up unused files", penalty=p.disk_warning_penalty)

        if disk.temp_total_mb > p.temp_files_warning_mb:
            self._flag(issues, Severity.WARNING, "Disk", f"Temporary files use {format_mb(disk.temp_total_mb)}",
                       "Clear temporary folders", penalty=p.temp_files_penalty)
        if disk.recycle_bin_mb > p.recycle_bin_info_mb:
            self._flag(issues, Severity.INFO, "Disk", f"Recycle bin holds {format_mb(disk.recycle_bin_mb)}",
                       "Empty the recycle bin")
        if disk.windows_old_exists:
            self._flag(issues, Severity.INFO, "Disk",
                       f"Previous OS installation folder present ({format_mb(disk.windows_old_mb)})",
                       "Remove it with the system disk cleanup tool")

    def _check_gpu(self, snap: Snapshot, issues: list[FlaggedIssue]) -> None:
        if not snap.gpu.has_gpu:
            return
        age = snap.gpu.driver_age_days(snap.captured_at)
        if age is not None and age > self.policy.gpu_driver_max_age_days:
            self._flag(issues, Severity.WARNING, "GPU", f"GPU driver is {age} days old ({snap.gpu.driver_date})",
                       "Install the latest driver from the GPU vendor")

    def _check_battery(self, snap: Snapshot, issues: list[FlaggedIssue]) -> None:
        p = self.policy
        battery = snap.battery
        if battery.has_battery:
            health = battery.health_percent
            if health < p.battery_critical_health:
                self._flag(issues, Severity.CRITICAL, "Battery", f"Battery health is {health:.0f}%",
                           "Replace the battery", penalty=p.battery_critical_penalty)
            elif health < p.battery_warning_health:
                self._flag(issues, Severity.WARNING, "Battery", f"Battery health is degraded at {health:.0f}%",
                           "Plan a battery replacement")
        if "power saver" in battery.power_plan.lower():
            self._flag(issues, Severity.INFO, "Battery", "Power saver plan throttles the CPU",
                       "Switch to a performance power plan")

    def _check_startup(self, snap: Snapshot, issues: list[FlaggedIssue]) -> None:
        p = self.policy
        count = snap.startup.enabled_count
        if count > p.startup_critical_count:
            self._flag(issues, Severity.CRITICAL, "Startup", f"{count} startup items enabled",
                       "Disable startup items you do not need", penalty=p.startup_critical_penalty)
        elif count > p.startup_warning_count:
            self._flag(issues, Severity.WARNING, "Startup", f"{count} startup items enabled",
                       "Review startup items")

    def _check_antivirus(self, snap: Snapshot, issues: list[FlaggedIssue]) -> None:
        av = snap.antivirus
        if not av.enabled:
            self._flag(issues, Severity.CRITICAL, "Antivirus", f"Antivirus protection is disabled ({av.name})",
                       "Turn real-time protection back on")
        elif av.scan_running:
            self._flag(issues, Severity.INFO, "Antivirus", "An antivirus scan is running",
                       "Expect higher CPU and disk load until the scan ends")

    def _check_network(self, snap: Snapshot, issues: list[FlaggedIssue]) -> None:
        net = snap.network
        for label, text, rating in (
            ("DNS response", net.dns_response, rate_dns(net.dns_response)),
            ("Ping latency", net.ping_latency, rate_ping(net.ping_latency)),
        ):
            if rating == POOR:
                self._flag(issues, Severity.WARNING, "Network", f"{label} is poor ({text})",
                           "Check the network connection and DNS servers")
            elif rating == FAIR:
                self._flag(issues, Severity.INFO, "Network", f"{label} is fair ({text})",
                           "Monitor network performance")

    def _check_browsers(self, snap: Snapshot, issues: list[FlaggedIssue]) -> None:
        p = self.policy
        for browser in snap.browsers:
            if browser.process_count > p.browser_process_info_count:
                self._flag(issues, Severity.INFO, "Browser",
                           f"{browser.name} runs {browser.process_count} processes",
                           "Close unused tabs and extensions")
            if browser.cache_mb > p.browser_cache_info_mb:
                self._flag(issues, Severity.INFO, "Browser",
                           f"{browser.name} cache uses {format_mb(browser.cache_mb)}",
                           "Clear the browser cache")

    def _check_office(self, snap: Snapshot, issues: list[FlaggedIssue]) -> None:
        if snap.office.installed and snap.office.repair_needed:
            self._flag(issues, Severity.WARNING, "Office", "Office installation needs repair",
                       "Run an online repair of the Office suite")

    def _check_event_log(self, snap: Snapshot, issues: list[FlaggedIssue]) -> None:
        p = self.policy
        log = snap.event_log
        if log.bsod_count > 0:
            self._flag(issues, Severity.CRITICAL, "Event Log", f"{log.bsod_count} system crash(es) in the last 30 days",
                       "Check drivers, system files and memory")
        if log.disk_error_count > 0:
            self._flag(issues, Severity.CRITICAL, "Event Log", f"{log.disk_error_count} disk error(s) in the last 30 days",
                       "Back up data and schedule a disk check")
        if log.app_crash_count >= p.app_crash_warning_count:
            top = ", ".join(f"{c.app_name} ({c.count}x)" for c in log.top_crashing_apps(3))
            detail = f" (top: {top})" if top else ""
            self._flag(issues, Severity.WARNING, "Event Log",
                       f"{log.app_crash_count} application crashes in the last 30 days{detail}",
                       "Update or reinstall the crashing applications")
        if log.unexpected_shutdown_count >= p.unexpected_shutdown_warning_count:
            self._flag(issues, Severity.WARNING, "Event Log",
                       f"{log.unexpected_shutdown_count} unexpected shutdowns in the last 30 days",
                       "Check power supply and overheating")

    def _check_updates(self, snap: Snapshot, issues: list[FlaggedIssue]) -> None:
        updates = snap.updates
        if updates.service_start_type.lower() == "disabled":
            self._flag(issues, Severity.WARNING, "Updates", "Update service is disabled",
                       "Re-enable the update service", penalty=self.policy.update_service_penalty)
        if updates.pending_reboot:
            self._flag(issues, Severity.INFO, "Updates", "Installed updates are waiting for a reboot",
                       "Restart to finish installing updates")

    def _check_shell(self, snap: Snapshot, issues: list[FlaggedIssue]) -> None:
        if not snap.shell.responding:
            self._flag(issues, Severity.WARNING, "Shell", f"{snap.shell.process_name} is not responding",
                       "Restart the desktop shell")


def evaluate(snapshot: Snapshot, policy: EvaluationPolicy | None = None) -> tuple[list[FlaggedIssue], int]:
    return HealthEvaluator(policy).evaluate(snapshot)


__all__ = [
    "FAIR",
    "GOOD",
    "POOR",
    "HealthEvaluator",
    "evaluate",
    "health_label",
    "parse_latency_ms",
    "rate_dns",
    "rate_ping",
]
