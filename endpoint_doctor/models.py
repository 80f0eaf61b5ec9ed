"""Shared data model: issues, actions, action status and run summaries."""

from __future__ import annotations

import dataclasses
from dataclasses import asdict, dataclass
from enum import Enum
from typing import Any, Iterable, Mapping, Sequence

from endpoint_doctor.config import parse_bool


class ActionStateError(RuntimeError):
    """Raised when an action outcome would be written twice or to a non-terminal state."""


# ----------------------------------- Enums ---------------------------------- #


class Severity(str, Enum):
    """Severity of a flagged issue.

    Levels:
        INFO: Advisory, small penalty
        WARNING: Degraded condition worth fixing
        CRITICAL: Serious problem affecting stability or data
    """

    INFO = "Info"
    WARNING = "Warning"
    CRITICAL = "Critical"

    @property
    def rank(self) -> int:
        return {"Info": 0, "Warning": 1, "Critical": 2}[self.value]


class Risk(str, Enum):
    """Risk of applying an action.

    Levels:
        SAFE: No visible disruption
        MODERATE: Visible disruption (UI restart, process ended)
        REQUIRES_REBOOT: Only takes effect after a restart
    """

    SAFE = "Safe"
    MODERATE = "Moderate"
    REQUIRES_REBOOT = "RequiresReboot"


class ActionStatus(str, Enum):
    PENDING = "Pending"
    SUCCESS = "Success"
    PARTIAL_SUCCESS = "PartialSuccess"
    NO_CHANGE = "NoChange"
    FAILED = "Failed"
    SKIPPED = "Skipped"

    @property
    def is_terminal(self) -> bool:
        return self is not ActionStatus.PENDING


class VerificationStatus(str, Enum):
    """Result of re-checking an executed action against a later snapshot."""

    NONE = "None"
    VERIFIED = "Verified"
    PARTIALLY_VERIFIED = "PartiallyVerified"
    NOT_VERIFIED = "NotVerified"
    REQUIRES_REBOOT = "RequiresReboot"


# Statuses counted as "run" in a summary; Skipped and Pending are excluded.
RUN_STATUSES = frozenset(
    {ActionStatus.SUCCESS, ActionStatus.PARTIAL_SUCCESS, ActionStatus.NO_CHANGE, ActionStatus.FAILED}
)


# ---------------------------------- Issues ---------------------------------- #


@dataclass(frozen=True)
class FlaggedIssue:
    """One diagnostic finding."""

    severity: Severity
    category: str
    description: str
    recommendation: str
    penalty: int = 0

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["severity"] = self.severity.value
        return data

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> FlaggedIssue:
        return cls(
            severity=Severity(data["severity"]),
            category=str(data["category"]),
            description=str(data.get("description", "")),
            recommendation=str(data.get("recommendation", "")),
            penalty=int(data.get("penalty", 0)),
        )


def sort_issues(issues: Iterable[FlaggedIssue]) -> list[FlaggedIssue]:
    """Display order: severity descending, then category; otherwise stable."""
    return sorted(issues, key=lambda i: (-i.severity.rank, i.category))


# --------------------------------- Actions ---------------------------------- #


@dataclass(frozen=True)
class OptimizationAction:
    """One planned or executed remediation step.

    Planned records come from the planner with status Pending. The executor
    never mutates them; it derives executed copies through with_outcome().
    """

    action_key: str
    category: str
    title: str
    description: str
    risk: Risk
    is_automatable: bool
    estimated_free_mb: int = 0
    selected: bool = True
    estimated_duration: str = ""
    targets: tuple[str, ...] = ()
    actual_freed_mb: int = 0
    status: ActionStatus = ActionStatus.PENDING
    result_message: str = ""

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    @property
    def key_root(self) -> str:
        return self.action_key.split(":", 1)[0]

    @property
    def key_args(self) -> list[str]:
        return self.action_key.split(":")[1:]

    def with_outcome(self, status: ActionStatus, freed_mb: int = 0, message: str = "") -> OptimizationAction:
        if not self.is_automatable:
            raise ActionStateError(f"{self.action_key} is manual-only and cannot be executed")
        if self.is_terminal:
            raise ActionStateError(f"{self.action_key} already finished as {self.status.value}")
        if not status.is_terminal:
            raise ActionStateError(f"{status.value} is not a terminal status")
        return dataclasses.replace(
            self,
            status=status,
            actual_freed_mb=max(0, int(freed_mb)),
            result_message=message,
        )

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["risk"] = self.risk.value
        data["status"] = self.status.value
        data["targets"] = list(self.targets)
        return data

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> OptimizationAction:
        try:
            return cls(
                action_key=str(data["action_key"]),
                category=str(data.get("category", "")),
                title=str(data.get("title", "")),
                description=str(data.get("description", "")),
                risk=Risk(data.get("risk", Risk.SAFE.value)),
                is_automatable=parse_bool(data.get("is_automatable", False), "is_automatable"),
                estimated_free_mb=int(data.get("estimated_free_mb", 0)),
                selected=parse_bool(data.get("selected", True), "selected"),
                estimated_duration=str(data.get("estimated_duration", "")),
                targets=tuple(str(t) for t in data.get("targets", ())),
                actual_freed_mb=int(data.get("actual_freed_mb", 0)),
                status=ActionStatus(data.get("status", ActionStatus.PENDING.value)),
                result_message=str(data.get("result_message", "")),
            )
        except KeyError as exc:
            raise ValueError(f"action is missing required field {exc}") from exc


def actions_from_list(items: Sequence[Mapping[str, Any]]) -> list[OptimizationAction]:
    if not isinstance(items, (list, tuple)):
        raise ValueError("plan must be a list of actions")
    return [OptimizationAction.from_dict(item) for item in items]


# --------------------------------- Summary ---------------------------------- #


@dataclass(frozen=True)
class OptimizationSummary:
    """Aggregate outcome of one execution run."""

    actions_run: int = 0
    total_freed_mb: int = 0
    failure_count: int = 0
    success_count: int = 0
    details: tuple[str, ...] = ()

    @classmethod
    def from_actions(cls, actions: Iterable[OptimizationAction]) -> OptimizationSummary:
        actions = list(actions)
        details = []
        for a in actions:
            if a.status in RUN_STATUSES or a.status is ActionStatus.SKIPPED:
                line = f"{a.status.value}: {a.title}"
                details.append(f"{line}: {a.result_message}" if a.result_message else line)
        return cls(
            actions_run=sum(1 for a in actions if a.status in RUN_STATUSES),
            total_freed_mb=sum(a.actual_freed_mb for a in actions if a.is_terminal),
            failure_count=sum(1 for a in actions if a.status is ActionStatus.FAILED),
            success_count=sum(
                1 for a in actions if a.status in (ActionStatus.SUCCESS, ActionStatus.PARTIAL_SUCCESS)
            ),
            details=tuple(details),
        )

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["details"] = list(self.details)
        return data

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> OptimizationSummary:
        return cls(
            actions_run=int(data.get("actions_run", 0)),
            total_freed_mb=int(data.get("total_freed_mb", 0)),
            failure_count=int(data.get("failure_count", 0)),
            success_count=int(data.get("success_count", 0)),
            details=tuple(str(d) for d in data.get("details", ())),
        )


@dataclass(frozen=True)
class ExecutionResult:
    """Executed actions plus their summary for one run."""

    run_id: str
    actions: tuple[OptimizationAction, ...]
    summary: OptimizationSummary
    started_at: str = ""
    finished_at: str = ""
    notes: tuple[str, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {
            "run_id": self.run_id,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
            "actions": [a.to_dict() for a in self.actions],
            "summary": self.summary.to_dict(),
            "notes": list(self.notes),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> ExecutionResult:
        return cls(
            run_id=str(data.get("run_id", "")),
            actions=tuple(actions_from_list(data.get("actions", []))),
            summary=OptimizationSummary.from_dict(data.get("summary", {})),
            started_at=str(data.get("started_at", "")),
            finished_at=str(data.get("finished_at", "")),
            notes=tuple(str(n) for n in data.get("notes", ())),
        )


__all__ = [
    "RUN_STATUSES",
    "ActionStateError",
    "ActionStatus",
    "ExecutionResult",
    "FlaggedIssue",
    "OptimizationAction",
    "OptimizationSummary",
    "Risk",
    "Severity",
    "VerificationStatus",
    "actions_from_list",
    "sort_issues",
]
