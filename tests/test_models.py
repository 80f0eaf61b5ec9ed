import pytest

from endpoint_doctor.models import (
    ActionStateError,
    ActionStatus,
    ExecutionResult,
    FlaggedIssue,
    OptimizationAction,
    OptimizationSummary,
    Risk,
    Severity,
    actions_from_list,
    sort_issues,
)


def _action(key="FlushDns", automatable=True, **kwargs):
    return OptimizationAction(
        action_key=key,
        category="Network",
        title=kwargs.pop("title", key),
        description="",
        risk=Risk.SAFE,
        is_automatable=automatable,
        **kwargs,
    )


def test_with_outcome_returns_new_record_and_keeps_planned_one():
    planned = _action()
    done = planned.with_outcome(ActionStatus.SUCCESS, 12, "ok")
    assert planned.status is ActionStatus.PENDING
    assert planned.actual_freed_mb == 0
    assert done.status is ActionStatus.SUCCESS
    assert done.actual_freed_mb == 12
    assert done.result_message == "ok"


def test_with_outcome_is_single_shot():
    done = _action().with_outcome(ActionStatus.FAILED, message="boom")
    with pytest.raises(ActionStateError):
        done.with_outcome(ActionStatus.SUCCESS)


def test_with_outcome_rejects_pending_target_and_manual_actions():
    with pytest.raises(ActionStateError):
        _action().with_outcome(ActionStatus.PENDING)
    with pytest.raises(ActionStateError):
        _action("ScheduleRestart", automatable=False).with_outcome(ActionStatus.SUCCESS)


def test_with_outcome_clamps_negative_freed():
    assert _action().with_outcome(ActionStatus.SUCCESS, -5).actual_freed_mb == 0


def test_key_root_and_args():
    action = _action("EndProcess:1234:chrome.exe")
    assert action.key_root == "EndProcess"
    assert action.key_args == ["1234", "chrome.exe"]
    assert _action().key_args == []


def test_action_dict_form_uses_enum_values():
    data = _action(targets=("/tmp/a",)).to_dict()
    assert data["risk"] == "Safe"
    assert data["status"] == "Pending"
    assert data["targets"] == ["/tmp/a"]
    assert OptimizationAction.from_dict(data) == _action(targets=("/tmp/a",))


def test_actions_from_list_validates_input():
    with pytest.raises(ValueError):
        actions_from_list({"action_key": "FlushDns"})
    with pytest.raises(ValueError):
        actions_from_list([{"title": "no key"}])
    with pytest.raises(ValueError):
        actions_from_list([{"action_key": "FlushDns", "status": "Exploded"}])
    with pytest.raises(ValueError):
        actions_from_list([{"action_key": "FlushDns", "selected": "maybe"}])


def test_selection_flags_given_as_text_are_parsed():
    action = OptimizationAction.from_dict({"action_key": "FlushDns", "is_automatable": "true", "selected": "false"})
    assert action.is_automatable is True
    assert action.selected is False


def test_summary_counts():
    actions = [
        _action("A", title="A").with_outcome(ActionStatus.SUCCESS, 100),
        _action("B", title="B").with_outcome(ActionStatus.PARTIAL_SUCCESS, 50, "some locked"),
        _action("C", title="C").with_outcome(ActionStatus.FAILED, message="boom"),
        _action("D", title="D").with_outcome(ActionStatus.NO_CHANGE),
        _action("E", title="E").with_outcome(ActionStatus.SKIPPED, message="Not selected"),
        _action("F", automatable=False, title="F"),
    ]
    summary = OptimizationSummary.from_actions(actions)
    assert summary.actions_run == 4
    assert summary.success_count == 2
    assert summary.failure_count == 1
    assert summary.total_freed_mb == 150
    assert summary.success_count + summary.failure_count <= summary.actions_run
    assert "Failed: C: boom" in summary.details
    assert "Skipped: E: Not selected" in summary.details
    assert not any(line.endswith(": F") for line in summary.details)


def test_summary_of_nothing():
    summary = OptimizationSummary.from_actions([])
    assert summary == OptimizationSummary()


def test_sort_issues_by_severity_then_category():
    issues = [
        FlaggedIssue(Severity.INFO, "Disk", "d", "r"),
        FlaggedIssue(Severity.CRITICAL, "RAM", "d", "r"),
        FlaggedIssue(Severity.WARNING, "CPU", "d", "r"),
        FlaggedIssue(Severity.CRITICAL, "Disk", "d", "r"),
    ]
    ordered = [(i.severity, i.category) for i in sort_issues(issues)]
    assert ordered == [
        (Severity.CRITICAL, "Disk"),
        (Severity.CRITICAL, "RAM"),
        (Severity.WARNING, "CPU"),
        (Severity.INFO, "Disk"),
    ]


def test_execution_result_survives_dict_form():
    actions = (
        _action("A", title="A").with_outcome(ActionStatus.SUCCESS, 40, "Freed 40 MB"),
        _action("B", automatable=False, title="B"),
    )
    result = ExecutionResult("run1", actions, OptimizationSummary.from_actions(actions), "t0", "t1", ("note",))
    assert ExecutionResult.from_dict(result.to_dict()) == result
