#!/usr/bin/env python3
"""Command-line entry point for evaluating snapshots and running remediation plans.

Reads scanner snapshots (JSON) and writes JSON results.
- evaluate: flagged issues + health score
- plan: risk-classified action plan
- run: execute the plan built from a snapshot (dry-run unless --execute)
- compare: before/after deltas, optionally verifying a run
"""

from __future__ import annotations

import argparse
import dataclasses
import json
import sys
from pathlib import Path
from typing import Any

from endpoint_doctor.comparator import compare, verify
from endpoint_doctor.config import (
    APP_VERSION,
    DEFAULT_LOG_FILE,
    load_execution_policy,
    now_utc_iso,
    read_json,
    setup_logger,
    write_json,
)
from endpoint_doctor.evaluator import evaluate, health_label
from endpoint_doctor.events import EventBus, LoggingObserver
from endpoint_doctor.executor import ActionExecutor
from endpoint_doctor.models import OptimizationAction, actions_from_list, sort_issues
from endpoint_doctor.planner import build_plan, cleanup_roots, manual_actions, reconcile_plan, select_actions
from endpoint_doctor.snapshot import Snapshot
from endpoint_doctor.system_control import LocalSystemControl


def load_snapshot(path: str) -> Snapshot:
    return Snapshot.from_dict(read_json(path))


def load_plan(path: str) -> list[OptimizationAction]:
    data = read_json(path)
    if isinstance(data, dict):
        data = data.get("actions", [])
    return actions_from_list(data)


# -------------------------------- Commands ---------------------------------- #


def command_evaluate(args: argparse.Namespace) -> dict[str, Any]:
    snapshot = load_snapshot(args.snapshot)
    issues, score = evaluate(snapshot)
    return {
        "health_score": score,
        "health_label": health_label(score),
        "issues": [i.to_dict() for i in sort_issues(issues)],
    }


def command_plan(args: argparse.Namespace) -> dict[str, Any]:
    snapshot = load_snapshot(args.snapshot)
    issues, score = evaluate(snapshot)
    plan = build_plan(snapshot, issues)
    return {
        "health_score": score,
        "actions": [a.to_dict() for a in plan],
        "manual": [a.action_key for a in manual_actions(plan)],
    }


def command_run(args: argparse.Namespace) -> dict[str, Any]:
    snapshot = load_snapshot(args.snapshot)
    issues, _ = evaluate(snapshot)
    plan = build_plan(snapshot, issues)
    if args.plan:
        # An edited plan file only chooses which planned actions run.
        plan = reconcile_plan(plan, load_plan(args.plan))

    plan = select_actions(plan, args.only)
    if not args.execute:
        return {
            "dry_run": True,
            "actions": [a.to_dict() for a in plan],
            "would_run": [a.action_key for a in plan if a.is_automatable and a.selected],
            "manual": [a.action_key for a in manual_actions(plan)],
        }

    policy = load_execution_policy()
    if args.timeout is not None:
        policy = dataclasses.replace(policy, command_timeout=args.timeout)
    logger = setup_logger(Path(args.log_file))
    bus = EventBus(logger)
    bus.subscribe(LoggingObserver(logger))
    executor = ActionExecutor(
        LocalSystemControl(logger=logger),
        policy=policy,
        bus=bus,
        logger=logger,
        allowed_roots=cleanup_roots(snapshot),
    )
    data = executor.run(plan).to_dict()
    data["dry_run"] = False
    return data


def command_compare(args: argparse.Namespace) -> dict[str, Any]:
    after = load_snapshot(args.after)
    comparison = compare(load_snapshot(args.before), after)
    data = comparison.to_dict()
    data["summary_lines"] = comparison.summary_lines()
    if args.result:
        data["verification"] = [v.to_dict() for v in verify(load_plan(args.result), after)]
    return data


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="endpoint-doctor",
        description="Evaluate workstation snapshots and run remediation plans",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {APP_VERSION}")
    parser.add_argument("--log-file", default=str(DEFAULT_LOG_FILE), help="Action log file")
    parser.add_argument("--output", default=None, help="Write the JSON result here instead of stdout")

    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("evaluate", help="Flag issues and compute the health score")
    p.add_argument("--snapshot", required=True, help="Snapshot JSON file")
    p.set_defaults(func=command_evaluate)

    p = sub.add_parser("plan", help="Build a remediation plan")
    p.add_argument("--snapshot", required=True, help="Snapshot JSON file")
    p.set_defaults(func=command_plan)

    p = sub.add_parser("run", help="Execute a plan (dry-run unless --execute)")
    p.add_argument("--snapshot", required=True, help="Snapshot JSON file; the plan is built from it")
    p.add_argument("--plan", help="Edited plan JSON (output of 'plan'); only its selections are used")
    p.add_argument("--execute", action="store_true", help="Apply changes to this machine")
    p.add_argument("--only", action="append", default=None, help="Run only this action key (repeatable)")
    p.add_argument("--timeout", type=float, default=None, help="External command timeout in seconds")
    p.set_defaults(func=command_run)

    p = sub.add_parser("compare", help="Compare before/after snapshots")
    p.add_argument("--before", required=True)
    p.add_argument("--after", required=True)
    p.add_argument("--result", help="Run output JSON; adds a verification of each action against --after")
    p.set_defaults(func=command_compare)

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        result = args.func(args)
        if args.output:
            output_path = Path(args.output)
            write_json(output_path, result)
            print(json.dumps({
                "status": "ok",
                "command": args.command,
                "output": str(output_path.resolve()),
                "timestamp": now_utc_iso(),
            }, indent=2))
        else:
            print(json.dumps(result, indent=2))
        return 0
    except Exception as exc:  # pylint: disable=broad-except
        print(json.dumps({
            "status": "error",
            "command": getattr(args, "command", None),
            "error": str(exc),
            "timestamp": now_utc_iso(),
        }, indent=2), file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
