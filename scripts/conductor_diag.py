"""Conductor MCP diagnostics CLI."""

from __future__ import annotations

import argparse
import json
from datetime import timedelta

from conductor_mcp.config import ConductorSettings
from conductor_mcp.runs import RunKind, RunNotFoundError, RunStatus, RunStore


def load_store(settings: ConductorSettings) -> RunStore:
    try:
        return RunStore(settings.run_storage_path)
    except OSError as exc:
        print(f"Run storage unavailable: {exc}")
        raise SystemExit(1)


def cmd_runs(args: argparse.Namespace) -> None:
    store = load_store(ConductorSettings())
    runs = store.list_runs(
        status=RunStatus(args.status.upper()) if args.status else None,
        repository=args.repository,
        kind=RunKind(args.kind) if args.kind else None,
        limit=args.limit,
    )
    if args.json:
        print(json.dumps([run.summary() for run in runs], indent=2))
    else:
        for run in runs:
            print(f"{run.id} [{run.status.value}] {run.kind.value} -> {run.repository or '-'}")


def cmd_show(args: argparse.Namespace) -> None:
    store = load_store(ConductorSettings())
    try:
        run = store.require_run(args.run_id)
    except RunNotFoundError as exc:
        print(str(exc))
        raise SystemExit(1)
    print(json.dumps(run.model_dump(mode="json"), indent=2))


def cmd_stats(args: argparse.Namespace) -> None:
    store = load_store(ConductorSettings())
    print(json.dumps(store.statistics(), indent=2))


def cmd_cleanup(args: argparse.Namespace) -> None:
    settings = ConductorSettings()
    store = load_store(settings)
    days = args.max_age_days if args.max_age_days is not None else settings.run_retention_days
    deleted = store.purge_expired(timedelta(days=days))
    print(json.dumps({"deleted": deleted, "max_age_days": days, "remaining": store.count_runs()}, indent=2))


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Conductor MCP diagnostics")
    sub = parser.add_subparsers(dest="cmd")

    p_runs = sub.add_parser("runs", help="List stored agent runs, newest first")
    p_runs.add_argument("--status", choices=[status.value.lower() for status in RunStatus])
    p_runs.add_argument("--kind", choices=[kind.value for kind in RunKind])
    p_runs.add_argument("--repository")
    p_runs.add_argument("--limit", type=int, default=20)
    p_runs.add_argument("--json", action="store_true", help="Output JSON")
    p_runs.set_defaults(func=cmd_runs)

    p_show = sub.add_parser("show", help="Print one stored agent run")
    p_show.add_argument("run_id")
    p_show.set_defaults(func=cmd_show)

    p_stats = sub.add_parser("stats", help="Show run counts, success rate and average duration")
    p_stats.set_defaults(func=cmd_stats)

    p_cleanup = sub.add_parser("cleanup", help="Delete runs completed before the retention window")
    p_cleanup.add_argument(
        "--max-age-days",
        type=float,
        default=None,
        help="Override the configured retention window",
    )
    p_cleanup.set_defaults(func=cmd_cleanup)

    return parser


def main(argv: list[str] | None = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)
    if not hasattr(args, "func"):
        parser.print_help()
        return
    args.func(args)


if __name__ == "__main__":
    main()
