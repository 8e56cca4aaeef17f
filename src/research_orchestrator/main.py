#!/usr/bin/env python
from __future__ import annotations

import argparse
import json
import logging
import os
import sys

from research_orchestrator.errors import JobError
from research_orchestrator.scheduler import build_services, run_auto_scheduler
from research_orchestrator.schemas import WorkKind
from research_orchestrator.settings import TASK_NAMES, load_jobs_config

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


def configure_logging(level: str | None = None) -> None:
    level_name = (level or os.getenv("LOG_LEVEL", "INFO")).strip().upper()
    logging.basicConfig(level=getattr(logging, level_name, logging.INFO), format=LOG_FORMAT)


def _print(data) -> None:
    print(json.dumps(data, indent=2, default=str))


def serve(args: argparse.Namespace) -> int:
    run_auto_scheduler(load_jobs_config())
    return 0


def run_task(args: argparse.Namespace) -> int:
    kwargs = {}
    if args.force:
        if args.task != "snapshot_sync":
            raise ValueError("--force only applies to snapshot_sync")
        kwargs["force"] = True
    services = build_services(load_jobs_config())
    if args.secret is not None:
        summary = services.runner.trigger(args.task, args.secret, **kwargs)
    else:
        summary = services.runner.run(args.task, trigger="cli", **kwargs)
    _print({"task": args.task, "summary": summary})
    return 1 if summary.get("error") else 0


def status(args: argparse.Namespace) -> int:
    services = build_services(load_jobs_config())
    if args.symbol.lower() == "all":
        _print({name: s.model_dump(mode="json") for name, s in services.market_status.get_all_statuses().items()})
    else:
        _print(services.market_status.get_status(args.symbol, args.exchange).model_dump(mode="json"))
    return 0


def enqueue(args: argparse.Namespace) -> int:
    try:
        payload = json.loads(args.payload)
    except json.JSONDecodeError as exc:
        raise ValueError(f"payload is not valid JSON: {exc}") from exc
    if not isinstance(payload, dict):
        raise ValueError("payload must be a JSON object")
    services = build_services(load_jobs_config())
    item = services.queue.enqueue(WorkKind(args.kind), payload)
    _print(item.model_dump(mode="json"))
    return 0


def queue_stats(args: argparse.Namespace) -> int:
    services = build_services(load_jobs_config())
    _print(
        {
            "queue": services.queue.stats(),
            "recent_runs": services.state_store.list_job_runs(limit=args.limit),
        }
    )
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Background research job orchestrator")
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("serve", help="run the in-process timers until interrupted")
    p.set_defaults(func=serve)

    p = sub.add_parser("run", help="run one task now")
    p.add_argument("task", choices=TASK_NAMES)
    p.add_argument("--secret", default=None, help="go through the authenticated trigger path")
    p.add_argument("--force", action="store_true", help="snapshot_sync only: ignore the trading calendar")
    p.set_defaults(func=run_task)

    p = sub.add_parser("status", help="market status for a symbol, exchange or region")
    p.add_argument("symbol", help='symbol, region ("US", "EU") or "all"')
    p.add_argument("--exchange", default=None)
    p.set_defaults(func=status)

    p = sub.add_parser("enqueue", help="add work to the retry queue")
    p.add_argument("kind", choices=[k.value for k in WorkKind])
    p.add_argument("payload", help='JSON object, e.g. {"symbol": "AAPL"}')
    p.set_defaults(func=enqueue)

    p = sub.add_parser("queue-stats", help="queue counts and recent job runs")
    p.add_argument("--limit", type=int, default=10)
    p.set_defaults(func=queue_stats)
    return parser


def main(argv: list[str] | None = None) -> int:
    configure_logging()
    args = build_parser().parse_args(argv)
    try:
        return args.func(args)
    except (JobError, ValueError) as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 2


def run() -> None:
    sys.exit(main())


if __name__ == "__main__":
    run()
