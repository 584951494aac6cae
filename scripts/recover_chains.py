from __future__ import annotations

import argparse
import json
import logging
from typing import Any

from batch_ingest_api.app.settings import Settings
from batch_ingest_api.main import build_services


def _parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Restart stalled batch-upload chains (run from cron or by hand)."
    )
    parser.add_argument(
        "--task-uuid",
        type=str,
        default=None,
        help="Recover only this task, ignoring the inactivity threshold.",
    )
    parser.add_argument(
        "--chain-mode",
        choices=("inline", "worker", "http"),
        default="inline",
        help="How re-triggered subtasks run (default: inline, in this process).",
    )
    parser.add_argument(
        "--dead-letters",
        type=int,
        default=0,
        metavar="N",
        help="Also print the N newest failed content reviews.",
    )
    return parser.parse_args(argv)


def recover(
    *, settings: Settings, task_uuid: str | None = None, dead_letters: int = 0, services: Any = None
) -> dict[str, Any]:
    services = services or build_services(settings)
    try:
        if task_uuid:
            actions = services.reconciler.recover_task(task_uuid)
        else:
            actions = services.reconciler.sweep()
        report: dict[str, Any] = {"actions": [action.model_dump() for action in actions]}
        if dead_letters > 0:
            report["dead_letters"] = services.store.list_dead_letters(limit=dead_letters)
        return report
    finally:
        services.shutdown()


def main(argv: list[str] | None = None) -> None:
    args = _parse_args(argv)
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s %(message)s")
    report = recover(
        settings=Settings(chain_mode=args.chain_mode),
        task_uuid=args.task_uuid,
        dead_letters=args.dead_letters,
    )
    print(json.dumps(report, indent=2, default=str))


if __name__ == "__main__":
    main()
