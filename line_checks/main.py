from __future__ import annotations

import argparse
import asyncio
import json
import os
import time

import structlog

from line_registry import db as dbm
from monitoring.config import MonitoringConfig, load_config
from monitoring.log_config import configure_logging
from monitoring.scheduler.task_coordinator import TaskCoordinator


logger = structlog.get_logger(__name__)


async def run_loop(config: MonitoringConfig, *, once: bool, workspace_id: str | None = None) -> int:
    config.validate_for_cycle()
    await asyncio.to_thread(dbm.ensure_schema, config)

    coordinator = TaskCoordinator(config)
    interval_seconds = float(config.scheduler.health_check_interval_seconds)
    try:
        while True:
            t0 = time.monotonic()
            summary = await coordinator.runner.run_cycle(workspace_id=workspace_id)
            if once:
                print(json.dumps(summary.to_dict(), ensure_ascii=False, indent=2))
                return 0 if summary.down == 0 else 1

            elapsed = time.monotonic() - t0
            sleep_for = max(0.0, interval_seconds - elapsed)
            logger.info("Cycle complete", elapsed_seconds=round(elapsed, 3), sleep_seconds=round(sleep_for, 3))
            await asyncio.sleep(sleep_for)
    finally:
        await coordinator.stop()


def main() -> int:
    parser = argparse.ArgumentParser(description="Line health monitor")
    parser.add_argument(
        "--config",
        default=os.getenv("MONITORING_CONFIG", "config/monitoring.yaml"),
        help="Path to YAML config",
    )
    parser.add_argument("--once", action="store_true", help="Run one check cycle and exit")
    parser.add_argument("--workspace-id", default=None, help="Only check lines of this workspace")
    parser.add_argument(
        "--log-level",
        default=os.getenv("LOG_LEVEL", "INFO"),
        help="Logging level (INFO, WARNING, ...)",
    )
    args = parser.parse_args()

    configure_logging(args.log_level)
    config = load_config(args.config)
    return asyncio.run(run_loop(config, once=bool(args.once), workspace_id=args.workspace_id))


if __name__ == "__main__":
    raise SystemExit(main())
