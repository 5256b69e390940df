"""Main entry point for the line health monitor."""

import asyncio
import json
import sys

import structlog
import uvicorn

from line_registry import db as dbm
from line_registry.app import create_app
from monitoring.config import get_config
from monitoring.log_config import configure_logging
from monitoring.scheduler.task_coordinator import TaskCoordinator


logger = structlog.get_logger(__name__)


async def run_cli_command(command: str, *args: str):
    """Run a one-off command against the configured store."""
    config = get_config()
    await asyncio.to_thread(dbm.ensure_schema, config)
    coordinator = TaskCoordinator(config)
    try:
        if command == "check":
            workspace_id = args[0] if args else None
            summary = await coordinator.runner.run_cycle(workspace_id=workspace_id)
            print(json.dumps(summary.to_dict(), ensure_ascii=False, indent=2))
        elif command == "status":
            print(json.dumps(coordinator.get_status(), ensure_ascii=False, indent=2, default=str))
        else:
            print(f"Unknown command: {command}")
            print("Available commands: check [workspace_id], status")
    finally:
        await coordinator.stop()


def main():
    """Start the API server, or run a CLI command when one is given."""
    config = get_config()
    configure_logging(config.log_level)

    if len(sys.argv) < 2:
        logger.info("Starting line monitor web server", host=config.api_host, port=config.api_port)
        uvicorn.run(
            create_app(config),
            host=config.api_host,
            port=config.api_port,
            log_level=config.log_level.lower(),
        )
    else:
        asyncio.run(run_cli_command(sys.argv[1], *sys.argv[2:]))


if __name__ == "__main__":
    main()
