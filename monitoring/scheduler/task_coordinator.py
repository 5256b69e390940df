"""Wires the health cycle, availability runs and queues together."""

from typing import Any, Awaitable, Callable, Dict, Optional

import httpx
import structlog

from line_checks.availability import run_bulk_availability
from line_checks.cycle import HealthCycleRunner
from line_checks.notifier import EmailNotifier, FanoutNotifier, LogOnlyNotifier, Notifier, TelegramNotifier
from line_registry.store import LineStore

from ..config import MonitoringConfig, get_config
from .job_queue import JobBroker
from .job_scheduler import JobScheduler
from .jobs import BulkAvailabilityCheckJob, HealthCheckJob, ProcessScheduledMessagesJob


logger = structlog.get_logger(__name__)

HEALTH_CHECK_JOB_KEY = "health-check-cron"
SCHEDULED_MESSAGES_JOB_KEY = "scheduled-messages-cron"


def build_notifier(config: MonitoringConfig, client: httpx.AsyncClient) -> Notifier:
    """Email is the primary alert transport; Telegram mirrors it or stands in when SMTP is absent."""
    smtp = config.smtp.to_smtp_config()
    telegram = config.telegram.to_telegram_config()
    telegram_notifier = TelegramNotifier(client, telegram) if telegram else None

    if smtp is not None:
        mirrors = [telegram_notifier] if telegram_notifier and config.alerting.telegram_mirror else []
        return FanoutNotifier(EmailNotifier(smtp), mirrors)
    if telegram_notifier is not None:
        return telegram_notifier
    return LogOnlyNotifier()


async def _log_skipped(job: Any) -> Dict[str, Any]:
    logger.debug("No handler configured for job type, skipping", job_type=job.type)
    return {"skipped": True}


class TaskCoordinator:
    """Coordinates recurring triggers, queue workers and their handlers."""

    def __init__(
        self,
        config: Optional[MonitoringConfig] = None,
        *,
        client: Optional[httpx.AsyncClient] = None,
        store: Optional[LineStore] = None,
        notifier: Optional[Notifier] = None,
        scheduler: Optional[JobScheduler] = None,
        broker: Optional[JobBroker] = None,
    ):
        self.config = config or get_config()
        self._owns_client = client is None
        self.client = client or httpx.AsyncClient(headers={"User-Agent": "line-monitor"})
        self.store = store or LineStore(self.config)
        self.notifier = notifier or build_notifier(self.config, self.client)
        self.scheduler = scheduler or JobScheduler()
        self.broker = broker or JobBroker(workers_per_queue=self.config.scheduler.workers_per_queue)
        self.runner = HealthCycleRunner(
            self.store,
            self.client,
            self.notifier,
            health_probe_address=self.config.probe.health_probe_address,
            probe_config=self.config.probe.to_probe_config(),
            rearm_after=self.config.alerting.rearm_after,
        )
        self.running = False

        self.broker.register_handler("health-check", self.handle_health_check)
        self.broker.register_handler("bulk-availability-check", self.handle_bulk_availability)
        self.broker.register_handler("process-scheduled-messages", _log_skipped)
        self.broker.register_handler("process-message", _log_skipped)
        self.broker.register_handler("integration-sync", _log_skipped)

    def set_handler(self, job_type: str, handler: Callable[[Any], Awaitable[Any]]):
        """Plug in a handler for message processing or integration sync jobs."""
        self.broker.register_handler(job_type, handler)

    async def start(self):
        """Start queue workers and, when enabled, the recurring triggers."""
        await self.broker.start()
        if self.config.scheduler.enabled:
            await self.scheduler.start()
            self.initialize_recurring()
        self.running = True
        logger.info("Task coordinator started", scheduler_enabled=self.config.scheduler.enabled)

    async def stop(self):
        """Stop triggers and workers and release the HTTP client."""
        await self.scheduler.stop()
        await self.broker.stop()
        if self._owns_client:
            await self.client.aclose()
        self.running = False
        logger.info("Task coordinator stopped")

    def initialize_recurring(self) -> Dict[str, bool]:
        """Register the recurring triggers; repeated calls leave existing ones alone."""
        registered = {
            HEALTH_CHECK_JOB_KEY: self.scheduler.register_recurring(
                HEALTH_CHECK_JOB_KEY,
                self.config.scheduler.health_check_interval_seconds,
                self.enqueue_health_check,
                description="Probe every active line",
            ),
            SCHEDULED_MESSAGES_JOB_KEY: self.scheduler.register_recurring(
                SCHEDULED_MESSAGES_JOB_KEY,
                self.config.scheduler.scheduled_messages_interval_seconds,
                self.enqueue_scheduled_messages,
                description="Process due scheduled messages",
            ),
        }
        logger.info("Recurring jobs initialized", registered=registered)
        return registered

    async def enqueue_health_check(self):
        await self.broker.enqueue(HealthCheckJob(), job_id=HEALTH_CHECK_JOB_KEY)

    async def enqueue_scheduled_messages(self):
        await self.broker.enqueue(ProcessScheduledMessagesJob(), job_id=SCHEDULED_MESSAGES_JOB_KEY)

    async def handle_health_check(self, job: HealthCheckJob) -> Dict[str, Any]:
        summary = await self.runner.run_cycle(workspace_id=job.workspace_id)
        return summary.to_dict()

    async def handle_bulk_availability(self, job: BulkAvailabilityCheckJob) -> Dict[str, Any]:
        result = await run_bulk_availability(
            self.store,
            self.client,
            workspace_id=job.workspace_id,
            contact_ids=list(job.contact_ids),
            config=self.config.probe.to_probe_config(),
            concurrency=self.config.availability.concurrency,
        )
        return result.to_dict()

    def get_status(self) -> Dict[str, Any]:
        return {
            "running": self.running,
            "scheduler": self.scheduler.get_scheduler_status(),
            "recurring_jobs": self.scheduler.list_jobs(),
            "queues": self.broker.stats(),
        }
