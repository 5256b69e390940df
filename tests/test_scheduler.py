from __future__ import annotations

import asyncio

import httpx
import pytest

from line_checks.notifier import EmailNotifier, FanoutNotifier, LogOnlyNotifier, TelegramNotifier
from monitoring.config import MonitoringConfig, SmtpSettings, TelegramSettings
from monitoring.scheduler import JobScheduler, TaskCoordinator
from monitoring.scheduler.task_coordinator import HEALTH_CHECK_JOB_KEY, SCHEDULED_MESSAGES_JOB_KEY, build_notifier

from conftest import RecordingNotifier


async def _noop() -> None:
    return None


def test_register_recurring_is_register_if_absent() -> None:
    scheduler = JobScheduler()
    assert scheduler.register_recurring("health-check-cron", 300, _noop) is True
    assert scheduler.register_recurring("health-check-cron", 60, _noop) is False

    jobs = scheduler.scheduler.get_jobs()
    assert len(jobs) == 1
    status = scheduler.get_job_status("health-check-cron")
    assert status is not None
    assert status["interval_seconds"] == 300
    assert status["next_run"] is None


@pytest.mark.asyncio
async def test_started_scheduler_reports_next_run() -> None:
    scheduler = JobScheduler()
    await scheduler.start()
    try:
        scheduler.register_recurring("tick", 60, _noop, description="tick")
        assert scheduler.register_recurring("tick", 60, _noop) is False
        status = scheduler.get_scheduler_status()
        assert status["running"] is True
        assert status["job_count"] == 1
        assert status["next_run"] is not None
        assert [j["job_id"] for j in scheduler.list_jobs()] == ["tick"]
        assert scheduler.remove_job("tick") is True
        assert scheduler.remove_job("tick") is False
    finally:
        await scheduler.stop()


@pytest.mark.asyncio
async def test_run_job_once_calls_function() -> None:
    calls: list[int] = []

    async def tick(n: int) -> None:
        calls.append(n)

    scheduler = JobScheduler()
    scheduler.register_recurring("tick", 60, tick, args=(7,))
    assert await scheduler.run_job_once("tick") is True
    assert await scheduler.run_job_once("missing") is False
    assert calls == [7]


@pytest.mark.asyncio
async def test_coordinator_initialization_is_idempotent(settings: MonitoringConfig) -> None:
    async with httpx.AsyncClient() as client:
        coordinator = TaskCoordinator(settings, client=client, notifier=RecordingNotifier())
        assert coordinator.initialize_recurring() == {HEALTH_CHECK_JOB_KEY: True, SCHEDULED_MESSAGES_JOB_KEY: True}
        assert coordinator.initialize_recurring() == {HEALTH_CHECK_JOB_KEY: False, SCHEDULED_MESSAGES_JOB_KEY: False}
        intervals = {j["job_id"]: j["interval_seconds"] for j in coordinator.scheduler.list_jobs()}
        assert intervals == {HEALTH_CHECK_JOB_KEY: 300, SCHEDULED_MESSAGES_JOB_KEY: 60}
        await coordinator.stop()


@pytest.mark.asyncio
async def test_recurring_trigger_enqueues_health_check_job(settings: MonitoringConfig, tenant_id: str) -> None:
    async with httpx.AsyncClient(transport=httpx.MockTransport(lambda r: httpx.Response(500))) as client:
        coordinator = TaskCoordinator(settings, client=client, notifier=RecordingNotifier())
        await coordinator.start()
        try:
            await coordinator.enqueue_health_check()
            await coordinator.enqueue_scheduled_messages()
            await asyncio.wait_for(coordinator.broker.join(), timeout=5)
            stats = coordinator.broker.stats()
        finally:
            await coordinator.stop()

    assert stats["health-check"]["completed"] == 1
    assert stats["scheduled-messages"]["completed"] == 1
    record = coordinator.broker.get_job(HEALTH_CHECK_JOB_KEY)
    assert record is not None
    assert record.result["total"] == 0


def test_build_notifier_selection(settings: MonitoringConfig) -> None:
    client = httpx.AsyncClient()
    try:
        assert isinstance(build_notifier(settings, client), LogOnlyNotifier)

        tg = settings.model_copy(update={"telegram": TelegramSettings(bot_token="t", chat_id="1")})
        assert isinstance(build_notifier(tg, client), TelegramNotifier)

        both = tg.model_copy(update={"smtp": SmtpSettings(host="smtp.example.com")})
        notifier = build_notifier(both, client)
        assert isinstance(notifier, FanoutNotifier)
        assert isinstance(notifier.primary, EmailNotifier)
        assert len(notifier.mirrors) == 1
    finally:
        asyncio.run(client.aclose())
