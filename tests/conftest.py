from __future__ import annotations

from pathlib import Path

import pytest

from line_checks.models import NotificationResult
from line_registry import db as dbm
from monitoring.config import MonitoringConfig, ProbeSettings, SchedulerSettings


PROBE_ADDRESS = "+15550000000"


class RecordingNotifier:
    def __init__(self, success: bool = True) -> None:
        self.success = success
        self.calls: list[tuple[str | None, str | None, list[str]]] = []

    async def send_failure_alert(
        self, recipient: str | None, line_phone: str | None, failure_reasons: list[str]
    ) -> NotificationResult:
        self.calls.append((recipient, line_phone, list(failure_reasons)))
        if self.success:
            return NotificationResult(success=True)
        return NotificationResult(success=False, error="smtp unavailable")


@pytest.fixture()
def settings(tmp_path: Path) -> MonitoringConfig:
    cfg = MonitoringConfig(
        db_path=str(tmp_path / "line_monitor.db"),
        admin_token="admin-token",
        monitor_token="monitor-token",
        probe=ProbeSettings(health_probe_address=PROBE_ADDRESS, timeout_seconds=2.0),
        scheduler=SchedulerSettings(enabled=False),
    )
    dbm.ensure_schema(cfg)
    return cfg


@pytest.fixture()
def tenant_id(settings: MonitoringConfig) -> str:
    return dbm.create_tenant(settings, name="Acme")["id"]


@pytest.fixture()
def notifier() -> RecordingNotifier:
    return RecordingNotifier(success=True)


@pytest.fixture()
def failing_notifier() -> RecordingNotifier:
    return RecordingNotifier(success=False)
