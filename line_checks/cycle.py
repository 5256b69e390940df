from __future__ import annotations

import asyncio
import weakref
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any

import httpx
import structlog

from line_checks.errors import ConfigurationError, PersistenceError
from line_checks.health_state import REARM_AFTER, failure_reasons, next_health_record
from line_checks.models import DOWN, HEALTHY, Line, ProbeOutcome, utc_now
from line_checks.notifier import Notifier
from line_checks.probe_client import DEFAULT_PROBE_CONFIG, ProbeConfig, check_address_availability, ping_health
from line_checks.throttler import NotificationThrottler

if TYPE_CHECKING:
    from line_registry.store import LineStore


logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class LineCheckResult:
    line_id: str
    phone: str | None
    email: str | None
    status: str
    ping: ProbeOutcome | None = None
    availability: ProbeOutcome | None = None
    failure_reasons: list[str] = field(default_factory=list)
    consecutive_failures: int | None = None
    notified: bool = False
    rearmed: bool = False
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "line_id": self.line_id,
            "phone": self.phone,
            "email": self.email,
            "status": self.status,
            "ping": self.ping.to_dict() if self.ping else None,
            "availability": self.availability.to_dict() if self.availability else None,
            "failure_reasons": list(self.failure_reasons),
            "consecutive_failures": self.consecutive_failures,
            "notified": self.notified,
            "rearmed": self.rearmed,
            "error": self.error,
        }


@dataclass(frozen=True)
class CycleSummary:
    checked_at: datetime
    total: int
    healthy: int
    down: int
    results: list[LineCheckResult]

    def to_dict(self) -> dict[str, Any]:
        return {
            "checked_at": self.checked_at.isoformat(),
            "total": self.total,
            "healthy": self.healthy,
            "down": self.down,
            "results": [r.to_dict() for r in self.results],
        }


class HealthCycleRunner:
    """Probe every eligible line once, persist the new health records, and send alerts."""

    def __init__(
        self,
        store: LineStore,
        client: httpx.AsyncClient,
        notifier: Notifier,
        *,
        health_probe_address: str | None,
        probe_config: ProbeConfig = DEFAULT_PROBE_CONFIG,
        rearm_after: timedelta = REARM_AFTER,
    ) -> None:
        self.store = store
        self.client = client
        self.throttler = NotificationThrottler(store, notifier)
        self.health_probe_address = (health_probe_address or "").strip()
        self.probe_config = probe_config
        self.rearm_after = rearm_after
        # A line's lock lives while a check holds or waits on it.
        self._locks: weakref.WeakValueDictionary[str, asyncio.Lock] = weakref.WeakValueDictionary()

    def _lock_for(self, line_id: str) -> asyncio.Lock:
        lock = self._locks.get(line_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[line_id] = lock
        return lock

    async def run_cycle(self, workspace_id: str | None = None, now: datetime | None = None) -> CycleSummary:
        if not self.health_probe_address:
            raise ConfigurationError("probe.health_probe_address is not configured")

        checked_at = now or utc_now()
        lines = await self.store.find_active_lines(workspace_id)
        eligible = [ln for ln in lines if ln.is_probe_eligible]
        logger.info("Health cycle started", workspace_id=workspace_id, lines=len(eligible))

        results: list[LineCheckResult] = []
        for line in eligible:
            results.append(await self.check_line(line, now=now))

        healthy = sum(1 for r in results if r.status == HEALTHY)
        summary = CycleSummary(
            checked_at=checked_at,
            total=len(results),
            healthy=healthy,
            down=len(results) - healthy,
            results=results,
        )
        logger.info(
            "Health cycle finished",
            workspace_id=workspace_id,
            total=summary.total,
            healthy=summary.healthy,
            down=summary.down,
            notified=sum(1 for r in results if r.notified),
        )
        return summary

    async def check_line(self, line: Line, *, now: datetime | None = None) -> LineCheckResult:
        async with self._lock_for(line.id):
            try:
                return await self._check_line_locked(line, now=now or utc_now())
            except Exception as e:
                logger.error("Health check error", line_id=line.id, error=f"{type(e).__name__}: {e}")
                return LineCheckResult(
                    line_id=line.id,
                    phone=line.phone,
                    email=line.email,
                    status=DOWN,
                    failure_reasons=[f"Health check error: {e}"],
                    error=f"Health check error: {e}",
                )

    async def _check_line_locked(self, line: Line, *, now: datetime) -> LineCheckResult:
        current = await self.store.get_line(line.id) or line
        endpoint = (current.server_url or "").strip()
        token = (current.guid or "").strip()

        ping = await ping_health(self.client, endpoint, token, config=self.probe_config)
        availability = await check_address_availability(
            self.client, endpoint, token, self.health_probe_address, config=self.probe_config
        )
        ping_ok = ping.success
        availability_ok = availability.success and availability.available is True

        transition = next_health_record(
            current.health,
            ping_ok=ping_ok,
            availability_ok=availability_ok,
            now=now,
            rearm_after=self.rearm_after,
        )
        written = await self.store.update_health_record(
            current.id, transition.record, expected_version=current.health_version
        )
        if not written:
            raise PersistenceError(f"health record for line {current.id} changed during the check")

        reasons = failure_reasons(ping_ok=ping_ok, availability_ok=availability_ok)
        if transition.rearmed:
            logger.info("Line alert re-armed", line_id=current.id)

        notified = False
        if transition.should_notify:
            sent = await self.throttler.dispatch(current, reasons, now=now)
            notified = sent.success

        return LineCheckResult(
            line_id=current.id,
            phone=current.phone,
            email=current.email,
            status=transition.record.status or DOWN,
            ping=ping,
            availability=availability,
            failure_reasons=reasons,
            consecutive_failures=transition.record.consecutive_failures,
            notified=notified,
            rearmed=transition.rearmed,
        )
