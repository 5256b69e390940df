from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime, timedelta

from line_checks.models import DOWN, HEALTHY, HealthRecord


REARM_AFTER = timedelta(days=2)


@dataclass(frozen=True)
class HealthTransition:
    record: HealthRecord
    should_notify: bool
    rearmed: bool


def is_armed(record: HealthRecord) -> bool:
    return record.send_email_on_next_down is not False


def next_health_record(
    previous: HealthRecord,
    *,
    ping_ok: bool,
    availability_ok: bool,
    now: datetime,
    rearm_after: timedelta = REARM_AFTER,
) -> HealthTransition:
    """
    Compute the next health record for one line from the previous one and this cycle's probes.

    - A line is healthy only when both probes succeed.
    - ``last_healthy_at`` marks the start of the healthy streak and is cleared on down.
    - A healthy streak that started at least ``rearm_after`` ago re-arms the alert.
    - The alert fires once per incident: on a healthy/unset -> down edge while armed.
      The same transition disarms it, before any delivery is attempted.
    """
    healthy = bool(ping_ok) and bool(availability_ok)
    status = HEALTHY if healthy else DOWN

    if healthy:
        consecutive_failures = 0
        last_healthy_at = previous.last_healthy_at or now
    else:
        consecutive_failures = max(0, int(previous.consecutive_failures or 0)) + 1
        last_healthy_at = None

    send_flag = previous.send_email_on_next_down
    rearmed = False
    streak_start = previous.last_healthy_at
    if healthy and streak_start is not None and streak_start <= now - rearm_after:
        rearmed = send_flag is False
        send_flag = True

    should_notify = status == DOWN and previous.status in (HEALTHY, None) and is_armed(previous)
    if should_notify:
        send_flag = False

    record = replace(
        previous,
        status=status,
        last_checked_at=now,
        consecutive_failures=consecutive_failures,
        last_healthy_at=last_healthy_at,
        send_email_on_next_down=send_flag,
    )
    return HealthTransition(record=record, should_notify=should_notify, rearmed=rearmed)


def failure_reasons(*, ping_ok: bool, availability_ok: bool) -> list[str]:
    reasons: list[str] = []
    if not ping_ok:
        reasons.append("Server health check failed")
    if not availability_ok:
        reasons.append("Availability check failed")
    return reasons
