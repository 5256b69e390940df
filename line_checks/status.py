from __future__ import annotations

from typing import Any

from line_checks.models import DOWN, HEALTHY, Line


def overall_status(lines: list[Line]) -> str:
    statuses = [ln.health.status for ln in lines]
    if DOWN in statuses:
        return DOWN
    if HEALTHY in statuses:
        return HEALTHY
    return "unknown"


def summarize_workspace_health(lines: list[Line]) -> dict[str, Any]:
    """Aggregate stored health for one workspace without probing anything."""
    active = [ln for ln in lines if ln.is_active]
    healthy = sum(1 for ln in active if ln.health.status == HEALTHY)
    down = sum(1 for ln in active if ln.health.status == DOWN)
    entries = []
    for ln in active:
        h = ln.health
        entries.append(
            {
                "line_id": ln.id,
                "phone": ln.phone,
                "status": h.display_status,
                "last_checked_at": h.last_checked_at.isoformat() if h.last_checked_at else None,
                "last_healthy_at": h.last_healthy_at.isoformat() if h.last_healthy_at else None,
                "consecutive_failures": h.consecutive_failures,
                "can_check_health": ln.is_probe_eligible,
            }
        )
    return {
        "status": overall_status(active),
        "has_lines": bool(active),
        "can_check_health": any(ln.is_probe_eligible for ln in active),
        "total": len(active),
        "healthy": healthy,
        "down": down,
        "never_checked": len(active) - healthy - down,
        "lines": entries,
    }
