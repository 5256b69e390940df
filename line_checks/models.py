from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any


HEALTHY = "healthy"
DOWN = "down"
NEVER_CHECKED = "never-checked"

AVAILABILITY_STATUSES = ("unset", "checking", "available", "unavailable", "error")


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def ts_to_datetime(ts: Any) -> datetime | None:
    if ts is None:
        return None
    try:
        return datetime.fromtimestamp(float(ts), tz=timezone.utc)
    except (TypeError, ValueError, OverflowError):
        return None


def datetime_to_ts(dt: datetime | None) -> float | None:
    if dt is None:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return float(dt.timestamp())


def _iso(dt: datetime | None) -> str | None:
    return dt.isoformat() if dt is not None else None


@dataclass(frozen=True)
class HealthRecord:
    # None before the first completed cycle.
    status: str | None = None
    last_checked_at: datetime | None = None
    consecutive_failures: int = 0
    # Start of the current unbroken healthy streak.
    last_healthy_at: datetime | None = None
    # None means the alarm was never disarmed.
    send_email_on_next_down: bool | None = None
    last_email_sent_at: datetime | None = None

    @property
    def display_status(self) -> str:
        return self.status or NEVER_CHECKED

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.display_status,
            "last_checked_at": _iso(self.last_checked_at),
            "consecutive_failures": self.consecutive_failures,
            "last_healthy_at": _iso(self.last_healthy_at),
            "send_email_on_next_down": self.send_email_on_next_down,
            "last_email_sent_at": _iso(self.last_email_sent_at),
        }


@dataclass(frozen=True)
class Line:
    id: str
    workspace_id: str
    server_url: str | None
    guid: str | None
    phone: str | None = None
    email: str | None = None
    is_active: bool = True
    provisioning_status: str = "active"
    health: HealthRecord = field(default_factory=HealthRecord)
    health_version: int = 0

    @property
    def is_probe_eligible(self) -> bool:
        return (
            bool(self.is_active)
            and self.provisioning_status == "active"
            and bool((self.server_url or "").strip())
            and bool((self.guid or "").strip())
        )

    def to_dict(self) -> dict[str, Any]:
        # guid is a credential and never leaves the service.
        return {
            "id": self.id,
            "workspace_id": self.workspace_id,
            "server_url": self.server_url,
            "phone": self.phone,
            "email": self.email,
            "is_active": self.is_active,
            "provisioning_status": self.provisioning_status,
            "health": self.health.to_dict(),
            "health_version": self.health_version,
        }


@dataclass(frozen=True)
class Contact:
    id: str
    workspace_id: str
    list_id: str | None = None
    first_name: str | None = None
    last_name: str | None = None
    phone: str | None = None
    email: str | None = None
    alt_phone_1: str | None = None
    alt_phone_2: str | None = None
    alt_phone_3: str | None = None
    alt_email_1: str | None = None
    alt_email_2: str | None = None
    alt_email_3: str | None = None
    availability_status: str = "unset"
    availability_checked_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "workspace_id": self.workspace_id,
            "list_id": self.list_id,
            "first_name": self.first_name,
            "last_name": self.last_name,
            "phone": self.phone,
            "email": self.email,
            "alt_phone_1": self.alt_phone_1,
            "alt_phone_2": self.alt_phone_2,
            "alt_phone_3": self.alt_phone_3,
            "alt_email_1": self.alt_email_1,
            "alt_email_2": self.alt_email_2,
            "alt_email_3": self.alt_email_3,
            "availability_status": self.availability_status,
            "availability_checked_at": _iso(self.availability_checked_at),
        }


@dataclass(frozen=True)
class ProbeOutcome:
    success: bool
    error: str | None = None
    error_kind: str | None = None
    available: bool | None = None
    shape: str | None = None
    elapsed_ms: int | None = None

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"success": self.success}
        if self.error is not None:
            out["error"] = self.error
        if self.error_kind is not None:
            out["error_kind"] = self.error_kind
        if self.available is not None:
            out["available"] = self.available
        return out


@dataclass(frozen=True)
class NotificationResult:
    success: bool
    error: str | None = None
