from __future__ import annotations

import asyncio
import sqlite3
from datetime import datetime
from typing import Any, Callable, TypeVar

import structlog

from line_checks.errors import PersistenceError
from line_checks.models import Contact, HealthRecord, Line, datetime_to_ts, ts_to_datetime
from line_registry import db as dbm
from monitoring.config import MonitoringConfig


logger = structlog.get_logger(__name__)

T = TypeVar("T")


def _opt_bool(v: Any) -> bool | None:
    if v is None:
        return None
    return bool(int(v))


def line_from_row(row: dict[str, Any]) -> Line:
    health = HealthRecord(
        status=row.get("health_status") or None,
        last_checked_at=ts_to_datetime(row.get("health_last_checked_ts")),
        consecutive_failures=int(row.get("health_consecutive_failures") or 0),
        last_healthy_at=ts_to_datetime(row.get("health_last_healthy_ts")),
        send_email_on_next_down=_opt_bool(row.get("health_send_email_on_next_down")),
        last_email_sent_at=ts_to_datetime(row.get("health_last_email_sent_ts")),
    )
    return Line(
        id=str(row["id"]),
        workspace_id=str(row["tenant_id"]),
        server_url=row.get("server_url"),
        guid=row.get("guid"),
        phone=row.get("phone"),
        email=row.get("email"),
        is_active=bool(int(row.get("is_active") or 0)),
        provisioning_status=str(row.get("provisioning_status") or "provisioning"),
        health=health,
        health_version=int(row.get("health_version") or 0),
    )


def health_to_columns(record: HealthRecord) -> dict[str, Any]:
    flag = record.send_email_on_next_down
    return {
        "health_status": record.status,
        "health_last_checked_ts": datetime_to_ts(record.last_checked_at),
        "health_consecutive_failures": int(record.consecutive_failures or 0),
        "health_last_healthy_ts": datetime_to_ts(record.last_healthy_at),
        "health_send_email_on_next_down": None if flag is None else (1 if flag else 0),
        "health_last_email_sent_ts": datetime_to_ts(record.last_email_sent_at),
    }


def contact_from_row(row: dict[str, Any]) -> Contact:
    kwargs = {k: row.get(k) for k in dbm.CONTACT_FIELDS}
    return Contact(
        id=str(row["id"]),
        workspace_id=str(row["tenant_id"]),
        availability_status=str(row.get("availability_status") or "unset"),
        availability_checked_at=ts_to_datetime(row.get("availability_checked_ts")),
        **kwargs,
    )


class LineStore:
    """Async facade over the SQLite functions; every call runs in a worker thread."""

    def __init__(self, settings: MonitoringConfig) -> None:
        self.settings = settings

    async def _call(self, fn: Callable[..., T], **kwargs: Any) -> T:
        try:
            return await asyncio.to_thread(fn, self.settings, **kwargs)
        except (sqlite3.Error, OSError, ValueError) as e:
            logger.error("Store call failed", op=fn.__name__, error=f"{type(e).__name__}: {e}")
            raise PersistenceError(f"{fn.__name__} failed: {e}") from e

    async def find_active_lines(self, workspace_id: str | None = None) -> list[Line]:
        rows = await self._call(dbm.list_lines, tenant_id=workspace_id, active_only=True)
        return [line_from_row(r) for r in rows]

    async def list_lines(self, workspace_id: str) -> list[Line]:
        rows = await self._call(dbm.list_lines, tenant_id=workspace_id)
        return [line_from_row(r) for r in rows]

    async def get_line(self, line_id: str, workspace_id: str | None = None) -> Line | None:
        row = await self._call(dbm.get_line, line_id=line_id, tenant_id=workspace_id)
        return line_from_row(row) if row else None

    async def find_first_active_line(self, workspace_id: str) -> Line | None:
        row = await self._call(dbm.first_active_line, tenant_id=workspace_id)
        return line_from_row(row) if row else None

    async def update_health_record(self, line_id: str, record: HealthRecord, *, expected_version: int) -> bool:
        return await self._call(
            dbm.update_line_health,
            line_id=line_id,
            expected_version=expected_version,
            health=health_to_columns(record),
        )

    async def mark_alert_sent(self, line_id: str, at: datetime) -> None:
        await self._call(dbm.mark_alert_sent, line_id=line_id, sent_at_ts=datetime_to_ts(at))

    async def find_contact(self, workspace_id: str, contact_id: str) -> Contact | None:
        row = await self._call(dbm.get_contact, tenant_id=workspace_id, contact_id=contact_id)
        return contact_from_row(row) if row else None

    async def find_contacts(
        self,
        workspace_id: str,
        *,
        contact_ids: list[str] | None = None,
        list_id: str | None = None,
    ) -> list[Contact]:
        rows = await self._call(dbm.list_contacts, tenant_id=workspace_id, contact_ids=contact_ids, list_id=list_id)
        return [contact_from_row(r) for r in rows]

    async def update_contact_availability(self, contact_id: str, status: str, *, checked_at: datetime | None) -> None:
        await self._call(
            dbm.update_contact_availability,
            contact_id=contact_id,
            status=status,
            checked_at_ts=datetime_to_ts(checked_at),
        )

    async def mark_contacts_checking(self, contact_ids: list[str]) -> int:
        return await self._call(dbm.mark_contacts_checking, contact_ids=list(contact_ids))
