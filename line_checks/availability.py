from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING, Any

import httpx
import structlog

from line_checks.errors import ConfigurationError, NoActiveLineError, NoAddressError
from line_checks.models import Contact, Line, utc_now
from line_checks.probe_client import DEFAULT_PROBE_CONFIG, ProbeConfig, check_address_availability

if TYPE_CHECKING:
    from line_registry.store import LineStore


logger = structlog.get_logger(__name__)

CANDIDATE_FIELDS = (
    "phone",
    "email",
    "alt_phone_1",
    "alt_phone_2",
    "alt_phone_3",
    "alt_email_1",
    "alt_email_2",
    "alt_email_3",
)


@dataclass(frozen=True)
class AvailabilityResolution:
    resolved: bool
    available: bool = False
    matched_address: str | None = None
    checked_addresses: list[str] = field(default_factory=list)
    error: Exception | None = None

    @property
    def contact_status(self) -> str:
        if not self.resolved:
            return "error"
        return "available" if self.available else "unavailable"

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "resolved": self.resolved,
            "available": self.available,
            "matched_address": self.matched_address,
            "checked_addresses": list(self.checked_addresses),
        }
        if self.error is not None:
            out["error"] = str(self.error)
        return out


@dataclass(frozen=True)
class BulkAvailabilityResult:
    checked: int
    successful: int
    errors: int
    results: list[dict[str, Any]]

    def to_dict(self) -> dict[str, Any]:
        return {
            "checked": self.checked,
            "successful": self.successful,
            "errors": self.errors,
            "results": list(self.results),
        }


def candidate_addresses(contact: Contact) -> list[str]:
    """Ordered, non-empty addresses: primary phone, primary email, alt phones, alt emails."""
    out: list[str] = []
    for name in CANDIDATE_FIELDS:
        value = (getattr(contact, name, None) or "").strip()
        if value:
            out.append(value)
    if not out:
        raise NoAddressError(contact.id)
    return out


async def resolve_availability(
    client: httpx.AsyncClient,
    contact: Contact,
    line: Line,
    *,
    config: ProbeConfig = DEFAULT_PROBE_CONFIG,
) -> AvailabilityResolution:
    """
    Probe the contact's addresses in order and stop at the first available one.

    Failures on a single address count as "not available there" and the walk goes
    on. Only an empty address list or an error outside the per-address step gives
    ``resolved=False``.
    """
    try:
        candidates = candidate_addresses(contact)
    except NoAddressError as e:
        return AvailabilityResolution(resolved=False, error=e)

    checked: list[str] = []
    try:
        endpoint = (line.server_url or "").strip()
        token = (line.guid or "").strip()
        if not endpoint or not token:
            raise ConfigurationError(f"Line {line.id} has no endpoint or token")

        for address in candidates:
            checked.append(address)
            try:
                outcome = await check_address_availability(client, endpoint, token, address, config=config)
            except Exception as e:
                logger.warning(
                    "Availability check raised",
                    contact_id=contact.id,
                    address=address,
                    error=f"{type(e).__name__}: {e}",
                )
                continue
            if outcome.success and outcome.available is True:
                return AvailabilityResolution(
                    resolved=True,
                    available=True,
                    matched_address=address,
                    checked_addresses=list(checked),
                )
    except Exception as e:
        logger.error("Availability resolution failed", contact_id=contact.id, error=f"{type(e).__name__}: {e}")
        return AvailabilityResolution(resolved=False, checked_addresses=list(checked), error=e)

    return AvailabilityResolution(resolved=True, available=False, checked_addresses=list(checked))


async def resolve_and_record(
    store: LineStore,
    client: httpx.AsyncClient,
    contact: Contact,
    line: Line,
    *,
    config: ProbeConfig = DEFAULT_PROBE_CONFIG,
    now: datetime | None = None,
) -> AvailabilityResolution:
    res = await resolve_availability(client, contact, line, config=config)
    await store.update_contact_availability(contact.id, res.contact_status, checked_at=now or utc_now())
    return res


async def check_contact(
    store: LineStore,
    client: httpx.AsyncClient,
    contact: Contact,
    line: Line,
    *,
    config: ProbeConfig = DEFAULT_PROBE_CONFIG,
) -> AvailabilityResolution:
    """Single-contact check: mark it ``checking``, then resolve and record."""
    await store.mark_contacts_checking([contact.id])
    return await resolve_and_record(store, client, contact, line, config=config)


async def run_bulk_availability(
    store: LineStore,
    client: httpx.AsyncClient,
    *,
    workspace_id: str,
    contact_ids: list[str] | None = None,
    list_id: str | None = None,
    config: ProbeConfig = DEFAULT_PROBE_CONFIG,
    concurrency: int = 5,
) -> BulkAvailabilityResult:
    line = await store.find_first_active_line(workspace_id)
    if line is None:
        raise NoActiveLineError(workspace_id)

    contacts = await store.find_contacts(workspace_id, contact_ids=contact_ids, list_id=list_id)
    if not contacts:
        return BulkAvailabilityResult(checked=0, successful=0, errors=0, results=[])

    await store.mark_contacts_checking([c.id for c in contacts])
    logger.info(
        "Bulk availability check started",
        workspace_id=workspace_id,
        line_id=line.id,
        contacts=len(contacts),
    )

    sem = asyncio.Semaphore(max(1, int(concurrency)))

    async def one(contact: Contact) -> dict[str, Any]:
        async with sem:
            res = await resolve_and_record(store, client, contact, line, config=config)
        entry = {"contact_id": contact.id, "status": res.contact_status}
        entry.update(res.to_dict())
        return entry

    results = await asyncio.gather(*(one(c) for c in contacts))
    errors = sum(1 for r in results if not r["resolved"])
    summary = BulkAvailabilityResult(
        checked=len(results),
        successful=len(results) - errors,
        errors=errors,
        results=list(results),
    )
    logger.info(
        "Bulk availability check finished",
        workspace_id=workspace_id,
        checked=summary.checked,
        successful=summary.successful,
        errors=summary.errors,
    )
    return summary
