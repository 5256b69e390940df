from __future__ import annotations

import asyncio
import secrets
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator

import structlog
from fastapi import Depends, FastAPI, HTTPException
from fastapi.responses import JSONResponse
from pydantic import ValidationError

from line_checks.availability import check_contact, run_bulk_availability
from line_checks.errors import ConfigurationError, NoActiveLineError, NoAddressError, PersistenceError
from line_checks.probe_client import check_address_availability
from line_checks.status import summarize_workspace_health
from line_registry import db as dbm
from line_registry.auth import RequestAuth, hash_token, require_admin, require_monitor, require_tenant_auth
from line_registry.schema import (
    CheckAvailabilityRequest,
    CreateApiKeyRequest,
    CreateContactRequest,
    CreateLineRequest,
    CreateTenantRequest,
    EnqueueJobRequest,
    UpdateServerUrlRequest,
)
from line_registry.store import contact_from_row, line_from_row
from monitoring.config import MonitoringConfig, get_config
from monitoring.scheduler import TaskCoordinator, parse_job
from monitoring.scheduler.jobs import BulkAvailabilityCheckJob


logger = structlog.get_logger(__name__)

_TENANT_SCOPED_JOB_TYPES = {"health-check", "bulk-availability-check", "integration-sync"}


def create_app(settings: MonitoringConfig | None = None, *, coordinator: TaskCoordinator | None = None) -> FastAPI:
    settings = settings or get_config()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        await asyncio.to_thread(dbm.ensure_schema, settings)
        coord = coordinator or TaskCoordinator(settings)
        app.state.coordinator = coord
        await coord.start()
        logger.info("Line monitor API started", db_path=settings.db_path)
        try:
            yield
        finally:
            await coord.stop()
            logger.info("Line monitor API stopped")

    app = FastAPI(title="Line Health Monitor", version="0.1.0", lifespan=lifespan)
    app.state.settings = settings
    app.state.coordinator = coordinator

    def _coordinator() -> TaskCoordinator:
        coord = getattr(app.state, "coordinator", None)
        if coord is None:
            raise HTTPException(status_code=503, detail="coordinator_not_ready")
        return coord

    @app.get("/health")
    async def health() -> dict[str, Any]:
        return {"ok": True, "status": "healthy", "service": "line-monitor"}

    # -----------------
    # Health cycle
    # -----------------
    async def _run_health_check(workspace_id: str | None) -> dict[str, Any]:
        coord = _coordinator()
        try:
            summary = await coord.runner.run_cycle(workspace_id=workspace_id)
        except ConfigurationError as exc:
            logger.error("Health check misconfigured", error=str(exc))
            raise HTTPException(status_code=503, detail="health_check_not_configured") from exc
        except PersistenceError as exc:
            raise HTTPException(status_code=503, detail="store_unavailable") from exc
        return {"ok": True, "summary": summary.to_dict()}

    @app.get("/api/v1/health-check")
    async def api_health_check_get(workspace_id: str | None = None, _auth: None = Depends(require_monitor)) -> dict[str, Any]:
        return await _run_health_check(workspace_id)

    @app.post("/api/v1/health-check")
    async def api_health_check_post(workspace_id: str | None = None, _auth: None = Depends(require_monitor)) -> dict[str, Any]:
        return await _run_health_check(workspace_id)

    @app.get("/api/v1/health-check/status")
    async def api_health_status(auth: RequestAuth = Depends(require_tenant_auth)) -> dict[str, Any]:
        lines = await _coordinator().store.list_lines(auth.tenant_id)
        return {"ok": True, **summarize_workspace_health(lines)}

    # -----------------
    # Availability
    # -----------------
    @app.get("/api/v1/contacts/{contact_id}/availability")
    async def api_contact_availability(contact_id: str, auth: RequestAuth = Depends(require_tenant_auth)) -> dict[str, Any]:
        coord = _coordinator()
        contact = await coord.store.find_contact(auth.tenant_id, contact_id)
        if contact is None:
            raise HTTPException(status_code=404, detail="contact_not_found")
        line = await coord.store.find_first_active_line(auth.tenant_id)
        if line is None:
            raise HTTPException(status_code=400, detail="no_active_line")
        try:
            res = await check_contact(coord.store, coord.client, contact, line, config=settings.probe.to_probe_config())
        except PersistenceError as exc:
            raise HTTPException(status_code=503, detail="store_unavailable") from exc
        if isinstance(res.error, NoAddressError):
            raise HTTPException(status_code=400, detail="no_address")
        return {"ok": True, "contact_id": contact.id, "status": res.contact_status, **res.to_dict()}

    @app.post("/api/v1/contacts/check-availability")
    async def api_check_availability(
        auth: RequestAuth = Depends(require_tenant_auth), req: CheckAvailabilityRequest | None = None
    ) -> Any:
        if req is None:
            raise HTTPException(status_code=400, detail="missing_body")
        coord = _coordinator()
        probe_config = settings.probe.to_probe_config()

        if req.address:
            line = await coord.store.find_first_active_line(auth.tenant_id)
            if line is None:
                raise HTTPException(status_code=400, detail="no_active_line")
            outcome = await check_address_availability(
                coord.client, line.server_url or "", line.guid or "", req.address.strip(), config=probe_config
            )
            if not outcome.success:
                raise HTTPException(status_code=502, detail="availability_probe_failed")
            return {"ok": True, "address": req.address.strip(), "available": bool(outcome.available)}

        if not req.contact_ids and not req.list_id:
            raise HTTPException(status_code=400, detail="missing_contacts")
        contacts = await coord.store.find_contacts(auth.tenant_id, contact_ids=req.contact_ids, list_id=req.list_id)
        if not contacts:
            raise HTTPException(status_code=404, detail="contacts_not_found")

        contact_ids = [c.id for c in contacts]
        if len(contact_ids) > settings.availability.sync_batch_limit:
            job = BulkAvailabilityCheckJob(
                contact_ids=contact_ids,
                workspace_id=auth.tenant_id,
                user_id=auth.api_key_id,
            )
            record = await coord.broker.enqueue(job)
            return JSONResponse(
                status_code=202,
                content={"ok": True, "queued": True, "job_id": record.id, "count": len(contact_ids)},
            )

        try:
            result = await run_bulk_availability(
                coord.store,
                coord.client,
                workspace_id=auth.tenant_id,
                contact_ids=contact_ids,
                config=probe_config,
                concurrency=settings.availability.concurrency,
            )
        except NoActiveLineError as exc:
            raise HTTPException(status_code=400, detail="no_active_line") from exc
        except PersistenceError as exc:
            logger.error("Availability batch could not be stored", workspace_id=auth.tenant_id, error=str(exc))
            raise HTTPException(status_code=503, detail="store_unavailable") from exc
        return {"ok": True, "queued": False, **result.to_dict()}

    # -----------------
    # Queues
    # -----------------
    @app.get("/api/v1/queues/stats")
    async def api_queue_stats(_auth: None = Depends(require_monitor)) -> dict[str, Any]:
        coord = _coordinator()
        return {"ok": True, "queues": coord.broker.stats(), "scheduler": coord.scheduler.get_scheduler_status()}

    @app.post("/api/v1/queues/jobs")
    async def api_enqueue_job(
        auth: RequestAuth = Depends(require_tenant_auth), req: EnqueueJobRequest | None = None
    ) -> JSONResponse:
        if req is None:
            raise HTTPException(status_code=400, detail="missing_body")
        data = dict(req.job)
        if data.get("type") in _TENANT_SCOPED_JOB_TYPES:
            data["workspace_id"] = auth.tenant_id
        try:
            job = parse_job(data)
        except ValidationError as exc:
            raise HTTPException(status_code=422, detail="invalid_job") from exc
        record = await _coordinator().broker.enqueue(job)
        return JSONResponse(status_code=202, content={"ok": True, "job": record.to_dict()})

    @app.get("/api/v1/queues/jobs/{job_id}")
    async def api_get_job(job_id: str, auth: RequestAuth = Depends(require_tenant_auth)) -> dict[str, Any]:
        record = _coordinator().broker.get_job(job_id)
        if record is None or getattr(record.data, "workspace_id", None) != auth.tenant_id:
            raise HTTPException(status_code=404, detail="job_not_found")
        out = record.to_dict()
        if record.state == "completed":
            out["result"] = record.result
        return {"ok": True, "job": out}

    @app.post("/api/v1/queues/initialize")
    async def api_initialize_queues(_auth: None = Depends(require_admin)) -> dict[str, Any]:
        coord = _coordinator()
        if not coord.scheduler.running:
            await coord.scheduler.start()
        registered = coord.initialize_recurring()
        return {"ok": True, "registered": registered, "jobs": coord.scheduler.list_jobs()}

    # -----------------
    # Admin
    # -----------------
    @app.post("/api/v1/admin/tenants")
    async def api_create_tenant(_auth: None = Depends(require_admin), req: CreateTenantRequest | None = None) -> dict[str, Any]:
        if req is None:
            raise HTTPException(status_code=400, detail="missing_body")
        tenant = await asyncio.to_thread(dbm.create_tenant, settings, name=req.name)
        return {"ok": True, "tenant": tenant}

    @app.post("/api/v1/admin/api_keys")
    async def api_create_api_key(_auth: None = Depends(require_admin), req: CreateApiKeyRequest | None = None) -> dict[str, Any]:
        if req is None:
            raise HTTPException(status_code=400, detail="missing_body")
        if not await asyncio.to_thread(dbm.tenant_exists, settings, tenant_id=req.tenant_id):
            raise HTTPException(status_code=404, detail="tenant_not_found")
        token = secrets.token_urlsafe(32)
        rec = await asyncio.to_thread(
            dbm.create_api_key,
            settings,
            tenant_id=req.tenant_id,
            name=req.name,
            token_hash=hash_token(token),
        )
        return {"ok": True, "api_key": rec, "token": token}

    # -----------------
    # Lines / contacts
    # -----------------
    @app.post("/api/v1/lines")
    async def api_create_line(auth: RequestAuth = Depends(require_tenant_auth), req: CreateLineRequest | None = None) -> dict[str, Any]:
        if req is None:
            raise HTTPException(status_code=400, detail="missing_body")
        row = await asyncio.to_thread(
            dbm.insert_line,
            settings,
            tenant_id=auth.tenant_id,
            server_url=(req.server_url or "").strip() or None,
            guid=(req.guid or "").strip() or None,
            phone=req.phone,
            email=req.email,
            is_active=req.is_active,
            provisioning_status=req.provisioning_status,
        )
        return {"ok": True, "line": line_from_row(row).to_dict()}

    @app.get("/api/v1/lines")
    async def api_list_lines(auth: RequestAuth = Depends(require_tenant_auth)) -> dict[str, Any]:
        lines = await _coordinator().store.list_lines(auth.tenant_id)
        return {"ok": True, "lines": [ln.to_dict() for ln in lines]}

    @app.put("/api/v1/lines/{line_id}/server-url")
    async def api_update_server_url(
        line_id: str, auth: RequestAuth = Depends(require_tenant_auth), req: UpdateServerUrlRequest | None = None
    ) -> dict[str, Any]:
        if req is None:
            raise HTTPException(status_code=400, detail="missing_body")
        ok = await asyncio.to_thread(
            dbm.update_line_server_url,
            settings,
            tenant_id=auth.tenant_id,
            line_id=line_id,
            server_url=req.server_url.strip().rstrip("/"),
        )
        if not ok:
            raise HTTPException(status_code=404, detail="line_not_found")
        line = await _coordinator().store.get_line(line_id, auth.tenant_id)
        return {"ok": True, "line": line.to_dict() if line else None}

    @app.post("/api/v1/contacts")
    async def api_create_contact(
        auth: RequestAuth = Depends(require_tenant_auth), req: CreateContactRequest | None = None
    ) -> dict[str, Any]:
        if req is None:
            raise HTTPException(status_code=400, detail="missing_body")
        row = await asyncio.to_thread(dbm.insert_contact, settings, tenant_id=auth.tenant_id, fields=req.model_dump())
        return {"ok": True, "contact": contact_from_row(row).to_dict()}

    @app.get("/api/v1/contacts")
    async def api_list_contacts(list_id: str | None = None, auth: RequestAuth = Depends(require_tenant_auth)) -> dict[str, Any]:
        contacts = await _coordinator().store.find_contacts(auth.tenant_id, list_id=list_id)
        return {"ok": True, "contacts": [c.to_dict() for c in contacts]}

    return app
