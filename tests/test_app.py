from __future__ import annotations

import time
from typing import Iterator

import httpx
import pytest
from fastapi.testclient import TestClient

from line_checks.errors import PersistenceError
from line_registry.app import create_app
from monitoring.config import AvailabilitySettings, MonitoringConfig
from monitoring.scheduler import TaskCoordinator

from conftest import PROBE_ADDRESS, RecordingNotifier


PONG = {"status": 200, "message": "Ping received!", "data": "pong"}
AVAILABLE = {PROBE_ADDRESS, "+15557770001", "reachable@example.com"}


def _upstream(request: httpx.Request) -> httpx.Response:
    if request.url.path == "/api/v1/ping":
        return httpx.Response(200, json=PONG)
    if request.url.path == "/api/v1/handle/availability/imessage":
        available = request.url.params.get("address") in AVAILABLE
        return httpx.Response(200, json={"status": 200, "message": "Success", "data": {"available": available}})
    return httpx.Response(404)


def _auth(token: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {token}"}


class Api:
    def __init__(self, client: TestClient, settings: MonitoringConfig, tenant_token: str, tenant_id: str) -> None:
        self.client = client
        self.settings = settings
        self.tenant_token = tenant_token
        self.tenant_id = tenant_id

    @property
    def admin(self) -> dict[str, str]:
        return _auth(self.settings.admin_token or "")

    @property
    def monitor(self) -> dict[str, str]:
        return _auth(self.settings.monitor_token or "")

    @property
    def tenant(self) -> dict[str, str]:
        return _auth(self.tenant_token)

    def new_tenant(self, name: str) -> tuple[str, str]:
        r = self.client.post("/api/v1/admin/tenants", headers=self.admin, json={"name": name})
        assert r.status_code == 200
        tenant_id = r.json()["tenant"]["id"]
        r = self.client.post(
            "/api/v1/admin/api_keys", headers=self.admin, json={"tenant_id": tenant_id, "name": f"{name}-key"}
        )
        assert r.status_code == 200
        return tenant_id, r.json()["token"]

    def add_line(self, host: str = "line-a.test") -> dict:
        r = self.client.post(
            "/api/v1/lines",
            headers=self.tenant,
            json={"server_url": f"http://{host}", "guid": f"guid-{host}", "phone": "+15551230000", "email": "ops@example.com"},
        )
        assert r.status_code == 200
        return r.json()["line"]

    def add_contact(self, **fields: str) -> str:
        r = self.client.post("/api/v1/contacts", headers=self.tenant, json=fields)
        assert r.status_code == 200
        return r.json()["contact"]["id"]

    def wait_for_job(self, job_id: str, timeout: float = 5.0) -> dict:
        deadline = time.monotonic() + timeout
        while True:
            r = self.client.get(f"/api/v1/queues/jobs/{job_id}", headers=self.tenant)
            assert r.status_code == 200
            job = r.json()["job"]
            if job["state"] in ("completed", "failed") or time.monotonic() > deadline:
                return job
            time.sleep(0.02)


@pytest.fixture()
def api(settings: MonitoringConfig) -> Iterator[Api]:
    cfg = settings.model_copy(update={"availability": AvailabilitySettings(sync_batch_limit=2)})
    coordinator = TaskCoordinator(
        cfg,
        client=httpx.AsyncClient(transport=httpx.MockTransport(_upstream)),
        notifier=RecordingNotifier(),
    )
    with TestClient(create_app(cfg, coordinator=coordinator)) as client:
        bootstrap = Api(client, cfg, tenant_token="", tenant_id="")
        tenant_id, token = bootstrap.new_tenant("acme")
        bootstrap.tenant_id = tenant_id
        bootstrap.tenant_token = token
        yield bootstrap


def test_service_health_is_public(api: Api) -> None:
    r = api.client.get("/health")
    assert r.status_code == 200
    assert r.json()["ok"] is True


def test_auth_errors(api: Api) -> None:
    assert api.client.get("/api/v1/lines").status_code == 401
    assert api.client.get("/api/v1/lines").json()["detail"] == "missing_bearer_token"

    r = api.client.get("/api/v1/lines", headers=_auth("not-a-key"))
    assert r.status_code == 403
    assert r.json()["detail"] == "invalid_token"

    r = api.client.get("/api/v1/health-check", headers=api.tenant)
    assert r.status_code == 403
    assert r.json()["detail"] == "invalid_monitor_token"

    r = api.client.post("/api/v1/admin/tenants", headers=api.monitor, json={"name": "x"})
    assert r.status_code == 403
    assert r.json()["detail"] == "invalid_admin_token"


def test_api_key_for_unknown_tenant(api: Api) -> None:
    r = api.client.post("/api/v1/admin/api_keys", headers=api.admin, json={"tenant_id": "nope", "name": "k"})
    assert r.status_code == 404
    assert r.json()["detail"] == "tenant_not_found"


def test_health_check_then_status(api: Api) -> None:
    line = api.add_line()
    assert "guid" not in line
    assert line["health"]["status"] == "never-checked"

    r = api.client.get("/api/v1/health-check/status", headers=api.tenant)
    assert r.status_code == 200
    body = r.json()
    assert body["status"] == "unknown"
    assert body["has_lines"] is True
    assert body["can_check_health"] is True
    assert body["never_checked"] == 1

    r = api.client.post("/api/v1/health-check", headers=api.monitor, params={"workspace_id": api.tenant_id})
    assert r.status_code == 200
    summary = r.json()["summary"]
    assert summary["total"] == 1
    assert summary["healthy"] == 1
    assert summary["results"][0]["line_id"] == line["id"]

    body = api.client.get("/api/v1/health-check/status", headers=api.tenant).json()
    assert body["status"] == "healthy"
    assert body["healthy"] == 1

    lines = api.client.get("/api/v1/lines", headers=api.tenant).json()["lines"]
    assert lines[0]["health"]["status"] == "healthy"
    assert lines[0]["health_version"] == 1


def test_status_for_workspace_without_lines(api: Api) -> None:
    body = api.client.get("/api/v1/health-check/status", headers=api.tenant).json()
    assert body["status"] == "unknown"
    assert body["has_lines"] is False
    assert body["can_check_health"] is False


def test_update_server_url(api: Api) -> None:
    line = api.add_line()
    r = api.client.put(
        f"/api/v1/lines/{line['id']}/server-url", headers=api.tenant, json={"server_url": "http://line-b.test/"}
    )
    assert r.status_code == 200
    assert r.json()["line"]["server_url"] == "http://line-b.test"

    r = api.client.put("/api/v1/lines/missing/server-url", headers=api.tenant, json={"server_url": "http://x.test"})
    assert r.status_code == 404
    assert r.json()["detail"] == "line_not_found"


def test_lines_are_tenant_scoped(api: Api) -> None:
    line = api.add_line()
    _, other_token = api.new_tenant("other")
    assert api.client.get("/api/v1/lines", headers=_auth(other_token)).json()["lines"] == []
    r = api.client.put(
        f"/api/v1/lines/{line['id']}/server-url", headers=_auth(other_token), json={"server_url": "http://evil.test"}
    )
    assert r.status_code == 404


def test_single_contact_availability(api: Api) -> None:
    contact_id = api.add_contact(phone="+15550000001", email="reachable@example.com")
    r = api.client.get(f"/api/v1/contacts/{contact_id}/availability", headers=api.tenant)
    assert r.status_code == 400
    assert r.json()["detail"] == "no_active_line"

    api.add_line()
    r = api.client.get(f"/api/v1/contacts/{contact_id}/availability", headers=api.tenant)
    assert r.status_code == 200
    body = r.json()
    assert body["status"] == "available"
    assert body["matched_address"] == "reachable@example.com"
    assert body["checked_addresses"] == ["+15550000001", "reachable@example.com"]

    contacts = api.client.get("/api/v1/contacts", headers=api.tenant).json()["contacts"]
    assert contacts[0]["availability_status"] == "available"
    assert contacts[0]["availability_checked_at"] is not None


def test_single_contact_availability_errors(api: Api) -> None:
    api.add_line()
    r = api.client.get("/api/v1/contacts/missing/availability", headers=api.tenant)
    assert r.status_code == 404
    assert r.json()["detail"] == "contact_not_found"

    contact_id = api.add_contact(first_name="Nobody")
    r = api.client.get(f"/api/v1/contacts/{contact_id}/availability", headers=api.tenant)
    assert r.status_code == 400
    assert r.json()["detail"] == "no_address"


def test_quick_address_check(api: Api) -> None:
    api.add_line()
    r = api.client.post("/api/v1/contacts/check-availability", headers=api.tenant, json={"address": "+15557770001"})
    assert r.status_code == 200
    assert r.json() == {"ok": True, "address": "+15557770001", "available": True}

    r = api.client.post("/api/v1/contacts/check-availability", headers=api.tenant, json={"address": "+15559999999"})
    assert r.json()["available"] is False


def test_check_availability_validation(api: Api) -> None:
    api.add_line()
    r = api.client.post("/api/v1/contacts/check-availability", headers=api.tenant, json={})
    assert r.status_code == 400
    assert r.json()["detail"] == "missing_contacts"

    r = api.client.post("/api/v1/contacts/check-availability", headers=api.tenant, json={"contact_ids": ["nope"]})
    assert r.status_code == 404
    assert r.json()["detail"] == "contacts_not_found"


def test_small_batch_runs_inline(api: Api) -> None:
    api.add_line()
    a = api.add_contact(phone="+15557770001")
    b = api.add_contact(phone="+15550000002", email="nobody@example.com")

    r = api.client.post("/api/v1/contacts/check-availability", headers=api.tenant, json={"contact_ids": [a, b]})
    assert r.status_code == 200
    body = r.json()
    assert body["queued"] is False
    assert body["checked"] == 2
    assert body["successful"] == 2
    statuses = {res["contact_id"]: res["status"] for res in body["results"]}
    assert statuses == {a: "available", b: "unavailable"}


def test_large_batch_is_queued(api: Api) -> None:
    api.add_line()
    ids = [
        api.add_contact(list_id="list-1", phone="+15557770001"),
        api.add_contact(list_id="list-1", email="nobody@example.com"),
        api.add_contact(list_id="list-1", first_name="No address"),
    ]

    r = api.client.post("/api/v1/contacts/check-availability", headers=api.tenant, json={"list_id": "list-1"})
    assert r.status_code == 202
    body = r.json()
    assert body["queued"] is True
    assert body["count"] == 3

    job = api.wait_for_job(body["job_id"])
    assert job["state"] == "completed"
    assert job["data"]["workspace_id"] == api.tenant_id
    assert sorted(job["data"]["contact_ids"]) == sorted(ids)
    assert job["result"]["checked"] == 3
    assert job["result"]["errors"] == 1

    contacts = api.client.get("/api/v1/contacts", headers=api.tenant, params={"list_id": "list-1"}).json()["contacts"]
    statuses = sorted(c["availability_status"] for c in contacts)
    assert statuses == ["available", "error", "unavailable"]


def test_jobs_are_hidden_from_other_tenants(api: Api) -> None:
    r = api.client.post("/api/v1/queues/jobs", headers=api.tenant, json={"job": {"type": "health-check"}})
    assert r.status_code == 202
    job_id = r.json()["job"]["id"]

    _, other_token = api.new_tenant("other")
    r = api.client.get(f"/api/v1/queues/jobs/{job_id}", headers=_auth(other_token))
    assert r.status_code == 404
    assert r.json()["detail"] == "job_not_found"


def test_enqueue_job(api: Api) -> None:
    r = api.client.post(
        "/api/v1/queues/jobs",
        headers=api.tenant,
        json={"job": {"type": "health-check", "workspace_id": "someone-else"}},
    )
    assert r.status_code == 202
    job = r.json()["job"]
    assert job["queue"] == "health-check"
    assert job["data"]["workspace_id"] == api.tenant_id

    done = api.wait_for_job(job["id"])
    assert done["state"] == "completed"
    assert done["result"]["total"] == 0

    r = api.client.post("/api/v1/queues/jobs", headers=api.tenant, json={"job": {"type": "reticulate-splines"}})
    assert r.status_code == 422
    assert r.json()["detail"] == "invalid_job"

    r = api.client.post(
        "/api/v1/queues/jobs", headers=api.tenant, json={"job": {"type": "bulk-availability-check", "contact_ids": []}}
    )
    assert r.status_code == 422


def test_queue_stats(api: Api) -> None:
    r = api.client.get("/api/v1/queues/stats", headers=api.monitor)
    assert r.status_code == 200
    queues = r.json()["queues"]
    assert set(queues) == {
        "scheduled-messages",
        "health-check",
        "bulk-availability",
        "integration-sync",
        "message-processing",
    }
    assert queues["health-check"] == {"waiting": 0, "active": 0, "completed": 0, "failed": 0, "delayed": 0}


def test_initialize_queues_is_idempotent(api: Api) -> None:
    r = api.client.post("/api/v1/queues/initialize", headers=api.admin)
    assert r.status_code == 200
    body = r.json()
    assert body["registered"] == {"health-check-cron": True, "scheduled-messages-cron": True}
    intervals = {j["job_id"]: j["interval_seconds"] for j in body["jobs"]}
    assert intervals == {"health-check-cron": 300, "scheduled-messages-cron": 60}

    r = api.client.post("/api/v1/queues/initialize", headers=api.admin)
    assert r.json()["registered"] == {"health-check-cron": False, "scheduled-messages-cron": False}

    status = api.client.get("/api/v1/queues/stats", headers=api.monitor).json()["scheduler"]
    assert status["running"] is True
    assert status["job_count"] == 2


def test_inline_batch_reports_store_failure(api: Api, monkeypatch: pytest.MonkeyPatch) -> None:
    api.add_line()
    contact_id = api.add_contact(phone="+15557770001")

    async def broken(contact_ids: list[str]) -> int:
        raise PersistenceError("database is locked")

    store = api.client.app.state.coordinator.store
    monkeypatch.setattr(store, "mark_contacts_checking", broken)

    r = api.client.post("/api/v1/contacts/check-availability", headers=api.tenant, json={"contact_ids": [contact_id]})
    assert r.status_code == 503
    assert r.json()["detail"] == "store_unavailable"

    r = api.client.get(f"/api/v1/contacts/{contact_id}/availability", headers=api.tenant)
    assert r.status_code == 503
    assert r.json()["detail"] == "store_unavailable"


def test_service_token_acts_on_named_workspace(api: Api) -> None:
    api.add_line()
    other_id, other_token = api.new_tenant("other")

    r = api.client.get("/api/v1/lines", headers={**api.monitor, "X-Workspace-Id": api.tenant_id})
    assert r.status_code == 200
    assert len(r.json()["lines"]) == 1

    r = api.client.get("/api/v1/lines", headers={**api.admin, "X-Workspace-Id": other_id})
    assert r.status_code == 200
    assert r.json()["lines"] == []

    r = api.client.get("/api/v1/lines", headers={**api.monitor, "X-Workspace-Id": "missing"})
    assert r.status_code == 404
    assert r.json()["detail"] == "workspace_not_found"

    # Without the header the service token is not a tenant key.
    r = api.client.get("/api/v1/lines", headers=api.monitor)
    assert r.status_code == 403
    assert r.json()["detail"] == "invalid_token"

    # A tenant key cannot borrow another workspace.
    r = api.client.get("/api/v1/lines", headers={**_auth(other_token), "X-Workspace-Id": api.tenant_id})
    assert r.json()["lines"] == []
