from __future__ import annotations

import hashlib
import hmac
from dataclasses import dataclass
from typing import Any

from fastapi import Depends, HTTPException, Request

from line_registry.db import get_api_key_by_hash, tenant_exists
from monitoring.config import MonitoringConfig

WORKSPACE_HEADER = "x-workspace-id"

CALLER_API_KEY = "api_key"
CALLER_SERVICE = "service"


def hash_token(token: str) -> str:
    s = (token or "").strip()
    return hashlib.sha256(s.encode("utf-8")).hexdigest() if s else ""


def _bearer(req: Request) -> str:
    scheme, _, rest = (req.headers.get("authorization") or "").strip().partition(" ")
    if scheme.lower() != "bearer":
        return ""
    return rest.strip()


def _token_matches(provided: str, expected: str | None) -> bool:
    if not expected or not expected.strip():
        return False
    return hmac.compare_digest(provided.strip(), expected.strip())


def _is_service_token(token: str, settings: MonitoringConfig) -> bool:
    return _token_matches(token, settings.admin_token) or _token_matches(token, settings.monitor_token)


@dataclass(frozen=True)
class RequestAuth:
    """Workspace a request acts on, and who is acting."""

    tenant_id: str
    api_key_id: str | None = None
    caller: str = CALLER_API_KEY


def get_settings(req: Request) -> MonitoringConfig:
    settings: Any = getattr(req.app.state, "settings", None)
    if not isinstance(settings, MonitoringConfig):
        raise RuntimeError("Line monitor settings not configured")
    return settings


def require_tenant_auth(req: Request, settings: MonitoringConfig = Depends(get_settings)) -> RequestAuth:
    """
    Resolve the workspace for a tenant-scoped route.

    A tenant API key acts on its own workspace. The admin or monitor token acts
    on the workspace named in ``X-Workspace-Id``, which is how schedulers and
    other background callers reach per-workspace routes.
    """
    token = _bearer(req)
    if not token:
        raise HTTPException(status_code=401, detail="missing_bearer_token")

    workspace_id = (req.headers.get(WORKSPACE_HEADER) or "").strip()
    if workspace_id and _is_service_token(token, settings):
        if not tenant_exists(settings, tenant_id=workspace_id):
            raise HTTPException(status_code=404, detail="workspace_not_found")
        return RequestAuth(tenant_id=workspace_id, caller=CALLER_SERVICE)

    authed = get_api_key_by_hash(settings, token_hash=hash_token(token))
    if authed is None:
        raise HTTPException(status_code=403, detail="invalid_token")
    return RequestAuth(tenant_id=authed.tenant_id, api_key_id=authed.api_key_id)


def require_admin(req: Request, settings: MonitoringConfig = Depends(get_settings)) -> None:
    token = _bearer(req)
    if not token:
        raise HTTPException(status_code=401, detail="missing_bearer_token")
    if not settings.admin_token:
        raise HTTPException(status_code=503, detail="admin_token_not_configured")
    if not _token_matches(token, settings.admin_token):
        raise HTTPException(status_code=403, detail="invalid_admin_token")


def require_monitor(req: Request, settings: MonitoringConfig = Depends(get_settings)) -> None:
    """Admin or monitor token."""
    token = _bearer(req)
    if not token:
        raise HTTPException(status_code=401, detail="missing_bearer_token")
    if not (settings.admin_token or settings.monitor_token):
        raise HTTPException(status_code=503, detail="monitor_token_not_configured")
    if not _is_service_token(token, settings):
        raise HTTPException(status_code=403, detail="invalid_monitor_token")
