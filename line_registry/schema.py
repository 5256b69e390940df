from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field


class CreateTenantRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=200)


class CreateApiKeyRequest(BaseModel):
    tenant_id: str = Field(..., min_length=1, max_length=80)
    name: str = Field(..., min_length=1, max_length=200)


class CreateLineRequest(BaseModel):
    server_url: str | None = Field(None, max_length=2000)
    guid: str | None = Field(None, max_length=500)
    phone: str | None = Field(None, max_length=64)
    email: str | None = Field(None, max_length=320)
    is_active: bool = True
    provisioning_status: str = Field("active", pattern="^(provisioning|active|failed)$")


class UpdateServerUrlRequest(BaseModel):
    server_url: str = Field(..., min_length=1, max_length=2000)


class CreateContactRequest(BaseModel):
    list_id: str | None = Field(None, max_length=80)
    first_name: str | None = Field(None, max_length=200)
    last_name: str | None = Field(None, max_length=200)
    phone: str | None = Field(None, max_length=64)
    email: str | None = Field(None, max_length=320)
    alt_phone_1: str | None = Field(None, max_length=64)
    alt_phone_2: str | None = Field(None, max_length=64)
    alt_phone_3: str | None = Field(None, max_length=64)
    alt_email_1: str | None = Field(None, max_length=320)
    alt_email_2: str | None = Field(None, max_length=320)
    alt_email_3: str | None = Field(None, max_length=320)


class CheckAvailabilityRequest(BaseModel):
    contact_ids: list[str] | None = Field(None, max_length=5000)
    list_id: str | None = Field(None, max_length=80)
    address: str | None = Field(None, min_length=1, max_length=320)


class EnqueueJobRequest(BaseModel):
    # Validated into a job variant by monitoring.scheduler.parse_job.
    job: dict[str, Any]
