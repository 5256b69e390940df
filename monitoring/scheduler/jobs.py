"""Job data carried by the queues, tagged by ``type``."""

from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field, TypeAdapter


class ProcessScheduledMessagesJob(BaseModel):
    type: Literal["process-scheduled-messages"] = "process-scheduled-messages"


class HealthCheckJob(BaseModel):
    type: Literal["health-check"] = "health-check"
    workspace_id: Optional[str] = None


class BulkAvailabilityCheckJob(BaseModel):
    type: Literal["bulk-availability-check"] = "bulk-availability-check"
    contact_ids: List[str] = Field(min_length=1)
    user_id: Optional[str] = None
    workspace_id: str = Field(min_length=1)


class IntegrationSyncJob(BaseModel):
    type: Literal["integration-sync"] = "integration-sync"
    integration_type: str = Field(min_length=1)
    user_id: str = Field(min_length=1)
    workspace_id: str = Field(min_length=1)
    config_id: str = Field(min_length=1)
    list_id: Optional[str] = None
    force_full_sync: bool = False


class ProcessMessageJob(BaseModel):
    type: Literal["process-message"] = "process-message"
    message_id: str = Field(min_length=1)


JobData = Annotated[
    Union[
        ProcessScheduledMessagesJob,
        HealthCheckJob,
        BulkAvailabilityCheckJob,
        IntegrationSyncJob,
        ProcessMessageJob,
    ],
    Field(discriminator="type"),
]

_JOB_DATA_ADAPTER: TypeAdapter = TypeAdapter(JobData)


def parse_job(data: Dict[str, Any]) -> JobData:
    """Validate a raw payload into its job variant. Raises pydantic.ValidationError."""
    return _JOB_DATA_ADAPTER.validate_python(data)
