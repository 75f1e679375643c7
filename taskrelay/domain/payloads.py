from typing import Annotated, Any, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, StringConstraints

from taskrelay.domain.states import JobType

class JobPayload(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True)

class DomainEventDispatchPayload(JobPayload):
    event_id: UUID = Field(alias="eventId")

class WebhookIngestPayload(JobPayload):
    recording_id: Annotated[str, StringConstraints(strip_whitespace=True, min_length=1)] = Field(alias="recordingId")
    data: dict[str, Any] = Field(default_factory=dict)

# Payload model per job type. Producers and the worker both validate against it.
PAYLOAD_MODELS: dict[JobType, type[JobPayload]] = {
    JobType.DOMAIN_EVENT_DISPATCH: DomainEventDispatchPayload,
    JobType.FATHOM_WEBHOOK_INGEST: WebhookIngestPayload,
}

def payload_model_for(job_type: str) -> Optional[type[JobPayload]]:
    try:
        return PAYLOAD_MODELS[JobType(job_type)]
    except ValueError:
        return None
