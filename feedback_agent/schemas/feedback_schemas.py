from datetime import datetime
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class Severity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class SubmitterRole(str, Enum):
    CARE_WORKER = "care_worker"
    NURSE = "nurse"
    MANAGER = "manager"
    ADMINISTRATOR = "administrator"
    FAMILY_MEMBER = "family_member"
    OTHER = "other"


class _CamelModel(BaseModel):
    """Accepts both camelCase (transport) and snake_case field names."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)


class Consents(_CamelModel):
    improvement_processing: bool


class FeedbackEvent(_CamelModel):
    """Immutable feedback event as delivered by the transport."""
    event_id: str = Field(min_length=1, max_length=200)
    tenant_id: str = Field(min_length=1, max_length=100)
    submitted_at: datetime
    module: str = Field(min_length=1, max_length=100)
    severity: Severity
    role: SubmitterRole
    text: str
    attachments: List[str] = Field(default_factory=list)
    consents: Consents


class SubmitStatus(str, Enum):
    ACCEPTED = "accepted"  # Already ingested under this event id
    QUEUED = "queued"
    REJECTED = "rejected"


class SubmitResult(BaseModel):
    """Outcome of submit_feedback."""
    status: SubmitStatus
    event_id: Optional[str] = None
    correlation_id: Optional[str] = None
    reason: Optional[str] = None       # error code when rejected
    detail: Optional[str] = None
    retry_after: Optional[int] = None  # seconds, for backpressure
