from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict


class _ORMModel(BaseModel):
    model_config = ConfigDict(from_attributes=True)


class RedactedFeedbackOut(_ORMModel):
    tenant_id: str
    event_id: str
    submitted_at: datetime
    module: str
    severity: str
    role: str
    redacted_text: str
    rule_set_version: str


class RawFeedbackOut(_ORMModel):
    tenant_id: str
    event_id: str
    submitted_at: datetime
    module: str
    severity: str
    role: str
    text: str
    attachments: List[str]


class FeedbackView(BaseModel):
    """Feedback read model; raw text present only for privileged roles."""
    redacted: RedactedFeedbackOut
    raw: Optional[RawFeedbackOut] = None


class ClusterOut(_ORMModel):
    id: str
    tenant_id: str
    version: int
    member_ids: List[str]
    member_count: int
    modules: List[str]
    severities: Dict[str, int]
    keywords: List[str]
    is_singleton: bool
    label: Optional[str] = None
    summary: Optional[str] = None
    status: str
    correlation_id: str
    created_at: datetime


class ThemeOut(BaseModel):
    theme: str
    count: int
    modules: List[str]


class SummaryOut(_ORMModel):
    id: str
    tenant_id: str
    window_start: datetime
    window_end: datetime
    top_themes: List[ThemeOut]
    total_events: int
    risk_notes: str
    correlation_id: str
    created_at: datetime


class RecommendationOut(_ORMModel):
    id: str
    tenant_id: str
    cluster_id: Optional[str] = None
    theme: str
    proposed_actions: List[str]
    linked_feedback_ids: List[str]
    privacy_review: str
    priority: str
    status: str
    version: int
    decided_by: Optional[str] = None
    decision_notes: Optional[str] = None
    decided_at: Optional[datetime] = None
    correlation_id: str
    created_at: datetime


class OutputsResponse(BaseModel):
    summaries: List[SummaryOut]
    clusters: List[ClusterOut]
    recommendations: List[RecommendationOut]


class AuditEntryOut(_ORMModel):
    sequence: int
    correlation_id: str
    tenant_id: str
    actor: str
    actor_type: str
    action: str
    artifact_type: Optional[str] = None
    artifact_id: Optional[str] = None
    before_hash: str
    after_hash: str
    after_state: Optional[Dict[str, Any]] = None
    details: Dict[str, Any] = {}
    prev_hash: str
    entry_hash: str
    created_at: datetime


class AlertOut(_ORMModel):
    id: int
    tenant_id: str
    kind: str
    detail: str
    artifact_type: Optional[str] = None
    artifact_id: Optional[str] = None
    correlation_id: Optional[str] = None
    created_at: datetime


class AgentStatus(BaseModel):
    tenant_id: str
    enabled: bool
    autonomy: str
    last_run: Optional[datetime] = None
    queue_size: int
    error_count: int
    is_processing: bool


class DecisionRequest(BaseModel):
    """Body for approve/dismiss."""
    notes: Optional[str] = None
    expected_version: Optional[int] = None


class ConfigUpdateRequest(BaseModel):
    enabled: Optional[bool] = None
    autonomy: Optional[str] = None
    queue_capacity: Optional[int] = None
    admission_rate_per_minute: Optional[int] = None
    admission_burst: Optional[int] = None
    max_concurrent_generations: Optional[int] = None


class RunReportOut(BaseModel):
    run_id: Optional[str] = None
    correlation_id: Optional[str] = None
    event_count: int
    cluster_ids: List[str]
    failed_cluster_ids: List[str]
    withheld_cluster_ids: List[str]
    summary_id: Optional[str] = None
    recommendation_ids: List[str]
