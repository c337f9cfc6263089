"""
Pipeline output models: clusters, summaries, recommendations, alerts.
"""

import enum

from sqlalchemy import Boolean, Column, Integer, String, DateTime, Text, JSON

from feedback_agent.database import Base
from feedback_agent.utils.preprocessing import utcnow


class ClusterStatus(str, enum.Enum):
    SUMMARIZED = "summarized"
    SUMMARY_FAILED = "summary_failed"  # Generation exhausted retries
    HUMAN_REVIEW = "human_review"      # Safety guard withheld generated content


class RecommendationStatus(str, enum.Enum):
    PENDING = "pending"
    APPROVED = "approved"
    DISMISSED = "dismissed"
    EXPIRED = "expired"


class Priority(str, enum.Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class Cluster(Base):
    """A versioned group of redacted feedback. Never updated in place."""
    __tablename__ = "clusters"

    id = Column(String(64), primary_key=True)
    tenant_id = Column(String(100), nullable=False, index=True)
    run_id = Column(String(64), nullable=False, index=True)
    version = Column(Integer, nullable=False)        # per-tenant run number

    member_ids = Column(JSON, nullable=False)        # RedactedFeedback event ids
    member_count = Column(Integer, nullable=False)
    modules = Column(JSON, nullable=False)           # module coverage
    severities = Column(JSON, nullable=False)        # {"high": 2, "low": 1}
    keywords = Column(JSON, default=list)
    is_singleton = Column(Boolean, default=False)

    label = Column(String(200), nullable=True)       # generated; None unless summarized
    summary = Column(Text, nullable=True)
    status = Column(String(20), nullable=False)

    correlation_id = Column(String(64), nullable=False)
    created_at = Column(DateTime, default=utcnow, index=True)


class Summary(Base):
    """Window-level report for one tenant."""
    __tablename__ = "summaries"

    id = Column(String(64), primary_key=True)
    tenant_id = Column(String(100), nullable=False, index=True)
    run_id = Column(String(64), nullable=False, index=True)

    window_start = Column(DateTime, nullable=False)
    window_end = Column(DateTime, nullable=False)
    top_themes = Column(JSON, nullable=False)        # [{theme, count, modules}]
    total_events = Column(Integer, nullable=False)
    risk_notes = Column(Text, nullable=False)

    correlation_id = Column(String(64), nullable=False)
    created_at = Column(DateTime, default=utcnow, index=True)


class Recommendation(Base):
    """Proposed action requiring human judgment."""
    __tablename__ = "recommendations"

    id = Column(String(64), primary_key=True)
    tenant_id = Column(String(100), nullable=False, index=True)
    run_id = Column(String(64), nullable=False, index=True)
    cluster_id = Column(String(64), nullable=True)

    theme = Column(String(200), nullable=False)
    proposed_actions = Column(JSON, nullable=False)  # ordered
    linked_feedback_ids = Column(JSON, nullable=False)
    privacy_review = Column(Text, nullable=False)
    priority = Column(String(10), nullable=False)

    status = Column(String(20), nullable=False, default=RecommendationStatus.PENDING.value, index=True)
    version = Column(Integer, nullable=False, default=1)  # optimistic concurrency
    decided_by = Column(String(200), nullable=True)
    decision_notes = Column(Text, nullable=True)
    decided_at = Column(DateTime, nullable=True)

    correlation_id = Column(String(64), nullable=False, index=True)
    created_at = Column(DateTime, default=utcnow, index=True)


class OperationalAlert(Base):
    """Operator-facing alert. Failed artifacts appear here, not as content."""
    __tablename__ = "operational_alerts"

    id = Column(Integer, primary_key=True)
    tenant_id = Column(String(100), nullable=False, index=True)
    kind = Column(String(50), nullable=False)        # error code, e.g. generation_failure
    detail = Column(Text, nullable=False)
    artifact_type = Column(String(30), nullable=True)
    artifact_id = Column(String(200), nullable=True)
    correlation_id = Column(String(64), nullable=True)
    created_at = Column(DateTime, default=utcnow, index=True)
