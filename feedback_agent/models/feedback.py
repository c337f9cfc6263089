"""
Feedback ingest models: raw events, redacted feedback, quarantine.
"""

from sqlalchemy import Column, Integer, String, DateTime, Text, JSON, UniqueConstraint

from feedback_agent.database import Base
from feedback_agent.utils.preprocessing import utcnow


class RawFeedbackEvent(Base):
    """Feedback exactly as submitted. Access-restricted, never mutated."""
    __tablename__ = "raw_feedback_events"
    __table_args__ = (UniqueConstraint("tenant_id", "event_id", name="uq_raw_tenant_event"),)

    id = Column(Integer, primary_key=True)
    tenant_id = Column(String(100), nullable=False, index=True)
    event_id = Column(String(200), nullable=False)

    submitted_at = Column(DateTime, nullable=False)
    module = Column(String(100), nullable=False)
    severity = Column(String(10), nullable=False)    # low | medium | high | critical
    role = Column(String(50), nullable=False)        # submitter role
    text = Column(Text, nullable=False)              # unredacted, never read downstream
    attachments = Column(JSON, default=list)         # opaque references
    consents = Column(JSON, default=dict)

    correlation_id = Column(String(64), nullable=False)
    received_at = Column(DateTime, default=utcnow)


class RedactedFeedback(Base):
    """Redacted copy of an event. The only source for downstream artifacts."""
    __tablename__ = "redacted_feedback"
    __table_args__ = (UniqueConstraint("tenant_id", "event_id", name="uq_redacted_tenant_event"),)

    id = Column(Integer, primary_key=True)
    tenant_id = Column(String(100), nullable=False, index=True)
    event_id = Column(String(200), nullable=False)

    submitted_at = Column(DateTime, nullable=False)
    module = Column(String(100), nullable=False)
    severity = Column(String(10), nullable=False)
    role = Column(String(50), nullable=False)

    redacted_text = Column(Text, nullable=False)
    spans = Column(JSON, default=list)               # [{category, original_length, position}]
    rule_set_version = Column(String(50), nullable=False)

    correlation_id = Column(String(64), nullable=False)
    processed_run_id = Column(String(64), nullable=True, index=True)  # None = still queued
    created_at = Column(DateTime, default=utcnow)


class QuarantinedEvent(Base):
    """Events that failed redaction. Operator intervention required."""
    __tablename__ = "quarantined_events"

    id = Column(Integer, primary_key=True)
    tenant_id = Column(String(100), nullable=False, index=True)
    event_id = Column(String(200), nullable=False)
    reason = Column(Text, nullable=False)
    rule_set_version = Column(String(50), nullable=True)
    correlation_id = Column(String(64), nullable=False)
    created_at = Column(DateTime, default=utcnow)
