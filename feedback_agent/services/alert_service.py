"""
Operational alerts for fail-closed errors.
"""

from datetime import timedelta
from typing import List, Optional

from sqlalchemy.orm import Session

from feedback_agent.config import settings
from feedback_agent.errors import FeedbackAgentError
from feedback_agent.models.outputs import OperationalAlert
from feedback_agent.services import audit_service
from feedback_agent.utils.logging_config import StructuredLogger, metrics
from feedback_agent.utils.preprocessing import utcnow

logger = StructuredLogger(__name__)


def raise_alert(
    db: Session,
    tenant_id: str,
    error: FeedbackAgentError,
    artifact_type: Optional[str] = None,
    artifact_id: Optional[str] = None,
    correlation_id: Optional[str] = None,
) -> OperationalAlert:
    """Persist an alert for an operator and log it. Detail never includes feedback text."""
    alert = OperationalAlert(
        tenant_id=tenant_id,
        kind=error.code,
        detail=error.message,
        artifact_type=artifact_type,
        artifact_id=artifact_id,
        correlation_id=correlation_id,
    )
    db.add(alert)
    audit_service.commit_or_flush(db)

    metrics.increment(f"alerts.{error.code}")
    logger.error(
        "Operational alert",
        kind=error.code,
        detail=error.message,
        artifact_type=artifact_type,
        artifact_id=artifact_id,
    )
    return alert


def list_alerts(db: Session, tenant_id: str, limit: int = 100) -> List[OperationalAlert]:
    return (
        db.query(OperationalAlert)
        .filter(OperationalAlert.tenant_id == tenant_id)
        .order_by(OperationalAlert.id.desc())
        .limit(limit)
        .all()
    )


def count_recent(db: Session, tenant_id: str, hours: Optional[int] = None) -> int:
    """Alerts raised in the last N hours (the error_count in agent status)."""
    hours = hours if hours is not None else settings.alert_window_hours
    since = utcnow() - timedelta(hours=hours)
    return (
        db.query(OperationalAlert)
        .filter(OperationalAlert.tenant_id == tenant_id, OperationalAlert.created_at >= since)
        .count()
    )
