"""
Tenant-scoped persistence for pipeline outputs.
Every query filters on tenant_id. Writes are appends; the only update
path is the approval state machine.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from feedback_agent.models.feedback import QuarantinedEvent, RawFeedbackEvent, RedactedFeedback
from feedback_agent.models.outputs import Cluster, Recommendation, RecommendationStatus, Summary


def cluster_state(cluster: Cluster) -> Dict[str, Any]:
    return {
        "id": cluster.id,
        "tenant_id": cluster.tenant_id,
        "version": cluster.version,
        "member_ids": list(cluster.member_ids),
        "member_count": cluster.member_count,
        "modules": list(cluster.modules),
        "severities": dict(cluster.severities),
        "keywords": list(cluster.keywords or []),
        "is_singleton": cluster.is_singleton,
        "label": cluster.label,
        "summary": cluster.summary,
        "status": cluster.status,
    }


def summary_state(summary: Summary) -> Dict[str, Any]:
    return {
        "id": summary.id,
        "tenant_id": summary.tenant_id,
        "window_start": summary.window_start,
        "window_end": summary.window_end,
        "top_themes": summary.top_themes,
        "total_events": summary.total_events,
        "risk_notes": summary.risk_notes,
    }


def recommendation_state(rec: Recommendation) -> Dict[str, Any]:
    return {
        "id": rec.id,
        "tenant_id": rec.tenant_id,
        "cluster_id": rec.cluster_id,
        "theme": rec.theme,
        "proposed_actions": list(rec.proposed_actions),
        "linked_feedback_ids": list(rec.linked_feedback_ids),
        "privacy_review": rec.privacy_review,
        "priority": rec.priority,
        "status": rec.status,
        "version": rec.version,
        "decided_by": rec.decided_by,
        "decision_notes": rec.decision_notes,
        "decided_at": rec.decided_at,
    }


# ============== FEEDBACK ==============


def get_redacted(db: Session, tenant_id: str, event_id: str) -> Optional[RedactedFeedback]:
    return (
        db.query(RedactedFeedback)
        .filter(RedactedFeedback.tenant_id == tenant_id, RedactedFeedback.event_id == event_id)
        .first()
    )


def get_raw(db: Session, tenant_id: str, event_id: str) -> Optional[RawFeedbackEvent]:
    return (
        db.query(RawFeedbackEvent)
        .filter(RawFeedbackEvent.tenant_id == tenant_id, RawFeedbackEvent.event_id == event_id)
        .first()
    )


def get_quarantined(db: Session, tenant_id: str, event_id: str) -> Optional[QuarantinedEvent]:
    return (
        db.query(QuarantinedEvent)
        .filter(QuarantinedEvent.tenant_id == tenant_id, QuarantinedEvent.event_id == event_id)
        .first()
    )


def get_redacted_batch(db: Session, tenant_id: str, event_ids: List[str]) -> List[RedactedFeedback]:
    if not event_ids:
        return []
    return (
        db.query(RedactedFeedback)
        .filter(RedactedFeedback.tenant_id == tenant_id, RedactedFeedback.event_id.in_(event_ids))
        .all()
    )


def list_unprocessed(db: Session, tenant_id: Optional[str] = None) -> List[RedactedFeedback]:
    """Redacted feedback not yet consumed by a run, oldest first."""
    query = db.query(RedactedFeedback).filter(RedactedFeedback.processed_run_id.is_(None))
    if tenant_id is not None:
        query = query.filter(RedactedFeedback.tenant_id == tenant_id)
    return query.order_by(RedactedFeedback.id.asc()).all()


# ============== OUTPUTS ==============


def next_cluster_version(db: Session, tenant_id: str) -> int:
    current = db.query(func.max(Cluster.version)).filter(Cluster.tenant_id == tenant_id).scalar()
    return (current or 0) + 1


def last_run_at(db: Session, tenant_id: str) -> Optional[datetime]:
    return db.query(func.max(Cluster.created_at)).filter(Cluster.tenant_id == tenant_id).scalar()


def get_outputs(
    db: Session,
    tenant_id: str,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
) -> Dict[str, List[Any]]:
    """Summaries, clusters and recommendations created in [start, end]."""
    def _window(query, model):
        query = query.filter(model.tenant_id == tenant_id)
        if start is not None:
            query = query.filter(model.created_at >= start)
        if end is not None:
            query = query.filter(model.created_at <= end)
        return query.order_by(model.created_at.asc()).all()

    return {
        "summaries": _window(db.query(Summary), Summary),
        "clusters": _window(db.query(Cluster), Cluster),
        "recommendations": _window(db.query(Recommendation), Recommendation),
    }


def get_recommendation(db: Session, tenant_id: str, recommendation_id: str) -> Optional[Recommendation]:
    return (
        db.query(Recommendation)
        .filter(Recommendation.tenant_id == tenant_id, Recommendation.id == recommendation_id)
        .first()
    )


def list_recommendations(db: Session, tenant_id: str, status: Optional[str] = None) -> List[Recommendation]:
    query = db.query(Recommendation).filter(Recommendation.tenant_id == tenant_id)
    if status:
        query = query.filter(Recommendation.status == status)
    return query.order_by(Recommendation.created_at.asc(), Recommendation.id.asc()).all()


def list_pending_recommendations(db: Session, tenant_id: str) -> List[Recommendation]:
    return list_recommendations(db, tenant_id, RecommendationStatus.PENDING.value)
