"""
Approval state machine for recommendations.

    pending -> approved   (human with approve capability)
    pending -> dismissed  (human with dismiss capability)
    pending -> expired    (system sweep after the expiry period)

Anything else is an InvalidTransition. Each transition is one UPDATE guarded
by the expected status and version, so concurrent decisions cannot both win.
"""

from datetime import datetime, timedelta
from typing import List, Optional

from sqlalchemy.orm import Session

from feedback_agent.config import settings
from feedback_agent.errors import InvalidTransition, NotFound
from feedback_agent.models.audit import AuditEntry
from feedback_agent.models.outputs import Recommendation, RecommendationStatus
from feedback_agent.services import alert_service, audit_service, output_store
from feedback_agent.services.rbac_service import Actor, Capability, authorize
from feedback_agent.utils.logging_config import StructuredLogger, metrics
from feedback_agent.utils.preprocessing import utcnow

logger = StructuredLogger(__name__)

PENDING = RecommendationStatus.PENDING.value
APPROVED = RecommendationStatus.APPROVED.value
DISMISSED = RecommendationStatus.DISMISSED.value
EXPIRED = RecommendationStatus.EXPIRED.value

ALLOWED_TRANSITIONS = {
    PENDING: {APPROVED, DISMISSED, EXPIRED},
}


def _reject_transition(
    db: Session,
    rec: Recommendation,
    target: str,
    actor_id: str,
    reason: str,
) -> InvalidTransition:
    error = InvalidTransition(
        f"Cannot move recommendation from {rec.status} to {target}",
        current=rec.status,
        target=target,
        reason=reason,
    )
    audit_service.record_event(
        db,
        tenant_id=rec.tenant_id,
        correlation_id=rec.correlation_id,
        action="recommendation.invalid_transition",
        actor=actor_id,
        artifact_type="recommendation",
        artifact_id=rec.id,
        details={"current": rec.status, "target": target, "reason": reason},
    )
    alert_service.raise_alert(
        db,
        rec.tenant_id,
        error,
        artifact_type="recommendation",
        artifact_id=rec.id,
        correlation_id=rec.correlation_id,
    )
    return error


def transition(
    db: Session,
    rec: Recommendation,
    target: str,
    actor_id: str,
    notes: Optional[str] = None,
    expected_version: Optional[int] = None,
    now: Optional[datetime] = None,
) -> Recommendation:
    """
    Apply one guarded status change and audit it.

    The UPDATE matches on id, tenant, current status and version; zero rows
    updated means someone else changed the recommendation first.
    """
    if target not in ALLOWED_TRANSITIONS.get(rec.status, set()):
        raise _reject_transition(db, rec, target, actor_id, "not_allowed")

    version = expected_version if expected_version is not None else rec.version
    before = output_store.recommendation_state(rec)
    decided_at = now or utcnow()

    updated = (
        db.query(Recommendation)
        .filter(
            Recommendation.id == rec.id,
            Recommendation.tenant_id == rec.tenant_id,
            Recommendation.status == rec.status,
            Recommendation.version == version,
        )
        .update(
            {
                Recommendation.status: target,
                Recommendation.version: Recommendation.version + 1,
                Recommendation.decided_by: actor_id,
                Recommendation.decision_notes: notes,
                Recommendation.decided_at: decided_at,
            },
            synchronize_session=False,
        )
    )
    if updated == 0:
        db.rollback()
        db.refresh(rec)
        raise _reject_transition(db, rec, target, actor_id, "concurrent_modification")

    db.flush()
    db.refresh(rec)
    audit_service.record_event(
        db,
        tenant_id=rec.tenant_id,
        correlation_id=rec.correlation_id,
        action=f"recommendation.{target}",
        actor=actor_id,
        artifact_type="recommendation",
        artifact_id=rec.id,
        before_state=before,
        after_state=output_store.recommendation_state(rec),
        details={"notes_present": bool(notes)},
    )
    metrics.increment(f"recommendations.{target}")
    logger.info("Recommendation transitioned", recommendation_id=rec.id, status=target)
    return rec


def _decide(
    db: Session,
    tenant_id: str,
    recommendation_id: str,
    actor: Actor,
    capability: Capability,
    target: str,
    notes: Optional[str],
    expected_version: Optional[int],
) -> Recommendation:
    authorize(db, actor, capability, tenant_id)
    rec = output_store.get_recommendation(db, tenant_id, recommendation_id)
    if rec is None:
        raise NotFound("Recommendation not found", recommendation_id=recommendation_id)
    return transition(db, rec, target, actor.actor_id, notes, expected_version)


def approve(
    db: Session,
    tenant_id: str,
    recommendation_id: str,
    actor: Actor,
    notes: Optional[str] = None,
    expected_version: Optional[int] = None,
) -> Recommendation:
    """Approve a pending recommendation. Requires an authenticated human approver."""
    return _decide(db, tenant_id, recommendation_id, actor, Capability.APPROVE, APPROVED, notes, expected_version)


def dismiss(
    db: Session,
    tenant_id: str,
    recommendation_id: str,
    actor: Actor,
    notes: Optional[str] = None,
    expected_version: Optional[int] = None,
) -> Recommendation:
    return _decide(db, tenant_id, recommendation_id, actor, Capability.DISMISS, DISMISSED, notes, expected_version)


def sweep_expired(
    db: Session,
    now: Optional[datetime] = None,
    expiry_days: Optional[int] = None,
) -> List[str]:
    """Expire pending recommendations older than the expiry period. Returns their ids."""
    now = now or utcnow()
    expiry_days = expiry_days if expiry_days is not None else settings.recommendation_expiry_days
    cutoff = now - timedelta(days=expiry_days)

    stale = (
        db.query(Recommendation)
        .filter(Recommendation.status == PENDING, Recommendation.created_at <= cutoff)
        .order_by(Recommendation.created_at.asc())
        .all()
    )
    expired = []
    for rec in stale:
        try:
            transition(db, rec, EXPIRED, audit_service.SYSTEM_ACTOR, now=now)
            expired.append(rec.id)
        except InvalidTransition:
            # Decided by a human between the select and the update.
            continue
    if expired:
        logger.info("Expired stale recommendations", count=len(expired))
    return expired


def list_approved_recommendations(db: Session, tenant_id: str) -> List[Recommendation]:
    """
    Approved recommendations safe to hand to downstream integrations.

    A recommendation only qualifies when the audit log holds a human
    approval entry for it.
    """
    approved = output_store.list_recommendations(db, tenant_id, APPROVED)
    if not approved:
        return []
    human_approved = {
        row[0]
        for row in db.query(AuditEntry.artifact_id)
        .filter(
            AuditEntry.tenant_id == tenant_id,
            AuditEntry.action == f"recommendation.{APPROVED}",
            AuditEntry.actor_type == "human",
            AuditEntry.artifact_id.in_([r.id for r in approved]),
        )
        .all()
    }
    return [r for r in approved if r.id in human_approved]
