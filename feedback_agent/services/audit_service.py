"""
Audit log service.
Append-only, hash-chained record of every state change in the pipeline.
"""

import threading
from contextlib import contextmanager
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy.orm import Session

from feedback_agent.models.audit import AuditEntry
from feedback_agent.utils.logging_config import StructuredLogger, metrics
from feedback_agent.utils.preprocessing import canonical_json, hash_content, state_hash, to_json_safe, utcnow

logger = StructuredLogger(__name__)

SYSTEM_ACTOR = "system"
GENESIS_HASH = "0" * 64

# Serializes read-last-hash + append so concurrent writers cannot fork the chain.
_chain_lock = threading.RLock()
_atomic_state = threading.local()


def in_atomic() -> bool:
    return getattr(_atomic_state, "depth", 0) > 0


def commit_or_flush(db: Session) -> None:
    """Commit, unless inside ``atomic()`` where the block commits once at the end."""
    if in_atomic():
        db.flush()
    else:
        db.commit()


@contextmanager
def atomic(db: Session):
    """
    Group state changes and their audit entries into one transaction.

    Holds the chain lock for the whole block so no other writer can append
    between our entries. Nothing inside the block may await.
    """
    with _chain_lock:
        _atomic_state.depth = getattr(_atomic_state, "depth", 0) + 1
        try:
            yield db
            if _atomic_state.depth == 1:
                db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            _atomic_state.depth -= 1


def _entry_payload(entry: AuditEntry) -> Dict[str, Any]:
    return {
        "correlation_id": entry.correlation_id,
        "tenant_id": entry.tenant_id,
        "actor": entry.actor,
        "actor_type": entry.actor_type,
        "action": entry.action,
        "artifact_type": entry.artifact_type,
        "artifact_id": entry.artifact_id,
        "before_hash": entry.before_hash,
        "after_hash": entry.after_hash,
        "after_state": entry.after_state,
        "details": entry.details or {},
        "prev_hash": entry.prev_hash,
        "created_at": entry.created_at,
    }


def compute_entry_hash(entry: AuditEntry) -> str:
    return hash_content(canonical_json(_entry_payload(entry)))


def record_event(
    db: Session,
    tenant_id: str,
    correlation_id: str,
    action: str,
    actor: str = SYSTEM_ACTOR,
    actor_type: Optional[str] = None,
    artifact_type: Optional[str] = None,
    artifact_id: Optional[str] = None,
    before_state: Optional[Dict[str, Any]] = None,
    after_state: Optional[Dict[str, Any]] = None,
    details: Optional[Dict[str, Any]] = None,
) -> AuditEntry:
    """
    Append an audit entry and commit.

    Commits the caller's pending changes in the same transaction, so a state
    change and its audit entry land together. Inside ``atomic()`` the entry
    is only flushed.

    Args:
        db: Database session
        tenant_id: Owning tenant
        correlation_id: Run or request correlation id
        action: What happened (e.g. "recommendation.approved")
        actor: "system" or the human actor id
        artifact_type / artifact_id: What was changed
        before_state / after_state: Redacted snapshots; only hashes of
            before_state are kept, after_state is stored for replay
        details: Extra, non-PII context (reason codes, counts)
    """
    if actor_type is None:
        actor_type = "system" if actor == SYSTEM_ACTOR else "human"

    with _chain_lock:
        last = db.query(AuditEntry.entry_hash).order_by(AuditEntry.sequence.desc()).first()
        entry = AuditEntry(
            correlation_id=correlation_id,
            tenant_id=tenant_id,
            actor=actor,
            actor_type=actor_type,
            action=action,
            artifact_type=artifact_type,
            artifact_id=artifact_id,
            before_hash=state_hash(before_state),
            after_hash=state_hash(after_state),
            after_state=to_json_safe(after_state) if after_state is not None else None,
            details=to_json_safe(details or {}),
            prev_hash=last[0] if last else GENESIS_HASH,
            created_at=utcnow(),
        )
        entry.entry_hash = compute_entry_hash(entry)
        db.add(entry)
        commit_or_flush(db)

    metrics.increment(f"audit.{action}")
    logger.debug("Audit entry written", action=action, artifact_type=artifact_type, artifact_id=artifact_id)
    return entry


def get_audit_trail(db: Session, correlation_id: str, tenant_id: Optional[str] = None) -> List[AuditEntry]:
    """Ordered entries for one correlation id."""
    query = db.query(AuditEntry).filter(AuditEntry.correlation_id == correlation_id)
    if tenant_id is not None:
        query = query.filter(AuditEntry.tenant_id == tenant_id)
    return query.order_by(AuditEntry.sequence.asc()).all()


def list_entries(
    db: Session,
    tenant_id: str,
    action: Optional[str] = None,
    artifact_id: Optional[str] = None,
) -> List[AuditEntry]:
    query = db.query(AuditEntry).filter(AuditEntry.tenant_id == tenant_id)
    if action:
        query = query.filter(AuditEntry.action == action)
    if artifact_id:
        query = query.filter(AuditEntry.artifact_id == artifact_id)
    return query.order_by(AuditEntry.sequence.asc()).all()


def verify_chain(db: Session) -> Dict[str, Any]:
    """
    Walk the whole log and recompute every hash.

    Returns {"valid": bool, "checked": int, "broken_at": sequence or None}.
    """
    prev = GENESIS_HASH
    checked = 0
    for entry in db.query(AuditEntry).order_by(AuditEntry.sequence.asc()).yield_per(500):
        if entry.prev_hash != prev or compute_entry_hash(entry) != entry.entry_hash:
            logger.error("Audit chain broken", sequence=entry.sequence)
            metrics.increment("audit.chain_broken")
            return {"valid": False, "checked": checked, "broken_at": entry.sequence}
        prev = entry.entry_hash
        checked += 1
    return {"valid": True, "checked": checked, "broken_at": None}


def replay(entries: Iterable[Any], artifact_type: Optional[str] = None) -> Dict[str, Dict[str, Any]]:
    """
    Reconstruct terminal artifact states from audit entries alone.

    Entries may be ORM rows or plain dicts (e.g. an exported log). The fold
    keeps the latest after_state per artifact, so replaying the same entries
    any number of times yields the same result.
    """
    def _get(entry, name):
        return entry.get(name) if isinstance(entry, dict) else getattr(entry, name)

    ordered = sorted(entries, key=lambda e: _get(e, "sequence"))
    state: Dict[str, Dict[str, Any]] = {}
    for entry in ordered:
        after = _get(entry, "after_state")
        artifact_id = _get(entry, "artifact_id")
        if after is None or artifact_id is None:
            continue
        if artifact_type and _get(entry, "artifact_type") != artifact_type:
            continue
        state[artifact_id] = dict(after)
    return state
