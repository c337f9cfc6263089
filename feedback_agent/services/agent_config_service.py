"""
Per-tenant agent configuration.
Feature flags (agent.enabled, agent.autonomy) and processing limits.
"""

from typing import Any, Dict, Optional

from pydantic import BaseModel
from sqlalchemy.orm import Session

from feedback_agent.config import settings
from feedback_agent.errors import ValidationError
from feedback_agent.models.agent_config import AgentConfigRecord
from feedback_agent.services import audit_service
from feedback_agent.services.rbac_service import Actor, Capability, authorize
from feedback_agent.utils.logging_config import StructuredLogger

logger = StructuredLogger(__name__)

# The agent only ever recommends; nothing is executed autonomously.
AUTONOMY_RECOMMEND_ONLY = "recommend-only"

_LIMIT_FIELDS = ("queue_capacity", "admission_rate_per_minute", "admission_burst", "max_concurrent_generations")


class AgentConfig(BaseModel):
    """Effective configuration for one tenant."""
    tenant_id: str
    enabled: bool = False
    autonomy: str = AUTONOMY_RECOMMEND_ONLY
    queue_capacity: int = settings.queue_capacity
    admission_rate_per_minute: int = settings.admission_rate_per_minute
    admission_burst: int = settings.admission_burst
    max_concurrent_generations: int = settings.max_concurrent_generations


def _record(db: Session, tenant_id: str) -> Optional[AgentConfigRecord]:
    return db.query(AgentConfigRecord).filter(AgentConfigRecord.tenant_id == tenant_id).first()


def get_agent_config(db: Session, tenant_id: str) -> AgentConfig:
    """Stored overrides on top of settings defaults. Unknown tenants are disabled."""
    record = _record(db, tenant_id)
    if record is None:
        return AgentConfig(tenant_id=tenant_id)
    values: Dict[str, Any] = {"tenant_id": tenant_id, "enabled": record.enabled, "autonomy": record.autonomy}
    for name in _LIMIT_FIELDS:
        if getattr(record, name) is not None:
            values[name] = getattr(record, name)
    return AgentConfig(**values)


def _validate_changes(changes: Dict[str, Any]) -> Dict[str, Any]:
    allowed = {"enabled", "autonomy", *_LIMIT_FIELDS}
    unknown = set(changes) - allowed
    if unknown:
        raise ValidationError("Unknown configuration keys", reason="unknown_keys", keys=sorted(unknown))
    autonomy = changes.get("autonomy")
    if autonomy is not None and autonomy != AUTONOMY_RECOMMEND_ONLY:
        raise ValidationError("Autonomy is fixed to recommend-only", reason="autonomy_fixed")
    for name in _LIMIT_FIELDS:
        value = changes.get(name)
        if value is not None and (not isinstance(value, int) or value < 1):
            raise ValidationError(f"{name} must be a positive integer", reason="invalid_limit")
    return {k: v for k, v in changes.items() if v is not None}


def update_agent_config(
    db: Session,
    tenant_id: str,
    actor: Actor,
    changes: Dict[str, Any],
    correlation_id: str,
) -> AgentConfig:
    """Apply configuration changes. Requires the configure capability."""
    authorize(db, actor, Capability.CONFIGURE, tenant_id, correlation_id)
    changes = _validate_changes(changes)

    before = get_agent_config(db, tenant_id).model_dump()
    record = _record(db, tenant_id)
    if record is None:
        record = AgentConfigRecord(tenant_id=tenant_id, enabled=False, autonomy=AUTONOMY_RECOMMEND_ONLY)
        db.add(record)
    for name, value in changes.items():
        setattr(record, name, value)
    record.updated_by = actor.actor_id
    db.flush()

    after = get_agent_config(db, tenant_id)
    audit_service.record_event(
        db,
        tenant_id=tenant_id,
        correlation_id=correlation_id,
        action="agent_config.updated",
        actor=actor.actor_id,
        artifact_type="agent_config",
        artifact_id=tenant_id,
        before_state=before,
        after_state=after.model_dump(),
        details={"changed": sorted(changes)},
    )
    logger.info("Agent configuration updated", tenant_id=tenant_id, changed=sorted(changes))
    return after
