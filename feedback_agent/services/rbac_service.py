"""
Role-based access control.
Every read and write is checked against the actor's role and tenant.
"""

import uuid
from dataclasses import dataclass
from enum import Enum
from typing import Dict, FrozenSet, Optional

from sqlalchemy.orm import Session

from feedback_agent.errors import AuthorizationError
from feedback_agent.services import alert_service, audit_service
from feedback_agent.utils.logging_config import StructuredLogger, metrics

logger = StructuredLogger(__name__)


class Role(str, Enum):
    PILOT_ADMIN = "pilot_admin"
    DEVELOPER = "developer"
    COMPLIANCE_OFFICER = "compliance_officer"
    SUPPORT = "support"


class Capability(str, Enum):
    READ_REDACTED = "read_redacted"
    READ_RAW = "read_raw"
    READ_AUDIT = "read_audit"
    APPROVE = "approve"
    DISMISS = "dismiss"
    CONFIGURE = "configure"


ROLE_CAPABILITIES: Dict[Role, FrozenSet[Capability]] = {
    Role.PILOT_ADMIN: frozenset({
        Capability.READ_REDACTED, Capability.READ_AUDIT,
        Capability.APPROVE, Capability.DISMISS, Capability.CONFIGURE,
    }),
    Role.COMPLIANCE_OFFICER: frozenset({
        Capability.READ_REDACTED, Capability.READ_RAW, Capability.READ_AUDIT,
        Capability.APPROVE, Capability.DISMISS,
    }),
    Role.DEVELOPER: frozenset({Capability.READ_REDACTED}),
    Role.SUPPORT: frozenset({Capability.READ_REDACTED}),
}


@dataclass(frozen=True)
class Actor:
    """An authenticated human user scoped to one tenant."""
    actor_id: str
    role: str
    tenant_id: str
    authenticated: bool = True

    def has(self, capability: Capability) -> bool:
        try:
            role = Role(self.role)
        except ValueError:
            return False
        return capability in ROLE_CAPABILITIES[role]


def authorize(
    db: Session,
    actor: Optional[Actor],
    capability: Capability,
    tenant_id: str,
    correlation_id: Optional[str] = None,
) -> Actor:
    """
    Raise AuthorizationError unless actor may use capability on tenant_id.

    Denials are audited and raised as operational alerts before raising.
    """
    reason = None
    if actor is None or not actor.authenticated or not actor.actor_id:
        reason = "unauthenticated"
    elif actor.tenant_id != tenant_id:
        reason = "tenant_mismatch"
    elif not actor.has(capability):
        reason = "missing_capability"

    if reason is None:
        return actor

    actor_id = actor.actor_id if actor is not None and actor.actor_id else "anonymous"
    correlation_id = correlation_id or uuid.uuid4().hex
    error = AuthorizationError(
        f"Actor not permitted to {capability.value}",
        capability=capability.value,
        reason=reason,
    )
    audit_service.record_event(
        db,
        tenant_id=tenant_id,
        correlation_id=correlation_id,
        action="authorization.denied",
        actor=actor_id,
        actor_type="human",
        details={
            "capability": capability.value,
            "role": actor.role if actor is not None else None,
            "reason": reason,
        },
    )
    alert_service.raise_alert(db, tenant_id, error, correlation_id=correlation_id)
    metrics.increment("rbac.denied")
    logger.warning("Authorization denied", capability=capability.value, reason=reason)
    raise error
