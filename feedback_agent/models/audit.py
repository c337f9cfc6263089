"""
Append-only audit entries.

Each entry stores the hash of the previous entry, forming a chain that
exposes any retroactive modification.
"""

from sqlalchemy import Column, Integer, String, DateTime, JSON, event

from feedback_agent.database import Base
from feedback_agent.utils.preprocessing import utcnow


class AuditEntry(Base):
    __tablename__ = "audit_log"

    sequence = Column(Integer, primary_key=True, autoincrement=True)
    correlation_id = Column(String(64), nullable=False, index=True)
    tenant_id = Column(String(100), nullable=False, index=True)

    actor = Column(String(200), nullable=False)      # "system" or human actor id
    actor_type = Column(String(10), nullable=False)  # system | human
    action = Column(String(60), nullable=False)

    artifact_type = Column(String(30), nullable=True)
    artifact_id = Column(String(200), nullable=True)
    before_hash = Column(String(64), nullable=False, default="")
    after_hash = Column(String(64), nullable=False, default="")
    after_state = Column(JSON, nullable=True)        # redacted snapshot for replay
    details = Column(JSON, default=dict)

    prev_hash = Column(String(64), nullable=False)
    entry_hash = Column(String(64), nullable=False, unique=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)


class AuditImmutableError(RuntimeError):
    pass


@event.listens_for(AuditEntry, "before_update")
def _block_update(mapper, connection, target):
    raise AuditImmutableError("Audit entries are append-only")


@event.listens_for(AuditEntry, "before_delete")
def _block_delete(mapper, connection, target):
    raise AuditImmutableError("Audit entries are append-only")
