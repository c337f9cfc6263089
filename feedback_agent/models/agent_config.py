from sqlalchemy import Boolean, Column, Integer, String, DateTime

from feedback_agent.database import Base
from feedback_agent.utils.preprocessing import utcnow


class AgentConfigRecord(Base):
    """Per-tenant feature flags (agent.enabled, agent.autonomy) and limits."""
    __tablename__ = "agent_configs"

    tenant_id = Column(String(100), primary_key=True)
    enabled = Column(Boolean, nullable=False, default=False)
    autonomy = Column(String(30), nullable=False, default="recommend-only")

    queue_capacity = Column(Integer, nullable=True)          # None = settings default
    admission_rate_per_minute = Column(Integer, nullable=True)
    admission_burst = Column(Integer, nullable=True)
    max_concurrent_generations = Column(Integer, nullable=True)

    updated_by = Column(String(200), nullable=True)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)
