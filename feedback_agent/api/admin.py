"""
Admin API endpoints for feedback agent operations.

Includes:
- Per-tenant agent configuration (flags and limits)
- On-demand processing windows and expiry sweeps
- Metrics and audit chain verification
"""

from typing import Optional

from fastapi import APIRouter, Depends

from feedback_agent.api.dependencies import get_pipeline
from feedback_agent.api.security import get_actor, verify_api_token
from feedback_agent.pipelines.feedback_pipeline import FeedbackPipeline
from feedback_agent.schemas.output_schemas import ConfigUpdateRequest, RunReportOut
from feedback_agent.services.agent_config_service import AgentConfig
from feedback_agent.services.rbac_service import Actor
from feedback_agent.utils.logging_config import metrics


router = APIRouter(
    prefix="/admin",
    tags=["admin"],
    dependencies=[Depends(verify_api_token)],
)


# ============== CONFIGURATION ==============


@router.put("/tenants/{tenant_id}/config", response_model=AgentConfig)
def update_config(
    tenant_id: str,
    request: ConfigUpdateRequest,
    actor: Optional[Actor] = Depends(get_actor),
    pipeline: FeedbackPipeline = Depends(get_pipeline),
):
    """Enable/disable the agent or change its limits. pilot_admin only."""
    return pipeline.update_configuration(tenant_id, actor, request.model_dump(exclude_none=True))


# ============== OPERATIONS ==============


@router.post("/tenants/{tenant_id}/process", response_model=RunReportOut)
async def process_now(
    tenant_id: str,
    actor: Optional[Actor] = Depends(get_actor),
    pipeline: FeedbackPipeline = Depends(get_pipeline),
):
    """Run a processing window immediately instead of waiting for the worker."""
    return await pipeline.run_now(tenant_id, actor)


@router.post("/sweep-expired")
def sweep_expired(pipeline: FeedbackPipeline = Depends(get_pipeline)):
    """Expire stale pending recommendations (normally run on a schedule)."""
    expired = pipeline.sweep_expired()
    return {"expired": expired, "count": len(expired)}


# ============== MONITORING ==============


@router.get("/metrics")
async def get_metrics():
    """Get current application metrics."""
    return metrics.get_stats()


@router.post("/metrics/reset")
async def reset_metrics():
    metrics.reset()
    return {"success": True}


@router.get("/audit/verify")
def verify_audit_chain(pipeline: FeedbackPipeline = Depends(get_pipeline)):
    """Recompute the audit hash chain and report the first broken entry."""
    return pipeline.verify_audit_chain()
