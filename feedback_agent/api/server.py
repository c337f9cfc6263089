from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import Body, Depends, FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from feedback_agent.api.admin import router as admin_router
from feedback_agent.api.dependencies import get_pipeline
from feedback_agent.api.security import get_actor, verify_api_token
from feedback_agent.config import settings
from feedback_agent.database import engine, init_db
from feedback_agent.errors import (
    AgentDisabled,
    AuthorizationError,
    Backpressure,
    FeedbackAgentError,
    GenerationFailure,
    InvalidTransition,
    NotFound,
    RedactionFailure,
    SafetyViolation,
    ValidationError,
)
from feedback_agent.pipelines.feedback_pipeline import FeedbackPipeline
from feedback_agent.schemas.feedback_schemas import SubmitResult, SubmitStatus
from feedback_agent.schemas.output_schemas import (
    AgentStatus,
    AlertOut,
    AuditEntryOut,
    DecisionRequest,
    FeedbackView,
    OutputsResponse,
    RecommendationOut,
)
from feedback_agent.services.rbac_service import Actor
from feedback_agent.utils.logging_config import StructuredLogger, init_logging

# Initialize structured logging
init_logging()

logger = StructuredLogger(__name__)

VERSION = "0.1.0"

ERROR_STATUS = {
    ValidationError: status.HTTP_400_BAD_REQUEST,
    AuthorizationError: status.HTTP_403_FORBIDDEN,
    NotFound: status.HTTP_404_NOT_FOUND,
    InvalidTransition: status.HTTP_409_CONFLICT,
    RedactionFailure: status.HTTP_422_UNPROCESSABLE_ENTITY,
    SafetyViolation: status.HTTP_422_UNPROCESSABLE_ENTITY,
    Backpressure: status.HTTP_429_TOO_MANY_REQUESTS,
    GenerationFailure: status.HTTP_502_BAD_GATEWAY,
    AgentDisabled: status.HTTP_503_SERVICE_UNAVAILABLE,
}

# Rejection reason -> HTTP status for POST /feedback
REJECTION_STATUS = {
    ValidationError.code: status.HTTP_400_BAD_REQUEST,
    Backpressure.code: status.HTTP_429_TOO_MANY_REQUESTS,
    RedactionFailure.code: status.HTTP_422_UNPROCESSABLE_ENTITY,
    AgentDisabled.code: status.HTTP_503_SERVICE_UNAVAILABLE,
}


def create_app(pipeline: Optional[FeedbackPipeline] = None) -> FastAPI:
    """Build the API. Pass a pipeline to use a specific store or generator."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if pipeline is None:
            init_db(engine)
        await app.state.pipeline.start()
        yield
        await app.state.pipeline.stop()

    app = FastAPI(
        title="Feedback Agent API",
        version=VERSION,
        description="Privacy-first feedback clustering with human-approved recommendations",
        docs_url="/docs" if settings.debug else None,
        redoc_url="/redoc" if settings.debug else None,
        lifespan=lifespan,
    )
    app.state.pipeline = pipeline or FeedbackPipeline()

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins_list,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def add_security_headers(request: Request, call_next):
        response = await call_next(request)
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["Cache-Control"] = "no-store"
        if settings.is_production:
            response.headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains"
        return response

    @app.exception_handler(FeedbackAgentError)
    async def handle_pipeline_error(request: Request, exc: FeedbackAgentError):
        code = ERROR_STATUS.get(type(exc), status.HTTP_500_INTERNAL_SERVER_ERROR)
        if exc.fail_closed:
            logger.warning("Request failed closed", code=exc.code, path=request.url.path, status=code)
        headers = {"Retry-After": str(exc.retry_after)} if isinstance(exc, Backpressure) else None
        return JSONResponse(
            status_code=code,
            content={"detail": exc.message, "code": exc.code},
            headers=headers,
        )

    app.include_router(admin_router)
    _register_routes(app)
    return app


def _register_routes(app: FastAPI) -> None:
    auth = [Depends(verify_api_token)]

    @app.get("/health")
    def health():
        """Health check endpoint - no auth required."""
        return {"status": "ok"}

    @app.get("/status")
    def status_info():
        return {
            "status": "ok",
            "version": VERSION,
            "environment": settings.environment,
            "auth_enabled": bool(settings.api_token),
            "autonomy": "recommend-only",
        }

    @app.post("/feedback", response_model=SubmitResult, dependencies=auth)
    def submit_feedback(
        payload: Dict[str, Any] = Body(...),
        pipeline: FeedbackPipeline = Depends(get_pipeline),
    ):
        """Ingest one feedback event. 202 when queued, 200 when already ingested."""
        result = pipeline.submit_feedback(payload)
        if result.status == SubmitStatus.QUEUED:
            code = status.HTTP_202_ACCEPTED
        elif result.status == SubmitStatus.ACCEPTED:
            code = status.HTTP_200_OK
        else:
            code = REJECTION_STATUS.get(result.reason, status.HTTP_400_BAD_REQUEST)
        headers = {"Retry-After": str(result.retry_after)} if result.retry_after else None
        return JSONResponse(status_code=code, content=result.model_dump(mode="json"), headers=headers)

    @app.get("/tenants/{tenant_id}/status", response_model=AgentStatus, dependencies=auth)
    def agent_status(
        tenant_id: str,
        actor: Optional[Actor] = Depends(get_actor),
        pipeline: FeedbackPipeline = Depends(get_pipeline),
    ):
        return pipeline.get_status(tenant_id, actor)

    @app.get("/tenants/{tenant_id}/recommendations/pending", response_model=List[RecommendationOut], dependencies=auth)
    def pending_recommendations(
        tenant_id: str,
        actor: Optional[Actor] = Depends(get_actor),
        pipeline: FeedbackPipeline = Depends(get_pipeline),
    ):
        return pipeline.list_pending_recommendations(tenant_id, actor)

    @app.get("/tenants/{tenant_id}/recommendations/approved", response_model=List[RecommendationOut], dependencies=auth)
    def approved_recommendations(
        tenant_id: str,
        actor: Optional[Actor] = Depends(get_actor),
        pipeline: FeedbackPipeline = Depends(get_pipeline),
    ):
        """Human-approved recommendations for downstream integrations."""
        return pipeline.list_approved_recommendations(tenant_id, actor)

    @app.post(
        "/tenants/{tenant_id}/recommendations/{recommendation_id}/approve",
        response_model=RecommendationOut,
        dependencies=auth,
    )
    def approve_recommendation(
        tenant_id: str,
        recommendation_id: str,
        request: Optional[DecisionRequest] = None,
        actor: Optional[Actor] = Depends(get_actor),
        pipeline: FeedbackPipeline = Depends(get_pipeline),
    ):
        request = request or DecisionRequest()
        return pipeline.approve(tenant_id, recommendation_id, actor, request.notes, request.expected_version)

    @app.post(
        "/tenants/{tenant_id}/recommendations/{recommendation_id}/dismiss",
        response_model=RecommendationOut,
        dependencies=auth,
    )
    def dismiss_recommendation(
        tenant_id: str,
        recommendation_id: str,
        request: Optional[DecisionRequest] = None,
        actor: Optional[Actor] = Depends(get_actor),
        pipeline: FeedbackPipeline = Depends(get_pipeline),
    ):
        request = request or DecisionRequest()
        return pipeline.dismiss(tenant_id, recommendation_id, actor, request.notes, request.expected_version)

    @app.get("/tenants/{tenant_id}/outputs", response_model=OutputsResponse, dependencies=auth)
    def outputs(
        tenant_id: str,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        actor: Optional[Actor] = Depends(get_actor),
        pipeline: FeedbackPipeline = Depends(get_pipeline),
    ):
        return pipeline.get_outputs(tenant_id, actor, start, end)

    @app.get("/tenants/{tenant_id}/alerts", response_model=List[AlertOut], dependencies=auth)
    def alerts(
        tenant_id: str,
        actor: Optional[Actor] = Depends(get_actor),
        pipeline: FeedbackPipeline = Depends(get_pipeline),
    ):
        return pipeline.list_alerts(tenant_id, actor)

    @app.get("/tenants/{tenant_id}/feedback/{event_id}", response_model=FeedbackView, dependencies=auth)
    def feedback(
        tenant_id: str,
        event_id: str,
        actor: Optional[Actor] = Depends(get_actor),
        pipeline: FeedbackPipeline = Depends(get_pipeline),
    ):
        return pipeline.get_feedback(tenant_id, event_id, actor)

    @app.get("/audit/{correlation_id}", response_model=List[AuditEntryOut], dependencies=auth)
    def audit_trail(
        correlation_id: str,
        actor: Optional[Actor] = Depends(get_actor),
        pipeline: FeedbackPipeline = Depends(get_pipeline),
    ):
        return pipeline.get_audit_trail(correlation_id, actor)


app = create_app()
