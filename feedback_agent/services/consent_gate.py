"""
Consent & validation gate.
First stop for every inbound event: shape, length and consent checks.
"""

from typing import Any, Dict, List, Union

from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.orm import Session

from feedback_agent.config import settings
from feedback_agent.errors import ValidationError
from feedback_agent.schemas.feedback_schemas import FeedbackEvent
from feedback_agent.services import audit_service
from feedback_agent.utils.logging_config import StructuredLogger, metrics

logger = StructuredLogger(__name__)


def _field_errors(exc: PydanticValidationError) -> List[str]:
    # Locations and messages only; the offending input may contain PII.
    return [".".join(str(p) for p in err["loc"]) + ": " + err["msg"] for err in exc.errors()]


def _tenant_of(payload: Any) -> str:
    if isinstance(payload, FeedbackEvent):
        return payload.tenant_id
    if isinstance(payload, dict):
        tenant = payload.get("tenantId") or payload.get("tenant_id")
        if isinstance(tenant, str) and tenant:
            return tenant
    return "unknown"


def _event_id_of(payload: Any):
    if isinstance(payload, dict):
        event_id = payload.get("eventId") or payload.get("event_id")
        if isinstance(event_id, str):
            return event_id[:200]
    return None


def check_event(payload: Union[Dict[str, Any], FeedbackEvent]) -> FeedbackEvent:
    """Validate without side effects. Raises ValidationError."""
    if isinstance(payload, FeedbackEvent):
        event = payload
    else:
        if not isinstance(payload, dict):
            raise ValidationError("Event must be an object", reason="malformed")
        try:
            event = FeedbackEvent.model_validate(payload)
        except PydanticValidationError as e:
            raise ValidationError("Malformed event", reason="malformed", errors=_field_errors(e))

    length = len(event.text.strip())
    if length < settings.min_text_length or length > settings.max_text_length:
        raise ValidationError(
            f"Text length must be between {settings.min_text_length} and {settings.max_text_length}",
            reason="text_length",
            length=length,
        )
    if not event.consents.improvement_processing:
        raise ValidationError("Consent for improvement processing not given", reason="consent_missing")
    return event


def validate_event(
    db: Session,
    payload: Union[Dict[str, Any], FeedbackEvent],
    correlation_id: str,
) -> FeedbackEvent:
    """
    Validate an inbound event and audit the outcome.

    Args:
        db: Database session (audit log only)
        payload: Transport payload (camelCase or snake_case keys) or an event
        correlation_id: Ingest correlation id

    Raises:
        ValidationError: missing/malformed fields, text length outside
            bounds, or consents.improvementProcessing not true
    """
    tenant_id = _tenant_of(payload)
    try:
        event = check_event(payload)
    except ValidationError as e:
        audit_service.record_event(
            db,
            tenant_id=tenant_id,
            correlation_id=correlation_id,
            action="feedback.rejected",
            artifact_type="feedback_event",
            artifact_id=_event_id_of(payload),
            details={"reason": e.details.get("reason"), "errors": e.details.get("errors", [])},
        )
        metrics.increment("gate.rejected")
        logger.info("Feedback rejected", reason=e.details.get("reason"))
        raise

    audit_service.record_event(
        db,
        tenant_id=event.tenant_id,
        correlation_id=correlation_id,
        action="feedback.accepted",
        artifact_type="feedback_event",
        artifact_id=event.event_id,
        details={"module": event.module, "severity": event.severity.value},
    )
    metrics.increment("gate.accepted")
    return event
