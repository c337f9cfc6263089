"""
Error taxonomy for the feedback agent pipeline.

Recoverable errors (ValidationError, Backpressure) are returned to the caller.
Fail-closed errors are alerted and audited, never swallowed.
"""

from typing import Any, Dict, List, Optional


class FeedbackAgentError(Exception):
    """Base class for all pipeline errors."""

    code = "feedback_agent_error"
    fail_closed = False

    def __init__(self, message: str, **details: Any):
        super().__init__(message)
        self.message = message
        self.details: Dict[str, Any] = details

    def to_dict(self) -> Dict[str, Any]:
        return {"code": self.code, "message": self.message, **self.details}


class ValidationError(FeedbackAgentError):
    """Malformed or unconsented input. Caller can correct and resubmit."""

    code = "validation_error"


class Backpressure(FeedbackAgentError):
    """Tenant queue is full. Caller should retry later."""

    code = "backpressure"

    def __init__(self, message: str, retry_after: int = 1, **details: Any):
        super().__init__(message, retry_after=retry_after, **details)
        self.retry_after = retry_after


class AgentDisabled(FeedbackAgentError):
    """The tenant's agent.enabled flag is off; admission is halted."""

    code = "agent_disabled"


class RedactionFailure(FeedbackAgentError):
    """Redaction could not complete. The event is quarantined."""

    code = "redaction_failure"
    fail_closed = True


class GenerationFailure(FeedbackAgentError):
    """The text-generation capability failed after all retries."""

    code = "generation_failure"
    fail_closed = True


class SafetyViolation(FeedbackAgentError):
    """Generated content failed the safety guard and was withheld."""

    code = "safety_violation"
    fail_closed = True

    def __init__(self, message: str, violations: Optional[List[str]] = None, **details: Any):
        super().__init__(message, violations=violations or [], **details)
        self.violations = violations or []


class InvalidTransition(FeedbackAgentError):
    """Recommendation status change not allowed from its current state."""

    code = "invalid_transition"
    fail_closed = True


class AuthorizationError(FeedbackAgentError):
    """RBAC denial."""

    code = "authorization_error"
    fail_closed = True


class NotFound(FeedbackAgentError):
    """Artifact does not exist within the caller's tenant."""

    code = "not_found"
