"""Tests for the consent & validation gate."""

import pytest

from conftest import TENANT, make_event
from feedback_agent.errors import ValidationError
from feedback_agent.models.audit import AuditEntry
from feedback_agent.schemas.feedback_schemas import FeedbackEvent, Severity
from feedback_agent.services.consent_gate import check_event, validate_event


class TestCheckEvent:
    """Shape, length and consent checks."""

    def test_valid_camel_case_payload(self):
        event = check_event(make_event())
        assert isinstance(event, FeedbackEvent)
        assert event.event_id == "evt-1"
        assert event.severity == Severity.HIGH
        assert event.consents.improvement_processing is True

    def test_snake_case_payload_accepted(self):
        payload = {
            "event_id": "evt-2",
            "tenant_id": TENANT,
            "submitted_at": "2026-10-01T09:30:00",
            "module": "rota",
            "severity": "low",
            "role": "manager",
            "text": "The rota export drops Sunday shifts",
            "consents": {"improvement_processing": True},
        }
        assert check_event(payload).module == "rota"

    def test_missing_consent_rejected(self):
        with pytest.raises(ValidationError) as exc:
            check_event(make_event(consents={"improvementProcessing": False}))
        assert exc.value.details["reason"] == "consent_missing"

    def test_missing_field_is_malformed(self):
        payload = make_event()
        del payload["module"]
        with pytest.raises(ValidationError) as exc:
            check_event(payload)
        assert exc.value.details["reason"] == "malformed"
        assert any("module" in e for e in exc.value.details["errors"])

    def test_unknown_severity_is_malformed(self):
        with pytest.raises(ValidationError) as exc:
            check_event(make_event(severity="urgent"))
        assert exc.value.details["reason"] == "malformed"

    def test_non_object_payload(self):
        with pytest.raises(ValidationError) as exc:
            check_event(["not", "an", "event"])
        assert exc.value.details["reason"] == "malformed"

    @pytest.mark.parametrize("text", ["too short", "   short   ", "x" * 2001])
    def test_text_length_bounds(self, text):
        with pytest.raises(ValidationError) as exc:
            check_event(make_event(text=text))
        assert exc.value.details["reason"] == "text_length"

    def test_length_boundaries_inclusive(self):
        assert check_event(make_event(text="x" * 10))
        assert check_event(make_event(text="x" * 2000))

    def test_errors_do_not_echo_input(self):
        with pytest.raises(ValidationError) as exc:
            check_event(make_event(severity="Call 07912345678"))
        assert "07912345678" not in str(exc.value.to_dict())


class TestValidateEvent:
    """Gate outcomes are audited."""

    def test_accepted_event_audited(self, test_db):
        validate_event(test_db, make_event(), "corr-1")
        entry = test_db.query(AuditEntry).one()
        assert entry.action == "feedback.accepted"
        assert entry.tenant_id == TENANT
        assert entry.artifact_id == "evt-1"

    def test_rejected_event_audited_with_reason(self, test_db):
        with pytest.raises(ValidationError):
            validate_event(test_db, make_event(consents={"improvementProcessing": False}), "corr-2")
        entry = test_db.query(AuditEntry).one()
        assert entry.action == "feedback.rejected"
        assert entry.details["reason"] == "consent_missing"
        assert entry.correlation_id == "corr-2"
