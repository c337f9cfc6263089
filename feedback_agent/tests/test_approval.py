"""Tests for the recommendation approval state machine."""

from datetime import datetime, timedelta

import pytest

from conftest import OTHER_TENANT, TENANT, make_recommendation
from feedback_agent.errors import AuthorizationError, InvalidTransition, NotFound
from feedback_agent.models.outputs import OperationalAlert, Recommendation
from feedback_agent.services import approval_service, audit_service
from feedback_agent.services.rbac_service import Actor


class TestDecisions:
    """Human approve/dismiss."""

    def test_approve(self, test_db, admin):
        rec = make_recommendation(test_db)
        approved = approval_service.approve(test_db, TENANT, rec.id, admin, notes="Ship it")
        assert approved.status == "approved"
        assert approved.version == 2
        assert approved.decided_by == "admin-1"
        assert approved.decision_notes == "Ship it"
        assert approved.decided_at is not None

    def test_approval_audited_with_states(self, test_db, admin):
        rec = make_recommendation(test_db)
        approval_service.approve(test_db, TENANT, rec.id, admin)
        (entry,) = audit_service.list_entries(test_db, TENANT, action="recommendation.approved")
        assert entry.actor == "admin-1"
        assert entry.actor_type == "human"
        assert entry.correlation_id == "run-1"
        assert entry.before_hash != entry.after_hash
        assert entry.after_state["status"] == "approved"

    def test_dismiss(self, compliance, test_db):
        rec = make_recommendation(test_db)
        dismissed = approval_service.dismiss(test_db, TENANT, rec.id, compliance, notes="Duplicate")
        assert dismissed.status == "dismissed"

    def test_developer_cannot_approve(self, test_db, developer):
        rec = make_recommendation(test_db)
        with pytest.raises(AuthorizationError):
            approval_service.approve(test_db, TENANT, rec.id, developer)
        assert test_db.get(Recommendation, rec.id).status == "pending"

    def test_other_tenant_recommendation_not_found(self, test_db):
        rec = make_recommendation(test_db, tenant_id=OTHER_TENANT)
        admin = Actor("admin-1", "pilot_admin", TENANT)
        with pytest.raises(NotFound):
            approval_service.approve(test_db, TENANT, rec.id, admin)

    def test_unknown_recommendation(self, test_db, admin):
        with pytest.raises(NotFound):
            approval_service.approve(test_db, TENANT, "missing", admin)


class TestInvalidTransitions:
    """Only pending recommendations can change state."""

    def test_approve_twice_rejected(self, test_db, admin):
        rec = make_recommendation(test_db)
        approval_service.approve(test_db, TENANT, rec.id, admin)
        with pytest.raises(InvalidTransition) as exc:
            approval_service.dismiss(test_db, TENANT, rec.id, admin)
        assert exc.value.details["current"] == "approved"
        assert exc.value.details["reason"] == "not_allowed"

    def test_invalid_transition_audited_and_alerted(self, test_db, admin):
        rec = make_recommendation(test_db)
        approval_service.approve(test_db, TENANT, rec.id, admin)
        with pytest.raises(InvalidTransition):
            approval_service.approve(test_db, TENANT, rec.id, admin)
        assert audit_service.list_entries(test_db, TENANT, action="recommendation.invalid_transition")
        alert = test_db.query(OperationalAlert).one()
        assert alert.kind == "invalid_transition"
        assert alert.artifact_id == rec.id

    def test_stale_version_rejected(self, test_db, admin):
        rec = make_recommendation(test_db)
        with pytest.raises(InvalidTransition) as exc:
            approval_service.approve(test_db, TENANT, rec.id, admin, expected_version=7)
        assert exc.value.details["reason"] == "concurrent_modification"
        assert test_db.get(Recommendation, rec.id).status == "pending"

    def test_concurrent_decisions_only_one_wins(self, session_factory, admin, compliance):
        with session_factory() as setup:
            rec_id = make_recommendation(setup).id

        first, second = session_factory(), session_factory()
        try:
            seen_by_second = second.get(Recommendation, rec_id)
            assert seen_by_second.status == "pending"

            approval_service.approve(first, TENANT, rec_id, admin)
            with pytest.raises(InvalidTransition) as exc:
                approval_service.transition(second, seen_by_second, "dismissed", compliance.actor_id)
            assert exc.value.details["reason"] == "concurrent_modification"
        finally:
            first.close()
            second.close()

        with session_factory() as check:
            rec = check.get(Recommendation, rec_id)
            assert rec.status == "approved"
            assert rec.version == 2


class TestExpiry:
    """System sweep of stale pending recommendations."""

    def test_sweep_expires_old_pending(self, test_db, admin):
        old = make_recommendation(test_db, age_days=31)
        fresh = make_recommendation(test_db, age_days=1)
        now = datetime(2026, 10, 1, 12, 0)
        expired = approval_service.sweep_expired(test_db, now=now, expiry_days=30)
        assert expired == [old.id]
        assert test_db.get(Recommendation, old.id).status == "expired"
        assert test_db.get(Recommendation, fresh.id).status == "pending"

    def test_sweep_audited_as_system(self, test_db):
        rec = make_recommendation(test_db, age_days=40)
        approval_service.sweep_expired(test_db, now=datetime(2026, 10, 1, 12, 0), expiry_days=30)
        (entry,) = audit_service.list_entries(test_db, TENANT, action="recommendation.expired")
        assert entry.actor == "system"
        assert entry.artifact_id == rec.id

    def test_sweep_skips_decided(self, test_db, admin):
        rec = make_recommendation(test_db, age_days=40)
        approval_service.approve(test_db, TENANT, rec.id, admin)
        assert approval_service.sweep_expired(test_db, now=datetime(2026, 10, 1, 12, 0) + timedelta(days=1)) == []

    def test_expired_cannot_be_approved(self, test_db, admin):
        rec = make_recommendation(test_db, age_days=40)
        approval_service.sweep_expired(test_db, now=datetime(2026, 10, 1, 12, 0), expiry_days=30)
        with pytest.raises(InvalidTransition):
            approval_service.approve(test_db, TENANT, rec.id, admin)


class TestApprovedListing:
    """Downstream integrations only see human-approved recommendations."""

    def test_lists_human_approved(self, test_db, admin):
        rec = make_recommendation(test_db)
        make_recommendation(test_db, age_days=2)
        approval_service.approve(test_db, TENANT, rec.id, admin)
        assert [r.id for r in approval_service.list_approved_recommendations(test_db, TENANT)] == [rec.id]

    def test_approved_without_human_audit_excluded(self, test_db):
        make_recommendation(test_db, status="approved")
        assert approval_service.list_approved_recommendations(test_db, TENANT) == []
