"""Tests for role-based access control."""

import pytest

from conftest import OTHER_TENANT, TENANT
from feedback_agent.errors import AuthorizationError
from feedback_agent.models.audit import AuditEntry
from feedback_agent.services import alert_service
from feedback_agent.services.rbac_service import Actor, Capability, Role, authorize


class TestCapabilities:
    """Role to capability mapping."""

    @pytest.mark.parametrize(
        "role,capability,allowed",
        [
            (Role.PILOT_ADMIN, Capability.APPROVE, True),
            (Role.PILOT_ADMIN, Capability.CONFIGURE, True),
            (Role.PILOT_ADMIN, Capability.READ_RAW, False),
            (Role.COMPLIANCE_OFFICER, Capability.READ_RAW, True),
            (Role.COMPLIANCE_OFFICER, Capability.CONFIGURE, False),
            (Role.DEVELOPER, Capability.READ_REDACTED, True),
            (Role.DEVELOPER, Capability.APPROVE, False),
            (Role.SUPPORT, Capability.READ_AUDIT, False),
        ],
    )
    def test_role_capabilities(self, role, capability, allowed):
        assert Actor("a", role.value, TENANT).has(capability) is allowed

    def test_unknown_role_has_nothing(self):
        assert not Actor("a", "superuser", TENANT).has(Capability.READ_REDACTED)


class TestAuthorize:
    """Denials raise and are audited."""

    def test_allowed(self, test_db, admin):
        assert authorize(test_db, admin, Capability.APPROVE, TENANT) is admin
        assert test_db.query(AuditEntry).count() == 0

    def test_missing_capability(self, test_db, developer):
        with pytest.raises(AuthorizationError) as exc:
            authorize(test_db, developer, Capability.APPROVE, TENANT)
        assert exc.value.details["reason"] == "missing_capability"
        entry = test_db.query(AuditEntry).one()
        assert entry.action == "authorization.denied"
        assert entry.actor == "dev-1"
        assert entry.details["capability"] == "approve"

    def test_denial_raises_alert(self, test_db, developer):
        with pytest.raises(AuthorizationError):
            authorize(test_db, developer, Capability.APPROVE, TENANT, correlation_id="req-1")
        (alert,) = alert_service.list_alerts(test_db, TENANT)
        assert alert.kind == "authorization_error"
        assert alert.correlation_id == "req-1"
        assert test_db.query(AuditEntry).one().correlation_id == "req-1"

    def test_cross_tenant_denied(self, test_db, admin):
        with pytest.raises(AuthorizationError) as exc:
            authorize(test_db, admin, Capability.READ_REDACTED, OTHER_TENANT)
        assert exc.value.details["reason"] == "tenant_mismatch"

    def test_missing_actor_denied(self, test_db):
        with pytest.raises(AuthorizationError) as exc:
            authorize(test_db, None, Capability.READ_REDACTED, TENANT)
        assert exc.value.details["reason"] == "unauthenticated"
        assert test_db.query(AuditEntry).one().actor == "anonymous"

    def test_unauthenticated_actor_denied(self, test_db):
        actor = Actor("admin-1", "pilot_admin", TENANT, authenticated=False)
        with pytest.raises(AuthorizationError):
            authorize(test_db, actor, Capability.APPROVE, TENANT)
