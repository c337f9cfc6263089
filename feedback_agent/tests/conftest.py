import json
from datetime import datetime, timedelta

import pytest
from fastapi.testclient import TestClient

from feedback_agent.api.server import create_app
from feedback_agent.database import init_db, make_engine, make_session_factory
from feedback_agent.models.outputs import Recommendation
from feedback_agent.pipelines.feedback_pipeline import FeedbackPipeline
from feedback_agent.services.llm_client import TextGenerator
from feedback_agent.services.queue_service import QueueManager
from feedback_agent.services.rbac_service import Actor

TENANT = "care-home-1"
OTHER_TENANT = "care-home-2"

NURSE_KELLY_TEXT = "Nurse Kelly said the medication save button isn't working, call her on 07912345678"


class StubGenerator(TextGenerator):
    """Deterministic stand-in for the model. Records every call."""

    def __init__(
        self,
        label="medication save failures",
        summary="Staff report that saving medication records fails on the tablet.",
        actions=None,
        priority="high",
        fail_kinds=(),
    ):
        self.label = label
        self.summary = summary
        self.actions = actions or [
            "Investigate the medication save handler",
            "Show a clear error when a save fails",
        ]
        self.priority = priority
        self.fail_kinds = set(fail_kinds)
        self.calls = []

    async def generate(self, prompt, context):
        kind = context.get("kind")
        self.calls.append(kind)
        if kind in self.fail_kinds:
            raise RuntimeError("model unavailable")
        if kind == "cluster_summary":
            return json.dumps({"label": self.label, "summary": self.summary})
        clusters = json.loads(prompt.split("\n", 1)[1])
        return json.dumps({
            "recommendations": [
                {
                    "cluster_id": c["cluster_id"],
                    "theme": c["label"],
                    "proposed_actions": self.actions,
                    "priority": self.priority,
                }
                for c in clusters
            ]
        })


async def no_sleep(seconds):
    return None


@pytest.fixture
def engine():
    engine = make_engine("sqlite://")
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return make_session_factory(engine)


@pytest.fixture
def test_db(session_factory):
    """A database session on a fresh in-memory store."""
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def generator():
    return StubGenerator()


@pytest.fixture
def pipeline(session_factory, generator):
    return FeedbackPipeline(
        session_factory=session_factory,
        generator=generator,
        queues=QueueManager(),
        sleep=no_sleep,
    )


@pytest.fixture
def admin():
    return Actor(actor_id="admin-1", role="pilot_admin", tenant_id=TENANT)


@pytest.fixture
def compliance():
    return Actor(actor_id="dpo-1", role="compliance_officer", tenant_id=TENANT)


@pytest.fixture
def developer():
    return Actor(actor_id="dev-1", role="developer", tenant_id=TENANT)


@pytest.fixture
def other_admin():
    return Actor(actor_id="admin-2", role="pilot_admin", tenant_id=OTHER_TENANT)


@pytest.fixture
def enabled_pipeline(pipeline, admin, other_admin):
    """Pipeline with the agent switched on for both test tenants."""
    pipeline.update_configuration(TENANT, admin, {"enabled": True})
    pipeline.update_configuration(OTHER_TENANT, other_admin, {"enabled": True})
    return pipeline


@pytest.fixture
def client(pipeline):
    """FastAPI test client fixture."""
    return TestClient(create_app(pipeline))


def make_event(event_id="evt-1", tenant_id=TENANT, text=NURSE_KELLY_TEXT, **overrides):
    """Transport payload with camelCase keys."""
    payload = {
        "eventId": event_id,
        "tenantId": tenant_id,
        "submittedAt": "2026-10-01T09:30:00Z",
        "module": "medication",
        "severity": "high",
        "role": "nurse",
        "text": text,
        "attachments": [],
        "consents": {"improvementProcessing": True},
    }
    payload.update(overrides)
    return payload


def make_recommendation(db, tenant_id=TENANT, age_days=0, **overrides):
    """Insert a pending recommendation directly."""
    created = datetime(2026, 10, 1, 12, 0) - timedelta(days=age_days)
    values = dict(
        id=f"rec-{age_days}-{tenant_id}",
        tenant_id=tenant_id,
        run_id="run-1",
        cluster_id="cluster-1",
        theme="medication save failures",
        proposed_actions=["Investigate the medication save handler"],
        linked_feedback_ids=["evt-1"],
        privacy_review="PII-redacted (rule set builtin-1); no personal data quoted.",
        priority="high",
        status="pending",
        version=1,
        correlation_id="run-1",
        created_at=created,
    )
    values.update(overrides)
    rec = Recommendation(**values)
    db.add(rec)
    db.commit()
    return rec
