"""
Feedback agent orchestrator.

Gate -> Redaction -> Queue -> Clustering/Generation -> Safety Guard ->
Output Store -> Approval. Every stage boundary writes an audit entry.

One asyncio worker per tenant drains that tenant's queue into processing
windows. Generation calls are the only awaited external work and run in
parallel per tenant up to the configured limit.
"""

import asyncio
import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional, Set, Tuple, Union

from sqlalchemy.exc import IntegrityError

from feedback_agent.config import settings
from feedback_agent.database import SessionLocal
from feedback_agent.errors import (
    Backpressure,
    GenerationFailure,
    NotFound,
    RedactionFailure,
    SafetyViolation,
    ValidationError,
)
from feedback_agent.models.feedback import QuarantinedEvent, RawFeedbackEvent, RedactedFeedback
from feedback_agent.models.outputs import Cluster, ClusterStatus, Priority, Recommendation, Summary
from feedback_agent.schemas.feedback_schemas import FeedbackEvent, SubmitResult, SubmitStatus
from feedback_agent.schemas.output_schemas import (
    AgentStatus,
    AlertOut,
    AuditEntryOut,
    ClusterOut,
    FeedbackView,
    OutputsResponse,
    RawFeedbackOut,
    RecommendationOut,
    RedactedFeedbackOut,
    RunReportOut,
    SummaryOut,
)
from feedback_agent.services import (
    agent_config_service,
    alert_service,
    approval_service,
    audit_service,
    consent_gate,
    output_store,
    redaction_service,
    safety_service,
)
from feedback_agent.services.agent_config_service import AgentConfig
from feedback_agent.services.clustering_service import (
    ClusterDraft,
    FeedbackItem,
    calculate_time_window,
    cluster_feedback,
    derive_priority,
    extract_top_themes,
    fallback_theme,
    generate_risk_notes,
)
from feedback_agent.services.llm_client import (
    CLUSTER_SYSTEM_PROMPT,
    RECOMMENDATION_SYSTEM_PROMPT,
    OpenAITextGenerator,
    TextGenerator,
    build_cluster_prompt,
    build_recommendation_prompt,
    generate_with_retry,
    parse_json_object,
)
from feedback_agent.services.queue_service import QueuedEvent, QueueManager
from feedback_agent.services.rbac_service import Actor, Capability, authorize
from feedback_agent.utils.logging_config import (
    StructuredLogger,
    correlation_id_var,
    log_execution_time,
    metrics,
    tenant_id_var,
)
from feedback_agent.utils.preprocessing import to_naive_utc

logger = StructuredLogger(__name__)

PRIORITIES = {p.value for p in Priority}


def _parse_cluster_output(text: str) -> Tuple[str, str]:
    data = parse_json_object(text)
    label, summary = data.get("label"), data.get("summary")
    if not isinstance(label, str) or not label.strip():
        raise ValueError("Missing label")
    if not isinstance(summary, str) or not summary.strip():
        raise ValueError("Missing summary")
    return label.strip(), summary.strip()


def _parse_recommendations(text: str) -> List[Dict[str, Any]]:
    data = parse_json_object(text)
    recs = data.get("recommendations")
    if not isinstance(recs, list):
        raise ValueError("Missing recommendations list")
    return [r for r in recs if isinstance(r, dict)]


class _ClusterOutcome:
    """In-memory result for one cluster before it is persisted."""

    def __init__(self, draft: ClusterDraft):
        self.draft = draft
        self.id = uuid.uuid4().hex
        self.label: Optional[str] = None
        self.summary: Optional[str] = None
        self.status = ClusterStatus.SUMMARIZED.value
        self.error: Optional[Exception] = None

    def withhold(self, status: str, error: Exception) -> None:
        self.label = None
        self.summary = None
        self.status = status
        self.error = error

    @property
    def theme(self) -> str:
        return self.label or fallback_theme(self.draft.keywords)


class FeedbackPipeline:
    """
    Owns tenant queues, workers and the run lifecycle.

    Usage:
        pipeline = FeedbackPipeline()
        await pipeline.start()
        result = pipeline.submit_feedback(payload)
        ...
        await pipeline.stop()
    """

    def __init__(
        self,
        session_factory=None,
        generator: Optional[TextGenerator] = None,
        rule_provider: Optional[redaction_service.RuleSetProvider] = None,
        queues: Optional[QueueManager] = None,
        sleep=asyncio.sleep,
    ):
        self.session_factory = session_factory or SessionLocal
        self.generator = generator or OpenAITextGenerator()
        self.rules = rule_provider or redaction_service.default_provider
        self.queues = queues or QueueManager()
        self._sleep = sleep

        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._workers: Dict[str, asyncio.Task] = {}
        self._wakeups: Dict[str, asyncio.Event] = {}
        self._run_locks: Dict[str, asyncio.Lock] = {}
        self._semaphores: Dict[str, Tuple[int, asyncio.Semaphore]] = {}
        self._primitives_loop: Optional[asyncio.AbstractEventLoop] = None
        self._processing: Set[str] = set()
        self._sweeper: Optional[asyncio.Task] = None
        self._stopping = False

    # ============== INGEST ==============

    def submit_feedback(self, payload: Union[Dict[str, Any], FeedbackEvent]) -> SubmitResult:
        """
        Validate, redact, persist and enqueue one event.

        Returns queued on success, accepted when the event id was already
        ingested for the tenant, or rejected with a reason code.
        """
        correlation_id = uuid.uuid4().hex
        token = correlation_id_var.set(correlation_id)
        try:
            with self.session_factory() as db:
                return self._submit(db, payload, correlation_id)
        finally:
            correlation_id_var.reset(token)

    def _submit(self, db, payload, correlation_id: str) -> SubmitResult:
        try:
            event = consent_gate.validate_event(db, payload, correlation_id)
        except ValidationError as e:
            return SubmitResult(
                status=SubmitStatus.REJECTED,
                correlation_id=correlation_id,
                reason=e.code,
                detail=e.message,
            )

        tenant_id = event.tenant_id
        tenant_id_var.set(tenant_id)
        metrics.increment("feedback.submitted")

        quarantined = output_store.get_quarantined(db, tenant_id, event.event_id)
        if quarantined is not None:
            self._audit_rejection(db, event, correlation_id, RedactionFailure.code)
            return SubmitResult(
                status=SubmitStatus.REJECTED,
                event_id=event.event_id,
                correlation_id=quarantined.correlation_id,
                reason=RedactionFailure.code,
                detail="Event quarantined",
            )

        existing = output_store.get_raw(db, tenant_id, event.event_id)
        if existing is not None:
            metrics.increment("feedback.duplicate")
            return SubmitResult(
                status=SubmitStatus.ACCEPTED,
                event_id=event.event_id,
                correlation_id=existing.correlation_id,
            )

        config = agent_config_service.get_agent_config(db, tenant_id)
        if not config.enabled:
            self._audit_rejection(db, event, correlation_id, "agent_disabled")
            return SubmitResult(
                status=SubmitStatus.REJECTED,
                event_id=event.event_id,
                correlation_id=correlation_id,
                reason="agent_disabled",
                detail="Feedback agent is disabled for this tenant",
            )

        queue = self._queue_for(config)
        try:
            queue.ensure_capacity()
        except Backpressure as e:
            self._audit_rejection(db, event, correlation_id, e.code)
            return SubmitResult(
                status=SubmitStatus.REJECTED,
                event_id=event.event_id,
                correlation_id=correlation_id,
                reason=e.code,
                detail=e.message,
                retry_after=e.retry_after,
            )

        db.add(RawFeedbackEvent(
            tenant_id=tenant_id,
            event_id=event.event_id,
            submitted_at=to_naive_utc(event.submitted_at),
            module=event.module,
            severity=event.severity.value,
            role=event.role.value,
            text=event.text,
            attachments=list(event.attachments),
            consents=event.consents.model_dump(by_alias=True),
            correlation_id=correlation_id,
        ))

        rule_set = self.rules.current()
        try:
            result = redaction_service.redact(event.text, rule_set)
        except RedactionFailure as e:
            return self._quarantine(db, event, correlation_id, rule_set.version, e)

        db.add(RedactedFeedback(
            tenant_id=tenant_id,
            event_id=event.event_id,
            submitted_at=to_naive_utc(event.submitted_at),
            module=event.module,
            severity=event.severity.value,
            role=event.role.value,
            redacted_text=result.text,
            spans=[s.to_dict() for s in result.spans],
            rule_set_version=result.rule_set_version,
            correlation_id=correlation_id,
        ))
        try:
            audit_service.record_event(
                db,
                tenant_id=tenant_id,
                correlation_id=correlation_id,
                action="feedback.redacted",
                artifact_type="redacted_feedback",
                artifact_id=event.event_id,
                after_state={
                    "event_id": event.event_id,
                    "redacted_text": result.text,
                    "spans": [s.to_dict() for s in result.spans],
                    "rule_set_version": result.rule_set_version,
                },
                details={"categories": result.categories},
            )
        except IntegrityError:
            # Same event id ingested concurrently.
            db.rollback()
            return SubmitResult(status=SubmitStatus.ACCEPTED, event_id=event.event_id, correlation_id=correlation_id)

        try:
            queue.put(QueuedEvent(tenant_id, event.event_id, correlation_id))
        except Backpressure:
            # Persisted already; backlog recovery picks it up once there is room.
            logger.warning("Queue filled during ingest, deferring to backlog", event_id=event.event_id)
        self._notify(tenant_id)

        metrics.increment("feedback.queued")
        return SubmitResult(status=SubmitStatus.QUEUED, event_id=event.event_id, correlation_id=correlation_id)

    def _audit_rejection(self, db, event: FeedbackEvent, correlation_id: str, reason: str) -> None:
        audit_service.record_event(
            db,
            tenant_id=event.tenant_id,
            correlation_id=correlation_id,
            action="feedback.rejected",
            artifact_type="feedback_event",
            artifact_id=event.event_id,
            details={"reason": reason},
        )
        metrics.increment(f"feedback.rejected.{reason}")

    def _quarantine(self, db, event: FeedbackEvent, correlation_id: str, version: str, error: RedactionFailure) -> SubmitResult:
        db.add(QuarantinedEvent(
            tenant_id=event.tenant_id,
            event_id=event.event_id,
            reason=error.message,
            rule_set_version=version,
            correlation_id=correlation_id,
        ))
        audit_service.record_event(
            db,
            tenant_id=event.tenant_id,
            correlation_id=correlation_id,
            action="redaction.failed",
            artifact_type="feedback_event",
            artifact_id=event.event_id,
            details={"error": error.code, "rule_set_version": version},
        )
        alert_service.raise_alert(
            db,
            event.tenant_id,
            error,
            artifact_type="feedback_event",
            artifact_id=event.event_id,
            correlation_id=correlation_id,
        )
        return SubmitResult(
            status=SubmitStatus.REJECTED,
            event_id=event.event_id,
            correlation_id=correlation_id,
            reason=error.code,
            detail="Event quarantined",
        )

    # ============== QUEUES & WORKERS ==============

    def _queue_for(self, config: AgentConfig):
        queue = self.queues.get(config.tenant_id)
        if queue.capacity != config.queue_capacity or (
            (queue.bucket.rate_per_minute, queue.bucket.burst)
            != (config.admission_rate_per_minute, config.admission_burst)
        ):
            queue = self.queues.configure(
                config.tenant_id,
                capacity=config.queue_capacity,
                rate_per_minute=config.admission_rate_per_minute,
                burst=config.admission_burst,
            )
        return queue

    def _rebind_primitives(self) -> None:
        # Locks and semaphores belong to one event loop.
        loop = asyncio.get_running_loop()
        if self._primitives_loop is not loop:
            self._primitives_loop = loop
            self._run_locks = {}
            self._semaphores = {}

    def _semaphore(self, tenant_id: str, limit: int) -> asyncio.Semaphore:
        self._rebind_primitives()
        current = self._semaphores.get(tenant_id)
        if current is None or current[0] != limit:
            current = (limit, asyncio.Semaphore(limit))
            self._semaphores[tenant_id] = current
        return current[1]

    def _run_lock(self, tenant_id: str) -> asyncio.Lock:
        self._rebind_primitives()
        if tenant_id not in self._run_locks:
            self._run_locks[tenant_id] = asyncio.Lock()
        return self._run_locks[tenant_id]

    def _notify(self, tenant_id: str) -> None:
        """Wake (or start) the tenant worker. Safe to call from any thread."""
        loop = self._loop
        if loop is None or self._stopping or loop.is_closed():
            return
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is loop:
            self._ensure_worker(tenant_id)
        else:
            loop.call_soon_threadsafe(self._ensure_worker, tenant_id)

    def _ensure_worker(self, tenant_id: str) -> None:
        wakeup = self._wakeups.setdefault(tenant_id, asyncio.Event())
        task = self._workers.get(tenant_id)
        if task is None or task.done():
            self._workers[tenant_id] = asyncio.ensure_future(self._worker(tenant_id))
        wakeup.set()

    async def _worker(self, tenant_id: str) -> None:
        wakeup = self._wakeups[tenant_id]
        queue = self.queues.get(tenant_id)
        tenant_id_var.set(tenant_id)
        logger.info("Tenant worker started", tenant_id=tenant_id)
        while not self._stopping:
            try:
                if len(queue) == 0:
                    self.recover_backlog(tenant_id)
                if len(queue) == 0:
                    wakeup.clear()
                    try:
                        await asyncio.wait_for(wakeup.wait(), timeout=settings.worker_idle_wait)
                    except asyncio.TimeoutError:
                        pass
                    continue
                report = await self.process_window(tenant_id)
                if report.event_count == 0:
                    # Out of admission tokens.
                    await self._sleep(max(queue.bucket.seconds_until(1.0), 0.05))
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error("Tenant worker iteration failed", tenant_id=tenant_id, error=str(e), exc_info=True)
                metrics.increment("worker.errors")
                await self._sleep(settings.worker_idle_wait)

    async def start(self) -> None:
        """Recover the backlog and start workers and the expiry sweep."""
        self._loop = asyncio.get_running_loop()
        self._stopping = False
        self._wakeups = {}
        self._workers = {}
        recovered = self.recover_backlog()
        for tenant_id in self.queues.tenants():
            self._ensure_worker(tenant_id)
        self._sweeper = asyncio.ensure_future(self._sweep_loop())
        logger.info("Feedback pipeline started", recovered=recovered)

    async def stop(self) -> None:
        self._stopping = True
        tasks = list(self._workers.values())
        if self._sweeper is not None:
            tasks.append(self._sweeper)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._workers.clear()
        self._sweeper = None
        logger.info("Feedback pipeline stopped")

    async def _sweep_loop(self) -> None:
        while not self._stopping:
            await self._sleep(settings.expiry_sweep_interval)
            try:
                self.sweep_expired()
            except Exception as e:
                logger.error("Expiry sweep failed", error=str(e), exc_info=True)

    def recover_backlog(self, tenant_id: Optional[str] = None) -> int:
        """Re-enqueue redacted feedback that no run has consumed yet."""
        recovered = 0
        with self.session_factory() as db:
            for row in output_store.list_unprocessed(db, tenant_id):
                if row.tenant_id in self._processing:
                    continue
                queue = self.queues.get(row.tenant_id)
                if queue.contains(row.event_id):
                    continue
                try:
                    queue.put(QueuedEvent(row.tenant_id, row.event_id, row.correlation_id))
                except Backpressure:
                    continue
                recovered += 1
        if recovered:
            logger.info("Recovered queued feedback", count=recovered, tenant_id=tenant_id)
        return recovered

    # ============== PROCESSING ==============

    @log_execution_time("feedback_agent.pipeline")
    async def process_window(self, tenant_id: str, max_events: Optional[int] = None) -> RunReportOut:
        """
        Run one processing window for a tenant.

        Takes up to ``max_events`` admitted events off the queue, clusters
        them, generates labels, summaries and recommendations, applies the
        safety guard and persists everything with audit entries.
        """
        async with self._run_lock(tenant_id):
            queue = self.queues.get(tenant_id)
            batch = queue.take(max_events or settings.processing_batch_size)
            if not batch:
                return RunReportOut(event_count=0, cluster_ids=[], failed_cluster_ids=[],
                                    withheld_cluster_ids=[], recommendation_ids=[])

            run_id = uuid.uuid4().hex
            token = correlation_id_var.set(run_id)
            tenant_id_var.set(tenant_id)
            self._processing.add(tenant_id)
            try:
                with self.session_factory() as db:
                    return await self._run(db, tenant_id, run_id, [b.event_id for b in batch])
            finally:
                self._processing.discard(tenant_id)
                correlation_id_var.reset(token)

    async def _run(self, db, tenant_id: str, run_id: str, event_ids: List[str]) -> RunReportOut:
        rows = [r for r in output_store.get_redacted_batch(db, tenant_id, event_ids) if r.processed_run_id is None]
        empty = RunReportOut(run_id=run_id, correlation_id=run_id, event_count=0, cluster_ids=[],
                             failed_cluster_ids=[], withheld_cluster_ids=[], recommendation_ids=[])
        if not rows:
            return empty

        config = agent_config_service.get_agent_config(db, tenant_id)
        rule_set = self.rules.current()
        items = [
            FeedbackItem(
                event_id=r.event_id,
                module=r.module,
                severity=r.severity,
                submitted_at=r.submitted_at,
                text=r.redacted_text,
                redaction_count=len(r.spans or []),
            )
            for r in rows
        ]

        # Generation first; nothing is written until every await is done.
        drafts = cluster_feedback(items)
        semaphore = self._semaphore(tenant_id, config.max_concurrent_generations)
        outcomes = list(await asyncio.gather(
            *(self._summarize(draft, semaphore, tenant_id) for draft in drafts)
        ))

        for outcome in outcomes:
            if outcome.status == ClusterStatus.SUMMARIZED.value:
                result = safety_service.check_fields({"label": outcome.label, "summary": outcome.summary}, rule_set)
                if not result.passed:
                    outcome.withhold(
                        ClusterStatus.HUMAN_REVIEW.value,
                        SafetyViolation("Generated cluster summary withheld", result.violations),
                    )

        recommendations, recommend_error = await self._recommend(tenant_id, run_id, outcomes, rule_set)

        # One transaction for the run: a failure here leaves the events unprocessed
        # and nothing half-written for backlog recovery to duplicate.
        with audit_service.atomic(db):
            audit_service.record_event(
                db,
                tenant_id=tenant_id,
                correlation_id=run_id,
                action="run.started",
                artifact_type="run",
                artifact_id=run_id,
                details={"event_count": len(items), "rule_set_version": rule_set.version},
            )

            version = output_store.next_cluster_version(db, tenant_id)
            for outcome in outcomes:
                self._persist_cluster(db, tenant_id, run_id, version, outcome)

            if recommend_error is not None:
                self._report_failure(db, tenant_id, run_id, recommend_error, "run", run_id, "generation.failed")

            for rec in recommendations:
                db.add(rec)
                audit_service.record_event(
                    db,
                    tenant_id=tenant_id,
                    correlation_id=run_id,
                    action="recommendation.created",
                    artifact_type="recommendation",
                    artifact_id=rec.id,
                    after_state=output_store.recommendation_state(rec),
                )

            summary = self._build_summary(tenant_id, run_id, items, outcomes)
            db.add(summary)
            for row in rows:
                row.processed_run_id = run_id
            audit_service.record_event(
                db,
                tenant_id=tenant_id,
                correlation_id=run_id,
                action="summary.created",
                artifact_type="summary",
                artifact_id=summary.id,
                after_state=output_store.summary_state(summary),
            )

            report = RunReportOut(
                run_id=run_id,
                correlation_id=run_id,
                event_count=len(items),
                cluster_ids=[o.id for o in outcomes],
                failed_cluster_ids=[o.id for o in outcomes if o.status == ClusterStatus.SUMMARY_FAILED.value],
                withheld_cluster_ids=[o.id for o in outcomes if o.status == ClusterStatus.HUMAN_REVIEW.value],
                summary_id=summary.id,
                recommendation_ids=[r.id for r in recommendations],
            )
            audit_service.record_event(
                db,
                tenant_id=tenant_id,
                correlation_id=run_id,
                action="run.completed",
                artifact_type="run",
                artifact_id=run_id,
                details={
                    "clusters": len(report.cluster_ids),
                    "failed": len(report.failed_cluster_ids),
                    "withheld": len(report.withheld_cluster_ids),
                    "recommendations": len(report.recommendation_ids),
                },
            )

        metrics.increment("runs.completed")
        logger.info(
            "Processing window complete",
            tenant_id=tenant_id,
            events=report.event_count,
            clusters=len(report.cluster_ids),
            recommendations=len(report.recommendation_ids),
        )
        return report

    async def _summarize(self, draft: ClusterDraft, semaphore: asyncio.Semaphore, tenant_id: str) -> _ClusterOutcome:
        outcome = _ClusterOutcome(draft)
        prompt = build_cluster_prompt([m.text for m in draft.members], draft.modules, draft.keywords)
        context = {"system": CLUSTER_SYSTEM_PROMPT, "kind": "cluster_summary", "tenant_id": tenant_id}
        async with semaphore:
            try:
                outcome.label, outcome.summary = await generate_with_retry(
                    self.generator, prompt, context, sleep=self._sleep, parse=_parse_cluster_output,
                )
            except GenerationFailure as e:
                outcome.withhold(ClusterStatus.SUMMARY_FAILED.value, e)
        return outcome

    async def _recommend(
        self, tenant_id: str, run_id: str, outcomes: List[_ClusterOutcome], rule_set
    ) -> Tuple[List[Recommendation], Optional[GenerationFailure]]:
        """Generate recommendations without touching the store; a failure is returned for the caller to report."""
        eligible = {o.id: o for o in outcomes if o.status == ClusterStatus.SUMMARIZED.value}
        if not eligible:
            return [], None

        prompt = build_recommendation_prompt([
            {
                "cluster_id": o.id,
                "label": o.label,
                "summary": o.summary,
                "member_count": len(o.draft.members),
                "modules": o.draft.modules,
                "severities": o.draft.severities,
            }
            for o in eligible.values()
        ])
        context = {"system": RECOMMENDATION_SYSTEM_PROMPT, "kind": "recommendations", "tenant_id": tenant_id}
        try:
            proposals = await generate_with_retry(
                self.generator, prompt, context, sleep=self._sleep, parse=_parse_recommendations,
            )
        except GenerationFailure as e:
            return [], e

        recommendations = []
        seen: Set[str] = set()
        for proposal in proposals:
            cluster_id = proposal.get("cluster_id")
            outcome = eligible.get(cluster_id) if isinstance(cluster_id, str) else None
            if outcome is None or outcome.id in seen:
                continue
            raw_actions = proposal.get("proposed_actions")
            if not isinstance(raw_actions, list):
                continue
            actions = [a.strip() for a in raw_actions if isinstance(a, str) and a.strip()]
            if not actions:
                continue
            theme = proposal.get("theme") if isinstance(proposal.get("theme"), str) and proposal["theme"].strip() else outcome.label
            theme = theme.strip()

            fields = {"theme": theme}
            fields.update({f"action:{i}": a for i, a in enumerate(actions)})
            result = safety_service.check_fields(fields, rule_set)
            if not result.passed:
                outcome.withhold(
                    ClusterStatus.HUMAN_REVIEW.value,
                    SafetyViolation("Generated recommendation withheld", result.violations),
                )
                continue

            priority = proposal.get("priority")
            if not isinstance(priority, str) or priority not in PRIORITIES:
                priority = derive_priority(outcome.draft.max_severity, len(outcome.draft.members)).value

            seen.add(outcome.id)
            recommendations.append(Recommendation(
                id=uuid.uuid4().hex,
                tenant_id=tenant_id,
                run_id=run_id,
                cluster_id=outcome.id,
                theme=theme,
                proposed_actions=actions,
                linked_feedback_ids=outcome.draft.member_ids,
                privacy_review=f"PII-redacted (rule set {rule_set.version}); no personal data quoted.",
                priority=priority,
                status=approval_service.PENDING,
                version=1,
                correlation_id=run_id,
            ))

        # A recommendation from a cluster that was later withheld is dropped too.
        return [r for r in recommendations if eligible[r.cluster_id].status == ClusterStatus.SUMMARIZED.value], None

    def _persist_cluster(self, db, tenant_id: str, run_id: str, version: int, outcome: _ClusterOutcome) -> None:
        draft = outcome.draft
        cluster = Cluster(
            id=outcome.id,
            tenant_id=tenant_id,
            run_id=run_id,
            version=version,
            member_ids=draft.member_ids,
            member_count=len(draft.members),
            modules=draft.modules,
            severities=draft.severities,
            keywords=draft.keywords,
            is_singleton=draft.is_singleton,
            label=outcome.label,
            summary=outcome.summary,
            status=outcome.status,
            correlation_id=run_id,
        )
        db.add(cluster)
        audit_service.record_event(
            db,
            tenant_id=tenant_id,
            correlation_id=run_id,
            action=f"cluster.{outcome.status}",
            artifact_type="cluster",
            artifact_id=cluster.id,
            after_state=output_store.cluster_state(cluster),
        )
        if outcome.error is not None:
            action = "safety.violation" if isinstance(outcome.error, SafetyViolation) else "generation.failed"
            self._report_failure(db, tenant_id, run_id, outcome.error, "cluster", cluster.id, action)

    def _report_failure(self, db, tenant_id: str, run_id: str, error, artifact_type: str, artifact_id: str, action: str) -> None:
        audit_service.record_event(
            db,
            tenant_id=tenant_id,
            correlation_id=run_id,
            action=action,
            artifact_type=artifact_type,
            artifact_id=artifact_id,
            details=error.to_dict(),
        )
        alert_service.raise_alert(
            db,
            tenant_id,
            error,
            artifact_type=artifact_type,
            artifact_id=artifact_id,
            correlation_id=run_id,
        )

    def _build_summary(self, tenant_id: str, run_id: str, items: List[FeedbackItem], outcomes: List[_ClusterOutcome]) -> Summary:
        window_start, window_end = calculate_time_window(items)
        themes = extract_top_themes([
            {"theme": o.theme, "member_count": len(o.draft.members), "modules": o.draft.modules}
            for o in outcomes
        ])
        return Summary(
            id=uuid.uuid4().hex,
            tenant_id=tenant_id,
            run_id=run_id,
            window_start=window_start,
            window_end=window_end,
            top_themes=themes,
            total_events=len(items),
            risk_notes=generate_risk_notes(items),
            correlation_id=run_id,
        )

    # ============== READ SIDE ==============

    def get_status(self, tenant_id: str, actor: Actor) -> AgentStatus:
        with self.session_factory() as db:
            authorize(db, actor, Capability.READ_REDACTED, tenant_id)
            config = agent_config_service.get_agent_config(db, tenant_id)
            return AgentStatus(
                tenant_id=tenant_id,
                enabled=config.enabled,
                autonomy=config.autonomy,
                last_run=output_store.last_run_at(db, tenant_id),
                queue_size=self.queues.size(tenant_id),
                error_count=alert_service.count_recent(db, tenant_id),
                is_processing=tenant_id in self._processing,
            )

    def list_pending_recommendations(self, tenant_id: str, actor: Actor) -> List[RecommendationOut]:
        with self.session_factory() as db:
            authorize(db, actor, Capability.READ_REDACTED, tenant_id)
            return [RecommendationOut.model_validate(r) for r in output_store.list_pending_recommendations(db, tenant_id)]

    def list_approved_recommendations(self, tenant_id: str, actor: Actor) -> List[RecommendationOut]:
        """Approved, human-audited recommendations for downstream integrations."""
        with self.session_factory() as db:
            authorize(db, actor, Capability.READ_REDACTED, tenant_id)
            return [RecommendationOut.model_validate(r) for r in approval_service.list_approved_recommendations(db, tenant_id)]

    def get_outputs(
        self,
        tenant_id: str,
        actor: Actor,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> OutputsResponse:
        with self.session_factory() as db:
            authorize(db, actor, Capability.READ_REDACTED, tenant_id)
            outputs = output_store.get_outputs(db, tenant_id, start, end)
            return OutputsResponse(
                summaries=[SummaryOut.model_validate(s) for s in outputs["summaries"]],
                clusters=[ClusterOut.model_validate(c) for c in outputs["clusters"]],
                recommendations=[RecommendationOut.model_validate(r) for r in outputs["recommendations"]],
            )

    def get_audit_trail(self, correlation_id: str, actor: Actor) -> List[AuditEntryOut]:
        """Entries for a correlation id, limited to the actor's tenant."""
        with self.session_factory() as db:
            authorize(db, actor, Capability.READ_AUDIT, actor.tenant_id if actor else "unknown", correlation_id)
            entries = audit_service.get_audit_trail(db, correlation_id, actor.tenant_id)
            return [AuditEntryOut.model_validate(e) for e in entries]

    def list_alerts(self, tenant_id: str, actor: Actor) -> List[AlertOut]:
        with self.session_factory() as db:
            authorize(db, actor, Capability.READ_REDACTED, tenant_id)
            return [AlertOut.model_validate(a) for a in alert_service.list_alerts(db, tenant_id)]

    def get_feedback(self, tenant_id: str, event_id: str, actor: Actor) -> FeedbackView:
        """Redacted feedback; raw text only for actors holding read_raw."""
        with self.session_factory() as db:
            authorize(db, actor, Capability.READ_REDACTED, tenant_id)
            redacted = output_store.get_redacted(db, tenant_id, event_id)
            if redacted is None:
                raise NotFound("Feedback not found", event_id=event_id)
            view = FeedbackView(redacted=RedactedFeedbackOut.model_validate(redacted))
            if actor.has(Capability.READ_RAW):
                raw = output_store.get_raw(db, tenant_id, event_id)
                audit_service.record_event(
                    db,
                    tenant_id=tenant_id,
                    correlation_id=redacted.correlation_id,
                    action="feedback.raw_read",
                    actor=actor.actor_id,
                    artifact_type="feedback_event",
                    artifact_id=event_id,
                )
                view.raw = RawFeedbackOut.model_validate(raw) if raw is not None else None
            return view

    # ============== DECISIONS & CONFIGURATION ==============

    def approve(
        self,
        tenant_id: str,
        recommendation_id: str,
        actor: Actor,
        notes: Optional[str] = None,
        expected_version: Optional[int] = None,
    ) -> RecommendationOut:
        with self.session_factory() as db:
            rec = approval_service.approve(db, tenant_id, recommendation_id, actor, notes, expected_version)
            return RecommendationOut.model_validate(rec)

    def dismiss(
        self,
        tenant_id: str,
        recommendation_id: str,
        actor: Actor,
        notes: Optional[str] = None,
        expected_version: Optional[int] = None,
    ) -> RecommendationOut:
        with self.session_factory() as db:
            rec = approval_service.dismiss(db, tenant_id, recommendation_id, actor, notes, expected_version)
            return RecommendationOut.model_validate(rec)

    def sweep_expired(self, now: Optional[datetime] = None) -> List[str]:
        with self.session_factory() as db:
            return approval_service.sweep_expired(db, now=now)

    def update_configuration(self, tenant_id: str, actor: Actor, changes: Dict[str, Any]) -> AgentConfig:
        """Update flags and limits; takes effect for the next admission."""
        correlation_id = uuid.uuid4().hex
        with self.session_factory() as db:
            config = agent_config_service.update_agent_config(db, tenant_id, actor, changes, correlation_id)
        self._queue_for(config)
        if config.enabled:
            self._notify(tenant_id)
        return config

    async def run_now(self, tenant_id: str, actor: Actor) -> RunReportOut:
        """Operator-triggered processing window."""
        with self.session_factory() as db:
            authorize(db, actor, Capability.CONFIGURE, tenant_id)
        return await self.process_window(tenant_id)

    def verify_audit_chain(self) -> Dict[str, Any]:
        with self.session_factory() as db:
            return audit_service.verify_chain(db)
