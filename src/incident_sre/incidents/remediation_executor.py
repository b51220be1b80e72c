"""Remediation executor: gated, idempotent, sequential playbook runs."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from opentelemetry import trace
from opentelemetry.trace import Status, StatusCode

from incident_sre.conventions import (
    INCIDENT_ID,
    INCIDENT_KEY,
    PLAYBOOK_ID,
    PLAYBOOK_VERSION,
    RUN_KEY,
    RUN_STATUS,
    SPAN_REMEDIATION_RUN,
    SPAN_REMEDIATION_STEP,
    STEP_ACTION_TYPE,
    STEP_ERROR_CODE,
    STEP_ID,
    STEP_STATUS,
)
from incident_sre.errors import IncidentNotFoundError
from incident_sre.incidents.evidence import check_evidence_predicates
from incident_sre.incidents.hashing import compute_inputs_hash, content_hash
from incident_sre.incidents.models import utcnow
from incident_sre.incidents.playbook import (
    RemediationRun,
    RemediationRunStatus,
    StepContext,
    StepDefinition,
    StepError,
    StepErrorCode,
    StepRecord,
    StepResult,
    StepStatus,
    compute_run_key,
    validate_idempotency_key,
)

if TYPE_CHECKING:
    from collections.abc import Callable, Mapping

    from incident_sre.events import EventLogger
    from incident_sre.incidents.models import Evidence, Incident
    from incident_sre.incidents.playbook import PlaybookDefinition, StepResources
    from incident_sre.incidents.playbook_registry import PlaybookRegistry
    from incident_sre.incidents.store import IncidentStore, RemediationStore

logger = logging.getLogger(__name__)

DEFAULT_LAWBOOK_VERSION = "none"

SKIP_CATEGORY_NOT_APPLICABLE = "CATEGORY_NOT_APPLICABLE"
SKIP_EVIDENCE_MISSING = "EVIDENCE_MISSING"


@dataclass
class RemediationRunResult:
    """What :meth:`RemediationExecutor.execute` hands back."""

    run: RemediationRun
    is_existing: bool = False

    @property
    def status(self) -> RemediationRunStatus:
        return self.run.status

    @property
    def skipped(self) -> bool:
        return self.run.status == RemediationRunStatus.SKIPPED

    @property
    def skip_reason(self) -> str | None:
        if not self.skipped or not self.run.result:
            return None
        return self.run.result.get("skipReason")

    def to_dict(self) -> dict[str, Any]:
        return {"run": self.run.to_dict(), "isExisting": self.is_existing}


class RemediationExecutor:
    """Plans and executes playbooks against incidents.

    A run is identified by ``incidentKey:playbookId:inputsHash``; asking for
    the same run twice returns the stored run without repeating any step.
    Gates (category applicability, required evidence) run before any step,
    so a skipped run has no external effect.  Steps execute one at a time
    and the first failure ends the run.
    """

    def __init__(
        self,
        registry: PlaybookRegistry,
        resources: StepResources,
        remediation_store: RemediationStore,
        incident_store: IncidentStore | None = None,
        event_logger: EventLogger | None = None,
        lawbook_version: str = DEFAULT_LAWBOOK_VERSION,
        clock: Callable[[], float] = time.monotonic,
        tracer_provider: trace.TracerProvider | None = None,
    ) -> None:
        if tracer_provider:
            self._tracer = tracer_provider.get_tracer(__name__)
        else:
            self._tracer = trace.get_tracer(__name__)
        self._registry = registry
        self._resources = resources
        self._remediation_store = remediation_store
        self._incident_store = incident_store or resources.incident_store
        self._event_logger = event_logger
        self._lawbook_version = lawbook_version
        self._clock = clock
        self._runs: list[RemediationRun] = []

    @property
    def runs(self) -> list[RemediationRun]:
        """Runs executed or skipped by this executor, in call order."""
        return self._runs

    @property
    def lawbook_version(self) -> str:
        return self._lawbook_version

    async def execute(
        self,
        incident_id: str,
        playbook_id: str,
        inputs: Mapping[str, Any] | None = None,
    ) -> RemediationRunResult:
        """Run *playbook_id* against *incident_id*.

        Raises:
            IncidentNotFoundError: if the incident does not exist.
            PlaybookNotFoundError: if the playbook is not registered.
            InvalidIdempotencyKeyError: if the derived run key is malformed.
        """
        incident = self._incident_store.get_incident(incident_id)
        if incident is None:
            raise IncidentNotFoundError(incident_id)
        playbook = self._registry.require(playbook_id)
        evidence = self._incident_store.get_evidence(incident_id)

        request_inputs = dict(inputs or {})
        inputs_hash = compute_inputs_hash(request_inputs)
        run_key = validate_idempotency_key(
            compute_run_key(incident.incident_key, playbook.id, inputs_hash)
        )

        existing = self._remediation_store.get_run_by_key(run_key)
        if existing is not None and existing.status != RemediationRunStatus.SKIPPED:
            logger.info("Existing run returned (idempotent): %s", run_key)
            return RemediationRunResult(run=existing, is_existing=True)

        if not playbook.applies_to(incident.category):
            category = incident.category.value if incident.category else "UNCLASSIFIED"
            return self._skip(
                existing,
                incident,
                playbook,
                run_key,
                inputs_hash,
                SKIP_CATEGORY_NOT_APPLICABLE,
                f"Playbook {playbook.id} does not apply to category {category}",
            )

        check = check_evidence_predicates(playbook.required_evidence, evidence)
        if not check.satisfied:
            return self._skip(
                existing,
                incident,
                playbook,
                run_key,
                inputs_hash,
                SKIP_EVIDENCE_MISSING,
                "Required evidence not present",
                missing=[p.to_dict() for p in check.missing],
            )

        resolved_inputs = {
            **request_inputs,
            "incidentId": incident.id,
            "incidentKey": incident.incident_key,
        }
        run = RemediationRun(
            run_key=run_key,
            incident_id=incident.id,
            playbook_id=playbook.id,
            playbook_version=playbook.version,
            status=RemediationRunStatus.PLANNED,
            lawbook_version=self._lawbook_version,
            inputs_hash=inputs_hash,
            planned=self._plan(playbook, resolved_inputs, inputs_hash),
        )

        if existing is not None:
            # A skipped run is re-planned under the same key once its gates pass.
            run.id = existing.id
            run.created_at = existing.created_at
            run = self._remediation_store.update_run(run)
        else:
            run, created = self._remediation_store.upsert_run_by_key(run)
            if not created:
                logger.info("Existing run returned (idempotent): %s", run_key)
                return RemediationRunResult(run=run, is_existing=True)

        self._audit("log_remediation_planned", run)
        await self._run_steps(run, incident, playbook, evidence, resolved_inputs)
        self._runs.append(run)
        return RemediationRunResult(run=run)

    # -----------------------------------------------------------------------
    # Planning and gating
    # -----------------------------------------------------------------------

    def _plan(
        self,
        playbook: PlaybookDefinition,
        resolved_inputs: dict[str, Any],
        inputs_hash: str,
    ) -> dict[str, Any]:
        return {
            "playbookId": playbook.id,
            "playbookVersion": playbook.version,
            "steps": [
                {
                    "stepId": step.step_id,
                    "actionType": step.action_type.value,
                    "resolvedInputs": dict(resolved_inputs),
                }
                for step in playbook.steps
            ],
            "lawbookVersion": self._lawbook_version,
            "inputsHash": inputs_hash,
        }

    def _skip(
        self,
        existing: RemediationRun | None,
        incident: Incident,
        playbook: PlaybookDefinition,
        run_key: str,
        inputs_hash: str,
        skip_reason: str,
        message: str,
        missing: list[dict[str, Any]] | None = None,
    ) -> RemediationRunResult:
        if existing is not None:
            return RemediationRunResult(run=existing, is_existing=True)

        result: dict[str, Any] = {"skipReason": skip_reason, "message": message}
        if missing is not None:
            result["missingEvidence"] = missing
        run = RemediationRun(
            run_key=run_key,
            incident_id=incident.id,
            playbook_id=playbook.id,
            playbook_version=playbook.version,
            status=RemediationRunStatus.SKIPPED,
            lawbook_version=self._lawbook_version,
            inputs_hash=inputs_hash,
            result=result,
        )
        run, created = self._remediation_store.upsert_run_by_key(run)
        logger.info("Remediation %s skipped for %s: %s", playbook.id, incident.incident_key, message)
        if created:
            self._audit("log_remediation_skipped", run, skip_reason, message)
            self._runs.append(run)
        return RemediationRunResult(run=run, is_existing=not created)

    # -----------------------------------------------------------------------
    # Execution
    # -----------------------------------------------------------------------

    async def _run_steps(
        self,
        run: RemediationRun,
        incident: Incident,
        playbook: PlaybookDefinition,
        evidence: list[Evidence],
        resolved_inputs: dict[str, Any],
    ) -> None:
        started = self._clock()
        outputs: dict[str, Any] = {}
        base_context = StepContext(
            incident_id=incident.id,
            incident_key=incident.incident_key,
            run_id=run.id,
            lawbook_version=self._lawbook_version,
            evidence=tuple(evidence),
            started_at=run.created_at,
        )

        with self._tracer.start_as_current_span(
            SPAN_REMEDIATION_RUN,
            attributes={
                INCIDENT_ID: incident.id,
                INCIDENT_KEY: incident.incident_key,
                PLAYBOOK_ID: playbook.id,
                PLAYBOOK_VERSION: playbook.version,
                RUN_KEY: run.run_key,
            },
        ) as span:
            run.status = RemediationRunStatus.RUNNING
            self._remediation_store.update_run(run)

            for step in playbook.steps:
                context = base_context.with_inputs({**resolved_inputs, **outputs})
                record = await self._run_step(run, step, context)
                if record.status != StepStatus.SUCCEEDED:
                    break
                if step.output_key and record.output:
                    outputs[step.output_key] = dict(record.output)

            run.result = self._summarize(run, playbook, started)
            failed = run.result["failedCount"] > 0
            run.status = RemediationRunStatus.FAILED if failed else RemediationRunStatus.SUCCEEDED
            run = self._persist(run)

            span.set_attribute(RUN_STATUS, run.status.value)
            if failed:
                span.set_status(Status(StatusCode.ERROR, "remediation step failed"))

        logger.info(
            "Remediation %s for %s finished: %s",
            playbook.id,
            incident.incident_key,
            run.status.value,
        )
        self._audit("log_remediation_finished", run)

    async def _run_step(
        self, run: RemediationRun, step: StepDefinition, context: StepContext
    ) -> StepRecord:
        record = StepRecord(
            step_id=step.step_id,
            action_type=step.action_type,
            idempotency_key="",
            status=StepStatus.RUNNING,
            inputs_hash=content_hash(dict(context.inputs)),
            started_at=utcnow(),
        )
        run.steps.append(record)

        with self._tracer.start_as_current_span(
            SPAN_REMEDIATION_STEP,
            attributes={STEP_ID: step.step_id, STEP_ACTION_TYPE: step.action_type.value},
        ) as span:
            try:
                record.idempotency_key = validate_idempotency_key(step.idempotency_key(context))
                self._persist(run)
                self._audit("log_step_started", run, record)
                result = await step.execute(self._resources, context)
            except Exception as exc:
                logger.exception("Step %s raised during run %s", step.step_id, run.run_key)
                result = StepResult.fail(StepErrorCode.EXECUTION_ERROR, str(exc) or type(exc).__name__)

            record.finished_at = utcnow()
            if result.success:
                record.status = StepStatus.SUCCEEDED
                record.output = dict(result.output) if result.output is not None else None
            else:
                record.status = StepStatus.FAILED
                record.error = result.error or StepError(
                    StepErrorCode.EXECUTION_ERROR, "Step failed without an error"
                )
                span.set_attribute(STEP_ERROR_CODE, record.error.code.value)
                span.set_status(Status(StatusCode.ERROR, record.error.message))
            span.set_attribute(STEP_STATUS, record.status.value)

        self._persist(run)
        self._audit("log_step_finished", run, record)
        return record

    def _summarize(
        self, run: RemediationRun, playbook: PlaybookDefinition, started: float
    ) -> dict[str, Any]:
        success_count = sum(1 for r in run.steps if r.status == StepStatus.SUCCEEDED)
        failed_count = sum(1 for r in run.steps if r.status == StepStatus.FAILED)
        summary: dict[str, Any] = {
            "totalSteps": len(playbook.steps),
            "successCount": success_count,
            "failedCount": failed_count,
            "durationMs": int((self._clock() - started) * 1000),
        }
        for record in run.steps:
            payload = record.output
            if payload is None and record.error is not None:
                payload = record.error.details
            if payload and payload.get("reportHash"):
                summary["reportHash"] = payload["reportHash"]
                summary["verificationResult"] = payload.get("status")
        failed = next((r for r in run.steps if r.status == StepStatus.FAILED), None)
        if failed is not None and failed.error is not None:
            summary["failedStepId"] = failed.step_id
            summary["error"] = failed.error.to_dict()
        return summary

    def _persist(self, run: RemediationRun) -> RemediationRun:
        stored = self._remediation_store.update_run(run)
        run.updated_at = stored.updated_at
        return run

    def _audit(self, method: str, *args: Any) -> None:
        """Forward an audit event; emission failures never break the run."""
        if self._event_logger is None:
            return
        try:
            getattr(self._event_logger, method)(*args)
        except Exception as exc:
            logger.warning("Failed to emit audit event %s: %s", method, exc)
