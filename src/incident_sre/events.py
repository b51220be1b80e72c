"""OpenTelemetry event logger for incident remediation.

Exports structured audit events (classifications, remediation runs, steps,
retries, outcomes) as log records and span events.

Usage:
    from incident_sre.events import EventLogger

    event_logger = EventLogger(service_name="remediation-engine")
    event_logger.log_remediation_planned(run)
    event_logger.log_step_finished(run, record)
"""

from __future__ import annotations

import logging
import time
from typing import TYPE_CHECKING, Any

from opentelemetry import trace

from incident_sre.conventions import (
    CLASSIFICATION_CONFIDENCE,
    CLASSIFIER_VERSION,
    EVENT_INCIDENT_CLASSIFIED,
    EVENT_OUTCOME_RECORDED,
    EVENT_REMEDIATION_COMPLETED,
    EVENT_REMEDIATION_FAILED,
    EVENT_REMEDIATION_PLANNED,
    EVENT_REMEDIATION_SKIPPED,
    EVENT_RETRY_SCHEDULED,
    EVENT_STEP_FINISHED,
    EVENT_STEP_STARTED,
    INCIDENT_CATEGORY,
    INCIDENT_ID,
    INCIDENT_KEY,
    INCIDENT_STATUS,
    LAWBOOK_VERSION,
    OUTCOME_KEY,
    PLAYBOOK_ID,
    PLAYBOOK_VERSION,
    POSTMORTEM_HASH,
    RETRY_ATTEMPT,
    RETRY_DELAY_MS,
    RETRY_ERROR_TYPE,
    RUN_ID,
    RUN_KEY,
    RUN_SKIP_REASON,
    RUN_STATUS,
    STEP_ACTION_TYPE,
    STEP_ERROR_CODE,
    STEP_ID,
    STEP_IDEMPOTENCY_KEY,
    STEP_STATUS,
)

if TYPE_CHECKING:
    from incident_sre.incidents.models import Classification, Incident
    from incident_sre.incidents.playbook import RemediationRun, StepRecord
    from incident_sre.incidents.store import OutcomeRecord
    from incident_sre.retry import RetryDecision

logger = logging.getLogger(__name__)


class EventLogger:
    """Logs remediation events as structured records.

    Uses Python's logging module with structured attributes that OTEL
    log exporters can pick up, plus adds events to the current span
    when available for trace correlation.  Every emitted event is also
    appended to :attr:`event_log` as the in-process audit trail.
    """

    def __init__(
        self,
        service_name: str = "incident-sre",
        logger_name: str = "incident_sre.events",
    ) -> None:
        self._service_name = service_name
        self._logger = logging.getLogger(logger_name)
        self._event_log: list[dict[str, Any]] = []

    @property
    def service_name(self) -> str:
        return self._service_name

    @property
    def event_log(self) -> list[dict[str, Any]]:
        """Return the full audit trail."""
        return self._event_log

    def events_named(self, event_name: str) -> list[dict[str, Any]]:
        return [e for e in self._event_log if e.get("event.name") == event_name]

    def _current_span(self) -> trace.Span | None:
        """Get the current OTEL span if one is active."""
        span = trace.get_current_span()
        if span and span.is_recording():
            return span
        return None

    def _emit(
        self,
        event_name: str,
        attributes: dict[str, Any],
        level: int = logging.INFO,
        message: str = "",
    ) -> dict[str, Any]:
        """Emit a structured event.

        Logs via Python logging (for OTEL log exporters) and adds
        an event to the current span (for trace correlation).

        Returns:
            The event attributes dict (for testing/inspection)
        """
        full_attrs = {
            "event.name": event_name,
            **{k: v for k, v in attributes.items() if v is not None},
        }

        self._logger.log(level, message or event_name, extra={"otel_attributes": full_attrs})

        span = self._current_span()
        if span:
            # Span events only accept str values
            str_attrs = {k: str(v) for k, v in full_attrs.items()}
            span.add_event(event_name, str_attrs)

        self._event_log.append({**full_attrs, "timestamp": time.time()})
        return full_attrs

    # -----------------------------------------------------------------------
    # Classification
    # -----------------------------------------------------------------------

    def log_incident_classified(
        self, incident: Incident, classification: Classification
    ) -> dict[str, Any]:
        return self._emit(
            EVENT_INCIDENT_CLASSIFIED,
            {
                INCIDENT_ID: incident.id,
                INCIDENT_KEY: incident.incident_key,
                INCIDENT_CATEGORY: classification.category.value,
                CLASSIFICATION_CONFIDENCE: classification.confidence.value,
                CLASSIFIER_VERSION: classification.classifier_version,
            },
            message=(
                f"Incident '{incident.incident_key}' classified as "
                f"{classification.category.value} ({classification.confidence.value})"
            ),
        )

    # -----------------------------------------------------------------------
    # Remediation runs
    # -----------------------------------------------------------------------

    @staticmethod
    def _run_attributes(run: RemediationRun) -> dict[str, Any]:
        return {
            INCIDENT_ID: run.incident_id,
            PLAYBOOK_ID: run.playbook_id,
            PLAYBOOK_VERSION: run.playbook_version,
            RUN_ID: run.id,
            RUN_KEY: run.run_key,
            RUN_STATUS: run.status.value,
            LAWBOOK_VERSION: run.lawbook_version,
        }

    def log_remediation_planned(self, run: RemediationRun) -> dict[str, Any]:
        planned_steps = len((run.planned or {}).get("steps", []))
        return self._emit(
            EVENT_REMEDIATION_PLANNED,
            {**self._run_attributes(run), "incident.sre.run.planned_steps": planned_steps},
            message=f"Remediation '{run.playbook_id}' planned ({planned_steps} steps)",
        )

    def log_remediation_skipped(
        self, run: RemediationRun, skip_reason: str, message: str
    ) -> dict[str, Any]:
        return self._emit(
            EVENT_REMEDIATION_SKIPPED,
            {**self._run_attributes(run), RUN_SKIP_REASON: skip_reason},
            message=f"Remediation '{run.playbook_id}' skipped: {message}",
        )

    def log_step_started(self, run: RemediationRun, record: StepRecord) -> dict[str, Any]:
        return self._emit(
            EVENT_STEP_STARTED,
            {
                RUN_ID: run.id,
                PLAYBOOK_ID: run.playbook_id,
                STEP_ID: record.step_id,
                STEP_ACTION_TYPE: record.action_type.value,
                STEP_IDEMPOTENCY_KEY: record.idempotency_key,
            },
            message=f"Step '{record.step_id}' started",
        )

    def log_step_finished(self, run: RemediationRun, record: StepRecord) -> dict[str, Any]:
        failed = record.error is not None
        return self._emit(
            EVENT_STEP_FINISHED,
            {
                RUN_ID: run.id,
                PLAYBOOK_ID: run.playbook_id,
                STEP_ID: record.step_id,
                STEP_ACTION_TYPE: record.action_type.value,
                STEP_IDEMPOTENCY_KEY: record.idempotency_key,
                STEP_STATUS: record.status.value,
                STEP_ERROR_CODE: record.error.code.value if record.error else None,
            },
            level=logging.WARNING if failed else logging.INFO,
            message=f"Step '{record.step_id}' {record.status.value.lower()}",
        )

    def log_remediation_finished(self, run: RemediationRun) -> dict[str, Any]:
        summary = run.result or {}
        failed = summary.get("failedCount", 0) > 0
        return self._emit(
            EVENT_REMEDIATION_FAILED if failed else EVENT_REMEDIATION_COMPLETED,
            {
                **self._run_attributes(run),
                "incident.sre.run.success_count": summary.get("successCount"),
                "incident.sre.run.failed_count": summary.get("failedCount"),
                "incident.sre.run.duration_ms": summary.get("durationMs"),
            },
            level=logging.WARNING if failed else logging.INFO,
            message=f"Remediation '{run.playbook_id}' {run.status.value.lower()}",
        )

    # -----------------------------------------------------------------------
    # Retries and outcomes
    # -----------------------------------------------------------------------

    def log_retry_scheduled(self, decision: RetryDecision, attempt: int) -> dict[str, Any]:
        return self._emit(
            EVENT_RETRY_SCHEDULED,
            {
                RETRY_ATTEMPT: attempt,
                RETRY_ERROR_TYPE: decision.error_type.value,
                RETRY_DELAY_MS: decision.delay_ms,
            },
            level=logging.WARNING,
            message=decision.reason,
        )

    def log_outcome_recorded(
        self, incident: Incident, record: OutcomeRecord, is_new: bool
    ) -> dict[str, Any]:
        return self._emit(
            EVENT_OUTCOME_RECORDED,
            {
                INCIDENT_ID: incident.id,
                INCIDENT_KEY: incident.incident_key,
                INCIDENT_STATUS: incident.status.value,
                OUTCOME_KEY: record.outcome_key,
                POSTMORTEM_HASH: record.postmortem_hash,
                "incident.sre.outcome.is_new": is_new,
            },
            message=(
                f"Outcome {'recorded' if is_new else 'already recorded'} "
                f"for incident '{incident.incident_key}'"
            ),
        )


class EventRetryObserver:
    """Retry observer that forwards each scheduled retry to an :class:`EventLogger`."""

    def __init__(self, event_logger: EventLogger) -> None:
        self._event_logger = event_logger

    def on_retry(self, decision: RetryDecision, attempt: int) -> None:
        self._event_logger.log_retry_scheduled(decision, attempt)
