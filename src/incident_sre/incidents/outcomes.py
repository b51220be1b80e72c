"""Outcome records: idempotent persistence of postmortems plus metrics."""

from __future__ import annotations

import logging
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING, Any

from incident_sre.errors import ConfigurationError, IncidentNotFoundError
from incident_sre.incidents.hashing import content_hash
from incident_sre.incidents.models import (
    Classification,
    Evidence,
    Incident,
    IncidentStatus,
    utcnow,
)
from incident_sre.incidents.playbook import RemediationRun, RemediationRunStatus
from incident_sre.incidents.postmortem import Postmortem, build_postmortem, closed_at
from incident_sre.incidents.store import OutcomeRecord

if TYPE_CHECKING:
    from incident_sre.events import EventLogger
    from incident_sre.incidents.store import IncidentStore, OutcomeStore, RemediationStore

logger = logging.getLogger(__name__)

ENTITY_TYPE_INCIDENT = "incident"
OUTCOME_STATUS_RECORDED = "RECORDED"


def compute_pack_hash(incident_id: str, evidence_count: int, remediation_count: int) -> str:
    """First 16 hex chars of the hash over what the postmortem was built from."""
    return content_hash(
        {
            "incidentId": incident_id,
            "evidenceCount": evidence_count,
            "remediationCount": remediation_count,
        }
    )[:16]


def incident_outcome_key(incident_id: str, primary_run_id: str | None, pack_hash: str) -> str:
    return f"incident:{incident_id}:{primary_run_id or 'none'}:{pack_hash}"


def build_metrics(incident: Incident, runs: Sequence[RemediationRun]) -> dict[str, Any]:
    metrics: dict[str, Any] = {}
    end = closed_at(incident)
    if end is not None:
        hours = (end - incident.opened_at).total_seconds() / 3600
        metrics["mttr_hours"] = round(hours, 2)
    if incident.status == IncidentStatus.CLOSED:
        metrics["incidents_open"] = -1
    succeeded = sum(1 for r in runs if r.status == RemediationRunStatus.SUCCEEDED)
    metrics["auto_fixed"] = succeeded > 0
    metrics["playbooks_attempted"] = len(runs)
    metrics["playbooks_succeeded"] = succeeded
    return metrics


def build_source_refs(incident: Incident, runs: Sequence[RemediationRun]) -> dict[str, Any]:
    refs: dict[str, Any] = {
        "incidentId": incident.id,
        "remediationRunIds": [r.id for r in runs],
    }
    hashes = [r.report_hash for r in runs if r.report_hash]
    if hashes:
        refs["verificationReportHashes"] = hashes
    return refs


@dataclass(frozen=True)
class GenerationResult:
    postmortem: Postmortem
    outcome_record: OutcomeRecord
    is_new: bool

    def to_dict(self) -> dict[str, Any]:
        return {
            "postmortem": self.postmortem.to_dict(),
            "outcomeRecord": self.outcome_record.to_dict(),
            "isNew": self.is_new,
        }


class PostmortemGenerator:
    """Generates postmortems and records them as outcome records.

    Regenerating for an unchanged incident returns the first call's record
    (``is_new=False``); any change to evidence, status or remediation runs
    produces a new hash and therefore a new record.
    """

    def __init__(
        self,
        outcome_store: OutcomeStore,
        incident_store: IncidentStore | None = None,
        remediation_store: RemediationStore | None = None,
        event_logger: EventLogger | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._outcome_store = outcome_store
        self._incident_store = incident_store
        self._remediation_store = remediation_store
        self._event_logger = event_logger
        self._clock = clock or utcnow

    def generate(
        self,
        incident: Incident,
        evidence: Sequence[Evidence],
        classification: Classification | None = None,
        remediation_runs: Sequence[RemediationRun] = (),
        lawbook_version: str | None = None,
    ) -> GenerationResult:
        runs = sorted(remediation_runs, key=RemediationRun.sort_key)
        postmortem = build_postmortem(
            incident,
            evidence,
            classification or incident.classification,
            runs,
            generated_at=self._clock(),
        )
        postmortem_hash = postmortem.hash()

        pack_hash = compute_pack_hash(incident.id, len(evidence), len(runs))
        outcome_key = incident_outcome_key(incident.id, runs[0].id if runs else None, pack_hash)

        record, created = self._outcome_store.create_outcome_record(
            OutcomeRecord(
                entity_type=ENTITY_TYPE_INCIDENT,
                entity_id=incident.id,
                outcome_key=outcome_key,
                status=OUTCOME_STATUS_RECORDED,
                metrics_json=build_metrics(incident, runs),
                postmortem_json=postmortem.to_dict(),
                postmortem_hash=postmortem_hash,
                lawbook_version=lawbook_version or incident.lawbook_version,
                source_refs=build_source_refs(incident, runs),
            )
        )
        if created:
            logger.info("Outcome recorded for %s (%s)", incident.incident_key, outcome_key)
        else:
            logger.debug("Outcome already recorded for %s (%s)", incident.incident_key, outcome_key)

        if self._event_logger is not None:
            try:
                self._event_logger.log_outcome_recorded(incident, record, created)
            except Exception as exc:
                logger.warning("Failed to emit outcome event: %s", exc)

        return GenerationResult(postmortem=postmortem, outcome_record=record, is_new=created)

    def generate_for_incident(
        self, incident_id: str, lawbook_version: str | None = None
    ) -> GenerationResult:
        """Read the incident, its evidence and its runs through the stores, then generate."""
        if self._incident_store is None or self._remediation_store is None:
            raise ConfigurationError(
                "generate_for_incident requires an incident store and a remediation store"
            )
        incident = self._incident_store.get_incident(incident_id)
        if incident is None:
            raise IncidentNotFoundError(incident_id)
        return self.generate(
            incident,
            self._incident_store.get_evidence(incident_id),
            incident.classification,
            self._remediation_store.list_runs_for_incident(incident_id),
            lawbook_version=lawbook_version,
        )
