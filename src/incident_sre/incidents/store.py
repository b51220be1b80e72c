"""Persistence collaborator interfaces and in-memory implementations.

The engine reads and writes incidents, remediation runs and outcome records
only through these protocols.  The in-memory stores are reference
implementations for tests and embedding; their lock guards container
integrity, not step idempotency.
"""

from __future__ import annotations

import copy
import logging
import threading
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any, Protocol, runtime_checkable

from incident_sre.errors import IncidentNotFoundError
from incident_sre.incidents.models import (
    Classification,
    Evidence,
    Incident,
    IncidentStatus,
    iso_or_none,
    utcnow,
)
from incident_sre.incidents.playbook import RemediationRun

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class OutcomeRecord:
    """Persisted postmortem plus metrics, unique on (outcome_key, postmortem_hash)."""

    entity_type: str
    entity_id: str
    outcome_key: str
    status: str
    metrics_json: dict[str, Any]
    postmortem_json: dict[str, Any]
    postmortem_hash: str
    lawbook_version: str | None = None
    source_refs: dict[str, Any] = field(default_factory=dict)
    id: str = ""
    created_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "outcome_key": self.outcome_key,
            "status": self.status,
            "metrics_json": self.metrics_json,
            "postmortem_json": self.postmortem_json,
            "postmortem_hash": self.postmortem_hash,
            "lawbook_version": self.lawbook_version,
            "source_refs": self.source_refs,
            "created_at": iso_or_none(self.created_at),
        }


# ---------------------------------------------------------------------------
# Protocols
# ---------------------------------------------------------------------------


@runtime_checkable
class IncidentStore(Protocol):
    def get_incident(self, incident_id: str) -> Incident | None: ...

    def get_incident_by_key(self, incident_key: str) -> Incident | None: ...

    def get_evidence(self, incident_id: str) -> list[Evidence]: ...

    def update_status(self, incident_id: str, status: IncidentStatus) -> Incident: ...

    def add_evidence(self, evidence: Sequence[Evidence]) -> list[Evidence]: ...

    def set_classification(self, incident_id: str, classification: Classification) -> Incident: ...


@runtime_checkable
class RemediationStore(Protocol):
    def get_run_by_key(self, run_key: str) -> RemediationRun | None: ...

    def upsert_run_by_key(self, run: RemediationRun) -> tuple[RemediationRun, bool]: ...

    def update_run(self, run: RemediationRun) -> RemediationRun: ...

    def list_runs_for_incident(self, incident_id: str) -> list[RemediationRun]: ...


@runtime_checkable
class OutcomeStore(Protocol):
    def get_outcome(self, outcome_key: str, postmortem_hash: str) -> OutcomeRecord | None: ...

    def create_outcome_record(self, record: OutcomeRecord) -> tuple[OutcomeRecord, bool]: ...


# ---------------------------------------------------------------------------
# In-memory implementations
# ---------------------------------------------------------------------------


class InMemoryIncidentStore:
    """Dict-backed incident store; evidence is append-only."""

    def __init__(self, incidents: Iterable[Incident] = ()) -> None:
        self._lock = threading.Lock()
        self._incidents: dict[str, Incident] = {}
        self._evidence: dict[str, list[Evidence]] = {}
        for incident in incidents:
            self.add_incident(incident)

    def add_incident(self, incident: Incident) -> Incident:
        with self._lock:
            if any(i.incident_key == incident.incident_key for i in self._incidents.values()):
                raise ValueError(f"Duplicate incident key: {incident.incident_key}")
            self._incidents[incident.id] = incident
            self._evidence.setdefault(incident.id, [])
        return incident

    def get_incident(self, incident_id: str) -> Incident | None:
        with self._lock:
            return self._incidents.get(incident_id)

    def get_incident_by_key(self, incident_key: str) -> Incident | None:
        with self._lock:
            for incident in self._incidents.values():
                if incident.incident_key == incident_key:
                    return incident
        return None

    def get_evidence(self, incident_id: str) -> list[Evidence]:
        with self._lock:
            return list(self._evidence.get(incident_id, []))

    def update_status(self, incident_id: str, status: IncidentStatus) -> Incident:
        with self._lock:
            incident = self._incidents.get(incident_id)
            if incident is None:
                raise IncidentNotFoundError(incident_id)
            if status == IncidentStatus.CLOSED:
                incident.close()
            elif status == IncidentStatus.MITIGATED:
                incident.mitigate()
            elif status == IncidentStatus.ACKED:
                incident.acknowledge()
            else:
                incident.status = status
                incident.updated_at = utcnow()
            logger.info("Incident %s status -> %s", incident.incident_key, status.value)
            return incident

    def add_evidence(self, evidence: Sequence[Evidence]) -> list[Evidence]:
        added: list[Evidence] = []
        with self._lock:
            for item in evidence:
                if item.incident_id not in self._incidents:
                    raise IncidentNotFoundError(item.incident_id)
                self._evidence[item.incident_id].append(item)
                added.append(item)
        return added

    def set_classification(self, incident_id: str, classification: Classification) -> Incident:
        with self._lock:
            incident = self._incidents.get(incident_id)
            if incident is None:
                raise IncidentNotFoundError(incident_id)
            incident.classification = classification
            incident.updated_at = utcnow()
            return incident


class InMemoryRemediationStore:
    """Remediation runs keyed by run key.

    Runs are stored as copies so callers cannot mutate persisted state
    without going through :meth:`update_run`.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._runs: dict[str, RemediationRun] = {}

    def get_run_by_key(self, run_key: str) -> RemediationRun | None:
        with self._lock:
            run = self._runs.get(run_key)
            return copy.deepcopy(run) if run is not None else None

    def upsert_run_by_key(self, run: RemediationRun) -> tuple[RemediationRun, bool]:
        """Insert *run* unless its key exists; return ``(stored, created)``."""
        with self._lock:
            existing = self._runs.get(run.run_key)
            if existing is not None:
                return copy.deepcopy(existing), False
            self._runs[run.run_key] = copy.deepcopy(run)
            return copy.deepcopy(run), True

    def update_run(self, run: RemediationRun) -> RemediationRun:
        with self._lock:
            if run.run_key not in self._runs:
                raise KeyError(f"Unknown remediation run: {run.run_key}")
            run.updated_at = utcnow()
            self._runs[run.run_key] = copy.deepcopy(run)
            return copy.deepcopy(run)

    def list_runs_for_incident(self, incident_id: str) -> list[RemediationRun]:
        with self._lock:
            runs = [copy.deepcopy(r) for r in self._runs.values() if r.incident_id == incident_id]
        return sorted(runs, key=RemediationRun.sort_key)


class InMemoryOutcomeStore:
    """Outcome records, idempotent on (outcome_key, postmortem_hash)."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._records: dict[tuple[str, str], OutcomeRecord] = {}
        self._counter = 0

    def get_outcome(self, outcome_key: str, postmortem_hash: str) -> OutcomeRecord | None:
        with self._lock:
            return self._records.get((outcome_key, postmortem_hash))

    def create_outcome_record(self, record: OutcomeRecord) -> tuple[OutcomeRecord, bool]:
        key = (record.outcome_key, record.postmortem_hash)
        with self._lock:
            existing = self._records.get(key)
            if existing is not None:
                return existing, False
            self._counter += 1
            stored = replace(
                record,
                id=record.id or f"outcome-{self._counter}",
                created_at=record.created_at or utcnow(),
            )
            self._records[key] = stored
            return stored, True

    def list_all(self) -> list[OutcomeRecord]:
        with self._lock:
            return list(self._records.values())
