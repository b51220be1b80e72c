"""Tests for postmortem generation and outcome records."""

from __future__ import annotations

from typing import Any

import pytest
from fakes import T0, classified, later, make_incident, runner_evidence, verification_evidence

from incident_sre.conventions import EVENT_OUTCOME_RECORDED
from incident_sre.errors import ConfigurationError, IncidentNotFoundError
from incident_sre.events import EventLogger
from incident_sre.incidents.models import Evidence, Incident, IncidentStatus
from incident_sre.incidents.outcomes import (
    PostmortemGenerator,
    build_metrics,
    compute_pack_hash,
    incident_outcome_key,
)
from incident_sre.incidents.playbook import RemediationRun, RemediationRunStatus
from incident_sre.incidents.postmortem import (
    VerificationResult,
    build_postmortem,
    compute_postmortem_hash,
)
from incident_sre.incidents.store import (
    InMemoryIncidentStore,
    InMemoryOutcomeStore,
    InMemoryRemediationStore,
)


def _run(
    incident: Incident,
    run_id: str,
    status: RemediationRunStatus = RemediationRunStatus.SUCCEEDED,
    minutes: int = 5,
    result: dict[str, Any] | None = None,
) -> RemediationRun:
    return RemediationRun(
        run_key=f"{incident.incident_key}:rerun-post-deploy-verification:{run_id}",
        incident_id=incident.id,
        playbook_id="rerun-post-deploy-verification",
        playbook_version="1.0.0",
        status=status,
        result=result,
        id=run_id,
        created_at=later(minutes),
        updated_at=later(minutes + 2),
    )


def _closed_incident() -> tuple[Incident, list[Evidence]]:
    incident = make_incident()
    evidence = [verification_evidence(incident.id)]
    classified(incident, evidence)
    incident.close(at=later(90))
    return incident, evidence


class _Clock:
    def __init__(self) -> None:
        self.calls = 0

    def __call__(self):
        self.calls += 1
        return later(100 + self.calls)


class TestBuildPostmortem:
    def test_closed_incident(self) -> None:
        incident, evidence = _closed_incident()
        runs = [_run(incident, "run-1", result={"reportHash": "f" * 64, "verificationResult": "success"})]
        pm = build_postmortem(incident, evidence, incident.classification, runs, generated_at=later(120))
        data = pm.to_dict()
        assert data["version"] == "0.7.0"
        assert data["generatedAt"] == later(120).isoformat()
        assert data["incident"]["category"] == "DEPLOY_VERIFICATION_FAILED"
        assert data["incident"]["closedAt"] == later(90).isoformat()
        assert data["impact"]["durationMinutes"] == 90
        assert data["outcome"] == {"resolved": True, "mttrMinutes": 90, "autoFixed": True}
        assert data["verification"] == {"result": "PASS", "reportHash": "f" * 64}
        assert data["detection"]["signalKinds"] == ["verification"]
        assert data["detection"]["primaryEvidence"] == {"kind": "deploy_status", "ref": {"env": "prod"}}
        assert data["references"]["used_sources_hashes"] == ["b" * 64]
        assert data["remediation"]["attemptedPlaybooks"][0]["verificationHash"] == "f" * 64
        assert data["impact"]["summary"] == "Deploy failed Verification FAILED"

    def test_facts(self) -> None:
        incident, evidence = _closed_incident()
        pm = build_postmortem(incident, evidence, incident.classification, [_run(incident, "r")], T0)
        assert pm.facts == (
            "Incident severity: RED",
            "Classified as: DEPLOY_VERIFICATION_FAILED",
            "Evidence collected: 1 items",
            "Signal sources: verification",
            "Remediation attempts: 1",
            "Successful remediation runs: 1",
            "Final status: CLOSED",
        )

    def test_unknowns_for_bare_open_incident(self) -> None:
        incident = make_incident()
        pm = build_postmortem(incident, [runner_evidence(incident.id)], None, [], T0)
        assert pm.unknowns == (
            "Root cause: Not classified",
            "Impact metrics: No health check or verification data available",
            "Remediation outcome: No remediation attempted",
            "MTTR: Incident not yet resolved",
        )
        assert pm.resolved is False
        assert pm.mttr_minutes is None
        assert pm.verification_result == VerificationResult.UNKNOWN

    def test_runs_without_verification(self) -> None:
        incident, evidence = _closed_incident()
        pm = build_postmortem(incident, evidence, None, [_run(incident, "r")], T0)
        assert "Verification result: No verification data available" in pm.unknowns

    def test_failed_verification(self) -> None:
        incident, evidence = _closed_incident()
        run = _run(
            incident,
            "r",
            status=RemediationRunStatus.FAILED,
            result={"reportHash": "e" * 64, "verificationResult": "failed", "failedCount": 1},
        )
        pm = build_postmortem(incident, evidence, None, [run], T0)
        assert pm.verification_result == VerificationResult.FAIL
        assert pm.auto_fixed is False

    def test_hash_excludes_generated_at(self) -> None:
        incident, evidence = _closed_incident()
        a = build_postmortem(incident, evidence, None, [], later(1))
        b = build_postmortem(incident, evidence, None, [], later(2))
        assert a.hash() == b.hash()
        assert compute_postmortem_hash(a.to_dict()) == a.hash()

    def test_run_order_does_not_matter(self) -> None:
        incident, evidence = _closed_incident()
        runs = [_run(incident, "r1", minutes=5), _run(incident, "r2", minutes=10)]
        a = build_postmortem(incident, evidence, None, runs, T0)
        b = build_postmortem(incident, evidence, None, list(reversed(runs)), T0)
        assert a.hash() == b.hash()
        assert [p.playbook_id for p in a.attempted_playbooks] == ["rerun-post-deploy-verification"] * 2

    def test_evidence_order_does_not_matter(self) -> None:
        incident, _ = _closed_incident()
        evidence = [verification_evidence(incident.id), runner_evidence(incident.id)]
        a = build_postmortem(incident, evidence, None, [], T0)
        b = build_postmortem(incident, list(reversed(evidence)), None, [], T0)
        assert a.hash() == b.hash()


class TestOutcomeHelpers:
    def test_pack_hash(self) -> None:
        h = compute_pack_hash("inc-1", 2, 1)
        assert len(h) == 16
        assert h == compute_pack_hash("inc-1", 2, 1)
        assert h != compute_pack_hash("inc-1", 3, 1)

    def test_outcome_key(self) -> None:
        assert incident_outcome_key("inc-1", None, "abcd") == "incident:inc-1:none:abcd"
        assert incident_outcome_key("inc-1", "run-9", "abcd") == "incident:inc-1:run-9:abcd"

    def test_metrics(self) -> None:
        incident, _ = _closed_incident()
        runs = [
            _run(incident, "r1"),
            _run(incident, "r2", status=RemediationRunStatus.FAILED),
        ]
        assert build_metrics(incident, runs) == {
            "mttr_hours": 1.5,
            "incidents_open": -1,
            "auto_fixed": True,
            "playbooks_attempted": 2,
            "playbooks_succeeded": 1,
        }

    def test_metrics_for_open_incident(self) -> None:
        metrics = build_metrics(make_incident(), [])
        assert "mttr_hours" not in metrics
        assert "incidents_open" not in metrics
        assert metrics["auto_fixed"] is False


class TestPostmortemGenerator:
    def test_idempotent_regeneration(self, outcome_store: InMemoryOutcomeStore) -> None:
        incident, evidence = _closed_incident()
        generator = PostmortemGenerator(outcome_store, clock=_Clock())
        first = generator.generate(incident, evidence, lawbook_version="lawbook-1")
        second = generator.generate(incident, evidence, lawbook_version="lawbook-1")
        assert first.is_new is True
        assert second.is_new is False
        assert second.outcome_record.id == first.outcome_record.id
        assert second.postmortem.hash() == first.postmortem.hash()
        assert len(outcome_store.list_all()) == 1

    def test_record_fields(self, outcome_store: InMemoryOutcomeStore) -> None:
        incident, evidence = _closed_incident()
        run = _run(incident, "run-1", result={"reportHash": "f" * 64, "verificationResult": "success"})
        result = PostmortemGenerator(outcome_store).generate(
            incident, evidence, remediation_runs=[run], lawbook_version="lawbook-1"
        )
        record = result.outcome_record
        assert record.entity_type == "incident"
        assert record.entity_id == incident.id
        assert record.status == "RECORDED"
        assert record.outcome_key.startswith(f"incident:{incident.id}:run-1:")
        assert record.postmortem_hash == result.postmortem.hash()
        assert record.lawbook_version == "lawbook-1"
        assert record.source_refs == {
            "incidentId": incident.id,
            "remediationRunIds": ["run-1"],
            "verificationReportHashes": ["f" * 64],
        }

    def test_new_evidence_makes_new_record(self, outcome_store: InMemoryOutcomeStore) -> None:
        incident, evidence = _closed_incident()
        generator = PostmortemGenerator(outcome_store)
        first = generator.generate(incident, evidence)
        second = generator.generate(incident, [*evidence, runner_evidence(incident.id)])
        assert second.is_new is True
        assert second.outcome_record.id != first.outcome_record.id

    def test_emits_event(self, outcome_store: InMemoryOutcomeStore) -> None:
        incident, evidence = _closed_incident()
        events = EventLogger(logger_name="test.incident_sre.events")
        generator = PostmortemGenerator(outcome_store, event_logger=events)
        generator.generate(incident, evidence)
        generator.generate(incident, evidence)
        recorded = events.events_named(EVENT_OUTCOME_RECORDED)
        assert [e["incident.sre.outcome.is_new"] for e in recorded] == [True, False]

    def test_generate_for_incident(
        self,
        outcome_store: InMemoryOutcomeStore,
        incident_store: InMemoryIncidentStore,
        remediation_store: InMemoryRemediationStore,
    ) -> None:
        incident, evidence = _closed_incident()
        incident_store.add_incident(incident)
        incident_store.add_evidence(evidence)
        remediation_store.upsert_run_by_key(_run(incident, "run-1"))
        generator = PostmortemGenerator(outcome_store, incident_store, remediation_store)
        result = generator.generate_for_incident(incident.id)
        assert result.postmortem.incident_id == incident.id
        assert result.outcome_record.source_refs["remediationRunIds"] == ["run-1"]
        assert incident_store.get_incident(incident.id).status == IncidentStatus.CLOSED

    def test_generate_for_unknown_incident(
        self,
        outcome_store: InMemoryOutcomeStore,
        incident_store: InMemoryIncidentStore,
        remediation_store: InMemoryRemediationStore,
    ) -> None:
        generator = PostmortemGenerator(outcome_store, incident_store, remediation_store)
        with pytest.raises(IncidentNotFoundError):
            generator.generate_for_incident("missing")

    def test_generate_for_incident_needs_stores(self, outcome_store: InMemoryOutcomeStore) -> None:
        with pytest.raises(ConfigurationError):
            PostmortemGenerator(outcome_store).generate_for_incident("inc-1")
