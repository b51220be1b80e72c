"""Tests for the rerun-post-deploy-verification playbook steps."""

from __future__ import annotations

from dataclasses import replace
from typing import Any

import pytest
from fakes import FakeVerifier, make_incident, server_error, verification_evidence

from incident_sre.incidents.models import Evidence, Incident, IncidentStatus
from incident_sre.incidents.playbook import StepContext, StepErrorCode, StepResources
from incident_sre.incidents.playbooks.rerun_verification import (
    RERUN_POST_DEPLOY_VERIFICATION_PLAYBOOK,
    VERIFICATION_OUTPUT_KEY,
    execute_ingest_incident_update,
    execute_run_verification,
    incident_update_idempotency_key,
    verification_idempotency_key,
)
from incident_sre.incidents.store import InMemoryIncidentStore


@pytest.fixture
def incident(incident_store: InMemoryIncidentStore) -> Incident:
    incident = incident_store.add_incident(make_incident())
    incident_store.add_evidence([verification_evidence(incident.id)])
    return incident


def _context(incident: Incident, evidence: list[Evidence], **inputs: Any) -> StepContext:
    return StepContext(
        incident_id=incident.id,
        incident_key=incident.incident_key,
        run_id="run-1",
        lawbook_version="none",
        evidence=tuple(evidence),
        inputs=inputs,
    )


def _passed(env: str = "production") -> dict[str, Any]:
    return {
        "status": "success",
        "env": env,
        "deployId": "d-42",
        "playbookRunId": "verify-production-d-42",
        "reportHash": "c" * 64,
    }


class TestPlaybookShape:
    def test_categories(self) -> None:
        assert RERUN_POST_DEPLOY_VERIFICATION_PLAYBOOK.applies_to("DEPLOY_VERIFICATION_FAILED")
        assert RERUN_POST_DEPLOY_VERIFICATION_PLAYBOOK.applies_to("ALB_TARGET_UNHEALTHY")
        assert not RERUN_POST_DEPLOY_VERIFICATION_PLAYBOOK.applies_to("RUNNER_WORKFLOW_FAILED")

    def test_steps(self) -> None:
        assert [s.step_id for s in RERUN_POST_DEPLOY_VERIFICATION_PLAYBOOK.steps] == [
            "run-verification",
            "ingest-incident-update",
        ]


class TestRunVerification:
    @pytest.mark.asyncio
    async def test_pass(
        self, resources: StepResources, verifier: FakeVerifier, incident: Incident
    ) -> None:
        result = await execute_run_verification(
            resources, _context(incident, [verification_evidence(incident.id)])
        )
        assert result.success
        assert verifier.calls == [("production", "d-42")]
        assert result.output["status"] == "success"
        assert result.output["env"] == "production"
        assert result.output["playbookRunId"] == "verify-production-d-42"
        assert len(result.output["reportHash"]) == 64

    @pytest.mark.asyncio
    async def test_failed_verification_is_a_step_failure(
        self, resources: StepResources, incident: Incident
    ) -> None:
        failing = replace(resources, verifier=FakeVerifier(passed=False))
        result = await execute_run_verification(
            failing, _context(incident, [verification_evidence(incident.id)])
        )
        assert not result.success
        assert result.error.code == StepErrorCode.VERIFICATION_FAILED
        assert result.error.details["status"] == "failed"
        assert result.error.details["reportHash"]

    @pytest.mark.asyncio
    async def test_deploy_status_evidence(
        self, resources: StepResources, verifier: FakeVerifier, incident: Incident
    ) -> None:
        evidence = verification_evidence(incident.id, kind="deploy_status", env="stg", deployId=None)
        result = await execute_run_verification(resources, _context(incident, [evidence]))
        assert result.success
        assert verifier.calls == [("staging", None)]

    @pytest.mark.asyncio
    async def test_env_from_inputs(
        self, resources: StepResources, verifier: FakeVerifier, incident: Incident
    ) -> None:
        evidence = verification_evidence(incident.id, env=None, deployId=None)
        result = await execute_run_verification(
            resources, _context(incident, [evidence], env="dev", deployId=7)
        )
        assert result.success
        assert verifier.calls == [("development", "7")]

    @pytest.mark.asyncio
    async def test_no_evidence(self, resources: StepResources, incident: Incident) -> None:
        result = await execute_run_verification(resources, _context(incident, []))
        assert result.error.code == StepErrorCode.EVIDENCE_MISSING

    @pytest.mark.asyncio
    async def test_missing_env(self, resources: StepResources, incident: Incident) -> None:
        evidence = verification_evidence(incident.id, env=None)
        result = await execute_run_verification(resources, _context(incident, [evidence]))
        assert result.error.code == StepErrorCode.INVALID_EVIDENCE
        assert result.error.message == "Missing required verification parameter: env"

    @pytest.mark.asyncio
    async def test_invalid_env(
        self, resources: StepResources, verifier: FakeVerifier, incident: Incident
    ) -> None:
        evidence = verification_evidence(incident.id, env="moon")
        result = await execute_run_verification(resources, _context(incident, [evidence]))
        assert result.error.code == StepErrorCode.INVALID_ENVIRONMENT
        assert verifier.calls == []

    @pytest.mark.asyncio
    async def test_custom_alias(self, resources: StepResources, incident: Incident) -> None:
        aliased = replace(resources, environment_aliases={"live": "production"})
        evidence = verification_evidence(incident.id, env="live")
        result = await execute_run_verification(aliased, _context(incident, [evidence]))
        assert result.success
        assert result.output["env"] == "production"

    @pytest.mark.asyncio
    async def test_verifier_error(self, resources: StepResources, incident: Incident) -> None:
        broken = replace(resources, verifier=FakeVerifier(error=RuntimeError("harness down")))
        result = await execute_run_verification(
            broken, _context(incident, [verification_evidence(incident.id)])
        )
        assert result.error.code == StepErrorCode.VERIFICATION_EXECUTION_ERROR
        assert result.error.message == "harness down"

    @pytest.mark.asyncio
    async def test_verifier_server_error_is_retried_then_reported(
        self, resources: StepResources, incident: Incident, retry_observer: Any
    ) -> None:
        broken = replace(resources, verifier=FakeVerifier(error=server_error()))
        result = await execute_run_verification(
            broken, _context(incident, [verification_evidence(incident.id)])
        )
        assert result.error.code == StepErrorCode.VERIFICATION_EXECUTION_ERROR
        assert retry_observer.attempts == [0, 1]

    @pytest.mark.asyncio
    async def test_no_verifier(self, resources: StepResources, incident: Incident) -> None:
        result = await execute_run_verification(
            replace(resources, verifier=None),
            _context(incident, [verification_evidence(incident.id)]),
        )
        assert result.error.code == StepErrorCode.VERIFICATION_EXECUTION_ERROR

    def test_idempotency_key_depends_on_env_and_deploy(self, incident: Incident) -> None:
        a = verification_idempotency_key(_context(incident, [verification_evidence(incident.id)]))
        b = verification_idempotency_key(
            _context(incident, [verification_evidence(incident.id, deployId="d-43")])
        )
        assert a != b
        assert a.startswith(f"verification:{incident.incident_key}:")


class TestIncidentUpdate:
    @pytest.mark.asyncio
    async def test_marks_mitigated(
        self,
        resources: StepResources,
        incident_store: InMemoryIncidentStore,
        incident: Incident,
    ) -> None:
        context = _context(incident, [], **{VERIFICATION_OUTPUT_KEY: _passed()})
        result = await execute_ingest_incident_update(resources, context)
        assert result.success
        assert result.output == {
            "message": "Incident marked as MITIGATED",
            "incidentId": incident.id,
            "newStatus": "MITIGATED",
            "verificationRunId": "verify-production-d-42",
            "env": "production",
        }
        assert incident_store.get_incident(incident.id).status == IncidentStatus.MITIGATED
        added = incident_store.get_evidence(incident.id)[-1]
        assert added.kind == "verification"
        assert added.sha256 == "c" * 64
        assert added.ref["status"] == "success"

    @pytest.mark.asyncio
    async def test_env_mismatch_leaves_incident_unchanged(
        self,
        resources: StepResources,
        incident_store: InMemoryIncidentStore,
        incident: Incident,
    ) -> None:
        context = _context(incident, [], **{VERIFICATION_OUTPUT_KEY: _passed("staging")})
        result = await execute_ingest_incident_update(resources, context)
        assert result.success
        assert result.output["envMismatch"] is True
        assert result.output["incidentEnv"] == "production"
        assert result.output["verificationEnv"] == "staging"
        assert result.output["currentStatus"] == "unchanged"
        assert incident_store.get_incident(incident.id).status == IncidentStatus.OPEN
        assert len(incident_store.get_evidence(incident.id)) == 1

    @pytest.mark.asyncio
    async def test_non_success_skips_update(
        self,
        resources: StepResources,
        incident_store: InMemoryIncidentStore,
        incident: Incident,
    ) -> None:
        output = {**_passed(), "status": "failed"}
        result = await execute_ingest_incident_update(
            resources, _context(incident, [], **{VERIFICATION_OUTPUT_KEY: output})
        )
        assert result.success
        assert result.output["currentStatus"] == "unchanged"
        assert incident_store.get_incident(incident.id).status == IncidentStatus.OPEN

    @pytest.mark.asyncio
    async def test_missing_output(self, resources: StepResources, incident: Incident) -> None:
        result = await execute_ingest_incident_update(resources, _context(incident, []))
        assert result.error.code == StepErrorCode.MISSING_VERIFICATION_OUTPUT

    @pytest.mark.asyncio
    async def test_incident_not_found(self, resources: StepResources) -> None:
        ghost = make_incident(key="deploy:prod:9999")
        result = await execute_ingest_incident_update(
            resources, _context(ghost, [], **{VERIFICATION_OUTPUT_KEY: _passed()})
        )
        assert result.error.code == StepErrorCode.INCIDENT_NOT_FOUND

    @pytest.mark.asyncio
    async def test_invalid_verification_env(
        self, resources: StepResources, incident: Incident
    ) -> None:
        result = await execute_ingest_incident_update(
            resources, _context(incident, [], **{VERIFICATION_OUTPUT_KEY: _passed("moon")})
        )
        assert result.error.code == StepErrorCode.INVALID_ENVIRONMENT

    @pytest.mark.asyncio
    async def test_store_failure(self, resources: StepResources, incident: Incident) -> None:
        class BrokenStore(InMemoryIncidentStore):
            def update_status(self, incident_id: str, status: IncidentStatus) -> Incident:
                raise RuntimeError("db unavailable")

        store = BrokenStore([incident])
        result = await execute_ingest_incident_update(
            replace(resources, incident_store=store),
            _context(incident, [], **{VERIFICATION_OUTPUT_KEY: _passed()}),
        )
        assert result.error.code == StepErrorCode.INCIDENT_UPDATE_FAILED
        assert result.error.message == "db unavailable"

    def test_idempotency_key(self, incident: Incident) -> None:
        assert incident_update_idempotency_key(_context(incident, [])) == (
            f"incident-update:{incident.incident_key}"
        )
