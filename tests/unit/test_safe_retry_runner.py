"""Tests for the safe-retry-runner playbook steps."""

from __future__ import annotations

from dataclasses import replace
from typing import Any

import pytest
from fakes import FakeRunner, RecordingAllowlist, runner_evidence, server_error

from incident_sre.errors import ProviderError
from incident_sre.incidents.models import Evidence
from incident_sre.incidents.playbook import (
    StepContext,
    StepErrorCode,
    StepResources,
    carries_credentials,
)
from incident_sre.incidents.playbooks.safe_retry_runner import (
    DISPATCH_OUTPUT_KEY,
    POLL_OUTPUT_KEY,
    SAFE_RETRY_RUNNER_PLAYBOOK,
    dispatch_idempotency_key,
    execute_dispatch_runner,
    execute_ingest_runner,
    execute_poll_runner,
    ingest_idempotency_key,
    poll_idempotency_key,
)
from incident_sre.retry import RetryPolicyConfig

INCIDENT_ID = "inc-1"
INCIDENT_KEY = "runner:acme/web:555"


def _context(evidence: list[Evidence], **inputs: Any) -> StepContext:
    return StepContext(
        incident_id=INCIDENT_ID,
        incident_key=INCIDENT_KEY,
        run_id="run-1",
        lawbook_version="none",
        evidence=tuple(evidence),
        inputs=inputs,
    )


def _with(resources: StepResources, **changes: Any) -> StepResources:
    return replace(resources, **changes)


class TestPlaybookShape:
    def test_steps(self) -> None:
        assert [s.step_id for s in SAFE_RETRY_RUNNER_PLAYBOOK.steps] == [
            "dispatch-runner",
            "poll-runner",
            "ingest-runner",
        ]
        assert SAFE_RETRY_RUNNER_PLAYBOOK.version == "1.0.0"

    def test_applies_to_runner_failures_only(self) -> None:
        assert SAFE_RETRY_RUNNER_PLAYBOOK.applies_to("RUNNER_WORKFLOW_FAILED")
        assert not SAFE_RETRY_RUNNER_PLAYBOOK.applies_to("DEPLOY_VERIFICATION_FAILED")
        assert not SAFE_RETRY_RUNNER_PLAYBOOK.applies_to(None)


class TestDispatch:
    @pytest.mark.asyncio
    async def test_dispatch_at_head_sha(self, resources: StepResources, runner: FakeRunner) -> None:
        result = await execute_dispatch_runner(
            resources, _context([runner_evidence(INCIDENT_ID, ref="main")])
        )
        assert result.success
        request = runner.calls[-1][1]
        assert request.ref == "abc123"
        assert request.correlation_id == f"{INCIDENT_KEY}:retry:555"
        assert result.output == {
            "newRunId": 777,
            "runUrl": "https://ci.example.com/acme/web/runs/777",
            "recordId": "rec-1",
            "isExisting": False,
        }

    @pytest.mark.asyncio
    async def test_explicit_ref_when_no_head_sha(
        self, resources: StepResources, runner: FakeRunner
    ) -> None:
        evidence = runner_evidence(INCIDENT_ID, headSha=None, ref="release/1.2")
        result = await execute_dispatch_runner(resources, _context([evidence]))
        assert result.success
        assert runner.calls[-1][1].ref == "release/1.2"

    @pytest.mark.asyncio
    async def test_determinism_required(
        self, resources: StepResources, call_log: list[tuple[str, Any]]
    ) -> None:
        evidence = runner_evidence(INCIDENT_ID, headSha=None)
        result = await execute_dispatch_runner(resources, _context([evidence]))
        assert not result.success
        assert result.error.code == StepErrorCode.DETERMINISM_REQUIRED
        assert result.error.details == {"owner": "acme", "repo": "web", "runId": 555}
        assert call_log == []

    @pytest.mark.asyncio
    async def test_allowlist_checked_before_dispatch(
        self, resources: StepResources, call_log: list[tuple[str, Any]]
    ) -> None:
        await execute_dispatch_runner(resources, _context([runner_evidence(INCIDENT_ID)]))
        assert [name for name, _ in call_log] == ["allowlist", "dispatch"]
        assert call_log[0][1] == ("acme", "web")

    @pytest.mark.asyncio
    async def test_denied_repo_is_never_dispatched(
        self, resources: StepResources, call_log: list[tuple[str, Any]]
    ) -> None:
        denied = _with(resources, allowlist=RecordingAllowlist(call_log, patterns=("other/*",)))
        result = await execute_dispatch_runner(denied, _context([runner_evidence(INCIDENT_ID)]))
        assert result.error.code == StepErrorCode.REPO_NOT_ALLOWED
        assert result.error.message == "Repository acme/web is not in the allowlist"
        assert [name for name, _ in call_log] == ["allowlist"]

    @pytest.mark.asyncio
    async def test_missing_evidence(self, resources: StepResources) -> None:
        result = await execute_dispatch_runner(resources, _context([]))
        assert result.error.code == StepErrorCode.EVIDENCE_MISSING

    @pytest.mark.asyncio
    async def test_missing_fields(self, resources: StepResources) -> None:
        evidence = runner_evidence(INCIDENT_ID, workflowIdOrFile=None)
        result = await execute_dispatch_runner(resources, _context([evidence]))
        assert result.error.code == StepErrorCode.INVALID_EVIDENCE
        assert result.error.details == {"missing": ["workflow_id_or_file"]}

    @pytest.mark.asyncio
    async def test_malformed_evidence(self, resources: StepResources) -> None:
        evidence = runner_evidence(INCIDENT_ID, inputs="not-a-mapping")
        result = await execute_dispatch_runner(resources, _context([evidence]))
        assert result.error.code == StepErrorCode.INVALID_EVIDENCE

    @pytest.mark.asyncio
    async def test_dispatch_is_not_retried(
        self, resources: StepResources, call_log: list[tuple[str, Any]]
    ) -> None:
        failing = FakeRunner(calls=call_log, failures={"dispatch": [server_error()]})
        result = await execute_dispatch_runner(
            _with(resources, runner=failing), _context([runner_evidence(INCIDENT_ID)])
        )
        assert result.error.code == StepErrorCode.DISPATCH_FAILED
        assert result.error.message == "HTTP 503 Service Unavailable"
        assert [name for name, _ in call_log].count("dispatch") == 1

    @pytest.mark.asyncio
    async def test_dispatch_retried_with_opt_in(
        self, resources: StepResources, call_log: list[tuple[str, Any]]
    ) -> None:
        failing = FakeRunner(calls=call_log, failures={"dispatch": [server_error()]})
        config = RetryPolicyConfig(base_delay_ms=0, jitter_factor=0, allow_non_idempotent_retry=True)
        result = await execute_dispatch_runner(
            _with(resources, runner=failing, retry_config=config),
            _context([runner_evidence(INCIDENT_ID)]),
        )
        assert result.success
        assert [name for name, _ in call_log].count("dispatch") == 2

    @pytest.mark.asyncio
    async def test_no_runner_configured(self, resources: StepResources) -> None:
        result = await execute_dispatch_runner(
            _with(resources, runner=None), _context([runner_evidence(INCIDENT_ID)])
        )
        assert result.error.code == StepErrorCode.DISPATCH_FAILED

    def test_idempotency_key_ignores_input_order(self) -> None:
        evidence = [runner_evidence(INCIDENT_ID)]
        a = dispatch_idempotency_key(_context(evidence, x=1, y=2))
        b = dispatch_idempotency_key(_context(evidence, y=2, x=1))
        assert a == b
        assert a.startswith(f"dispatch:{INCIDENT_KEY}:")


class TestPoll:
    @pytest.mark.asyncio
    async def test_poll_redacts_output(self, resources: StepResources, runner: FakeRunner) -> None:
        context = _context([runner_evidence(INCIDENT_ID)], **{DISPATCH_OUTPUT_KEY: {"newRunId": 777}})
        result = await execute_poll_runner(resources, context)
        assert result.success
        assert runner.calls[-1] == ("poll", ("acme", "web", 777))
        assert set(result.output) == {"runId", "status", "conclusion", "normalizedStatus", "updatedAt"}
        assert not carries_credentials(result.output)

    @pytest.mark.asyncio
    async def test_missing_run_id(self, resources: StepResources, runner: FakeRunner) -> None:
        result = await execute_poll_runner(resources, _context([runner_evidence(INCIDENT_ID)]))
        assert result.error.code == StepErrorCode.MISSING_RUN_ID
        assert runner.calls == []

    @pytest.mark.asyncio
    async def test_poll_retries_server_errors(
        self, resources: StepResources, call_log: list[tuple[str, Any]], retry_observer: Any
    ) -> None:
        flaky = FakeRunner(calls=call_log, failures={"poll": [server_error()]})
        context = _context([runner_evidence(INCIDENT_ID)], **{DISPATCH_OUTPUT_KEY: {"newRunId": 777}})
        result = await execute_poll_runner(_with(resources, runner=flaky), context)
        assert result.success
        assert [name for name, _ in call_log] == ["poll", "poll"]
        assert retry_observer.attempts == [0]

    @pytest.mark.asyncio
    async def test_poll_failure(self, resources: StepResources, call_log: list[tuple[str, Any]]) -> None:
        failing = FakeRunner(calls=call_log, failures={"poll": [ProviderError("Not Found", status=404)]})
        context = _context([runner_evidence(INCIDENT_ID)], **{DISPATCH_OUTPUT_KEY: {"newRunId": 777}})
        result = await execute_poll_runner(_with(resources, runner=failing), context)
        assert result.error.code == StepErrorCode.POLL_FAILED
        assert result.error.message == "Not Found"

    def test_idempotency_key(self) -> None:
        context = _context([], **{DISPATCH_OUTPUT_KEY: {"newRunId": 777}})
        assert poll_idempotency_key(context) == f"poll:{INCIDENT_KEY}:777"
        assert poll_idempotency_key(_context([])) == f"poll:{INCIDENT_KEY}:unknown"


class TestIngest:
    @pytest.mark.asyncio
    async def test_ingest_metadata_only(self, resources: StepResources) -> None:
        context = _context([runner_evidence(INCIDENT_ID)], **{POLL_OUTPUT_KEY: {"runId": 777}})
        result = await execute_ingest_runner(resources, context)
        assert result.success
        assert result.output["jobsCount"] == 2
        assert result.output["artifactsCount"] == 1
        assert result.output["artifacts"] == [{"id": 9, "name": "report", "sizeInBytes": 1024}]
        assert "logsUrl" not in result.output
        assert not carries_credentials(result.output)

    @pytest.mark.asyncio
    async def test_missing_run_id(self, resources: StepResources) -> None:
        result = await execute_ingest_runner(resources, _context([runner_evidence(INCIDENT_ID)]))
        assert result.error.code == StepErrorCode.MISSING_RUN_ID

    @pytest.mark.asyncio
    async def test_ingest_failure(self, resources: StepResources, call_log: list[tuple[str, Any]]) -> None:
        failing = FakeRunner(calls=call_log, failures={"ingest": [ProviderError("Gone", status=410)]})
        context = _context([runner_evidence(INCIDENT_ID)], **{POLL_OUTPUT_KEY: {"runId": 777}})
        result = await execute_ingest_runner(_with(resources, runner=failing), context)
        assert result.error.code == StepErrorCode.INGEST_FAILED

    def test_idempotency_key(self) -> None:
        context = _context([], **{POLL_OUTPUT_KEY: {"runId": 777}})
        assert ingest_idempotency_key(context) == f"ingest:{INCIDENT_KEY}:777"
