"""Fixtures for the incident-sre unit tests."""

from __future__ import annotations

from typing import Any

import pytest
from fakes import (
    TARGET_GROUP_ARN,
    FakeDeployer,
    FakeDeployHistory,
    FakeEcs,
    FakeRunner,
    FakeVerifier,
    InMemorySpanExporter,
    RecordingAllowlist,
    last_known_good,
)
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import SimpleSpanProcessor

from incident_sre.incidents.playbook import StepResources
from incident_sre.incidents.store import (
    InMemoryIncidentStore,
    InMemoryOutcomeStore,
    InMemoryRemediationStore,
)
from incident_sre.providers import StaticServiceAllowlist
from incident_sre.retry import RecordingRetryObserver, RetryPolicyConfig


@pytest.fixture
def call_log() -> list[tuple[str, Any]]:
    return []


@pytest.fixture
def incident_store() -> InMemoryIncidentStore:
    return InMemoryIncidentStore()


@pytest.fixture
def remediation_store() -> InMemoryRemediationStore:
    return InMemoryRemediationStore()


@pytest.fixture
def outcome_store() -> InMemoryOutcomeStore:
    return InMemoryOutcomeStore()


@pytest.fixture
def runner(call_log: list[tuple[str, Any]]) -> FakeRunner:
    return FakeRunner(calls=call_log)


@pytest.fixture
def verifier() -> FakeVerifier:
    return FakeVerifier()


@pytest.fixture
def deploy_history(call_log: list[tuple[str, Any]]) -> FakeDeployHistory:
    return FakeDeployHistory(calls=call_log, lkg=last_known_good())


@pytest.fixture
def deployer(call_log: list[tuple[str, Any]]) -> FakeDeployer:
    return FakeDeployer(calls=call_log)


@pytest.fixture
def ecs(call_log: list[tuple[str, Any]]) -> FakeEcs:
    return FakeEcs(calls=call_log)


@pytest.fixture
def retry_observer() -> RecordingRetryObserver:
    return RecordingRetryObserver()


@pytest.fixture
def fast_retry() -> RetryPolicyConfig:
    return RetryPolicyConfig(base_delay_ms=0, jitter_factor=0, max_retries=2)


@pytest.fixture
def resources(
    incident_store: InMemoryIncidentStore,
    runner: FakeRunner,
    verifier: FakeVerifier,
    call_log: list[tuple[str, Any]],
    fast_retry: RetryPolicyConfig,
    retry_observer: RecordingRetryObserver,
    deploy_history: FakeDeployHistory,
    deployer: FakeDeployer,
    ecs: FakeEcs,
) -> StepResources:
    return StepResources(
        incident_store=incident_store,
        allowlist=RecordingAllowlist(call_log),
        runner=runner,
        verifier=verifier,
        retry_config=fast_retry,
        retry_observer=retry_observer,
        deploy_history=deploy_history,
        deployer=deployer,
        ecs=ecs,
        service_allowlist=StaticServiceAllowlist(("production/api", "staging/*")),
        alb_targets={"production": {TARGET_GROUP_ARN: "prod-cluster/api"}},
    )


@pytest.fixture
def span_exporter() -> InMemorySpanExporter:
    return InMemorySpanExporter()


@pytest.fixture
def tracer_provider(span_exporter: InMemorySpanExporter) -> TracerProvider:
    provider = TracerProvider()
    provider.add_span_processor(SimpleSpanProcessor(span_exporter))
    return provider
