"""Incident SRE: deterministic incident classification and remediation.

incident-sre takes an operational incident (a failed deploy, an unhealthy
load-balancer target, a crash-looping container, a failed CI workflow) plus
the evidence collected for it, and carries it from detection to a recorded
outcome:

Core concepts
-------------
* **Classification**: an ordered rule table maps an incident and its
  evidence to a category, confidence and labels.  The result is a pure
  function of its inputs and hashes identically however the evidence is
  ordered.

* **Playbook**: a versioned sequence of idempotent steps that applies to
  one or more categories.  Runs are gated on required evidence, commit
  determinism and a repository allowlist before anything external happens.

* **Retry policy**: outbound provider calls are retried with bounded,
  rate-limit-aware exponential backoff.  Mutating calls are only retried on
  explicit opt-in.

* **Outcome record**: once an incident closes, a reproducible postmortem
  and its metrics are stored idempotently on ``(outcome_key,
  postmortem_hash)``.

Quick start::

    from incident_sre import EngineConfig, RemediationExecutor, build_default_registry
    from incident_sre.incidents import InMemoryIncidentStore, InMemoryRemediationStore

    config = EngineConfig.from_yaml("engine.yaml")
    incidents = InMemoryIncidentStore()
    executor = RemediationExecutor(
        build_default_registry(),
        config.build_resources(incidents, runner=my_runner, verifier=my_verifier),
        InMemoryRemediationStore(),
        lawbook_version=config.lawbook_version,
    )
    result = await executor.execute(incident.id, "safe-retry-runner")
"""

from incident_sre.config import EngineConfig
from incident_sre.errors import (
    ConfigurationError,
    IncidentNotFoundError,
    IncidentSREError,
    InvalidIdempotencyKeyError,
    PlaybookNotFoundError,
    ProviderError,
)
from incident_sre.events import EventLogger, EventRetryObserver
from incident_sre.incidents.classifier import classify
from incident_sre.incidents.outcomes import PostmortemGenerator
from incident_sre.incidents.playbook_registry import PlaybookRegistry
from incident_sre.incidents.playbooks import build_default_registry
from incident_sre.incidents.remediation_executor import RemediationExecutor
from incident_sre.providers import StaticRepoAllowlist, StaticServiceAllowlist
from incident_sre.retry import RetryPolicyConfig, should_retry, with_retry

__all__ = [
    "ConfigurationError",
    "EngineConfig",
    "EventLogger",
    "EventRetryObserver",
    "IncidentNotFoundError",
    "IncidentSREError",
    "InvalidIdempotencyKeyError",
    "PlaybookNotFoundError",
    "PlaybookRegistry",
    "PostmortemGenerator",
    "ProviderError",
    "RemediationExecutor",
    "RetryPolicyConfig",
    "StaticRepoAllowlist",
    "StaticServiceAllowlist",
    "build_default_registry",
    "classify",
    "should_retry",
    "with_retry",
]

__version__ = "0.1.0"
