"""Provider collaborator interfaces.

Steps reach external systems only through these protocols.  Adapters for a
real CI service, deploy pipeline, container service or verification harness
implement them outside this package; tests use small in-memory fakes.

Provider results are plain mappings holding whatever the remote API
returned.  Steps copy out an allow-listed subset before anything is
persisted, so adapters do not need to strip fields themselves.
"""

from __future__ import annotations

import fnmatch
import logging
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from typing import Any, Protocol, runtime_checkable

from incident_sre.incidents.hashing import content_hash

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DispatchRequest:
    """Request to re-run a CI workflow at an explicit commit or ref."""

    correlation_id: str
    owner: str
    repo: str
    workflow_id_or_file: str
    ref: str
    inputs: Mapping[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "correlationId": self.correlation_id,
            "owner": self.owner,
            "repo": self.repo,
            "workflowIdOrFile": self.workflow_id_or_file,
            "ref": self.ref,
            "inputs": dict(self.inputs),
        }


@runtime_checkable
class RunnerProvider(Protocol):
    """CI workflow runner.

    ``dispatch_workflow`` returns at least ``runId``, ``runUrl``,
    ``recordId`` and ``isExisting``.  ``poll_run`` returns ``runId``,
    ``status``, ``conclusion``, ``normalizedStatus`` and ``updatedAt``.
    ``ingest_run`` returns ``runId``, ``recordId``, ``summary``, ``jobs`` and
    ``artifacts``.  Failures are raised, preferably as
    :class:`~incident_sre.errors.ProviderError` carrying the HTTP status.
    """

    async def dispatch_workflow(self, request: DispatchRequest) -> Mapping[str, Any]: ...

    async def poll_run(self, owner: str, repo: str, run_id: int | str) -> Mapping[str, Any]: ...

    async def ingest_run(self, owner: str, repo: str, run_id: int | str) -> Mapping[str, Any]: ...


@dataclass(frozen=True)
class VerificationReport:
    """Result of a post-deploy verification run."""

    passed: bool
    playbook_run_id: str
    env: str
    deploy_id: str | None = None
    checks: tuple[Mapping[str, Any], ...] = ()
    report_hash: str = ""

    @classmethod
    def build(
        cls,
        passed: bool,
        playbook_run_id: str,
        env: str,
        deploy_id: str | None = None,
        checks: Iterable[Mapping[str, Any]] = (),
    ) -> VerificationReport:
        """Create a report whose hash covers env, deploy id, and checks."""
        checks = tuple(dict(c) for c in checks)
        digest = content_hash({"env": env, "deployId": deploy_id, "checks": list(checks)})
        return cls(
            passed=passed,
            playbook_run_id=playbook_run_id,
            env=env,
            deploy_id=deploy_id,
            checks=checks,
            report_hash=digest,
        )

    @property
    def status(self) -> str:
        return "success" if self.passed else "failed"


@runtime_checkable
class VerificationProvider(Protocol):
    """Runs the post-deploy verification suite for one environment."""

    async def run_verification(self, env: str, deploy_id: str | None) -> VerificationReport: ...


@runtime_checkable
class RepoAllowlist(Protocol):
    """Authorization predicate consulted before any dispatch."""

    def is_allowed(self, owner: str, repo: str) -> bool: ...


def _pattern_matches(patterns: Iterable[str], target: str) -> bool:
    for pattern in patterns:
        if pattern == target:
            return True
        if pattern.endswith("/*") and fnmatch.fnmatchcase(target, pattern):
            return True
    return False


def _clean_patterns(patterns: Iterable[str]) -> tuple[str, ...]:
    return tuple(p.strip().lower() for p in patterns if p and p.strip())


class StaticRepoAllowlist:
    """Allowlist built from ``owner/repo`` patterns.

    Supports exact entries and ``owner/*`` wildcards.  Matching is
    case-insensitive.  An empty allowlist denies everything.
    """

    def __init__(self, patterns: Iterable[str] = ()) -> None:
        self._patterns = _clean_patterns(patterns)

    @property
    def patterns(self) -> tuple[str, ...]:
        return self._patterns

    def is_allowed(self, owner: str, repo: str) -> bool:
        if not owner or not repo:
            return False
        target = f"{owner}/{repo}".lower()
        if _pattern_matches(self._patterns, target):
            return True
        logger.debug("Repository %s denied by allowlist", target)
        return False


# ---------------------------------------------------------------------------
# Deploy and service providers
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class DeployRequest:
    """Request to redeploy a service at a pinned commit and image."""

    correlation_id: str
    env: str
    service: str
    commit_hash: str | None = None
    image_digest: str | None = None
    version: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "correlationId": self.correlation_id,
            "env": self.env,
            "service": self.service,
            "commitHash": self.commit_hash,
            "imageDigest": self.image_digest,
            "version": self.version,
        }


@runtime_checkable
class DeployHistoryProvider(Protocol):
    """Deploy status history.

    ``find_last_known_good`` returns the newest deploy of *service* in *env*
    whose verification passed, or None.  The mapping carries
    ``snapshotId``, ``deployEventId``, ``env``, ``service``, ``version``,
    ``commitHash``, ``imageDigest``, ``cfnChangeSetId``, ``observedAt``,
    ``verificationRunId`` and ``verificationReportHash``.
    """

    async def find_last_known_good(
        self, env: str, service: str | None
    ) -> Mapping[str, Any] | None: ...


@runtime_checkable
class DeployProvider(Protocol):
    """Deploy pipeline; ``dispatch_deploy`` returns ``dispatchId`` and ``message``."""

    async def dispatch_deploy(self, request: DeployRequest) -> Mapping[str, Any]: ...


@runtime_checkable
class EcsProvider(Protocol):
    """Container service control plane.

    ``describe_service`` returns ``serviceArn``, ``desiredCount``,
    ``runningCount``, ``taskDefinition`` and ``deployments``.
    ``force_new_deployment`` returns ``serviceArn`` and ``deploymentId``.
    ``poll_service_stability`` waits up to *max_wait_seconds* and returns
    ``stable`` and ``finalState``.
    """

    async def describe_service(self, cluster: str, service: str) -> Mapping[str, Any]: ...

    async def force_new_deployment(
        self, cluster: str, service: str, correlation_id: str
    ) -> Mapping[str, Any]: ...

    async def poll_service_stability(
        self,
        cluster: str,
        service: str,
        max_wait_seconds: int,
        check_interval_seconds: int,
    ) -> Mapping[str, Any]: ...


@runtime_checkable
class ServiceAllowlist(Protocol):
    """Authorization predicate consulted before a service is redeployed or reset."""

    def is_allowed(self, env: str, service: str) -> bool: ...


class StaticServiceAllowlist:
    """Allowlist built from ``env/service`` patterns.

    Supports exact entries and ``env/*`` wildcards, compared
    case-insensitively against the canonical environment name.  An empty
    allowlist denies everything.
    """

    def __init__(self, patterns: Iterable[str] = ()) -> None:
        self._patterns = _clean_patterns(patterns)

    @property
    def patterns(self) -> tuple[str, ...]:
        return self._patterns

    def is_allowed(self, env: str, service: str) -> bool:
        if not env or not service:
            return False
        target = f"{env}/{service}".lower()
        if _pattern_matches(self._patterns, target):
            return True
        logger.debug("Service %s denied by allowlist", target)
        return False
