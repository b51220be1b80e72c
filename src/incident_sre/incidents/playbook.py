"""Playbook models: step contracts, results, and remediation run records."""

from __future__ import annotations

import re
import uuid
from collections.abc import Awaitable, Callable, Mapping, Sequence
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING, Any
from urllib.parse import quote

from incident_sre.errors import InvalidIdempotencyKeyError
from incident_sre.incidents.evidence import EvidencePredicate
from incident_sre.incidents.models import ClassificationCategory, Evidence, iso_or_none, utcnow

if TYPE_CHECKING:
    from incident_sre.incidents.store import IncidentStore
    from incident_sre.providers import (
        DeployHistoryProvider,
        DeployProvider,
        EcsProvider,
        RepoAllowlist,
        RunnerProvider,
        ServiceAllowlist,
        VerificationProvider,
    )
    from incident_sre.retry import RetryObserver, RetryPolicyConfig


IDEMPOTENCY_KEY_PATTERN = re.compile(r"^[A-Za-z0-9._:/%-]+$")
_PLAIN_SEGMENT = re.compile(r"^[A-Za-z0-9._:/-]+$")
_SEGMENT_SAFE_CHARS = "._:/-"
MAX_IDEMPOTENCY_KEY_LENGTH = 512


class ActionType(str, Enum):
    """Kind of side effect a step performs."""

    DISPATCH_WORKFLOW = "DISPATCH_WORKFLOW"
    POLL_WORKFLOW = "POLL_WORKFLOW"
    INGEST_WORKFLOW = "INGEST_WORKFLOW"
    RUN_VERIFICATION = "RUN_VERIFICATION"
    UPDATE_INCIDENT_STATUS = "UPDATE_INCIDENT_STATUS"
    SELECT_LAST_KNOWN_GOOD = "SELECT_LAST_KNOWN_GOOD"
    ROLLBACK_DEPLOY = "ROLLBACK_DEPLOY"
    SNAPSHOT_SERVICE_STATE = "SNAPSHOT_SERVICE_STATE"
    FORCE_NEW_DEPLOYMENT = "FORCE_NEW_DEPLOYMENT"
    POLL_SERVICE_HEALTH = "POLL_SERVICE_HEALTH"


class StepErrorCode(str, Enum):
    """Structured failure codes returned by step executors."""

    EVIDENCE_MISSING = "EVIDENCE_MISSING"
    INVALID_EVIDENCE = "INVALID_EVIDENCE"
    INVALID_ENVIRONMENT = "INVALID_ENVIRONMENT"
    DETERMINISM_REQUIRED = "DETERMINISM_REQUIRED"
    REPO_NOT_ALLOWED = "REPO_NOT_ALLOWED"
    DISPATCH_FAILED = "DISPATCH_FAILED"
    POLL_FAILED = "POLL_FAILED"
    INGEST_FAILED = "INGEST_FAILED"
    MISSING_RUN_ID = "MISSING_RUN_ID"
    VERIFICATION_FAILED = "VERIFICATION_FAILED"
    VERIFICATION_EXECUTION_ERROR = "VERIFICATION_EXECUTION_ERROR"
    MISSING_VERIFICATION_OUTPUT = "MISSING_VERIFICATION_OUTPUT"
    INCIDENT_NOT_FOUND = "INCIDENT_NOT_FOUND"
    INCIDENT_UPDATE_FAILED = "INCIDENT_UPDATE_FAILED"
    SERVICE_NOT_ALLOWED = "SERVICE_NOT_ALLOWED"
    ENVIRONMENT_REQUIRED = "ENVIRONMENT_REQUIRED"
    EVIDENCE_INSUFFICIENT = "EVIDENCE_INSUFFICIENT"
    ALB_MAPPING_REQUIRED = "ALB_MAPPING_REQUIRED"
    INVALID_INPUT = "INVALID_INPUT"
    LKG_QUERY_FAILED = "LKG_QUERY_FAILED"
    NO_LKG_FOUND = "NO_LKG_FOUND"
    NO_LKG_REFERENCE = "NO_LKG_REFERENCE"
    MISSING_LKG_OUTPUT = "MISSING_LKG_OUTPUT"
    DEPLOY_DISPATCH_FAILED = "DEPLOY_DISPATCH_FAILED"
    MISSING_DISPATCH_OUTPUT = "MISSING_DISPATCH_OUTPUT"
    SNAPSHOT_FAILED = "SNAPSHOT_FAILED"
    RESET_FAILED = "RESET_FAILED"
    OBSERVE_FAILED = "OBSERVE_FAILED"
    STATUS_UPDATE_FAILED = "STATUS_UPDATE_FAILED"
    EXECUTION_ERROR = "EXECUTION_ERROR"


class RemediationRunStatus(str, Enum):
    """Status of a remediation run."""

    PLANNED = "PLANNED"
    RUNNING = "RUNNING"
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"
    SKIPPED = "SKIPPED"

    @property
    def is_terminal(self) -> bool:
        return self in (
            RemediationRunStatus.SUCCEEDED,
            RemediationRunStatus.FAILED,
            RemediationRunStatus.SKIPPED,
        )


class StepStatus(str, Enum):
    """Status of a single step within a run."""

    PLANNED = "PLANNED"
    RUNNING = "RUNNING"
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"
    SKIPPED = "SKIPPED"


# ---------------------------------------------------------------------------
# Step results
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class StepError:
    code: StepErrorCode
    message: str
    details: Mapping[str, Any] | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"code": self.code.value, "message": self.message}
        if self.details is not None:
            data["details"] = dict(self.details)
        return data


@dataclass(frozen=True)
class StepResult:
    """Outcome of one step.

    ``output`` is what gets persisted and chained into later steps, so it
    only ever holds the step's allow-listed fields.
    """

    success: bool
    output: Mapping[str, Any] | None = None
    error: StepError | None = None

    @classmethod
    def ok(cls, output: Mapping[str, Any] | None = None) -> StepResult:
        return cls(success=True, output=output)

    @classmethod
    def fail(
        cls,
        code: StepErrorCode,
        message: str,
        details: Mapping[str, Any] | None = None,
    ) -> StepResult:
        return cls(success=False, error=StepError(code=code, message=message, details=details))

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"success": self.success}
        if self.output is not None:
            data["output"] = dict(self.output)
        if self.error is not None:
            data["error"] = self.error.to_dict()
        return data


# ---------------------------------------------------------------------------
# Step contract
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class StepContext:
    """Everything a step may read.

    ``inputs`` holds the request inputs plus earlier steps' outputs for the
    same run, never state from another run.
    ``started_at`` is when the run was created; steps whose side effect is
    bucketed by time derive the bucket from it.
    """

    incident_id: str
    incident_key: str
    run_id: str
    lawbook_version: str
    evidence: tuple[Evidence, ...] = ()
    inputs: Mapping[str, Any] = field(default_factory=dict)
    started_at: datetime = field(default_factory=utcnow)

    def with_inputs(self, inputs: Mapping[str, Any]) -> StepContext:
        return replace(self, inputs=dict(inputs))


@dataclass(frozen=True)
class StepResources:
    """Collaborators handed to every step executor.

    A missing ``service_allowlist`` denies every redeploy and reset.
    ``alb_targets`` maps a canonical environment to ``{targetGroupArn:
    "cluster/service"}`` so ALB evidence can be resolved to an ECS service.
    """

    incident_store: IncidentStore
    allowlist: RepoAllowlist
    runner: RunnerProvider | None = None
    verifier: VerificationProvider | None = None
    retry_config: RetryPolicyConfig | None = None
    retry_observer: RetryObserver | None = None
    environment_aliases: Mapping[str, str] = field(default_factory=dict)
    deploy_history: DeployHistoryProvider | None = None
    deployer: DeployProvider | None = None
    ecs: EcsProvider | None = None
    service_allowlist: ServiceAllowlist | None = None
    alb_targets: Mapping[str, Mapping[str, str]] = field(default_factory=dict)


StepExecutor = Callable[[StepResources, StepContext], Awaitable[StepResult]]
IdempotencyKeyFn = Callable[[StepContext], str]


@dataclass(frozen=True)
class StepDefinition:
    """A single playbook step.

    Args:
        step_id: Stable identifier, unique within the playbook.
        action_type: The kind of side effect this step performs.
        description: Human-readable summary.
        execute: Async executor ``(resources, context) -> StepResult``.
        idempotency_key: Pure function of the context identifying this exact
            side effect.
        output_key: Name under which this step's output is exposed to later
            steps in ``context.inputs``.
    """

    step_id: str
    action_type: ActionType
    description: str
    execute: StepExecutor
    idempotency_key: IdempotencyKeyFn
    output_key: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "stepId": self.step_id,
            "actionType": self.action_type.value,
            "description": self.description,
            "outputKey": self.output_key,
        }


@dataclass(frozen=True)
class PlaybookDefinition:
    """An immutable, versioned remediation playbook."""

    id: str
    version: str
    title: str
    applicable_categories: tuple[ClassificationCategory, ...]
    required_evidence: tuple[EvidencePredicate, ...]
    steps: tuple[StepDefinition, ...]

    def __post_init__(self) -> None:
        if not self.id:
            raise ValueError("playbook id must not be empty")
        if not self.steps:
            raise ValueError(f"playbook {self.id!r} must have at least one step")
        ids = [s.step_id for s in self.steps]
        if len(set(ids)) != len(ids):
            raise ValueError(f"playbook {self.id!r} has duplicate step ids")

    def applies_to(self, category: ClassificationCategory | str | None) -> bool:
        if category is None:
            return False
        value = category.value if isinstance(category, ClassificationCategory) else category
        return any(c.value == value for c in self.applicable_categories)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "version": self.version,
            "title": self.title,
            "applicableCategories": [c.value for c in self.applicable_categories],
            "requiredEvidence": [p.to_dict() for p in self.required_evidence],
            "steps": [s.to_dict() for s in self.steps],
        }


# ---------------------------------------------------------------------------
# Run records
# ---------------------------------------------------------------------------


@dataclass
class StepRecord:
    """Persisted record of one executed step."""

    step_id: str
    action_type: ActionType
    idempotency_key: str
    status: StepStatus = StepStatus.PLANNED
    inputs_hash: str = ""
    output: dict[str, Any] | None = None
    error: StepError | None = None
    started_at: datetime | None = None
    finished_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "step_id": self.step_id,
            "action_type": self.action_type.value,
            "idempotency_key": self.idempotency_key,
            "status": self.status.value,
            "inputs_hash": self.inputs_hash,
            "output": self.output,
            "error": self.error.to_dict() if self.error else None,
            "started_at": iso_or_none(self.started_at),
            "finished_at": iso_or_none(self.finished_at),
        }


@dataclass
class RemediationRun:
    """One remediation attempt, identified by its run key."""

    run_key: str
    incident_id: str
    playbook_id: str
    playbook_version: str
    status: RemediationRunStatus = RemediationRunStatus.PLANNED
    lawbook_version: str = ""
    inputs_hash: str = ""
    planned: dict[str, Any] | None = None
    result: dict[str, Any] | None = None
    steps: list[StepRecord] = field(default_factory=list)
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime | None = None

    @property
    def report_hash(self) -> str | None:
        """Verification report hash surfaced by this run, if any."""
        if self.result and self.result.get("reportHash"):
            return str(self.result["reportHash"])
        for step in self.steps:
            if step.output and step.output.get("reportHash"):
                return str(step.output["reportHash"])
        return None

    @property
    def finished_at(self) -> datetime | None:
        if self.status.is_terminal:
            return self.updated_at or self.created_at
        return None

    def sort_key(self) -> tuple[datetime, str]:
        return (self.created_at, self.id)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "run_key": self.run_key,
            "incident_id": self.incident_id,
            "playbook_id": self.playbook_id,
            "playbook_version": self.playbook_version,
            "status": self.status.value,
            "lawbook_version": self.lawbook_version,
            "inputs_hash": self.inputs_hash,
            "planned": self.planned,
            "result": self.result,
            "steps": [s.to_dict() for s in self.steps],
            "created_at": iso_or_none(self.created_at),
            "updated_at": iso_or_none(self.updated_at),
        }


# ---------------------------------------------------------------------------
# Keys and redaction
# ---------------------------------------------------------------------------


def validate_idempotency_key(key: str) -> str:
    """Return *key* unchanged if it is a well-formed idempotency or run key.

    Raises:
        InvalidIdempotencyKeyError: on empty, oversized, or malformed keys.
    """
    if not key or len(key) > MAX_IDEMPOTENCY_KEY_LENGTH or not IDEMPOTENCY_KEY_PATTERN.match(key):
        raise InvalidIdempotencyKeyError(f"Invalid idempotency key format: {key!r}")
    return key


def key_segment(text: str) -> str:
    """Render caller-supplied text (an incident key, a run id) as a key segment.

    Text made only of key characters passes through unchanged.  Anything
    else is percent-encoded as UTF-8, so ``runner:555:Run tests:failure``
    becomes ``runner:555:Run%20tests:failure``.  Plain segments never
    contain ``%``, which keeps distinct inputs distinct.
    """
    if _PLAIN_SEGMENT.match(text):
        return text
    return quote(text, safe=_SEGMENT_SAFE_CHARS).replace("~", "%7E")


def compute_run_key(incident_key: str, playbook_id: str, inputs_hash: str) -> str:
    return f"{key_segment(incident_key)}:{playbook_id}:{inputs_hash}"


_SENSITIVE_KEYS = frozenset(
    {"authorization", "token", "access_token", "cookie", "set-cookie", "password", "secret"}
)
_CREDENTIAL_RE = re.compile(
    r"(token=|authorization|bearer\s|\bgh[oprsu]_[A-Za-z0-9]+|://[^/\s:@]+:[^/\s@]+@)",
    re.IGNORECASE,
)


def carries_credentials(value: Any) -> bool:
    """True if *value* (or anything nested in it) looks like a secret."""
    if isinstance(value, str):
        return bool(_CREDENTIAL_RE.search(value))
    if isinstance(value, Mapping):
        return any(
            str(k).lower() in _SENSITIVE_KEYS or carries_credentials(v) for k, v in value.items()
        )
    if isinstance(value, (list, tuple)):
        return any(carries_credentials(v) for v in value)
    return False


def _scrub(value: Any) -> Any:
    if isinstance(value, Mapping):
        return {
            k: _scrub(v)
            for k, v in value.items()
            if str(k).lower() not in _SENSITIVE_KEYS and not _is_secret_leaf(v)
        }
    if isinstance(value, (list, tuple)):
        return [_scrub(v) for v in value if not _is_secret_leaf(v)]
    return value


def _is_secret_leaf(value: Any) -> bool:
    return isinstance(value, str) and bool(_CREDENTIAL_RE.search(value))


def redact_output(output: Mapping[str, Any], allowed: Sequence[str]) -> dict[str, Any]:
    """Keep only *allowed* keys and drop any value that carries credentials.

    Nested mappings and lists are scrubbed the same way.  Key order follows
    *allowed*.
    """
    redacted: dict[str, Any] = {}
    for key in allowed:
        if key not in output:
            continue
        value = output[key]
        if _is_secret_leaf(value):
            continue
        redacted[key] = _scrub(value)
    return redacted
