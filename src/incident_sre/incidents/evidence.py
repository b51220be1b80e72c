"""Evidence ref variants and evidence gating.

Each evidence kind carries a structured ``ref`` payload.  The payloads are
parsed into one pydantic model per kind so steps can check for missing
fields against a declared shape instead of probing dictionaries.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any, Literal, Union

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError

from incident_sre.incidents.models import Evidence, EvidenceKind

__all__ = [
    "AlbRef",
    "DeployStatusRef",
    "EcsRef",
    "EvidenceCheck",
    "EvidencePredicate",
    "EvidenceRef",
    "GenericRef",
    "HttpRef",
    "LogPointerRef",
    "RunnerRef",
    "VerificationRef",
    "check_evidence_predicates",
    "find_evidence",
    "missing_fields",
    "parse_ref",
    "try_parse_ref",
]


class _RefModel(BaseModel):
    model_config = ConfigDict(extra="allow", populate_by_name=True, frozen=True)


class RunnerRef(_RefModel):
    """CI workflow run (``runner`` or ``github_run`` evidence)."""

    kind: Literal["runner", "github_run"] = "runner"
    owner: str | None = None
    repo: str | None = None
    workflow_id_or_file: str | None = Field(
        default=None, validation_alias=AliasChoices("workflowIdOrFile", "workflow_id_or_file", "workflow")
    )
    ref: str | None = None
    head_sha: str | None = Field(default=None, validation_alias=AliasChoices("headSha", "head_sha"))
    run_id: int | str | None = Field(default=None, validation_alias=AliasChoices("runId", "run_id"))
    run_url: str | None = Field(default=None, validation_alias=AliasChoices("runUrl", "run_url"))
    step_name: str | None = Field(default=None, validation_alias=AliasChoices("stepName", "step_name"))
    message: str | None = None
    conclusion: str | None = None
    completed_at: str | None = Field(default=None, validation_alias=AliasChoices("completedAt", "completed_at"))
    inputs: dict[str, Any] = Field(default_factory=dict)


class EcsRef(_RefModel):
    kind: Literal["ecs"] = "ecs"
    cluster: str | None = None
    service: str | None = None
    env: str | None = Field(default=None, validation_alias=AliasChoices("env", "environment"))
    task_arn: str | None = Field(default=None, validation_alias=AliasChoices("taskArn", "task_arn"))
    stopped_reason: str | None = Field(
        default=None, validation_alias=AliasChoices("stoppedReason", "stopped_reason")
    )
    exit_code: int | None = Field(default=None, validation_alias=AliasChoices("exitCode", "exit_code"))
    stopped_at: str | None = Field(default=None, validation_alias=AliasChoices("stoppedAt", "stopped_at"))


class AlbRef(_RefModel):
    kind: Literal["alb"] = "alb"
    target_id: str | None = Field(default=None, validation_alias=AliasChoices("targetId", "target_id"))
    target_group_arn: str | None = Field(
        default=None,
        validation_alias=AliasChoices("targetGroupArn", "target_group_arn", "targetGroup"),
    )
    target_health: str | None = Field(
        default=None, validation_alias=AliasChoices("targetHealth", "target_health")
    )
    state: str | None = None
    reason: str | None = None
    env: str | None = Field(default=None, validation_alias=AliasChoices("env", "environment"))
    cluster: str | None = None
    service: str | None = None


class VerificationRef(_RefModel):
    kind: Literal["verification"] = "verification"
    status: str | None = None
    result: str | None = None
    env: str | None = None
    deploy_id: int | str | None = Field(default=None, validation_alias=AliasChoices("deployId", "deploy_id"))
    run_id: int | str | None = Field(default=None, validation_alias=AliasChoices("runId", "run_id"))
    playbook_id: str | None = Field(
        default=None, validation_alias=AliasChoices("playbookId", "playbook_id")
    )
    playbook_run_id: str | None = Field(
        default=None, validation_alias=AliasChoices("playbookRunId", "playbook_run_id")
    )
    report_hash: str | None = Field(
        default=None, validation_alias=AliasChoices("reportHash", "report_hash")
    )
    completed_at: str | None = Field(default=None, validation_alias=AliasChoices("completedAt", "completed_at"))


class DeployStatusRef(_RefModel):
    kind: Literal["deploy_status"] = "deploy_status"
    env: str | None = None
    deploy_id: int | str | None = Field(default=None, validation_alias=AliasChoices("deployId", "deploy_id"))
    service: str | None = None
    status: str | None = None
    message: str | None = None


class HttpRef(_RefModel):
    kind: Literal["http"] = "http"
    url: str | None = None
    method: str | None = None
    status_code: int | None = Field(default=None, validation_alias=AliasChoices("statusCode", "status_code"))


class LogPointerRef(_RefModel):
    kind: Literal["log_pointer"] = "log_pointer"
    log_group: str | None = Field(default=None, validation_alias=AliasChoices("logGroup", "log_group"))
    log_stream: str | None = Field(default=None, validation_alias=AliasChoices("logStream", "log_stream"))
    uri: str | None = None


class GenericRef(_RefModel):
    """Fallback for evidence kinds without a dedicated variant."""

    kind: str = "unknown"


EvidenceRef = Union[
    RunnerRef,
    EcsRef,
    AlbRef,
    VerificationRef,
    DeployStatusRef,
    HttpRef,
    LogPointerRef,
    GenericRef,
]

_VARIANTS: dict[str, type[_RefModel]] = {
    EvidenceKind.RUNNER.value: RunnerRef,
    EvidenceKind.GITHUB_RUN.value: RunnerRef,
    EvidenceKind.ECS.value: EcsRef,
    EvidenceKind.ALB.value: AlbRef,
    EvidenceKind.VERIFICATION.value: VerificationRef,
    EvidenceKind.DEPLOY_STATUS.value: DeployStatusRef,
    EvidenceKind.HTTP.value: HttpRef,
    EvidenceKind.LOG_POINTER.value: LogPointerRef,
}


def parse_ref(kind: str, ref: Mapping[str, Any]) -> EvidenceRef:
    """Parse an evidence payload into its kind's variant.

    Raises:
        pydantic.ValidationError: if a present field has the wrong type.
    """
    model = _VARIANTS.get(kind, GenericRef)
    payload = {k: v for k, v in dict(ref).items() if k != "kind"}
    return model.model_validate({**payload, "kind": kind})


def try_parse_ref(evidence: Evidence) -> EvidenceRef | None:
    """Like :func:`parse_ref` but returns None for malformed payloads."""
    try:
        return evidence.typed_ref()
    except ValidationError:
        return None


def missing_fields(ref: BaseModel, required: Iterable[str]) -> list[str]:
    """Return the names in *required* that are unset or empty on *ref*."""
    missing = []
    for name in required:
        value = getattr(ref, name, None)
        if value is None or value == "":
            missing.append(name)
    return missing


def find_evidence(evidence: Sequence[Evidence], kinds: Iterable[str]) -> Evidence | None:
    """First evidence entry (in store order) whose kind is in *kinds*."""
    wanted = set(kinds)
    for item in evidence:
        if item.kind in wanted:
            return item
    return None


# ---------------------------------------------------------------------------
# Playbook-level gating
# ---------------------------------------------------------------------------


def _lookup(data: Mapping[str, Any], dotted: str) -> Any:
    value: Any = data
    for part in dotted.split("."):
        if isinstance(value, Mapping) and part in value:
            value = value[part]
        else:
            return None
    return value


@dataclass(frozen=True)
class EvidencePredicate:
    """Require evidence of ``kind``, optionally with dotted ``required_fields``.

    Field paths are resolved against ``{"kind", "ref", "sha256"}``, for
    example ``"ref.env"`` or ``"sha256"``.
    """

    kind: str
    required_fields: tuple[str, ...] = ()

    def is_satisfied_by(self, evidence: Sequence[Evidence]) -> bool:
        for item in evidence:
            if item.kind != self.kind:
                continue
            view = {"kind": item.kind, "ref": item.ref, "sha256": item.sha256}
            if all(_lookup(view, f) is not None for f in self.required_fields):
                return True
        return False

    def to_dict(self) -> dict[str, Any]:
        return {"kind": self.kind, "requiredFields": list(self.required_fields)}


@dataclass(frozen=True)
class EvidenceCheck:
    satisfied: bool
    missing: tuple[EvidencePredicate, ...] = field(default_factory=tuple)


def check_evidence_predicates(
    predicates: Sequence[EvidencePredicate],
    evidence: Sequence[Evidence],
) -> EvidenceCheck:
    """Evaluate predicates with OR semantics.

    The check passes when any one predicate is satisfied, or when there are
    no predicates at all.  ``missing`` lists every unsatisfied predicate.
    """
    if not predicates:
        return EvidenceCheck(satisfied=True)
    missing = tuple(p for p in predicates if not p.is_satisfied_by(evidence))
    return EvidenceCheck(satisfied=len(missing) < len(predicates), missing=missing)
