"""Rule-based incident classifier.

Assigns a category, confidence and labels to an incident from its evidence
and builds the evidence pack that backs the decision.  Rules live in one
ordered table and the first match wins; nothing is weighted.

The classifier is a pure function: evidence is put in canonical order before
the rules run, so permuting the input never changes the result or its hash.
It never raises; anything unmatched is ``UNKNOWN``.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from typing import Any

from incident_sre.incidents.evidence import (
    AlbRef,
    EcsRef,
    RunnerRef,
    VerificationRef,
    try_parse_ref,
)
from incident_sre.incidents.models import (
    Classification,
    ClassificationCategory,
    Confidence,
    Evidence,
    EvidenceKind,
    EvidencePack,
    EvidencePointer,
    Incident,
)

logger = logging.getLogger(__name__)

CLASSIFIER_VERSION = "0.7.0"

UNKNOWN_LABELS = ("needs-classification",)

_IMAGE_PULL_PATTERNS = ("cannotpullcontainererror", "pull image", "failed to pull")
_CRASHLOOP_PATTERN = "essential container in task exited"


def _or_unknown(value: Any) -> str:
    if value is None or value == "":
        return "unknown"
    return str(value)


@dataclass(frozen=True)
class RuleMatch:
    """A rule's verdict before post-processing."""

    category: ClassificationCategory
    confidence: Confidence
    labels: tuple[str, ...]
    primary_evidence: EvidencePointer
    key_facts: tuple[str, ...]


@dataclass(frozen=True)
class ClassificationRule:
    """One row of the rule table.

    ``facts`` inspects a single parsed ref and returns the key facts when the
    ref matches, or None.  Only evidence whose kind is in ``kinds`` is
    offered to it.
    """

    category: ClassificationCategory
    confidence: Confidence
    labels: tuple[str, ...]
    kinds: frozenset[str]
    facts: Callable[[Any], list[str] | None]

    @property
    def name(self) -> str:
        return self.category.value

    def match(self, incident: Incident, evidence: Sequence[Evidence]) -> RuleMatch | None:
        for item in evidence:
            if item.kind not in self.kinds:
                continue
            ref = try_parse_ref(item)
            if ref is None:
                logger.debug("Skipping malformed %s evidence %s", item.kind, item.id)
                continue
            facts = self.facts(ref)
            if facts is not None:
                return RuleMatch(
                    category=self.category,
                    confidence=self.confidence,
                    labels=self.labels,
                    primary_evidence=EvidencePointer.from_evidence(item),
                    key_facts=tuple(facts),
                )
        return None


# ---------------------------------------------------------------------------
# Rule predicates
# ---------------------------------------------------------------------------


def _verification_failed(ref: VerificationRef) -> list[str] | None:
    if ref.status not in ("FAILED", "TIMEOUT"):
        return None
    facts = [
        f"Verification run {_or_unknown(ref.run_id)} failed",
        f"Playbook: {_or_unknown(ref.playbook_id)}",
        f"Environment: {_or_unknown(ref.env)}",
    ]
    if ref.completed_at:
        facts.append(f"Failed at: {ref.completed_at}")
    return facts


def _alb_unhealthy(ref: AlbRef) -> list[str] | None:
    if ref.target_health != "unhealthy" and ref.state != "unhealthy":
        return None
    facts = ["ALB target unhealthy", f"Target: {_or_unknown(ref.target_id)}"]
    if ref.reason:
        facts.append(f"Reason: {ref.reason}")
    return facts


def _ecs_facts(headline: str, ref: EcsRef) -> list[str]:
    facts = [
        headline,
        f"Cluster: {_or_unknown(ref.cluster)}",
        f"Task: {_or_unknown(ref.task_arn)}",
        f"Reason: {ref.stopped_reason}",
    ]
    if ref.stopped_at:
        facts.append(f"Stopped at: {ref.stopped_at}")
    return facts


def _ecs_crashloop(ref: EcsRef) -> list[str] | None:
    reason = (ref.stopped_reason or "").lower()
    # exit code 0 is a graceful stop
    if _CRASHLOOP_PATTERN not in reason or ref.exit_code is None or ref.exit_code == 0:
        return None
    return _ecs_facts(f"ECS task crashed with exit code {ref.exit_code}", ref)


def _ecs_image_pull(ref: EcsRef) -> list[str] | None:
    reason = (ref.stopped_reason or "").lower()
    if not any(p in reason for p in _IMAGE_PULL_PATTERNS):
        return None
    return _ecs_facts("ECS task failed to pull container image", ref)


def _iam_validation(ref: RunnerRef) -> list[str] | None:
    step = (ref.step_name or "").lower()
    message = (ref.message or "").lower()
    if "validate-iam" not in step and "iam policy validation failed" not in message:
        return None
    facts = ["IAM policy validation failed", f"Run: {_or_unknown(ref.run_id)}"]
    if ref.step_name:
        facts.append(f"Step: {ref.step_name}")
    if ref.completed_at:
        facts.append(f"Failed at: {ref.completed_at}")
    return facts


def _runner_failed(ref: RunnerRef) -> list[str] | None:
    if ref.conclusion != "failure":
        return None
    facts = ["GitHub Actions workflow failed", f"Run: {_or_unknown(ref.run_id)}"]
    if ref.step_name:
        facts.append(f"Step: {ref.step_name}")
    if ref.run_url:
        facts.append(f"URL: {ref.run_url}")
    if ref.completed_at:
        facts.append(f"Failed at: {ref.completed_at}")
    return facts


_RUNNER_KINDS = frozenset({EvidenceKind.RUNNER.value, EvidenceKind.GITHUB_RUN.value})
_ECS_KINDS = frozenset({EvidenceKind.ECS.value})

RULES: tuple[ClassificationRule, ...] = (
    ClassificationRule(
        category=ClassificationCategory.DEPLOY_VERIFICATION_FAILED,
        confidence=Confidence.HIGH,
        labels=("config", "infra", "needs-redeploy"),
        kinds=frozenset({EvidenceKind.VERIFICATION.value}),
        facts=_verification_failed,
    ),
    ClassificationRule(
        category=ClassificationCategory.ALB_TARGET_UNHEALTHY,
        confidence=Confidence.HIGH,
        labels=("alb", "infra", "needs-investigation"),
        kinds=frozenset({EvidenceKind.ALB.value}),
        facts=_alb_unhealthy,
    ),
    ClassificationRule(
        category=ClassificationCategory.ECS_TASK_CRASHLOOP,
        confidence=Confidence.HIGH,
        labels=("code", "crashloop", "ecs", "needs-investigation"),
        kinds=_ECS_KINDS,
        facts=_ecs_crashloop,
    ),
    ClassificationRule(
        category=ClassificationCategory.ECS_IMAGE_PULL_FAILED,
        confidence=Confidence.HIGH,
        labels=("ecs", "image", "infra", "needs-redeploy"),
        kinds=_ECS_KINDS,
        facts=_ecs_image_pull,
    ),
    ClassificationRule(
        category=ClassificationCategory.IAM_POLICY_VALIDATION_FAILED,
        confidence=Confidence.HIGH,
        labels=("iam", "infra", "needs-fix", "policy"),
        kinds=_RUNNER_KINDS,
        facts=_iam_validation,
    ),
    ClassificationRule(
        category=ClassificationCategory.RUNNER_WORKFLOW_FAILED,
        confidence=Confidence.MEDIUM,
        labels=("ci", "needs-investigation", "runner"),
        kinds=_RUNNER_KINDS,
        facts=_runner_failed,
    ),
)


def _unknown_match(incident: Incident) -> RuleMatch:
    source = incident.source_primary
    return RuleMatch(
        category=ClassificationCategory.UNKNOWN,
        confidence=Confidence.LOW,
        labels=UNKNOWN_LABELS,
        primary_evidence=EvidencePointer(kind=source.kind, ref=dict(source.ref)),
        key_facts=(
            "No specific classification pattern matched",
            f"Severity: {incident.severity.value}",
            f"Source: {source.kind}",
        ),
    )


def _first_match(
    incident: Incident,
    evidence: Sequence[Evidence],
    rules: Sequence[ClassificationRule],
) -> RuleMatch:
    for rule in rules:
        result = rule.match(incident, evidence)
        if result is not None:
            logger.debug("Incident %s matched rule %s", incident.incident_key, rule.name)
            return result
    return _unknown_match(incident)


def classify(
    incident: Incident,
    evidence: Sequence[Evidence],
    rules: Sequence[ClassificationRule] = RULES,
) -> Classification:
    """Classify *incident* from *evidence*.

    Returns the same Classification (and therefore the same hash) for any
    ordering of *evidence*.
    """
    ordered = sorted(evidence, key=Evidence.sort_key)
    result = _first_match(incident, ordered, rules)

    pointers = sorted(
        (EvidencePointer.from_evidence(e) for e in ordered),
        key=EvidencePointer.sort_key,
    )
    pack = EvidencePack(
        summary=f"{result.category.value}: {incident.title}",
        key_facts=tuple(sorted(result.key_facts)),
        pointers=tuple(pointers),
    )
    return Classification(
        classifier_version=CLASSIFIER_VERSION,
        category=result.category,
        confidence=result.confidence,
        labels=tuple(sorted(set(result.labels))),
        primary_evidence=result.primary_evidence,
        evidence_pack=pack,
    )
