"""Tests for the deterministic incident classifier."""

from __future__ import annotations

import itertools

from fakes import T0, make_incident, runner_evidence, verification_evidence

from incident_sre.incidents.classifier import CLASSIFIER_VERSION, RULES, classify
from incident_sre.incidents.models import (
    ClassificationCategory,
    Confidence,
    Evidence,
)


def _evidence(kind: str, incident_id: str = "inc-1", sha: str | None = None, **ref: object) -> Evidence:
    return Evidence(kind=kind, ref=ref, incident_id=incident_id, sha256=sha, created_at=T0)


class TestRuleTable:
    def test_rule_order(self) -> None:
        assert [r.name for r in RULES] == [
            "DEPLOY_VERIFICATION_FAILED",
            "ALB_TARGET_UNHEALTHY",
            "ECS_TASK_CRASHLOOP",
            "ECS_IMAGE_PULL_FAILED",
            "IAM_POLICY_VALIDATION_FAILED",
            "RUNNER_WORKFLOW_FAILED",
        ]

    def test_version(self) -> None:
        c = classify(make_incident(), [])
        assert c.classifier_version == CLASSIFIER_VERSION == "0.7.0"


class TestCategories:
    def test_verification_failed(self) -> None:
        incident = make_incident()
        c = classify(incident, [verification_evidence(incident.id)])
        assert c.category == ClassificationCategory.DEPLOY_VERIFICATION_FAILED
        assert c.confidence == Confidence.HIGH
        assert c.labels == ("config", "infra", "needs-redeploy")
        assert c.evidence_pack.key_facts == (
            "Environment: prod",
            "Playbook: post-deploy",
            "Verification run v-1 failed",
        )
        assert c.primary_evidence.kind == "verification"

    def test_verification_timeout_counts_as_failure(self) -> None:
        incident = make_incident()
        c = classify(incident, [verification_evidence(incident.id, status="TIMEOUT")])
        assert c.category == ClassificationCategory.DEPLOY_VERIFICATION_FAILED

    def test_passing_verification_does_not_match(self) -> None:
        incident = make_incident()
        c = classify(incident, [verification_evidence(incident.id, status="SUCCEEDED")])
        assert c.category == ClassificationCategory.UNKNOWN

    def test_alb_unhealthy(self) -> None:
        c = classify(
            make_incident(),
            [_evidence("alb", targetHealth="unhealthy", targetId="i-0abc", reason="Target.FailedHealthChecks")],
        )
        assert c.category == ClassificationCategory.ALB_TARGET_UNHEALTHY
        assert "Reason: Target.FailedHealthChecks" in c.evidence_pack.key_facts
        assert "Target: i-0abc" in c.evidence_pack.key_facts

    def test_alb_state_field(self) -> None:
        c = classify(make_incident(), [_evidence("alb", state="unhealthy")])
        assert c.category == ClassificationCategory.ALB_TARGET_UNHEALTHY

    def test_ecs_crashloop(self) -> None:
        c = classify(
            make_incident(),
            [
                _evidence(
                    "ecs",
                    stoppedReason="Essential container in task exited",
                    exitCode=137,
                    cluster="prod",
                    taskArn="arn:task/1",
                )
            ],
        )
        assert c.category == ClassificationCategory.ECS_TASK_CRASHLOOP
        assert "ECS task crashed with exit code 137" in c.evidence_pack.key_facts
        assert c.labels == ("code", "crashloop", "ecs", "needs-investigation")

    def test_ecs_exit_code_zero_is_not_a_crashloop(self) -> None:
        c = classify(
            make_incident(),
            [_evidence("ecs", stoppedReason="Essential container in task exited", exitCode=0)],
        )
        assert c.category == ClassificationCategory.UNKNOWN

    def test_ecs_image_pull(self) -> None:
        c = classify(
            make_incident(),
            [_evidence("ecs", stoppedReason="CannotPullContainerError: pull access denied")],
        )
        assert c.category == ClassificationCategory.ECS_IMAGE_PULL_FAILED

    def test_iam_validation_by_step(self) -> None:
        incident = make_incident()
        c = classify(incident, [runner_evidence(incident.id, stepName="validate-iam-policies")])
        assert c.category == ClassificationCategory.IAM_POLICY_VALIDATION_FAILED
        assert "Step: validate-iam-policies" in c.evidence_pack.key_facts

    def test_iam_validation_by_message(self) -> None:
        incident = make_incident()
        c = classify(
            incident,
            [runner_evidence(incident.id, message="IAM policy validation failed: wildcard")],
        )
        assert c.category == ClassificationCategory.IAM_POLICY_VALIDATION_FAILED

    def test_runner_workflow_failed(self) -> None:
        incident = make_incident()
        c = classify(incident, [runner_evidence(incident.id, kind="github_run")])
        assert c.category == ClassificationCategory.RUNNER_WORKFLOW_FAILED
        assert c.confidence == Confidence.MEDIUM
        assert "Run: 555" in c.evidence_pack.key_facts

    def test_runner_success_does_not_match(self) -> None:
        incident = make_incident()
        c = classify(incident, [runner_evidence(incident.id, conclusion="success")])
        assert c.category == ClassificationCategory.UNKNOWN


class TestFirstMatchWins:
    def test_verification_beats_runner(self) -> None:
        incident = make_incident()
        evidence = [runner_evidence(incident.id), verification_evidence(incident.id)]
        c = classify(incident, evidence)
        assert c.category == ClassificationCategory.DEPLOY_VERIFICATION_FAILED

    def test_crashloop_beats_image_pull(self) -> None:
        evidence = [
            _evidence("ecs", sha="1" * 64, stoppedReason="CannotPullContainerError"),
            _evidence(
                "ecs",
                sha="2" * 64,
                stoppedReason="Essential container in task exited",
                exitCode=1,
            ),
        ]
        c = classify(make_incident(), evidence)
        assert c.category == ClassificationCategory.ECS_TASK_CRASHLOOP


class TestUnknown:
    def test_unknown_fallback(self) -> None:
        incident = make_incident(source_kind="deploy_status")
        c = classify(incident, [_evidence("http", statusCode=200)])
        assert c.category == ClassificationCategory.UNKNOWN
        assert c.confidence == Confidence.LOW
        assert c.labels == ("needs-classification",)
        assert c.primary_evidence.kind == "deploy_status"
        assert set(c.evidence_pack.key_facts) == {
            "No specific classification pattern matched",
            "Severity: RED",
            "Source: deploy_status",
        }

    def test_no_evidence(self) -> None:
        c = classify(make_incident(), [])
        assert c.category == ClassificationCategory.UNKNOWN
        assert c.evidence_pack.pointers == ()

    def test_malformed_ref_is_skipped(self) -> None:
        c = classify(
            make_incident(),
            [_evidence("ecs", stoppedReason="Essential container in task exited", exitCode="boom")],
        )
        assert c.category == ClassificationCategory.UNKNOWN


class TestDeterminism:
    def test_repeated_calls_identical(self) -> None:
        incident = make_incident()
        evidence = [verification_evidence(incident.id), runner_evidence(incident.id)]
        assert classify(incident, evidence).to_dict() == classify(incident, evidence).to_dict()

    def test_permutation_invariant(self) -> None:
        incident = make_incident()
        evidence = [
            verification_evidence(incident.id),
            runner_evidence(incident.id),
            _evidence("alb", sha="c" * 64, targetHealth="unhealthy"),
            _evidence("ecs", sha="d" * 64, stoppedReason="CannotPullContainerError"),
        ]
        hashes = {classify(incident, list(p)).hash() for p in itertools.permutations(evidence)}
        assert len(hashes) == 1

    def test_same_kind_permutation_picks_same_primary(self) -> None:
        incident = make_incident()
        first = runner_evidence(incident.id, runId=1)
        second = runner_evidence(incident.id, runId=2)
        a = classify(incident, [first, second])
        b = classify(incident, [second, first])
        assert a.primary_evidence == b.primary_evidence
        assert a.hash() == b.hash()

    def test_sorted_outputs(self) -> None:
        incident = make_incident()
        evidence = [
            runner_evidence(incident.id),
            _evidence("alb", sha="c" * 64, targetHealth="unhealthy"),
            verification_evidence(incident.id),
        ]
        c = classify(incident, evidence)
        assert list(c.labels) == sorted(c.labels)
        assert list(c.evidence_pack.key_facts) == sorted(c.evidence_pack.key_facts)
        kinds = [p.kind for p in c.evidence_pack.pointers]
        assert kinds == sorted(kinds)

    def test_hash_is_sha256_hex(self) -> None:
        h = classify(make_incident(), []).hash()
        assert len(h) == 64
        int(h, 16)

    def test_summary(self) -> None:
        incident = make_incident(title="Deploy failed")
        c = classify(incident, [])
        assert c.evidence_pack.summary == "UNKNOWN: Deploy failed"
