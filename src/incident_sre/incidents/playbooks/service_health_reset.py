"""service-health-reset: force a fresh ECS deployment of an unhealthy service.

Steps:
    1. snapshot-state     record the service's desired/running counts and
       deployments before touching it.
    2. apply-reset        force a new deployment after the service allowlist
       approves it.
    3. wait-observe       wait for the service to become stable.
    4. post-verification  run post-deploy verification for the environment.
    5. update-status      MITIGATED when the service is stable, verification
       passed and its environment matches the reset target; ACKED otherwise.

ALB evidence without a cluster and service is resolved through the
configured per-environment target group mapping; an unmapped target group
stops the run before anything is reset.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Any

from incident_sre.errors import IncidentNotFoundError
from incident_sre.incidents.environment import normalize_environment, try_normalize_environment
from incident_sre.incidents.evidence import (
    AlbRef,
    EcsRef,
    EvidencePredicate,
    find_evidence,
    try_parse_ref,
)
from incident_sre.incidents.hashing import content_hash
from incident_sre.incidents.models import (
    ClassificationCategory,
    EvidenceKind,
    IncidentStatus,
    utcnow,
)
from incident_sre.incidents.playbook import (
    ActionType,
    PlaybookDefinition,
    StepContext,
    StepDefinition,
    StepErrorCode,
    StepResources,
    StepResult,
    key_segment,
    redact_output,
)
from incident_sre.incidents.playbooks.common import (
    hour_bucket,
    key_part,
    retry_config_for,
    step_output,
)
from incident_sre.retry import with_retry

logger = logging.getLogger(__name__)

PLAYBOOK_ID = "service-health-reset"
PLAYBOOK_VERSION = "1.0.0"

SNAPSHOT_OUTPUT_KEY = "snapshotOutput"
RESET_OUTPUT_KEY = "resetOutput"
OBSERVE_OUTPUT_KEY = "observeOutput"
VERIFICATION_OUTPUT_KEY = "verificationOutput"
STATUS_OUTPUT_KEY = "statusOutput"

DEFAULT_MAX_WAIT_SECONDS = 300
DEFAULT_CHECK_INTERVAL_SECONDS = 10

SNAPSHOT_OUTPUT_FIELDS = (
    "cluster",
    "service",
    "env",
    "serviceArn",
    "desiredCount",
    "runningCount",
    "taskDefinition",
    "deployments",
    "snapshotAt",
)
DEPLOYMENT_FIELDS = (
    "id",
    "status",
    "rolloutState",
    "desiredCount",
    "runningCount",
    "pendingCount",
    "taskDefinition",
)
RESET_OUTPUT_FIELDS = ("cluster", "service", "env", "serviceArn", "deploymentId", "resetAt")
OBSERVE_OUTPUT_FIELDS = ("stable", "finalState", "observedAt")
FINAL_STATE_FIELDS = ("status", "desiredCount", "runningCount", "pendingCount", "rolloutState")
VERIFICATION_OUTPUT_FIELDS = (
    "status",
    "reason",
    "env",
    "playbookRunId",
    "reportHash",
    "verifiedAt",
)
STATUS_OUTPUT_FIELDS = (
    "incidentStatus",
    "remediationSuccessful",
    "serviceStable",
    "verificationPassed",
    "envMatches",
    "updatedAt",
)

_SOURCE_KINDS = (EvidenceKind.ECS.value, EvidenceKind.ALB.value)


def _positive_int(value: Any, default: int) -> int:
    if isinstance(value, bool):
        return default
    try:
        number = int(value)
    except (TypeError, ValueError):
        return default
    return number if number > 0 else default


# ---------------------------------------------------------------------------
# Step 1: snapshot
# ---------------------------------------------------------------------------


def _resolve_target(
    resources: StepResources,
    context: StepContext,
    ref: EcsRef | AlbRef,
    env: str,
) -> tuple[str | None, str | None, StepResult | None]:
    """``(cluster, service)`` for the evidence, or the failure to report."""
    cluster = ref.cluster or context.inputs.get("cluster")
    service = ref.service or context.inputs.get("service")
    if isinstance(ref, AlbRef) and not (cluster and service):
        if not ref.target_group_arn:
            return None, None, StepResult.fail(
                StepErrorCode.EVIDENCE_INSUFFICIENT,
                "ALB evidence has no target group and no cluster/service",
            )
        target = resources.alb_targets.get(env, {}).get(ref.target_group_arn)
        if not target:
            return None, None, StepResult.fail(
                StepErrorCode.ALB_MAPPING_REQUIRED,
                f"No ECS service mapped to target group {ref.target_group_arn} in {env}",
                details={"env": env, "targetGroupArn": ref.target_group_arn},
            )
        cluster, _, service = target.partition("/")
    if not cluster or not service:
        return None, None, StepResult.fail(
            StepErrorCode.INVALID_EVIDENCE,
            "Evidence does not identify an ECS cluster and service",
            details={"cluster": cluster, "service": service},
        )
    return cluster, service, None


async def execute_snapshot_state(resources: StepResources, context: StepContext) -> StepResult:
    item = find_evidence(context.evidence, _SOURCE_KINDS)
    if item is None:
        return StepResult.fail(StepErrorCode.EVIDENCE_MISSING, "No ecs or alb evidence found")
    ref = try_parse_ref(item)
    if not isinstance(ref, (EcsRef, AlbRef)):
        return StepResult.fail(
            StepErrorCode.INVALID_EVIDENCE,
            f"Malformed {item.kind} evidence {item.id}",
        )

    env = ref.env or context.inputs.get("env") or context.inputs.get("environment")
    if not env:
        return StepResult.fail(
            StepErrorCode.ENVIRONMENT_REQUIRED,
            "Service reset requires an environment in the evidence or inputs",
        )
    try:
        normalized_env = normalize_environment(env, resources.environment_aliases)
    except ValueError as exc:
        return StepResult.fail(
            StepErrorCode.INVALID_ENVIRONMENT,
            f"Invalid environment value: {exc}",
            details={"env": env},
        )

    cluster, service, failure = _resolve_target(resources, context, ref, normalized_env)
    if failure is not None:
        return failure
    assert cluster is not None and service is not None

    if resources.ecs is None:
        return StepResult.fail(StepErrorCode.SNAPSHOT_FAILED, "No ECS provider configured")
    ecs = resources.ecs

    try:
        raw = await with_retry(
            lambda: ecs.describe_service(cluster, service),
            retry_config_for(resources, "GET"),
            observer=resources.retry_observer,
        )
    except Exception as exc:
        logger.warning("Snapshot failed for %s/%s: %s", cluster, service, exc)
        return StepResult.fail(StepErrorCode.SNAPSHOT_FAILED, str(exc))

    deployments = raw.get("deployments")
    output = redact_output(
        {
            "cluster": cluster,
            "service": service,
            "env": normalized_env,
            "serviceArn": raw.get("serviceArn"),
            "desiredCount": raw.get("desiredCount"),
            "runningCount": raw.get("runningCount"),
            "taskDefinition": raw.get("taskDefinition"),
            "deployments": [
                redact_output(d, DEPLOYMENT_FIELDS)
                for d in (deployments if isinstance(deployments, (list, tuple)) else [])
                if isinstance(d, Mapping)
            ],
            "snapshotAt": utcnow().isoformat(),
        },
        SNAPSHOT_OUTPUT_FIELDS,
    )
    return StepResult.ok(output)


def snapshot_idempotency_key(context: StepContext) -> str:
    return f"snapshot:{key_segment(context.incident_key)}"


# ---------------------------------------------------------------------------
# Step 2: reset
# ---------------------------------------------------------------------------


async def execute_apply_reset(resources: StepResources, context: StepContext) -> StepResult:
    snapshot = step_output(context.inputs, SNAPSHOT_OUTPUT_KEY) or {}
    cluster = snapshot.get("cluster")
    service = snapshot.get("service")
    env = snapshot.get("env")
    if not cluster or not service:
        return StepResult.fail(
            StepErrorCode.INVALID_INPUT,
            f"No cluster or service in {SNAPSHOT_OUTPUT_KEY} from previous step",
        )
    if not env:
        return StepResult.fail(
            StepErrorCode.ENVIRONMENT_REQUIRED,
            f"No env in {SNAPSHOT_OUTPUT_KEY} from previous step",
        )

    allowlist = resources.service_allowlist
    if allowlist is None or not allowlist.is_allowed(env, service):
        logger.warning("Reset denied for %s/%s by service allowlist", env, service)
        return StepResult.fail(
            StepErrorCode.SERVICE_NOT_ALLOWED,
            f"Service {env}/{service} is not in the service allowlist",
        )

    if resources.ecs is None:
        return StepResult.fail(StepErrorCode.RESET_FAILED, "No ECS provider configured")
    ecs = resources.ecs

    correlation_id = f"{context.incident_key}:health-reset"
    try:
        raw = await with_retry(
            lambda: ecs.force_new_deployment(cluster, service, correlation_id),
            retry_config_for(resources, "POST"),
            observer=resources.retry_observer,
        )
    except Exception as exc:
        logger.warning("Reset failed for %s/%s: %s", cluster, service, exc)
        return StepResult.fail(StepErrorCode.RESET_FAILED, str(exc))

    logger.info("Forced new deployment of %s/%s in %s", cluster, service, env)
    return StepResult.ok(
        redact_output(
            {
                "cluster": cluster,
                "service": service,
                "env": env,
                "serviceArn": raw.get("serviceArn") or snapshot.get("serviceArn"),
                "deploymentId": raw.get("deploymentId"),
                "resetAt": utcnow().isoformat(),
            },
            RESET_OUTPUT_FIELDS,
        )
    )


def reset_idempotency_key(context: StepContext) -> str:
    snapshot = step_output(context.inputs, SNAPSHOT_OUTPUT_KEY) or {}
    segment = key_segment(context.incident_key)
    return f"reset:{segment}:{key_part(snapshot.get('env'))}:{hour_bucket(context.started_at)}"


# ---------------------------------------------------------------------------
# Step 3: observe
# ---------------------------------------------------------------------------


async def execute_wait_observe(resources: StepResources, context: StepContext) -> StepResult:
    reset = step_output(context.inputs, RESET_OUTPUT_KEY) or {}
    cluster = reset.get("cluster")
    service = reset.get("service")
    if not cluster or not service:
        return StepResult.fail(
            StepErrorCode.INVALID_INPUT,
            f"No cluster or service in {RESET_OUTPUT_KEY} from previous step",
        )

    max_wait = _positive_int(context.inputs.get("maxWaitSeconds"), DEFAULT_MAX_WAIT_SECONDS)
    interval = _positive_int(
        context.inputs.get("checkIntervalSeconds"), DEFAULT_CHECK_INTERVAL_SECONDS
    )

    if resources.ecs is None:
        return StepResult.fail(StepErrorCode.OBSERVE_FAILED, "No ECS provider configured")
    ecs = resources.ecs

    try:
        raw = await with_retry(
            lambda: ecs.poll_service_stability(cluster, service, max_wait, interval),
            retry_config_for(resources, "GET"),
            observer=resources.retry_observer,
        )
    except Exception as exc:
        logger.warning("Observing %s/%s failed: %s", cluster, service, exc)
        return StepResult.fail(StepErrorCode.OBSERVE_FAILED, str(exc))

    final_state = raw.get("finalState")
    stable = raw.get("stable") is True
    if not stable:
        logger.info("%s/%s not stable after %ss", cluster, service, max_wait)
    return StepResult.ok(
        redact_output(
            {
                "stable": stable,
                "finalState": (
                    redact_output(final_state, FINAL_STATE_FIELDS)
                    if isinstance(final_state, Mapping)
                    else None
                ),
                "observedAt": utcnow().isoformat(),
            },
            OBSERVE_OUTPUT_FIELDS,
        )
    )


def observe_idempotency_key(context: StepContext) -> str:
    return f"observe:{key_segment(context.incident_key)}"


# ---------------------------------------------------------------------------
# Step 4: verification
# ---------------------------------------------------------------------------


async def execute_post_verification(resources: StepResources, context: StepContext) -> StepResult:
    snapshot = step_output(context.inputs, SNAPSHOT_OUTPUT_KEY) or {}
    env = snapshot.get("env")
    if not env:
        return StepResult.ok(
            {"status": "skipped", "reason": "No environment specified, skipping verification"}
        )

    if resources.verifier is None:
        return StepResult.fail(
            StepErrorCode.VERIFICATION_EXECUTION_ERROR,
            "No verification provider configured",
        )
    verifier = resources.verifier
    reset = step_output(context.inputs, RESET_OUTPUT_KEY) or {}
    deployment_id = reset.get("deploymentId")

    try:
        report = await with_retry(
            lambda: verifier.run_verification(env, deployment_id),
            retry_config_for(resources, "GET"),
            observer=resources.retry_observer,
        )
    except Exception as exc:
        logger.warning("Verification errored after reset of %s: %s", env, exc)
        return StepResult.fail(
            StepErrorCode.VERIFICATION_EXECUTION_ERROR,
            str(exc) or "Failed to execute verification",
        )

    # A failed verification still feeds the status step, which leaves the incident ACKED.
    return StepResult.ok(
        redact_output(
            {
                "status": report.status,
                "env": report.env or env,
                "playbookRunId": report.playbook_run_id,
                "reportHash": report.report_hash,
                "verifiedAt": utcnow().isoformat(),
            },
            VERIFICATION_OUTPUT_FIELDS,
        )
    )


def post_verification_idempotency_key(context: StepContext) -> str:
    snapshot = step_output(context.inputs, SNAPSHOT_OUTPUT_KEY) or {}
    reset = step_output(context.inputs, RESET_OUTPUT_KEY) or {}
    digest = content_hash({"env": snapshot.get("env"), "deploymentId": reset.get("deploymentId")})
    return f"verification:{key_segment(context.incident_key)}:{digest}"


# ---------------------------------------------------------------------------
# Step 5: status
# ---------------------------------------------------------------------------


async def execute_update_status(resources: StepResources, context: StepContext) -> StepResult:
    verification = step_output(context.inputs, VERIFICATION_OUTPUT_KEY) or {}
    observe = step_output(context.inputs, OBSERVE_OUTPUT_KEY) or {}
    snapshot = step_output(context.inputs, SNAPSHOT_OUTPUT_KEY) or {}

    service_stable = observe.get("stable") is True
    verification_passed = verification.get("status") in ("success", "skipped")

    target_env = try_normalize_environment(snapshot.get("env"), resources.environment_aliases)
    verification_env = verification.get("env")
    if verification_env:
        try:
            verification_env = normalize_environment(
                verification_env, resources.environment_aliases
            )
        except ValueError as exc:
            return StepResult.fail(
                StepErrorCode.INVALID_ENVIRONMENT,
                f"Verification environment could not be normalized: {exc}",
                details={"verificationEnv": verification.get("env")},
            )
    env_matches = bool(verification_env) and verification_env == target_env

    successful = service_stable and verification_passed and env_matches
    new_status = IncidentStatus.MITIGATED if successful else IncidentStatus.ACKED
    try:
        resources.incident_store.update_status(context.incident_id, new_status)
    except IncidentNotFoundError as exc:
        return StepResult.fail(StepErrorCode.INCIDENT_NOT_FOUND, str(exc))
    except Exception as exc:
        logger.error("Status update failed for %s: %s", context.incident_id, exc)
        return StepResult.fail(
            StepErrorCode.STATUS_UPDATE_FAILED,
            str(exc) or "Failed to update incident status",
        )

    logger.info(
        "Incident %s marked %s after service reset (stable=%s, verified=%s, envMatches=%s)",
        context.incident_key,
        new_status.value,
        service_stable,
        verification_passed,
        env_matches,
    )
    return StepResult.ok(
        redact_output(
            {
                "incidentStatus": new_status.value,
                "remediationSuccessful": successful,
                "serviceStable": service_stable,
                "verificationPassed": verification_passed,
                "envMatches": env_matches,
                "updatedAt": utcnow().isoformat(),
            },
            STATUS_OUTPUT_FIELDS,
        )
    )


def update_status_idempotency_key(context: StepContext) -> str:
    return f"health-status:{key_segment(context.incident_key)}"


SERVICE_HEALTH_RESET_PLAYBOOK = PlaybookDefinition(
    id=PLAYBOOK_ID,
    version=PLAYBOOK_VERSION,
    title="Service Health Reset - force a new deployment and observe",
    applicable_categories=(
        ClassificationCategory.ALB_TARGET_UNHEALTHY,
        ClassificationCategory.ECS_TASK_CRASHLOOP,
    ),
    required_evidence=(
        EvidencePredicate(
            kind=EvidenceKind.ECS.value, required_fields=("ref.cluster", "ref.service")
        ),
        EvidencePredicate(kind=EvidenceKind.ALB.value, required_fields=("ref.targetGroupArn",)),
    ),
    steps=(
        StepDefinition(
            step_id="snapshot-state",
            action_type=ActionType.SNAPSHOT_SERVICE_STATE,
            description="Record the service state before the reset",
            execute=execute_snapshot_state,
            idempotency_key=snapshot_idempotency_key,
            output_key=SNAPSHOT_OUTPUT_KEY,
        ),
        StepDefinition(
            step_id="apply-reset",
            action_type=ActionType.FORCE_NEW_DEPLOYMENT,
            description="Force a new deployment of the service",
            execute=execute_apply_reset,
            idempotency_key=reset_idempotency_key,
            output_key=RESET_OUTPUT_KEY,
        ),
        StepDefinition(
            step_id="wait-observe",
            action_type=ActionType.POLL_SERVICE_HEALTH,
            description="Wait for the service to become stable",
            execute=execute_wait_observe,
            idempotency_key=observe_idempotency_key,
            output_key=OBSERVE_OUTPUT_KEY,
        ),
        StepDefinition(
            step_id="post-verification",
            action_type=ActionType.RUN_VERIFICATION,
            description="Run post-deploy verification for the environment",
            execute=execute_post_verification,
            idempotency_key=post_verification_idempotency_key,
            output_key=VERIFICATION_OUTPUT_KEY,
        ),
        StepDefinition(
            step_id="update-status",
            action_type=ActionType.UPDATE_INCIDENT_STATUS,
            description="Mark the incident MITIGATED or ACKED from the observed outcome",
            execute=execute_update_status,
            idempotency_key=update_status_idempotency_key,
            output_key=STATUS_OUTPUT_KEY,
        ),
    ),
)
