"""redeploy-lkg: roll a service back to its last known good deploy.

Steps:
    1. select-lkg                find the newest deploy of the service whose
       verification passed.
    2. dispatch-deploy           redeploy that commit and image after the
       service allowlist approves it.
    3. post-deploy-verification  verify the redeployed environment.
    4. update-deploy-status      mark the incident MITIGATED once verification
       passed, recording the verification as evidence.

A last known good must carry a commit hash or an image digest.  The dispatch
key is bucketed by the hour the run started.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Any

from incident_sre.errors import IncidentNotFoundError
from incident_sre.incidents.environment import normalize_environment
from incident_sre.incidents.evidence import (
    DeployStatusRef,
    EvidencePredicate,
    VerificationRef,
    find_evidence,
    try_parse_ref,
)
from incident_sre.incidents.hashing import content_hash
from incident_sre.incidents.models import (
    ClassificationCategory,
    Evidence,
    EvidenceKind,
    IncidentStatus,
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
from incident_sre.providers import DeployRequest
from incident_sre.retry import with_retry

logger = logging.getLogger(__name__)

PLAYBOOK_ID = "redeploy-lkg"
PLAYBOOK_VERSION = "1.0.0"

LKG_OUTPUT_KEY = "lkgStepOutput"
DISPATCH_OUTPUT_KEY = "dispatchStepOutput"
VERIFICATION_OUTPUT_KEY = "verificationStepOutput"
STATUS_OUTPUT_KEY = "statusUpdateStepOutput"

LKG_FIELDS = (
    "snapshotId",
    "deployEventId",
    "env",
    "service",
    "version",
    "commitHash",
    "imageDigest",
    "cfnChangeSetId",
    "observedAt",
    "verificationRunId",
    "verificationReportHash",
)
DISPATCH_OUTPUT_FIELDS = ("dispatchId", "lkgReference", "env", "service", "message")
VERIFICATION_OUTPUT_FIELDS = ("playbookRunId", "status", "reportHash", "env", "dispatchId")
STATUS_OUTPUT_FIELDS = ("newStatus", "currentStatus", "env", "incidentId", "message")

_SOURCE_KINDS = (EvidenceKind.DEPLOY_STATUS.value, EvidenceKind.VERIFICATION.value)


def _deploy_target(context: StepContext) -> tuple[str | None, str | None]:
    """``(env, service)`` from deploy_status/verification evidence, else inputs."""
    env = None
    service = None
    item = find_evidence(context.evidence, _SOURCE_KINDS)
    if item is not None:
        ref = try_parse_ref(item)
        if isinstance(ref, (DeployStatusRef, VerificationRef)):
            env = ref.env
            service = getattr(ref, "service", None)
    env = env or context.inputs.get("env")
    service = service or context.inputs.get("service")
    return env, service


# ---------------------------------------------------------------------------
# Step 1: select last known good
# ---------------------------------------------------------------------------


async def execute_select_lkg(resources: StepResources, context: StepContext) -> StepResult:
    item = find_evidence(context.evidence, _SOURCE_KINDS)
    if item is None:
        return StepResult.fail(
            StepErrorCode.EVIDENCE_MISSING,
            "No deploy_status or verification evidence found",
        )
    if try_parse_ref(item) is None:
        return StepResult.fail(
            StepErrorCode.INVALID_EVIDENCE,
            f"Malformed {item.kind} evidence {item.id}",
        )

    env, service = _deploy_target(context)
    if not env:
        return StepResult.fail(
            StepErrorCode.INVALID_EVIDENCE,
            "Missing required parameter: env",
            details={"env": env, "service": service},
        )
    try:
        normalized_env = normalize_environment(env, resources.environment_aliases)
    except ValueError as exc:
        return StepResult.fail(
            StepErrorCode.INVALID_ENVIRONMENT,
            f"Invalid environment value: {exc}",
            details={"env": env},
        )

    if resources.deploy_history is None:
        return StepResult.fail(
            StepErrorCode.LKG_QUERY_FAILED, "No deploy history provider configured"
        )
    history = resources.deploy_history

    try:
        lkg = await with_retry(
            lambda: history.find_last_known_good(normalized_env, service),
            retry_config_for(resources, "GET"),
            observer=resources.retry_observer,
        )
    except Exception as exc:
        logger.warning("Last known good query failed for %s: %s", normalized_env, exc)
        return StepResult.fail(StepErrorCode.LKG_QUERY_FAILED, str(exc))

    if not lkg:
        return StepResult.fail(
            StepErrorCode.NO_LKG_FOUND,
            f"No last known good deploy for {normalized_env}"
            + (f"/{service}" if service else ""),
            details={"env": normalized_env, "service": service},
        )
    if not lkg.get("commitHash") and not lkg.get("imageDigest"):
        return StepResult.fail(
            StepErrorCode.NO_LKG_REFERENCE,
            "Last known good deploy has neither commitHash nor imageDigest",
            details={"snapshotId": lkg.get("snapshotId")},
        )

    selected = redact_output(lkg, LKG_FIELDS)
    selected["env"] = normalized_env
    if service and not selected.get("service"):
        selected["service"] = service
    logger.info(
        "Selected last known good %s for %s", selected.get("snapshotId"), normalized_env
    )
    return StepResult.ok({"lkg": selected})


def select_lkg_idempotency_key(context: StepContext) -> str:
    env, service = _deploy_target(context)
    segment = key_segment(context.incident_key)
    return f"select-lkg:{segment}:{content_hash({'env': env, 'service': service})}"


# ---------------------------------------------------------------------------
# Step 2: dispatch deploy
# ---------------------------------------------------------------------------


def _selected_lkg(inputs: Mapping[str, Any]) -> Mapping[str, Any] | None:
    output = step_output(inputs, LKG_OUTPUT_KEY)
    if output is None:
        return None
    lkg = output.get("lkg")
    return lkg if isinstance(lkg, Mapping) and lkg else None


async def execute_dispatch_deploy(resources: StepResources, context: StepContext) -> StepResult:
    lkg = _selected_lkg(context.inputs)
    if lkg is None:
        return StepResult.fail(
            StepErrorCode.MISSING_LKG_OUTPUT,
            f"No {LKG_OUTPUT_KEY} from previous step",
        )

    env = lkg.get("env")
    service = lkg.get("service")
    allowlist = resources.service_allowlist
    if allowlist is None or not allowlist.is_allowed(env, service):
        logger.warning("Redeploy denied for %s/%s by service allowlist", env, service)
        return StepResult.fail(
            StepErrorCode.SERVICE_NOT_ALLOWED,
            f"Service {env}/{service} is not in the service allowlist",
        )

    if resources.deployer is None:
        return StepResult.fail(
            StepErrorCode.DEPLOY_DISPATCH_FAILED, "No deploy provider configured"
        )
    deployer = resources.deployer

    request = DeployRequest(
        correlation_id=f"{context.incident_key}:redeploy-lkg:{key_part(lkg.get('snapshotId'))}",
        env=env,
        service=service,
        commit_hash=lkg.get("commitHash"),
        image_digest=lkg.get("imageDigest"),
        version=lkg.get("version"),
    )
    try:
        raw = await with_retry(
            lambda: deployer.dispatch_deploy(request),
            retry_config_for(resources, "POST"),
            observer=resources.retry_observer,
        )
    except Exception as exc:
        logger.warning("Deploy dispatch failed for %s: %s", request.correlation_id, exc)
        return StepResult.fail(StepErrorCode.DEPLOY_DISPATCH_FAILED, str(exc))

    output = redact_output(
        {
            "dispatchId": raw.get("dispatchId"),
            "lkgReference": {
                "commitHash": lkg.get("commitHash"),
                "imageDigest": lkg.get("imageDigest"),
                "version": lkg.get("version"),
            },
            "env": env,
            "service": service,
            "message": raw.get("message") or f"Redeploy of {service} to {env} dispatched",
        },
        DISPATCH_OUTPUT_FIELDS,
    )
    logger.info("Dispatched redeploy %s for %s/%s", output.get("dispatchId"), env, service)
    return StepResult.ok(output)


def dispatch_deploy_idempotency_key(context: StepContext) -> str:
    segment = key_segment(context.incident_key)
    return f"dispatch-deploy:{segment}:{hour_bucket(context.started_at)}"


# ---------------------------------------------------------------------------
# Step 3: post-deploy verification
# ---------------------------------------------------------------------------


async def execute_post_deploy_verification(
    resources: StepResources, context: StepContext
) -> StepResult:
    dispatch = step_output(context.inputs, DISPATCH_OUTPUT_KEY)
    if dispatch is None:
        return StepResult.fail(
            StepErrorCode.MISSING_DISPATCH_OUTPUT,
            f"No {DISPATCH_OUTPUT_KEY} from previous step",
        )
    env = dispatch.get("env")
    dispatch_id = dispatch.get("dispatchId")
    deploy_id = str(dispatch_id) if dispatch_id not in (None, "") else None

    if resources.verifier is None:
        return StepResult.fail(
            StepErrorCode.VERIFICATION_EXECUTION_ERROR,
            "No verification provider configured",
        )
    verifier = resources.verifier

    try:
        report = await with_retry(
            lambda: verifier.run_verification(env, deploy_id),
            retry_config_for(resources, "GET"),
            observer=resources.retry_observer,
        )
    except Exception as exc:
        logger.warning("Verification errored after redeploy to %s: %s", env, exc)
        return StepResult.fail(
            StepErrorCode.VERIFICATION_EXECUTION_ERROR,
            str(exc) or "Failed to execute verification",
        )

    fields = redact_output(
        {
            "playbookRunId": report.playbook_run_id,
            "status": report.status,
            "reportHash": report.report_hash,
            "env": env,
            "dispatchId": dispatch_id,
        },
        VERIFICATION_OUTPUT_FIELDS,
    )
    if not report.passed:
        logger.info("Verification failed after redeploy to %s", env)
        return StepResult.fail(
            StepErrorCode.VERIFICATION_FAILED,
            "Post-deploy verification failed after redeploy",
            details=fields,
        )
    return StepResult.ok(fields)


def post_deploy_verification_idempotency_key(context: StepContext) -> str:
    output = step_output(context.inputs, DISPATCH_OUTPUT_KEY) or {}
    digest = content_hash({"dispatchId": output.get("dispatchId")})
    return f"verification:{key_segment(context.incident_key)}:{digest}"


# ---------------------------------------------------------------------------
# Step 4: update deploy status
# ---------------------------------------------------------------------------


async def execute_update_deploy_status(
    resources: StepResources, context: StepContext
) -> StepResult:
    verification = step_output(context.inputs, VERIFICATION_OUTPUT_KEY)
    if verification is None:
        return StepResult.fail(
            StepErrorCode.MISSING_VERIFICATION_OUTPUT,
            f"No {VERIFICATION_OUTPUT_KEY} from previous step",
        )
    env = verification.get("env")

    if verification.get("status") != "success":
        return StepResult.ok(
            redact_output(
                {
                    "message": "Verification did not pass, incident left unchanged",
                    "incidentId": context.incident_id,
                    "currentStatus": "unchanged",
                    "env": env,
                },
                STATUS_OUTPUT_FIELDS,
            )
        )

    store = resources.incident_store
    report_hash = verification.get("reportHash")
    try:
        store.update_status(context.incident_id, IncidentStatus.MITIGATED)
        store.add_evidence(
            [
                Evidence(
                    kind=EvidenceKind.VERIFICATION.value,
                    incident_id=context.incident_id,
                    ref={
                        "playbookRunId": verification.get("playbookRunId"),
                        "reportHash": report_hash,
                        "env": env,
                        "deployId": verification.get("dispatchId"),
                        "status": verification.get("status"),
                        "redeployType": "LKG",
                    },
                    sha256=report_hash,
                )
            ]
        )
    except IncidentNotFoundError as exc:
        return StepResult.fail(StepErrorCode.INCIDENT_NOT_FOUND, str(exc))
    except Exception as exc:
        logger.error("Deploy status update failed for %s: %s", context.incident_id, exc)
        return StepResult.fail(
            StepErrorCode.INCIDENT_UPDATE_FAILED,
            str(exc) or "Failed to update incident",
        )

    logger.info("Incident %s marked MITIGATED after LKG redeploy", context.incident_key)
    return StepResult.ok(
        redact_output(
            {
                "newStatus": IncidentStatus.MITIGATED.value,
                "env": env,
                "incidentId": context.incident_id,
                "message": "Incident marked as MITIGATED after redeploying last known good",
            },
            STATUS_OUTPUT_FIELDS,
        )
    )


def update_deploy_status_idempotency_key(context: StepContext) -> str:
    return f"update-status:{key_segment(context.incident_key)}"


REDEPLOY_LKG_PLAYBOOK = PlaybookDefinition(
    id=PLAYBOOK_ID,
    version=PLAYBOOK_VERSION,
    title="Redeploy Last Known Good",
    applicable_categories=(
        ClassificationCategory.DEPLOY_VERIFICATION_FAILED,
        ClassificationCategory.ALB_TARGET_UNHEALTHY,
        ClassificationCategory.ECS_TASK_CRASHLOOP,
    ),
    required_evidence=(
        EvidencePredicate(kind=EvidenceKind.DEPLOY_STATUS.value, required_fields=("ref.env",)),
        EvidencePredicate(kind=EvidenceKind.VERIFICATION.value, required_fields=("ref.env",)),
    ),
    steps=(
        StepDefinition(
            step_id="select-lkg",
            action_type=ActionType.SELECT_LAST_KNOWN_GOOD,
            description="Find the last deploy whose verification passed",
            execute=execute_select_lkg,
            idempotency_key=select_lkg_idempotency_key,
            output_key=LKG_OUTPUT_KEY,
        ),
        StepDefinition(
            step_id="dispatch-deploy",
            action_type=ActionType.ROLLBACK_DEPLOY,
            description="Redeploy the last known good commit and image",
            execute=execute_dispatch_deploy,
            idempotency_key=dispatch_deploy_idempotency_key,
            output_key=DISPATCH_OUTPUT_KEY,
        ),
        StepDefinition(
            step_id="post-deploy-verification",
            action_type=ActionType.RUN_VERIFICATION,
            description="Verify the redeployed environment",
            execute=execute_post_deploy_verification,
            idempotency_key=post_deploy_verification_idempotency_key,
            output_key=VERIFICATION_OUTPUT_KEY,
        ),
        StepDefinition(
            step_id="update-deploy-status",
            action_type=ActionType.UPDATE_INCIDENT_STATUS,
            description="Mark the incident MITIGATED once verification passed",
            execute=execute_update_deploy_status,
            idempotency_key=update_deploy_status_idempotency_key,
            output_key=STATUS_OUTPUT_KEY,
        ),
    ),
)
