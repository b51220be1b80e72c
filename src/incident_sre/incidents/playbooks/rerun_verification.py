"""rerun-post-deploy-verification: re-run verification and mitigate on pass.

Steps:
    1. run-verification        run the post-deploy verification suite for the
       environment named in the evidence.
    2. ingest-incident-update  mark the incident MITIGATED when verification
       passed for the incident's own environment, and record the result as
       new evidence.

A failed verification is a first-class outcome (``VERIFICATION_FAILED``).
The update step never marks an incident mitigated from a verification of a
different environment.
"""

from __future__ import annotations

import logging

from incident_sre.errors import IncidentNotFoundError
from incident_sre.incidents.environment import normalize_environment, try_normalize_environment
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
from incident_sre.incidents.playbooks.common import retry_config_for, step_output
from incident_sre.retry import with_retry

logger = logging.getLogger(__name__)

PLAYBOOK_ID = "rerun-post-deploy-verification"
PLAYBOOK_VERSION = "1.0.0"

VERIFICATION_OUTPUT_KEY = "verificationStepOutput"
INCIDENT_UPDATE_OUTPUT_KEY = "incidentUpdateStepOutput"

VERIFICATION_OUTPUT_FIELDS = ("status", "env", "deployId", "playbookRunId", "reportHash")
INCIDENT_UPDATE_OUTPUT_FIELDS = (
    "message",
    "incidentId",
    "currentStatus",
    "newStatus",
    "verificationRunId",
    "env",
    "envMismatch",
    "incidentEnv",
    "verificationEnv",
)

_SOURCE_KINDS = (EvidenceKind.VERIFICATION.value, EvidenceKind.DEPLOY_STATUS.value)


def _verification_params(context: StepContext) -> tuple[str | None, str | None]:
    """``(env, deploy_id)`` from the first verification/deploy_status evidence, else inputs."""
    env = None
    deploy_id = None
    item = find_evidence(context.evidence, _SOURCE_KINDS)
    if item is not None:
        ref = try_parse_ref(item)
        if isinstance(ref, (VerificationRef, DeployStatusRef)):
            env = ref.env
            deploy_id = ref.deploy_id
    env = env or context.inputs.get("env")
    deploy_id = deploy_id or context.inputs.get("deployId")
    return env, (str(deploy_id) if deploy_id not in (None, "") else None)


# ---------------------------------------------------------------------------
# Step 1: run verification
# ---------------------------------------------------------------------------


async def execute_run_verification(resources: StepResources, context: StepContext) -> StepResult:
    item = find_evidence(context.evidence, _SOURCE_KINDS)
    if item is None:
        return StepResult.fail(
            StepErrorCode.EVIDENCE_MISSING,
            "No verification or deploy_status evidence found",
        )
    if try_parse_ref(item) is None:
        return StepResult.fail(
            StepErrorCode.INVALID_EVIDENCE,
            f"Malformed {item.kind} evidence {item.id}",
        )

    env, deploy_id = _verification_params(context)
    if not env:
        return StepResult.fail(
            StepErrorCode.INVALID_EVIDENCE,
            "Missing required verification parameter: env",
            details={"env": env, "deployId": deploy_id},
        )

    try:
        normalized_env = normalize_environment(env, resources.environment_aliases)
    except ValueError as exc:
        return StepResult.fail(
            StepErrorCode.INVALID_ENVIRONMENT,
            f"Invalid environment value: {exc}",
            details={"env": env},
        )

    if resources.verifier is None:
        return StepResult.fail(
            StepErrorCode.VERIFICATION_EXECUTION_ERROR,
            "No verification provider configured",
        )
    verifier = resources.verifier

    try:
        report = await with_retry(
            lambda: verifier.run_verification(normalized_env, deploy_id),
            retry_config_for(resources, "GET"),
            observer=resources.retry_observer,
        )
    except Exception as exc:
        logger.warning("Verification errored for %s: %s", normalized_env, exc)
        return StepResult.fail(
            StepErrorCode.VERIFICATION_EXECUTION_ERROR,
            str(exc) or "Failed to execute verification",
        )

    fields = redact_output(
        {
            "status": report.status,
            "env": normalized_env,
            "deployId": deploy_id,
            "playbookRunId": report.playbook_run_id,
            "reportHash": report.report_hash,
        },
        VERIFICATION_OUTPUT_FIELDS,
    )
    if not report.passed:
        logger.info("Verification failed for %s (run %s)", normalized_env, report.playbook_run_id)
        return StepResult.fail(
            StepErrorCode.VERIFICATION_FAILED,
            "Post-deploy verification failed",
            details=fields,
        )
    return StepResult.ok(fields)


def verification_idempotency_key(context: StepContext) -> str:
    env, deploy_id = _verification_params(context)
    segment = key_segment(context.incident_key)
    return f"verification:{segment}:{content_hash({'env': env, 'deployId': deploy_id})}"


# ---------------------------------------------------------------------------
# Step 2: incident update
# ---------------------------------------------------------------------------


def _incident_env(resources: StepResources, incident_id: str) -> str | None:
    for item in resources.incident_store.get_evidence(incident_id):
        if item.kind not in _SOURCE_KINDS:
            continue
        env = item.ref.get("env")
        if env:
            return try_normalize_environment(env, resources.environment_aliases)
    return None


async def execute_ingest_incident_update(
    resources: StepResources, context: StepContext
) -> StepResult:
    verification = step_output(context.inputs, VERIFICATION_OUTPUT_KEY)
    if verification is None:
        return StepResult.fail(
            StepErrorCode.MISSING_VERIFICATION_OUTPUT,
            f"No {VERIFICATION_OUTPUT_KEY} from previous step",
        )

    if verification.get("status") != "success":
        return StepResult.ok(
            {
                "message": "Verification did not pass, skipping incident update",
                "incidentId": context.incident_id,
                "currentStatus": "unchanged",
            }
        )

    store = resources.incident_store
    try:
        incident = store.get_incident(context.incident_id)
        if incident is None:
            return StepResult.fail(
                StepErrorCode.INCIDENT_NOT_FOUND,
                f"Incident {context.incident_id} not found",
            )

        try:
            verification_env = normalize_environment(
                verification.get("env"), resources.environment_aliases
            )
        except ValueError as exc:
            return StepResult.fail(
                StepErrorCode.INVALID_ENVIRONMENT,
                f"Verification environment could not be normalized: {exc}",
                details={"verificationEnv": verification.get("env")},
            )

        incident_env = _incident_env(resources, context.incident_id)
        if incident_env is not None and incident_env != verification_env:
            logger.info(
                "Not mitigating %s: verification env %s, incident env %s",
                incident.incident_key,
                verification_env,
                incident_env,
            )
            return StepResult.ok(
                redact_output(
                    {
                        "message": (
                            f"Verification passed for {verification_env} but incident is for "
                            f"{incident_env}, not marking MITIGATED"
                        ),
                        "incidentId": context.incident_id,
                        "currentStatus": "unchanged",
                        "envMismatch": True,
                        "incidentEnv": incident_env,
                        "verificationEnv": verification_env,
                    },
                    INCIDENT_UPDATE_OUTPUT_FIELDS,
                )
            )

        report_hash = verification.get("reportHash")
        store.update_status(context.incident_id, IncidentStatus.MITIGATED)
        store.add_evidence(
            [
                Evidence(
                    kind=EvidenceKind.VERIFICATION.value,
                    incident_id=context.incident_id,
                    ref={
                        "playbookRunId": verification.get("playbookRunId"),
                        "reportHash": report_hash,
                        "env": verification_env,
                        "deployId": verification.get("deployId"),
                        "status": verification.get("status"),
                    },
                    sha256=report_hash,
                )
            ]
        )
    except IncidentNotFoundError as exc:
        return StepResult.fail(StepErrorCode.INCIDENT_NOT_FOUND, str(exc))
    except Exception as exc:
        logger.error("Incident update failed for %s: %s", context.incident_id, exc)
        return StepResult.fail(
            StepErrorCode.INCIDENT_UPDATE_FAILED,
            str(exc) or "Failed to update incident",
        )

    logger.info("Incident %s marked MITIGATED after verification", context.incident_key)
    return StepResult.ok(
        redact_output(
            {
                "message": "Incident marked as MITIGATED",
                "incidentId": context.incident_id,
                "newStatus": IncidentStatus.MITIGATED.value,
                "verificationRunId": verification.get("playbookRunId"),
                "env": verification_env,
            },
            INCIDENT_UPDATE_OUTPUT_FIELDS,
        )
    )


def incident_update_idempotency_key(context: StepContext) -> str:
    return f"incident-update:{key_segment(context.incident_key)}"


RERUN_POST_DEPLOY_VERIFICATION_PLAYBOOK = PlaybookDefinition(
    id=PLAYBOOK_ID,
    version=PLAYBOOK_VERSION,
    title="Re-run Post-Deploy Verification",
    applicable_categories=(
        ClassificationCategory.DEPLOY_VERIFICATION_FAILED,
        ClassificationCategory.ALB_TARGET_UNHEALTHY,
    ),
    required_evidence=(
        EvidencePredicate(kind=EvidenceKind.VERIFICATION.value, required_fields=("ref.env",)),
        EvidencePredicate(kind=EvidenceKind.DEPLOY_STATUS.value, required_fields=("ref.env",)),
    ),
    steps=(
        StepDefinition(
            step_id="run-verification",
            action_type=ActionType.RUN_VERIFICATION,
            description="Run the post-deploy verification suite",
            execute=execute_run_verification,
            idempotency_key=verification_idempotency_key,
            output_key=VERIFICATION_OUTPUT_KEY,
        ),
        StepDefinition(
            step_id="ingest-incident-update",
            action_type=ActionType.UPDATE_INCIDENT_STATUS,
            description="Mark the incident MITIGATED if verification passed for its environment",
            execute=execute_ingest_incident_update,
            idempotency_key=incident_update_idempotency_key,
            output_key=INCIDENT_UPDATE_OUTPUT_KEY,
        ),
    ),
)
