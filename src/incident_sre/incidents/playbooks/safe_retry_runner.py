"""safe-retry-runner: re-run a failed CI workflow at a pinned commit.

Steps:
    1. dispatch-runner  re-dispatch the workflow at ``headSha`` (or an
       explicit ``ref``) after the repository allowlist approves it.
    2. poll-runner      read the new run's status.
    3. ingest-runner    collect the finished run's jobs and artifact metadata.

Every gate (evidence, determinism, allowlist) runs before the dispatch call,
so a rejected retry has no external effect.  Outputs are reduced to fixed
field sets; raw provider payloads, download URLs, and log URLs never reach
the run record.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Any

from incident_sre.incidents.evidence import (
    EvidencePredicate,
    RunnerRef,
    find_evidence,
    missing_fields,
    try_parse_ref,
)
from incident_sre.incidents.hashing import content_hash
from incident_sre.incidents.models import ClassificationCategory, EvidenceKind
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
from incident_sre.incidents.playbooks.common import key_part, nested_value, retry_config_for
from incident_sre.providers import DispatchRequest
from incident_sre.retry import with_retry

logger = logging.getLogger(__name__)

PLAYBOOK_ID = "safe-retry-runner"
PLAYBOOK_VERSION = "1.0.0"

DISPATCH_OUTPUT_KEY = "dispatchStepOutput"
POLL_OUTPUT_KEY = "pollStepOutput"
INGEST_OUTPUT_KEY = "ingestStepOutput"

DISPATCH_OUTPUT_FIELDS = ("newRunId", "runUrl", "recordId", "isExisting")
POLL_OUTPUT_FIELDS = ("runId", "status", "conclusion", "normalizedStatus", "updatedAt")
INGEST_OUTPUT_FIELDS = ("runId", "recordId", "summary", "jobsCount", "artifactsCount", "artifacts")
ARTIFACT_FIELDS = ("id", "name", "sizeInBytes")

_RUNNER_KINDS = (EvidenceKind.RUNNER.value, EvidenceKind.GITHUB_RUN.value)


def _runner_ref(context: StepContext) -> tuple[RunnerRef | None, StepResult | None]:
    """Locate and parse runner evidence, or return the failure to report."""
    item = find_evidence(context.evidence, _RUNNER_KINDS)
    if item is None:
        return None, StepResult.fail(
            StepErrorCode.EVIDENCE_MISSING,
            "No runner or github_run evidence found",
        )
    ref = try_parse_ref(item)
    if not isinstance(ref, RunnerRef):
        return None, StepResult.fail(
            StepErrorCode.INVALID_EVIDENCE,
            f"Malformed {item.kind} evidence {item.id}",
        )
    return ref, None


def _require(ref: RunnerRef, *names: str) -> StepResult | None:
    missing = missing_fields(ref, names)
    if missing:
        return StepResult.fail(
            StepErrorCode.INVALID_EVIDENCE,
            f"Runner evidence is missing required fields: {', '.join(missing)}",
            details={"missing": missing},
        )
    return None


# ---------------------------------------------------------------------------
# Step 1: dispatch
# ---------------------------------------------------------------------------


async def execute_dispatch_runner(resources: StepResources, context: StepContext) -> StepResult:
    ref, failure = _runner_ref(context)
    if failure is not None:
        return failure
    assert ref is not None

    failure = _require(ref, "owner", "repo", "workflow_id_or_file")
    if failure is not None:
        return failure

    target_ref = ref.head_sha or ref.ref
    if not target_ref:
        return StepResult.fail(
            StepErrorCode.DETERMINISM_REQUIRED,
            "Retry requires headSha or explicit ref; refusing to fall back to the default branch",
            details={"owner": ref.owner, "repo": ref.repo, "runId": ref.run_id},
        )

    if not resources.allowlist.is_allowed(ref.owner, ref.repo):
        logger.warning("Dispatch denied for %s/%s by repository allowlist", ref.owner, ref.repo)
        return StepResult.fail(
            StepErrorCode.REPO_NOT_ALLOWED,
            f"Repository {ref.owner}/{ref.repo} is not in the allowlist",
        )

    if resources.runner is None:
        return StepResult.fail(StepErrorCode.DISPATCH_FAILED, "No runner provider configured")
    runner = resources.runner

    request = DispatchRequest(
        correlation_id=f"{context.incident_key}:retry:{key_part(ref.run_id)}",
        owner=ref.owner,
        repo=ref.repo,
        workflow_id_or_file=ref.workflow_id_or_file,
        ref=target_ref,
        inputs=dict(ref.inputs),
    )
    try:
        raw = await with_retry(
            lambda: runner.dispatch_workflow(request),
            retry_config_for(resources, "POST"),
            observer=resources.retry_observer,
        )
    except Exception as exc:
        logger.warning("Dispatch failed for %s: %s", request.correlation_id, exc)
        return StepResult.fail(StepErrorCode.DISPATCH_FAILED, str(exc))

    output = redact_output(
        {
            "newRunId": raw.get("runId"),
            "runUrl": raw.get("runUrl"),
            "recordId": raw.get("recordId"),
            "isExisting": raw.get("isExisting", False),
        },
        DISPATCH_OUTPUT_FIELDS,
    )
    logger.info("Dispatched %s/%s run %s", ref.owner, ref.repo, output.get("newRunId"))
    return StepResult.ok(output)


def dispatch_idempotency_key(context: StepContext) -> str:
    item = find_evidence(context.evidence, _RUNNER_KINDS)
    ref: Mapping[str, Any] = {}
    if item is not None:
        parsed = try_parse_ref(item)
        if isinstance(parsed, RunnerRef):
            ref = {
                "owner": parsed.owner,
                "repo": parsed.repo,
                "workflow": parsed.workflow_id_or_file,
                "sourceRunId": parsed.run_id,
            }
    inputs = context.inputs
    params = {
        "owner": ref.get("owner") or inputs.get("owner"),
        "repo": ref.get("repo") or inputs.get("repo"),
        "workflow": ref.get("workflow") or inputs.get("workflow"),
        "sourceRunId": ref.get("sourceRunId") or inputs.get("sourceRunId"),
    }
    return f"dispatch:{key_segment(context.incident_key)}:{content_hash(params)}"


# ---------------------------------------------------------------------------
# Step 2: poll
# ---------------------------------------------------------------------------


async def execute_poll_runner(resources: StepResources, context: StepContext) -> StepResult:
    run_id = nested_value(context.inputs, DISPATCH_OUTPUT_KEY, "newRunId")
    if run_id is None:
        return StepResult.fail(
            StepErrorCode.MISSING_RUN_ID,
            f"No newRunId in {DISPATCH_OUTPUT_KEY} from previous step",
        )

    ref, failure = _runner_ref(context)
    if failure is not None:
        return failure
    assert ref is not None
    failure = _require(ref, "owner", "repo")
    if failure is not None:
        return failure

    if resources.runner is None:
        return StepResult.fail(StepErrorCode.POLL_FAILED, "No runner provider configured")
    runner = resources.runner

    try:
        raw = await with_retry(
            lambda: runner.poll_run(ref.owner, ref.repo, run_id),
            retry_config_for(resources, "GET"),
            observer=resources.retry_observer,
        )
    except Exception as exc:
        logger.warning("Poll failed for run %s: %s", run_id, exc)
        return StepResult.fail(StepErrorCode.POLL_FAILED, str(exc))

    return StepResult.ok(redact_output(raw, POLL_OUTPUT_FIELDS))


def poll_idempotency_key(context: StepContext) -> str:
    run_id = nested_value(context.inputs, DISPATCH_OUTPUT_KEY, "newRunId")
    return f"poll:{key_segment(context.incident_key)}:{key_part(run_id)}"


# ---------------------------------------------------------------------------
# Step 3: ingest
# ---------------------------------------------------------------------------


def _artifact_metadata(artifacts: Any) -> list[dict[str, Any]]:
    if not isinstance(artifacts, (list, tuple)):
        return []
    return [redact_output(a, ARTIFACT_FIELDS) for a in artifacts if isinstance(a, Mapping)]


async def execute_ingest_runner(resources: StepResources, context: StepContext) -> StepResult:
    run_id = nested_value(context.inputs, POLL_OUTPUT_KEY, "runId")
    if run_id is None:
        return StepResult.fail(
            StepErrorCode.MISSING_RUN_ID,
            f"No runId in {POLL_OUTPUT_KEY} from previous step",
        )

    ref, failure = _runner_ref(context)
    if failure is not None:
        return failure
    assert ref is not None
    failure = _require(ref, "owner", "repo")
    if failure is not None:
        return failure

    if resources.runner is None:
        return StepResult.fail(StepErrorCode.INGEST_FAILED, "No runner provider configured")
    runner = resources.runner

    try:
        raw = await with_retry(
            lambda: runner.ingest_run(ref.owner, ref.repo, run_id),
            retry_config_for(resources, "GET"),
            observer=resources.retry_observer,
        )
    except Exception as exc:
        logger.warning("Ingest failed for run %s: %s", run_id, exc)
        return StepResult.fail(StepErrorCode.INGEST_FAILED, str(exc))

    artifacts = _artifact_metadata(raw.get("artifacts"))
    jobs = raw.get("jobs")
    output = redact_output(
        {
            "runId": raw.get("runId", run_id),
            "recordId": raw.get("recordId"),
            "summary": raw.get("summary"),
            "jobsCount": len(jobs) if isinstance(jobs, (list, tuple)) else 0,
            "artifactsCount": len(artifacts),
            "artifacts": artifacts,
        },
        INGEST_OUTPUT_FIELDS,
    )
    return StepResult.ok(output)


def ingest_idempotency_key(context: StepContext) -> str:
    run_id = nested_value(context.inputs, POLL_OUTPUT_KEY, "runId")
    return f"ingest:{key_segment(context.incident_key)}:{key_part(run_id)}"


SAFE_RETRY_RUNNER_PLAYBOOK = PlaybookDefinition(
    id=PLAYBOOK_ID,
    version=PLAYBOOK_VERSION,
    title="Safe Retry Runner - re-dispatch a failed workflow at a pinned commit",
    applicable_categories=(ClassificationCategory.RUNNER_WORKFLOW_FAILED,),
    required_evidence=(
        EvidencePredicate(kind=EvidenceKind.RUNNER.value),
        EvidencePredicate(kind=EvidenceKind.GITHUB_RUN.value),
    ),
    steps=(
        StepDefinition(
            step_id="dispatch-runner",
            action_type=ActionType.DISPATCH_WORKFLOW,
            description="Dispatch the workflow again at headSha or an explicit ref",
            execute=execute_dispatch_runner,
            idempotency_key=dispatch_idempotency_key,
            output_key=DISPATCH_OUTPUT_KEY,
        ),
        StepDefinition(
            step_id="poll-runner",
            action_type=ActionType.POLL_WORKFLOW,
            description="Poll the dispatched run for its status",
            execute=execute_poll_runner,
            idempotency_key=poll_idempotency_key,
            output_key=POLL_OUTPUT_KEY,
        ),
        StepDefinition(
            step_id="ingest-runner",
            action_type=ActionType.INGEST_WORKFLOW,
            description="Ingest job and artifact metadata from the finished run",
            execute=execute_ingest_runner,
            idempotency_key=ingest_idempotency_key,
            output_key=INGEST_OUTPUT_KEY,
        ),
    ),
)
