"""Incident handling: classification, remediation runs, and postmortems."""

from incident_sre.incidents.classifier import CLASSIFIER_VERSION, ClassificationRule, classify
from incident_sre.incidents.evidence import EvidencePredicate, check_evidence_predicates
from incident_sre.incidents.models import (
    Classification,
    ClassificationCategory,
    Confidence,
    Evidence,
    EvidenceKind,
    EvidencePack,
    EvidencePointer,
    Incident,
    IncidentSeverity,
    IncidentStatus,
    SourcePointer,
)
from incident_sre.incidents.outcomes import GenerationResult, PostmortemGenerator
from incident_sre.incidents.playbook import (
    ActionType,
    PlaybookDefinition,
    RemediationRun,
    RemediationRunStatus,
    StepContext,
    StepDefinition,
    StepError,
    StepErrorCode,
    StepResources,
    StepResult,
    StepStatus,
)
from incident_sre.incidents.playbook_registry import PlaybookRegistry
from incident_sre.incidents.postmortem import POSTMORTEM_VERSION, Postmortem
from incident_sre.incidents.remediation_executor import RemediationExecutor, RemediationRunResult
from incident_sre.incidents.store import (
    InMemoryIncidentStore,
    InMemoryOutcomeStore,
    InMemoryRemediationStore,
    IncidentStore,
    OutcomeRecord,
    OutcomeStore,
    RemediationStore,
)

__all__ = [
    "ActionType",
    "CLASSIFIER_VERSION",
    "Classification",
    "ClassificationCategory",
    "ClassificationRule",
    "Confidence",
    "Evidence",
    "EvidenceKind",
    "EvidencePack",
    "EvidencePointer",
    "EvidencePredicate",
    "GenerationResult",
    "InMemoryIncidentStore",
    "InMemoryOutcomeStore",
    "InMemoryRemediationStore",
    "Incident",
    "IncidentSeverity",
    "IncidentStatus",
    "IncidentStore",
    "OutcomeRecord",
    "OutcomeStore",
    "POSTMORTEM_VERSION",
    "PlaybookDefinition",
    "PlaybookRegistry",
    "Postmortem",
    "PostmortemGenerator",
    "RemediationExecutor",
    "RemediationRun",
    "RemediationRunResult",
    "RemediationRunStatus",
    "RemediationStore",
    "SourcePointer",
    "StepContext",
    "StepDefinition",
    "StepError",
    "StepErrorCode",
    "StepResources",
    "StepResult",
    "StepStatus",
    "check_evidence_predicates",
    "classify",
]
