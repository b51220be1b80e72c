"""Incident data model: incidents, evidence, and classifications."""

from __future__ import annotations

import uuid
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING, Any

from incident_sre.incidents.hashing import content_hash, stable_stringify

if TYPE_CHECKING:
    from incident_sre.incidents.evidence import EvidenceRef


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def iso_or_none(ts: datetime | None) -> str | None:
    return ts.isoformat() if ts is not None else None


class IncidentSeverity(str, Enum):
    """Incident severity, mirroring deploy status colours."""

    GREEN = "GREEN"
    YELLOW = "YELLOW"
    RED = "RED"
    UNKNOWN = "UNKNOWN"


class IncidentStatus(str, Enum):
    """Incident lifecycle status."""

    OPEN = "OPEN"
    ACKED = "ACKED"
    MITIGATED = "MITIGATED"
    CLOSED = "CLOSED"


class EvidenceKind(str, Enum):
    """Kinds of evidence that can be attached to an incident."""

    RUNNER = "runner"
    GITHUB_RUN = "github_run"
    ECS = "ecs"
    ALB = "alb"
    HTTP = "http"
    VERIFICATION = "verification"
    DEPLOY_STATUS = "deploy_status"
    LOG_POINTER = "log_pointer"


class ClassificationCategory(str, Enum):
    DEPLOY_VERIFICATION_FAILED = "DEPLOY_VERIFICATION_FAILED"
    ALB_TARGET_UNHEALTHY = "ALB_TARGET_UNHEALTHY"
    ECS_TASK_CRASHLOOP = "ECS_TASK_CRASHLOOP"
    ECS_IMAGE_PULL_FAILED = "ECS_IMAGE_PULL_FAILED"
    IAM_POLICY_VALIDATION_FAILED = "IAM_POLICY_VALIDATION_FAILED"
    RUNNER_WORKFLOW_FAILED = "RUNNER_WORKFLOW_FAILED"
    UNKNOWN = "UNKNOWN"


class Confidence(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


@dataclass(frozen=True)
class SourcePointer:
    """Pointer to the signal that opened an incident."""

    kind: str
    ref: Mapping[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {"kind": self.kind, "ref": dict(self.ref)}


@dataclass(frozen=True)
class Evidence:
    """An immutable, kind-tagged fact attached to one incident."""

    kind: str
    ref: Mapping[str, Any] = field(default_factory=dict)
    sha256: str | None = None
    incident_id: str = ""
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    created_at: datetime = field(default_factory=utcnow)

    def typed_ref(self) -> EvidenceRef:
        """Parse ``ref`` into the variant model for this evidence kind."""
        from incident_sre.incidents.evidence import parse_ref

        return parse_ref(self.kind, self.ref)

    def sort_key(self) -> tuple[str, str, str]:
        """Order-independent key: kind, then content hash, then payload."""
        return (self.kind, self.sha256 or "", stable_stringify(self.ref))

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "incident_id": self.incident_id,
            "kind": self.kind,
            "ref": dict(self.ref),
            "sha256": self.sha256,
            "created_at": iso_or_none(self.created_at),
        }


@dataclass(frozen=True)
class EvidencePointer:
    """Reference to a piece of evidence inside a classification or postmortem."""

    kind: str
    ref: Mapping[str, Any] = field(default_factory=dict)
    sha256: str | None = None

    @classmethod
    def from_evidence(cls, evidence: Evidence) -> EvidencePointer:
        return cls(kind=evidence.kind, ref=dict(evidence.ref), sha256=evidence.sha256)

    def sort_key(self) -> tuple[str, str, str]:
        return (self.kind, self.sha256 or "", stable_stringify(self.ref))

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"kind": self.kind, "ref": dict(self.ref)}
        if self.sha256:
            data["sha256"] = self.sha256
        return data


@dataclass(frozen=True)
class EvidencePack:
    summary: str
    key_facts: tuple[str, ...] = ()
    pointers: tuple[EvidencePointer, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {
            "summary": self.summary,
            "keyFacts": list(self.key_facts),
            "pointers": [p.to_dict() for p in self.pointers],
        }


@dataclass(frozen=True)
class Classification:
    """Deterministic category, confidence, and labels for an incident."""

    classifier_version: str
    category: ClassificationCategory
    confidence: Confidence
    labels: tuple[str, ...]
    primary_evidence: EvidencePointer
    evidence_pack: EvidencePack

    def to_dict(self) -> dict[str, Any]:
        return {
            "classifierVersion": self.classifier_version,
            "category": self.category.value,
            "confidence": self.confidence.value,
            "labels": list(self.labels),
            "primaryEvidence": self.primary_evidence.to_dict(),
            "evidencePack": self.evidence_pack.to_dict(),
        }

    def hash(self) -> str:
        """SHA-256 hex of the canonical serialization."""
        return content_hash(self.to_dict())


@dataclass
class Incident:
    """A tracked operational problem.

    Owned by the incident store; the engine reads it and changes its status
    only through the store interface.
    """

    incident_key: str
    title: str
    severity: IncidentSeverity = IncidentSeverity.UNKNOWN
    status: IncidentStatus = IncidentStatus.OPEN
    source_primary: SourcePointer = field(default_factory=lambda: SourcePointer(kind="unknown"))
    summary: str = ""
    classification: Classification | None = None
    tags: list[str] = field(default_factory=list)
    lawbook_version: str | None = None
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime | None = None
    first_seen_at: datetime | None = None
    last_seen_at: datetime | None = None
    closed_at: datetime | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status == IncidentStatus.CLOSED

    @property
    def opened_at(self) -> datetime:
        return self.first_seen_at or self.created_at

    @property
    def category(self) -> ClassificationCategory | None:
        return self.classification.category if self.classification else None

    def acknowledge(self, at: datetime | None = None) -> None:
        self._transition(IncidentStatus.ACKED, at)

    def mitigate(self, at: datetime | None = None) -> None:
        self._transition(IncidentStatus.MITIGATED, at)

    def close(self, at: datetime | None = None) -> None:
        self._transition(IncidentStatus.CLOSED, at)
        self.closed_at = self.updated_at

    def _transition(self, status: IncidentStatus, at: datetime | None) -> None:
        self.status = status
        self.updated_at = at or utcnow()

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "incident_key": self.incident_key,
            "severity": self.severity.value,
            "status": self.status.value,
            "title": self.title,
            "summary": self.summary,
            "classification": self.classification.to_dict() if self.classification else None,
            "source_primary": self.source_primary.to_dict(),
            "tags": list(self.tags),
            "lawbook_version": self.lawbook_version,
            "created_at": iso_or_none(self.created_at),
            "updated_at": iso_or_none(self.updated_at),
            "first_seen_at": iso_or_none(self.first_seen_at),
            "last_seen_at": iso_or_none(self.last_seen_at),
            "closed_at": iso_or_none(self.closed_at),
        }
