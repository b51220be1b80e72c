"""Postmortem artifacts built only from recorded evidence.

A postmortem states facts the stored data supports and lists, as explicit
unknowns, what it cannot determine.  Apart from ``generatedAt`` its content
is a pure function of the incident, its evidence, its classification and its
remediation runs, so :meth:`Postmortem.hash` is stable across regenerations.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from incident_sre.incidents.hashing import content_hash
from incident_sre.incidents.models import (
    Classification,
    ClassificationCategory,
    Evidence,
    EvidenceKind,
    EvidencePointer,
    Incident,
    IncidentStatus,
    iso_or_none,
)
from incident_sre.incidents.playbook import RemediationRun, RemediationRunStatus

POSTMORTEM_VERSION = "0.7.0"

_IMPACT_KINDS = frozenset(
    {EvidenceKind.VERIFICATION.value, EvidenceKind.HTTP.value, EvidenceKind.ALB.value}
)


class VerificationResult(str, Enum):
    PASS = "PASS"
    FAIL = "FAIL"
    UNKNOWN = "UNKNOWN"

    @classmethod
    def from_status(cls, status: Any) -> VerificationResult:
        value = str(status or "").lower()
        if value in ("success", "pass", "passed"):
            return cls.PASS
        if value in ("failed", "failure", "fail"):
            return cls.FAIL
        return cls.UNKNOWN


@dataclass(frozen=True)
class PlaybookAttempt:
    """One remediation run as it appears in a postmortem."""

    playbook_id: str
    playbook_version: str
    status: RemediationRunStatus
    started_at: datetime | None = None
    finished_at: datetime | None = None
    verification_hash: str | None = None

    @classmethod
    def from_run(cls, run: RemediationRun) -> PlaybookAttempt:
        return cls(
            playbook_id=run.playbook_id,
            playbook_version=run.playbook_version,
            status=run.status,
            started_at=run.created_at,
            finished_at=run.finished_at,
            verification_hash=run.report_hash,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "playbookId": self.playbook_id,
            "playbookVersion": self.playbook_version,
            "status": self.status.value,
            "startedAt": iso_or_none(self.started_at),
            "finishedAt": iso_or_none(self.finished_at),
            "verificationHash": self.verification_hash,
        }


@dataclass(frozen=True)
class Postmortem:
    """Postmortem v0.7.0."""

    generated_at: datetime
    incident_id: str
    incident_key: str
    severity: str
    category: ClassificationCategory | None
    opened_at: datetime
    closed_at: datetime | None
    signal_kinds: tuple[str, ...]
    primary_evidence: EvidencePointer
    impact_summary: str
    duration_minutes: int | None
    attempted_playbooks: tuple[PlaybookAttempt, ...]
    verification_result: VerificationResult
    verification_report_hash: str | None
    resolved: bool
    mttr_minutes: int | None
    auto_fixed: bool
    facts: tuple[str, ...] = ()
    unknowns: tuple[str, ...] = ()
    used_sources_hashes: tuple[str, ...] = ()
    pointers: tuple[EvidencePointer, ...] = field(default_factory=tuple)
    version: str = POSTMORTEM_VERSION

    def content(self) -> dict[str, Any]:
        """Canonical content without the generation timestamp."""
        return {
            "version": self.version,
            "incident": {
                "id": self.incident_id,
                "key": self.incident_key,
                "severity": self.severity,
                "category": self.category.value if self.category else None,
                "openedAt": iso_or_none(self.opened_at),
                "closedAt": iso_or_none(self.closed_at),
            },
            "detection": {
                "signalKinds": list(self.signal_kinds),
                "primaryEvidence": self.primary_evidence.to_dict(),
            },
            "impact": {
                "summary": self.impact_summary,
                "durationMinutes": self.duration_minutes,
            },
            "remediation": {
                "attemptedPlaybooks": [a.to_dict() for a in self.attempted_playbooks],
            },
            "verification": {
                "result": self.verification_result.value,
                "reportHash": self.verification_report_hash,
            },
            "outcome": {
                "resolved": self.resolved,
                "mttrMinutes": self.mttr_minutes,
                "autoFixed": self.auto_fixed,
            },
            "learnings": {
                "facts": list(self.facts),
                "unknowns": list(self.unknowns),
            },
            "references": {
                "used_sources_hashes": list(self.used_sources_hashes),
                "pointers": [p.to_dict() for p in self.pointers],
            },
        }

    def to_dict(self) -> dict[str, Any]:
        return {"generatedAt": iso_or_none(self.generated_at), **self.content()}

    def hash(self) -> str:
        return compute_postmortem_hash(self)


def compute_postmortem_hash(postmortem: Postmortem | dict[str, Any]) -> str:
    """SHA-256 of the canonical postmortem, ``generatedAt`` excluded."""
    if isinstance(postmortem, Postmortem):
        return content_hash(postmortem.content())
    return content_hash({k: v for k, v in postmortem.items() if k != "generatedAt"})


# ---------------------------------------------------------------------------
# Derivations
# ---------------------------------------------------------------------------


def closed_at(incident: Incident) -> datetime | None:
    if incident.closed_at is not None:
        return incident.closed_at
    if incident.status == IncidentStatus.CLOSED:
        return incident.updated_at
    return None


def resolution_minutes(incident: Incident) -> int | None:
    end = closed_at(incident)
    if end is None:
        return None
    return round((end - incident.opened_at).total_seconds() / 60)


def signal_kinds(evidence: Sequence[Evidence]) -> tuple[str, ...]:
    return tuple(sorted({e.kind for e in evidence}))


def impact_summary(incident: Incident, evidence: Sequence[Evidence]) -> str:
    summary = incident.summary or incident.title
    ordered = sorted(evidence, key=Evidence.sort_key)

    ecs = next((e for e in ordered if e.kind == EvidenceKind.ECS.value), None)
    if ecs is not None and ecs.ref.get("stoppedReason"):
        summary += f" ECS task stopped: {ecs.ref['stoppedReason']}"

    verification = next((e for e in ordered if e.kind == EvidenceKind.VERIFICATION.value), None)
    if verification is not None:
        result = verification.ref.get("result") or verification.ref.get("status")
        if result:
            summary += f" Verification {result}"

    return summary.strip()


def verification_outcome(
    runs: Sequence[RemediationRun],
) -> tuple[VerificationResult, str | None]:
    """Result and report hash of the first run (in run order) that verified."""
    for run in runs:
        report_hash = run.report_hash
        if report_hash:
            status = (run.result or {}).get("verificationResult")
            return VerificationResult.from_status(status), report_hash
    return VerificationResult.UNKNOWN, None


def extract_facts(
    incident: Incident,
    category: ClassificationCategory | None,
    evidence: Sequence[Evidence],
    runs: Sequence[RemediationRun],
) -> list[str]:
    facts = [f"Incident severity: {incident.severity.value}"]
    if category is not None:
        facts.append(f"Classified as: {category.value}")
    facts.append(f"Evidence collected: {len(evidence)} items")
    facts.append(f"Signal sources: {', '.join(signal_kinds(evidence))}")
    if runs:
        facts.append(f"Remediation attempts: {len(runs)}")
        succeeded = sum(1 for r in runs if r.status == RemediationRunStatus.SUCCEEDED)
        if succeeded:
            facts.append(f"Successful remediation runs: {succeeded}")
    facts.append(f"Final status: {incident.status.value}")
    return facts


def extract_unknowns(
    incident: Incident,
    category: ClassificationCategory | None,
    evidence: Sequence[Evidence],
    runs: Sequence[RemediationRun],
) -> list[str]:
    unknowns: list[str] = []
    if category is None:
        unknowns.append("Root cause: Not classified")
    if not any(e.kind in _IMPACT_KINDS for e in evidence):
        unknowns.append("Impact metrics: No health check or verification data available")
    if not runs:
        unknowns.append("Remediation outcome: No remediation attempted")
    elif not any(r.report_hash for r in runs):
        unknowns.append("Verification result: No verification data available")
    if incident.status != IncidentStatus.CLOSED:
        unknowns.append("MTTR: Incident not yet resolved")
    return unknowns


def build_postmortem(
    incident: Incident,
    evidence: Sequence[Evidence],
    classification: Classification | None,
    remediation_runs: Sequence[RemediationRun],
    generated_at: datetime,
) -> Postmortem:
    """Assemble a postmortem.

    ``remediation_runs`` is sorted by ``(created_at, id)`` here, so callers
    may pass runs in any order.
    """
    runs = sorted(remediation_runs, key=RemediationRun.sort_key)
    category = classification.category if classification else incident.category

    resolved = incident.status == IncidentStatus.CLOSED
    duration = resolution_minutes(incident)
    result, report_hash = verification_outcome(runs)
    pointers = tuple(
        sorted((EvidencePointer.from_evidence(e) for e in evidence), key=EvidencePointer.sort_key)
    )

    return Postmortem(
        generated_at=generated_at,
        incident_id=incident.id,
        incident_key=incident.incident_key,
        severity=incident.severity.value,
        category=category,
        opened_at=incident.opened_at,
        closed_at=closed_at(incident),
        signal_kinds=signal_kinds(evidence),
        primary_evidence=EvidencePointer(
            kind=incident.source_primary.kind, ref=dict(incident.source_primary.ref)
        ),
        impact_summary=impact_summary(incident, evidence),
        duration_minutes=duration,
        attempted_playbooks=tuple(PlaybookAttempt.from_run(r) for r in runs),
        verification_result=result,
        verification_report_hash=report_hash,
        resolved=resolved,
        mttr_minutes=duration if resolved else None,
        auto_fixed=any(r.status == RemediationRunStatus.SUCCEEDED for r in runs),
        facts=tuple(extract_facts(incident, category, evidence, runs)),
        unknowns=tuple(extract_unknowns(incident, category, evidence, runs)),
        used_sources_hashes=tuple(sorted({e.sha256 for e in evidence if e.sha256})),
        pointers=pointers,
    )
