"""Exception types for incident-sre.

Step failures are returned as structured ``StepResult`` errors, not raised.
These exceptions cover contract violations and collaborator failures.
"""

from __future__ import annotations

from collections.abc import Mapping


class IncidentSREError(Exception):
    """Base exception for all incident-sre errors."""


class ConfigurationError(IncidentSREError):
    """Invalid or unreadable engine configuration."""


class IncidentNotFoundError(IncidentSREError):
    """Incident does not exist in the incident store."""

    def __init__(self, incident_id: str) -> None:
        super().__init__(f"Incident not found: {incident_id}")
        self.incident_id = incident_id


class PlaybookNotFoundError(IncidentSREError):
    """No playbook registered under the requested id."""

    def __init__(self, playbook_id: str) -> None:
        super().__init__(f"Playbook not found: {playbook_id}")
        self.playbook_id = playbook_id


class InvalidIdempotencyKeyError(IncidentSREError):
    """An idempotency or run key does not match the allowed format."""


class ProviderError(IncidentSREError):
    """Failure reported by an external provider call.

    Adapters raise this with the HTTP status and response headers when they
    have them, so the retry policy can classify the failure and honour
    rate-limit metadata.
    """

    def __init__(
        self,
        message: str,
        status: int | None = None,
        headers: Mapping[str, str] | None = None,
    ) -> None:
        super().__init__(message)
        self.status = status
        self.headers = dict(headers or {})


__all__ = [
    "ConfigurationError",
    "IncidentNotFoundError",
    "IncidentSREError",
    "InvalidIdempotencyKeyError",
    "PlaybookNotFoundError",
    "ProviderError",
]
