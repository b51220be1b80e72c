"""Playbook registry: registration and lookup by id or category."""

from __future__ import annotations

import logging

from incident_sre.errors import PlaybookNotFoundError
from incident_sre.incidents.models import ClassificationCategory
from incident_sre.incidents.playbook import PlaybookDefinition

logger = logging.getLogger(__name__)


class PlaybookRegistry:
    """Catalog of playbook definitions.

    Built once at startup and handed to whatever needs it; there is no
    module-level instance.
    """

    def __init__(self, playbooks: list[PlaybookDefinition] | None = None) -> None:
        self._playbooks: dict[str, PlaybookDefinition] = {}
        for playbook in playbooks or []:
            self.register(playbook)

    def register(self, playbook: PlaybookDefinition) -> None:
        """Register a playbook.

        Raises:
            ValueError: if a playbook with the same id is already registered.
        """
        if playbook.id in self._playbooks:
            raise ValueError(f"Playbook already registered: {playbook.id}")
        self._playbooks[playbook.id] = playbook
        logger.debug("Registered playbook %s@%s", playbook.id, playbook.version)

    def get(self, playbook_id: str) -> PlaybookDefinition | None:
        """Get a playbook by exact id."""
        return self._playbooks.get(playbook_id)

    def require(self, playbook_id: str) -> PlaybookDefinition:
        playbook = self._playbooks.get(playbook_id)
        if playbook is None:
            raise PlaybookNotFoundError(playbook_id)
        return playbook

    def for_category(self, category: ClassificationCategory | str | None) -> list[PlaybookDefinition]:
        """Playbooks applicable to *category*, in registration order.

        Unknown categories yield an empty list.
        """
        return [p for p in self._playbooks.values() if p.applies_to(category)]

    def list_all(self) -> list[PlaybookDefinition]:
        """List all registered playbooks."""
        return list(self._playbooks.values())

    def has(self, playbook_id: str) -> bool:
        return playbook_id in self._playbooks

    def __len__(self) -> int:
        return len(self._playbooks)
