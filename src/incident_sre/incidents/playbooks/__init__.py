"""Built-in remediation playbooks."""

from incident_sre.incidents.playbook_registry import PlaybookRegistry
from incident_sre.incidents.playbooks.redeploy_lkg import REDEPLOY_LKG_PLAYBOOK
from incident_sre.incidents.playbooks.rerun_verification import (
    RERUN_POST_DEPLOY_VERIFICATION_PLAYBOOK,
)
from incident_sre.incidents.playbooks.safe_retry_runner import SAFE_RETRY_RUNNER_PLAYBOOK
from incident_sre.incidents.playbooks.service_health_reset import SERVICE_HEALTH_RESET_PLAYBOOK

BUILTIN_PLAYBOOKS = (
    SAFE_RETRY_RUNNER_PLAYBOOK,
    RERUN_POST_DEPLOY_VERIFICATION_PLAYBOOK,
    REDEPLOY_LKG_PLAYBOOK,
    SERVICE_HEALTH_RESET_PLAYBOOK,
)


def build_default_registry() -> PlaybookRegistry:
    """Create a fresh registry holding the built-in playbooks."""
    return PlaybookRegistry(list(BUILTIN_PLAYBOOKS))


__all__ = [
    "BUILTIN_PLAYBOOKS",
    "REDEPLOY_LKG_PLAYBOOK",
    "RERUN_POST_DEPLOY_VERIFICATION_PLAYBOOK",
    "SAFE_RETRY_RUNNER_PLAYBOOK",
    "SERVICE_HEALTH_RESET_PLAYBOOK",
    "build_default_registry",
]
