"""Engine configuration loaded from YAML."""

from __future__ import annotations

from pathlib import Path
from typing import TYPE_CHECKING, Any

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator

from incident_sre.errors import ConfigurationError
from incident_sre.incidents.environment import DEFAULT_ENVIRONMENT_ALIASES
from incident_sre.incidents.playbook import StepResources
from incident_sre.incidents.remediation_executor import DEFAULT_LAWBOOK_VERSION
from incident_sre.providers import StaticRepoAllowlist, StaticServiceAllowlist
from incident_sre.retry import RetryPolicyConfig

if TYPE_CHECKING:
    from incident_sre.incidents.store import IncidentStore
    from incident_sre.providers import (
        DeployHistoryProvider,
        DeployProvider,
        EcsProvider,
        RunnerProvider,
        VerificationProvider,
    )
    from incident_sre.retry import RetryObserver


class EngineConfig(BaseModel):
    """Settings shared by the executor and the playbook steps.

    Example YAML::

        lawbook_version: "2026.10"
        retry:
          max_retries: 5
          jitter_factor: 0
        repo_allowlist:
          - acme/web
          - acme-infra/*
        environment_aliases:
          prod-eu: production
        service_allowlist:
          - staging/*
          - production/api
        alb_targets:
          production:
            arn:aws:elasticloadbalancing:eu-central-1:1:targetgroup/api/1: prod-cluster/api
    """

    lawbook_version: str = Field(default=DEFAULT_LAWBOOK_VERSION, min_length=1)
    retry: RetryPolicyConfig = Field(default_factory=RetryPolicyConfig)
    repo_allowlist: list[str] = Field(
        default_factory=list,
        description="owner/repo or owner/* patterns allowed for workflow dispatch",
    )
    environment_aliases: dict[str, str] = Field(default_factory=dict)
    service_allowlist: list[str] = Field(
        default_factory=list,
        description="env/service or env/* patterns allowed for redeploys and service resets",
    )
    alb_targets: dict[str, dict[str, str]] = Field(
        default_factory=dict,
        description="per environment, target group ARN to cluster/service",
    )

    @field_validator("repo_allowlist")
    @classmethod
    def _check_patterns(cls, patterns: list[str]) -> list[str]:
        for pattern in patterns:
            owner, sep, repo = pattern.partition("/")
            if not sep or not owner or not repo:
                raise ValueError(f"allowlist entry must be 'owner/repo' or 'owner/*': {pattern!r}")
        return patterns

    @field_validator("environment_aliases")
    @classmethod
    def _check_aliases(cls, aliases: dict[str, str]) -> dict[str, str]:
        known = set(DEFAULT_ENVIRONMENT_ALIASES.values())
        for alias, target in aliases.items():
            if target not in known:
                raise ValueError(
                    f"alias {alias!r} maps to unknown environment {target!r}; "
                    f"expected one of {sorted(known)}"
                )
        return aliases

    @field_validator("service_allowlist")
    @classmethod
    def _check_service_patterns(cls, patterns: list[str]) -> list[str]:
        known = set(DEFAULT_ENVIRONMENT_ALIASES.values())
        for pattern in patterns:
            env, sep, service = pattern.partition("/")
            if not sep or not service or env.lower() not in known:
                raise ValueError(
                    f"service allowlist entry must be '<environment>/<service>' or "
                    f"'<environment>/*' with a canonical environment: {pattern!r}"
                )
        return patterns

    @field_validator("alb_targets")
    @classmethod
    def _check_alb_targets(cls, targets: dict[str, dict[str, str]]) -> dict[str, dict[str, str]]:
        known = set(DEFAULT_ENVIRONMENT_ALIASES.values())
        for env, mapping in targets.items():
            if env not in known:
                raise ValueError(f"alb_targets environment {env!r} is not canonical")
            for target_group, target in mapping.items():
                cluster, sep, service = target.partition("/")
                if not sep or not cluster or not service:
                    raise ValueError(
                        f"alb_targets entry for {target_group!r} must be 'cluster/service'"
                    )
        return targets

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> EngineConfig:
        try:
            return cls.model_validate(data or {})
        except ValidationError as exc:
            raise ConfigurationError(f"Invalid engine configuration: {exc}") from exc

    @classmethod
    def from_yaml(cls, path: str | Path) -> EngineConfig:
        """Load engine configuration from a YAML file."""
        path = Path(path)
        try:
            with open(path, encoding="utf-8") as f:
                data = yaml.safe_load(f)
        except (OSError, yaml.YAMLError) as exc:
            raise ConfigurationError(f"Cannot read engine configuration {path}: {exc}") from exc
        if data is not None and not isinstance(data, dict):
            raise ConfigurationError(f"Engine configuration {path} must be a mapping")
        return cls.from_dict(data)

    def to_yaml(self, path: str | Path) -> None:
        """Save this configuration to a YAML file."""
        path = Path(path)
        data = self.model_dump(mode="json", exclude_none=True)
        with open(path, "w", encoding="utf-8") as f:
            yaml.dump(data, f, default_flow_style=False, sort_keys=False)

    def build_allowlist(self) -> StaticRepoAllowlist:
        return StaticRepoAllowlist(self.repo_allowlist)

    def build_service_allowlist(self) -> StaticServiceAllowlist:
        return StaticServiceAllowlist(self.service_allowlist)

    def build_resources(
        self,
        incident_store: IncidentStore,
        runner: RunnerProvider | None = None,
        verifier: VerificationProvider | None = None,
        retry_observer: RetryObserver | None = None,
        deploy_history: DeployHistoryProvider | None = None,
        deployer: DeployProvider | None = None,
        ecs: EcsProvider | None = None,
    ) -> StepResources:
        """Bundle collaborators with this configuration's allowlists and retry policy."""
        return StepResources(
            incident_store=incident_store,
            allowlist=self.build_allowlist(),
            runner=runner,
            verifier=verifier,
            retry_config=self.retry,
            retry_observer=retry_observer,
            environment_aliases=dict(self.environment_aliases),
            deploy_history=deploy_history,
            deployer=deployer,
            ecs=ecs,
            service_allowlist=self.build_service_allowlist(),
            alb_targets={env: dict(m) for env, m in self.alb_targets.items()},
        )
