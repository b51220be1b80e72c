"""Helpers shared by the built-in playbook steps."""

from __future__ import annotations

from collections.abc import Mapping
from datetime import datetime, timezone
from typing import Any

from incident_sre.incidents.playbook import StepResources, key_segment
from incident_sre.retry import DEFAULT_RETRY_CONFIG, HttpMethod, RetryPolicyConfig


def step_output(inputs: Mapping[str, Any], output_key: str) -> Mapping[str, Any] | None:
    """Output of an earlier step in the same run, or None."""
    value = inputs.get(output_key)
    return value if isinstance(value, Mapping) and value else None


def nested_value(inputs: Mapping[str, Any], output_key: str, name: str) -> Any:
    output = step_output(inputs, output_key)
    if output is None:
        return None
    value = output.get(name)
    return None if value == "" else value


def retry_config_for(resources: StepResources, method: HttpMethod = "GET") -> RetryPolicyConfig:
    config = resources.retry_config or DEFAULT_RETRY_CONFIG
    if config.http_method == method:
        return config
    return config.model_copy(update={"http_method": method})


def key_part(value: Any) -> str:
    """Render a value for use inside an idempotency key."""
    if value is None or value == "":
        return "unknown"
    return key_segment(str(value))


def hour_bucket(moment: datetime) -> str:
    """UTC hour of *moment* as ``YYYY-MM-DDTHH`` for time-bucketed keys."""
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc).strftime("%Y-%m-%dT%H")
