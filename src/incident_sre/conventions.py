"""OpenTelemetry semantic conventions for incident remediation.

Defines attribute keys and event names following OTEL naming conventions.
All engine-specific attributes are prefixed with 'incident.sre.' to avoid
collisions with standard OTEL conventions.
"""

# --- Attribute Keys ---

# Incident attributes
INCIDENT_ID = "incident.sre.incident.id"
INCIDENT_KEY = "incident.sre.incident.key"
INCIDENT_STATUS = "incident.sre.incident.status"
INCIDENT_CATEGORY = "incident.sre.incident.category"

# Classification attributes
CLASSIFIER_VERSION = "incident.sre.classifier.version"
CLASSIFICATION_CONFIDENCE = "incident.sre.classification.confidence"

# Playbook / run attributes
PLAYBOOK_ID = "incident.sre.playbook.id"
PLAYBOOK_VERSION = "incident.sre.playbook.version"
RUN_ID = "incident.sre.run.id"
RUN_KEY = "incident.sre.run.key"
RUN_STATUS = "incident.sre.run.status"
RUN_SKIP_REASON = "incident.sre.run.skip_reason"
LAWBOOK_VERSION = "incident.sre.lawbook.version"

# Step attributes
STEP_ID = "incident.sre.step.id"
STEP_ACTION_TYPE = "incident.sre.step.action_type"
STEP_IDEMPOTENCY_KEY = "incident.sre.step.idempotency_key"
STEP_STATUS = "incident.sre.step.status"
STEP_ERROR_CODE = "incident.sre.step.error_code"

# Retry attributes
RETRY_ATTEMPT = "incident.sre.retry.attempt"
RETRY_ERROR_TYPE = "incident.sre.retry.error_type"
RETRY_DELAY_MS = "incident.sre.retry.delay_ms"

# Outcome attributes
OUTCOME_KEY = "incident.sre.outcome.key"
POSTMORTEM_HASH = "incident.sre.postmortem.hash"

# --- Event Names ---

EVENT_INCIDENT_CLASSIFIED = "incident.sre.incident.classified"
EVENT_REMEDIATION_PLANNED = "incident.sre.remediation.planned"
EVENT_REMEDIATION_SKIPPED = "incident.sre.remediation.skipped"
EVENT_STEP_STARTED = "incident.sre.remediation.step_started"
EVENT_STEP_FINISHED = "incident.sre.remediation.step_finished"
EVENT_REMEDIATION_COMPLETED = "incident.sre.remediation.completed"
EVENT_REMEDIATION_FAILED = "incident.sre.remediation.failed"
EVENT_RETRY_SCHEDULED = "incident.sre.retry.scheduled"
EVENT_OUTCOME_RECORDED = "incident.sre.outcome.recorded"

# --- Span Names ---

SPAN_REMEDIATION_RUN = "incident.sre.remediation.run"
SPAN_REMEDIATION_STEP = "incident.sre.remediation.step"
