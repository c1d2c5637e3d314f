"""Default values shared across the automation engine."""

DEFAULT_ACTION_TIMEOUT = 30.0
DEFAULT_EXECUTION_TIMEOUT = 600.0
DEFAULT_LOCK_TTL = 660.0
DEFAULT_MAX_PARALLEL_ACTIONS = 4

DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_BACKOFF_BASE = 1.0
DEFAULT_BACKOFF_FACTOR = 2.0
DEFAULT_BACKOFF_CAP = 30.0

DEFAULT_TICK_SECONDS = 60.0
DEFAULT_EVENTS_TOPIC = "domain-events"

SYSTEM_TRIGGERED_BY = "system"
WORKFLOW_LEVEL_ENTITY = "*"
