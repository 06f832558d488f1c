"""Shared constants for podflow."""

MAIN_BRANCH = "main"

TRIGGER_NODE_TYPES = {
    "manual-trigger": "manual",
    "webhook-trigger": "webhook",
    "schedule-trigger": "schedule",
    "event-trigger": "event",
}

DEFAULT_RETRY_DELAY = 1.0
DEFAULT_MAX_RETRY_DELAY = 60.0

# Client polling cadence (seconds)
DEFAULT_RUNNING_POLL_INTERVAL = 1.0
DEFAULT_WAITING_POLL_INTERVAL = 2.0
DEFAULT_MAX_POLL_ATTEMPTS = 300

CANCELLED_STEP_ERROR = "Execution cancelled"
INTERRUPTED_STEP_ERROR = "Step interrupted before its result was recorded"

DEFAULT_AGENT_BASE_URL = "https://api.openai.com/v1"
DEFAULT_AGENT_TIMEOUT = 120.0
