"""Shared defaults for sagaflow."""

DEFAULT_WORKFLOW_VERSION = "1.0.0"

DEFAULT_REDIS_KEY_PREFIX = "sagaflow:workflow"
DEFAULT_STATE_TTL_SECONDS = 7 * 24 * 60 * 60

DEFAULT_RETRY_ATTEMPTS = 3
DEFAULT_RETRY_INITIAL_DELAY = 1.0
DEFAULT_RETRY_MAX_DELAY = 30.0
DEFAULT_RETRY_MULTIPLIER = 2.0

LOOP_INDEX_KEY = "_index"
LOOP_ITEM_KEY = "_item"
LOOP_ITERATION_KEY = "_iteration"
TIMEOUT_ACTION_KEY = "_timeout_action"

DEFAULT_CRON_TICK_INTERVAL = 1.0
CRON_SCHEDULE_ID_KEY = "_cron_schedule_id"
CRON_TRIGGERED_AT_KEY = "_cron_triggered_at"
