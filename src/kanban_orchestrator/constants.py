STATE_DIR_NAME = ".kanban"
SCHEMA_VERSION = 1

TASKS_FILE = "tasks.yaml"
COLUMNS_FILE = "columns.yaml"
HOOK_RUNS_FILE = "hook_runs.yaml"
EVENTS_FILE = "events.jsonl"
CONFIG_FILE = "config.yaml"

WINDOWS_LOCK_BYTES = 4096

# Position keys are decimals spaced by POSITION_GAP; midpoints are rounded to
# POSITION_SCALE decimal places before the exhaustion check.
POSITION_GAP = 1000
POSITION_INITIAL = 1000
POSITION_SCALE = 10

DEFAULT_SCRIPT_TIMEOUT_SECONDS = 600
DEFAULT_MAX_ERROR_OUTPUT = 200
DEFAULT_PIPELINE_WORKERS = 4

DEFAULT_EXECUTOR_TYPE = "claude_code"

ACTIVE_AGENT_STATUSES = {"thinking", "executing", "waiting_for_user"}

EXECUTOR_STATUSES = {"thinking", "executing", "waiting_for_user", "idle", "error"}

EVENT_CHANNELS = {"tasks", "hooks", "queue", "system"}
