STATE_DIR_NAME = ".task_orchestrator"
TASKS_FILE = "tasks.json"
WORKFLOWS_FILE = "workflows.json"
CONFIG_FILE = "config.yaml"
LOCK_FILE = "tasks.lock"
WORKFLOWS_LOCK_FILE = "workflows.lock"
ARTIFACTS_DIR = "artifacts"
EVENTS_FILE = "task_events.jsonl"
WORKFLOW_DEFINITIONS_DIR = "workflows"

DOCUMENT_VERSION = "1.0.0"
LOCK_TIMEOUT_SECONDS = 30

DEFAULT_EXPANSION_THRESHOLD = 3
DEFAULT_SUBTASK_COUNT = 4
DEFAULT_GENERATION_TIMEOUT_SECONDS = 30.0
DEFAULT_MAX_CONCURRENCY = 4
HOURS_PER_EFFORT_POINT = 8

MAX_TITLE_LENGTH = 200
