CONTEXT_DIR_NAME = ".ai-context"
STORE_FILE = "tasks.json"
STORE_LOCK_FILE = "tasks.lock"
MIRROR_FILE = "current-task.json"
MIRROR_LOCK_FILE = "current-task.lock"
CONFIG_FILE = "config.yaml"
PATTERNS_FILE = "patterns.yaml"
BACKUPS_DIR = "backups"
LOGS_DIR = "logs"

MAX_MIRROR_BACKUPS = 5
STORE_FILE_MODE = 0o600

# Lock retry budget shared by every store mutation
DEFAULT_LOCK_RETRIES = 30
DEFAULT_LOCK_MIN_TIMEOUT = 0.2
DEFAULT_LOCK_MAX_TIMEOUT = 3.0

DEFAULT_ARCHIVE_AFTER_DAYS = 30
DEFAULT_RATE_LIMIT_SECONDS = 60

GOAL_MIN_LENGTH = 10
GOAL_MAX_LENGTH = 500

TASK_ID_PREFIX = "task-"

# Any of these must exist before entering REVIEWING
DEFAULT_REVIEW_ARTIFACTS = ("tests", "test", "__tests__")

MIRROR_STATUS_IN_PROGRESS = "in_progress"
MIRROR_STATUS_COMPLETED = "completed"
