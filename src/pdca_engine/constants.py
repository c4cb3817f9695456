STATE_DIR_NAME = ".pdca"
CONFIG_FILE = "config.yaml"
SNAPSHOT_FILE = "graph_snapshot.yaml"
SNAPSHOT_LOCK_FILE = "graph_snapshot.lock"
SNAPSHOT_FORMAT_VERSION = 1
WINDOWS_LOCK_BYTES = 4096

DEFAULT_RETRY_BUDGET = 3
DEFAULT_MAX_WORKERS = 4
DEFAULT_TASK_TIMEOUT = None  # seconds; None waits forever
DEFAULT_APPROVAL_TIMEOUT = 300

INTERRUPTED_SUMMARY = "Interrupted by engine restart"
TIMEOUT_SUMMARY = "Timed out after {timeout}s"
