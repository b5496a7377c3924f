STATE_DIR_NAME = ".prd_pipeline"
CONFIG_FILE = "config.yaml"
CONFIG_FILE_JSON = "config.json"
INDEX_FILE = "index.json"
INDEX_LOCK_FILE = "index.lock"
ITEMS_DIR = "items"
PROMPTS_DIR = "prompts"

ITEM_FILE = "item.json"
REQUIREMENTS_DOC_FILE = "prd.json"
RESEARCH_FILE = "research.md"
PLAN_FILE = "plan.md"
PROGRESS_LOG_FILE = "progress.log"
EVENTS_FILE = "events.ndjson"
ITEM_LOCK_FILE = ".lock"

SCHEMA_VERSION = 1
WINDOWS_LOCK_BYTES = 4096

DEFAULT_BASE_BRANCH = "main"
DEFAULT_BRANCH_PREFIX = "prd/"
DEFAULT_MAX_ITERATIONS = 100
DEFAULT_TIMEOUT_SECONDS = 3600
DEFAULT_MAX_WORKERS = 1

DEFAULT_AGENT_COMMAND = "claude"
DEFAULT_AGENT_ARGS = ("--dangerously-skip-permissions", "--print")
DEFAULT_COMPLETION_SIGNAL = "<promise>COMPLETE</promise>"

# Seconds to wait after terminate() before escalating to kill().
WORKER_TERMINATE_GRACE_SECONDS = 5
WORKER_OUTPUT_TAIL_CHARS = 4000

EXIT_CODE_TIMEOUT = 124
EXIT_CODE_INTERRUPTED = 130
