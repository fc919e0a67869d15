"""Default values shared across stepwright."""

DEFAULT_MAX_PARALLELISM = 3
DEFAULT_FAIL_FAST = True
DEFAULT_MAX_ATTEMPTS = 1
DEFAULT_BACKOFF_MS = 1000
DEFAULT_FLOW_VERSION = "1.0.0"

DEFAULT_LEASE_TTL_MS = 300_000
DEFAULT_LEASE_MAX_REQUEUES = 5
DEFAULT_LEASE_REQUEUE_DELAY_MS = 500
DEFAULT_SWEEP_INTERVAL_S = 30.0

DEFAULT_RUNTIME_DIR = ".stepwright"

ORCHESTRATOR_ACTOR = "orchestrator"
EXECUTOR_ACTOR = "executor"
RECOVERY_ACTOR = "recovery"
