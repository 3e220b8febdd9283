"""Centralized engine defaults."""

# Timeouts (milliseconds)
DEFAULT_STEP_TIMEOUT_MS = 300_000
DEFAULT_LOOP_TIMEOUT_MS = 300_000

# Verification polling
DEFAULT_POLL_TIMEOUT_MS = 10_000
DEFAULT_POLL_INTERVAL_MS = 500

# Retry policy for transient verification failures
DEFAULT_RETRY_ATTEMPTS = 3
DEFAULT_RETRY_INITIAL_DELAY_MS = 500
DEFAULT_RETRY_MAX_DELAY_MS = 5_000
DEFAULT_RETRY_BACKOFF = 2

# Loop variable name when a loop step has no ``as`` field
DEFAULT_LOOP_VARIABLE = "item"

# Namespace prefix tried when an action name is not registered as-is
ACTION_NAMESPACE = "ios"

# Declared playbook input types
INPUT_TYPES = ("string", "number", "boolean", "array", "object")

# Shipped playbook ids
BUILTIN_PLAYBOOKS = (
    "Feature-Ship-Loop",
    "Regression-Check",
    "Crash-Hunt",
    "Design-Review",
    "Performance-Check",
)

# Default simulator screen size in points (iPhone 15 Pro Max), used for
# off-screen detection
DEFAULT_SCREEN_SIZE = (430, 932)
