"""Configuration settings for the node manager."""

# CRD Settings
KSMTUNED_GROUP = "node.harvesterhci.io"
KSMTUNED_VERSION = "v1beta1"
KSMTUNED_PLURAL = "ksmtuneds"
KSMTUNED_KIND = "Ksmtuned"

# Watched kinds
NODE_KIND = "Node"

# Watch settings
WATCH_TIMEOUT_SECONDS = 300
WATCH_RETRY_SECONDS = 5

# Work queue retry policy
MAX_RETRIES = 15
RETRY_BASE_DELAY_SECONDS = 0.005
RETRY_MAX_DELAY_SECONDS = 60

# Option defaults
DEFAULT_PROFILER_ADDRESS = "0.0.0.0:6060"
DEFAULT_METRICS_ADDRESS = "0.0.0.0:9090"
DEFAULT_THREADINESS = 2
DEFAULT_SHUTDOWN_TIMEOUT_SECONDS = 30
DEFAULT_KSM_PATH = "/sys/kernel/mm/ksm"
DEFAULT_MEMINFO_PATH = "/proc/meminfo"

# Ksmtuned daemon
MONITOR_INTERVAL_SECONDS = 60
METRICS_INTERVAL_SECONDS = 30
