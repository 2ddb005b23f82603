"""Project-wide constants and defaults."""

DELTA_SIZE_THRESHOLD: float = 0.6

DEFAULT_CONFLICT_POLICY: str = "server-wins"

RETRY_BATCH_SIZE: int = 5
RETRY_MAX_RETRIES: int = 10
RETRY_INTERVAL_SECONDS: float = 30.0

DEFAULT_RATE_LIMIT_PER_MINUTE: int = 60
STRICT_RATE_LIMIT_PER_MINUTE: int = 10
SUSPICION_DURATION_SECONDS: float = 3600.0
BLOCK_DURATION_SECONDS: float = 600.0
STRICT_VIOLATIONS_BEFORE_BLOCK: int = 3
METRICS_INACTIVITY_SECONDS: float = 3600.0

MIN_INTERVAL_SAMPLES: int = 5
INTERVAL_WINDOW: int = 20
UNIFORM_INTERVAL_CV: float = 0.1
MIN_RESPONSE_SAMPLES: int = 10
RESPONSE_TIME_WINDOW: int = 50
OUTLIER_SHARE_THRESHOLD: float = 0.2

SYNC_DEBOUNCE_SECONDS: float = 2.0

MAX_WRITE_ATTEMPTS: int = 3
