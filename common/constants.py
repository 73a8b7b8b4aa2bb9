"""Project-wide constants (chunk sizes, rate caps, timing defaults)."""

KIB: int = 1024
MIB: int = 1024 * KIB
GIB: int = 1024 * MIB

DIRECT_CHUNK_SIZE: int = 16 * KIB  # data channel message size
RELAY_CHUNK_SIZE: int = 1 * MIB  # one HTTP request per relay chunk

DIRECT_BATCH_SIZE: int = 16
DIRECT_BATCH_DELAY_SECONDS: float = 0.005

MERGE_GROUP_SIZE: int = 200

DEFAULT_RATE_LIMIT_BYTES: int = 2 * MIB  # per second, per direction
RATE_WINDOW_SECONDS: float = 5.0
RATE_HORIZON_SECONDS: float = 1.0
MAX_RATE_WAIT_MS: int = 1000

DEFAULT_STORAGE_LIMIT_BYTES: int = 5 * GIB

DEFAULT_MAX_CONCURRENT: int = 3
MAX_FINISHED_TRANSFERS: int = 100

HEARTBEAT_INTERVAL_SECONDS: float = 5.0
HEARTBEAT_REPLY_TIMEOUT_SECONDS: float = 5.0
HEARTBEAT_MAX_MISSED: int = 1

RECOVERY_ATTEMPTS: int = 3
RECOVERY_DELAY_SECONDS: float = 3.0

CHUNK_WAIT_MAX_ATTEMPTS: int = 15
CHUNK_WAIT_INITIAL_DELAY_SECONDS: float = 0.2
CHUNK_WAIT_BACKOFF: float = 1.2
CHUNK_WAIT_MAX_DELAY_SECONDS: float = 2.0

SESSION_ID_PREFIX: str = "session_"

RELAY_SENDER_PROGRESS_CAP: int = 90

RELAY_STATUS_ONLINE: str = "online"
