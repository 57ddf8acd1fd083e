DEFAULT_MODEL = "gpt-4o-mini"

MODERATOR_SPEAKER = "moderator"
SYSTEM_SPEAKER = "system"

MAX_ROUNDS = 5
INITIAL_GATHER_TIMEOUT_S = 300.0
FOLLOW_UP_TIMEOUT_S = 30.0

MAX_RETRY_ATTEMPTS = 3
BASE_RETRY_DELAY_MS = 1000
MAX_RETRY_DELAY_MS = 10000

STREAM_CHUNK_DELAY_S = 0.2
