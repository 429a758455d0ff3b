import os

REDIS_HOST = os.getenv("REDIS_HOST", "localhost")
REDIS_PORT = int(os.getenv("REDIS_PORT", 6379))
REDIS_PASSWORD = os.getenv("REDIS_PASSWORD", None)
REDIS_DB = int(os.getenv("REDIS_DB", 0))

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
LOG_FILE = os.getenv("LOG_FILE", None)

SERVER_HOST = os.getenv("HOST", "0.0.0.0")
SERVER_PORT = int(os.getenv("PORT", 8000))
SERVER_RELOAD = os.getenv("RELOAD", "false").lower() == "true"

# Pause before the expiry listener resubscribes after losing its connection
EXPIRY_RETRY_DELAY_SECONDS = float(os.getenv("EXPIRY_RETRY_DELAY_SECONDS", 5))

# Chat log retention
CHAT_MAX_MESSAGES = int(os.getenv("CHAT_MAX_MESSAGES", 1000))
CHAT_TTL_SECONDS = int(os.getenv("CHAT_TTL_SECONDS", 7200))

# Sliding window limits: (max actions, window in milliseconds)
CHAT_RATE_LIMIT_MAX = int(os.getenv("CHAT_RATE_LIMIT_MAX", 5))
CHAT_RATE_LIMIT_WINDOW_MS = int(os.getenv("CHAT_RATE_LIMIT_WINDOW_MS", 3000))
SYNC_RATE_LIMIT_MAX = int(os.getenv("SYNC_RATE_LIMIT_MAX", 10))
SYNC_RATE_LIMIT_WINDOW_MS = int(os.getenv("SYNC_RATE_LIMIT_WINDOW_MS", 30000))

# "open" admits actions when the store errors during a check, "closed" blocks them
CHAT_RATE_LIMIT_POLICY = os.getenv("CHAT_RATE_LIMIT_POLICY", "open")

# Extra lifetime given to poll counters, voter sets and answerer sets beyond the time limit
POLL_COUNTER_TTL_MARGIN_SECONDS = int(os.getenv("POLL_COUNTER_TTL_MARGIN_SECONDS", 7200))

# Upper bounds accepted by the request schemas
POLL_TITLE_MAX_LENGTH = 50
POLL_OPTION_MAX_LENGTH = 50
POLL_MIN_OPTIONS = 2
POLL_MAX_OPTIONS = 5
TIME_LIMIT_MAX_SECONDS = 600
ANSWER_MAX_LENGTH = 300
CHAT_TEXT_MAX_LENGTH = 60
