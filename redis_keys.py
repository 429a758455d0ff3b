REDIS_ROOM_POLLS_KEY = "room:{room_id}:polls" # ordered list of poll ids
REDIS_ROOM_QNA_KEY = "room:{room_id}:qna" # ordered list of qna ids
REDIS_ROOM_CHAT_KEY = "room:{room_id}:chat" # zset, score = message timestamp (ms)
REDIS_RATE_LIMIT_KEY = "room:{room_id}:ratelimit:{channel}:{participant_id}" # zset window
REDIS_ROOM_CHANNEL = "room:channel:{room_id}" # pub/sub channel name

REDIS_POLL_PREFIX = "poll:"
REDIS_POLL_ACTIVE_KEY = "poll:{poll_id}:active" # activity flag with TTL
REDIS_POLL_COUNTS_KEY = "poll:{poll_id}:counts" # hash option id -> count
REDIS_POLL_VOTERS_KEY = "poll:{poll_id}:voters" # set of participant ids
REDIS_POLL_CHOICES_KEY = "poll:{poll_id}:choices" # hash participant id -> "{option_id}:{name}"

REDIS_QNA_PREFIX = "qna:"
REDIS_QNA_ACTIVE_KEY = "qna:{qna_id}:active"
REDIS_QNA_ANSWERS_KEY = "qna:{qna_id}:answers" # list of JSON answers
REDIS_QNA_ANSWERERS_KEY = "qna:{qna_id}:answerers" # set of participant ids

REDIS_EXPIRED_CHANNEL = "__keyevent@{db}__:expired"

# **Example `poll:{id}` hash fields**
# - `id` = `{pollId}`
# - `room_id` = `{roomId}`
# - `status` = pending | active | ended
# - `options` = json string, e.g. [{"id": 0, "value": "X", "count": 0}]
# - `time_limit_seconds` = integer
# - `created_at` / `updated_at` / `started_at` / `ended_at` = ISO timestamps
