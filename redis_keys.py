REDIS_META_KEY = "room:meta:{slug}" # room code - room record hash
REDIS_MAILBOX_KEY = "room:mailbox:{slug}:{seat}" # room code + target seat - list of pending messages
REDIS_ROM_KEY = "roms:{name}" # rom name - base64 payload

# **`room:meta:{code}` hash fields**
# - `code` = room code
# - `host_token` = opaque id of seat 1
# - `seats` = json list of occupied seats
# - `seat_tokens` = json object, seat -> peer token
# - `created_at` = ISO timestamp

# **TTL**
# - `room:meta:{code}` expires after ROOM_TTL_SECONDS without activity.
# - `room:mailbox:{code}:{seat}` expires after MAILBOX_TTL_SECONDS, independently of the room.
