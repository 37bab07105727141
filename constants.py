import os

REDIS_HOST = os.getenv("REDIS_HOST", "localhost")
REDIS_PORT = int(os.getenv("REDIS_PORT", 6379))
REDIS_PASSWORD = os.getenv("REDIS_PASSWORD", None)

# "redis" for shared deployments, "memory" for a single process
STORE_BACKEND = os.getenv("STORE_BACKEND", "redis")

ROOM_CODE_LENGTH = 6
ROOM_CODE_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"
HOST_SEAT = 1
MAX_SEATS = 4

ROOM_TTL_SECONDS = int(os.getenv("ROOM_TTL_SECONDS", 3600))
MAILBOX_TTL_SECONDS = int(os.getenv("MAILBOX_TTL_SECONDS", 120))
MAILBOX_MAX_MESSAGES = int(os.getenv("MAILBOX_MAX_MESSAGES", 50))
WS_PUSH_INTERVAL = float(os.getenv("WS_PUSH_INTERVAL", 0.1))

# Client side
SIGNALING_URL = os.getenv("SIGNALING_URL", "http://localhost:8000")
POLL_INTERVAL = float(os.getenv("POLL_INTERVAL", 0.4))
REQUEST_TIMEOUT = float(os.getenv("REQUEST_TIMEOUT", 5.0))
PING_INTERVAL = float(os.getenv("PING_INTERVAL", 2.0))
ICE_SERVERS = [
    url.strip()
    for url in os.getenv("ICE_SERVERS", "stun:stun.l.google.com:19302,stun:stun1.l.google.com:19302").split(",")
    if url.strip()
]

RECONNECT_MAX_ATTEMPTS = 5
RECONNECT_BASE_DELAY_MS = 1000
RECONNECT_MAX_DELAY_MS = 10000
