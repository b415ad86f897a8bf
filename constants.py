import os

REDIS_HOST = os.getenv("REDIS_HOST", "localhost")
REDIS_PORT = int(os.getenv("REDIS_PORT", 6379))
REDIS_PASSWORD = os.getenv("REDIS_PASSWORD", None)
REDIS_DB = int(os.getenv("REDIS_DB", 0))

# Bounds every registry round trip; a timeout surfaces as RegistryUnavailable
REGISTRY_TIMEOUT_SECONDS = float(os.getenv("REGISTRY_TIMEOUT_SECONDS", 2.0))

# Room used when a connect or send event does not name one
DEFAULT_ROOM_ID = os.getenv("DEFAULT_ROOM_ID", "lobby")
CONNECTION_TTL_SECONDS = int(os.getenv("CONNECTION_TTL_SECONDS", 24 * 60 * 60))

# "local" pushes over this worker's own websockets, "gateway" posts to a connection-management endpoint
PUSH_TRANSPORT = os.getenv("PUSH_TRANSPORT", "local")
PUSH_ENDPOINT = os.getenv("PUSH_ENDPOINT", "")

DELIVERY_TIMEOUT_SECONDS = float(os.getenv("DELIVERY_TIMEOUT_SECONDS", 5.0))
BROADCAST_DEADLINE_SECONDS = float(os.getenv("BROADCAST_DEADLINE_SECONDS", 25.0))
MAX_CONCURRENT_DELIVERIES = int(os.getenv("MAX_CONCURRENT_DELIVERIES", 50))
