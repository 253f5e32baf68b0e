import redis
from config import settings

# Connections are opened lazily on first command
redis_client = redis.Redis.from_url(
    settings.REDIS_URL,
    decode_responses=True,
)
