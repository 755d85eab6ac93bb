from redis.asyncio import Redis
from .config import settings


redis_client = Redis.from_url(settings.REDIS_URL, decode_responses=True)


async def ping(client: Redis | None = None) -> bool:
    try:
        return await (client or redis_client).ping()
    except Exception:
        return False
