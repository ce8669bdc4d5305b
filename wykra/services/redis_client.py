"""Redis client singleton."""
import redis.asyncio as redis

from wykra.config import settings


class RedisClient:
    """Singleton Redis client."""
    _instance = None

    @classmethod
    def get_instance(cls):
        """Get or create Redis client instance."""
        if cls._instance is None:
            cls._instance = redis.Redis(
                host=settings.redis_host,
                port=settings.redis_port,
                db=settings.redis_db,
                decode_responses=True,
            )
        return cls._instance

    @classmethod
    async def close_instance(cls):
        """Close the Redis client instance."""
        if cls._instance:
            await cls._instance.aclose()
            cls._instance = None
