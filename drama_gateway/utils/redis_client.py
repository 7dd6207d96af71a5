import redis
from loguru import logger
from drama_gateway.utils.config_loader import config_loader


class RedisClient:
    """Optional task snapshot cache. Every call degrades to a no-op when Redis is off."""

    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super(RedisClient, cls).__new__(cls)
            cls._instance.client = None
            cls._instance.enabled = False
            cls._instance._init_client()
        return cls._instance

    def _init_client(self):
        conf = config_loader.get("redis", {})
        self.enabled = conf.get("enable", False)

        if self.enabled:
            try:
                self.client = redis.Redis(
                    host=conf.get("host", "localhost"),
                    port=conf.get("port", 6379),
                    db=conf.get("db", 0),
                    password=conf.get("password") or None,
                    decode_responses=True,
                    socket_timeout=1
                )
                self.client.ping()
                logger.info("Redis connected successfully")
            except redis.RedisError as e:
                logger.error(f"Failed to connect to Redis: {e}")
                self.enabled = False
                self.client = None

    def hset(self, name, mapping=None, **kwargs):
        if not self.enabled or not self.client:
            return False
        try:
            return self.client.hset(name, mapping=mapping, **kwargs)
        except redis.RedisError as e:
            logger.warning(f"Redis hset failed: {e}")
            return False

    def hgetall(self, name):
        if not self.enabled or not self.client:
            return {}
        try:
            return self.client.hgetall(name)
        except redis.RedisError as e:
            logger.warning(f"Redis hgetall failed: {e}")
            return {}

    def expire(self, name, time):
        if not self.enabled or not self.client:
            return False
        try:
            return self.client.expire(name, time)
        except redis.RedisError as e:
            logger.warning(f"Redis expire failed: {e}")
            return False


redis_client = RedisClient()
