"""Redis连接

只保存短期数据（一次性下载令牌），值统一序列化为JSON。
Redis不可用时操作返回False/None并记录日志，由调用方决定如何处理。
"""

import json
from datetime import datetime
from typing import Any, Optional

import redis.asyncio as redis
from loguru import logger

from .config import settings


def _encode_default(obj: Any) -> str:
    if isinstance(obj, datetime):
        return obj.isoformat()
    raise TypeError(f"无法序列化 {type(obj).__name__} 类型的值")


class RedisManager:
    """Redis连接池和带TTL的读写"""

    def __init__(self, url: Optional[str] = None) -> None:
        self.redis_pool = None
        self.redis_client = None

        url = url or settings.async_redis_url
        if not url:
            logger.warning("未配置REDIS_URL，下载令牌将无法签发")
            return

        self.redis_pool = redis.ConnectionPool.from_url(
            url,
            max_connections=20,
            retry_on_timeout=True,
            socket_keepalive=True,
            health_check_interval=30,
            decode_responses=True,
        )
        self.redis_client = redis.Redis(connection_pool=self.redis_pool)
        logger.info("Redis连接池已创建")

    async def ping(self) -> bool:
        if not self.redis_client:
            return False
        try:
            return bool(await self.redis_client.ping())
        except Exception as e:
            logger.error(f"Redis不可达: {e}")
            return False

    async def close(self) -> None:
        if self.redis_client:
            await self.redis_client.aclose()
            logger.info("Redis连接池已关闭")

    def _serialize_value(self, value: Any) -> str:
        return json.dumps(value, default=_encode_default, ensure_ascii=False)

    def _deserialize_value(self, value: str) -> Any:
        try:
            return json.loads(value)
        except (json.JSONDecodeError, TypeError):
            return value

    async def set(self, key: str, value: Any, ttl: Optional[int] = None) -> bool:
        """写入值

        Args:
            key: 键
            value: 可JSON序列化的值（datetime 会转成ISO字符串）
            ttl: 过期秒数，None表示永不过期

        Returns:
            bool: 是否写入成功
        """
        if not self.redis_client:
            return False

        payload = self._serialize_value(value)
        try:
            if ttl:
                await self.redis_client.setex(key, ttl, payload)
            else:
                await self.redis_client.set(key, payload)
        except Exception as e:
            logger.error(f"Redis写入失败 {key}: {e}")
            return False
        return True

    async def pop(self, key: str) -> Optional[Any]:
        """原子地读取并删除键（GETDEL）

        同一个键只会被一个调用方取到，用于一次性令牌
        """
        if not self.redis_client:
            return None

        try:
            value = await self.redis_client.getdel(key)
        except Exception as e:
            logger.error(f"Redis读取删除失败 {key}: {e}")
            return None
        if value is None:
            return None
        return self._deserialize_value(value)


redis_manager = RedisManager()
