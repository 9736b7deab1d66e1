"""下载令牌存储

“申请下载”和“读取字节流”两个请求之间通过一次性令牌衔接。
令牌保存在Redis中并带有TTL，多实例部署时任意实例都能兑换。
"""

import secrets
from typing import Any, Optional

from loguru import logger

from app.core.redis import RedisManager, redis_manager


TOKEN_KEY_PREFIX = "tempdrop:download-token:"


def generate_download_token() -> str:
    """生成URL安全的随机令牌"""
    return secrets.token_urlsafe(32)


class DownloadTokenStore:
    """一次性下载令牌存储

    put 写入带TTL的记录，take_once 原子地取出并删除
    """

    def __init__(self, manager: Optional[RedisManager] = None) -> None:
        self.manager = manager or redis_manager

    def _key(self, token: str) -> str:
        return f"{TOKEN_KEY_PREFIX}{token}"

    async def put(self, token: str, record: dict[str, Any], ttl: int) -> bool:
        stored = await self.manager.set(self._key(token), record, ttl)
        if not stored:
            logger.error("下载令牌写入失败")
        return stored

    async def take_once(self, token: str) -> Optional[dict[str, Any]]:
        if not token:
            return None
        record = await self.manager.pop(self._key(token))
        if not isinstance(record, dict):
            return None
        return record
