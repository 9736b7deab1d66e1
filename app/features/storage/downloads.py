"""下载服务

分两步下载：先用上传记录ID换取一次性令牌，再凭令牌读取文件字节流；
也支持按短链接标识直接下载
"""

from datetime import datetime, timedelta
from typing import Any, Optional

from loguru import logger
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import Settings, settings
from app.features.uploads.models import as_utc, utcnow
from app.features.uploads.repository import UploadRepository
from app.shared.exceptions import (
    ExpiredError,
    InternalServerError,
    NotFoundError,
    ValidationError,
)

from .models import DownloadTokenResponse, ObjectStream
from .service import R2ObjectStore, object_store
from .tokens import DownloadTokenStore, generate_download_token


def _is_expired(expires_at: datetime) -> bool:
    return as_utc(expires_at) <= as_utc(utcnow())


class DownloadService:
    """下载服务类"""

    def __init__(
        self,
        db: AsyncSession,
        store: Optional[R2ObjectStore] = None,
        tokens: Optional[DownloadTokenStore] = None,
        config: Optional[Settings] = None,
    ) -> None:
        self.repository = UploadRepository(db)
        self.store = store or object_store
        self.tokens = tokens or DownloadTokenStore()
        self.config = config or settings

    async def issue_token(self, upload_id: Optional[str]) -> DownloadTokenResponse:
        """为上传记录签发一次性下载令牌

        Raises:
            ValidationError: 缺少uploadId
            NotFoundError: 记录不存在
            ExpiredError: 记录已过期
            InternalServerError: 令牌存储不可用
        """
        if not upload_id:
            raise ValidationError("缺少必填字段: uploadId")

        record = await self.repository.get_by_id(upload_id)
        if record is None:
            raise NotFoundError("文件不存在")
        if _is_expired(record.expires_at):
            raise ExpiredError()

        ttl = self.config.download_token_ttl_seconds
        token = generate_download_token()
        stored = await self.tokens.put(token, {
            "id": record.id,
            "key": record.object_key,
            "filename": record.filename,
            "mimeType": record.mime_type,
            "expiresAt": as_utc(record.expires_at),
        }, ttl)
        if not stored:
            raise InternalServerError("下载令牌服务不可用")

        logger.info(f"下载令牌已签发: {record.slug}")
        return DownloadTokenResponse(
            token=token,
            expires_at=as_utc(utcnow()) + timedelta(seconds=ttl),
        )

    async def open_by_token(self, token: Optional[str]) -> tuple[str, ObjectStream]:
        """兑换下载令牌，返回 (文件名, 对象流)；令牌兑换后立即失效"""
        if not token:
            raise ValidationError("缺少下载令牌")

        record = await self.tokens.take_once(token)
        if record is None:
            raise NotFoundError("下载令牌无效或已使用")
        if _is_expired(_parse_datetime(record.get("expiresAt"))):
            raise ExpiredError()

        return record["filename"], await self._open(record["key"])

    async def open_by_slug(self, slug: str) -> tuple[str, ObjectStream]:
        record = await self.repository.get_by_slug(slug)
        if record is None:
            raise NotFoundError("文件不存在")
        if _is_expired(record.expires_at):
            raise ExpiredError()

        return record.filename, await self._open(record.object_key)

    async def _open(self, key: str) -> ObjectStream:
        stream = await self.store.open_stream(key)
        if stream is None:
            logger.warning(f"记录存在但对象缺失: {key}")
            raise NotFoundError("文件不存在")
        return stream


def _parse_datetime(value: Any) -> datetime:
    """令牌记录经过JSON序列化，时间以ISO字符串保存"""
    if isinstance(value, datetime):
        return value
    if not value:
        raise NotFoundError("下载令牌无效或已使用")
    return datetime.fromisoformat(value)

