"""分片上传会话状态

会话以小型JSON对象的形式写入对象存储的保留前缀下，
任意实例都能读取，服务进程内不保存任何会话状态
"""

from typing import Optional

from loguru import logger
from pydantic import ValidationError as PydanticValidationError

from app.features.storage.service import R2ObjectStore

from .models import UploadSession


STATE_PREFIX = "multipart-state/"


class CorruptSessionError(ValueError):
    def __init__(self, upload_id: str):
        self.upload_id = upload_id
        super().__init__(f"分片会话内容无法解析: {upload_id}")


class MultipartSessionStore:
    """基于对象存储的分片会话仓库"""

    def __init__(self, object_store: R2ObjectStore) -> None:
        self.object_store = object_store

    def _key(self, upload_id: str) -> str:
        return f"{STATE_PREFIX}{upload_id}"

    async def save(self, session: UploadSession) -> None:
        body = session.model_dump_json(by_alias=True).encode("utf-8")
        await self.object_store.put(self._key(session.upload_id), body, "application/json")
        logger.debug(f"分片会话已保存: {session.upload_id}")

    async def load(self, upload_id: str) -> Optional[UploadSession]:
        """读取会话，不存在返回None

        Raises:
            CorruptSessionError: 会话对象存在但内容无法解析
        """
        data = await self.object_store.get(self._key(upload_id))
        if data is None:
            return None
        try:
            return UploadSession.model_validate_json(data)
        except PydanticValidationError as e:
            raise CorruptSessionError(upload_id) from e

    async def get(self, upload_id: str) -> Optional[UploadSession]:
        """读取会话，不存在或内容损坏时返回None"""
        try:
            return await self.load(upload_id)
        except CorruptSessionError as e:
            logger.warning(f"{e}: {e.__cause__}")
            return None

    async def delete(self, upload_id: str) -> None:
        await self.object_store.delete(self._key(upload_id))
        logger.debug(f"分片会话已删除: {upload_id}")

    async def list_upload_ids(self) -> list[str]:
        keys = await self.object_store.list(STATE_PREFIX)
        return [key[len(STATE_PREFIX):] for key in keys if len(key) > len(STATE_PREFIX)]
