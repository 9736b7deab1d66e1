"""过期清理任务

删除已过期的上传（对象、衍生文件和数据库记录），并回收长期未完成的分片上传会话。
单条记录失败不会影响同一批次中的其他记录。
"""

import asyncio
from datetime import timedelta
from typing import Optional

from loguru import logger
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import Settings, settings
from app.features.storage.service import R2ObjectStore, object_store

from .models import SessionSweepResult, SweepResult, Upload, as_utc, utcnow
from .repository import UploadRepository
from .session_state import CorruptSessionError, MultipartSessionStore


# 与上传文件一起删除的衍生文件前缀
DERIVED_PREFIXES = ("temp", "thumbnail")


class ExpirySweeper:
    """过期清理器"""

    def __init__(
        self,
        db: AsyncSession,
        store: Optional[R2ObjectStore] = None,
        config: Optional[Settings] = None,
        sessions: Optional[MultipartSessionStore] = None,
    ) -> None:
        self.config = config or settings
        self.store = store or object_store
        self.repository = UploadRepository(db)
        self.sessions = sessions or MultipartSessionStore(self.store)

    async def _delete_objects(self, record: Upload) -> None:
        """删除记录对应的对象和衍生文件，对象不存在不视为错误"""
        await self.store.delete(record.object_key)
        for prefix in DERIVED_PREFIXES:
            for key in await self.store.list(f"{record.slug}/{prefix}/"):
                await self.store.delete(key)

    async def sweep_expired(self) -> SweepResult:
        """清理所有已过期的上传

        先并发删除对象存储中的文件，再逐条删除数据库记录；
        对象删除失败的记录保留在数据库中，下次清理时重试
        """
        expired = await self.repository.list_expired(utcnow())
        result = SweepResult(total=len(expired))
        if not expired:
            logger.info("没有需要清理的过期文件")
            return result

        outcomes = await asyncio.gather(
            *(self._delete_objects(record) for record in expired),
            return_exceptions=True,
        )

        for record, outcome in zip(expired, outcomes):
            if isinstance(outcome, BaseException):
                logger.error(f"删除过期文件失败 {record.slug}: {outcome}")
                result.failed += 1
                continue
            try:
                await self.repository.delete(record)
            except Exception as e:
                await self.repository.db.rollback()
                logger.error(f"删除过期记录失败 {record.slug}: {e}")
                result.failed += 1
                continue
            result.succeeded += 1

        logger.info(
            f"过期文件清理完成: 共 {result.total}，成功 {result.succeeded}，失败 {result.failed}"
        )
        return result

    async def sweep_stale_sessions(self) -> SessionSweepResult:
        """回收超过TTL仍未完成或取消的分片上传会话"""
        cutoff = as_utc(utcnow()) - timedelta(seconds=self.config.multipart_session_ttl_seconds)
        upload_ids = await self.sessions.list_upload_ids()
        result = SessionSweepResult()

        for upload_id in upload_ids:
            try:
                try:
                    session = await self.sessions.load(upload_id)
                except CorruptSessionError as e:
                    # 内容无法解析的会话同样视为过期
                    logger.warning(f"{e}: {e.__cause__}")
                    await self.sessions.delete(upload_id)
                    result.total += 1
                    result.reclaimed += 1
                    continue
                if session is None:
                    # 列举之后已被完成或取消
                    continue
                if as_utc(session.created_at) >= cutoff:
                    continue

                result.total += 1
                try:
                    await self.store.resume_multipart_upload(
                        session.key, session.multipart_upload_id
                    ).abort()
                except Exception as e:
                    logger.warning(f"放弃过期分片上传失败（忽略） {session.key}: {e}")
                await self.sessions.delete(upload_id)
                result.reclaimed += 1
            except Exception as e:
                logger.error(f"回收分片会话失败 {upload_id}: {e}")
                result.failed += 1

        logger.info(
            f"分片会话回收完成: 共 {result.total}，回收 {result.reclaimed}，失败 {result.failed}"
        )
        return result
