"""上传记录数据访问层"""

from datetime import datetime
from typing import Callable, Optional

from loguru import logger
from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import select

from app.shared.exceptions import SlugExhaustedError

from .identifiers import generate_slug
from .models import Upload


class UploadRepository:
    """上传记录仓库

    封装对 uploads 表的增删查，记录创建后不提供更新操作
    """

    def __init__(self, db: AsyncSession) -> None:
        self.db = db

    async def get_by_id(self, upload_id: str) -> Optional[Upload]:
        statement = select(Upload).where(Upload.id == upload_id)
        result = await self.db.execute(statement)
        return result.scalars().first()

    async def get_by_slug(self, slug: str) -> Optional[Upload]:
        statement = select(Upload).where(Upload.slug == slug)
        result = await self.db.execute(statement)
        return result.scalars().first()

    async def slug_exists(self, slug: str) -> bool:
        statement = select(Upload.id).where(Upload.slug == slug)
        result = await self.db.execute(statement)
        return result.first() is not None

    async def create(self, record: Upload) -> Upload:
        """写入上传记录

        Args:
            record: 待写入的记录

        Returns:
            Upload: 刷新后的记录
        """
        self.db.add(record)
        try:
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise
        await self.db.refresh(record)

        logger.info(f"上传记录已创建: {record.slug} (ID: {record.id})")
        return record

    async def list_expired(self, now: datetime) -> list[Upload]:
        statement = select(Upload).where(Upload.expires_at < now)
        result = await self.db.execute(statement)
        return list(result.scalars().all())

    async def delete(self, record: Upload) -> None:
        await self.db.delete(record)
        await self.db.commit()


async def allocate_unique_slug(
    repository: UploadRepository,
    attempts: int = 10,
    length: int = 6,
    generator: Callable[[int], str] = generate_slug,
) -> str:
    """生成数据库中尚未使用的短链接标识

    最多尝试 attempts 次，每次生成新的候选值

    Raises:
        SlugExhaustedError: 所有候选值均已被占用
    """
    for attempt in range(1, attempts + 1):
        slug = generator(length)
        if not await repository.slug_exists(slug):
            return slug
        logger.warning(f"短链接标识冲突，重新生成 ({attempt}/{attempts}): {slug}")

    logger.error(f"短链接标识重试 {attempts} 次后仍然冲突")
    raise SlugExhaustedError()
