"""上传功能数据模型

定义上传记录表、分片上传会话以及接口请求/响应模型
"""

import uuid
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Optional

from pydantic import ConfigDict, Field as PydanticField, field_validator
from sqlalchemy import BigInteger, Column, DateTime
from sqlmodel import Field, SQLModel

from app.features.storage.models import UploadedPart
from app.shared.schemas import CamelModel


def utcnow() -> datetime:
    """当前UTC时间（带时区）"""
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """为数据库读出的时间补上UTC时区

    SQLite 不保存时区偏移，读回的值是不带时区的UTC时间
    """
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class ExpiresOption(str, Enum):
    """文件有效期选项"""

    ONE_HOUR = "1h"
    ONE_DAY = "1d"
    SEVEN_DAYS = "7d"
    THIRTY_DAYS = "30d"

    @property
    def duration(self) -> timedelta:
        return EXPIRES_DURATIONS[self]


EXPIRES_DURATIONS: dict[ExpiresOption, timedelta] = {
    ExpiresOption.ONE_HOUR: timedelta(hours=1),
    ExpiresOption.ONE_DAY: timedelta(days=1),
    ExpiresOption.SEVEN_DAYS: timedelta(days=7),
    ExpiresOption.THIRTY_DAYS: timedelta(days=30),
}


class Upload(SQLModel, table=True):
    """上传记录表

    只有在文件字节确认写入对象存储之后才会创建；
    创建后不再修改，过期清理任务是唯一的删除方
    """

    __tablename__ = "uploads"

    id: str = Field(
        default_factory=lambda: uuid.uuid4().hex,
        primary_key=True,
        max_length=32,
        description="记录ID"
    )
    slug: str = Field(max_length=32, unique=True, index=True, description="公开短链接标识")
    filename: str = Field(max_length=255, description="清洗后的文件名")
    filesize: int = Field(sa_column=Column(BigInteger, nullable=False))
    mime_type: str = Field(max_length=255, description="文件MIME类型")
    domain: str = Field(default="", max_length=255, description="绑定的访问域名，空字符串表示不限制")
    width: Optional[int] = Field(default=None, description="图片宽度")
    height: Optional[int] = Field(default=None, description="图片高度")
    upload_at: datetime = Field(
        default_factory=utcnow,
        sa_column=Column(DateTime(timezone=True), nullable=False),
        description="上传时间"
    )
    expires_at: datetime = Field(
        sa_column=Column(DateTime(timezone=True), nullable=False, index=True),
        description="过期时间"
    )

    @property
    def object_key(self) -> str:
        return f"{self.slug}/{self.filename}"


class UploadSession(CamelModel):
    """分片上传会话

    以JSON形式保存在对象存储的 multipart-state/{uploadId} 下，创建后不可修改
    """

    upload_id: str
    key: str
    multipart_upload_id: str
    content_type: str
    created_at: datetime


class StartUploadRequest(CamelModel):
    """开始上传请求

    字段均允许缺省，由上传协调器统一返回“缺少必填字段”错误
    """

    filename: Optional[str] = None
    filesize: Optional[int] = None
    mime_type: Optional[str] = None
    domain: Optional[str] = None
    expires: Optional[str] = None


class StartUploadResponse(CamelModel):
    upload_id: str
    slug: str
    total_chunks: int
    chunk_size: int
    is_direct_upload: bool


class ChunkUploadResponse(CamelModel):
    success: bool = True
    chunk_index: int
    uploaded: int
    total: int
    uploaded_part: UploadedPart


class CompleteUploadRequest(CamelModel):
    """完成分片上传请求"""

    upload_id: Optional[str] = None
    slug: Optional[str] = None
    filename: Optional[str] = None
    filesize: Optional[int] = None
    mime_type: Optional[str] = None
    domain: Optional[str] = None
    expires: Optional[str] = None
    total_chunks: Optional[int] = None
    uploaded_parts: Optional[list[UploadedPart]] = None


class CancelUploadRequest(CamelModel):
    upload_id: Optional[str] = None


class CancelUploadResponse(CamelModel):
    success: bool = True


class UploadResponse(CamelModel):
    """上传完成后的响应"""

    id: str
    slug: str
    url: str
    expires_at: datetime
    width: Optional[int] = None
    height: Optional[int] = None


class UploadInfo(CamelModel):
    """上传记录信息"""

    model_config = ConfigDict(from_attributes=True)

    id: str
    slug: str
    filename: str
    filesize: int
    mime_type: str
    domain: str
    width: Optional[int] = None
    height: Optional[int] = None
    upload_at: datetime
    expires_at: datetime

    @field_validator("upload_at", "expires_at")
    @classmethod
    def attach_utc(cls, value: datetime) -> datetime:
        return as_utc(value)


class SweepResult(CamelModel):
    """清理任务统计"""

    total: int = PydanticField(default=0, description="待处理数量")
    succeeded: int = PydanticField(default=0, description="成功数量")
    failed: int = PydanticField(default=0, description="失败数量")


class SessionSweepResult(CamelModel):
    """过期分片会话清理统计"""

    total: int = 0
    reclaimed: int = 0
    failed: int = 0


class CleanupReport(CamelModel):
    """定时清理接口响应"""

    uploads: SweepResult
    sessions: SessionSweepResult
