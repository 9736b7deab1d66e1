"""上传功能路由模块

提供开始上传、分片上传、完成、取消、直传和记录查询的API端点，
以及供定时任务调用的过期清理端点
"""

import secrets
from typing import Optional

from fastapi import APIRouter, Depends, Header, Query, Request
from loguru import logger
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.database import get_db
from app.features.storage.streams import LengthMismatchError, bounded_stream
from app.shared.exceptions import InternalServerError, UnauthorizedError, ValidationError
from app.shared.schemas import APIResponse

from .models import (
    CancelUploadRequest,
    CancelUploadResponse,
    ChunkUploadResponse,
    CleanupReport,
    CompleteUploadRequest,
    StartUploadRequest,
    StartUploadResponse,
    UploadInfo,
    UploadResponse,
)
from .service import UploadCoordinator
from .sweeper import ExpirySweeper


router = APIRouter()
cron_router = APIRouter()


def get_upload_coordinator(db: AsyncSession = Depends(get_db)) -> UploadCoordinator:
    return UploadCoordinator(db)


def get_expiry_sweeper(db: AsyncSession = Depends(get_db)) -> ExpirySweeper:
    return ExpirySweeper(db)


def _content_length(request: Request) -> Optional[int]:
    raw = request.headers.get("content-length")
    if raw is None:
        return None
    try:
        return int(raw)
    except ValueError:
        raise ValidationError(f"Content-Length无效: {raw}")


async def _read_direct_body(request: Request, filesize: Optional[int]) -> bytes:
    """按声明的文件大小读取直传请求体

    分块传输的请求没有Content-Length，读取时同样不会超过 filesize；
    filesize 缺失或超出直传上限时不读取请求体，由协调器返回对应的校验错误
    """
    if filesize is None or filesize < 0 or filesize > settings.direct_upload_limit:
        return b""
    try:
        return b"".join([chunk async for chunk in bounded_stream(request.stream(), filesize)])
    except LengthMismatchError as e:
        raise ValidationError(str(e))


@router.post(
    "/start",
    response_model=APIResponse[StartUploadResponse],
    summary="开始上传",
    description="校验文件信息并分配短链接标识；大文件会同时创建分片上传会话"
)
async def start_upload(
    request: StartUploadRequest,
    coordinator: UploadCoordinator = Depends(get_upload_coordinator)
) -> APIResponse[StartUploadResponse]:
    logger.info(f"请求开始上传: {request.filename} ({request.filesize} bytes)")

    response = await coordinator.start(request)

    return APIResponse(
        success=True,
        data=response,
        message="上传已开始",
        code=200
    )


@router.post(
    "/chunk",
    response_model=APIResponse[ChunkUploadResponse],
    summary="上传分片",
    description="请求体为分片原始字节，必须携带Content-Length"
)
async def upload_chunk(
    request: Request,
    upload_id: Optional[str] = Query(default=None, alias="uploadId"),
    chunk_index: Optional[int] = Query(default=None, alias="chunkIndex"),
    total_chunks: Optional[int] = Query(default=None, alias="totalChunks"),
    coordinator: UploadCoordinator = Depends(get_upload_coordinator)
) -> APIResponse[ChunkUploadResponse]:
    """上传分片

    请求体不会被完整读入内存，而是边接收边转发给对象存储
    """
    response = await coordinator.upload_chunk(
        upload_id,
        chunk_index,
        total_chunks,
        request.stream(),
        _content_length(request),
    )

    return APIResponse(
        success=True,
        data=response,
        message="分片上传成功",
        code=200
    )


@router.post(
    "/complete",
    response_model=APIResponse[UploadResponse],
    summary="完成分片上传",
    description="提交全部分片的序号和etag，合并文件并创建上传记录"
)
async def complete_upload(
    request: CompleteUploadRequest,
    coordinator: UploadCoordinator = Depends(get_upload_coordinator)
) -> APIResponse[UploadResponse]:
    response = await coordinator.complete(request)

    return APIResponse(
        success=True,
        data=response,
        message="上传完成",
        code=200
    )


@router.post(
    "/cancel",
    response_model=APIResponse[CancelUploadResponse],
    summary="取消分片上传",
    description="放弃远端分片上传并删除会话，重复调用不会报错"
)
async def cancel_upload(
    request: CancelUploadRequest,
    coordinator: UploadCoordinator = Depends(get_upload_coordinator)
) -> APIResponse[CancelUploadResponse]:
    response = await coordinator.cancel(request)

    return APIResponse(
        success=True,
        data=response,
        message="上传已取消",
        code=200
    )


@router.post(
    "/direct",
    response_model=APIResponse[UploadResponse],
    summary="小文件直传",
    description="请求体为完整文件内容，文件信息通过查询参数传递"
)
async def direct_upload(
    request: Request,
    filename: Optional[str] = Query(default=None),
    filesize: Optional[int] = Query(default=None),
    mime_type: Optional[str] = Query(default=None, alias="mimeType"),
    domain: Optional[str] = Query(default=None),
    expires: Optional[str] = Query(default=None),
    coordinator: UploadCoordinator = Depends(get_upload_coordinator)
) -> APIResponse[UploadResponse]:
    declared = _content_length(request)
    if declared is not None and declared > settings.direct_upload_limit:
        raise ValidationError("文件超过直传上限，请使用分片上传")

    body = await _read_direct_body(request, filesize)
    response = await coordinator.direct_upload(
        filename, filesize, mime_type, domain, expires, body
    )

    return APIResponse(
        success=True,
        data=response,
        message="上传完成",
        code=200
    )


@router.get(
    "/{slug}",
    response_model=APIResponse[UploadInfo],
    summary="获取上传信息",
    description="根据短链接标识获取文件信息，过期或域名不匹配时返回404"
)
async def get_upload_info(
    slug: str,
    host: Optional[str] = Header(default=None),
    coordinator: UploadCoordinator = Depends(get_upload_coordinator)
) -> APIResponse[UploadInfo]:
    info = await coordinator.get_upload_info(slug, host)

    return APIResponse(
        success=True,
        data=info,
        message="获取上传信息成功",
        code=200
    )


@cron_router.get(
    "/clear",
    response_model=APIResponse[CleanupReport],
    summary="清理过期文件",
    description="删除已过期的上传并回收超时的分片会话，需要Bearer密钥"
)
async def clear_expired(
    authorization: Optional[str] = Header(default=None),
    sweeper: ExpirySweeper = Depends(get_expiry_sweeper)
) -> APIResponse[CleanupReport]:
    if not settings.cron_secret:
        logger.error("CRON_SECRET未配置，拒绝执行清理任务")
        raise InternalServerError("清理任务未配置")

    expected = f"Bearer {settings.cron_secret}"
    if not authorization or not secrets.compare_digest(authorization, expected):
        raise UnauthorizedError()

    uploads = await sweeper.sweep_expired()
    sessions = await sweeper.sweep_stale_sessions()

    return APIResponse(
        success=True,
        data=CleanupReport(uploads=uploads, sessions=sessions),
        message="清理完成",
        code=200
    )
