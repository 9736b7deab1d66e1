"""下载功能路由模块

提供下载令牌签发、凭令牌下载和按短链接标识下载的API端点
"""

from typing import Optional

from fastapi import APIRouter, Depends, Header
from fastapi.responses import StreamingResponse
from loguru import logger
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.database import get_db
from app.shared.schemas import APIResponse

from .downloads import DownloadService
from .models import DownloadTokenRequest, DownloadTokenResponse, ObjectStream


router = APIRouter()


def get_download_service(db: AsyncSession = Depends(get_db)) -> DownloadService:
    return DownloadService(db)


def _attachment(filename: str, stream: ObjectStream) -> StreamingResponse:
    """把对象流包装为附件下载响应"""
    headers = {"Content-Disposition": f'attachment; filename="{filename}"'}
    if stream.content_length is not None:
        headers["Content-Length"] = str(stream.content_length)
    return StreamingResponse(
        stream.body,
        media_type=stream.content_type,
        headers=headers,
    )


@router.post(
    "/token",
    response_model=APIResponse[DownloadTokenResponse],
    summary="获取下载令牌",
    description="根据上传记录ID签发一次性下载令牌"
)
async def issue_download_token(
    request: DownloadTokenRequest,
    service: DownloadService = Depends(get_download_service)
) -> APIResponse[DownloadTokenResponse]:
    response = await service.issue_token(request.upload_id)

    return APIResponse(
        success=True,
        data=response,
        message="下载令牌签发成功",
        code=200
    )


@router.get(
    "",
    summary="凭令牌下载文件",
    description="请求头 x-download-token 携带令牌，令牌使用一次后失效"
)
async def download_with_token(
    x_download_token: Optional[str] = Header(default=None),
    service: DownloadService = Depends(get_download_service)
) -> StreamingResponse:
    filename, stream = await service.open_by_token(x_download_token)
    logger.info(f"开始下载: {filename}")
    return _attachment(filename, stream)


@router.get(
    "/{slug}",
    summary="按短链接标识下载文件",
    description="文件不存在返回404，已过期返回410"
)
async def download_by_slug(
    slug: str,
    service: DownloadService = Depends(get_download_service)
) -> StreamingResponse:
    filename, stream = await service.open_by_slug(slug)
    logger.info(f"开始下载: {slug}/{filename}")
    return _attachment(filename, stream)
