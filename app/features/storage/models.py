"""存储功能数据模型

定义对象存储适配器对外暴露的数据结构
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Iterator, Optional

from pydantic import Field

from app.shared.schemas import CamelModel


class UploadedPart(CamelModel):
    """已上传的分片

    etag 由对象存储返回，完成上传时必须原样提交
    """

    part_number: int = Field(description="分片序号，从1开始")
    etag: str = Field(description="对象存储返回的分片校验标识")


@dataclass
class ObjectStream:
    """对象的流式读取结果

    body 为同步迭代器，交给 StreamingResponse 在线程池中消费
    """

    body: Iterator[bytes]
    content_type: str
    content_length: Optional[int] = None


class DownloadTokenRequest(CamelModel):
    upload_id: Optional[str] = None


class DownloadTokenResponse(CamelModel):
    """下载令牌

    令牌只能使用一次，过期后失效
    """

    token: str
    expires_at: datetime
