"""媒体文件检测

根据MIME类型把文件归入固定的几个类别，再按类别分派尺寸检测逻辑。
检测失败只记录日志，不影响上传记录的创建。
"""

import io
from enum import Enum
from typing import Callable, NamedTuple, Optional

from loguru import logger
from PIL import Image

from app.features.storage.service import R2ObjectStore


class FileCategory(str, Enum):
    """文件类别"""

    IMAGE = "image"
    VIDEO = "video"
    AUDIO = "audio"
    OTHER = "other"

    @classmethod
    def from_mime(cls, mime_type: Optional[str]) -> "FileCategory":
        major = (mime_type or "").split("/", 1)[0].strip().lower()
        try:
            return cls(major)
        except ValueError:
            return cls.OTHER


class Dimensions(NamedTuple):
    width: int
    height: int


def image_dimensions(data: bytes) -> Optional[Dimensions]:
    """从图片字节（可以只是文件头部）读取宽高"""
    with Image.open(io.BytesIO(data)) as image:
        width, height = image.size
    return Dimensions(width, height)


def _no_dimensions(data: bytes) -> Optional[Dimensions]:
    return None


class MediaInspector:
    """媒体信息检测器

    只读取对象的前 sniff_bytes 个字节，大文件不会被完整下载
    """

    def __init__(self, object_store: R2ObjectStore, sniff_bytes: int = 256 * 1024) -> None:
        self.object_store = object_store
        self.sniff_bytes = sniff_bytes
        # 每个类别对应一个检测函数，新增类别时必须在这里登记
        self._handlers: dict[FileCategory, Callable[[bytes], Optional[Dimensions]]] = {
            FileCategory.IMAGE: image_dimensions,
            FileCategory.VIDEO: _no_dimensions,
            FileCategory.AUDIO: _no_dimensions,
            FileCategory.OTHER: _no_dimensions,
        }

    def dimensions(self, category: FileCategory, data: bytes) -> Optional[Dimensions]:
        try:
            return self._handlers[category](data)
        except Exception as e:
            logger.warning(f"媒体尺寸检测失败 ({category.value}): {e}")
            return None

    async def inspect_bytes(self, mime_type: str, data: bytes) -> Optional[Dimensions]:
        """检测内存中的文件内容（直传路径）"""
        category = FileCategory.from_mime(mime_type)
        return self.dimensions(category, data[:self.sniff_bytes])

    async def inspect_object(self, key: str, mime_type: str) -> Optional[Dimensions]:
        """检测已写入对象存储的文件（分片路径）"""
        category = FileCategory.from_mime(mime_type)
        # 不需要读取文件内容的类别直接跳过，避免无意义的下载
        if self._handlers[category] is _no_dimensions:
            return None
        try:
            data = await self.object_store.get(key, max_bytes=self.sniff_bytes)
        except Exception as e:
            logger.warning(f"读取媒体文件头失败 {key}: {e}")
            return None
        if not data:
            return None
        return self.dimensions(category, data)
