"""上传参数校验

纯函数，不做任何I/O，在请求路径上于所有远端调用之前同步执行
"""

import re
from typing import Optional

from app.shared.exceptions import ValidationError

from .models import ExpiresOption


MIN_FILE_SIZE = 1
MAX_FILENAME_LENGTH = 255

ALLOWED_MIME_TYPES = frozenset({
    # 图片
    "image/jpeg",
    "image/jpg",
    "image/png",
    "image/gif",
    "image/webp",
    "image/svg+xml",
    "image/bmp",
    "image/tiff",
    "image/ico",
    "image/x-icon",
    # 视频
    "video/mp4",
    "video/mpeg",
    "video/ogg",
    "video/webm",
    "video/quicktime",
    "video/x-msvideo",
    "video/x-matroska",
    # 音频
    "audio/mpeg",
    "audio/mp3",
    "audio/wav",
    "audio/ogg",
    "audio/webm",
    "audio/aac",
    "audio/flac",
    "audio/m4a",
    # 文档
    "application/pdf",
    "application/msword",
    "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
    "application/vnd.ms-excel",
    "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
    "application/vnd.ms-powerpoint",
    "application/vnd.openxmlformats-officedocument.presentationml.presentation",
    "text/plain",
    "text/csv",
    "text/html",
    "text/css",
    "text/javascript",
    "application/json",
    "application/xml",
    "text/xml",
    # 压缩包
    "application/zip",
    "application/x-zip-compressed",
    "application/x-rar-compressed",
    "application/x-7z-compressed",
    "application/gzip",
    "application/x-tar",
    # 其他
    "application/octet-stream",
})

# 开启通配后允许的 {type}/* 主类型
ALLOWED_WILDCARD_TYPES = frozenset({"image", "video", "audio"})

# 危险类型，优先级高于白名单和通配
DANGEROUS_MIME_TYPES = frozenset({
    "application/x-msdownload",
    "application/x-msdos-program",
    "application/x-executable",
    "application/x-sh",
    "application/x-bat",
    "application/x-cmd",
    "text/x-sh",
    "text/x-shellscript",
    "application/x-apple-diskimage",
    "application/vnd.microsoft.portable-executable",
})

_UNSAFE_FILENAME_CHARS = re.compile(r"[^A-Za-z0-9._-]")


def is_valid_mime_type(mime_type: Optional[str], allow_wildcards: bool = False) -> bool:
    """检查MIME类型是否允许上传

    未知类型一律拒绝；危险类型即使出现在白名单中也拒绝
    """
    if not mime_type:
        return False

    normalized = mime_type.strip().lower()
    if normalized in DANGEROUS_MIME_TYPES:
        return False
    if normalized in ALLOWED_MIME_TYPES:
        return True

    if allow_wildcards:
        major, _, minor = normalized.partition("/")
        return bool(minor) and major in ALLOWED_WILDCARD_TYPES
    return False


def validate_file_size(size: int, max_size: int) -> bool:
    return 0 < size <= max_size


def sanitize_filename(filename: str) -> str:
    """把白名单之外的字符替换为下划线，并截断到255个字符"""
    return _UNSAFE_FILENAME_CHARS.sub("_", filename)[:MAX_FILENAME_LENGTH]


def parse_expires_option(value: Optional[str]) -> ExpiresOption:
    """解析有效期选项（1h|1d|7d|30d）"""
    try:
        return ExpiresOption(value)
    except ValueError:
        raise ValidationError(f"无效的有效期选项: {value}")


def ensure_valid_upload(
    filesize: int,
    mime_type: str,
    max_size: int,
    allow_wildcards: bool = False,
) -> None:
    """按大小、MIME类型的顺序校验上传参数

    Raises:
        ValidationError: 任一条件不满足时，附带具体原因
    """
    if filesize > max_size:
        raise ValidationError(f"文件过大，最大允许 {max_size // 1024 // 1024}MB")
    if filesize < MIN_FILE_SIZE or not validate_file_size(filesize, max_size):
        raise ValidationError("文件过小")
    if not is_valid_mime_type(mime_type, allow_wildcards):
        raise ValidationError(f"不允许的文件类型: {mime_type}")
