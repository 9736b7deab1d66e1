"""短链接标识和上传会话ID生成"""

import secrets
import string
import uuid


# URL安全字符集，与 nanoid 默认字母表一致
SLUG_ALPHABET = string.ascii_letters + string.digits + "_-"


def generate_slug(length: int = 6) -> str:
    """生成短链接标识

    长度较短，不保证唯一，由调用方查询数据库后重试
    """
    return "".join(secrets.choice(SLUG_ALPHABET) for _ in range(length))


def generate_upload_id() -> str:
    """生成分片上传会话ID（UUID4，碰撞概率可忽略，不做查重）"""
    return str(uuid.uuid4())
