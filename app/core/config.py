"""应用配置

所有配置从环境变量或 .env 读取，上传策略参数（分片大小、直传上限等）也在这里集中定义
"""

from functools import lru_cache
from typing import Optional

from pydantic import Field, computed_field
from pydantic_settings import BaseSettings, SettingsConfigDict


MIB = 1024 * 1024

# 平台注入的同步驱动前缀 -> 异步驱动前缀
_ASYNC_DRIVER_PREFIXES = {
    "postgresql://": "postgresql+asyncpg://",
    "postgres://": "postgresql+asyncpg://",
    "sqlite://": "sqlite+aiosqlite://",
}


class Settings(BaseSettings):
    """服务配置

    字段名与环境变量同名（不区分大小写），未知变量忽略
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    # 元数据库（默认本地SQLite，生产环境使用PostgreSQL）
    database_url: Optional[str] = Field(
        default="sqlite+aiosqlite:///./tempdrop.db",
        description="上传记录数据库URL"
    )

    # 下载令牌存储
    redis_url: Optional[str] = Field(default=None, description="Redis URL")

    # 对象存储（Cloudflare R2，S3兼容接口）
    endpoint_url: Optional[str] = Field(default=None, description="R2 S3 API端点")
    aws_access_key_id: Optional[str] = Field(default=None, description="R2 Access Key ID")
    aws_secret_access_key: Optional[str] = Field(default=None, description="R2 Secret Access Key")
    region_name: str = Field(default="auto", description="R2固定使用auto区域")
    r2_bucket_name: str = Field(default="tempdrop", description="存放上传文件和分片会话的存储桶")
    r2_public_base_url: str = Field(
        default="https://files.tempdrop.dev",
        description="公开访问链接前缀，文件链接为 {前缀}/{slug}/{文件名}"
    )

    cron_secret: Optional[str] = Field(default=None, description="调用清理接口的Bearer密钥")

    # 服务
    app_name: str = Field(default="Tempdrop Backend", description="服务名称")
    app_version: str = Field(default="1.0.0", description="服务版本")
    debug: bool = Field(default=False, description="调试模式，允许迁移失败时直接建表")
    host: str = Field(default="0.0.0.0", description="监听地址")
    port: int = Field(default=8000, description="监听端口")
    log_level: str = Field(default="INFO", description="日志级别")
    log_file: str = Field(default="logs/app.log", description="文件日志路径")

    # 上传策略
    chunk_size: int = Field(default=5 * MIB, gt=0, description="分片大小（字节）")
    direct_upload_limit: int = Field(default=10 * MIB, gt=0, description="不超过该大小的文件直接上传（字节）")
    max_file_size: int = Field(default=512 * MIB, gt=0, description="单个文件大小上限（字节）")
    slug_length: int = Field(default=6, ge=4, description="短链接标识长度")
    slug_max_attempts: int = Field(default=10, ge=1, description="短链接标识冲突时的最大尝试次数")
    allow_mime_wildcards: bool = Field(default=False, description="是否接受白名单外的 image/video/audio 子类型")

    # 有效期（秒）
    multipart_session_ttl_seconds: int = Field(
        default=24 * 3600,
        gt=0,
        description="分片上传会话超过该时长未完成即被清理任务回收"
    )
    download_token_ttl_seconds: int = Field(default=300, gt=0, description="一次性下载令牌有效期")
    media_sniff_bytes: int = Field(default=256 * 1024, gt=0, description="检测图片尺寸时读取的文件头长度")

    @computed_field
    @property
    def async_database_url(self) -> Optional[str]:
        """把同步驱动的URL改写为异步驱动（asyncpg / aiosqlite）"""
        if not self.database_url:
            return None

        for prefix, async_prefix in _ASYNC_DRIVER_PREFIXES.items():
            if self.database_url.startswith(prefix):
                return async_prefix + self.database_url[len(prefix):]
        return self.database_url

    @computed_field
    @property
    def async_redis_url(self) -> Optional[str]:
        """补全缺少协议头的Redis地址（host:port 形式）"""
        if not self.redis_url:
            return None
        if "://" in self.redis_url:
            return self.redis_url
        return f"redis://{self.redis_url}"

    @computed_field
    @property
    def r2_config(self) -> Optional[dict[str, str]]:
        """boto3 客户端参数，凭证不完整时为None"""
        credentials = {
            "endpoint_url": self.endpoint_url,
            "aws_access_key_id": self.aws_access_key_id,
            "aws_secret_access_key": self.aws_secret_access_key,
        }
        if not all(credentials.values()):
            return None
        return {**credentials, "region_name": self.region_name}


@lru_cache
def get_settings() -> Settings:
    return Settings()


settings = get_settings()
