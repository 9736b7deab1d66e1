"""上传功能模块

提供直传、分片上传、取消和过期清理功能
"""

from .router import cron_router, router
from .service import UploadCoordinator
from .sweeper import ExpirySweeper

__all__ = ["router", "cron_router", "UploadCoordinator", "ExpirySweeper"]
