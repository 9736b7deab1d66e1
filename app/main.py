"""FastAPI应用主入口

配置应用实例、中间件、路由、全局异常处理和生命周期事件
"""

from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import AsyncGenerator

from fastapi import FastAPI, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from loguru import logger
from sqlalchemy import text
from starlette.exceptions import HTTPException as StarletteHTTPException

from app.core.config import settings
from app.core.database import db_manager
from app.core.redis import redis_manager
from app.features.storage.router import router as download_router
from app.features.uploads import cron_router, router as upload_router
from app.shared.schemas import APIResponse, HealthCheckResponse


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """应用生命周期管理

    启动时检查连接并运行数据库迁移，关闭时释放连接池
    """
    logger.info("正在启动临时文件分享服务...")

    if redis_manager.redis_client:
        logger.info("Redis连接已就绪")
    else:
        logger.warning("Redis未配置，下载令牌功能不可用")

    if not settings.r2_config:
        logger.warning("R2存储配置不完整，上传和下载将会失败")

    try:
        await db_manager.run_migrations()
    except Exception as migration_error:
        if not settings.debug:
            logger.error("生产环境下数据库迁移失败，应用启动终止")
            raise
        logger.warning(f"数据库迁移失败，使用备用方法建表: {migration_error}")
        await db_manager.create_tables_fallback()

    logger.info("应用启动完成")

    yield

    logger.info("正在关闭应用...")
    try:
        await redis_manager.close()
        await db_manager.close()
    except Exception as e:
        logger.error(f"应用关闭时出错: {e}")
    logger.info("应用关闭完成")


app = FastAPI(
    title=settings.app_name,
    description="临时文件分享服务：直传与分片上传、一次性下载令牌、过期自动清理",
    version=settings.app_version,
    debug=settings.debug,
    lifespan=lifespan
)


app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["*"],
)


def _error_response(status_code: int, message: str, error_type: str) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=APIResponse(
            success=False,
            data=None,
            message=message,
            code=status_code,
            error_type=error_type
        ).model_dump()
    )


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    """HTTP异常处理器

    业务异常携带 error_type，其余HTTP异常统一标记为 HTTPException
    """
    error_type = getattr(exc, "error_type", "HTTPException")
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} -> {exc.status_code} {error_type}: {exc.detail}")
    else:
        logger.warning(f"{request.method} {request.url.path} -> {exc.status_code} {error_type}: {exc.detail}")

    return _error_response(exc.status_code, str(exc.detail), error_type)


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """请求格式错误按400处理"""
    errors = exc.errors()
    first = errors[0] if errors else {}
    location = ".".join(str(part) for part in first.get("loc", ()))
    message = f"请求参数无效: {location} {first.get('msg', '')}".strip()
    logger.warning(f"{request.method} {request.url.path} -> 400 {message}")

    return _error_response(400, message, "ValidationError")


@app.exception_handler(Exception)
async def general_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """通用异常处理器

    处理未捕获的异常，避免暴露内部错误信息
    """
    logger.exception(f"未处理的异常: {type(exc).__name__}: {exc}")

    return _error_response(
        500,
        "服务器内部错误" if not settings.debug else str(exc),
        "InternalServerError"
    )


async def _database_reachable() -> bool:
    try:
        async with db_manager.session_scope() as session:
            await session.execute(text("SELECT 1"))
    except Exception as e:
        logger.error(f"数据库不可达: {e}")
        return False
    return True


@app.get(
    "/health",
    response_model=APIResponse[HealthCheckResponse],
    summary="健康检查",
    description="检查数据库、Redis连接状态和存储配置"
)
async def health_check(response: Response) -> APIResponse[HealthCheckResponse]:
    """任一依赖不可用时返回503"""
    checks = {
        "database": await _database_reachable(),
        "redis": await redis_manager.ping(),
        "storage": settings.r2_config is not None,
    }
    healthy = all(checks.values())
    if not healthy:
        response.status_code = 503

    return APIResponse(
        success=healthy,
        data=HealthCheckResponse(
            status="healthy" if healthy else "degraded",
            timestamp=datetime.now(timezone.utc).isoformat(),
            version=settings.app_version,
            **checks
        ),
        message="服务正常" if healthy else f"依赖异常: {', '.join(k for k, ok in checks.items() if not ok)}",
        code=200 if healthy else 503
    )


@app.get(
    "/",
    response_model=APIResponse[dict],
    summary="API信息",
    description="获取API基本信息"
)
async def root() -> APIResponse[dict]:
    return APIResponse(
        success=True,
        data={
            "name": settings.app_name,
            "version": settings.app_version,
            "docs_url": "/docs",
            "health_url": "/health",
            "chunk_size": settings.chunk_size,
            "direct_upload_limit": settings.direct_upload_limit,
            "max_file_size": settings.max_file_size,
        },
        message="欢迎使用临时文件分享API",
        code=200
    )


app.include_router(upload_router, prefix="/api/upload", tags=["上传"])
app.include_router(download_router, prefix="/api/download", tags=["下载"])
app.include_router(cron_router, prefix="/api/cron", tags=["定时任务"])


if __name__ == "__main__":
    import uvicorn

    logger.add(
        "logs/app_{time:YYYY-MM-DD}.log",
        rotation="1 day",
        retention="30 days",
        level=settings.log_level,
        format="{time:YYYY-MM-DD HH:mm:ss} | {level} | {name}:{function}:{line} | {message}",
        serialize=True
    )

    logger.info(f"启动开发服务器: {settings.app_name} v{settings.app_version}")

    uvicorn.run(
        "app.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
        log_level="debug" if settings.debug else "info"
    )
