#!/usr/bin/env python3
"""应用启动脚本

dev 模式启用热重载；prod 模式读取平台注入的 PORT 环境变量
"""

import argparse
import os
import sys
from pathlib import Path

project_root = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(project_root))

from loguru import logger  # noqa: E402

from app.core.config import settings  # noqa: E402


def configure_logging() -> None:
    """控制台输出之外，增加按天轮转的文件日志"""
    log_path = Path(settings.log_file)
    log_path.parent.mkdir(parents=True, exist_ok=True)
    logger.add(
        str(log_path.with_name(f"{log_path.stem}_{{time:YYYY-MM-DD}}{log_path.suffix}")),
        rotation="1 day",
        retention="30 days",
        level=settings.log_level,
        serialize=True,
    )


def main() -> None:
    parser = argparse.ArgumentParser(description="临时文件分享服务启动脚本")
    parser.add_argument(
        "--mode",
        choices=["dev", "prod"],
        default="dev",
        help="启动模式: dev(开发) 或 prod(生产)"
    )
    parser.add_argument("--host", default=settings.host, help=f"服务器主机地址 (默认: {settings.host})")
    parser.add_argument(
        "--port",
        type=int,
        default=int(os.getenv("PORT", settings.port)),
        help="服务器端口 (默认读取 PORT 环境变量)"
    )
    args = parser.parse_args()

    import uvicorn

    configure_logging()
    logger.info(f"启动 {settings.app_name} ({args.mode}) http://{args.host}:{args.port}")

    uvicorn.run(
        "app.main:app",
        host=args.host,
        port=args.port,
        reload=args.mode == "dev",
        workers=1 if args.mode == "dev" else int(os.getenv("WORKERS", "1")),
        log_level=settings.log_level.lower(),
        access_log=True
    )


if __name__ == "__main__":
    main()
