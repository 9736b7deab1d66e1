#!/usr/bin/env python3
"""过期清理脚本

供系统 cron 每小时调用，效果与 GET /api/cron/clear 相同：

    0 * * * * cd /srv/tempdrop && python scripts/clear_expired.py
"""

import asyncio
import sys
from pathlib import Path

project_root = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(project_root))

from loguru import logger  # noqa: E402

from app.core.database import db_manager  # noqa: E402
from app.features.uploads.sweeper import ExpirySweeper  # noqa: E402


async def run() -> int:
    try:
        async with db_manager.session_scope() as session:
            sweeper = ExpirySweeper(session)
            uploads = await sweeper.sweep_expired()
            sessions = await sweeper.sweep_stale_sessions()
    finally:
        await db_manager.close()

    return 1 if uploads.failed or sessions.failed else 0


def main() -> None:
    logger.remove()
    logger.add(sys.stdout, level="INFO", format="{time:HH:mm:ss} | {level: <8} | {message}")
    sys.exit(asyncio.run(run()))


if __name__ == "__main__":
    main()
