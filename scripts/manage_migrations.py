#!/usr/bin/env python3
"""数据库迁移管理脚本

通过 Alembic 的 Python API 管理 uploads 表结构迁移
"""

import sys
from pathlib import Path

from alembic import command
from alembic.config import Config
from alembic.util import CommandError
from loguru import logger


PROJECT_ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

USAGE = """
数据库迁移管理脚本

用法:
    python scripts/manage_migrations.py <command> [args]

命令:
    create <message>        - 根据模型变化自动生成迁移
    upgrade [revision]      - 升级数据库（默认到最新版本）
    downgrade <revision>    - 降级数据库到指定版本
    current                 - 显示当前数据库版本
    history                 - 显示迁移历史
    stamp <revision>        - 标记数据库版本（不执行迁移）
"""


class MigrationManager:
    """数据库迁移管理器"""

    def __init__(self) -> None:
        ini_path = PROJECT_ROOT / "alembic.ini"
        if not ini_path.exists():
            raise FileNotFoundError(f"找不到 alembic.ini 文件: {ini_path}")

        self.config = Config(str(ini_path))
        self.config.set_main_option("script_location", str(PROJECT_ROOT / "alembic"))

    def create(self, message: str) -> None:
        logger.info(f"创建新迁移: {message}")
        command.revision(self.config, message=message, autogenerate=True)

    def upgrade(self, revision: str = "head") -> None:
        logger.info(f"升级数据库到版本: {revision}")
        command.upgrade(self.config, revision)

    def downgrade(self, revision: str) -> None:
        logger.info(f"降级数据库到版本: {revision}")
        command.downgrade(self.config, revision)

    def current(self) -> None:
        command.current(self.config, verbose=True)

    def history(self) -> None:
        command.history(self.config, verbose=True)

    def stamp(self, revision: str) -> None:
        """把现有数据库标记为指定版本，不执行迁移"""
        logger.info(f"标记数据库版本为: {revision}")
        command.stamp(self.config, revision)


def main() -> None:
    logger.remove()
    logger.add(
        sys.stdout,
        level="INFO",
        format="<green>{time:HH:mm:ss}</green> | <level>{level: <8}</level> | <level>{message}</level>"
    )

    if len(sys.argv) < 2:
        print(USAGE)
        sys.exit(1)

    action = sys.argv[1].lower()
    args = sys.argv[2:]
    manager = MigrationManager()

    # 需要参数的命令
    required = {"create": "请提供迁移描述信息", "downgrade": "请提供目标版本", "stamp": "请提供要标记的版本"}
    if action in required and not args:
        logger.error(required[action])
        sys.exit(1)

    try:
        if action == "create":
            manager.create(" ".join(args))
        elif action == "upgrade":
            manager.upgrade(args[0] if args else "head")
        elif action == "downgrade":
            manager.downgrade(args[0])
        elif action == "current":
            manager.current()
        elif action == "history":
            manager.history()
        elif action == "stamp":
            manager.stamp(args[0])
        else:
            logger.error(f"未知命令: {action}")
            print(USAGE)
            sys.exit(1)
    except CommandError as e:
        logger.error(f"迁移命令执行失败: {e}")
        sys.exit(1)

    logger.info("操作完成")


if __name__ == "__main__":
    main()
