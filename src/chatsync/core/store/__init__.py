"""chatsync Core Store -- SQLite 持久化实现

提供工厂函数创建离线队列存储。
"""

from pathlib import Path

import aiosqlite

from .protocols import QueueStore
from .queue_store import SqliteQueueStore
from .sqlite_init import init_db


async def create_queue_store(db_path: str) -> SqliteQueueStore:
    """创建离线队列存储

    Args:
        db_path: SQLite 数据库文件路径

    Returns:
        SqliteQueueStore 实例（持有独立连接，调用方负责 close）
    """
    # 确保数据库目录存在
    db_dir = Path(db_path).parent
    db_dir.mkdir(parents=True, exist_ok=True)

    conn = await aiosqlite.connect(db_path)
    await init_db(conn)

    return SqliteQueueStore(conn)


__all__ = [
    "QueueStore",
    "SqliteQueueStore",
    "create_queue_store",
    "init_db",
]
