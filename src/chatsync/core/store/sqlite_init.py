"""SQLite 数据库初始化

PRAGMA 配置 + 离线队列表 DDL。
使用 aiosqlite 异步操作。
"""

import aiosqlite

# offline_queue 表 DDL：每个 (room, user) 一行，payload 为整个队列的 JSON 数组
_OFFLINE_QUEUE_DDL = """
CREATE TABLE IF NOT EXISTS offline_queue (
    room_id     TEXT NOT NULL,
    user_id     TEXT NOT NULL,
    payload     TEXT NOT NULL DEFAULT '[]',
    updated_at  TEXT NOT NULL,

    PRIMARY KEY (room_id, user_id)
);
"""

_OFFLINE_QUEUE_INDEXES = [
    "CREATE INDEX IF NOT EXISTS idx_offline_queue_updated_at ON offline_queue(updated_at DESC);",
]


async def init_db(conn: aiosqlite.Connection) -> None:
    """初始化数据库：设置 PRAGMA + 创建表 + 创建索引

    Args:
        conn: aiosqlite 数据库连接
    """
    # 设置 PRAGMA
    await conn.execute("PRAGMA journal_mode = WAL;")
    await conn.execute("PRAGMA busy_timeout = 5000;")

    # 创建表
    await conn.execute(_OFFLINE_QUEUE_DDL)

    # 创建索引
    for idx_sql in _OFFLINE_QUEUE_INDEXES:
        await conn.execute(idx_sql)

    await conn.commit()


async def verify_wal_mode(conn: aiosqlite.Connection) -> bool:
    """验证 WAL 模式是否生效

    Returns:
        True 如果 WAL 模式已启用
    """
    cursor = await conn.execute("PRAGMA journal_mode;")
    row = await cursor.fetchone()
    return row is not None and row[0].lower() == "wal"
