"""QueueStore SQLite 实现

离线队列按 (room, user) 持久化为一行 JSON 数组，跨进程重启保留。
写入为整体替换，在同一事务内提交；空队列直接删除该行。
"""

import json
from datetime import UTC, datetime

import aiosqlite
import structlog
from pydantic import ValidationError

from ..models.payloads import QueuedMessage

log = structlog.get_logger()


class SqliteQueueStore:
    """QueueStore 的 SQLite 实现"""

    def __init__(self, conn: aiosqlite.Connection) -> None:
        self._conn = conn

    async def load(self, room_id: str, user_id: str) -> list[QueuedMessage]:
        """读取队列，无法解析的记录会被跳过并记录日志"""
        cursor = await self._conn.execute(
            "SELECT payload FROM offline_queue WHERE room_id = ? AND user_id = ?",
            (room_id, user_id),
        )
        row = await cursor.fetchone()
        if row is None:
            return []

        try:
            raw_items = json.loads(row[0])
        except json.JSONDecodeError as e:
            log.warning(
                "queue_payload_corrupted",
                room_id=room_id,
                user_id=user_id,
                error=str(e),
            )
            return []

        items: list[QueuedMessage] = []
        for raw in raw_items if isinstance(raw_items, list) else []:
            try:
                items.append(QueuedMessage.model_validate(raw))
            except ValidationError as e:
                log.warning(
                    "queue_record_skipped",
                    room_id=room_id,
                    user_id=user_id,
                    error_count=e.error_count(),
                )
        return items

    async def replace(
        self,
        room_id: str,
        user_id: str,
        items: list[QueuedMessage],
    ) -> None:
        """整体替换队列（单事务）"""
        try:
            if items:
                payload = json.dumps(
                    [item.model_dump(mode="json", by_alias=True) for item in items],
                    ensure_ascii=False,
                )
                await self._conn.execute(
                    """
                    INSERT INTO offline_queue (room_id, user_id, payload, updated_at)
                    VALUES (?, ?, ?, ?)
                    ON CONFLICT(room_id, user_id)
                    DO UPDATE SET payload = excluded.payload,
                                  updated_at = excluded.updated_at
                    """,
                    (room_id, user_id, payload, datetime.now(UTC).isoformat()),
                )
            else:
                await self._conn.execute(
                    "DELETE FROM offline_queue WHERE room_id = ? AND user_id = ?",
                    (room_id, user_id),
                )
            await self._conn.commit()
        except Exception:
            await self._conn.rollback()
            raise

    async def list_keys(self) -> list[tuple[str, str]]:
        """列出所有存在排队消息的 (room, user)"""
        cursor = await self._conn.execute(
            "SELECT room_id, user_id FROM offline_queue ORDER BY updated_at DESC"
        )
        rows = await cursor.fetchall()
        return [(row[0], row[1]) for row in rows]

    async def close(self) -> None:
        await self._conn.close()
