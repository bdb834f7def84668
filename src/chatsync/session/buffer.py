"""MessageBuffer -- 会话内消息池

合并引擎的两个可变输入：
- provisional: 乐观/失败/流式消息（以及等待广播回显的已受理消息）
- confirmed: 会话内收到的广播消息与私密发送直接确认的消息

每次变更都通知订阅者重新合并。消息本身是不可变快照，变更即替换。
"""

from collections.abc import Callable, Iterable
from datetime import datetime

from chatsync.core.models.message import ChatMessage

Listener = Callable[[], None]


class MessageBuffer:
    """会话内消息池（provisional + confirmed）"""

    def __init__(self) -> None:
        self._provisional: dict[str, ChatMessage] = {}
        self._confirmed: dict[str, ChatMessage] = {}
        self._listeners: list[Listener] = []

    @property
    def provisional(self) -> list[ChatMessage]:
        return list(self._provisional.values())

    @property
    def confirmed(self) -> list[ChatMessage]:
        return list(self._confirmed.values())

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """订阅变更，返回取消订阅函数"""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _notify(self) -> None:
        for listener in list(self._listeners):
            listener()

    def get_provisional(self, message_id: str) -> ChatMessage | None:
        return self._provisional.get(message_id)

    def get_confirmed(self, message_id: str) -> ChatMessage | None:
        return self._confirmed.get(message_id)

    def put_provisional(self, message: ChatMessage) -> None:
        """插入或替换未确认消息"""
        self._provisional[message.id] = message
        self._notify()

    def migrate(self, old_id: str, message: ChatMessage) -> None:
        """将 old_id 下的条目迁移到 message.id（流式 ID 迁移），不留下旧条目"""
        self._provisional.pop(old_id, None)
        self._provisional[message.id] = message
        self._notify()

    def discard(self, message_id: str) -> bool:
        """移除未确认消息"""
        removed = self._provisional.pop(message_id, None) is not None
        if removed:
            self._notify()
        return removed

    def put_confirmed(self, message: ChatMessage) -> None:
        """插入已确认消息，并移除能确定对应到它的未确认副本"""
        existing = self._confirmed.get(message.id)
        if existing is not None and existing.is_deleted and not message.is_deleted:
            message = message.tombstone(
                deleted_by=existing.deleted_by,
                deleted_at=existing.deleted_at,
            )
        self._confirmed[message.id] = message

        for key, candidate in list(self._provisional.items()):
            if (
                key == message.id
                or key == message.client_msg_id
                or candidate.server_id == message.id
            ):
                del self._provisional[key]
        self._notify()

    def tombstone(
        self,
        message_ids: Iterable[str],
        deleted_by: str | None = None,
        deleted_at: datetime | None = None,
    ) -> int:
        """将匹配 ID（本地 ID 或服务端 ID）的消息替换为墓碑，返回处理条数"""
        ids = set(message_ids)
        count = 0
        for pool in (self._provisional, self._confirmed):
            for key, message in list(pool.items()):
                if message.is_deleted:
                    continue
                if ids & {message.id, message.server_id, message.client_msg_id}:
                    pool[key] = message.tombstone(deleted_by=deleted_by, deleted_at=deleted_at)
                    count += 1
        if count:
            self._notify()
        return count

    def __len__(self) -> int:
        return len(self._provisional) + len(self._confirmed)
