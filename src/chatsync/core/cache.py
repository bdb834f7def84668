"""会话缓存 -- 按 (room, user) 缓存历史消息与合并后的时间线

显式构造并注入合并引擎，生命周期由持有者决定（单会话或单进程），
重新挂载视图时直接恢复会话内时间线，无需重新补拉。
超过容量时按最近最少使用淘汰；淘汰是消息被销毁的唯一途径。
"""

from collections import OrderedDict
from dataclasses import dataclass, field

from .models.message import ChatMessage

SessionKey = tuple[str, str]


@dataclass
class SessionEntry:
    """单个 (room, user) 会话的缓存内容"""

    history: list[ChatMessage] = field(default_factory=list)
    timeline: list[ChatMessage] | None = None


class SessionCache:
    """(room, user) -> SessionEntry 的 LRU 缓存"""

    def __init__(self, max_sessions: int = 32) -> None:
        self._entries: OrderedDict[SessionKey, SessionEntry] = OrderedDict()
        self._max_sessions = max_sessions

    def _entry(self, room_id: str, user_id: str) -> SessionEntry:
        key = (room_id, user_id)
        entry = self._entries.get(key)
        if entry is None:
            entry = SessionEntry()
            self._entries[key] = entry
            while len(self._entries) > self._max_sessions:
                self._entries.popitem(last=False)
        else:
            self._entries.move_to_end(key)
        return entry

    def get_history(self, room_id: str, user_id: str) -> list[ChatMessage]:
        entry = self._entries.get((room_id, user_id))
        return list(entry.history) if entry else []

    def set_history(
        self, room_id: str, user_id: str, messages: list[ChatMessage]
    ) -> None:
        self._entry(room_id, user_id).history = list(messages)

    def get_timeline(self, room_id: str, user_id: str) -> list[ChatMessage] | None:
        entry = self._entries.get((room_id, user_id))
        if entry is None or entry.timeline is None:
            return None
        return list(entry.timeline)

    def set_timeline(
        self, room_id: str, user_id: str, messages: list[ChatMessage]
    ) -> None:
        self._entry(room_id, user_id).timeline = list(messages)

    def evict(self, room_id: str, user_id: str) -> None:
        self._entries.pop((room_id, user_id), None)

    def clear(self) -> None:
        self._entries.clear()

    def __contains__(self, key: SessionKey) -> bool:
        return key in self._entries

    def __len__(self) -> int:
        return len(self._entries)
