"""Message Merge Engine -- 时间线合并与去重

将历史补拉、会话内已确认广播、本地乐观/排队/流式消息合并为
一个去重、按 created_at 排序、经过私密过滤的时间线。
合并是纯函数：相同输入多次合并得到相同输出，不修改任何输入消息。

匹配规则（按优先级）：
1. ID 相同：已确认副本胜过未确认副本；同类时保留时间戳较新的一方
2. 已确认消息携带 client_msg_id：替换对应的本地乐观副本（确定性匹配）
3. 本地副本携带 server_id：替换 ID 等于该 server_id 的已确认消息（确定性匹配）
4. 均无关联信息：相同内容 + 相同作者 + 时间差在窗口内视为同一条消息（启发式）
5. 以上均不命中：作为新条目插入

已确认消息先于未确认消息处理，保证确定性匹配总是优先于启发式匹配，
与候选消息到达顺序无关。
"""

import time
from collections.abc import Callable, Iterable
from datetime import UTC, datetime

import structlog

from .cache import SessionCache
from .config import HEURISTIC_WINDOW_MS
from .models.message import ChatMessage

log = structlog.get_logger()


def _timestamp_ms(message: ChatMessage, now_ms: float) -> float:
    """消息时间戳（毫秒），缺失时使用合并执行时间"""
    if message.created_at is None:
        return now_ms
    return message.created_at.timestamp() * 1000


def _correlation_ids(message: ChatMessage) -> set[str]:
    ids = {message.id, message.server_id, message.client_msg_id}
    ids.discard(None)
    return ids


def apply_tombstones(
    messages: Iterable[ChatMessage],
    deleted_ids: set[str] | frozenset[str],
) -> list[ChatMessage]:
    """为已撤回的消息生成墓碑副本

    撤回事件可能引用本地 ID 或服务端 ID，两者都检查。
    """
    result = []
    for message in messages:
        if not message.is_deleted and _correlation_ids(message) & deleted_ids:
            message = message.tombstone()
        result.append(message)
    return result


def _prefer(existing: ChatMessage, incoming: ChatMessage, now_ms: float) -> ChatMessage:
    """同一 ID 的两个副本择优"""
    if incoming.is_confirmed and existing.is_provisional:
        winner = incoming
    elif incoming.is_provisional and existing.is_confirmed:
        winner = existing
    elif _timestamp_ms(incoming, now_ms) > _timestamp_ms(existing, now_ms):
        winner = incoming
    else:
        winner = existing

    # 墓碑具有粘性
    loser = incoming if winner is existing else existing
    if loser.is_deleted and not winner.is_deleted:
        winner = winner.tombstone(deleted_by=loser.deleted_by, deleted_at=loser.deleted_at)
    return winner


def merge_messages(
    history: Iterable[ChatMessage],
    confirmed: Iterable[ChatMessage],
    provisional: Iterable[ChatMessage],
    *,
    viewer_id: str,
    deleted_ids: set[str] | frozenset[str] = frozenset(),
    window_ms: int = HEURISTIC_WINDOW_MS,
    now_ms: float | None = None,
) -> list[ChatMessage]:
    """合并四个来源的消息，返回去重排序后的时间线

    Args:
        history: 历史补拉得到的消息
        confirmed: 会话内累积的已确认广播消息
        provisional: 乐观/排队/失败/流式消息（也可包含私密发送直接确认的消息）
        viewer_id: 当前查看者，用于私密过滤
        deleted_ids: 全局已撤回 ID 集合
        window_ms: 启发式匹配时间窗口（含边界）
        now_ms: 合并执行时间，缺失时间戳的消息按此排序

    Returns:
        按 created_at 升序排列的时间线
    """
    if now_ms is None:
        now_ms = time.time() * 1000

    candidates = apply_tombstones(
        [*history, *confirmed, *provisional],
        deleted_ids,
    )
    candidates = [m for m in candidates if m.visible_to(viewer_id)]

    entries: dict[str, ChatMessage] = {}

    # 第一轮：已确认消息
    for message in candidates:
        if not message.is_confirmed:
            continue
        existing = entries.get(message.id)
        entries[message.id] = (
            message if existing is None else _prefer(existing, message, now_ms)
        )

    claimed_client_ids = {
        m.client_msg_id for m in entries.values() if m.client_msg_id is not None
    }
    absorbed: set[str] = set()

    # 第二轮：未确认消息
    for message in candidates:
        if message.is_confirmed:
            continue

        existing = entries.get(message.id)
        if existing is not None:
            entries[message.id] = _prefer(existing, message, now_ms)
            continue

        if message.id in claimed_client_ids:
            continue

        if message.server_id is not None:
            target = entries.get(message.server_id)
            if target is not None and target.is_confirmed:
                absorbed.add(target.id)
                continue

        match = _heuristic_match(message, entries, absorbed, window_ms, now_ms)
        if match is not None:
            absorbed.add(match.id)
            log.debug(
                "heuristic_match",
                provisional_id=message.id,
                confirmed_id=match.id,
            )
            continue

        entries[message.id] = message

    # Python 排序稳定，相同时间戳保持插入顺序
    return sorted(entries.values(), key=lambda m: _timestamp_ms(m, now_ms))


def _heuristic_match(
    message: ChatMessage,
    entries: dict[str, ChatMessage],
    absorbed: set[str],
    window_ms: int,
    now_ms: float,
) -> ChatMessage | None:
    """查找内容、作者相同且时间差在窗口内的已确认消息（一对一，取最近）"""
    if not message.content:
        return None

    message_ts = _timestamp_ms(message, now_ms)
    best: ChatMessage | None = None
    best_delta = float("inf")
    for entry in entries.values():
        if (
            not entry.is_confirmed
            or entry.client_msg_id is not None
            or entry.id in absorbed
            or entry.content != message.content
            or entry.author.id != message.author.id
        ):
            continue
        delta = abs(_timestamp_ms(entry, now_ms) - message_ts)
        if delta <= window_ms and delta < best_delta:
            best, best_delta = entry, delta
    return best


class MessageMergeEngine:
    """时间线合并引擎 -- 每个 (room, user) 视图持有一个实例

    合并结果写入注入的 SessionCache，重新挂载视图时可通过 restore() 恢复。
    """

    def __init__(
        self,
        room_id: str,
        viewer_id: str,
        cache: SessionCache | None = None,
        window_ms: int = HEURISTIC_WINDOW_MS,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        """
        Args:
            room_id: 房间 ID
            viewer_id: 当前查看者 ID
            cache: 会话缓存，None 时创建私有缓存
            window_ms: 启发式匹配时间窗口
            clock: 返回当前时间的函数（测试注入）
        """
        self.room_id = room_id
        self.viewer_id = viewer_id
        self._cache = cache if cache is not None else SessionCache()
        self._window_ms = window_ms
        self._clock = clock or (lambda: datetime.now(UTC))

    @property
    def cache(self) -> SessionCache:
        return self._cache

    def merge(
        self,
        history: Iterable[ChatMessage],
        confirmed: Iterable[ChatMessage],
        provisional: Iterable[ChatMessage],
        deleted_ids: set[str] | frozenset[str] = frozenset(),
    ) -> list[ChatMessage]:
        """执行一次完整合并并缓存结果（每次都重新排序，不做追加）"""
        timeline = merge_messages(
            history,
            confirmed,
            provisional,
            viewer_id=self.viewer_id,
            deleted_ids=deleted_ids,
            window_ms=self._window_ms,
            now_ms=self._clock().timestamp() * 1000,
        )
        self._cache.set_timeline(self.room_id, self.viewer_id, timeline)
        return timeline

    def restore(self) -> list[ChatMessage] | None:
        """恢复会话内上一次合并的时间线"""
        return self._cache.get_timeline(self.room_id, self.viewer_id)
