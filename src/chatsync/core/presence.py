"""Presence Aggregator -- 在线用户聚合

将每个连接的原始在线记录转换为去重、剔除过期、空结果防抖后的
"谁在线"快照：
1. 每个用户只保留 last_seen_at 最新的一条记录（重连会留下幽灵记录）
2. 剔除显式离线或超过过期阈值的记录（对端非正常断开时没有离开事件）
3. 若 2.5 秒内曾有非空快照而新快照为空，则抑制本次更新，
   避免重新订阅期间所有头像闪烁
4. 输出按当前用户优先、其他用户按名称字母序排列
"""

from collections.abc import Callable, Iterable
from datetime import UTC, datetime, timedelta

import structlog

from .config import PRESENCE_EMPTY_DEBOUNCE_S, PRESENCE_STALE_S
from .models.presence import PresenceInfo, PresenceRecord

log = structlog.get_logger()


def compute_presence(
    records: Iterable[PresenceRecord],
    now: datetime,
    stale_after: timedelta,
) -> dict[str, PresenceInfo]:
    """按用户去重并剔除离线/过期记录（不含防抖）"""
    latest: dict[str, PresenceRecord] = {}
    for record in records:
        current = latest.get(record.user_id)
        if current is None or record.last_seen_at > current.last_seen_at:
            latest[record.user_id] = record

    snapshot: dict[str, PresenceInfo] = {}
    for user_id, record in latest.items():
        if not record.online:
            continue
        if now - record.last_seen_at > stale_after:
            continue
        snapshot[user_id] = PresenceInfo(
            user_id=user_id,
            display_name=record.display_name or user_id,
            avatar_url=record.avatar_url,
            online_at=record.online_at,
            last_seen_at=record.last_seen_at,
        )
    return snapshot


class PresenceAggregator:
    """在线状态聚合器 -- 保存上一次对外发布的快照用于防抖"""

    def __init__(
        self,
        viewer_id: str,
        stale_after_s: float = PRESENCE_STALE_S,
        empty_debounce_s: float = PRESENCE_EMPTY_DEBOUNCE_S,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        """
        Args:
            viewer_id: 当前查看者 ID（排序时置顶）
            stale_after_s: 记录过期阈值（秒）
            empty_debounce_s: 空快照防抖窗口（秒）
            clock: 返回当前时间的函数（测试注入）
        """
        self.viewer_id = viewer_id
        self._stale_after = timedelta(seconds=stale_after_s)
        self._empty_debounce = timedelta(seconds=empty_debounce_s)
        self._clock = clock or (lambda: datetime.now(UTC))
        self._snapshot: dict[str, PresenceInfo] = {}
        self._last_non_empty_at: datetime | None = None
        self._records: list[PresenceRecord] = []

    @property
    def snapshot(self) -> dict[str, PresenceInfo]:
        return dict(self._snapshot)

    @property
    def online_count(self) -> int:
        return len(self._snapshot)

    def update(self, records: Iterable[PresenceRecord]) -> dict[str, PresenceInfo]:
        """输入新的原始记录集合，返回对外可见的快照"""
        self._records = list(records)
        return self.recompute()

    def recompute(self) -> dict[str, PresenceInfo]:
        """用最近一次原始记录重新计算（定时剪枝调用）"""
        now = self._clock()
        computed = compute_presence(self._records, now, self._stale_after)

        if not computed and self._snapshot and self._last_non_empty_at is not None:
            if now - self._last_non_empty_at <= self._empty_debounce:
                log.debug(
                    "presence_empty_suppressed",
                    previous_count=len(self._snapshot),
                )
                return self.snapshot

        if computed:
            self._last_non_empty_at = now
        self._snapshot = self._sorted(computed)
        return self.snapshot

    def _sorted(self, snapshot: dict[str, PresenceInfo]) -> dict[str, PresenceInfo]:
        def sort_key(info: PresenceInfo) -> tuple[int, str]:
            if info.user_id == self.viewer_id:
                return (0, "")
            return (1, info.display_name.casefold())

        return {info.user_id: info for info in sorted(snapshot.values(), key=sort_key)}

    def sorted_users(self) -> list[PresenceInfo]:
        """头像堆叠展示顺序：当前用户优先，其余按名称排序"""
        return list(self._snapshot.values())
