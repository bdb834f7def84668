"""Offline Message Queue -- 离线消息队列

保证网络不可用时发送的消息不会静默丢失：
- 入队即持久化（按 (room, user) 整体替换），标记 QUEUED，尝试次数 0
- 网络恢复 1 秒后自动排空，也可手动重试单条失败消息
- 排空时顺序发送（相邻两条间隔 0.5 秒），每条：
  成功 -> 移出队列（最终消息由广播回显或私密确认提供）
  失败且次数未达上限 -> 次数 +1，回到 QUEUED
  失败且达到上限 -> 终态 FAILED，不再自动重试
"""

import asyncio
import time
from collections.abc import Awaitable, Callable

import structlog

from chatsync.core.config import (
    QUEUE_DRAIN_DELAY_S,
    QUEUE_ITEM_DELAY_S,
    QUEUE_MAX_ATTEMPTS,
)
from chatsync.core.models.enums import DeliveryState
from chatsync.core.models.message import ChatMessage
from chatsync.core.models.payloads import QueuedMessage, QueueStatus, SendResult
from chatsync.core.store.protocols import QueueStore

from .connectivity import ConnectivityMonitor
from .logging_config import room_log_context

log = structlog.get_logger()

SendQueued = Callable[[QueuedMessage], Awaitable[SendResult]]
Listener = Callable[[], None]


class OfflineMessageQueue:
    """离线消息队列 -- 每个 (room, user) 一个实例"""

    def __init__(
        self,
        room_id: str,
        user_id: str,
        store: QueueStore,
        send: SendQueued,
        *,
        connectivity: ConnectivityMonitor | None = None,
        max_attempts: int = QUEUE_MAX_ATTEMPTS,
        drain_delay_s: float = QUEUE_DRAIN_DELAY_S,
        item_delay_s: float = QUEUE_ITEM_DELAY_S,
    ) -> None:
        """
        Args:
            room_id: 房间 ID
            user_id: 当前用户 ID
            store: 持久化存储
            send: 发送函数，收到的记录中消息已处于 RETRYING
            connectivity: 连通性监测器，恢复在线时自动排空
            max_attempts: 自动重试上限
            drain_delay_s: 恢复在线后的排空延迟
            item_delay_s: 顺序发送的相邻间隔
        """
        self.room_id = room_id
        self.user_id = user_id
        self._store = store
        self._send = send
        self._connectivity = connectivity
        self._max_attempts = max_attempts
        self._drain_delay_s = drain_delay_s
        self._item_delay_s = item_delay_s

        self._items: list[QueuedMessage] = []
        self._listeners: list[Listener] = []
        self._lock = asyncio.Lock()
        self._persist_lock = asyncio.Lock()
        self._processing = False
        self._drain_task: asyncio.Task | None = None
        self._unsubscribe_connectivity: Callable[[], None] | None = None

    # ============================================================
    # 查询
    # ============================================================

    @property
    def items(self) -> list[QueuedMessage]:
        return list(self._items)

    @property
    def messages(self) -> list[ChatMessage]:
        """时间线中展示的排队消息"""
        return [item.message for item in self._items]

    @property
    def is_processing(self) -> bool:
        return self._processing

    def get(self, message_id: str) -> QueuedMessage | None:
        for item in self._items:
            if item.id == message_id:
                return item
        return None

    def status(self) -> QueueStatus:
        pending = sum(
            1
            for item in self._items
            if item.message.delivery in (DeliveryState.QUEUED, DeliveryState.RETRYING)
        )
        failed = sum(1 for item in self._items if item.message.is_failed)
        return QueueStatus(
            total_queued=len(self._items),
            pending=pending,
            failed=failed,
            is_processing=self._processing,
        )

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """订阅队列变更，返回取消订阅函数"""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    # ============================================================
    # 生命周期
    # ============================================================

    async def load(self) -> None:
        """从持久化存储恢复队列

        上次进程退出时正在发送的记录回到 QUEUED。
        """
        items = await self._store.load(self.room_id, self.user_id)
        restored = []
        for item in items:
            if item.message.is_retrying:
                item = item.model_copy(
                    update={"message": item.message.transition(DeliveryState.QUEUED)}
                )
            restored.append(item)
        self._items = restored
        log.info(
            "offline_queue_loaded",
            room_id=self.room_id,
            count=len(self._items),
        )
        self._notify()

    def start(self) -> None:
        """订阅连通性变化：恢复在线时延迟排空，离线时取消待执行的排空"""
        if self._connectivity is None or self._unsubscribe_connectivity is not None:
            return
        self._unsubscribe_connectivity = self._connectivity.subscribe(
            self._on_connectivity_change
        )

    async def close(self) -> None:
        if self._unsubscribe_connectivity is not None:
            self._unsubscribe_connectivity()
            self._unsubscribe_connectivity = None
        await self._cancel_drain()

    def _on_connectivity_change(self, online: bool) -> None:
        if online:
            self.schedule_drain()
        elif self._drain_task is not None and not self._drain_task.done():
            self._drain_task.cancel()

    # ============================================================
    # 变更
    # ============================================================

    async def enqueue(self, message: ChatMessage, original_content: str | None = None) -> ChatMessage:
        """入队并持久化，返回 QUEUED 状态的消息"""
        queued = message.model_copy(
            update={"delivery": DeliveryState.QUEUED, "retry_attempts": 0}
        )
        item = QueuedMessage(
            message=queued,
            original_content=original_content if original_content is not None else message.content,
            is_private=message.is_private,
            attempts=0,
            queued_at=time.time() * 1000,
        )
        self._items.append(item)
        log.info(
            "message_queued",
            room_id=self.room_id,
            message_id=item.id,
            queue_size=len(self._items),
        )
        await self._commit()
        return queued

    async def remove(self, message_id: str) -> bool:
        before = len(self._items)
        self._items = [item for item in self._items if item.id != message_id]
        if len(self._items) == before:
            return False
        await self._commit()
        return True

    async def clear_failed(self) -> int:
        """丢弃所有终态失败的记录，返回丢弃条数"""
        before = len(self._items)
        self._items = [item for item in self._items if not item.message.is_failed]
        cleared = before - len(self._items)
        if cleared:
            log.info("queue_failed_cleared", room_id=self.room_id, count=cleared)
            await self._commit()
        return cleared

    def _replace(self, updated: QueuedMessage) -> None:
        self._items = [updated if item.id == updated.id else item for item in self._items]

    async def _commit(self) -> None:
        """通知订阅者并整体替换持久化列表"""
        self._notify()
        async with self._persist_lock:
            await self._store.replace(self.room_id, self.user_id, list(self._items))

    def _notify(self) -> None:
        for listener in list(self._listeners):
            listener()

    # ============================================================
    # 发送
    # ============================================================

    def schedule_drain(self, delay_s: float | None = None) -> None:
        """延迟排空（防抖：重复调用只保留最后一次）"""
        if self._drain_task is not None and not self._drain_task.done():
            self._drain_task.cancel()
        delay = self._drain_delay_s if delay_s is None else delay_s
        self._drain_task = asyncio.create_task(self._delayed_drain(delay))

    async def _delayed_drain(self, delay_s: float) -> None:
        await asyncio.sleep(delay_s)
        with room_log_context(self.room_id, self.user_id):
            await self.drain()
        # 未达上限的失败记录回到 QUEUED，继续下一轮
        if self._has_queued() and self._is_online():
            self._drain_task = asyncio.create_task(
                self._delayed_drain(self._drain_delay_s)
            )

    async def _cancel_drain(self) -> None:
        task, self._drain_task = self._drain_task, None
        if task is None or task.done():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    def _has_queued(self) -> bool:
        return any(item.message.is_queued for item in self._items)

    def _is_online(self) -> bool:
        return self._connectivity is None or self._connectivity.is_online

    async def drain(self) -> int:
        """顺序发送所有 QUEUED 记录，返回成功条数

        已在排空时直接返回 0。
        """
        if self._lock.locked():
            return 0

        sent = 0
        async with self._lock:
            self._processing = True
            try:
                pending_ids = [item.id for item in self._items if item.message.is_queued]
                if pending_ids:
                    log.info(
                        "queue_drain_started",
                        room_id=self.room_id,
                        count=len(pending_ids),
                    )
                for index, message_id in enumerate(pending_ids):
                    if index > 0:
                        await asyncio.sleep(self._item_delay_s)
                    if not self._is_online():
                        log.info("queue_drain_interrupted", room_id=self.room_id)
                        break
                    item = self.get(message_id)
                    if item is None or not item.message.is_queued:
                        continue
                    if await self._attempt(item):
                        sent += 1
            finally:
                self._processing = False
                self._notify()
        return sent

    async def retry(self, message_id: str) -> bool:
        """手动重试单条记录（不受自动重试上限约束，失败规则相同）

        Raises:
            KeyError: 记录不存在
        """
        async with self._lock:
            item = self.get(message_id)
            if item is None:
                raise KeyError(message_id)
            if item.message.is_retrying:
                return False
            self._processing = True
            try:
                return await self._attempt(item)
            finally:
                self._processing = False
                self._notify()

    async def _attempt(self, item: QueuedMessage) -> bool:
        retrying = item.model_copy(
            update={"message": item.message.transition(DeliveryState.RETRYING)}
        )
        self._replace(retrying)
        await self._commit()

        try:
            result = await self._send(retrying)
        except asyncio.CancelledError:
            # 发送中途离线或关闭：退回 QUEUED，不计入尝试次数
            self._replace(
                retrying.model_copy(
                    update={"message": retrying.message.transition(DeliveryState.QUEUED)}
                )
            )
            log.info("queued_send_cancelled", room_id=self.room_id, message_id=item.id)
            await asyncio.shield(self._commit())
            raise
        except Exception as e:
            log.warning(
                "queued_send_error",
                room_id=self.room_id,
                message_id=item.id,
                error=str(e),
                error_type=type(e).__name__,
            )
            result = SendResult(success=False, error=str(e))

        if result.success:
            self._items = [i for i in self._items if i.id != item.id]
            log.info(
                "queued_message_sent",
                room_id=self.room_id,
                message_id=item.id,
                server_id=result.id,
            )
            await self._commit()
            return True

        attempts = item.attempts + 1
        to_state = (
            DeliveryState.FAILED if attempts >= self._max_attempts else DeliveryState.QUEUED
        )
        updated = retrying.model_copy(
            update={
                "attempts": attempts,
                "message": retrying.message.transition(to_state, retry_attempts=attempts),
            }
        )
        self._replace(updated)
        log.warning(
            "queued_send_failed",
            room_id=self.room_id,
            message_id=item.id,
            attempts=attempts,
            terminal=to_state == DeliveryState.FAILED,
            error=result.error,
        )
        await self._commit()
        return False
