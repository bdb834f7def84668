"""RoomSession -- 房间会话编排

将连通性监测、实时通道、离线队列、乐观发送、AI 流协调与合并引擎
组装为一个 (room, user) 会话。合并引擎的输出是界面唯一的渲染来源，
其他组件只产生合并输入：

    ConnectivityMonitor -> OptimisticSender / OfflineMessageQueue
    RealtimeChannelAdapter -> MessageBuffer(confirmed) / PresenceAggregator / AIStreamReconciler
    MessageBuffer + OfflineMessageQueue + history -> MessageMergeEngine -> timeline
"""

import asyncio
from collections.abc import Callable
from typing import Any

import structlog

from chatsync.client.exceptions import ApiError
from chatsync.client.protocols import ChatBackend, RealtimeTransport
from chatsync.core.cache import SessionCache
from chatsync.core.config import HISTORY_TIMEOUT_S
from chatsync.core.exceptions import ChatSyncError, PermissionDeniedError
from chatsync.core.merge import MessageMergeEngine
from chatsync.core.models.enums import DeliveryState, HistoryKind
from chatsync.core.models.events import RemoteStreamEvent
from chatsync.core.models.message import Author, ChatMessage
from chatsync.core.models.payloads import QueuedMessage, QueueStatus, SendResult, UnsendResult
from chatsync.core.models.presence import PresenceInfo
from chatsync.core.store.protocols import QueueStore

from .ai_stream import AIStreamReconciler, AIStreamRequest
from .buffer import MessageBuffer
from .connectivity import ConnectivityMonitor
from .offline_queue import OfflineMessageQueue
from .realtime import RealtimeChannelAdapter
from .sender import OptimisticSender

log = structlog.get_logger()

# 发给 AI 的上下文消息条数
AI_CONTEXT_SIZE = 10

TimelineCallback = Callable[[list[ChatMessage]], None]
PresenceCallback = Callable[[list[PresenceInfo]], None]


class RoomSession:
    """单个 (room, user) 会话"""

    def __init__(
        self,
        room_id: str,
        user: Author,
        backend: ChatBackend,
        transport: RealtimeTransport,
        queue_store: QueueStore,
        *,
        connectivity: ConnectivityMonitor | None = None,
        cache: SessionCache | None = None,
        history_timeout_s: float = HISTORY_TIMEOUT_S,
        on_timeline_change: TimelineCallback | None = None,
        on_presence_change: PresenceCallback | None = None,
        channel_options: dict[str, Any] | None = None,
        queue_options: dict[str, Any] | None = None,
        sender_options: dict[str, Any] | None = None,
    ) -> None:
        """
        Args:
            room_id: 房间 ID
            user: 当前用户
            backend: 聊天后端
            transport: 实时通道订阅原语
            queue_store: 离线队列持久化
            connectivity: 连通性监测器，None 时创建默认（在线）实例
            cache: 会话缓存，跨会话共享时由调用方注入
            history_timeout_s: 历史补拉硬超时
            on_timeline_change: 时间线变化回调
            on_presence_change: 在线用户变化回调（已排序）
            channel_options: 传给 RealtimeChannelAdapter 的计时参数
            queue_options: 传给 OfflineMessageQueue 的计时参数
            sender_options: 传给 OptimisticSender 的计时参数
        """
        self.room_id = room_id
        self.user = user
        self._backend = backend
        self._history_timeout_s = history_timeout_s
        self.on_timeline_change = on_timeline_change
        self.on_presence_change = on_presence_change

        self.connectivity = connectivity or ConnectivityMonitor()
        self.engine = MessageMergeEngine(room_id, user.id, cache=cache)
        self.buffer = MessageBuffer()
        self.queue = OfflineMessageQueue(
            room_id,
            user.id,
            queue_store,
            self._send_queued,
            connectivity=self.connectivity,
            **(queue_options or {}),
        )
        self.sender = OptimisticSender(
            room_id,
            user,
            backend,
            self.buffer,
            self.queue,
            self.connectivity,
            **(sender_options or {}),
        )
        self.ai = AIStreamReconciler(room_id, user, backend, self.buffer)
        self.channel = RealtimeChannelAdapter(
            room_id,
            user,
            transport,
            on_message=self._on_message,
            on_message_unsent=self._on_message_unsent,
            on_presence_sync=self._on_presence_sync,
            on_ai_stream_event=self._on_ai_stream_event,
            **(channel_options or {}),
        )

        self._history: list[ChatMessage] = []
        self._timeline: list[ChatMessage] = []
        self._deleted_ids: set[str] = set()
        self._unsending: set[str] = set()
        self._background: set[asyncio.Task] = set()
        self._unsubscribers: list[Callable[[], None]] = []
        self._joined = False

    # ============================================================
    # 查询
    # ============================================================

    @property
    def timeline(self) -> list[ChatMessage]:
        return list(self._timeline)

    @property
    def history(self) -> list[ChatMessage]:
        return list(self._history)

    @property
    def deleted_message_ids(self) -> frozenset[str]:
        return frozenset(self._deleted_ids)

    @property
    def connected(self) -> bool:
        return self.channel.connected

    @property
    def presence(self) -> list[PresenceInfo]:
        return self.channel.presence.sorted_users()

    @property
    def online_count(self) -> int:
        return self.channel.presence.online_count

    def queue_status(self) -> QueueStatus:
        return self.queue.status()

    def is_unsending(self, message_id: str) -> bool:
        return message_id in self._unsending

    def find(self, message_id: str) -> ChatMessage | None:
        for message in self._timeline:
            if message.id == message_id:
                return message
        return None

    # ============================================================
    # 生命周期
    # ============================================================

    async def join(self) -> list[ChatMessage]:
        """加入房间：恢复会话缓存、载入离线队列、订阅通道、补拉历史

        历史补拉失败或超时不会阻塞加入，退化为仅使用实时数据。
        """
        if self._joined:
            return self.timeline
        self._joined = True

        restored = self.engine.restore()
        if restored is not None:
            self._timeline = restored
            self._seed_confirmed(restored)
        self._history = self.engine.cache.get_history(self.room_id, self.user.id)

        self._unsubscribers.append(self.buffer.subscribe(self.refresh))
        self._unsubscribers.append(self.queue.subscribe(self.refresh))
        await self.queue.load()
        self.queue.start()
        self.channel.start()

        await self._load_history()
        self.refresh()

        if self.queue.status().pending and self.connectivity.is_online:
            self.queue.schedule_drain()

        log.info(
            "room_joined",
            room_id=self.room_id,
            user_id=self.user.id,
            history_count=len(self._history),
        )
        return self.timeline

    def _seed_confirmed(self, restored: list[ChatMessage]) -> None:
        """用缓存时间线中的已确认条目填充确认池，保留会话内收到的广播与墓碑

        未确认条目不恢复：排队消息由离线队列重新载入。
        """
        for message in restored:
            if not message.is_confirmed:
                continue
            self.buffer.put_confirmed(message)
            if message.is_deleted:
                self._deleted_ids.add(message.id)
                if message.client_msg_id is not None:
                    self._deleted_ids.add(message.client_msg_id)

    async def _load_history(self) -> None:
        try:
            async with asyncio.timeout(self._history_timeout_s):
                result = await self._backend.fetch_history(self.room_id, self.user.id)
        except TimeoutError:
            log.warning(
                "history_fetch_timeout",
                room_id=self.room_id,
                timeout_s=self._history_timeout_s,
            )
            return
        except ApiError as e:
            log.warning("history_fetch_failed", room_id=self.room_id, error=str(e))
            return

        # caught_up 表示没有新消息，保留已有历史
        if result.kind == HistoryKind.CAUGHT_UP:
            return
        self._history = list(result.messages)
        self.engine.cache.set_history(self.room_id, self.user.id, self._history)

    async def leave(self) -> None:
        """离开房间：停止通道与队列，中止进行中的 AI 请求

        会话缓存保留，下次 join 时直接恢复时间线。
        """
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers.clear()

        for request in self.ai.active:
            self.ai.abort(request)
        for task in list(self._background):
            task.cancel()
        await asyncio.gather(*self._background, return_exceptions=True)
        self._background.clear()

        await self.channel.stop()
        await self.queue.close()
        self._joined = False
        log.info("room_left", room_id=self.room_id, user_id=self.user.id)

    def refresh(self) -> list[ChatMessage]:
        """重新执行完整合并并通知订阅者"""
        self._timeline = self.engine.merge(
            self._history,
            self.buffer.confirmed,
            [*self.buffer.provisional, *self.queue.messages],
            deleted_ids=self._deleted_ids,
        )
        if self.on_timeline_change is not None:
            try:
                self.on_timeline_change(self.timeline)
            except Exception as e:
                log.error("timeline_callback_failed", room_id=self.room_id, error=str(e))
        return self.timeline

    # ============================================================
    # 用户操作
    # ============================================================

    async def send(self, content: str, *, is_private: bool = False) -> ChatMessage:
        return await self.sender.send(content, is_private=is_private)

    async def retry(self, message_id: str) -> ChatMessage:
        return await self.sender.retry(message_id)

    async def clear_failed(self) -> int:
        return await self.queue.clear_failed()

    async def unsend(self, message_id: str) -> UnsendResult:
        """撤回自己发送的消息

        Raises:
            PermissionDeniedError: 消息不存在、不是本人发送、未确认或已撤回
            ChatSyncError: 同一条消息正在撤回中
        """
        message = self.find(message_id)
        if message is None or message.author.id != self.user.id:
            raise PermissionDeniedError("只能撤回自己发送的消息")
        if message.is_deleted or not message.is_confirmed:
            raise PermissionDeniedError("只能撤回已送达且未撤回的消息")
        if message_id in self._unsending:
            raise ChatSyncError(f"消息 {message_id} 正在撤回中", recoverable=False)

        self._unsending.add(message_id)
        try:
            try:
                result = await self._backend.unsend_message(
                    message_id, self.user.id, self.room_id
                )
            except ApiError as e:
                result = UnsendResult(success=False, error=str(e))
        finally:
            self._unsending.discard(message_id)

        if not result.success:
            log.warning(
                "unsend_failed",
                room_id=self.room_id,
                message_id=message_id,
                error=result.error,
            )
            return result

        ids = {message_id}
        if message.client_msg_id is not None:
            ids.add(message.client_msg_id)
        self._deleted_ids.update(ids)
        if not self.buffer.tombstone(
            ids,
            deleted_by=result.deleted_by or self.user.id,
            deleted_at=result.deleted_at,
        ):
            self.refresh()
        log.info("message_unsent", room_id=self.room_id, message_id=message_id)
        return result

    async def ask_ai(self, prompt: str, *, is_private: bool = False) -> AIStreamRequest:
        """向 AI 提问，回复以流式条目进入共享时间线"""
        context = [m for m in self._timeline if not m.is_deleted][-AI_CONTEXT_SIZE:]
        return await self.ai.run(prompt, is_private=is_private, context=context)

    async def draft_ai(self, prompt: str) -> str:
        """生成私密草稿（例如预填回复框），不进入共享时间线"""
        context = [m for m in self._timeline if not m.is_deleted][-AI_CONTEXT_SIZE:]
        request = await self.ai.run(prompt, is_private=True, inject=False, context=context)
        return request.content if request.error is None else ""

    # ============================================================
    # 通道回调
    # ============================================================

    def _on_message(self, message: ChatMessage) -> None:
        if message.room_id and message.room_id != self.room_id:
            return
        # 写入确认池时同 ID 的流式副本一并移除
        self.buffer.put_confirmed(message)
        self.ai.on_broadcast(message)
        self._spawn(self._mark_received(message.id))

    def _on_message_unsent(self, message_id: str) -> None:
        self._deleted_ids.add(message_id)
        if not self.buffer.tombstone({message_id}):
            self.refresh()

    def _on_presence_sync(self, snapshot: dict[str, PresenceInfo]) -> None:
        if self.on_presence_change is not None:
            self.on_presence_change(list(snapshot.values()))

    def _on_ai_stream_event(self, event: RemoteStreamEvent) -> None:
        self.ai.on_remote_event(event)

    async def _mark_received(self, message_id: str) -> None:
        try:
            await self._backend.mark_received(self.user.id, self.room_id, message_id)
        except Exception as e:
            log.warning("mark_received_failed", message_id=message_id, error=str(e))

    def _spawn(self, coro) -> None:
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _send_queued(self, item: QueuedMessage) -> SendResult:
        """离线队列的发送函数：私密消息成功后直接生成确认副本"""
        result = await self._backend.send_message(
            self.room_id,
            self.user.id,
            self.user.display_name,
            item.original_content,
            is_private=item.is_private,
            client_msg_id=item.id,
        )
        if result.success and item.is_private:
            confirmed = item.message.transition(
                DeliveryState.CONFIRMED,
                id=result.id or item.id,
                created_at=result.created_at or item.message.created_at,
                client_msg_id=item.id,
            )
            self.buffer.put_confirmed(confirmed)
        return result
