"""Realtime Channel Adapter -- 房间实时通道

每个房间一个逻辑订阅，复用 message / message_unsent / ai_stream 三类广播
与在线状态同步。连接生命周期由单个监督任务驱动的显式状态机管理：

    DISCONNECTED -> CONNECTING -> CONNECTED <-> DEGRADED
                        ^                          |
                        +------- RECONNECTING <----+

- 订阅成功后发布自身在线记录，每 5 秒心跳重发一次，每 15 秒强制重算在线快照
- 连续心跳失败超过阈值，或通道报告 CHANNEL_ERROR/TIMED_OUT/CLOSED 时，
  拆除订阅并在等待后重新订阅
- 所有故障都在内部处理，调用方只会看到 connected 变化与事件回调
"""

import asyncio
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any

import structlog
from pydantic import ValidationError

from chatsync.client.protocols import ChannelHandlers, RealtimeTransport, Subscription
from chatsync.core.config import (
    HEARTBEAT_INTERVAL_S,
    MAX_MISSED_HEARTBEATS,
    PRESENCE_PRUNE_INTERVAL_S,
    RECONNECT_DELAY_S,
    RECONNECT_MAX_DELAY_S,
)
from chatsync.core.models.enums import ChannelStatus, ConnectionState, DeliveryState
from chatsync.core.models.events import RemoteStreamEvent
from chatsync.core.models.message import Author, ChatMessage
from chatsync.core.models.presence import PresenceInfo, PresenceRecord
from chatsync.core.presence import PresenceAggregator

from .logging_config import room_log_context

log = structlog.get_logger()

# 通道报告这些状态时需要重新订阅
_FAILURE_STATUSES = {
    ChannelStatus.CHANNEL_ERROR,
    ChannelStatus.TIMED_OUT,
    ChannelStatus.CLOSED,
}

MessageCallback = Callable[[ChatMessage], None]
UnsentCallback = Callable[[str], None]
PresenceCallback = Callable[[dict[str, PresenceInfo]], None]
StreamCallback = Callable[[RemoteStreamEvent], None]
ConnectionCallback = Callable[[bool], None]


class RealtimeChannelAdapter:
    """房间实时通道适配器"""

    def __init__(
        self,
        room_id: str,
        user: Author,
        transport: RealtimeTransport,
        *,
        on_message: MessageCallback | None = None,
        on_message_unsent: UnsentCallback | None = None,
        on_presence_sync: PresenceCallback | None = None,
        on_ai_stream_event: StreamCallback | None = None,
        on_connection_change: ConnectionCallback | None = None,
        presence: PresenceAggregator | None = None,
        heartbeat_interval_s: float = HEARTBEAT_INTERVAL_S,
        prune_interval_s: float = PRESENCE_PRUNE_INTERVAL_S,
        max_missed_heartbeats: int = MAX_MISSED_HEARTBEATS,
        reconnect_delay_s: float = RECONNECT_DELAY_S,
        reconnect_max_delay_s: float = RECONNECT_MAX_DELAY_S,
        backoff_factor: float = 1.0,
        subscribe_timeout_s: float = 10.0,
    ) -> None:
        """
        Args:
            room_id: 房间 ID
            user: 当前用户（在线记录发布内容）
            transport: 订阅原语
            presence: 在线状态聚合器，None 时创建默认实例
            heartbeat_interval_s: 心跳间隔
            prune_interval_s: 在线快照强制重算间隔
            max_missed_heartbeats: 连续心跳失败超过该值即重新订阅
            reconnect_delay_s: 重新订阅前的等待时间
            reconnect_max_delay_s: 退避上限
            backoff_factor: 退避倍数，1.0 为固定间隔
            subscribe_timeout_s: 等待订阅结果的超时
        """
        self.room_id = room_id
        self.user = user
        self._transport = transport

        self.on_message = on_message
        self.on_message_unsent = on_message_unsent
        self.on_presence_sync = on_presence_sync
        self.on_ai_stream_event = on_ai_stream_event
        self.on_connection_change = on_connection_change

        self.presence = presence or PresenceAggregator(viewer_id=user.id)

        self._heartbeat_interval_s = heartbeat_interval_s
        self._prune_interval_s = prune_interval_s
        self._max_missed_heartbeats = max_missed_heartbeats
        self._reconnect_delay_s = reconnect_delay_s
        self._reconnect_max_delay_s = reconnect_max_delay_s
        self._backoff_factor = backoff_factor
        self._subscribe_timeout_s = subscribe_timeout_s

        self._state = ConnectionState.DISCONNECTED
        self._signals: asyncio.Queue[ChannelStatus] = asyncio.Queue()
        self._subscription: Subscription | None = None
        self._task: asyncio.Task | None = None
        self._missed_heartbeats = 0
        self._reconnect_attempts = 0
        self._online_at: datetime | None = None

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def connected(self) -> bool:
        return self._state in (ConnectionState.CONNECTED, ConnectionState.DEGRADED)

    @property
    def missed_heartbeats(self) -> int:
        return self._missed_heartbeats

    # ============================================================
    # 生命周期
    # ============================================================

    def start(self) -> None:
        """启动监督任务（幂等）"""
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._run())

    async def stop(self) -> None:
        """停止监督任务并拆除订阅"""
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        await self._teardown()
        self._set_state(ConnectionState.DISCONNECTED)

    def _set_state(self, state: ConnectionState) -> None:
        if state == self._state:
            return
        was_connected = self.connected
        previous = self._state
        self._state = state
        log.debug(
            "channel_state_changed",
            room_id=self.room_id,
            from_state=previous,
            to_state=state,
        )
        if was_connected != self.connected and self.on_connection_change is not None:
            self._invoke(self.on_connection_change, self.connected)

    async def _run(self) -> None:
        with room_log_context(self.room_id, self.user.id):
            await self._supervise()

    async def _supervise(self) -> None:
        while True:
            self._set_state(ConnectionState.CONNECTING)
            if await self._connect():
                self._reconnect_attempts = 0
                await self._serve()

            await self._teardown()
            self._set_state(ConnectionState.RECONNECTING)
            delay = min(
                self._reconnect_delay_s * self._backoff_factor**self._reconnect_attempts,
                self._reconnect_max_delay_s,
            )
            self._reconnect_attempts += 1
            log.info(
                "channel_reconnect_scheduled",
                room_id=self.room_id,
                delay_s=delay,
                attempt=self._reconnect_attempts,
            )
            await asyncio.sleep(delay)

    async def _connect(self) -> bool:
        """订阅通道并等待 SUBSCRIBED，成功后发布在线记录"""
        self._drain_signals()
        handlers = ChannelHandlers(
            on_broadcast=self._handle_broadcast,
            on_presence_sync=self._handle_presence_sync,
            on_system_event=self._handle_system_event,
        )
        try:
            self._subscription = await self._transport.subscribe(self.room_id, handlers)
            async with asyncio.timeout(self._subscribe_timeout_s):
                status = await self._signals.get()
        except TimeoutError:
            log.warning("channel_subscribe_timeout", room_id=self.room_id)
            return False
        except Exception as e:
            log.warning(
                "channel_subscribe_failed",
                room_id=self.room_id,
                error=str(e),
                error_type=type(e).__name__,
            )
            return False

        if status != ChannelStatus.SUBSCRIBED:
            log.warning("channel_subscribe_rejected", room_id=self.room_id, status=status)
            return False

        self._missed_heartbeats = 0
        self._online_at = datetime.now(UTC)
        self._set_state(ConnectionState.CONNECTED)
        log.info("channel_subscribed", room_id=self.room_id)
        await self._heartbeat()
        return True

    async def _serve(self) -> None:
        """已连接状态：在心跳/剪枝定时与通道系统事件之间切换，直到需要重连"""
        loop = asyncio.get_running_loop()
        next_heartbeat = loop.time() + self._heartbeat_interval_s
        next_prune = loop.time() + self._prune_interval_s

        while True:
            timeout = max(0.0, min(next_heartbeat, next_prune) - loop.time())
            try:
                async with asyncio.timeout(timeout):
                    status = await self._signals.get()
            except TimeoutError:
                status = None

            if status is not None:
                if status in _FAILURE_STATUSES:
                    log.warning("channel_failed", room_id=self.room_id, status=status)
                    return
                continue

            now = loop.time()
            if now >= next_heartbeat:
                next_heartbeat = now + self._heartbeat_interval_s
                if not await self._heartbeat():
                    return
            if now >= next_prune:
                next_prune = now + self._prune_interval_s
                self._publish_presence(self.presence.recompute())

    async def _heartbeat(self) -> bool:
        """重发在线记录，返回 False 表示需要重连"""
        ok = False
        if self._subscription is not None:
            try:
                ok = await self._subscription.track(self._presence_payload())
            except Exception as e:
                log.debug("heartbeat_failed", room_id=self.room_id, error=str(e))

        if ok:
            self._missed_heartbeats = 0
            self._set_state(ConnectionState.CONNECTED)
            return True

        self._missed_heartbeats += 1
        log.warning(
            "heartbeat_missed",
            room_id=self.room_id,
            missed=self._missed_heartbeats,
        )
        if self._missed_heartbeats > self._max_missed_heartbeats:
            return False
        self._set_state(ConnectionState.DEGRADED)
        return True

    async def _teardown(self) -> None:
        subscription, self._subscription = self._subscription, None
        if subscription is None:
            return
        try:
            await subscription.untrack()
            await subscription.unsubscribe()
        except Exception as e:
            log.debug("channel_teardown_failed", room_id=self.room_id, error=str(e))

    def _drain_signals(self) -> None:
        while not self._signals.empty():
            self._signals.get_nowait()

    def _presence_payload(self) -> dict[str, Any]:
        now = datetime.now(UTC)
        return PresenceRecord(
            user_id=self.user.id,
            display_name=self.user.display_name,
            avatar_url=self.user.avatar_url,
            online=True,
            online_at=self._online_at or now,
            last_seen_at=now,
        ).to_wire()

    # ============================================================
    # 订阅回调（由订阅原语同步调用）
    # ============================================================

    def _handle_system_event(self, status: ChannelStatus) -> None:
        self._signals.put_nowait(status)

    def _handle_broadcast(self, event: str, payload: dict[str, Any]) -> None:
        if event == "message":
            message = self._parse_message(payload)
            if message is not None and self.on_message is not None:
                self._invoke(self.on_message, message)
        elif event == "message_unsent":
            message_id = payload.get("messageId") if isinstance(payload, dict) else None
            if not message_id:
                log.warning("unsent_payload_malformed", room_id=self.room_id)
                return
            if self.on_message_unsent is not None:
                self._invoke(self.on_message_unsent, str(message_id))
        elif event == "ai_stream":
            try:
                stream_event = RemoteStreamEvent.model_validate(payload)
            except ValidationError as e:
                log.warning(
                    "ai_stream_payload_malformed",
                    room_id=self.room_id,
                    error_count=e.error_count(),
                )
                return
            if self.on_ai_stream_event is not None:
                self._invoke(self.on_ai_stream_event, stream_event)
        else:
            log.debug("broadcast_ignored", room_id=self.room_id, event_name=event)

    def _parse_message(self, payload: dict[str, Any]) -> ChatMessage | None:
        """校验广播消息，缺少内容或作者的 payload 直接丢弃"""
        if not isinstance(payload, dict) or not payload.get("content"):
            log.warning("message_payload_malformed", room_id=self.room_id, reason="content")
            return None
        try:
            message = ChatMessage.model_validate(payload)
        except ValidationError as e:
            log.warning(
                "message_payload_malformed",
                room_id=self.room_id,
                reason="schema",
                error_count=e.error_count(),
            )
            return None
        # 广播到达即为服务端确认
        return message.model_copy(
            update={
                "delivery": DeliveryState.CONFIRMED,
                "room_id": message.room_id or self.room_id,
            }
        )

    def _handle_presence_sync(self, raw_records: list[dict[str, Any]]) -> None:
        records: list[PresenceRecord] = []
        for raw in raw_records:
            try:
                records.append(PresenceRecord.model_validate(raw))
            except ValidationError:
                log.debug("presence_record_skipped", room_id=self.room_id)
        self._publish_presence(self.presence.update(records))

    def _publish_presence(self, snapshot: dict[str, PresenceInfo]) -> None:
        if self.on_presence_sync is not None:
            self._invoke(self.on_presence_sync, snapshot)

    def _invoke(self, callback: Callable[..., None], *args: Any) -> None:
        try:
            callback(*args)
        except Exception as e:
            log.error(
                "channel_callback_failed",
                room_id=self.room_id,
                callback=getattr(callback, "__name__", repr(callback)),
                error=str(e),
                error_type=type(e).__name__,
            )
