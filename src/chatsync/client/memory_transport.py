"""InMemoryRealtimeHub -- 进程内实时通道

RealtimeTransport 的本地实现：每个房间持有一组订阅，
broadcast 同步分发给房间内所有订阅者（包括发送方自身），
track/untrack 后向全体订阅者推送当前在线记录。
用于本地开发与集成测试，fail_* 开关可注入通道故障。
"""

from collections import defaultdict
from typing import Any

import structlog

from chatsync.core.models.enums import ChannelStatus

from .protocols import ChannelHandlers

log = structlog.get_logger()


class HubSubscription:
    """InMemoryRealtimeHub 的订阅句柄"""

    def __init__(
        self,
        hub: "InMemoryRealtimeHub",
        room_id: str,
        handlers: ChannelHandlers,
    ) -> None:
        self._hub = hub
        self.room_id = room_id
        self.handlers = handlers
        self.presence: dict[str, Any] | None = None
        self.closed = False

    async def track(self, payload: dict[str, Any]) -> bool:
        if self.closed or self._hub.fail_track:
            return False
        self.presence = dict(payload)
        self._hub.sync_presence(self.room_id)
        return True

    async def untrack(self) -> None:
        if self.presence is None:
            return
        self.presence = None
        self._hub.sync_presence(self.room_id)

    async def unsubscribe(self) -> None:
        if self.closed:
            return
        self.closed = True
        self._hub.remove(self)


class InMemoryRealtimeHub:
    """实时通道广播器 -- 房间内发布/订阅"""

    def __init__(self) -> None:
        # room_id -> set of HubSubscription
        self._subscribers: dict[str, set[HubSubscription]] = defaultdict(set)
        # 故障注入
        self.fail_subscribe = False
        self.fail_track = False

    async def subscribe(self, room_id: str, handlers: ChannelHandlers) -> HubSubscription:
        """订阅房间通道

        Args:
            room_id: 房间 ID
            handlers: 事件回调

        Returns:
            HubSubscription 句柄，订阅结果通过 on_system_event 通知
        """
        subscription = HubSubscription(self, room_id, handlers)
        if self.fail_subscribe:
            handlers.on_system_event(ChannelStatus.CHANNEL_ERROR)
            return subscription

        self._subscribers[room_id].add(subscription)
        handlers.on_system_event(ChannelStatus.SUBSCRIBED)
        return subscription

    def remove(self, subscription: HubSubscription) -> None:
        room_id = subscription.room_id
        self._subscribers[room_id].discard(subscription)
        if not self._subscribers[room_id]:
            del self._subscribers[room_id]
        if subscription.presence is not None:
            subscription.presence = None
            self.sync_presence(room_id)

    async def broadcast(self, room_id: str, event: str, payload: dict[str, Any]) -> None:
        """向房间内所有订阅者广播事件

        Args:
            room_id: 房间 ID
            event: 事件名（message / message_unsent / ai_stream）
            payload: 事件 payload
        """
        for subscription in list(self._subscribers.get(room_id, set())):
            try:
                subscription.handlers.on_broadcast(event, payload)
            except Exception as e:
                log.warning(
                    "hub_delivery_failed",
                    room_id=room_id,
                    event_name=event,
                    error=str(e),
                )

    def presence_state(self, room_id: str) -> list[dict[str, Any]]:
        """房间内所有已发布的在线记录"""
        return [
            dict(sub.presence)
            for sub in self._subscribers.get(room_id, set())
            if sub.presence is not None
        ]

    def sync_presence(self, room_id: str) -> None:
        """向房间内所有订阅者推送当前在线记录"""
        state = self.presence_state(room_id)
        for subscription in list(self._subscribers.get(room_id, set())):
            subscription.handlers.on_presence_sync(list(state))

    def emit_system(self, room_id: str, status: ChannelStatus) -> None:
        """向房间内所有订阅者推送通道系统事件（故障注入）"""
        for subscription in list(self._subscribers.get(room_id, set())):
            subscription.handlers.on_system_event(status)

    def subscriber_count(self, room_id: str) -> int:
        return len(self._subscribers.get(room_id, set()))
