"""外部协作方 Protocol 接口定义

聊天后端（历史/发送/撤回/回执/AI 流）与实时通道订阅原语，
使用 Python Protocol 实现结构化子类型（duck typing），
ChatApiClient 与 InMemoryRealtimeHub 是默认实现，测试可用任意替身。
"""

from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass
from typing import Any, Protocol

from chatsync.core.models.enums import ChannelStatus
from chatsync.core.models.events import AIStreamEvent
from chatsync.core.models.message import ChatMessage
from chatsync.core.models.payloads import HistoryResult, SendResult, UnsendResult


class ChatBackend(Protocol):
    """聊天后端接口"""

    async def fetch_history(self, room_id: str, user_id: str) -> HistoryResult:
        """补拉房间历史，可安全地在每次（重新）加入时调用"""
        ...

    async def send_message(
        self,
        room_id: str,
        user_id: str,
        username: str,
        content: str,
        *,
        is_private: bool = False,
        client_msg_id: str | None = None,
    ) -> SendResult:
        """发送消息，返回持久化 ID/时间戳或失败"""
        ...

    async def unsend_message(
        self,
        message_id: str,
        user_id: str,
        room_id: str,
    ) -> UnsendResult:
        """撤回消息"""
        ...

    async def mark_received(self, user_id: str, room_id: str, message_id: str) -> None:
        """已接收回执（fire-and-forget）"""
        ...

    def stream_ai(
        self,
        room_id: str,
        user_id: str,
        message: str,
        *,
        is_private: bool = False,
        context: list[ChatMessage] | None = None,
    ) -> AsyncIterator[AIStreamEvent]:
        """AI 流式生成，产出 start/content/complete/error 事件"""
        ...


@dataclass
class ChannelHandlers:
    """订阅回调集合 -- 由订阅原语在事件到达时同步调用"""

    # (event, payload)，event 为 message / message_unsent / ai_stream
    on_broadcast: Callable[[str, dict[str, Any]], None]
    # 当前通道内全部在线记录（原始 dict）
    on_presence_sync: Callable[[list[dict[str, Any]]], None]
    on_system_event: Callable[[ChannelStatus], None]


class Subscription(Protocol):
    """单个通道订阅句柄"""

    async def track(self, payload: dict[str, Any]) -> bool:
        """发布/刷新本连接的在线记录，返回是否送达"""
        ...

    async def untrack(self) -> None:
        ...

    async def unsubscribe(self) -> None:
        ...


class RealtimeTransport(Protocol):
    """实时通道订阅原语"""

    async def subscribe(self, room_id: str, handlers: ChannelHandlers) -> Subscription:
        """订阅房间通道；订阅结果通过 on_system_event 通知"""
        ...
