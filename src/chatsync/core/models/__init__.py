"""chatsync Core Domain Models -- 公共类型导出

所有公共模型类型从此入口导入。
"""

from .enums import (
    PROVISIONAL_STATES,
    TERMINAL_STATES,
    VALID_TRANSITIONS,
    ChannelStatus,
    ConnectionState,
    DeliveryState,
    HistoryKind,
    StreamPhase,
    validate_transition,
)
from .events import (
    AIStreamEvent,
    RemoteStreamEvent,
    StreamCompleteEvent,
    StreamContentEvent,
    StreamErrorEvent,
    StreamStartEvent,
    ai_stream_event_adapter,
)
from .message import Author, ChatMessage
from .payloads import (
    HistoryResult,
    QueuedMessage,
    QueueStatus,
    SendResult,
    UnsendResult,
)
from .presence import PresenceInfo, PresenceRecord

__all__ = [
    # 枚举
    "DeliveryState",
    "StreamPhase",
    "ConnectionState",
    "HistoryKind",
    "ChannelStatus",
    # 状态机
    "VALID_TRANSITIONS",
    "TERMINAL_STATES",
    "PROVISIONAL_STATES",
    "validate_transition",
    # Message
    "Author",
    "ChatMessage",
    # Presence
    "PresenceRecord",
    "PresenceInfo",
    # AI 流事件
    "AIStreamEvent",
    "StreamStartEvent",
    "StreamContentEvent",
    "StreamCompleteEvent",
    "StreamErrorEvent",
    "RemoteStreamEvent",
    "ai_stream_event_adapter",
    # Payloads
    "SendResult",
    "HistoryResult",
    "UnsendResult",
    "QueuedMessage",
    "QueueStatus",
]
