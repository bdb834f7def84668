"""chatsync Client -- 外部协作方接入层

聊天后端 HTTP 客户端、SSE 帧解析、实时通道订阅原语的公开接口导出。
"""

# 核心组件
from .api import ChatApiClient

# 配置
from .config import ClientConfig, load_client_config

# 异常
from .exceptions import ApiError, ApiUnreachableError, HistoryTimeoutError
from .memory_transport import HubSubscription, InMemoryRealtimeHub

# 协议
from .protocols import ChannelHandlers, ChatBackend, RealtimeTransport, Subscription
from .sse import iter_sse_events, parse_sse_line

__all__ = [
    # 核心组件
    "ChatApiClient",
    "InMemoryRealtimeHub",
    "HubSubscription",
    "iter_sse_events",
    "parse_sse_line",
    # 协议
    "ChatBackend",
    "RealtimeTransport",
    "Subscription",
    "ChannelHandlers",
    # 配置
    "ClientConfig",
    "load_client_config",
    # 异常
    "ApiError",
    "ApiUnreachableError",
    "HistoryTimeoutError",
]
