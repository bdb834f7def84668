"""chatsync Session -- 房间会话运行时

连通性监测、实时通道、离线队列、乐观发送、AI 流协调与会话编排。
"""

from .ai_stream import AIStreamReconciler, AIStreamRequest
from .buffer import MessageBuffer
from .connectivity import ConnectivityMonitor

# 日志
from .logging_config import room_log_context, setup_logging
from .offline_queue import OfflineMessageQueue
from .realtime import RealtimeChannelAdapter

# 会话编排
from .room import RoomSession
from .sender import OptimisticSender

__all__ = [
    # 会话编排
    "RoomSession",
    # 组件
    "ConnectivityMonitor",
    "RealtimeChannelAdapter",
    "OfflineMessageQueue",
    "OptimisticSender",
    "AIStreamReconciler",
    "AIStreamRequest",
    "MessageBuffer",
    # 日志
    "setup_logging",
    "room_log_context",
]
