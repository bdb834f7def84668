"""枚举定义

包含消息投递状态机 DeliveryState、AI 流阶段 StreamPhase、
实时通道连接状态 ConnectionState、历史补拉结果类型 HistoryKind，
以及 VALID_TRANSITIONS 合法流转映射和 TERMINAL_STATES 终态集合。
"""

from enum import StrEnum


class DeliveryState(StrEnum):
    """消息投递状态 -- 单一标签替代多个布尔标记

    状态只能向前流转，已确认的消息永远不会回退为乐观态。
    """

    # 本地乐观渲染，等待服务端确认
    OPTIMISTIC = "optimistic"
    # 离线时进入持久化队列
    QUEUED = "queued"
    # 队列中正在重发（即界面上的 pending）
    RETRYING = "retrying"
    # 发送失败，需用户手动重试
    FAILED = "failed"
    # 服务端确认（广播回显或私密发送直接返回）
    CONFIRMED = "confirmed"
    # AI 回复生成中
    STREAMING = "streaming"


# 合法状态流转
VALID_TRANSITIONS: dict[DeliveryState, set[DeliveryState]] = {
    DeliveryState.OPTIMISTIC: {DeliveryState.CONFIRMED, DeliveryState.FAILED},
    DeliveryState.QUEUED: {DeliveryState.RETRYING, DeliveryState.FAILED},
    DeliveryState.RETRYING: {
        DeliveryState.CONFIRMED,
        DeliveryState.QUEUED,
        DeliveryState.FAILED,
    },
    # 仅用户显式重试
    DeliveryState.FAILED: {DeliveryState.RETRYING, DeliveryState.OPTIMISTIC},
    # 公开流完成后等待广播回显（OPTIMISTIC），私密流完成即确认
    DeliveryState.STREAMING: {DeliveryState.OPTIMISTIC, DeliveryState.CONFIRMED},
    # 终态不可再流转
    DeliveryState.CONFIRMED: set(),
}

TERMINAL_STATES: set[DeliveryState] = {DeliveryState.CONFIRMED}

# 尚未被服务端确认的状态，合并时可被确认副本替换
PROVISIONAL_STATES: set[DeliveryState] = {
    DeliveryState.OPTIMISTIC,
    DeliveryState.QUEUED,
    DeliveryState.RETRYING,
    DeliveryState.FAILED,
    DeliveryState.STREAMING,
}


class StreamPhase(StrEnum):
    """单个 AI 请求的生命周期阶段"""

    IDLE = "idle"
    AWAITING_START = "awaiting_start"
    STREAMING = "streaming"
    FINALIZING = "finalizing"
    # 公开回复：等待广播副本替换本地条目
    AWAITING_ECHO = "awaiting_echo"
    DONE = "done"
    ERRORED = "errored"


class ConnectionState(StrEnum):
    """实时通道连接状态机"""

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    # 心跳开始丢失，尚未达到重连阈值
    DEGRADED = "degraded"
    RECONNECTING = "reconnecting"


class HistoryKind(StrEnum):
    """历史补拉结果类型"""

    MISSED = "missed"
    CAUGHT_UP = "caught_up"
    RECENT = "recent"


class ChannelStatus(StrEnum):
    """通道系统事件状态（来自订阅原语）"""

    SUBSCRIBED = "SUBSCRIBED"
    CHANNEL_ERROR = "CHANNEL_ERROR"
    TIMED_OUT = "TIMED_OUT"
    CLOSED = "CLOSED"


def validate_transition(from_state: DeliveryState, to_state: DeliveryState) -> bool:
    """验证投递状态流转是否合法

    Args:
        from_state: 当前状态
        to_state: 目标状态

    Returns:
        True 如果流转合法，否则 False
    """
    allowed = VALID_TRANSITIONS.get(from_state, set())
    return to_state in allowed
