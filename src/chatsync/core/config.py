"""配置常量模块 -- 可通过环境变量覆盖

包含离线队列数据库路径、心跳/重连节奏、重试上限、启发式匹配窗口、
在线状态过期阈值等可配置常量。各组件构造函数均以这些常量为默认值。
"""

import os
from pathlib import Path


def _get_base_dir() -> Path:
    """获取客户端 data 基础目录"""
    return Path(os.environ.get("CHATSYNC_DATA_DIR", "data"))


def get_db_path() -> str:
    """获取离线队列 SQLite 数据库路径"""
    return os.environ.get(
        "CHATSYNC_DB_PATH",
        str(_get_base_dir() / "sqlite" / "chatsync.db"),
    )


def _float_env(name: str, default: str) -> float:
    return float(os.environ.get(name, default))


# 实时通道：在线状态心跳间隔（秒）
HEARTBEAT_INTERVAL_S: float = _float_env("CHATSYNC_HEARTBEAT_INTERVAL_S", "5")

# 实时通道：在线状态强制重算间隔（秒），用于清理非正常断开的对端
PRESENCE_PRUNE_INTERVAL_S: float = _float_env(
    "CHATSYNC_PRESENCE_PRUNE_INTERVAL_S", "15"
)

# 实时通道：连续心跳失败超过该次数即重新订阅
MAX_MISSED_HEARTBEATS: int = int(
    os.environ.get("CHATSYNC_MAX_MISSED_HEARTBEATS", "3")
)

# 实时通道：重新订阅前的等待时间（秒）与指数退避上限
RECONNECT_DELAY_S: float = _float_env("CHATSYNC_RECONNECT_DELAY_S", "3")
RECONNECT_MAX_DELAY_S: float = _float_env("CHATSYNC_RECONNECT_MAX_DELAY_S", "30")

# 离线队列：最大自动重试次数，达到后进入终态 FAILED
QUEUE_MAX_ATTEMPTS: int = int(os.environ.get("CHATSYNC_QUEUE_MAX_ATTEMPTS", "2"))

# 离线队列：网络恢复后延迟排空（秒），等待实时通道稳定
QUEUE_DRAIN_DELAY_S: float = _float_env("CHATSYNC_QUEUE_DRAIN_DELAY_S", "1")

# 离线队列：顺序发送时相邻两条之间的间隔（秒）
QUEUE_ITEM_DELAY_S: float = _float_env("CHATSYNC_QUEUE_ITEM_DELAY_S", "0.5")

# 在线发送：单次发送内的尝试次数与重试间隔（秒）
SEND_MAX_ATTEMPTS: int = int(os.environ.get("CHATSYNC_SEND_MAX_ATTEMPTS", "2"))
SEND_RETRY_DELAY_S: float = _float_env("CHATSYNC_SEND_RETRY_DELAY_S", "1")

# 合并引擎：内容+作者启发式匹配的时间窗口（毫秒）
HEURISTIC_WINDOW_MS: int = int(os.environ.get("CHATSYNC_HEURISTIC_WINDOW_MS", "5000"))

# 在线状态：记录过期阈值（秒）与空快照防抖窗口（秒）
PRESENCE_STALE_S: float = _float_env("CHATSYNC_PRESENCE_STALE_S", "90")
PRESENCE_EMPTY_DEBOUNCE_S: float = _float_env(
    "CHATSYNC_PRESENCE_EMPTY_DEBOUNCE_S", "2.5"
)

# 历史补拉硬超时（秒），超时后仅使用实时数据
HISTORY_TIMEOUT_S: float = _float_env("CHATSYNC_HISTORY_TIMEOUT_S", "5")

# 被撤回消息的占位文本
DELETED_PLACEHOLDER: str = "This message was deleted"

# AI 生成失败时写入时间线的本地错误提示
AI_ERROR_TEXT: str = "Sorry, I encountered an error. Please try again."

# AI 作者的默认身份（服务端 start 事件到达前占位使用）
AI_AUTHOR_ID: str = os.environ.get("CHATSYNC_AI_AUTHOR_ID", "ai-assistant")
AI_AUTHOR_NAME: str = os.environ.get("CHATSYNC_AI_AUTHOR_NAME", "AI Assistant")
