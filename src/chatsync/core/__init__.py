"""chatsync Core -- 领域模型与时间线协调

core 的公开接口导出。
"""

# 缓存与合并
from .cache import SessionCache
from .exceptions import ChatSyncError, InvalidTransitionError, PermissionDeniedError
from .merge import MessageMergeEngine, apply_tombstones, merge_messages

# 在线状态
from .presence import PresenceAggregator, compute_presence

__all__ = [
    # 缓存与合并
    "SessionCache",
    "MessageMergeEngine",
    "merge_messages",
    "apply_tombstones",
    # 在线状态
    "PresenceAggregator",
    "compute_presence",
    # 异常
    "ChatSyncError",
    "InvalidTransitionError",
    "PermissionDeniedError",
]
