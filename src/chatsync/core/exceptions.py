"""Core 异常体系

状态机非法流转、调用方权限前置检查失败等。
"""


class ChatSyncError(Exception):
    """chatsync 基础异常"""

    def __init__(self, message: str, recoverable: bool = True) -> None:
        """
        Args:
            message: 错误描述
            recoverable: 是否可通过重试或重新订阅恢复
        """
        super().__init__(message)
        self.recoverable = recoverable


class InvalidTransitionError(ChatSyncError):
    """投递状态非法流转（例如 CONFIRMED 回退为 OPTIMISTIC）"""

    def __init__(self, message_id: str, from_state: str, to_state: str) -> None:
        super().__init__(
            f"消息 {message_id} 不能从 {from_state} 流转到 {to_state}",
            recoverable=False,
        )
        self.message_id = message_id
        self.from_state = from_state
        self.to_state = to_state


class PermissionDeniedError(ChatSyncError):
    """调用方权限检查失败（撤回他人消息、冒充他人发送）

    在任何本地乐观变更之前抛出，不是可恢复状态。
    """

    def __init__(self, message: str) -> None:
        super().__init__(message, recoverable=False)
