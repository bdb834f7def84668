"""Client 异常体系

连接类错误与业务错误分开，调用方据此决定回滚为失败气泡还是进入离线队列。
"""


class ApiError(Exception):
    """后端 API 基础异常"""

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        recoverable: bool = True,
    ) -> None:
        """
        Args:
            message: 错误描述
            status_code: HTTP 状态码（有响应时）
            recoverable: 是否可通过重试恢复
        """
        super().__init__(message)
        self.status_code = status_code
        self.recoverable = recoverable


class ApiUnreachableError(ApiError):
    """后端不可达（连接失败、超时、DNS 解析失败等）"""

    def __init__(self, base_url: str, original_error: Exception) -> None:
        """
        Args:
            base_url: 尝试连接的后端地址
            original_error: 原始异常
        """
        super().__init__(
            f"聊天后端不可达: {base_url} -- {original_error}",
            recoverable=True,
        )
        self.base_url = base_url
        self.original_error = original_error


class HistoryTimeoutError(ApiError):
    """历史补拉超过硬超时，调用方应退化为仅使用实时数据"""

    def __init__(self, room_id: str, timeout_s: float) -> None:
        super().__init__(
            f"房间 {room_id} 历史补拉超时（{timeout_s}s）",
            recoverable=True,
        )
        self.room_id = room_id
        self.timeout_s = timeout_s
