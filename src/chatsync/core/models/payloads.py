"""外部协作方的返回值与离线队列记录

SendResult / HistoryResult / UnsendResult 为后端接口的结构化返回；
QueuedMessage 为离线队列持久化格式；QueueStatus 供界面展示排队提示。
"""

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field

from .enums import HistoryKind
from .message import ChatMessage


class SendResult(BaseModel):
    """sendMessage 返回"""

    success: bool
    id: str | None = Field(default=None, description="服务端持久化 ID")
    created_at: datetime | None = Field(default=None, description="服务端时间戳")
    error: str = Field(default="")


class HistoryResult(BaseModel):
    """fetchHistory 返回"""

    kind: HistoryKind
    messages: list[ChatMessage] = Field(default_factory=list)


class UnsendResult(BaseModel):
    """unsendMessage 返回"""

    success: bool
    deleted_at: datetime | None = None
    deleted_by: str | None = None
    error: str = Field(default="")


class QueuedMessage(BaseModel):
    """离线队列记录 -- 以 (room, user) 为键整体持久化"""

    model_config = ConfigDict(populate_by_name=True)

    message: ChatMessage
    original_content: str = Field(alias="originalContent", description="原始未发送内容")
    is_private: bool = Field(default=False, alias="isPrivate")
    attempts: int = Field(default=0, ge=0, description="已失败次数")
    queued_at: float = Field(alias="queuedAt", description="入队时间（毫秒时间戳）")

    @property
    def id(self) -> str:
        return self.message.id


class QueueStatus(BaseModel):
    """队列状态 -- 例如 "3 条消息等待发送" """

    total_queued: int = 0
    pending: int = 0
    failed: int = 0
    is_processing: bool = False
