"""AI 流事件与实时通道 payload

SSE 流事件（start/content/complete/error）使用 type 字段判别；
content/complete 携带截至当前的完整文本（fullContent），而非增量。
RemoteStreamEvent 为实时通道 ai_stream 广播，供其他参与者镜像公开 AI 回复。
"""

from datetime import datetime
from typing import Annotated, Literal

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, TypeAdapter

from .message import Author


class _StreamEventBase(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class StreamStartEvent(_StreamEventBase):
    """start 事件 payload -- 服务端分配的消息 ID"""

    type: Literal["start"] = "start"
    message_id: str = Field(alias="messageId")
    author: Author | None = Field(
        default=None,
        validation_alias=AliasChoices("author", "user"),
    )


class StreamContentEvent(_StreamEventBase):
    """content 事件 payload -- 截至当前的完整文本"""

    type: Literal["content"] = "content"
    message_id: str = Field(alias="messageId")
    full_content: str = Field(alias="fullContent")


class StreamCompleteEvent(_StreamEventBase):
    """complete 事件 payload -- 最终文本与持久化时间"""

    type: Literal["complete"] = "complete"
    message_id: str = Field(alias="messageId")
    full_content: str = Field(alias="fullContent")
    created_at: datetime | None = Field(default=None, alias="createdAt")


class StreamErrorEvent(_StreamEventBase):
    """error 事件 payload"""

    type: Literal["error"] = "error"
    message: str = Field(
        default="",
        validation_alias=AliasChoices("message", "error"),
    )


AIStreamEvent = Annotated[
    StreamStartEvent | StreamContentEvent | StreamCompleteEvent | StreamErrorEvent,
    Field(discriminator="type"),
]

ai_stream_event_adapter: TypeAdapter[AIStreamEvent] = TypeAdapter(AIStreamEvent)


class RemoteStreamEvent(BaseModel):
    """实时通道 ai_stream 广播 payload"""

    model_config = ConfigDict(populate_by_name=True)

    event_type: Literal["start", "content", "error"] = Field(alias="eventType")
    stream_id: str = Field(alias="streamId")
    room_id: str = Field(default="", alias="roomId")
    requester_id: str = Field(default="", alias="requesterId")
    is_private: bool = Field(default=False, alias="isPrivate")
    author: Author = Field(validation_alias=AliasChoices("user", "author"))
    created_at: datetime | None = Field(default=None, alias="createdAt")
    full_content: str = Field(default="", alias="fullContent")
