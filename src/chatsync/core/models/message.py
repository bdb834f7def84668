"""ChatMessage Domain Model

时间线的基本单元。四个来源（历史补拉、本地乐观、实时广播、AI 流）
产生的消息统一为此格式。字段名使用 snake_case，
wire 别名对齐后端 camelCase JSON，作者在 wire 上为 user: {id, name, avatar_url}。
"""

from datetime import UTC, datetime

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator

from ..config import DELETED_PLACEHOLDER
from ..exceptions import InvalidTransitionError
from .enums import PROVISIONAL_STATES, DeliveryState, validate_transition


class Author(BaseModel):
    """消息作者"""

    model_config = ConfigDict(populate_by_name=True)

    id: str = Field(description="用户 ID")
    display_name: str = Field(
        validation_alias=AliasChoices("name", "displayName", "display_name"),
        serialization_alias="name",
        description="显示名称",
    )
    avatar_url: str | None = Field(
        default=None,
        validation_alias=AliasChoices("avatar_url", "avatarUrl"),
        description="头像地址",
    )


class ChatMessage(BaseModel):
    """ChatMessage 数据模型

    合并引擎只组合快照，不修改消息；所有变更通过 model_copy 产生新实例。
    消息只会软删除（墓碑），业务逻辑从不物理删除。
    """

    model_config = ConfigDict(populate_by_name=True)

    id: str = Field(description="消息 ID，本地消息初始为客户端生成的 ULID")
    content: str = Field(default="", description="文本内容，流式生成中可暂时为空")
    author: Author = Field(
        validation_alias=AliasChoices("user", "author"),
        serialization_alias="user",
        description="作者",
    )
    created_at: datetime | None = Field(
        default=None,
        alias="createdAt",
        description="创建时间，确认后为服务端时间，乐观态为客户端时间",
    )
    room_id: str = Field(
        default="",
        validation_alias=AliasChoices("roomId", "channelId", "room_id"),
        serialization_alias="roomId",
        description="所属房间",
    )

    is_ai: bool = Field(default=False, alias="isAI", description="是否 AI 生成")
    is_private: bool = Field(default=False, alias="isPrivate", description="是否私密")
    requester_id: str | None = Field(
        default=None,
        alias="requesterId",
        description="私密 AI 回复的请求者",
    )

    is_deleted: bool = Field(default=False, alias="isDeleted", description="是否已撤回")
    deleted_at: datetime | None = Field(default=None, alias="deletedAt")
    deleted_by: str | None = Field(default=None, alias="deletedBy")

    delivery: DeliveryState = Field(
        default=DeliveryState.CONFIRMED,
        description="投递状态，wire 上收到的消息默认为已确认",
    )
    client_msg_id: str | None = Field(
        default=None,
        alias="clientMsgId",
        description="关联到发起该消息的乐观副本 ID",
    )
    server_id: str | None = Field(
        default=None,
        alias="serverId",
        description="公开消息发送成功后服务端返回的 ID（乐观副本保留）",
    )
    retry_attempts: int = Field(default=0, ge=0, description="已尝试次数")

    @field_validator("created_at", "deleted_at")
    @classmethod
    def _ensure_aware(cls, value: datetime | None) -> datetime | None:
        # 统一为带时区时间，避免 naive/aware 混合比较
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value

    @property
    def is_optimistic(self) -> bool:
        return self.delivery == DeliveryState.OPTIMISTIC

    @property
    def is_acknowledged(self) -> bool:
        """公开消息已被服务端持久化，但广播回显尚未到达"""
        return self.delivery == DeliveryState.OPTIMISTIC and self.server_id is not None

    @property
    def is_queued(self) -> bool:
        return self.delivery == DeliveryState.QUEUED

    @property
    def is_retrying(self) -> bool:
        return self.delivery == DeliveryState.RETRYING

    @property
    def is_failed(self) -> bool:
        return self.delivery == DeliveryState.FAILED

    @property
    def is_streaming(self) -> bool:
        return self.delivery == DeliveryState.STREAMING

    @property
    def is_confirmed(self) -> bool:
        return self.delivery == DeliveryState.CONFIRMED

    @property
    def is_provisional(self) -> bool:
        """尚未确认，可被确认副本替换"""
        return self.delivery in PROVISIONAL_STATES

    def transition(self, to_state: DeliveryState, **update) -> "ChatMessage":
        """按状态机流转到目标状态，返回新实例

        Raises:
            InvalidTransitionError: 流转不合法
        """
        if not validate_transition(self.delivery, to_state):
            raise InvalidTransitionError(self.id, self.delivery, to_state)
        return self.model_copy(update={**update, "delivery": to_state})

    def tombstone(
        self,
        deleted_by: str | None = None,
        deleted_at: datetime | None = None,
    ) -> "ChatMessage":
        """生成软删除副本，保留在时间线中以稳定位置锚点"""
        if self.is_deleted:
            return self
        return self.model_copy(
            update={
                "is_deleted": True,
                "content": DELETED_PLACEHOLDER,
                "deleted_at": deleted_at or self.deleted_at,
                "deleted_by": deleted_by or self.deleted_by,
            }
        )

    def visible_to(self, user_id: str) -> bool:
        """私密消息仅对请求者和作者可见"""
        if not self.is_private:
            return True
        return user_id in (self.requester_id, self.author.id)

    def to_wire(self) -> dict:
        """序列化为后端 camelCase JSON"""
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)
