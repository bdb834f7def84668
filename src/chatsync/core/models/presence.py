"""Presence Domain Model

PresenceRecord 是单个连接发布的原始在线记录（同一用户可能因重连留下多条）；
PresenceInfo 是聚合后对界面暴露的每用户在线信息。
"""

from datetime import UTC, datetime

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator


class PresenceRecord(BaseModel):
    """单个连接的原始在线记录"""

    model_config = ConfigDict(populate_by_name=True)

    user_id: str = Field(validation_alias=AliasChoices("userId", "user_id", "id"))
    display_name: str = Field(
        default="",
        validation_alias=AliasChoices("displayName", "display_name", "name"),
    )
    avatar_url: str | None = Field(
        default=None,
        validation_alias=AliasChoices("avatarUrl", "avatar_url"),
    )
    online: bool = Field(default=True, description="显式离线时为 False")
    online_at: datetime | None = Field(
        default=None,
        validation_alias=AliasChoices("onlineAt", "online_at"),
    )
    last_seen_at: datetime = Field(
        validation_alias=AliasChoices("lastSeenAt", "last_seen_at"),
        description="最近一次心跳时间",
    )

    @field_validator("online_at", "last_seen_at", mode="before")
    @classmethod
    def _parse_epoch(cls, value):
        # 兼容毫秒时间戳
        if isinstance(value, int | float):
            return datetime.fromtimestamp(value / 1000, tz=UTC)
        return value

    @field_validator("online_at", "last_seen_at")
    @classmethod
    def _ensure_aware(cls, value: datetime | None) -> datetime | None:
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value

    def to_wire(self) -> dict:
        """序列化为 track() 发布的 camelCase payload"""
        return {
            "userId": self.user_id,
            "displayName": self.display_name,
            "avatarUrl": self.avatar_url,
            "online": self.online,
            "onlineAt": self.online_at.isoformat() if self.online_at else None,
            "lastSeenAt": self.last_seen_at.isoformat(),
        }


class PresenceInfo(BaseModel):
    """聚合后的单用户在线信息"""

    user_id: str
    display_name: str
    avatar_url: str | None = None
    online_at: datetime | None = None
    last_seen_at: datetime
