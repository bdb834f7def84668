"""数据模型单元测试

覆盖 wire 别名解析、墓碑、私密可见性、离线队列记录与在线记录解析。
"""

from datetime import UTC, datetime

import pytest
from chatsync.core.config import DELETED_PLACEHOLDER
from chatsync.core.models import (
    ChatMessage,
    DeliveryState,
    PresenceRecord,
    QueuedMessage,
    RemoteStreamEvent,
    StreamCompleteEvent,
    StreamStartEvent,
    ai_stream_event_adapter,
)
from pydantic import ValidationError


class TestChatMessageWire:
    """ChatMessage 与后端 camelCase JSON 的对应"""

    def test_parse_broadcast_payload(self):
        """广播 payload 解析，默认为已确认"""
        message = ChatMessage.model_validate(
            {
                "id": "s1",
                "content": "hi",
                "user": {"id": "u1", "name": "Alice", "avatar_url": "https://a/1.png"},
                "createdAt": "2026-01-01T12:00:00Z",
                "roomId": "room-1",
                "clientMsgId": "local-1",
                "isPrivate": False,
            }
        )

        assert message.author.display_name == "Alice"
        assert message.author.avatar_url == "https://a/1.png"
        assert message.client_msg_id == "local-1"
        assert message.room_id == "room-1"
        assert message.delivery == DeliveryState.CONFIRMED
        assert message.created_at == datetime(2026, 1, 1, 12, 0, tzinfo=UTC)

    def test_parse_history_channel_id(self):
        """历史消息使用 channelId 表示房间"""
        message = ChatMessage.model_validate(
            {"id": "h1", "content": "x", "user": {"id": "u1", "name": "A"}, "channelId": "room-9"}
        )
        assert message.room_id == "room-9"

    def test_naive_timestamp_becomes_utc(self):
        message = ChatMessage.model_validate(
            {"id": "h1", "user": {"id": "u1", "name": "A"}, "createdAt": "2026-01-01T12:00:00"}
        )
        assert message.created_at.tzinfo is not None

    def test_missing_author_rejected(self):
        with pytest.raises(ValidationError):
            ChatMessage.model_validate({"id": "x", "content": "no author"})

    def test_to_wire_uses_aliases(self, make_message):
        wire = make_message("m1", "hi", client_msg_id="local-1").to_wire()

        assert wire["user"] == {"id": "u1", "name": "U1"}
        assert wire["clientMsgId"] == "local-1"
        assert wire["roomId"] == "room-1"
        assert "serverId" not in wire


class TestTombstone:
    """软删除"""

    def test_tombstone_keeps_position(self, make_message):
        message = make_message("m1", "secret", offset_ms=500)
        deleted = message.tombstone(deleted_by="u1")

        assert deleted.is_deleted is True
        assert deleted.content == DELETED_PLACEHOLDER
        assert deleted.deleted_by == "u1"
        assert deleted.created_at == message.created_at
        assert deleted.id == message.id

    def test_tombstone_idempotent(self, make_message):
        deleted = make_message("m1").tombstone(deleted_by="u1")
        assert deleted.tombstone(deleted_by="u2") is deleted


class TestVisibility:
    """私密消息仅对请求者与作者可见"""

    def test_private_visibility(self, make_message):
        message = make_message(
            "ai-1", "answer", author_id="ai-assistant", is_private=True, requester_id="u1"
        )

        assert message.visible_to("u1") is True
        assert message.visible_to("ai-assistant") is True
        assert message.visible_to("u2") is False

    def test_public_visible_to_all(self, make_message):
        assert make_message("m1").visible_to("anyone") is True


class TestDeliveryProperties:
    def test_acknowledged_requires_server_id(self, make_message):
        optimistic = make_message("m1", delivery=DeliveryState.OPTIMISTIC)
        assert optimistic.is_optimistic and not optimistic.is_acknowledged

        acknowledged = optimistic.model_copy(update={"server_id": "s1"})
        assert acknowledged.is_acknowledged
        assert acknowledged.is_provisional


class TestQueuedMessage:
    def test_parse_persisted_record(self):
        """持久化记录字段为 camelCase"""
        item = QueuedMessage.model_validate(
            {
                "message": {
                    "id": "q1",
                    "content": "offline",
                    "user": {"id": "u1", "name": "A"},
                    "delivery": "queued",
                },
                "originalContent": "offline ",
                "isPrivate": True,
                "attempts": 1,
                "queuedAt": 1767268800000,
            }
        )

        assert item.id == "q1"
        assert item.original_content == "offline "
        assert item.is_private is True
        assert item.message.is_queued


class TestPresenceRecord:
    def test_epoch_ms_timestamps(self):
        record = PresenceRecord.model_validate(
            {"userId": "u1", "displayName": "A", "lastSeenAt": 1767268800000}
        )
        assert record.last_seen_at == datetime(2026, 1, 1, 12, 0, tzinfo=UTC)
        assert record.online is True

    def test_to_wire(self):
        now = datetime(2026, 1, 1, 12, 0, tzinfo=UTC)
        record = PresenceRecord(user_id="u1", display_name="A", online_at=now, last_seen_at=now)
        wire = record.to_wire()

        assert wire["userId"] == "u1"
        assert PresenceRecord.model_validate(wire).last_seen_at == now


class TestStreamEvents:
    def test_discriminated_union(self):
        start = ai_stream_event_adapter.validate_python(
            {"type": "start", "messageId": "s1", "user": {"id": "ai-assistant", "name": "AI"}}
        )
        complete = ai_stream_event_adapter.validate_python(
            {"type": "complete", "messageId": "s1", "fullContent": "done"}
        )

        assert isinstance(start, StreamStartEvent)
        assert start.author.display_name == "AI"
        assert isinstance(complete, StreamCompleteEvent)
        assert complete.full_content == "done"

    def test_unknown_type_rejected(self):
        with pytest.raises(ValidationError):
            ai_stream_event_adapter.validate_python({"type": "delta", "messageId": "s1"})

    def test_remote_stream_event(self):
        event = RemoteStreamEvent.model_validate(
            {
                "eventType": "content",
                "streamId": "s1",
                "requesterId": "u2",
                "user": {"id": "ai-assistant", "name": "AI"},
                "fullContent": "partial",
            }
        )
        assert event.stream_id == "s1"
        assert event.full_content == "partial"
