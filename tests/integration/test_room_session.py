"""RoomSession 集成测试

两个用户的会话共享同一个 InMemoryRealtimeHub，FakeChatBackend
模拟后端：公开消息持久化后向房间广播，撤回广播 message_unsent，
AI 流在 complete 前广播持久化后的公开回复。
"""

import asyncio
from datetime import UTC, datetime, timedelta

import pytest
import pytest_asyncio
from chatsync.client.memory_transport import InMemoryRealtimeHub
from chatsync.core.cache import SessionCache
from chatsync.core.config import DELETED_PLACEHOLDER
from chatsync.core.exceptions import PermissionDeniedError
from chatsync.core.models.enums import DeliveryState, HistoryKind
from chatsync.core.models.events import (
    StreamCompleteEvent,
    StreamContentEvent,
    StreamStartEvent,
)
from chatsync.core.models.message import Author, ChatMessage
from chatsync.core.models.payloads import HistoryResult, SendResult, UnsendResult
from chatsync.session.connectivity import ConnectivityMonitor
from chatsync.session.room import RoomSession

ROOM = "room-1"
ALICE = Author(id="u1", display_name="Alice")
BOB = Author(id="u2", display_name="Bob")
AI = Author(id="ai-assistant", display_name="AI Assistant")


class FakeChatBackend:
    def __init__(self, hub: InMemoryRealtimeHub) -> None:
        self.hub = hub
        self.history_kind = HistoryKind.CAUGHT_UP
        self.history: list[ChatMessage] = []
        self.history_delay_s = 0.0
        self.fail_send = False
        self.echo_client_id = True
        self.owners: dict[str, str] = {}
        self.sent: list[dict] = []
        self.received: list[tuple[str, str]] = []
        self._seq = 0

    def _next_id(self, prefix: str = "srv") -> str:
        self._seq += 1
        return f"{prefix}-{self._seq}"

    async def fetch_history(self, room_id: str, user_id: str) -> HistoryResult:
        if self.history_delay_s:
            await asyncio.sleep(self.history_delay_s)
        return HistoryResult(kind=self.history_kind, messages=list(self.history))

    async def send_message(
        self,
        room_id,
        user_id,
        username,
        content,
        *,
        is_private=False,
        client_msg_id=None,
    ) -> SendResult:
        if self.fail_send:
            return SendResult(success=False, error="Failed to send message")

        server_id = self._next_id()
        created_at = datetime.now(UTC)
        self.owners[server_id] = user_id
        self.sent.append({"id": server_id, "content": content, "is_private": is_private})
        if not is_private:
            payload = {
                "id": server_id,
                "content": content,
                "user": {"id": user_id, "name": username},
                "createdAt": created_at.isoformat(),
                "roomId": room_id,
            }
            if self.echo_client_id:
                payload["clientMsgId"] = client_msg_id
            await self.hub.broadcast(room_id, "message", payload)
        return SendResult(success=True, id=server_id, created_at=created_at)

    async def unsend_message(self, message_id, user_id, room_id) -> UnsendResult:
        if self.owners.get(message_id) != user_id:
            return UnsendResult(success=False, error="You can only unsend your own messages")
        await self.hub.broadcast(room_id, "message_unsent", {"messageId": message_id})
        return UnsendResult(success=True, deleted_by=user_id, deleted_at=datetime.now(UTC))

    async def mark_received(self, user_id, room_id, message_id) -> None:
        self.received.append((user_id, message_id))

    def stream_ai(self, room_id, user_id, message, *, is_private=False, context=None):
        return self._stream(room_id, user_id, is_private)

    async def _stream(self, room_id, user_id, is_private):
        server_id = self._next_id("ai")
        yield StreamStartEvent(message_id=server_id, author=AI)
        if not is_private:
            await self.hub.broadcast(
                room_id,
                "ai_stream",
                {
                    "eventType": "start",
                    "streamId": server_id,
                    "roomId": room_id,
                    "requesterId": user_id,
                    "user": {"id": AI.id, "name": AI.display_name},
                },
            )
        yield StreamContentEvent(message_id=server_id, full_content="Hel")
        yield StreamContentEvent(message_id=server_id, full_content="Hello")
        created_at = datetime.now(UTC)
        if not is_private:
            await self.hub.broadcast(
                room_id,
                "message",
                {
                    "id": server_id,
                    "content": "Hello",
                    "user": {"id": AI.id, "name": AI.display_name},
                    "createdAt": created_at.isoformat(),
                    "roomId": room_id,
                    "isAI": True,
                },
            )
        yield StreamCompleteEvent(message_id=server_id, full_content="Hello", created_at=created_at)


@pytest.fixture
def hub() -> InMemoryRealtimeHub:
    return InMemoryRealtimeHub()


@pytest.fixture
def backend(hub) -> FakeChatBackend:
    return FakeChatBackend(hub)


@pytest_asyncio.fixture
async def sessions(hub, backend, queue_store):
    created: list[RoomSession] = []

    def factory(user: Author, **kwargs) -> RoomSession:
        kwargs.setdefault("history_timeout_s", 1.0)
        session = RoomSession(
            ROOM,
            user,
            backend,
            hub,
            queue_store,
            channel_options={
                "heartbeat_interval_s": 0.05,
                "prune_interval_s": 0.1,
                "reconnect_delay_s": 0.01,
            },
            queue_options={"drain_delay_s": 0.01, "item_delay_s": 0},
            sender_options={"retry_delay_s": 0},
            **kwargs,
        )
        created.append(session)
        return session

    yield factory
    for session in created:
        await session.leave()


async def _join_all(wait_until, *sessions: RoomSession) -> None:
    for session in sessions:
        await session.join()
    await wait_until(lambda: all(s.connected for s in sessions))


def _by_content(session: RoomSession, content: str) -> list[ChatMessage]:
    return [m for m in session.timeline if m.content == content]


class TestSend:
    async def test_public_message_appears_once_for_everyone(self, sessions, backend, wait_until):
        alice, bob = sessions(ALICE), sessions(BOB)
        await _join_all(wait_until, alice, bob)

        await alice.send("hi")

        for session in (alice, bob):
            (message,) = _by_content(session, "hi")
            assert message.id == "srv-1"
            assert message.is_confirmed
        await wait_until(lambda: len(backend.received) == 2)
        assert sorted(backend.received) == [("u1", "srv-1"), ("u2", "srv-1")]

    async def test_echo_without_client_id_still_deduplicated(self, sessions, backend, wait_until):
        backend.echo_client_id = False
        alice = sessions(ALICE)
        await _join_all(wait_until, alice)

        await alice.send("hi")

        (message,) = _by_content(alice, "hi")
        assert message.id == "srv-1"

    async def test_private_message_only_for_sender(self, sessions, wait_until):
        alice, bob = sessions(ALICE), sessions(BOB)
        await _join_all(wait_until, alice, bob)

        await alice.send("secret", is_private=True)

        (message,) = _by_content(alice, "secret")
        assert message.is_confirmed
        assert _by_content(bob, "secret") == []

    async def test_failed_send_then_retry(self, sessions, backend, wait_until):
        alice = sessions(ALICE)
        await _join_all(wait_until, alice)
        backend.fail_send = True

        failed = await alice.send("hi")
        (message,) = _by_content(alice, "hi")
        assert message.delivery == DeliveryState.FAILED

        backend.fail_send = False
        await alice.retry(failed.id)

        (message,) = _by_content(alice, "hi")
        assert message.is_confirmed

    async def test_timeline_callback(self, sessions, wait_until):
        snapshots: list[list[ChatMessage]] = []
        alice = sessions(ALICE, on_timeline_change=snapshots.append)
        await _join_all(wait_until, alice)

        await alice.send("hi")

        # 乐观副本先于确认副本出现
        states = [m.delivery for snap in snapshots for m in snap if m.content == "hi"]
        assert states[0] == DeliveryState.OPTIMISTIC
        assert states[-1] == DeliveryState.CONFIRMED


class TestOffline:
    async def test_queued_while_offline_then_drained(self, sessions, backend, wait_until):
        connectivity = ConnectivityMonitor(initial_online=False)
        alice = sessions(ALICE, connectivity=connectivity)
        bob = sessions(BOB)
        await _join_all(wait_until, alice, bob)

        await alice.send("later")

        (message,) = _by_content(alice, "later")
        assert message.delivery == DeliveryState.QUEUED
        assert alice.queue_status().pending == 1
        assert backend.sent == []

        connectivity.set_online(True)

        await wait_until(lambda: alice.queue_status().total_queued == 0)
        (message,) = _by_content(alice, "later")
        assert message.is_confirmed
        assert len(_by_content(bob, "later")) == 1

    async def test_queue_survives_restart(self, sessions, backend, wait_until):
        connectivity = ConnectivityMonitor(initial_online=False)
        first = sessions(ALICE, connectivity=connectivity)
        await _join_all(wait_until, first)
        await first.send("later")
        await first.leave()

        second = sessions(ALICE)
        await second.join()

        await wait_until(lambda: [m["content"] for m in backend.sent] == ["later"])
        await wait_until(lambda: second.queue_status().total_queued == 0)


class TestUnsend:
    async def test_unsend_tombstones_for_everyone(self, sessions, wait_until):
        alice, bob = sessions(ALICE), sessions(BOB)
        await _join_all(wait_until, alice, bob)
        await alice.send("oops")

        result = await alice.unsend("srv-1")

        assert result.success
        for session in (alice, bob):
            message = session.find("srv-1")
            assert message.is_deleted
            assert message.content == DELETED_PLACEHOLDER
        assert _by_content(alice, "oops") == []

    async def test_cannot_unsend_others_message(self, sessions, wait_until):
        alice, bob = sessions(ALICE), sessions(BOB)
        await _join_all(wait_until, alice, bob)
        await alice.send("mine")

        with pytest.raises(PermissionDeniedError):
            await bob.unsend("srv-1")

        assert not bob.find("srv-1").is_deleted

    async def test_cannot_unsend_twice(self, sessions, wait_until):
        alice = sessions(ALICE)
        await _join_all(wait_until, alice)
        await alice.send("oops")
        await alice.unsend("srv-1")

        with pytest.raises(PermissionDeniedError):
            await alice.unsend("srv-1")


class TestAskAI:
    async def test_public_reply_shared(self, sessions, wait_until):
        alice, bob = sessions(ALICE), sessions(BOB)
        await _join_all(wait_until, alice, bob)

        await alice.ask_ai("hello AI")

        for session in (alice, bob):
            (reply,) = [m for m in session.timeline if m.is_ai]
            assert reply.content == "Hello"
            assert reply.is_confirmed
        assert not alice.ai.is_streaming

    async def test_private_reply_hidden_from_others(self, sessions, wait_until):
        alice, bob = sessions(ALICE), sessions(BOB)
        await _join_all(wait_until, alice, bob)

        await alice.ask_ai("just me", is_private=True)

        (reply,) = [m for m in alice.timeline if m.is_ai]
        assert reply.is_private
        assert [m for m in bob.timeline if m.is_ai] == []

    async def test_draft_stays_out_of_timeline(self, sessions, wait_until):
        alice = sessions(ALICE)
        await _join_all(wait_until, alice)

        draft = await alice.draft_ai("suggest a reply")

        assert draft == "Hello"
        assert alice.timeline == []


class TestJoin:
    async def test_history_merged_with_live(self, sessions, backend, wait_until):
        backend.history_kind = HistoryKind.RECENT
        backend.history = [
            ChatMessage(
                id="h1",
                content="earlier",
                author=Author(id="u3", display_name="Carol"),
                created_at=datetime.now(UTC) - timedelta(minutes=5),
                room_id=ROOM,
            )
        ]
        alice = sessions(ALICE)
        await _join_all(wait_until, alice)

        await alice.send("now")

        assert [m.content for m in alice.timeline] == ["earlier", "now"]

    async def test_history_timeout_does_not_block(self, sessions, backend, wait_until):
        backend.history_kind = HistoryKind.RECENT
        backend.history_delay_s = 1.0
        alice = sessions(ALICE, history_timeout_s=0.05)

        timeline = await asyncio.wait_for(alice.join(), timeout=0.5)

        assert timeline == []
        await wait_until(lambda: alice.connected)

    async def test_caught_up_keeps_cached_history(self, sessions, backend, wait_until, make_message):
        cache = SessionCache()
        backend.history_kind = HistoryKind.MISSED
        backend.history = [make_message("h1", "earlier", author_id="u3")]
        first = sessions(ALICE, cache=cache)
        await first.join()
        await first.leave()

        backend.history_kind = HistoryKind.CAUGHT_UP
        backend.history = []
        second = sessions(ALICE, cache=cache)
        timeline = await second.join()

        assert [m.id for m in timeline] == ["h1"]

    async def test_rejoin_restores_live_messages(self, sessions, backend, wait_until):
        cache = SessionCache()
        backend.history_kind = HistoryKind.CAUGHT_UP
        alice, bob = sessions(ALICE, cache=cache), sessions(BOB)
        await _join_all(wait_until, alice, bob)
        await bob.send("live one")
        await bob.send("gone")
        await bob.unsend("srv-2")
        assert [m.id for m in alice.timeline] == ["srv-1", "srv-2"]
        await alice.leave()

        again = sessions(ALICE, cache=cache)
        timeline = await again.join()

        assert [m.id for m in timeline] == ["srv-1", "srv-2"]
        assert timeline[0].content == "live one"
        assert timeline[1].is_deleted
        assert "srv-2" in again.deleted_message_ids

    async def test_presence_viewer_first(self, sessions, wait_until):
        presence_updates: list[list] = []
        bob = sessions(BOB, on_presence_change=presence_updates.append)
        alice = sessions(ALICE)
        await _join_all(wait_until, bob, alice)

        await wait_until(lambda: bob.online_count == 2)

        assert [u.display_name for u in bob.presence] == ["Bob", "Alice"]
        assert presence_updates
