"""OptimisticSender 单元测试

覆盖：离线入队、公开/私密发送成功、失败与单次发送内重试、
回显先于发送结果到达、手动重试与身份检查。
"""

from datetime import UTC, datetime
from unittest.mock import AsyncMock, MagicMock

import pytest
from chatsync.client.exceptions import ApiUnreachableError
from chatsync.core.exceptions import PermissionDeniedError
from chatsync.core.models.enums import DeliveryState
from chatsync.core.models.message import Author
from chatsync.core.models.payloads import SendResult
from chatsync.session.buffer import MessageBuffer
from chatsync.session.connectivity import ConnectivityMonitor
from chatsync.session.offline_queue import OfflineMessageQueue
from chatsync.session.sender import OptimisticSender

ALICE = Author(id="u1", display_name="Alice")
SERVER_TIME = datetime(2026, 1, 1, 12, 0, 5, tzinfo=UTC)
OK = SendResult(success=True, id="srv-1", created_at=SERVER_TIME)
FAIL = SendResult(success=False, error="boom")


@pytest.fixture
def backend() -> MagicMock:
    backend = MagicMock()
    backend.send_message = AsyncMock(return_value=OK)
    return backend


@pytest.fixture
def connectivity() -> ConnectivityMonitor:
    return ConnectivityMonitor()


@pytest.fixture
def buffer() -> MessageBuffer:
    return MessageBuffer()


@pytest.fixture
def queue(queue_store, connectivity) -> OfflineMessageQueue:
    return OfflineMessageQueue(
        "room-1",
        ALICE.id,
        queue_store,
        AsyncMock(return_value=OK),
        connectivity=connectivity,
        item_delay_s=0,
    )


@pytest.fixture
def sender(backend, buffer, queue, connectivity) -> OptimisticSender:
    return OptimisticSender(
        "room-1", ALICE, backend, buffer, queue, connectivity, retry_delay_s=0
    )


class TestOnlineSend:
    async def test_public_success_waits_for_echo(self, sender, backend, buffer):
        result = await sender.send("  hi  ")

        assert result.delivery == DeliveryState.OPTIMISTIC
        assert result.server_id == "srv-1"
        assert result.content == "hi"
        # 本地副本保留到广播回显到达
        assert buffer.get_provisional(result.id).server_id == "srv-1"
        assert buffer.confirmed == []
        kwargs = backend.send_message.await_args.kwargs
        assert kwargs["client_msg_id"] == result.id
        assert kwargs["is_private"] is False

    async def test_private_success_confirms_directly(self, sender, buffer):
        result = await sender.send("secret", is_private=True)

        assert result.delivery == DeliveryState.CONFIRMED
        assert result.id == "srv-1"
        assert result.created_at == SERVER_TIME
        assert result.requester_id == ALICE.id
        assert buffer.provisional == []
        assert result.client_msg_id is not None
        assert buffer.get_confirmed("srv-1") == result

    async def test_failure_after_attempts(self, sender, backend, buffer):
        backend.send_message.return_value = FAIL

        result = await sender.send("hi")

        assert result.delivery == DeliveryState.FAILED
        assert result.retry_attempts == 2
        assert backend.send_message.await_count == 2
        assert buffer.get_provisional(result.id).is_failed

    async def test_second_attempt_succeeds(self, sender, backend):
        backend.send_message.side_effect = [FAIL, OK]

        result = await sender.send("hi")

        assert result.server_id == "srv-1"
        assert result.retry_attempts == 2

    async def test_api_error_counts_as_failure(self, sender, backend):
        backend.send_message.side_effect = ApiUnreachableError(
            "http://chat.test", ConnectionError("refused")
        )

        result = await sender.send("hi")

        assert result.is_failed

    async def test_unexpected_error_marks_failed(self, sender, backend, buffer):
        backend.send_message.side_effect = ValueError("Expecting value: line 1 column 1")

        result = await sender.send("hi")

        assert result.delivery == DeliveryState.FAILED
        assert backend.send_message.await_count == 2
        assert buffer.get_provisional(result.id).is_failed

    async def test_echo_before_send_result(self, sender, backend, buffer, make_message):
        """广播回显先于发送结果到达时，不会重新插入本地副本"""

        async def send_message(*args, client_msg_id=None, **kwargs):
            buffer.put_confirmed(
                make_message("srv-1", "hi", author_id="u1", client_msg_id=client_msg_id)
            )
            return OK

        backend.send_message.side_effect = send_message

        await sender.send("hi")

        assert buffer.provisional == []
        assert [m.id for m in buffer.confirmed] == ["srv-1"]


class TestOfflineSend:
    async def test_offline_goes_to_queue(self, sender, backend, buffer, queue, connectivity):
        connectivity.set_online(False)

        result = await sender.send("later")

        assert result.delivery == DeliveryState.QUEUED
        assert len(buffer) == 0
        assert [m.id for m in queue.messages] == [result.id]
        backend.send_message.assert_not_awaited()


class TestValidation:
    async def test_cannot_send_as_other_user(self, sender, buffer):
        with pytest.raises(PermissionDeniedError):
            await sender.send("hi", as_user_id="u2")
        assert len(buffer) == 0

    async def test_empty_content(self, sender):
        with pytest.raises(ValueError):
            await sender.send("   ")


class TestRetry:
    async def test_retry_failed_online(self, sender, backend, buffer):
        backend.send_message.return_value = FAIL
        failed = await sender.send("hi")

        backend.send_message.return_value = OK
        result = await sender.retry(failed.id)

        assert result.id == failed.id
        assert result.server_id == "srv-1"
        assert buffer.get_provisional(failed.id).is_optimistic

    async def test_retry_failed_offline_moves_to_queue(
        self, sender, backend, buffer, queue, connectivity
    ):
        backend.send_message.return_value = FAIL
        failed = await sender.send("hi")
        connectivity.set_online(False)

        result = await sender.retry(failed.id)

        assert result.delivery == DeliveryState.QUEUED
        assert buffer.get_provisional(failed.id) is None
        assert queue.get(failed.id) is not None

    async def test_retry_delegates_to_queue(self, sender, queue, connectivity):
        connectivity.set_online(False)
        queued = await sender.send("later")
        connectivity.set_online(True)

        await sender.retry(queued.id)

        assert queue.items == []

    async def test_retry_unknown(self, sender):
        with pytest.raises(KeyError):
            await sender.retry("nope")

    async def test_retry_non_failed(self, sender):
        sent = await sender.send("hi")
        with pytest.raises(KeyError):
            await sender.retry(sent.id)
