"""Optimistic Send Pipeline -- 乐观发送

发送者自己的消息立即出现在时间线中，再根据网络结果协调：
- 离线：整体交给离线队列，消息直接标记 QUEUED
- 在线：生成 OPTIMISTIC 消息立即注入，随后发送（单次发送内最多尝试 2 次）
  - 公开消息成功：不生成确认副本，等待广播回显由合并引擎完成替换；
    本地副本记录 server_id，回显缺少 clientMsgId 时仍可确定性匹配
  - 私密消息成功：不会有广播，直接用服务端 ID/时间戳生成确认副本
  - 失败：标记 FAILED，可通过 retry() 重新发送
"""

import asyncio
from datetime import UTC, datetime

import structlog
from ulid import ULID

from chatsync.client.exceptions import ApiError
from chatsync.client.protocols import ChatBackend
from chatsync.core.config import SEND_MAX_ATTEMPTS, SEND_RETRY_DELAY_S
from chatsync.core.exceptions import PermissionDeniedError
from chatsync.core.models.enums import DeliveryState
from chatsync.core.models.message import Author, ChatMessage
from chatsync.core.models.payloads import SendResult

from .buffer import MessageBuffer
from .connectivity import ConnectivityMonitor
from .offline_queue import OfflineMessageQueue

log = structlog.get_logger()


class OptimisticSender:
    """乐观发送管线"""

    def __init__(
        self,
        room_id: str,
        user: Author,
        backend: ChatBackend,
        buffer: MessageBuffer,
        queue: OfflineMessageQueue,
        connectivity: ConnectivityMonitor,
        *,
        max_attempts: int = SEND_MAX_ATTEMPTS,
        retry_delay_s: float = SEND_RETRY_DELAY_S,
    ) -> None:
        self.room_id = room_id
        self.user = user
        self._backend = backend
        self._buffer = buffer
        self._queue = queue
        self._connectivity = connectivity
        self._max_attempts = max_attempts
        self._retry_delay_s = retry_delay_s

    async def send(
        self,
        content: str,
        *,
        is_private: bool = False,
        as_user_id: str | None = None,
    ) -> ChatMessage:
        """发送一条消息，返回其当前本地表示

        Raises:
            PermissionDeniedError: 以他人身份发送
            ValueError: 内容为空
        """
        if as_user_id is not None and as_user_id != self.user.id:
            raise PermissionDeniedError(f"不能以用户 {as_user_id} 的身份发送消息")
        content = content.strip()
        if not content:
            raise ValueError("消息内容不能为空")

        message = ChatMessage(
            id=str(ULID()),
            content=content,
            author=self.user,
            created_at=datetime.now(UTC),
            room_id=self.room_id,
            is_private=is_private,
            requester_id=self.user.id if is_private else None,
            delivery=DeliveryState.OPTIMISTIC,
        )

        if not self._connectivity.is_online:
            return await self._queue.enqueue(message, original_content=content)

        self._buffer.put_provisional(message)
        return await self._deliver(message)

    async def retry(self, message_id: str) -> ChatMessage:
        """手动重试失败消息

        在线时直接重发失败气泡；离线时转入离线队列。
        离线队列中的失败记录交由队列自身的 retry 处理。

        Raises:
            KeyError: 找不到可重试的失败消息
        """
        queued = self._queue.get(message_id)
        if queued is not None:
            await self._queue.retry(message_id)
            remaining = self._queue.get(message_id)
            return remaining.message if remaining is not None else queued.message

        message = self._buffer.get_provisional(message_id)
        if message is None or not message.is_failed:
            raise KeyError(message_id)

        if not self._connectivity.is_online:
            self._buffer.discard(message_id)
            return await self._queue.enqueue(message)

        resent = message.transition(DeliveryState.OPTIMISTIC, created_at=datetime.now(UTC))
        self._buffer.put_provisional(resent)
        log.info("message_retry", room_id=self.room_id, message_id=message_id)
        return await self._deliver(resent)

    async def _deliver(self, message: ChatMessage) -> ChatMessage:
        result = SendResult(success=False)
        attempt = 0
        while attempt < self._max_attempts:
            attempt += 1
            try:
                result = await self._backend.send_message(
                    self.room_id,
                    self.user.id,
                    self.user.display_name,
                    message.content,
                    is_private=message.is_private,
                    client_msg_id=message.id,
                )
            except ApiError as e:
                result = SendResult(success=False, error=str(e))
            except Exception as e:
                log.error(
                    "send_unexpected_error",
                    room_id=self.room_id,
                    message_id=message.id,
                    error=str(e),
                    error_type=type(e).__name__,
                )
                result = SendResult(success=False, error=str(e))
            if result.success:
                break
            log.warning(
                "send_attempt_failed",
                room_id=self.room_id,
                message_id=message.id,
                attempt=attempt,
                error=result.error,
            )
            if attempt < self._max_attempts:
                await asyncio.sleep(self._retry_delay_s)

        message = message.model_copy(update={"retry_attempts": attempt})

        if not result.success:
            failed = message.transition(DeliveryState.FAILED)
            self._buffer.put_provisional(failed)
            return failed

        if message.is_private:
            confirmed = message.transition(
                DeliveryState.CONFIRMED,
                id=result.id or message.id,
                created_at=result.created_at or message.created_at,
                client_msg_id=message.id,
            )
            self._buffer.discard(message.id)
            self._buffer.put_confirmed(confirmed)
            log.info(
                "private_message_confirmed",
                room_id=self.room_id,
                message_id=confirmed.id,
            )
            return confirmed

        acknowledged = message.model_copy(update={"server_id": result.id})
        # 回显可能已在发送返回前到达并替换了本地副本
        if self._buffer.get_provisional(message.id) is not None:
            self._buffer.put_provisional(acknowledged)
        log.debug(
            "message_acknowledged",
            room_id=self.room_id,
            message_id=message.id,
            server_id=result.id,
        )
        return acknowledged
