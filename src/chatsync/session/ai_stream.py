"""AI Stream Reconciler -- AI 流式回复协调

单个 AI 请求的状态机：

    IDLE -> AWAITING_START -> STREAMING -> FINALIZING -> AWAITING_ECHO (公开)
                                                      -> DONE          (私密)

- 提交请求即插入空内容的 STREAMING 占位（本地 ULID），不等待任何服务端事件
- start / complete 携带的 ID 与当前 ID 不同时迁移条目，不留下旧 ID 的条目
- content 事件携带截至当前的完整文本，直接替换
- 公开回复完成后保持可见，直到同 ID 的广播副本到达后被替换
- error 或流异常结束时移除占位，并插入仅本人可见的本地错误消息
- inject=False 的请求（例如草稿预填）独立追踪，从不写入共享时间线
"""

import asyncio
from dataclasses import dataclass, field
from datetime import UTC, datetime

import structlog
from ulid import ULID

from chatsync.client.protocols import ChatBackend
from chatsync.core.config import AI_AUTHOR_ID, AI_AUTHOR_NAME, AI_ERROR_TEXT
from chatsync.core.models.enums import DeliveryState, StreamPhase
from chatsync.core.models.events import (
    AIStreamEvent,
    RemoteStreamEvent,
    StreamCompleteEvent,
    StreamContentEvent,
    StreamErrorEvent,
    StreamStartEvent,
)
from chatsync.core.models.message import Author, ChatMessage

from .buffer import MessageBuffer

log = structlog.get_logger()

# 不再接收事件的阶段
_SETTLED_PHASES = {StreamPhase.AWAITING_ECHO, StreamPhase.DONE, StreamPhase.ERRORED}


@dataclass
class AIStreamRequest:
    """单个进行中的 AI 请求"""

    local_id: str
    message: ChatMessage
    is_private: bool
    inject: bool
    phase: StreamPhase = StreamPhase.IDLE
    error: str | None = None
    migrated_ids: list[str] = field(default_factory=list)

    @property
    def current_id(self) -> str:
        return self.message.id

    @property
    def content(self) -> str:
        return self.message.content

    @property
    def settled(self) -> bool:
        return self.phase in _SETTLED_PHASES


class AIStreamReconciler:
    """AI 流协调器 -- 每个房间会话一个实例，可同时追踪多个请求"""

    def __init__(
        self,
        room_id: str,
        requester: Author,
        backend: ChatBackend,
        buffer: MessageBuffer,
        ai_author: Author | None = None,
    ) -> None:
        self.room_id = room_id
        self.requester = requester
        self._backend = backend
        self._buffer = buffer
        self._ai_author = ai_author or Author(id=AI_AUTHOR_ID, display_name=AI_AUTHOR_NAME)
        self._requests: dict[str, AIStreamRequest] = {}

    @property
    def active(self) -> list[AIStreamRequest]:
        return [r for r in self._requests.values() if r.phase != StreamPhase.DONE]

    @property
    def is_streaming(self) -> bool:
        """共享时间线中是否有进行中的回复"""
        return any(
            r.inject and r.phase in (StreamPhase.AWAITING_START, StreamPhase.STREAMING)
            for r in self._requests.values()
        )

    # ============================================================
    # 本地请求
    # ============================================================

    def begin(self, *, is_private: bool = False, inject: bool = True) -> AIStreamRequest:
        """创建请求并（按需）插入空内容占位"""
        local_id = str(ULID())
        placeholder = ChatMessage(
            id=local_id,
            content="",
            author=self._ai_author,
            created_at=datetime.now(UTC),
            room_id=self.room_id,
            is_ai=True,
            is_private=is_private,
            requester_id=self.requester.id,
            delivery=DeliveryState.STREAMING,
        )
        request = AIStreamRequest(
            local_id=local_id,
            message=placeholder,
            is_private=is_private,
            inject=inject,
            phase=StreamPhase.AWAITING_START,
        )
        self._requests[local_id] = request
        if inject:
            self._buffer.put_provisional(placeholder)
        log.debug(
            "ai_stream_begin",
            room_id=self.room_id,
            local_id=local_id,
            is_private=is_private,
            inject=inject,
        )
        return request

    def apply(self, request: AIStreamRequest, event: AIStreamEvent) -> None:
        """将单个流事件应用到请求"""
        if request.settled:
            log.debug(
                "ai_stream_event_ignored",
                local_id=request.local_id,
                phase=request.phase,
                event_type=event.type,
            )
            return

        if isinstance(event, StreamStartEvent):
            update: dict = {}
            if event.author is not None:
                update["author"] = event.author
            self._update(request, event.message_id, **update)
            request.phase = StreamPhase.STREAMING
        elif isinstance(event, StreamContentEvent):
            self._update(request, event.message_id, content=event.full_content)
            request.phase = StreamPhase.STREAMING
        elif isinstance(event, StreamCompleteEvent):
            self._complete(request, event)
        elif isinstance(event, StreamErrorEvent):
            self.fail(request, event.message or "AI 生成失败")

    async def run(
        self,
        prompt: str,
        *,
        is_private: bool = False,
        inject: bool = True,
        context: list[ChatMessage] | None = None,
    ) -> AIStreamRequest:
        """提交 AI 请求并消费整条流

        上游异常转为本地错误消息；任务被取消时移除占位后继续传播取消。
        """
        request = self.begin(is_private=is_private, inject=inject)
        try:
            async for event in self._backend.stream_ai(
                self.room_id,
                self.requester.id,
                prompt,
                is_private=is_private,
                context=context,
            ):
                self.apply(request, event)
                if request.settled:
                    break
        except asyncio.CancelledError:
            self.abort(request)
            raise
        except Exception as e:
            log.error(
                "ai_stream_failed",
                room_id=self.room_id,
                local_id=request.local_id,
                error=str(e),
                error_type=type(e).__name__,
            )
            self.fail(request, str(e))
            return request

        if not request.settled:
            self.fail(request, "流在 complete 之前结束")
        return request

    def abort(self, request: AIStreamRequest) -> None:
        """中止请求（例如离开房间），只移除占位，不插入错误消息"""
        if request.phase == StreamPhase.DONE:
            return
        if request.inject and request.phase != StreamPhase.AWAITING_ECHO:
            self._buffer.discard(request.current_id)
        request.phase = StreamPhase.DONE
        log.info("ai_stream_aborted", room_id=self.room_id, local_id=request.local_id)

    def fail(self, request: AIStreamRequest, error: str) -> None:
        """移除占位并插入仅请求者可见的本地错误消息"""
        if request.inject:
            self._buffer.discard(request.current_id)
            self._buffer.put_confirmed(
                ChatMessage(
                    id=str(ULID()),
                    content=AI_ERROR_TEXT,
                    author=self._ai_author,
                    created_at=datetime.now(UTC),
                    room_id=self.room_id,
                    is_ai=True,
                    is_private=True,
                    requester_id=self.requester.id,
                    delivery=DeliveryState.CONFIRMED,
                )
            )
        request.phase = StreamPhase.ERRORED
        request.error = error
        log.warning(
            "ai_stream_error",
            room_id=self.room_id,
            local_id=request.local_id,
            error=error,
        )

    def _update(self, request: AIStreamRequest, message_id: str, **update) -> None:
        old_id = request.current_id
        message = request.message.model_copy(update={**update, "id": message_id})
        request.message = message
        if message_id != old_id:
            request.migrated_ids.append(old_id)
            log.debug("ai_stream_id_migrated", from_id=old_id, to_id=message_id)
        if request.inject:
            self._buffer.migrate(old_id, message)

    def _complete(self, request: AIStreamRequest, event: StreamCompleteEvent) -> None:
        request.phase = StreamPhase.FINALIZING
        old_id = request.current_id
        update = {
            "id": event.message_id,
            "content": event.full_content,
            "created_at": event.created_at or request.message.created_at,
        }

        if not request.inject:
            request.message = request.message.transition(DeliveryState.CONFIRMED, **update)
            request.phase = StreamPhase.DONE
            return

        if request.is_private:
            final = request.message.transition(DeliveryState.CONFIRMED, **update)
            request.message = final
            self._buffer.discard(old_id)
            self._buffer.put_confirmed(final)
            request.phase = StreamPhase.DONE
        else:
            final = request.message.transition(DeliveryState.OPTIMISTIC, **update)
            request.message = final
            if self._buffer.get_confirmed(final.id) is not None:
                # 广播副本先于 complete 到达
                self._buffer.discard(old_id)
                request.phase = StreamPhase.DONE
            else:
                self._buffer.migrate(old_id, final)
                request.phase = StreamPhase.AWAITING_ECHO

        if final.id != old_id:
            request.migrated_ids.append(old_id)
        log.info(
            "ai_stream_complete",
            room_id=self.room_id,
            message_id=final.id,
            is_private=request.is_private,
            content_length=len(final.content),
        )

    # ============================================================
    # 实时通道输入
    # ============================================================

    def on_broadcast(self, message: ChatMessage) -> bool:
        """广播副本到达：结束等待回显的公开回复，返回是否命中"""
        for request in self._requests.values():
            if request.phase == StreamPhase.AWAITING_ECHO and request.current_id == message.id:
                request.phase = StreamPhase.DONE
                self._buffer.discard(message.id)
                log.debug("ai_stream_superseded", message_id=message.id)
                return True
        return False

    def on_remote_event(self, event: RemoteStreamEvent) -> None:
        """镜像其他参与者触发的公开 AI 回复"""
        if event.requester_id == self.requester.id:
            # 本人请求已在本地渲染
            return
        if event.is_private:
            return
        if event.room_id and event.room_id != self.room_id:
            return

        if event.event_type == "error":
            self._buffer.discard(event.stream_id)
            return

        if self._buffer.get_confirmed(event.stream_id) is not None:
            return

        existing = self._buffer.get_provisional(event.stream_id)
        if existing is not None:
            self._buffer.put_provisional(
                existing.model_copy(update={"content": event.full_content})
            )
            return

        self._buffer.put_provisional(
            ChatMessage(
                id=event.stream_id,
                content=event.full_content,
                author=event.author,
                created_at=event.created_at or datetime.now(UTC),
                room_id=self.room_id,
                is_ai=True,
                requester_id=event.requester_id or None,
                delivery=DeliveryState.STREAMING,
            )
        )
