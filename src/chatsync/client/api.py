"""ChatApiClient -- 聊天后端 HTTP 调用封装

覆盖历史补拉、发送、撤回、已接收回执与 AI 流式生成五个接口。
连接类异常统一翻译为 ApiUnreachableError，调用方据此决定
回滚为失败气泡还是进入离线队列。
"""

import asyncio
from collections.abc import AsyncIterator
from datetime import datetime
from typing import Any

import httpx
import structlog
from pydantic import ValidationError

from chatsync.core.config import HISTORY_TIMEOUT_S
from chatsync.core.models.enums import HistoryKind
from chatsync.core.models.events import AIStreamEvent
from chatsync.core.models.message import ChatMessage
from chatsync.core.models.payloads import HistoryResult, SendResult, UnsendResult

from .config import ClientConfig
from .exceptions import ApiError, ApiUnreachableError, HistoryTimeoutError
from .sse import iter_sse_events

log = structlog.get_logger()

# 健康检查超时（硬编码，应快速响应）
HEALTH_CHECK_TIMEOUT_S = 5

# 连接类异常类型集合（触发 ApiUnreachableError）
_CONNECTION_ERROR_TYPES = (
    ConnectionError,
    OSError,
    TimeoutError,
    httpx.ConnectError,
    httpx.TimeoutException,
    httpx.NetworkError,
    httpx.RemoteProtocolError,
)

# 后端历史结果类型 -> HistoryKind
_HISTORY_KINDS: dict[str, HistoryKind] = {
    "missed_messages": HistoryKind.MISSED,
    "recent_messages": HistoryKind.RECENT,
    "caught_up": HistoryKind.CAUGHT_UP,
}


def _is_connection_error(e: Exception) -> bool:
    """判断异常是否为连接类错误（后端不可达）"""
    return isinstance(e, _CONNECTION_ERROR_TYPES)


def _error_text(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text[:200]
    if isinstance(body, dict) and body.get("error"):
        return str(body["error"])
    return f"HTTP {response.status_code}"


def _json_body(response: httpx.Response) -> dict[str, Any]:
    """解析 200 响应体（代理错误页等非 JSON 内容转为 ApiError）"""
    try:
        body = response.json()
    except ValueError as e:
        raise ApiError(
            f"响应体不是 JSON: {response.text[:200]}",
            status_code=response.status_code,
        ) from e
    if not isinstance(body, dict):
        raise ApiError("响应体不是 JSON 对象", status_code=response.status_code)
    return body


class ChatApiClient:
    """聊天后端客户端

    持有一个 httpx.AsyncClient；transport 参数用于测试注入 MockTransport。
    """

    def __init__(
        self,
        config: ClientConfig | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._config = config or ClientConfig()
        self._base_url = self._config.base_url.rstrip("/")

        headers = {"Content-Type": "application/json"}
        token = self._config.api_token.get_secret_value()
        if token:
            headers["Authorization"] = f"Bearer {token}"

        self._http = httpx.AsyncClient(
            base_url=self._base_url,
            headers=headers,
            timeout=self._config.timeout_s,
            transport=transport,
        )

    async def close(self) -> None:
        await self._http.aclose()

    async def __aenter__(self) -> "ChatApiClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    async def _request(self, method: str, url: str, **kwargs) -> httpx.Response:
        try:
            return await self._http.request(method, url, **kwargs)
        except Exception as e:
            log.warning(
                "api_request_failed",
                method=method,
                url=url,
                error=str(e),
                error_type=type(e).__name__,
            )
            if _is_connection_error(e):
                raise ApiUnreachableError(base_url=self._base_url, original_error=e) from e
            raise ApiError(f"请求失败: {e}") from e

    async def fetch_history(
        self,
        room_id: str,
        user_id: str,
        timeout_s: float = HISTORY_TIMEOUT_S,
    ) -> HistoryResult:
        """补拉房间历史（重新加入时调用，幂等）

        Raises:
            HistoryTimeoutError: 超过硬超时
            ApiUnreachableError: 后端不可达
            ApiError: 后端返回错误
        """
        try:
            async with asyncio.timeout(timeout_s):
                response = await self._request(
                    "GET",
                    f"/api/rooms/{room_id}/rejoin",
                    params={"userId": user_id},
                )
        except TimeoutError as e:
            raise HistoryTimeoutError(room_id, timeout_s) from e

        if response.status_code != 200:
            raise ApiError(
                f"历史补拉失败: {_error_text(response)}",
                status_code=response.status_code,
            )

        data = _json_body(response)
        kind = _HISTORY_KINDS.get(data.get("type", ""), HistoryKind.CAUGHT_UP)

        messages: list[ChatMessage] = []
        for raw in data.get("messages") or []:
            try:
                message = ChatMessage.model_validate(raw)
            except ValidationError as e:
                log.warning(
                    "history_message_skipped",
                    room_id=room_id,
                    error_count=e.error_count(),
                )
                continue
            if not message.room_id:
                message = message.model_copy(update={"room_id": room_id})
            messages.append(message)

        log.info(
            "history_fetched",
            room_id=room_id,
            kind=kind,
            count=len(messages),
        )
        return HistoryResult(kind=kind, messages=messages)

    async def send_message(
        self,
        room_id: str,
        user_id: str,
        username: str,
        content: str,
        *,
        is_private: bool = False,
        client_msg_id: str | None = None,
    ) -> SendResult:
        """发送消息

        非成功响应返回 SendResult(success=False)；连接类错误抛出异常。

        Raises:
            ApiUnreachableError: 后端不可达
        """
        body: dict[str, Any] = {
            "roomId": room_id,
            "userId": user_id,
            "username": username,
            "content": content.strip(),
            "isPrivate": is_private,
        }
        if client_msg_id is not None:
            body["optimisticId"] = client_msg_id

        response = await self._request("POST", "/api/messages/send", json=body)
        if response.status_code != 200:
            return SendResult(success=False, error=_error_text(response))

        try:
            data = _json_body(response)
        except ApiError as e:
            return SendResult(success=False, error=str(e))
        if not data.get("success"):
            return SendResult(success=False, error=str(data.get("error", "")))

        message = data.get("message") or {}
        created_at = message.get("createdAt") or message.get("created_at")
        try:
            parsed_at = datetime.fromisoformat(created_at) if created_at else None
        except (TypeError, ValueError):
            parsed_at = None
        return SendResult(success=True, id=message.get("id"), created_at=parsed_at)

    async def unsend_message(
        self,
        message_id: str,
        user_id: str,
        room_id: str,
    ) -> UnsendResult:
        """撤回消息，成功后后端广播 message_unsent"""
        response = await self._request(
            "POST",
            "/api/messages/unsend",
            json={"messageId": message_id, "userId": user_id, "roomId": room_id},
        )
        if response.status_code != 200:
            return UnsendResult(success=False, error=_error_text(response))

        try:
            data = _json_body(response)
        except ApiError as e:
            return UnsendResult(success=False, error=str(e))
        message = data.get("message") or {}
        return UnsendResult(
            success=True,
            deleted_at=message.get("deletedAt"),
            deleted_by=message.get("deletedBy", user_id),
        )

    async def mark_received(self, user_id: str, room_id: str, message_id: str) -> None:
        """已接收回执（用于计算下次补拉游标）

        注意: 此方法不抛出异常，失败只记录日志。
        """
        try:
            response = await self._request(
                "POST",
                "/api/messages/mark-received",
                json={"userId": user_id, "roomId": room_id, "messageId": message_id},
            )
        except ApiError as e:
            log.warning("mark_received_failed", message_id=message_id, error=str(e))
            return
        if response.status_code != 200:
            log.warning(
                "mark_received_failed",
                message_id=message_id,
                status_code=response.status_code,
            )

    async def stream_ai(
        self,
        room_id: str,
        user_id: str,
        message: str,
        *,
        is_private: bool = False,
        context: list[ChatMessage] | None = None,
    ) -> AsyncIterator[AIStreamEvent]:
        """请求 AI 回复并逐帧产出流事件

        流读取没有整体超时，由上游自身限制；调用方取消任务即中止流。

        Raises:
            ApiUnreachableError: 后端不可达
            ApiError: 后端返回非 200
        """
        body = {
            "roomId": room_id,
            "userId": user_id,
            "message": message.strip(),
            "isPrivate": is_private,
            "previousMessages": [
                {"content": m.content, "isAi": m.is_ai, "userName": m.author.display_name}
                for m in context or []
            ],
        }
        timeout = httpx.Timeout(self._config.timeout_s, read=None)
        try:
            async with self._http.stream(
                "POST", "/api/ai/stream", json=body, timeout=timeout
            ) as response:
                if response.status_code != 200:
                    await response.aread()
                    raise ApiError(
                        f"AI 流请求失败: {_error_text(response)}",
                        status_code=response.status_code,
                    )
                async for event in iter_sse_events(response.aiter_lines()):
                    yield event
        except ApiError:
            raise
        except Exception as e:
            if _is_connection_error(e):
                raise ApiUnreachableError(base_url=self._base_url, original_error=e) from e
            raise

    async def health_check(self) -> bool:
        """检查后端可达性

        Returns:
            True 如果后端活跃，False 如果不可达或异常

        注意: 此方法不抛出异常，所有异常内部捕获并返回 False。
        """
        try:
            resp = await self._http.get("/api/health", timeout=HEALTH_CHECK_TIMEOUT_S)
            return resp.status_code == 200
        except Exception as e:
            log.debug("health_check_failed", url=self._base_url, error=str(e))
            return False
