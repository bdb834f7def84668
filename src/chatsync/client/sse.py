"""SSE 帧解析 -- AI 流式响应

每行一个 `data: <json>` 帧；空 payload 与字面量 [DONE] 直接忽略。
单个畸形帧只会被丢弃并记录日志，不会中断整个流。
"""

import json
from collections.abc import AsyncIterable, AsyncIterator

import structlog
from pydantic import ValidationError

from chatsync.core.models.events import AIStreamEvent, ai_stream_event_adapter

log = structlog.get_logger()

DATA_PREFIX = "data:"
DONE_SENTINEL = "[DONE]"


def parse_sse_line(line: str) -> AIStreamEvent | None:
    """解析单行 SSE 帧，非数据行或无法解析时返回 None"""
    line = line.strip()
    if not line.startswith(DATA_PREFIX):
        return None

    payload = line[len(DATA_PREFIX):].strip()
    if not payload or payload == DONE_SENTINEL:
        return None

    try:
        data = json.loads(payload)
    except json.JSONDecodeError as e:
        log.warning("sse_frame_malformed", error=str(e), payload=payload[:200])
        return None

    try:
        return ai_stream_event_adapter.validate_python(data)
    except ValidationError as e:
        log.warning(
            "sse_event_invalid",
            event_type=data.get("type") if isinstance(data, dict) else None,
            error_count=e.error_count(),
        )
        return None


async def iter_sse_events(lines: AsyncIterable[str]) -> AsyncIterator[AIStreamEvent]:
    """将文本行流转换为 AI 流事件"""
    async for line in lines:
        event = parse_sse_line(line)
        if event is not None:
            yield event
