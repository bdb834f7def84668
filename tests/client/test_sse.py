"""SSE 帧解析单元测试

单个畸形帧只会被丢弃，不会中断整个流。
"""

import pytest
from chatsync.client.sse import iter_sse_events, parse_sse_line
from chatsync.core.models.events import StreamContentEvent, StreamStartEvent


async def _lines(*lines: str):
    for line in lines:
        yield line


class TestParseSseLine:
    @pytest.mark.parametrize(
        "line",
        ["", "data:", "data: ", "data: [DONE]", ": keep-alive", "event: message"],
    )
    def test_ignored_lines(self, line: str):
        """空 payload、[DONE] 与非数据行直接忽略"""
        assert parse_sse_line(line) is None

    def test_malformed_json_dropped(self):
        assert parse_sse_line("data: {not json") is None

    def test_unknown_event_dropped(self):
        assert parse_sse_line('data: {"type": "ping"}') is None

    def test_valid_content_frame(self):
        event = parse_sse_line('data: {"type": "content", "messageId": "s1", "fullContent": "He"}')

        assert isinstance(event, StreamContentEvent)
        assert event.full_content == "He"

    def test_prefix_without_space(self):
        event = parse_sse_line('data:{"type": "start", "messageId": "s1"}')
        assert isinstance(event, StreamStartEvent)


class TestIterSseEvents:
    async def test_malformed_frame_does_not_abort_stream(self):
        events = [
            event
            async for event in iter_sse_events(
                _lines(
                    'data: {"type": "start", "messageId": "s1"}',
                    "data: {broken",
                    "",
                    'data: {"type": "content", "messageId": "s1", "fullContent": "Hi"}',
                    "data: [DONE]",
                )
            )
        ]

        assert [e.type for e in events] == ["start", "content"]
