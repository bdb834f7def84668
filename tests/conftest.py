"""全局 pytest 配置 -- 临时 SQLite 数据库 + 消息构造 + 异步等待 fixture"""

import asyncio
from collections.abc import AsyncGenerator, Callable
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest
import pytest_asyncio
from chatsync.core.models.message import Author, ChatMessage

BASE_TIME = datetime(2026, 1, 1, 12, 0, tzinfo=UTC)


@pytest.fixture
def base_time() -> datetime:
    return BASE_TIME


@pytest.fixture
def tmp_db_path(tmp_path: Path) -> Path:
    """提供临时 SQLite 数据库路径"""
    return tmp_path / "sqlite" / "test.db"


@pytest_asyncio.fixture
async def queue_store(tmp_db_path: Path) -> AsyncGenerator:
    """提供已初始化的临时离线队列存储"""
    from chatsync.core.store import create_queue_store

    store = await create_queue_store(str(tmp_db_path))
    yield store
    await store.close()


@pytest.fixture
def make_message() -> Callable[..., ChatMessage]:
    """消息构造器：offset_ms 相对 BASE_TIME 的毫秒偏移"""

    def factory(
        message_id: str,
        content: str = "hello",
        *,
        author_id: str = "u1",
        offset_ms: int = 0,
        **kwargs,
    ) -> ChatMessage:
        kwargs.setdefault("room_id", "room-1")
        return ChatMessage(
            id=message_id,
            content=content,
            author=Author(id=author_id, display_name=author_id.upper()),
            created_at=BASE_TIME + timedelta(milliseconds=offset_ms),
            **kwargs,
        )

    return factory


@pytest.fixture
def wait_until() -> Callable:
    """轮询等待条件成立，超时则测试失败"""

    async def waiter(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while not predicate():
            if loop.time() > deadline:
                pytest.fail("等待条件超时")
            await asyncio.sleep(0.005)

    return waiter
