"""CLI 入口模块 -- python -m chatsync.core <command>

支持的命令：
  queue-status [<room> <user>]  查看离线队列状态（省略参数时列出所有队列）
  clear-failed <room> <user>    丢弃已终态失败的排队消息
"""

import asyncio
import sys

from chatsync.session.logging_config import setup_logging

from .config import get_db_path
from .models.enums import DeliveryState

USAGE = """用法: python -m chatsync.core <command> [<room> <user>]
命令:
  queue-status  查看离线队列状态
  clear-failed  丢弃已终态失败的排队消息"""


def main() -> None:
    """CLI 主入口"""
    if len(sys.argv) < 2:
        print(USAGE)
        sys.exit(1)

    setup_logging()
    command, args = sys.argv[1], sys.argv[2:]

    if command == "queue-status" and not args:
        asyncio.run(list_queues())
    elif command in ("queue-status", "clear-failed") and len(args) != 2:
        print(USAGE)
        sys.exit(1)
    elif command == "queue-status":
        asyncio.run(queue_status(*args))
    elif command == "clear-failed":
        asyncio.run(clear_failed(*args))
    else:
        print(f"未知命令: {command}")
        print("可用命令: queue-status, clear-failed")
        sys.exit(1)


async def list_queues() -> None:
    """列出所有非空队列"""
    from .store import create_queue_store

    db_path = get_db_path()
    print(f"数据库路径: {db_path}")

    store = await create_queue_store(db_path)
    try:
        keys = await store.list_keys()
        if not keys:
            print("没有排队消息")
        for room_id, user_id in keys:
            items = await store.load(room_id, user_id)
            print(f"  room={room_id}  user={user_id}  queued={len(items)}")
    finally:
        await store.close()


async def queue_status(room_id: str, user_id: str) -> None:
    """打印指定 (room, user) 的排队消息"""
    from .store import create_queue_store

    db_path = get_db_path()
    print(f"数据库路径: {db_path}")

    store = await create_queue_store(db_path)
    try:
        items = await store.load(room_id, user_id)
    finally:
        await store.close()

    failed = sum(1 for item in items if item.message.delivery == DeliveryState.FAILED)
    print(f"排队消息 {len(items)} 条，其中失败 {failed} 条")
    for item in items:
        print(
            f"  {item.id}  {item.message.delivery.value:<9}"
            f"  attempts={item.attempts}  {item.original_content[:40]!r}"
        )


async def clear_failed(room_id: str, user_id: str) -> None:
    """丢弃终态失败的排队消息"""
    from .store import create_queue_store

    store = await create_queue_store(get_db_path())
    try:
        items = await store.load(room_id, user_id)
        remaining = [
            item for item in items if item.message.delivery != DeliveryState.FAILED
        ]
        await store.replace(room_id, user_id, remaining)
    finally:
        await store.close()

    print(f"已清除 {len(items) - len(remaining)} 条失败消息")


if __name__ == "__main__":
    main()
