"""Store Protocol 接口定义

定义 QueueStore 的抽象接口，
使用 Python Protocol 实现结构化子类型（duck typing）。
"""

from typing import Protocol

from ..models.payloads import QueuedMessage


class QueueStore(Protocol):
    """离线队列存储接口

    以 (room, user) 为键整体读写：每次变更都替换整个列表，
    避免同一时刻连续入队/出队造成的更新丢失。
    """

    async def load(self, room_id: str, user_id: str) -> list[QueuedMessage]:
        """读取指定 (room, user) 的完整队列"""
        ...

    async def replace(
        self,
        room_id: str,
        user_id: str,
        items: list[QueuedMessage],
    ) -> None:
        """整体替换指定 (room, user) 的队列，空列表即删除"""
        ...
