"""Connectivity Monitor -- 网络在线/离线信号

纯输入信号：显式的 online/offline 通知、可见性变化时的探测、
以及可选的周期性探测。状态变化时通知订阅者，自身没有其他副作用。
"""

import asyncio
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime

import structlog

log = structlog.get_logger()

Probe = Callable[[], Awaitable[bool]]
Listener = Callable[[bool], None]


class ConnectivityMonitor:
    """网络连通性监测器"""

    def __init__(
        self,
        initial_online: bool = True,
        probe: Probe | None = None,
        probe_interval_s: float | None = None,
    ) -> None:
        """
        Args:
            initial_online: 初始在线状态
            probe: 连通性探测函数（例如 ChatApiClient.health_check）
            probe_interval_s: 周期探测间隔，None 时不启动周期探测
        """
        self._online = initial_online
        self._was_offline = not initial_online
        self._last_change_at = datetime.now(UTC)
        self._probe = probe
        self._probe_interval_s = probe_interval_s
        self._listeners: list[Listener] = []
        self._online_event = asyncio.Event()
        if initial_online:
            self._online_event.set()
        self._probe_task: asyncio.Task | None = None

    @property
    def is_online(self) -> bool:
        return self._online

    @property
    def was_offline(self) -> bool:
        """本次会话内是否曾经离线过"""
        return self._was_offline

    @property
    def last_change_at(self) -> datetime:
        return self._last_change_at

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """订阅状态变化，返回取消订阅函数"""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def set_online(self, online: bool) -> None:
        """显式 online/offline 通知，状态不变时不触发订阅者"""
        if online == self._online:
            return

        self._online = online
        self._last_change_at = datetime.now(UTC)
        if online:
            self._online_event.set()
        else:
            self._was_offline = True
            self._online_event.clear()

        log.info("connectivity_changed", online=online)
        for listener in list(self._listeners):
            try:
                listener(online)
            except Exception as e:
                log.error(
                    "connectivity_listener_failed",
                    error=str(e),
                    error_type=type(e).__name__,
                )

    async def on_visibility_change(self, visible: bool) -> None:
        """页面重新可见时补测一次（后台期间可能错过状态变化）"""
        if not visible or self._probe is None:
            return
        await self.check()

    async def check(self) -> bool:
        """执行一次探测并更新状态"""
        if self._probe is None:
            return self._online
        try:
            online = await self._probe()
        except Exception as e:
            log.debug("connectivity_probe_failed", error=str(e))
            online = False
        self.set_online(online)
        return online

    async def wait_online(self) -> None:
        await self._online_event.wait()

    def start(self) -> None:
        """启动周期探测"""
        if self._probe is None or self._probe_interval_s is None:
            return
        if self._probe_task is None or self._probe_task.done():
            self._probe_task = asyncio.create_task(self._probe_loop())

    async def stop(self) -> None:
        if self._probe_task is not None:
            self._probe_task.cancel()
            try:
                await self._probe_task
            except asyncio.CancelledError:
                pass
            self._probe_task = None

    async def _probe_loop(self) -> None:
        while True:
            await asyncio.sleep(self._probe_interval_s)
            await self.check()
