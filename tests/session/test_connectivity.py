"""ConnectivityMonitor 单元测试"""

import asyncio

from chatsync.session.connectivity import ConnectivityMonitor


class TestSignals:
    def test_notifies_only_on_change(self):
        monitor = ConnectivityMonitor()
        changes: list[bool] = []
        monitor.subscribe(changes.append)

        monitor.set_online(True)
        monitor.set_online(False)
        monitor.set_online(False)
        monitor.set_online(True)

        assert changes == [False, True]
        assert monitor.is_online is True

    def test_was_offline_is_sticky(self):
        monitor = ConnectivityMonitor()
        assert monitor.was_offline is False

        monitor.set_online(False)
        monitor.set_online(True)

        assert monitor.was_offline is True

    def test_failing_listener_does_not_block_others(self):
        monitor = ConnectivityMonitor()
        seen: list[bool] = []

        def broken(online: bool) -> None:
            raise RuntimeError("listener bug")

        monitor.subscribe(broken)
        monitor.subscribe(seen.append)
        monitor.set_online(False)

        assert seen == [False]

    def test_unsubscribe(self):
        monitor = ConnectivityMonitor()
        seen: list[bool] = []
        unsubscribe = monitor.subscribe(seen.append)
        unsubscribe()
        unsubscribe()

        monitor.set_online(False)

        assert seen == []


class TestProbe:
    async def test_check_updates_state(self):
        result = {"online": False}

        async def probe() -> bool:
            return result["online"]

        monitor = ConnectivityMonitor(probe=probe)
        assert await monitor.check() is False
        assert monitor.is_online is False

        result["online"] = True
        assert await monitor.check() is True

    async def test_probe_exception_means_offline(self):
        async def probe() -> bool:
            raise OSError("unreachable")

        monitor = ConnectivityMonitor(probe=probe)

        assert await monitor.check() is False
        assert monitor.is_online is False

    async def test_visibility_change_probes_only_when_visible(self):
        calls: list[int] = []

        async def probe() -> bool:
            calls.append(1)
            return False

        monitor = ConnectivityMonitor(probe=probe)
        await monitor.on_visibility_change(False)
        assert calls == []

        await monitor.on_visibility_change(True)
        assert calls == [1]
        assert monitor.is_online is False

    async def test_wait_online(self):
        monitor = ConnectivityMonitor(initial_online=False)
        waiter = asyncio.create_task(monitor.wait_online())
        await asyncio.sleep(0)
        assert not waiter.done()

        monitor.set_online(True)
        await asyncio.wait_for(waiter, timeout=1)

    async def test_periodic_probe(self, wait_until):
        async def probe() -> bool:
            return False

        monitor = ConnectivityMonitor(probe=probe, probe_interval_s=0.01)
        monitor.start()
        await wait_until(lambda: not monitor.is_online)
        await monitor.stop()
