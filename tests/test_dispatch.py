import asyncio
import unittest

from vc_mesh.rtc.dispatch import SerialDispatcher


class TestSerialDispatcher(unittest.IsolatedAsyncioTestCase):
    async def test_same_key_runs_in_order(self):
        dispatcher = SerialDispatcher("test")
        seen = []

        async def work(n, delay):
            await asyncio.sleep(delay)
            seen.append(n)

        dispatcher.submit("a", work, 1, 0.03)
        dispatcher.submit("a", work, 2, 0.0)
        dispatcher.submit("a", work, 3, 0.01)
        await dispatcher.join()

        assert seen == [1, 2, 3]
        assert dispatcher.idle

    async def test_keys_interleave(self):
        dispatcher = SerialDispatcher("test")
        seen = []
        release = asyncio.Event()

        async def slow():
            await release.wait()
            seen.append("slow")

        async def fast():
            seen.append("fast")
            release.set()

        dispatcher.submit("a", slow)
        dispatcher.submit("b", fast)
        await dispatcher.join()

        assert seen == ["fast", "slow"]

    async def test_failure_does_not_stop_queue(self):
        dispatcher = SerialDispatcher("test")
        seen = []

        async def boom():
            raise RuntimeError("boom")

        async def ok():
            seen.append("ok")

        dispatcher.submit("a", boom)
        dispatcher.submit("a", ok)
        with self.assertLogs("vc_mesh.rtc.dispatch", level="ERROR"):
            await dispatcher.join()

        assert seen == ["ok"]

    async def test_closed_dispatcher_drops_work(self):
        dispatcher = SerialDispatcher("test")
        seen = []

        async def work():
            seen.append(1)

        await dispatcher.close()
        dispatcher.submit("a", work)
        await dispatcher.join()
        assert seen == []

        dispatcher.reopen()
        dispatcher.submit("a", work)
        await dispatcher.join()
        assert seen == [1]

    async def test_close_cancels_pending_work(self):
        dispatcher = SerialDispatcher("test")
        started = asyncio.Event()
        finished = []

        async def forever():
            started.set()
            await asyncio.sleep(3600)
            finished.append(True)

        dispatcher.submit("a", forever)
        await started.wait()
        await dispatcher.close()

        assert dispatcher.idle
        assert finished == []
