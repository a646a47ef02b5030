import asyncio
import threading
import unittest

from app.services.hub import Hub, Subscription


class TestHub(unittest.TestCase):
    def test_full_queue_drops_oldest(self):
        async def run():
            hub = Hub(maxsize=2)
            entry = hub.new_queue()
            hub.attach("t", entry)
            for i in range(3):
                hub.publish("t", {"n": i})
            q = entry[1]
            return [q.get_nowait()["n"] for _ in range(q.qsize())]

        self.assertEqual(asyncio.run(run()), [1, 2])

    def test_publish_from_worker_thread(self):
        async def run():
            hub = Hub()
            entry = hub.new_queue()
            hub.attach("t", entry)
            t = threading.Thread(target=hub.publish, args=("t", {"from": "thread"}))
            t.start()
            t.join()
            return await asyncio.wait_for(entry[1].get(), timeout=1)

        self.assertEqual(asyncio.run(run()), {"from": "thread"})


class TestSubscription(unittest.TestCase):
    def test_snapshot_then_change_then_release(self):
        async def run():
            hub = Hub()
            state = {"v": 0}

            async def snapshot():
                return state["v"]

            sub = Subscription("test", ["t"], snapshot, source=hub)
            seen = []
            async with sub:
                seen.append(await sub.__anext__())
                state["v"] = 1
                hub.publish("t", {"type": "change"})
                seen.append(await asyncio.wait_for(sub.__anext__(), timeout=1))
                self.assertEqual(hub.subscriber_count("t"), 1)
            return seen, hub.subscriber_count("t"), sub.closed

        seen, remaining, closed = asyncio.run(run())
        self.assertEqual(seen, [0, 1])
        self.assertEqual(remaining, 0)
        self.assertTrue(closed)

    def test_dedupe_and_poll(self):
        async def run():
            hub = Hub()
            values = iter([5, 5, 5, 6])

            async def snapshot():
                return next(values)

            sub = Subscription("test", ["t"], snapshot, poll_seconds=0.01, dedupe=True, source=hub)
            async with sub:
                first = await sub.__anext__()
                second = await asyncio.wait_for(sub.__anext__(), timeout=1)
            return first, second

        self.assertEqual(asyncio.run(run()), (5, 6))

    def test_close_is_idempotent_and_stops_iteration(self):
        closed = []

        async def run():
            hub = Hub()

            async def snapshot():
                return "x"

            sub = Subscription("test", ["a", "b"], snapshot, on_close=closed.append, source=hub)
            sub.open()
            sub.close()
            sub.close()
            with self.assertRaises(StopAsyncIteration):
                await sub.__anext__()
            return hub.subscriber_count("a") + hub.subscriber_count("b")

        self.assertEqual(asyncio.run(run()), 0)
        self.assertEqual(len(closed), 1)

    def test_close_wakes_a_waiting_consumer(self):
        async def run(poll_seconds):
            hub = Hub()

            async def snapshot():
                return "v"

            sub = Subscription("test", ["t"], snapshot, poll_seconds=poll_seconds, dedupe=True, source=hub)
            seen = []

            async def consume():
                async for value in sub:
                    seen.append(value)
                return "done"

            task = asyncio.create_task(consume())
            while not seen:
                await asyncio.sleep(0.01)
            await asyncio.sleep(0.05)
            sub.close()
            return await asyncio.wait_for(task, timeout=1), seen, hub.subscriber_count("t")

        for poll in (None, 30):
            result, seen, remaining = asyncio.run(run(poll))
            self.assertEqual(result, "done")
            self.assertEqual(seen, ["v"])
            self.assertEqual(remaining, 0)
