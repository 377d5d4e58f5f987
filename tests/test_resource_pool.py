from __future__ import annotations

import asyncio
import threading
import time
import unittest
from concurrent.futures import ThreadPoolExecutor

import numpy as np

from hexgrid_vision.config import PoolConfig
from hexgrid_vision.errors import LeaseClosed, ResourceExhaustion
from hexgrid_vision.processing.resource_pool import BufferPool, ResourcePool, TaskDispatcher

BYTES_10 = 10 * 10 * 4


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


class TestBufferPool(unittest.TestCase):
    def test_acquire_returns_zeroed_rgba(self) -> None:
        pool = BufferPool()
        buf = pool.acquire(12, 7)
        self.assertEqual(buf.shape, (7, 12, 4))
        self.assertEqual(buf.dtype, np.uint8)
        self.assertFalse(buf.any())

    def test_release_reuses_and_clears(self) -> None:
        pool = BufferPool()
        buf = pool.acquire(10, 10)
        buf[...] = 255
        pool.release(buf)
        again = pool.acquire(10, 10)
        self.assertIs(again, buf)
        self.assertFalse(again.any())
        self.assertEqual(pool.stats.reused, 1)
        self.assertEqual(pool.stats.created, 1)
        self.assertAlmostEqual(pool.stats.efficiency, 0.5)

    def test_unknown_release_is_ignored(self) -> None:
        pool = BufferPool()
        pool.release(np.zeros((10, 10, 4), dtype=np.uint8))
        self.assertEqual(pool.memory_usage, 0)
        self.assertEqual(pool.pool_sizes(), {})

    def test_ceiling_is_never_exceeded(self) -> None:
        pool = BufferPool(max_memory_bytes=2 * BYTES_10, cleanup_threshold=1.0)
        pool.acquire(10, 10)
        pool.acquire(10, 10)
        with self.assertRaises(ResourceExhaustion):
            pool.acquire(10, 10)
        self.assertLessEqual(pool.memory_usage, pool.max_memory_bytes)
        self.assertEqual(pool.active_count, 2)

    def test_threshold_forces_cleanup_before_allocation(self) -> None:
        pool = BufferPool(max_memory_bytes=4 * BYTES_10, cleanup_threshold=0.5)
        buf = pool.acquire(10, 10)
        pool.release(buf)
        self.assertEqual(pool.memory_usage, BYTES_10)

        other = pool.acquire(12, 10)               # 400 + 480 > 800
        self.assertEqual(other.shape, (10, 12, 4))
        self.assertEqual(pool.stats.cleanup_count, 1)
        self.assertEqual(pool.pool_sizes(), {})
        self.assertEqual(pool.memory_usage, 12 * 10 * 4)

    def test_pool_size_per_key_is_bounded(self) -> None:
        pool = BufferPool(max_pool_size=1)
        a, b = pool.acquire(10, 10), pool.acquire(10, 10)
        pool.release(a)
        pool.release(b)
        self.assertEqual(pool.pool_sizes(), {(10, 10): 1})
        self.assertEqual(pool.stats.discarded, 1)
        self.assertEqual(pool.memory_usage, BYTES_10)

    def test_idle_entries_are_evicted(self) -> None:
        clock = FakeClock()
        pool = BufferPool(max_idle_seconds=30.0, clock=clock)
        held = pool.acquire(10, 10)
        idle = pool.acquire(10, 10)
        pool.release(idle)

        clock.now = 10.0
        pool.cleanup()
        self.assertEqual(pool.pool_sizes(), {(10, 10): 1})

        clock.now = 100.0
        pool.cleanup()
        self.assertEqual(pool.pool_sizes(), {})
        self.assertEqual(pool.memory_usage, BYTES_10)   # only the held buffer
        pool.release(held)

    def test_concurrent_acquires_never_share_buffers(self) -> None:
        pool = BufferPool()
        with ThreadPoolExecutor(max_workers=8) as ex:
            buffers = list(ex.map(lambda _: pool.acquire(16, 16), range(64)))
        self.assertEqual(len({id(b) for b in buffers}), 64)
        self.assertEqual(pool.active_count, 64)


class TestPoolLease(unittest.TestCase):
    def test_close_force_releases_outstanding(self) -> None:
        pool = BufferPool()
        lease = pool.lease("run-1")
        lease.acquire(10, 10)
        kept = lease.acquire(10, 10)
        lease.release(kept)
        self.assertEqual(lease.outstanding, 1)

        self.assertEqual(lease.close(), 1)
        self.assertEqual(pool.active_count, 0)
        self.assertTrue(lease.closed)
        with self.assertRaises(LeaseClosed):
            lease.acquire(10, 10)

    def test_lease_closed_is_resource_exhaustion(self) -> None:
        self.assertTrue(issubclass(LeaseClosed, ResourceExhaustion))


class TestTaskDispatcher(unittest.IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        self.dispatcher = TaskDispatcher(max_workers=2)
        self.addCleanup(self.dispatcher.shutdown)

    async def test_outcomes_in_order_with_isolated_failure(self) -> None:
        def boom() -> int:
            raise ValueError("bad cell")

        outcomes = await self.dispatcher.dispatch([lambda: 1, boom, lambda: 3])
        self.assertEqual([o.index for o in outcomes], [0, 1, 2])
        self.assertEqual(outcomes[0].value, 1)
        self.assertIsInstance(outcomes[1].error, ValueError)
        self.assertEqual(outcomes[2].value, 3)
        self.assertEqual(self.dispatcher.stats.completed, 2)
        self.assertEqual(self.dispatcher.stats.failed, 1)

    async def test_progress_after_every_batch(self) -> None:
        progress = []
        await self.dispatcher.dispatch(
            [lambda: None] * 5,
            on_batch=lambda done, total: progress.append((done, total)),
        )
        self.assertEqual(progress, [(2, 5), (4, 5), (5, 5)])

    async def test_concurrency_is_bounded(self) -> None:
        lock = threading.Lock()
        running = [0]
        peak = [0]

        def task() -> None:
            with lock:
                running[0] += 1
                peak[0] = max(peak[0], running[0])
            time.sleep(0.02)
            with lock:
                running[0] -= 1

        await self.dispatcher.dispatch([task] * 7)
        self.assertLessEqual(peak[0], 2)

    async def test_per_task_timeout(self) -> None:
        outcomes = await self.dispatcher.dispatch([lambda: time.sleep(0.5)], timeout=0.05)
        self.assertIsInstance(outcomes[0].error, asyncio.TimeoutError)


class TestResourcePool(unittest.TestCase):
    def test_from_config_and_stats(self) -> None:
        resources = ResourcePool.from_config(PoolConfig(max_workers=2, max_pool_size=3))
        self.addCleanup(resources.close)
        buf = resources.acquire(8, 8)
        resources.release(buf)
        stats = resources.stats()
        self.assertEqual(stats["buffers"]["created"], 1)
        self.assertEqual(stats["active_buffers"], 0)
        self.assertEqual(resources.dispatcher.max_workers, 2)

    def test_invalid_config(self) -> None:
        with self.assertRaises(ValueError):
            ResourcePool.from_config(PoolConfig(max_workers=0))


if __name__ == "__main__":
    unittest.main()
