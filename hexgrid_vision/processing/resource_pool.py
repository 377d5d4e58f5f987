"""
Resource Pool – Scratch Buffers & Bounded Parallel Dispatch
===========================================================

Two cooperating pieces:

  • ``BufferPool`` – reuses RGBA ``uint8`` scratch buffers keyed by
    ``(width, height)``.  Allocation is charged against a memory counter;
    crossing ``cleanup_threshold × max_memory_bytes`` triggers a
    synchronous cleanup before allocating, and the absolute ceiling is
    never exceeded (``ResourceExhaustion`` instead).
  • ``TaskDispatcher`` – runs batches of at most ``max_workers``
    callables on a thread pool and returns one ``TaskOutcome`` per task,
    in input order.  A failing task never cancels its siblings.

``ResourcePool`` bundles both behind the interface the coordinator uses.

Design notes:
  • All bookkeeping happens under one lock, so acquire/release are atomic
    and no two tasks are ever handed the same physical buffer.
  • The memory counter covers checked-out *and* pooled buffers.
  • ``PoolLease`` tracks what one run checked out.  Closing it discards
    those buffers instead of re-pooling them: a worker abandoned by a
    timeout may still be writing into one.
"""

from __future__ import annotations

import asyncio
import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

import numpy as np

from hexgrid_vision.config import PoolConfig
from hexgrid_vision.errors import LeaseClosed, ResourceExhaustion, ValidationError

log = logging.getLogger(__name__)

SizeKey = Tuple[int, int]
CHANNELS: int = 4


# ── Data classes ───────────────────────────────────────────────────────

@dataclass
class PoolEntry:
    """An idle buffer waiting in its size pool."""
    size_key: SizeKey
    buffer: np.ndarray
    last_used: float           # monotonic timestamp of the release


@dataclass
class PoolStats:
    created: int = 0
    reused: int = 0
    discarded: int = 0
    cleanup_count: int = 0
    peak_memory: int = 0

    @property
    def efficiency(self) -> float:
        """Share of acquisitions served from the pool."""
        total = self.created + self.reused
        return self.reused / total if total else 0.0

    def to_dict(self) -> Dict[str, float]:
        return {
            "created": self.created,
            "reused": self.reused,
            "discarded": self.discarded,
            "cleanup_count": self.cleanup_count,
            "peak_memory": self.peak_memory,
            "efficiency": round(self.efficiency, 4),
        }


@dataclass(frozen=True)
class TaskOutcome:
    """Result of one dispatched task: either a value or an error."""
    index: int
    value: Any = None
    error: Optional[BaseException] = None
    duration: float = 0.0

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass
class DispatchStats:
    total_tasks: int = 0
    completed: int = 0
    failed: int = 0
    total_time: float = 0.0

    @property
    def average_task_time(self) -> float:
        done = self.completed + self.failed
        return self.total_time / done if done else 0.0


# ── Buffer pool ────────────────────────────────────────────────────────

class BufferPool:
    """Size-keyed pool of zeroed RGBA scratch buffers.

    Parameters
    ----------
    max_pool_size : int
        Idle buffers kept per size key; extras are discarded on release.
    max_memory_bytes : int
        Hard ceiling for pooled + checked-out buffers.
    cleanup_threshold : float
        Fraction of the ceiling above which allocation cleans up first.
    max_idle_seconds : float
        Idle entries older than this are dropped on cleanup.
    clock : callable
        Monotonic clock, injectable for tests.
    """

    def __init__(
        self,
        max_pool_size: int = 8,
        max_memory_bytes: int = 100 * 1024 * 1024,
        cleanup_threshold: float = 0.8,
        max_idle_seconds: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.max_pool_size = max_pool_size
        self.max_memory_bytes = max_memory_bytes
        self.cleanup_threshold = cleanup_threshold
        self.max_idle_seconds = max_idle_seconds
        self._clock = clock

        self._lock = threading.Lock()
        self._pools: Dict[SizeKey, List[PoolEntry]] = {}
        self._active: Dict[int, Tuple[SizeKey, np.ndarray]] = {}
        self._memory = 0
        self.stats = PoolStats()

    @classmethod
    def from_config(cls, config: PoolConfig) -> "BufferPool":
        return cls(
            max_pool_size=config.max_pool_size,
            max_memory_bytes=config.max_memory_bytes,
            cleanup_threshold=config.cleanup_threshold,
            max_idle_seconds=config.max_idle_seconds,
        )

    # ── Introspection ──────────────────────────────────────────────────

    @property
    def memory_usage(self) -> int:
        with self._lock:
            return self._memory

    @property
    def active_count(self) -> int:
        with self._lock:
            return len(self._active)

    def pool_sizes(self) -> Dict[SizeKey, int]:
        with self._lock:
            return {key: len(entries) for key, entries in self._pools.items()}

    # ── Acquire / release ──────────────────────────────────────────────

    def acquire(self, width: int, height: int) -> np.ndarray:
        """Check out a zeroed ``(height, width, 4)`` buffer."""
        if width <= 0 or height <= 0:
            raise ValidationError(f"Buffer size must be positive (got {width}x{height})")
        key: SizeKey = (int(width), int(height))
        nbytes = key[0] * key[1] * CHANNELS

        with self._lock:
            entries = self._pools.get(key)
            if entries:
                entry = entries.pop()
                self._active[id(entry.buffer)] = (key, entry.buffer)
                self.stats.reused += 1
                return entry.buffer

            if self._memory + nbytes > self.max_memory_bytes * self.cleanup_threshold:
                self._cleanup_locked()
            if self._memory + nbytes > self.max_memory_bytes:
                raise ResourceExhaustion(
                    f"Buffer pool ceiling reached: {self._memory + nbytes} > "
                    f"{self.max_memory_bytes} bytes"
                )

            buffer = np.zeros((key[1], key[0], CHANNELS), dtype=np.uint8)
            self._active[id(buffer)] = (key, buffer)
            self._memory += nbytes
            self.stats.created += 1
            self.stats.peak_memory = max(self.stats.peak_memory, self._memory)
            return buffer

    def release(self, buffer: np.ndarray) -> None:
        """Return a buffer to its pool.  Unknown buffers are ignored."""
        with self._lock:
            record = self._active.pop(id(buffer), None)
            if record is None:
                log.debug("Ignoring release of a buffer not checked out from this pool")
                return
            key, buf = record
            buf.fill(0)
            entries = self._pools.setdefault(key, [])
            if len(entries) < self.max_pool_size:
                entries.append(PoolEntry(key, buf, self._clock()))
            else:
                self._memory -= buf.nbytes
                self.stats.discarded += 1

    def discard(self, buffer: np.ndarray) -> bool:
        """Forget a checked-out buffer without pooling it."""
        with self._lock:
            record = self._active.pop(id(buffer), None)
            if record is None:
                return False
            self._memory -= record[1].nbytes
            self.stats.discarded += 1
            return True

    # ── Cleanup ────────────────────────────────────────────────────────

    def cleanup(self) -> int:
        """Run a cleanup pass; returns the number of bytes freed."""
        with self._lock:
            return self._cleanup_locked()

    def _cleanup_locked(self) -> int:
        before = self._memory
        now = self._clock()
        in_use = {key for key, _ in self._active.values()}
        keep = max(2, self.max_pool_size // 2)

        for key in list(self._pools):
            entries = self._pools[key]
            if key not in in_use:
                survivors: List[PoolEntry] = []
            else:
                survivors = [
                    e for e in entries if now - e.last_used <= self.max_idle_seconds
                ]
                # newest entries are at the end
                survivors = survivors[-keep:]
            kept = {id(e) for e in survivors}
            for entry in entries:
                if id(entry) not in kept:
                    self._memory -= entry.buffer.nbytes
                    self.stats.discarded += 1
            if survivors:
                self._pools[key] = survivors
            else:
                del self._pools[key]

        self.stats.cleanup_count += 1
        freed = before - self._memory
        log.debug("Pool cleanup freed %d bytes (%d in use)", freed, self._memory)
        return freed

    def clear(self) -> None:
        """Drop every idle buffer (checked-out buffers stay tracked)."""
        with self._lock:
            for entries in self._pools.values():
                for entry in entries:
                    self._memory -= entry.buffer.nbytes
            self._pools.clear()

    def lease(self, name: str = "run") -> "PoolLease":
        return PoolLease(self, name)


class PoolLease:
    """Buffers checked out on behalf of one pipeline run."""

    def __init__(self, pool: BufferPool, name: str) -> None:
        self.pool = pool
        self.name = name
        self._lock = threading.Lock()
        self._outstanding: Dict[int, np.ndarray] = {}
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def outstanding(self) -> int:
        with self._lock:
            return len(self._outstanding)

    def acquire(self, width: int, height: int) -> np.ndarray:
        with self._lock:
            if self._closed:
                raise LeaseClosed(f"Lease {self.name!r} is closed")
        buffer = self.pool.acquire(width, height)
        with self._lock:
            if self._closed:
                self.pool.discard(buffer)
                raise LeaseClosed(f"Lease {self.name!r} was closed during acquire")
            self._outstanding[id(buffer)] = buffer
        return buffer

    def release(self, buffer: np.ndarray) -> None:
        with self._lock:
            if self._outstanding.pop(id(buffer), None) is None:
                return
        self.pool.release(buffer)

    def close(self) -> int:
        """Force-release everything still checked out; returns the count."""
        with self._lock:
            if self._closed:
                return 0
            self._closed = True
            buffers = list(self._outstanding.values())
            self._outstanding.clear()
        for buffer in buffers:
            self.pool.discard(buffer)
        if buffers:
            log.info("Lease %r force-released %d buffer(s)", self.name, len(buffers))
        return len(buffers)


# ── Dispatcher ─────────────────────────────────────────────────────────

class TaskDispatcher:
    """Run synchronous callables on a thread pool in bounded batches."""

    def __init__(self, max_workers: int = 4) -> None:
        self.max_workers = max_workers
        self._executor = ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix="hexgrid-worker",
        )
        self.stats = DispatchStats()

    async def dispatch(
        self,
        tasks: Sequence[Callable[[], Any]],
        timeout: Optional[float] = None,
        on_batch: Optional[Callable[[int, int], None]] = None,
    ) -> List[TaskOutcome]:
        """Run *tasks* in batches of ``max_workers``.

        Parameters
        ----------
        tasks : sequence of zero-argument callables
        timeout : float, optional
            Per-task limit in seconds; a task that exceeds it yields an
            ``asyncio.TimeoutError`` outcome (its thread is abandoned).
        on_batch : callable, optional
            ``on_batch(completed, total)`` after every batch.

        Returns
        -------
        list[TaskOutcome]
            One outcome per task, in input order.
        """
        loop = asyncio.get_running_loop()
        total = len(tasks)
        outcomes: List[TaskOutcome] = []
        self.stats.total_tasks += total

        for start in range(0, total, self.max_workers):
            batch = tasks[start:start + self.max_workers]
            results = await asyncio.gather(
                *(self._run(loop, start + i, task, timeout) for i, task in enumerate(batch)),
                return_exceptions=True,
            )
            for i, result in enumerate(results):
                if isinstance(result, TaskOutcome):
                    outcome = result
                else:
                    outcome = TaskOutcome(index=start + i, error=result)
                if outcome.ok:
                    self.stats.completed += 1
                else:
                    self.stats.failed += 1
                self.stats.total_time += outcome.duration
                outcomes.append(outcome)

            if on_batch is not None:
                on_batch(len(outcomes), total)

        return outcomes

    async def _run(
        self,
        loop: asyncio.AbstractEventLoop,
        index: int,
        task: Callable[[], Any],
        timeout: Optional[float],
    ) -> TaskOutcome:
        started = time.perf_counter()
        future = loop.run_in_executor(self._executor, task)
        try:
            if timeout is not None:
                value = await asyncio.wait_for(future, timeout)
            else:
                value = await future
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            return TaskOutcome(index=index, error=exc,
                               duration=time.perf_counter() - started)
        return TaskOutcome(index=index, value=value,
                           duration=time.perf_counter() - started)

    def shutdown(self, wait: bool = False) -> None:
        self._executor.shutdown(wait=wait, cancel_futures=True)


# ── Facade ─────────────────────────────────────────────────────────────

class ResourcePool:
    """Buffer pool + dispatcher, as used by the pipeline coordinator."""

    def __init__(
        self,
        buffers: Optional[BufferPool] = None,
        dispatcher: Optional[TaskDispatcher] = None,
    ) -> None:
        self.buffers = buffers or BufferPool()
        self.dispatcher = dispatcher or TaskDispatcher()

    @classmethod
    def from_config(cls, config: PoolConfig) -> "ResourcePool":
        config.validate()
        return cls(
            buffers=BufferPool.from_config(config),
            dispatcher=TaskDispatcher(max_workers=config.max_workers),
        )

    def acquire(self, width: int, height: int) -> np.ndarray:
        return self.buffers.acquire(width, height)

    def release(self, buffer: np.ndarray) -> None:
        self.buffers.release(buffer)

    def cleanup(self) -> int:
        return self.buffers.cleanup()

    def lease(self, name: str = "run") -> PoolLease:
        return self.buffers.lease(name)

    async def dispatch(
        self,
        tasks: Sequence[Callable[[], Any]],
        timeout: Optional[float] = None,
        on_batch: Optional[Callable[[int, int], None]] = None,
    ) -> List[TaskOutcome]:
        return await self.dispatcher.dispatch(tasks, timeout=timeout, on_batch=on_batch)

    def stats(self) -> Dict[str, Any]:
        d = self.dispatcher.stats
        return {
            "buffers": self.buffers.stats.to_dict(),
            "memory_usage": self.buffers.memory_usage,
            "active_buffers": self.buffers.active_count,
            "tasks": {
                "total": d.total_tasks,
                "completed": d.completed,
                "failed": d.failed,
                "average_task_time": round(d.average_task_time, 6),
            },
        }

    def close(self) -> None:
        self.dispatcher.shutdown(wait=False)
        self.buffers.clear()
