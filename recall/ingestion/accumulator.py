"""Batch accumulator — buffers terminal chunks and flushes them in batches.

Producers call ``add_chunk`` from any thread; it only appends under a lock.
A single background task (``run``) periodically flushes buffers that are due
according to the ``FlushPolicy``. Each terminal session has at most one
dispatch in flight, and a failed batch goes back to the head of its buffer
with its original arrival times, so nothing is dropped or reordered. A batch
the endpoint refuses outright is counted and logged, then discarded.
"""

import asyncio
import logging
import threading
import time
from collections import deque
from typing import Callable, Optional, Union

from recall.config import get_settings
from recall.exceptions import DispatchError
from recall.ingestion.chunks import Chunk
from recall.ingestion.dispatch import Dispatcher
from recall.ingestion.policy import FlushPolicy

logger = logging.getLogger(__name__)


class BatchAccumulator:
    def __init__(
        self,
        dispatcher: Dispatcher,
        policy: Optional[FlushPolicy] = None,
        clock: Callable[[], float] = time.monotonic,
        tick_interval: Optional[float] = None,
    ):
        capture = get_settings().capture
        self.dispatcher = dispatcher
        self.policy = policy or FlushPolicy(capture.flush_interval, capture.max_batch_size)
        self.clock = clock
        self.tick_interval = tick_interval if tick_interval is not None else capture.tick_interval

        self._lock = threading.Lock()
        self._buffers: dict[str, deque[tuple[float, dict]]] = {}
        self._projects: dict[str, str] = {}
        self._in_flight: dict[str, asyncio.Task] = {}

        self.chunks_received = 0
        self.batches_sent = 0
        self.chunks_sent = 0
        self.chunks_rejected = 0
        self.last_result: Optional[dict] = None

    def register_session(self, session_id: str, project_path: str) -> None:
        """Bind a terminal session to the project path sent with its batches."""
        with self._lock:
            self._projects[session_id] = project_path

    def add_chunk(self, session_id: str, chunk: Union[dict, Chunk]) -> None:
        """Buffer one chunk. Never blocks on I/O.

        Raises:
            ValidationError: If a dict chunk does not match the wire format.
                Nothing is buffered in that case.
        """
        if not isinstance(chunk, Chunk):
            raw = dict(chunk)
            if "session_id" not in raw:
                raw.setdefault("sessionId", session_id)
            chunk = Chunk.model_validate(raw)
        data = chunk.to_wire()
        arrived_at = self.clock()
        with self._lock:
            buffer = self._buffers.get(session_id)
            if buffer is None:
                buffer = self._buffers[session_id] = deque()
            buffer.append((arrived_at, data))
            self.chunks_received += 1

    def pending(self, session_id: Optional[str] = None) -> int:
        with self._lock:
            if session_id is not None:
                return len(self._buffers.get(session_id, ()))
            return sum(len(b) for b in self._buffers.values())

    @property
    def in_flight(self) -> int:
        return len(self._in_flight)

    def _due_sessions(self, now: float, force: bool = False) -> list[str]:
        with self._lock:
            due = []
            for session_id, buffer in self._buffers.items():
                if not buffer or session_id in self._in_flight:
                    continue
                if force or self.policy.is_due(len(buffer), buffer[0][0], now):
                    due.append(session_id)
            return due

    def _take(self, session_id: str) -> list[tuple[float, dict]]:
        with self._lock:
            buffer = self._buffers.get(session_id)
            if not buffer:
                return []
            count = min(len(buffer), self.policy.max_batch_size)
            return [buffer.popleft() for _ in range(count)]

    def _requeue(self, session_id: str, batch: list[tuple[float, dict]]) -> None:
        with self._lock:
            buffer = self._buffers.setdefault(session_id, deque())
            buffer.extendleft(reversed(batch))

    async def _dispatch(self, session_id: str, batch: list[tuple[float, dict]]) -> None:
        chunks = [data for _, data in batch]
        try:
            result = await self.dispatcher.send(chunks, project_path=self._projects.get(session_id))
        except DispatchError as e:
            if e.permanent:
                self.chunks_rejected += len(batch)
                logger.error(
                    "Dropped %d chunks for %s refused by the capture endpoint: %s",
                    len(batch), session_id, e,
                )
            else:
                self._requeue(session_id, batch)
                logger.debug("Requeued %d chunks for %s: %s", len(batch), session_id, e)
        except Exception as e:
            self._requeue(session_id, batch)
            logger.error("Dispatch for %s failed unexpectedly: %s", session_id, e, exc_info=True)
        else:
            self.batches_sent += 1
            self.chunks_sent += len(chunks)
            self.last_result = result
            logger.debug("Flushed %d chunks for %s", len(chunks), session_id)
        finally:
            self._in_flight.pop(session_id, None)

    def _start(self, session_id: str) -> bool:
        batch = self._take(session_id)
        if not batch:
            return False
        self._in_flight[session_id] = asyncio.create_task(self._dispatch(session_id, batch))
        return True

    async def flush_due(self, now: Optional[float] = None) -> int:
        """Start a dispatch for every due session. Returns how many started."""
        now = self.clock() if now is None else now
        if not self.dispatcher.ready():
            return 0
        return sum(1 for session_id in self._due_sessions(now) if self._start(session_id))

    async def join(self) -> None:
        """Wait for every in-flight dispatch to finish."""
        while self._in_flight:
            await asyncio.gather(*list(self._in_flight.values()), return_exceptions=True)

    async def drain(self) -> int:
        """Flush everything regardless of age. Returns chunks still buffered.

        Stops as soon as a round makes no progress, so a dead endpoint cannot
        hang shutdown.
        """
        await self.join()
        while self.pending():
            before = self.pending()
            started = [s for s in self._due_sessions(self.clock(), force=True) if self._start(s)]
            if not started:
                break
            await self.join()
            if self.pending() >= before:
                break
        left = self.pending()
        if left:
            logger.warning("Shutting down with %d undelivered chunks", left)
        return left

    async def run(self, stop_event: asyncio.Event) -> None:
        """Flush due buffers every tick until stopped, then drain."""
        logger.info(
            "Accumulator started (flush every %.1fs or %d chunks)",
            self.policy.flush_interval, self.policy.max_batch_size,
        )
        try:
            while not stop_event.is_set():
                await self.flush_due()
                try:
                    await asyncio.wait_for(stop_event.wait(), timeout=self.tick_interval)
                except asyncio.TimeoutError:
                    pass
        finally:
            await self.drain()
            logger.info(
                "Accumulator stopped: %d batches, %d chunks sent",
                self.batches_sent, self.chunks_sent,
            )
