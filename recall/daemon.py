"""Recall background loops — the idle sweeper and the stdin capture pipe."""

import asyncio
import json
import logging
import signal
import sys
import threading
from typing import Optional, TextIO

from pydantic import ValidationError
from rich.console import Console

from recall.config import get_settings
from recall.ingestion.accumulator import BatchAccumulator
from recall.ingestion.chunks import Chunk
from recall.ingestion.dispatch import CaptureClient, Dispatcher

logger = logging.getLogger(__name__)
console = Console(stderr=True)


async def run_sweeper(stop_event: asyncio.Event, service=None, interval: Optional[float] = None) -> None:
    """Close idle turns and sessions on a wall-clock timer until stopped."""
    if service is None:
        from recall.ingestion.pipeline import get_capture_service

        service = get_capture_service()
    interval = interval if interval is not None else get_settings().sessions.sweep_interval

    logger.info("Sweeper started (every %.1fs)", interval)
    while not stop_event.is_set():
        try:
            await service.sweep()
        except Exception as e:
            logger.error("Sweep failed: %s", e, exc_info=True)
        try:
            await asyncio.wait_for(stop_event.wait(), timeout=interval)
        except asyncio.TimeoutError:
            pass
    logger.info("Sweeper stopped")


class StreamReader(threading.Thread):
    """Daemon thread that parses chunk JSON lines from a blocking stream.

    Parsed chunks are handed to the event loop, which buffers them only while
    the pipe is running. A chunk that arrives after shutdown began is counted
    as late instead of being buffered where nothing will flush it. Being a
    daemon thread, a reader blocked on an interactive stdin never holds up
    process exit.
    """

    def __init__(self, stream: TextIO, accumulator: BatchAccumulator, stop_event: asyncio.Event, loop):
        super().__init__(name="recall-pipe-reader", daemon=True)
        self.stream = stream
        self.accumulator = accumulator
        self.stop_event = stop_event
        self.loop = loop
        self.parsed = 0
        self.accepted = 0

    @property
    def late(self) -> int:
        return self.parsed - self.accepted

    def _accept(self, chunk: Chunk) -> None:
        if self.stop_event.is_set():
            logger.warning("Chunk from %s arrived after shutdown began, not captured", chunk.session_id)
            return
        self.accumulator.add_chunk(chunk.session_id, chunk)
        self.accepted += 1

    def run(self) -> None:
        try:
            for line in self.stream:
                line = line.strip()
                if not line:
                    continue
                try:
                    chunk = Chunk.model_validate(json.loads(line))
                except (json.JSONDecodeError, ValidationError) as e:
                    logger.warning("Skipping malformed chunk: %s", e)
                    continue
                self.parsed += 1
                self.loop.call_soon_threadsafe(self._accept, chunk)
            self.loop.call_soon_threadsafe(self.stop_event.set)
        except RuntimeError:
            # The loop closed while the stream was still open
            logger.debug("Event loop closed, stdin reader exiting")


async def run_pipe(
    project_path: str,
    stream: TextIO = sys.stdin,
    dispatcher: Optional[Dispatcher] = None,
    session_ids: Optional[list[str]] = None,
    stop_event: Optional[asyncio.Event] = None,
) -> dict:
    """Capture chunks from a JSON-lines stream until EOF or a stop signal.

    Args:
        project_path: Project the captured terminal sessions belong to.
        stream: Source of chunk JSON lines.
        dispatcher: Where batches go; defaults to the HTTP capture client.
        session_ids: Terminal sessions to bind to ``project_path`` up front.
        stop_event: Set to stop capturing; SIGINT and SIGTERM set it too.
    """
    loop = asyncio.get_running_loop()
    if stop_event is None:
        stop_event = asyncio.Event()

    def _handle_shutdown():
        logger.info("Shutdown signal received, draining buffers...")
        stop_event.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, _handle_shutdown)
        except (NotImplementedError, RuntimeError):
            pass

    dispatcher = dispatcher or CaptureClient(project_path=project_path)
    accumulator = BatchAccumulator(dispatcher)
    for session_id in session_ids or []:
        accumulator.register_session(session_id, project_path)

    console.print(f"[bold]Recall capture started[/bold] for {project_path}")
    runner = asyncio.create_task(accumulator.run(stop_event))
    reader = StreamReader(stream, accumulator, stop_event, loop)
    reader.start()
    try:
        await runner
    finally:
        await dispatcher.aclose()

    summary = {
        "chunksRead": reader.parsed,
        "chunksSent": accumulator.chunks_sent,
        "batchesSent": accumulator.batches_sent,
        "rejected": accumulator.chunks_rejected,
        "undelivered": accumulator.pending() + reader.late,
        "lastResult": accumulator.last_result,
    }
    console.print(
        f"[bold]Recall capture stopped.[/bold] {summary['chunksSent']}/{summary['chunksRead']} chunks delivered "
        f"in {summary['batchesSent']} batches"
    )
    return summary
