"""Tests for chunk batching — flush triggers, ordering, and requeue on failure."""

import asyncio
import threading

import pytest
from pydantic import ValidationError

from recall.exceptions import DispatchError
from recall.ingestion.accumulator import BatchAccumulator
from recall.ingestion.policy import FlushPolicy
from tests.conftest import FakeClock, user


class RecordingDispatcher:
    """Dispatcher double that records batches and can be told to fail."""

    def __init__(self, fail_times: int = 0):
        self.batches: list[list[dict]] = []
        self.projects: list = []
        self.fail_times = fail_times
        self.attempts = 0
        self.is_ready = True

    def ready(self, now=None) -> bool:
        return self.is_ready

    async def send(self, chunks, project_path=None):
        self.attempts += 1
        if self.fail_times:
            self.fail_times -= 1
            raise DispatchError("endpoint down", status_code=503)
        self.batches.append(list(chunks))
        self.projects.append(project_path)
        return {"processed": len(chunks), "totalConversations": 0, "currentSession": "s1"}


def contents(batch):
    return [c["content"] for c in batch]


def make(dispatcher, clock):
    return BatchAccumulator(dispatcher, FlushPolicy(flush_interval=2.0, max_batch_size=100), clock=clock)


class TestFlushTriggers:
    @pytest.mark.asyncio
    async def test_size_trigger_then_time_trigger(self):
        """150 chunks in quick succession flush as 100 then 50."""
        clock = FakeClock()
        dispatcher = RecordingDispatcher()
        acc = make(dispatcher, clock)

        for i in range(150):
            acc.add_chunk("term-1", user(f"line {i}"))

        assert await acc.flush_due() == 1
        await acc.join()
        assert [len(b) for b in dispatcher.batches] == [100]

        # Remaining 50 are young, not due yet
        assert await acc.flush_due() == 0

        clock.advance(2.0)
        assert await acc.flush_due() == 1
        await acc.join()
        assert [len(b) for b in dispatcher.batches] == [100, 50]
        assert acc.pending() == 0

    @pytest.mark.asyncio
    async def test_spaced_chunks_flush_individually(self):
        """5 chunks arriving more than 2s apart produce 5 flushes."""
        clock = FakeClock()
        dispatcher = RecordingDispatcher()
        acc = make(dispatcher, clock)

        for i in range(5):
            acc.add_chunk("term-1", user(f"cmd {i}"))
            clock.advance(2.5)
            await acc.flush_due()
            await acc.join()

        assert [len(b) for b in dispatcher.batches] == [1, 1, 1, 1, 1]

    @pytest.mark.asyncio
    async def test_order_preserved(self):
        clock = FakeClock()
        dispatcher = RecordingDispatcher()
        acc = make(dispatcher, clock)
        for i in range(250):
            acc.add_chunk("term-1", user(str(i)))
        await acc.drain()
        flat = [c for b in dispatcher.batches for c in contents(b)]
        assert flat == [str(i) for i in range(250)]
        assert [len(b) for b in dispatcher.batches] == [100, 100, 50]

    @pytest.mark.asyncio
    async def test_sessions_buffer_separately(self):
        clock = FakeClock()
        dispatcher = RecordingDispatcher()
        acc = make(dispatcher, clock)
        acc.register_session("a", "/work/a")
        acc.register_session("b", "/work/b")
        acc.add_chunk("a", user("one", session_id="a"))
        acc.add_chunk("b", user("two", session_id="b"))
        clock.advance(2.0)
        assert await acc.flush_due() == 2
        await acc.join()
        assert sorted(dispatcher.projects) == ["/work/a", "/work/b"]


class TestFailures:
    @pytest.mark.asyncio
    async def test_failed_batch_requeued_at_head(self):
        clock = FakeClock()
        dispatcher = RecordingDispatcher(fail_times=1)
        acc = make(dispatcher, clock)
        acc.add_chunk("term-1", user("first"))
        clock.advance(2.0)
        await acc.flush_due()
        await acc.join()
        assert dispatcher.batches == []
        assert acc.pending() == 1

        acc.add_chunk("term-1", user("second"))
        # The requeued chunk keeps its original arrival time, so it is still due
        await acc.flush_due()
        await acc.join()
        assert contents(dispatcher.batches[0]) == ["first", "second"]
        assert acc.pending() == 0

    @pytest.mark.asyncio
    async def test_no_flush_while_dispatcher_backing_off(self):
        clock = FakeClock()
        dispatcher = RecordingDispatcher()
        dispatcher.is_ready = False
        acc = make(dispatcher, clock)
        acc.add_chunk("term-1", user("x"))
        clock.advance(5.0)
        assert await acc.flush_due() == 0
        assert dispatcher.attempts == 0

    @pytest.mark.asyncio
    async def test_one_dispatch_in_flight_per_session(self):
        clock = FakeClock()
        release = asyncio.Event()

        class SlowDispatcher(RecordingDispatcher):
            async def send(self, chunks, project_path=None):
                await release.wait()
                return await super().send(chunks, project_path)

        dispatcher = SlowDispatcher()
        acc = make(dispatcher, clock)
        for i in range(120):
            acc.add_chunk("term-1", user(str(i)))
        assert await acc.flush_due() == 1
        clock.advance(3.0)
        assert await acc.flush_due() == 0
        assert acc.in_flight == 1

        release.set()
        await acc.join()
        assert await acc.flush_due() == 1
        await acc.join()
        assert [len(b) for b in dispatcher.batches] == [100, 20]

    @pytest.mark.asyncio
    async def test_drain_gives_up_on_dead_endpoint(self):
        clock = FakeClock()
        dispatcher = RecordingDispatcher(fail_times=1000)
        acc = make(dispatcher, clock)
        acc.add_chunk("term-1", user("lost?"))
        left = await acc.drain()
        assert left == 1
        assert acc.pending() == 1


class TestRejections:
    def test_malformed_dict_raised_to_producer(self):
        acc = make(RecordingDispatcher(), FakeClock())
        with pytest.raises(ValidationError):
            acc.add_chunk("term-1", {"timestamp": "not-a-number", "type": "terminal_input", "content": "x"})
        assert acc.pending() == 0
        assert acc.chunks_received == 0

    @pytest.mark.asyncio
    async def test_valid_chunk_after_malformed_one_delivered(self):
        clock = FakeClock()
        dispatcher = RecordingDispatcher()
        acc = make(dispatcher, clock)
        with pytest.raises(ValidationError):
            acc.add_chunk("term-1", {"timestamp": "not-a-number", "type": "terminal_input", "content": "x"})
        acc.add_chunk("term-1", {"timestamp": 5, "type": "terminal_input", "content": "claude make it"})

        clock.advance(2.0)
        await acc.flush_due()
        await acc.join()
        assert contents(dispatcher.batches[0]) == ["claude make it"]
        assert dispatcher.batches[0][0]["sessionId"] == "term-1"
        assert acc.pending() == 0

    @pytest.mark.asyncio
    async def test_refused_batch_dropped_and_counted(self):
        clock = FakeClock()

        class RefusingDispatcher(RecordingDispatcher):
            async def send(self, chunks, project_path=None):
                self.attempts += 1
                if any(c["content"] == "poison" for c in chunks):
                    raise DispatchError("Capture endpoint returned 422", status_code=422, permanent=True)
                return await super().send(chunks, project_path)

        dispatcher = RefusingDispatcher()
        acc = make(dispatcher, clock)
        acc.add_chunk("term-1", user("poison"))
        clock.advance(2.0)
        await acc.flush_due()
        await acc.join()
        assert acc.pending() == 0
        assert acc.chunks_rejected == 1

        acc.add_chunk("term-1", user("next"))
        clock.advance(2.0)
        await acc.flush_due()
        await acc.join()
        assert contents(dispatcher.batches[0]) == ["next"]


class TestProducers:
    @pytest.mark.asyncio
    async def test_concurrent_producers_lose_nothing(self):
        clock = FakeClock()
        dispatcher = RecordingDispatcher()
        acc = make(dispatcher, clock)

        def produce(name):
            for i in range(200):
                acc.add_chunk(name, {"timestamp": i, "type": "terminal_output", "content": f"{name}-{i}"})

        threads = [threading.Thread(target=produce, args=(f"t{n}",)) for n in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert acc.pending() == 800
        await acc.drain()
        sent = [c["content"] for b in dispatcher.batches for c in b]
        assert len(sent) == 800
        assert len(set(sent)) == 800
        assert all(c["sessionId"] for b in dispatcher.batches for c in b)


class TestRun:
    @pytest.mark.asyncio
    async def test_run_drains_on_stop(self):
        dispatcher = RecordingDispatcher()
        acc = BatchAccumulator(dispatcher, FlushPolicy(flush_interval=60.0), tick_interval=0.01)
        stop = asyncio.Event()
        task = asyncio.create_task(acc.run(stop))
        acc.add_chunk("term-1", user("pending at shutdown"))
        await asyncio.sleep(0.05)
        assert dispatcher.batches == []
        stop.set()
        await task
        assert contents(dispatcher.batches[0]) == ["pending at shutdown"]
