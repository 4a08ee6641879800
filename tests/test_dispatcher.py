"""Tests for the job dispatcher: record page → delayed, deduplicated jobs."""
import json
import pytest

from backend.record_source import InMemoryRecordSource
from job_queue.dispatcher import JobDispatcher
from job_queue.message_queue import InMemoryDispatchQueue, QueueError

from conftest import TODAY


def make_dispatcher(source, queue, **kwargs) -> JobDispatcher:
    kwargs.setdefault("jitter_fn", lambda: 0)
    return JobDispatcher(source, queue, today_fn=lambda: TODAY, **kwargs)


class TestJobDispatcher:
    @pytest.mark.asyncio
    async def test_empty_source(self, queue):
        result = await make_dispatcher(InMemoryRecordSource(), queue).dispatch()
        assert result == {"enqueued": 0}
        assert queue.sent_count == 0

    @pytest.mark.asyncio
    async def test_three_records_two_providers(self, source, queue, clock):
        result = await make_dispatcher(source, queue).dispatch()
        assert result == {"enqueued": 3}

        dedup_ids = {m.dedup_id for msgs in queue._pending.values() for m in msgs}
        assert dedup_ids == {f"r1@{TODAY}", f"r2@{TODAY}", f"r3@{TODAY}"}

        delays = [m.visible_at - clock() for msgs in queue._pending.values() for m in msgs]
        assert all(0 <= d < 900 for d in delays)

        assert [m.partition_key for m in queue._pending["p1"]] == ["p1", "p1"]
        assert [m.partition_key for m in queue._pending["p2"]] == ["p2"]

    @pytest.mark.asyncio
    async def test_job_body_carries_record(self, source, queue):
        await make_dispatcher(source, queue).dispatch()
        batch = await queue.receive(10)
        bodies = {json.loads(m.body)["id"]: json.loads(m.body) for m in batch}
        assert bodies["r1"] == {"id": "r1", "provider": "p1", "endpoint": "/orders", "body": {"qty": 1}}
        assert bodies["r2"]["body"] == {"qty": 2}

    @pytest.mark.asyncio
    async def test_same_provider_keeps_source_order(self, source, queue):
        await make_dispatcher(source, queue).dispatch()
        p1 = []
        for _ in range(2):
            [msg] = [m for m in await queue.receive(10) if m.partition_key == "p1"]
            p1.append(json.loads(msg.body)["id"])
            await queue.ack(msg.receipt_handle)
        assert p1 == ["r1", "r3"]

    @pytest.mark.asyncio
    async def test_defaults_for_sparse_rows(self, queue):
        source = InMemoryRecordSource([{}, {"id": "x"}])
        await make_dispatcher(source, queue).dispatch()
        assert set(queue._pending) == {"default"}
        assert [json.loads(m.body)["id"] for m in queue._pending["default"]] == ["rec-0", "x"]

    @pytest.mark.asyncio
    async def test_rerun_same_day_is_deduplicated(self, source, queue):
        dispatcher = make_dispatcher(source, queue)
        await dispatcher.dispatch()
        await dispatcher.dispatch()
        assert queue.sent_count == 3

    @pytest.mark.asyncio
    async def test_page_limit_bounds_read(self, queue):
        source = InMemoryRecordSource([{"id": f"r{i}"} for i in range(10)])
        result = await make_dispatcher(source, queue, page_limit=4).dispatch()
        assert result == {"enqueued": 4}

    @pytest.mark.asyncio
    async def test_delays_never_exceed_ceiling_with_jitter(self, clock):
        queue = InMemoryDispatchQueue(clock=clock, max_delay_seconds=900)
        source = InMemoryRecordSource([{"id": f"r{i}", "provider": f"p{i}"} for i in range(50)])
        await make_dispatcher(source, queue, jitter_fn=lambda: 5).dispatch()
        delays = [m.visible_at - clock() for msgs in queue._pending.values() for m in msgs]
        assert len(delays) == 50
        assert max(delays) <= 900

    @pytest.mark.asyncio
    async def test_send_failure_propagates(self, source):
        # Queue ceiling below the dispatcher's: the send is rejected.
        queue = InMemoryDispatchQueue(max_delay_seconds=0)
        with pytest.raises(QueueError):
            await make_dispatcher(source, queue, jitter_fn=lambda: 3).dispatch()
