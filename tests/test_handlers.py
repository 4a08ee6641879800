"""Tests for the application context, runtime handlers and CLI wiring."""
import json
import pytest

from backend.connector import MockDownstreamClient
from backend.record_source import InMemoryRecordSource
from config.settings import Settings
from core.app import AppContext
from core.cli import build_parser, main
from core.handlers import dispatch_handler, envelope_from_record, worker_handler
from job_queue.message_queue import InMemoryDispatchQueue
from models.schemas import DispatchStatus, utc_today

from conftest import FakeDownstream, failure


def sqs_record(message_id: str, job_id: str, provider: str, receive_count: int = 1) -> dict:
    return {
        "messageId": message_id,
        "receiptHandle": f"rh-{message_id}",
        "body": json.dumps({"id": job_id, "provider": provider, "endpoint": "/x", "body": {}}),
        "attributes": {
            "MessageGroupId": provider,
            "MessageDeduplicationId": f"{job_id}@2024-05-01",
            "ApproximateReceiveCount": str(receive_count),
        },
    }


@pytest.fixture
def settings() -> Settings:
    s = Settings()
    s.scheduler.jitter_seconds = 0
    return s


class TestAppContext:
    @pytest.mark.asyncio
    async def test_builds_from_settings(self, settings):
        settings.downstream.use_mock = True
        ctx = await AppContext.create(settings)
        assert isinstance(ctx.queue, InMemoryDispatchQueue)
        assert isinstance(ctx.downstream, MockDownstreamClient)
        assert ctx.consumer().timeout_ms == 5000
        assert ctx.worker().batch_size == 5
        await ctx.close()

    @pytest.mark.asyncio
    async def test_injected_collaborators_used(self, settings, queue, store):
        downstream = FakeDownstream()
        ctx = await AppContext.create(settings, queue=queue, store=store, downstream=downstream)
        assert ctx.queue is queue
        assert ctx.store is store
        assert ctx.consumer().downstream is downstream

    @pytest.mark.asyncio
    async def test_empty_store_still_injected(self, settings, store):
        ctx = await AppContext.create(settings, store=store)
        assert ctx.store is store


class TestDispatchHandler:
    @pytest.mark.asyncio
    async def test_reports_count(self, settings, sample_rows, queue, store):
        ctx = await AppContext.create(settings, source=InMemoryRecordSource(sample_rows),
                                      queue=queue, store=store, downstream=FakeDownstream())
        assert await dispatch_handler(ctx) == {"enqueued": 3}
        assert await queue.depth() == 3

    @pytest.mark.asyncio
    async def test_end_to_end_with_worker(self, settings, sample_rows, queue, store):
        ctx = await AppContext.create(settings, source=InMemoryRecordSource(sample_rows),
                                      queue=queue, store=store, downstream=FakeDownstream())
        await dispatch_handler(ctx)
        settings.queue.receive_wait_seconds = 0
        worker = ctx.worker()
        while await queue.depth():
            await worker.run_once()

        today = utc_today()
        for job_id in ("r1", "r2", "r3"):
            assert (await store.get(job_id, today)).status == DispatchStatus.OK


class TestWorkerHandler:
    def test_envelope_from_record(self):
        env = envelope_from_record(sqs_record("m1", "r1", "p1", receive_count=3))
        assert env.partition_key == "p1"
        assert env.dedup_id == "r1@2024-05-01"
        assert env.receive_count == 3
        assert env.receipt_handle == "rh-m1"

    @pytest.mark.asyncio
    async def test_all_succeed(self, settings, store):
        ctx = await AppContext.create(settings, store=store, downstream=FakeDownstream())
        event = {"Records": [sqs_record("m1", "r1", "p1"), sqs_record("m2", "r2", "p2")]}
        assert await worker_handler(ctx, event) == {"batchItemFailures": []}
        assert len(await store.scan()) == 2

    @pytest.mark.asyncio
    async def test_reports_only_retryable_failures(self, settings, store):
        downstream = FakeDownstream({"/lambdaA": failure(503)})
        ctx = await AppContext.create(settings, store=store, downstream=downstream)
        event = {"Records": [sqs_record("m1", "r1", "p1"), sqs_record("m2", "r2", "p2")]}
        response = await worker_handler(ctx, event)
        assert response == {"batchItemFailures": [{"itemIdentifier": "m1"},
                                                  {"itemIdentifier": "m2"}]}

    @pytest.mark.asyncio
    async def test_terminal_failures_not_reported(self, settings, store):
        downstream = FakeDownstream({"/lambdaA": failure(400)})
        ctx = await AppContext.create(settings, store=store, downstream=downstream)
        response = await worker_handler(ctx, {"Records": [sqs_record("m1", "r1", "p1")]})
        assert response == {"batchItemFailures": []}

    @pytest.mark.asyncio
    async def test_empty_event(self, settings, store):
        ctx = await AppContext.create(settings, store=store, downstream=FakeDownstream())
        assert await worker_handler(ctx, {}) == {"batchItemFailures": []}


class TestCli:
    def test_parser(self):
        args = build_parser().parse_args(["--config", "x.yaml", "work", "--once"])
        assert args.command == "work"
        assert args.once is True
        assert args.config == "x.yaml"

    def test_results_limit(self):
        assert build_parser().parse_args(["results", "--limit", "3"]).limit == 3

    def test_command_required(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args([])

    def test_dispatch_command(self, tmp_path, capsys, monkeypatch):
        for key in ("QUEUE_URL", "RESULTS_TABLE", "RECORDS_TABLE",
                    "INTERNAL_API_URL", "API_KEY", "REQ_TIMEOUT_MS"):
            monkeypatch.delenv(key, raising=False)
        records = tmp_path / "records.json"
        records.write_text(json.dumps([{"id": "r1"}, {"id": "r2", "provider": "p2"}]))
        config = tmp_path / "settings.yaml"
        config.write_text(
            "source:\n"
            "  backend: file\n"
            f"  file_path: {records}\n"
        )
        monkeypatch.setattr("core.cli.configure_logging", lambda debug=False: None)

        assert main(["--config", str(config), "dispatch"]) == 0
        lines = capsys.readouterr().out.splitlines()
        assert '{"enqueued": 2}' in lines
