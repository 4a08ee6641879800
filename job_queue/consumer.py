"""
Job Consumer — processes dispatch jobs pulled from the queue.

Per message:
  1. Parse the Job Message (malformed body → FAILED, acknowledged).
  2. Call services A and B concurrently, each raced against its own
     timeout. A timed-out call is discarded; nothing is cancelled downstream.
  3. Consolidate: OK only if both sides succeed, otherwise the higher status
     wins and both partial payloads are kept.
  4. Upsert a Dispatch Result under (job id, date), whatever the outcome.
  5. Classify: 5xx, 429, timeout and connection reset signal a retry;
     other failures are acknowledged as consumed.

The consumer never retries internally and never touches the queue; it
returns a ConsumerOutcome per message. QueueWorker (below) and the batch
event handler translate those outcomes into ack/release calls or a
partial-batch-failure response.

Topology:
  ┌────────────┐  receive  ┌──────────────┐  fan-out  ┌──────────┐
  │ Dispatch Q │──────────▶│ JobConsumer  │──────────▶│ A  ║  B  │
  └─────┬──────┘           └──────┬───────┘           └──────────┘
        │ release (retry)         │ upsert
        │◀────────────────────────┤
        ▼                         ▼
  ┌────────────┐           ┌──────────────┐
  │    DLQ     │           │ Result Store │
  └────────────┘           └──────────────┘
"""
from __future__ import annotations

import asyncio
import json
import time
import structlog
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

from backend.connector import DownstreamClient
from core.errors import (
    TIMEOUT_CODE,
    ConfigurationError, DispatchError, SerializationError, StoreWriteError, TransportTimeout,
    classify_failure, error_from_detail,
)
from database.store_base import BaseResultStore
from job_queue.message_queue import DispatchQueue
from models.schemas import (
    ConsolidatedResponse, ConsumerOutcome, DispatchResult, DispatchStatus,
    DownstreamOutcome, JobMessage, MessageEnvelope, OutcomeKind,
    dedup_key, utc_today,
)

logger = structlog.get_logger()


# ──────────────────────────────────────────────────────────────
#  Reports
# ──────────────────────────────────────────────────────────────

@dataclass
class MessageReport:
    message_id: str
    receipt_handle: str
    outcome: ConsumerOutcome
    job_id: Optional[str] = None
    status: Optional[DispatchStatus] = None
    http_status: Optional[int] = None
    latency_ms: int = 0
    reason: str = ""


@dataclass
class BatchReport:
    items: list[MessageReport] = field(default_factory=list)

    @property
    def acknowledged(self) -> list[MessageReport]:
        return [i for i in self.items if i.outcome == ConsumerOutcome.ACKNOWLEDGE]

    @property
    def retries(self) -> list[MessageReport]:
        return [i for i in self.items if i.outcome == ConsumerOutcome.SIGNAL_RETRY]

    def batch_item_failures(self) -> list[dict[str, str]]:
        return [{"itemIdentifier": i.message_id} for i in self.retries]


# ──────────────────────────────────────────────────────────────
#  Consolidation
# ──────────────────────────────────────────────────────────────

def consolidate(a: DownstreamOutcome, b: DownstreamOutcome, latency_ms: int) -> ConsolidatedResponse:
    """Merge the two side outcomes into one job-level response."""
    ok = a.ok and b.ok
    sides = {"a": a, "b": b}
    if ok:
        return ConsolidatedResponse(
            ok=True,
            http_status=200,
            latency_ms=latency_ms,
            data={"a": a.data, "b": b.data},
        )

    worst = max((o for o in sides.values() if not o.ok), key=lambda o: o.http_status)
    return ConsolidatedResponse(
        ok=False,
        http_status=max(a.http_status, b.http_status),
        latency_ms=latency_ms,
        data={side: (o.data if o.ok else None) for side, o in sides.items()},
        errors={side: o.error for side, o in sides.items() if not o.ok},
        code=worst.code,
    )


# ──────────────────────────────────────────────────────────────
#  Consumer
# ──────────────────────────────────────────────────────────────

class JobConsumer:
    """
    Usage:
        consumer = JobConsumer(store, downstream, timeout_ms=5000)
        report = await consumer.process_batch(envelopes)
    """

    def __init__(
        self,
        store: BaseResultStore,
        downstream: DownstreamClient,
        timeout_ms: int = 5000,
        path_a: str = "/lambdaA",
        path_b: str = "/lambdaB",
        retry_on_config_error: bool = False,
        today_fn: Callable[[], str] = utc_today,
        clock: Callable[[], float] = time.perf_counter,
    ):
        self.store = store
        self.downstream = downstream
        self.timeout_ms = timeout_ms
        self.path_a = path_a
        self.path_b = path_b
        self.retry_on_config_error = retry_on_config_error
        self._today = today_fn
        self._clock = clock

    async def process_batch(self, messages: list[MessageEnvelope]) -> BatchReport:
        """
        Process messages one at a time. Once a partition signals a retry, its
        later messages in this batch are handed back untouched so they are
        redelivered after it, in order.
        """
        report = BatchReport()
        blocked: set[str] = set()

        for envelope in messages:
            if envelope.partition_key in blocked:
                report.items.append(MessageReport(
                    message_id=envelope.message_id,
                    receipt_handle=envelope.receipt_handle,
                    outcome=ConsumerOutcome.SIGNAL_RETRY,
                    reason="partition_blocked",
                ))
                continue

            item = await self.process_message(envelope)
            report.items.append(item)
            if item.outcome == ConsumerOutcome.SIGNAL_RETRY:
                blocked.add(envelope.partition_key)

        logger.info("batch_processed",
                    size=len(messages),
                    acknowledged=len(report.acknowledged),
                    retries=len(report.retries))
        return report

    async def process_message(self, envelope: MessageEnvelope) -> MessageReport:
        date = self._today()
        start = self._clock()

        try:
            job = JobMessage.from_body(envelope.body)
        except SerializationError as e:
            return await self._reject_malformed(envelope, e, date, start)

        payload = {
            "correlationId": dedup_key(job.id, date),
            "endpoint": job.endpoint,
            "body": job.body,
        }
        response = await self.call_downstream(payload)

        if response.ok:
            result = DispatchResult(
                id=job.id, date=date,
                status=DispatchStatus.OK,
                http_status=response.http_status,
                latency_ms=response.latency_ms,
                payload=response.data,
            )
            outcome = ConsumerOutcome.ACKNOWLEDGE
        else:
            result = DispatchResult(
                id=job.id, date=date,
                status=DispatchStatus.FAILED,
                http_status=response.http_status,
                latency_ms=response.latency_ms,
                payload=response.data,
                error=self._error_detail(response),
            )
            outcome = (ConsumerOutcome.SIGNAL_RETRY if self.should_retry(response)
                       else ConsumerOutcome.ACKNOWLEDGE)

        try:
            await self._persist(result)
        except StoreWriteError as e:
            logger.error("result_store_write_failed",
                         job_id=job.id,
                         message_id=envelope.message_id,
                         error=str(e))
            return MessageReport(
                message_id=envelope.message_id,
                receipt_handle=envelope.receipt_handle,
                outcome=ConsumerOutcome.SIGNAL_RETRY,
                job_id=job.id,
                status=result.status,
                http_status=result.http_status,
                latency_ms=result.latency_ms,
                reason="store_write_failed",
            )

        log = logger.info if outcome == ConsumerOutcome.ACKNOWLEDGE else logger.warning
        log("job_processed",
            job_id=job.id,
            provider=job.provider,
            status=result.status.value,
            http_status=result.http_status,
            latency_ms=result.latency_ms,
            outcome=outcome.value,
            receive_count=envelope.receive_count)

        return MessageReport(
            message_id=envelope.message_id,
            receipt_handle=envelope.receipt_handle,
            outcome=outcome,
            job_id=job.id,
            status=result.status,
            http_status=result.http_status,
            latency_ms=result.latency_ms,
            reason="" if response.ok else (response.code or f"HTTP {response.http_status}"),
        )

    # ── fan-out ───────────────────────────────────────────

    async def call_downstream(self, payload: dict[str, Any]) -> ConsolidatedResponse:
        start = self._clock()
        a, b = await asyncio.gather(
            self._call("a", self.path_a, payload),
            self._call("b", self.path_b, payload),
        )
        latency_ms = int((self._clock() - start) * 1000)
        return consolidate(a, b, latency_ms)

    async def _call(self, side: str, path: str, payload: dict[str, Any]) -> DownstreamOutcome:
        try:
            return await asyncio.wait_for(
                self.downstream.invoke(path, payload),
                timeout=self.timeout_ms / 1000.0,
            )
        except asyncio.TimeoutError:
            return DownstreamOutcome(
                kind=OutcomeKind.TIMEOUT,
                http_status=TransportTimeout.default_status,
                error={"message": f"{side} timed out after {self.timeout_ms} ms",
                       "code": TIMEOUT_CODE},
            )
        except DispatchError as e:
            kind = OutcomeKind.TIMEOUT if isinstance(e, TransportTimeout) else OutcomeKind.FAILURE
            return DownstreamOutcome(kind=kind, http_status=e.http_status, error=e.to_detail())
        except Exception as e:
            logger.error("downstream_call_error", side=side, path=path,
                         error=str(e), exc_info=True)
            return DownstreamOutcome(
                kind=OutcomeKind.FAILURE,
                http_status=500,
                error={"message": str(e) or type(e).__name__, "code": None},
            )

    # ── classification ────────────────────────────────────

    def should_retry(self, response: ConsolidatedResponse) -> bool:
        """Each failed side is judged by ``classify_failure`` at the job's status.

        The configuration-error policy decides only when every failed side is
        a configuration error; otherwise any retryable side signals a retry.
        """
        if response.ok:
            return False
        failures = [error_from_detail(err, response.http_status)
                    for err in response.errors.values()]
        if not failures:
            failures = [error_from_detail({"code": response.code}, response.http_status)]
        others = [e for e in failures if not isinstance(e, ConfigurationError)]
        if not others:
            return classify_failure(failures[0], self.retry_on_config_error)
        return any(classify_failure(e, self.retry_on_config_error) for e in others)

    @staticmethod
    def _error_detail(response: ConsolidatedResponse) -> dict[str, Any]:
        worst = next((e for e in response.errors.values() if (e or {}).get("code") == response.code),
                     next(iter(response.errors.values()), None)) or {}
        return {
            "message": worst.get("message", f"HTTP {response.http_status}"),
            "code": response.code,
            **{side: err for side, err in response.errors.items()},
        }

    # ── persistence ───────────────────────────────────────

    async def _persist(self, result: DispatchResult) -> None:
        try:
            await self.store.put(result)
        except Exception as e:
            raise StoreWriteError(f"{type(e).__name__}: {e}") from e

    async def _reject_malformed(self, envelope: MessageEnvelope, error: SerializationError,
                                date: str, start: float) -> MessageReport:
        job_id = self._best_effort_id(envelope)
        latency_ms = int((self._clock() - start) * 1000)
        logger.warning("job_body_malformed",
                       message_id=envelope.message_id,
                       job_id=job_id,
                       error=error.message)
        result = DispatchResult(
            id=job_id, date=date,
            status=DispatchStatus.FAILED,
            http_status=error.http_status,
            latency_ms=latency_ms,
            error=error.to_detail(),
        )
        try:
            await self._persist(result)
        except StoreWriteError as e:
            logger.error("result_store_write_failed",
                         job_id=job_id, message_id=envelope.message_id, error=str(e))
            return MessageReport(
                message_id=envelope.message_id,
                receipt_handle=envelope.receipt_handle,
                outcome=ConsumerOutcome.SIGNAL_RETRY,
                job_id=job_id,
                status=DispatchStatus.FAILED,
                http_status=error.http_status,
                latency_ms=latency_ms,
                reason="store_write_failed",
            )
        return MessageReport(
            message_id=envelope.message_id,
            receipt_handle=envelope.receipt_handle,
            outcome=ConsumerOutcome.ACKNOWLEDGE,
            job_id=job_id,
            status=DispatchStatus.FAILED,
            http_status=error.http_status,
            latency_ms=latency_ms,
            reason=error.code or "",
        )

    @staticmethod
    def _best_effort_id(envelope: MessageEnvelope) -> str:
        try:
            raw = json.loads(envelope.body)
        except ValueError:
            return envelope.message_id
        if isinstance(raw, dict) and isinstance(raw.get("id"), str) and raw["id"]:
            return raw["id"]
        return envelope.message_id


# ──────────────────────────────────────────────────────────────
#  Queue Worker
# ──────────────────────────────────────────────────────────────

class QueueWorker:
    """
    Pulls batches from the dispatch queue, runs the consumer and settles
    each message: ACKNOWLEDGE → ack, SIGNAL_RETRY → release.

    Usage:
        worker = QueueWorker(queue, consumer, batch_size=5)
        await worker.start()              # blocks until stop()
        await worker.start_background()   # returns the task
        await worker.stop()
    """

    def __init__(
        self,
        queue: DispatchQueue,
        consumer: JobConsumer,
        batch_size: int = 5,
        wait_seconds: float = 2.0,
        idle_sleep_seconds: float = 1.0,
    ):
        self.queue = queue
        self.consumer = consumer
        self.batch_size = batch_size
        self.wait_seconds = wait_seconds
        self.idle_sleep_seconds = idle_sleep_seconds
        self._task: Optional[asyncio.Task] = None
        self._running = False

    async def run_once(self) -> Optional[BatchReport]:
        messages = await self.queue.receive(self.batch_size, wait_seconds=self.wait_seconds)
        if not messages:
            return None
        report = await self.consumer.process_batch(messages)
        await self.settle(report)
        return report

    async def settle(self, report: BatchReport) -> None:
        for item in report.items:
            if item.outcome == ConsumerOutcome.ACKNOWLEDGE:
                await self.queue.ack(item.receipt_handle)
            else:
                await self.queue.release(item.receipt_handle)

    async def start(self):
        """Start consuming — blocks until stop() is called."""
        self._running = True
        logger.info("queue_worker_starting", batch_size=self.batch_size)

        while self._running:
            try:
                report = await self.run_once()
                if report is None:
                    await asyncio.sleep(self.idle_sleep_seconds)
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("queue_worker_error", error=str(e), exc_info=True)
                await asyncio.sleep(1)

    async def start_background(self) -> asyncio.Task:
        self._task = asyncio.create_task(self.start(), name="queue_worker")
        return self._task

    async def stop(self):
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("queue_worker_stopped")
