"""
Entry points for externally driven runtimes.

  dispatch_handler(ctx)        → {"enqueued": n}
  worker_handler(ctx, event)   → {"batchItemFailures": [{"itemIdentifier": id}, ...]}

The worker event is a batch of queue records in the common FIFO-queue
event shape:

  {"Records": [{"messageId", "receiptHandle", "body",
                "attributes": {"MessageGroupId", "MessageDeduplicationId",
                               "ApproximateReceiveCount"}}]}

Only the messages that signalled a retry are reported back; the runtime
deletes the rest.
"""
from __future__ import annotations

import structlog
from typing import Any

from core.app import AppContext
from models.schemas import MessageEnvelope

logger = structlog.get_logger()


async def dispatch_handler(ctx: AppContext) -> dict[str, int]:
    return await ctx.dispatcher().dispatch()


def envelope_from_record(record: dict[str, Any]) -> MessageEnvelope:
    attrs = record.get("attributes") or {}
    message_id = record.get("messageId") or ""
    return MessageEnvelope(
        message_id=message_id,
        receipt_handle=record.get("receiptHandle") or message_id,
        body=record.get("body") or "",
        partition_key=attrs.get("MessageGroupId") or "default",
        dedup_id=attrs.get("MessageDeduplicationId") or message_id,
        receive_count=int(attrs.get("ApproximateReceiveCount") or 1),
    )


async def worker_handler(ctx: AppContext, event: dict[str, Any]) -> dict[str, list[dict[str, str]]]:
    envelopes = [envelope_from_record(r) for r in event.get("Records") or []]
    report = await ctx.consumer().process_batch(envelopes)
    failures = report.batch_item_failures()
    if failures:
        logger.warning("batch_item_failures", count=len(failures), size=len(envelopes))
    return {"batchItemFailures": failures}
