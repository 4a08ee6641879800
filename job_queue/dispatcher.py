"""
Job Dispatcher — one run per trigger.

Reads one bounded page from the Record Source, spreads the records over the
day with the Delay Scheduler and sends one Job Message per record:

  partition key  = record.provider      (same provider never concurrent)
  dedup id       = "{id}@{YYYY-MM-DD}"  (UTC; one job per record per day)
  delay          = folded, jittered offset (always <= queue ceiling)

Send failures are not retried here; they propagate to the trigger.
"""
from __future__ import annotations

import structlog
from typing import Callable, Optional

from backend.record_source import RecordSource
from job_queue.message_queue import DispatchQueue
from models.schemas import dedup_key, utc_today
from scheduling.delays import JitterFn, schedule_delays, small_jitter

logger = structlog.get_logger()


class JobDispatcher:

    def __init__(
        self,
        source: RecordSource,
        queue: DispatchQueue,
        page_limit: int = 1000,
        max_delay_seconds: int = 900,
        jitter_seconds: int = 5,
        jitter_fn: Optional[JitterFn] = None,
        today_fn: Callable[[], str] = utc_today,
    ):
        self.source = source
        self.queue = queue
        self.page_limit = page_limit
        self.max_delay_seconds = max_delay_seconds
        self._jitter_fn = jitter_fn or (lambda: small_jitter(jitter_seconds))
        self._today = today_fn

    async def dispatch(self) -> dict[str, int]:
        records = await self.source.read(self.page_limit)
        n = len(records)
        date = self._today()
        delays = schedule_delays(n, self.max_delay_seconds, self._jitter_fn)

        logger.info("dispatch_started", records=n, date=date)

        for record, delay in zip(records, delays):
            job = record.to_job()
            message_id = await self.queue.send(
                job.to_body(),
                partition_key=job.provider,
                dedup_id=dedup_key(job.id, date),
                delay_seconds=delay,
            )
            logger.debug("job_enqueued",
                         job_id=job.id,
                         provider=job.provider,
                         delay_seconds=delay,
                         message_id=message_id)

        logger.info("dispatch_complete", enqueued=n, date=date)
        return {"enqueued": n}
