"""
Application context — the shared clients, built once per process.

Every component receives its collaborators from here instead of reaching for
module-level singletons, so tests can build a context around in-memory
backends and fakes.

    ctx = await AppContext.create(load_settings())
    await ctx.dispatcher().dispatch()
    await ctx.close()
"""
from __future__ import annotations

import structlog
from dataclasses import dataclass
from typing import Optional

from backend.connector import DownstreamClient, create_downstream_client
from backend.record_source import RecordSource, create_record_source
from config.settings import Settings, get_settings
from database.store_base import BaseResultStore
from database.store_factory import create_store
from job_queue.consumer import JobConsumer, QueueWorker
from job_queue.dispatcher import JobDispatcher
from job_queue.message_queue import DispatchQueue, create_message_queue
from scheduling.trigger import DailyTrigger

logger = structlog.get_logger()


@dataclass
class AppContext:
    settings: Settings
    source: RecordSource
    queue: DispatchQueue
    store: BaseResultStore
    downstream: DownstreamClient

    @classmethod
    async def create(
        cls,
        settings: Optional[Settings] = None,
        *,
        source: Optional[RecordSource] = None,
        queue: Optional[DispatchQueue] = None,
        store: Optional[BaseResultStore] = None,
        downstream: Optional[DownstreamClient] = None,
    ) -> AppContext:
        """Build from configuration; any collaborator passed in is used as-is."""
        settings = settings or get_settings()
        ctx = cls(
            settings=settings,
            source=source if source is not None else create_record_source(settings.source),
            queue=queue if queue is not None else create_message_queue(settings.queue),
            store=store if store is not None else create_store(settings.store),
            downstream=downstream if downstream is not None else create_downstream_client(settings.downstream),
        )
        await ctx.queue.connect()
        await ctx.store.init()
        await ctx.source.init()
        logger.info("app_context_ready", app=settings.app_name)
        return ctx

    def dispatcher(self) -> JobDispatcher:
        return JobDispatcher(
            self.source,
            self.queue,
            page_limit=self.settings.source.page_limit,
            max_delay_seconds=self.settings.queue.max_delay_seconds,
            jitter_seconds=self.settings.scheduler.jitter_seconds,
        )

    def consumer(self) -> JobConsumer:
        ds = self.settings.downstream
        return JobConsumer(
            self.store,
            self.downstream,
            timeout_ms=ds.timeout_ms,
            path_a=ds.path_a,
            path_b=ds.path_b,
            retry_on_config_error=self.settings.worker.retry_on_config_error,
        )

    def worker(self) -> QueueWorker:
        return QueueWorker(
            self.queue,
            self.consumer(),
            batch_size=self.settings.worker.batch_size,
            wait_seconds=self.settings.queue.receive_wait_seconds,
            idle_sleep_seconds=self.settings.worker.idle_sleep_seconds,
        )

    def trigger(self) -> DailyTrigger:
        sched = self.settings.scheduler
        return DailyTrigger(self.dispatcher().dispatch,
                            hour=sched.trigger_hour, minute=sched.trigger_minute)

    async def close(self) -> None:
        await self.downstream.close()
        await self.queue.close()
        await self.store.close()
        await self.source.close()
        logger.info("app_context_closed")
