import asyncio
from datetime import timedelta
from typing import Optional, Set

from .config import Settings
from .events import UpdateChannel
from .reader import CacheReader, ReferenceDataCache
from .scheduler import SyncScheduler
from .sources import CatalogSource, create_source
from .store import DocumentStore, create_store
from .sync import SyncOrchestrator
from .writer import ShardWriter


class Services:
    """Everything one process needs, built once at startup and passed around."""

    def __init__(
        self,
        settings: Settings,
        store: DocumentStore,
        source: CatalogSource,
        channel: Optional[UpdateChannel] = None,
    ):
        self.settings = settings
        self.store = store
        self.source = source
        self.channel = channel or UpdateChannel()
        self.writer = ShardWriter(
            store,
            source_tag=settings.source_tag,
            shards_per_commit=settings.shards_per_commit,
            embed_fallback_data=settings.embed_fallback_data,
        )
        self.orchestrator = SyncOrchestrator(
            source,
            self.writer,
            byte_budget=settings.byte_budget_per_shard,
            max_items=settings.max_items_per_shard,
            concurrent=settings.concurrent_domains,
            channel=self.channel,
        )
        self.reader = CacheReader(store, source)
        revalidate = settings.cache_revalidate_seconds
        self.cache = ReferenceDataCache(
            self.reader,
            self.channel,
            revalidate_after=timedelta(seconds=revalidate) if revalidate > 0 else None,
        )
        self.scheduler = SyncScheduler(
            self.orchestrator,
            interval_hours=settings.sync_interval_hours,
            run_on_start=settings.sync_on_startup,
        )
        self.background: Set["asyncio.Task[object]"] = set()

    def spawn(self, coro) -> "asyncio.Task[object]":
        task = asyncio.create_task(coro)
        self.background.add(task)
        task.add_done_callback(self.background.discard)
        return task

    async def close(self) -> None:
        self.scheduler.stop()
        await self.source.close()
        self.store.close()


def build_services(settings: Settings) -> Services:
    store = create_store(
        settings.store_backend,
        settings.store_path,
        max_document_bytes=settings.max_document_bytes,
    )
    return Services(settings, store, create_source(settings))
