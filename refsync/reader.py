import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional

from pydantic import ValidationError

from .errors import FetchError, ResolveError, StoreError
from .events import UpdateChannel
from .models import CacheView, DataDomain, ShardMetadata, Tier, ensure_utc, utcnow
from .sources import CatalogSource
from .store import DocumentStore
from .writer import metadata_path, shard_path

logger = logging.getLogger(__name__)

ViewCallback = Callable[[CacheView], Awaitable[None]]

_FALLBACK_TIMESTAMP_FIELDS = ("dataUpdatedAt", "lastUpdated", "updatedAt")


def _timestamp(doc: Dict[str, Any], fields=_FALLBACK_TIMESTAMP_FIELDS) -> Optional[datetime]:
    for field in fields:
        value = doc.get(field)
        if isinstance(value, datetime):
            return ensure_utc(value)
        if isinstance(value, str):
            try:
                return ensure_utc(datetime.fromisoformat(value.replace("Z", "+00:00")))
            except ValueError:
                continue
    return None


class CacheReader:
    """Resolves a domain from the first non-empty tier.

    Tiers, in fixed order: the sharded generation, the single fallback
    document, then a live fetch. Only the live tier can fail the call.
    The reader never writes to the store.
    """

    def __init__(
        self,
        store: DocumentStore,
        source: CatalogSource,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.source = source
        self._clock = clock

    async def resolve(self, domain: DataDomain) -> CacheView:
        doc = await self._read_metadata_doc(domain)
        if doc is not None:
            view = await asyncio.to_thread(self._sharded_view, domain, doc)
            if view is not None:
                return view
            view = self._fallback_view(domain, doc)
            if view is not None:
                return view
        return await self._live_view(domain)

    async def _read_metadata_doc(self, domain: DataDomain) -> Optional[Dict[str, Any]]:
        try:
            return await asyncio.to_thread(self.store.get, metadata_path(domain))
        except StoreError as exc:
            logger.warning("Could not read %s metadata, skipping cached tiers: %s", domain.value, exc)
            return None

    def _sharded_view(self, domain: DataDomain, doc: Dict[str, Any]) -> Optional[CacheView]:
        if doc.get("sharded") is not True:
            return None
        try:
            metadata = ShardMetadata.model_validate(doc)
        except ValidationError as exc:
            logger.warning("Ignoring malformed %s shard metadata: %s", domain.value, exc)
            return None
        if not metadata.is_consistent():
            logger.warning(
                "%s metadata lists %d shard ids but shardCount=%d",
                domain.value,
                len(metadata.shard_ids),
                metadata.shard_count,
            )
            return None

        try:
            shards = self.store.get_many([shard_path(domain, s) for s in metadata.shard_ids])
        except StoreError as exc:
            logger.warning("Could not read %s shards: %s", domain.value, exc)
            return None

        records: List[Dict[str, Any]] = []
        for shard_id, shard in zip(metadata.shard_ids, shards):
            data = shard.get("data") if shard else None
            if not isinstance(data, list):
                logger.warning("%s shard %s is missing or unreadable", domain.value, shard_id)
                return None
            if metadata.generation is not None and shard.get("generation") != metadata.generation:
                logger.warning(
                    "%s shard %s belongs to another generation, skipping sharded tier",
                    domain.value,
                    shard_id,
                )
                return None
            records.extend(data)
        if not records:
            return None
        return CacheView(domain=domain, records=records, tier=Tier.SHARDED, as_of=metadata.updated_at)

    def _fallback_view(self, domain: DataDomain, doc: Dict[str, Any]) -> Optional[CacheView]:
        data = doc.get("data")
        if not isinstance(data, list) or not data:
            return None
        as_of = _timestamp(doc)
        if as_of is None:
            logger.warning("%s fallback document has no timestamp", domain.value)
            as_of = datetime.min.replace(tzinfo=timezone.utc)
        return CacheView(domain=domain, records=data, tier=Tier.FALLBACK_DOC, as_of=as_of)

    async def _live_view(self, domain: DataDomain) -> CacheView:
        logger.info("No cached %s data, fetching live", domain.value)
        try:
            records = await self.source.fetch(domain)
        except FetchError as exc:
            raise ResolveError(domain.value, exc) from exc
        return CacheView(domain=domain, records=records, tier=Tier.LIVE, as_of=self._clock())


class ReferenceDataCache:
    """Process cache over a ``CacheReader``, created once at startup.

    Keeps the last resolved view per domain until it is invalidated or older
    than ``revalidate_after``, shares a single in-flight resolve between
    concurrent callers, and optionally pushes fresh views to subscribers when
    a sync publishes a new generation. ``revalidate_after`` covers syncs run
    by other processes, which never publish on this process's channel.
    """

    def __init__(
        self,
        reader: CacheReader,
        channel: Optional[UpdateChannel] = None,
        revalidate_after: Optional[timedelta] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.reader = reader
        self.revalidate_after = revalidate_after
        self._clock = clock
        self._views: Dict[DataDomain, CacheView] = {}
        self._resolved_at: Dict[DataDomain, datetime] = {}
        self._inflight: Dict[DataDomain, "asyncio.Future[CacheView]"] = {}
        self._generations: Dict[DataDomain, int] = {}
        self._subscribers: Dict[DataDomain, List[ViewCallback]] = {}
        self._channel_unsubscribe: List[Callable[[], None]] = []
        self.channel: Optional[UpdateChannel] = None
        if channel is not None:
            self.attach(channel)

    async def get(self, domain: DataDomain, refresh: bool = False) -> CacheView:
        if not refresh and domain in self._views and not self._expired(domain):
            return self._views[domain]
        pending = self._inflight.get(domain)
        if pending is None or refresh:
            pending = asyncio.ensure_future(self._resolve(domain))
            self._inflight[domain] = pending
        return await asyncio.shield(pending)

    async def _resolve(self, domain: DataDomain) -> CacheView:
        generation = self._generations.get(domain, 0)
        try:
            view = await self.reader.resolve(domain)
        finally:
            if self._inflight.get(domain) is asyncio.current_task():
                del self._inflight[domain]
        # an invalidation while resolving means this view may predate the update
        if self._generations.get(domain, 0) == generation:
            self._views[domain] = view
            self._resolved_at[domain] = self._clock()
        return view

    def _expired(self, domain: DataDomain) -> bool:
        if self.revalidate_after is None:
            return False
        resolved_at = self._resolved_at.get(domain)
        return resolved_at is None or self._clock() - resolved_at > self.revalidate_after

    def invalidate(self, domain: Optional[DataDomain] = None) -> None:
        for target in ([domain] if domain is not None else list(DataDomain)):
            self._views.pop(target, None)
            self._generations[target] = self._generations.get(target, 0) + 1

    def subscribe(self, domain: DataDomain, callback: ViewCallback) -> Callable[[], None]:
        self._subscribers.setdefault(domain, []).append(callback)

        def unsubscribe() -> None:
            callbacks = self._subscribers.get(domain, [])
            if callback in callbacks:
                callbacks.remove(callback)

        return unsubscribe

    def attach(self, channel: UpdateChannel) -> None:
        """Invalidate views whenever ``channel`` publishes a new generation."""
        self.detach()
        self.channel = channel
        self._channel_unsubscribe = [channel.subscribe(d, self._on_update) for d in DataDomain]

    def detach(self) -> None:
        for unsubscribe in self._channel_unsubscribe:
            unsubscribe()
        self._channel_unsubscribe = []
        self.channel = None

    async def _on_update(self, domain: DataDomain) -> None:
        self.invalidate(domain)
        callbacks = list(self._subscribers.get(domain, []))
        if not callbacks:
            return
        try:
            view = await self.get(domain, refresh=True)
        except ResolveError as exc:
            logger.error("Could not refresh %s after update: %s", domain.value, exc)
            return
        for callback in callbacks:
            try:
                await callback(view)
            except Exception:
                logger.exception("View subscriber failed for %s", domain.value)
