"""Persists planned shard batches as one generation per domain.

Write order is what keeps readers safe:

1. every shard document of the new generation,
2. the metadata document pointing at exactly those shards,
3. deletion of shards the new metadata no longer references.

Shard ids are reused across generations, so every shard and the metadata
carry the same ``generation`` token. While step 1 is in progress the old
metadata points at shards stamped with a different token, and readers skip
the sharded tier rather than mix two generations. A failure in step 1
restores any shard already overwritten. A crash between steps 2 and 3
leaves unreferenced shards behind, never missing ones.

Overlapping runs are not locked against each other. Before step 2 a run
re-reads its shards and gives up with ``kind="conflict"`` if another run
replaced or deleted any of them; otherwise the last metadata commit wins.
"""

import logging
import uuid
from datetime import datetime
from typing import Callable, Dict, List, Optional, Sequence, Set, Tuple

from .errors import DocumentTooLarge, StoreError, StorePermissionError, WriteError
from .models import (
    DataDomain,
    ShardBatch,
    ShardMetadata,
    ShardRecord,
    WriteResult,
    ensure_utc,
    utcnow,
)
from .planner import encoded_size
from .store import Document, DocumentStore, WriteOp

logger = logging.getLogger(__name__)

COLLECTION = "referenceData"
MAX_OPS_PER_COMMIT = 500


def metadata_path(domain: DataDomain) -> str:
    return f"{COLLECTION}/{domain.value}"


def shards_collection(domain: DataDomain) -> str:
    return f"{metadata_path(domain)}/shards"


def shard_path(domain: DataDomain, shard_id: str) -> str:
    return f"{shards_collection(domain)}/{shard_id}"


def _error_kind(exc: StoreError) -> str:
    if isinstance(exc, DocumentTooLarge):
        return "size_limit"
    if isinstance(exc, StorePermissionError):
        return "permission"
    return "unavailable"


def _chunks(items: Sequence, size: int) -> List[Sequence]:
    return [items[i:i + size] for i in range(0, len(items), size)]


class ShardWriter:
    def __init__(
        self,
        store: DocumentStore,
        source_tag: str = "tarkov.dev",
        shards_per_commit: int = 10,
        embed_fallback_data: bool = True,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.source_tag = source_tag
        self.shards_per_commit = max(1, min(shards_per_commit, MAX_OPS_PER_COMMIT))
        self.embed_fallback_data = embed_fallback_data
        self._clock = clock

    def write(self, domain: DataDomain, batches: Sequence[ShardBatch]) -> WriteResult:
        if not batches:
            raise WriteError(
                domain.value, "shards", "refusing to replace the cache with an empty generation"
            )

        generation_at = ensure_utc(self._clock())
        generation = uuid.uuid4().hex
        previous_ids = self._previous_shard_ids(domain)
        new_ids = [batch.id for batch in batches]
        record_count = sum(len(batch.records) for batch in batches)

        self._write_shards(domain, batches, generation, generation_at)
        self._check_shards_unchanged(domain, new_ids, generation)

        metadata = ShardMetadata(
            shard_count=len(batches),
            shard_ids=new_ids,
            updated_at=generation_at,
            source=self.source_tag,
            record_count=record_count,
            generation=generation,
        )
        embedded = self._commit_metadata(domain, metadata, batches)
        logger.info(
            "Committed %s generation: %d records in %d shards",
            domain.value,
            record_count,
            len(new_ids),
        )

        deleted, failed = self._delete_orphans(domain, previous_ids, new_ids, generation_at)
        return WriteResult(
            domain=domain,
            shard_ids=new_ids,
            record_count=record_count,
            updated_at=metadata.updated_at,
            orphans_deleted=deleted,
            orphans_failed=failed,
            fallback_embedded=embedded,
        )

    def _previous_shard_ids(self, domain: DataDomain) -> List[str]:
        try:
            doc = self.store.get(metadata_path(domain))
        except StoreError as exc:
            raise WriteError(domain.value, "read_metadata", str(exc), kind=_error_kind(exc)) from exc
        if not doc or doc.get("sharded") is not True:
            return []
        return [str(shard) for shard in doc.get("shardIds") or []]

    def _write_shards(
        self,
        domain: DataDomain,
        batches: Sequence[ShardBatch],
        generation: str,
        generation_at: datetime,
    ) -> None:
        ops = []
        for batch in batches:
            doc = ShardRecord(
                data=batch.records, updated_at=generation_at, generation=generation
            ).to_document()
            size = encoded_size(doc)
            if size > self.store.max_document_bytes:
                raise WriteError(
                    domain.value,
                    "shards",
                    f"shard {batch.id} is {size} bytes, over the "
                    f"{self.store.max_document_bytes} byte document limit",
                    kind="size_limit",
                )
            ops.append(WriteOp.set(shard_path(domain, batch.id), doc))

        backups = self._backup_shards(domain, [op.path for op in ops])
        written: List[WriteOp] = []
        for group in _chunks(ops, self.shards_per_commit):
            try:
                self.store.commit(group)
            except StoreError as exc:
                self._roll_back(domain, written, backups)
                raise WriteError(
                    domain.value,
                    "shards",
                    f"commit failed at {group[0].path}: {exc}",
                    kind=_error_kind(exc),
                ) from exc
            written.extend(group)
            logger.debug("Wrote %d %s shard(s) starting at %s", len(group), domain.value, group[0].path)

    def _check_shards_unchanged(
        self, domain: DataDomain, shard_ids: Sequence[str], generation: str
    ) -> None:
        """Refuse to publish metadata over shards an overlapping run replaced or deleted."""
        try:
            docs = self.store.get_many([shard_path(domain, shard) for shard in shard_ids])
        except StoreError as exc:
            raise WriteError(domain.value, "metadata", str(exc), kind=_error_kind(exc)) from exc
        lost = [
            shard
            for shard, doc in zip(shard_ids, docs)
            if doc is None or doc.get("generation") != generation
        ]
        if lost:
            raise WriteError(
                domain.value,
                "metadata",
                f"shard(s) {', '.join(lost)} were replaced by an overlapping run",
                kind="conflict",
            )

    def _backup_shards(self, domain: DataDomain, paths: List[str]) -> Dict[str, Optional[Document]]:
        """Current contents of the shard paths this generation will overwrite."""
        try:
            docs = self.store.get_many(paths)
        except StoreError as exc:
            raise WriteError(
                domain.value, "shards", f"could not read current shards: {exc}", kind=_error_kind(exc)
            ) from exc
        return dict(zip(paths, docs))

    def _roll_back(
        self, domain: DataDomain, written: List[WriteOp], backups: Dict[str, Optional[Document]]
    ) -> None:
        if not written:
            return
        restore = [
            WriteOp.set(op.path, backups[op.path])
            if backups.get(op.path) is not None
            else WriteOp.delete(op.path)
            for op in written
        ]
        for group in _chunks(restore, self.shards_per_commit):
            try:
                self.store.commit(group)
            except StoreError as exc:
                logger.error(
                    "Rollback of %s shards failed, the previous generation may be torn: %s",
                    domain.value,
                    exc,
                )
                return
        logger.warning("Rolled back %d %s shard write(s)", len(written), domain.value)

    def _commit_metadata(
        self, domain: DataDomain, metadata: ShardMetadata, batches: Sequence[ShardBatch]
    ) -> bool:
        doc = metadata.to_document()
        embedded = False
        if self.embed_fallback_data and len(batches) == 1:
            with_data = dict(doc, data=batches[0].records, dataUpdatedAt=doc["updatedAt"])
            if encoded_size(with_data) <= self.store.max_document_bytes:
                doc = with_data
                embedded = True
        try:
            self.store.commit([WriteOp.merge(metadata_path(domain), doc)])
        except StoreError as exc:
            raise WriteError(domain.value, "metadata", str(exc), kind=_error_kind(exc)) from exc
        return embedded

    def _delete_orphans(
        self,
        domain: DataDomain,
        previous_ids: Sequence[str],
        new_ids: Sequence[str],
        generation_at: datetime,
    ) -> Tuple[List[str], List[str]]:
        keep: Set[str] = set(new_ids)
        try:
            current = self.store.get(metadata_path(domain)) or {}
            listed = self.store.list_ids(shards_collection(domain))
        except StoreError as exc:
            logger.warning("Skipping %s orphan cleanup, store read failed: %s", domain.value, exc)
            return [], sorted(set(previous_ids) - keep)

        # a concurrent run may have committed after us; never strand its shards
        if current.get("sharded") is True:
            keep.update(str(shard) for shard in current.get("shardIds") or [])

        orphans = set(previous_ids) - keep
        leftovers = [shard for shard in listed if shard not in keep and shard not in orphans]
        orphans.update(self._stale_leftovers(domain, leftovers, generation_at))
        if not orphans:
            return [], []

        deleted: List[str] = []
        failed: List[str] = []
        for group in _chunks(sorted(orphans), MAX_OPS_PER_COMMIT):
            try:
                self.store.commit([WriteOp.delete(shard_path(domain, shard)) for shard in group])
                deleted.extend(group)
            except StoreError as exc:
                logger.warning("Failed to delete %d orphaned %s shard(s): %s", len(group), domain.value, exc)
                failed.extend(group)
        if deleted:
            logger.info("Deleted %d orphaned %s shard(s)", len(deleted), domain.value)
        return deleted, failed

    def _stale_leftovers(
        self, domain: DataDomain, shard_ids: Sequence[str], generation_at: datetime
    ) -> List[str]:
        """Unreferenced shards written before this generation started.

        Newer unreferenced shards belong to a run that started later and is
        still in flight. An older overlapping run looks the same as a crashed
        one and loses its shards here; its own metadata commit then fails
        ``_check_shards_unchanged`` instead of publishing a broken generation.
        """
        if not shard_ids:
            return []
        try:
            docs = self.store.get_many([shard_path(domain, shard) for shard in shard_ids])
        except StoreError as exc:
            logger.warning("Could not inspect leftover %s shards: %s", domain.value, exc)
            return []
        stale = []
        for shard, doc in zip(shard_ids, docs):
            if doc is None:
                continue
            written_at = _parse_timestamp(doc.get("updatedAt"))
            if written_at is None or written_at < generation_at:
                stale.append(shard)
        return stale


def _parse_timestamp(value: object) -> Optional[datetime]:
    if not isinstance(value, str):
        return None
    try:
        return ensure_utc(datetime.fromisoformat(value.replace("Z", "+00:00")))
    except ValueError:
        return None
