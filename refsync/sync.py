import asyncio
import logging
from datetime import datetime
from typing import Callable, Iterable, Optional, Sequence

from .errors import FetchError, WriteError
from .events import UpdateChannel
from .models import DataDomain, DomainSyncResult, SyncReport, utcnow
from .planner import plan
from .sources import CatalogSource
from .writer import ShardWriter

logger = logging.getLogger(__name__)


class SyncOrchestrator:
    """Fetch, plan and write every domain, one failure never blocking another.

    Overlapping runs are not locked against each other. The writer's ordering
    makes them safe, and whichever run commits metadata last wins.
    """

    def __init__(
        self,
        source: CatalogSource,
        writer: ShardWriter,
        byte_budget: int = 700_000,
        max_items: int = 500,
        domains: Iterable[DataDomain] = tuple(DataDomain),
        concurrent: bool = False,
        channel: Optional[UpdateChannel] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.source = source
        self.writer = writer
        self.byte_budget = byte_budget
        self.max_items = max_items
        self.domains = tuple(domains)
        self.concurrent = concurrent
        self.channel = channel
        self._clock = clock
        self.last_run_at: Optional[datetime] = None
        self.last_report: Optional[SyncReport] = None

    async def run_sync(self, domains: Optional[Sequence[DataDomain]] = None) -> SyncReport:
        targets = tuple(domains) if domains else self.domains
        started_at = self._clock()
        logger.info("Starting reference data sync for %s", ", ".join(d.value for d in targets))

        if self.concurrent:
            results = await asyncio.gather(*(self.sync_domain(d) for d in targets))
        else:
            results = [await self.sync_domain(d) for d in targets]

        report = SyncReport(
            started_at=started_at,
            finished_at=self._clock(),
            results={result.domain: result for result in results},
        )
        self.last_run_at = report.finished_at
        self.last_report = report
        if report.failed_domains:
            logger.warning(
                "Sync finished (%s); failed domains: %s",
                report.outcome,
                ", ".join(d.value for d in report.failed_domains),
            )
        else:
            logger.info("Sync finished successfully")
        return report

    async def sync_domain(self, domain: DataDomain) -> DomainSyncResult:
        started_at = self._clock()
        stage = "fetch"
        try:
            records = await self.source.fetch(domain)
            stage = "plan"
            batches = plan(records, self.byte_budget, self.max_items)
            stage = "write"
            result = await asyncio.to_thread(self.writer.write, domain, batches)
        except FetchError as exc:
            logger.error("Sync of %s failed at fetch: %s", domain.value, exc)
            return self._failed(domain, "fetch", exc, started_at)
        except WriteError as exc:
            logger.error("Sync of %s failed at write (%s): %s", domain.value, exc.stage, exc)
            return self._failed(domain, "write", exc, started_at)
        except Exception as exc:
            logger.exception("Sync of %s failed unexpectedly at %s", domain.value, stage)
            return self._failed(domain, stage, exc, started_at)

        logger.info(
            "Synced %s: %d records, %d shards, %d orphans removed",
            domain.value,
            result.record_count,
            len(result.shard_ids),
            len(result.orphans_deleted),
        )
        if self.channel is not None:
            await self.channel.publish(domain)
        return DomainSyncResult(
            domain=domain,
            status="success",
            record_count=result.record_count,
            shard_count=len(result.shard_ids),
            orphans_deleted=len(result.orphans_deleted),
            started_at=started_at,
            finished_at=self._clock(),
        )

    def _failed(
        self, domain: DataDomain, stage: str, exc: Exception, started_at: datetime
    ) -> DomainSyncResult:
        return DomainSyncResult(
            domain=domain,
            status="failed",
            stage=stage,
            error=str(exc),
            started_at=started_at,
            finished_at=self._clock(),
        )
