"""Write fetched domains to JSON files that ``SnapshotSource`` can serve back.

Each file carries the catalog's own top-level key plus a ``data`` copy, so
a snapshot doubles as a test fixture or a seed for the fallback document.
"""

import asyncio
import json
import logging
import os
from datetime import datetime
from typing import Callable, Dict, Iterable, List, Tuple

from .errors import FetchError
from .models import DataDomain, Record, utcnow
from .schemas import DOMAIN_SCHEMAS
from .sources import CatalogSource

logger = logging.getLogger(__name__)


def snapshot_payload(
    domain: DataDomain, records: List[Record], source_tag: str, taken_at: datetime
) -> Dict[str, object]:
    return {
        DOMAIN_SCHEMAS[domain].response_key: records,
        "data": records,
        "lastUpdated": taken_at.isoformat(),
        "source": source_tag,
    }


def write_snapshot_file(path: str, payload: Dict[str, object]) -> None:
    os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
    tmp_path = f"{path}.tmp"
    with open(tmp_path, "w", encoding="utf-8") as fh:
        json.dump(payload, fh, indent=2, ensure_ascii=False)
    os.replace(tmp_path, path)


async def export_snapshot(
    source: CatalogSource,
    directory: str,
    domains: Iterable[DataDomain] = tuple(DataDomain),
    source_tag: str = "tarkov.dev",
    clock: Callable[[], datetime] = utcnow,
) -> Tuple[Dict[DataDomain, str], Dict[DataDomain, str]]:
    """Fetch each domain and write ``<directory>/<domain>.json``.

    Returns ``(written, failed)``: paths of written files and error messages
    of domains that could not be fetched.
    """
    written: Dict[DataDomain, str] = {}
    failed: Dict[DataDomain, str] = {}
    for domain in domains:
        try:
            records = await source.fetch(domain)
        except FetchError as exc:
            logger.error("Snapshot of %s skipped: %s", domain.value, exc)
            failed[domain] = str(exc)
            continue
        path = os.path.join(directory, f"{domain.value}.json")
        payload = snapshot_payload(domain, records, source_tag, clock())
        await asyncio.to_thread(write_snapshot_file, path, payload)
        logger.info("Wrote %s snapshot with %d records to %s", domain.value, len(records), path)
        written[domain] = path
    return written, failed
