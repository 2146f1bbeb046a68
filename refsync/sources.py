import asyncio
import json
import logging
import os
from typing import Awaitable, Callable, List, Optional, Protocol

import httpx
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    wait_fixed,
    wait_random,
)

from .config import Settings
from .errors import FetchError
from .models import DataDomain, Record
from .schemas import DOMAIN_SCHEMAS, validate_response

logger = logging.getLogger(__name__)

SleepFn = Callable[[float], Awaitable[None]]


class CatalogSource(Protocol):
    async def fetch(self, domain: DataDomain) -> List[Record]:
        ...

    async def close(self) -> None:
        ...


class GraphQLSourceClient:
    """Fetches one domain at a time from the external GraphQL catalog.

    Every ``fetch`` makes ``1 + retry_count`` attempts at most, waiting a
    fixed delay plus a little jitter between them. Once the attempts are used
    up the ``FetchError`` it raises is terminal (``retryable=False``).
    """

    def __init__(
        self,
        endpoint: str,
        timeout: float = 30.0,
        retry_count: int = 2,
        retry_delay: float = 1.0,
        retry_jitter: float = 0.5,
        client: Optional[httpx.AsyncClient] = None,
        sleep: SleepFn = asyncio.sleep,
    ):
        self.endpoint = endpoint
        self.timeout = timeout
        self.max_attempts = 1 + max(0, retry_count)
        self.retry_delay = max(0.0, retry_delay)
        self.retry_jitter = max(0.0, retry_jitter)
        self._client = client
        self._owns_client = client is None
        self._sleep = sleep

    async def _client_get(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(timeout=self.timeout, follow_redirects=True)
            self._owns_client = True
        return self._client

    async def fetch(self, domain: DataDomain) -> List[Record]:
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_fixed(self.retry_delay) + wait_random(0, self.retry_jitter),
            retry=retry_if_exception_type(FetchError),
            before_sleep=self._log_retry,
            sleep=self._sleep,
            reraise=True,
        )
        try:
            async for attempt in retrying:
                with attempt:
                    records = await self._fetch_once(domain)
        except FetchError as exc:
            logger.error(
                "Fetching %s failed after %d attempts: %s",
                domain.value,
                self.max_attempts,
                exc,
            )
            raise FetchError(
                domain.value,
                f"gave up after {self.max_attempts} attempts: {exc}",
                kind=exc.kind,
                attempts=self.max_attempts,
                retryable=False,
            ) from exc

        logger.info("Fetched %d %s records", len(records), domain.value)
        return records

    def _log_retry(self, retry_state: RetryCallState) -> None:
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        delay = retry_state.next_action.sleep if retry_state.next_action else 0.0
        logger.warning(
            "Fetch attempt %d/%d failed (%s), retrying in %.1fs",
            retry_state.attempt_number,
            self.max_attempts,
            exc,
            delay,
        )

    async def _fetch_once(self, domain: DataDomain) -> List[Record]:
        schema = DOMAIN_SCHEMAS[domain]
        client = await self._client_get()
        try:
            resp = await client.post(self.endpoint, json={"query": schema.query})
            resp.raise_for_status()
        except httpx.HTTPStatusError as exc:
            raise FetchError(
                domain.value, f"HTTP {exc.response.status_code} from catalog", kind="http"
            ) from exc
        except httpx.HTTPError as exc:
            raise FetchError(domain.value, f"request failed: {exc!r}", kind="network") from exc

        try:
            body = resp.json()
        except ValueError as exc:
            raise FetchError(domain.value, "response is not JSON", kind="malformed") from exc
        if not isinstance(body, dict):
            raise FetchError(domain.value, "response is not a JSON object", kind="malformed")

        errors = body.get("errors")
        data = body.get("data")
        if errors and not data:
            first = errors[0] if isinstance(errors, list) else errors
            if isinstance(first, dict):
                first = first.get("message")
            raise FetchError(domain.value, f"catalog returned errors: {first}", kind="upstream")
        if errors:
            logger.warning("Catalog returned partial errors for %s: %s", domain.value, errors)
        return validate_response(domain, data)

    async def close(self) -> None:
        if self._client is not None and self._owns_client and not self._client.is_closed:
            await self._client.aclose()


class SnapshotSource:
    """Serves domains from JSON snapshot files written by ``refsync snapshot``."""

    def __init__(self, directory: str):
        self.directory = directory

    def path_for(self, domain: DataDomain) -> str:
        return os.path.join(self.directory, f"{domain.value}.json")

    def _load(self, domain: DataDomain) -> object:
        path = self.path_for(domain)
        try:
            with open(path, "r", encoding="utf-8") as fh:
                return json.load(fh)
        except FileNotFoundError as exc:
            raise FetchError(domain.value, f"no snapshot at {path}", kind="missing") from exc
        except ValueError as exc:
            raise FetchError(domain.value, f"snapshot {path} is not JSON", kind="malformed") from exc

    async def fetch(self, domain: DataDomain) -> List[Record]:
        payload = await asyncio.to_thread(self._load, domain)
        return validate_response(domain, payload)

    async def close(self) -> None:
        return None


def create_source(settings: Settings) -> CatalogSource:
    backend = settings.source_backend.lower()
    if backend == "snapshot":
        return SnapshotSource(settings.snapshot_dir)
    return GraphQLSourceClient(
        settings.source_endpoint,
        timeout=settings.source_timeout_seconds,
        retry_count=settings.fetch_retry_count,
        retry_delay=settings.fetch_retry_delay_seconds,
        retry_jitter=settings.fetch_retry_jitter_seconds,
    )
