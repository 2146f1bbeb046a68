from typing import Optional


class RefSyncError(Exception):
    """Base class for reference-data sync failures."""


class StoreError(RefSyncError):
    """A document store operation could not be completed."""


class DocumentTooLarge(StoreError):
    def __init__(self, path: str, size: int, limit: int):
        super().__init__(f"Document {path} is {size} bytes (limit {limit})")
        self.path = path
        self.size = size
        self.limit = limit


class StorePermissionError(StoreError):
    """The store refused the operation."""


class FetchError(RefSyncError):
    """Fetching one domain from the external catalog failed.

    ``kind`` is one of ``network``, ``http``, ``upstream``, ``malformed`` or
    ``missing``. A terminal error (``retryable=False``) has already used up
    its attempts.
    """

    def __init__(
        self,
        domain: str,
        message: str,
        kind: str = "network",
        attempts: int = 1,
        retryable: bool = True,
    ):
        super().__init__(f"[{domain}] {message}")
        self.domain = domain
        self.kind = kind
        self.attempts = attempts
        self.retryable = retryable


class WriteError(RefSyncError):
    """Persisting a generation failed at ``stage`` (read_metadata, shards, metadata)."""

    def __init__(self, domain: str, stage: str, message: str, kind: str = "unavailable"):
        super().__init__(f"[{domain}] {stage}: {message}")
        self.domain = domain
        self.stage = stage
        self.kind = kind


class ResolveError(RefSyncError):
    """Every read tier was empty and the live fetch failed as well."""

    def __init__(self, domain: str, cause: Optional[BaseException] = None):
        detail = f": {cause}" if cause else ""
        super().__init__(f"[{domain}] reference data unavailable{detail}")
        self.domain = domain
        self.cause = cause
