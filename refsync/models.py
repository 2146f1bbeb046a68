from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, computed_field, field_validator

Record = Dict[str, Any]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class DataDomain(str, Enum):
    TASKS = "tasks"
    HIDEOUT = "hideout"
    ITEMS = "items"


class Tier(str, Enum):
    SHARDED = "sharded"
    FALLBACK_DOC = "fallbackDoc"
    LIVE = "live"


class ShardBatch(BaseModel):
    """One planned shard: a contiguous slice of a domain's records."""

    id: str
    records: List[Record]
    size_bytes: int


class ShardMetadata(BaseModel):
    """Per-domain pointer to the shards of the committed generation."""

    model_config = ConfigDict(populate_by_name=True)

    schema_version: int = Field(2, alias="schemaVersion")
    sharded: bool = True
    shard_count: int = Field(alias="shardCount")
    shard_ids: List[str] = Field(alias="shardIds")
    updated_at: datetime = Field(alias="updatedAt")
    source: str = ""
    record_count: Optional[int] = Field(None, alias="recordCount")
    # stamped on every shard of the generation; absent on older documents
    generation: Optional[str] = None

    @field_validator("updated_at")
    @classmethod
    def normalize_timestamp(cls, value: datetime) -> datetime:
        return ensure_utc(value)

    def is_consistent(self) -> bool:
        return len(self.shard_ids) == self.shard_count

    def to_document(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, mode="json", exclude_none=True)


class ShardRecord(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    data: List[Record]
    updated_at: datetime = Field(alias="updatedAt")
    generation: Optional[str] = None

    @field_validator("updated_at")
    @classmethod
    def normalize_timestamp(cls, value: datetime) -> datetime:
        return ensure_utc(value)

    def to_document(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, mode="json")


class WriteResult(BaseModel):
    domain: DataDomain
    shard_ids: List[str]
    record_count: int
    updated_at: datetime
    orphans_deleted: List[str] = Field(default_factory=list)
    orphans_failed: List[str] = Field(default_factory=list)
    fallback_embedded: bool = False


class DomainSyncResult(BaseModel):
    """Outcome of one domain within a sync run."""

    domain: DataDomain
    status: str  # success or failed
    stage: Optional[str] = None
    error: Optional[str] = None
    record_count: int = 0
    shard_count: int = 0
    orphans_deleted: int = 0
    started_at: datetime
    finished_at: datetime


class SyncReport(BaseModel):
    started_at: datetime
    finished_at: datetime
    results: Dict[DataDomain, DomainSyncResult]

    @computed_field
    @property
    def failed_domains(self) -> List[DataDomain]:
        return [d for d, r in self.results.items() if r.status != "success"]

    @computed_field
    @property
    def outcome(self) -> str:
        failed = len(self.failed_domains)
        if failed == 0:
            return "success"
        if failed == len(self.results):
            return "failed"
        return "partial"


class CacheView(BaseModel):
    """Records resolved for a domain plus the tier that served them."""

    domain: DataDomain
    records: List[Record]
    tier: Tier
    as_of: datetime

    @field_validator("as_of")
    @classmethod
    def normalize_timestamp(cls, value: datetime) -> datetime:
        return ensure_utc(value)

    def age_seconds(self, now: Optional[datetime] = None) -> float:
        return max(0.0, ((now or utcnow()) - self.as_of).total_seconds())

    def is_stale(self, max_age: timedelta, now: Optional[datetime] = None) -> bool:
        return self.age_seconds(now) > max_age.total_seconds()
