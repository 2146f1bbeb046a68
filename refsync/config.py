from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Runtime configuration for the reference-data sync service."""

    source_endpoint: str = "https://api.tarkov.dev/graphql"
    source_tag: str = "tarkov.dev"
    source_backend: str = "graphql"  # options: graphql, snapshot
    snapshot_dir: str = "data/snapshots"
    source_timeout_seconds: float = 30.0
    fetch_retry_count: int = 2
    fetch_retry_delay_seconds: float = 1.0
    fetch_retry_jitter_seconds: float = 0.5

    byte_budget_per_shard: int = 700_000
    max_items_per_shard: int = 500
    max_document_bytes: int = 1_048_576
    shards_per_commit: int = 10
    embed_fallback_data: bool = True
    cache_revalidate_seconds: float = 300

    sync_interval_hours: float = 6
    sync_on_startup: bool = False
    scheduler_enabled: bool = False
    concurrent_domains: bool = False

    store_backend: str = "memory"  # options: memory, sqlite
    store_path: str = "data/reference.db"

    log_level: str = "INFO"


settings = Settings()
