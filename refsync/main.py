import asyncio
from contextlib import asynccontextmanager
from datetime import timedelta
from typing import Optional

from fastapi import FastAPI, HTTPException

from .config import settings
from .errors import ResolveError
from .log import configure_logging
from .models import DataDomain
from .services import Services, build_services


def _parse_domain(domain: str) -> DataDomain:
    try:
        return DataDomain(domain)
    except ValueError as exc:
        raise HTTPException(status_code=404, detail=f"Unknown domain '{domain}'") from exc


def create_app(services: Optional[Services] = None) -> FastAPI:
    services = services or build_services(settings)

    @asynccontextmanager
    async def lifespan(_app: FastAPI):
        configure_logging(services.settings.log_level)
        if services.settings.scheduler_enabled:
            services.scheduler.start()
        try:
            yield
        finally:
            await services.close()

    app = FastAPI(
        title="Reference Data Sync",
        version="0.1.0",
        description="Sharded reference-data cache with a tiered read path.",
        lifespan=lifespan,
    )
    app.state.services = services

    @app.get("/health")
    async def health() -> dict:
        return {"status": "ok", "scheduler": services.scheduler.running}

    @app.get("/reference/{domain}")
    async def resolve_reference(
        domain: str, max_age_hours: Optional[float] = None, refresh: bool = False
    ) -> dict:
        target = _parse_domain(domain)
        try:
            view = await services.cache.get(target, refresh=refresh)
        except ResolveError as exc:
            raise HTTPException(status_code=503, detail=f"data unavailable: {exc}") from exc

        if max_age_hours is None:
            max_age_hours = services.settings.sync_interval_hours * 2
        return {
            "domain": view.domain.value,
            "tier": view.tier.value,
            "asOf": view.as_of.isoformat(),
            "ageSeconds": round(view.age_seconds(), 3),
            "stale": view.is_stale(timedelta(hours=max_age_hours)),
            "count": len(view.records),
            "records": view.records,
        }

    @app.post("/sync/run")
    async def sync_run(async_mode: bool = False) -> dict:
        if async_mode:
            services.spawn(services.orchestrator.run_sync())
            return {"status": "scheduled"}
        report = await services.orchestrator.run_sync()
        return {"status": "completed", "result": report.model_dump(mode="json")}

    @app.get("/sync/status")
    async def sync_status() -> dict:
        report = services.orchestrator.last_report
        next_run = services.scheduler.next_run_time()
        return {
            "last_run": report.model_dump(mode="json") if report else None,
            "next_run": next_run.isoformat() if next_run else None,
        }

    @app.get("/store/metrics")
    async def store_metrics() -> dict:
        return {"metrics": await asyncio.to_thread(services.store.metrics)}

    return app


app = create_app()
