"""Lock service API - exposes module edit locks over HTTP."""

from contextlib import asynccontextmanager
from datetime import date, timedelta
from typing import Any

import structlog
from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from src.coordination import (
    AcquireResult,
    Identity,
    InMemoryInvalidationChannel,
    InMemoryLockStore,
    InMemoryVersionStore,
    LockBackendError,
    LockKey,
    LockRecord,
    LockService,
    LockStatus,
    ReadOnlyModuleError,
    RedisInvalidationChannel,
    RedisLockStore,
    RedisVersionStore,
    UnknownModuleError,
    VersionHistoryService,
    VersionRecord,
)

from .auth import current_identity, require_admin
from .config import Settings, configure_logging

logger = structlog.get_logger()


class SnapshotPayload(BaseModel):
    """Module data to save as a version."""
    data_snapshot: Any


def build_components(settings: Settings, clock=None) -> tuple[LockService, VersionHistoryService]:
    """Wire store, channel and services for the configured backend."""
    if settings.store_backend == "memory":
        store = InMemoryLockStore()
        channel = InMemoryInvalidationChannel()
        versions = InMemoryVersionStore()
    elif settings.store_backend == "redis":
        store = RedisLockStore(
            settings.redis_url,
            retention=timedelta(seconds=settings.lock_record_retention_seconds),
            max_retries=settings.store_max_retries,
        )
        channel = RedisInvalidationChannel(
            settings.redis_url,
            reconnect_delay=settings.channel_reconnect_delay_seconds,
        )
        versions = RedisVersionStore(settings.redis_url)
    else:
        raise ValueError(f"Unknown store backend: {settings.store_backend}")

    kwargs = {"clock": clock} if clock else {}
    lock_service = LockService(settings, store, channel, **kwargs)
    return lock_service, VersionHistoryService(lock_service, versions)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan - startup and shutdown."""
    configure_logging(app.state.settings.log_level)
    logger.info(
        "Starting module lock service",
        backend=app.state.settings.store_backend,
        modules=app.state.settings.lockable_modules,
    )

    yield

    logger.info("Shutting down module lock service")
    lock_service: LockService = app.state.lock_service
    await lock_service.store.close()
    if lock_service.channel is not None:
        await lock_service.channel.close()
    await app.state.version_history.store.close()


def get_lock_service(request: Request) -> LockService:
    return request.app.state.lock_service


def get_version_history(request: Request) -> VersionHistoryService:
    return request.app.state.version_history


def create_app(settings: Settings, clock=None) -> FastAPI:
    """Build the API around a fresh set of components."""
    app = FastAPI(
        title="Module Lock Service",
        description="Single-writer edit locks for daily report modules",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.lock_service, app.state.version_history = build_components(settings, clock)

    @app.exception_handler(UnknownModuleError)
    async def unknown_module(request: Request, exc: UnknownModuleError):
        return JSONResponse(status_code=404, content={"detail": str(exc)})

    @app.exception_handler(ReadOnlyModuleError)
    async def read_only(request: Request, exc: ReadOnlyModuleError):
        return JSONResponse(
            status_code=409,
            content={"detail": str(exc), "locked_by": exc.locked_by},
        )

    @app.exception_handler(LockBackendError)
    async def backend_unavailable(request: Request, exc: LockBackendError):
        logger.error("Lock backend unavailable", path=request.url.path, error=str(exc))
        return JSONResponse(status_code=503, content={"detail": "Lock store unavailable"})

    @app.get("/health")
    async def health_check():
        """Health check endpoint."""
        return {"status": "healthy", "service": "module-lock-service"}

    @app.get("/api/locks", response_model=list[LockRecord])
    async def list_locks(
        module_date: date | None = None,
        service: LockService = Depends(get_lock_service),
        _: Identity = Depends(current_identity),
    ):
        """List active locks, optionally for one day."""
        return await service.list_active(module_date)

    @app.get("/api/locks/{module_key}/{module_date}", response_model=LockStatus)
    async def lock_status(
        module_key: str,
        module_date: date,
        service: LockService = Depends(get_lock_service),
        identity: Identity = Depends(current_identity),
    ):
        key = LockKey(module_key=module_key, module_date=module_date)
        return await service.get_status(key, identity.user_id)

    @app.post("/api/locks/{module_key}/{module_date}/acquire", response_model=AcquireResult)
    async def acquire_lock(
        module_key: str,
        module_date: date,
        service: LockService = Depends(get_lock_service),
        identity: Identity = Depends(current_identity),
    ):
        key = LockKey(module_key=module_key, module_date=module_date)
        return await service.acquire(key, identity)

    @app.post("/api/locks/{module_key}/{module_date}/release")
    async def release_lock(
        module_key: str,
        module_date: date,
        service: LockService = Depends(get_lock_service),
        identity: Identity = Depends(current_identity),
    ):
        key = LockKey(module_key=module_key, module_date=module_date)
        return {"released": await service.release(key, identity)}

    @app.post("/api/locks/{module_key}/{module_date}/refresh")
    async def refresh_lock(
        module_key: str,
        module_date: date,
        service: LockService = Depends(get_lock_service),
        identity: Identity = Depends(current_identity),
    ):
        key = LockKey(module_key=module_key, module_date=module_date)
        return {"refreshed": await service.refresh(key, identity)}

    @app.post("/api/locks/{module_key}/{module_date}/force-release")
    async def force_release(
        module_key: str,
        module_date: date,
        service: LockService = Depends(get_lock_service),
        admin: Identity = Depends(require_admin),
    ):
        key = LockKey(module_key=module_key, module_date=module_date)
        return {"released": await service.force_release(key, admin)}

    @app.get("/api/versions/{module_key}/{module_date}", response_model=list[VersionRecord])
    async def list_versions(
        module_key: str,
        module_date: date,
        limit: int | None = None,
        history: VersionHistoryService = Depends(get_version_history),
        _: Identity = Depends(current_identity),
    ):
        key = LockKey(module_key=module_key, module_date=module_date)
        return await history.list_versions(key, limit)

    @app.post("/api/versions/{module_key}/{module_date}")
    async def save_version(
        module_key: str,
        module_date: date,
        payload: SnapshotPayload,
        history: VersionHistoryService = Depends(get_version_history),
        identity: Identity = Depends(current_identity),
    ):
        key = LockKey(module_key=module_key, module_date=module_date)
        number = await history.save_version(key, identity, payload.data_snapshot)
        return {"version_number": number}

    @app.get(
        "/api/versions/{module_key}/{module_date}/{version_number}",
        response_model=VersionRecord,
    )
    async def load_version(
        module_key: str,
        module_date: date,
        version_number: int,
        history: VersionHistoryService = Depends(get_version_history),
        _: Identity = Depends(current_identity),
    ):
        key = LockKey(module_key=module_key, module_date=module_date)
        record = await history.load_version(key, version_number)
        if record is None:
            raise HTTPException(status_code=404, detail="Version not found")
        return record

    return app


def cli():
    """CLI entry point."""
    import uvicorn

    app = create_app(Settings())
    uvicorn.run(app, host="0.0.0.0", port=8000)


if __name__ == "__main__":
    cli()
