"""
Health and diagnostics endpoints.

Lightweight checks for operational monitoring; nothing here exposes secrets.
"""

import logging
import time
from typing import Optional

from fastapi import APIRouter, Query, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from sqlalchemy import inspect

from mentor.core.database import check_connection, local_records
from mentor.core.logging import get_request_id, latency_bucket_ms
from mentor.features.storage.local_store import SqlLocalStore

logger = logging.getLogger("mentor")

router = APIRouter(prefix="/api/health", tags=["health"])
root_router = APIRouter(tags=["health"])


class StoreHealth(BaseModel):
    local_store: str
    remote_store: str
    db_connected: Optional[bool] = None
    latency_ms: Optional[float] = None


class HealthResponse(BaseModel):
    ok: bool
    stores: StoreHealth
    computed_at: str


@root_router.get("/healthz")
def healthz():
    """Liveness check (no deps)."""
    return {"status": "ok"}


@root_router.get("/readyz")
def readyz(request: Request):
    """Readiness: the SQL local store, when configured, must be reachable with its table present."""
    service = request.app.state.streak_service
    if not isinstance(service.ledger_store, SqlLocalStore):
        return {"status": "ok"}
    try:
        engine = service.ledger_store.engine
        with engine.connect() as conn:
            conn.exec_driver_sql("SELECT 1")
        if not inspect(engine).has_table(local_records.name):
            logger.warning("[readyz] missing table", extra={"table": local_records.name})
            return JSONResponse(status_code=503, content={"status": "error", "detail": f"missing table: {local_records.name}"})
        return {"status": "ok"}
    except Exception as e:
        logger.error(f"[readyz] readiness check failed: {e}")
        return JSONResponse(status_code=503, content={"status": "error", "detail": "database unreachable"})


@router.get("/stores", response_model=HealthResponse)
def health_stores(request: Request, now: Optional[str] = Query(None)):
    """
    Report which stores are wired and whether the SQL store answers.

    Args:
        now: Optional ISO timestamp for deterministic testing (overrides system time)
    """
    service = request.app.state.streak_service
    connected = None
    latency_ms = None
    if isinstance(service.ledger_store, SqlLocalStore):
        start = time.perf_counter()
        connected = check_connection(service.ledger_store.engine)
        latency_ms = (time.perf_counter() - start) * 1000

    logger.info(
        "health.stores",
        extra={
            "request_id": get_request_id(),
            "ok": connected is not False,
            "latency_bucket": latency_bucket_ms(latency_ms if now is None else None),
        },
    )
    return HealthResponse(
        ok=connected is not False,
        stores=StoreHealth(
            local_store=type(service.ledger_store).__name__,
            remote_store=type(service.engine.remote).__name__,
            db_connected=connected,
            latency_ms=None if now else latency_ms,
        ),
        computed_at=now or service.clock.now().isoformat().replace("+00:00", "Z"),
    )
