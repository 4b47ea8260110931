"""
ZK Approval Bridge — Relayer API Entry Point.

Starts the relayer against the ledgers named in the deployment record and
serves its observability surface.

Startup:
    1. Load settings (.env / environment)
    2. Build the relayer from the deployment record
    3. Recover unfinished sagas, subscribe to FullyApproved notifications
"""

import logging
import time
from contextlib import asynccontextmanager
from datetime import datetime, timezone

from fastapi import FastAPI

from zkbridge.api import relayer as relayer_api
from zkbridge.core.config import settings
from zkbridge.core.log_config import configure_logging

logger = logging.getLogger(__name__)

# --- Application boot timestamp for uptime tracking ---
_BOOT_TIME: float = time.time()


@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logging(settings.LOG_LEVEL)
    from zkbridge.integration.bridge import build_relayer

    relayer = None
    try:
        relayer = build_relayer(settings)
    except ValueError as e:
        logger.error(f"[BRIDGE] Relayer not started: {e}")
    if relayer is not None:
        await relayer.start()
        relayer_api.set_relayer(relayer)
    try:
        yield
    finally:
        if relayer is not None:
            await relayer.stop()
        relayer_api.set_relayer(None)


app = FastAPI(
    title=settings.PROJECT_NAME,
    description="Relayer for the permissioned-approval → public-mint bridge",
    version="0.1.0",
    openapi_url=f"{settings.API_V1_STR}/openapi.json",
    lifespan=lifespan,
)

app.include_router(relayer_api.router)


@app.get("/health", tags=["System"])
def health_check() -> dict:
    """
    Liveness plus ledger connectivity.

    Reports "degraded" when the relayer runs but lost either ledger.
    """
    relayer = relayer_api._relayer
    relayer_health = relayer.health() if relayer is not None else None

    if relayer_health is None:
        overall = "relayer_unavailable"
    elif relayer_health.registry_connected and relayer_health.mint_gate_connected:
        overall = "ok"
    else:
        overall = "degraded"

    return {
        "status": overall,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "uptime_seconds": round(time.time() - _BOOT_TIME, 2),
        "relayer": relayer_health.model_dump() if relayer_health else None,
    }


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("zkbridge.main:app", host="0.0.0.0", port=settings.PORT)
