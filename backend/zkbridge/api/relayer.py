"""
Relayer API — Saga observability endpoints.

Read-only view of the relayer: per-asset stage and last error, plus
aggregate health. The relayer instance is injected with set_relayer()
at startup; tests override get_relayer instead.
"""

import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, status

from zkbridge.schemas.bridge import RelayerHealth, RelayerRecord
from zkbridge.services.relayer import RelayerService

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/relayer", tags=["Relayer"])

_relayer: Optional[RelayerService] = None


def set_relayer(relayer: Optional[RelayerService]) -> None:
    global _relayer
    _relayer = relayer


def get_relayer() -> RelayerService:
    if _relayer is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={"error": "Relayer not running", "reason": "RELAYER_UNAVAILABLE"},
        )
    return _relayer


@router.get("/health", response_model=RelayerHealth)
def relayer_health(relayer: RelayerService = Depends(get_relayer)) -> RelayerHealth:
    return relayer.health()


@router.get("/assets", response_model=List[RelayerRecord])
def list_assets(relayer: RelayerService = Depends(get_relayer)) -> List[RelayerRecord]:
    return relayer.records()


@router.get("/assets/{asset_id}", response_model=RelayerRecord)
def get_asset(asset_id: int, relayer: RelayerService = Depends(get_relayer)) -> RelayerRecord:
    """Current stage, attempt counts and last error for one asset."""
    record = relayer.get_record(asset_id)
    if record is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail={"error": f"House {asset_id} has not been seen by the relayer"},
        )
    return record


@router.post("/assets/{asset_id}/retry", response_model=RelayerRecord)
async def retry_asset(asset_id: int, relayer: RelayerService = Depends(get_relayer)) -> RelayerRecord:
    """Operator action: restart a failed saga."""
    if not relayer.retry(asset_id):
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail={"error": f"House {asset_id} is not in a failed state"},
        )
    logger.info(f"[API] Operator retry for house {asset_id}")
    return relayer.get_record(asset_id)
