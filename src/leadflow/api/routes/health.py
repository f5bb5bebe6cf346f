"""Liveness endpoint."""

from fastapi import APIRouter, Depends

from leadflow.api.services import Services, get_services
from leadflow.infra.time import to_iso, utc_now

router = APIRouter(tags=["health"])


@router.get("/health")
async def health(services: Services = Depends(get_services)) -> dict:
    """Health check with ledger counts."""
    return {
        "status": "ok",
        "timestamp": to_iso(utc_now()),
        **services.ledger.stats(),
    }
