"""Health check endpoint for the federation API."""

import logging

from fastapi import APIRouter

from medlink.api.dependencies import FederationDep
from medlink.api.models.health import HealthResponse, HospitalHealth

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["health"])


@router.get("/health", response_model=HealthResponse)
async def health_check(federation: FederationDep) -> HealthResponse:
    """Health check endpoint.

    Pings the central store and every hospital store concurrently. A
    hospital outage degrades the hub; a central store outage makes it
    unhealthy.

    Security Impact:
        - Only reports reachability, no patient data exposed
    """
    report = await federation.health()
    hospitals = [
        HospitalHealth(
            hospital_id=h["hospitalId"],
            name=h["name"],
            reachable=h["reachable"],
            circuit_open=h["circuitOpen"],
        )
        for h in report["hospitals"]
    ]

    if not report["centralStore"]:
        overall = "unhealthy"
    elif any(not h.reachable or h.circuit_open for h in hospitals):
        overall = "degraded"
    else:
        overall = "healthy"

    if overall != "healthy":
        logger.warning(f"Health check: {overall}")

    return HealthResponse(
        status=overall,
        central_store=report["centralStore"],
        hospitals=hospitals,
        index_sync_failures=report["indexSyncFailures"],
    )
