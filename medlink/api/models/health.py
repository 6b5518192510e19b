"""Health check models for the federation API."""

from datetime import datetime
from typing import Literal

from pydantic import Field

from medlink.domain.models import CamelModel, utc_now
from medlink.infrastructure.settings import APP_VERSION


class HospitalHealth(CamelModel):
    """Reachability of one hospital store.

    Attributes:
        hospital_id: Hospital identifier
        name: Hospital name
        reachable: Whether the store answered a ping within the timeout
        circuit_open: Whether the circuit breaker is currently rejecting calls
    """
    hospital_id: str
    name: str
    reachable: bool
    circuit_open: bool = False


class HealthResponse(CamelModel):
    """Health check response model.

    Attributes:
        status: unhealthy when the central store is down, degraded when any
            hospital is unreachable or has an open circuit
        central_store: Whether the central store is reachable
        hospitals: Per-hospital reachability
        index_sync_failures: Index updates that failed since startup
    """
    status: Literal["healthy", "degraded", "unhealthy"]
    timestamp: datetime = Field(default_factory=utc_now, description="Current UTC timestamp")
    version: str = Field(default=APP_VERSION, description="Application version")
    central_store: bool
    hospitals: list[HospitalHealth] = Field(default_factory=list)
    index_sync_failures: int = 0
