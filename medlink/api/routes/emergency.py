"""Emergency access endpoint.

Emergency staff may not be logged in to the hub, so the bearer token is
optional here. Every call is audited (anonymous callers as actor
``anonymous``) and rate limited per client address.
"""

import logging
from typing import Optional

from fastapi import APIRouter, Request

from medlink.api.dependencies import FederationDep, OptionalCallerDep
from medlink.api.models.central import EmergencyQueryRequest
from medlink.api.security import get_client_ip
from medlink.domain.models import EmergencyQueryResult

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/emergency", tags=["emergency"])


@router.post("/query/{ic_number}", response_model=EmergencyQueryResult)
async def emergency_query(
    ic_number: str,
    http_request: Request,
    caller: OptionalCallerDep,
    federation: FederationDep,
    request: Optional[EmergencyQueryRequest] = None,
) -> EmergencyQueryResult:
    """Critical patient information from every hospital, overriding privacy blocks.

    Returns blood type, allergies, chronic conditions and emergency contact
    only; visit history is never included.
    """
    return await federation.orchestrator.emergency_query(
        ic_number,
        caller=caller,
        reason=request.reason if request and request.reason else "",
        ip_address=get_client_ip(http_request),
    )
