"""Central hub endpoints.

Cross-hospital queries, patient summaries, the medication cross-check,
privacy settings, the patient index, the audit log and public hub information.

Error mapping (see ``medlink.api.main``): UnauthorizedError is 403,
AuditWriteError and StorageError are 503, unknown hospitals are 404.
"""

import logging
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, HTTPException, Query, status
from pydantic import ValidationError

from medlink.api.dependencies import CallerDep, FederationDep
from medlink.api.models.central import (
    AccessLogEntry,
    ActivityLogEntry,
    HubStats,
    MedicationCheckRequest,
    PrivacyUpdateRequest,
    PrivacyUpdateResponse,
)
from medlink.api.services.audit_service import (
    DEFAULT_ACCESS_LOG_LIMIT,
    DEFAULT_ACTIVITY_LOG_LIMIT,
    AuditService,
)
from medlink.domain import access_policy
from medlink.domain.models import (
    DEFAULT_AUDIT_LIMIT,
    AggregateQueryResult,
    AuditLogEntry,
    AuditLogFilter,
    Hospital,
    MedicationCheckResult,
    PatientIndexEntry,
    PatientSummary,
    PrivacySetting,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/central", tags=["central"])


def _parse_date(value: Optional[str], name: str) -> Optional[datetime]:
    if not value:
        return None
    try:
        return datetime.fromisoformat(value.replace('Z', '+00:00'))
    except ValueError:
        raise HTTPException(status_code=400, detail=f"Invalid {name} format: {value}")


def _forbidden(detail: str) -> HTTPException:
    return HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=detail)


# ============================================================================
# Patient queries
# ============================================================================

@router.get("/query/{ic_number}", response_model=AggregateQueryResult)
async def query_patient(
    ic_number: str,
    caller: CallerDep,
    federation: FederationDep,
    include_medication_check: bool = Query(
        False, alias="includeMedicationCheck", description="Also run the medication cross-check"
    ),
) -> AggregateQueryResult:
    """Query every hospital holding records for a patient.

    Hospitals the patient has blocked are skipped (and listed in
    ``excludedHospitals``); unreachable hospitals come back as error bundles
    and make the result incomplete rather than failing it.
    """
    return await federation.orchestrator.query(
        ic_number, caller, include_medication_check=include_medication_check
    )


@router.get("/patient/{ic_number}", response_model=PatientSummary)
async def get_patient_summary(ic_number: str, caller: CallerDep, federation: FederationDep) -> PatientSummary:
    """Where a patient is registered, with demographics but no visit records."""
    summary = await federation.orchestrator.patient_summary(ic_number, caller)
    if summary is None:
        raise HTTPException(status_code=404, detail="Patient not found in any hospital")
    return summary


@router.post("/medication-check/{ic_number}", response_model=MedicationCheckResult)
async def medication_check(
    ic_number: str,
    caller: CallerDep,
    federation: FederationDep,
    request: Optional[MedicationCheckRequest] = None,
) -> MedicationCheckResult:
    """Cross-check the patient's active medications across hospitals."""
    candidate = request.candidate_medication if request else None
    return await federation.orchestrator.active_medications(
        ic_number, caller, candidate_medication=candidate
    )


# ============================================================================
# Privacy settings
# ============================================================================

@router.get("/privacy/{ic_number}", response_model=list[PrivacySetting])
async def get_privacy_settings(ic_number: str, caller: CallerDep, federation: FederationDep):
    """Privacy setting for every hospital in the network (unblocked by default)."""
    return federation.consent_service.get_settings(caller, ic_number)


@router.post("/privacy/{ic_number}/{hospital_id}", response_model=PrivacyUpdateResponse)
async def update_privacy_setting(
    ic_number: str,
    hospital_id: str,
    request: PrivacyUpdateRequest,
    caller: CallerDep,
    federation: FederationDep,
) -> PrivacyUpdateResponse:
    """Block or unblock one hospital from seeing the patient's records."""
    setting = federation.consent_service.set_hospital_access(
        caller, ic_number, hospital_id, request.is_blocked
    )
    verb = "blocked" if setting.is_blocked else "unblocked"
    return PrivacyUpdateResponse(
        ic_number=setting.ic_number,
        hospital_id=setting.hospital_id,
        is_blocked=setting.is_blocked,
        message=f"{federation.registry.name_of(hospital_id)} {verb}",
    )


# ============================================================================
# Patient index
# ============================================================================

@router.get("/index/{ic_number}", response_model=PatientIndexEntry)
async def get_index_entry(ic_number: str, caller: CallerDep, federation: FederationDep):
    """Which hospitals hold records for an IC number (central admin only)."""
    if not access_policy.can_read_index(caller):
        raise _forbidden("Only central admins may read the patient index")

    entry = federation.central.lookup(ic_number)
    if entry is None:
        raise HTTPException(status_code=404, detail="Patient not found in central index")
    return entry


@router.get("/indexes", response_model=list[PatientIndexEntry])
async def list_index_entries(
    caller: CallerDep,
    federation: FederationDep,
    limit: int = Query(100, ge=1, le=1000, description="Maximum number of entries to return"),
):
    """Most recently updated index entries (central admin only)."""
    if not access_policy.can_read_index(caller):
        raise _forbidden("Only central admins may read the patient index")
    return federation.central.list_entries(limit=limit)


# ============================================================================
# Audit log
# ============================================================================

@router.get("/audit-logs", response_model=list[AuditLogEntry])
async def get_audit_logs(
    caller: CallerDep,
    federation: FederationDep,
    actor_id: Optional[str] = Query(None, alias="actorId", description="Filter by actor"),
    target_ic_number: Optional[str] = Query(None, alias="targetIcNumber", description="Filter by patient"),
    start_date: Optional[str] = Query(None, alias="startDate", description="Filter by start date (ISO format)"),
    end_date: Optional[str] = Query(None, alias="endDate", description="Filter by end date (ISO format)"),
    limit: int = Query(DEFAULT_AUDIT_LIMIT, ge=1, description="Maximum number of entries (capped at 1000)"),
):
    """Audit log entries, newest first (central and hospital admins only)."""
    if not access_policy.can_read_audit_log(caller):
        raise _forbidden("Only administrators may read the audit log")

    try:
        filters = AuditLogFilter(
            actor_id=actor_id,
            target_ic_number=target_ic_number,
            start_date=_parse_date(start_date, "startDate"),
            end_date=_parse_date(end_date, "endDate"),
            limit=limit,
        )
    except ValidationError as e:
        raise HTTPException(status_code=400, detail=e.errors()[0]["msg"])

    result = AuditService(federation).get_audit_logs(filters)
    if result.is_success():
        return result.value
    raise HTTPException(status_code=503, detail="Audit log is unavailable")


@router.get("/my-access-logs", response_model=list[AccessLogEntry])
async def get_my_access_logs(
    caller: CallerDep,
    federation: FederationDep,
    limit: int = Query(DEFAULT_ACCESS_LOG_LIMIT, ge=1, description="Maximum number of entries"),
):
    """Who accessed the caller's records, with repeated accesses collapsed."""
    if not caller.ic_number:
        raise HTTPException(status_code=400, detail="User IC number not found")

    result = AuditService(federation).get_my_access_logs(caller, limit=limit)
    if result.is_success():
        return result.value
    raise HTTPException(status_code=503, detail="Audit log is unavailable")


@router.get("/my-activity-logs", response_model=list[ActivityLogEntry])
async def get_my_activity_logs(
    caller: CallerDep,
    federation: FederationDep,
    limit: int = Query(DEFAULT_ACTIVITY_LOG_LIMIT, ge=1, description="Maximum number of entries"),
):
    """Patients the caller has accessed, with repeated actions collapsed."""
    result = await AuditService(federation).get_my_activity_logs(caller, limit=limit)
    if result.is_success():
        return result.value
    raise HTTPException(status_code=503, detail="Audit log is unavailable")


# ============================================================================
# Public hub information
# ============================================================================

@router.get("/hospitals", response_model=list[Hospital])
async def list_hospitals(federation: FederationDep):
    """Hospitals in the network."""
    return federation.registry.hospitals()


@router.get("/stats", response_model=HubStats)
async def get_stats(federation: FederationDep):
    """Network-wide counters."""
    result = AuditService(federation).get_stats()
    if result.is_success():
        return result.value
    raise HTTPException(status_code=503, detail="Statistics are unavailable")
