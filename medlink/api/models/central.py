"""Request and response models for the central hub endpoints."""

from typing import Optional

from pydantic import Field

from medlink.domain.models import AuditLogEntry, CamelModel


class PrivacyUpdateRequest(CamelModel):
    """Body of POST /central/privacy/{icNumber}/{hospitalId}."""
    is_blocked: bool = Field(..., description="True to block the hospital, False to unblock")


class PrivacyUpdateResponse(CamelModel):
    """Acknowledgement of a privacy change."""
    ic_number: str
    hospital_id: str
    is_blocked: bool
    message: str


class MedicationCheckRequest(CamelModel):
    """Body of POST /central/medication-check/{icNumber}."""
    candidate_medication: Optional[str] = Field(
        None, description="Drug about to be prescribed, screened against active medications"
    )


class EmergencyQueryRequest(CamelModel):
    """Body of POST /emergency/query/{icNumber}."""
    reason: Optional[str] = Field(None, max_length=1000, description="Justification for emergency access")


class HubStats(CamelModel):
    """Network-wide counters shown on the public landing page."""
    total_patients: int
    total_hospitals: int
    total_audit_logs: int
    queries_today: int
    emergency_accesses_today: int


class AccessLogEntry(AuditLogEntry):
    """An audit entry on a patient's own records, with display names.

    ``occurrences`` counts the consecutive entries collapsed into this one.
    """
    actor_name: str
    hospital_name: str
    occurrences: int = 1


class ActivityLogEntry(AuditLogEntry):
    """An audit entry made by the caller, with the patient it concerned.

    ``occurrences`` counts the consecutive entries collapsed into this one.
    """
    patient_name: str
    occurrences: int = 1
