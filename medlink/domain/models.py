"""Domain Models for the Federated Medical Record Network.

This module defines the data models exchanged between hospital stores, the
central hub and callers. Hospital-owned entities (Patient, MedicalRecord,
Prescription, LabReport) are only ever held here as live read projections;
the central hub persists nothing but the patient index, privacy settings and
the audit log.

Security Impact:
    - Records fetched from another hospital are always marked read-only
    - Emergency results carry only critical fields (no visit history)
    - Audit filters are validated at the boundary so limits cannot be bypassed

Architecture:
    - Pure domain models with zero infrastructure dependencies
    - snake_case attributes with camelCase aliases for the HTTP surface
    - Type safety enforced at runtime via Pydantic V2
"""

import uuid
from datetime import date, datetime, timezone
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

from medlink.domain.enums import (
    ActorType,
    AuditAction,
    BundleStatus,
    InteractionSeverity,
    Role,
    VisitType,
)

DEFAULT_AUDIT_LIMIT = 100
MAX_AUDIT_LIMIT = 1000


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class CamelModel(BaseModel):
    """Base model speaking camelCase on the wire and snake_case in Python."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        str_strip_whitespace=True,
    )


# ============================================================================
# Directory and hospital-owned entities
# ============================================================================

class Hospital(CamelModel):
    """Directory metadata for a hospital in the network (read-only here)."""

    id: str = Field(..., description="Hospital identifier (e.g. 'hospital-kl')")
    name: str = Field(..., description="Full hospital name")
    short_name: str = Field("", description="Short display name")
    city: str = Field("", description="City")
    state: str = Field("", description="State")


class Patient(CamelModel):
    """Patient demographics as stored by one hospital.

    Parameters:
        ic_number: National identity number (primary key across the network)
        full_name: Patient full name
        blood_type: ABO/Rh blood type, critical in emergencies
        allergies: Known allergies recorded at this hospital
        chronic_conditions: Chronic conditions recorded at this hospital
    """

    ic_number: str = Field(..., description="National identity (IC) number")
    full_name: str = Field(..., description="Patient full name")
    date_of_birth: Optional[date] = Field(None, description="Date of birth")
    gender: Optional[str] = Field(None, description="Gender")
    blood_type: str = Field("", description="Blood type")
    phone: str = Field("", description="Phone number")
    email: str = Field("", description="Email address")
    address: str = Field("", description="Home address")
    emergency_contact: str = Field("", description="Emergency contact name")
    emergency_phone: str = Field("", description="Emergency contact phone")
    allergies: list[str] = Field(default_factory=list, description="Known allergies")
    chronic_conditions: list[str] = Field(default_factory=list, description="Chronic conditions")

    @field_validator("ic_number")
    @classmethod
    def validate_ic_number(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("IC number cannot be empty")
        return v.strip()


class VitalSigns(CamelModel):
    """Vital signs captured at a visit. All measurements are optional."""

    blood_pressure_systolic: Optional[float] = None
    blood_pressure_diastolic: Optional[float] = None
    heart_rate: Optional[float] = None
    temperature: Optional[float] = None
    respiratory_rate: Optional[float] = None
    oxygen_saturation: Optional[float] = None
    weight: Optional[float] = None
    height: Optional[float] = None


class Prescription(CamelModel):
    """A medication prescribed during a visit."""

    id: str = Field(default_factory=lambda: str(uuid.uuid4()), description="Prescription identifier")
    record_id: Optional[str] = Field(None, description="Owning medical record")
    medication_name: str = Field(..., description="Medication name as prescribed (may include strength)")
    dosage: str = Field("", description="Dosage")
    frequency: str = Field("", description="Frequency")
    duration: str = Field("", description="Duration")
    quantity: int = Field(0, ge=0, description="Quantity dispensed")
    instructions: str = Field("", description="Patient instructions")
    is_active: bool = Field(True, description="Whether the patient is currently taking it")


class LabReport(CamelModel):
    """A lab test result attached to a visit."""

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    record_id: Optional[str] = None
    test_type: str = ""
    test_name: str
    result: str = ""
    unit: str = ""
    reference_range: str = ""
    is_abnormal: bool = False
    report_date: Optional[datetime] = None
    notes: str = ""


class MedicalRecord(CamelModel):
    """A visit record owned by the hospital that created it.

    ``source_hospital`` and ``is_read_only`` are projection fields: the hospital
    store leaves them unset and the orchestrator fills them in per caller.
    """

    id: str = Field(default_factory=lambda: str(uuid.uuid4()), description="Record identifier")
    ic_number: str = Field(..., description="Patient IC number")
    hospital_id: str = Field(..., description="Owning hospital")
    doctor_id: str = Field("", description="Attending doctor identifier")
    doctor_name: Optional[str] = Field(None, description="Attending doctor name")
    visit_date: datetime = Field(..., description="Visit timestamp")
    visit_type: VisitType = Field(VisitType.OUTPATIENT, description="Kind of visit")
    chief_complaint: str = Field("", description="Chief complaint")
    diagnosis: list[str] = Field(default_factory=list)
    diagnosis_codes: list[str] = Field(default_factory=list, description="ICD-10 codes")
    symptoms: list[str] = Field(default_factory=list)
    notes: str = ""
    vital_signs: Optional[VitalSigns] = None
    prescriptions: list[Prescription] = Field(default_factory=list)
    lab_reports: list[LabReport] = Field(default_factory=list)
    follow_up_date: Optional[datetime] = None
    source_hospital: Optional[str] = Field(None, description="Display name of the owning hospital")
    is_read_only: bool = Field(False, description="True when viewed from another hospital")


# ============================================================================
# Central hub entities
# ============================================================================

class PatientIndexEntry(CamelModel):
    """Which hospitals hold records for an IC number.

    ``hospital_ids`` preserves insertion order and only ever grows.
    """

    ic_number: str
    hospital_ids: list[str] = Field(default_factory=list)
    last_updated: datetime = Field(default_factory=utc_now)


class PrivacySetting(CamelModel):
    """Patient-controlled block of one hospital. No row means not blocked."""

    ic_number: str
    hospital_id: str
    is_blocked: bool = False
    updated_at: datetime = Field(default_factory=utc_now)


class AuditLogEntry(CamelModel):
    """One append-only audit event.

    Security Impact:
        - Entries are never mutated or deleted once appended
        - Every access attempt, successful or denied, produces one
    """

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    timestamp: datetime = Field(default_factory=utc_now)
    action: AuditAction
    actor_id: str
    actor_type: ActorType
    actor_hospital_id: Optional[str] = None
    target_ic_number: Optional[str] = None
    target_hospital_id: Optional[str] = None
    details: str = ""
    ip_address: str = "unknown"
    success: bool = True


class AuditLogFilter(CamelModel):
    """Validated audit log query filter.

    ``limit`` defaults to 100 and is capped at 1000; a larger request is
    clamped rather than rejected.
    """

    actor_id: Optional[str] = None
    target_ic_number: Optional[str] = None
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    limit: int = Field(DEFAULT_AUDIT_LIMIT, ge=1)

    @field_validator("limit", mode="after")
    @classmethod
    def cap_limit(cls, v: int) -> int:
        return min(v, MAX_AUDIT_LIMIT)

    @field_validator("start_date", "end_date", mode="after")
    @classmethod
    def assume_utc(cls, v: Optional[datetime]) -> Optional[datetime]:
        """Naive bounds are read as UTC so they compare with aware ones."""
        if v is not None and v.tzinfo is None:
            return v.replace(tzinfo=timezone.utc)
        return v

    @model_validator(mode="after")
    def check_date_range(self) -> "AuditLogFilter":
        if self.start_date and self.end_date and self.start_date > self.end_date:
            raise ValueError("startDate must not be after endDate")
        return self


class CallerContext(CamelModel):
    """Identity and context of whoever is asking.

    Parameters:
        user_id: Authenticated user id (or 'anonymous' for emergency access)
        ic_number: Caller's own IC number (patients only)
        role: Caller role
        home_hospital_id: Hospital the caller works at, if any
        ip_address: Client address, recorded in the audit log
    """

    user_id: str
    ic_number: Optional[str] = None
    role: Role
    home_hospital_id: Optional[str] = None
    ip_address: str = "unknown"


# ============================================================================
# Federated query results (derived, never persisted)
# ============================================================================

class HospitalRecordBundle(CamelModel):
    """What one hospital returned for a federated query."""

    hospital_id: str
    hospital_name: str
    patient: Optional[Patient] = None
    records: list[MedicalRecord] = Field(default_factory=list)
    record_count: int = 0
    is_read_only: bool = True
    source_hospital: str = ""
    fetch_error: Optional[str] = None
    status: BundleStatus = BundleStatus.SUCCESS
    response_time_ms: float = 0.0

    @property
    def succeeded(self) -> bool:
        return self.status == BundleStatus.SUCCESS


class ActiveMedication(CamelModel):
    """An active prescription tagged with the hospital that issued it."""

    prescription: Prescription
    hospital_id: str
    hospital_name: str
    visit_date: Optional[datetime] = None

    @property
    def medication_name(self) -> str:
        return self.prescription.medication_name


class DrugInteraction(CamelModel):
    """A flagged interaction between two active medications."""

    medication_a: str
    medication_b: str
    severity: InteractionSeverity
    description: str
    hospital_a: str
    hospital_b: str


class MedicationCheckResult(CamelModel):
    """Outcome of the active-medication cross-check."""

    ic_number: str
    active_medications: list[ActiveMedication] = Field(default_factory=list)
    interactions: list[DrugInteraction] = Field(default_factory=list)
    hospitals_consulted: int = 0
    is_complete: bool = True


class AggregateQueryResult(CamelModel):
    """Merged view of a patient across every hospital the caller may see."""

    ic_number: str
    patient_summary: Optional[Patient] = None
    hospitals: list[HospitalRecordBundle] = Field(default_factory=list)
    timeline: list[MedicalRecord] = Field(default_factory=list)
    total_records: int = 0
    total_hospitals_queried: int = 0
    total_hospitals_reachable: int = 0
    excluded_hospitals: list[str] = Field(default_factory=list)
    is_complete: bool = True
    query_duration_ms: float = 0.0
    medication_check: Optional[MedicationCheckResult] = None


class EmergencyQueryResult(CamelModel):
    """Reduced, critical-fields-only view returned by emergency access."""

    ic_number: str
    found: bool = False
    full_name: Optional[str] = None
    blood_type: Optional[str] = None
    allergies: list[str] = Field(default_factory=list)
    chronic_conditions: list[str] = Field(default_factory=list)
    emergency_contact: Optional[str] = None
    emergency_phone: Optional[str] = None
    hospitals_with_records: int = 0
    total_hospitals_queried: int = 0
    total_hospitals_reachable: int = 0
    consent_overridden_hospitals: list[str] = Field(default_factory=list)
    access_type: str = "emergency"
    warning: str = "Emergency access has been logged and will be reviewed."
    query_duration_ms: float = 0.0


class PatientSummary(CamelModel):
    """Where a patient is registered, with demographics from the first hospital that answers.

    ``hospitals`` is the full index entry; ``excluded_hospitals`` lists the
    ones the patient has blocked for this caller, which were not contacted.
    """

    ic_number: str
    patient: Optional[Patient] = None
    hospitals: list[str] = Field(default_factory=list)
    excluded_hospitals: list[str] = Field(default_factory=list)
    last_updated: datetime
